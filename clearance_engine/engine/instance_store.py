"""
Step Instance Store for the Clearance Engine.

Holds clearance requests and their step instances, keyed by request ID.
Provides the per-request critical section used by every write and optional
JSON file persistence.
"""

import json
import logging
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Union

from ..errors import PersistenceError, RequestNotFound
from ..models import ClearanceRequest, RequestStatus, StepInstance, StepStatus, utcnow

logger = logging.getLogger(__name__)


class RequestUnitOfWork:
    """
    Working copy of one request and its instances inside a transaction.

    Mutations made here become visible to other readers only when the
    transaction commits.
    """

    def __init__(self, request: ClearanceRequest, instances: List[StepInstance]):
        self.request = request
        self.instances = sorted(instances, key=lambda i: i.template_order)

    def by_id(self, step_id: str) -> Optional[StepInstance]:
        for instance in self.instances:
            if instance.id == step_id:
                return instance
        return None

    def by_order(self, order: int) -> Optional[StepInstance]:
        for instance in self.instances:
            if instance.template_order == order:
                return instance
        return None


class StepInstanceStore:
    """
    Durable representation of clearance requests and their steps.

    In-memory maps with optional JSON file persistence. Reads return deep
    copies and do not take the per-request lock; writes go through
    ``transaction`` which serializes them per request and rolls back on a
    failed save.
    """

    def __init__(self, storage_path: Optional[Union[str, Path]] = None):
        """
        Initialize the store.

        Args:
            storage_path: Path to store state as JSON.
                         If None, state is kept in memory only.
        """
        self.storage_path = Path(storage_path) if storage_path else None
        self.requests: Dict[str, ClearanceRequest] = {}
        self.instances: Dict[str, Dict[str, StepInstance]] = {}
        self._step_index: Dict[str, str] = {}

        self._lock = threading.RLock()
        self._request_locks: Dict[str, threading.Lock] = {}

        if self.storage_path:
            self.storage_path.parent.mkdir(parents=True, exist_ok=True)
            self._load_state()

        logger.info(
            f"Initialized StepInstanceStore with {'persistent' if self.storage_path else 'in-memory'} storage"
        )

    def create(self, request: ClearanceRequest, instances: List[StepInstance]) -> ClearanceRequest:
        """
        Insert a new request together with its full instance set.

        Args:
            request: The new request
            instances: One instance per template

        Returns:
            Copy of the stored request
        """
        with self._lock:
            if request.id in self.requests:
                raise ValueError(f"Request {request.id} already exists")

            self.requests[request.id] = request.model_copy(deep=True)
            self.instances[request.id] = {i.id: i.model_copy(deep=True) for i in instances}
            for instance in instances:
                self._step_index[instance.id] = request.id

            try:
                self._save_state()
            except Exception as e:
                self._discard(request.id)
                raise PersistenceError(request.id, e) from e

        logger.info(f"Stored request {request.reference_code} with {len(instances)} steps")
        return request.model_copy(deep=True)

    def get_request(self, request_id: str) -> Optional[ClearanceRequest]:
        """Copy of a request, or None if unknown."""
        with self._lock:
            request = self.requests.get(request_id)
            return request.model_copy(deep=True) if request else None

    def get_request_by_reference(self, reference_code: str) -> Optional[ClearanceRequest]:
        with self._lock:
            for request in self.requests.values():
                if request.reference_code == reference_code:
                    return request.model_copy(deep=True)
        return None

    def reference_exists(self, reference_code: str) -> bool:
        return self.get_request_by_reference(reference_code) is not None

    def load_instances(self, request_id: str) -> List[StepInstance]:
        """
        Copies of all instances of a request in ascending template order.

        Returns an empty list for an unknown request.
        """
        with self._lock:
            instances = self.instances.get(request_id, {})
            copies = [i.model_copy(deep=True) for i in instances.values()]
        return sorted(copies, key=lambda i: i.template_order)

    def get_step(self, step_id: str) -> Optional[StepInstance]:
        with self._lock:
            request_id = self._step_index.get(step_id)
            if request_id is None:
                return None
            return self.instances[request_id][step_id].model_copy(deep=True)

    def request_id_for_step(self, step_id: str) -> Optional[str]:
        with self._lock:
            return self._step_index.get(step_id)

    @contextmanager
    def transaction(self, request_id: str) -> Iterator[RequestUnitOfWork]:
        """
        Exclusive read-modify-write section for one request.

        Yields a RequestUnitOfWork with copies of the request and its
        instances. On normal exit the copies replace the stored state and are
        persisted; a failed save restores the previous state and raises
        PersistenceError. An exception raised inside the block discards the
        working copy.
        """
        lock = self._lock_for(request_id)
        with lock:
            with self._lock:
                request = self.requests.get(request_id)
                if request is None:
                    self._request_locks.pop(request_id, None)
                    raise RequestNotFound(request_id)
                unit = RequestUnitOfWork(
                    request.model_copy(deep=True),
                    [i.model_copy(deep=True) for i in self.instances[request_id].values()],
                )

            yield unit

            self._commit(request_id, unit)

    def list_requests(
        self, status: Optional[RequestStatus] = None, staff_id: Optional[str] = None
    ) -> List[ClearanceRequest]:
        """Requests, newest first, optionally filtered."""
        with self._lock:
            requests = [r.model_copy(deep=True) for r in self.requests.values()]

        if status is not None:
            requests = [r for r in requests if r.status == status]
        if staff_id is not None:
            requests = [r for r in requests if r.staff_id == staff_id]

        return sorted(requests, key=lambda r: r.initiated_at, reverse=True)

    def find_active_request(self, staff_id: str) -> Optional[ClearanceRequest]:
        """The staff member's request that is neither failed nor archived."""
        for request in self.list_requests(staff_id=staff_id):
            if not request.status.is_terminal:
                return request
        return None

    def available_steps_for_role(self, role: str) -> List[StepInstance]:
        """Available steps across all requests that ``role`` may act on."""
        with self._lock:
            steps = [
                instance.model_copy(deep=True)
                for instances in self.instances.values()
                for instance in instances.values()
                if instance.status == StepStatus.AVAILABLE
                and instance.can_process
                and role in instance.allowed_roles
            ]
        return sorted(steps, key=lambda s: s.created_at, reverse=True)

    def purge(self, request_id: str) -> bool:
        """
        Remove a request and its instances (administrative only).

        Returns:
            True if removed, False if not found
        """
        with self._lock_for(request_id):
            with self._lock:
                if request_id not in self.requests:
                    self._request_locks.pop(request_id, None)
                    return False
                request = self.requests[request_id]
                instances = self.instances[request_id]
                self._discard(request_id)
                try:
                    self._save_state()
                except Exception as e:
                    self.requests[request_id] = request
                    self.instances[request_id] = instances
                    for step_id in instances:
                        self._step_index[step_id] = request_id
                    raise PersistenceError(request_id, e) from e
                self._request_locks.pop(request_id, None)

        logger.info(f"Purged request {request_id}")
        return True

    def get_requests_summary(self) -> Dict[str, Any]:
        """
        Get a summary of stored requests.

        Returns:
            Dictionary with request statistics
        """
        summary = {
            "total_requests": 0,
            "total_steps": 0,
            "requests_by_status": {},
            "requests_by_purpose": {},
            "steps_by_status": {},
        }

        with self._lock:
            for request_id, request in self.requests.items():
                summary["total_requests"] += 1

                status = request.status.value
                summary["requests_by_status"][status] = summary["requests_by_status"].get(status, 0) + 1

                purpose = request.purpose.value
                summary["requests_by_purpose"][purpose] = summary["requests_by_purpose"].get(purpose, 0) + 1

                for instance in self.instances.get(request_id, {}).values():
                    summary["total_steps"] += 1
                    step_status = instance.status.value
                    summary["steps_by_status"][step_status] = summary["steps_by_status"].get(step_status, 0) + 1

        return summary

    def _lock_for(self, request_id: str) -> threading.Lock:
        with self._lock:
            lock = self._request_locks.get(request_id)
            if lock is None:
                lock = threading.Lock()
                self._request_locks[request_id] = lock
            return lock

    def _commit(self, request_id: str, unit: RequestUnitOfWork):
        with self._lock:
            previous_request = self.requests[request_id]
            previous_instances = self.instances[request_id]

            unit.request.updated_at = utcnow()
            self.requests[request_id] = unit.request.model_copy(deep=True)
            self.instances[request_id] = {i.id: i.model_copy(deep=True) for i in unit.instances}

            try:
                self._save_state()
            except Exception as e:
                self.requests[request_id] = previous_request
                self.instances[request_id] = previous_instances
                logger.error(f"Rolled back request {request_id} after failed save: {e}")
                raise PersistenceError(request_id, e) from e

    def _discard(self, request_id: str):
        for step_id in self.instances.pop(request_id, {}):
            self._step_index.pop(step_id, None)
        self.requests.pop(request_id, None)

    def _save_state(self):
        """Save current state to persistent storage."""
        if not self.storage_path:
            return

        state_data = {
            "requests": {
                request_id: {
                    "request": request.model_dump(mode="json"),
                    "steps": [
                        instance.model_dump(mode="json")
                        for instance in self.instances.get(request_id, {}).values()
                    ],
                }
                for request_id, request in self.requests.items()
            },
            "last_updated": datetime.now(timezone.utc).isoformat(),
        }

        tmp_path = self.storage_path.with_suffix(self.storage_path.suffix + ".tmp")
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(state_data, f, indent=2)
        tmp_path.replace(self.storage_path)

    def _load_state(self):
        """Load state from persistent storage."""
        if not self.storage_path or not self.storage_path.exists():
            return

        with open(self.storage_path, encoding="utf-8") as f:
            state_data = json.load(f)

        for request_id, entry in state_data.get("requests", {}).items():
            self.requests[request_id] = ClearanceRequest.model_validate(entry["request"])
            steps = [StepInstance.model_validate(step) for step in entry.get("steps", [])]
            self.instances[request_id] = {step.id: step for step in steps}
            for step in steps:
                self._step_index[step.id] = request_id

        logger.info(f"Loaded state for {len(self.requests)} requests from {self.storage_path}")
