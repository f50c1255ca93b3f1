"""
Activity trail for clearance requests.

Every committed action (creation, step outcomes, VP signatures, archiving,
purging) is appended as one JSON line to a file per UTC day.
"""

import json
import logging
from collections import Counter
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

from ..models import ActivityRecord

logger = logging.getLogger(__name__)

ACTIVITY_FILE_PATTERN = "activity_*.jsonl"


class AuditLogger:
    """Append-only JSONL store of ActivityRecords."""

    def __init__(self, audit_dir: str = "audit"):
        self.audit_dir = Path(audit_dir)
        self.audit_dir.mkdir(parents=True, exist_ok=True)

    def _file_for(self, moment: datetime) -> Path:
        return self.audit_dir / f"activity_{moment.strftime('%Y-%m-%d')}.jsonl"

    def log_event(self, record: ActivityRecord) -> str:
        """Append ``record`` to today's file and return its id."""
        path = self._file_for(datetime.now(timezone.utc))
        line = json.dumps(record.model_dump(mode="json"))
        try:
            with open(path, "a", encoding="utf-8") as f:
                f.write(line + "\n")
        except OSError as e:
            logger.error(f"Could not write activity {record.id} to {path}: {e}")
            raise

        logger.info(f"Logged {record.action} for request {record.request_id}")
        return record.id

    def _newest_first(self) -> Iterator[ActivityRecord]:
        for path in sorted(self.audit_dir.glob(ACTIVITY_FILE_PATTERN), reverse=True):
            with open(path, encoding="utf-8") as f:
                lines = f.read().splitlines()
            for line in reversed(lines):
                if not line.strip():
                    continue
                try:
                    yield ActivityRecord.model_validate_json(line)
                except ValueError as e:
                    logger.warning(f"Skipping unreadable activity record in {path}: {e}")

    def get_events(
        self,
        request_id: Optional[str] = None,
        action: Optional[str] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        limit: int = 100,
    ) -> List[ActivityRecord]:
        """
        Activity records matching every given filter, most recent first.

        ``start_date`` and ``end_date`` bound the record timestamp inclusively.
        At most ``limit`` records are returned.
        """
        matched: List[ActivityRecord] = []
        for record in self._newest_first():
            if len(matched) >= limit:
                break
            if request_id and record.request_id != request_id:
                continue
            if action and record.action != action:
                continue
            if start_date and record.timestamp < start_date:
                continue
            if end_date and record.timestamp > end_date:
                continue
            matched.append(record)
        return matched

    def get_request_trail(self, request_id: str) -> List[ActivityRecord]:
        """Full trail of a request in chronological order."""
        return list(reversed(self.get_events(request_id=request_id, limit=10000)))

    def generate_activity_report(self, start_date: datetime, end_date: datetime) -> Dict[str, Any]:
        """Counts per action and the number of distinct requests touched in a period."""
        records = self.get_events(start_date=start_date, end_date=end_date, limit=10000)
        by_action = Counter(r.action for r in records)

        return {
            "period": {"start": start_date.isoformat(), "end": end_date.isoformat()},
            "summary": {
                "total_events": len(records),
                "requests_touched": len({r.request_id for r in records}),
                "events_by_action": dict(by_action),
            },
            "events": [r.model_dump(mode="json") for r in records],
        }
