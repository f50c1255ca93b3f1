"""
Tests for the ClearanceWorkflow.

End-to-end scenarios through the inbound operations: request creation,
step resolution, interdependent clusters, rejection, bookends, archiving,
events and the activity trail.
"""

import threading
from unittest.mock import MagicMock, patch

import pytest

from clearance_engine.engine.workflow_definition import WorkflowDefinition
from clearance_engine.errors import (
    ActiveRequestExists,
    AlreadyResolved,
    DependencyNotMet,
    InterdependencyIncomplete,
    InvalidTransition,
    PersistenceError,
    RequestNotFound,
    RoleMismatch,
    StepNotFound,
)
from clearance_engine.models import (
    ClearancePurpose,
    RequestStatus,
    SignatureTag,
    StepAnnotations,
    StepStatus,
)
from clearance_engine.notifications import EventType

from conftest import chain_catalog, statuses, step_by_order, store_catalog

C = StepStatus.CLEARED
A = StepStatus.AVAILABLE
P = StepStatus.PENDING


def clear_all(engine, act, request_id, orders):
    for order in orders:
        act(engine, request_id, order, annotations=StepAnnotations(signature=f"data:sig-{order}"))


class TestRequestCreation:

    def test_create_request(self, engine):
        request_id = engine.create_request("STAFF-1", "Resignation", {"user_id": "hr-1"})
        request = engine.get_request(request_id)

        assert request.staff_id == "STAFF-1"
        assert request.purpose == ClearancePurpose.RESIGNATION
        assert request.status == RequestStatus.INITIATED
        assert request.reference_code.startswith("TCS-")

        steps = engine.get_steps(request_id)
        assert len(steps) == 13
        assert statuses(steps)[1] == A
        assert all(s.status == P for s in steps[1:])

    def test_step_available_event_on_create(self, engine, sink):
        engine.create_request("STAFF-1", ClearancePurpose.TRANSFER)
        events = sink.of_type(EventType.STEP_AVAILABLE)
        assert [e.order for e in events] == [1]
        assert events[0].roles == ["AcademicVicePresident"]

    def test_invalid_input(self, engine):
        with pytest.raises(ValueError, match="Staff ID is required"):
            engine.create_request("", "Resignation")
        with pytest.raises(ValueError, match="Invalid purpose"):
            engine.create_request("STAFF-1", "Holiday")

    def test_one_active_request_per_staff(self, engine):
        engine.create_request("STAFF-1", "Resignation")
        with pytest.raises(ActiveRequestExists):
            engine.create_request("STAFF-1", "Retirement")

    def test_new_request_after_failure(self, engine, act):
        request_id = engine.create_request("STAFF-1", "Resignation")
        act(engine, request_id, 1, outcome="rejected")
        assert engine.create_request("STAFF-1", "Resignation") != request_id

    def test_unknown_request(self, engine):
        with pytest.raises(RequestNotFound):
            engine.get_request("missing")
        with pytest.raises(RequestNotFound):
            engine.get_status("missing")

    def test_list_requests(self, engine):
        first = engine.create_request("STAFF-1", "Resignation")
        engine.create_request("STAFF-2", "Leave")
        assert len(engine.list_requests()) == 2
        assert [r.id for r in engine.list_requests(staff_id="STAFF-1")] == [first]
        assert len(engine.list_requests(status="initiated")) == 2


class TestChainScenario:
    """Three steps in a chain."""

    @pytest.fixture
    def chain_engine(self, make_engine):
        return make_engine(WorkflowDefinition.from_dict(chain_catalog(3)))

    def test_clearing_opens_next_step_only(self, chain_engine, act):
        request_id = chain_engine.create_request("STAFF-1", "Resignation")
        assert statuses(chain_engine.get_steps(request_id)) == {1: A, 2: P, 3: P}

        result = act(chain_engine, request_id, 1)

        assert [c.template_order for c in result.changed_instances] == [2]
        assert statuses(chain_engine.get_steps(request_id)) == {1: C, 2: A, 3: P}
        assert step_by_order(chain_engine.get_steps(request_id), 2).can_process

    def test_completion(self, chain_engine, act, sink):
        request_id = chain_engine.create_request("STAFF-1", "Resignation")
        for order in (1, 2, 3):
            result = act(chain_engine, request_id, order)

        assert result.request_status == RequestStatus.COMPLETED
        assert chain_engine.get_request(request_id).completed_at is not None
        assert [e.status for e in sink.of_type(EventType.REQUEST_COMPLETED)] == ["completed"]
        assert sink.of_type(EventType.REQUEST_TERMINAL) == []


class TestInterdependentScenario:
    """Two interdependent store officers feeding the property director."""

    @pytest.fixture
    def store_engine(self, make_engine):
        return make_engine(WorkflowDefinition.from_dict(store_catalog()))

    def test_director_waits_for_both_officers(self, store_engine, act):
        request_id = store_engine.create_request("STAFF-1", "Resignation")
        act(store_engine, request_id, 1)

        result = act(store_engine, request_id, 2)
        director = step_by_order(store_engine.get_steps(request_id), 4)
        assert result.changed_instances == []
        assert director.status == P
        assert not director.can_process

        result = act(store_engine, request_id, 3)
        assert [c.template_order for c in result.changed_instances] == [4]

    def test_director_refused_naming_pending_officer(self, store_engine, act):
        request_id = store_engine.create_request("STAFF-1", "Resignation")
        act(store_engine, request_id, 1)
        act(store_engine, request_id, 3)

        with pytest.raises(InterdependencyIncomplete) as exc_info:
            act(store_engine, request_id, 4)
        assert exc_info.value.pending_roles == ["Store1Officer"]

    def test_interdependency_status(self, store_engine, act):
        request_id = store_engine.create_request("STAFF-1", "Resignation")
        act(store_engine, request_id, 1)
        act(store_engine, request_id, 2)

        status = store_engine.check_interdependent_steps(request_id, 3)
        assert status.total_required == 2
        assert status.completed == 1
        assert not status.all_completed
        assert status.completed_roles == ["Store1Officer"]
        assert status.pending_roles == ["Store2Officer"]

    def test_concurrent_officers(self, store_engine, act):
        request_id = store_engine.create_request("STAFF-1", "Resignation")
        act(store_engine, request_id, 1)

        barrier = threading.Barrier(2)
        errors = []

        def clear(order):
            barrier.wait()
            try:
                act(store_engine, request_id, order)
            except Exception as e:  # pragma: no cover - surfaced by the assertion below
                errors.append(e)

        threads = [threading.Thread(target=clear, args=(order,)) for order in (2, 3)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert errors == []
        assert statuses(store_engine.get_steps(request_id)) == {1: C, 2: C, 3: C, 4: A}


class TestRefusedActions:

    @pytest.fixture
    def request_id(self, engine):
        return engine.create_request("STAFF-1", "Resignation")

    def test_role_mismatch_leaves_state(self, engine, request_id, act):
        with pytest.raises(RoleMismatch):
            act(engine, request_id, 1, role="DepartmentHead")
        assert statuses(engine.get_steps(request_id))[1] == A

    def test_second_resolution(self, engine, request_id, act):
        act(engine, request_id, 1)
        with pytest.raises(AlreadyResolved):
            act(engine, request_id, 1)

    def test_dependency_not_met(self, engine, request_id, act):
        with pytest.raises(DependencyNotMet) as exc_info:
            act(engine, request_id, 3)
        assert [u["order"] for u in exc_info.value.unmet] == [2]
        assert not exc_info.value.blocked

    def test_unknown_step(self, engine):
        with pytest.raises(StepNotFound):
            engine.resolve_step("missing", "DepartmentHead", "u", "cleared")

    def test_invalid_outcome(self, engine, request_id, act):
        with pytest.raises(ValueError):
            act(engine, request_id, 1, outcome="approved")

    def test_can_user_process_step(self, engine, request_id):
        steps = engine.get_steps(request_id)

        allowed = engine.can_user_process_step(steps[0].id, "avp-1", "AcademicVicePresident")
        assert allowed.can_process

        wrong_role = engine.can_user_process_step(steps[0].id, "dh-1", "DepartmentHead")
        assert not wrong_role.can_process
        assert "not authorized" in wrong_role.reason

        waiting = engine.can_user_process_step(steps[1].id, "dh-1", "DepartmentHead")
        assert not waiting.can_process
        assert "waiting on" in waiting.reason

        assert not engine.can_user_process_step("missing", "u", "r").can_process

    def test_validate_step_dependencies(self, engine, request_id):
        check = engine.validate_step_dependencies(engine.get_steps(request_id)[8].id)
        assert check.order == 9
        assert not check.satisfied
        assert sorted(u.order for u in check.unmet) == [4, 5, 8]


class TestRejectionScenario:
    """Rejecting step 5 in a chain of seven."""

    @pytest.fixture
    def chain_engine(self, make_engine):
        return make_engine(WorkflowDefinition.from_dict(chain_catalog(7)))

    def test_rejection_absorbs(self, chain_engine, act, sink):
        request_id = chain_engine.create_request("STAFF-1", "Resignation")
        for order in range(1, 5):
            act(chain_engine, request_id, order)

        result = act(chain_engine, request_id, 5, outcome="rejected",
                     annotations=StepAnnotations(comment="Unreturned equipment"))

        assert result.changed_instances == []
        assert result.request_status == RequestStatus.FAILED
        assert statuses(chain_engine.get_steps(request_id))[6] == P
        assert statuses(chain_engine.get_steps(request_id))[7] == P

        status = chain_engine.get_status(request_id)
        assert status.status == RequestStatus.FAILED
        assert status.is_blocked

        request = chain_engine.get_request(request_id)
        assert request.rejection_reason == "Unreturned equipment"
        assert [e.status for e in sink.of_type(EventType.REQUEST_TERMINAL)] == ["failed"]

    def test_failed_request_refuses_further_steps(self, chain_engine, act):
        request_id = chain_engine.create_request("STAFF-1", "Resignation")
        act(chain_engine, request_id, 1, outcome="rejected")

        with pytest.raises(InvalidTransition):
            act(chain_engine, request_id, 2)

        check = chain_engine.validate_step_dependencies(chain_engine.get_steps(request_id)[1].id)
        assert check.blocked

    def test_rejecting_twice_reports_already_resolved(self, chain_engine, act):
        request_id = chain_engine.create_request("STAFF-1", "Resignation")
        act(chain_engine, request_id, 1, outcome="rejected")

        with pytest.raises(AlreadyResolved):
            act(chain_engine, request_id, 1, outcome="rejected")
        with pytest.raises(AlreadyResolved):
            act(chain_engine, request_id, 1)

    def test_failed_request_lists_no_next_steps(self, engine, act):
        request_id = engine.create_request("STAFF-1", "Resignation")
        for order in (1, 2, 3):
            act(engine, request_id, order)
        act(engine, request_id, 4, outcome="rejected")

        status = engine.get_status(request_id)
        assert status.status == RequestStatus.FAILED
        assert status.next_available_steps == []
        assert not any(stage.can_progress for stage in status.stages_summary)


class TestFullClearance:
    """The bundled 13-step catalog from initiation to archive."""

    def test_complete_and_archive(self, engine, act, sink):
        request_id = engine.create_request("STAFF-1", "Retirement")

        engine.sign_bookend(
            request_id, "initial", "AcademicVicePresident", "avp-1",
            annotations=StepAnnotations(signature="data:avp-initial"),
        )
        assert engine.get_request(request_id).status == RequestStatus.VP_INITIAL_APPROVAL

        clear_all(engine, act, request_id, range(2, 13))
        assert engine.get_request(request_id).status == RequestStatus.VP_FINAL_APPROVAL

        with pytest.raises(InvalidTransition):
            engine.archive_request(request_id, "RecordsArchivesReviewer", "rec-1")

        result = engine.sign_bookend(
            request_id, SignatureTag.FINAL, "AcademicVicePresident", "avp-1",
            annotations=StepAnnotations(signature="data:avp-final"),
        )
        assert result.request_status == RequestStatus.COMPLETED
        assert [e.status for e in sink.of_type(EventType.REQUEST_COMPLETED)] == ["completed"]
        assert sink.of_type(EventType.REQUEST_TERMINAL) == []

        status = engine.get_status(request_id)
        assert status.overall_progress.completed_steps == 13
        assert status.overall_progress.completion_percentage == 100
        assert status.vp_initial_signed and status.vp_final_signed

        with pytest.raises(RoleMismatch):
            engine.archive_request(request_id, "AcademicVicePresident", "avp-1")

        archived = engine.archive_request(request_id, "RecordsArchivesReviewer", "rec-1", "data:rec")
        assert archived.status == RequestStatus.ARCHIVED
        assert engine.get_status(request_id).is_archived
        terminal = sink.of_type(EventType.REQUEST_TERMINAL)
        assert [(e.request_id, e.status) for e in terminal] == [(request_id, "archived")]

        history = [c.to_status for c in archived.status_history]
        assert history == [
            RequestStatus.VP_INITIAL_APPROVAL,
            RequestStatus.DEPARTMENT_REVIEW,
            RequestStatus.PROPERTY_CLEARANCE,
            RequestStatus.FINANCE_CLEARANCE,
            RequestStatus.HR_CLEARANCE,
            RequestStatus.VP_FINAL_APPROVAL,
            RequestStatus.COMPLETED,
            RequestStatus.ARCHIVED,
        ]

        record = engine.get_archive_record(request_id)
        assert [e.step_number for e in record.workflow_sequence] == list(range(1, 14))
        assert record.archived_by == "rec-1"

        signatures = engine.get_signatures(request_id)
        assert signatures["vpinitialsignature"] == "data:avp-initial"
        assert signatures["vpfinalsignature"] == "data:avp-final"
        assert signatures["store1officer"] == "data:sig-6"

        # Archived is absorbing; a new request may now be opened.
        engine.create_request("STAFF-1", "Transfer")

        actions = [r.action for r in engine.get_activity_trail(request_id)]
        assert actions[0] == "REQUEST_CREATED"
        assert actions[1] == "VP_INITIAL_SIGNED"
        assert actions.count("STEP_CLEARED") == 11
        assert actions[-2:] == ["VP_FINAL_SIGNED", "REQUEST_ARCHIVED"]

        available_orders = [e.order for e in sink.of_type(EventType.STEP_AVAILABLE) if e.request_id == request_id]
        assert sorted(available_orders) == list(range(1, 14))

    def test_archive_record_requires_archive(self, engine):
        request_id = engine.create_request("STAFF-1", "Retirement")
        with pytest.raises(InvalidTransition):
            engine.get_archive_record(request_id)

    def test_sign_bookend_wrong_tag_for_step(self, engine, act):
        request_id = engine.create_request("STAFF-1", "Retirement")
        with pytest.raises(RoleMismatch):
            act(engine, request_id, 1, signature_type="final")

    def test_inbox(self, engine, act):
        first = engine.create_request("STAFF-1", "Retirement")
        second = engine.create_request("STAFF-2", "Resignation")
        act(engine, first, 1)
        act(engine, first, 2)
        act(engine, first, 3)

        inbox = engine.get_available_steps_for_role("Store1Officer")
        assert [(s.request_id, s.order) for s in inbox] == [(first, 6)]
        assert {s.request_id for s in engine.get_available_steps_for_role("AcademicVicePresident")} == {second}

    def test_purge(self, engine):
        request_id = engine.create_request("STAFF-1", "Retirement")
        assert engine.purge_request(request_id, "admin")
        assert not engine.purge_request(request_id)
        with pytest.raises(RequestNotFound):
            engine.get_request(request_id)


class TestSideEffectFailures:

    def test_failed_save_rolls_back_resolution(self, make_engine, definition, act, sink):
        engine = make_engine(definition)
        request_id = engine.create_request("STAFF-1", "Resignation")
        sink.clear()

        with patch.object(engine.store, "_save_state", side_effect=OSError("disk full")):
            with pytest.raises(PersistenceError):
                act(engine, request_id, 1)

        assert statuses(engine.get_steps(request_id))[1] == A
        assert statuses(engine.get_steps(request_id))[2] == P
        assert engine.get_request(request_id).status == RequestStatus.INITIATED
        assert sink.events == []

    def test_audit_failure_does_not_undo_resolution(self, make_engine, definition, act):
        engine = make_engine(definition)
        request_id = engine.create_request("STAFF-1", "Resignation")
        engine.audit_logger = MagicMock()
        engine.audit_logger.log_event.side_effect = OSError("audit volume missing")

        result = act(engine, request_id, 1)

        assert result.updated_instance.status == C
        assert statuses(engine.get_steps(request_id))[2] == A

    def test_failing_subscriber_does_not_undo_resolution(self, make_engine, definition, act):
        engine = make_engine(definition)
        request_id = engine.create_request("STAFF-1", "Resignation")
        failing = MagicMock()
        failing.deliver.side_effect = RuntimeError("mail server down")
        engine.dispatcher.add_sink(failing)

        act(engine, request_id, 1)

        assert failing.deliver.called
        assert statuses(engine.get_steps(request_id))[1] == C
