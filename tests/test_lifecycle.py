"""
Lifecycle state machine tests: legal paths, four-eyes approval, release
freezing, cancellation, NACK repair and the audit trail.
"""

import pytest

from fingate.lifecycle import (
    FOUR_EYES_VIOLATION,
    FROZEN_FIELD,
    INVALID_TRANSITION,
    REPORT_ALREADY_ATTACHED,
    VALIDATION_FAILED,
    TRANSITIONS,
    LifecycleError,
    LifecycleEvent,
    MessageStatus,
    can_edit,
    require_four_eyes,
)
from fingate.network_report import parse_network_report
from fingate.payloads import FreeFormatPayload, SwiftHeader


def _events(message):
    return [a.event for a in message.audit_log]


@pytest.fixture
def draft(machine, mt199):
    return machine.create(mt199, SwiftHeader(receiver_bic="COBADEFF"), created_by=1)


@pytest.fixture
def approved(machine, draft):
    machine.validate(draft, 1)
    machine.submit_approval(draft, 1)
    machine.approve(draft, 5)
    machine.approve(draft, 7)
    return draft


@pytest.fixture
def released(machine, approved):
    return machine.release(approved, 9)


class TestFourEyes:

    @pytest.mark.parametrize("a,b,ok", [
        (5, 7, True),
        (5, 5, False),
        (0, 7, False),
        (5, -1, False),
        (None, 7, False),
        (5, None, False),
    ])
    def test_require_four_eyes(self, a, b, ok):
        assert require_four_eyes(a, b) is ok

    def test_same_approver_twice(self, machine, draft):
        machine.validate(draft)
        machine.submit_approval(draft)
        machine.approve(draft, 5)
        with pytest.raises(LifecycleError) as exc:
            machine.approve(draft, 5)
        assert exc.value.code == FOUR_EYES_VIOLATION
        assert draft.status is MessageStatus.PENDING_APPROVAL
        assert draft.approved_by2 is None

    def test_non_positive_approver(self, machine, draft):
        machine.validate(draft)
        machine.submit_approval(draft)
        with pytest.raises(LifecycleError) as exc:
            machine.approve(draft, 0)
        assert exc.value.code == FOUR_EYES_VIOLATION
        assert draft.approved_by1 is None

    def test_two_distinct_approvers(self, approved):
        assert approved.status is MessageStatus.APPROVED
        assert (approved.approved_by1, approved.approved_by2) == (5, 7)


class TestTransitions:

    def test_create_fills_sender(self, draft):
        assert draft.status is MessageStatus.DRAFT
        assert draft.swift_header.sender_bic == "BOMGBRS1XXX"
        assert _events(draft) == ["CREATED"]

    def test_release_from_draft_is_invalid(self, machine, draft):
        with pytest.raises(LifecycleError) as exc:
            machine.release(draft)
        assert exc.value.code == INVALID_TRANSITION
        assert draft.status is MessageStatus.DRAFT
        assert draft.fin_message is None
        assert _events(draft) == ["CREATED"]

    def test_transition_returns_error_instead_of_raising(self, machine, draft):
        message, error = machine.transition(draft, LifecycleEvent.ACK)
        assert message is draft
        assert error.code == INVALID_TRANSITION

    def test_validation_failure_sets_repair_flag(self, machine):
        bad = machine.create(FreeFormatPayload(transaction_reference="", narrative="X"),
                             SwiftHeader(receiver_bic="COBADEFF"))
        machine.validate(bad, 3)
        assert bad.status is MessageStatus.DRAFT
        assert bad.repair_required_flag
        assert bad.last_validation_errors[0]["field"] == ":20"
        assert _events(bad) == ["CREATED", "VALIDATION_FAILED"]

    def test_full_path_audit(self, machine, released):
        machine.ack(released, 9)
        machine.complete(released, 9)
        assert released.status is MessageStatus.COMPLETED
        assert _events(released) == [
            "CREATED", "VALIDATED", "SUBMITTED_FOR_APPROVAL", "APPROVED_BY_1",
            "APPROVED_BY_2", "RELEASED", "ACK_RECEIVED", "COMPLETED",
        ]
        assert [a.id for a in released.audit_log] == list(range(1, 9))
        assert released.ack_timestamp is not None

    def test_terminal_states_have_no_exits(self):
        assert not any(s is MessageStatus.CANCELLED for s, _ in TRANSITIONS)
        assert {e for s, e in TRANSITIONS if s is MessageStatus.COMPLETED} == {
            LifecycleEvent.ATTACH_NETWORK_REPORT}


class TestRelease:

    def test_release_freezes_auto_fields(self, released):
        header = released.swift_header
        assert released.status is MessageStatus.RELEASED
        assert (header.session_number, header.sequence_number) == ("0001", "000001")
        assert header.chk and released.fin_message.endswith("{5:{CHK:" + header.chk + "}}")
        assert released.release_timestamp is not None
        details = released.audit_log[-1].details
        assert details["session"] == "0001"

    def test_release_revalidates(self, machine, approved):
        approved.payload.narrative = "A" * 4000
        with pytest.raises(LifecycleError) as exc:
            machine.release(approved)
        assert exc.value.code == VALIDATION_FAILED
        assert approved.status is MessageStatus.APPROVED
        assert approved.fin_message is None

    def test_cannot_edit_after_release(self, machine, released):
        assert not can_edit(released)
        with pytest.raises(LifecycleError) as exc:
            machine.amend(released, 1, header_changes={"mur": "X"})
        assert exc.value.code == INVALID_TRANSITION


class TestCancel:

    def test_cancel_before_release(self, machine, draft):
        machine.cancel(draft, 2, reason="duplicate")
        assert draft.status is MessageStatus.CANCELLED
        assert draft.audit_log[-1].details["reason"] == "duplicate"
        with pytest.raises(LifecycleError):
            machine.validate(draft)

    def test_cancel_after_release_only_flags(self, machine, released):
        machine.cancel(released, 2)
        assert released.status is MessageStatus.RELEASED
        assert released.cancellation_requested_flag
        assert _events(released)[-1] == "CANCELLATION_REQUESTED"
        with pytest.raises(LifecycleError):
            machine.cancel(released, 2)


class TestNackAndAmend:

    def test_nack_then_amend_keeps_identity(self, machine, released):
        original = released.swift_header
        original_fin = released.fin_message
        machine.nack(released, "T27", 9)
        assert released.status is MessageStatus.NACK_RECEIVED
        assert released.repair_required_flag
        assert can_edit(released)

        fixed = FreeFormatPayload(transaction_reference="REF123456", narrative="HELLO AGAIN")
        machine.amend(released, 4, payload=fixed)
        assert released.status is MessageStatus.DRAFT
        assert released.released_fin_history == [original_fin]
        assert released.fin_message is None
        assert released.approved_by1 is None and released.approved_by2 is None
        assert released.swift_header.session_number == original.session_number
        assert released.swift_header.sequence_number == original.sequence_number
        assert released.swift_header.chk is None
        assert not released.repair_required_flag

    def test_second_release_reuses_session_and_sequence(self, machine, released, counter):
        first = released.swift_header
        machine.nack(released, "T27")
        machine.amend(released, 4, payload=FreeFormatPayload(transaction_reference="REF123456",
                                                             narrative="HELLO AGAIN"))
        machine.validate(released)
        machine.submit_approval(released)
        machine.approve(released, 5)
        machine.approve(released, 7)
        machine.release(released)
        assert released.swift_header.sequence_number == first.sequence_number
        assert released.swift_header.chk != first.chk
        assert counter.peek("BOMGBRS1XXXX") == (1, 1)

    def test_frozen_fields(self, machine, released):
        machine.nack(released, "T27")
        with pytest.raises(LifecycleError) as exc:
            machine.amend(released, header_changes={"sequence_number": "000099"})
        assert exc.value.code == FROZEN_FIELD

    def test_unknown_header_field(self, machine, draft):
        with pytest.raises(LifecycleError) as exc:
            machine.amend(draft, header_changes={"colour": "red"})
        assert exc.value.code == INVALID_TRANSITION

    def test_amend_draft(self, machine, draft):
        machine.amend(draft, 1, header_changes={"message_priority": "U"})
        assert draft.swift_header.message_priority == "U"
        assert _events(draft) == ["CREATED", "AMENDED"]

    @pytest.mark.parametrize("changes,field", [
        ({"session_number": "7"}, "session_number"),
        ({"sequence_number": "12AB"}, "sequence_number"),
        ({"logical_terminal": "SHORT"}, "logical_terminal"),
        ({"uetr": "not-a-uuid"}, "uetr"),
    ])
    def test_malformed_header_amendment_fails_validation(self, machine, draft, changes, field):
        """Header values set through amend are format-checked before release."""
        machine.amend(draft, 1, header_changes=changes)
        machine.validate(draft, 1)
        assert draft.status is MessageStatus.DRAFT
        assert draft.repair_required_flag
        assert {"field": field, "code": "BAD_FORMAT"}.items() <= draft.last_validation_errors[0].items()
        assert _events(draft)[-1] == "VALIDATION_FAILED"
        assert draft.fin_message is None


class TestRepairFlag:

    def test_flagged_validated_message_cannot_be_submitted(self, machine, draft):
        """A failed re-validation of a Validated message blocks approval."""
        machine.validate(draft, 1)
        draft.payload.narrative = "A" * 4000
        machine.validate(draft, 1)
        assert draft.status is MessageStatus.VALIDATED
        assert draft.repair_required_flag

        with pytest.raises(LifecycleError) as exc:
            machine.submit_approval(draft, 1)
        assert exc.value.code == VALIDATION_FAILED
        assert draft.status is MessageStatus.VALIDATED
        assert "SUBMITTED_FOR_APPROVAL" not in _events(draft)

    def test_repair_then_revalidate_unblocks(self, machine, draft):
        machine.validate(draft, 1)
        draft.payload.narrative = "A" * 4000
        machine.validate(draft, 1)
        machine.amend(draft, 1, payload=FreeFormatPayload(transaction_reference="REF1",
                                                          narrative="FIXED"))
        machine.validate(draft, 1)
        machine.submit_approval(draft, 1)
        assert draft.status is MessageStatus.PENDING_APPROVAL
        assert not draft.repair_required_flag


class TestNetworkReport:

    def test_attach_once(self, machine, released):
        report = parse_network_report("{CHK} : " + released.swift_header.chk + "\nTRACKING : 42")
        machine.attach_network_report(released, report, 9)
        assert released.network_report.chk_matches(released.swift_header.chk)
        with pytest.raises(LifecycleError) as exc:
            machine.attach_network_report(released, report, 9)
        assert exc.value.code == REPORT_ALREADY_ATTACHED

    def test_not_before_release(self, machine, draft):
        message, error = machine.transition(draft, LifecycleEvent.ATTACH_NETWORK_REPORT,
                                            report=parse_network_report(""))
        assert error.code == INVALID_TRANSITION
        assert message.network_report is None

    def test_to_dict(self, released):
        data = released.to_dict()
        assert data["status"] == "Released to SWIFT"
        assert data["swift_header"]["session_number"] == "0001"
        assert data["audit_log"][0]["event"] == "CREATED"
