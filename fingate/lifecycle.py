"""
Outbound message lifecycle.

State machine for a single MT message, from operator draft to network
acknowledgement:

    Draft ──validate──▶ Validated ──submit──▶ Pending Approval
                                                   │ approve (1st, 2nd)
                                                   ▼
    Completed ◀─complete── ACK Received ◀─ack── Released to SWIFT ◀─release── Approved
                           NACK Received ◀─nack──┘

    cancel: before release ─▶ Cancelled
            after release  ─▶ cancellation request flag only
    amend:  Draft, or any message carrying the repair flag ─▶ Draft

Rules enforced here:
    - Every transition not in ``TRANSITIONS`` fails with INVALID_TRANSITION
      and leaves the message untouched.
    - A message carrying the repair flag cannot be submitted for approval.
    - Approval needs two distinct, positive approver ids (four eyes).
    - Release is the only step that assigns auto fields and stores the FIN
      text. After release both are frozen.
    - Each successful transition or operator action appends exactly one
      AuditEntry.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from fingate.assembler import MessageAssembler
from fingate.audit import AuditEntry, AuditTrail
from fingate.core import now_iso8601
from fingate.network_report import NetworkReport
from fingate.observability import GatewayLayer, GatewayLogger, get_logger
from fingate.payloads import MtPayload, SwiftHeader

log = get_logger("lifecycle", GatewayLayer.LIFECYCLE)


# =============================================================================
# STATES AND EVENTS
# =============================================================================

class MessageStatus(Enum):
    """Closed set of outbound message states."""
    DRAFT = "Draft"
    VALIDATED = "Validated"
    PENDING_APPROVAL = "Pending Approval"
    APPROVED = "Approved"
    RELEASED = "Released to SWIFT"
    ACK_RECEIVED = "ACK Received"
    NACK_RECEIVED = "NACK Received"
    CANCELLED = "Cancelled"
    COMPLETED = "Completed"

    def is_terminal(self) -> bool:
        return self in {MessageStatus.CANCELLED, MessageStatus.COMPLETED}

    def is_released(self) -> bool:
        """True once the FIN text has left the gateway."""
        return self in {
            MessageStatus.RELEASED,
            MessageStatus.ACK_RECEIVED,
            MessageStatus.NACK_RECEIVED,
            MessageStatus.COMPLETED,
        }

    def allows_cancellation(self) -> bool:
        return self in {
            MessageStatus.DRAFT,
            MessageStatus.VALIDATED,
            MessageStatus.PENDING_APPROVAL,
            MessageStatus.APPROVED,
        }


class LifecycleEvent(Enum):
    VALIDATE = "validate"
    SUBMIT_APPROVAL = "submit_approval"
    APPROVE = "approve"
    RELEASE = "release"
    ACK = "ack"
    NACK = "nack"
    COMPLETE = "complete"
    CANCEL = "cancel"
    AMEND = "amend"
    ATTACH_NETWORK_REPORT = "attach_network_report"


S = MessageStatus
E = LifecycleEvent

TRANSITIONS: Dict[Tuple[MessageStatus, LifecycleEvent], MessageStatus] = {
    (S.DRAFT, E.VALIDATE): S.VALIDATED,
    (S.VALIDATED, E.VALIDATE): S.VALIDATED,
    (S.VALIDATED, E.SUBMIT_APPROVAL): S.PENDING_APPROVAL,
    (S.PENDING_APPROVAL, E.APPROVE): S.APPROVED,
    (S.APPROVED, E.RELEASE): S.RELEASED,
    (S.RELEASED, E.ACK): S.ACK_RECEIVED,
    (S.RELEASED, E.NACK): S.NACK_RECEIVED,
    (S.ACK_RECEIVED, E.COMPLETE): S.COMPLETED,
    (S.DRAFT, E.CANCEL): S.CANCELLED,
    (S.VALIDATED, E.CANCEL): S.CANCELLED,
    (S.PENDING_APPROVAL, E.CANCEL): S.CANCELLED,
    (S.APPROVED, E.CANCEL): S.CANCELLED,
    # post-release cancel only raises the request flag
    (S.RELEASED, E.CANCEL): S.RELEASED,
    (S.ACK_RECEIVED, E.CANCEL): S.ACK_RECEIVED,
    (S.NACK_RECEIVED, E.CANCEL): S.NACK_RECEIVED,
    (S.DRAFT, E.AMEND): S.DRAFT,
    (S.VALIDATED, E.AMEND): S.DRAFT,
    (S.NACK_RECEIVED, E.AMEND): S.DRAFT,
    (S.RELEASED, E.ATTACH_NETWORK_REPORT): S.RELEASED,
    (S.ACK_RECEIVED, E.ATTACH_NETWORK_REPORT): S.ACK_RECEIVED,
    (S.NACK_RECEIVED, E.ATTACH_NETWORK_REPORT): S.NACK_RECEIVED,
    (S.COMPLETED, E.ATTACH_NETWORK_REPORT): S.COMPLETED,
}

del S, E


# =============================================================================
# ERRORS
# =============================================================================

INVALID_TRANSITION = "INVALID_TRANSITION"
FOUR_EYES_VIOLATION = "FOUR_EYES_VIOLATION"
VALIDATION_FAILED = "VALIDATION_FAILED"
FROZEN_FIELD = "FROZEN_FIELD"
REPORT_ALREADY_ATTACHED = "REPORT_ALREADY_ATTACHED"


class LifecycleError(Exception):
    """A lifecycle operation was refused. The message was not modified."""

    def __init__(self, code: str, message: str, message_id: Optional[str] = None, errors: Any = None):
        self.code = code
        self.message = message
        self.message_id = message_id
        self.errors = list(errors or [])
        super().__init__(f"{code}: {message}")

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {"code": self.code, "message": self.message}
        if self.message_id:
            d["message_id"] = self.message_id
        if self.errors:
            d["errors"] = [e.to_dict() for e in self.errors]
        return d


def require_four_eyes(approver1: Optional[int], approver2: Optional[int]) -> bool:
    """Two distinct, positive approver ids."""
    if approver1 is None or approver2 is None:
        return False
    return approver1 != approver2 and approver1 > 0 and approver2 > 0


# =============================================================================
# RECORDS
# =============================================================================

@dataclass
class MtMessage:
    """An outbound message and its lifecycle record."""
    payload: MtPayload
    swift_header: SwiftHeader
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    status: MessageStatus = MessageStatus.DRAFT
    fin_message: Optional[str] = None
    audit_log: List[AuditEntry] = field(default_factory=list)
    repair_required_flag: bool = False
    cancellation_requested_flag: bool = False
    approved_by1: Optional[int] = None
    approved_by2: Optional[int] = None
    nack_code: Optional[str] = None
    release_timestamp: Optional[str] = None
    ack_timestamp: Optional[str] = None
    network_report: Optional[NetworkReport] = None
    released_fin_history: List[str] = field(default_factory=list)
    last_validation_errors: List[Dict[str, Any]] = field(default_factory=list)
    created_by: Optional[int] = None
    created_at: str = field(default_factory=now_iso8601)

    @property
    def mt_type(self) -> str:
        return self.payload.mt_type

    @property
    def transaction_reference_number(self) -> str:
        return self.payload.transaction_reference

    @property
    def related_reference(self) -> str:
        return self.payload.related_reference

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "mt_type": self.mt_type,
            "transaction_reference_number": self.transaction_reference_number,
            "related_reference": self.related_reference or None,
            "status": self.status.value,
            "swift_header": self.swift_header.to_dict(),
            "payload": self.payload.to_dict(),
            "fin_message": self.fin_message,
            "repair_required_flag": self.repair_required_flag,
            "cancellation_requested_flag": self.cancellation_requested_flag,
            "approved_by1": self.approved_by1,
            "approved_by2": self.approved_by2,
            "nack_code": self.nack_code,
            "release_timestamp": self.release_timestamp,
            "ack_timestamp": self.ack_timestamp,
            "network_report": self.network_report.to_dict() if self.network_report else None,
            "released_fin_history": list(self.released_fin_history),
            "audit_log": [a.to_dict() for a in self.audit_log],
            "created_by": self.created_by,
            "created_at": self.created_at,
        }


def can_edit(message: MtMessage) -> bool:
    """Payload and header are editable only in Draft or under the repair flag."""
    return message.status is MessageStatus.DRAFT or message.repair_required_flag


# =============================================================================
# STATE MACHINE
# =============================================================================

class LifecycleStateMachine:
    """
    Applies lifecycle operations to ``MtMessage`` records.

    The machine itself holds no per-message state. Callers that share a
    message between threads serialize access per message id (see
    ``fingate.store.MessageStore``).
    """

    def __init__(
        self,
        assembler: MessageAssembler,
        clock: Callable[[], str] = now_iso8601,
    ):
        self.assembler = assembler
        self._clock = clock
        self._trail = AuditTrail(clock)

    # -------------------------------------------------------------------------
    # helpers
    # -------------------------------------------------------------------------

    def _target(self, message: MtMessage, event: LifecycleEvent) -> MessageStatus:
        target = TRANSITIONS.get((message.status, event))
        if target is None:
            raise LifecycleError(
                INVALID_TRANSITION,
                f"cannot {event.value} a message in status {message.status.value!r}",
                message.id,
            )
        return target

    @staticmethod
    def _log_for(message: MtMessage) -> GatewayLogger:
        return log.bind(message_id=message.id, mt_type=message.mt_type)

    def _audit(self, message: MtMessage, event: str, actor_id: Optional[int], **details: Any) -> AuditEntry:
        entry = self._trail.append(message.audit_log, event, actor_id, **details)
        self._log_for(message).info(
            f"Message {event.lower().replace('_', ' ')}",
            operation=event,
            status=message.status.value,
            actor_id=actor_id,
        )
        return entry

    def _move(self, message: MtMessage, target: MessageStatus, event: str,
              actor_id: Optional[int], **details: Any) -> MtMessage:
        previous = message.status
        message.status = target
        self._audit(message, event, actor_id, from_status=previous.value, to_status=target.value, **details)
        return message

    # -------------------------------------------------------------------------
    # operations
    # -------------------------------------------------------------------------

    def create(
        self,
        payload: MtPayload,
        header: Optional[SwiftHeader] = None,
        created_by: Optional[int] = None,
    ) -> MtMessage:
        """New Draft message. Auto fields stay empty until release."""
        header = header or SwiftHeader()
        if not header.sender_bic:
            header = header.copy(sender_bic=self.assembler.originator.sender_bic)
        message = MtMessage(payload=payload, swift_header=header, created_by=created_by)
        self._audit(message, "CREATED", created_by, status=message.status.value)
        return message

    def validate(self, message: MtMessage, actor_id: Optional[int] = None) -> MtMessage:
        """Draft/Validated -> Validated.

        On validation errors the status is unchanged, the repair flag is set
        and a VALIDATION_FAILED entry is recorded; the errors are returned on
        ``message.last_validation_errors``.
        """
        target = self._target(message, LifecycleEvent.VALIDATE)
        errors = self.assembler.validate(message.payload, message.swift_header)
        message.last_validation_errors = [e.to_dict() for e in errors]
        if errors:
            message.repair_required_flag = True
            self._audit(message, "VALIDATION_FAILED", actor_id, errors=message.last_validation_errors)
            return message

        message.repair_required_flag = False
        return self._move(message, target, "VALIDATED", actor_id)

    def submit_approval(self, message: MtMessage, actor_id: Optional[int] = None) -> MtMessage:
        target = self._target(message, LifecycleEvent.SUBMIT_APPROVAL)
        if message.repair_required_flag:
            raise LifecycleError(
                VALIDATION_FAILED,
                "message is flagged for repair; amend and validate it first",
                message.id,
            )
        return self._move(message, target, "SUBMITTED_FOR_APPROVAL", actor_id)

    def approve(self, message: MtMessage, approver_id: int) -> MtMessage:
        """Record one approval. The second distinct approver moves the message to Approved."""
        target = self._target(message, LifecycleEvent.APPROVE)
        if approver_id is None or approver_id <= 0:
            raise LifecycleError(FOUR_EYES_VIOLATION, "approver id must be positive", message.id)

        if message.approved_by1 is None:
            message.approved_by1 = approver_id
            self._audit(message, "APPROVED_BY_1", approver_id)
            return message

        if not require_four_eyes(message.approved_by1, approver_id):
            raise LifecycleError(
                FOUR_EYES_VIOLATION,
                "second approval must come from a different approver",
                message.id,
            )
        message.approved_by2 = approver_id
        return self._move(message, target, "APPROVED_BY_2", approver_id,
                          approvers=[message.approved_by1, approver_id])

    def release(self, message: MtMessage, actor_id: Optional[int] = None) -> MtMessage:
        """Approved -> Released to SWIFT. Assigns and freezes auto fields and FIN text."""
        target = self._target(message, LifecycleEvent.RELEASE)
        if not require_four_eyes(message.approved_by1, message.approved_by2):
            raise LifecycleError(FOUR_EYES_VIOLATION, "release requires two distinct approvals", message.id)

        result = self.assembler.assemble(message.payload, message.swift_header, with_auto_fields=True)
        if not result.valid:
            raise LifecycleError(VALIDATION_FAILED, "message no longer validates", message.id, result.errors)

        auto = result.auto_fields
        message.swift_header = message.swift_header.copy(
            logical_terminal=auto.sender_lt,
            session_number=auto.session_number,
            sequence_number=auto.sequence_number,
            mur=auto.mur,
            uetr=auto.uetr,
            chk=auto.chk,
        )
        message.fin_message = result.fin_message
        message.release_timestamp = self._clock()
        return self._move(
            message, target, "RELEASED", actor_id,
            session=auto.session_number, sequence=auto.sequence_number, uetr=auto.uetr, chk=auto.chk,
        )

    def ack(self, message: MtMessage, actor_id: Optional[int] = None) -> MtMessage:
        target = self._target(message, LifecycleEvent.ACK)
        message.ack_timestamp = self._clock()
        return self._move(message, target, "ACK_RECEIVED", actor_id)

    def nack(
        self,
        message: MtMessage,
        nack_code: str,
        actor_id: Optional[int] = None,
        repair_required: bool = True,
    ) -> MtMessage:
        target = self._target(message, LifecycleEvent.NACK)
        message.nack_code = nack_code
        message.ack_timestamp = self._clock()
        message.repair_required_flag = repair_required
        return self._move(message, target, "NACK_RECEIVED", actor_id,
                          nack_code=nack_code, repair_required=repair_required)

    def complete(self, message: MtMessage, actor_id: Optional[int] = None) -> MtMessage:
        target = self._target(message, LifecycleEvent.COMPLETE)
        return self._move(message, target, "COMPLETED", actor_id)

    def cancel(self, message: MtMessage, actor_id: Optional[int] = None, reason: str = "") -> MtMessage:
        """Cancel before release; after release only request cancellation."""
        target = self._target(message, LifecycleEvent.CANCEL)
        if message.status.allows_cancellation():
            return self._move(message, target, "CANCELLED", actor_id, reason=reason)

        if message.cancellation_requested_flag:
            raise LifecycleError(INVALID_TRANSITION, "cancellation already requested", message.id)
        message.cancellation_requested_flag = True
        self._audit(message, "CANCELLATION_REQUESTED", actor_id, reason=reason)
        return message

    def amend(
        self,
        message: MtMessage,
        actor_id: Optional[int] = None,
        payload: Optional[MtPayload] = None,
        header_changes: Optional[Dict[str, Any]] = None,
    ) -> MtMessage:
        """Edit payload and/or header of a Draft or repair-flagged message.

        The message returns to Draft. A previously released FIN text is moved
        to ``released_fin_history``; approvals and CHK are reset. Session,
        sequence and UETR, once assigned, cannot be changed.
        """
        target = self._target(message, LifecycleEvent.AMEND)
        if not can_edit(message):
            raise LifecycleError(
                INVALID_TRANSITION,
                f"message in status {message.status.value!r} is not editable",
                message.id,
            )
        changes = dict(header_changes or {})
        for name in ("session_number", "sequence_number", "uetr", "chk"):
            if name in changes and getattr(message.swift_header, name) not in (None, changes[name]):
                raise LifecycleError(FROZEN_FIELD, f"{name} is assigned and cannot change", message.id)
        unknown = set(changes) - set(SwiftHeader().to_dict())
        if unknown:
            raise LifecycleError(INVALID_TRANSITION, f"unknown header fields: {sorted(unknown)}", message.id)

        previous = message.status
        if message.fin_message:
            message.released_fin_history.append(message.fin_message)
            message.fin_message = None
        if payload is not None:
            message.payload = payload
        message.swift_header = message.swift_header.copy(chk=None, **{k: v for k, v in changes.items() if k != "chk"})
        message.approved_by1 = None
        message.approved_by2 = None
        message.repair_required_flag = False
        message.nack_code = None
        return self._move(
            message, target, "AMENDED", actor_id,
            changed=sorted(changes) + (["payload"] if payload is not None else []),
            from_status_was_repair=previous is MessageStatus.NACK_RECEIVED,
        )

    def attach_network_report(
        self,
        message: MtMessage,
        report: NetworkReport,
        actor_id: Optional[int] = None,
    ) -> MtMessage:
        """Attach the gateway trailer report. Post-release and at most once."""
        self._target(message, LifecycleEvent.ATTACH_NETWORK_REPORT)
        if message.network_report is not None:
            raise LifecycleError(REPORT_ALREADY_ATTACHED, "network report is append-only", message.id)
        message.network_report = report
        self._audit(message, "NETWORK_REPORT_ATTACHED", actor_id, chk=report.chk, tracking=report.tracking)
        return message

    # -------------------------------------------------------------------------
    # generic entry point
    # -------------------------------------------------------------------------

    def transition(
        self,
        message: MtMessage,
        event: LifecycleEvent,
        actor_id: Optional[int] = None,
        **kwargs: Any,
    ) -> Tuple[MtMessage, Optional[LifecycleError]]:
        """Apply ``event`` and return ``(message, error)`` instead of raising."""
        handlers: Dict[LifecycleEvent, Callable[..., MtMessage]] = {
            LifecycleEvent.VALIDATE: lambda: self.validate(message, actor_id),
            LifecycleEvent.SUBMIT_APPROVAL: lambda: self.submit_approval(message, actor_id),
            LifecycleEvent.APPROVE: lambda: self.approve(message, actor_id),
            LifecycleEvent.RELEASE: lambda: self.release(message, actor_id),
            LifecycleEvent.ACK: lambda: self.ack(message, actor_id),
            LifecycleEvent.NACK: lambda: self.nack(message, kwargs.get("nack_code", ""), actor_id,
                                                   kwargs.get("repair_required", True)),
            LifecycleEvent.COMPLETE: lambda: self.complete(message, actor_id),
            LifecycleEvent.CANCEL: lambda: self.cancel(message, actor_id, kwargs.get("reason", "")),
            LifecycleEvent.AMEND: lambda: self.amend(message, actor_id, kwargs.get("payload"),
                                                     kwargs.get("header_changes")),
            LifecycleEvent.ATTACH_NETWORK_REPORT: lambda: self.attach_network_report(
                message, kwargs["report"], actor_id),
        }
        try:
            return handlers[event](), None
        except LifecycleError as e:
            self._log_for(message).warning("Transition refused", error_code=e.code,
                                           event=event.value, status=message.status.value)
            return message, e
