"""
Inbound FIN parsing and the incoming message record.

The parser is tolerant: it never raises for any text or bytes payload. Whatever it
cannot make sense of becomes a ``ParseIssue`` and the message status becomes
PARSE_ERROR, while ``raw_payload`` is kept byte for byte.

Block 4 framing:

    {4:<CRLF or LF>
    :20:REF123456           <- a line matching ^:(\\d{2}[A-Z]?):(.*)$ opens a tag
    :79:first line
    continuation line       <- any other line continues the current tag
    -}                      <- terminator, "\\n-}"

Repeated tags (:61/:86 pairs, MT101 sequence B) are kept as separate entries
in their original order.
"""

from __future__ import annotations

import re
import uuid
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Protocol, Tuple, Union

from fingate.audit import AuditEntry, AuditTrail
from fingate.config import GatewayConfig, get_config
from fingate.core import decode_raw, encode_raw, from_yymmdd, normalize_newlines, now_iso8601, sha256_bytes
from fingate.observability import GatewayLayer, correlation_scope, get_logger
from fingate.payloads import MANDATORY_TAGS, family_for
from fingate.schema import validate_against_schema

log = get_logger("inbound", GatewayLayer.INBOUND)

TAG_LINE = re.compile(r"^:(\d{2}[A-Z]?):(.*)$")

_BLOCK1 = re.compile(r"\{1:([FAL])(\d{2})([A-Z0-9]{12})(\d{4})(\d{6})\}")
_BLOCK2_INPUT = re.compile(r"\{2:I(\d{3})([A-Z0-9]{11,12}?)([NUS])?(\d)?(\d{3})?\}")
_BLOCK2_OUTPUT = re.compile(
    r"\{2:O(\d{3})(\d{4})(\d{6})([A-Z0-9]{12})(\d{4})(\d{6})(\d{6})(\d{4})([NUS])?\}"
)
_BLOCK3 = re.compile(r"\{3:((?:\{[0-9]{3}:[^{}]*\})+)\}")
_USER_FIELD = re.compile(r"\{([0-9]{3}):([^{}]*)\}")
CHK_FIELD = re.compile(r"\{CHK:([0-9A-Fa-f]+)\}")
_FIELD_32A = re.compile(r"^(\d{6})([A-Z]{3})(\d+,\d*)$")


# =============================================================================
# PARSE RESULT
# =============================================================================

BLOCK4_MISSING = "BLOCK4_MISSING"
BLOCK4_UNTERMINATED = "BLOCK4_UNTERMINATED"
BLOCK1_MALFORMED = "BLOCK1_MALFORMED"
BLOCK2_MALFORMED = "BLOCK2_MALFORMED"
ORPHAN_TEXT = "ORPHAN_TEXT"
UNKNOWN_MT = "UNKNOWN_MT"
MISSING_TAG = "MISSING_TAG"
EMPTY_PAYLOAD = "EMPTY_PAYLOAD"


@dataclass(frozen=True)
class ParseIssue:
    code: str
    message: str

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"

    def to_dict(self) -> Dict[str, str]:
        return {"code": self.code, "message": self.message}


@dataclass
class TagValue:
    """One block 4 field as received."""
    tag: str
    value_lines: List[str] = field(default_factory=list)

    @property
    def value(self) -> str:
        return "\n".join(self.value_lines)

    def to_dict(self) -> Dict[str, Any]:
        return {"tag": self.tag, "value_lines": list(self.value_lines)}


@dataclass
class ExtractedFields:
    ref20: Optional[str] = None
    ref21: Optional[str] = None
    related_reference: Optional[str] = None
    value_date: Optional[str] = None
    currency: Optional[str] = None
    amount: Optional[Decimal] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ref20": self.ref20,
            "ref21": self.ref21,
            "related_reference": self.related_reference,
            "value_date": self.value_date,
            "currency": self.currency,
            "amount": str(self.amount) if self.amount is not None else None,
        }


@dataclass
class ParseResult:
    parsed: bool
    mt_type: Optional[str] = None
    direction: Optional[str] = None
    sender_bic: Optional[str] = None
    receiver_bic: Optional[str] = None
    priority: Optional[str] = None
    session_number: Optional[str] = None
    sequence_number: Optional[str] = None
    uetr: Optional[str] = None
    user_header: Dict[str, str] = field(default_factory=dict)
    chk: Optional[str] = None
    tags: List[TagValue] = field(default_factory=list)
    extracted: ExtractedFields = field(default_factory=ExtractedFields)
    normalized_text: str = ""
    parse_errors: List[ParseIssue] = field(default_factory=list)

    def tag_pairs(self) -> List[Tuple[str, str]]:
        return [(t.tag, t.value) for t in self.tags]

    def first(self, tag: str) -> Optional[TagValue]:
        return next((t for t in self.tags if t.tag == tag), None)


# =============================================================================
# TAG SCANNING
# =============================================================================

class TagScanner(Protocol):
    """Splits block 4 text into tags. Alternative scanners can be plugged in."""

    def scan(self, content: str) -> Tuple[List[TagValue], List[ParseIssue]]:
        ...


class LineTagScanner:
    """Line-based scanner: tag lines open a field, other lines continue it."""

    def scan(self, content: str) -> Tuple[List[TagValue], List[ParseIssue]]:
        tags: List[TagValue] = []
        issues: List[ParseIssue] = []
        current: Optional[TagValue] = None
        orphans = 0

        lines = content.split("\n")
        # the line break right after "{4:" is framing, not content
        if lines and lines[0] == "":
            lines = lines[1:]

        for line in lines:
            m = TAG_LINE.match(line)
            if m:
                current = TagValue(tag=m.group(1), value_lines=[m.group(2)])
                tags.append(current)
            elif current is not None:
                current.value_lines.append(line)
            elif line.strip():
                orphans += 1

        if orphans:
            issues.append(ParseIssue(ORPHAN_TEXT, f"{orphans} line(s) before the first tag"))
        return tags, issues


# =============================================================================
# PARSER
# =============================================================================

def _bic_from_lt(lt: str) -> str:
    """12-character logical terminal -> 11-character BIC."""
    return lt[:8] + lt[9:12] if len(lt) == 12 else lt


class InboundParser:
    """
    Decodes raw FIN text into header fields, tags and a readable rendering.

    Args:
        scanner: block 4 tag scanner
        require_known_mt: report UNKNOWN_MT for codes outside every family
    """

    def __init__(self, scanner: Optional[TagScanner] = None, require_known_mt: bool = True):
        self.scanner: TagScanner = scanner or LineTagScanner()
        self.require_known_mt = require_known_mt

    def parse(self, raw_payload: Any, received_at: Optional[str] = None) -> ParseResult:
        if isinstance(raw_payload, bytes):
            raw_payload = decode_raw(raw_payload)
        if not isinstance(raw_payload, str) or not raw_payload.strip():
            return ParseResult(
                parsed=False,
                parse_errors=[ParseIssue(EMPTY_PAYLOAD, "raw payload is empty or not text")],
            )

        text = normalize_newlines(raw_payload)
        result = ParseResult(parsed=True)
        issues = result.parse_errors

        self._headers(text, result, issues)

        start = text.find("{4:")
        if start < 0:
            issues.append(ParseIssue(BLOCK4_MISSING, "no {4: text block; payload kept as unstructured text"))
        else:
            body_start = start + len("{4:")
            end = text.find("\n-}", body_start)
            if end < 0:
                issues.append(ParseIssue(BLOCK4_UNTERMINATED, "text block has no closing '-}'"))
                trailer = text.find("{5:", body_start)
                end = trailer if trailer >= 0 else len(text)
            tags, scan_issues = self.scanner.scan(text[body_start:end])
            result.tags = tags
            issues.extend(scan_issues)
            m = CHK_FIELD.search(text, end)
            if m:
                result.chk = m.group(1).upper()

        self._check_mandatory(result, issues)
        result.extracted = self._extract(result.tags)
        result.normalized_text = build_normalized_text(result, received_at or now_iso8601())
        return result

    def _headers(self, text: str, result: ParseResult, issues: List[ParseIssue]) -> None:
        sender_lt: Optional[str] = None
        m1 = _BLOCK1.search(text)
        if m1:
            sender_lt = m1.group(3)
            result.session_number = m1.group(4)
            result.sequence_number = m1.group(5)
        elif "{1:" in text:
            issues.append(ParseIssue(BLOCK1_MALFORMED, "basic header does not match {1:F01<LT><session><sequence>}"))

        m_in = _BLOCK2_INPUT.search(text)
        m_out = None if m_in else _BLOCK2_OUTPUT.search(text)
        if m_in:
            result.direction = "I"
            result.mt_type = f"MT{m_in.group(1)}"
            result.receiver_bic = _bic_from_lt(m_in.group(2))
            result.priority = m_in.group(3) or "N"
            if sender_lt:
                result.sender_bic = _bic_from_lt(sender_lt)
        elif m_out:
            # output message: block 1 is our own address, the MIR names the sender
            result.direction = "O"
            result.mt_type = f"MT{m_out.group(1)}"
            result.sender_bic = _bic_from_lt(m_out.group(4))
            result.priority = m_out.group(9) or "N"
            if sender_lt:
                result.receiver_bic = _bic_from_lt(sender_lt)
        elif "{2:" in text:
            issues.append(ParseIssue(BLOCK2_MALFORMED, "application header not recognised"))

        m3 = _BLOCK3.search(text)
        if m3:
            result.user_header = dict(_USER_FIELD.findall(m3.group(1)))
            result.uetr = result.user_header.get("121")

    def _check_mandatory(self, result: ParseResult, issues: List[ParseIssue]) -> None:
        family = family_for(result.mt_type) if result.mt_type else None
        if family is None:
            if self.require_known_mt:
                issues.append(ParseIssue(UNKNOWN_MT, f"unrecognised MT type {result.mt_type or '(none)'}"))
            return
        if not result.tags:
            return
        present = {t.tag for t in result.tags}
        for tag in MANDATORY_TAGS[family]:
            if tag not in present:
                issues.append(ParseIssue(MISSING_TAG, f"mandatory tag :{tag}: not found"))

    @staticmethod
    def _extract(tags: List[TagValue]) -> ExtractedFields:
        fields = ExtractedFields()
        for t in tags:
            first = t.value_lines[0].strip() if t.value_lines else ""
            if t.tag == "20" and fields.ref20 is None:
                fields.ref20 = first
            elif t.tag == "21" and fields.ref21 is None:
                fields.ref21 = first
            elif t.tag in ("11S", "21R") and fields.related_reference is None:
                fields.related_reference = first
            elif t.tag == "32A" and fields.currency is None:
                m = _FIELD_32A.match(first)
                if m:
                    fields.value_date = from_yymmdd(m.group(1))
                    fields.currency = m.group(2)
                    try:
                        fields.amount = Decimal(m.group(3).replace(",", "."))
                    except InvalidOperation:
                        fields.amount = None
        return fields


def build_normalized_text(result: ParseResult, received_at: str) -> str:
    """Human-readable rendering used by review screens and exports."""
    ex = result.extracted
    lines = [
        "=== HEADER ===",
        f"MT Type: {result.mt_type or 'N/A'}",
        f"Sender BIC: {result.sender_bic or 'N/A'}",
        f"Receiver BIC: {result.receiver_bic or 'N/A'}",
        f"Priority: {result.priority or 'N'}",
    ]
    if result.uetr:
        lines.append(f"UETR: {result.uetr}")
    lines += [f"Received: {received_at}", "", "=== REFERENCES ==="]
    if ex.ref20:
        lines.append(f":20: {ex.ref20}")
    if ex.ref21:
        lines.append(f":21: {ex.ref21}")
    if ex.related_reference:
        lines.append(f"Related: {ex.related_reference}")
    lines += ["", "=== KEY FIELDS ==="]
    if ex.value_date:
        lines.append(f"Value Date: {ex.value_date}")
    if ex.currency:
        lines.append(f"Currency: {ex.currency}")
    if ex.amount is not None:
        lines.append(f"Amount: {ex.amount}")
    lines += ["", "=== TAGS ==="]
    for t in result.tags:
        lines.append(f":{t.tag}: " + "\n  ".join(t.value_lines))
    return "\n".join(lines)


# =============================================================================
# INCOMING MESSAGE RECORD
# =============================================================================

class IncomingStatus(Enum):
    RECEIVED = "RECEIVED"
    PARSED = "PARSED"
    PARSE_ERROR = "PARSE_ERROR"
    REVIEW_REQUIRED = "REVIEW_REQUIRED"
    ARCHIVED = "ARCHIVED"


class IngestSource(Enum):
    SIMULATED = "SIMULATED"
    SWIFT_GATEWAY = "SWIFT_GATEWAY"
    FILE = "FILE"
    API = "API"
    OTHER = "OTHER"


class InboundError(Exception):
    """An operation on an incoming message was refused."""

    def __init__(self, code: str, message: str):
        self.code = code
        self.message = message
        super().__init__(f"{code}: {message}")


@dataclass
class IncomingMessage:
    """A received payload and everything derived from it.

    Only the derived fields are ever rewritten (by ``reparse``);
    ``raw_payload`` and ``checksum_sha256`` never change.
    """
    raw_payload: str
    received_at: str
    ingest_source: IngestSource = IngestSource.SIMULATED
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    status: IncomingStatus = IncomingStatus.RECEIVED
    checksum_sha256: str = ""
    mt_type: Optional[str] = None
    sender_bic: Optional[str] = None
    receiver_bic: Optional[str] = None
    priority: Optional[str] = None
    uetr: Optional[str] = None
    chk: Optional[str] = None
    extracted: ExtractedFields = field(default_factory=ExtractedFields)
    normalized_text: str = ""
    normalized_json: List[TagValue] = field(default_factory=list)
    parse_errors: List[ParseIssue] = field(default_factory=list)
    audit_log: List[AuditEntry] = field(default_factory=list)

    @property
    def raw_size_bytes(self) -> int:
        return len(encode_raw(self.raw_payload))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "received_at": self.received_at,
            "ingest_source": self.ingest_source.value,
            "raw_payload": self.raw_payload,
            "raw_size_bytes": self.raw_size_bytes,
            "checksum_sha256": self.checksum_sha256,
            "status": self.status.value,
            "mt_type": self.mt_type,
            "sender_bic": self.sender_bic,
            "receiver_bic": self.receiver_bic,
            "priority": self.priority,
            "uetr": self.uetr,
            "chk": self.chk,
            **self.extracted.to_dict(),
            "normalized_text": self.normalized_text,
            "normalized_json": [t.to_dict() for t in self.normalized_json],
            "parse_errors": [str(e) for e in self.parse_errors],
            "audit_log": [a.to_dict() for a in self.audit_log],
        }


class IncomingMessageService:
    """
    Ingest, reparse, review and archive received messages.

    Every operation appends exactly one audit entry, except ``ingest`` which
    records both RECEIVED and the parse outcome.
    """

    def __init__(
        self,
        parser: Optional[InboundParser] = None,
        max_payload_bytes: int = 1024 * 1024,
        clock: Callable[[], str] = now_iso8601,
    ):
        self.parser = parser or InboundParser()
        self.max_payload_bytes = max_payload_bytes
        self._clock = clock
        self._trail = AuditTrail(clock)

    @classmethod
    def from_config(
        cls,
        config: Optional[GatewayConfig] = None,
        clock: Callable[[], str] = now_iso8601,
    ) -> "IncomingMessageService":
        """Service built from the ``inbound`` section of the gateway config."""
        inbound = (config or get_config()).inbound
        return cls(
            parser=InboundParser(require_known_mt=inbound.require_known_mt.get()),
            max_payload_bytes=inbound.max_payload_bytes.get(),
            clock=clock,
        )

    def _apply(self, message: IncomingMessage, result: ParseResult) -> None:
        message.mt_type = result.mt_type
        message.sender_bic = result.sender_bic
        message.receiver_bic = result.receiver_bic
        message.priority = result.priority
        message.uetr = result.uetr
        message.chk = result.chk
        message.extracted = result.extracted
        message.normalized_text = result.normalized_text
        message.normalized_json = result.tags
        message.parse_errors = list(result.parse_errors)
        message.status = IncomingStatus.PARSE_ERROR if result.parse_errors else IncomingStatus.PARSED

    def ingest(
        self,
        raw_payload: Union[str, bytes],
        source: IngestSource = IngestSource.SIMULATED,
        received_at: Optional[str] = None,
        actor_id: Optional[int] = None,
    ) -> IncomingMessage:
        """Store ``raw_payload`` verbatim and parse it.

        Bytes are decoded as UTF-8; bytes that do not decode are kept as
        surrogates, so size and checksum still describe the bytes received.

        Raises:
            InboundError: payload larger than ``max_payload_bytes``
        """
        if isinstance(raw_payload, bytes):
            raw_payload = decode_raw(raw_payload)
        data = encode_raw(raw_payload)
        size = len(data)
        if size > self.max_payload_bytes:
            raise InboundError("PAYLOAD_TOO_LARGE", f"{size} bytes exceeds {self.max_payload_bytes}")

        message = IncomingMessage(
            raw_payload=raw_payload,
            received_at=received_at or self._clock(),
            ingest_source=source,
            checksum_sha256=sha256_bytes(data),
        )
        with correlation_scope(f"in-{message.id[:12]}"):
            self._trail.append(message.audit_log, "RECEIVED", actor_id,
                               source=source.value, size=size, checksum_sha256=message.checksum_sha256)
            result = self.parser.parse(raw_payload, message.received_at)
            self._apply(message, result)
            self._trail.append(message.audit_log, message.status.value, actor_id,
                               tag_count=len(result.tags), errors=[str(e) for e in result.parse_errors])
            log.info("Ingested message", message_id=message.id, mt_type=message.mt_type,
                     status=message.status.value, error_count=len(result.parse_errors))
        return message

    def ingest_request(self, data: Dict[str, Any], actor_id: Optional[int] = None) -> IncomingMessage:
        """Ingest from a request mapping checked against ``ingest.schema.json``."""
        errors = validate_against_schema(data, "ingest")
        if errors:
            raise InboundError("INVALID_REQUEST", "; ".join(errors))
        return self.ingest(
            data["raw_payload"],
            IngestSource(data.get("ingest_source", IngestSource.API.value)),
            data.get("received_at"),
            actor_id,
        )

    def _require_open(self, message: IncomingMessage, action: str) -> None:
        if message.status is IncomingStatus.ARCHIVED:
            raise InboundError("INVALID_TRANSITION", f"cannot {action} an archived message")

    def reparse(self, message: IncomingMessage, actor_id: Optional[int] = None) -> IncomingMessage:
        """Rebuild derived fields from the untouched raw payload."""
        self._require_open(message, "reparse")
        previous = message.status
        result = self.parser.parse(message.raw_payload, message.received_at)
        self._apply(message, result)
        self._trail.append(message.audit_log, "REPARSED", actor_id,
                           from_status=previous.value, to_status=message.status.value)
        return message

    def mark_review_required(
        self,
        message: IncomingMessage,
        actor_id: Optional[int] = None,
        reason: str = "",
    ) -> IncomingMessage:
        self._require_open(message, "review")
        previous = message.status
        message.status = IncomingStatus.REVIEW_REQUIRED
        self._trail.append(message.audit_log, "REVIEW_REQUIRED", actor_id,
                           from_status=previous.value, reason=reason)
        return message

    def archive(self, message: IncomingMessage, actor_id: Optional[int] = None) -> IncomingMessage:
        self._require_open(message, "archive")
        previous = message.status
        message.status = IncomingStatus.ARCHIVED
        self._trail.append(message.audit_log, "ARCHIVED", actor_id, from_status=previous.value)
        return message

    def record_view(self, message: IncomingMessage, actor_id: Optional[int] = None) -> AuditEntry:
        """Audit that an operator opened the message."""
        return self._trail.append(message.audit_log, "VIEWED", actor_id)
