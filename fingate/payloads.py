"""
Outbound message payloads.

A payload is one variant of a closed set of MT families. The assembler
dispatches on the variant class; each variant knows only its own fields.

    FAMILY                 VARIANT                       MT TYPES
    ──────                 ───────                       ────────
    free format            FreeFormatPayload             n92 n95 n96 n98 n99
    customer transfer      CustomerTransferPayload       103
    transfer request       TransferRequestPayload        101
    institution transfer   InstitutionTransferPayload    200 202 203 205
    narrative advice       NarrativeAdvicePayload        other 3xx 4xx 5xx 7xx
    statement              StatementPayload              940 950

Mapping input (YAML/JSON files, API bodies) goes through ``payload_from_dict``,
which checks the mapping against ``payload.schema.json`` before building the
variant.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field, fields
from decimal import Decimal
from enum import Enum
from typing import Any, ClassVar, Dict, List, Optional, Tuple, Type, Union

from fingate.schema import validate_against_schema
from fingate.validation import SCHEMA, ValidationError

AmountLike = Union[Decimal, int, str, None]


# =============================================================================
# MT REGISTRY
# =============================================================================

class MtFamily(Enum):
    """Closed set of payload families."""
    FREE_FORMAT = "free_format"
    CUSTOMER_TRANSFER = "customer_transfer"
    TRANSFER_REQUEST = "transfer_request"
    INSTITUTION_TRANSFER = "institution_transfer"
    NARRATIVE_ADVICE = "narrative_advice"
    STATEMENT = "statement"


FREE_FORMAT_SUFFIXES = ("92", "95", "96", "98", "99")
INSTITUTION_TRANSFER_CODES = frozenset({"200", "202", "203", "205"})
STATEMENT_CODES = frozenset({"940", "950"})
NARRATIVE_CATEGORIES = frozenset({"3", "4", "5", "7"})
CATEGORY_NAMES = {
    "1": "Customer Payments and Cheques",
    "2": "Financial Institution Transfers",
    "3": "Treasury Markets",
    "4": "Collections and Cash Letters",
    "5": "Securities Markets",
    "6": "Treasury Markets - Precious Metals",
    "7": "Documentary Credits and Guarantees",
    "8": "Travellers Cheques",
    "9": "Cash Management and Customer Status",
}

_MT_RE = re.compile(r"^(?:MT)?([1-9][0-9]{2})$")


def normalize_mt(mt_type: str) -> str:
    """``"199"``, ``"mt199"`` and ``"MT199"`` all become ``"MT199"``."""
    m = _MT_RE.match((mt_type or "").strip().upper())
    if not m:
        raise ValueError(f"Not an MT code: {mt_type!r}")
    return f"MT{m.group(1)}"


def mt_digits(mt_type: str) -> str:
    return normalize_mt(mt_type)[2:]


def family_for(mt_type: str) -> Optional[MtFamily]:
    """Family of an MT code, or None when the engine does not handle it."""
    try:
        code = mt_digits(mt_type)
    except ValueError:
        return None
    if code[1:] in FREE_FORMAT_SUFFIXES:
        return MtFamily.FREE_FORMAT
    if code == "103":
        return MtFamily.CUSTOMER_TRANSFER
    if code == "101":
        return MtFamily.TRANSFER_REQUEST
    if code in INSTITUTION_TRANSFER_CODES:
        return MtFamily.INSTITUTION_TRANSFER
    if code in STATEMENT_CODES:
        return MtFamily.STATEMENT
    if code[0] in NARRATIVE_CATEGORIES:
        return MtFamily.NARRATIVE_ADVICE
    return None


def is_known_mt(mt_type: str) -> bool:
    return family_for(mt_type) is not None


def category_of(mt_type: str) -> str:
    return CATEGORY_NAMES.get(mt_digits(mt_type)[0], "")


# Tags whose absence makes a received message of the family incomplete.
MANDATORY_TAGS: Dict[MtFamily, Tuple[str, ...]] = {
    MtFamily.FREE_FORMAT: ("20", "79"),
    MtFamily.CUSTOMER_TRANSFER: ("20", "23B", "32A", "59", "71A"),
    MtFamily.TRANSFER_REQUEST: ("20", "28D", "30", "21", "32B", "59"),
    MtFamily.INSTITUTION_TRANSFER: ("20", "32A"),
    MtFamily.NARRATIVE_ADVICE: ("20", "79"),
    MtFamily.STATEMENT: ("20", "25", "28C", "60F", "62F"),
}


# =============================================================================
# SWIFT HEADER
# =============================================================================

@dataclass
class SwiftHeader:
    """
    Basic/application/user header values of one message.

    ``session_number``, ``sequence_number``, ``uetr`` and ``chk`` are
    auto fields: empty until the message is released, then frozen.
    """
    sender_bic: str = ""
    receiver_bic: str = ""
    logical_terminal: Optional[str] = None
    message_priority: str = "N"
    session_number: Optional[str] = None
    sequence_number: Optional[str] = None
    uetr: Optional[str] = None
    chk: Optional[str] = None
    mur: Optional[str] = None
    stp: bool = False
    gpi: bool = False

    AUTO_FIELDS: ClassVar[Tuple[str, ...]] = ("session_number", "sequence_number", "uetr", "chk")

    def to_dict(self) -> Dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "SwiftHeader":
        data = dict(data or {})
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})

    def copy(self, **changes: Any) -> "SwiftHeader":
        data = self.to_dict()
        data.update(changes)
        return SwiftHeader(**data)


# =============================================================================
# PAYLOAD VARIANTS
# =============================================================================

@dataclass
class MtPayload:
    """Fields common to every family."""
    mt_type: str = ""
    transaction_reference: str = ""
    related_reference: str = ""

    FAMILY: ClassVar[Optional[MtFamily]] = None

    @property
    def family(self) -> MtFamily:
        return self.FAMILY  # type: ignore[return-value]

    def to_dict(self) -> Dict[str, Any]:
        def convert(value: Any) -> Any:
            if isinstance(value, Decimal):
                return str(value)
            if isinstance(value, list):
                return [convert(v) for v in value]
            if hasattr(value, "__dataclass_fields__"):
                return {f.name: convert(getattr(value, f.name)) for f in fields(value)}
            return value

        return {f.name: convert(getattr(self, f.name)) for f in fields(self)}


@dataclass
class FreeFormatPayload(MtPayload):
    """n92/n95/n96/n98/n99: :20, :21, :79 and optional :72."""
    mt_type: str = "MT199"
    narrative: str = ""
    sender_to_receiver_info: str = ""

    FAMILY = MtFamily.FREE_FORMAT

    @property
    def requires_related_reference(self) -> bool:
        # cancellation requests and answers always point at an earlier message
        return mt_digits(self.mt_type)[1:] in ("92", "96")


@dataclass
class CustomerTransferPayload(MtPayload):
    """MT103 single customer credit transfer."""
    mt_type: str = "MT103"
    time_indication: str = ""
    bank_operation_code: str = "CRED"
    value_date: Any = None
    currency: str = ""
    amount: AmountLike = None
    instructed_currency: str = ""
    instructed_amount: AmountLike = None
    ordering_customer: str = ""
    ordering_institution_bic: str = ""
    senders_correspondent_bic: str = ""
    receivers_correspondent_bic: str = ""
    intermediary_bic: str = ""
    account_with_institution_bic: str = ""
    beneficiary_customer: str = ""
    remittance_information: str = ""
    details_of_charges: str = "SHA"
    senders_charges: str = ""
    receivers_charges: str = ""
    sender_to_receiver_info: str = ""

    FAMILY = MtFamily.CUSTOMER_TRANSFER


@dataclass
class TransferInstruction:
    """One sequence B entry of an MT101."""
    reference: str = ""
    currency: str = ""
    amount: AmountLike = None
    account_with_institution_bic: str = ""
    beneficiary: str = ""
    remittance_information: str = ""
    details_of_charges: str = "SHA"


@dataclass
class TransferRequestPayload(MtPayload):
    """MT101 request for transfer: one ordering party, many transactions."""
    mt_type: str = "MT101"
    customer_reference: str = ""
    message_index: str = "1/1"
    ordering_customer: str = ""
    requested_execution_date: Any = None
    transactions: List[TransferInstruction] = field(default_factory=list)

    FAMILY = MtFamily.TRANSFER_REQUEST


@dataclass
class InstitutionTransferPayload(MtPayload):
    """MT200/202/203/205 financial institution transfers."""
    mt_type: str = "MT202"
    value_date: Any = None
    currency: str = ""
    amount: AmountLike = None
    ordering_institution_bic: str = ""
    senders_correspondent_bic: str = ""
    receivers_correspondent_bic: str = ""
    intermediary_bic: str = ""
    account_with_institution_bic: str = ""
    beneficiary_institution_bic: str = ""
    sender_to_receiver_info: str = ""

    FAMILY = MtFamily.INSTITUTION_TRANSFER

    @property
    def requires_related_reference(self) -> bool:
        return mt_digits(self.mt_type) != "200"


@dataclass
class NarrativeAdvicePayload(MtPayload):
    """Treasury, collections, securities and trade advices carried as :79."""
    mt_type: str = "MT300"
    value_date: Any = None
    currency: str = ""
    amount: AmountLike = None
    narrative: str = ""

    FAMILY = MtFamily.NARRATIVE_ADVICE

    @property
    def has_amount(self) -> bool:
        return any(v not in (None, "") for v in (self.value_date, self.currency, self.amount))


@dataclass
class Balance:
    mark: str = "C"
    date: Any = None
    currency: str = ""
    amount: AmountLike = None


@dataclass
class StatementLine:
    """One :61 statement line, optionally followed by :86."""
    value_date: Any = None
    entry_date: str = ""
    mark: str = "C"
    amount: AmountLike = None
    transaction_type: str = "NTRF"
    customer_reference: str = "NONREF"
    bank_reference: str = ""
    information: str = ""


@dataclass
class StatementPayload(MtPayload):
    """MT940 customer statement / MT950 statement message."""
    mt_type: str = "MT940"
    account_identification: str = ""
    statement_number: str = "00001/001"
    opening_balance: Balance = field(default_factory=Balance)
    entries: List[StatementLine] = field(default_factory=list)
    closing_balance: Balance = field(default_factory=Balance)

    FAMILY = MtFamily.STATEMENT


PAYLOAD_TYPES: Dict[MtFamily, Type[MtPayload]] = {
    MtFamily.FREE_FORMAT: FreeFormatPayload,
    MtFamily.CUSTOMER_TRANSFER: CustomerTransferPayload,
    MtFamily.TRANSFER_REQUEST: TransferRequestPayload,
    MtFamily.INSTITUTION_TRANSFER: InstitutionTransferPayload,
    MtFamily.NARRATIVE_ADVICE: NarrativeAdvicePayload,
    MtFamily.STATEMENT: StatementPayload,
}


# =============================================================================
# MAPPING INPUT
# =============================================================================

class PayloadError(ValueError):
    """A payload mapping could not be turned into a variant."""

    def __init__(self, errors: List[ValidationError]):
        self.errors = errors
        super().__init__("; ".join(str(e) for e in errors))


def _build(cls: Type[Any], data: Dict[str, Any]) -> Any:
    names = {f.name for f in fields(cls)}
    return cls(**{k: v for k, v in data.items() if k in names})


def payload_from_dict(data: Dict[str, Any]) -> Tuple[MtPayload, SwiftHeader]:
    """Build a payload variant and its header from a plain mapping.

    Raises:
        PayloadError: schema violations or an MT code outside every family
    """
    schema_errors = validate_against_schema(data, "payload")
    if schema_errors:
        raise PayloadError([ValidationError("payload", SCHEMA, msg) for msg in schema_errors])

    mt_type = normalize_mt(data["mt_type"])
    family = family_for(mt_type)
    if family is None:
        raise PayloadError([ValidationError("mt_type", SCHEMA, f"unsupported MT type {mt_type}")])

    body = {k: v for k, v in data.items() if k != "header"}
    body["mt_type"] = mt_type
    if family is MtFamily.TRANSFER_REQUEST:
        body["transactions"] = [_build(TransferInstruction, t) for t in body.get("transactions", [])]
    if family is MtFamily.STATEMENT:
        body["entries"] = [_build(StatementLine, e) for e in body.get("entries", [])]
        for key in ("opening_balance", "closing_balance"):
            if key in body:
                body[key] = _build(Balance, body[key])

    payload = _build(PAYLOAD_TYPES[family], body)
    header = SwiftHeader.from_dict(data.get("header"))
    return payload, header
