"""
Message assembly: pre-flight validation, tag ordering, envelope rendering.

``MessageAssembler.assemble`` is a pure function of (payload, header,
originator, counter state). It collects every validation error before
giving up; when any is found neither the auto-field generator nor the block
builder is invoked, so a rejected message consumes no sequence number.

Each payload family contributes two functions registered in ``_FAMILIES``:

    validate(payload, header, assembler) -> List[ValidationError]
    tags(payload, header, assembler)     -> List[(tag, value)]
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Tuple

from fingate.autofields import AutoFieldGenerator, AutoFields, SequenceCounter
from fingate.blocks import BlockBuilder, EnvelopeContext, Tag
from fingate.config import GatewayConfig, OriginatorConfig, get_config
from fingate.core import to_yymmdd
from fingate.observability import GatewayLayer, get_logger, timed_operation
from fingate.payloads import (
    Balance,
    CustomerTransferPayload,
    FreeFormatPayload,
    InstitutionTransferPayload,
    MtFamily,
    MtPayload,
    NarrativeAdvicePayload,
    StatementPayload,
    SwiftHeader,
    TransferRequestPayload,
    family_for,
    mt_digits,
    normalize_mt,
)
from fingate.validation import (
    BAD_FORMAT,
    EMPTY,
    INVALID_VALUE,
    MISSING,
    FieldValidator,
    ValidationError,
    ValidationResult,
)

log = get_logger("assembler", GatewayLayer.ASSEMBLER)

UETR_FAMILIES = frozenset({MtFamily.CUSTOMER_TRANSFER, MtFamily.INSTITUTION_TRANSFER})

_CHARGES_AMOUNT = re.compile(r"^[A-Z]{3}[0-9]{1,12},[0-9]{0,2}$")
_MESSAGE_INDEX = re.compile(r"^[0-9]{1,5}/[0-9]{1,5}$")
_STATEMENT_NUMBER = re.compile(r"^[0-9]{1,5}(/[0-9]{1,5})?$")
_TRANSACTION_TYPE = re.compile(r"^[NSF][A-Z0-9]{3}$")

# Values a replayed or amended header may carry into blocks 1, 3 and 5.
_HEADER_FORMATS = (
    ("logical_terminal", re.compile(r"^[A-Z0-9]{12}$"), "12 letters or digits"),
    ("session_number", re.compile(r"^[0-9]{4}$"), "4 digits"),
    ("sequence_number", re.compile(r"^[0-9]{6}$"), "6 digits"),
    ("uetr", re.compile(
        r"^[0-9a-f]{8}-[0-9a-f]{4}-4[0-9a-f]{3}-[89ab][0-9a-f]{3}-[0-9a-f]{12}$", re.IGNORECASE,
    ), "a UUID v4"),
    ("chk", re.compile(r"^[0-9A-F]{4,64}$"), "4 to 64 uppercase hex characters"),
)


# =============================================================================
# FORMATTING
# =============================================================================

def format_amount(amount: Decimal) -> str:
    """FIN amount: no thousands separator, comma decimal, two places."""
    return f"{amount.quantize(Decimal('0.01')):f}".replace(".", ",")


def normalize_text(value: Optional[str]) -> str:
    """LF line endings, no trailing blanks, no leading/trailing empty lines."""
    if not value:
        return ""
    lines = [line.rstrip() for line in value.replace("\r\n", "\n").replace("\r", "\n").split("\n")]
    while lines and not lines[0]:
        lines.pop(0)
    while lines and not lines[-1]:
        lines.pop()
    return "\n".join(lines)


def _amount(value: Any) -> Decimal:
    return FieldValidator.validate_amount(value).sanitized_value


# =============================================================================
# RESULT
# =============================================================================

@dataclass
class AssemblyResult:
    """Outcome of one assemble call."""
    valid: bool
    errors: List[ValidationError] = field(default_factory=list)
    fin_message: Optional[str] = None
    auto_fields: Optional[AutoFields] = None
    tags: List[Tag] = field(default_factory=list)

    @property
    def error_messages(self) -> List[str]:
        return [str(e) for e in self.errors]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "valid": self.valid,
            "errors": [e.to_dict() for e in self.errors],
            "fin_message": self.fin_message,
            "auto_fields": self.auto_fields.to_dict() if self.auto_fields else None,
        }


# =============================================================================
# SHARED FIELD CHECKS
# =============================================================================

def _collect(*results: ValidationResult) -> List[ValidationError]:
    return ValidationResult.combine(results).errors


def _check_bic(value: str, tag: str) -> List[ValidationError]:
    if not value:
        return []
    return FieldValidator.validate_bic(value, tag).errors


def _check_money(
    date: Any, currency: Any, amount: Any, tag: str, with_date: bool = True
) -> List[ValidationError]:
    errors = []
    if with_date:
        errors += FieldValidator.validate_date(date, tag).errors
    errors += FieldValidator.validate_currency(currency, tag).errors
    errors += FieldValidator.validate_amount(amount, tag).errors
    return errors


def _check_party(value: str, tag: str, required: bool = True, checksum: bool = False) -> List[ValidationError]:
    text = normalize_text(value)
    errors = FieldValidator.validate_party(text, tag, required=required).errors
    first = text.split("\n")[0] if text else ""
    account = first[1:] if first.startswith("/") else ""
    if re.match(r"^[A-Z]{2}[0-9]{2}", account):
        errors += FieldValidator.validate_iban(account, tag, checksum=checksum).errors
    return errors


def _money_value(date: Any, currency: str, amount: Any) -> str:
    prefix = to_yymmdd(date) if date is not None else ""
    return f"{prefix}{currency.upper()}{format_amount(_amount(amount))}"


# =============================================================================
# FAMILY: FREE FORMAT
# =============================================================================

def _validate_free_format(p: FreeFormatPayload, h: SwiftHeader, a: "MessageAssembler") -> List[ValidationError]:
    errors = _collect(
        FieldValidator.validate_ref20(p.transaction_reference),
        FieldValidator.validate_ref21(p.related_reference),
        FieldValidator.validate_free_text(normalize_text(p.narrative), a.narrative_max, ":79", required=True),
        FieldValidator.validate_free_text(
            normalize_text(p.sender_to_receiver_info), FieldValidator.NARRATIVE_72_MAX, ":72"),
    )
    if p.requires_related_reference and not (p.related_reference or "").strip():
        errors.append(ValidationError(":21", EMPTY, f"{p.mt_type} requires a related reference"))
    return errors


def _tags_free_format(p: FreeFormatPayload, h: SwiftHeader, a: "MessageAssembler") -> List[Tag]:
    tags: List[Tag] = [("20", p.transaction_reference)]
    if (p.related_reference or "").strip():
        tags.append(("21", p.related_reference))
    tags.append(("79", normalize_text(p.narrative)))
    if normalize_text(p.sender_to_receiver_info):
        tags.append(("72", normalize_text(p.sender_to_receiver_info)))
    return tags


# =============================================================================
# FAMILY: CUSTOMER TRANSFER (MT103)
# =============================================================================

_MT103_AGENTS = (
    ("52A", "ordering_institution_bic"),
    ("53A", "senders_correspondent_bic"),
    ("54A", "receivers_correspondent_bic"),
    ("56A", "intermediary_bic"),
    ("57A", "account_with_institution_bic"),
)


def _validate_customer_transfer(
    p: CustomerTransferPayload, h: SwiftHeader, a: "MessageAssembler"
) -> List[ValidationError]:
    errors = _collect(
        FieldValidator.validate_ref20(p.transaction_reference),
        FieldValidator.validate_bank_operation_code(p.bank_operation_code),
        FieldValidator.validate_charges(p.details_of_charges),
        FieldValidator.validate_free_text(normalize_text(p.remittance_information),
                                          FieldValidator.NARRATIVE_70_MAX, ":70"),
        FieldValidator.validate_free_text(normalize_text(p.sender_to_receiver_info),
                                          FieldValidator.NARRATIVE_72_MAX, ":72"),
        FieldValidator.validate_free_text(p.time_indication, 35, ":13C", multiline=False),
    )
    errors += _check_money(p.value_date, p.currency, p.amount, ":32A")
    if p.instructed_currency or p.instructed_amount not in (None, ""):
        errors += _check_money(None, p.instructed_currency, p.instructed_amount, ":33B", with_date=False)
    errors += _check_party(p.ordering_customer, ":50K", checksum=a.iban_checksum)
    errors += _check_party(p.beneficiary_customer, ":59", checksum=a.iban_checksum)
    for tag, attr in _MT103_AGENTS:
        errors += _check_bic(getattr(p, attr), f":{tag}")

    charges = (p.details_of_charges or "").upper()
    for tag, value in ((":71F", p.senders_charges), (":71G", p.receivers_charges)):
        if value and not _CHARGES_AMOUNT.match(value):
            errors.append(ValidationError(tag, BAD_FORMAT, "charges must be currency and amount, e.g. EUR10,00", value))
    if p.senders_charges and charges == "OUR":
        errors.append(ValidationError(":71F", INVALID_VALUE, "sender's charges are not allowed with OUR"))
    if p.receivers_charges and charges != "OUR":
        errors.append(ValidationError(":71G", INVALID_VALUE, "receiver's charges require OUR"))
    return errors


def _tags_customer_transfer(p: CustomerTransferPayload, h: SwiftHeader, a: "MessageAssembler") -> List[Tag]:
    tags: List[Tag] = [("20", p.transaction_reference)]
    if p.time_indication:
        tags.append(("13C", p.time_indication))
    tags.append(("23B", p.bank_operation_code.upper()))
    tags.append(("32A", _money_value(p.value_date, p.currency, p.amount)))
    if p.instructed_currency:
        tags.append(("33B", _money_value(None, p.instructed_currency, p.instructed_amount)))
    tags.append(("50K", normalize_text(p.ordering_customer)))
    for tag, attr in _MT103_AGENTS:
        if getattr(p, attr):
            tags.append((tag, FieldValidator.normalize_bic(getattr(p, attr))))
    tags.append(("59", normalize_text(p.beneficiary_customer)))
    if normalize_text(p.remittance_information):
        tags.append(("70", normalize_text(p.remittance_information)))
    tags.append(("71A", p.details_of_charges.upper()))
    if p.senders_charges:
        tags.append(("71F", p.senders_charges))
    if p.receivers_charges:
        tags.append(("71G", p.receivers_charges))
    if normalize_text(p.sender_to_receiver_info):
        tags.append(("72", normalize_text(p.sender_to_receiver_info)))
    return tags


# =============================================================================
# FAMILY: TRANSFER REQUEST (MT101)
# =============================================================================

def _validate_transfer_request(
    p: TransferRequestPayload, h: SwiftHeader, a: "MessageAssembler"
) -> List[ValidationError]:
    errors = _collect(
        FieldValidator.validate_ref20(p.transaction_reference),
        FieldValidator.validate_ref21(p.customer_reference, ":21R"),
        FieldValidator.validate_date(p.requested_execution_date, ":30"),
    )
    if not _MESSAGE_INDEX.match(p.message_index or ""):
        errors.append(ValidationError(":28D", BAD_FORMAT, "message index must be n/n", p.message_index))
    errors += _check_party(p.ordering_customer, ":50H", checksum=a.iban_checksum)
    if not p.transactions:
        errors.append(ValidationError("transactions", MISSING, "at least one transaction is required"))
    for i, tx in enumerate(p.transactions):
        prefix = f"transactions[{i}]"
        ref = FieldValidator.validate_ref21(tx.reference, f"{prefix}:21")
        if not (tx.reference or "").strip():
            errors.append(ValidationError(f"{prefix}:21", EMPTY, "transaction reference is required"))
        errors += ref.errors
        errors += _check_money(None, tx.currency, tx.amount, f"{prefix}:32B", with_date=False)
        errors += _check_bic(tx.account_with_institution_bic, f"{prefix}:57A")
        errors += _check_party(tx.beneficiary, f"{prefix}:59", checksum=a.iban_checksum)
        errors += FieldValidator.validate_free_text(
            normalize_text(tx.remittance_information), FieldValidator.NARRATIVE_70_MAX, f"{prefix}:70").errors
        errors += FieldValidator.validate_charges(tx.details_of_charges, f"{prefix}:71A").errors
    return errors


def _tags_transfer_request(p: TransferRequestPayload, h: SwiftHeader, a: "MessageAssembler") -> List[Tag]:
    tags: List[Tag] = [("20", p.transaction_reference)]
    if p.customer_reference:
        tags.append(("21R", p.customer_reference))
    tags.append(("28D", p.message_index))
    tags.append(("50H", normalize_text(p.ordering_customer)))
    tags.append(("30", to_yymmdd(p.requested_execution_date)))
    for tx in p.transactions:
        tags.append(("21", tx.reference))
        tags.append(("32B", _money_value(None, tx.currency, tx.amount)))
        if tx.account_with_institution_bic:
            tags.append(("57A", FieldValidator.normalize_bic(tx.account_with_institution_bic)))
        tags.append(("59", normalize_text(tx.beneficiary)))
        if normalize_text(tx.remittance_information):
            tags.append(("70", normalize_text(tx.remittance_information)))
        tags.append(("71A", tx.details_of_charges.upper()))
    return tags


# =============================================================================
# FAMILY: INSTITUTION TRANSFER (MT200/202/203/205)
# =============================================================================

_FI_AGENTS = (
    ("52A", "ordering_institution_bic"),
    ("53A", "senders_correspondent_bic"),
    ("54A", "receivers_correspondent_bic"),
    ("56A", "intermediary_bic"),
    ("57A", "account_with_institution_bic"),
    ("58A", "beneficiary_institution_bic"),
)


def _validate_institution_transfer(
    p: InstitutionTransferPayload, h: SwiftHeader, a: "MessageAssembler"
) -> List[ValidationError]:
    errors = _collect(
        FieldValidator.validate_ref20(p.transaction_reference),
        FieldValidator.validate_ref21(p.related_reference),
        FieldValidator.validate_free_text(normalize_text(p.sender_to_receiver_info),
                                          FieldValidator.NARRATIVE_72_MAX, ":72"),
    )
    if p.requires_related_reference and not (p.related_reference or "").strip():
        errors.append(ValidationError(":21", EMPTY, f"{p.mt_type} requires a related reference"))
    errors += _check_money(p.value_date, p.currency, p.amount, ":32A")
    for tag, attr in _FI_AGENTS:
        errors += _check_bic(getattr(p, attr), f":{tag}")

    if mt_digits(p.mt_type) == "200":
        if p.beneficiary_institution_bic:
            errors.append(ValidationError(":58A", INVALID_VALUE, "MT200 pays the sender's own account"))
        if not p.account_with_institution_bic:
            errors.append(ValidationError(":57A", MISSING, "MT200 requires the account with institution"))
    elif not p.beneficiary_institution_bic:
        errors.append(ValidationError(":58A", MISSING, "beneficiary institution is required"))
    return errors


def _tags_institution_transfer(p: InstitutionTransferPayload, h: SwiftHeader, a: "MessageAssembler") -> List[Tag]:
    tags: List[Tag] = [("20", p.transaction_reference)]
    if (p.related_reference or "").strip():
        tags.append(("21", p.related_reference))
    tags.append(("32A", _money_value(p.value_date, p.currency, p.amount)))
    for tag, attr in _FI_AGENTS:
        if getattr(p, attr):
            tags.append((tag, FieldValidator.normalize_bic(getattr(p, attr))))
    if normalize_text(p.sender_to_receiver_info):
        tags.append(("72", normalize_text(p.sender_to_receiver_info)))
    return tags


# =============================================================================
# FAMILY: NARRATIVE ADVICE (3xx/4xx/5xx/7xx)
# =============================================================================

def _validate_narrative_advice(
    p: NarrativeAdvicePayload, h: SwiftHeader, a: "MessageAssembler"
) -> List[ValidationError]:
    errors = _collect(
        FieldValidator.validate_ref20(p.transaction_reference),
        FieldValidator.validate_ref21(p.related_reference),
        FieldValidator.validate_free_text(normalize_text(p.narrative), a.narrative_max, ":79", required=True),
    )
    if p.has_amount:
        errors += _check_money(p.value_date, p.currency, p.amount, ":32A")
    return errors


def _tags_narrative_advice(p: NarrativeAdvicePayload, h: SwiftHeader, a: "MessageAssembler") -> List[Tag]:
    tags: List[Tag] = [("20", p.transaction_reference)]
    if (p.related_reference or "").strip():
        tags.append(("21", p.related_reference))
    if p.has_amount:
        tags.append(("32A", _money_value(p.value_date, p.currency, p.amount)))
    tags.append(("79", normalize_text(p.narrative)))
    return tags


# =============================================================================
# FAMILY: STATEMENT (MT940/950)
# =============================================================================

_MARK_SIGN = {"C": 1, "RD": 1, "D": -1, "RC": -1}


def _validate_balance(b: Balance, tag: str) -> List[ValidationError]:
    errors = []
    if b.mark not in ("C", "D"):
        errors.append(ValidationError(tag, INVALID_VALUE, "balance mark must be C or D", b.mark))
    return errors + _check_money(b.date, b.currency, b.amount, tag)


def _validate_statement(p: StatementPayload, h: SwiftHeader, a: "MessageAssembler") -> List[ValidationError]:
    errors = _collect(
        FieldValidator.validate_ref20(p.transaction_reference),
        FieldValidator.validate_ref21(p.related_reference),
        FieldValidator.validate_free_text(p.account_identification, 35, ":25", multiline=False, required=True),
    )
    if not _STATEMENT_NUMBER.match(p.statement_number or ""):
        errors.append(ValidationError(":28C", BAD_FORMAT, "statement number must be n[/n]", p.statement_number))
    errors += _validate_balance(p.opening_balance, ":60F")
    errors += _validate_balance(p.closing_balance, ":62F")

    is_950 = mt_digits(p.mt_type) == "950"
    running = Decimal("0")
    lines_ok = True
    for i, line in enumerate(p.entries):
        tag = f"entries[{i}]:61"
        line_errors = FieldValidator.validate_date(line.value_date, tag).errors
        line_errors += FieldValidator.validate_amount(line.amount, tag).errors
        if line.mark not in _MARK_SIGN:
            line_errors.append(ValidationError(tag, INVALID_VALUE, "mark must be C, D, RC or RD", line.mark))
        if line.entry_date and not re.match(r"^[0-9]{4}$", line.entry_date):
            line_errors.append(ValidationError(tag, BAD_FORMAT, "entry date must be MMDD", line.entry_date))
        if not _TRANSACTION_TYPE.match(line.transaction_type or ""):
            line_errors.append(ValidationError(tag, BAD_FORMAT, "transaction type must be N/S/F plus 3 characters"))
        line_errors += FieldValidator.validate_ref21(line.customer_reference, tag).errors
        line_errors += FieldValidator.validate_ref21(line.bank_reference, tag).errors
        if line.information:
            if is_950:
                line_errors.append(ValidationError(f"entries[{i}]:86", INVALID_VALUE, "MT950 carries no :86"))
            line_errors += FieldValidator.validate_free_text(
                normalize_text(line.information), 390, f"entries[{i}]:86").errors
        errors += line_errors
        if line_errors:
            lines_ok = False
        else:
            running += _MARK_SIGN[line.mark] * _amount(line.amount)

    if lines_ok and not errors:
        opening = _amount(p.opening_balance.amount) * (1 if p.opening_balance.mark == "C" else -1)
        closing = _amount(p.closing_balance.amount) * (1 if p.closing_balance.mark == "C" else -1)
        if opening + running != closing:
            errors.append(ValidationError(
                ":62F", INVALID_VALUE,
                f"closing balance {closing} does not equal opening {opening} plus movements {running}",
            ))
        if p.closing_balance.currency.upper() != p.opening_balance.currency.upper():
            errors.append(ValidationError(":62F", INVALID_VALUE, "closing and opening currency differ"))
    return errors


def _balance_value(b: Balance) -> str:
    return f"{b.mark}{_money_value(b.date, b.currency, b.amount)}"


def _tags_statement(p: StatementPayload, h: SwiftHeader, a: "MessageAssembler") -> List[Tag]:
    tags: List[Tag] = [("20", p.transaction_reference)]
    if (p.related_reference or "").strip():
        tags.append(("21", p.related_reference))
    tags.append(("25", p.account_identification))
    tags.append(("28C", p.statement_number))
    tags.append(("60F", _balance_value(p.opening_balance)))
    for line in p.entries:
        value = (
            f"{to_yymmdd(line.value_date)}{line.entry_date}{line.mark}"
            f"{format_amount(_amount(line.amount))}{line.transaction_type}{line.customer_reference or 'NONREF'}"
        )
        if line.bank_reference:
            value += f"//{line.bank_reference}"
        tags.append(("61", value))
        if line.information:
            tags.append(("86", normalize_text(line.information)))
    tags.append(("62F", _balance_value(p.closing_balance)))
    return tags


FamilyHandler = Tuple[
    Callable[[Any, SwiftHeader, "MessageAssembler"], List[ValidationError]],
    Callable[[Any, SwiftHeader, "MessageAssembler"], List[Tag]],
]

_FAMILIES: Dict[MtFamily, FamilyHandler] = {
    MtFamily.FREE_FORMAT: (_validate_free_format, _tags_free_format),
    MtFamily.CUSTOMER_TRANSFER: (_validate_customer_transfer, _tags_customer_transfer),
    MtFamily.TRANSFER_REQUEST: (_validate_transfer_request, _tags_transfer_request),
    MtFamily.INSTITUTION_TRANSFER: (_validate_institution_transfer, _tags_institution_transfer),
    MtFamily.NARRATIVE_ADVICE: (_validate_narrative_advice, _tags_narrative_advice),
    MtFamily.STATEMENT: (_validate_statement, _tags_statement),
}


# =============================================================================
# ASSEMBLER
# =============================================================================

class MessageAssembler:
    """
    Validates a payload and renders it as a FIN message.

    Args:
        originator: sender identity and trailer settings
        counter: session/sequence allocator shared across assemblers
        narrative_max: maximum length of :79 narratives
        iban_checksum: verify IBAN check digits in party fields
    """

    def __init__(
        self,
        originator: OriginatorConfig,
        counter: Optional[SequenceCounter] = None,
        narrative_max: int = FieldValidator.NARRATIVE_79_MAX,
        iban_checksum: bool = False,
    ):
        self.originator = originator
        self.narrative_max = narrative_max
        self.iban_checksum = iban_checksum
        self.generator = AutoFieldGenerator(originator, counter)
        self.builder = BlockBuilder(self.generator.checksum)

    @classmethod
    def from_config(
        cls,
        config: Optional[GatewayConfig] = None,
        counter: Optional[SequenceCounter] = None,
    ) -> "MessageAssembler":
        """Assembler for the originator and validation sections of ``config``."""
        config = config or get_config()
        return cls(
            config.originator_config(),
            counter,
            narrative_max=config.validation.narrative_max_length.get(),
            iban_checksum=config.validation.iban_checksum.get(),
        )

    def validate_header(self, payload: MtPayload, header: SwiftHeader) -> List[ValidationError]:
        errors: List[ValidationError] = []
        try:
            mt_type = normalize_mt(payload.mt_type)
        except ValueError:
            return [ValidationError("mt_type", BAD_FORMAT, f"not an MT code: {payload.mt_type!r}")]
        if family_for(mt_type) is not payload.family:
            errors.append(ValidationError(
                "mt_type", INVALID_VALUE, f"{mt_type} does not belong to the {payload.family.value} family",
            ))
        if header.sender_bic:
            errors += FieldValidator.validate_bic(header.sender_bic, "sender_bic").errors
        errors += FieldValidator.validate_bic(header.receiver_bic, "receiver_bic").errors
        if header.message_priority not in ("N", "U"):
            errors.append(ValidationError(
                "message_priority", INVALID_VALUE, "priority must be N or U", header.message_priority,
            ))
        if header.mur:
            errors += FieldValidator.validate_ref21(header.mur, "mur").errors
        for name, pattern, expected in _HEADER_FORMATS:
            value = getattr(header, name)
            if value and not pattern.match(str(value)):
                errors.append(ValidationError(name, BAD_FORMAT, f"{name} must be {expected}", value))
        return errors

    def validate(self, payload: MtPayload, header: SwiftHeader) -> List[ValidationError]:
        """Every error in header and payload, in field order."""
        errors = self.validate_header(payload, header)
        handler = _FAMILIES.get(payload.family)
        if handler is None:
            errors.append(ValidationError("mt_type", INVALID_VALUE, f"no assembler for {payload.mt_type}"))
            return errors
        validate_fn, _ = handler
        return errors + validate_fn(payload, header, self)

    def tags(self, payload: MtPayload, header: SwiftHeader) -> List[Tag]:
        """Ordered block 4 tags. Only meaningful for a payload that validates."""
        _, tags_fn = _FAMILIES[payload.family]
        return tags_fn(payload, header, self)

    def requires_uetr(self, payload: MtPayload, header: SwiftHeader) -> bool:
        return payload.family in UETR_FAMILIES or header.gpi

    @timed_operation(log, "assemble")
    def assemble(
        self,
        payload: MtPayload,
        header: SwiftHeader,
        with_auto_fields: bool = False,
    ) -> AssemblyResult:
        """Validate and render ``payload``.

        With ``with_auto_fields`` missing session/sequence/UETR values are
        generated; otherwise only values already on ``header`` are used and
        block 1 carries zeros in their place.
        """
        errors = self.validate(payload, header)
        if errors:
            log.info("Assembly rejected", mt_type=payload.mt_type, error_count=len(errors))
            return AssemblyResult(valid=False, errors=errors)

        tags = self.tags(payload, header)
        auto = self.generator.resolve(
            header,
            assign=with_auto_fields,
            uetr_required=self.requires_uetr(payload, header),
        )

        user_header: List[Tuple[str, str]] = []
        if auto.mur:
            user_header.append(("108", auto.mur))
        if header.gpi:
            user_header.append(("111", "001"))
        if auto.stp:
            user_header.append(("119", "STP"))
        if auto.uetr:
            user_header.append(("121", auto.uetr))

        ctx = EnvelopeContext(
            logical_terminal=auto.sender_lt,
            application_id=auto.application_id,
            session_number=auto.session_number or "0000",
            sequence_number=auto.sequence_number or "000000",
            mt_code=mt_digits(payload.mt_type),
            receiver_bic=FieldValidator.normalize_bic(header.receiver_bic),
            priority=header.message_priority,
            user_header=user_header,
            test_and_training=self.originator.test_and_training,
            chk=header.chk,
        )
        fin_message, chk = self.builder.render(ctx, tags)
        auto.chk = chk

        log.info(
            "Assembled message",
            mt_type=payload.mt_type,
            session=ctx.session_number,
            sequence=ctx.sequence_number,
            chk=chk,
        )
        return AssemblyResult(valid=True, fin_message=fin_message, auto_fields=auto, tags=tags)
