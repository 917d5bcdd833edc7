"""
FIN Field Validation

Pure validators for the SWIFT "X" character set, field lengths, BIC and IBAN
shapes, and the handful of coded values the payload families use. Nothing in
this module raises for an invalid field: every validator returns a
``ValidationResult`` carrying structured ``ValidationError`` values, and the
assembler concatenates them so operators see every problem in one pass.

    FIELD       RULE                                CODE
    ─────       ────                                ────
    :20         1..16 chars, X set                  EMPTY / TOO_LONG / BAD_CHARSET
    :21         0..16 chars, X set                  TOO_LONG / BAD_CHARSET
    narrative   X set (+ CR/LF), caller max         TOO_LONG / BAD_CHARSET / BAD_LINE_START
    BIC         8 or 11 alphanumerics               BAD_FORMAT
    IBAN        CC + 2 digits + 11..30 alnum        BAD_FORMAT
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Iterable, List, Optional


# =============================================================================
# ERROR CODES
# =============================================================================

EMPTY = "EMPTY"
TOO_LONG = "TOO_LONG"
BAD_CHARSET = "BAD_CHARSET"
BAD_FORMAT = "BAD_FORMAT"
BAD_LINE_START = "BAD_LINE_START"
MISSING = "MISSING"
INVALID_VALUE = "INVALID_VALUE"
SCHEMA = "SCHEMA"


# =============================================================================
# VALIDATION ERROR TYPES
# =============================================================================

class ValidationError(Exception):
    """A single field-level validation failure."""

    def __init__(self, field: str, code: str, message: str, value: Any = None):
        self.field = field
        self.code = code
        self.message = message
        self.value = value
        super().__init__(f"{field}: {code}: {message}")

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ValidationError):
            return NotImplemented
        return (self.field, self.code, self.message) == (other.field, other.code, other.message)

    def __hash__(self) -> int:
        return hash((self.field, self.code, self.message))

    def __repr__(self) -> str:
        return f"ValidationError(field={self.field!r}, code={self.code!r}, message={self.message!r})"

    def to_dict(self) -> dict:
        return {"field": self.field, "code": self.code, "message": self.message}


class ValidationErrors(Exception):
    """Collection of validation errors, for callers that prefer raising."""

    def __init__(self, errors: List[ValidationError]):
        self.errors = errors
        messages = "; ".join(f"{e.field}: {e.message}" for e in errors)
        super().__init__(f"Validation failed: {messages}")


# =============================================================================
# VALIDATION RESULT
# =============================================================================

@dataclass
class ValidationResult:
    """Result of a validation operation."""
    is_valid: bool
    errors: List[ValidationError] = field(default_factory=list)
    sanitized_value: Any = None

    def raise_if_invalid(self) -> None:
        """Raise ValidationErrors if validation failed."""
        if not self.is_valid:
            raise ValidationErrors(self.errors)

    @classmethod
    def success(cls, sanitized_value: Any = None) -> "ValidationResult":
        return cls(is_valid=True, sanitized_value=sanitized_value)

    @classmethod
    def failure(cls, errors: List[ValidationError]) -> "ValidationResult":
        return cls(is_valid=False, errors=errors)

    @classmethod
    def combine(cls, results: Iterable["ValidationResult"]) -> "ValidationResult":
        errors: List[ValidationError] = []
        for r in results:
            errors.extend(r.errors)
        return cls(is_valid=not errors, errors=errors)


# =============================================================================
# FIELD VALIDATOR
# =============================================================================

class FieldValidator:
    """Collection of FIN field validators."""

    # Patterns
    X_CHARSET = re.compile(r"^[A-Za-z0-9/\-?:().,'+ ]*$")
    X_CHARSET_MULTILINE = re.compile(r"^[A-Za-z0-9/\-?:().,'+ \r\n]*$")
    X_CHAR = re.compile(r"[A-Za-z0-9/\-?:().,'+ \r\n]")
    BIC_PATTERN = re.compile(r"^[A-Z0-9]{8}([A-Z0-9]{3})?$")
    IBAN_PATTERN = re.compile(r"^[A-Z]{2}[0-9]{2}[A-Z0-9]{11,30}$")
    CURRENCY_PATTERN = re.compile(r"^[A-Z]{3}$")

    # Limits
    REF_MAX_LENGTH = 16
    NARRATIVE_70_MAX = 140
    NARRATIVE_72_MAX = 210
    NARRATIVE_79_MAX = 3500
    AMOUNT_MAX_DIGITS = 15

    # Coded values
    CURRENCIES = frozenset({
        "EUR", "USD", "GBP", "CHF", "JPY", "BRL", "CAD", "AUD", "CNY", "MXN",
        "SEK", "NOK", "DKK", "HKD", "SGD", "ZAR",
    })
    CHARGES = frozenset({"OUR", "SHA", "BEN"})
    BANK_OPERATION_CODES = frozenset({"CRED", "CRTS", "SPAY", "SPRI", "SSTD"})

    @staticmethod
    def normalize_bic(value: Optional[str]) -> str:
        """Uppercase and drop whitespace."""
        return re.sub(r"\s+", "", value or "").upper()

    @classmethod
    def _bad_chars(cls, value: str, multiline: bool) -> List[str]:
        allowed = cls.X_CHARSET_MULTILINE if multiline else cls.X_CHARSET
        if allowed.match(value):
            return []
        seen: List[str] = []
        for ch in value:
            if not cls.X_CHAR.match(ch) or (not multiline and ch in "\r\n"):
                if ch not in seen:
                    seen.append(ch)
        return seen

    @classmethod
    def _reference(cls, value: Optional[str], field_name: str, required: bool) -> ValidationResult:
        v = value or ""
        if not v.strip():
            if required:
                return ValidationResult.failure(
                    [ValidationError(field_name, EMPTY, "reference is required", value)]
                )
            return ValidationResult.success("")

        errors: List[ValidationError] = []
        if len(v) > cls.REF_MAX_LENGTH:
            errors.append(ValidationError(
                field_name, TOO_LONG,
                f"at most {cls.REF_MAX_LENGTH} characters (got {len(v)})", value,
            ))
        bad = cls._bad_chars(v, multiline=False)
        if bad:
            errors.append(ValidationError(
                field_name, BAD_CHARSET, f"characters outside SWIFT X set: {''.join(bad)!r}", value,
            ))
        if v.startswith("/") or v.endswith("/") or "//" in v:
            errors.append(ValidationError(
                field_name, BAD_FORMAT, "must not start or end with '/' or contain '//'", value,
            ))
        return ValidationResult.failure(errors) if errors else ValidationResult.success(v)

    @classmethod
    def validate_ref20(cls, value: Optional[str]) -> ValidationResult:
        """Transaction reference number (:20), mandatory."""
        return cls._reference(value, ":20", required=True)

    @classmethod
    def validate_ref21(cls, value: Optional[str], field_name: str = ":21") -> ValidationResult:
        """Related reference (:21); empty is valid."""
        return cls._reference(value, field_name, required=False)

    @classmethod
    def validate_free_text(
        cls,
        value: Optional[str],
        max_length: int,
        field_name: str,
        multiline: bool = True,
        required: bool = False,
    ) -> ValidationResult:
        """Narrative validator.

        CR and LF are accepted only when ``multiline`` is set. Continuation
        lines may not begin with ':' or '-' because either would be read back
        as a new tag or as the block 4 terminator.
        """
        v = value or ""
        if not v.strip():
            if required:
                return ValidationResult.failure(
                    [ValidationError(field_name, EMPTY, "field is required", value)]
                )
            return ValidationResult.success("")

        errors: List[ValidationError] = []
        if len(v) > max_length:
            errors.append(ValidationError(
                field_name, TOO_LONG, f"at most {max_length} characters (got {len(v)})", value,
            ))
        bad = cls._bad_chars(v, multiline=multiline)
        if bad:
            errors.append(ValidationError(
                field_name, BAD_CHARSET, f"characters outside SWIFT X set: {''.join(bad)!r}", value,
            ))
        if multiline:
            lines = v.replace("\r\n", "\n").split("\n")
            for n, line in enumerate(lines[1:], start=2):
                if line.startswith((":", "-")):
                    errors.append(ValidationError(
                        field_name, BAD_LINE_START, f"line {n} must not start with ':' or '-'", value,
                    ))
                    break
        return ValidationResult.failure(errors) if errors else ValidationResult.success(v)

    @classmethod
    def validate_bic(cls, value: Optional[str], field_name: str = "bic") -> ValidationResult:
        bic = cls.normalize_bic(value)
        if not bic:
            return ValidationResult.failure([ValidationError(field_name, EMPTY, "BIC is required", value)])
        if not cls.BIC_PATTERN.match(bic):
            return ValidationResult.failure([ValidationError(
                field_name, BAD_FORMAT, "BIC must be 8 or 11 alphanumeric characters", value,
            )])
        return ValidationResult.success(bic)

    @classmethod
    def validate_iban(
        cls,
        value: Optional[str],
        field_name: str = "iban",
        checksum: bool = False,
    ) -> ValidationResult:
        """Shape check, plus ISO 13616 mod-97 when ``checksum`` is set."""
        iban = re.sub(r"\s+", "", value or "").upper()
        if not iban:
            return ValidationResult.failure([ValidationError(field_name, EMPTY, "IBAN is required", value)])
        if not cls.IBAN_PATTERN.match(iban):
            return ValidationResult.failure([ValidationError(
                field_name, BAD_FORMAT, "IBAN must be country code, check digits and 11-30 characters", value,
            )])
        if checksum and not cls.iban_checksum_ok(iban):
            return ValidationResult.failure([ValidationError(
                field_name, INVALID_VALUE, "IBAN check digits do not verify", value,
            )])
        return ValidationResult.success(iban)

    @staticmethod
    def iban_checksum_ok(iban: str) -> bool:
        rearranged = iban[4:] + iban[:4]
        digits = "".join(str(int(ch, 36)) for ch in rearranged)
        return int(digits) % 97 == 1

    @classmethod
    def validate_currency(cls, value: Optional[str], field_name: str = "currency") -> ValidationResult:
        ccy = (value or "").strip().upper()
        if not cls.CURRENCY_PATTERN.match(ccy):
            return ValidationResult.failure([ValidationError(
                field_name, BAD_FORMAT, "currency must be a three-letter ISO code", value,
            )])
        if ccy not in cls.CURRENCIES:
            return ValidationResult.failure([ValidationError(
                field_name, INVALID_VALUE, f"unsupported currency {ccy}", value,
            )])
        return ValidationResult.success(ccy)

    @classmethod
    def validate_amount(cls, value: Any, field_name: str = "amount") -> ValidationResult:
        if value is None or (isinstance(value, str) and not value.strip()):
            return ValidationResult.failure([ValidationError(field_name, EMPTY, "amount is required", value)])
        if isinstance(value, float):
            value = repr(value)
        try:
            amount = Decimal(str(value).replace(",", ".")) if isinstance(value, str) else Decimal(value)
        except (InvalidOperation, TypeError, ValueError):
            return ValidationResult.failure([ValidationError(
                field_name, BAD_FORMAT, "amount is not a number", value,
            )])
        if not amount.is_finite() or amount <= 0:
            return ValidationResult.failure([ValidationError(
                field_name, INVALID_VALUE, "amount must be greater than zero", value,
            )])
        if amount != amount.quantize(Decimal("0.01")):
            return ValidationResult.failure([ValidationError(
                field_name, BAD_FORMAT, "amount has more than two decimal places", value,
            )])
        if len(str(amount.quantize(Decimal("0.01"))).replace(".", "")) > cls.AMOUNT_MAX_DIGITS:
            return ValidationResult.failure([ValidationError(
                field_name, TOO_LONG, f"amount exceeds {cls.AMOUNT_MAX_DIGITS} digits", value,
            )])
        return ValidationResult.success(amount)

    @classmethod
    def validate_charges(cls, value: Optional[str], field_name: str = ":71A") -> ValidationResult:
        code = (value or "").strip().upper()
        if code not in cls.CHARGES:
            return ValidationResult.failure([ValidationError(
                field_name, INVALID_VALUE, "details of charges must be OUR, SHA or BEN", value,
            )])
        return ValidationResult.success(code)

    @classmethod
    def validate_bank_operation_code(cls, value: Optional[str], field_name: str = ":23B") -> ValidationResult:
        code = (value or "").strip().upper()
        if code not in cls.BANK_OPERATION_CODES:
            return ValidationResult.failure([ValidationError(
                field_name, INVALID_VALUE, f"unknown bank operation code {code or '(empty)'}", value,
            )])
        return ValidationResult.success(code)

    @classmethod
    def validate_date(cls, value: Any, field_name: str = "date") -> ValidationResult:
        """Accept ``date`` objects, ISO strings or YYMMDD strings."""
        from fingate.core import to_yymmdd

        if value is None or value == "":
            return ValidationResult.failure([ValidationError(field_name, EMPTY, "date is required", value)])
        try:
            yymmdd = to_yymmdd(value)
            datetime.strptime(yymmdd, "%y%m%d")
        except ValueError:
            return ValidationResult.failure([ValidationError(
                field_name, BAD_FORMAT, "date must be ISO (YYYY-MM-DD) or YYMMDD", value,
            )])
        return ValidationResult.success(yymmdd)

    @classmethod
    def validate_party(
        cls,
        value: Optional[str],
        field_name: str,
        required: bool = True,
        max_lines: int = 4,
        line_length: int = 35,
    ) -> ValidationResult:
        """Name-and-address style party fields (:50K, :59): up to 4*35x."""
        v = value or ""
        if not v.strip():
            if required:
                return ValidationResult.failure([ValidationError(field_name, EMPTY, "party is required", value)])
            return ValidationResult.success("")

        result = cls.validate_free_text(v, max_lines * (line_length + 1) + line_length, field_name)
        errors = list(result.errors)
        lines = v.replace("\r\n", "\n").split("\n")
        # an account line (/...) is allowed ahead of the 4 name/address lines
        body = lines[1:] if lines[0].startswith("/") else lines
        if len(body) > max_lines:
            errors.append(ValidationError(field_name, TOO_LONG, f"at most {max_lines} lines", value))
        if any(len(line) > line_length for line in lines):
            errors.append(ValidationError(
                field_name, TOO_LONG, f"lines may hold at most {line_length} characters", value,
            ))
        return ValidationResult.failure(errors) if errors else ValidationResult.success(v)
