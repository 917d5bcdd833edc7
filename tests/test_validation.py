"""
Field validator tests: references, narratives, BIC/IBAN, money and dates.
"""

from datetime import date
from decimal import Decimal

import pytest

from fingate.validation import (
    BAD_CHARSET,
    BAD_FORMAT,
    BAD_LINE_START,
    EMPTY,
    INVALID_VALUE,
    TOO_LONG,
    FieldValidator,
    ValidationError,
    ValidationErrors,
    ValidationResult,
)


def _codes(result):
    return [e.code for e in result.errors]


class TestReferences:

    def test_ref20_accepts_sixteen_characters(self):
        result = FieldValidator.validate_ref20("A" * 16)
        assert result.is_valid
        assert result.sanitized_value == "A" * 16

    def test_ref20_too_long(self):
        result = FieldValidator.validate_ref20("A" * 17)
        assert _codes(result) == [TOO_LONG]
        assert result.errors[0].field == ":20"

    def test_ref20_required(self):
        assert _codes(FieldValidator.validate_ref20("")) == [EMPTY]
        assert _codes(FieldValidator.validate_ref20("   ")) == [EMPTY]
        assert _codes(FieldValidator.validate_ref20(None)) == [EMPTY]

    def test_ref21_may_be_empty(self):
        assert FieldValidator.validate_ref21("").is_valid
        assert FieldValidator.validate_ref21(None).is_valid

    def test_reference_charset(self):
        result = FieldValidator.validate_ref20("REF_1")
        assert _codes(result) == [BAD_CHARSET]
        assert "_" in result.errors[0].message

    @pytest.mark.parametrize("value", ["/REF", "REF/", "RE//F"])
    def test_reference_slash_rules(self, value):
        assert BAD_FORMAT in _codes(FieldValidator.validate_ref20(value))

    def test_reports_all_problems_at_once(self):
        result = FieldValidator.validate_ref20("/" + "A" * 20 + "_")
        assert set(_codes(result)) == {TOO_LONG, BAD_CHARSET, BAD_FORMAT}

    def test_custom_field_name(self):
        result = FieldValidator.validate_ref21("X" * 17, "transactions[0]:21")
        assert result.errors[0].field == "transactions[0]:21"


class TestFreeText:

    def test_multiline_accepted(self):
        assert FieldValidator.validate_free_text("LINE ONE\nLINE TWO", 100, ":79").is_valid

    def test_single_line_rejects_newline(self):
        result = FieldValidator.validate_free_text("A\nB", 100, ":25", multiline=False)
        assert _codes(result) == [BAD_CHARSET]

    def test_too_long(self):
        result = FieldValidator.validate_free_text("A" * 3501, 3500, ":79")
        assert _codes(result) == [TOO_LONG]

    def test_exact_limit(self):
        assert FieldValidator.validate_free_text("A" * 3500, 3500, ":79").is_valid

    def test_bad_characters_listed_once(self):
        result = FieldValidator.validate_free_text("A@B@C#", 100, ":79")
        assert _codes(result) == [BAD_CHARSET]
        assert "'@#'" in result.errors[0].message

    @pytest.mark.parametrize("line", [":20:FAKE", "-}"])
    def test_continuation_line_cannot_look_like_tag_or_terminator(self, line):
        result = FieldValidator.validate_free_text(f"FIRST\n{line}", 100, ":79")
        assert BAD_LINE_START in _codes(result)

    def test_first_line_may_start_with_colon(self):
        assert FieldValidator.validate_free_text(":NOTE", 100, ":79").is_valid

    def test_required(self):
        assert _codes(FieldValidator.validate_free_text("", 10, ":79", required=True)) == [EMPTY]
        assert FieldValidator.validate_free_text("", 10, ":72").is_valid


class TestBicAndIban:

    @pytest.mark.parametrize("bic", ["COBADEFF", "COBADEFFXXX", "cobadeff", "COBA DEFF XXX"])
    def test_valid_bic(self, bic):
        result = FieldValidator.validate_bic(bic)
        assert result.is_valid
        assert result.sanitized_value == FieldValidator.normalize_bic(bic)

    @pytest.mark.parametrize("bic", ["AB", "COBADEFFX", "COBADEFF-XX"])
    def test_invalid_bic(self, bic):
        result = FieldValidator.validate_bic(bic, "receiver_bic")
        assert _codes(result) == [BAD_FORMAT]
        assert result.errors[0].field == "receiver_bic"

    def test_empty_bic(self):
        assert _codes(FieldValidator.validate_bic("")) == [EMPTY]

    def test_iban_shape(self):
        assert FieldValidator.validate_iban("DE89 3704 0044 0532 0130 00").is_valid
        assert _codes(FieldValidator.validate_iban("DE89")) == [BAD_FORMAT]

    def test_iban_checksum(self):
        assert FieldValidator.validate_iban("GB29NWBK60161331926819", checksum=True).is_valid
        result = FieldValidator.validate_iban("GB28NWBK60161331926819", checksum=True)
        assert _codes(result) == [INVALID_VALUE]

    def test_iban_checksum_off_by_default(self):
        assert FieldValidator.validate_iban("GB28NWBK60161331926819").is_valid


class TestMoney:

    def test_currency(self):
        assert FieldValidator.validate_currency("eur").sanitized_value == "EUR"
        assert _codes(FieldValidator.validate_currency("EURO")) == [BAD_FORMAT]
        assert _codes(FieldValidator.validate_currency("XYZ")) == [INVALID_VALUE]

    @pytest.mark.parametrize("value,expected", [
        ("1234.56", Decimal("1234.56")),
        ("1234,56", Decimal("1234.56")),
        (100, Decimal("100")),
        (Decimal("0.01"), Decimal("0.01")),
        (12.5, Decimal("12.5")),
    ])
    def test_amount_accepted(self, value, expected):
        result = FieldValidator.validate_amount(value)
        assert result.is_valid
        assert result.sanitized_value == expected

    @pytest.mark.parametrize("value,code", [
        (None, EMPTY),
        ("", EMPTY),
        ("abc", BAD_FORMAT),
        ("0", INVALID_VALUE),
        ("-5", INVALID_VALUE),
        ("1.234", BAD_FORMAT),
        ("1" * 16, TOO_LONG),
    ])
    def test_amount_rejected(self, value, code):
        assert _codes(FieldValidator.validate_amount(value)) == [code]

    def test_charges_and_operation_code(self):
        assert FieldValidator.validate_charges("sha").sanitized_value == "SHA"
        assert _codes(FieldValidator.validate_charges("ALL")) == [INVALID_VALUE]
        assert FieldValidator.validate_bank_operation_code("CRED").is_valid
        assert _codes(FieldValidator.validate_bank_operation_code("XXXX")) == [INVALID_VALUE]


class TestDates:

    @pytest.mark.parametrize("value", [date(2024, 3, 15), "2024-03-15", "240315"])
    def test_date_forms(self, value):
        result = FieldValidator.validate_date(value)
        assert result.sanitized_value == "240315"

    @pytest.mark.parametrize("value", ["2024-13-01", "241301", "15/03/2024"])
    def test_bad_dates(self, value):
        assert _codes(FieldValidator.validate_date(value)) == [BAD_FORMAT]

    def test_missing_date(self):
        assert _codes(FieldValidator.validate_date(None)) == [EMPTY]


class TestParty:

    def test_account_line_plus_four_lines(self):
        value = "/DE89370400440532013000\nNAME\nSTREET\nCITY\nCOUNTRY"
        assert FieldValidator.validate_party(value, ":59").is_valid

    def test_too_many_lines(self):
        result = FieldValidator.validate_party("A\nB\nC\nD\nE", ":59")
        assert TOO_LONG in _codes(result)

    def test_long_line(self):
        result = FieldValidator.validate_party("A" * 36, ":50K")
        assert TOO_LONG in _codes(result)


class TestResultTypes:

    def test_combine(self):
        combined = ValidationResult.combine([
            FieldValidator.validate_ref20(""),
            FieldValidator.validate_bic("AB"),
            FieldValidator.validate_currency("EUR"),
        ])
        assert not combined.is_valid
        assert len(combined.errors) == 2

    def test_raise_if_invalid(self):
        with pytest.raises(ValidationErrors) as exc:
            FieldValidator.validate_ref20("").raise_if_invalid()
        assert exc.value.errors[0].code == EMPTY

    def test_error_equality_ignores_value(self):
        a = ValidationError(":20", EMPTY, "reference is required", "")
        b = ValidationError(":20", EMPTY, "reference is required", None)
        assert a == b
        assert len({a, b}) == 1
        assert a.to_dict() == {"field": ":20", "code": EMPTY, "message": "reference is required"}
