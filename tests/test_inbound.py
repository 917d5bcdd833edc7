"""
Inbound parser and incoming message service tests.
"""

from decimal import Decimal

import pytest

from fingate.core import sha256_bytes, sha256_text
from fingate.inbound import (
    BLOCK1_MALFORMED,
    BLOCK4_MISSING,
    BLOCK4_UNTERMINATED,
    EMPTY_PAYLOAD,
    MISSING_TAG,
    ORPHAN_TEXT,
    UNKNOWN_MT,
    InboundError,
    InboundParser,
    IncomingMessageService,
    IncomingStatus,
    IngestSource,
    LineTagScanner,
)

MT103_RAW = (
    "{1:F01COBADEFFAXXX0123456789}"
    "{2:I103BOMGBRS1XXXXN}"
    "{3:{108:MUR42}{121:eb6305c9-1f7f-49de-aed0-16487c27b42d}}"
    "{4:\r\n"
    ":20:INV2024001\r\n"
    ":23B:CRED\r\n"
    ":32A:240315EUR1234,56\r\n"
    ":50K:/DE89370400440532013000\r\n"
    "ACME GMBH\r\n"
    ":59:/GB29NWBK60161331926819\r\n"
    "JOHN SMITH\r\n"
    ":70:INVOICE 42\r\n"
    ":71A:SHA\r\n"
    "-}"
    "{5:{CHK:0123456789AB}}"
)

MT940_RAW = (
    "{1:F01BANKDEFFAXXX0001000001}{2:I940BOMGBRS1XXXXN}{4:\n"
    ":20:STMT1\n"
    ":25:DE89370400440532013000\n"
    ":28C:00012/001\n"
    ":60F:C240314EUR100,00\n"
    ":61:240315C75,00NTRFNONREF\n"
    ":86:FIRST\n"
    ":61:240315D25,00NTRFNONREF\n"
    ":86:SECOND\n"
    ":62F:C240315EUR150,00\n"
    "-}"
)


@pytest.fixture
def parser():
    return InboundParser()


def _codes(result):
    return [e.code for e in result.parse_errors]


class TestParser:

    def test_parses_mt103(self, parser):
        result = parser.parse(MT103_RAW, received_at="2024-03-15T10:00:00+00:00")
        assert result.parse_errors == []
        assert result.mt_type == "MT103"
        assert result.sender_bic == "COBADEFFXXX"
        assert result.receiver_bic == "BOMGBRS1XXX"
        assert result.priority == "N"
        assert (result.session_number, result.sequence_number) == ("0123", "456789")
        assert result.uetr == "eb6305c9-1f7f-49de-aed0-16487c27b42d"
        assert result.user_header["108"] == "MUR42"
        assert result.chk == "0123456789AB"

    def test_crlf_and_continuation_lines(self, parser):
        result = parser.parse(MT103_RAW)
        assert result.first("50K").value == "/DE89370400440532013000\nACME GMBH"
        assert [t.tag for t in result.tags] == ["20", "23B", "32A", "50K", "59", "70", "71A"]

    def test_extracted_fields(self, parser):
        ex = parser.parse(MT103_RAW).extracted
        assert ex.ref20 == "INV2024001"
        assert ex.value_date == "2024-03-15"
        assert ex.currency == "EUR"
        assert ex.amount == Decimal("1234.56")

    def test_normalized_text(self, parser):
        text = parser.parse(MT103_RAW, received_at="2024-03-15T10:00:00+00:00").normalized_text
        assert text.startswith("=== HEADER ===\nMT Type: MT103\nSender BIC: COBADEFFXXX")
        assert "UETR: eb6305c9-1f7f-49de-aed0-16487c27b42d" in text
        assert "Received: 2024-03-15T10:00:00+00:00" in text
        assert ":20: INV2024001" in text
        assert "Amount: 1234.56" in text
        assert ":50K: /DE89370400440532013000\n  ACME GMBH" in text

    def test_repeated_tags_preserved_in_order(self, parser):
        result = parser.parse(MT940_RAW)
        assert result.parse_errors == []
        assert [(t.tag, t.value) for t in result.tags if t.tag in ("61", "86")] == [
            ("61", "240315C75,00NTRFNONREF"),
            ("86", "FIRST"),
            ("61", "240315D25,00NTRFNONREF"),
            ("86", "SECOND"),
        ]

    def test_missing_block4(self, parser):
        raw = "{1:F01COBADEFFAXXX0001000001}{2:I199BOMGBRS1XXXXN}just some text"
        result = parser.parse(raw)
        assert result.tags == []
        assert BLOCK4_MISSING in _codes(result)
        assert result.mt_type == "MT199"

    def test_unterminated_block4(self, parser):
        raw = "{1:F01COBADEFFAXXX0001000001}{2:I199BOMGBRS1XXXXN}{4:\n:20:REF\n:79:CUT OFF"
        result = parser.parse(raw)
        assert BLOCK4_UNTERMINATED in _codes(result)
        assert result.tag_pairs() == [("20", "REF"), ("79", "CUT OFF")]

    def test_unterminated_block4_stops_at_trailer(self, parser):
        raw = "{2:I199BOMGBRS1XXXXN}{4:\n:20:REF\n:79:HI{5:{CHK:ABCDEF123456}}"
        result = parser.parse(raw)
        assert result.first("79").value == "HI"
        assert result.chk == "ABCDEF123456"

    def test_missing_mandatory_tag(self, parser):
        raw = "{2:I199BOMGBRS1XXXXN}{4:\n:20:REF\n-}"
        result = parser.parse(raw)
        assert result.parse_errors[0].code == MISSING_TAG
        assert ":79:" in result.parse_errors[0].message

    def test_unknown_mt(self, parser):
        raw = "{2:I999BOMGBRS1XXXXN}{4:\n:20:REF\n-}"
        assert _codes(parser.parse("{2:I103BOMGBRS1XXXXN}{4:\n:20:REF\n-}")).count(UNKNOWN_MT) == 0
        assert UNKNOWN_MT not in _codes(parser.parse(raw))  # n99 is free format
        result = parser.parse("{2:I600BOMGBRS1XXXXN}{4:\n:20:REF\n-}")
        assert UNKNOWN_MT in _codes(result)
        assert UNKNOWN_MT not in _codes(
            InboundParser(require_known_mt=False).parse("{2:I600BOMGBRS1XXXXN}{4:\n:20:REF\n-}"))

    def test_output_message_header(self, parser):
        raw = (
            "{1:F01BOMGBRS1AXXX0001000001}"
            "{2:O1991200240315COBADEFFAXXX00019999992403151201N}"
            "{4:\n:20:REF\n:79:HI\n-}"
        )
        result = parser.parse(raw)
        assert result.direction == "O"
        assert result.mt_type == "MT199"
        assert result.sender_bic == "COBADEFFXXX"
        assert result.receiver_bic == "BOMGBRS1XXX"

    def test_malformed_block1(self, parser):
        result = parser.parse("{1:F01SHORT}{2:I199BOMGBRS1XXXXN}{4:\n:20:R\n:79:X\n-}")
        assert BLOCK1_MALFORMED in _codes(result)
        assert result.sender_bic is None

    def test_orphan_text(self, parser):
        result = parser.parse("{2:I199BOMGBRS1XXXXN}{4:\nstray\n:20:R\n:79:X\n-}")
        assert ORPHAN_TEXT in _codes(result)
        assert len(result.tags) == 2

    @pytest.mark.parametrize("raw", ["", "   ", None, 42])
    def test_never_raises_on_garbage(self, parser, raw):
        result = parser.parse(raw)
        assert not result.parsed
        assert _codes(result) == [EMPTY_PAYLOAD]

    @pytest.mark.parametrize("raw", ["{{{{", "}{4:", "{4:\n-}", ":20:", "{1:F01" * 50])
    def test_tolerates_broken_framing(self, parser, raw):
        result = parser.parse(raw)
        assert result.parse_errors

    def test_custom_scanner(self):
        class UpperScanner(LineTagScanner):
            def scan(self, content):
                tags, issues = super().scan(content)
                for t in tags:
                    t.value_lines = [line.upper() for line in t.value_lines]
                return tags, issues

        result = InboundParser(UpperScanner()).parse("{2:I199BOMGBRS1XXXXN}{4:\n:20:r\n:79:hi\n-}")
        assert result.first("79").value == "HI"


class TestIncomingMessageService:

    @pytest.fixture
    def service(self, fixed_clock):
        return IncomingMessageService(max_payload_bytes=4096, clock=fixed_clock)

    def test_ingest_preserves_raw_and_audits(self, service):
        message = service.ingest(MT103_RAW, IngestSource.SWIFT_GATEWAY, actor_id=3)
        assert message.raw_payload == MT103_RAW
        assert message.checksum_sha256 == sha256_text(MT103_RAW)
        assert message.status is IncomingStatus.PARSED
        assert message.mt_type == "MT103"
        assert message.extracted.ref20 == "INV2024001"
        assert [a.event for a in message.audit_log] == ["RECEIVED", "PARSED"]
        assert message.audit_log[0].details["source"] == "SWIFT_GATEWAY"

    def test_ingest_without_block4(self, service):
        raw = "NOT A FIN MESSAGE AT ALL"
        message = service.ingest(raw)
        assert message.status is IncomingStatus.PARSE_ERROR
        assert message.raw_payload == raw
        assert message.normalized_json == []
        assert [a.event for a in message.audit_log] == ["RECEIVED", "PARSE_ERROR"]

    def test_payload_limit(self, service):
        with pytest.raises(InboundError) as exc:
            service.ingest("X" * 5000)
        assert exc.value.code == "PAYLOAD_TOO_LARGE"

    def test_ingest_bytes_with_undecodable_byte(self, service):
        """Received bytes that are not UTF-8 are stored, hashed and parsed."""
        raw = MT103_RAW.encode("ascii").replace(b"INVOICE 42", b"INVOICE \xe9 42")
        message = service.ingest(raw, IngestSource.FILE)
        assert message.raw_payload == raw.decode("utf-8", "surrogateescape")
        assert message.checksum_sha256 == sha256_bytes(raw)
        assert message.raw_size_bytes == len(raw)
        assert message.audit_log[0].details["size"] == len(raw)
        assert message.status is IncomingStatus.PARSED
        assert message.extracted.ref20 == "INV2024001"
        assert message.to_dict()["raw_size_bytes"] == len(raw)

    def test_ingest_text_carrying_escaped_byte(self, service):
        raw = MT103_RAW.replace("INVOICE 42", "INVOICE \udce9 42")
        message = service.ingest(raw)
        assert message.raw_payload == raw
        assert message.checksum_sha256 == sha256_bytes(raw.encode("utf-8", "surrogateescape"))
        assert [t.tag for t in message.normalized_json] == [
            "20", "23B", "32A", "50K", "59", "70", "71A"]
        service.reparse(message)
        assert message.status is IncomingStatus.PARSED

    def test_ingest_lone_surrogate(self, service):
        message = service.ingest("{2:I199BOMGBRS1XXXXN}{4:\n:20:R\n:79:\ud800\n-}")
        assert message.status is IncomingStatus.PARSED
        assert message.raw_size_bytes == len(message.raw_payload) + 2

    def test_from_config(self, fixed_clock):
        from fingate.config import get_config_manager

        manager = get_config_manager()
        manager.set("inbound.max_payload_bytes", 10)
        manager.set("inbound.require_known_mt", False)
        service = IncomingMessageService.from_config(clock=fixed_clock)
        assert service.max_payload_bytes == 10
        assert service.parser.require_known_mt is False
        with pytest.raises(InboundError) as exc:
            service.ingest("X" * 11)
        assert exc.value.code == "PAYLOAD_TOO_LARGE"

    def test_ingest_request_schema(self, service):
        message = service.ingest_request({"raw_payload": MT940_RAW, "ingest_source": "FILE"})
        assert message.ingest_source is IngestSource.FILE
        assert message.status is IncomingStatus.PARSED
        with pytest.raises(InboundError) as exc:
            service.ingest_request({"raw_payload": "", "extra": 1})
        assert exc.value.code == "INVALID_REQUEST"

    def test_reparse_replaces_derived_fields_only(self, service):
        message = service.ingest("{2:I199BOMGBRS1XXXXN}{4:\n:20:R\n-}")
        assert message.status is IncomingStatus.PARSE_ERROR
        checksum = message.checksum_sha256
        service.parser = InboundParser(require_known_mt=False)
        service.reparse(message, actor_id=2)
        assert message.checksum_sha256 == checksum
        assert message.audit_log[-1].event == "REPARSED"
        assert message.audit_log[-1].details["from_status"] == "PARSE_ERROR"

    def test_review_and_archive(self, service):
        message = service.ingest(MT103_RAW)
        service.record_view(message, 4)
        service.mark_review_required(message, 4, reason="sanctions hit")
        assert message.status is IncomingStatus.REVIEW_REQUIRED
        service.archive(message, 4)
        assert message.status is IncomingStatus.ARCHIVED
        assert [a.event for a in message.audit_log] == [
            "RECEIVED", "PARSED", "VIEWED", "REVIEW_REQUIRED", "ARCHIVED"]
        with pytest.raises(InboundError):
            service.reparse(message)
        with pytest.raises(InboundError):
            service.archive(message)

    def test_to_dict(self, service):
        data = service.ingest(MT103_RAW).to_dict()
        assert data["status"] == "PARSED"
        assert data["raw_size_bytes"] == len(MT103_RAW.encode("utf-8"))
        assert data["amount"] == "1234.56"
        assert data["normalized_json"][0] == {"tag": "20", "value_lines": ["INV2024001"]}
