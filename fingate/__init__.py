"""
fingate: SWIFT FIN (MT) message engine

Builds, validates, envelopes and tracks outbound MT messages, and parses
received ones.

Architecture
────────────

    OUTBOUND
      validation.py      FieldValidator: per-field format rules
      payloads.py        MT families, payload variants, SwiftHeader
      autofields.py      session/sequence counters, UETR, CHK
      blocks.py          BlockBuilder: {1:} {2:} {3:} {4:} {5:}
      assembler.py       MessageAssembler: validate + render
      lifecycle.py       LifecycleStateMachine with four-eyes approval
      network_report.py  trailer report parsing

    INBOUND
      inbound.py         InboundParser, IncomingMessageService

    SUPPORT
      audit.py           append-only audit entries
      store.py           in-memory stores with per-message locks
      schema.py          JSON Schema validation of input mappings
      config.py          layered configuration (defaults, YAML, FINGATE_* env)
      observability.py   structured logging with correlation ids
      cli.py             fingate command line

Typical use
───────────

    from fingate import MessageAssembler, FreeFormatPayload, SwiftHeader
    from fingate.config import get_originator

    assembler = MessageAssembler(get_originator())
    result = assembler.assemble(
        FreeFormatPayload(mt_type="MT199", transaction_reference="REF1", narrative="HELLO"),
        SwiftHeader(receiver_bic="COBADEFF"),
        with_auto_fields=True,
    )
    print(result.fin_message)
"""

__version__ = "0.1.0"


# Lazy imports to avoid circular dependencies
def __getattr__(name):

    if name in ("FieldValidator", "ValidationError", "ValidationResult"):
        from fingate import validation
        return getattr(validation, name)

    if name in ("MtFamily", "SwiftHeader", "MtPayload", "FreeFormatPayload",
                "CustomerTransferPayload", "TransferInstruction", "TransferRequestPayload",
                "InstitutionTransferPayload", "NarrativeAdvicePayload", "Balance",
                "StatementLine", "StatementPayload", "PayloadError", "payload_from_dict",
                "family_for"):
        from fingate import payloads
        return getattr(payloads, name)

    if name in ("AutoFieldGenerator", "SequenceCounter", "generate_uetr", "generate_chk"):
        from fingate import autofields
        return getattr(autofields, name)

    if name in ("BlockBuilder", "EnvelopeContext"):
        from fingate import blocks
        return getattr(blocks, name)

    if name in ("MessageAssembler", "AssemblyResult"):
        from fingate import assembler
        return getattr(assembler, name)

    if name in ("LifecycleStateMachine", "LifecycleEvent", "LifecycleError",
                "MessageStatus", "MtMessage"):
        from fingate import lifecycle
        return getattr(lifecycle, name)

    if name in ("InboundParser", "IncomingMessageService", "IncomingMessage", "ParseResult"):
        from fingate import inbound
        return getattr(inbound, name)

    if name in ("NetworkReport", "parse_network_report"):
        from fingate import network_report
        return getattr(network_report, name)

    raise AttributeError(f"module 'fingate' has no attribute {name!r}")
