"""
FIN block builder.

Renders the five-block envelope around an ordered list of block 4 tags:

    {1:F01BOMGBRS1XXXX0001000001}              basic header
    {2:I199COBADEFFXXXN}                        application header (input)
    {3:{108:MUR}{111:001}{119:STP}{121:UETR}}   user header, optional
    {4:
    :20:REF123456
    :79:Test message
    -}                                          text block
    {5:{CHK:0123456789AB}{TNG:}}                trailer

Block order is fixed. The trailer digest is computed over the exact text of
blocks 1-4 as rendered, so the builder never edits a block after the CHK is
taken.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, List, Optional, Sequence, Tuple

from fingate.observability import GatewayLayer, get_logger

log = get_logger("blocks", GatewayLayer.BLOCKS)

Tag = Tuple[str, str]

BLOCK4_OPEN = "{4:\n"
BLOCK4_CLOSE = "\n-}"

# user header sub-fields in the order they must appear
USER_HEADER_ORDER = ("108", "111", "119", "121")


class BlockOrderError(AssertionError):
    """A block was rendered out of sequence. Always a programming error."""


def receiver_address(bic: str) -> str:
    """Receiver BIC as carried in block 2: 11 characters, branch XXX if absent."""
    bic = bic.replace(" ", "").upper()
    return bic if len(bic) == 11 else bic[:8] + "XXX"


@dataclass
class EnvelopeContext:
    """Everything the header blocks need. Built by the assembler."""
    logical_terminal: str
    application_id: str
    session_number: str
    sequence_number: str
    mt_code: str
    receiver_bic: str
    priority: str = "N"
    user_header: List[Tuple[str, str]] = field(default_factory=list)
    test_and_training: bool = False
    chk: Optional[str] = None


class BlockBuilder:
    """
    Renders blocks in order 1, 2, 3 (optional), 4, 5.

    ``render`` is the normal entry point; the per-block methods are public so
    callers can inspect individual blocks.
    """

    def __init__(self, checksum: Callable[[str], str]):
        self._checksum = checksum

    @staticmethod
    def basic_header(ctx: EnvelopeContext) -> str:
        return (
            f"{{1:{ctx.application_id}{ctx.logical_terminal}"
            f"{ctx.session_number:0>4}{ctx.sequence_number:0>6}}}"
        )

    @staticmethod
    def application_header(ctx: EnvelopeContext) -> str:
        return f"{{2:I{ctx.mt_code}{receiver_address(ctx.receiver_bic)}{ctx.priority}}}"

    @staticmethod
    def user_header(ctx: EnvelopeContext) -> str:
        """Empty string when no sub-field applies."""
        present = dict(ctx.user_header)
        parts = [f"{{{tag}:{present[tag]}}}" for tag in USER_HEADER_ORDER if present.get(tag)]
        return f"{{3:{''.join(parts)}}}" if parts else ""

    @staticmethod
    def text_block(tags: Sequence[Tag]) -> str:
        """Block 4. Multi-line values become a tagged line plus continuation lines."""
        lines: List[str] = []
        for tag, value in tags:
            first, *rest = value.split("\n")
            lines.append(f":{tag}:{first}")
            lines.extend(rest)
        return BLOCK4_OPEN + "\n".join(lines) + BLOCK4_CLOSE

    @staticmethod
    def trailer(chk: str, test_and_training: bool = False) -> str:
        tng = "{TNG:}" if test_and_training else ""
        return f"{{5:{{CHK:{chk}}}{tng}}}"

    def render(self, ctx: EnvelopeContext, tags: Sequence[Tag]) -> Tuple[str, str]:
        """Return ``(fin_message, chk)``.

        When ``ctx.chk`` is set (a released message being re-rendered) that
        value is reused as the trailer.
        """
        rendered: List[Tuple[int, str]] = [
            (1, self.basic_header(ctx)),
            (2, self.application_header(ctx)),
        ]
        block3 = self.user_header(ctx)
        if block3:
            rendered.append((3, block3))
        rendered.append((4, self.text_block(tags)))

        order = [n for n, _ in rendered]
        if order != sorted(order) or order[:2] != [1, 2] or order[-1] != 4:
            raise BlockOrderError(f"blocks rendered out of order: {order}")

        body = "".join(text for _, text in rendered)
        computed = self._checksum(body)
        chk = ctx.chk or computed
        if ctx.chk and ctx.chk != computed:
            log.warning("Supplied CHK differs from computed digest", supplied=ctx.chk, computed=computed)

        return body + self.trailer(chk, ctx.test_and_training), chk
