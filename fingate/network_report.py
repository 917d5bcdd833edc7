"""
Network report (message trailer) parsing.

After release the gateway operator pastes the trailer report printed by the
network interface, e.g.::

    {CHK} : 3F9A0C21D4E7
    TRACKING : 1234567890
    PKI SIGNATURE : MAC-Equivalent
    ACCESS CODE : A1B2
    RELEASE CODE : R9
    Category : Customer Payments
    Creation Time : 15/03/2024 - 14:05:09
    Application : SWIFT
    Operator : OPER01

The parser only extracts what is present. It never invents a value: a label
that does not appear yields None.
"""

from __future__ import annotations

import re
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Optional

_TOKEN = r"(\S+)"
_LINE = r"([^\n]+)"

_LABELS = {
    "chk": re.compile(r"\{?CHK\}?[ \t]*:[ \t]*([^\s{}]+)", re.IGNORECASE),
    "tracking": re.compile(r"TRACKING[ \t]*:[ \t]*" + _TOKEN, re.IGNORECASE),
    "pki_signature": re.compile(r"PKI SIGNATURE[ \t]*:[ \t]*" + _LINE, re.IGNORECASE),
    "access_code": re.compile(r"ACCESS CODE[ \t]*:[ \t]*" + _TOKEN, re.IGNORECASE),
    "release_code": re.compile(r"RELEASE CODE[ \t]*:[ \t]*" + _TOKEN, re.IGNORECASE),
    "category": re.compile(r"Category[ \t]*:[ \t]*" + _LINE, re.IGNORECASE),
    "creation_time": re.compile(r"Creation Time[ \t]*:[ \t]*" + _LINE, re.IGNORECASE),
    "application": re.compile(r"Application[ \t]*:[ \t]*" + _LINE, re.IGNORECASE),
    "operator": re.compile(r"Operator[ \t]*:[ \t]*" + _LINE, re.IGNORECASE),
}

_CREATION_TIME = re.compile(r"(\d{2})/(\d{2})/(\d{4})\s*-\s*(\d{2}):(\d{2}):(\d{2})")
_BLOCK = re.compile(r"\{(\d):([^}]*)\}")


@dataclass(frozen=True)
class NetworkReport:
    chk: Optional[str] = None
    tracking: Optional[str] = None
    pki_signature: Optional[str] = None
    access_code: Optional[str] = None
    release_code: Optional[str] = None
    category: Optional[str] = None
    creation_time: Optional[str] = None
    application: Optional[str] = None
    operator: Optional[str] = None
    raw_text: str = ""
    parsed_text_blocks: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def chk_matches(self, chk: Optional[str]) -> bool:
        return bool(self.chk and chk and self.chk.upper() == chk.upper())


def parse_creation_time(value: Optional[str]) -> Optional[str]:
    """``15/03/2024 - 14:05:09`` -> ``2024-03-15T14:05:09Z``; other text is kept as is."""
    if not value:
        return None
    m = _CREATION_TIME.search(value)
    if not m:
        return value
    day, month, year, hour, minute, second = m.groups()
    return f"{year}-{month}-{day}T{hour}:{minute}:{second}Z"


def parse_network_report(raw_text: str) -> NetworkReport:
    values: Dict[str, Optional[str]] = {}
    for name, pattern in _LABELS.items():
        m = pattern.search(raw_text)
        values[name] = m.group(1).strip() if m else None

    values["creation_time"] = parse_creation_time(values["creation_time"])
    # later occurrences of a block number win
    blocks = {n: body for n, body in _BLOCK.findall(raw_text)}
    return NetworkReport(raw_text=raw_text, parsed_text_blocks=blocks, **values)
