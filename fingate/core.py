"""Core primitives for the FIN gateway.

This module provides the small utilities shared by every engine component:
- SHA-256 hashing of raw bytes and text
- Canonical JSON serialization for counter snapshots and digests
- YAML/JSON loading with consistent encoding
- Newline normalization for FIN text
- UTC timestamp helpers

Everything here is a pure function except the file writers.
"""

from __future__ import annotations

import hashlib
import json
import pathlib
from datetime import date, datetime, timezone
from typing import Any, Optional, Union

import yaml

# Package root, computed once at module load
PACKAGE_ROOT = pathlib.Path(__file__).resolve().parent
SCHEMAS_DIR = PACKAGE_ROOT / "schemas"


def sha256_bytes(data: bytes) -> str:
    """Compute SHA-256 hash of bytes, returning lowercase hex string."""
    return hashlib.sha256(data).hexdigest()


def sha256_text(text: str) -> str:
    """Compute SHA-256 hash of UTF-8 encoded text."""
    return sha256_bytes(text.encode("utf-8"))


def decode_raw(data: bytes) -> str:
    """Decode received bytes as UTF-8, carrying undecodable bytes as surrogates."""
    return data.decode("utf-8", "surrogateescape")


def encode_raw(text: str) -> bytes:
    """Inverse of ``decode_raw``: the original bytes of received text.

    Lone surrogates that did not come from ``decode_raw`` are encoded as-is.
    """
    try:
        return text.encode("utf-8", "surrogateescape")
    except UnicodeEncodeError:
        return text.encode("utf-8", "surrogatepass")


def load_yaml(path: pathlib.Path) -> Any:
    """Load YAML file with UTF-8 encoding."""
    return yaml.safe_load(pathlib.Path(path).read_text(encoding="utf-8"))


def load_json(path: pathlib.Path) -> Any:
    """Load JSON file with UTF-8 encoding."""
    return json.loads(pathlib.Path(path).read_text(encoding="utf-8"))


def load_mapping(path: pathlib.Path) -> Any:
    """Load a JSON or YAML document, chosen by file suffix."""
    p = pathlib.Path(path)
    if p.suffix.lower() == ".json":
        return load_json(p)
    return load_yaml(p)


def canonical_json_bytes(obj: Any) -> bytes:
    """Serialize object to canonical JSON bytes.

    Properties:
    - Keys sorted lexicographically
    - No whitespace
    - UTF-8 encoded
    - Floats rejected (amounts travel as strings)
    """
    def _reject_floats(o: Any, path: str = "") -> None:
        if isinstance(o, float):
            raise ValueError(f"Float not allowed in canonical JSON at {path}")
        if isinstance(o, dict):
            for k, v in o.items():
                _reject_floats(v, f"{path}.{k}")
        if isinstance(o, list):
            for i, v in enumerate(o):
                _reject_floats(v, f"{path}[{i}]")

    _reject_floats(obj)
    return json.dumps(
        obj,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
    ).encode("utf-8")


def write_canonical_json(path: pathlib.Path, obj: Any) -> str:
    """Write canonical JSON to file, returning the digest of the bytes written."""
    canonical = canonical_json_bytes(obj)
    p = pathlib.Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    tmp = p.with_suffix(p.suffix + ".tmp")
    tmp.write_bytes(canonical + b"\n")
    tmp.replace(p)
    return sha256_bytes(canonical)


def normalize_newlines(text: str) -> str:
    """Convert CRLF and lone CR line endings to LF."""
    return text.replace("\r\n", "\n").replace("\r", "\n")


# Timestamp utilities
def now_iso8601() -> str:
    """Return current UTC time in ISO8601 format."""
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


def parse_iso8601(timestamp: str) -> Optional[datetime]:
    """Parse ISO8601 timestamp string."""
    try:
        s = timestamp.replace("Z", "+00:00")
        return datetime.fromisoformat(s)
    except (ValueError, AttributeError):
        return None


def to_yymmdd(value: Union[str, date, datetime]) -> str:
    """Render a date as the six-digit YYMMDD form used in FIN fields.

    Accepts ``date``/``datetime`` objects, ISO strings (``2024-03-15``) and
    strings already in YYMMDD form, which pass through unchanged.
    """
    if isinstance(value, datetime):
        value = value.date()
    if isinstance(value, date):
        return value.strftime("%y%m%d")

    s = str(value).strip()
    if len(s) == 6 and s.isdigit():
        return s
    parsed = parse_iso8601(s)
    if parsed is None:
        raise ValueError(f"Unrecognised date: {value!r}")
    return parsed.strftime("%y%m%d")


def from_yymmdd(value: str) -> Optional[str]:
    """Convert YYMMDD to an ISO date string, or None when malformed."""
    try:
        return datetime.strptime(value, "%y%m%d").date().isoformat()
    except (TypeError, ValueError):
        return None
