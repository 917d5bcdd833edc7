"""
Auto-field generation for outbound FIN messages.

Values that no operator may type:

    session/sequence   {1:F01<LT><SESSION 4><SEQUENCE 6>}   per logical terminal
    UETR               {3:{121:...}}                       UUID v4, 36 chars
    MUR                {3:{108:...}}                       opt-in, REF + 13 hex chars
    CHK                {5:{CHK:...}}                       digest of blocks 1-4

Every value is assigned at most once per message. ``AutoFieldGenerator``
reuses whatever the header already carries, so re-assembling a released (or
replayed) message yields byte-identical headers.
"""

from __future__ import annotations

import hashlib
import hmac
import secrets
import threading
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional, Tuple, Union

from fingate.config import OriginatorConfig
from fingate.core import load_json, write_canonical_json
from fingate.observability import GatewayLayer, get_logger

log = get_logger("autofields", GatewayLayer.AUTOFIELDS)

SESSION_MAX = 9999
SEQUENCE_MAX = 999999


# =============================================================================
# SEQUENCE COUNTER
# =============================================================================

@dataclass
class CounterState:
    session: int = 1
    sequence: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {"session": self.session, "sequence": self.sequence}


class SequenceCounter:
    """
    Session/sequence allocator keyed by logical terminal.

    Allocation is serialized by an internal lock, so concurrent releases on
    different messages never receive the same pair. The sequence wraps into
    the next session after 999999; the session wraps back to 0001 after 9999.

    When ``path`` is given the counter state is written to that JSON file
    after every allocation and read back on construction.
    """

    def __init__(self, path: Optional[Union[str, Path]] = None):
        self._path = Path(path) if path else None
        self._lock = threading.Lock()
        self._state: Dict[str, CounterState] = {}
        if self._path and self._path.exists():
            self._load()

    def _load(self) -> None:
        data = load_json(self._path)
        for terminal, entry in (data.get("terminals") or {}).items():
            self._state[terminal] = CounterState(
                session=int(entry.get("session", 1)),
                sequence=int(entry.get("sequence", 0)),
            )

    def _persist(self) -> None:
        if self._path is None:
            return
        write_canonical_json(
            self._path,
            {"terminals": {k: v.to_dict() for k, v in sorted(self._state.items())}},
        )

    def next(self, logical_terminal: str) -> Tuple[str, str]:
        """Allocate the next (session, sequence) pair, zero padded."""
        with self._lock:
            state = self._state.setdefault(logical_terminal, CounterState())
            state.sequence += 1
            if state.sequence > SEQUENCE_MAX:
                state.sequence = 1
                state.session += 1
                if state.session > SESSION_MAX:
                    state.session = 1
                log.info("Session rolled over", logical_terminal=logical_terminal,
                         session=state.session)
            self._persist()
            return f"{state.session:04d}", f"{state.sequence:06d}"

    def peek(self, logical_terminal: str) -> Tuple[int, int]:
        with self._lock:
            state = self._state.get(logical_terminal, CounterState())
            return state.session, state.sequence

    def reset(self, logical_terminal: str, session: int = 1, sequence: int = 0) -> None:
        """Force the counter of one terminal, e.g. after a start-of-day."""
        if not (0 <= session <= SESSION_MAX and 0 <= sequence <= SEQUENCE_MAX):
            raise ValueError("session/sequence out of range")
        with self._lock:
            self._state[logical_terminal] = CounterState(session=session, sequence=sequence)
            self._persist()


# =============================================================================
# PURE GENERATORS
# =============================================================================

def generate_uetr() -> str:
    """Return a canonical lowercase UUID v4 (36 characters)."""
    return str(uuid.uuid4())


def generate_chk(body: str, key: Optional[str] = None, length: int = 12) -> str:
    """Checksum trailer over the exact bytes of blocks 1-4.

    SHA-256 by default, HMAC-SHA-256 when a key is configured. The digest is
    uppercase hex truncated to ``length`` characters. Deterministic: the same
    body and key always give the same value.
    """
    data = body.encode("utf-8")
    if key:
        digest = hmac.new(key.encode("utf-8"), data, hashlib.sha256).hexdigest()
    else:
        digest = hashlib.sha256(data).hexdigest()
    return digest[:length].upper()


def verify_chk(body: str, chk: str, key: Optional[str] = None) -> bool:
    """Constant-time comparison of a received CHK against the body."""
    expected = generate_chk(body, key=key, length=len(chk))
    return hmac.compare_digest(expected, chk.upper())


def generate_sender_reference(prefix: str = "REF") -> str:
    """Message user reference (:108) of at most 16 characters."""
    return f"{prefix}{secrets.token_hex(8)[:16 - len(prefix)].upper()}"


def logical_terminal(bic: str, terminal_code: str = "X") -> str:
    """Expand a BIC to the 12-character logical terminal address.

    Institution code (8) + terminal code (1) + branch (3):
    ``BOMGBRS1XXX`` -> ``BOMGBRS1XXXX``; ``BOMGBRS1`` -> ``BOMGBRS1XXXX``.
    """
    bic = bic.replace(" ", "").upper()
    branch = bic[8:11] if len(bic) >= 11 else "XXX"
    return bic[:8] + terminal_code + branch


# =============================================================================
# AUTO FIELD GENERATOR
# =============================================================================

@dataclass
class AutoFields:
    """Derived view of the generated header values. Never user-editable."""
    sender_lt: str
    application_id: str
    session_number: Optional[str] = None
    sequence_number: Optional[str] = None
    uetr: Optional[str] = None
    mur: Optional[str] = None
    stp: bool = False
    chk: Optional[str] = None
    generated: Dict[str, bool] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sender_lt": self.sender_lt,
            "application_id": self.application_id,
            "session_number": self.session_number,
            "sequence_number": self.sequence_number,
            "uetr": self.uetr,
            "mur": self.mur,
            "stp": self.stp,
            "chk": self.chk,
        }


class AutoFieldGenerator:
    """
    Resolves session, sequence, UETR and, when the originator opts in, the
    message user reference for a header.

    ``resolve`` never overwrites a supplied value. Only missing values are
    generated, and only when ``assign`` is true; otherwise the returned view
    leaves them empty (draft previews).
    """

    def __init__(
        self,
        originator: OriginatorConfig,
        counter: Optional[SequenceCounter] = None,
    ):
        self.originator = originator
        self.counter = counter or SequenceCounter()

    def resolve(
        self,
        header: Any,
        assign: bool = True,
        uetr_required: bool = False,
    ) -> AutoFields:
        """Build the auto-field view for ``header`` (a ``SwiftHeader``)."""
        lt = header.logical_terminal or logical_terminal(header.sender_bic or self.originator.sender_bic)
        fields = AutoFields(
            sender_lt=lt,
            application_id=f"{self.originator.application_id}{self.originator.service_id}",
            session_number=header.session_number,
            sequence_number=header.sequence_number,
            uetr=header.uetr,
            mur=header.mur,
            stp=bool(header.stp),
            chk=header.chk,
        )

        if assign and not (fields.session_number and fields.sequence_number):
            fields.session_number, fields.sequence_number = self.counter.next(lt)
            fields.generated["session"] = True
        if assign and uetr_required and not fields.uetr:
            fields.uetr = generate_uetr()
            fields.generated["uetr"] = True
        if assign and self.originator.generate_mur and not fields.mur:
            fields.mur = generate_sender_reference()
            fields.generated["mur"] = True

        if fields.generated:
            log.debug(
                "Assigned auto fields",
                logical_terminal=lt,
                generated=sorted(fields.generated),
                session=fields.session_number,
                sequence=fields.sequence_number,
            )
        return fields

    def checksum(self, body: str) -> str:
        return generate_chk(body, key=self.originator.chk_key, length=self.originator.chk_length)
