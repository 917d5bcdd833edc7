import os
import pathlib
import sys
from datetime import date
import pytest


# Ensure repo root is on PYTHONPATH for direct package imports (e.g. `import fingate`).
_REPO_ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(_REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(_REPO_ROOT))


def _env_flag(name: str) -> bool:
    v = (os.environ.get(name) or '').strip().lower()
    return v in {'1', 'true', 'yes', 'y', 'on'}


def pytest_configure(config: pytest.Config) -> None:
    config.addinivalue_line(
        "markers",
        "slow: slow correctness tests (skipped unless FINGATE_RUN_SLOW=1)",
    )


def pytest_collection_modifyitems(config: pytest.Config, items: list) -> None:
    run_slow = _env_flag('FINGATE_RUN_SLOW')

    for item in items:
        if 'slow' in item.keywords and not run_slow:
            item.add_marker(pytest.mark.skip(reason='slow tests skipped; set FINGATE_RUN_SLOW=1 to enable'))


@pytest.fixture(autouse=True)
def _clean_fingate_env(monkeypatch):
    for key in list(os.environ):
        if key.startswith("FINGATE_"):
            monkeypatch.delenv(key, raising=False)


@pytest.fixture(autouse=True)
def _isolated_defaults(monkeypatch):
    """Fresh default config manager and fingate logger state per test."""
    import logging
    import fingate.config

    monkeypatch.setattr(fingate.config, "_default_manager", None)
    yield
    root = logging.getLogger("fingate")
    for h in list(root.handlers):
        if getattr(h, "_fingate_handler", False):
            root.removeHandler(h)
    root.propagate = True
    root.setLevel(logging.NOTSET)


@pytest.fixture
def originator():
    from fingate.config import OriginatorConfig
    return OriginatorConfig(sender_bic="BOMGBRS1XXX")


@pytest.fixture
def counter():
    from fingate.autofields import SequenceCounter
    return SequenceCounter()


@pytest.fixture
def assembler(originator, counter):
    from fingate.assembler import MessageAssembler
    return MessageAssembler(originator, counter)


@pytest.fixture
def fixed_clock():
    ticks = iter(range(1, 100000))
    return lambda: f"2024-03-15T10:00:{next(ticks) % 60:02d}Z"


@pytest.fixture
def machine(assembler, fixed_clock):
    from fingate.lifecycle import LifecycleStateMachine
    return LifecycleStateMachine(assembler, clock=fixed_clock)


@pytest.fixture
def mt199():
    from fingate.payloads import FreeFormatPayload
    return FreeFormatPayload(
        mt_type="MT199",
        transaction_reference="REF123456",
        related_reference="",
        narrative="HELLO",
    )


@pytest.fixture
def mt103():
    from fingate.payloads import CustomerTransferPayload
    return CustomerTransferPayload(
        transaction_reference="PAY0001",
        value_date=date(2024, 3, 15),
        currency="EUR",
        amount="1234.56",
        ordering_customer="/DE89370400440532013000\nACME GMBH\nBERLIN",
        beneficiary_customer="/GB29NWBK60161331926819\nJOHN SMITH\nLONDON",
        remittance_information="INVOICE 42",
        details_of_charges="SHA",
    )


@pytest.fixture
def header():
    from fingate.payloads import SwiftHeader
    return SwiftHeader(receiver_bic="COBADEFF")
