"""
Pytest configuration and shared fixtures for archaeologist tests.

Nothing here touches the network: the ledger, storage, clock and timers
are all in-memory fakes driven by the tests.
"""
import os
import sys
import pytest

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from crypto import seal_payload
from errors import RecordNotFoundError, StorageFetchError, UnwrapSubmissionError
from keys import KeyDeriver
from models import LifecycleCode, ObligationRecord

ARCH_ADDRESS = "0x" + "ab" * 20
OTHER_ADDRESS = "0x" + "cd" * 20
NOW = 1_700_000_000


class FakeClock:
    def __init__(self, now: float = NOW):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class ManualTimer:
    """Stands in for threading.Timer; fires only when a test says so."""

    def __init__(self, delay, function, args):
        self.delay = delay
        self.function = function
        self.args = args
        self.started = False
        self.cancelled = False

    def start(self):
        self.started = True

    def cancel(self):
        self.cancelled = True

    def fire(self):
        if not self.cancelled:
            self.function(*self.args)


class ManualTimerFactory:
    def __init__(self):
        self.timers = []

    def __call__(self, delay, function, args):
        timer = ManualTimer(delay, function, args)
        self.timers.append(timer)
        return timer

    def live(self):
        return [t for t in self.timers if t.started and not t.cancelled]


class FakeLedger:
    """In-memory ledger: records in index order, a finite event feed."""

    def __init__(self, records=None, events=None):
        self.records = list(records or [])
        self.events = list(events or [])
        self.submissions = []
        self.fail_submissions = 0
        self.head_cursor = 41
        self.subscribed_after = "unset"

    def count(self):
        return len(self.records)

    def identifier_at(self, index):
        return self.records[index].identifier

    def record(self, identifier):
        for record in self.records:
            if record.identifier == identifier:
                return record
        raise RecordNotFoundError("no such sarcophagus", status_code=404)

    def record_at(self, index):
        return self.record(self.identifier_at(index))

    def submit_unwrap(self, identifier, private_key, material):
        if self.fail_submissions > 0:
            self.fail_submissions -= 1
            raise UnwrapSubmissionError("transaction reverted")
        self.submissions.append((identifier, private_key, material))
        return {"tx_hash": "0x" + "ee" * 32}

    def head(self):
        return self.head_cursor

    def updates(self, after=None, stop_event=None):
        self.subscribed_after = after
        for event in list(self.events):
            yield event


class FakeStorage:
    def __init__(self, payloads=None):
        self.payloads = dict(payloads or {})
        self.fail_fetches = 0
        self.fetches = []

    def fetch(self, locator):
        self.fetches.append(locator)
        if self.fail_fetches > 0:
            self.fail_fetches -= 1
            raise StorageFetchError("gateway unavailable", locator=locator)
        if locator not in self.payloads:
            raise StorageFetchError("not found", locator=locator)
        return self.payloads[locator]


class RecordingReporter:
    def __init__(self):
        self.reported = []

    def report_exception(self, exc):
        self.reported.append(exc)
        return True


def obligation_id(n: int) -> bytes:
    return bytes([n]) * 32


@pytest.fixture
def arch_address():
    return ARCH_ADDRESS


@pytest.fixture
def other_address():
    return OTHER_ADDRESS


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def timers():
    return ManualTimerFactory()


@pytest.fixture
def reporter():
    return RecordingReporter()


@pytest.fixture
def key_deriver():
    return KeyDeriver(bytes(range(32)))


@pytest.fixture
def make_record():
    """Build an ObligationRecord; defaults to active, assigned, window open."""
    def _make(n, state=LifecycleCode.ACTIVE, archaeologist=ARCH_ADDRESS,
              resurrection_time=NOW + 3600, window=600, asset_id="", storage_fee=10):
        return ObligationRecord(
            identifier=obligation_id(n),
            state=state,
            archaeologist=archaeologist,
            resurrection_time=resurrection_time,
            resurrection_window=window,
            asset_id=asset_id,
            storage_fee=storage_fee,
        )
    return _make


@pytest.fixture
def fake_ledger():
    return FakeLedger()


@pytest.fixture
def fake_storage():
    return FakeStorage()


@pytest.fixture
def sealed_for(key_deriver):
    """Seal an inner payload to the public key at a given index."""
    def _seal(index, inner=b"double-encrypted-payload"):
        return seal_payload(key_deriver.public_key(index), inner)
    return _seal
