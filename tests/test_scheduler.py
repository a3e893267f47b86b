"""
Tests for scheduler.py - arming, re-arming, cancelling and firing unwraps.
"""
import os
import sys

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import hashlib
from unittest.mock import patch

import pytest
import requests

from conftest import NOW, obligation_id
from errors import DecryptionError, LedgerConnectionError, UnwrapRetryExhaustedError
from ledger import LedgerClient
from models import LifecycleEntry, TimerRequest
from scheduler import ResurrectionScheduler
from state import AgentState


@pytest.fixture
def state(key_deriver, arch_address):
    return AgentState(arch_address, key_deriver)


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def scheduler(state, fake_ledger, fake_storage, key_deriver, clock, timers, reporter, sleeps):
    return ResurrectionScheduler(
        state,
        fake_ledger,
        fake_storage,
        key_deriver,
        max_attempts=3,
        retry_backoff=1.0,
        clock=clock,
        sleep=sleeps.append,
        timer_factory=timers,
        reporter=reporter,
    )


class TestArming:
    """Test timer arming and replacement."""

    def test_delay_until_resurrection(self, scheduler, timers):
        """The timer delay is the time left until resurrection."""
        scheduler.arm(obligation_id(1), NOW + 120, 0, "arweave://a")
        (timer,) = timers.live()
        assert timer.delay == 120

    def test_past_due_fires_immediately(self, scheduler, timers):
        """A resurrection time already in the past fires with no delay."""
        scheduler.arm(obligation_id(1), NOW - 30, 0, "arweave://a")
        assert timers.live()[0].delay == 0

    def test_rearm_replaces_previous(self, scheduler, state, timers):
        """Arming again cancels the old timer and keeps only the new one."""
        scheduler.arm(obligation_id(1), NOW + 100, 0, "arweave://old")
        scheduler.arm(obligation_id(1), NOW + 200, 3, "arweave://new")

        assert len(timers.timers) == 2
        assert timers.timers[0].cancelled
        (live,) = timers.live()
        assert live.delay == 200

        armed = state.armed[obligation_id(1)]
        assert armed.key_index == 3
        assert armed.asset_id == "arweave://new"

    def test_arm_all(self, scheduler, state):
        """Every timer request from replay is armed."""
        pending = [
            TimerRequest(obligation_id(1), NOW + 10, 0, "arweave://a"),
            TimerRequest(obligation_id(2), NOW + 20, 1, "arweave://b"),
        ]
        assert scheduler.arm_all(pending) == 2
        assert set(state.armed) == {obligation_id(1), obligation_id(2)}

    def test_cancel(self, scheduler, state, timers):
        """Cancelling stops the timer and forgets the arming."""
        scheduler.arm(obligation_id(1), NOW + 100, 0, "arweave://a")
        assert scheduler.cancel(obligation_id(1)) is True
        assert timers.live() == []
        assert obligation_id(1) not in state.armed

    def test_cancel_unknown(self, scheduler):
        """Cancelling a sarcophagus that was never armed reports False."""
        assert scheduler.cancel(obligation_id(9)) is False

    def test_shutdown_cancels_everything(self, scheduler, state, timers):
        """Shutdown cancels every armed timer."""
        scheduler.arm(obligation_id(1), NOW + 100, 0, "arweave://a")
        scheduler.arm(obligation_id(2), NOW + 100, 1, "arweave://b")
        scheduler.shutdown()
        assert timers.live() == []
        assert state.armed == {}

    def test_max_attempts_validated(self, state, fake_ledger, fake_storage, key_deriver):
        """At least one attempt is required."""
        with pytest.raises(ValueError):
            ResurrectionScheduler(state, fake_ledger, fake_storage, key_deriver, max_attempts=0)


class TestFiring:
    """Test what happens when a timer goes off."""

    def test_successful_unwrap(self, scheduler, state, fake_ledger, fake_storage, key_deriver,
                               sealed_for, clock, timers):
        """A fired timer submits the derived key and the payload hash."""
        fake_storage.payloads["arweave://a"] = sealed_for(2, b"inner")
        state.lifecycle[obligation_id(1)] = LifecycleEntry(NOW + 60, 2)
        scheduler.arm(obligation_id(1), NOW + 60, 2, "arweave://a")

        clock.advance(60)
        timers.timers[0].fire()

        (identifier, private_key, material) = fake_ledger.submissions[0]
        assert identifier == obligation_id(1)
        assert private_key == key_deriver.derive(2).private_key_bytes
        assert material == hashlib.sha256(b"inner").digest()
        assert obligation_id(1) not in state.armed
        assert obligation_id(1) not in state.lifecycle

    def test_only_latest_arming_fires(self, scheduler, fake_ledger, fake_storage, sealed_for, clock, timers):
        """A stale timer callback does nothing after a re-arm."""
        fake_storage.payloads["arweave://new"] = sealed_for(5)
        scheduler.arm(obligation_id(1), NOW + 10, 1, "arweave://old")
        scheduler.arm(obligation_id(1), NOW + 20, 5, "arweave://new")
        clock.advance(20)

        # A stale callback that slipped past cancel() must do nothing
        stale = timers.timers[0]
        stale.function(*stale.args)
        timers.timers[1].fire()

        assert fake_storage.fetches == ["arweave://new"]
        assert len(fake_ledger.submissions) == 1

    def test_cancelled_timer_never_unwraps(self, scheduler, fake_ledger, clock, timers):
        """A cancelled timer that still runs submits nothing."""
        scheduler.arm(obligation_id(1), NOW + 10, 0, "arweave://a")
        scheduler.cancel(obligation_id(1))
        clock.advance(10)
        stale = timers.timers[0]
        stale.function(*stale.args)
        assert fake_ledger.submissions == []

    def test_early_wakeup_rearms_for_remainder(self, scheduler, state, fake_ledger, fake_storage,
                                               sealed_for, clock, timers):
        """Waking before the resurrection time re-arms for the remaining delay."""
        fake_storage.payloads["arweave://a"] = sealed_for(0)
        scheduler.arm(obligation_id(1), NOW + 100, 0, "arweave://a")
        clock.advance(40)
        timers.timers[0].fire()

        assert fake_ledger.submissions == []
        assert obligation_id(1) in state.armed
        assert timers.timers[-1].delay == 60

        clock.advance(60)
        timers.timers[-1].fire()
        assert len(fake_ledger.submissions) == 1

    def test_fires_once(self, scheduler, fake_ledger, fake_storage, sealed_for, clock, timers):
        """A timer unwraps at most once."""
        fake_storage.payloads["arweave://a"] = sealed_for(0)
        scheduler.arm(obligation_id(1), NOW, 0, "arweave://a")
        timers.timers[0].fire()
        timers.timers[0].fire()
        assert len(fake_ledger.submissions) == 1


class TestRetries:
    """Test retry with backoff and failure reporting."""

    def test_transient_storage_failure_retried(self, scheduler, fake_ledger, fake_storage,
                                               sealed_for, timers, sleeps, reporter):
        """Storage failures are retried with exponential backoff."""
        fake_storage.payloads["arweave://a"] = sealed_for(0)
        fake_storage.fail_fetches = 2
        scheduler.arm(obligation_id(1), NOW, 0, "arweave://a")
        timers.timers[0].fire()

        assert len(fake_ledger.submissions) == 1
        assert sleeps == [1.0, 2.0]
        assert reporter.reported == []

    def test_submission_retry_reuses_payload(self, scheduler, fake_ledger, fake_storage, sealed_for, timers):
        """A failed submission is retried without fetching the payload again."""
        fake_storage.payloads["arweave://a"] = sealed_for(0)
        fake_ledger.fail_submissions = 1
        scheduler.arm(obligation_id(1), NOW, 0, "arweave://a")
        timers.timers[0].fire()

        assert fake_storage.fetches == ["arweave://a"]
        assert len(fake_ledger.submissions) == 1

    def test_exhaustion_reported(self, scheduler, state, fake_ledger, fake_storage, timers, sleeps, reporter):
        """Running out of attempts reports UnwrapRetryExhaustedError."""
        scheduler.arm(obligation_id(1), NOW, 0, "arweave://missing")
        timers.timers[0].fire()

        assert fake_ledger.submissions == []
        assert len(fake_storage.fetches) == 3
        assert sleeps == [1.0, 2.0]
        (error,) = reporter.reported
        assert isinstance(error, UnwrapRetryExhaustedError)
        assert error.metadata["attempts"] == 3
        assert obligation_id(1) not in state.armed

    def test_decryption_failure_not_retried(self, scheduler, fake_ledger, fake_storage,
                                            sealed_for, timers, sleeps, reporter):
        """A payload that will not decrypt is reported once and never retried."""
        fake_storage.payloads["arweave://a"] = sealed_for(7)
        scheduler.arm(obligation_id(1), NOW, 0, "arweave://a")
        timers.timers[0].fire()

        assert fake_ledger.submissions == []
        assert sleeps == []
        (error,) = reporter.reported
        assert isinstance(error, DecryptionError)
        assert error.metadata["key_index"] == 0

    def test_gateway_transport_failure_retried_then_reported(self, state, fake_storage, key_deriver,
                                                             sealed_for, clock, timers, sleeps, reporter):
        """A dropped gateway response is retried like any ledger outage, then reported."""
        client = LedgerClient(api_url="http://gateway")
        scheduler = ResurrectionScheduler(
            state, client, fake_storage, key_deriver,
            max_attempts=3, retry_backoff=1.0, clock=clock,
            sleep=sleeps.append, timer_factory=timers, reporter=reporter,
        )
        fake_storage.payloads["arweave://a"] = sealed_for(0)
        scheduler.arm(obligation_id(1), NOW, 0, "arweave://a")

        failure = requests.exceptions.ChunkedEncodingError("connection broken mid-body")
        with patch.object(client._session, "post", side_effect=failure) as mock_post:
            timers.timers[0].fire()

        assert mock_post.call_count == 3
        assert sleeps == [1.0, 2.0]
        (error,) = reporter.reported
        assert isinstance(error, UnwrapRetryExhaustedError)
        assert isinstance(error.cause, LedgerConnectionError)
        assert obligation_id(1) not in state.armed
