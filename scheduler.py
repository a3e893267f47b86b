# archaeologist/scheduler.py
"""
Resurrection Scheduler - one cancellable timer per sarcophagus.

Timers live in ``AgentState.armed`` keyed by identifier. Arming an
identifier that already has a timer replaces it; each timer carries a
generation number so a replaced or cancelled timer that still wakes up
recognizes itself as stale and does nothing.
"""

import logging
import threading
import time
from typing import Iterable, Optional

from crypto import unwrap_material
from errors import (
    ArchaeologistError,
    DecryptionError,
    LedgerError,
    StorageError,
    UnwrapRetryExhaustedError,
)
from keys import KeyDeriver
from ledger import LedgerReader
from models import ArmedTimer, TimerRequest, identifier_to_hex
from state import AgentState
from storage import StorageClient

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 5
DEFAULT_RETRY_BACKOFF = 2.0


def daemon_timer(delay: float, function, args) -> threading.Timer:
    timer = threading.Timer(delay, function, args=args)
    timer.daemon = True
    return timer


class ResurrectionScheduler:
    def __init__(
        self,
        state: AgentState,
        ledger: LedgerReader,
        storage: StorageClient,
        key_deriver: KeyDeriver,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        retry_backoff: float = DEFAULT_RETRY_BACKOFF,
        clock=time.time,
        sleep=time.sleep,
        timer_factory=daemon_timer,
        reporter=None,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.state = state
        self.ledger = ledger
        self.storage = storage
        self.key_deriver = key_deriver
        self.max_attempts = max_attempts
        self.retry_backoff = retry_backoff
        self.clock = clock
        self.sleep = sleep
        self.timer_factory = timer_factory
        self.reporter = reporter

    # ==================== Arming ====================

    def arm(self, identifier: bytes, resurrection_time: int, key_index: int, asset_id: str) -> ArmedTimer:
        """Schedule the unwrap at max(now, resurrection_time), replacing any earlier timer."""
        with self.state.lock:
            previous = self.state.armed.pop(identifier, None)
            if previous is not None:
                previous.handle.cancel()
                logger.info(f"Re-arming {identifier_to_hex(identifier)} (replacing key index {previous.key_index})")

            timer = ArmedTimer(
                identifier=identifier,
                resurrection_time=resurrection_time,
                key_index=key_index,
                asset_id=asset_id,
                generation=self.state.next_generation_locked(),
            )
            delay = max(0.0, resurrection_time - self.clock())
            timer.handle = self._start_timer(delay, identifier, timer.generation)
            self.state.armed[identifier] = timer

        logger.info(f"Unwrap of {identifier_to_hex(identifier)} scheduled in {delay:.0f}s with key index {key_index}")
        return timer

    def arm_all(self, requests: Iterable[TimerRequest]) -> int:
        armed = 0
        for request in requests:
            self.arm(request.identifier, request.resurrection_time, request.key_index, request.asset_id)
            armed += 1
        return armed

    def cancel(self, identifier: bytes) -> bool:
        """Drop the timer for an obligation without firing it."""
        with self.state.lock:
            timer = self.state.armed.pop(identifier, None)
            if timer is None:
                return False
            timer.handle.cancel()

        logger.info(f"Cancelled unwrap of {identifier_to_hex(identifier)}")
        return True

    def shutdown(self) -> None:
        with self.state.lock:
            for timer in self.state.armed.values():
                timer.handle.cancel()
            self.state.armed.clear()

    def _start_timer(self, delay: float, identifier: bytes, generation: int):
        handle = self.timer_factory(delay, self._fire, (identifier, generation))
        handle.start()
        return handle

    # ==================== Firing ====================

    def _fire(self, identifier: bytes, generation: int) -> None:
        try:
            timer = self._claim(identifier, generation)
            if timer is not None:
                self._unwrap(timer)
        except Exception as e:
            logger.error(f"Unwrap worker for {identifier_to_hex(identifier)} failed: {e}")

    def _claim(self, identifier: bytes, generation: int) -> Optional[ArmedTimer]:
        """Take ownership of a due timer, removing the obligation from tracking."""
        with self.state.lock:
            timer = self.state.armed.get(identifier)
            if timer is None or timer.generation != generation:
                return None

            remaining = timer.resurrection_time - self.clock()
            if remaining > 0:
                # Woke up early (clock adjustment); wait out the rest
                timer.handle = self._start_timer(remaining, identifier, generation)
                return None

            del self.state.armed[identifier]
            self.state.lifecycle.pop(identifier, None)
            return timer

    def _unwrap(self, timer: ArmedTimer) -> Optional[dict]:
        """Fetch, decrypt and submit, retrying transient failures with backoff."""
        hex_id = identifier_to_hex(timer.identifier)
        key = self.key_deriver.derive(timer.key_index)
        material = None
        last_error: Optional[ArchaeologistError] = None

        for attempt in range(self.max_attempts):
            try:
                if material is None:
                    payload = self.storage.fetch(timer.asset_id)
                    material = unwrap_material(key.signing_key, payload)
                receipt = self.ledger.submit_unwrap(timer.identifier, key.private_key_bytes, material)
                logger.info(f"Unwrapped sarcophagus {hex_id} on attempt {attempt + 1}")
                return receipt
            except DecryptionError as e:
                e.metadata["obligation_id"] = hex_id
                e.metadata["key_index"] = timer.key_index
                logger.error(f"Cannot decrypt payload of {hex_id} with key index {timer.key_index}: {e}")
                self._report(e)
                return None
            except (StorageError, LedgerError) as e:
                last_error = e
                logger.warning(
                    f"Unwrap attempt {attempt + 1}/{self.max_attempts} for {hex_id} failed: {e}"
                )
                if attempt < self.max_attempts - 1:
                    self.sleep(self.retry_backoff * (2 ** attempt))  # Exponential backoff

        exhausted = UnwrapRetryExhaustedError(
            f"Giving up on sarcophagus {hex_id} after {self.max_attempts} attempts",
            identifier=timer.identifier,
            attempts=self.max_attempts,
            cause=last_error
        )
        logger.error(str(exhausted))
        self._report(exhausted)
        return None

    def _report(self, exc: ArchaeologistError) -> None:
        if self.reporter:
            self.reporter.report_exception(exc)
