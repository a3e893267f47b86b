# archaeologist/reactor.py
"""
Event Reactor - applies live ledger notifications to the shared state.

Runs on its own daemon thread for the life of the process. Each
notification is applied atomically under the state lock; a failure while
handling one notification is logged and reported, never fatal.
"""

import logging
import threading
import time
from typing import Optional

from errors import ArchaeologistError, DuplicateBindingError, LedgerError, LedgerResponseError
from ledger import LedgerReader
from models import (
    Notification,
    ObligationCreated,
    ObligationFinalized,
    ObligationUpdated,
    identifier_to_hex,
)
from scheduler import ResurrectionScheduler
from state import AgentState

logger = logging.getLogger(__name__)

DEFAULT_RECONNECT_BACKOFF = 2.0
MAX_RECONNECT_BACKOFF = 60.0


class EventReactor:
    def __init__(
        self,
        state: AgentState,
        scheduler: ResurrectionScheduler,
        ledger: LedgerReader,
        binding_cache=None,
        reconnect_backoff: float = DEFAULT_RECONNECT_BACKOFF,
        clock=time.time,
        reporter=None,
    ):
        self.state = state
        self.scheduler = scheduler
        self.ledger = ledger
        self.binding_cache = binding_cache
        self.reconnect_backoff = reconnect_backoff
        self.clock = clock
        self.reporter = reporter
        self.cursor: Optional[int] = None
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    # ==================== Thread Lifecycle ====================

    def start(self, after: Optional[int] = None) -> None:
        """Start consuming notifications after the given feed cursor."""
        if self._thread and self._thread.is_alive():
            raise RuntimeError("Event reactor already running")
        self.cursor = after
        self._stop.clear()
        self._thread = threading.Thread(target=self.run, name="event-reactor", daemon=True)
        self._thread.start()
        logger.debug("Event reactor thread started")

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        if self._thread and self._thread.is_alive():
            self._thread.join(timeout=timeout)

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def run(self) -> None:
        """Consume the feed until stopped, resubscribing after transport errors."""
        failures = 0
        while not self._stop.is_set():
            try:
                for notification in self.ledger.updates(after=self.cursor, stop_event=self._stop):
                    failures = 0
                    self.handle(notification)
                    if notification.cursor is not None:
                        self.cursor = notification.cursor
                    if self._stop.is_set():
                        break
                else:
                    # A finite feed ended; nothing more will arrive
                    if not self._stop.is_set():
                        logger.info("Ledger event feed ended")
                    return
            except LedgerError as e:
                failures = self._backoff(failures, e)
            except Exception as e:
                error = LedgerResponseError(f"Unexpected failure in ledger event feed: {e}", cause=e)
                logger.error(str(error))
                if self.reporter:
                    self.reporter.report_exception(error)
                failures = self._backoff(failures, error)

    def _backoff(self, failures: int, error: Exception) -> int:
        delay = min(MAX_RECONNECT_BACKOFF, self.reconnect_backoff * (2 ** failures))
        logger.warning(f"Ledger event feed failed ({error}); resubscribing in {delay:.0f}s")
        self._stop.wait(delay)
        return failures + 1

    # ==================== Notification Handling ====================

    def handle(self, notification: Notification) -> None:
        try:
            if isinstance(notification, ObligationUpdated):
                self._on_updated(notification)
            elif isinstance(notification, ObligationCreated):
                self._on_created(notification)
            elif isinstance(notification, ObligationFinalized):
                self._on_finalized(notification)
            else:
                logger.warning(f"Ignoring unknown notification {notification!r}")
        except ArchaeologistError as e:
            logger.error(f"Dropping {type(notification).__name__} for "
                         f"{identifier_to_hex(notification.identifier)}: {e}")
            if self.reporter:
                self.reporter.report_exception(e)
        except Exception as e:
            logger.error(f"Unexpected failure handling {notification!r}: {e}")

    def _on_updated(self, event: ObligationUpdated) -> None:
        """The embalmer uploaded the payload: bind a key and schedule the unwrap."""
        identifier = event.identifier
        hex_id = identifier_to_hex(identifier)
        logger.info(f"Update sarcophagus event for {hex_id}, asset {event.asset_id}")

        with self.state.lock:
            self.state.pending_uploads.pop(identifier, None)

            entry = self.state.lifecycle.get(identifier)
            if entry is None:
                logger.info(f"No sarcophagus to update for {hex_id}")
                return
            if entry.key_index is not None:
                raise DuplicateBindingError(
                    f"Sarcophagus {hex_id} already bound to key index {entry.key_index}",
                    identifier=identifier,
                    key_index=entry.key_index
                )

            key_index = self.state.bind_next_key_locked(identifier, event.resurrection_time)
            self.scheduler.arm(identifier, event.resurrection_time, key_index, event.asset_id)

        if self.binding_cache is not None:
            self.binding_cache.record_binding(identifier, key_index)

    def _on_created(self, event: ObligationCreated) -> None:
        """A new sarcophagus names this archaeologist: wait for its payload."""
        if event.archaeologist.lower() != self.state.agent_identity.lower():
            return

        identifier = event.identifier
        hex_id = identifier_to_hex(identifier)
        with self.state.lock:
            if identifier in self.state.lifecycle or identifier in self.state.orphans:
                logger.debug(f"Sarcophagus {hex_id} already known")
                return
            if event.window_elapsed(self.clock()):
                self.state.orphans[identifier] = False
                logger.warning(f"Sarcophagus {hex_id} created with an elapsed resurrection window")
                return
            self.state.track_pending_locked(identifier, event.resurrection_time, event.storage_fee)

        logger.info(f"Tracking new sarcophagus {hex_id}; awaiting payload upload")

    def _on_finalized(self, event: ObligationFinalized) -> None:
        """
        The sarcophagus is done. Cancel any armed unwrap and forget it.

        Replay counts every finalized sarcophagus as one consumed key index,
        so finalizing one that never had a key bound advances the counter too.
        """
        identifier = event.identifier
        hex_id = identifier_to_hex(identifier)

        with self.state.lock:
            cancelled = self.scheduler.cancel(identifier)
            entry = self.state.lifecycle.pop(identifier, None)
            self.state.pending_uploads.pop(identifier, None)
            orphan_had_payload = self.state.orphans.pop(identifier, None)

            unbound = (entry is not None and entry.key_index is None) or orphan_had_payload is False
            if unbound:
                consumed = self.state.consume_key_index_locked()
                logger.debug(f"Finalized unbound sarcophagus {hex_id} consumed key index {consumed}")

        if entry is None and orphan_had_payload is None:
            logger.debug(f"Finalized sarcophagus {hex_id} was not tracked ({event.reason})")
        else:
            logger.info(f"Sarcophagus {hex_id} finalized ({event.reason}); timer cancelled: {cancelled}")
