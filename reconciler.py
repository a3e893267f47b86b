# archaeologist/reconciler.py
"""
Lifecycle Reconciler - rebuilds the archaeologist's state from ledger history.

Sarcophagus states:
    0 - Does not exist
    1 - Exists (active)
    2 - Done (finalized)

Every sarcophagus assigned to this archaeologist that is finalized, or that
has had its payload uploaded, consumed one key index when it happened. The
replay walks the ledger in index order and counts them again, so a restart
arrives at the same bindings without a local database.
"""

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Iterator, Optional, Tuple

from errors import DataIntegrityError, RecordNotFoundError
from keys import KeyDeriver
from ledger import LedgerReader
from models import (
    InitialState,
    LifecycleCode,
    LifecycleEntry,
    ObligationRecord,
    TimerRequest,
    identifier_to_hex,
)

logger = logging.getLogger(__name__)


class Reconciler:
    def __init__(
        self,
        ledger: LedgerReader,
        key_deriver: KeyDeriver,
        clock=time.time,
        max_workers: int = 1,
        reporter=None,
    ):
        self.ledger = ledger
        self.key_deriver = key_deriver
        self.clock = clock
        self.max_workers = max(1, max_workers)
        self.reporter = reporter

    def reconcile(self, agent_identity: str) -> InitialState:
        """
        Replay every sarcophagus on the ledger into an initial state.

        Ledger failures propagate: a partial replay would bind wrong keys.
        """
        count = self.ledger.count()
        logger.info(f"Replaying {count} sarcophagi for archaeologist {agent_identity}")

        initial = InitialState(agent_identity=agent_identity)
        for index, record in self._records(count):
            try:
                if record is None:
                    raise DataIntegrityError(f"Ledger has no sarcophagus at index {index} of {count}")
                self._apply(initial, record)
            except DataIntegrityError as e:
                logger.error(f"Dropping sarcophagus at index {index}: {e}")
                if self.reporter:
                    self.reporter.report_exception(e)

        logger.info(
            f"Replay complete: {len(initial.timers)} scheduled, "
            f"{len(initial.pending_uploads)} awaiting upload, "
            f"{len(initial.orphaned)} orphaned, next key index {initial.next_key_index}"
        )
        return initial

    def _records(self, count: int) -> Iterator[Tuple[int, ObligationRecord]]:
        """Yield records in ascending ledger index order."""
        if self.max_workers == 1:
            for index in range(count):
                yield index, self._fetch(index)
            return

        # Reads run in parallel; Executor.map still yields in submission order
        with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="replay") as pool:
            yield from zip(range(count), pool.map(self._fetch, range(count)))

    def _fetch(self, index: int) -> Optional[ObligationRecord]:
        try:
            return self.ledger.record_at(index)
        except RecordNotFoundError:
            return None

    def _apply(self, initial: InitialState, record: ObligationRecord) -> None:
        identifier = record.identifier
        hex_id = identifier_to_hex(identifier)

        if record.state == LifecycleCode.NON_EXISTENT:
            raise DataIntegrityError(
                f"Ledger returned sarcophagus {hex_id} in state {int(record.state)}",
                identifier=identifier
            )

        if not record.is_assigned_to(initial.agent_identity):
            return

        if record.state == LifecycleCode.FINALIZED:
            initial.next_key_index += 1
            return

        if record.window_elapsed(self.clock()):
            # TODO: clean up expired sarcophagi that were updated but never unwrapped
            if record.has_payload:
                initial.next_key_index += 1
            initial.orphaned[identifier] = record.has_payload
            logger.warning(f"Sarcophagus {hex_id} expired outside its resurrection window; not retrying")
            return

        if not record.has_payload:
            initial.pending_uploads[identifier] = record.storage_fee
            initial.lifecycle[identifier] = LifecycleEntry(resurrection_time=record.resurrection_time)
            logger.debug(f"Sarcophagus {hex_id} awaiting payload upload")
            return

        key = self.key_deriver.derive(initial.next_key_index)
        initial.next_key_index += 1
        initial.lifecycle[identifier] = LifecycleEntry(
            resurrection_time=record.resurrection_time,
            key_index=key.index
        )
        initial.timers.append(TimerRequest(
            identifier=identifier,
            resurrection_time=record.resurrection_time,
            key_index=key.index,
            asset_id=record.asset_id
        ))
        logger.debug(f"Sarcophagus {hex_id} bound to key index {key.index} ({key.public_key[:16]}...)")
