# archaeologist/state.py
"""
Shared in-memory state of the archaeologist.

One lock guards the lifecycle map, the pending-upload map, the orphan map,
the key index counter and the armed timers. The reconciler hands its result
over once; afterwards only the reactor and the scheduler mutate it, and only
while holding ``lock``. Helpers named ``*_locked`` assume the caller holds it.
"""

import logging
import threading
from typing import Dict, Optional

from errors import DuplicateBindingError
from keys import KeyDeriver
from models import ArmedTimer, InitialState, LifecycleEntry, identifier_to_hex

logger = logging.getLogger(__name__)


class AgentState:
    def __init__(self, agent_identity: str, key_deriver: KeyDeriver, next_key_index: int = 0):
        if next_key_index < 0:
            raise ValueError("Key index counter cannot be negative")
        self.agent_identity = agent_identity
        self.key_deriver = key_deriver
        self.lock = threading.RLock()
        self.lifecycle: Dict[bytes, LifecycleEntry] = {}
        self.pending_uploads: Dict[bytes, int] = {}
        self.orphans: Dict[bytes, bool] = {}
        self.armed: Dict[bytes, ArmedTimer] = {}
        self._next_key_index = next_key_index
        self._generation = 0

    @classmethod
    def from_initial(cls, initial: InitialState, key_deriver: KeyDeriver) -> "AgentState":
        state = cls(initial.agent_identity, key_deriver, initial.next_key_index)
        state.lifecycle = {i: LifecycleEntry(e.resurrection_time, e.key_index)
                           for i, e in initial.lifecycle.items()}
        state.pending_uploads = dict(initial.pending_uploads)
        state.orphans = dict(initial.orphaned)
        return state

    # ==================== Key Index Counter ====================

    @property
    def next_key_index(self) -> int:
        with self.lock:
            return self._next_key_index

    @property
    def current_public_key(self) -> str:
        """Public identifier new payloads should be sealed to."""
        return self.key_deriver.public_key(self.next_key_index)

    def consume_key_index_locked(self) -> int:
        """Advance the counter without binding; returns the index consumed."""
        index = self._next_key_index
        self._next_key_index += 1
        return index

    def bind_next_key_locked(self, identifier: bytes, resurrection_time: int) -> int:
        """Bind the next unused index to an obligation and advance the counter."""
        entry = self.lifecycle.get(identifier)
        if entry is not None and entry.key_index is not None:
            raise DuplicateBindingError(
                f"Key index already bound for {identifier_to_hex(identifier)}",
                identifier=identifier,
                key_index=entry.key_index
            )

        index = self.consume_key_index_locked()
        self.lifecycle[identifier] = LifecycleEntry(resurrection_time=resurrection_time, key_index=index)
        logger.debug(f"Bound key index {index} to {identifier_to_hex(identifier)}")
        return index

    # ==================== Lifecycle ====================

    def track_pending_locked(self, identifier: bytes, resurrection_time: int, storage_fee: int = 0) -> None:
        self.pending_uploads[identifier] = storage_fee
        self.lifecycle[identifier] = LifecycleEntry(resurrection_time=resurrection_time)

    def next_generation_locked(self) -> int:
        self._generation += 1
        return self._generation

    def key_index_of(self, identifier: bytes) -> Optional[int]:
        with self.lock:
            entry = self.lifecycle.get(identifier)
            return entry.key_index if entry else None

    def snapshot(self) -> dict:
        with self.lock:
            return {
                "agent_identity": self.agent_identity,
                "tracked": len(self.lifecycle),
                "armed": sorted(identifier_to_hex(i) for i in self.armed),
                "pending_uploads": sorted(identifier_to_hex(i) for i in self.pending_uploads),
                "next_key_index": self._next_key_index,
            }
