# archaeologist/archaeologist.py
"""
Archaeologist service facade.

Startup is two steps:

    arch = Archaeologist.from_config(AgentConfig.from_env().validate())
    initial = arch.reconcile()      # blocking replay of ledger history
    arch.start(initial)             # arms timers, starts the event reactor, returns

Anything that fails before ``start`` is fatal; afterwards failures are
contained to the sarcophagus they concern.
"""

import logging
import time
from typing import Optional

from config import AgentConfig, validate_address
from db import BindingCache
from keys import KeyDeriver
from ledger import LedgerClient, LedgerReader
from models import InitialState
from reactor import EventReactor
from reconciler import Reconciler
from scheduler import DEFAULT_MAX_ATTEMPTS, DEFAULT_RETRY_BACKOFF, ResurrectionScheduler, daemon_timer
from state import AgentState
from storage import ArweaveClient, StorageClient

logger = logging.getLogger(__name__)


class Archaeologist:
    def __init__(
        self,
        agent_identity: str,
        ledger: LedgerReader,
        storage: StorageClient,
        key_deriver: KeyDeriver,
        binding_cache: Optional[BindingCache] = None,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        retry_backoff: float = DEFAULT_RETRY_BACKOFF,
        replay_workers: int = 1,
        clock=time.time,
        sleep=time.sleep,
        timer_factory=daemon_timer,
        reporter=None,
    ):
        self.agent_identity = validate_address(agent_identity)
        self.ledger = ledger
        self.storage = storage
        self.key_deriver = key_deriver
        self.binding_cache = binding_cache
        self.max_attempts = max_attempts
        self.retry_backoff = retry_backoff
        self.replay_workers = replay_workers
        self.clock = clock
        self.sleep = sleep
        self.timer_factory = timer_factory
        self.reporter = reporter

        self.state: Optional[AgentState] = None
        self.scheduler: Optional[ResurrectionScheduler] = None
        self.reactor: Optional[EventReactor] = None
        self._feed_cursor: Optional[int] = None

    @classmethod
    def from_config(cls, config: AgentConfig, reporter=None) -> "Archaeologist":
        config.validate()
        return cls(
            agent_identity=config.address,
            ledger=LedgerClient(config.ledger_url, timeout=config.timeout, poll_interval=config.poll_interval),
            storage=ArweaveClient(config.storage_url, timeout=config.timeout),
            key_deriver=KeyDeriver.from_mnemonic(config.mnemonic, config.mnemonic_passphrase),
            binding_cache=BindingCache(config.db_path) if config.use_binding_cache else None,
            max_attempts=config.max_attempts,
            retry_backoff=config.retry_backoff,
            replay_workers=config.replay_workers,
            reporter=reporter,
        )

    # ==================== Startup ====================

    def reconcile(self, agent_identity: str = None) -> InitialState:
        """Replay ledger history; raises on any ledger or divergence failure."""
        identity = validate_address(agent_identity) if agent_identity else self.agent_identity

        # Remember where the feed stood before replay so no event falls in the gap
        self._feed_cursor = self.ledger.head()

        reconciler = Reconciler(
            self.ledger,
            self.key_deriver,
            clock=self.clock,
            max_workers=self.replay_workers,
            reporter=self.reporter,
        )
        initial = reconciler.reconcile(identity)

        if self.binding_cache is not None:
            bindings = initial.bindings()
            self.binding_cache.check_divergence(bindings)
            self.binding_cache.record_all(bindings)

        return initial

    def start(self, initial: InitialState) -> AgentState:
        """Arm replayed timers and start the reactor. Returns immediately."""
        if self.reactor is not None and self.reactor.running:
            raise RuntimeError("Archaeologist already started")

        self.state = AgentState.from_initial(initial, self.key_deriver)
        self.scheduler = ResurrectionScheduler(
            self.state,
            self.ledger,
            self.storage,
            self.key_deriver,
            max_attempts=self.max_attempts,
            retry_backoff=self.retry_backoff,
            clock=self.clock,
            sleep=self.sleep,
            timer_factory=self.timer_factory,
            reporter=self.reporter,
        )
        self.reactor = EventReactor(
            self.state,
            self.scheduler,
            self.ledger,
            binding_cache=self.binding_cache,
            clock=self.clock,
            reporter=self.reporter,
        )

        armed = self.scheduler.arm_all(initial.timers)
        self.reactor.start(after=self._feed_cursor)
        logger.info(
            f"Archaeologist {initial.agent_identity} started: {armed} unwraps armed, "
            f"current public key {self.state.current_public_key}"
        )
        return self.state

    def stop(self, timeout: float = 5.0) -> None:
        if self.reactor is not None:
            self.reactor.stop(timeout=timeout)
        if self.scheduler is not None:
            self.scheduler.shutdown()
        logger.info("Archaeologist stopped")

    # ==================== Introspection ====================

    @property
    def current_public_key(self) -> Optional[str]:
        """Public key the next accepted sarcophagus should be sealed to."""
        return self.state.current_public_key if self.state else None

    def status(self) -> dict:
        if self.state is None:
            return {"agent_identity": self.agent_identity, "started": False}
        status = self.state.snapshot()
        status["started"] = True
        status["reactor_running"] = self.reactor.running if self.reactor else False
        status["current_public_key"] = self.state.current_public_key
        return status
