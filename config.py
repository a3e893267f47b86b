"""
Configuration for the archaeologist service.

All settings come from environment variables. ``validate()`` runs before
anything touches the ledger; failures here are fatal at startup.
"""

import os
import re
from dataclasses import dataclass, field

from errors import ConfigurationError, IdentityError

_ADDRESS_PATTERN = re.compile(r'^0x[0-9a-fA-F]{40}$')


def validate_address(address: str) -> str:
    """Return the address lower-cased, or raise IdentityError if malformed."""
    if not isinstance(address, str) or not _ADDRESS_PATTERN.match(address):
        raise IdentityError(
            f"Archaeologist address must be a 0x-prefixed 20-byte hex address, got {address!r}",
            setting="address"
        )
    return address.lower()


def _env_bool(name: str, default: str) -> bool:
    return os.environ.get(name, default).lower() in ("1", "true", "yes")


def _env_number(name: str, default: str, kind=float):
    raw = os.environ.get(name, default)
    try:
        return kind(raw)
    except ValueError as e:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}", setting=name, cause=e) from e


@dataclass
class AgentConfig:
    """Configuration for one archaeologist identity.

    Attributes:
        ledger_url: Base URL of the ledger gateway
        storage_url: Base URL of the Arweave gateway
        address: This archaeologist's ledger address (0x + 40 hex chars)
        mnemonic: Seed phrase for per-sarcophagus key derivation
        mnemonic_passphrase: Optional BIP-39 passphrase
        max_attempts: Unwrap attempts per sarcophagus before giving up
        retry_backoff: Base seconds for exponential unwrap backoff
        timeout: HTTP timeout in seconds
        poll_interval: Seconds between event feed polls when idle
        replay_workers: Parallel ledger reads during replay
        db_path: Location of the optional binding cache
        use_binding_cache: Whether to cross-check replay against the cache
    """
    ledger_url: str = ""
    storage_url: str = "https://arweave.net"
    address: str = ""
    mnemonic: str = field(default="", repr=False)
    mnemonic_passphrase: str = field(default="", repr=False)
    max_attempts: int = 5
    retry_backoff: float = 2.0
    timeout: float = 30.0
    poll_interval: float = 5.0
    replay_workers: int = 1
    db_path: str = ""
    use_binding_cache: bool = False

    @classmethod
    def from_env(cls) -> "AgentConfig":
        """Create config from environment variables."""
        return cls(
            ledger_url=os.environ.get("ARCHAEOLOGIST_LEDGER_URL", ""),
            storage_url=os.environ.get("ARCHAEOLOGIST_STORAGE_URL", "https://arweave.net"),
            address=os.environ.get("ARCHAEOLOGIST_ADDRESS", ""),
            mnemonic=os.environ.get("ARCHAEOLOGIST_MNEMONIC", ""),
            mnemonic_passphrase=os.environ.get("ARCHAEOLOGIST_MNEMONIC_PASSPHRASE", ""),
            max_attempts=_env_number("ARCHAEOLOGIST_MAX_ATTEMPTS", "5", int),
            retry_backoff=_env_number("ARCHAEOLOGIST_RETRY_BACKOFF", "2.0"),
            timeout=_env_number("ARCHAEOLOGIST_TIMEOUT", "30.0"),
            poll_interval=_env_number("ARCHAEOLOGIST_POLL_INTERVAL", "5.0"),
            replay_workers=_env_number("ARCHAEOLOGIST_REPLAY_WORKERS", "1", int),
            db_path=os.environ.get(
                "ARCHAEOLOGIST_DB_PATH",
                os.path.expanduser("~/.archaeologist/bindings.db")
            ),
            use_binding_cache=_env_bool("ARCHAEOLOGIST_USE_BINDING_CACHE", "false"),
        )

    def validate(self) -> "AgentConfig":
        if not self.ledger_url:
            raise ConfigurationError("ARCHAEOLOGIST_LEDGER_URL is required", setting="ledger_url")
        if not self.storage_url:
            raise ConfigurationError("ARCHAEOLOGIST_STORAGE_URL is required", setting="storage_url")
        validate_address(self.address)
        if not self.mnemonic.strip():
            raise IdentityError("ARCHAEOLOGIST_MNEMONIC is required", setting="mnemonic")

        for name in ("max_attempts", "replay_workers"):
            if getattr(self, name) < 1:
                raise ConfigurationError(f"{name} must be at least 1", setting=name)
        for name in ("retry_backoff", "timeout", "poll_interval"):
            if getattr(self, name) <= 0:
                raise ConfigurationError(f"{name} must be positive", setting=name)
        if self.use_binding_cache and not self.db_path:
            raise ConfigurationError("A binding cache needs ARCHAEOLOGIST_DB_PATH", setting="db_path")
        return self
