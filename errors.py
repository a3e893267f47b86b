"""
Archaeologist Error Handling Framework.

Provides structured exception classes with SIEM integration support.
All exceptions include severity levels and can be reported to Boundary-SIEM.

Taxonomy:
- Configuration/identity errors are fatal at startup.
- Ledger, storage and submission errors are transient and retried per obligation.
- Consistency errors drop the offending record or event and processing continues.
- Exhausted retries drop the obligation from tracking.
"""

from enum import IntEnum
from typing import Optional, Dict, Any
from datetime import datetime, timezone
import traceback


class Severity(IntEnum):
    """SIEM-compatible severity levels (1-10 scale)."""
    DEBUG = 1
    INFO = 2
    NOTICE = 3
    WARNING = 4
    ERROR = 5
    CRITICAL = 6
    ALERT = 7
    EMERGENCY = 8
    SECURITY_VIOLATION = 9
    BREACH_DETECTED = 10


class ArchaeologistError(Exception):
    """Base exception for all archaeologist service errors.

    Attributes:
        message: Human-readable error message
        severity: SIEM severity level (1-10)
        action: Dot-notation action that failed (e.g., 'unwrap.submit')
        outcome: Result of the action ('failure', 'blocked', 'denied')
        actor: Actor information dict (type, id, name)
        metadata: Additional context for debugging/auditing
        timestamp: When the error occurred
    """

    severity: Severity = Severity.ERROR
    action: str = "archaeologist.error"
    outcome: str = "failure"

    def __init__(
        self,
        message: str,
        actor: Optional[Dict[str, str]] = None,
        metadata: Optional[Dict[str, Any]] = None,
        cause: Optional[Exception] = None
    ):
        super().__init__(message)
        self.message = message
        self.actor = actor or {"type": "system", "id": "unknown"}
        self.metadata = metadata or {}
        self.cause = cause
        self.timestamp = datetime.now(timezone.utc).isoformat()

        # Include cause traceback in metadata if available
        if cause:
            self.metadata["cause_type"] = type(cause).__name__
            self.metadata["cause_message"] = str(cause)
            self.metadata["cause_traceback"] = traceback.format_exception(
                type(cause), cause, cause.__traceback__
            )

    def to_siem_event(self, source_host: str = "localhost") -> Dict[str, Any]:
        """Convert exception to SIEM-compatible event format."""
        return {
            "timestamp": self.timestamp,
            "source": {
                "product": "archaeologist",
                "host": source_host,
                "version": "0.3.0"
            },
            "action": self.action,
            "outcome": self.outcome,
            "severity": int(self.severity),
            "actor": self.actor,
            "metadata": {
                "error_type": type(self).__name__,
                "message": self.message,
                **self.metadata
            }
        }


def _obligation_metadata(kwargs: Dict[str, Any], identifier: Optional[bytes]) -> None:
    if identifier is not None:
        kwargs.setdefault("metadata", {})
        kwargs["metadata"] = dict(kwargs["metadata"] or {})
        kwargs["metadata"]["obligation_id"] = "0x" + identifier.hex()


# ============================================================================
# Configuration Errors
# ============================================================================

class ConfigurationError(ArchaeologistError):
    """Invalid or missing configuration."""
    severity = Severity.ERROR
    action = "config.validation"

    def __init__(self, message: str, setting: str = None, **kwargs):
        super().__init__(message, **kwargs)
        if setting:
            self.metadata["setting"] = setting


class IdentityError(ConfigurationError):
    """Agent identity (address or key material) is malformed."""
    severity = Severity.CRITICAL
    action = "config.identity"


# ============================================================================
# Ledger Errors
# ============================================================================

class LedgerError(ArchaeologistError):
    """Base class for ledger gateway failures."""
    severity = Severity.ERROR
    action = "ledger.operation"


class LedgerConnectionError(LedgerError):
    """Failed to connect to the ledger gateway."""
    action = "ledger.connect"

    def __init__(self, message: str, url: str = None, **kwargs):
        super().__init__(message, **kwargs)
        if url:
            self.metadata["url"] = url


class LedgerTimeoutError(LedgerError):
    """Ledger gateway did not respond in time."""
    action = "ledger.timeout"


class LedgerResponseError(LedgerError):
    """Ledger gateway returned an error or malformed response."""
    action = "ledger.response"

    def __init__(self, message: str, status_code: int = None, **kwargs):
        super().__init__(message, **kwargs)
        if status_code is not None:
            self.metadata["status_code"] = status_code


class RecordNotFoundError(LedgerResponseError):
    """The ledger has no record at the requested index or identifier."""
    severity = Severity.WARNING
    action = "ledger.not_found"


class UnwrapSubmissionError(LedgerError):
    """The unwrap transaction was rejected or could not be sent."""
    action = "unwrap.submit"


# ============================================================================
# Storage Errors
# ============================================================================

class StorageError(ArchaeologistError):
    """Base class for content-addressed storage failures."""
    severity = Severity.ERROR
    action = "storage.operation"


class StorageFetchError(StorageError):
    """Failed to fetch a payload from storage."""
    action = "storage.fetch"

    def __init__(self, message: str, locator: str = None, **kwargs):
        super().__init__(message, **kwargs)
        if locator:
            self.metadata["locator"] = locator


# ============================================================================
# Cryptographic Errors
# ============================================================================

class CryptoError(ArchaeologistError):
    """Base class for cryptographic operation failures."""
    severity = Severity.CRITICAL
    action = "crypto.operation"


class KeyDerivationError(CryptoError):
    """Failed to derive a signing key."""
    action = "crypto.key_derivation"


class EncryptionError(CryptoError):
    """Failed to seal a payload."""
    action = "crypto.encrypt"


class DecryptionError(CryptoError):
    """Failed to decrypt a payload. May indicate a wrong key binding."""
    severity = Severity.ALERT
    action = "crypto.decrypt"


# ============================================================================
# Consistency Errors
# ============================================================================

class ConsistencyError(ArchaeologistError):
    """Base class for disagreements between ledger data and local state."""
    severity = Severity.ALERT
    action = "state.consistency"


class DataIntegrityError(ConsistencyError):
    """The ledger returned a record in an impossible lifecycle state."""
    action = "state.data_integrity"

    def __init__(self, message: str, identifier: bytes = None, **kwargs):
        _obligation_metadata(kwargs, identifier)
        super().__init__(message, **kwargs)


class DuplicateBindingError(ConsistencyError):
    """An update referenced an obligation that already has a key bound."""
    action = "state.duplicate_binding"

    def __init__(self, message: str, identifier: bytes = None,
                 key_index: int = None, **kwargs):
        _obligation_metadata(kwargs, identifier)
        super().__init__(message, **kwargs)
        if key_index is not None:
            self.metadata["key_index"] = key_index


class KeyIndexDivergenceError(ConsistencyError):
    """Replay bound a different key index than the local binding cache holds."""
    severity = Severity.EMERGENCY
    action = "state.key_index_divergence"

    def __init__(self, message: str, identifier: bytes = None,
                 expected_index: int = None, actual_index: int = None, **kwargs):
        _obligation_metadata(kwargs, identifier)
        super().__init__(message, **kwargs)
        if expected_index is not None:
            self.metadata["expected_index"] = expected_index
        if actual_index is not None:
            self.metadata["actual_index"] = actual_index


# ============================================================================
# Per-obligation Failures
# ============================================================================

class UnwrapRetryExhaustedError(ArchaeologistError):
    """Every unwrap attempt for an obligation failed."""
    severity = Severity.CRITICAL
    action = "unwrap.retry_exhausted"
    outcome = "failure"

    def __init__(self, message: str, identifier: bytes = None,
                 attempts: int = None, **kwargs):
        _obligation_metadata(kwargs, identifier)
        super().__init__(message, **kwargs)
        if attempts is not None:
            self.metadata["attempts"] = attempts


# ============================================================================
# SIEM Integration Errors
# ============================================================================

class SIEMError(ArchaeologistError):
    """Base class for SIEM integration errors."""
    severity = Severity.WARNING
    action = "siem.operation"


class SIEMConnectionError(SIEMError):
    """Failed to connect to SIEM endpoint."""
    action = "siem.connect"


class SIEMReportingError(SIEMError):
    """Failed to report event to SIEM."""
    action = "siem.report"
