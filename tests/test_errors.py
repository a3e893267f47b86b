"""
Tests for errors.py - Exception hierarchy and SIEM integration.
"""
import os
import sys

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from errors import (
    Severity,
    ArchaeologistError,
    ConfigurationError,
    IdentityError,
    LedgerError,
    LedgerConnectionError,
    LedgerTimeoutError,
    LedgerResponseError,
    RecordNotFoundError,
    UnwrapSubmissionError,
    StorageError,
    StorageFetchError,
    CryptoError,
    KeyDerivationError,
    EncryptionError,
    DecryptionError,
    ConsistencyError,
    DataIntegrityError,
    DuplicateBindingError,
    KeyIndexDivergenceError,
    UnwrapRetryExhaustedError,
    SIEMError,
    SIEMConnectionError,
    SIEMReportingError,
)

OBLIGATION = b"\x2a" * 32
OBLIGATION_HEX = "0x" + "2a" * 32


class TestSeverityEnum:
    """Test Severity IntEnum."""

    def test_severity_values(self):
        assert Severity.DEBUG == 1
        assert Severity.ERROR == 5
        assert Severity.ALERT == 7
        assert Severity.EMERGENCY == 8
        assert Severity.BREACH_DETECTED == 10

    def test_severity_is_int(self):
        assert int(Severity.ERROR) == 5
        assert Severity.CRITICAL > Severity.WARNING


class TestArchaeologistError:
    """Test base exception class."""

    def test_basic_instantiation(self):
        err = ArchaeologistError("Something failed")
        assert str(err) == "Something failed"
        assert err.severity == Severity.ERROR
        assert err.actor == {"type": "system", "id": "unknown"}
        assert err.metadata == {}
        assert err.timestamp

    def test_cause_recorded(self):
        cause = ValueError("root cause")
        err = ArchaeologistError("wrapped", cause=cause)
        assert err.metadata["cause_type"] == "ValueError"
        assert err.metadata["cause_message"] == "root cause"
        assert "cause_traceback" in err.metadata

    def test_to_siem_event(self):
        err = ArchaeologistError("boom", metadata={"key": "value"})
        event = err.to_siem_event(source_host="arch-1")
        assert event["source"] == {"product": "archaeologist", "host": "arch-1", "version": "0.3.0"}
        assert event["action"] == "archaeologist.error"
        assert event["outcome"] == "failure"
        assert event["severity"] == 5
        assert event["metadata"]["error_type"] == "ArchaeologistError"
        assert event["metadata"]["message"] == "boom"
        assert event["metadata"]["key"] == "value"


class TestHierarchy:
    """Test the exception taxonomy."""

    def test_configuration(self):
        assert issubclass(IdentityError, ConfigurationError)
        assert IdentityError("x").severity == Severity.CRITICAL
        assert ConfigurationError("x", setting="timeout").metadata["setting"] == "timeout"

    def test_ledger(self):
        for cls in (LedgerConnectionError, LedgerTimeoutError, LedgerResponseError, UnwrapSubmissionError):
            assert issubclass(cls, LedgerError)
        assert issubclass(RecordNotFoundError, LedgerResponseError)
        assert LedgerConnectionError("x", url="http://gw").metadata["url"] == "http://gw"
        assert LedgerResponseError("x", status_code=0).metadata["status_code"] == 0

    def test_storage(self):
        err = StorageFetchError("x", locator="arweave://tx")
        assert isinstance(err, StorageError)
        assert err.action == "storage.fetch"
        assert err.metadata["locator"] == "arweave://tx"

    def test_crypto(self):
        for cls in (KeyDerivationError, EncryptionError, DecryptionError):
            assert issubclass(cls, CryptoError)
        assert DecryptionError("x").severity == Severity.ALERT

    def test_consistency(self):
        for cls in (DataIntegrityError, DuplicateBindingError, KeyIndexDivergenceError):
            assert issubclass(cls, ConsistencyError)

    def test_siem(self):
        assert issubclass(SIEMConnectionError, SIEMError)
        assert issubclass(SIEMReportingError, SIEMError)
        assert SIEMError("x").severity == Severity.WARNING


class TestObligationMetadata:
    """Test that per-sarcophagus errors carry the identifier."""

    def test_data_integrity(self):
        err = DataIntegrityError("bad state", identifier=OBLIGATION)
        assert err.metadata["obligation_id"] == OBLIGATION_HEX

    def test_duplicate_binding(self):
        err = DuplicateBindingError("dup", identifier=OBLIGATION, key_index=3)
        assert err.metadata == {"obligation_id": OBLIGATION_HEX, "key_index": 3}

    def test_divergence(self):
        err = KeyIndexDivergenceError("diverged", identifier=OBLIGATION, expected_index=1, actual_index=2)
        assert err.severity == Severity.EMERGENCY
        assert err.metadata["expected_index"] == 1
        assert err.metadata["actual_index"] == 2

    def test_retry_exhausted(self):
        cause = StorageFetchError("gateway down")
        err = UnwrapRetryExhaustedError("gave up", identifier=OBLIGATION, attempts=5, cause=cause)
        event = err.to_siem_event()
        assert event["action"] == "unwrap.retry_exhausted"
        assert event["metadata"]["obligation_id"] == OBLIGATION_HEX
        assert event["metadata"]["attempts"] == 5
        assert event["metadata"]["cause_type"] == "StorageFetchError"

    def test_caller_metadata_not_mutated(self):
        shared = {"source": "replay"}
        DataIntegrityError("x", identifier=OBLIGATION, metadata=shared)
        assert shared == {"source": "replay"}

    def test_identifier_optional(self):
        assert "obligation_id" not in DataIntegrityError("x").metadata
