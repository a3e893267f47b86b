# archaeologist/ledger.py
"""
Ledger Gateway Client

Read and write access to the sarcophagus contract through a JSON gateway:
- Counting and enumerating sarcophagi in ledger index order
- Reading a sarcophagus record by identifier
- Submitting signed unwrap transactions
- Polling the gateway's event feed for live notifications
"""

import logging
import os
import threading
from typing import Iterator, Optional, Protocol

import requests

from errors import (
    LedgerConnectionError,
    LedgerResponseError,
    LedgerTimeoutError,
    RecordNotFoundError,
    UnwrapSubmissionError,
)
from models import (
    Notification,
    ObligationRecord,
    identifier_from_hex,
    identifier_to_hex,
    notification_from_dict,
)

logger = logging.getLogger(__name__)

# Default configuration
DEFAULT_API_URL = os.environ.get("ARCHAEOLOGIST_LEDGER_URL", "http://localhost:8545")
DEFAULT_TIMEOUT = 30
DEFAULT_POLL_INTERVAL = 5.0


class LedgerReader(Protocol):
    """What the reconciler, scheduler and reactor need from the ledger."""

    def count(self) -> int: ...

    def identifier_at(self, index: int) -> bytes: ...

    def record(self, identifier: bytes) -> ObligationRecord: ...

    def record_at(self, index: int) -> ObligationRecord: ...

    def submit_unwrap(self, identifier: bytes, private_key: bytes, material: bytes) -> dict: ...

    def head(self) -> Optional[int]: ...

    def updates(
        self,
        after: Optional[int] = None,
        stop_event: Optional[threading.Event] = None
    ) -> Iterator[Notification]: ...


class LedgerClient:
    """
    Client for the sarcophagus ledger gateway.

    Every call is a single HTTP round trip; no call retries on its own.
    Retry policy belongs to the caller (the scheduler for unwraps, the
    reactor for the event feed).
    """

    def __init__(self, api_url: str = None, timeout: int = DEFAULT_TIMEOUT,
                 poll_interval: float = DEFAULT_POLL_INTERVAL):
        self.api_url = (api_url or DEFAULT_API_URL).rstrip("/")
        self.timeout = timeout
        self.poll_interval = poll_interval
        self._session = requests.Session()
        self._session.headers.update({
            "Content-Type": "application/json",
            "User-Agent": "Archaeologist/0.3"
        })

    def _request(self, method: str, endpoint: str, data: dict = None) -> dict:
        """Make an API request with error handling."""
        url = f"{self.api_url}{endpoint}"
        try:
            if method == "GET":
                response = self._session.get(url, params=data, timeout=self.timeout)
            elif method == "POST":
                response = self._session.post(url, json=data, timeout=self.timeout)
            else:
                raise ValueError(f"Unsupported HTTP method: {method}")

            response.raise_for_status()
            return response.json()
        except requests.exceptions.ConnectionError as e:
            raise LedgerConnectionError(
                f"Cannot connect to ledger gateway at {self.api_url}", url=self.api_url, cause=e
            ) from e
        except requests.exceptions.Timeout as e:
            raise LedgerTimeoutError(
                f"Request to ledger gateway timed out after {self.timeout}s", cause=e
            ) from e
        except requests.exceptions.HTTPError as e:
            status = e.response.status_code
            if status == 404:
                raise RecordNotFoundError(
                    f"Ledger has no record at {endpoint}", status_code=status, cause=e
                ) from e
            raise LedgerResponseError(
                f"Ledger gateway error: {status} - {e.response.text}", status_code=status, cause=e
            ) from e
        except ValueError as e:
            raise LedgerResponseError(f"Malformed ledger response from {endpoint}", cause=e) from e
        except requests.exceptions.RequestException as e:
            # Truncated bodies, redirect loops and other transport failures
            raise LedgerConnectionError(
                f"Request to ledger gateway failed: {e}", url=self.api_url, cause=e
            ) from e

    # ==================== Reads ====================

    def count(self) -> int:
        """Total number of sarcophagi ever created on the contract."""
        return int(self._request("GET", "/sarcophagi/count")["count"])

    def identifier_at(self, index: int) -> bytes:
        result = self._request("GET", f"/sarcophagi/index/{index}")
        return identifier_from_hex(result["identifier"])

    def record(self, identifier: bytes) -> ObligationRecord:
        result = self._request("GET", f"/sarcophagi/{identifier_to_hex(identifier)}")
        try:
            return ObligationRecord.from_dict(result)
        except (KeyError, ValueError, TypeError, AttributeError) as e:
            raise LedgerResponseError(
                f"Malformed sarcophagus record for {identifier_to_hex(identifier)}", cause=e
            ) from e

    def record_at(self, index: int) -> ObligationRecord:
        return self.record(self.identifier_at(index))

    # ==================== Transactions ====================

    def submit_unwrap(self, identifier: bytes, private_key: bytes, material: bytes) -> dict:
        """
        Submit the unwrap transaction for a sarcophagus.

        Reveals the per-obligation private key and the single hash of the
        inner payload. Returns the transaction receipt.
        """
        payload = {
            "private_key": private_key.hex(),
            "single_hash": material.hex(),
        }
        try:
            receipt = self._request("POST", f"/sarcophagi/{identifier_to_hex(identifier)}/unwrap", payload)
        except LedgerResponseError as e:
            raise UnwrapSubmissionError(
                f"Unwrap rejected for {identifier_to_hex(identifier)}",
                metadata={"status_code": e.metadata.get("status_code")},
                cause=e
            ) from e
        logger.info(f"Unwrap submitted for {identifier_to_hex(identifier)}: tx {receipt.get('tx_hash')}")
        return receipt

    # ==================== Event Feed ====================

    def head(self) -> Optional[int]:
        """Cursor of the newest event; subscribe after it to see only new events."""
        return self._request("GET", "/events/head").get("cursor")

    def updates(
        self,
        after: Optional[int] = None,
        stop_event: Optional[threading.Event] = None
    ) -> Iterator[Notification]:
        """
        Yield notifications in ledger order, polling until stop_event is set.

        Malformed events are logged and skipped; transport errors propagate.
        """
        stop_event = stop_event or threading.Event()
        cursor = after

        while not stop_event.is_set():
            params = {} if cursor is None else {"after": cursor}
            result = self._request("GET", "/events", params)
            events = result.get("events", [])

            for raw in events:
                try:
                    notification = notification_from_dict(raw)
                except (KeyError, ValueError, TypeError, AttributeError) as e:
                    logger.warning(f"Skipping malformed ledger event {raw!r}: {e}")
                    continue
                yield notification

            cursor = result.get("cursor", cursor)
            if not events:
                stop_event.wait(self.poll_interval)
