"""
SIEM Reporter for the archaeologist service.

Per-sarcophagus failures (exhausted unwrap retries, undecryptable payloads)
and ledger consistency errors never stop the service, so they are pushed to
Boundary-SIEM where an operator will see them. Supports HTTP/JSON and CEF
over UDP.
"""

import os
import json
import socket
import logging
import threading
import queue
import time
import uuid
from typing import Optional, Dict, Any
from dataclasses import dataclass, field
from enum import Enum

import requests

from errors import ArchaeologistError


logger = logging.getLogger(__name__)


class Protocol(Enum):
    """SIEM communication protocols."""
    HTTP_JSON = "http"
    CEF_UDP = "cef_udp"


@dataclass
class SIEMConfig:
    """Configuration for SIEM reporter.

    Attributes:
        endpoint: SIEM endpoint URL (for HTTP) or host:port (for CEF)
        api_key: API key for authentication (HTTP only)
        protocol: Communication protocol
        verify_ssl: Whether to verify SSL certificates
        timeout: Connection timeout in seconds
        retry_count: Number of attempts per event
        async_reporting: Use background thread for reporting
        source_host: Hostname to report as event source
        enabled: Whether SIEM reporting is enabled
    """
    endpoint: str = ""
    api_key: str = ""
    protocol: Protocol = Protocol.HTTP_JSON
    verify_ssl: bool = True
    timeout: float = 5.0
    retry_count: int = 3
    async_reporting: bool = True
    source_host: str = field(default_factory=socket.gethostname)
    enabled: bool = True

    @classmethod
    def from_env(cls) -> "SIEMConfig":
        """Create config from environment variables. Reporting is off unless SIEM_ENABLED is set."""
        return cls(
            endpoint=os.environ.get("SIEM_ENDPOINT", "http://localhost:8080/v1/events"),
            api_key=os.environ.get("SIEM_API_KEY", ""),
            protocol=Protocol(os.environ.get("SIEM_PROTOCOL", "http")),
            verify_ssl=os.environ.get("SIEM_VERIFY_SSL", "true").lower() == "true",
            timeout=float(os.environ.get("SIEM_TIMEOUT", "5.0")),
            retry_count=int(os.environ.get("SIEM_RETRY_COUNT", "3")),
            async_reporting=os.environ.get("SIEM_ASYNC", "true").lower() == "true",
            source_host=os.environ.get("SIEM_SOURCE_HOST", socket.gethostname()),
            enabled=os.environ.get("SIEM_ENABLED", "false").lower() == "true",
        )


class SIEMReporter:
    """Reports archaeologist errors to Boundary-SIEM.

    Thread-safe: the scheduler's timer threads, the reactor and the
    reconciler all report through one instance.
    """

    VERSION = "0.3.0"
    PRODUCT_NAME = "archaeologist"

    def __init__(self, config: Optional[SIEMConfig] = None, sleep=time.sleep):
        self.config = config or SIEMConfig.from_env()
        self.sleep = sleep
        self._event_queue: queue.Queue = queue.Queue()
        self._worker_thread: Optional[threading.Thread] = None
        self._shutdown = threading.Event()
        self._session = requests.Session()
        self._session.headers.update({
            "Content-Type": "application/json",
            "User-Agent": f"archaeologist/{self.VERSION}",
        })
        if self.config.api_key:
            self._session.headers["X-API-Key"] = self.config.api_key

        if self.config.async_reporting and self.config.enabled:
            self._start_worker()

    def _start_worker(self) -> None:
        """Start background worker thread for async reporting."""
        self._worker_thread = threading.Thread(
            target=self._worker_loop,
            name="siem-reporter",
            daemon=True
        )
        self._worker_thread.start()
        logger.debug("SIEM reporter worker thread started")

    def _worker_loop(self) -> None:
        """Background worker that drains the event queue."""
        while not self._shutdown.is_set() or not self._event_queue.empty():
            try:
                event = self._event_queue.get(timeout=1.0)
            except queue.Empty:
                continue
            try:
                self._transmit(event)
            except Exception as e:
                logger.error(f"SIEM worker error: {e}")
            finally:
                self._event_queue.task_done()

    def shutdown(self, timeout: float = 5.0) -> None:
        """Stop the worker, giving queued events up to ``timeout`` seconds."""
        self._shutdown.set()
        if self._worker_thread and self._worker_thread.is_alive():
            self._worker_thread.join(timeout=timeout)

    def report_exception(self, exc: ArchaeologistError) -> bool:
        """Report an ArchaeologistError as a SIEM event.

        Returns:
            True if event was queued/sent, False if disabled/failed
        """
        if not self.config.enabled:
            return False

        event = exc.to_siem_event(source_host=self.config.source_host)
        event["event_id"] = str(uuid.uuid4())
        return self._dispatch(event)

    def _dispatch(self, event: Dict[str, Any]) -> bool:
        if self.config.async_reporting:
            self._event_queue.put(event)
            return True
        return self._transmit(event)

    def _transmit(self, event: Dict[str, Any]) -> bool:
        """Send one event, retrying with exponential backoff."""
        for attempt in range(self.config.retry_count):
            try:
                if self.config.protocol == Protocol.HTTP_JSON:
                    self._send_http(event)
                else:
                    self._send_cef_udp(event)
                return True
            except (requests.exceptions.RequestException, OSError) as e:
                logger.warning(
                    f"SIEM transmission attempt {attempt + 1}/{self.config.retry_count} "
                    f"failed: {e}"
                )
                if attempt < self.config.retry_count - 1:
                    self.sleep(2 ** attempt)  # Exponential backoff

        logger.error("SIEM transmission failed after all retries")
        return False

    def _send_http(self, event: Dict[str, Any]) -> None:
        response = self._session.post(
            self.config.endpoint,
            data=json.dumps(event),
            timeout=self.config.timeout,
            verify=self.config.verify_ssl,
        )
        response.raise_for_status()

    def _send_cef_udp(self, event: Dict[str, Any]) -> None:
        host, port = self._parse_host_port(self.config.endpoint, default_port=514)
        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        sock.settimeout(self.config.timeout)
        try:
            sock.sendto(self._format_cef(event).encode("utf-8"), (host, port))
        finally:
            sock.close()

    def _parse_host_port(self, endpoint: str, default_port: int) -> tuple:
        """Parse host:port from endpoint string."""
        if ":" in endpoint:
            host, port = endpoint.rsplit(":", 1)
            return host, int(port)
        return endpoint, default_port

    def _format_cef(self, event: Dict[str, Any]) -> str:
        """Format event as CEF (Common Event Format) message.

        Format: CEF:Version|Device Vendor|Device Product|Device Version|
                Signature ID|Name|Severity|Extension
        """
        cef_severity = min(10, max(0, event.get("severity", 5)))
        metadata = event.get("metadata", {})

        extensions = [
            f"rt={event.get('timestamp', '')}",
            f"act={event.get('action', 'unknown')}",
            f"outcome={event.get('outcome', 'unknown')}",
        ]
        if metadata.get("obligation_id"):
            extensions.append(f"cs1={metadata['obligation_id']}")
            extensions.append("cs1Label=sarcophagus")
        if metadata.get("error_type"):
            extensions.append(f"cs2={metadata['error_type']}")
            extensions.append("cs2Label=errorType")
        extensions.append(f"externalId={event.get('event_id', '')}")
        extensions.append(f"dvchost={event.get('source', {}).get('host', 'unknown')}")

        action = event.get("action", "unknown")
        return (
            f"CEF:0|Sarcophagus|{self.PRODUCT_NAME}|{self.VERSION}|"
            f"{action}|Archaeologist Event|{cef_severity}|{' '.join(extensions)}"
        )


# Global reporter instance (initialized on first use)
_global_reporter: Optional[SIEMReporter] = None
_reporter_lock = threading.Lock()


def configure_siem(config: SIEMConfig) -> SIEMReporter:
    """Configure the global SIEM reporter."""
    global _global_reporter

    with _reporter_lock:
        if _global_reporter:
            _global_reporter.shutdown()
        _global_reporter = SIEMReporter(config)
        return _global_reporter


def shutdown_siem() -> None:
    """Shutdown the global SIEM reporter."""
    global _global_reporter

    with _reporter_lock:
        if _global_reporter:
            _global_reporter.shutdown()
            _global_reporter = None
