# archaeologist/storage.py
"""
Content-addressed storage client (Arweave gateway).

Payload locators are either bare transaction ids or ``arweave://<tx_id>``.
"""

import logging
import os
from typing import Protocol

import requests

from errors import StorageFetchError

logger = logging.getLogger(__name__)

DEFAULT_GATEWAY_URL = os.environ.get("ARCHAEOLOGIST_STORAGE_URL", "https://arweave.net")
DEFAULT_TIMEOUT = 60
LOCATOR_SCHEME = "arweave://"


class StorageClient(Protocol):
    def fetch(self, locator: str) -> bytes: ...


def transaction_id(locator: str) -> str:
    """Strip the locator scheme, leaving the storage transaction id."""
    tx_id = locator[len(LOCATOR_SCHEME):] if locator.startswith(LOCATOR_SCHEME) else locator
    tx_id = tx_id.strip("/")
    if not tx_id or "/" in tx_id:
        raise StorageFetchError(f"Invalid payload locator: {locator!r}", locator=locator)
    return tx_id


class ArweaveClient:
    def __init__(self, gateway_url: str = None, timeout: int = DEFAULT_TIMEOUT):
        self.gateway_url = (gateway_url or DEFAULT_GATEWAY_URL).rstrip("/")
        self.timeout = timeout
        self._session = requests.Session()
        self._session.headers.update({"User-Agent": "Archaeologist/0.3"})

    def fetch(self, locator: str) -> bytes:
        """Download the raw payload bytes for a locator."""
        url = f"{self.gateway_url}/{transaction_id(locator)}"
        try:
            response = self._session.get(url, timeout=self.timeout)
            response.raise_for_status()
        except requests.exceptions.RequestException as e:
            raise StorageFetchError(f"Failed to fetch payload {locator}: {e}", locator=locator, cause=e) from e

        if not response.content:
            raise StorageFetchError(f"Storage returned an empty payload for {locator}", locator=locator)

        logger.debug(f"Fetched {len(response.content)} bytes for {locator}")
        return response.content
