# archaeologist/db.py
"""
Optional local cache of key bindings.

The service never needs this to run: replay rebuilds every binding from the
ledger. When enabled it records each binding as it is made, and a later
replay that binds a cached sarcophagus to a different index is treated as a
hard consistency error instead of silently unwrapping with the wrong key.
"""

import logging
import os
import sqlite3
from datetime import datetime, timezone
from typing import Dict

from errors import KeyIndexDivergenceError
from models import identifier_from_hex, identifier_to_hex

logger = logging.getLogger(__name__)

# Default database path
DB_PATH = os.environ.get(
    "ARCHAEOLOGIST_DB_PATH",
    os.path.expanduser("~/.archaeologist/bindings.db")
)


def init_db(db_path: str = None) -> str:
    db_path = db_path or DB_PATH
    os.makedirs(os.path.dirname(os.path.abspath(db_path)), exist_ok=True)

    conn = sqlite3.connect(db_path)
    c = conn.cursor()
    c.execute('''
        CREATE TABLE IF NOT EXISTS key_bindings (
            obligation_id TEXT PRIMARY KEY,    -- 0x-prefixed double hash
            key_index INTEGER NOT NULL UNIQUE,
            bound_at TEXT NOT NULL
        )
    ''')
    conn.commit()
    conn.close()
    return db_path


class BindingCache:
    """SQLite-backed record of which key index each sarcophagus was bound to."""

    def __init__(self, db_path: str = None):
        self.db_path = init_db(db_path)

    def record_binding(self, identifier: bytes, key_index: int) -> None:
        conn = sqlite3.connect(self.db_path)
        try:
            c = conn.cursor()
            c.execute(
                "SELECT key_index FROM key_bindings WHERE obligation_id = ?",
                (identifier_to_hex(identifier),)
            )
            row = c.fetchone()
            if row is not None:
                if row[0] != key_index:
                    raise KeyIndexDivergenceError(
                        f"Sarcophagus {identifier_to_hex(identifier)} cached at key index {row[0]}, "
                        f"now bound to {key_index}",
                        identifier=identifier,
                        expected_index=row[0],
                        actual_index=key_index
                    )
                return
            c.execute(
                "INSERT INTO key_bindings (obligation_id, key_index, bound_at) VALUES (?, ?, ?)",
                (identifier_to_hex(identifier), key_index, datetime.now(timezone.utc).isoformat())
            )
            conn.commit()
        except sqlite3.IntegrityError as e:
            raise KeyIndexDivergenceError(
                f"Key index {key_index} is already cached for another sarcophagus",
                identifier=identifier,
                actual_index=key_index,
                cause=e
            ) from e
        finally:
            conn.close()

    def all_bindings(self) -> Dict[bytes, int]:
        conn = sqlite3.connect(self.db_path)
        c = conn.cursor()
        c.execute("SELECT obligation_id, key_index FROM key_bindings ORDER BY key_index")
        rows = c.fetchall()
        conn.close()
        return {identifier_from_hex(r[0]): r[1] for r in rows}

    def check_divergence(self, bindings: Dict[bytes, int]) -> None:
        """Raise if any replayed binding disagrees with the cache, either way round."""
        cached = self.all_bindings()
        owners = {index: identifier for identifier, index in cached.items()}

        for identifier, key_index in sorted(bindings.items(), key=lambda item: item[1]):
            expected = cached.get(identifier)
            if expected is not None and expected != key_index:
                raise KeyIndexDivergenceError(
                    f"Replay bound {identifier_to_hex(identifier)} to key index {key_index}, "
                    f"cache says {expected}",
                    identifier=identifier,
                    expected_index=expected,
                    actual_index=key_index
                )
            owner = owners.get(key_index)
            if owner is not None and owner != identifier:
                raise KeyIndexDivergenceError(
                    f"Replay bound key index {key_index} to {identifier_to_hex(identifier)}, "
                    f"cache has it on {identifier_to_hex(owner)}",
                    identifier=identifier,
                    actual_index=key_index
                )
        logger.info(f"Binding cache agrees with replay ({len(bindings)} live bindings checked)")

    def record_all(self, bindings: Dict[bytes, int]) -> None:
        for identifier, key_index in bindings.items():
            self.record_binding(identifier, key_index)
