"""
Transfer Store

SQLite-backed persistence for cross-chain transfers.

Keys:
- bridge-transfer:transfers: JSON list of the 25 most recent transfers (newest first)
- bridge-transfer:network-preferences: last used from/to network pair

All writes go through one lock and an exclusive SQLite transaction, so the
orchestrator and the watcher never lose each other's updates.
"""

import asyncio
import copy
import json
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from dataclasses import replace
from pathlib import Path
from typing import Callable, Dict, Iterator, List, Optional
from loguru import logger

from .models import Transfer


TransferListener = Callable[[List[Transfer]], None]


class TransferStore:
    """
    Durable local record of every transfer and its step states

    Features:
    - Fail-soft loading (malformed data reads as empty)
    - Atomic whole-collection writes
    - Serialized read-modify-write per transfer
    - Retention cap (most recent 25)
    - Change notification for local writes and writes from other processes
    """

    TRANSFERS_KEY = "bridge-transfer:transfers"
    PREFERENCES_KEY = "bridge-transfer:network-preferences"
    MAX_TRANSFERS = 25

    def __init__(self, db_path: str = "bridge_transfers.db"):
        """
        Initialize store

        Args:
            db_path: Path to SQLite database
        """
        self.db_path = Path(db_path)
        self.conn: Optional[sqlite3.Connection] = None
        self._lock = threading.RLock()
        self._listeners: List[TransferListener] = []
        self._data_version: Optional[int] = None
        self._initialize_db()
        logger.info(f"Transfer store initialized: {self.db_path}")

    def _initialize_db(self):
        """Open database and create tables"""
        # Autocommit mode; transactions are opened explicitly
        self.conn = sqlite3.connect(str(self.db_path), isolation_level=None, check_same_thread=False)
        self.conn.execute("""
            CREATE TABLE IF NOT EXISTS kv_store (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL,
                updated_at TIMESTAMP NOT NULL
            )
        """)
        self._data_version = self._read_data_version()

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Cursor]:
        with self._lock:
            cursor = self.conn.cursor()
            cursor.execute("BEGIN IMMEDIATE")
            try:
                yield cursor
            except BaseException:
                cursor.execute("ROLLBACK")
                raise
            else:
                cursor.execute("COMMIT")

    def _read_raw(self, key: str, cursor: Optional[sqlite3.Cursor] = None) -> Optional[str]:
        cursor = cursor or self.conn.cursor()
        cursor.execute("SELECT value FROM kv_store WHERE key = ?", (key,))
        row = cursor.fetchone()
        return row[0] if row else None

    def _write_raw(self, key: str, value: str, cursor: sqlite3.Cursor):
        cursor.execute("""
            INSERT INTO kv_store (key, value, updated_at) VALUES (?, ?, ?)
            ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at
        """, (key, value, datetime.now(timezone.utc).isoformat()))

    def _read_data_version(self) -> Optional[int]:
        try:
            return self.conn.execute("PRAGMA data_version").fetchone()[0]
        except sqlite3.Error as e:
            logger.debug(f"Could not read data_version: {e}")
            return None

    @staticmethod
    def _decode(raw: Optional[str]) -> List[Transfer]:
        """Decode the persisted collection, skipping malformed records"""
        if not raw:
            return []

        try:
            parsed = json.loads(raw)
        except (json.JSONDecodeError, TypeError) as e:
            logger.warning(f"⚠ Stored transfers are not valid JSON, treating as empty: {e}")
            return []

        if not isinstance(parsed, list):
            logger.warning("⚠ Stored transfers are not a list, treating as empty")
            return []

        transfers = []
        for item in parsed:
            try:
                transfers.append(Transfer.from_dict(item))
            except (KeyError, ValueError, TypeError, AttributeError) as e:
                logger.warning(f"⚠ Skipping malformed transfer record: {e}")
        return transfers

    @staticmethod
    def _encode(transfers: List[Transfer]) -> str:
        return json.dumps([transfer.to_dict() for transfer in transfers])

    @staticmethod
    def _guard_invariants(previous: Transfer, updated: Transfer) -> Transfer:
        """
        Keep append-only facts from previous in updated

        - terminal status is never changed
        - a step tx hash, once set, is never replaced
        """
        if previous.is_terminal and updated.status != previous.status:
            logger.warning(f"⚠ Refusing to move terminal transfer {previous.id} "
                           f"from {previous.status} to {updated.status}")
            updated = replace(updated, status=previous.status, error_message=previous.error_message)

        previous_hashes = {step.id: step.tx_hash for step in previous.steps}
        steps = []
        for step in updated.steps:
            stored_hash = previous_hashes.get(step.id)
            if stored_hash and step.tx_hash != stored_hash:
                logger.warning(f"⚠ Keeping stored tx hash for {previous.id}/{step.id}")
                step = replace(step, tx_hash=stored_hash)
            steps.append(step)

        return replace(updated, steps=steps)

    def _notify(self, transfers: List[Transfer]):
        for listener in list(self._listeners):
            try:
                listener(list(transfers))
            except Exception as e:
                logger.error(f"Transfer listener failed: {e}")

    def _commit_collection(self, transfers: List[Transfer], cursor: sqlite3.Cursor):
        self._write_raw(self.TRANSFERS_KEY, self._encode(transfers), cursor)

    def load(self) -> List[Transfer]:
        """
        Load all transfers, most recent first

        Returns:
            List of transfers (empty on absent or malformed data)
        """
        try:
            with self._lock:
                raw = self._read_raw(self.TRANSFERS_KEY)
        except sqlite3.Error as e:
            logger.error(f"✗ Error reading transfers: {e}")
            return []
        return self._decode(raw)

    def get(self, transfer_id: str) -> Optional[Transfer]:
        for transfer in self.load():
            if transfer.id == transfer_id:
                return transfer
        return None

    def save(self, transfers: List[Transfer]) -> bool:
        """
        Replace the entire persisted collection

        Transfers already stored keep their terminal status and tx hashes.

        Args:
            transfers: Transfers, most recent first

        Returns:
            Success status
        """
        transfers = list(transfers)[:self.MAX_TRANSFERS]
        try:
            with self._transaction() as cursor:
                current = {item.id: item for item in self._decode(self._read_raw(self.TRANSFERS_KEY, cursor))}
                transfers = [
                    self._guard_invariants(current[item.id], item) if item.id in current else item
                    for item in transfers
                ]
                self._commit_collection(transfers, cursor)
        except sqlite3.Error as e:
            logger.error(f"✗ Error saving transfers: {e}")
            return False

        self._data_version = self._read_data_version()
        self._notify(transfers)
        return True

    def upsert(self, transfer: Transfer) -> List[Transfer]:
        """
        Insert or replace a transfer by id at the front, keeping the newest 25

        Args:
            transfer: Transfer record

        Returns:
            Updated collection
        """
        try:
            with self._transaction() as cursor:
                current = self._decode(self._read_raw(self.TRANSFERS_KEY, cursor))
                existing = next((item for item in current if item.id == transfer.id), None)
                if existing is not None:
                    transfer = self._guard_invariants(existing, transfer)

                updated = [transfer] + [item for item in current if item.id != transfer.id]
                dropped = updated[self.MAX_TRANSFERS:]
                updated = updated[:self.MAX_TRANSFERS]
                self._commit_collection(updated, cursor)
        except sqlite3.Error as e:
            logger.error(f"✗ Error upserting transfer {transfer.id}: {e}")
            return self.load()

        if dropped:
            logger.debug(f"Retention cap reached, dropped {len(dropped)} oldest transfer(s)")
        logger.debug(f"Transfer upserted: {transfer.id} ({transfer.status})")

        self._data_version = self._read_data_version()
        self._notify(updated)
        return updated

    def mutate(self, transfer_id: str, fn: Callable[[Transfer], Transfer]) -> Optional[Transfer]:
        """
        Apply fn to the latest stored version of a transfer

        fn receives a copy and returns the new version. Nothing is written if
        the id is unknown or fn returns an unchanged transfer.

        Args:
            transfer_id: Transfer id
            fn: Updater function

        Returns:
            Stored transfer after the update, or None if not found
        """
        try:
            with self._transaction() as cursor:
                current = self._decode(self._read_raw(self.TRANSFERS_KEY, cursor))
                index = next((i for i, item in enumerate(current) if item.id == transfer_id), None)
                if index is None:
                    logger.debug(f"Mutate skipped, transfer not found: {transfer_id}")
                    return None

                previous = current[index]
                updated = fn(copy.deepcopy(previous))
                updated = self._guard_invariants(previous, updated)
                if updated == previous:
                    return previous

                current[index] = updated
                self._commit_collection(current, cursor)
        except sqlite3.Error as e:
            logger.error(f"✗ Error updating transfer {transfer_id}: {e}")
            return None

        self._data_version = self._read_data_version()
        self._notify(current)
        return updated

    def clear(self) -> bool:
        """Remove all transfers"""
        try:
            with self._transaction() as cursor:
                cursor.execute("DELETE FROM kv_store WHERE key = ?", (self.TRANSFERS_KEY,))
        except sqlite3.Error as e:
            logger.error(f"✗ Error clearing transfers: {e}")
            return False

        logger.info("🧹 Transfer history cleared")
        self._data_version = self._read_data_version()
        self._notify([])
        return True

    def load_network_preferences(self) -> Optional[Dict[str, str]]:
        """
        Load the last used network pair

        Returns:
            {'fromNetworkId': ..., 'toNetworkId': ...} or None
        """
        try:
            with self._lock:
                raw = self._read_raw(self.PREFERENCES_KEY)
            if not raw:
                return None
            parsed = json.loads(raw)
        except (sqlite3.Error, json.JSONDecodeError) as e:
            logger.debug(f"Could not load network preferences: {e}")
            return None

        if not isinstance(parsed, dict) or not parsed.get('fromNetworkId') or not parsed.get('toNetworkId'):
            return None
        return {'fromNetworkId': parsed['fromNetworkId'], 'toNetworkId': parsed['toNetworkId']}

    def save_network_preferences(self, from_network_id: str, to_network_id: str) -> bool:
        payload = json.dumps({'fromNetworkId': from_network_id, 'toNetworkId': to_network_id})
        try:
            with self._transaction() as cursor:
                self._write_raw(self.PREFERENCES_KEY, payload, cursor)
        except sqlite3.Error as e:
            logger.error(f"✗ Error saving network preferences: {e}")
            return False
        self._data_version = self._read_data_version()
        return True

    def add_listener(self, listener: TransferListener):
        if listener not in self._listeners:
            self._listeners.append(listener)

    def remove_listener(self, listener: TransferListener):
        if listener in self._listeners:
            self._listeners.remove(listener)

    def check_external_changes(self) -> bool:
        """
        Detect commits made by another connection or process

        Listeners are re-synchronized with the fresh collection when a change is seen.

        Returns:
            True if the backing store changed
        """
        with self._lock:
            version = self._read_data_version()
            if version is None or version == self._data_version:
                return False
            self._data_version = version

        logger.debug("Transfer store changed externally, re-synchronizing")
        self._notify(self.load())
        return True

    async def watch_external_changes(self, interval_seconds: float = 1.0):
        """Poll for external changes until cancelled"""
        while True:
            self.check_external_changes()
            await asyncio.sleep(interval_seconds)

    def close(self):
        """Close database connection"""
        if self.conn:
            self.conn.close()
            self.conn = None
            logger.info("Transfer store closed")
