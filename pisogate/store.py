#!/usr/bin/env python3
"""
PisoGate Row Store
==================

Persistence adapter for the declarative topology and session rows.

Supports:
- In-memory storage (tests, dry runs)
- SQLite storage (appliance)
- Key/value runtime config table

Rows are plain dicts; pisogate.models converts them to dataclasses.

Author: Team PisoGate
"""

import sqlite3
import threading
from abc import ABC, abstractmethod
from copy import deepcopy
from pathlib import Path
from typing import Any, Dict, List, Optional

from loguru import logger

# table -> (primary key, columns)
TABLES: Dict[str, tuple] = {
    "vlans": ("name", ("name", "parent", "vlan_id")),
    "bridges": ("name", ("name", "members", "stp")),
    "hotspots": ("interface", ("interface", "ip_address", "dhcp_range", "netmask", "enabled")),
    "wireless_settings": ("interface", ("interface", "ssid", "password", "bridge")),
    "sessions": ("mac", ("mac", "ip", "remaining_seconds", "total_paid", "is_paused",
                         "download_limit", "upload_limit", "token", "updated_at", "expired_at")),
    "wifi_devices": ("mac", ("mac", "ip", "interface", "download_limit", "upload_limit", "last_seen")),
    "gaming_rules": ("id", ("id", "name", "protocol", "port_start", "port_end", "enabled")),
    "pppoe_server": ("interface", ("interface", "local_ip", "ip_pool_start", "ip_pool_end",
                                   "dns1", "dns2", "service_name", "enabled")),
    "pppoe_users": ("username", ("username", "password", "enabled")),
    "multi_wan_config": ("id", ("id", "enabled", "mode", "pcc_method", "interfaces")),
}


def primary_key(table: str) -> str:
    try:
        return TABLES[table][0]
    except KeyError:
        raise KeyError(f"Unknown table: {table}")


class RowStore(ABC):
    """Abstract base class for row storage."""

    @abstractmethod
    def get(self, table: str, key: Any) -> Optional[Dict[str, Any]]:
        """Get one row by primary key."""
        pass

    @abstractmethod
    def list(self, table: str, where: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        """List rows, optionally filtered by column equality."""
        pass

    @abstractmethod
    def insert(self, table: str, row: Dict[str, Any]) -> None:
        """Insert a new row. Raises KeyError if the key exists."""
        pass

    @abstractmethod
    def update(self, table: str, key: Any, changes: Dict[str, Any]) -> bool:
        """Update columns of an existing row. Returns False if absent."""
        pass

    @abstractmethod
    def delete(self, table: str, key: Any) -> bool:
        """Delete a row. Returns False if absent."""
        pass

    @abstractmethod
    def get_config(self, key: str, default: Optional[str] = None) -> Optional[str]:
        """Read a runtime config value."""
        pass

    @abstractmethod
    def set_config(self, key: str, value: Any) -> None:
        """Write a runtime config value."""
        pass

    def upsert(self, table: str, row: Dict[str, Any]) -> None:
        key = row[primary_key(table)]
        if self.get(table, key) is None:
            self.insert(table, row)
        else:
            self.update(table, key, {k: v for k, v in row.items() if k != primary_key(table)})

    def close(self) -> None:
        pass


class MemoryRowStore(RowStore):
    """Thread-safe in-memory row store."""

    def __init__(self):
        self.lock = threading.RLock()
        self._tables: Dict[str, Dict[Any, Dict[str, Any]]] = {t: {} for t in TABLES}
        self._config: Dict[str, str] = {}

    def get(self, table, key):
        primary_key(table)
        with self.lock:
            row = self._tables[table].get(key)
            return deepcopy(row) if row is not None else None

    def list(self, table, where=None):
        primary_key(table)
        with self.lock:
            rows = [deepcopy(r) for r in self._tables[table].values()]
        if where:
            rows = [r for r in rows if all(r.get(k) == v for k, v in where.items())]
        return rows

    def insert(self, table, row):
        pk = primary_key(table)
        with self.lock:
            key = row[pk]
            if key in self._tables[table]:
                raise KeyError(f"{table}: duplicate key {key!r}")
            self._tables[table][key] = deepcopy(row)

    def update(self, table, key, changes):
        primary_key(table)
        with self.lock:
            row = self._tables[table].get(key)
            if row is None:
                return False
            row.update(deepcopy(changes))
            return True

    def delete(self, table, key):
        primary_key(table)
        with self.lock:
            return self._tables[table].pop(key, None) is not None

    def get_config(self, key, default=None):
        with self.lock:
            return self._config.get(key, default)

    def set_config(self, key, value):
        with self.lock:
            self._config[key] = str(value)


class SQLiteRowStore(RowStore):
    """
    SQLite-backed row store.

    One connection shared across threads, guarded by an RLock. The schema
    is created on open.
    """

    def __init__(self, db_path: str):
        self.db_path = db_path
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self.lock = threading.RLock()
        self.conn = sqlite3.connect(db_path, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self._init_schema()
        logger.info(f"SQLiteRowStore opened at {db_path}")

    def _init_schema(self):
        with self.lock:
            cursor = self.conn.cursor()
            for table, (pk, columns) in TABLES.items():
                cols = ", ".join(f"{c} PRIMARY KEY" if c == pk else c for c in columns)
                cursor.execute(f"CREATE TABLE IF NOT EXISTS {table} ({cols})")
            cursor.execute("CREATE TABLE IF NOT EXISTS config (key TEXT PRIMARY KEY, value TEXT)")
            self.conn.commit()

    @staticmethod
    def _columns(table: str, row: Dict[str, Any]) -> List[str]:
        allowed = TABLES[table][1]
        unknown = [k for k in row if k not in allowed]
        if unknown:
            raise KeyError(f"{table}: unknown column(s) {unknown}")
        return list(row)

    def get(self, table, key):
        pk = primary_key(table)
        with self.lock:
            cur = self.conn.execute(f"SELECT * FROM {table} WHERE {pk} = ?", (key,))
            row = cur.fetchone()
        return dict(row) if row else None

    def list(self, table, where=None):
        primary_key(table)
        sql = f"SELECT * FROM {table}"
        params: List[Any] = []
        if where:
            cols = self._columns(table, where)
            sql += " WHERE " + " AND ".join(f"{c} = ?" for c in cols)
            params = [where[c] for c in cols]
        with self.lock:
            rows = self.conn.execute(sql, params).fetchall()
        return [dict(r) for r in rows]

    def insert(self, table, row):
        primary_key(table)
        cols = self._columns(table, row)
        sql = f"INSERT INTO {table} ({', '.join(cols)}) VALUES ({', '.join('?' for _ in cols)})"
        with self.lock:
            try:
                self.conn.execute(sql, [row[c] for c in cols])
                self.conn.commit()
            except sqlite3.IntegrityError as e:
                raise KeyError(f"{table}: duplicate key {row.get(primary_key(table))!r}") from e

    def update(self, table, key, changes):
        pk = primary_key(table)
        if not changes:
            return self.get(table, key) is not None
        cols = self._columns(table, changes)
        sql = f"UPDATE {table} SET {', '.join(f'{c} = ?' for c in cols)} WHERE {pk} = ?"
        with self.lock:
            cur = self.conn.execute(sql, [changes[c] for c in cols] + [key])
            self.conn.commit()
            return cur.rowcount > 0

    def delete(self, table, key):
        pk = primary_key(table)
        with self.lock:
            cur = self.conn.execute(f"DELETE FROM {table} WHERE {pk} = ?", (key,))
            self.conn.commit()
            return cur.rowcount > 0

    def get_config(self, key, default=None):
        with self.lock:
            row = self.conn.execute("SELECT value FROM config WHERE key = ?", (key,)).fetchone()
        return row["value"] if row else default

    def set_config(self, key, value):
        with self.lock:
            self.conn.execute("INSERT OR REPLACE INTO config (key, value) VALUES (?, ?)", (key, str(value)))
            self.conn.commit()

    def close(self):
        with self.lock:
            self.conn.close()


def create_store(db_path: Optional[str]) -> RowStore:
    """SQLite store for a path, in-memory store for None or empty."""
    if not db_path:
        return MemoryRowStore()
    return SQLiteRowStore(db_path)
