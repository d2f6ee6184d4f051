"""Whole-collection snapshot storage for wallets and cashout requests.

Snapshots are a restart-recovery aid, not a consistency mechanism: the
in-memory ledger stays authoritative and every backend here is best effort.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from functools import lru_cache
from pathlib import Path
from typing import Any, Optional
import json
import logging
import os
import sqlite3


logger = logging.getLogger("staketap_api.storage.snapshots")
WORKSPACE_ROOT = Path(__file__).resolve().parents[4]

WALLETS = "wallets"
CASHOUTS = "cashouts"
COLLECTIONS = (WALLETS, CASHOUTS)


def _items_from_payload(payload: Any) -> Optional[list[dict[str, Any]]]:
    if isinstance(payload, list):
        items = payload
    elif isinstance(payload, dict):
        items = payload.get("items")
    else:
        items = None
    if not isinstance(items, list):
        return None
    return [item for item in items if isinstance(item, dict)]


class SnapshotStore(ABC):
    @abstractmethod
    def load(self, name: str) -> Optional[list[dict[str, Any]]]:
        raise NotImplementedError

    @abstractmethod
    def save(self, name: str, items: list[dict[str, Any]]) -> None:
        raise NotImplementedError


class JsonFileSnapshotStore(SnapshotStore):
    def __init__(self, data_dir: Path) -> None:
        self.data_dir = data_dir

    def _path_for(self, name: str) -> Path:
        return self.data_dir / f"{name}.json"

    def load(self, name: str) -> Optional[list[dict[str, Any]]]:
        path = self._path_for(name)
        if not path.exists():
            return None
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
        except Exception as exc:
            logger.warning("[SNAPSHOT] Ignoring unreadable snapshot %s: %s", path, exc)
            return None
        return _items_from_payload(payload)

    def save(self, name: str, items: list[dict[str, Any]]) -> None:
        self.data_dir.mkdir(parents=True, exist_ok=True)
        path = self._path_for(name)
        tmp_path = path.with_suffix(".json.tmp")
        tmp_path.write_text(json.dumps({"items": items}, indent=2), encoding="utf-8")
        tmp_path.replace(path)


class SQLiteSnapshotStore(SnapshotStore):
    def __init__(self, db_path: Path) -> None:
        self.db_path = db_path
        self._initialized = False

    def _connect(self) -> sqlite3.Connection:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def init_db(self) -> None:
        if self._initialized:
            return
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS ledger_snapshots (
                  name TEXT PRIMARY KEY,
                  payload TEXT NOT NULL,
                  updated_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now'))
                )
                """
            )
        self._initialized = True

    def load(self, name: str) -> Optional[list[dict[str, Any]]]:
        self.init_db()
        with self._connect() as conn:
            row = conn.execute("SELECT payload FROM ledger_snapshots WHERE name = ?", (name,)).fetchone()
        if not row:
            return None
        try:
            return _items_from_payload(json.loads(str(row["payload"])))
        except Exception as exc:
            logger.warning("[SNAPSHOT] Ignoring unreadable sqlite snapshot '%s': %s", name, exc)
            return None

    def save(self, name: str, items: list[dict[str, Any]]) -> None:
        self.init_db()
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO ledger_snapshots (name, payload, updated_at)
                VALUES (?, ?, (strftime('%Y-%m-%dT%H:%M:%fZ', 'now')))
                ON CONFLICT(name) DO UPDATE SET
                  payload = excluded.payload,
                  updated_at = (strftime('%Y-%m-%dT%H:%M:%fZ', 'now'))
                """,
                (name, json.dumps({"items": items}, separators=(",", ":"))),
            )


class PostgresSnapshotStore(SnapshotStore):
    def __init__(self, database_url: str) -> None:
        self.database_url = database_url
        self._initialized = False
        self._ensure_driver()

    @staticmethod
    def _ensure_driver() -> None:
        try:
            import psycopg  # noqa: F401
        except Exception as exc:  # pragma: no cover
            raise RuntimeError(
                "Postgres backend requires `psycopg`. Install it with: pip install psycopg[binary]"
            ) from exc

    def _connect(self):
        import psycopg
        from psycopg.rows import dict_row

        return psycopg.connect(self.database_url, row_factory=dict_row)

    def init_db(self) -> None:
        if self._initialized:
            return
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    CREATE TABLE IF NOT EXISTS ledger_snapshots (
                      name TEXT PRIMARY KEY,
                      payload JSONB NOT NULL,
                      updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
                    )
                    """
                )
        self._initialized = True

    def load(self, name: str) -> Optional[list[dict[str, Any]]]:
        self.init_db()
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT payload FROM ledger_snapshots WHERE name = %s", (name,))
                row = cur.fetchone()
        if not row:
            return None
        payload = row["payload"]
        if isinstance(payload, str):
            payload = json.loads(payload)
        return _items_from_payload(payload)

    def save(self, name: str, items: list[dict[str, Any]]) -> None:
        self.init_db()
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO ledger_snapshots (name, payload, updated_at)
                    VALUES (%s, %s::jsonb, NOW())
                    ON CONFLICT(name) DO UPDATE SET
                      payload = EXCLUDED.payload,
                      updated_at = NOW()
                    """,
                    (name, json.dumps({"items": items})),
                )


def _resolve_path(raw: str) -> Path:
    p = Path(raw)
    if not p.is_absolute():
        p = (WORKSPACE_ROOT / p).resolve()
    return p


def _data_dir() -> Path:
    return _resolve_path(os.environ.get("STAKETAP_DATA_DIR", str(WORKSPACE_ROOT / "data")))


def _database_url() -> Optional[str]:
    return os.environ.get("DATABASE_URL")


@lru_cache(maxsize=1)
def _backend() -> SnapshotStore:
    database_url = _database_url()
    if database_url and database_url.startswith(("postgres://", "postgresql://")):
        return PostgresSnapshotStore(database_url)
    if database_url and database_url.startswith("sqlite:///"):
        return SQLiteSnapshotStore(_resolve_path(database_url[len("sqlite:///") :]))
    return JsonFileSnapshotStore(_data_dir())


def reset_backend_cache_for_tests() -> None:
    _backend.cache_clear()


def load_snapshot(name: str) -> Optional[list[dict[str, Any]]]:
    """Read one collection; any backend failure means "start empty"."""
    try:
        return _backend().load(name)
    except Exception as exc:
        logger.warning("[SNAPSHOT] Failed to load '%s': %s", name, exc)
        return None


def save_snapshot(name: str, items: list[dict[str, Any]]) -> None:
    _backend().save(name, items)
