from __future__ import annotations

from typing import Any, Optional, Protocol

from sqlalchemy import create_engine, text


class KeyValueStore(Protocol):
    """String key -> string value storage."""

    def get(self, key: str) -> Optional[str]:
        ...

    def set(self, key: str, value: str) -> None:
        ...

    def delete(self, key: str) -> None:
        ...


class MemoryKeyValueStore:
    """Process-local store, for tests and dry runs."""

    def __init__(self) -> None:
        self._data: dict[str, str] = {}

    def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = value

    def delete(self, key: str) -> None:
        self._data.pop(key, None)


class SqlAlchemyKeyValueStore:
    """Single-table key-value store on any SQLAlchemy URL (SQLite by default).

    `database_url` may contain credentials. Do not log it.
    """

    def __init__(self, *, database_url: str, table: str = "kv_store") -> None:
        if not table.isidentifier():
            raise ValueError(f"Invalid table name: {table!r}")
        self._database_url = database_url
        self._table = table
        self._engine: Any | None = None

    def _get_engine(self) -> Any:
        if self._engine is None:
            self._engine = create_engine(self._database_url, echo=False, pool_pre_ping=True)
            with self._engine.begin() as conn:
                conn.execute(
                    text(
                        f"""
                        CREATE TABLE IF NOT EXISTS {self._table} (
                            key VARCHAR(255) PRIMARY KEY,
                            value TEXT NOT NULL
                        )
                        """
                    )
                )
        return self._engine

    def get(self, key: str) -> Optional[str]:
        engine = self._get_engine()
        with engine.begin() as conn:
            row = conn.execute(
                text(f"SELECT value FROM {self._table} WHERE key = :key"),
                {"key": key},
            ).fetchone()
        return None if row is None else row[0]

    def set(self, key: str, value: str) -> None:
        engine = self._get_engine()
        stmt = text(
            f"""
            INSERT INTO {self._table} (key, value)
            VALUES (:key, :value)
            ON CONFLICT (key) DO UPDATE SET value = excluded.value
            """
        )
        with engine.begin() as conn:
            conn.execute(stmt, {"key": key, "value": value})

    def delete(self, key: str) -> None:
        engine = self._get_engine()
        with engine.begin() as conn:
            conn.execute(text(f"DELETE FROM {self._table} WHERE key = :key"), {"key": key})

    def dispose(self) -> None:
        if self._engine is not None:
            self._engine.dispose()
            self._engine = None
