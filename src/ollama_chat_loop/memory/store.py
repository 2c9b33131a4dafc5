from __future__ import annotations

import json
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any
from uuid import uuid4

from loguru import logger

from ollama_chat_loop.errors import ExchangeAlreadyFinalized, StoreUnavailable
from ollama_chat_loop.models import StoredExchange, Turn


def utc_now() -> str:
    return datetime.now(UTC).isoformat(timespec="seconds")


def _encode_turn(turn: Turn) -> str:
    return json.dumps(turn.to_message(), ensure_ascii=True)


def _decode_turn(turn_json: str | None) -> Turn | None:
    if turn_json is None:
        return None
    return Turn.from_dict(json.loads(turn_json))


class ContextStore:
    """Append-only, ordered log of exchanges in a single SQLite file.

    Insertion order (``seq``) is conversational order. Every write is one
    transaction, so readers never observe a half-written exchange.
    """

    def __init__(self, db_path: str, *, model: str = ""):
        self._model = model
        try:
            if db_path != ":memory:":
                Path(db_path).parent.mkdir(parents=True, exist_ok=True)
            self._conn = sqlite3.connect(db_path, check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
            self._initialize_schema()
        except (sqlite3.Error, OSError) as ex:
            raise StoreUnavailable(f"Could not open context store {db_path}: {ex}", phase="loading") from ex

    def close(self) -> None:
        self._conn.close()

    @contextmanager
    def transaction(self, phase: str) -> Iterator[sqlite3.Connection]:
        try:
            with self._conn:
                yield self._conn
        except sqlite3.Error as ex:
            raise StoreUnavailable(f"Context store write failed: {ex}", phase=phase) from ex

    def append(
        self,
        exchange: StoredExchange,
        exchange_id: str | None = None,
        *,
        phase: str = "requesting",
    ) -> str:
        """Record a whole exchange. Re-appending with the same caller-supplied id is a no-op."""
        eid = exchange_id or exchange.id or str(uuid4())
        now = utc_now()
        with self.transaction(phase) as conn:
            conn.execute(
                """
                INSERT OR IGNORE INTO exchanges (id, prompt_json, reply_json, model, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    eid,
                    _encode_turn(exchange.prompt),
                    _encode_turn(exchange.reply) if exchange.reply is not None else None,
                    exchange.model or self._model,
                    exchange.created_at or now,
                    exchange.updated_at or now,
                ),
            )
        return eid

    def append_prompt(self, turn: Turn, *, phase: str = "requesting") -> str:
        handle = self.append(StoredExchange(prompt=turn), phase=phase)
        logger.debug(f"Recorded prompt for exchange {handle}")
        return handle

    def finalize(self, handle: str, assistant_turn: Turn) -> None:
        with self.transaction("finalizing") as conn:
            cursor = conn.execute(
                "UPDATE exchanges SET reply_json = ?, updated_at = ? WHERE id = ? AND reply_json IS NULL",
                (_encode_turn(assistant_turn), utc_now(), handle),
            )
            if cursor.rowcount == 1:
                return
            row = conn.execute("SELECT reply_json FROM exchanges WHERE id = ? LIMIT 1", (handle,)).fetchone()
        if row is None:
            raise KeyError(f"Unknown exchange: {handle}")
        raise ExchangeAlreadyFinalized(f"Exchange {handle} already has a reply", phase="finalizing")

    def exchanges(self) -> list[StoredExchange]:
        rows = self._select(
            """
            SELECT seq, id, prompt_json, reply_json, model, created_at, updated_at
            FROM exchanges
            ORDER BY seq ASC
            """
        )
        return [self._to_exchange(row) for row in rows]

    def dangling(self) -> list[StoredExchange]:
        return [e for e in self.exchanges() if e.is_dangling]

    def all_turns(self) -> list[Turn]:
        turns: list[Turn] = []
        for exchange in self.exchanges():
            turns.extend(exchange.turns())
        return turns

    def _select(self, query: str, params: tuple[Any, ...] = ()) -> list[sqlite3.Row]:
        try:
            return self._conn.execute(query, params).fetchall()
        except sqlite3.Error as ex:
            raise StoreUnavailable(f"Context store read failed: {ex}", phase="loading") from ex

    def _to_exchange(self, row: sqlite3.Row) -> StoredExchange:
        try:
            prompt = _decode_turn(row["prompt_json"])
            reply = _decode_turn(row["reply_json"])
        except ValueError as ex:
            raise StoreUnavailable(f"Corrupt exchange record {row['id']}: {ex}", phase="loading") from ex
        return StoredExchange(
            id=row["id"],
            seq=row["seq"],
            prompt=prompt,
            reply=reply,
            model=row["model"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def _initialize_schema(self) -> None:
        self._conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS exchanges (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                id TEXT NOT NULL UNIQUE,
                prompt_json TEXT NOT NULL,
                reply_json TEXT NULL,
                model TEXT NOT NULL DEFAULT '',
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );
            """
        )
        self._conn.commit()
