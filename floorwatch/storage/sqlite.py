from __future__ import annotations

import json
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from pathlib import Path

from floorwatch.core.types import Listing, ListingStatus
from floorwatch.errors import PersistenceError

_LISTING_COLUMNS = (
    "item_id, listing_ref, group_id, price, status, seller_ref, buyer_ref, "
    "floor_price, deal_percent, listed_at, updated_at, listed_height"
)


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _iso(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat()


def _row_to_listing(row: sqlite3.Row) -> Listing:
    return Listing(
        item_id=str(row["item_id"]),
        listing_ref=str(row["listing_ref"]) if row["listing_ref"] is not None else None,
        group_id=str(row["group_id"]),
        price=Decimal(str(row["price"])),
        status=ListingStatus(str(row["status"])),
        seller_ref=row["seller_ref"],
        buyer_ref=row["buyer_ref"],
        floor_price=Decimal(str(row["floor_price"])) if row["floor_price"] is not None else None,
        deal_percent=float(row["deal_percent"]) if row["deal_percent"] is not None else None,
        listed_at=datetime.fromisoformat(str(row["listed_at"])),
        updated_at=datetime.fromisoformat(str(row["updated_at"])),
        listed_height=int(row["listed_height"]) if row["listed_height"] is not None else None,
    )


class ListingStore:
    """Durable listing table plus the poller checkpoint and an audit log.

    Every mutator is a single statement followed by a commit, so callers from the
    poller and the verification sweep can interleave without read-modify-write races.
    """

    def __init__(self, db_path: Path) -> None:
        self.db_path = db_path
        if str(db_path) != ":memory:":
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(self.db_path)
        self.conn.row_factory = sqlite3.Row
        self._init_schema()

    def close(self) -> None:
        self.conn.close()

    @contextmanager
    def _guard(self, operation: str) -> Iterator[None]:
        try:
            yield
        except sqlite3.Error as exc:
            try:
                self.conn.rollback()
            except sqlite3.Error:
                pass
            raise PersistenceError(f"listing_store_{operation}_failed:{exc}") from exc

    def _init_schema(self) -> None:
        with self._guard("init_schema"):
            self.conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS listing (
                  item_id TEXT PRIMARY KEY,
                  listing_ref TEXT NULL,
                  group_id TEXT NOT NULL,
                  price TEXT NOT NULL,
                  status TEXT NOT NULL,
                  seller_ref TEXT NULL,
                  buyer_ref TEXT NULL,
                  floor_price TEXT NULL,
                  deal_percent REAL NULL,
                  listed_at TEXT NOT NULL,
                  updated_at TEXT NOT NULL,
                  listed_height INTEGER NULL
                );

                CREATE INDEX IF NOT EXISTS idx_listing_listing_ref ON listing (listing_ref);
                CREATE INDEX IF NOT EXISTS idx_listing_status_listed_at ON listing (status, listed_at);
                CREATE INDEX IF NOT EXISTS idx_listing_updated_at ON listing (updated_at);

                CREATE TABLE IF NOT EXISTS checkpoint (
                  name TEXT PRIMARY KEY,
                  last_height INTEGER NOT NULL,
                  updated_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS audit_event (
                  id INTEGER PRIMARY KEY AUTOINCREMENT,
                  event_type TEXT NOT NULL,
                  item_id TEXT NULL,
                  payload_json TEXT NOT NULL,
                  created_at TEXT NOT NULL
                );
                """
            )
            columns = {row["name"] for row in self.conn.execute("PRAGMA table_info(listing)")}
            if "listed_height" not in columns:
                self.conn.execute("ALTER TABLE listing ADD COLUMN listed_height INTEGER NULL")
            self.conn.commit()

    def upsert(self, listing: Listing, *, replace_cycle: bool = False) -> None:
        """Insert or merge a listing by item_id.

        Nullable fields are merged with COALESCE so a partial update keeps what is
        already known. ``replace_cycle`` starts a new listing cycle: listing_ref,
        buyer_ref and listed_height are taken verbatim from ``listing``.
        """
        ref_sql = (
            "excluded.listing_ref"
            if replace_cycle
            else "COALESCE(excluded.listing_ref, listing.listing_ref)"
        )
        buyer_sql = (
            "excluded.buyer_ref"
            if replace_cycle
            else "COALESCE(excluded.buyer_ref, listing.buyer_ref)"
        )
        height_sql = (
            "excluded.listed_height"
            if replace_cycle
            else "COALESCE(excluded.listed_height, listing.listed_height)"
        )
        with self._guard("upsert"):
            self.conn.execute(
                f"""
                INSERT INTO listing ({_LISTING_COLUMNS})
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(item_id) DO UPDATE SET
                  listing_ref = {ref_sql},
                  group_id = excluded.group_id,
                  price = excluded.price,
                  status = excluded.status,
                  seller_ref = COALESCE(excluded.seller_ref, listing.seller_ref),
                  buyer_ref = {buyer_sql},
                  floor_price = COALESCE(excluded.floor_price, listing.floor_price),
                  deal_percent = COALESCE(excluded.deal_percent, listing.deal_percent),
                  listed_at = excluded.listed_at,
                  updated_at = excluded.updated_at,
                  listed_height = {height_sql}
                """,
                (
                    listing.item_id,
                    listing.listing_ref,
                    listing.group_id,
                    str(listing.price),
                    str(listing.status),
                    listing.seller_ref,
                    listing.buyer_ref,
                    str(listing.floor_price) if listing.floor_price is not None else None,
                    listing.deal_percent,
                    _iso(listing.listed_at),
                    _iso(listing.updated_at),
                    listing.listed_height,
                ),
            )
            self.conn.commit()

    def _set_status(
        self,
        *,
        item_id: str,
        status: ListingStatus,
        buyer_ref: str | None,
        listing_ref: str | None,
        operation: str,
    ) -> bool:
        sql = """
            UPDATE listing
            SET status = ?,
                buyer_ref = COALESCE(?, buyer_ref),
                updated_at = ?
            WHERE item_id = ?
        """
        params: list[object] = [str(status), buyer_ref, _iso(_utcnow()), item_id]
        if listing_ref is not None:
            # Compare-and-set on the cycle so a stale verdict cannot hit a relisting.
            sql += " AND listing_ref = ?"
            params.append(listing_ref)
        with self._guard(operation):
            cur = self.conn.execute(sql, params)
            self.conn.commit()
        return int(cur.rowcount or 0) > 0

    def mark_sold(
        self, item_id: str, buyer_ref: str | None = None, *, listing_ref: str | None = None
    ) -> bool:
        return self._set_status(
            item_id=item_id,
            status=ListingStatus.SOLD,
            buyer_ref=buyer_ref,
            listing_ref=listing_ref,
            operation="mark_sold",
        )

    def mark_unlisted(self, item_id: str, *, listing_ref: str | None = None) -> bool:
        return self._set_status(
            item_id=item_id,
            status=ListingStatus.UNLISTED,
            buyer_ref=None,
            listing_ref=listing_ref,
            operation="mark_unlisted",
        )

    def set_buyer(self, item_id: str, buyer_ref: str, *, listing_ref: str | None = None) -> bool:
        sql = """
            UPDATE listing
            SET buyer_ref = ?, updated_at = ?
            WHERE item_id = ? AND status = 'sold' AND buyer_ref IS NULL
        """
        params: list[object] = [buyer_ref, _iso(_utcnow()), item_id]
        if listing_ref is not None:
            sql += " AND listing_ref = ?"
            params.append(listing_ref)
        with self._guard("set_buyer"):
            cur = self.conn.execute(sql, params)
            self.conn.commit()
        return int(cur.rowcount or 0) > 0

    def get(self, item_id: str) -> Listing | None:
        with self._guard("get"):
            row = self.conn.execute(
                f"SELECT {_LISTING_COLUMNS} FROM listing WHERE item_id = ?",
                (item_id,),
            ).fetchone()
        if row is None:
            return None
        return _row_to_listing(row)

    def find_active_by_listing_ref(self, listing_ref: str) -> Listing | None:
        with self._guard("find_active_by_listing_ref"):
            row = self.conn.execute(
                f"""
                SELECT {_LISTING_COLUMNS}
                FROM listing
                WHERE listing_ref = ? AND status = 'active'
                ORDER BY listed_at DESC
                LIMIT 1
                """,
                (listing_ref,),
            ).fetchone()
        if row is None:
            return None
        return _row_to_listing(row)

    def query_active(
        self,
        older_than: timedelta | None = None,
        *,
        limit: int = 500,
        now: datetime | None = None,
    ) -> list[Listing]:
        if limit <= 0:
            return []
        params: list[object] = []
        where_sql = "WHERE status = 'active'"
        if older_than is not None:
            cutoff = (now or _utcnow()) - older_than
            where_sql += " AND listed_at <= ?"
            params.append(_iso(cutoff))
        with self._guard("query_active"):
            rows = self.conn.execute(
                f"""
                SELECT {_LISTING_COLUMNS}
                FROM listing
                {where_sql}
                ORDER BY listed_at ASC
                LIMIT ?
                """,
                [*params, int(limit)],
            ).fetchall()
        return [_row_to_listing(r) for r in rows]

    def list_recent(self, since: datetime, *, limit: int = 1500) -> list[Listing]:
        if limit <= 0:
            return []
        with self._guard("list_recent"):
            rows = self.conn.execute(
                f"""
                SELECT {_LISTING_COLUMNS}
                FROM listing
                WHERE listed_at >= ?
                ORDER BY listed_at DESC
                LIMIT ?
                """,
                (_iso(since), int(limit)),
            ).fetchall()
        return [_row_to_listing(r) for r in rows]

    def list_listings(
        self,
        *,
        status: ListingStatus | None = None,
        limit: int = 200,
    ) -> list[Listing]:
        if limit <= 0:
            return []
        with self._guard("list_listings"):
            if status is not None:
                rows = self.conn.execute(
                    f"""
                    SELECT {_LISTING_COLUMNS}
                    FROM listing
                    WHERE status = ?
                    ORDER BY listed_at DESC
                    LIMIT ?
                    """,
                    (str(status), int(limit)),
                ).fetchall()
            else:
                rows = self.conn.execute(
                    f"""
                    SELECT {_LISTING_COLUMNS}
                    FROM listing
                    ORDER BY listed_at DESC
                    LIMIT ?
                    """,
                    (int(limit),),
                ).fetchall()
        return [_row_to_listing(r) for r in rows]

    def purge_older_than(self, duration: timedelta, *, now: datetime | None = None) -> int:
        """Delete sold/unlisted records untouched for ``duration``.

        Active rows are kept so the verification sweep can still resolve them.
        """
        cutoff = _iso((now or _utcnow()) - duration)
        with self._guard("purge_older_than"):
            cur = self.conn.execute(
                """
                DELETE FROM listing
                WHERE status != 'active' AND updated_at < ?
                """,
                (cutoff,),
            )
            self.conn.commit()
        return int(cur.rowcount or 0)

    def reset_sold(self) -> int:
        """Operator action: return every Sold listing to Active with no buyer."""
        with self._guard("reset_sold"):
            cur = self.conn.execute(
                """
                UPDATE listing
                SET status = 'active', buyer_ref = NULL, updated_at = ?
                WHERE status = 'sold'
                """,
                (_iso(_utcnow()),),
            )
            self.conn.commit()
        return int(cur.rowcount or 0)

    def count_by_status(self) -> dict[str, int]:
        with self._guard("count_by_status"):
            rows = self.conn.execute(
                "SELECT status, COUNT(*) AS total FROM listing GROUP BY status"
            ).fetchall()
        counts = {str(s): 0 for s in ListingStatus}
        for row in rows:
            counts[str(row["status"])] = int(row["total"] or 0)
        return counts

    def get_checkpoint(self, name: str = "listings") -> int | None:
        with self._guard("get_checkpoint"):
            row = self.conn.execute(
                "SELECT last_height FROM checkpoint WHERE name = ?",
                (name,),
            ).fetchone()
        if row is None:
            return None
        return int(row["last_height"])

    def set_checkpoint(
        self, height: int, *, name: str = "listings", allow_rollback: bool = False
    ) -> int:
        """Persist the checkpoint and return the stored value.

        Without ``allow_rollback`` the stored height never decreases.
        """
        height_sql = "excluded.last_height" if allow_rollback else (
            "MAX(checkpoint.last_height, excluded.last_height)"
        )
        with self._guard("set_checkpoint"):
            self.conn.execute(
                f"""
                INSERT INTO checkpoint (name, last_height, updated_at)
                VALUES (?, ?, ?)
                ON CONFLICT(name) DO UPDATE SET
                  last_height = {height_sql},
                  updated_at = excluded.updated_at
                """,
                (name, int(height), _iso(_utcnow())),
            )
            self.conn.commit()
        stored = self.get_checkpoint(name)
        return int(stored if stored is not None else height)

    def add_audit_event(self, event_type: str, payload: dict, item_id: str | None = None) -> None:
        with self._guard("add_audit_event"):
            self.conn.execute(
                """
                INSERT INTO audit_event (event_type, item_id, payload_json, created_at)
                VALUES (?, ?, ?, ?)
                """,
                (event_type, item_id, json.dumps(payload, sort_keys=True, default=str), _iso(_utcnow())),
            )
            self.conn.commit()

    def list_recent_audit_events(
        self,
        *,
        event_types: list[str] | None = None,
        item_id: str | None = None,
        limit: int = 50,
    ) -> list[dict]:
        if limit <= 0:
            return []
        where_clauses: list[str] = []
        params: list[object] = []
        if event_types:
            placeholders = ",".join("?" for _ in event_types)
            where_clauses.append(f"event_type IN ({placeholders})")
            params.extend(event_types)
        if item_id:
            where_clauses.append("item_id = ?")
            params.append(item_id)
        where_sql = ""
        if where_clauses:
            where_sql = "WHERE " + " AND ".join(where_clauses)
        with self._guard("list_recent_audit_events"):
            rows = self.conn.execute(
                f"""
                SELECT id, event_type, item_id, payload_json, created_at
                FROM audit_event
                {where_sql}
                ORDER BY id DESC
                LIMIT ?
                """,
                [*params, int(limit)],
            ).fetchall()
        events: list[dict] = []
        for row in rows:
            payload: dict | list | str | int | float | bool | None
            try:
                payload = json.loads(str(row["payload_json"]))
            except json.JSONDecodeError:
                payload = str(row["payload_json"])
            events.append(
                {
                    "id": int(row["id"]),
                    "event_type": str(row["event_type"]),
                    "item_id": str(row["item_id"]) if row["item_id"] is not None else None,
                    "payload": payload,
                    "created_at": str(row["created_at"]),
                }
            )
        return events
