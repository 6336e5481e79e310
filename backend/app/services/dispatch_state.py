"""SQLite-backed document store for trucks, deliveries and inventory."""
from __future__ import annotations

import json
import sqlite3
from contextlib import contextmanager
from datetime import date, datetime, timezone
from pathlib import Path
from threading import Lock, RLock
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional

from app.core.config import get_settings
from app.core.errors import DependencyFailure, NotFoundError, SlotConflictError
from app.core.logging import logger
from app.models.dispatch import DeliveryRecord, DeliveryStatus, TruckRecord


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _json_dumps(value: Any) -> str:
    return json.dumps(value, ensure_ascii=True)


def _normalize_truck_number(value: str | None) -> str:
    return " ".join(str(value or "").split()).casefold()


class DispatchStateStore:
    """Durable state for the dispatch domain.

    Every truck, delivery and inventory item is one JSON document keyed by id.
    A handful of columns are lifted out of the document so queries and the
    slot uniqueness index can run in SQL.
    """

    _lock_registry: dict[str, RLock] = {}
    _lock_registry_guard = Lock()

    def __init__(self, db_path: str | None = None) -> None:
        path = (db_path or get_settings().dispatch_db_path or "").strip() or "./data/dispatch.db"

        self._db_path = Path(path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = self._get_shared_lock(str(self._db_path.resolve()))
        self._conn: Optional[sqlite3.Connection] = sqlite3.connect(
            str(self._db_path),
            check_same_thread=False,
            timeout=30.0,
        )
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode = WAL")
        self._conn.execute("PRAGMA synchronous = NORMAL")
        self._conn.execute("PRAGMA busy_timeout = 30000")
        self._initialize_schema()
        logger.info("Dispatch store opened", db_path=str(self._db_path))

    @classmethod
    def _get_shared_lock(cls, key: str) -> RLock:
        with cls._lock_registry_guard:
            lock = cls._lock_registry.get(key)
            if lock is None:
                lock = RLock()
                cls._lock_registry[key] = lock
            return lock

    @property
    def db_path(self) -> Path:
        return self._db_path

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            raise RuntimeError("Dispatch store is closed")
        return self._conn

    def close(self) -> None:
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None
                logger.info("Dispatch store closed", db_path=str(self._db_path))

    def _initialize_schema(self) -> None:
        with self._lock:
            self.conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS sequences (
                    key_name TEXT PRIMARY KEY,
                    next_value INTEGER NOT NULL
                );

                CREATE TABLE IF NOT EXISTS trucks (
                    truck_id TEXT PRIMARY KEY,
                    number_key TEXT NOT NULL,
                    active INTEGER NOT NULL,
                    data_json TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_trucks_number ON trucks (number_key, active);

                CREATE TABLE IF NOT EXISTS deliveries (
                    delivery_id TEXT PRIMARY KEY,
                    delivery_date TEXT NOT NULL,
                    status TEXT NOT NULL,
                    truck_id TEXT,
                    driver_id TEXT,
                    source TEXT,
                    slot_key TEXT,
                    data_json TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_deliveries_date_status ON deliveries (delivery_date, status);
                CREATE INDEX IF NOT EXISTS idx_deliveries_truck ON deliveries (truck_id, delivery_date);
                CREATE INDEX IF NOT EXISTS idx_deliveries_driver ON deliveries (driver_id, delivery_date);

                CREATE UNIQUE INDEX IF NOT EXISTS uq_deliveries_truck_slot
                    ON deliveries (truck_id, delivery_date, slot_key)
                    WHERE status != 'CANCELLED' AND truck_id IS NOT NULL AND slot_key IS NOT NULL;

                CREATE TABLE IF NOT EXISTS inventory (
                    material_id TEXT PRIMARY KEY,
                    data_json TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS idempotency (
                    key_name TEXT PRIMARY KEY,
                    stored_at TEXT NOT NULL,
                    response_json TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_idempotency_time ON idempotency (stored_at);
                """
            )
            self.conn.commit()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Hold the store lock and commit or roll back as one unit."""
        with self._lock:
            try:
                yield self.conn
                self.conn.commit()
            except Exception:
                self.conn.rollback()
                raise

    # ── sequences / idempotency ─────────────────────────────────

    def next_sequence(self, key: str) -> int:
        with self.transaction() as conn:
            row = conn.execute(
                "SELECT next_value FROM sequences WHERE key_name = ?",
                (key,),
            ).fetchone()
            if row is None:
                current = 1
                conn.execute(
                    "INSERT INTO sequences (key_name, next_value) VALUES (?, ?)",
                    (key, current + 1),
                )
            else:
                current = int(row["next_value"])
                conn.execute(
                    "UPDATE sequences SET next_value = ? WHERE key_name = ?",
                    (current + 1, key),
                )
            return current

    def generate_truck_id(self) -> str:
        return f"TRK-{self.next_sequence('truck'):04d}"

    def generate_delivery_id(self) -> str:
        return f"DEL-{self.next_sequence('delivery'):06d}"

    def get_idempotent(self, key: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            row = self.conn.execute(
                "SELECT response_json FROM idempotency WHERE key_name = ?",
                (key,),
            ).fetchone()
        if not row:
            return None
        return json.loads(row["response_json"])

    def set_idempotent(self, key: str, response: Dict[str, Any]) -> None:
        with self.transaction() as conn:
            conn.execute(
                """
                INSERT INTO idempotency (key_name, stored_at, response_json)
                VALUES (?, ?, ?)
                ON CONFLICT(key_name)
                DO UPDATE SET stored_at = excluded.stored_at, response_json = excluded.response_json
                """,
                (key, _utc_now_iso(), _json_dumps(response)),
            )
            conn.execute(
                """
                DELETE FROM idempotency
                WHERE key_name NOT IN (
                    SELECT key_name FROM idempotency ORDER BY stored_at DESC LIMIT 10000
                )
                """
            )

    # ── trucks ──────────────────────────────────────────────────

    def upsert_truck(self, truck: TruckRecord) -> Dict[str, Any]:
        row = truck.model_dump(mode="json")
        row["updated_at"] = _utc_now_iso()
        with self.transaction() as conn:
            conn.execute(
                """
                INSERT INTO trucks (truck_id, number_key, active, data_json, updated_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(truck_id)
                DO UPDATE SET number_key = excluded.number_key, active = excluded.active,
                              data_json = excluded.data_json, updated_at = excluded.updated_at
                """,
                (
                    truck.truck_id,
                    _normalize_truck_number(truck.truck_number),
                    1 if truck.active else 0,
                    _json_dumps(row),
                    row["updated_at"],
                ),
            )
        return row

    def get_truck(self, truck_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            row = self.conn.execute(
                "SELECT data_json FROM trucks WHERE truck_id = ?",
                (truck_id,),
            ).fetchone()
        if not row:
            return None
        return json.loads(row["data_json"])

    def list_trucks(self, active_only: bool = True) -> List[Dict[str, Any]]:
        query = "SELECT data_json FROM trucks"
        if active_only:
            query += " WHERE active = 1"
        with self._lock:
            rows = self.conn.execute(query).fetchall()
        trucks = [json.loads(row["data_json"]) for row in rows]
        return sorted(trucks, key=lambda t: (_normalize_truck_number(t.get("truck_number")), t.get("truck_id", "")))

    def find_active_truck_by_number(self, truck_number: str, exclude_truck_id: str | None = None) -> Optional[Dict[str, Any]]:
        with self._lock:
            rows = self.conn.execute(
                "SELECT truck_id, data_json FROM trucks WHERE number_key = ? AND active = 1",
                (_normalize_truck_number(truck_number),),
            ).fetchall()
        for row in rows:
            if exclude_truck_id and row["truck_id"] == exclude_truck_id:
                continue
            return json.loads(row["data_json"])
        return None

    # ── deliveries ──────────────────────────────────────────────

    def _write_delivery(self, conn: sqlite3.Connection, delivery: DeliveryRecord) -> Dict[str, Any]:
        row = delivery.model_dump(mode="json")
        try:
            conn.execute(
                """
                INSERT INTO deliveries (
                    delivery_id, delivery_date, status, truck_id, driver_id, source, slot_key, data_json, updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(delivery_id)
                DO UPDATE SET delivery_date = excluded.delivery_date, status = excluded.status,
                              truck_id = excluded.truck_id, driver_id = excluded.driver_id,
                              source = excluded.source, slot_key = excluded.slot_key,
                              data_json = excluded.data_json, updated_at = excluded.updated_at
                """,
                (
                    delivery.delivery_id,
                    delivery.delivery_date.isoformat(),
                    delivery.status.value,
                    delivery.truck_id,
                    delivery.driver_id,
                    delivery.source.value,
                    delivery.slot_key(),
                    _json_dumps(row),
                    row["updated_at"],
                ),
            )
        except sqlite3.IntegrityError as exc:
            if "uq_deliveries_truck_slot" in str(exc) or "deliveries.truck_id" in str(exc):
                raise SlotConflictError(
                    f"Truck {delivery.truck_number or delivery.truck_id} is already booked on "
                    f"{delivery.delivery_date.isoformat()} at '{delivery.time_window or delivery.hour}'"
                ) from exc
            raise
        return row

    def save_delivery(self, delivery: DeliveryRecord) -> Dict[str, Any]:
        with self.transaction() as conn:
            return self._write_delivery(conn, delivery)

    def get_delivery(self, delivery_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            row = self.conn.execute(
                "SELECT data_json FROM deliveries WHERE delivery_id = ?",
                (delivery_id,),
            ).fetchone()
        if not row:
            return None
        return json.loads(row["data_json"])

    def update_delivery(
        self,
        delivery_id: str,
        mutate: Callable[[DeliveryRecord], Optional[DeliveryRecord]],
    ) -> Dict[str, Any]:
        """Atomic read-modify-write of one delivery document.

        ``mutate`` receives the current record and returns the record to store,
        or ``None`` to leave the document untouched.
        """
        try:
            with self.transaction() as conn:
                row = conn.execute(
                    "SELECT data_json FROM deliveries WHERE delivery_id = ?",
                    (delivery_id,),
                ).fetchone()
                if not row:
                    raise NotFoundError(f"Delivery not found: {delivery_id}")
                current = DeliveryRecord.model_validate(json.loads(row["data_json"]))
                updated = mutate(current)
                if updated is None:
                    return current.model_dump(mode="json")
                updated.updated_at = datetime.now(timezone.utc)
                return self._write_delivery(conn, updated)
        except sqlite3.Error as exc:
            raise DependencyFailure(f"Delivery store unavailable for {delivery_id}: {exc}") from exc

    def query_deliveries(
        self,
        on_date: date | None = None,
        start_date: date | None = None,
        end_date: date | None = None,
        statuses: Iterable[DeliveryStatus] | None = None,
        truck_id: str | None = None,
        driver_id: str | None = None,
        source: str | None = None,
        exclude_statuses: Iterable[DeliveryStatus] | None = None,
    ) -> List[Dict[str, Any]]:
        clauses: List[str] = []
        params: List[Any] = []
        if on_date is not None:
            clauses.append("delivery_date = ?")
            params.append(on_date.isoformat())
        else:
            if start_date is not None:
                clauses.append("delivery_date >= ?")
                params.append(start_date.isoformat())
            if end_date is not None:
                clauses.append("delivery_date <= ?")
                params.append(end_date.isoformat())
        status_values = [DeliveryStatus.parse(s).value for s in (statuses or [])]
        if status_values:
            clauses.append(f"status IN ({', '.join('?' for _ in status_values)})")
            params.extend(status_values)
        excluded = [DeliveryStatus.parse(s).value for s in (exclude_statuses or [])]
        if excluded:
            clauses.append(f"status NOT IN ({', '.join('?' for _ in excluded)})")
            params.extend(excluded)
        if truck_id:
            clauses.append("truck_id = ?")
            params.append(truck_id)
        if driver_id:
            clauses.append("driver_id = ?")
            params.append(driver_id)
        if source:
            clauses.append("source = ?")
            params.append(source)

        query = "SELECT data_json FROM deliveries"
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        with self._lock:
            rows = self.conn.execute(query, params).fetchall()
        return [json.loads(row["data_json"]) for row in rows]

    def slot_bookings(
        self,
        truck_id: str,
        on_date: date,
        slot_key: str,
        exclude_delivery_id: str | None = None,
    ) -> List[str]:
        """Ids of non-cancelled deliveries holding ``(truck, date, slot)``."""
        with self._lock:
            rows = self.conn.execute(
                """
                SELECT delivery_id FROM deliveries
                WHERE truck_id = ? AND delivery_date = ? AND slot_key = ? AND status != ?
                """,
                (truck_id, on_date.isoformat(), slot_key, DeliveryStatus.CANCELLED.value),
            ).fetchall()
        return [row["delivery_id"] for row in rows if row["delivery_id"] != exclude_delivery_id]

    def normalize_legacy_statuses(self) -> int:
        """Rewrite mixed-case or aliased statuses to their canonical enum value."""
        canonical = {status.value for status in DeliveryStatus}
        fixed = 0
        with self.transaction() as conn:
            rows = conn.execute("SELECT delivery_id, status, data_json FROM deliveries").fetchall()
            for row in rows:
                data = json.loads(row["data_json"])
                raw_status = data.get("status")
                if row["status"] in canonical and raw_status in canonical:
                    continue
                try:
                    status = DeliveryStatus.parse(raw_status or row["status"])
                except ValueError:
                    logger.warning("Skipping delivery with unknown status", delivery_id=row["delivery_id"], status=raw_status)
                    continue
                data["status"] = status.value
                conn.execute(
                    "UPDATE deliveries SET status = ?, data_json = ? WHERE delivery_id = ?",
                    (status.value, _json_dumps(data), row["delivery_id"]),
                )
                fixed += 1
        if fixed:
            logger.info("Normalized legacy delivery statuses", fixed=fixed)
        return fixed

    # ── inventory ───────────────────────────────────────────────

    def get_inventory(self, material_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            row = self.conn.execute(
                "SELECT data_json FROM inventory WHERE material_id = ?",
                (material_id,),
            ).fetchone()
        if not row:
            return None
        return json.loads(row["data_json"])

    def list_inventory(self) -> List[Dict[str, Any]]:
        with self._lock:
            rows = self.conn.execute("SELECT data_json FROM inventory ORDER BY material_id").fetchall()
        return [json.loads(row["data_json"]) for row in rows]

    def save_inventory(self, item: Dict[str, Any]) -> Dict[str, Any]:
        item = dict(item)
        item["updated_at"] = _utc_now_iso()
        with self.transaction() as conn:
            conn.execute(
                """
                INSERT INTO inventory (material_id, data_json, updated_at)
                VALUES (?, ?, ?)
                ON CONFLICT(material_id)
                DO UPDATE SET data_json = excluded.data_json, updated_at = excluded.updated_at
                """,
                (item["material_id"], _json_dumps(item), item["updated_at"]),
            )
        return item

    def adjust_inventory(self, material_id: str, delta: float) -> Optional[Dict[str, Any]]:
        """Shift stock by ``delta``. Unstocked materials are left alone and yield ``None``."""
        with self.transaction() as conn:
            row = conn.execute(
                "SELECT data_json FROM inventory WHERE material_id = ?",
                (material_id,),
            ).fetchone()
            if not row:
                return None
            item = json.loads(row["data_json"])
            item["quantity_tons"] = float(item.get("quantity_tons") or 0.0) + float(delta)
            item["updated_at"] = _utc_now_iso()
            conn.execute(
                """
                INSERT INTO inventory (material_id, data_json, updated_at)
                VALUES (?, ?, ?)
                ON CONFLICT(material_id)
                DO UPDATE SET data_json = excluded.data_json, updated_at = excluded.updated_at
                """,
                (material_id, _json_dumps(item), item["updated_at"]),
            )
        return item
