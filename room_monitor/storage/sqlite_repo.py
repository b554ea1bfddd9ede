from __future__ import annotations
import logging
import sqlite3
from datetime import datetime
from typing import Dict, List, Optional

import aiosqlite

from ..core.timeutil import now_utc
from ..domain.models import (
    ActionLogEntry,
    Device,
    DeviceState,
    Page,
    SensorSample,
    StateOrigin,
)

logger = logging.getLogger(__name__)


class StorageError(Exception):
    """A write or read against the database failed."""


class SQLiteRepository:
    """Idempotent writer and read-only query layer over a SQLite file.

    The UNIQUE constraint on ``sensor_samples`` is what keeps a redelivered
    reading out of history, whatever the in-memory dedup layer decided.
    """

    def __init__(self, path: str) -> None:
        self._path = path

    async def init(self) -> None:
        async with aiosqlite.connect(self._path) as db:
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS sensor_samples (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    ts_utc TEXT NOT NULL,
                    temperature REAL NOT NULL,
                    humidity REAL NOT NULL,
                    illuminance REAL NOT NULL,
                    UNIQUE (ts_utc, temperature, humidity, illuminance)
                )
                """
            )
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS devices (
                    device_name TEXT PRIMARY KEY,
                    is_on INTEGER NOT NULL,
                    origin TEXT NOT NULL,
                    last_updated TEXT NOT NULL
                )
                """
            )
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS action_log (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    actor TEXT NOT NULL,
                    device TEXT NOT NULL,
                    action TEXT NOT NULL,
                    ts_utc TEXT NOT NULL
                )
                """
            )
            await db.execute("CREATE INDEX IF NOT EXISTS idx_samples_ts ON sensor_samples(ts_utc)")
            await db.execute("CREATE INDEX IF NOT EXISTS idx_actions_ts ON action_log(ts_utc)")
            await db.commit()

    # --- Writes ---

    async def insert_sample(self, s: SensorSample) -> Optional[SensorSample]:
        """Store a sample. Returns the stored row, or None if the identical
        (timestamp, temperature, humidity, illuminance) tuple already exists.
        """
        try:
            async with aiosqlite.connect(self._path) as db:
                cur = await db.execute(
                    "INSERT OR IGNORE INTO sensor_samples(ts_utc,temperature,humidity,illuminance) VALUES (?,?,?,?)",
                    (s.ts_utc.isoformat(), float(s.temperature), float(s.humidity), float(s.illuminance)),
                )
                await db.commit()
                if cur.rowcount == 0:
                    return None
                row_id = cur.lastrowid
        except sqlite3.Error as e:
            raise StorageError(f"insert_sample failed: {e}") from e

        return SensorSample(
            temperature=s.temperature,
            humidity=s.humidity,
            illuminance=s.illuminance,
            ts_utc=s.ts_utc,
            id=row_id,
        )

    async def set_device_state(self, device: Device, is_on: bool, origin: StateOrigin) -> DeviceState:
        ts = now_utc()
        try:
            async with aiosqlite.connect(self._path) as db:
                await db.execute(
                    "INSERT INTO devices(device_name, is_on, origin, last_updated) VALUES (?, ?, ?, ?) "
                    "ON CONFLICT(device_name) DO UPDATE SET is_on=excluded.is_on, "
                    "origin=excluded.origin, last_updated=excluded.last_updated",
                    (device.value, 1 if is_on else 0, origin.value, ts.isoformat()),
                )
                await db.commit()
        except sqlite3.Error as e:
            raise StorageError(f"set_device_state({device.value}) failed: {e}") from e
        return DeviceState(device=device, is_on=is_on, last_updated=ts, origin=origin)

    async def log_action(self, entry: ActionLogEntry) -> None:
        """Append to the audit trail. Failures are logged, never raised."""
        try:
            async with aiosqlite.connect(self._path) as db:
                await db.execute(
                    "INSERT INTO action_log(actor, device, action, ts_utc) VALUES (?,?,?,?)",
                    (entry.actor, entry.device.value, entry.action, entry.ts_utc.isoformat()),
                )
                await db.commit()
        except Exception:
            logger.warning(
                "Action log write failed actor=%s device=%s action=%s",
                entry.actor, entry.device.value, entry.action,
                exc_info=True,
            )

    # --- Reads ---

    async def latest_sample(self) -> Optional[SensorSample]:
        try:
            async with aiosqlite.connect(self._path) as db:
                cur = await db.execute(
                    "SELECT id,ts_utc,temperature,humidity,illuminance FROM sensor_samples "
                    "ORDER BY ts_utc DESC, id DESC LIMIT 1"
                )
                row = await cur.fetchone()
        except sqlite3.Error as e:
            raise StorageError(f"latest_sample failed: {e}") from e
        return _sample_from_row(row) if row else None

    async def device_states(self) -> Dict[Device, bool]:
        """Current on/off mapping for every known device (missing rows are off)."""
        try:
            async with aiosqlite.connect(self._path) as db:
                cur = await db.execute("SELECT device_name, is_on FROM devices")
                rows = await cur.fetchall()
        except sqlite3.Error as e:
            raise StorageError(f"device_states failed: {e}") from e

        mapping = {d: False for d in Device}
        for name, is_on in rows:
            device = Device.parse(name)
            if device is not None:
                mapping[device] = bool(is_on)
        return mapping

    async def query_samples(self, page: int, page_size: int) -> Page:
        offset = (page - 1) * page_size
        try:
            async with aiosqlite.connect(self._path) as db:
                cur = await db.execute(
                    """
                    SELECT id,ts_utc,temperature,humidity,illuminance
                    FROM sensor_samples
                    ORDER BY ts_utc DESC, id DESC
                    LIMIT ? OFFSET ?
                    """,
                    (page_size, offset),
                )
                rows = await cur.fetchall()
                cur = await db.execute("SELECT COUNT(*) FROM sensor_samples")
                (total,) = await cur.fetchone()
        except sqlite3.Error as e:
            raise StorageError(f"query_samples failed: {e}") from e
        out: List[SensorSample] = [_sample_from_row(r) for r in rows]
        return Page(rows=out, page=page, page_size=page_size, total=int(total))

    async def query_actions(self, page: int, page_size: int) -> Page:
        offset = (page - 1) * page_size
        try:
            async with aiosqlite.connect(self._path) as db:
                cur = await db.execute(
                    """
                    SELECT id,actor,device,action,ts_utc
                    FROM action_log
                    ORDER BY ts_utc DESC, id DESC
                    LIMIT ? OFFSET ?
                    """,
                    (page_size, offset),
                )
                rows = await cur.fetchall()
                cur = await db.execute("SELECT COUNT(*) FROM action_log")
                (total,) = await cur.fetchone()
        except sqlite3.Error as e:
            raise StorageError(f"query_actions failed: {e}") from e

        out: list[ActionLogEntry] = []
        for row_id, actor, dev, action, ts in rows:
            device = Device.parse(dev)
            if device is None:
                continue
            out.append(
                ActionLogEntry(
                    actor=actor,
                    device=device,
                    action=action,
                    ts_utc=datetime.fromisoformat(ts),
                    id=row_id,
                )
            )
        return Page(rows=out, page=page, page_size=page_size, total=int(total))


def _sample_from_row(row) -> SensorSample:
    row_id, ts, t, h, lux = row
    return SensorSample(
        temperature=float(t),
        humidity=float(h),
        illuminance=float(lux),
        ts_utc=datetime.fromisoformat(ts),
        id=row_id,
    )
