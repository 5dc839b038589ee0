from __future__ import annotations

import json
import logging
import sqlite3
from datetime import datetime
from pathlib import Path
from typing import Iterable

from printfleet.models import (
    AlertCategory,
    AlertSeverity,
    Device,
    DeviceStatus,
    ForecastSnapshot,
    Site,
    SupplyKind,
    SupplyReading,
    utc_now,
)

LOGGER = logging.getLogger(__name__)


SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS sites (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL,
    quiet_hours TEXT,
    subnet_cidr TEXT
);

CREATE TABLE IF NOT EXISTS devices (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    hostname TEXT NOT NULL,
    ip_address TEXT,
    site_id INTEGER,
    location TEXT,
    vendor TEXT,
    model TEXT,
    serial_number TEXT,
    status TEXT NOT NULL,
    last_seen TEXT,
    is_active INTEGER NOT NULL DEFAULT 1,
    FOREIGN KEY (site_id) REFERENCES sites(id)
);

CREATE TABLE IF NOT EXISTS supply_readings (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    device_id INTEGER NOT NULL,
    kind TEXT NOT NULL,
    percent REAL,
    level_raw INTEGER,
    max_raw INTEGER,
    name TEXT,
    part_number TEXT,
    timestamp TEXT NOT NULL,
    FOREIGN KEY (device_id) REFERENCES devices(id)
);

CREATE TABLE IF NOT EXISTS forecast_snapshots (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    device_id INTEGER NOT NULL,
    supply_kind TEXT NOT NULL,
    days_left INTEGER,
    confidence REAL,
    daily_usage REAL,
    usage_variance REAL,
    model TEXT NOT NULL,
    parameters_json TEXT NOT NULL,
    at TEXT NOT NULL,
    FOREIGN KEY (device_id) REFERENCES devices(id)
);

CREATE TABLE IF NOT EXISTS notification_history (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    device_id INTEGER,
    title TEXT NOT NULL,
    message TEXT NOT NULL,
    severity TEXT NOT NULL,
    category TEXT NOT NULL,
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_devices_ip_address ON devices(ip_address);
CREATE INDEX IF NOT EXISTS idx_readings_device_kind ON supply_readings(device_id, kind, timestamp);
CREATE INDEX IF NOT EXISTS idx_snapshots_device_kind ON forecast_snapshots(device_id, supply_kind, at);
CREATE INDEX IF NOT EXISTS idx_history_created_at ON notification_history(created_at);
"""


def connect(db_path: str) -> sqlite3.Connection:
    path = Path(db_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(path)
    conn.row_factory = sqlite3.Row
    return conn


def init_db(db_path: str) -> None:
    with connect(db_path) as conn:
        conn.executescript(SCHEMA_SQL)
        conn.commit()
    LOGGER.info("SQLite initialized at %s", db_path)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _parse_dt(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


class SqlitePersistence:
    """Device roster, supply history and forecast snapshots in one SQLite file."""

    def __init__(self, db_path: str) -> None:
        self.db_path = db_path
        init_db(db_path)

    def save_site(self, site: Site) -> Site:
        with connect(self.db_path) as conn:
            if site.id:
                conn.execute(
                    "INSERT OR REPLACE INTO sites (id, name, quiet_hours, subnet_cidr) VALUES (?, ?, ?, ?)",
                    (site.id, site.name, site.quiet_hours, site.subnet_cidr),
                )
            else:
                cursor = conn.execute(
                    "INSERT INTO sites (name, quiet_hours, subnet_cidr) VALUES (?, ?, ?)",
                    (site.name, site.quiet_hours, site.subnet_cidr),
                )
                site.id = cursor.lastrowid
            conn.commit()
        return site

    def load_sites(self) -> dict[int, Site]:
        with connect(self.db_path) as conn:
            rows = conn.execute("SELECT id, name, quiet_hours, subnet_cidr FROM sites").fetchall()
        return {row["id"]: Site(**dict(row)) for row in rows}

    def save_device(self, device: Device) -> Device:
        values = (
            device.hostname,
            device.ip_address,
            device.site_id,
            device.location,
            device.vendor,
            device.model,
            device.serial_number,
            device.status.value,
            _iso(device.last_seen),
            1 if device.is_active else 0,
        )
        with connect(self.db_path) as conn:
            if device.id:
                conn.execute(
                    """
                    INSERT OR REPLACE INTO devices (
                        id, hostname, ip_address, site_id, location, vendor, model,
                        serial_number, status, last_seen, is_active
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (device.id, *values),
                )
            else:
                cursor = conn.execute(
                    """
                    INSERT INTO devices (
                        hostname, ip_address, site_id, location, vendor, model,
                        serial_number, status, last_seen, is_active
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    values,
                )
                device.id = cursor.lastrowid
            conn.commit()
        LOGGER.debug("Persisted device %s (%s)", device.id, device.hostname)
        return device

    def load_devices(self, active_only: bool = False) -> list[Device]:
        sites = self.load_sites()
        query = "SELECT * FROM devices"
        if active_only:
            query += " WHERE is_active = 1"
        with connect(self.db_path) as conn:
            rows = conn.execute(query + " ORDER BY id").fetchall()
        devices = []
        for row in rows:
            devices.append(
                Device(
                    id=row["id"],
                    hostname=row["hostname"],
                    ip_address=row["ip_address"],
                    site_id=row["site_id"],
                    site=sites.get(row["site_id"]),
                    location=row["location"],
                    vendor=row["vendor"],
                    model=row["model"],
                    serial_number=row["serial_number"],
                    status=DeviceStatus(row["status"]),
                    last_seen=_parse_dt(row["last_seen"]),
                    is_active=bool(row["is_active"]),
                )
            )
        return devices

    def save_supply_readings(self, device_id: int, readings: Iterable[SupplyReading]) -> None:
        rows = [
            (
                device_id,
                reading.kind.value,
                reading.percent,
                reading.level_raw,
                reading.max_raw,
                reading.name,
                reading.part_number,
                reading.timestamp.isoformat(),
            )
            for reading in readings
        ]
        with connect(self.db_path) as conn:
            conn.executemany(
                """
                INSERT INTO supply_readings (
                    device_id, kind, percent, level_raw, max_raw, name, part_number, timestamp
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                rows,
            )
            conn.commit()
        LOGGER.debug("Persisted %d supply readings for device %s", len(rows), device_id)

    def load_historical_readings(self, device_id: int, kind: SupplyKind, limit: int | None = None) -> list[SupplyReading]:
        """Readings for one supply, newest first."""
        query = "SELECT * FROM supply_readings WHERE device_id = ? AND kind = ? ORDER BY timestamp DESC, id DESC"
        params: tuple = (device_id, kind.value)
        if limit is not None:
            query += " LIMIT ?"
            params += (limit,)
        with connect(self.db_path) as conn:
            rows = conn.execute(query, params).fetchall()
        return [
            SupplyReading(
                kind=SupplyKind(row["kind"]),
                percent=row["percent"],
                level_raw=row["level_raw"],
                max_raw=row["max_raw"],
                name=row["name"],
                part_number=row["part_number"],
                timestamp=datetime.fromisoformat(row["timestamp"]),
            )
            for row in rows
        ]

    def load_supply_kinds(self, device_id: int) -> list[SupplyKind]:
        with connect(self.db_path) as conn:
            rows = conn.execute(
                "SELECT DISTINCT kind FROM supply_readings WHERE device_id = ? ORDER BY kind",
                (device_id,),
            ).fetchall()
        return [SupplyKind(row["kind"]) for row in rows]

    def save_forecast_snapshot(self, snapshot: ForecastSnapshot) -> None:
        with connect(self.db_path) as conn:
            conn.execute(
                """
                INSERT INTO forecast_snapshots (
                    device_id, supply_kind, days_left, confidence, daily_usage,
                    usage_variance, model, parameters_json, at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    snapshot.device_id,
                    snapshot.supply_kind.value,
                    snapshot.days_left,
                    snapshot.confidence,
                    snapshot.daily_usage,
                    snapshot.usage_variance,
                    snapshot.model,
                    json.dumps(snapshot.parameters, ensure_ascii=False),
                    snapshot.at.isoformat(),
                ),
            )
            conn.commit()

    def load_forecast_snapshots(self, device_id: int, kind: SupplyKind, limit: int | None = None) -> list[ForecastSnapshot]:
        query = "SELECT * FROM forecast_snapshots WHERE device_id = ? AND supply_kind = ? ORDER BY at ASC, id ASC"
        params: tuple = (device_id, kind.value)
        if limit is not None:
            query += " LIMIT ?"
            params += (limit,)
        with connect(self.db_path) as conn:
            rows = conn.execute(query, params).fetchall()
        return [
            ForecastSnapshot(
                device_id=row["device_id"],
                supply_kind=SupplyKind(row["supply_kind"]),
                days_left=row["days_left"],
                confidence=row["confidence"],
                daily_usage=row["daily_usage"],
                usage_variance=row["usage_variance"],
                model=row["model"],
                parameters=json.loads(row["parameters_json"]),
                at=datetime.fromisoformat(row["at"]),
            )
            for row in rows
        ]


class SqliteHistoryLog:
    """Append-only record of delivered notifications."""

    def __init__(self, db_path: str) -> None:
        self.db_path = db_path
        init_db(db_path)

    def append(
        self,
        device: Device,
        title: str,
        message: str,
        severity: AlertSeverity,
        category: AlertCategory,
        at: datetime | None = None,
    ) -> None:
        with connect(self.db_path) as conn:
            conn.execute(
                """
                INSERT INTO notification_history (device_id, title, message, severity, category, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (device.id, title, message, severity.name, category.value, (at or utc_now()).isoformat()),
            )
            conn.commit()

    def recent(self, limit: int = 50) -> list[dict]:
        with connect(self.db_path) as conn:
            rows = conn.execute(
                "SELECT * FROM notification_history ORDER BY created_at DESC, id DESC LIMIT ?",
                (limit,),
            ).fetchall()
        return [dict(row) for row in rows]
