"""Persistence for per-user LED effect configuration."""

from __future__ import annotations

import asyncio
import contextlib
import re
import sqlite3
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Awaitable, Dict, List, Mapping, Optional, TypeVar

from .db import DEFAULT_INTEGRITY_CHECK_INTERVAL, DatabaseCorruptionError, DatabaseManager
from .logging import get_logger
from .metrics import record_store_operation

DEFAULT_COLOR = "#00FFAA"
DEFAULT_JOIN_EFFECT = "wakeup"
DEFAULT_JOIN_DURATION = 6000
DEFAULT_NEXT_EFFECT = "breathe"
DEFAULT_SPEED = "medium"
DEFAULT_BRIGHTNESS = 255
DEFAULT_LEAVE_EFFECT = "sleep"
DEFAULT_LEAVE_DURATION = 4000

SPEEDS = ("slow", "medium", "fast")

T = TypeVar("T")

FIELD_DEFAULTS: Mapping[str, Any] = {
    "color": DEFAULT_COLOR,
    "join_effect": DEFAULT_JOIN_EFFECT,
    "join_duration": DEFAULT_JOIN_DURATION,
    "next_effect": DEFAULT_NEXT_EFFECT,
    "speed": DEFAULT_SPEED,
    "brightness": DEFAULT_BRIGHTNESS,
    "leave_effect": DEFAULT_LEAVE_EFFECT,
    "leave_duration": DEFAULT_LEAVE_DURATION,
}
REQUIRED_FIELDS = ("device", "led")
CONFIGURABLE_FIELDS = REQUIRED_FIELDS + tuple(FIELD_DEFAULTS)

_HEX_COLOR = re.compile(r"^#[0-9A-Fa-f]{6}$")

_COLUMNS = """
    user_id,
    username,
    device,
    led,
    color,
    join_effect,
    join_duration,
    next_effect,
    speed,
    brightness,
    leave_effect,
    leave_duration,
    enabled,
    created_at,
    updated_at
"""


class ValidationError(ValueError):
    """Raised when a configuration is missing required fields or has bad values."""


class NotFoundError(LookupError):
    """Raised when an operation references a user without a stored configuration."""

    def __init__(self, user_id: str) -> None:
        super().__init__(f"No configuration stored for user {user_id}")
        self.user_id = user_id


@dataclass(frozen=True)
class UserLightConfig:
    """Snapshot of a stored configuration row."""

    user_id: str
    username: Optional[str]
    device: str
    led: int
    color: str = DEFAULT_COLOR
    join_effect: str = DEFAULT_JOIN_EFFECT
    join_duration: int = DEFAULT_JOIN_DURATION
    next_effect: str = DEFAULT_NEXT_EFFECT
    speed: str = DEFAULT_SPEED
    brightness: int = DEFAULT_BRIGHTNESS
    leave_effect: str = DEFAULT_LEAVE_EFFECT
    leave_duration: int = DEFAULT_LEAVE_DURATION
    enabled: bool = True
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def settings(self) -> Dict[str, Any]:
        """Return only the configurable fields, as accepted by `upsert`."""

        return {name: getattr(self, name) for name in CONFIGURABLE_FIELDS}


def _coerce_int(name: str, value: Any) -> int:
    if isinstance(value, bool):
        raise ValidationError(f"{name} must be an integer; got {value!r}")
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError:
            pass
    raise ValidationError(f"{name} must be an integer; got {value!r}")


def _coerce_text(name: str, value: Any) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{name} must be a non-empty string; got {value!r}")
    return value.strip()


def normalize_fields(fields: Mapping[str, Any]) -> Dict[str, Any]:
    """Validate configurable fields, filling documented defaults for omissions.

    Omitted fields (or fields given as ``None``) take their defaults rather
    than any previously stored value, so the result always describes a full
    row.
    """

    unknown = sorted(set(fields) - set(CONFIGURABLE_FIELDS))
    if unknown:
        raise ValidationError(f"Unknown configuration field(s): {', '.join(unknown)}")
    for name in REQUIRED_FIELDS:
        if fields.get(name) is None:
            raise ValidationError(f"{name} is required")

    values: Dict[str, Any] = dict(FIELD_DEFAULTS)
    values.update({key: value for key, value in fields.items() if value is not None})

    values["device"] = _coerce_text("device", values["device"])
    values["led"] = _coerce_int("led", values["led"])
    if values["led"] < 0:
        raise ValidationError(f"led must be a non-negative integer; got {values['led']}")

    color = _coerce_text("color", values["color"])
    if not _HEX_COLOR.match(color):
        raise ValidationError(f"color must be a hex value like #FF3366; got {color!r}")
    values["color"] = color

    for name in ("join_effect", "next_effect", "leave_effect"):
        values[name] = _coerce_text(name, values[name])

    speed = _coerce_text("speed", values["speed"])
    if speed not in SPEEDS:
        raise ValidationError(f"speed must be one of {', '.join(SPEEDS)}; got {speed!r}")
    values["speed"] = speed

    values["brightness"] = _coerce_int("brightness", values["brightness"])
    if not 0 <= values["brightness"] <= 255:
        raise ValidationError(
            f"brightness must be between 0 and 255; got {values['brightness']}"
        )

    for name in ("join_duration", "leave_duration"):
        values[name] = _coerce_int(name, values[name])
        if values[name] < 0:
            raise ValidationError(f"{name} must not be negative; got {values[name]}")
    return values


class LightConfigStore:
    """SQLite-backed store mapping Discord users to LED effect configuration."""

    def __init__(
        self,
        db_path: Path,
        *,
        integrity_check_interval: float = DEFAULT_INTEGRITY_CHECK_INTERVAL,
    ) -> None:
        self.db = DatabaseManager(db_path)
        self.logger = get_logger("voiceled.store")
        self._integrity_interval = integrity_check_interval
        self._integrity_task: Optional["asyncio.Task[None]"] = None

    async def start(self) -> None:
        if self._integrity_task is not None or self._integrity_interval <= 0:
            return
        self._integrity_task = asyncio.create_task(self._integrity_loop())
        self.logger.info(
            "Started database integrity checks",
            extra={"interval_seconds": self._integrity_interval},
        )

    async def stop(self) -> None:
        task, self._integrity_task = self._integrity_task, None
        if task is not None:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        await self.db.close()

    async def check_integrity(self) -> None:
        """Run SQLite's integrity check; raises `DatabaseCorruptionError` on damage."""

        await self._guarded("integrity_check", self.db.check_integrity())
        record_store_operation("integrity_check", "ok")

    async def _integrity_loop(self) -> None:
        while True:
            try:
                await self.check_integrity()
            except DatabaseCorruptionError:
                self.logger.error("Integrity checks stopped until the database is repaired")
                return
            await asyncio.sleep(self._integrity_interval)

    async def _guarded(self, operation: str, pending: Awaitable[T], **context: Any) -> T:
        try:
            return await pending
        except DatabaseCorruptionError as exc:
            record_store_operation(operation, "corrupt")
            self.logger.error(
                "Configuration store is corrupted",
                extra={"operation": operation, "error": str(exc), **context},
            )
            raise

    async def lookup(self, user_id: str) -> Optional[UserLightConfig]:
        """Return the enabled configuration for a user, or None."""

        config = await self._guarded(
            "lookup", self.db.run(lambda conn: self._lookup(conn, user_id)), user_id=user_id
        )
        record_store_operation("lookup", "hit" if config else "miss")
        return config

    def _lookup(self, conn: sqlite3.Connection, user_id: str) -> Optional[UserLightConfig]:
        row = conn.execute(
            f"SELECT {_COLUMNS} FROM user_lights WHERE user_id = ? AND enabled = 1",
            (user_id,),
        ).fetchone()
        return self._row_to_config(row) if row else None

    async def list_enabled(self) -> List[UserLightConfig]:
        return await self._guarded("list_enabled", self.db.run(self._list_enabled))

    def _list_enabled(self, conn: sqlite3.Connection) -> List[UserLightConfig]:
        rows = conn.execute(
            f"SELECT {_COLUMNS} FROM user_lights WHERE enabled = 1 ORDER BY rowid ASC"
        ).fetchall()
        return [self._row_to_config(row) for row in rows]

    async def get(self, user_id: str) -> Optional[UserLightConfig]:
        """Return a configuration regardless of its enabled flag."""

        return await self._guarded(
            "get", self.db.run(lambda conn: self._get(conn, user_id)), user_id=user_id
        )

    def _get(self, conn: sqlite3.Connection, user_id: str) -> Optional[UserLightConfig]:
        row = conn.execute(
            f"SELECT {_COLUMNS} FROM user_lights WHERE user_id = ?",
            (user_id,),
        ).fetchone()
        return self._row_to_config(row) if row else None

    async def all_configs(self) -> List[UserLightConfig]:
        """Return every stored configuration, newest first."""

        return await self._guarded("all_configs", self.db.run(self._all_configs))

    def _all_configs(self, conn: sqlite3.Connection) -> List[UserLightConfig]:
        rows = conn.execute(
            f"SELECT {_COLUMNS} FROM user_lights ORDER BY created_at DESC, rowid DESC"
        ).fetchall()
        return [self._row_to_config(row) for row in rows]

    async def upsert(
        self, user_id: str, username: Optional[str], fields: Mapping[str, Any]
    ) -> UserLightConfig:
        """Insert or fully replace the configurable fields for a user."""

        try:
            user_id = _coerce_text("user_id", user_id)
            values = normalize_fields(fields)
        except ValidationError:
            record_store_operation("upsert", "invalid")
            raise
        config = await self._guarded(
            "upsert",
            self.db.run(lambda conn: self._upsert(conn, user_id, username, values)),
            user_id=user_id,
        )
        record_store_operation("upsert", "ok")
        self.logger.info(
            "Stored user configuration",
            extra={"user_id": user_id, "username": username, "device": config.device, "led": config.led},
        )
        return config

    def _upsert(
        self,
        conn: sqlite3.Connection,
        user_id: str,
        username: Optional[str],
        values: Mapping[str, Any],
    ) -> UserLightConfig:
        conn.execute(
            """
            INSERT INTO user_lights (
                user_id, username, device, led, color, join_effect,
                join_duration, next_effect, speed, brightness,
                leave_effect, leave_duration
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(user_id) DO UPDATE SET
                username = excluded.username,
                device = excluded.device,
                led = excluded.led,
                color = excluded.color,
                join_effect = excluded.join_effect,
                join_duration = excluded.join_duration,
                next_effect = excluded.next_effect,
                speed = excluded.speed,
                brightness = excluded.brightness,
                leave_effect = excluded.leave_effect,
                leave_duration = excluded.leave_duration,
                updated_at = strftime('%Y-%m-%d %H:%M:%f', 'now')
            """,
            (
                user_id,
                username,
                values["device"],
                values["led"],
                values["color"],
                values["join_effect"],
                values["join_duration"],
                values["next_effect"],
                values["speed"],
                values["brightness"],
                values["leave_effect"],
                values["leave_duration"],
            ),
        )
        conn.commit()
        stored = self._get(conn, user_id)
        if stored is None:
            raise RuntimeError(f"Configuration for {user_id} vanished after upsert")
        return stored

    async def set_enabled(self, user_id: str, enabled: bool) -> UserLightConfig:
        config = await self._guarded(
            "set_enabled",
            self.db.run(lambda conn: self._set_enabled(conn, user_id, enabled)),
            user_id=user_id,
        )
        if config is None:
            record_store_operation("set_enabled", "not_found")
            raise NotFoundError(user_id)
        record_store_operation("set_enabled", "ok")
        self.logger.info(
            "User configuration enabled" if enabled else "User configuration disabled",
            extra={"user_id": user_id},
        )
        return config

    def _set_enabled(
        self, conn: sqlite3.Connection, user_id: str, enabled: bool
    ) -> Optional[UserLightConfig]:
        cursor = conn.execute(
            """
            UPDATE user_lights
            SET enabled = ?, updated_at = strftime('%Y-%m-%d %H:%M:%f', 'now')
            WHERE user_id = ?
            """,
            (int(enabled), user_id),
        )
        conn.commit()
        if cursor.rowcount == 0:
            return None
        return self._get(conn, user_id)

    async def delete(self, user_id: str) -> None:
        deleted = await self._guarded(
            "delete", self.db.run(lambda conn: self._delete(conn, user_id)), user_id=user_id
        )
        if not deleted:
            record_store_operation("delete", "not_found")
            raise NotFoundError(user_id)
        record_store_operation("delete", "ok")
        self.logger.info("Deleted user configuration", extra={"user_id": user_id})

    def _delete(self, conn: sqlite3.Connection, user_id: str) -> bool:
        cursor = conn.execute("DELETE FROM user_lights WHERE user_id = ?", (user_id,))
        conn.commit()
        return cursor.rowcount > 0

    async def stats(self) -> Mapping[str, int]:
        return await self._guarded("stats", self.db.run(self._stats))

    def _stats(self, conn: sqlite3.Connection) -> Mapping[str, int]:
        row = conn.execute(
            """
            SELECT
                COUNT(*) AS total,
                COALESCE(SUM(CASE WHEN enabled = 1 THEN 1 ELSE 0 END), 0) AS enabled
            FROM user_lights
            """
        ).fetchone()
        total = int(row["total"])
        enabled = int(row["enabled"])
        return {"users_total": total, "users_enabled": enabled, "users_disabled": total - enabled}

    def _row_to_config(self, row: sqlite3.Row) -> UserLightConfig:
        return UserLightConfig(
            user_id=row["user_id"],
            username=row["username"],
            device=row["device"],
            led=int(row["led"]),
            color=row["color"],
            join_effect=row["join_effect"],
            join_duration=int(row["join_duration"]),
            next_effect=row["next_effect"],
            speed=row["speed"],
            brightness=int(row["brightness"]),
            leave_effect=row["leave_effect"],
            leave_duration=int(row["leave_duration"]),
            enabled=bool(row["enabled"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )
