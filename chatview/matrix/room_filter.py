"""Tracked-room allowlist for the Matrix adapter."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable


@dataclass(frozen=True)
class RoomAllowlist:
    """Rooms whose timelines are recorded; empty means every joined room."""

    room_ids: frozenset[str] = frozenset()

    @classmethod
    def parse(cls, value: Iterable[str] | str | None) -> RoomAllowlist:
        """Build from a list or a comma-separated string, dropping blanks."""
        if value is None:
            return cls()
        candidates = value.split(",") if isinstance(value, str) else value
        return cls(
            frozenset(
                str(room_id).strip()
                for room_id in candidates
                if room_id and str(room_id).strip()
            )
        )

    @classmethod
    def from_settings(cls, settings: Any | None) -> RoomAllowlist:
        if settings is None:
            return cls()
        return cls.parse(getattr(settings, "MATRIX_ROOMS", None))

    def allows(self, room_id: str) -> bool:
        return bool(room_id) and (not self.room_ids or room_id in self.room_ids)

    def __bool__(self) -> bool:
        return bool(self.room_ids)
