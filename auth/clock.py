"""
auth/clock.py -- Injectable time source and the ISO 8601 format used in storage.

Every component takes a `clock` callable (default utcnow) so tests can move
time forward past a token expiry or lockout window without sleeping.

Timestamps are stored as fixed-width UTC ISO strings (always with
microseconds and a +00:00 offset) so SQL string comparison orders them
chronologically.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Callable

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(moment: datetime) -> str:
    return moment.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_iso(value: str) -> datetime:
    moment = datetime.fromisoformat(value)
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment
