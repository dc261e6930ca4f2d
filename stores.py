# stores.py
"""Profile and dream document stores.

Both stores share one async contract with two backends:

- ``Memory*`` keeps documents in process (demo mode and tests)
- ``Sql*`` persists to the Flask-SQLAlchemy ``users`` / ``dreams`` tables;
  blocking SQLAlchemy work runs in a worker thread inside an app context
"""
from __future__ import annotations  # postpone annotation evaluation

import asyncio
import logging
from dataclasses import dataclass, fields, replace
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Iterable, Optional, Protocol

from dateutil import parser as date_parser

from plans import Plan, parse_plan

if TYPE_CHECKING:
    # For editors only; never runs at runtime
    from flask import Flask

logger = logging.getLogger(__name__)


class NotFoundError(LookupError):
    """Raised when a document addressed by id does not exist."""


# --- datetime helpers ---
# DB rows hold naive UTC; documents hold aware UTC.
def to_utc(dt: datetime | None) -> datetime | None:
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def to_db(dt: datetime | None) -> datetime | None:
    dt = to_utc(dt)
    return dt.replace(tzinfo=None) if dt else None


def iso_utc(dt: datetime | None) -> str | None:
    if not dt:
        return None
    return to_utc(dt).isoformat().replace("+00:00", "Z")


def parse_iso(value: Any) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return to_utc(value)
    return to_utc(date_parser.isoparse(str(value)))


# --- documents ---
@dataclass(frozen=True)
class ChatMessage:
    role: str
    content: str

    def to_dict(self) -> dict:
        return {"role": self.role, "content": self.content}

    @classmethod
    def from_dict(cls, data: dict) -> "ChatMessage":
        return cls(role=str(data["role"]), content=str(data.get("content") or ""))


def _chat_tuple(value: Any) -> tuple[ChatMessage, ...] | None:
    if value is None:
        return None
    return tuple(m if isinstance(m, ChatMessage) else ChatMessage.from_dict(m) for m in value)


@dataclass(frozen=True)
class UserProfile:
    id: str
    email: str
    plan: Plan = Plan.FREE
    trial_end_date: Optional[datetime] = None
    billing_customer_id: Optional[str] = None

    def __post_init__(self):
        object.__setattr__(self, "plan", parse_plan(self.plan) if not isinstance(self.plan, Plan) else self.plan)
        object.__setattr__(self, "trial_end_date", to_utc(self.trial_end_date))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "email": self.email,
            "plan": self.plan.value,
            "trialEndDate": iso_utc(self.trial_end_date),
            "billingCustomerId": self.billing_customer_id,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "UserProfile":
        return cls(
            id=data["id"],
            email=data["email"],
            plan=parse_plan(data.get("plan")),
            trial_end_date=parse_iso(data.get("trialEndDate")),
            billing_customer_id=data.get("billingCustomerId"),
        )


@dataclass(frozen=True)
class Dream:
    id: str
    timestamp: datetime
    content: str
    chat_history: Optional[tuple[ChatMessage, ...]] = None

    def __post_init__(self):
        timestamp = parse_iso(self.timestamp) if isinstance(self.timestamp, str) else self.timestamp
        if not isinstance(timestamp, datetime):
            raise ValueError(f"Dream timestamp must be a datetime, got {self.timestamp!r}")
        object.__setattr__(self, "timestamp", to_utc(timestamp))
        object.__setattr__(self, "chat_history", _chat_tuple(self.chat_history))

    def apply(self, patch: dict) -> "Dream":
        """Return a copy with ``patch`` merged in. ``id`` cannot be patched."""
        allowed = {f.name for f in fields(self)} - {"id"}
        unknown = set(patch) - allowed
        if unknown:
            raise ValueError(f"Unknown dream fields: {sorted(unknown)}")
        return replace(self, **patch)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "timestamp": iso_utc(self.timestamp),
            "content": self.content,
            "chatHistory": [m.to_dict() for m in self.chat_history] if self.chat_history is not None else None,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Dream":
        timestamp = parse_iso(data.get("timestamp"))
        if timestamp is None:
            raise ValueError("Dream timestamp is required")
        return cls(
            id=str(data["id"]),
            timestamp=timestamp,
            content=data.get("content") or "",
            chat_history=data.get("chatHistory"),
        )


def check_owner(user_id: str, profile: UserProfile) -> None:
    if profile.id != user_id:
        raise ValueError(f"Profile id {profile.id!r} does not match {user_id!r}")


def check_batch(dreams: Iterable[Dream]) -> list[Dream]:
    batch = list(dreams)
    ids = [d.id for d in batch]
    if len(ids) != len(set(ids)):
        raise ValueError("Duplicate dream ids in batch")
    return batch


def _newest_first(dreams: Iterable[Dream]) -> list[Dream]:
    return sorted(dreams, key=lambda d: d.timestamp, reverse=True)


# --- contracts ---
class ProfileStore(Protocol):
    async def get_by_id(self, user_id: str) -> Optional[UserProfile]:
        ...

    async def upsert(self, user_id: str, profile: UserProfile) -> None:
        ...


class DreamStore(Protocol):
    async def get_by_id(self, user_id: str, dream_id: str) -> Optional[Dream]:
        ...

    async def upsert(self, user_id: str, dream: Dream) -> None:
        ...

    async def list_for_user(self, user_id: str) -> list[Dream]:
        """All dreams for ``user_id``, newest first."""
        ...

    async def update_partial(self, user_id: str, dream_id: str, patch: dict) -> None:
        """Merge ``patch`` into an existing dream.

        Raises:
            NotFoundError: if the dream does not exist.
            ValueError: if ``patch`` names a field a dream does not have or
                carries an invalid timestamp.
        """
        ...

    async def replace_all(self, user_id: str, dreams: Iterable[Dream]) -> None:
        """Replace every dream of ``user_id``; all-or-nothing."""
        ...


# --- in-memory backend ---
class MemoryProfileStore:
    def __init__(self):
        self._profiles: dict[str, UserProfile] = {}

    async def get_by_id(self, user_id: str) -> Optional[UserProfile]:
        return self._profiles.get(user_id)

    async def upsert(self, user_id: str, profile: UserProfile) -> None:
        check_owner(user_id, profile)
        self._profiles[user_id] = profile


class MemoryDreamStore:
    def __init__(self):
        self._dreams: dict[str, dict[str, Dream]] = {}

    async def get_by_id(self, user_id: str, dream_id: str) -> Optional[Dream]:
        return self._dreams.get(user_id, {}).get(dream_id)

    async def upsert(self, user_id: str, dream: Dream) -> None:
        self._dreams.setdefault(user_id, {})[dream.id] = dream

    async def list_for_user(self, user_id: str) -> list[Dream]:
        return _newest_first(self._dreams.get(user_id, {}).values())

    async def update_partial(self, user_id: str, dream_id: str, patch: dict) -> None:
        existing = self._dreams.get(user_id, {}).get(dream_id)
        if existing is None:
            raise NotFoundError(f"Dream {dream_id} not found for user {user_id}")
        self._dreams[user_id][dream_id] = existing.apply(patch)

    async def replace_all(self, user_id: str, dreams: Iterable[Dream]) -> None:
        batch = check_batch(dreams)
        # single assignment: readers see the old dict or the new one
        self._dreams[user_id] = {d.id: d for d in batch}


# --- SQL backend ---
def _models():
    # late import avoids circular import at module import time
    from app import db, User, DreamEntry
    return db, User, DreamEntry


def _commit(db) -> None:
    try:
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise


def profile_from_row(row) -> UserProfile:
    return UserProfile(
        id=row.id,
        email=row.email,
        plan=parse_plan(row.plan),
        trial_end_date=to_utc(row.trial_end_date),
        billing_customer_id=row.stripe_customer_id,
    )


def fill_profile_row(row, profile: UserProfile) -> None:
    row.email = profile.email
    row.plan = profile.plan.value
    row.trial_end_date = to_db(profile.trial_end_date)
    row.stripe_customer_id = profile.billing_customer_id


def dream_from_row(row) -> Dream:
    return Dream(
        id=row.id,
        timestamp=to_utc(row.timestamp),
        content=row.content or "",
        chat_history=row.chat_history,
    )


def fill_dream_row(row, dream: Dream) -> None:
    row.timestamp = to_db(dream.timestamp)
    row.content = dream.content
    row.chat_history = [m.to_dict() for m in dream.chat_history] if dream.chat_history is not None else None


# Blocking operations; callers must hold an app context.
def sql_get_profile(user_id: str) -> Optional[UserProfile]:
    db, User, _ = _models()
    row = db.session.get(User, user_id)
    return profile_from_row(row) if row else None


def sql_upsert_profile(user_id: str, profile: UserProfile) -> None:
    check_owner(user_id, profile)
    db, User, _ = _models()
    row = db.session.get(User, user_id)
    if row is None:
        row = User(id=user_id)
        db.session.add(row)
    fill_profile_row(row, profile)
    _commit(db)


def _dream_row(user_id: str, dream_id: str):
    _, _, DreamEntry = _models()
    return DreamEntry.query.filter_by(user_id=user_id, id=dream_id).first()


def sql_get_dream(user_id: str, dream_id: str) -> Optional[Dream]:
    row = _dream_row(user_id, dream_id)
    return dream_from_row(row) if row else None


def sql_upsert_dream(user_id: str, dream: Dream) -> None:
    db, _, DreamEntry = _models()
    row = _dream_row(user_id, dream.id)
    if row is None:
        row = DreamEntry(user_id=user_id, id=dream.id)
        db.session.add(row)
    fill_dream_row(row, dream)
    _commit(db)


def sql_list_dreams(user_id: str) -> list[Dream]:
    _, _, DreamEntry = _models()
    rows = DreamEntry.query.filter_by(user_id=user_id).order_by(DreamEntry.timestamp.desc()).all()
    return [dream_from_row(r) for r in rows]


def sql_update_dream(user_id: str, dream_id: str, patch: dict) -> Dream:
    db, _, _ = _models()
    row = _dream_row(user_id, dream_id)
    if row is None:
        raise NotFoundError(f"Dream {dream_id} not found for user {user_id}")
    updated = dream_from_row(row).apply(patch)
    fill_dream_row(row, updated)
    _commit(db)
    return updated


def sql_replace_dreams(user_id: str, dreams: Iterable[Dream]) -> None:
    """Delete and re-insert the user's dreams in one transaction."""
    batch = check_batch(dreams)
    db, _, DreamEntry = _models()
    try:
        DreamEntry.query.filter_by(user_id=user_id).delete()
        for dream in batch:
            row = DreamEntry(user_id=user_id, id=dream.id)
            fill_dream_row(row, dream)
            db.session.add(row)
        db.session.commit()
    except Exception:
        db.session.rollback()
        logger.error("Bulk replace failed for user %s; rolled back", user_id, exc_info=True)
        raise


class SqlBackend:
    """Runs blocking SQLAlchemy work off the event loop, inside an app context."""

    def __init__(self, app: "Flask"):
        self._app = app

    async def run(self, fn, *args):
        return await asyncio.to_thread(self._in_context, fn, *args)

    def _in_context(self, fn, *args):
        with self._app.app_context():
            return fn(*args)


class SqlProfileStore(SqlBackend):
    async def get_by_id(self, user_id: str) -> Optional[UserProfile]:
        return await self.run(sql_get_profile, user_id)

    async def upsert(self, user_id: str, profile: UserProfile) -> None:
        check_owner(user_id, profile)
        await self.run(sql_upsert_profile, user_id, profile)


class SqlDreamStore(SqlBackend):
    async def get_by_id(self, user_id: str, dream_id: str) -> Optional[Dream]:
        return await self.run(sql_get_dream, user_id, dream_id)

    async def upsert(self, user_id: str, dream: Dream) -> None:
        await self.run(sql_upsert_dream, user_id, dream)

    async def list_for_user(self, user_id: str) -> list[Dream]:
        return await self.run(sql_list_dreams, user_id)

    async def update_partial(self, user_id: str, dream_id: str, patch: dict) -> None:
        await self.run(sql_update_dream, user_id, dream_id, patch)

    async def replace_all(self, user_id: str, dreams: Iterable[Dream]) -> None:
        await self.run(sql_replace_dreams, user_id, check_batch(dreams))
