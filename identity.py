# identity.py
"""Identity provider client.

Credential sign-up / sign-in / sign-out plus ``on_change``, which reports the
current identity (or ``None``) to every listener whenever it changes. The
base class owns the listener registry and the credential flow; subclasses
only decide where accounts live.
"""
from __future__ import annotations  # postpone annotation evaluation

import asyncio
import itertools
import logging
import re
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, Optional

import bcrypt
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError

from stores import SqlBackend

if TYPE_CHECKING:
    # For editors only; never runs at runtime
    from flask import Flask

logger = logging.getLogger(__name__)

# error vocabulary
CREDENTIAL_NOT_FOUND = "credential-not-found"
WRONG_CREDENTIAL = "wrong-credential"
EMAIL_IN_USE = "email-in-use"
WEAK_PASSWORD = "weak-password"
INVALID_EMAIL = "invalid-email"

MIN_PASSWORD_LENGTH = 6
DEFAULT_BCRYPT_ROUNDS = 12
EMAIL_REGEX = re.compile(r"^[^@]+@[^@]+\.[^@]+$")

IdentityListener = Callable[[Optional["Identity"]], None]


@dataclass(frozen=True)
class Identity:
    id: str
    email: str


@dataclass(frozen=True)
class AccountRecord:
    id: str
    email: str
    password_hash: str


class IdentityError(Exception):
    """Provider rejection, carrying a code from the vocabulary above."""

    def __init__(self, code: str, message: str):
        super().__init__(message)
        self.code = code
        self.message = message

    def __repr__(self):
        return f"IdentityError(code={self.code!r}, message={self.message!r})"


def normalize_email(email: str | None) -> str:
    return (email or "").strip().lower()


def validate_credentials(email: str | None, password: str | None) -> str:
    """Check sign-up input; returns the normalized email."""
    email = normalize_email(email)
    if not email or not EMAIL_REGEX.match(email):
        raise IdentityError(INVALID_EMAIL, "The email address is badly formatted.")
    if not password or len(password) < MIN_PASSWORD_LENGTH:
        raise IdentityError(WEAK_PASSWORD, f"Password should be at least {MIN_PASSWORD_LENGTH} characters.")
    return email


def hash_password(password: str, rounds: int = DEFAULT_BCRYPT_ROUNDS) -> str:
    return bcrypt.hashpw(password.encode('utf-8'), bcrypt.gensalt(rounds=rounds)).decode('utf-8')


def check_password(password: str, hashed: str | None) -> bool:
    if not hashed:
        return False
    return bcrypt.checkpw(password.encode('utf-8'), hashed.encode('utf-8'))


def new_identity_id() -> str:
    return str(uuid.uuid4())


class IdentityProvider(ABC):
    """Listener registry and credential flow shared by every backend."""

    def __init__(self, bcrypt_rounds: int = DEFAULT_BCRYPT_ROUNDS):
        self._rounds = bcrypt_rounds
        self._listeners: dict[int, IdentityListener] = {}
        self._tokens = itertools.count()
        self._current: Optional[Identity] = None

    @property
    def current_identity(self) -> Optional[Identity]:
        return self._current

    def on_change(self, listener: IdentityListener) -> Callable[[], None]:
        """Register ``listener``; it gets the current identity on the next loop tick.

        Must be called with a running event loop. Returns an unsubscribe
        callable that is safe to call more than once.
        """
        token = next(self._tokens)
        self._listeners[token] = listener
        asyncio.get_running_loop().call_soon(self._deliver_initial, token)

        def unsubscribe():
            self._listeners.pop(token, None)

        return unsubscribe

    async def sign_up(self, email: str, password: str) -> Identity:
        email = validate_credentials(email, password)
        if await self._find_account(email) is not None:
            raise IdentityError(EMAIL_IN_USE, "An account with this email already exists.")
        password_hash = await asyncio.to_thread(hash_password, password, self._rounds)
        account = await self._create_account(email, password_hash)
        identity = Identity(id=account.id, email=account.email)
        logger.info("Registered new identity %s", identity.id)
        # a new account is signed in right away
        self._set_current(identity)
        return identity

    async def sign_in(self, email: str, password: str) -> Identity:
        email = normalize_email(email)
        account = await self._find_account(email) if email else None
        if account is None:
            raise IdentityError(CREDENTIAL_NOT_FOUND, "There is no user record corresponding to this identifier.")
        if not await asyncio.to_thread(check_password, password or "", account.password_hash):
            logger.warning("Failed sign-in for identity %s", account.id)
            raise IdentityError(WRONG_CREDENTIAL, "The password is invalid.")
        identity = Identity(id=account.id, email=account.email)
        self._set_current(identity)
        return identity

    async def sign_out(self) -> None:
        self._set_current(None)

    # storage hooks
    @abstractmethod
    async def _find_account(self, email: str) -> Optional[AccountRecord]:
        """Stored account for a normalized ``email``, or ``None``."""

    @abstractmethod
    async def _create_account(self, email: str, password_hash: str) -> AccountRecord:
        """Persist a new account; raise ``IdentityError(email-in-use)`` on a duplicate."""

    def _set_current(self, identity: Optional[Identity]) -> None:
        self._current = identity
        for listener in list(self._listeners.values()):
            self._call(listener, identity)

    def _deliver_initial(self, token: int) -> None:
        listener = self._listeners.get(token)
        if listener is not None:
            self._call(listener, self._current)

    @staticmethod
    def _call(listener: IdentityListener, identity: Optional[Identity]) -> None:
        try:
            listener(identity)
        except Exception:
            logger.exception("Identity listener failed")


class MemoryIdentityProvider(IdentityProvider):
    """Accounts kept in process; used when no database is configured."""

    def __init__(self, bcrypt_rounds: int = DEFAULT_BCRYPT_ROUNDS):
        super().__init__(bcrypt_rounds)
        self._accounts: dict[str, AccountRecord] = {}

    async def _find_account(self, email):
        return self._accounts.get(email)

    async def _create_account(self, email, password_hash):
        # re-check: another sign-up may have landed while we were hashing
        if email in self._accounts:
            raise IdentityError(EMAIL_IN_USE, "An account with this email already exists.")
        account = AccountRecord(id=new_identity_id(), email=email, password_hash=password_hash)
        self._accounts[email] = account
        return account


def _models():
    # late import avoids circular import at module import time
    from app import db, Account
    return db, Account


# Blocking account operations; callers must hold an app context.
def sql_find_account(email: str) -> Optional[AccountRecord]:
    """Account for ``email`` (case-insensitive), or ``None``."""
    _, Account = _models()
    row = Account.query.filter(func.lower(Account.email) == normalize_email(email)).first()
    if row is None:
        return None
    return AccountRecord(id=row.id, email=row.email, password_hash=row.password)


def sql_create_account(email: str, password_hash: str) -> AccountRecord:
    """Insert a new account; raises ``IdentityError(email-in-use)`` on a duplicate."""
    db, Account = _models()
    account = AccountRecord(id=new_identity_id(), email=normalize_email(email), password_hash=password_hash)
    db.session.add(Account(id=account.id, email=account.email, password=password_hash))
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        raise IdentityError(EMAIL_IN_USE, "An account with this email already exists.")
    return account


class SqlIdentityProvider(IdentityProvider):
    """Accounts in the ``accounts`` table."""

    def __init__(self, app: "Flask", bcrypt_rounds: int | None = None):
        super().__init__(bcrypt_rounds or app.config.get("BCRYPT_ROUNDS", DEFAULT_BCRYPT_ROUNDS))
        self._sql = SqlBackend(app)

    async def _find_account(self, email):
        return await self._sql.run(sql_find_account, email)

    async def _create_account(self, email, password_hash):
        return await self._sql.run(sql_create_account, email, password_hash)
