# session_sync.py
"""Session synchronizer.

Turns raw identity changes into one resolved session event (a
``UserProfile`` or ``None``) and broadcasts it to subscribers.

Delivery is at most once per identity change. Every change takes a sequence
number; a resolution whose number has been superseded by the time its store
call returns is dropped, so a slow fetch for an old identity can never
overwrite a newer "signed out" or "different user" event.
"""
from __future__ import annotations  # postpone annotation evaluation

import asyncio
import itertools
import logging
from typing import Callable, Optional

from identity import Identity, IdentityProvider
from plans import Plan
from stores import ProfileStore, UserProfile

logger = logging.getLogger(__name__)

SessionEvent = Optional[UserProfile]
SessionHandler = Callable[[SessionEvent], None]


class SessionSynchronizer:
    def __init__(self, identity: IdentityProvider, profiles: ProfileStore):
        self._identity = identity
        self._profiles = profiles
        self._handlers: dict[int, SessionHandler] = {}
        self._tokens = itertools.count()
        self._tasks: set[asyncio.Task] = set()
        self._seq = 0
        self._inflight: Optional[int] = None
        self._resolved = False
        self._current: SessionEvent = None
        self._detach: Optional[Callable[[], None]] = None

    @property
    def current(self) -> SessionEvent:
        """Last emitted session event (``None`` before the first emission)."""
        return self._current

    def subscribe(self, handler: SessionHandler) -> Callable[[], None]:
        """Register ``handler``; it is called asynchronously with the current state.

        The first subscriber attaches the shared provider listener, whose
        initial delivery resolves the session for everyone. Later subscribers
        get the last resolved value on the next loop tick, or the in-flight
        resolution's result if one is pending.
        """
        token = next(self._tokens)
        self._handlers[token] = handler
        if self._detach is None:
            self._detach = self._identity.on_change(self._on_identity_change)
        elif self._resolved and self._inflight != self._seq:
            asyncio.get_running_loop().call_soon(self._deliver_initial, token, self._seq)

        def unsubscribe():
            self._handlers.pop(token, None)

        return unsubscribe

    def close(self) -> None:
        """Detach from the provider and drop all subscribers."""
        if self._detach is not None:
            self._detach()
            self._detach = None
        self._handlers.clear()
        # anything still in flight is now stale
        self._seq += 1

    async def wait_idle(self) -> None:
        """Wait until scheduled deliveries and in-flight resolutions have finished."""
        await asyncio.sleep(0)
        while self._tasks:
            await asyncio.gather(*list(self._tasks))
            await asyncio.sleep(0)

    def _on_identity_change(self, identity: Optional[Identity]) -> None:
        self._seq += 1
        seq = self._seq
        if identity is None:
            self._emit(None)
            return
        self._inflight = seq
        task = asyncio.ensure_future(self._resolve(seq, identity))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _resolve(self, seq: int, identity: Identity) -> None:
        try:
            try:
                profile = await self._load_or_create(seq, identity)
            except Exception:
                # fail closed: a half-resolved user is worse than a signed-out one
                logger.exception("Session resolution failed for %s; treating as signed out", identity.id)
                profile = None
            if seq != self._seq:
                logger.debug("Dropping stale session resolution for %s (seq %s < %s)", identity.id, seq, self._seq)
                return
            self._emit(profile)
        finally:
            if self._inflight == seq:
                self._inflight = None

    async def _load_or_create(self, seq: int, identity: Identity) -> SessionEvent:
        profile = await self._profiles.get_by_id(identity.id)
        if profile is not None:
            return profile
        if seq != self._seq:
            return None
        # identity exists upstream but its profile was never written
        profile = UserProfile(id=identity.id, email=identity.email, plan=Plan.FREE)
        logger.info("Creating missing profile for %s", identity.id)
        await self._profiles.upsert(identity.id, profile)
        return profile

    def _emit(self, event: SessionEvent) -> None:
        self._current = event
        self._resolved = True
        for handler in list(self._handlers.values()):
            self._call(handler, event)

    def _deliver_initial(self, token: int, seq: int) -> None:
        handler = self._handlers.get(token)
        # a newer emission already reached (or will reach) this handler
        if handler is None or seq != self._seq:
            return
        self._call(handler, self._current)

    @staticmethod
    def _call(handler: SessionHandler, event: SessionEvent) -> None:
        try:
            handler(event)
        except Exception:
            logger.exception("Session subscriber failed")
