#!/usr/bin/env python3
"""Dream Weaver terminal client.

Usage:
  dreamweaver --memory                 # in-process backend, nothing persisted
  dreamweaver                          # database from config.py / DREAMWEAVER_* env
  dreamweaver --database-url sqlite:///dreams.db

Shows the auth screen while signed out and a small journal while signed in.
Which screen is shown is decided only by session events.
"""
import argparse
import asyncio
import getpass
import logging
import os
import sys
import uuid
from datetime import datetime, timezone

from auth_form import AuthForm
from identity import MemoryIdentityProvider, SqlIdentityProvider
from plans import is_pro
from session_sync import SessionSynchronizer
from stores import (
    ChatMessage,
    Dream,
    MemoryDreamStore,
    MemoryProfileStore,
    NotFoundError,
    SqlDreamStore,
    SqlProfileStore,
)

LOG = logging.getLogger("dreamweaver.cli")

QUIT = {"quit", "q", "exit"}


async def _ainput(text):
    return await asyncio.to_thread(input, text)


async def _agetpass(text):
    return await asyncio.to_thread(getpass.getpass, text)


def build_backends(args):
    """Return ``(identity, profiles, dreams)`` for the selected backend."""
    if args.memory:
        return MemoryIdentityProvider(), MemoryProfileStore(), MemoryDreamStore()

    if args.database_url:
        os.environ["DREAMWEAVER_SQLALCHEMY_DATABASE_URI"] = args.database_url
    # app reads its config at import time
    from app import app, db
    with app.app_context():
        db.create_all()
    return SqlIdentityProvider(app), SqlProfileStore(app), SqlDreamStore(app)


class JournalClient:
    def __init__(self, identity, profiles, dreams, prompt=None, secret_prompt=None, out=None):
        self.identity = identity
        self.dreams = dreams
        self.form = AuthForm(identity)
        self.session = SessionSynchronizer(identity, profiles)
        self.user = None
        self._prompt = prompt or _ainput
        self._secret_prompt = secret_prompt or prompt or _agetpass
        self._out = out or sys.stdout

    def say(self, text=""):
        print(text, file=self._out)

    def _on_session(self, profile):
        self.user = profile
        if profile is not None:
            self.say(f"Signed in as {profile.email} ({profile.plan.value} plan)")
        else:
            self.say("Signed out.")

    async def run(self):
        unsubscribe = self.session.subscribe(self._on_session)
        try:
            await self.session.wait_idle()
            while True:
                screen = self.auth_screen if self.user is None else self.journal_screen
                try:
                    if not await screen():
                        break
                except EOFError:
                    break
        finally:
            unsubscribe()
            self.session.close()

    async def auth_screen(self):
        form = self.form
        self.say(f"\n== {form.title} ==")
        if form.error:
            self.say(f"! {form.error}")
        cmd = (await self._prompt(f"[enter] {form.submit_label} | 'toggle' ({form.toggle_prompt}) | 'quit' > ")).strip().lower()
        if cmd in QUIT:
            return False
        if cmd == "toggle":
            form.toggle_mode()
            return True

        form.email = (await self._prompt("Email: ")).strip()
        form.password = await self._secret_prompt("Password: ")
        if await form.submit():
            await self.session.wait_idle()
        return True

    async def journal_screen(self):
        user = self.user
        parts = (await self._prompt("[list | add | chat <id> | logout | quit] > ")).strip().split(maxsplit=1)
        cmd = parts[0].lower() if parts else ""
        arg = parts[1] if len(parts) > 1 else ""

        if cmd in QUIT:
            return False
        if cmd == "logout":
            await self.identity.sign_out()
            await self.session.wait_idle()
        elif cmd == "list":
            await self.list_dreams(user)
        elif cmd == "add":
            content = (await self._prompt("Describe your dream: ")).strip()
            if content:
                dream = Dream(id=uuid.uuid4().hex, timestamp=datetime.now(timezone.utc), content=content)
                await self.dreams.upsert(user.id, dream)
                self.say(f"Saved dream {dream.id[:8]}")
        elif cmd == "chat":
            await self.chat(user, arg)
        elif cmd:
            self.say(f"Unknown command: {cmd}")
        return True

    async def list_dreams(self, user):
        dreams = await self.dreams.list_for_user(user.id)
        if not dreams:
            self.say("No dreams yet.")
        for d in dreams:
            first_line = (d.content.splitlines() or [""])[0]
            self.say(f"{d.id[:8]}  {d.timestamp:%Y-%m-%d %H:%M}  {first_line[:60]}")

    async def chat(self, user, prefix):
        if not is_pro(user):
            self.say("Dream chat is a Pro feature.")
            return
        matches = [d for d in await self.dreams.list_for_user(user.id) if prefix and d.id.startswith(prefix)]
        if len(matches) != 1:
            self.say("No single dream matches that id.")
            return
        dream = matches[0]
        message = (await self._prompt("You: ")).strip()
        if not message:
            return
        history = tuple(dream.chat_history or ()) + (ChatMessage(role="user", content=message),)
        try:
            await self.dreams.update_partial(user.id, dream.id, {"chat_history": history})
        except NotFoundError:
            self.say("That dream no longer exists.")


def main(argv=None):
    parser = argparse.ArgumentParser(description="Dream Weaver terminal client")
    parser.add_argument("--memory", action="store_true", help="In-process backend; nothing is persisted")
    parser.add_argument("--database-url", help="SQLAlchemy URL (overrides DREAMWEAVER_SQLALCHEMY_DATABASE_URI)")
    parser.add_argument("--verbose", "-v", action="store_true")
    args = parser.parse_args(argv)

    if args.memory and args.database_url:
        raise SystemExit("Use either --memory or --database-url, not both.")

    level = logging.DEBUG if args.verbose else logging.WARNING
    logging.basicConfig(level=level)
    identity, profiles, dreams = build_backends(args)
    # importing app reconfigures the root logger
    logging.getLogger().setLevel(level)

    try:
        asyncio.run(JournalClient(identity, profiles, dreams).run())
    except KeyboardInterrupt:
        LOG.debug("Interrupted")
    return 0


if __name__ == "__main__":
    sys.exit(main())
