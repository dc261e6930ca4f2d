# auth_form.py
"""Sign-in / sign-up form model.

Holds what the auth screen renders (mode, fields, loading flag, error) and
submits to the identity provider. It never decides the resulting session;
a ``SessionSynchronizer`` subscribed to the same provider does that.
"""
from __future__ import annotations  # postpone annotation evaluation

import logging
from enum import Enum
from typing import Optional

from identity import (
    CREDENTIAL_NOT_FOUND,
    EMAIL_IN_USE,
    WEAK_PASSWORD,
    WRONG_CREDENTIAL,
    IdentityError,
    IdentityProvider,
)

logger = logging.getLogger(__name__)

GENERIC_ERROR = "An unexpected error occurred."
MISSING_FIELDS = "Please enter both email and password."

ERROR_MESSAGES = {
    CREDENTIAL_NOT_FOUND: "Invalid email or password.",
    WRONG_CREDENTIAL: "Invalid email or password.",
    EMAIL_IN_USE: "An account with this email already exists.",
    WEAK_PASSWORD: "Password should be at least 6 characters.",
}


def error_message(code: Optional[str], message: Optional[str] = None) -> str:
    """User-facing text for a provider error code.

    Known codes map to fixed messages; anything else shows the provider's
    own message, or the generic one when there is none.
    """
    if code in ERROR_MESSAGES:
        return ERROR_MESSAGES[code]
    return message or GENERIC_ERROR


class AuthMode(str, Enum):
    LOGIN = "login"
    SIGNUP = "signup"


class AuthForm:
    def __init__(self, identity: IdentityProvider):
        self._identity = identity
        self.mode = AuthMode.LOGIN
        self.email = ""
        self.password = ""
        self.is_loading = False
        self.error: Optional[str] = None

    @property
    def title(self) -> str:
        return "Welcome Back" if self.mode is AuthMode.LOGIN else "Create Your Account"

    @property
    def submit_label(self) -> str:
        return "Log In" if self.mode is AuthMode.LOGIN else "Sign Up"

    @property
    def toggle_prompt(self) -> str:
        return "Don't have an account?" if self.mode is AuthMode.LOGIN else "Already have an account?"

    def toggle_mode(self) -> None:
        self.mode = AuthMode.SIGNUP if self.mode is AuthMode.LOGIN else AuthMode.LOGIN
        self.email = ""
        self.password = ""
        self.error = None

    async def submit(self) -> bool:
        """Run sign-in or sign-up for the current mode. Returns True on success."""
        if not self.email or not self.password:
            self.error = MISSING_FIELDS
            return False

        self.is_loading = True
        self.error = None
        try:
            if self.mode is AuthMode.LOGIN:
                await self._identity.sign_in(self.email, self.password)
            else:
                await self._identity.sign_up(self.email, self.password)
            return True
        except IdentityError as e:
            self.error = error_message(e.code, e.message)
            return False
        except Exception:
            logger.exception("Unexpected %s failure", self.mode.value)
            self.error = GENERIC_ERROR
            return False
        finally:
            self.is_loading = False
