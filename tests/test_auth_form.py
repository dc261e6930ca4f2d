from unittest.mock import AsyncMock, MagicMock

import pytest

from auth_form import GENERIC_ERROR, MISSING_FIELDS, AuthForm, AuthMode, error_message
from identity import (
    CREDENTIAL_NOT_FOUND,
    EMAIL_IN_USE,
    INVALID_EMAIL,
    WEAK_PASSWORD,
    WRONG_CREDENTIAL,
    IdentityError,
)
from session_sync import SessionSynchronizer
from stores import MemoryProfileStore


def _mock_provider():
    provider = MagicMock()
    provider.sign_in = AsyncMock()
    provider.sign_up = AsyncMock()
    return provider


class TestErrorMessage:
    @pytest.mark.parametrize("code", [CREDENTIAL_NOT_FOUND, WRONG_CREDENTIAL])
    def test_bad_credentials_share_one_message(self, code):
        assert error_message(code, "raw provider text") == "Invalid email or password."

    def test_email_in_use(self):
        assert error_message(EMAIL_IN_USE) == "An account with this email already exists."

    def test_weak_password(self):
        assert error_message(WEAK_PASSWORD) == "Password should be at least 6 characters."

    def test_unknown_code_shows_provider_message(self):
        assert error_message(INVALID_EMAIL, "The email address is badly formatted.") == "The email address is badly formatted."

    def test_unknown_code_without_message(self):
        assert error_message("network-down") == GENERIC_ERROR
        assert error_message(None) == GENERIC_ERROR


class TestModes:
    def test_login_is_default(self):
        form = AuthForm(_mock_provider())
        assert form.mode is AuthMode.LOGIN
        assert form.title == "Welcome Back"
        assert form.submit_label == "Log In"
        assert form.toggle_prompt == "Don't have an account?"

    def test_toggle_switches_copy_and_clears_fields(self):
        form = AuthForm(_mock_provider())
        form.email = "a@x.com"
        form.password = "secret1"
        form.error = "Invalid email or password."

        form.toggle_mode()

        assert form.mode is AuthMode.SIGNUP
        assert form.title == "Create Your Account"
        assert form.submit_label == "Sign Up"
        assert form.toggle_prompt == "Already have an account?"
        assert (form.email, form.password, form.error) == ("", "", None)

        form.toggle_mode()
        assert form.mode is AuthMode.LOGIN


class TestSubmit:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("email,password", [("", "secret1"), ("a@x.com", ""), ("", "")])
    async def test_missing_fields_make_no_call(self, email, password):
        provider = _mock_provider()
        form = AuthForm(provider)
        form.email, form.password = email, password

        assert await form.submit() is False
        assert form.error == MISSING_FIELDS
        provider.sign_in.assert_not_called()
        provider.sign_up.assert_not_called()

    @pytest.mark.asyncio
    async def test_login_calls_sign_in_only(self):
        provider = _mock_provider()
        form = AuthForm(provider)
        form.email, form.password = "a@x.com", "secret1"

        assert await form.submit() is True
        provider.sign_in.assert_awaited_once_with("a@x.com", "secret1")
        provider.sign_up.assert_not_called()
        assert form.error is None
        assert form.is_loading is False

    @pytest.mark.asyncio
    async def test_signup_calls_sign_up_only(self):
        provider = _mock_provider()
        form = AuthForm(provider)
        form.toggle_mode()
        form.email, form.password = "a@x.com", "secret1"

        assert await form.submit() is True
        provider.sign_up.assert_awaited_once_with("a@x.com", "secret1")
        provider.sign_in.assert_not_called()

    @pytest.mark.asyncio
    async def test_provider_error_is_mapped(self):
        provider = _mock_provider()
        provider.sign_up.side_effect = IdentityError(EMAIL_IN_USE, "EMAIL_EXISTS")
        form = AuthForm(provider)
        form.toggle_mode()
        form.email, form.password = "a@x.com", "secret1"

        assert await form.submit() is False
        assert form.error == "An account with this email already exists."
        assert form.is_loading is False

    @pytest.mark.asyncio
    async def test_unexpected_error_shows_generic_message(self):
        provider = _mock_provider()
        provider.sign_in.side_effect = ConnectionError("offline")
        form = AuthForm(provider)
        form.email, form.password = "a@x.com", "secret1"

        assert await form.submit() is False
        assert form.error == GENERIC_ERROR
        assert form.is_loading is False

    @pytest.mark.asyncio
    async def test_loading_flag_is_set_while_submitting(self):
        provider = _mock_provider()
        form = AuthForm(provider)
        seen = []
        provider.sign_in.side_effect = lambda *args: seen.append(form.is_loading)
        form.email, form.password = "a@x.com", "secret1"

        await form.submit()

        assert seen == [True]
        assert form.is_loading is False

    @pytest.mark.asyncio
    async def test_wrong_password_leaves_session_signed_out(self, provider):
        await provider.sign_up("a@x.com", "secret1")
        await provider.sign_out()
        sync = SessionSynchronizer(provider, MemoryProfileStore())
        events = []
        sync.subscribe(events.append)
        await sync.wait_idle()

        form = AuthForm(provider)
        form.email, form.password = "a@x.com", "wrong-password"
        assert await form.submit() is False
        await sync.wait_idle()

        assert form.error == "Invalid email or password."
        assert events == [None]
