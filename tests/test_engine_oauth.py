"""Unit tests for the session engine helpers, OAuth profile extraction and
request schemas."""

import json
from urllib.parse import parse_qs, urlparse

import pytest
from pydantic import ValidationError

from parcelhub.api.schemas import SignupRequest, VerifyEmailRequest
from parcelhub.service.auth import check_password_strength, project_fields
from parcelhub.service.engine import (
    ACTIVATION_EXPIRED_MESSAGE,
    OTP_MISMATCH_MESSAGE,
    generate_otp,
    normalize_email,
)
from parcelhub.service.errors import AuthenticationError, SessionExpiredError
from parcelhub.service.oauth import OAuthClient, extract_profile
from parcelhub.service.runtime import get_runtime
from parcelhub.service.tokens import ACTIVATION

from conftest import TEST_PASSWORD


class TestNormalizeEmail:
    def test_gmail_dots_and_case_fold(self):
        assert normalize_email("A.B@gmail.com") == normalize_email("ab@gmail.com")
        assert normalize_email("A.B@gmail.com") == "ab@gmail.com"

    def test_other_domains_keep_dots(self):
        assert normalize_email("Ada.Okafor@Example.com") == "ada.okafor@example.com"
        assert normalize_email("a.b@example.com") != normalize_email("ab@example.com")

    def test_surrounding_whitespace_is_ignored(self):
        assert normalize_email("  ada@example.com ") == "ada@example.com"


class TestOtp:
    def test_codes_are_six_digits_in_range(self):
        for _ in range(200):
            code = generate_otp()
            assert len(code) == 6
            assert 100000 <= int(code) <= 999999


class TestActivationTicket:
    def test_correct_code_returns_pending_user(self):
        manager = get_runtime().manager
        ticket, otp = manager.issue_activation({"email": "ada@example.com"}, "203.0.113.7")
        assert manager.verify_activation(ticket, otp) == {"email": "ada@example.com"}

    def test_wrong_code_is_rejected(self):
        manager = get_runtime().manager
        ticket, otp = manager.issue_activation({"email": "ada@example.com"}, "203.0.113.7")
        wrong = "100000" if otp != "100000" else "100001"
        with pytest.raises(AuthenticationError) as exc_info:
            manager.verify_activation(ticket, wrong)
        assert exc_info.value.message == OTP_MISMATCH_MESSAGE

    def test_garbage_ticket_is_expired(self):
        manager = get_runtime().manager
        with pytest.raises(AuthenticationError) as exc_info:
            manager.verify_activation("not.a.ticket", "123456")
        assert exc_info.value.message == ACTIVATION_EXPIRED_MESSAGE

    def test_ticket_does_not_expose_code(self):
        manager = get_runtime().manager
        ticket, _ = manager.issue_activation({"email": "ada@example.com"}, "203.0.113.7")
        claims = manager.signer.decode(ACTIVATION, ticket)
        assert set(claims["encrypted"]) == {"salt", "iv", "data"}
        assert "solid_otp" not in json.dumps(claims)
        assert "ada@example.com" not in json.dumps(claims)


class TestAccessGate:
    async def test_missing_token_is_unauthorized(self):
        with pytest.raises(AuthenticationError) as exc_info:
            await get_runtime().manager.authenticate(None)
        assert not isinstance(exc_info.value, SessionExpiredError)

    async def test_forged_token_clears_cookies(self):
        with pytest.raises(SessionExpiredError) as exc_info:
            await get_runtime().manager.authenticate("a.b.c")
        assert exc_info.value.clear_cookies
        assert exc_info.value.status_code == 401


class TestOAuthProfiles:
    def test_google(self):
        profile = extract_profile(
            "google",
            {
                "email": "ada@gmail.com",
                "email_verified": True,
                "family_name": "Okafor",
                "given_name": "Ada",
                "picture": "https://img.example/ada.png",
                "sub": "1234",
                "locale": "en",
            },
        )
        assert profile.to_dict() == {
            "email": "ada@gmail.com",
            "verified": True,
            "family_name": "Okafor",
            "given_name": "Ada",
            "avatar_url": "https://img.example/ada.png",
        }

    def test_github_splits_display_name(self):
        profile = extract_profile(
            "github", {"email": "ada@example.com", "name": "Okafor Ada", "avatar_url": "a.png"}
        )
        assert profile.family_name == "Okafor"
        assert profile.given_name == "Ada"
        assert profile.verified is True

    def test_discord_avatar_url(self):
        profile = extract_profile(
            "discord",
            {"id": "42", "avatar": "abc", "email": "ada@example.com", "verified": False, "username": "ada"},
        )
        assert profile.avatar_url == "https://cdn.discordapp.com/avatars/42/abc.png"
        assert profile.verified is False
        assert profile.family_name == "ada"

    def test_twitter_nested_data(self):
        profile = extract_profile("twitter", {"data": {"name": "Ada", "email": "ada@example.com"}})
        assert profile.email == "ada@example.com"
        assert profile.given_name is None

    def test_missing_email_or_unknown_provider(self):
        assert extract_profile("google", {"given_name": "Ada"}) is None
        assert extract_profile("linkedin", {"email": "ada@example.com"}) is None

    def test_authorization_url(self, settings):
        settings = settings.model_copy(
            update={"oauth_twitter_client_id": "cid", "oauth_twitter_client_secret": "secret"}
        )
        client = OAuthClient(settings)
        assert client.is_configured("twitter")
        assert not client.is_configured("google")
        url = urlparse(client.authorization_url("twitter", "state-123"))
        params = parse_qs(url.query)
        assert params["state"] == ["state-123"]
        assert params["code_challenge"] == ["state-123"]
        assert params["redirect_uri"][0].endswith("/v1/oauth/twitter/callback")


class TestProfileProjection:
    def test_selected_fields_only(self):
        fields = {"id": "u-1", "given_name": "Ada", "role": "customer", "email": "a@b.c"}
        assert project_fields(fields, "given_name,role") == {"given_name": "Ada", "role": "customer"}

    def test_forbidden_fields_never_projected(self):
        fields = {"id": "u-1", "email": "a@b.c", "normalized_email": "a@b.c", "password": "x"}
        assert project_fields(fields, "email,password,id") == {"id": "u-1"}
        assert project_fields(fields, None) == {"id": "u-1"}


class TestSchemas:
    def _signup(self, **overrides):
        body = {
            "family_name": "okafor",
            "given_name": "Ada",
            "email": "Ada.Okafor@Example.com",
            "password": TEST_PASSWORD,
            "password_confirm": TEST_PASSWORD,
        }
        body.update(overrides)
        return SignupRequest(**body)

    def test_names_are_capitalized_and_email_case_kept(self):
        request = self._signup()
        assert request.family_name == "Okafor"
        assert request.email == "Ada.Okafor@Example.com"

    @pytest.mark.parametrize(
        "overrides",
        [
            {"given_name": "A"},
            {"family_name": "x" * 33},
            {"email": "not-an-email"},
            {"password": "weakpass", "password_confirm": "weakpass"},
            {"password_confirm": "Different#Pass1"},
            {"phone": "call me"},
        ],
    )
    def test_invalid_signup_rejected(self, overrides):
        with pytest.raises(ValidationError):
            self._signup(**overrides)

    def test_password_strength_names_missing_rules(self):
        with pytest.raises(ValueError) as exc_info:
            check_password_strength("lowercase")
        message = str(exc_info.value)
        assert "an uppercase letter" in message
        assert "a digit" in message

    def test_verify_email_requires_values(self):
        with pytest.raises(ValidationError):
            VerifyEmailRequest(otp="", token="t")
