"""Tests for provider login: provider selection, token verification and
account resolution/provisioning."""

import httpx
import pytest

from teachgram.service.errors import (
    InvalidCredentials,
    InvalidProviderToken,
    RoleNotConfigured,
    UnsupportedProvider,
)
from teachgram.service.oauth import GoogleIdTokenVerifier, OAuthBridge, OAuthIdentity
from teachgram.storage.memory import MemoryStore
from teachgram.storage.models import Account


class TestProviderSelection:
    def test_google_case_insensitive(self, oauth):
        assert oauth.get_provider("google").name == "google"
        assert oauth.get_provider("GOOGLE").name == "google"
        assert oauth.get_provider("Google").name == "google"

    @pytest.mark.parametrize("name", ["github", "facebook", "", "goog"])
    def test_unsupported(self, oauth, name):
        with pytest.raises(UnsupportedProvider):
            oauth.get_provider(name)

    async def test_unsupported_login(self, auth_service):
        with pytest.raises(UnsupportedProvider):
            await auth_service.login_with_provider("github", "whatever")


class TestGoogleVerifier:
    async def test_valid_token(self, google):
        google.add("tok", email="a@x.com", name="A", picture="http://p", sub="123")
        verifier = GoogleIdTokenVerifier(transport=google.transport())

        identity = await verifier.verify("tok")

        assert identity == OAuthIdentity(
            provider="google", email="a@x.com", name="A", picture="http://p", subject="123"
        )
        request = google.requests[0]
        assert request.url.host == "oauth2.googleapis.com"
        assert request.url.path == "/tokeninfo"
        assert request.url.params["id_token"] == "tok"

    async def test_non_200_rejected(self, google):
        verifier = GoogleIdTokenVerifier(transport=google.transport())
        with pytest.raises(InvalidProviderToken):
            await verifier.verify("unknown")

    async def test_missing_email_rejected(self, google):
        google.add("tok", name="No Email")
        verifier = GoogleIdTokenVerifier(transport=google.transport())
        with pytest.raises(InvalidProviderToken):
            await verifier.verify("tok")

    async def test_non_json_rejected(self):
        transport = httpx.MockTransport(lambda request: httpx.Response(200, text="<html>"))
        verifier = GoogleIdTokenVerifier(transport=transport)
        with pytest.raises(InvalidProviderToken):
            await verifier.verify("tok")

    async def test_transport_error_rejected(self):
        def _boom(request):
            raise httpx.ConnectError("unreachable", request=request)

        verifier = GoogleIdTokenVerifier(transport=httpx.MockTransport(_boom))
        with pytest.raises(InvalidProviderToken):
            await verifier.verify("tok")

    async def test_audience_enforced_when_configured(self, google):
        google.add("tok", email="a@x.com", aud="someone-else")
        verifier = GoogleIdTokenVerifier(client_id="my-client", transport=google.transport())
        with pytest.raises(InvalidProviderToken):
            await verifier.verify("tok")

    async def test_audience_match(self, google):
        google.add("tok", email="a@x.com", aud="my-client")
        verifier = GoogleIdTokenVerifier(client_id="my-client", transport=google.transport())
        assert (await verifier.verify("tok")).email == "a@x.com"

    async def test_empty_token_not_sent(self, google):
        verifier = GoogleIdTokenVerifier(transport=google.transport())
        with pytest.raises(InvalidProviderToken):
            await verifier.verify("")
        assert google.requests == []


class TestProvisioning:
    async def test_first_login_provisions_account(self, auth_service, google):
        google.add("tok", email="a@x.com", name="Alice", picture="http://pic")

        session = await auth_service.login_with_provider("google", "tok")

        account = auth_service.store.find_by_email("a@x.com")
        assert account.username == "a"
        assert account.name == "Alice"
        assert account.profile_link == "http://pic"
        assert account.roles == {"ROLE_USER"}
        assert session.user_id == account.id
        assert session.user_name == "a"
        assert session.expires_in_seconds == 3600
        assert auth_service.tokens.validate(session.token, "a")

    async def test_second_login_reuses_account(self, auth_service, google):
        google.add("tok", email="a@x.com", name="Alice")

        first = await auth_service.login_with_provider("google", "tok")
        second = await auth_service.login_with_provider("google", "tok")

        assert first.user_id == second.user_id
        assert len(auth_service.store.list_accounts()) == 1

    async def test_existing_account_not_overwritten(self, auth_service, google, store, hasher):
        existing = store.save(
            Account.new(
                username="alice",
                email="a@x.com",
                name="Alice Original",
                password_hash=hasher.hash("pw-123456"),
                roles={"ROLE_USER"},
            )
        )
        google.add("tok", email="a@x.com", name="Changed Name", picture="http://new")

        session = await auth_service.login_with_provider("google", "tok")

        assert session.user_id == existing.id
        assert session.user_name == "alice"
        stored = store.find_by_id(existing.id)
        assert stored.name == "Alice Original"
        assert stored.profile_link is None

    async def test_username_collision_gets_suffix(self, auth_service, google, store, hasher):
        for username, email in (("a", "a@other.com"), ("a1", "a1@other.com")):
            store.save(
                Account.new(
                    username=username,
                    email=email,
                    name=username,
                    password_hash=hasher.hash("pw-123456"),
                    roles={"ROLE_USER"},
                )
            )
        google.add("tok", email="a@x.com")

        session = await auth_service.login_with_provider("google", "tok")

        assert session.user_name == "a2"
        assert store.find_by_email("a@x.com").name == "a2"

    async def test_provisioned_account_has_no_known_password(self, auth_service, google):
        google.add("tok", email="a@x.com")
        await auth_service.login_with_provider("google", "tok")

        for guess in ("", "a", "a@x.com", "tok"):
            with pytest.raises(InvalidCredentials):
                await auth_service.login("a", guess)

    async def test_missing_default_role(self, hasher, google):
        bare = MemoryStore(roles=())
        bridge = OAuthBridge(
            bare, hasher, verifiers={"google": GoogleIdTokenVerifier(transport=google.transport())}
        )
        google.add("tok", email="a@x.com")

        with pytest.raises(RoleNotConfigured):
            await bridge.login_with_provider("google", "tok")
        assert bare.list_accounts() == []

    async def test_invalid_token_creates_nothing(self, auth_service):
        with pytest.raises(InvalidProviderToken):
            await auth_service.login_with_provider("google", "bogus")
        assert auth_service.store.list_accounts() == []

    async def test_provider_login_does_not_touch_lockout(self, auth_service, google):
        google.add("tok", email="a@x.com")
        await auth_service.login_with_provider("google", "tok")
        for _ in range(5):
            with pytest.raises(InvalidCredentials):
                await auth_service.login("a", "wrong")

        await auth_service.login_with_provider("google", "tok")

        assert auth_service.store.find_by_username("a").locked is True
