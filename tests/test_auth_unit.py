"""Unit tests for the authenticator and login orchestration.

Tests for:
- Password hashing and verification
- Identifier resolution (username, email, phone)
- Lockout after repeated failures and its reset
- Signup duplicate detection and default role assignment
- Bearer token authentication
"""

import pytest

from teachgram.service.auth import Authenticator, SignupData, resolve_identifier
from teachgram.service.errors import (
    AccountLocked,
    DuplicateField,
    InvalidCredentials,
    NotFoundError,
    RoleNotConfigured,
    TokenInvalid,
)
from teachgram.storage.memory import MemoryStore
from teachgram.storage.models import MAX_FAILED_LOGIN_ATTEMPTS, Account

PASSWORD = "s3cret-pass"


@pytest.fixture
def account(store, hasher):
    return store.save(
        Account.new(
            username="joe",
            email="joe@example.com",
            name="Joe Bloggs",
            password_hash=hasher.hash(PASSWORD),
            phone="+15551234567",
            roles={"ROLE_USER"},
        )
    )


def _signup(**overrides):
    data = {
        "username": "joe",
        "email": "joe@example.com",
        "name": "Joe Bloggs",
        "password": PASSWORD,
    }
    data.update(overrides)
    return SignupData(**data)


class TestPasswordHashing:
    def test_hash_is_argon2id(self, hasher):
        digest = hasher.hash(PASSWORD)
        assert digest.startswith("$argon2id$")
        assert PASSWORD not in digest

    def test_verify(self, hasher):
        digest = hasher.hash(PASSWORD)
        assert hasher.verify(digest, PASSWORD) is True
        assert hasher.verify(digest, "wrong") is False

    def test_verify_malformed_hash(self, hasher):
        assert hasher.verify("not-a-hash", PASSWORD) is False

    def test_unusable_hash_matches_nothing_obvious(self, hasher):
        digest = hasher.unusable()
        assert hasher.verify(digest, "") is False
        assert hasher.verify(digest, PASSWORD) is False


class TestAuthenticator:
    @pytest.mark.parametrize("identifier", ["joe", "joe@example.com", "JOE@example.com", "+15551234567"])
    def test_authenticate_by_any_identifier(self, store, hasher, account, identifier):
        principal = Authenticator(store, hasher).authenticate(identifier, PASSWORD)

        assert principal.user_id == account.id
        assert principal.username == "joe"
        assert principal.display_name == "Joe Bloggs"
        assert principal.roles == frozenset({"ROLE_USER"})

    def test_unknown_identifier(self, store, hasher, account):
        with pytest.raises(InvalidCredentials):
            Authenticator(store, hasher).authenticate("nobody", PASSWORD)

    def test_wrong_password(self, store, hasher, account):
        with pytest.raises(InvalidCredentials) as excinfo:
            Authenticator(store, hasher).authenticate("joe", "wrong")
        assert not isinstance(excinfo.value, AccountLocked)

    def test_locked_account_refused_with_correct_password(self, store, hasher, account):
        account.locked = True
        store.save(account)
        with pytest.raises(AccountLocked):
            Authenticator(store, hasher).authenticate("joe", PASSWORD)

    def test_locked_and_invalid_share_message(self):
        assert AccountLocked().message == InvalidCredentials().message
        assert AccountLocked().status_code == InvalidCredentials().status_code == 401

    def test_authenticate_has_no_side_effects(self, store, hasher, account):
        with pytest.raises(InvalidCredentials):
            Authenticator(store, hasher).authenticate("joe", "wrong")
        assert store.find_by_username("joe").failed_login_attempts == 0

    def test_resolution_prefers_username(self, store, hasher, account):
        # a second account whose username equals the first one's email
        store.save(
            Account.new(
                username="joe@example.com",
                email="other@example.com",
                name="Other",
                password_hash=hasher.hash("other-pass"),
                roles={"ROLE_USER"},
            )
        )
        assert resolve_identifier(store, "joe@example.com").email == "other@example.com"


class TestLockout:
    async def test_five_failures_lock_the_account(self, auth_service, account):
        for _ in range(MAX_FAILED_LOGIN_ATTEMPTS):
            with pytest.raises(InvalidCredentials):
                await auth_service.login("joe", "wrong")

        stored = auth_service.store.find_by_username("joe")
        assert stored.locked is True
        assert stored.failed_login_attempts == MAX_FAILED_LOGIN_ATTEMPTS

        with pytest.raises(InvalidCredentials):
            await auth_service.login("joe", PASSWORD)

    async def test_counter_stops_at_threshold(self, auth_service, account):
        for _ in range(MAX_FAILED_LOGIN_ATTEMPTS + 3):
            with pytest.raises(InvalidCredentials):
                await auth_service.login("joe", "wrong")
        stored = auth_service.store.find_by_username("joe")
        assert stored.failed_login_attempts == MAX_FAILED_LOGIN_ATTEMPTS

    async def test_four_failures_then_success_resets(self, auth_service, account):
        for _ in range(MAX_FAILED_LOGIN_ATTEMPTS - 1):
            with pytest.raises(InvalidCredentials):
                await auth_service.login("joe@example.com", "wrong")
        assert auth_service.store.find_by_username("joe").failed_login_attempts == 4

        session = await auth_service.login("joe", PASSWORD)

        assert session.user_id == account.id
        stored = auth_service.store.find_by_username("joe")
        assert stored.failed_login_attempts == 0
        assert stored.locked is False

    async def test_unknown_identifier_records_nothing(self, auth_service, account):
        with pytest.raises(InvalidCredentials):
            await auth_service.login("ghost", "wrong")
        auth_service.record_failed_login("ghost")
        assert auth_service.store.find_by_username("joe").failed_login_attempts == 0

    async def test_explicit_reset_unlocks(self, auth_service, account):
        for _ in range(MAX_FAILED_LOGIN_ATTEMPTS):
            with pytest.raises(InvalidCredentials):
                await auth_service.login("joe", "wrong")

        auth_service.process_successful_login("joe")

        session = await auth_service.login("joe", PASSWORD)
        assert session.user_name == "Joe Bloggs"

    def test_process_successful_login_unknown_is_noop(self, auth_service):
        auth_service.process_successful_login("ghost")

    def test_unlock_unknown_raises(self, auth_service):
        with pytest.raises(NotFoundError):
            auth_service.unlock_account("ghost")


class TestLogin:
    async def test_session_descriptor(self, auth_service, account):
        session = await auth_service.login("joe", PASSWORD)

        assert session.user_id == account.id
        assert session.user_name == "Joe Bloggs"
        assert session.expires_in_seconds == 3600
        assert auth_service.tokens.validate(session.token, "joe")

    async def test_login_by_email_token_subject_is_username(self, auth_service, account):
        session = await auth_service.login("joe@example.com", PASSWORD)
        assert auth_service.tokens.extract_subject(session.token) == "joe"


class TestSignup:
    async def test_signup_logs_in(self, auth_service):
        session = await auth_service.signup(_signup())

        assert auth_service.tokens.extract_subject(session.token) == "joe"
        assert session.user_name == "Joe Bloggs"
        account = auth_service.store.find_by_id(session.user_id)
        assert account.roles == {"ROLE_USER"}
        assert account.password_hash != PASSWORD

    async def test_duplicate_username(self, auth_service, account):
        before = len(auth_service.store.list_accounts())
        with pytest.raises(DuplicateField) as excinfo:
            await auth_service.signup(_signup(email="new@example.com"))
        assert excinfo.value.field == "username"
        assert len(auth_service.store.list_accounts()) == before

    async def test_duplicate_email(self, auth_service, account):
        with pytest.raises(DuplicateField) as excinfo:
            await auth_service.signup(_signup(username="joe2"))
        assert excinfo.value.field == "email"
        assert excinfo.value.detail == {"field": "email"}

    async def test_duplicate_phone(self, auth_service, account):
        with pytest.raises(DuplicateField) as excinfo:
            await auth_service.signup(
                _signup(username="joe2", email="joe2@example.com", phone="+15551234567")
            )
        assert excinfo.value.field == "phone"

    async def test_username_checked_before_email(self, auth_service, account):
        with pytest.raises(DuplicateField) as excinfo:
            await auth_service.signup(_signup())
        assert excinfo.value.field == "username"

    async def test_missing_default_role(self, tokens, oauth, hasher):
        from teachgram.service.auth import AuthService

        bare = MemoryStore(roles=())
        service = AuthService(bare, tokens, oauth, hasher=hasher)
        with pytest.raises(RoleNotConfigured):
            await service.signup(_signup())
        assert bare.list_accounts() == []

    async def test_deleted_account_frees_username(self, auth_service, account):
        auth_service.store.delete(account.id)
        session = await auth_service.signup(_signup())
        assert session.user_id != account.id

    async def test_email_stored_lower_case(self, auth_service):
        session = await auth_service.signup(_signup(email=" Joe@Example.com "))

        account = auth_service.store.find_by_id(session.user_id)
        assert account.email == "joe@example.com"
        relogin = await auth_service.login("Joe@Example.com", PASSWORD)
        assert relogin.user_id == session.user_id

    async def test_email_duplicate_ignores_case(self, auth_service, account):
        with pytest.raises(DuplicateField) as excinfo:
            await auth_service.signup(_signup(username="joe2", email="JOE@example.com"))
        assert excinfo.value.field == "email"

    async def test_provider_login_finds_mixed_case_signup(self, auth_service, google):
        session = await auth_service.signup(_signup(email="Joe@Example.com"))
        google.add("tok", email="joe@example.com")

        provider_session = await auth_service.login_with_provider("google", "tok")

        assert provider_session.user_id == session.user_id
        assert len(auth_service.store.list_accounts()) == 1


class TestBearer:
    async def test_authenticate_bearer(self, auth_service, account):
        session = await auth_service.login("joe", PASSWORD)
        principal = auth_service.authenticate_bearer(f"Bearer {session.token}")
        assert principal.user_id == account.id

    def test_missing_header(self, auth_service):
        with pytest.raises(TokenInvalid):
            auth_service.authenticate_bearer(None)

    def test_wrong_scheme(self, auth_service):
        with pytest.raises(TokenInvalid):
            auth_service.authenticate_bearer("Basic am9lOnB3")

    async def test_deleted_account_token_rejected(self, auth_service, account):
        session = await auth_service.login("joe", PASSWORD)
        auth_service.store.delete(account.id)
        with pytest.raises(TokenInvalid):
            auth_service.authenticate_bearer(f"Bearer {session.token}")
