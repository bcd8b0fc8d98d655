"""Unit tests for the login/register/logout/refresh workflows.

Tests for:
- Registration followed by login and the one-session rule
- Rotation of expired tokens
- Revocation of tampered tokens
- Infrastructure failures mapped to results
"""

from datetime import datetime, timedelta, timezone

import pytest
from argon2 import PasswordHasher, Type

from kvauth.config import Settings
from kvauth.service.auth import (
    AuthService,
    TokenAction,
    TokenOutcome,
    classify_verification,
    decide_token_action,
)
from kvauth.service.errors import ErrorKind, VerificationReason
from kvauth.service.passwords import CredentialVerifier
from kvauth.service.results import Err, Ok
from kvauth.service.tokens import TokenService
from kvauth.storage.accounts import (
    USERS_BY_EMAIL_NAMESPACE,
    USERS_NAMESPACE,
    AccountStore,
)
from kvauth.storage.errors import BackendUnavailable
from kvauth.storage.memory import MemoryKeyValueStore
from kvauth.storage.models import AccountProfile, AuthSession, TokenClaims, TokenKind
from kvauth.storage.sessions import SESSIONS_NAMESPACE, SessionStore


@pytest.fixture
def settings():
    return Settings(
        access_token_secret="access-secret-for-tests",
        refresh_token_secret="refresh-secret-for-tests",
    )


@pytest.fixture
def kv(clock):
    return MemoryKeyValueStore(clock=clock)


def _build_service(kv, settings) -> AuthService:
    verifier = CredentialVerifier(
        PasswordHasher(time_cost=1, memory_cost=8, parallelism=1, type=Type.ID)
    )
    return AuthService(
        settings,
        AccountStore(kv, verifier),
        SessionStore(kv, settings),
        TokenService(settings),
        verifier,
    )


@pytest.fixture
def auth(kv, settings):
    return _build_service(kv, settings)


def _profile(email="a@b.com", password="pw") -> AccountProfile:
    return AccountProfile(email=email, password=password, name="Test User", city="Paris")


def _tamper(token: str) -> str:
    head, _, sig = token.rpartition(".")
    replacement = "A" if sig[-1] != "A" else "B"
    return f"{head}.{sig[:-1]}{replacement}"


def _past() -> datetime:
    return datetime.now(timezone.utc) - timedelta(days=2)


async def _deny_list(auth, session_id):
    return (await auth.sessions.get(session_id)).value.refresh_tokens_deny_list


class TestRegisterAndLogin:
    async def test_register_returns_tokens_for_a_live_session(self, auth):
        result = await auth.register(_profile())
        assert isinstance(result, Ok)
        login = result.value
        claims = auth.tokens.verify(login.tokens.access_token, TokenKind.ACCESS).value
        assert claims.session_id == login.session_id
        assert claims.user_id == login.user_id
        refresh_claims = auth.tokens.verify(login.tokens.refresh_token, TokenKind.REFRESH).value
        assert refresh_claims.session_id == login.session_id
        session = await auth.sessions.get(claims.session_id)
        assert isinstance(session, Ok)
        assert session.value.user_id == login.user_id

    async def test_login_while_registered_session_exists_conflicts(self, auth):
        assert isinstance(await auth.register(_profile()), Ok)
        result = await auth.login("a@b.com", "pw")
        assert isinstance(result, Err)
        assert result.error.kind is ErrorKind.CONFLICT

    async def test_login_after_logout(self, auth):
        registered = (await auth.register(_profile())).value
        assert isinstance(await auth.logout(registered.session_id), Ok)
        result = await auth.login("A@B.com ", "pw")
        assert isinstance(result, Ok)
        assert result.value.user_id == registered.user_id
        assert result.value.session_id != registered.session_id

    async def test_duplicate_registration_conflicts(self, auth):
        await auth.register(_profile())
        result = await auth.register(_profile(password="other"))
        assert isinstance(result, Err)
        assert result.error.kind is ErrorKind.CONFLICT

    async def test_wrong_password(self, auth):
        registered = (await auth.register(_profile())).value
        await auth.logout(registered.session_id)
        result = await auth.login("a@b.com", "wrong")
        assert isinstance(result, Err)
        assert result.error.kind is ErrorKind.INVALID_CREDENTIALS
        assert result.error.message == "login failed"

    async def test_unknown_email_looks_like_wrong_password(self, auth):
        result = await auth.login("nobody@b.com", "pw")
        assert isinstance(result, Err)
        assert result.error.kind is ErrorKind.INVALID_CREDENTIALS
        assert result.error.message == "login failed"

    async def test_unknown_email_can_be_reported_separately(self, kv):
        settings = Settings(
            access_token_secret="a",
            refresh_token_secret="r",
            unify_credential_errors=False,
        )
        result = await _build_service(kv, settings).login("nobody@b.com", "pw")
        assert isinstance(result, Err)
        assert result.error.kind is ErrorKind.NOT_FOUND

    async def test_missing_secret_is_a_configuration_error(self, kv):
        service = _build_service(kv, Settings(access_token_secret="only-access"))
        result = await service.register(_profile())
        assert isinstance(result, Err)
        assert result.error.kind is ErrorKind.CONFIGURATION_ERROR
        assert result.error.message == "internal server error"
        # The session that could not be given tokens does not hold the slot
        assert await kv.scan(SESSIONS_NAMESPACE, limit=10) == []

    async def test_empty_email_fails_account_creation(self, auth):
        result = await auth.register(_profile(email="   "))
        assert isinstance(result, Err)
        assert result.error.kind is ErrorKind.INTERNAL_ERROR


class TestLogout:
    async def test_logout_unknown_session_succeeds(self, auth):
        assert await auth.logout("never-created") == Ok(None)

    async def test_logout_deletes_session(self, auth):
        registered = (await auth.register(_profile())).value
        await auth.logout(registered.session_id)
        assert isinstance(await auth.sessions.get(registered.session_id), Err)


class TestRefresh:
    async def test_valid_pair_is_returned_unchanged(self, auth):
        login = (await auth.register(_profile())).value
        result = await auth.refresh(
            login.tokens.access_token,
            login.tokens.refresh_token,
            login.session_id,
            login.user_id,
        )
        assert result == Ok(login.tokens)

    async def test_expired_refresh_token_is_rotated(self, auth):
        login = (await auth.register(_profile())).value
        expired = auth.tokens.issue(
            TokenKind.REFRESH, login.user_id, login.session_id, issued_at=_past()
        )
        result = await auth.refresh(
            login.tokens.access_token, expired, login.session_id, login.user_id
        )
        assert isinstance(result, Ok)
        assert result.value.refresh_token != expired
        assert result.value.access_token == login.tokens.access_token
        claims = auth.tokens.verify(result.value.refresh_token, TokenKind.REFRESH).value
        assert claims.session_id == login.session_id
        assert claims.exp - claims.iat == 24 * 60 * 60
        # Rotation is not revocation
        assert expired not in await _deny_list(auth, login.session_id)

    async def test_expired_access_token_is_rotated(self, auth):
        login = (await auth.register(_profile())).value
        expired = auth.tokens.issue(
            TokenKind.ACCESS, login.user_id, login.session_id, issued_at=_past()
        )
        result = await auth.refresh(
            expired, login.tokens.refresh_token, login.session_id, login.user_id
        )
        assert isinstance(result, Ok)
        assert result.value.refresh_token == login.tokens.refresh_token
        assert isinstance(auth.tokens.verify(result.value.access_token, TokenKind.ACCESS), Ok)

    async def test_tampered_refresh_token_is_revoked(self, auth):
        login = (await auth.register(_profile())).value
        forged = _tamper(login.tokens.refresh_token)
        first = await auth.refresh(
            login.tokens.access_token, forged, login.session_id, login.user_id
        )
        assert isinstance(first, Err)
        assert first.error.kind is ErrorKind.TOKEN_VERIFICATION_FAILED
        assert first.error.reason is VerificationReason.SIGNATURE_MISMATCH
        assert first.error.trigger_logout is True

        second = await auth.refresh(
            login.tokens.access_token, forged, login.session_id, login.user_id
        )
        assert isinstance(second, Err)
        assert second.error.kind is ErrorKind.TOKEN_REVOKED
        assert second.error.trigger_logout is True

        # The genuine tokens still work on the same session
        third = await auth.refresh(
            login.tokens.access_token,
            login.tokens.refresh_token,
            login.session_id,
            login.user_id,
        )
        assert third == Ok(login.tokens)

    async def test_tampered_access_token_revokes_the_refresh_token(self, auth):
        login = (await auth.register(_profile())).value
        result = await auth.refresh(
            _tamper(login.tokens.access_token),
            login.tokens.refresh_token,
            login.session_id,
            login.user_id,
        )
        assert isinstance(result, Err)
        assert result.error.trigger_logout is True
        assert login.tokens.refresh_token in await _deny_list(auth, login.session_id)

        again = await auth.refresh(
            login.tokens.access_token,
            login.tokens.refresh_token,
            login.session_id,
            login.user_id,
        )
        assert isinstance(again, Err)
        assert again.error.kind is ErrorKind.TOKEN_REVOKED

    async def test_token_for_another_session_is_rejected(self, auth):
        login = (await auth.register(_profile())).value
        foreign = auth.tokens.issue(TokenKind.REFRESH, login.user_id, "other-session")
        result = await auth.refresh(
            login.tokens.access_token, foreign, login.session_id, login.user_id
        )
        assert isinstance(result, Err)
        assert result.error.kind is ErrorKind.TOKEN_VERIFICATION_FAILED
        assert foreign in await _deny_list(auth, login.session_id)

    async def test_expired_tokens_cannot_be_rotated_into_another_session(self, auth):
        victim = (await auth.register(_profile(email="victim@b.com"))).value
        attacker = (await auth.register(_profile(email="attacker@b.com"))).value
        stale_access = auth.tokens.issue(
            TokenKind.ACCESS, attacker.user_id, attacker.session_id, issued_at=_past()
        )
        stale_refresh = auth.tokens.issue(
            TokenKind.REFRESH, attacker.user_id, attacker.session_id, issued_at=_past()
        )
        result = await auth.refresh(
            stale_access, stale_refresh, victim.session_id, victim.user_id
        )
        assert isinstance(result, Err)
        assert result.error.kind is ErrorKind.TOKEN_VERIFICATION_FAILED
        assert result.error.trigger_logout is True
        assert stale_refresh in await _deny_list(auth, victim.session_id)

        # The victim's own pair is unaffected
        own = await auth.refresh(
            victim.tokens.access_token,
            victim.tokens.refresh_token,
            victim.session_id,
            victim.user_id,
        )
        assert own == Ok(victim.tokens)

    async def test_expired_access_token_for_another_session_is_rejected(self, auth):
        login = (await auth.register(_profile())).value
        foreign = auth.tokens.issue(
            TokenKind.ACCESS, login.user_id, "other-session", issued_at=_past()
        )
        result = await auth.refresh(
            foreign, login.tokens.refresh_token, login.session_id, login.user_id
        )
        assert isinstance(result, Err)
        assert result.error.kind is ErrorKind.TOKEN_VERIFICATION_FAILED
        assert login.tokens.refresh_token in await _deny_list(auth, login.session_id)

    async def test_explicitly_revoked_token_is_refused(self, auth):
        login = (await auth.register(_profile())).value
        revoked = await auth.sessions.append_deny_list_token(
            login.session_id, login.tokens.refresh_token
        )
        assert isinstance(revoked, Ok)
        for _ in range(2):
            result = await auth.refresh(
                login.tokens.access_token,
                login.tokens.refresh_token,
                login.session_id,
                login.user_id,
            )
            assert isinstance(result, Err)
            assert result.error.kind is ErrorKind.TOKEN_REVOKED
            assert result.error.trigger_logout is True

    async def test_revoked_token_wins_over_account_mismatch(self, auth):
        login = (await auth.register(_profile())).value
        await auth.sessions.append_deny_list_token(
            login.session_id, login.tokens.refresh_token
        )
        result = await auth.refresh(
            login.tokens.access_token,
            login.tokens.refresh_token,
            login.session_id,
            "someone-else",
        )
        assert isinstance(result, Err)
        assert result.error.kind is ErrorKind.TOKEN_REVOKED

    async def test_unknown_session(self, auth, kv):
        login = (await auth.register(_profile())).value
        before = await kv.scan(SESSIONS_NAMESPACE, limit=10)
        result = await auth.refresh(
            login.tokens.access_token,
            login.tokens.refresh_token,
            "never-created",
            login.user_id,
        )
        assert isinstance(result, Err)
        assert result.error.kind is ErrorKind.NOT_FOUND
        assert result.error.trigger_logout is True
        assert await kv.scan(SESSIONS_NAMESPACE, limit=10) == before

    async def test_session_of_another_account(self, auth):
        login = (await auth.register(_profile())).value
        result = await auth.refresh(
            login.tokens.access_token,
            login.tokens.refresh_token,
            login.session_id,
            "someone-else",
        )
        assert isinstance(result, Err)
        assert result.error.kind is ErrorKind.TOKEN_VERIFICATION_FAILED
        assert await _deny_list(auth, login.session_id) == []

    async def test_refresh_after_logout(self, auth):
        login = (await auth.register(_profile())).value
        await auth.logout(login.session_id)
        result = await auth.refresh(
            login.tokens.access_token,
            login.tokens.refresh_token,
            login.session_id,
            login.user_id,
        )
        assert isinstance(result, Err)
        assert result.error.kind is ErrorKind.NOT_FOUND


class TestRefreshPolicy:
    @pytest.mark.parametrize("kind", [TokenKind.ACCESS, TokenKind.REFRESH])
    @pytest.mark.parametrize(
        "outcome,action",
        [
            (TokenOutcome.VALID, TokenAction.REUSE),
            (TokenOutcome.EXPIRED, TokenAction.ROTATE),
            (TokenOutcome.INVALID, TokenAction.REVOKE),
        ],
    )
    def test_policy_table(self, kind, outcome, action):
        assert decide_token_action(kind, outcome) is action

    @pytest.mark.parametrize(
        "reason", [r for r in VerificationReason if r is not VerificationReason.EXPIRED]
    )
    def test_only_expiry_is_benign(self, reason):
        session = AuthSession.new("user-1")
        outcome, returned = classify_verification(Err(reason), session)
        assert outcome is TokenOutcome.INVALID
        assert returned is reason

    def test_claims_must_match_the_session(self):
        session = AuthSession.new("user-1")
        good = TokenClaims("user-1", session.id, exp=2, nbf=1, iat=1)
        wrong_user = TokenClaims("user-2", session.id, exp=2, nbf=1, iat=1)
        assert classify_verification(Ok(good), session)[0] is TokenOutcome.VALID
        assert classify_verification(Ok(wrong_user), session)[0] is TokenOutcome.INVALID

    def test_expired_claims_must_match_the_session(self):
        session = AuthSession.new("user-1")
        expired = Err(VerificationReason.EXPIRED)
        own = TokenClaims("user-1", session.id, exp=2, nbf=1, iat=1)
        other_session = TokenClaims("user-1", "other-session", exp=2, nbf=1, iat=1)
        assert classify_verification(expired, session, own) == (
            TokenOutcome.EXPIRED,
            VerificationReason.EXPIRED,
        )
        assert classify_verification(expired, session, other_session) == (
            TokenOutcome.INVALID,
            None,
        )
        assert classify_verification(expired, session)[0] is TokenOutcome.INVALID


class _UnavailableKV(MemoryKeyValueStore):
    async def get(self, key):
        raise BackendUnavailable("get", ConnectionError("connection refused"))


class _FailingAccountWriteKV(MemoryKeyValueStore):
    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.fail_account_writes = True

    async def set(self, key, value, ttl_ms=None):
        if self.fail_account_writes and key[0] == USERS_NAMESPACE:
            raise BackendUnavailable("set", ConnectionError("connection reset"))
        return await super().set(key, value, ttl_ms)


class TestBackendFailures:
    async def test_failed_account_write_releases_the_email(self, settings, clock):
        kv = _FailingAccountWriteKV(clock=clock)
        auth = _build_service(kv, settings)
        first = await auth.register(_profile())
        assert isinstance(first, Err)
        assert first.error.kind is ErrorKind.BACKEND_UNAVAILABLE
        assert await kv.get((USERS_BY_EMAIL_NAMESPACE, "a@b.com")) is None

        kv.fail_account_writes = False
        second = await auth.register(_profile())
        assert isinstance(second, Ok)

    async def test_login_reports_backend_unavailable(self, settings):
        result = await _build_service(_UnavailableKV(), settings).login("a@b.com", "pw")
        assert isinstance(result, Err)
        assert result.error.kind is ErrorKind.BACKEND_UNAVAILABLE
        assert result.error.message == "internal server error"
        assert result.error.trigger_logout is False

    async def test_refresh_failure_forces_logout(self, settings):
        result = await _build_service(_UnavailableKV(), settings).refresh(
            "a", "r", "session", "user"
        )
        assert isinstance(result, Err)
        assert result.error.kind is ErrorKind.BACKEND_UNAVAILABLE
        assert result.error.trigger_logout is True
