from __future__ import annotations

import functools
from enum import Enum
from typing import Awaitable, Callable, Dict, List, Optional, Tuple, TypeVar

from kvauth.config import Settings
from kvauth.logging import get_logger
from kvauth.service.errors import (
    ConfigurationError,
    CredentialCheckError,
    ErrorKind,
    VerificationReason,
)
from kvauth.service.passwords import CredentialVerifier
from kvauth.service.results import AuthFailure, Err, Ok, Result
from kvauth.service.tokens import TokenService
from kvauth.storage.accounts import AccountStore
from kvauth.storage.errors import BackendUnavailable, ConstraintViolation
from kvauth.storage.models import (
    AccountProfile,
    AuthSession,
    LoginResult,
    TokenClaims,
    TokenKind,
    TokenPair,
)
from kvauth.storage.sessions import SessionStore

logger = get_logger(__name__)

T = TypeVar("T")

LOGIN_FAILED = "login failed"


class TokenOutcome(str, Enum):
    VALID = "valid"
    EXPIRED = "expired"
    INVALID = "invalid"


class TokenAction(str, Enum):
    REUSE = "reuse"
    ROTATE = "rotate"
    REVOKE = "revoke"


# Refresh policy: an expired token is rotated, anything else that fails
# verification is treated as tampering and revokes the refresh token.
REFRESH_POLICY: Dict[Tuple[TokenKind, TokenOutcome], TokenAction] = {
    (TokenKind.REFRESH, TokenOutcome.VALID): TokenAction.REUSE,
    (TokenKind.REFRESH, TokenOutcome.EXPIRED): TokenAction.ROTATE,
    (TokenKind.REFRESH, TokenOutcome.INVALID): TokenAction.REVOKE,
    (TokenKind.ACCESS, TokenOutcome.VALID): TokenAction.REUSE,
    (TokenKind.ACCESS, TokenOutcome.EXPIRED): TokenAction.ROTATE,
    (TokenKind.ACCESS, TokenOutcome.INVALID): TokenAction.REVOKE,
}


def _bound_to(claims: Optional[TokenClaims], session: AuthSession) -> bool:
    return (
        claims is not None
        and claims.session_id == session.id
        and claims.user_id == session.user_id
    )


def classify_verification(
    result: Result[TokenClaims, VerificationReason],
    session: AuthSession,
    expired_claims: Optional[TokenClaims] = None,
) -> Tuple[TokenOutcome, Optional[VerificationReason]]:
    """Reduce a verification result to the outcome the refresh policy keys on.

    A token that names another session or account is invalid, whether it
    verified or merely expired. An expired token without its authenticated
    ``expired_claims`` cannot be matched to the session and is invalid too.
    """
    if isinstance(result, Err):
        if result.error is not VerificationReason.EXPIRED:
            return TokenOutcome.INVALID, result.error
        if not _bound_to(expired_claims, session):
            return TokenOutcome.INVALID, None
        return TokenOutcome.EXPIRED, result.error
    if not _bound_to(result.value, session):
        return TokenOutcome.INVALID, None
    return TokenOutcome.VALID, None


def decide_token_action(kind: TokenKind, outcome: TokenOutcome) -> TokenAction:
    return REFRESH_POLICY[(kind, outcome)]


def _result_boundary(operation: str, *, logout_on_failure: bool = False):
    """Turn fatal and infrastructure exceptions into ``Err(AuthFailure)``."""

    def decorator(
        func: Callable[..., Awaitable[Result[T, AuthFailure]]]
    ) -> Callable[..., Awaitable[Result[T, AuthFailure]]]:
        @functools.wraps(func)
        async def wrapper(*args, **kwargs) -> Result[T, AuthFailure]:
            try:
                return await func(*args, **kwargs)
            except ConfigurationError as exc:
                logger.error(
                    "auth_configuration_error", operation=operation, setting=exc.setting
                )
                kind = ErrorKind.CONFIGURATION_ERROR
            except BackendUnavailable as exc:
                logger.error(
                    "auth_backend_unavailable",
                    operation=operation,
                    backend_operation=exc.operation,
                    error=str(exc),
                )
                kind = ErrorKind.BACKEND_UNAVAILABLE
            except CredentialCheckError as exc:
                logger.error("auth_credential_check_error", operation=operation, error=str(exc))
                kind = ErrorKind.INTERNAL_ERROR
            return Err(AuthFailure.of(kind, "", trigger_logout=logout_on_failure))

        return wrapper

    return decorator


class AuthService:
    """Login, registration, logout and token refresh over the session store.

    Every operation returns ``Ok``/``Err``; nothing here is retried and the
    HTTP layer alone maps a failure to a status code.
    """

    def __init__(
        self,
        settings: Settings,
        accounts: AccountStore,
        sessions: SessionStore,
        tokens: TokenService,
        verifier: CredentialVerifier,
    ) -> None:
        self.settings = settings
        self.accounts = accounts
        self.sessions = sessions
        self.tokens = tokens
        self.verifier = verifier
        self.logger = logger

    def _credentials_rejected(self, *, account_found: bool) -> Err[AuthFailure]:
        if not account_found and not self.settings.unify_credential_errors:
            return Err(AuthFailure.of(ErrorKind.NOT_FOUND, "account not found"))
        return Err(AuthFailure.of(ErrorKind.INVALID_CREDENTIALS, LOGIN_FAILED))

    def _issue_pair(self, user_id: str, session_id: str) -> TokenPair:
        refresh_token = self.tokens.issue(TokenKind.REFRESH, user_id, session_id)
        access_token = self.tokens.issue(TokenKind.ACCESS, user_id, session_id)
        return TokenPair(access_token=access_token, refresh_token=refresh_token)

    @_result_boundary("login")
    async def login(self, email: str, password: str) -> Result[LoginResult, AuthFailure]:
        account = await self.accounts.find_by_email(email)
        if account is None:
            self.logger.info("login_failed", cause="unknown_account")
            return self._credentials_rejected(account_found=False)
        if not self.verifier.verify(password, account.password_hash):
            self.logger.info("login_failed", cause="password_mismatch", user_id=account.id)
            return self._credentials_rejected(account_found=True)

        created = await self.sessions.create(account.id)
        if isinstance(created, Err):
            self.logger.info(
                "login_failed", cause=created.error.kind.value, user_id=account.id
            )
            return created
        session = created.value
        try:
            tokens = self._issue_pair(account.id, session.id)
        except ConfigurationError:
            # No tokens means nobody can use the session; do not leave it
            # holding the account's only session slot.
            await self.sessions.delete(session.id)
            raise
        self.logger.info("login_succeeded", user_id=account.id, session_id=session.id)
        return Ok(LoginResult(user_id=account.id, session_id=session.id, tokens=tokens))

    @_result_boundary("register")
    async def register(self, profile: AccountProfile) -> Result[LoginResult, AuthFailure]:
        try:
            created = await self.accounts.create_account(profile)
        except (ConstraintViolation, CredentialCheckError) as exc:
            self.logger.error(
                "account_create_failed", error_type=type(exc).__name__, error=str(exc)
            )
            return Err(AuthFailure.of(ErrorKind.INTERNAL_ERROR, "account creation failed"))
        if isinstance(created, Err):
            return created
        self.logger.info("account_registered", user_id=created.value.id)
        return await self.login(profile.email, profile.password)

    @_result_boundary("logout", logout_on_failure=True)
    async def logout(self, session_id: str) -> Result[None, AuthFailure]:
        await self.sessions.delete(session_id)
        self.logger.info("logout", session_id=session_id)
        return Ok(None)

    async def _revoke(
        self,
        session: AuthSession,
        refresh_token: str,
        *,
        kind: TokenKind,
        reason: Optional[VerificationReason],
    ) -> None:
        appended = await self.sessions.append_deny_list_token(session.id, refresh_token)
        if isinstance(appended, Err):
            self.logger.warning(
                "refresh_token_revoke_failed",
                session_id=session.id,
                failure=appended.error.kind.value,
            )
            return
        self.logger.warning(
            "refresh_token_revoked",
            session_id=session.id,
            user_id=session.user_id,
            kind=kind.value,
            reason=reason.value if reason else "claims_mismatch",
        )

    @_result_boundary("refresh", logout_on_failure=True)
    async def refresh(
        self,
        access_token: str,
        refresh_token: str,
        session_id: str,
        user_id: str,
    ) -> Result[TokenPair, AuthFailure]:
        """Validate a client's token pair and return the pair it should hold next.

        Expired tokens minted for this session are re-minted. Any other
        verification failure of either token deny-lists the presented
        refresh token and ends the client's login.
        """
        looked_up = await self.sessions.get(session_id)
        if isinstance(looked_up, Err):
            self.logger.info("refresh_failed", cause="session_not_found", session_id=session_id)
            return Err(looked_up.error.with_logout())
        session = looked_up.value

        if session.is_denied(refresh_token):
            self.logger.warning("refresh_failed", cause="token_revoked", session_id=session_id)
            return Err(
                AuthFailure.of(
                    ErrorKind.TOKEN_REVOKED, "refresh token revoked", trigger_logout=True
                )
            )

        if session.user_id != user_id:
            self.logger.warning(
                "refresh_failed", cause="user_mismatch", session_id=session_id
            )
            return Err(
                AuthFailure.of(
                    ErrorKind.TOKEN_VERIFICATION_FAILED,
                    "session does not belong to this account",
                    trigger_logout=True,
                )
            )

        current = {TokenKind.REFRESH: refresh_token, TokenKind.ACCESS: access_token}
        for kind in (TokenKind.REFRESH, TokenKind.ACCESS):
            verified, claims = self.tokens.verify_with_claims(current[kind], kind)
            outcome, reason = classify_verification(verified, session, claims)
            action = decide_token_action(kind, outcome)
            if action is TokenAction.REVOKE:
                await self._revoke(session, refresh_token, kind=kind, reason=reason)
                return Err(
                    AuthFailure.of(
                        ErrorKind.TOKEN_VERIFICATION_FAILED,
                        f"{kind.value} token rejected",
                        reason=reason,
                        trigger_logout=True,
                    )
                )
            if action is TokenAction.ROTATE:
                current[kind] = self.tokens.issue(kind, session.user_id, session.id)
                self.logger.info(
                    "token_rotated", kind=kind.value, session_id=session.id
                )

        return Ok(
            TokenPair(
                access_token=current[TokenKind.ACCESS],
                refresh_token=current[TokenKind.REFRESH],
            )
        )

    @_result_boundary("list_sessions")
    async def list_sessions(
        self, limit: Optional[int] = None
    ) -> Result[List[AuthSession], AuthFailure]:
        return await self.sessions.list_sessions(limit or self.settings.session_list_limit)
