from __future__ import annotations

import json
from typing import List, Optional

from kvauth.config import Settings
from kvauth.logging import get_logger
from kvauth.service.errors import ErrorKind
from kvauth.service.results import AuthFailure, Err, Ok, Result
from kvauth.storage.errors import BackendUnavailable
from kvauth.storage.kv import Key, KeyValueStore
from kvauth.storage.models import AuthSession, utcnow

logger = get_logger(__name__)

SESSIONS_NAMESPACE = "auth_sessions"
SESSIONS_BY_USER_NAMESPACE = "auth_sessions_by_user_id"


def _session_key(session_id: str) -> Key:
    return (SESSIONS_NAMESPACE, session_id)


def _user_index_key(user_id: str) -> Key:
    return (SESSIONS_BY_USER_NAMESPACE, user_id)


def _encode(session: AuthSession) -> str:
    return json.dumps(session.to_record(), separators=(",", ":"))


def _decode(raw: str) -> AuthSession:
    return AuthSession.from_record(json.loads(raw))


def _not_found(session_id: str) -> Err[AuthFailure]:
    return Err(AuthFailure.of(ErrorKind.NOT_FOUND, f"session {session_id} not found"))


def _corrupt(session_id: str, exc: Exception) -> Err[AuthFailure]:
    logger.error(
        "session_record_corrupt", session_id=session_id, error_type=type(exc).__name__
    )
    return Err(AuthFailure.of(ErrorKind.INTERNAL_ERROR, "session record unreadable"))


class SessionStore:
    """Auth session records with a one-session-per-account index.

    Records live at ``("auth_sessions", id)`` and expire after the session
    TTL. ``("auth_sessions_by_user_id", user_id)`` holds the id of the
    account's active session with the same TTL. Backend failures propagate
    as ``BackendUnavailable``; every expected outcome is a ``Result``.
    """

    def __init__(self, kv: KeyValueStore, settings: Settings) -> None:
        self.kv = kv
        self.ttl_ms = settings.session_ttl_ms
        self.update_retries = settings.session_update_retries

    async def _load(self, session_id: str) -> Optional[str]:
        return await self.kv.get(_session_key(session_id))

    async def create(self, user_id: str) -> Result[AuthSession, AuthFailure]:
        session = AuthSession.new(user_id)
        index_key = _user_index_key(user_id)
        # The record is written before the index is claimed so a competing
        # create never mistakes a half-created session for a stale one.
        await self.kv.set(_session_key(session.id), _encode(session), self.ttl_ms)
        try:
            claimed = await self._claim_index(index_key, session.id, user_id)
        except BackendUnavailable:
            await self.kv.delete(_session_key(session.id))
            raise
        if not claimed:
            await self.kv.delete(_session_key(session.id))
            logger.info("session_create_conflict", user_id=user_id)
            return Err(
                AuthFailure.of(
                    ErrorKind.CONFLICT, "an active session already exists for this account"
                )
            )
        logger.info("session_created", user_id=user_id, session_id=session.id)
        return Ok(session)

    async def _claim_index(self, index_key: Key, session_id: str, user_id: str) -> bool:
        if await self.kv.set_if_absent(index_key, session_id, self.ttl_ms):
            return True
        existing_id = await self.kv.get(index_key)
        if existing_id is None:
            return await self.kv.set_if_absent(index_key, session_id, self.ttl_ms)
        if await self._load(existing_id) is None:
            logger.info("session_index_stale", user_id=user_id, stale_session_id=existing_id)
            return await self.kv.compare_and_set(
                index_key, existing_id, session_id, self.ttl_ms
            )
        return False

    async def get(self, session_id: str) -> Result[AuthSession, AuthFailure]:
        raw = await self._load(session_id)
        if raw is None:
            return _not_found(session_id)
        try:
            return Ok(_decode(raw))
        except (ValueError, KeyError, TypeError) as exc:
            return _corrupt(session_id, exc)

    async def append_deny_list_token(
        self, session_id: str, refresh_token: str
    ) -> Result[AuthSession, AuthFailure]:
        """Add ``refresh_token`` to the session's deny-list.

        Read-modify-write under compare-and-set: a concurrent writer forces a
        re-read, so no deny-list entry is ever lost. The write also restarts
        the session TTL on both the record and the user index.
        """
        key = _session_key(session_id)
        for attempt in range(1, self.update_retries + 1):
            raw = await self.kv.get(key)
            if raw is None:
                return _not_found(session_id)
            try:
                session = _decode(raw)
            except (ValueError, KeyError, TypeError) as exc:
                return _corrupt(session_id, exc)
            if refresh_token not in session.refresh_tokens_deny_list:
                session.refresh_tokens_deny_list.append(refresh_token)
            session.updated_at = utcnow()
            if await self.kv.compare_and_set(key, raw, _encode(session), self.ttl_ms):
                index_key = _user_index_key(session.user_id)
                if await self.kv.get(index_key) == session_id:
                    await self.kv.expire(index_key, self.ttl_ms)
                logger.info(
                    "session_deny_list_appended",
                    session_id=session_id,
                    deny_list_size=len(session.refresh_tokens_deny_list),
                )
                return Ok(session)
            logger.info("session_update_retry", session_id=session_id, attempt=attempt)
        logger.warning(
            "session_update_conflict", session_id=session_id, retries=self.update_retries
        )
        return Err(AuthFailure.of(ErrorKind.CONFLICT, "session was modified concurrently"))

    async def delete(self, session_id: str) -> None:
        """Remove the session; deleting an absent session is a no-op."""
        key = _session_key(session_id)
        raw = await self.kv.get(key)
        if raw is None:
            return
        try:
            user_id: Optional[str] = _decode(raw).user_id
        except (ValueError, KeyError, TypeError) as exc:
            logger.warning(
                "session_record_corrupt", session_id=session_id, error_type=type(exc).__name__
            )
            user_id = None
        if user_id is not None:
            index_key = _user_index_key(user_id)
            if await self.kv.get(index_key) == session_id:
                await self.kv.delete(index_key)
        await self.kv.delete(key)
        logger.info("session_deleted", session_id=session_id)

    async def is_token_denied(
        self, session_id: str, refresh_token: str
    ) -> Result[bool, AuthFailure]:
        result = await self.get(session_id)
        if isinstance(result, Err):
            return result
        return Ok(result.value.is_denied(refresh_token))

    async def list_sessions(self, limit: int) -> Result[List[AuthSession], AuthFailure]:
        """Return up to ``limit`` live sessions, newest first."""
        sessions: List[AuthSession] = []
        for raw in await self.kv.scan(SESSIONS_NAMESPACE, limit):
            try:
                sessions.append(_decode(raw))
            except (ValueError, KeyError, TypeError) as exc:
                logger.warning("session_record_skipped", error_type=type(exc).__name__)
        sessions.sort(key=lambda s: s.created_at, reverse=True)
        return Ok(sessions[:limit])
