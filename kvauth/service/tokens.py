from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
from datetime import datetime, timedelta, timezone
from typing import Any, Optional, Tuple

from kvauth.config import Settings
from kvauth.logging import get_logger
from kvauth.service.errors import ConfigurationError, VerificationReason
from kvauth.service.results import Err, Ok, Result
from kvauth.storage.models import TokenClaims, TokenKind

logger = get_logger(__name__)

_REQUIRED_CLAIMS = ("user_id", "session_id", "exp", "nbf", "iat")


class TokenVerificationError(Exception):
    """Verification failure; ``payload`` is set only when the signature checked out."""

    def __init__(
        self,
        reason: VerificationReason,
        message: str = "",
        *,
        payload: Optional[dict[str, Any]] = None,
    ) -> None:
        self.reason = reason
        self.payload = payload
        super().__init__(message or reason.value)


class TokenCodec:
    """HS256 compact JWS encoder/decoder.

    The signature is checked before any temporal claim, so only an
    authentic token can ever be reported as expired.
    """

    algorithm = "HS256"

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str, secret: str) -> str:
        digest = hmac.new(
            secret.encode(), signing_input.encode(), hashlib.sha256
        ).digest()
        return self._encode_segment(digest)

    def sign(self, claims: dict[str, Any], secret: str) -> str:
        header = {"alg": self.algorithm, "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(claims, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input, secret)}"

    def verify(self, token: str, secret: str, *, now: float) -> dict[str, Any]:
        """Return the verified claims or raise ``TokenVerificationError``."""
        if not isinstance(token, str):
            raise TokenVerificationError(VerificationReason.MALFORMED, "token is not a string")
        parts = token.split(".")
        if len(parts) != 3 or not all(parts):
            raise TokenVerificationError(VerificationReason.MALFORMED, "expected three segments")
        header_b64, payload_b64, sig_b64 = parts

        try:
            header = json.loads(self._decode_segment(header_b64))
        except (binascii.Error, ValueError) as exc:
            raise TokenVerificationError(VerificationReason.HEADER_INVALID, str(exc)) from exc
        if not isinstance(header, dict) or "alg" not in header:
            raise TokenVerificationError(VerificationReason.HEADER_INVALID, "missing alg")
        if header.get("alg") != self.algorithm:
            raise TokenVerificationError(
                VerificationReason.ALGORITHM_UNSUPPORTED, f"alg {header.get('alg')!r}"
            )

        expected_sig = self._sign(f"{header_b64}.{payload_b64}", secret)
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            raise TokenVerificationError(VerificationReason.SIGNATURE_MISMATCH)

        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (binascii.Error, ValueError) as exc:
            raise TokenVerificationError(VerificationReason.MALFORMED, str(exc)) from exc
        if not isinstance(payload, dict):
            raise TokenVerificationError(VerificationReason.MALFORMED, "payload is not an object")

        nbf = _numeric_claim(payload, "nbf")
        if nbf is not None and nbf > now:
            raise TokenVerificationError(VerificationReason.NOT_YET_VALID)
        iat = _numeric_claim(payload, "iat")
        if iat is not None and iat > now:
            raise TokenVerificationError(VerificationReason.ISSUED_IN_FUTURE)
        exp = _numeric_claim(payload, "exp")
        if exp is not None and exp <= now:
            raise TokenVerificationError(VerificationReason.EXPIRED, payload=payload)
        return payload


def _numeric_claim(payload: dict[str, Any], name: str) -> Optional[float]:
    raw = payload.get(name)
    if raw is None:
        return None
    if isinstance(raw, bool) or not isinstance(raw, (int, float)):
        raise TokenVerificationError(VerificationReason.MALFORMED, f"{name} is not numeric")
    return float(raw)


class TokenService:
    """Issue and verify access/refresh tokens, each kind with its own secret."""

    def __init__(self, settings: Settings, codec: Optional[TokenCodec] = None) -> None:
        self.settings = settings
        self.codec = codec or TokenCodec()

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def _secret(self, kind: TokenKind) -> str:
        if kind is TokenKind.ACCESS:
            secret, env_name = self.settings.access_token_secret, "ACCESS_TOKEN_SEED"
        else:
            secret, env_name = self.settings.refresh_token_secret, "REFRESH_TOKEN_SEED"
        if not secret:
            logger.error("token_secret_missing", kind=kind.value, setting=env_name)
            raise ConfigurationError(env_name)
        return secret

    def lifetime(self, kind: TokenKind) -> timedelta:
        if kind is TokenKind.ACCESS:
            return timedelta(minutes=self.settings.access_token_ttl_minutes)
        return timedelta(minutes=self.settings.refresh_token_ttl_minutes)

    def issue(
        self,
        kind: TokenKind,
        user_id: str,
        session_id: str,
        *,
        issued_at: Optional[datetime] = None,
    ) -> str:
        """Sign a new token; raises ``ConfigurationError`` if the kind has no secret."""
        secret = self._secret(kind)
        now = issued_at or self._now()
        iat = int(now.timestamp())
        claims = TokenClaims(
            user_id=user_id,
            session_id=session_id,
            exp=int((now + self.lifetime(kind)).timestamp()),
            nbf=iat,
            iat=iat,
        )
        return self.codec.sign(claims.to_payload(), secret)

    def verify(self, token: str, kind: TokenKind) -> Result[TokenClaims, VerificationReason]:
        return self.verify_with_claims(token, kind)[0]

    def verify_with_claims(
        self, token: str, kind: TokenKind
    ) -> Tuple[Result[TokenClaims, VerificationReason], Optional[TokenClaims]]:
        """Verify ``token`` and also return the claims it authenticated.

        An expired token still carries its claims, so callers can tell whose
        session it was minted for. Every other failure carries none.
        """
        secret = self._secret(kind)
        try:
            payload = self.codec.verify(token, secret, now=self._now().timestamp())
        except TokenVerificationError as exc:
            logger.info(
                "token_verification_failed",
                kind=kind.value,
                reason=exc.reason.value,
            )
            claims = _claims_from(exc.payload) if exc.payload is not None else None
            return Err(exc.reason), claims
        except Exception as exc:
            logger.warning(
                "token_verification_error",
                kind=kind.value,
                error_type=type(exc).__name__,
            )
            return Err(VerificationReason.UNKNOWN), None
        claims = _claims_from(payload)
        if claims is None:
            logger.info("token_claims_missing", kind=kind.value)
            return Err(VerificationReason.MALFORMED), None
        return Ok(claims), claims


def _claims_from(payload: dict[str, Any]) -> Optional[TokenClaims]:
    if any(name not in payload for name in _REQUIRED_CLAIMS):
        return None
    return TokenClaims(
        user_id=str(payload["user_id"]),
        session_id=str(payload["session_id"]),
        exp=int(payload["exp"]),
        nbf=int(payload["nbf"]),
        iat=int(payload["iat"]),
    )
