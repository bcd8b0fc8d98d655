from __future__ import annotations

from argon2 import PasswordHasher, Type
from argon2.exceptions import Argon2Error, InvalidHashError, VerifyMismatchError

from kvauth.logging import get_logger
from kvauth.service.errors import CredentialCheckError

logger = get_logger(__name__)


class CredentialVerifier:
    """Hash and check account passwords with argon2id.

    ``verify`` only answers the question "does this password match"; a
    hash the library cannot read is an internal error, not a mismatch.
    """

    algorithm = "argon2id"

    def __init__(self, hasher: PasswordHasher | None = None) -> None:
        self._pwd_hasher = hasher or PasswordHasher(type=Type.ID)

    def hash(self, password: str) -> str:
        try:
            return self._pwd_hasher.hash(password)
        except Argon2Error as exc:
            logger.error("password_hash_failed", error_type=type(exc).__name__)
            raise CredentialCheckError("password hashing failed") from exc

    def verify(self, plaintext: str, stored_hash: str) -> bool:
        try:
            # argon2 compares digests in constant time
            return self._pwd_hasher.verify(stored_hash, plaintext)
        except VerifyMismatchError:
            return False
        except InvalidHashError as exc:
            logger.error("password_hash_unreadable", error_type=type(exc).__name__)
            raise CredentialCheckError("stored password hash is invalid") from exc
        except Argon2Error as exc:
            logger.error("password_verification_error", error_type=type(exc).__name__)
            raise CredentialCheckError("password verification failed") from exc
