from __future__ import annotations

import json
import uuid
from typing import Optional

from kvauth.logging import get_logger
from kvauth.service.errors import ErrorKind
from kvauth.service.passwords import CredentialVerifier
from kvauth.service.results import AuthFailure, Err, Ok, Result
from kvauth.storage.errors import BackendUnavailable, ConstraintViolation
from kvauth.storage.kv import KeyValueStore
from kvauth.storage.models import Account, AccountProfile

logger = get_logger(__name__)

USERS_NAMESPACE = "users_by_id"
USERS_BY_EMAIL_NAMESPACE = "users_by_email"


def normalize_email(email: str) -> str:
    return email.strip().lower()


class AccountStore:
    """Just enough account persistence for login and registration."""

    def __init__(self, kv: KeyValueStore, verifier: CredentialVerifier) -> None:
        self.kv = kv
        self.verifier = verifier

    async def create_account(self, profile: AccountProfile) -> Result[Account, AuthFailure]:
        email = normalize_email(profile.email)
        if not email:
            raise ConstraintViolation("email is required", {"field": "email"})
        account = Account(
            id=str(uuid.uuid4()),
            email=email,
            password_hash=self.verifier.hash(profile.password),
            name=profile.name,
            address_line=profile.address_line,
            city=profile.city,
            province=profile.province,
            postal_code=profile.postal_code,
            country=profile.country,
        )
        # The email index is the uniqueness constraint; claim it first
        email_key = (USERS_BY_EMAIL_NAMESPACE, email)
        if not await self.kv.set_if_absent(email_key, account.id):
            logger.info("account_email_taken")
            return Err(AuthFailure.of(ErrorKind.CONFLICT, "email already registered"))
        try:
            await self.kv.set(
                (USERS_NAMESPACE, account.id),
                json.dumps(account.to_record(), separators=(",", ":")),
            )
        except BackendUnavailable:
            # Release the email so the address can be registered again
            if await self.kv.get(email_key) == account.id:
                await self.kv.delete(email_key)
            raise
        logger.info("account_created", user_id=account.id)
        return Ok(account)

    async def find_by_email(self, email: str) -> Optional[Account]:
        account_id = await self.kv.get((USERS_BY_EMAIL_NAMESPACE, normalize_email(email)))
        if account_id is None:
            return None
        raw = await self.kv.get((USERS_NAMESPACE, account_id))
        if raw is None:
            # Index claimed but the record write has not landed (or failed)
            return None
        return Account.from_record(json.loads(raw))
