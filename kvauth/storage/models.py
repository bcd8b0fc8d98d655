from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _serialize_datetime(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat()


def _deserialize_datetime(raw: str) -> datetime:
    parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass
class Account:
    id: str
    email: str
    password_hash: str
    name: str = ""
    address_line: str = ""
    city: str = ""
    province: str = ""
    postal_code: str = ""
    country: str = ""
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def to_record(self) -> Dict:
        return {
            "id": self.id,
            "email": self.email,
            "password_hash": self.password_hash,
            "name": self.name,
            "address_line": self.address_line,
            "city": self.city,
            "province": self.province,
            "postal_code": self.postal_code,
            "country": self.country,
            "created_at": _serialize_datetime(self.created_at),
            "updated_at": _serialize_datetime(self.updated_at),
        }

    @classmethod
    def from_record(cls, data: Dict) -> "Account":
        return cls(
            id=str(data["id"]),
            email=data["email"],
            password_hash=data["password_hash"],
            name=data.get("name", ""),
            address_line=data.get("address_line", ""),
            city=data.get("city", ""),
            province=data.get("province", ""),
            postal_code=data.get("postal_code", ""),
            country=data.get("country", ""),
            created_at=_deserialize_datetime(data["created_at"]),
            updated_at=_deserialize_datetime(data["updated_at"]),
        )


@dataclass
class AccountProfile:
    """Registration input; the password is plaintext until the account store hashes it."""

    email: str
    password: str
    name: str = ""
    address_line: str = ""
    city: str = ""
    province: str = ""
    postal_code: str = ""
    country: str = ""


@dataclass
class AuthSession:
    id: str
    user_id: str
    refresh_tokens_deny_list: List[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(cls, user_id: str) -> "AuthSession":
        now = utcnow()
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            refresh_tokens_deny_list=[],
            created_at=now,
            updated_at=now,
        )

    def is_denied(self, refresh_token: str) -> bool:
        return refresh_token in self.refresh_tokens_deny_list

    def to_record(self) -> Dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "refresh_tokens_deny_list": list(self.refresh_tokens_deny_list),
            "created_at": _serialize_datetime(self.created_at),
            "updated_at": _serialize_datetime(self.updated_at),
        }

    @classmethod
    def from_record(cls, data: Dict) -> "AuthSession":
        return cls(
            id=str(data["id"]),
            user_id=str(data["user_id"]),
            refresh_tokens_deny_list=list(data.get("refresh_tokens_deny_list") or []),
            created_at=_deserialize_datetime(data["created_at"]),
            updated_at=_deserialize_datetime(data["updated_at"]),
        )


class TokenKind(str, Enum):
    ACCESS = "access"
    REFRESH = "refresh"


@dataclass(frozen=True)
class TokenClaims:
    user_id: str
    session_id: str
    exp: int
    nbf: int
    iat: int

    def to_payload(self) -> Dict:
        return {
            "user_id": self.user_id,
            "session_id": self.session_id,
            "exp": self.exp,
            "nbf": self.nbf,
            "iat": self.iat,
        }


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str


@dataclass(frozen=True)
class LoginResult:
    user_id: str
    session_id: str
    tokens: TokenPair
