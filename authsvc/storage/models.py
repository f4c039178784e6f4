from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AccountTier(str, Enum):
    """Coarse entitlement level. STANDARD can view charts, VIP unlocks model analyses."""

    STANDARD = "STANDARD"
    VIP = "VIP"


class IdentityProvider(str, Enum):
    """Which credential path is authoritative for a user."""

    LOCAL = "LOCAL"
    EXTERNAL = "EXTERNAL"


@dataclass
class User:
    id: str
    email: str
    password_digest: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    enabled: bool = True
    account_tier: AccountTier = AccountTier.STANDARD
    identity_provider: IdentityProvider = IdentityProvider.LOCAL
    external_provider_id: Optional[str] = None
    profile_picture_url: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(
        cls,
        email: str,
        *,
        password_digest: Optional[str] = None,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        identity_provider: IdentityProvider = IdentityProvider.LOCAL,
        external_provider_id: Optional[str] = None,
        profile_picture_url: Optional[str] = None,
    ) -> "User":
        now = utcnow()
        return cls(
            id=str(uuid.uuid4()),
            email=email,
            password_digest=password_digest,
            first_name=first_name,
            last_name=last_name,
            identity_provider=identity_provider,
            external_provider_id=external_provider_id,
            profile_picture_url=profile_picture_url,
            created_at=now,
            updated_at=now,
        )

    @property
    def has_password(self) -> bool:
        return bool(self.password_digest)


@dataclass
class RevocationEntry:
    """A denylisted token, keyed by the fingerprint of the raw token string."""

    token_id: str
    subject_email: Optional[str]
    expires_at: datetime
    revoked_at: datetime = field(default_factory=utcnow)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.expires_at <= (now or utcnow())
