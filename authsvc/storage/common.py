"""Helpers shared between the memory and postgres store implementations.

Keeping email normalization and record (de)serialization here guarantees both
backends agree on what "the same email" means and on the stored shape of a
user.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional

from authsvc.storage.models import (
    AccountTier,
    IdentityProvider,
    RevocationEntry,
    User,
)


def normalize_email(email: Optional[str]) -> str:
    """Canonical form used for every email compare and store: trimmed, lower-cased."""
    return (email or "").strip().lower()


def _as_aware(value: Any) -> datetime:
    if isinstance(value, str):
        value = datetime.fromisoformat(value)
    if not isinstance(value, datetime):
        raise ValueError(f"expected datetime, got {type(value).__name__}")
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def user_to_record(user: User) -> Dict[str, Any]:
    return {
        "id": user.id,
        "email": user.email,
        "password_digest": user.password_digest,
        "first_name": user.first_name,
        "last_name": user.last_name,
        "enabled": user.enabled,
        "account_tier": user.account_tier.value,
        "identity_provider": user.identity_provider.value,
        "external_provider_id": user.external_provider_id,
        "profile_picture_url": user.profile_picture_url,
        "created_at": user.created_at.isoformat(),
        "updated_at": user.updated_at.isoformat(),
    }


def user_from_record(row: Mapping[str, Any]) -> User:
    provider_raw = row.get("identity_provider") or IdentityProvider.LOCAL.value
    try:
        provider = IdentityProvider(provider_raw)
    except ValueError:
        # Rows written by an older provider naming ("GOOGLE") are external identities
        provider = IdentityProvider.EXTERNAL
    return User(
        id=str(row["id"]),
        email=row["email"],
        password_digest=row.get("password_digest"),
        first_name=row.get("first_name"),
        last_name=row.get("last_name"),
        enabled=bool(row.get("enabled", True)),
        account_tier=AccountTier(row.get("account_tier") or AccountTier.STANDARD.value),
        identity_provider=provider,
        external_provider_id=row.get("external_provider_id"),
        profile_picture_url=row.get("profile_picture_url"),
        created_at=_as_aware(row["created_at"]),
        updated_at=_as_aware(row.get("updated_at") or row["created_at"]),
    )


def revocation_to_record(entry: RevocationEntry) -> Dict[str, Any]:
    return {
        "token_id": entry.token_id,
        "subject_email": entry.subject_email,
        "expires_at": entry.expires_at.isoformat(),
        "revoked_at": entry.revoked_at.isoformat(),
    }


def revocation_from_record(row: Mapping[str, Any]) -> RevocationEntry:
    return RevocationEntry(
        token_id=row["token_id"],
        subject_email=row.get("subject_email"),
        expires_at=_as_aware(row["expires_at"]),
        revoked_at=_as_aware(row.get("revoked_at") or row["expires_at"]),
    )
