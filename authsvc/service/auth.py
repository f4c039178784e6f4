from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Protocol

from authsvc.logging import get_logger
from authsvc.service.errors import (
    AuthenticationError,
    BadRequestError,
    ConflictError,
    NotFoundError,
)
from authsvc.service.oauth import ExternalIdentity, OAuthExchangeClient
from authsvc.service.passwords import CredentialHasher
from authsvc.service.revocation import RevocationStore
from authsvc.service.tokens import ACCESS, REFRESH, TokenService
from authsvc.storage.common import normalize_email
from authsvc.storage.errors import ConstraintViolation
from authsvc.storage.models import (
    AccountTier,
    IdentityProvider,
    User,
)

logger = get_logger(__name__)

INVALID_CREDENTIALS = "Invalid email or password"
INVALID_REFRESH = "Invalid or expired refresh token"


class UserDirectory(Protocol):
    def find_by_email(self, email: str) -> Optional[User]: ...

    def exists_by_email(self, email: str) -> bool: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def save(self, user: User) -> User: ...


@dataclass(frozen=True)
class UserSummary:
    id: str
    email: str
    first_name: Optional[str]
    last_name: Optional[str]
    account_tier: AccountTier
    identity_provider: IdentityProvider
    profile_picture_url: Optional[str]

    @classmethod
    def from_user(cls, user: User) -> "UserSummary":
        return cls(
            id=user.id,
            email=user.email,
            first_name=user.first_name,
            last_name=user.last_name,
            account_tier=user.account_tier,
            identity_provider=user.identity_provider,
            profile_picture_url=user.profile_picture_url,
        )


@dataclass(frozen=True)
class UserProfile(UserSummary):
    enabled: bool = True
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_user(cls, user: User) -> "UserProfile":
        return cls(
            id=user.id,
            email=user.email,
            first_name=user.first_name,
            last_name=user.last_name,
            account_tier=user.account_tier,
            identity_provider=user.identity_provider,
            profile_picture_url=user.profile_picture_url,
            enabled=user.enabled,
            created_at=user.created_at,
            updated_at=user.updated_at,
        )


@dataclass(frozen=True)
class Session:
    access_token: str
    refresh_token: str
    expires_in: int
    user: UserSummary
    token_type: str = "Bearer"


@dataclass(frozen=True)
class AuthContext:
    email: str
    user_id: Optional[str]
    token: str


class AuthService:
    """Authenticates credentials, reconciles external identities and issues sessions.

    Holds no per-request state: every operation names its subject explicitly
    and the stores provide their own consistency.
    """

    def __init__(
        self,
        store: UserDirectory,
        tokens: TokenService,
        hasher: CredentialHasher,
        revocations: RevocationStore,
        oauth: Optional[OAuthExchangeClient] = None,
    ) -> None:
        self.store = store
        self.tokens = tokens
        self.hasher = hasher
        self.revocations = revocations
        self.oauth = oauth
        self.logger = logger

    def _issue_session(self, user: User) -> Session:
        return Session(
            access_token=self.tokens.issue_access(user),
            refresh_token=self.tokens.issue_refresh(user),
            expires_in=self.tokens.access_ttl_seconds(),
            user=UserSummary.from_user(user),
        )

    def _require_user(self, email: str) -> User:
        user = self.store.find_by_email(email)
        if not user:
            raise NotFoundError("User not found")
        return user

    async def register(
        self,
        email: str,
        password: str,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
    ) -> Session:
        normalized = normalize_email(email)
        if self.store.exists_by_email(normalized):
            raise ConflictError("Email already exists")
        user = User.new(
            normalized,
            password_digest=self.hasher.hash(password),
            first_name=first_name,
            last_name=last_name,
            identity_provider=IdentityProvider.LOCAL,
        )
        try:
            user = self.store.save(user)
        except ConstraintViolation as exc:
            raise ConflictError("Email already exists", detail=exc.detail) from exc
        self.logger.info("user_registered", user_id=user.id)
        return self._issue_session(user)

    async def login(self, email: str, password: str) -> Session:
        user = self.store.find_by_email(email)
        if not user or not user.enabled or not user.has_password:
            self.logger.info("login_rejected", reason="unknown_or_disabled")
            raise AuthenticationError(INVALID_CREDENTIALS)
        if not self.hasher.verify(password, user.password_digest):
            self.logger.info("login_rejected", reason="password_mismatch", user_id=user.id)
            raise AuthenticationError(INVALID_CREDENTIALS)
        if self.hasher.needs_rehash(user.password_digest):
            user.password_digest = self.hasher.hash(password)
            user = self.store.save(user)
        self.logger.info("login_succeeded", user_id=user.id)
        return self._issue_session(user)

    async def refresh(self, refresh_token: str) -> Session:
        claims = self.tokens.verify(refresh_token, expected_type=REFRESH)
        if not claims:
            raise AuthenticationError(INVALID_REFRESH)
        if await self.revocations.exists_by_token(refresh_token):
            self.logger.info("refresh_token_revoked", user_id=claims.user_id)
            raise AuthenticationError(INVALID_REFRESH)
        user = self.store.find_by_email(claims.subject)
        if not user or not user.enabled:
            raise AuthenticationError(INVALID_REFRESH)
        return self._issue_session(user)

    async def change_password(
        self,
        email: str,
        current_password: str,
        new_password: str,
        confirm_password: str,
    ) -> None:
        if new_password != confirm_password:
            raise BadRequestError("New password and confirm password do not match")
        user = self._require_user(email)
        if not self.hasher.verify(current_password, user.password_digest):
            raise BadRequestError("Current password is incorrect")
        user.password_digest = self.hasher.hash(new_password)
        self.store.save(user)
        self.logger.info("password_changed", user_id=user.id)

    async def logout(self, token: Optional[str]) -> None:
        """Revoke ``token`` until its natural expiry. Never raises."""
        try:
            claims = self.tokens.verify(token)
            if not claims:
                # Nothing to revoke; logout still succeeds
                self.logger.debug("logout_token_unparseable")
                return
            await self.revocations.revoke_token(
                token, subject_email=claims.subject, expires_at=claims.expires_at
            )
        except Exception as exc:
            self.logger.warning(
                "logout_revocation_failed", error_type=type(exc).__name__, error=str(exc)
            )
            return
        self.logger.info("token_revoked", user_id=claims.user_id, kind=claims.token_type)

    async def is_revoked(self, token: str) -> bool:
        return await self.revocations.exists_by_token(token)

    async def get_profile(self, email: str) -> UserProfile:
        return UserProfile.from_user(self._require_user(email))

    async def upgrade_tier(self, email: str, requested_tier: AccountTier) -> UserProfile:
        user = self._require_user(email)
        requested = AccountTier(requested_tier)
        if user.account_tier == AccountTier.VIP and requested == AccountTier.VIP:
            raise BadRequestError("Account is already VIP")
        previous = user.account_tier
        user.account_tier = requested
        user = self.store.save(user)
        self.logger.info(
            "account_tier_changed",
            user_id=user.id,
            previous=previous.value,
            current=user.account_tier.value,
        )
        return UserProfile.from_user(user)

    async def login_with_external_provider(
        self, authorization_code: str, redirect_uri: Optional[str] = None
    ) -> Session:
        if not self.oauth:
            raise BadRequestError("External login is not configured")
        provider_tokens = await self.oauth.exchange_code(authorization_code, redirect_uri)
        identity = await self.oauth.fetch_profile(provider_tokens.access_token)
        email = normalize_email(identity.email)
        if not email:
            raise BadRequestError("Failed to authenticate with Google")

        existing = self.store.find_by_email(email)
        if existing is not None and not existing.enabled:
            self.logger.info("external_login_rejected", reason="disabled", user_id=existing.id)
            raise AuthenticationError("Account is disabled")
        if existing is None:
            user = self._create_external_user(email, identity)
        else:
            user = self._reconcile_existing_user(existing, identity)
        if not user.enabled:
            raise AuthenticationError("Account is disabled")
        return self._issue_session(user)

    def _create_external_user(self, email: str, identity: ExternalIdentity) -> User:
        user = User.new(
            email,
            first_name=identity.given_name or "",
            last_name=identity.family_name or "",
            identity_provider=IdentityProvider.EXTERNAL,
            external_provider_id=identity.subject,
            profile_picture_url=identity.picture,
        )
        try:
            user = self.store.save(user)
        except ConstraintViolation:
            # Lost a first-login race; continue with the record that won
            winner = self.store.find_by_email(email)
            if winner is None:
                raise
            self.logger.info("external_user_create_race", user_id=winner.id)
            return self._reconcile_existing_user(winner, identity)
        self.logger.info("external_user_created", user_id=user.id)
        return user

    def _reconcile_existing_user(self, user: User, identity: ExternalIdentity) -> User:
        if user.identity_provider == IdentityProvider.EXTERNAL:
            updated = False
            if identity.picture and identity.picture != user.profile_picture_url:
                user.profile_picture_url = identity.picture
                updated = True
            if not user.external_provider_id and identity.subject:
                user.external_provider_id = identity.subject
                updated = True
            if updated:
                user = self.store.save(user)
            self.logger.info("external_user_login", user_id=user.id, profile_updated=updated)
            return user

        # Local account with the same email: link, keeping the password digest
        user.external_provider_id = identity.subject
        user.profile_picture_url = identity.picture
        if not user.first_name:
            user.first_name = identity.given_name
        if not user.last_name:
            user.last_name = identity.family_name
        user.identity_provider = IdentityProvider.EXTERNAL
        user = self.store.save(user)
        self.logger.info(
            "external_identity_linked", user_id=user.id, has_password=user.has_password
        )
        return user

    def extract_bearer(self, header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        lower = header.lower()
        if not lower.startswith("bearer "):
            return None
        token = header.split(" ", 1)[1].strip()
        return token or None

    async def authenticate(self, authorization: Optional[str]) -> Optional[AuthContext]:
        token = self.extract_bearer(authorization)
        if not token:
            return None
        claims = self.tokens.verify(token, expected_type=ACCESS)
        if not claims:
            return None
        if await self.revocations.exists_by_token(token):
            self.logger.info("access_token_revoked", user_id=claims.user_id)
            return None
        return AuthContext(email=claims.subject, user_id=claims.user_id, token=token)
