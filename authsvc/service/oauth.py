from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional

import httpx

from authsvc.config import Settings
from authsvc.logging import get_logger
from authsvc.service.errors import BadRequestError

GOOGLE_AUTH_FAILED = "Failed to authenticate with Google"


@dataclass(frozen=True)
class ProviderTokens:
    access_token: str
    expires_in: Optional[int] = None
    refresh_token: Optional[str] = None
    scope: Optional[str] = None
    token_type: Optional[str] = None
    id_token: Optional[str] = None


@dataclass(frozen=True)
class ExternalIdentity:
    """Profile returned by the provider's userinfo endpoint."""

    subject: Optional[str]
    email: str
    email_verified: Optional[bool] = None
    name: Optional[str] = None
    given_name: Optional[str] = None
    family_name: Optional[str] = None
    picture: Optional[str] = None
    locale: Optional[str] = None


def _optional_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


class OAuthExchangeClient:
    """Authorization-code exchange and profile lookup against Google.

    Each call is a single attempt bounded by ``OAUTH_TIMEOUT_SECONDS``. Every
    failure surfaces as ``BadRequestError`` so callers see one error kind.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.settings = settings
        self.transport = transport
        self.logger = get_logger(__name__)

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self.settings.oauth_timeout_seconds,
            follow_redirects=False,
            transport=self.transport,
        )

    async def exchange_code(
        self, code: str, redirect_uri: Optional[str] = None
    ) -> ProviderTokens:
        effective_redirect = redirect_uri or self.settings.google_redirect_uri
        form = {
            "code": code,
            "client_id": self.settings.google_client_id,
            "client_secret": self.settings.google_client_secret,
            "redirect_uri": effective_redirect,
            "grant_type": "authorization_code",
        }
        try:
            async with self._client() as client:
                response = await client.post(
                    self.settings.google_token_uri,
                    data=form,
                    headers={"Accept": "application/json"},
                )
                response.raise_for_status()
                body = response.json()
        except httpx.HTTPStatusError as exc:
            self.logger.error(
                "oauth_token_exchange_http_error",
                status_code=exc.response.status_code,
            )
            raise BadRequestError(GOOGLE_AUTH_FAILED) from exc
        except (httpx.HTTPError, ValueError) as exc:
            self.logger.error("oauth_token_exchange_failed", error=str(exc))
            raise BadRequestError(GOOGLE_AUTH_FAILED) from exc

        access_token = body.get("access_token") if isinstance(body, dict) else None
        if not access_token:
            self.logger.error("oauth_no_access_token")
            raise BadRequestError(GOOGLE_AUTH_FAILED)

        expires_in = body.get("expires_in")
        self.logger.info("oauth_token_exchange_success")
        return ProviderTokens(
            access_token=str(access_token),
            expires_in=int(expires_in) if isinstance(expires_in, (int, float)) else None,
            refresh_token=_optional_str(body.get("refresh_token")),
            scope=_optional_str(body.get("scope")),
            token_type=_optional_str(body.get("token_type")),
            id_token=_optional_str(body.get("id_token")),
        )

    async def fetch_profile(self, access_token: str) -> ExternalIdentity:
        try:
            async with self._client() as client:
                response = await client.get(
                    self.settings.google_userinfo_uri,
                    headers={"Authorization": f"Bearer {access_token}"},
                )
                response.raise_for_status()
                body = response.json()
        except httpx.HTTPStatusError as exc:
            self.logger.error(
                "oauth_userinfo_http_error", status_code=exc.response.status_code
            )
            raise BadRequestError(GOOGLE_AUTH_FAILED) from exc
        except (httpx.HTTPError, ValueError) as exc:
            self.logger.error("oauth_userinfo_failed", error=str(exc))
            raise BadRequestError(GOOGLE_AUTH_FAILED) from exc

        if not isinstance(body, dict):
            self.logger.error("oauth_userinfo_invalid_format", type=type(body).__name__)
            raise BadRequestError(GOOGLE_AUTH_FAILED)
        email = _optional_str(body.get("email"))
        if not email:
            self.logger.error("oauth_identity_missing_email")
            raise BadRequestError(GOOGLE_AUTH_FAILED)

        verified = body.get("email_verified")
        if isinstance(verified, str):
            verified = verified.lower() == "true"
        identity = ExternalIdentity(
            subject=_optional_str(body.get("sub")),
            email=email,
            email_verified=verified if isinstance(verified, bool) else None,
            name=_optional_str(body.get("name")),
            given_name=_optional_str(body.get("given_name")),
            family_name=_optional_str(body.get("family_name")),
            picture=_optional_str(body.get("picture")),
            locale=_optional_str(body.get("locale")),
        )
        self.logger.info("oauth_userinfo_success", provider_uid=identity.subject)
        return identity
