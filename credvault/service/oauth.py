from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple
from urllib.parse import urlencode

import httpx

from credvault.config import Settings
from credvault.logging import get_logger
from credvault.service.errors import (
    AuthenticationError,
    NotFound,
    ServiceUnavailableError,
    TokenExpired,
    TokenInvalid,
    ValidationError,
)
from credvault.service.identity import PROVIDER_ADAPTERS, ExternalIdentity
from credvault.service.tokens import OAUTH_STATE, TokenCodec

logger = get_logger(__name__)

OAUTH_PROVIDERS = {
    "google": {
        "auth_url": "https://accounts.google.com/o/oauth2/v2/auth",
        "token_url": "https://oauth2.googleapis.com/token",
        "userinfo_url": "https://www.googleapis.com/oauth2/v2/userinfo",
        "scope": "openid email profile",
    },
    "github": {
        "auth_url": "https://github.com/login/oauth/authorize",
        "token_url": "https://github.com/login/oauth/access_token",
        "userinfo_url": "https://api.github.com/user",
        "emails_url": "https://api.github.com/user/emails",
        "scope": "read:user user:email",
    },
}


@dataclass
class AuthorizationRequest:
    provider: str
    authorization_url: str
    state: str


class OAuthClient:
    """Authorization-code flow against the supported identity providers.

    The ``state`` parameter is a short-lived signed token rather than a
    server-side record, so any replica can complete a flow another started.
    """

    def __init__(
        self,
        settings: Settings,
        codec: TokenCodec,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = 30.0,
    ) -> None:
        self.settings = settings
        self.codec = codec
        self._transport = transport
        self._timeout = timeout

    def _credentials(self, provider: str) -> Tuple[Optional[str], Optional[str]]:
        if provider == "google":
            return self.settings.oauth_google_client_id, self.settings.oauth_google_client_secret
        if provider == "github":
            return self.settings.oauth_github_client_id, self.settings.oauth_github_client_secret
        return None, None

    def _require_provider(self, provider: str) -> Dict[str, str]:
        config = OAUTH_PROVIDERS.get(provider)
        if not config:
            raise NotFound(f"unknown identity provider: {provider}")
        client_id, client_secret = self._credentials(provider)
        if not client_id or not client_secret or not self.settings.oauth_redirect_uri:
            logger.warning("oauth_not_configured", provider=provider)
            raise ServiceUnavailableError(f"{provider} sign-in is not configured")
        return config

    def _redirect_uri(self, provider: str) -> str:
        return self.settings.oauth_redirect_uri.replace("{provider}", provider)

    def authorization_url(self, provider: str) -> AuthorizationRequest:
        config = self._require_provider(provider)
        client_id, _ = self._credentials(provider)
        state = self.codec.issue_oauth_state(provider).token
        params = {
            "client_id": client_id,
            "redirect_uri": self._redirect_uri(provider),
            "response_type": "code",
            "scope": config["scope"],
            "state": state,
        }
        if provider == "google":
            params["prompt"] = "select_account"
        return AuthorizationRequest(
            provider=provider,
            authorization_url=f"{config['auth_url']}?{urlencode(params)}",
            state=state,
        )

    def verify_state(self, provider: str, state: Optional[str]) -> None:
        """Raises AuthenticationError unless ``state`` was minted for ``provider``."""
        if not state:
            raise AuthenticationError("missing oauth state")
        try:
            claims = self.codec.verify(state, token_type=OAUTH_STATE)
        except (TokenInvalid, TokenExpired) as exc:
            raise AuthenticationError("invalid or expired oauth state") from exc
        if claims.sub != provider:
            raise AuthenticationError("oauth state does not match provider")

    async def exchange_code(self, provider: str, code: str) -> ExternalIdentity:
        """Trade an authorization code for the provider's normalised identity.

        Raises:
            NotFound: unknown provider.
            ServiceUnavailableError: provider credentials are not configured.
            AuthenticationError: the provider rejected the code or returned
                an unusable profile.
        """
        config = self._require_provider(provider)
        if not code:
            raise ValidationError("missing authorization code")
        client_id, client_secret = self._credentials(provider)
        adapter = PROVIDER_ADAPTERS[provider]

        try:
            async with httpx.AsyncClient(
                timeout=self._timeout, follow_redirects=False, transport=self._transport
            ) as client:
                token_response = await client.post(
                    config["token_url"],
                    data={
                        "client_id": client_id,
                        "client_secret": client_secret,
                        "code": code,
                        "redirect_uri": self._redirect_uri(provider),
                        "grant_type": "authorization_code",
                    },
                    headers={"Accept": "application/json"},
                )
                token_response.raise_for_status()
                token_result = self._json(token_response, provider, "token")
                access_token = (
                    token_result.get("access_token") if isinstance(token_result, dict) else None
                )
                if not access_token:
                    logger.error("oauth_no_access_token", provider=provider)
                    raise AuthenticationError(f"{provider} rejected the authorization code")

                headers = {"Authorization": f"Bearer {access_token}"}
                if provider == "github":
                    headers["Accept"] = "application/vnd.github+json"
                userinfo_response = await client.get(config["userinfo_url"], headers=headers)
                userinfo_response.raise_for_status()
                userinfo = self._json(userinfo_response, provider, "userinfo")
                if not isinstance(userinfo, dict):
                    raise AuthenticationError(f"{provider} returned an invalid profile")

                emails: Optional[list] = None
                if provider == "github" and not userinfo.get("email"):
                    emails_response = await client.get(config["emails_url"], headers=headers)
                    if emails_response.status_code == 200:
                        payload = self._json(emails_response, provider, "emails")
                        emails = payload if isinstance(payload, list) else None
        except httpx.HTTPStatusError as exc:
            logger.error(
                "oauth_exchange_http_error",
                provider=provider,
                status_code=exc.response.status_code,
            )
            raise AuthenticationError(f"{provider} sign-in failed") from exc
        except httpx.HTTPError as exc:
            logger.error("oauth_exchange_transport_error", provider=provider, error=str(exc))
            raise AuthenticationError(f"{provider} sign-in failed") from exc

        try:
            identity = adapter.to_identity(userinfo, emails)
        except ValidationError as exc:
            raise AuthenticationError(exc.message) from exc
        logger.info("oauth_exchange_success", provider=provider)
        return identity

    @staticmethod
    def _json(response: httpx.Response, provider: str, stage: str) -> Any:
        try:
            return response.json()
        except ValueError as exc:
            logger.error("oauth_response_parse_error", provider=provider, stage=stage)
            raise AuthenticationError(f"{provider} returned an unreadable response") from exc
