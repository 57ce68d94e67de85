"""
OAuth2 authorization-code and refresh-token grants for Google and Microsoft.
"""

import asyncio
from datetime import timedelta
from typing import Dict, Any, Optional
from urllib.parse import urlencode

import aiohttp

from mailsync.config import settings
from mailsync.services.providers.base import AuthError, Credential, RateLimited, TransientNetwork
from mailsync.utils.datetime_utils import utc_now
from mailsync.utils.logging import get_logger

logger = get_logger("oauth")


class InvalidGrant(AuthError):
    """Refresh token or authorization code was revoked, expired or already used."""


def _provider_config(provider: str) -> Dict[str, Any]:
    if provider == "gmail":
        return {
            "authorize_url": "https://accounts.google.com/o/oauth2/v2/auth",
            "token_url": "https://oauth2.googleapis.com/token",
            "client_id": settings.google_client_id,
            "client_secret": settings.google_client_secret,
            "redirect_uri": settings.google_redirect_uri,
            "scope": "https://www.googleapis.com/auth/gmail.modify email",
            "extra": {"access_type": "offline", "prompt": "consent", "include_granted_scopes": "true"},
        }
    if provider == "outlook":
        base = f"https://login.microsoftonline.com/{settings.microsoft_tenant}/oauth2/v2.0"
        return {
            "authorize_url": f"{base}/authorize",
            "token_url": f"{base}/token",
            "client_id": settings.microsoft_client_id,
            "client_secret": settings.microsoft_client_secret,
            "redirect_uri": settings.microsoft_redirect_uri,
            "scope": "offline_access User.Read Mail.ReadWrite",
            "extra": {"response_mode": "query", "prompt": "select_account"},
        }
    raise ValueError(f"Provider {provider} does not use OAuth")


class OAuthClient:
    """Token endpoint client. One instance can serve both providers."""

    def __init__(self, session: Optional[aiohttp.ClientSession] = None):
        self.session = session

    def authorization_url(self, provider: str, state: str) -> str:
        config = _provider_config(provider)
        params = {
            "client_id": config["client_id"],
            "redirect_uri": config["redirect_uri"],
            "response_type": "code",
            "scope": config["scope"],
            "state": state,
        }
        params.update(config["extra"])
        return f"{config['authorize_url']}?{urlencode(params)}"

    async def exchange_code(self, provider: str, code: str) -> Credential:
        config = _provider_config(provider)
        data = await self._token_request(provider, {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": config["redirect_uri"],
        })
        return self._to_credential(data)

    async def refresh(self, provider: str, refresh_token: str) -> Credential:
        """
        Redeem a refresh token.

        Providers may rotate the refresh token; when the response omits one,
        the old token stays valid and is carried over.
        """
        data = await self._token_request(provider, {
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
        })
        credential = self._to_credential(data)
        if not credential.refresh_token:
            credential.refresh_token = refresh_token
        return credential

    def _to_credential(self, data: Dict[str, Any]) -> Credential:
        expires_in = data.get("expires_in")
        return Credential(
            kind="oauth2",
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token"),
            expires_at=utc_now() + timedelta(seconds=int(expires_in)) if expires_in else None,
            scope=data.get("scope"),
        )

    async def _token_request(self, provider: str, form: Dict[str, str]) -> Dict[str, Any]:
        config = _provider_config(provider)
        form = dict(form, client_id=config["client_id"], client_secret=config["client_secret"])

        session = self.session or aiohttp.ClientSession(
            timeout=aiohttp.ClientTimeout(total=settings.http_timeout_seconds)
        )
        try:
            async with session.post(config["token_url"], data=form) as response:
                return await self._handle_token_response(provider, response)
        except aiohttp.ClientError as e:
            raise TransientNetwork(f"token endpoint unreachable: {e}", provider) from e
        except asyncio.TimeoutError as e:
            raise TransientNetwork("token endpoint timed out", provider) from e
        finally:
            if self.session is None:
                await session.close()

    async def _handle_token_response(self, provider: str, response) -> Dict[str, Any]:
        if response.status == 200:
            return await response.json()

        if response.status == 429:
            raise RateLimited("token endpoint throttled", provider)
        if response.status >= 500:
            raise TransientNetwork(f"token endpoint error {response.status}", provider)

        try:
            body = await response.json()
        except (aiohttp.ContentTypeError, ValueError):
            body = {}
        error = body.get("error", "")
        logger.warning(f"{provider} token request rejected: {response.status} {error}")
        if error in ("invalid_grant", "invalid_client", "unauthorized_client", "interaction_required"):
            raise InvalidGrant(f"{provider} rejected the grant: {error}", provider)
        raise AuthError(f"{provider} token request failed: {response.status} {error}", provider)


oauth_client = OAuthClient()
