"""
Salla OAuth Client
Talks to Salla's identity provider and Admin API
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional
from urllib.parse import urlencode

import httpx

from app.config import settings

logger = logging.getLogger(__name__)

IDENTITY_STATUS_CODES = {400, 401, 403}


class SallaAPIError(Exception):
    """Error from Salla."""

    def __init__(self, message: str, status_code: int = None, response: dict = None):
        self.message = message
        self.status_code = status_code
        self.response = response or {}
        super().__init__(message)


class SallaIdentityError(SallaAPIError):
    """Salla rejected the grant or the access token; the merchant must re-consent."""


class SallaTransportError(SallaAPIError):
    """Network failure, timeout, rate limit or 5xx from Salla."""


@dataclass
class TokenResponse:
    """Tokens issued by the Salla token endpoint."""

    access_token: str
    refresh_token: Optional[str]
    expires_in: Any
    scope: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "TokenResponse":
        access_token = payload.get("access_token")
        if not access_token:
            raise SallaIdentityError("Token response did not include an access token", response=payload)
        return cls(
            access_token=access_token,
            refresh_token=payload.get("refresh_token"),
            expires_in=payload.get("expires_in", payload.get("expires")),
            scope=payload.get("scope"),
            raw=payload,
        )


class SallaClient:
    """
    Client for the Salla OAuth2 provider.

    Only the operations the app needs are exposed: building the
    authorization URL, the two token grants, the resource owner lookup and
    authenticated Admin API calls.
    """

    def __init__(
        self,
        client_id: str = None,
        client_secret: str = None,
        redirect_uri: str = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.client_id = client_id or settings.salla_client_id
        self.client_secret = client_secret or settings.salla_client_secret
        self.redirect_uri = redirect_uri or settings.salla_redirect_uri
        self.auth_url = settings.salla_auth_url.rstrip("/")
        self.api_url = settings.salla_api_url.rstrip("/")
        self._transport = transport

    def _http(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=settings.http_timeout_seconds,
            transport=self._transport,
            headers={"Accept": "application/json"},
        )

    @staticmethod
    def _error_payload(response: httpx.Response) -> dict:
        try:
            data = response.json()
        except ValueError:
            return {"body": response.text}
        return data if isinstance(data, dict) else {"body": data}

    async def _send(self, method: str, url: str, identity: bool, **kwargs) -> Dict[str, Any]:
        """
        Make a request and classify failures.

        Args:
            method: HTTP method
            url: Absolute URL
            identity: Whether 400/401/403 mean the credentials were rejected

        Raises:
            SallaIdentityError: Credentials or grant rejected
            SallaTransportError: Network error, timeout, 429 or 5xx
            SallaAPIError: Any other error response
        """
        try:
            async with self._http() as client:
                response = await client.request(method, url, **kwargs)
        except httpx.TimeoutException:
            raise SallaTransportError("Request timeout", status_code=504)
        except httpx.RequestError as e:
            raise SallaTransportError(f"Request failed: {str(e)}", status_code=503)

        if response.status_code == 429 or response.status_code >= 500:
            raise SallaTransportError(
                f"Salla unavailable: {response.status_code}",
                status_code=response.status_code,
                response=self._error_payload(response),
            )

        if response.status_code >= 400:
            error_data = self._error_payload(response)
            message = (
                error_data.get("error_description")
                or error_data.get("error")
                or error_data.get("message")
                or f"API error: {response.status_code}"
            )
            if isinstance(message, dict):
                message = message.get("message", f"API error: {response.status_code}")
            # An expired or revoked access token is an identity failure anywhere
            rejected = response.status_code == 401 or (
                identity and response.status_code in IDENTITY_STATUS_CODES
            )
            error_cls = SallaIdentityError if rejected else SallaAPIError
            raise error_cls(str(message), status_code=response.status_code, response=error_data)

        if response.status_code == 204:
            return {}

        return response.json()

    # ============== Authorization ==============

    def get_authorization_url(self, state: str) -> str:
        """Build the URL the merchant is sent to for consent."""
        params = {
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "response_type": "code",
            "scope": settings.salla_scopes,
            "state": state,
        }
        return f"{self.auth_url}/oauth2/auth?{urlencode(params)}"

    async def _token_grant(self, data: Dict[str, str]) -> TokenResponse:
        payload = await self._send(
            "POST",
            f"{self.auth_url}/oauth2/token",
            identity=True,
            data={
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                **data,
            },
        )
        return TokenResponse.from_payload(payload)

    async def exchange_code(self, code: str) -> TokenResponse:
        """Exchange an authorization code for tokens."""
        return await self._token_grant(
            {
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": self.redirect_uri,
                "scope": settings.salla_scopes,
            }
        )

    async def refresh(self, refresh_token: str) -> TokenResponse:
        """Exchange a refresh token for a new token pair."""
        if not refresh_token:
            raise SallaIdentityError("No refresh token available")
        return await self._token_grant(
            {
                "grant_type": "refresh_token",
                "refresh_token": refresh_token,
                "redirect_uri": self.redirect_uri,
            }
        )

    # ============== Resources ==============

    async def get_resource_owner(self, access_token: str) -> Dict[str, Any]:
        """
        Get the merchant user and store behind an access token.

        Salla wraps the owner in a "data" envelope; the unwrapped dict is
        returned (id, name, email, mobile, role, created_at, merchant{...}).
        """
        payload = await self._send(
            "GET",
            f"{self.auth_url}/oauth2/user/info",
            identity=True,
            headers={"Authorization": f"Bearer {access_token}"},
        )
        return payload.get("data", payload)

    async def fetch_resource(
        self,
        method: str,
        url: str,
        access_token: str,
        **options,
    ) -> Dict[str, Any]:
        """
        Make an authenticated Admin API request.

        Args:
            method: HTTP method
            url: Absolute URL or a path relative to the Admin API base
            access_token: Decrypted access token
            **options: Passed to httpx (json, params, headers)
        """
        if not url.startswith(("http://", "https://")):
            url = f"{self.api_url}/{url.lstrip('/')}"

        headers = dict(options.pop("headers", None) or {})
        headers["Authorization"] = f"Bearer {access_token}"
        return await self._send(method, url, identity=False, headers=headers, **options)
