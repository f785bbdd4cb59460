"""Calls to the caller-owned OAuth backend.

The browser (or CLI) never holds the provider's client secret. Instead the
application exposes a small backend that adds the secret server-side:

    POST {base}/authorize   -> {authorizationUrl}
    POST {base}/callback    -> {sessionToken} or a provider token
    GET  {base}/status      -> {authorized, provider, scopes?, expiresAt?}
    POST {base}/disconnect  -> {success, provider}

Only the safe error/error_description fields of a failed response are ever
put into exception messages.
"""

import logging
from dataclasses import dataclass
from typing import Any
from urllib.parse import urlparse

import httpx

from ..errors import TokenExchangeError
from .pkce import CODE_CHALLENGE_METHOD
from .tokens import ProviderToken

logger = logging.getLogger(__name__)

DEFAULT_HTTP_TIMEOUT = 30.0  # seconds


@dataclass(frozen=True)
class OAuthEndpoints:
    """Backend endpoint locations.

    Attributes:
        base: Absolute base URL of the OAuth API (e.g. https://app.example.com/api/integrate/oauth)
        authorize_path: Path returning the provider authorization URL
        callback_path: Path exchanging the authorization code
        status_path: Path reporting authorization status
        disconnect_path: Path revoking a provider authorization
    """

    base: str
    authorize_path: str = "/authorize"
    callback_path: str = "/callback"
    status_path: str = "/status"
    disconnect_path: str = "/disconnect"

    def __post_init__(self) -> None:
        parsed = urlparse(self.base)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ValueError(f"OAuth API base must be an absolute http(s) URL, got {self.base!r}")

    def url(self, path: str) -> str:
        return f"{self.base.rstrip('/')}/{path.lstrip('/')}"

    @property
    def authorize_url(self) -> str:
        return self.url(self.authorize_path)

    @property
    def callback_url(self) -> str:
        return self.url(self.callback_path)

    @property
    def status_url(self) -> str:
        return self.url(self.status_path)

    @property
    def disconnect_url(self) -> str:
        return self.url(self.disconnect_path)


def _error_detail(response: httpx.Response) -> str:
    try:
        error_data = response.json()
        # Only extract safe error fields, not arbitrary response data
        return f": {error_data.get('error', '')} - {error_data.get('error_description', '')}"
    except Exception:
        # Don't include raw response body - it might contain tokens or secrets
        return ""


def _auth_headers(token: ProviderToken) -> dict[str, str]:
    return {
        "Authorization": token.get_auth_header(),
        "X-Session-Token": token.access_token,
    }


async def request_authorization_url(
    endpoints: OAuthEndpoints,
    provider: str,
    scopes: list[str],
    state: str,
    code_challenge: str,
    redirect_uri: str | None = None,
    http_client: httpx.AsyncClient | None = None,
) -> str:
    """Ask the backend for the provider's authorization URL.

    Args:
        endpoints: Backend endpoint locations
        provider: Provider id
        scopes: Requested scopes, in order
        state: State parameter for CSRF protection
        code_challenge: PKCE S256 code challenge
        redirect_uri: Optional redirect URI for the provider to call back
        http_client: Optional HTTP client

    Returns:
        The authorization URL to open

    Raises:
        TokenExchangeError: If the request fails
    """
    client = http_client or httpx.AsyncClient(timeout=DEFAULT_HTTP_TIMEOUT)
    should_close = http_client is None

    body: dict[str, Any] = {
        "provider": provider,
        "scopes": list(scopes),
        "state": state,
        "codeChallenge": code_challenge,
        "codeChallengeMethod": CODE_CHALLENGE_METHOD,
    }
    if redirect_uri:
        body["redirectUri"] = redirect_uri

    try:
        response = await client.post(endpoints.authorize_url, json=body)

        if response.status_code != 200:
            raise TokenExchangeError(
                f"Failed to get authorization URL (HTTP {response.status_code}){_error_detail(response)}",
                status_code=response.status_code,
            )

        try:
            data = response.json()
            authorization_url = data["authorizationUrl"]
        except (ValueError, KeyError, TypeError) as e:
            raise TokenExchangeError("Authorize response missing authorizationUrl") from e

        return str(authorization_url)

    except httpx.RequestError as e:
        raise TokenExchangeError(f"Network error requesting authorization URL: {e}") from e
    finally:
        if should_close:
            await client.aclose()


async def exchange_code_for_token(
    endpoints: OAuthEndpoints,
    provider: str,
    code: str,
    code_verifier: str,
    state: str,
    http_client: httpx.AsyncClient | None = None,
) -> ProviderToken:
    """Exchange an authorization code for a token through the backend.

    Args:
        endpoints: Backend endpoint locations
        provider: Provider id
        code: Authorization code from the callback
        code_verifier: PKCE code verifier from the pending flow
        state: State parameter of the pending flow
        http_client: Optional HTTP client

    Returns:
        The ProviderToken described by the backend response

    Raises:
        TokenExchangeError: If the exchange fails
    """
    client = http_client or httpx.AsyncClient(timeout=DEFAULT_HTTP_TIMEOUT)
    should_close = http_client is None

    try:
        response = await client.post(
            endpoints.callback_url,
            json={
                "provider": provider,
                "code": code,
                "codeVerifier": code_verifier,
                "state": state,
            },
        )

        if response.status_code != 200:
            raise TokenExchangeError(
                f"Token exchange failed (HTTP {response.status_code}){_error_detail(response)}",
                status_code=response.status_code,
            )

        try:
            return ProviderToken.from_callback_response(response.json())
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            raise TokenExchangeError("Token exchange response did not contain a token") from e

    except httpx.RequestError as e:
        raise TokenExchangeError(f"Network error during token exchange: {e}") from e
    finally:
        if should_close:
            await client.aclose()


async def fetch_auth_status(
    endpoints: OAuthEndpoints,
    provider: str,
    token: ProviderToken,
    http_client: httpx.AsyncClient | None = None,
) -> dict[str, Any] | None:
    """Ask the backend whether a provider is still authorized.

    Returns:
        The status document, or None if the backend could not be reached or
        answered with an error
    """
    client = http_client or httpx.AsyncClient(timeout=DEFAULT_HTTP_TIMEOUT)
    should_close = http_client is None

    try:
        response = await client.get(
            endpoints.status_url,
            params={"provider": provider},
            headers=_auth_headers(token),
        )

        if response.status_code != 200:
            logger.debug(f"Auth status check for {provider} returned HTTP {response.status_code}")
            return None

        data = response.json()
        return data if isinstance(data, dict) else None

    except (httpx.RequestError, ValueError) as e:
        logger.warning(f"Failed to check auth status for {provider}: {e}")
        return None
    finally:
        if should_close:
            await client.aclose()


async def revoke_provider(
    endpoints: OAuthEndpoints,
    provider: str,
    token: ProviderToken,
    http_client: httpx.AsyncClient | None = None,
) -> bool:
    """Ask the backend to revoke a provider authorization.

    Revocation is best-effort: failures are logged and reported as False
    so the caller can still clear local state.

    Returns:
        True if the backend confirmed the revocation
    """
    client = http_client or httpx.AsyncClient(timeout=DEFAULT_HTTP_TIMEOUT)
    should_close = http_client is None

    try:
        response = await client.post(
            endpoints.disconnect_url,
            json={"provider": provider},
            headers=_auth_headers(token),
        )

        if response.status_code in (200, 204):
            logger.debug(f"Revoked authorization for {provider}")
            return True

        logger.warning(f"Disconnect for {provider} failed (HTTP {response.status_code}){_error_detail(response)}")
        return False

    except httpx.RequestError as e:
        logger.warning(f"Network error during disconnect for {provider}: {e}")
        return False
    finally:
        if should_close:
            await client.aclose()
