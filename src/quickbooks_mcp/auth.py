"""OAuth2 authentication for the QuickBooks Online API.

This module handles the refresh-token grant with in-memory access-token
caching (TokenManager), and the interactive authorization code flow used
once to obtain a refresh token (run_auth_flow).
"""

import asyncio
import ipaddress
import logging
import os
import secrets
import ssl
import webbrowser
from collections.abc import Callable
from datetime import datetime, timedelta
from http.server import BaseHTTPRequestHandler, HTTPServer
from pathlib import Path
from threading import Thread
from typing import Any
from urllib.parse import parse_qs, urlencode, urlparse

import httpx
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID

from quickbooks_mcp.exceptions import AuthenticationError
from quickbooks_mcp.models import AccessToken, Credentials

logger = logging.getLogger(__name__)

# Environment-specific API hosts
API_BASE_URLS = {
    "sandbox": "https://sandbox-quickbooks.api.intuit.com",
    "production": "https://quickbooks.api.intuit.com",
}

TOKEN_URL = "https://oauth.platform.intuit.com/oauth2/v1/tokens/bearer"
AUTHORIZATION_URL = "https://appcenter.intuit.com/connect/oauth2"
ACCOUNTING_SCOPE = "com.intuit.quickbooks.accounting"

DEFAULT_REDIRECT_URI = "http://localhost:3000/callback"


def get_base_url(environment: str = "sandbox") -> str:
    """Get the API host for a specific environment.

    Args:
        environment: 'sandbox' or 'production'.

    Returns:
        Base URL for the environment.

    Raises:
        ValueError: If environment is not supported.
    """
    if environment not in API_BASE_URLS:
        raise ValueError(
            f"Unsupported environment: {environment}. Use 'sandbox' or 'production'."
        )
    return API_BASE_URLS[environment]


def _token_error(response: httpx.Response, action: str) -> AuthenticationError:
    """Build an AuthenticationError carrying the authorization server's reply."""
    code = None
    try:
        code = response.json().get("error")
    except ValueError:
        pass
    return AuthenticationError(
        f"{action} failed ({response.status_code}): {response.text}",
        code=code,
    )


class TokenManager:
    """Access-token cache backed by the refresh-token grant.

    The token is refreshed lazily: get_valid_token() only talks to the
    authorization server when no token is cached or the cached one has
    reached its expiry instant. Concurrent callers share a single in-flight
    refresh, so a rotated refresh token is never raced.
    """

    SAFETY_MARGIN_SECONDS = 60
    TIMEOUT = 30.0  # seconds

    def __init__(
        self,
        credentials: Credentials,
        http_client: httpx.AsyncClient | None = None,
        token_url: str = TOKEN_URL,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        """Initialize the token manager.

        Args:
            credentials: Shared credentials; refresh_token is updated in place.
            http_client: Optional client to send the token request with. A
                short-lived client is created per refresh when omitted.
            token_url: OAuth2 token endpoint.
            clock: Returns the current time (injectable for tests).
        """
        self.credentials = credentials
        self.token_url = token_url
        self._http_client = http_client
        self._clock = clock
        self._token: AccessToken | None = None
        self._refresh_task: asyncio.Task[AccessToken] | None = None

    @property
    def token(self) -> AccessToken | None:
        """Currently cached access token, if any."""
        return self._token

    def invalidate(self, access_token: str | None = None) -> None:
        """Drop the cached access token so the next call refreshes.

        Args:
            access_token: The token that was rejected. When given, the cache
                is only cleared if it still holds that token, so a token
                refreshed by a concurrent request survives.
        """
        if access_token is not None and (
            self._token is None or self._token.access_token != access_token
        ):
            return
        self._token = None

    async def get_valid_token(self) -> str:
        """Get a valid access token, refreshing if necessary.

        Returns:
            Bearer token string.

        Raises:
            AuthenticationError: If the refresh exchange fails.
        """
        token = self._token
        if token is not None and not token.is_expired(self._clock()):
            return token.access_token

        if self._refresh_task is None:
            logger.debug("Access token missing or expired, refreshing...")
            self._refresh_task = asyncio.ensure_future(self._refresh())
            self._refresh_task.add_done_callback(self._clear_refresh_task)

        # shield: one cancelled caller must not cancel the shared refresh
        token = await asyncio.shield(self._refresh_task)
        return token.access_token

    def _clear_refresh_task(self, task: "asyncio.Task[AccessToken]") -> None:
        if self._refresh_task is task:
            self._refresh_task = None

    async def _refresh(self) -> AccessToken:
        """Exchange the refresh token for a new access token.

        Raises:
            AuthenticationError: If the authorization server rejects the
                request or cannot be reached.
        """
        try:
            if self._http_client is not None and not self._http_client.is_closed:
                response = await self._post_refresh(self._http_client)
            else:
                async with httpx.AsyncClient(timeout=self.TIMEOUT) as client:
                    response = await self._post_refresh(client)
        except httpx.HTTPError as e:
            logger.error(f"Token refresh request failed: {e}")
            raise AuthenticationError(f"Token refresh request failed: {e}") from e

        if response.status_code != 200:
            logger.error(f"Token refresh failed: {response.status_code}")
            raise _token_error(response, "Token refresh")

        try:
            data = response.json()
            access_token = data["access_token"]
            expires_in = int(data.get("expires_in", 3600))
            new_refresh_token = data.get("refresh_token")
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            logger.error("Token refresh returned an invalid response")
            raise AuthenticationError(
                f"Token refresh returned an invalid response: {response.text}"
            ) from e
        if not isinstance(access_token, str) or not access_token:
            raise AuthenticationError(
                f"Token refresh returned an invalid response: {response.text}"
            )

        issued_at = self._clock()
        token = AccessToken(
            access_token=access_token,
            expires_at=issued_at + timedelta(seconds=expires_in - self.SAFETY_MARGIN_SECONDS),
        )

        if new_refresh_token and new_refresh_token != self.credentials.refresh_token:
            # The previous refresh token stops working once a new one is issued
            self.credentials.refresh_token = new_refresh_token
            logger.info("Refresh token rotated by authorization server")

        self._token = token
        logger.debug(f"Access token refreshed, valid until {token.expires_at.isoformat()}")
        return token

    async def _post_refresh(self, client: httpx.AsyncClient) -> httpx.Response:
        return await client.post(
            self.token_url,
            data={
                "grant_type": "refresh_token",
                "refresh_token": self.credentials.refresh_token,
            },
            auth=(self.credentials.client_id, self.credentials.client_secret),
            headers={"Accept": "application/json"},
        )


# =============================================================================
# Authorization code flow (one-off refresh token retrieval)
# =============================================================================


def get_authorization_url(
    client_id: str,
    redirect_uri: str = DEFAULT_REDIRECT_URI,
    state: str | None = None,
) -> tuple[str, str]:
    """Generate the Intuit OAuth2 authorization URL.

    Args:
        client_id: Intuit OAuth2 client ID.
        redirect_uri: Callback URL registered for the app.
        state: Optional state parameter for CSRF protection.

    Returns:
        Tuple of (authorization_url, state).
    """
    if state is None:
        state = secrets.token_urlsafe(32)

    params = {
        "client_id": client_id,
        "scope": ACCOUNTING_SCOPE,
        "redirect_uri": redirect_uri,
        "response_type": "code",
        "state": state,
    }
    return f"{AUTHORIZATION_URL}?{urlencode(params)}", state


async def exchange_code(
    client_id: str,
    client_secret: str,
    code: str,
    redirect_uri: str = DEFAULT_REDIRECT_URI,
    http_client: httpx.AsyncClient | None = None,
) -> dict[str, Any]:
    """Exchange an authorization code for access and refresh tokens.

    Returns:
        Token response with access_token, refresh_token and expires_in.

    Raises:
        AuthenticationError: If the token exchange fails.
    """
    request = {
        "data": {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": redirect_uri,
        },
        "auth": (client_id, client_secret),
        "headers": {"Accept": "application/json"},
    }
    try:
        if http_client is not None:
            response = await http_client.post(TOKEN_URL, **request)
        else:
            async with httpx.AsyncClient(timeout=TokenManager.TIMEOUT) as client:
                response = await client.post(TOKEN_URL, **request)
    except httpx.HTTPError as e:
        raise AuthenticationError(f"Token exchange request failed: {e}") from e

    if response.status_code != 200:
        logger.error(f"Token exchange failed: {response.status_code}")
        raise _token_error(response, "Authorization code exchange")

    return response.json()


def get_or_create_ssl_cert(storage_dir: Path | None = None) -> tuple[Path, Path]:
    """Get or create a self-signed SSL certificate for localhost.

    Only needed when the registered redirect URI is https://localhost.

    Args:
        storage_dir: Directory to store certificate files.

    Returns:
        Tuple of (cert_path, key_path).
    """
    if storage_dir is None:
        storage_dir = Path.home() / ".quickbooks_mcp"
    storage_dir.mkdir(parents=True, exist_ok=True)

    cert_path = storage_dir / "localhost.crt"
    key_path = storage_dir / "localhost.key"

    # Return existing certificate if still valid
    if cert_path.exists() and key_path.exists():
        try:
            cert = x509.load_pem_x509_certificate(cert_path.read_bytes())
            if cert.not_valid_after_utc > datetime.now(cert.not_valid_after_utc.tzinfo):
                return cert_path, key_path
        except ValueError:
            logger.info("Existing certificate is unreadable, regenerating")

    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)

    subject = issuer = x509.Name([
        x509.NameAttribute(NameOID.ORGANIZATION_NAME, "quickbooks-mcp"),
        x509.NameAttribute(NameOID.COMMON_NAME, "localhost"),
    ])

    cert = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(issuer)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(datetime.now())
        .not_valid_after(datetime.now() + timedelta(days=365))
        .add_extension(
            x509.SubjectAlternativeName([
                x509.DNSName("localhost"),
                x509.IPAddress(ipaddress.IPv4Address("127.0.0.1")),
            ]),
            critical=False,
        )
        .sign(key, hashes.SHA256())
    )

    key_path.write_bytes(
        key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.TraditionalOpenSSL,
            encryption_algorithm=serialization.NoEncryption(),
        )
    )
    key_path.chmod(0o600)
    cert_path.write_bytes(cert.public_bytes(serialization.Encoding.PEM))

    logger.info(f"Generated self-signed certificate at {cert_path}")
    return cert_path, key_path


class CallbackHandler(BaseHTTPRequestHandler):
    """HTTP request handler for the OAuth2 callback."""

    callback_path = "/callback"
    authorization_code: str | None = None
    realm_id: str | None = None
    state: str | None = None
    error: str | None = None

    def log_message(self, format: str, *args: Any) -> None:
        """Suppress HTTP server logging."""
        pass

    def do_GET(self) -> None:
        """Handle GET request from OAuth2 callback."""
        parsed = urlparse(self.path)

        if parsed.path != self.callback_path:
            self.send_error(404)
            return

        params = parse_qs(parsed.query)

        if "error" in params:
            CallbackHandler.error = params["error"][0]
            self._send_response("Authorization failed. You can close this window.")
            return

        if "code" not in params:
            self._send_response("No authorization code received. Please try again.")
            return

        CallbackHandler.authorization_code = params["code"][0]
        CallbackHandler.realm_id = params.get("realmId", [None])[0]
        CallbackHandler.state = params.get("state", [None])[0]
        self._send_response(
            "QuickBooks authorization received! You can close this window and return to the terminal."
        )

    def _send_response(self, message: str) -> None:
        """Send HTML response to browser."""
        self.send_response(200)
        self.send_header("Content-type", "text/html")
        self.end_headers()

        html = f"""
        <!DOCTYPE html>
        <html>
        <head><title>QuickBooks Authorization</title></head>
        <body style="font-family: sans-serif; text-align: center; padding-top: 50px;">
            <h1>{message}</h1>
        </body>
        </html>
        """
        self.wfile.write(html.encode())


def format_env_lines(
    client_id: str,
    client_secret: str,
    tokens: dict[str, Any],
    realm_id: str | None,
    environment: str,
) -> list[str]:
    """Render the .env lines for the newly obtained credentials."""
    return [
        f'QUICKBOOKS_CLIENT_ID="{client_id}"',
        f'QUICKBOOKS_CLIENT_SECRET="{client_secret}"',
        f'QUICKBOOKS_REFRESH_TOKEN="{tokens["refresh_token"]}"',
        f'QUICKBOOKS_COMPANY_ID="{realm_id or ""}"',
        f'QUICKBOOKS_ENVIRONMENT="{environment}"',
    ]


async def run_auth_flow() -> dict[str, Any]:
    """Run the interactive OAuth2 authorization code flow.

    This function:
    1. Starts a local server for the callback (HTTPS with a self-signed
       certificate when the redirect URI is https://localhost)
    2. Opens the browser to the Intuit consent page
    3. Waits for the user to authorize
    4. Exchanges the authorization code for tokens
    5. Prints the .env values to use

    Returns:
        Token response from the authorization server.

    Raises:
        AuthenticationError: If authorization fails.
        ValueError: If required environment variables are missing.
    """
    from dotenv import load_dotenv

    load_dotenv()

    client_id = os.getenv("QUICKBOOKS_CLIENT_ID")
    client_secret = os.getenv("QUICKBOOKS_CLIENT_SECRET")
    environment = os.getenv("QUICKBOOKS_ENVIRONMENT", "sandbox")
    redirect_uri = os.getenv("QUICKBOOKS_REDIRECT_URI", DEFAULT_REDIRECT_URI)

    if not client_id or not client_secret:
        raise ValueError(
            "Missing QUICKBOOKS_CLIENT_ID or QUICKBOOKS_CLIENT_SECRET. "
            "Please set them in .env file."
        )

    # Reset handler state
    CallbackHandler.authorization_code = None
    CallbackHandler.realm_id = None
    CallbackHandler.state = None
    CallbackHandler.error = None

    parsed_redirect = urlparse(redirect_uri)
    CallbackHandler.callback_path = parsed_redirect.path or "/callback"
    is_localhost = parsed_redirect.hostname in ("localhost", "127.0.0.1")
    port = parsed_redirect.port or (443 if parsed_redirect.scheme == "https" else 80)

    server = HTTPServer(("localhost", port), CallbackHandler)

    if is_localhost and parsed_redirect.scheme == "https":
        cert_path, key_path = get_or_create_ssl_cert()
        ssl_context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
        ssl_context.load_cert_chain(certfile=cert_path, keyfile=key_path)
        server.socket = ssl_context.wrap_socket(server.socket, server_side=True)

    server_thread = Thread(target=server.handle_request, daemon=True)
    server_thread.start()

    auth_url, expected_state = get_authorization_url(client_id, redirect_uri)
    print("\nOpening browser for QuickBooks authorization...")
    print(f"If the browser doesn't open, visit: {auth_url}")

    if is_localhost and parsed_redirect.scheme == "https":
        print("\nNote: Your browser may show a security warning for the self-signed")
        print("certificate. Click 'Advanced' and 'Proceed to localhost' to continue.")
    elif not is_localhost:
        print(f"\nUsing external callback: {redirect_uri}")
        print(f"Make sure your tunnel (e.g., ngrok http {port}) is running!")

    print("")
    webbrowser.open(auth_url)

    print("Waiting for authorization...")
    server_thread.join(timeout=120)  # 2 minute timeout
    server.server_close()

    if CallbackHandler.error:
        raise AuthenticationError(f"OAuth2 error: {CallbackHandler.error}")

    if CallbackHandler.authorization_code is None:
        raise AuthenticationError("Authorization timeout or cancelled")

    if CallbackHandler.state != expected_state:
        raise AuthenticationError("State mismatch - possible CSRF attack")

    print("Exchanging authorization code for tokens...")
    tokens = await exchange_code(
        client_id, client_secret, CallbackHandler.authorization_code, redirect_uri
    )

    print("\nAuthorization successful! Copy these values to your .env file:\n")
    for line in format_env_lines(
        client_id, client_secret, tokens, CallbackHandler.realm_id, environment
    ):
        print(line)
    print(f"\nAccess token expires in {tokens.get('expires_in')} seconds.")
    return tokens


def main() -> None:
    """CLI entry point for obtaining a refresh token."""
    try:
        asyncio.run(run_auth_flow())
    except KeyboardInterrupt:
        print("\nAuthorization cancelled.")
    except Exception as e:
        print(f"\nError: {e}")
        raise SystemExit(1) from e


if __name__ == "__main__":
    main()
