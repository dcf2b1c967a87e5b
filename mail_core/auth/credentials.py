"""
Mailbox credential storage and OAuth token refresh.

The pool authenticates each owner's store and relay connections with the
credentials held here. Secrets (passwords and OAuth token bundles) are kept
encrypted in memory with Fernet (AES-128 in CBC mode with HMAC) and only
decrypted when a session is being created.
"""
import json
import logging
import threading
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional, Tuple

import requests
from cryptography.fernet import Fernet, InvalidToken

from mail_core import config
from mail_core.utils.errors import AuthenticationError, InvalidArgument, MailConnectionError


logger = logging.getLogger(__name__)


@dataclass(slots=True)
class TokenBundle:
    """Container for OAuth2 tokens."""
    access_token: str
    refresh_token: Optional[str]
    expires_at: Optional[datetime]

    def expires_within(self, seconds: float, now: Optional[datetime] = None) -> bool:
        """True if the access token is expired or will be within ``seconds``."""
        if self.expires_at is None:
            return False
        now = now or datetime.now(timezone.utc)
        return (self.expires_at - now).total_seconds() <= seconds


@dataclass(slots=True)
class MailboxCredentials:
    """Connection settings and secret for one mailbox owner."""
    owner_id: str
    email_address: str
    imap_host: str
    smtp_host: str
    display_name: str = ""
    imap_port: int = config.DEFAULT_IMAP_PORT
    smtp_port: int = config.DEFAULT_SMTP_PORT
    imap_ssl: bool = True
    username: Optional[str] = None
    password: Optional[str] = None
    token_bundle: Optional[TokenBundle] = None

    @property
    def login_name(self) -> str:
        return (self.username or self.email_address).strip()


class CredentialVault:
    """
    Thread-safe, in-memory credential store with encrypted secrets.

    Only the non-secret connection settings are held in clear text.
    """

    def __init__(self, key: Optional[bytes] = None):
        """
        Initialize the vault.

        Args:
            key: A Fernet key. Defaults to CREDENTIALS_KEY from config, or a
                freshly generated per-process key.
        """
        if key is None and config.CREDENTIALS_KEY:
            key = config.CREDENTIALS_KEY.encode('utf-8')
        try:
            self._cipher = Fernet(key or Fernet.generate_key())
        except (ValueError, TypeError) as e:
            raise InvalidArgument(f"Invalid credential vault key: {e}") from e
        self._lock = threading.Lock()
        self._entries: Dict[str, Tuple[MailboxCredentials, bytes]] = {}

    def register(self, credentials: MailboxCredentials) -> None:
        """Store (or replace) the credentials for an owner."""
        if not credentials.owner_id:
            raise InvalidArgument("Credentials must name an owner")
        if not credentials.password and not credentials.token_bundle:
            raise InvalidArgument(
                f"Credentials for {credentials.owner_id} need a password or a token bundle"
            )
        public = replace(credentials, password=None, token_bundle=None)
        secret = self._encrypt_secret(credentials.password, credentials.token_bundle)
        with self._lock:
            self._entries[credentials.owner_id] = (public, secret)

    def get(self, owner_id: str) -> MailboxCredentials:
        """
        Return decrypted credentials for an owner.

        Raises:
            AuthenticationError: If the owner is unknown or the secret cannot
                be decrypted.
        """
        with self._lock:
            entry = self._entries.get(owner_id)
        if entry is None:
            raise AuthenticationError(f"No mailbox credentials registered for owner {owner_id!r}")
        public, secret = entry
        password, token_bundle = self._decrypt_secret(owner_id, secret)
        return replace(public, password=password, token_bundle=token_bundle)

    def update_token(self, owner_id: str, token_bundle: TokenBundle) -> None:
        """Replace the stored token bundle after a refresh."""
        credentials = self.get(owner_id)
        credentials.token_bundle = token_bundle
        self.register(credentials)

    def remove(self, owner_id: str) -> None:
        with self._lock:
            self._entries.pop(owner_id, None)

    def __contains__(self, owner_id: object) -> bool:
        with self._lock:
            return owner_id in self._entries

    def _encrypt_secret(self, password: Optional[str], token_bundle: Optional[TokenBundle]) -> bytes:
        payload = {"password": password, "token": None}
        if token_bundle:
            payload["token"] = {
                "access_token": token_bundle.access_token,
                "refresh_token": token_bundle.refresh_token,
                "expires_at": token_bundle.expires_at.isoformat() if token_bundle.expires_at else None,
            }
        return self._cipher.encrypt(json.dumps(payload).encode('utf-8'))

    def _decrypt_secret(self, owner_id: str, secret: bytes) -> Tuple[Optional[str], Optional[TokenBundle]]:
        try:
            payload = json.loads(self._cipher.decrypt(secret).decode('utf-8'))
        except (InvalidToken, ValueError) as e:
            raise AuthenticationError(
                f"Stored credentials for owner {owner_id!r} could not be decrypted"
            ) from e

        token_bundle = None
        token_data = payload.get("token")
        if token_data:
            expires_at = None
            if token_data.get("expires_at"):
                expires_at = datetime.fromisoformat(token_data["expires_at"])
            token_bundle = TokenBundle(
                access_token=token_data["access_token"],
                refresh_token=token_data.get("refresh_token"),
                expires_at=expires_at,
            )
        return payload.get("password"), token_bundle


class OAuthTokenRefresher:
    """Refreshes expiring OAuth2 access tokens at the provider's token endpoint."""

    def __init__(
        self,
        token_endpoint: Optional[str] = None,
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
        timeout: float = 30,
        session: Optional[requests.Session] = None
    ):
        self.token_endpoint = token_endpoint or config.OAUTH_TOKEN_ENDPOINT
        self.client_id = client_id or config.OAUTH_CLIENT_ID
        self.client_secret = client_secret or config.OAUTH_CLIENT_SECRET
        self.timeout = timeout
        self.http = session or requests.Session()

    def refresh(self, token_bundle: TokenBundle) -> TokenBundle:
        """
        Exchange the refresh token for a new access token.

        Args:
            token_bundle: The current (expiring) token bundle.

        Returns:
            A new TokenBundle. The refresh token is carried over when the
            provider does not rotate it.

        Raises:
            AuthenticationError: If there is no refresh token or the provider
                rejects it.
            MailConnectionError: If the token endpoint cannot be reached.
        """
        if not token_bundle.refresh_token:
            raise AuthenticationError("Cannot refresh token: no refresh token available")
        if not self.client_id or not self.client_secret:
            raise AuthenticationError("OAuth client ID and secret must be configured to refresh tokens")

        token_data = {
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "refresh_token": token_bundle.refresh_token,
            "grant_type": "refresh_token",
        }
        try:
            response = self.http.post(self.token_endpoint, data=token_data, timeout=self.timeout)
        except requests.exceptions.Timeout as e:
            raise MailConnectionError(f"Token endpoint timed out: {e}") from e
        except requests.exceptions.RequestException as e:
            raise MailConnectionError(f"Token endpoint unreachable: {e}") from e

        if response.status_code in (400, 401):
            raise AuthenticationError(
                f"Token refresh rejected ({response.status_code}); the refresh token may be revoked"
            )
        try:
            response.raise_for_status()
        except requests.exceptions.HTTPError as e:
            raise MailConnectionError(f"Token refresh failed: {e}") from e

        payload = response.json()
        expires_at = datetime.now(timezone.utc) + timedelta(seconds=payload.get("expires_in", 3600))
        logger.info("Refreshed OAuth access token (expires %s)", expires_at.isoformat())
        return TokenBundle(
            access_token=payload["access_token"],
            refresh_token=payload.get("refresh_token", token_bundle.refresh_token),
            expires_at=expires_at,
        )
