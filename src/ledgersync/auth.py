# ABOUTME: Authentication module for the ledger store
# ABOUTME: Handles password-grant login, session persistence, and the HTTP client

import json
import logging
from pathlib import Path
from typing import Any

import httpx

from ledgersync.config import Settings
from ledgersync.exceptions import (
    AuthenticationError,
    CredentialsNotFoundError,
    SessionExpiredError,
)

logger = logging.getLogger(__name__)


def get_credentials(settings: Settings) -> tuple[str, str]:
    """Get store login credentials from settings."""
    if settings.email and settings.password:
        return settings.email, settings.password
    raise CredentialsNotFoundError(
        "Store credentials not found. Set LEDGER_EMAIL/LEDGER_PASSWORD or LEDGER_ACCESS_TOKEN."
    )


def load_session(path: Path) -> dict | None:
    """Load saved session from disk."""
    if not path.exists():
        return None

    try:
        with open(path) as f:
            session = json.load(f)
        logger.debug("Loaded existing session from disk")
        return session
    except (json.JSONDecodeError, IOError) as e:
        logger.warning(f"Failed to load session file: {e}")
        return None


def save_session(path: Path, session: dict) -> None:
    """Save session data to disk with restricted permissions."""
    path.parent.mkdir(parents=True, exist_ok=True)

    with open(path, "w") as f:
        json.dump(session, f)

    path.chmod(0o600)
    logger.debug("Saved session to disk")


def clear_session(path: Path) -> None:
    """Remove saved session from disk."""
    if path.exists():
        path.unlink()
        logger.debug("Cleared session from disk")


class StoreSession:
    """
    Manages an authenticated session with the ledger store.

    Signs in with the password grant to obtain a JWT. Without credentials
    the project API key is used as the bearer token (anonymous access).
    """

    def __init__(
        self,
        settings: Settings,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.settings = settings
        self._transport = transport
        self._client: httpx.AsyncClient | None = None
        self._session_data: dict | None = None

    @property
    def access_token(self) -> str:
        if self._session_data and self._session_data.get("access_token"):
            return self._session_data["access_token"]
        return self.settings.api_key

    @property
    def user(self) -> dict:
        if self._session_data:
            return self._session_data.get("user") or {}
        return {}

    def _base_headers(self) -> dict[str, str]:
        return {
            "apikey": self.settings.api_key,
            "Accept": "application/json",
        }

    async def login(self) -> None:
        """Authenticate with the store's password grant."""
        email, password = get_credentials(self.settings)

        logger.info("Logging in to ledger store...")

        async with httpx.AsyncClient(
            base_url=self.settings.api_url,
            timeout=30.0,
            transport=self._transport,
        ) as client:
            response = await client.post(
                "/auth/v1/token",
                params={"grant_type": "password"},
                json={"email": email, "password": password},
                headers=self._base_headers(),
            )

        if response.status_code != 200:
            raise AuthenticationError(
                f"Login failed with status {response.status_code}: {response.text}"
            )

        data = response.json()
        token = data.get("access_token")
        if not token:
            raise AuthenticationError("Login response did not contain an access token")

        self._session_data = {
            "access_token": token,
            "refresh_token": data.get("refresh_token"),
            "user": data.get("user") or {},
        }
        await self._reset_client()
        logger.info(f"Successfully logged in to ledger store as {email}")

    async def is_valid(self) -> bool:
        """Check if the current session is still valid."""
        if not self._session_data or not self._session_data.get("access_token"):
            return False

        try:
            client = self._get_client()
            response = await client.get("/auth/v1/user")
        except httpx.HTTPError as e:
            logger.debug(f"Session validation failed: {e}")
            return False
        if response.status_code != 200:
            return False
        self._session_data["user"] = response.json()
        return True

    async def ensure_authenticated(self) -> None:
        """Ensure we have a usable session."""
        if self.settings.access_token:
            self._session_data = {"access_token": self.settings.access_token, "user": {}}
            await self.is_valid()
            return

        if not (self.settings.email and self.settings.password):
            logger.info("No store credentials configured, using anonymous API key")
            self._session_data = None
            return

        self._session_data = load_session(self.settings.session_file)
        if self._session_data:
            if await self.is_valid():
                logger.info("Using cached session")
                return
            await self._reset_client()

        logger.info("Cached session invalid, performing fresh login")
        await self.login()
        save_session(self.settings.session_file, self._session_data or {})

    def _get_client(self) -> httpx.AsyncClient:
        """Get or create the authenticated HTTP client."""
        if self._client is None:
            if not self.settings.api_url:
                raise AuthenticationError("LEDGER_API_URL is not configured")

            self._client = httpx.AsyncClient(
                base_url=self.settings.api_url,
                timeout=30.0,
                headers={
                    **self._base_headers(),
                    "Authorization": f"Bearer {self.access_token}",
                },
                transport=self._transport,
            )
        return self._client

    async def _reset_client(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    async def request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        """Make an authenticated request against the store API."""
        client = self._get_client()
        response = await client.request(method, path, **kwargs)
        if response.status_code == 401 and self._session_data:
            raise SessionExpiredError(f"Store session rejected on {method} {path}")
        return response

    async def reset(self) -> None:
        """Forget the current session, on disk and in memory."""
        clear_session(self.settings.session_file)
        self._session_data = None
        await self._reset_client()

    async def close(self) -> None:
        """Close the HTTP client."""
        await self._reset_client()
