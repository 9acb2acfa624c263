"""Twitch Helix client.

Token types:
- App Access Token: users, streams and the stream.online/offline
  subscriptions. Auto-fetched and cached.
- Broadcaster User Token: the channel.update subscription. Acquired and
  refreshed outside this service; handed in as a plain string.
"""

import asyncio
import logging
import time

import httpx

from shared.models.segments import LiveStatus
from tracker.errors import TwitchAPIError
from tracker.eventsub.messages import parse_timestamp

logger = logging.getLogger(__name__)

HELIX_BASE = "https://api.twitch.tv/helix"
OAUTH_BASE = "https://id.twitch.tv/oauth2"


class TwitchAPIClient:
    """Client for the handful of Helix endpoints the tracker needs.

    Shares one httpx client for connection reuse and caches the app
    access token. Every request carries the client timeout.
    """

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        *,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        if not client_id or not client_secret:
            raise ValueError("Twitch client_id and client_secret are required")

        self.client_id = client_id
        self.client_secret = client_secret
        self._http = httpx.AsyncClient(timeout=timeout, transport=transport)

        self._app_token: str | None = None
        self._app_token_expires_at: float = 0.0
        self._app_token_lock = asyncio.Lock()

    async def close(self) -> None:
        await self._http.aclose()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _headers(self, token: str) -> dict[str, str]:
        return {"Authorization": f"Bearer {token}", "Client-Id": self.client_id}

    async def _ensure_app_token(self) -> str | None:
        """Return a cached app access token, refreshing only when expired."""
        now = time.monotonic()
        if self._app_token and now < self._app_token_expires_at:
            return self._app_token

        async with self._app_token_lock:
            now = time.monotonic()
            if self._app_token and now < self._app_token_expires_at:
                return self._app_token

            try:
                response = await self._http.post(
                    f"{OAUTH_BASE}/token",
                    data={
                        "client_id": self.client_id,
                        "client_secret": self.client_secret,
                        "grant_type": "client_credentials",
                    },
                )
            except httpx.HTTPError as e:
                logger.error(f"App token request failed: {type(e).__name__}: {e}")
                return None

            if response.status_code != 200:
                logger.error(f"Failed to get app token: {response.status_code}")
                return None

            data = response.json()
            self._app_token = data.get("access_token")
            # Refresh one minute early
            expires_in = data.get("expires_in", 0)
            self._app_token_expires_at = now + max(expires_in - 60, 0)
            return self._app_token

    async def _helix_get(
        self,
        path: str,
        params: dict | None = None,
        *,
        token: str | None = None,
    ) -> httpx.Response | None:
        """GET request to Helix. Uses the app token when *token* is None."""
        if token is None:
            token = await self._ensure_app_token()
            if not token:
                return None
        try:
            return await self._http.get(
                f"{HELIX_BASE}/{path}",
                params=params,
                headers=self._headers(token),
            )
        except httpx.HTTPError as e:
            logger.warning(f"Helix GET /{path} failed: {type(e).__name__}: {e}")
            return None

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    async def get_user_by_login(self, login: str) -> dict[str, str] | None:
        """Look up a user by login name."""
        response = await self._helix_get("users", {"login": login})
        if not response or response.status_code != 200:
            logger.error(f"Failed to fetch user: login={login}")
            return None

        users = response.json().get("data", [])
        if not users:
            logger.warning(f"No user found for login: {login}")
            return None

        user = users[0]
        return {
            "id": str(user.get("id")),
            "login": user.get("login") or login,
            "display_name": user.get("display_name") or login,
        }

    # ------------------------------------------------------------------
    # Streams
    # ------------------------------------------------------------------

    async def get_live_status(self, broadcaster_id: str) -> LiveStatus | None:
        """Current live state of a broadcaster.

        Returns ``None`` when the status could not be determined; callers
        must not read that as "offline".
        """
        response = await self._helix_get("streams", {"user_id": broadcaster_id})
        if not response or response.status_code != 200:
            if response is not None:
                logger.warning(f"Failed to fetch streams: {response.status_code}")
            return None

        streams = response.json().get("data", [])
        if not streams:
            return LiveStatus(is_live=False)

        stream = streams[0]
        return LiveStatus(
            is_live=True,
            stream_id=str(stream["id"]) if stream.get("id") else None,
            started_at=parse_timestamp(stream.get("started_at")),
            category_id=str(stream["game_id"]) if stream.get("game_id") else None,
            category_name=stream.get("game_name") or None,
            broadcaster_name=stream.get("user_login") or None,
        )

    # ------------------------------------------------------------------
    # EventSub
    # ------------------------------------------------------------------

    async def create_eventsub_subscription(
        self,
        sub_type: str,
        version: str,
        condition: dict[str, str],
        session_id: str,
        *,
        token: str | None = None,
    ) -> bool:
        """Create a websocket-transport subscription.

        Returns True when created, False when it already existed (HTTP 409).
        Raises TwitchAPIError for any other failure.
        """
        if token is None:
            token = await self._ensure_app_token()
            if not token:
                raise TwitchAPIError("No app access token available")

        body = {
            "type": sub_type,
            "version": version,
            "condition": condition,
            "transport": {"method": "websocket", "session_id": session_id},
        }
        try:
            response = await self._http.post(
                f"{HELIX_BASE}/eventsub/subscriptions",
                json=body,
                headers=self._headers(token),
            )
        except httpx.HTTPError as e:
            raise TwitchAPIError(f"Subscribe {sub_type} failed: {type(e).__name__}: {e}") from e

        if response.status_code == 409:
            return False
        if response.status_code not in (200, 202):
            raise TwitchAPIError(
                f"Subscribe {sub_type} failed ({response.status_code}): {response.text}",
                status_code=response.status_code,
            )
        return True
