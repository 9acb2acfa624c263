"""Issues EventSub subscriptions for a freshly welcomed session."""

from __future__ import annotations

import logging
from typing import Protocol

from tracker.core.subscriptions import SubscriptionSpec, get_channel_subscriptions
from tracker.errors import TwitchAPIError

LOGGER = logging.getLogger("Tracker.EventSub")


class SubscriptionAPI(Protocol):
    async def create_eventsub_subscription(
        self,
        sub_type: str,
        version: str,
        condition: dict[str, str],
        session_id: str,
        *,
        token: str | None = None,
    ) -> bool: ...


class SubscriptionManager:
    """Creates the tracker's subscriptions; "already exists" counts as success."""

    def __init__(
        self,
        api: SubscriptionAPI,
        broadcaster_id: str,
        *,
        user_token: str | None = None,
    ) -> None:
        self.api = api
        self.broadcaster_id = broadcaster_id
        self.user_token = user_token or None

    async def ensure(self, session_id: str) -> dict[str, bool]:
        """Subscribe every topic on *session_id*; return topic -> ok."""
        results: dict[str, bool] = {}
        for spec in get_channel_subscriptions(self.broadcaster_id):
            results[spec.type] = await self._subscribe(spec, session_id)
        return results

    async def _subscribe(self, spec: SubscriptionSpec, session_id: str) -> bool:
        token = None
        if spec.needs_user_token:
            if not self.user_token:
                LOGGER.warning(f"{spec.type} not subscribed: no broadcaster user token configured")
                return False
            token = self.user_token

        try:
            created = await self.api.create_eventsub_subscription(
                spec.type, spec.version, spec.condition, session_id, token=token
            )
        except TwitchAPIError as e:
            LOGGER.warning(f"Subscribe failed for {spec.type}: {e}")
            return False

        if created:
            LOGGER.info(f"Subscribed {spec.type} v{spec.version}")
        else:
            LOGGER.info(f"Subscription {spec.type} already exists")
        return True
