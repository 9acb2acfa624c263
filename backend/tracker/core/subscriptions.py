from dataclasses import dataclass, field


@dataclass(frozen=True)
class SubscriptionSpec:
    type: str
    version: str
    condition: dict[str, str] = field(default_factory=dict)
    # channel.update needs the broadcaster's own token
    needs_user_token: bool = False


def get_channel_subscriptions(broadcaster_user_id: str) -> list[SubscriptionSpec]:
    """EventSub topics the tracker needs for one broadcaster."""
    condition = {"broadcaster_user_id": broadcaster_user_id}
    return [
        SubscriptionSpec("stream.online", "1", condition),
        SubscriptionSpec("stream.offline", "1", condition),
        SubscriptionSpec("channel.update", "2", condition, needs_user_token=True),
    ]
