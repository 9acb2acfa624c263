"""EventSub WebSocket transport: frames, connector, recorder, subscriptions."""
