"""Request relaying: body replay and credential failover."""

from __future__ import annotations

from key_relay.proxy.body import BodyBranch, BroadcastBody
from key_relay.proxy.dispatcher import RequestDispatcher

__all__ = ["BodyBranch", "BroadcastBody", "RequestDispatcher"]
