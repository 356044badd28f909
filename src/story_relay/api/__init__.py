"""Public API surface for HTTP serving and Python-first interfaces."""

from story_relay.api.app import create_app
from story_relay.api.python_interface import AuthSession, LockDenied, StoryRelayClient

__all__ = [
    "AuthSession",
    "LockDenied",
    "StoryRelayClient",
    "create_app",
]
