"""
Client-side synchronization model: reactive stores for auth, provider
registration and conversation logs, plus the transport and AI widget.
"""

from .api import ApiClient, ApiError, Unauthorized
from .auth import AuthStore
from .chat import ChatSession, ChatStore
from .provider import ProviderConfig, ProviderStore
from .transport import WebSocketTransport
from .widget import ByomWidget, NotAuthenticated

__all__ = [
    "ApiClient",
    "ApiError",
    "AuthStore",
    "ByomWidget",
    "ChatSession",
    "ChatStore",
    "NotAuthenticated",
    "ProviderConfig",
    "ProviderStore",
    "Unauthorized",
    "WebSocketTransport",
]
