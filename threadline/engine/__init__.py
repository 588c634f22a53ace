"""threadline engine: stream reconciliation for AI chat conversations."""
from .config import ClientConfig
from .errors import (
    AgentClientError,
    ConfigError,
    OverlayError,
    StreamError,
    SubFetchError,
    ThreadlineError,
)

__all__ = [
    # Core (lazy import keeps aiohttp out of model-only imports)
    "AgentClient",
    "ChatSession",
    "ConversationReconciler",
    "TurnToken",
    # Config
    "ClientConfig",
    "load_yaml_config",
    # Errors
    "AgentClientError",
    "ConfigError",
    "OverlayError",
    "StreamError",
    "SubFetchError",
    "ThreadlineError",
]


def __getattr__(name: str):
    if name == "AgentClient":
        from .agent_client import AgentClient
        return AgentClient
    if name == "ChatSession":
        from .chat_session import ChatSession
        return ChatSession
    if name == "ConversationReconciler":
        from .reconciler import ConversationReconciler
        return ConversationReconciler
    if name == "TurnToken":
        from .reconciler import TurnToken
        return TurnToken
    if name == "load_yaml_config":
        from .yaml_config import load_yaml_config
        return load_yaml_config
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
