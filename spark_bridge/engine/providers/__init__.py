"""Clients for the external services the bridge drives."""
from .codex_session import CallContext, CodexSession
from .image_generator import ImageGenerator
from .jsonrpc import JsonRpcStdioSession

__all__ = [
    "CallContext",
    "CodexSession",
    "ImageGenerator",
    "JsonRpcStdioSession",
]
