"""AI client and chat orchestration."""

from .client import AIClient, AIStreamEvent, ClientSettings, OpenAIChatModel

__all__ = ["AIClient", "AIStreamEvent", "ClientSettings", "OpenAIChatModel"]
