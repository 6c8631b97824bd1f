"""AI transport, token counting and orchestration for termpilot."""

from .client import AIClient, ClientSettings
from .prompts import SystemPromptBuilder
from .utils.tokens import HeuristicCounter, TiktokenCounter, TokenCounterRegistry

__all__ = ["AIClient", "ClientSettings", "HeuristicCounter", "SystemPromptBuilder", "TiktokenCounter", "TokenCounterRegistry"]
