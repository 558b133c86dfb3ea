"""
BattleGym — External Service Clients

Connection management for the LLM providers, the notification webhook,
and Redis.
"""

from battlegym.clients.llm import (
    AnthropicProvider,
    LLMProvider,
    LLMResponse,
    Message,
    OpenAIProvider,
    create_llm_provider,
)
from battlegym.clients.notifier import Notifier, NullNotifier, SlackNotifier, create_notifier
from battlegym.clients.pricing import token_cost
from battlegym.clients.redis import RedisClient

__all__ = [
    "AnthropicProvider",
    "LLMProvider",
    "LLMResponse",
    "Message",
    "Notifier",
    "NullNotifier",
    "OpenAIProvider",
    "RedisClient",
    "SlackNotifier",
    "create_llm_provider",
    "create_notifier",
    "token_cost",
]
