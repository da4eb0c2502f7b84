"""
Agent package for the voice assistant.

Provides response generation, conversation memory and company knowledge.
"""

from .llm_client import (
    LLMConfig,
    LLMResponse,
    ResponseGenerationClient,
    SystemPromptTemplate,
)

from .memory import (
    ConversationTurn,
    ConversationHistory,
)

from .knowledge import KnowledgeBase

__all__ = [
    "LLMConfig",
    "LLMResponse",
    "ResponseGenerationClient",
    "SystemPromptTemplate",
    "ConversationTurn",
    "ConversationHistory",
    "KnowledgeBase",
]
