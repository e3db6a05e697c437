"""Service layer orchestrations for kbchat."""

from .chat import ChatService, ChatTurn, ConversationLocks, ConversationView
from .generation import ChatModelFactory, ChatModelProvider, GenerationConfig, OllamaChatModel, OpenAIChatModel
from .rag import ContextBudget, PromptBuilder, PromptBuilderConfig, RAGConfig, RAGEngine

__all__ = [
    "ChatModelFactory",
    "ChatModelProvider",
    "ChatService",
    "ChatTurn",
    "ContextBudget",
    "ConversationLocks",
    "ConversationView",
    "GenerationConfig",
    "OllamaChatModel",
    "OpenAIChatModel",
    "PromptBuilder",
    "PromptBuilderConfig",
    "RAGConfig",
    "RAGEngine",
]
