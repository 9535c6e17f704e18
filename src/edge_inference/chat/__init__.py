"""Chat sessions and retrieval-augmented generation."""

from .orchestrator import ChatResponse, RagOrchestrator, TokenStream
from .prompt import DEFAULT_CONTEXT_TEMPLATE, PromptBuilder, render_prompt
from .session import ChatMessage, ChatRole, ChatSession, SessionState

__all__ = [
    "ChatMessage",
    "ChatResponse",
    "ChatRole",
    "ChatSession",
    "DEFAULT_CONTEXT_TEMPLATE",
    "PromptBuilder",
    "RagOrchestrator",
    "SessionState",
    "TokenStream",
    "render_prompt",
]
