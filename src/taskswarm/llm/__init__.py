"""LLM provider interfaces."""

from .provider import (
    LLMProvider,
    OllamaProvider,
    PromptContext,
    StaticResponseProvider,
    as_llm_callback,
    as_reasoner,
)

__all__ = [
    "LLMProvider",
    "PromptContext",
    "StaticResponseProvider",
    "OllamaProvider",
    "as_llm_callback",
    "as_reasoner",
]
