"""Embedding providers for avatarmem.

Provides abstraction over different embedding backends:
- OpenAI (API-based, requires key)
- Ollama (local server)
- Placeholder (hash-based fallback)
"""

from .client import EmbeddingClient
from .ollama import OllamaEmbeddingProvider
from .openai import OpenAIEmbeddingProvider
from .placeholder import PlaceholderEmbeddingProvider
from .provider import EmbeddingProvider

__all__ = [
    "EmbeddingClient",
    "EmbeddingProvider",
    "OllamaEmbeddingProvider",
    "OpenAIEmbeddingProvider",
    "PlaceholderEmbeddingProvider",
]
