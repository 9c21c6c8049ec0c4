"""Choose the embedding backend from EMBEDDING_PROVIDER.

``openai``, ``ollama`` and ``placeholder`` select one backend and fail loudly
if it cannot be built. ``auto`` (the default) tries OpenAI when a key is set,
then Ollama when it is configured, and falls back to placeholder vectors.
"""

from __future__ import annotations

import os
from typing import Any, Callable, Dict

from avatarmem.embedding.provider import EmbeddingProvider

Builder = Callable[[int, str, float], EmbeddingProvider]


def _build_openai(vector_size: int, model: str, timeout: float) -> EmbeddingProvider:
    from avatarmem.embedding.openai import OpenAIEmbeddingProvider

    api_key = os.getenv("OPENAI_API_KEY")
    if not api_key:
        raise RuntimeError("EMBEDDING_PROVIDER=openai but OPENAI_API_KEY not set")
    return OpenAIEmbeddingProvider(
        api_key=api_key,
        model=model,
        dimension=vector_size,
        timeout=timeout,
        base_url=(os.getenv("OPENAI_BASE_URL") or "").strip() or None,
    )


def _build_ollama(vector_size: int, model: str, timeout: float) -> EmbeddingProvider:
    from avatarmem.embedding.ollama import OllamaEmbeddingProvider

    raw_timeout = os.getenv("OLLAMA_TIMEOUT")
    try:
        ollama_timeout = float(raw_timeout) if raw_timeout else timeout
    except ValueError as exc:
        raise RuntimeError(f"Invalid OLLAMA_TIMEOUT value: {raw_timeout!r}") from exc
    return OllamaEmbeddingProvider(
        base_url=os.getenv("OLLAMA_BASE_URL", "http://localhost:11434"),
        model=os.getenv("OLLAMA_MODEL", "nomic-embed-text"),
        dimension=vector_size,
        timeout=ollama_timeout,
    )


def _build_placeholder(vector_size: int, model: str, timeout: float) -> EmbeddingProvider:
    from avatarmem.embedding.placeholder import PlaceholderEmbeddingProvider

    return PlaceholderEmbeddingProvider(dimension=vector_size)


BUILDERS: Dict[str, Builder] = {
    "openai": _build_openai,
    "ollama": _build_ollama,
    "placeholder": _build_placeholder,
}

# Output sizes of common Ollama embedding models
OLLAMA_MODEL_DIMENSIONS = {
    "nomic-embed-text": 768,
    "mxbai-embed-large": 1024,
    "all-minilm": 384,
}


def _warn_on_ollama_dimension(logger: Any, vector_size: int) -> None:
    model = os.getenv("OLLAMA_MODEL", "nomic-embed-text")
    native = OLLAMA_MODEL_DIMENSIONS.get(model.split(":", 1)[0])
    if native is not None and native != vector_size:
        logger.warning(
            "Ollama model %s produces %dd vectors but VECTOR_SIZE is %d; "
            "every embedding will be rejected. Set VECTOR_SIZE=%d.",
            model,
            native,
            vector_size,
            native,
        )


# Candidates for "auto", each with the check that makes it worth trying
AUTO_ORDER = (
    ("openai", lambda: bool(os.getenv("OPENAI_API_KEY"))),
    ("ollama", lambda: bool(os.getenv("OLLAMA_BASE_URL") or os.getenv("OLLAMA_MODEL"))),
)


def init_embedding_provider(
    *,
    state: Any,
    logger: Any,
    vector_size_config: int,
    embedding_model: str,
    timeout: float,
) -> None:
    if state.embedding_provider is not None:
        return

    choice = (os.getenv("EMBEDDING_PROVIDER") or "auto").strip().lower()
    # Without Qdrant there is no collection dimension to defer to
    if state.qdrant is None:
        state.effective_vector_size = vector_size_config
    vector_size = state.effective_vector_size

    if choice in BUILDERS:
        try:
            state.embedding_provider = BUILDERS[choice](vector_size, embedding_model, timeout)
        except RuntimeError:
            raise
        except Exception as exc:
            raise RuntimeError(f"Failed to initialize {choice} embedding provider: {exc}") from exc
        if choice == "ollama":
            _warn_on_ollama_dimension(logger, vector_size)
        logger.info("Embedding provider: %s", state.embedding_provider.provider_name())
        return

    if choice != "auto":
        raise ValueError(
            f"Invalid EMBEDDING_PROVIDER={choice}. "
            f"Valid options: auto, {', '.join(BUILDERS)}"
        )

    for name, available in AUTO_ORDER:
        if not available():
            continue
        try:
            state.embedding_provider = BUILDERS[name](vector_size, embedding_model, timeout)
        except Exception as exc:
            logger.warning("Could not initialize %s embeddings, trying next: %s", name, exc)
            continue
        if name == "ollama":
            _warn_on_ollama_dimension(logger, vector_size)
        logger.info(
            "Embedding provider (auto-selected): %s", state.embedding_provider.provider_name()
        )
        return

    state.embedding_provider = _build_placeholder(vector_size, embedding_model, timeout)
    logger.warning(
        "Using placeholder embeddings (lexical overlap only). "
        "Set OPENAI_API_KEY or OLLAMA_BASE_URL for semantic recall."
    )
