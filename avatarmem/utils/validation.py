"""Runtime validation utilities for avatarmem configuration."""

import logging
import os

logger = logging.getLogger("avatarmem.validation")


def get_effective_vector_size(qdrant_client=None, collection_name=None, vector_size=None):
    """
    Get the effective vector size, preferring existing collection dimension over config.

    By default this is strict: if an existing collection dimension differs from the
    configured size, we raise so stored fragments are never mixed with vectors of
    another size. Set VECTOR_SIZE_AUTODETECT=true to adopt the existing collection size.

    Args:
        qdrant_client: Optional QdrantClient instance. If None, returns config default.
        collection_name: Collection to inspect (default: QDRANT_COLLECTION)
        vector_size: Configured dimension (default: VECTOR_SIZE)

    Returns:
        tuple: (effective_dimension: int, source: str)
            - source is "collection" if detected from existing, "config" otherwise
    """
    from avatarmem.config import COLLECTION_NAME, VECTOR_SIZE

    configured = VECTOR_SIZE if vector_size is None else vector_size
    if qdrant_client is None:
        return configured, "config"

    collection_name = collection_name or COLLECTION_NAME
    if not qdrant_client.collection_exists(collection_name):
        # New installation, collection will be created with config dimension
        return configured, "config"

    collection_info = qdrant_client.get_collection(collection_name)
    collection_dim = collection_info.config.params.vectors.size

    if collection_dim != configured:
        allow_autodetect = os.getenv("VECTOR_SIZE_AUTODETECT", "false").lower() in {
            "1",
            "true",
            "yes",
            "on",
        }
        if allow_autodetect:
            logger.info(
                "Auto-detected existing collection dimension: %dd (config default: %dd). "
                "Using %dd because VECTOR_SIZE_AUTODETECT=true.",
                collection_dim,
                configured,
                collection_dim,
            )
            return collection_dim, "collection"

        raise ValueError(
            f"Vector dimension mismatch: collection={collection_dim}d, config={configured}d. "
            "Set VECTOR_SIZE to the existing dimension or set VECTOR_SIZE_AUTODETECT=true "
            "to adopt the collection dimension."
        )

    return collection_dim, "collection"
