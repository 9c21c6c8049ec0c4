from __future__ import annotations

import os
from typing import Any, Callable, Dict, Tuple

from avatarmem.stores.vector_store import SCOPE_FIELDS


def _client_options(timeout: float) -> Tuple[Dict[str, Any], str]:
    url = os.getenv("QDRANT_URL")
    if url:
        return {"url": url, "api_key": os.getenv("QDRANT_API_KEY"), "timeout": int(timeout)}, url
    path = os.getenv("QDRANT_PATH")
    if path == ":memory:":
        return {"location": ":memory:"}, "in-memory"
    if path:
        return {"path": path}, path
    return {}, ""


def init_qdrant(
    *,
    state: Any,
    logger: Any,
    qdrant_client_cls: Any,
    ensure_collection_fn: Callable[[], None],
    timeout: float,
) -> None:
    """Connect to Qdrant (server via QDRANT_URL, embedded via QDRANT_PATH).

    Any failure leaves ``state.qdrant`` unset: turns are then not remembered
    and reads raise, but the host keeps serving conversations.
    """
    if state.qdrant is not None:
        return

    options, target = _client_options(timeout)
    if not options:
        logger.info("Neither QDRANT_URL nor QDRANT_PATH set; memory store disabled")
        return

    try:
        logger.info("Opening Qdrant at %s", target)
        state.qdrant = qdrant_client_cls(**options)
        ensure_collection_fn()
    except ValueError:
        logger.exception("Qdrant collection does not match configuration; memory store disabled")
        state.qdrant = None
        return
    except Exception:  # pragma: no cover
        logger.exception("Failed to initialize Qdrant client")
        state.qdrant = None
        return
    logger.info("Qdrant ready (%s)", target)



def ensure_qdrant_collection(
    *,
    state: Any,
    logger: Any,
    collection_name: str,
    vector_size_config: int,
    get_effective_vector_size_fn: Callable[[Any], tuple[int, str]],
    vector_params_cls: Any,
    distance_enum: Any,
    payload_schema_type_enum: Any,
) -> None:
    """Create the fragment collection and its scope indexes if missing."""
    if state.qdrant is None:
        return

    effective_dim, source = get_effective_vector_size_fn(state.qdrant)
    state.effective_vector_size = effective_dim

    if source == "collection":
        logger.info(
            "Using existing collection dimension: %dd (config default: %dd)",
            effective_dim,
            vector_size_config,
        )
    else:
        logger.info("Using configured vector dimension: %dd", effective_dim)

    if not state.qdrant.collection_exists(collection_name):
        logger.info(
            "Creating Qdrant collection '%s' with %dd vectors",
            collection_name,
            effective_dim,
        )
        state.qdrant.create_collection(
            collection_name=collection_name,
            vectors_config=vector_params_cls(size=effective_dim, distance=distance_enum.COSINE),
        )

    logger.info("Ensuring Qdrant payload indexes for collection '%s'", collection_name)
    for field_name in SCOPE_FIELDS:
        state.qdrant.create_payload_index(
            collection_name=collection_name,
            field_name=field_name,
            field_schema=payload_schema_type_enum.KEYWORD,
        )
    state.qdrant.create_payload_index(
        collection_name=collection_name,
        field_name="created_ts",
        field_schema=payload_schema_type_enum.FLOAT,
    )
