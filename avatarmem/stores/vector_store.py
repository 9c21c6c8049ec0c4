from __future__ import annotations

from typing import Any

from qdrant_client import models as qdrant_models

from avatarmem.errors import InvalidScope
from avatarmem.scope import ScopeKey

# Payload fields that partition the collection; every filter pins all three
SCOPE_FIELDS = ("owner_user_id", "avatar_id", "relationship_token")


def _build_scope_filter(scope: Any) -> qdrant_models.Filter:
    """Build the mandatory scope-equality filter for a ``ScopeKey``.

    Every read and delete against the collection goes through this filter; a
    caller cannot pass raw identifiers or drop a clause.
    """
    if not isinstance(scope, ScopeKey):
        raise InvalidScope(
            "Store operations require a resolved ScopeKey",
            context={"received": type(scope).__name__},
        )

    payload = scope.as_payload()
    return qdrant_models.Filter(
        must=[
            qdrant_models.FieldCondition(
                key=field_name,
                match=qdrant_models.MatchValue(value=payload[field_name]),
            )
            for field_name in SCOPE_FIELDS
        ]
    )
