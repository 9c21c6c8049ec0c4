"""Isolation keys for memory fragments.

A fragment belongs to exactly one ``ScopeKey``: the avatar owner, the avatar,
and the sharing relationship that produced it (``"owner"`` when the owner is
talking to their own avatar). Every store operation takes a ``ScopeKey``; raw
identifiers never reach the query layer.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Optional

from avatarmem.config import OWNER_RELATIONSHIP
from avatarmem.errors import InvalidScope

MAX_IDENTIFIER_LENGTH = 128


def _clean_identifier(value: Optional[str], field_name: str) -> str:
    if not isinstance(value, str):
        raise InvalidScope(f"'{field_name}' must be a non-empty string", context={"field": field_name})
    cleaned = value.strip()
    if not cleaned:
        raise InvalidScope(f"'{field_name}' is required", context={"field": field_name})
    if len(cleaned) > MAX_IDENTIFIER_LENGTH:
        raise InvalidScope(
            f"'{field_name}' exceeds {MAX_IDENTIFIER_LENGTH} characters",
            context={"field": field_name, "length": len(cleaned)},
        )
    return cleaned


@dataclass(frozen=True)
class ScopeKey:
    owner_user_id: str
    avatar_id: str
    relationship_token: str = OWNER_RELATIONSHIP

    def __post_init__(self) -> None:
        object.__setattr__(self, "owner_user_id", _clean_identifier(self.owner_user_id, "owner_user_id"))
        object.__setattr__(self, "avatar_id", _clean_identifier(self.avatar_id, "avatar_id"))
        object.__setattr__(
            self,
            "relationship_token",
            _clean_identifier(self.relationship_token, "relationship_token"),
        )

    @property
    def is_owner(self) -> bool:
        return self.relationship_token == OWNER_RELATIONSHIP

    @property
    def shared_token(self) -> Optional[str]:
        """The visitor's relationship token, or None for the owner's own scope."""
        return None if self.is_owner else self.relationship_token

    def cache_key(self) -> str:
        # JSON keeps the key unambiguous when identifiers contain separators
        return json.dumps([self.owner_user_id, self.avatar_id, self.relationship_token])

    def as_payload(self) -> dict:
        return {
            "owner_user_id": self.owner_user_id,
            "avatar_id": self.avatar_id,
            "relationship_token": self.relationship_token,
        }

    def __str__(self) -> str:
        return f"{self.owner_user_id}/{self.avatar_id}/{self.relationship_token}"


def resolve_scope(
    owner_user_id: Optional[str],
    avatar_id: Optional[str],
    relationship_token: Optional[str] = None,
) -> ScopeKey:
    """Compute the isolation key for an interaction.

    ``relationship_token`` is None when the owner talks to their own avatar.
    A blank token is rejected rather than silently mapped to the owner scope,
    and a visitor token can never equal the reserved owner marker.
    """
    if relationship_token is None:
        return ScopeKey(owner_user_id, avatar_id, OWNER_RELATIONSHIP)  # type: ignore[arg-type]

    token = _clean_identifier(relationship_token, "relationship_token")
    if token == OWNER_RELATIONSHIP:
        raise InvalidScope(
            f"relationship_token may not be the reserved value '{OWNER_RELATIONSHIP}'",
            context={"field": "relationship_token"},
        )
    return ScopeKey(owner_user_id, avatar_id, token)  # type: ignore[arg-type]
