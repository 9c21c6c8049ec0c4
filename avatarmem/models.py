from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Union

from avatarmem.config import EMOTIONAL_TONES, OWNER_RELATIONSHIP
from avatarmem.errors import AvatarMemoryError
from avatarmem.scope import ScopeKey, resolve_scope
from avatarmem.utils.time import utc_now

PriorContext = Union[str, Mapping[str, Any], None]


@dataclass(frozen=True)
class ConversationContext:
    """Where a fragment came from: when, an excerpt of the message, and its tone."""

    timestamp: str
    message_excerpt: str = ""
    emotional_tone: Optional[str] = None

    def __post_init__(self) -> None:
        if self.emotional_tone is not None and self.emotional_tone not in EMOTIONAL_TONES:
            raise ValueError(f"Unknown emotional tone: {self.emotional_tone!r}")

    def to_payload(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "message_excerpt": self.message_excerpt,
            "emotional_tone": self.emotional_tone,
        }

    @classmethod
    def from_payload(cls, payload: Optional[Mapping[str, Any]]) -> "ConversationContext":
        payload = payload or {}
        tone = payload.get("emotional_tone")
        return cls(
            timestamp=str(payload.get("timestamp") or ""),
            message_excerpt=str(payload.get("message_excerpt") or ""),
            emotional_tone=tone if tone in EMOTIONAL_TONES else None,
        )


@dataclass(frozen=True)
class FragmentCandidate:
    text: str
    confidence_hint: float = 1.0


@dataclass(frozen=True)
class FragmentDraft:
    """A fragment ready for storage: text, its embedding, and where it came from."""

    text: str
    embedding: List[float]
    context: ConversationContext


@dataclass(frozen=True)
class MemoryFragment:
    id: str
    owner_user_id: str
    avatar_id: str
    relationship_token: Optional[str]
    fragment_text: str
    conversation_context: ConversationContext
    created_at: str
    updated_at: str
    embedding: Optional[List[float]] = None

    @property
    def scope(self) -> ScopeKey:
        return resolve_scope(self.owner_user_id, self.avatar_id, self.relationship_token)

    @classmethod
    def from_point(cls, point_id: Any, payload: Mapping[str, Any], vector: Any = None) -> "MemoryFragment":
        relationship = payload.get("relationship_token")
        embedding = list(vector) if isinstance(vector, (list, tuple)) else None
        return cls(
            id=str(point_id),
            owner_user_id=payload.get("owner_user_id", ""),
            avatar_id=payload.get("avatar_id", ""),
            relationship_token=None if relationship == OWNER_RELATIONSHIP else relationship,
            fragment_text=payload.get("fragment_text", ""),
            conversation_context=ConversationContext.from_payload(payload.get("conversation_context")),
            created_at=payload.get("created_at", ""),
            updated_at=payload.get("updated_at", payload.get("created_at", "")),
            embedding=embedding,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "owner_user_id": self.owner_user_id,
            "avatar_id": self.avatar_id,
            "relationship_token": self.relationship_token,
            "fragment_text": self.fragment_text,
            "conversation_context": self.conversation_context.to_payload(),
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


@dataclass(frozen=True)
class QueryHit:
    fragment: MemoryFragment
    similarity: float


@dataclass(frozen=True)
class BatchItemFailure:
    index: int
    error: AvatarMemoryError


@dataclass
class BatchStoreResult:
    """Outcome of a batch insert. ``ids`` lists stored fragments in input order."""

    ids: List[str] = field(default_factory=list)
    failures: List[BatchItemFailure] = field(default_factory=list)

    @property
    def stored(self) -> int:
        return len(self.ids)

    @property
    def partial(self) -> bool:
        return bool(self.ids) and bool(self.failures)


@dataclass(frozen=True)
class ConversationTurn:
    """A completed conversation turn handed to the memory pipeline."""

    message: str
    owner_user_id: str
    avatar_id: str
    relationship_token: Optional[str] = None
    prior_context: PriorContext = None
    extraction_threshold: Optional[float] = None
    received_at: str = field(default_factory=utc_now)

    @classmethod
    def for_scope(
        cls,
        scope: ScopeKey,
        message: str,
        prior_context: PriorContext = None,
        extraction_threshold: Optional[float] = None,
    ) -> "ConversationTurn":
        return cls(
            message=message,
            owner_user_id=scope.owner_user_id,
            avatar_id=scope.avatar_id,
            relationship_token=scope.shared_token,
            prior_context=prior_context,
            extraction_threshold=extraction_threshold,
        )
