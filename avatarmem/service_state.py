from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from queue import Queue
from threading import Event, Lock, Thread
from typing import Any, Deque, Dict, List, Optional

from qdrant_client import QdrantClient

from avatarmem.cache import ScopedCache
from avatarmem.config import VECTOR_SIZE
from avatarmem.embedding.provider import EmbeddingProvider
from avatarmem.utils.time import utc_now

STAGE_HISTORY = 200


@dataclass
class StageTimings:
    """Latency and success figures for one pipeline stage over recent calls."""

    calls: int = 0
    failures: int = 0
    total_seconds: float = 0.0
    max_seconds: float = 0.0
    recent: Deque[float] = field(default_factory=lambda: deque(maxlen=STAGE_HISTORY))

    def record(self, seconds: float, success: bool) -> None:
        self.calls += 1
        if not success:
            self.failures += 1
        self.total_seconds += seconds
        self.max_seconds = max(self.max_seconds, seconds)
        self.recent.append(seconds)

    def to_dict(self) -> Dict[str, Any]:
        recent = sorted(self.recent)
        p95 = recent[min(len(recent) - 1, int(len(recent) * 0.95))] if recent else 0.0
        return {
            "calls": self.calls,
            "failures": self.failures,
            "success_rate": round((self.calls - self.failures) / self.calls, 4) if self.calls else None,
            "avg_ms": round(self.total_seconds / self.calls * 1000, 2) if self.calls else 0.0,
            "p95_ms": round(p95 * 1000, 2),
            "max_ms": round(self.max_seconds * 1000, 2),
        }


@dataclass
class PipelineStats:
    runs_total: int = 0
    fragments_stored: int = 0
    candidates_dropped: int = 0
    failures: int = 0
    turns_dropped: int = 0
    last_run_at: Optional[str] = None
    last_error: Optional[str] = None
    last_error_at: Optional[str] = None
    stages: Dict[str, StageTimings] = field(default_factory=dict)
    _lock: Lock = field(default_factory=Lock, repr=False, compare=False)

    def record_run(self, stored: int, dropped: int = 0) -> None:
        with self._lock:
            self.runs_total += 1
            self.fragments_stored += stored
            self.candidates_dropped += dropped
            self.last_run_at = utc_now()

    def record_failure(self, error: str) -> None:
        with self._lock:
            self.failures += 1
            self.last_error = error
            self.last_error_at = utc_now()

    def record_stage(self, stage: str, seconds: float, success: bool = True) -> None:
        with self._lock:
            self.stages.setdefault(stage, StageTimings()).record(seconds, success)

    def record_turn_dropped(self) -> None:
        with self._lock:
            self.turns_dropped += 1

    def to_dict(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "runs_total": self.runs_total,
                "fragments_stored": self.fragments_stored,
                "candidates_dropped": self.candidates_dropped,
                "failures": self.failures,
                "turns_dropped": self.turns_dropped,
                "last_run_at": self.last_run_at,
                "last_error": self.last_error,
                "last_error_at": self.last_error_at,
                "stages": {name: timings.to_dict() for name, timings in self.stages.items()},
            }


@dataclass
class ServiceState:
    qdrant: Optional[QdrantClient] = None
    openai_client: Any = None  # Chat completions client used for fragment extraction
    embedding_provider: Optional[EmbeddingProvider] = None
    cache: Optional[ScopedCache] = None
    memory_store: Any = None
    recall: Any = None
    pipeline: Any = None
    # Background memory pipeline
    pipeline_queue: Optional[Queue] = None
    pipeline_threads: List[Thread] = field(default_factory=list)
    pipeline_stop_event: Optional[Event] = None
    pipeline_stats: PipelineStats = field(default_factory=PipelineStats)
    circuit_breakers: Dict[str, Any] = field(default_factory=dict)
    # Effective vector size (auto-detected from existing collection or config default)
    effective_vector_size: int = VECTOR_SIZE
