from __future__ import annotations

import json
from typing import Any, Callable, List, Optional

from avatarmem.errors import ExtractionParseError, ExtractionUnavailable
from avatarmem.models import FragmentCandidate, PriorContext
from avatarmem.scope import ScopeKey
from avatarmem.utils.text import count_words, normalize_whitespace, render_prior_context


class FragmentExtractor:
    """Pulls short factual statements about the user out of a conversation turn."""

    MAX_COMPLETION_PREFIXES = ("o1", "o3", "o4", "gpt-4o", "gpt-4.1", "gpt-5")

    SYSTEM_PROMPT = """You extract memorable facts about the user from a single chat message so an avatar can remember them in later conversations.

Extract short, atomic statements that are worth remembering:
- Personal facts (family, pets, job, location, age)
- Preferences, likes and dislikes
- Important events, plans and goals
- Relationships and people they mention
- Feelings or concerns they express about specific topics

Rules:
- Each statement is one fact, written in third person starting with "User" (e.g. "User has a dog named Max")
- Do not invent facts that are not stated in the message
- Skip greetings, small talk and questions addressed to the avatar
- Return at most 10 statements; return none if nothing is worth remembering

Return JSON: {"fragments": [{"text": "<statement>", "confidence": <0.0-1.0>}]}"""

    def __init__(
        self,
        *,
        ensure_openai_client: Callable[[], None],
        get_openai_client: Callable[[], Any],
        extraction_model: str,
        min_words: int = 3,
        max_candidates: int = 10,
        min_confidence: float = 0.0,
        max_length: int = 500,
        logger: Any,
    ) -> None:
        self._ensure_openai_client = ensure_openai_client
        self._get_openai_client = get_openai_client
        self._extraction_model = extraction_model
        self._min_words = min_words
        self._max_candidates = max_candidates
        self._min_confidence = min_confidence
        self._max_length = max_length
        self._logger = logger

    def extract(
        self,
        message: str,
        scope: ScopeKey,
        prior_context: PriorContext = None,
        *,
        threshold: Optional[float] = None,
    ) -> List[FragmentCandidate]:
        """Return candidate fragments for ``message``.

        Raises ``ExtractionParseError`` when the model output is not a list of
        fragments and ``ExtractionUnavailable`` when no client is configured.
        Provider exceptions propagate unchanged.
        """
        if not message or not message.strip():
            return []

        client = self._get_openai_client()
        if client is None:
            self._ensure_openai_client()
            client = self._get_openai_client()
        if client is None:
            raise ExtractionUnavailable(
                "No text-generation client configured",
                context={"scope": str(scope)},
            )

        extra_params: dict[str, Any] = {}
        uses_max_completion_tokens = self._extraction_model.startswith(self.MAX_COMPLETION_PREFIXES)
        if uses_max_completion_tokens:
            extra_params["max_completion_tokens"] = 800
        else:
            extra_params["max_tokens"] = 800
            extra_params["temperature"] = self._temperature_for(threshold)

        response = client.chat.completions.create(
            model=self._extraction_model,
            messages=[
                {"role": "system", "content": self.SYSTEM_PROMPT},
                {"role": "user", "content": self._build_user_prompt(message, prior_context)},
            ],
            response_format={"type": "json_object"},
            **extra_params,
        )

        raw_content = response.choices[0].message.content if response.choices else None
        candidates = self.parse_candidates(raw_content)
        self._logger.debug("Extracted %d fragment candidates for %s", len(candidates), scope)
        return candidates

    @staticmethod
    def _temperature_for(threshold: Optional[float]) -> float:
        if threshold is None:
            return 0.3
        return max(0.1, float(threshold) - 0.4)

    @staticmethod
    def _build_user_prompt(message: str, prior_context: PriorContext) -> str:
        prompt = f"MESSAGE:\n{message.strip()[:4000]}"
        rendered = render_prior_context(prior_context)
        if rendered:
            prompt += f"\n\nCONVERSATION CONTEXT:\n{rendered}"
        return prompt

    def parse_candidates(self, raw_content: Optional[str]) -> List[FragmentCandidate]:
        """Parse model output into filtered, de-duplicated candidates."""
        if not raw_content or not raw_content.strip():
            raise ExtractionParseError("Text-generation provider returned an empty response")

        try:
            data = json.loads(raw_content)
        except (json.JSONDecodeError, TypeError) as exc:
            raise ExtractionParseError(
                "Text-generation provider returned invalid JSON",
                context={"excerpt": raw_content[:200]},
            ) from exc

        if isinstance(data, dict):
            items = data.get("fragments", data.get("memories"))
        else:
            items = data
        if not isinstance(items, list):
            raise ExtractionParseError(
                "Expected a list of fragments",
                context={"received": type(items).__name__},
            )

        candidates: List[FragmentCandidate] = []
        seen: set[str] = set()
        for item in items:
            candidate = self._coerce_item(item)
            if candidate is None:
                continue
            if count_words(candidate.text) < self._min_words:
                continue
            if candidate.confidence_hint < self._min_confidence:
                continue
            key = candidate.text.lower()
            if key in seen:
                continue
            seen.add(key)
            candidates.append(candidate)
            if len(candidates) >= self._max_candidates:
                if len(items) > self._max_candidates:
                    self._logger.warning(
                        "Extraction returned %d items; keeping the first %d",
                        len(items),
                        self._max_candidates,
                    )
                break
        return candidates

    def _coerce_item(self, item: Any) -> Optional[FragmentCandidate]:
        confidence = 1.0
        if isinstance(item, str):
            text = item
        elif isinstance(item, dict):
            text = item.get("text") or item.get("fragment") or ""
            raw_confidence = item.get("confidence", 1.0)
            try:
                confidence = float(raw_confidence)
            except (TypeError, ValueError):
                confidence = 1.0
        else:
            return None

        if not isinstance(text, str):
            return None
        text = normalize_whitespace(text)
        if not text:
            return None
        if len(text) > self._max_length:
            text = text[: self._max_length].rstrip()
        return FragmentCandidate(text=text, confidence_hint=min(1.0, max(0.0, confidence)))
