from __future__ import annotations

from typing import Any, Callable, Optional


def init_extraction_client(
    *,
    state: Any,
    logger: Any,
    openai_cls: Any,
    get_env_fn: Callable[[str], Optional[str]],
    timeout: float,
) -> None:
    """Create the chat-completions client fragment extraction runs on.

    Without OPENAI_API_KEY the client stays unset; the pipeline then stores
    nothing and recall still works for fragments stored earlier.
    """
    if state.openai_client is not None:
        return

    api_key = get_env_fn("OPENAI_API_KEY")
    if not api_key:
        logger.warning("OPENAI_API_KEY not set; new conversation turns will not be remembered")
        return

    options = {"api_key": api_key, "timeout": timeout}
    base_url = (get_env_fn("OPENAI_BASE_URL") or "").strip()
    if base_url:
        options["base_url"] = base_url
    try:
        state.openai_client = openai_cls(**options)
    except Exception:
        logger.exception("Could not build the extraction client")
        state.openai_client = None
        return
    logger.info("Extraction client ready (timeout %.0fs)", timeout)
