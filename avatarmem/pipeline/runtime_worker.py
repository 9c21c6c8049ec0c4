from __future__ import annotations

from typing import Any, Callable


def init_memory_pipeline(
    *,
    state: Any,
    logger: Any,
    queue_cls: Any,
    thread_cls: Any,
    event_cls: Any,
    worker_target: Callable[[], None],
    worker_count: int,
    queue_maxsize: int,
) -> None:
    """Start the background workers that run the memory pipeline."""
    if state.pipeline_queue is not None:
        return

    state.pipeline_queue = queue_cls(maxsize=queue_maxsize)
    state.pipeline_stop_event = event_cls()
    state.pipeline_threads = []
    for index in range(max(1, worker_count)):
        thread = thread_cls(
            target=worker_target,
            name=f"avatarmem-pipeline-{index}",
            daemon=True,
        )
        thread.start()
        state.pipeline_threads.append(thread)
    logger.info(
        "Memory pipeline initialized (%d workers, queue size %d)",
        len(state.pipeline_threads),
        queue_maxsize,
    )


def enqueue_turn(*, state: Any, logger: Any, turn: Any, full_exc: Any) -> bool:
    """Hand a turn to the background workers without blocking the caller.

    Returns False when the pipeline is not running or the queue is full; the
    turn is dropped in both cases.
    """
    if state.pipeline_queue is None:
        logger.debug("Memory pipeline not running; dropping turn")
        return False
    if state.pipeline_stop_event is not None and state.pipeline_stop_event.is_set():
        logger.debug("Memory pipeline shutting down; dropping turn")
        return False

    try:
        state.pipeline_queue.put_nowait(turn)
    except full_exc:
        state.pipeline_stats.record_turn_dropped()
        logger.warning("Memory pipeline queue full; dropping turn for avatar %s", turn.avatar_id)
        return False
    return True


def pipeline_worker(
    *,
    state: Any,
    logger: Any,
    idle_sleep_seconds: float,
    empty_exc: Any,
    process_turn_fn: Callable[[Any], int],
    sleep_fn: Callable[[float], None],
) -> None:
    """Background worker that drains the turn queue."""
    while True:
        stop_event = state.pipeline_stop_event
        if stop_event is not None and stop_event.is_set():
            return
        try:
            queue = state.pipeline_queue
            if queue is None:
                sleep_fn(idle_sleep_seconds)
                continue

            try:
                turn = queue.get(timeout=idle_sleep_seconds)
            except empty_exc:
                continue

            try:
                process_turn_fn(turn)
            finally:
                queue.task_done()
        except Exception:  # pragma: no cover - background thread
            logger.exception("Memory pipeline worker iteration failed")


def shutdown_memory_pipeline(
    *,
    state: Any,
    logger: Any,
    timeout: float,
    drain: bool,
    monotonic_fn: Callable[[], float],
    sleep_fn: Callable[[float], None],
) -> None:
    """Stop the workers, optionally letting queued turns finish first.

    Turns still queued after ``timeout`` are abandoned; stored fragments are
    unaffected because every insert is independent.
    """
    if state.pipeline_queue is None:
        return

    deadline = monotonic_fn() + timeout
    if drain:
        while state.pipeline_queue.unfinished_tasks and monotonic_fn() < deadline:
            sleep_fn(0.05)
        if state.pipeline_queue.unfinished_tasks:
            logger.warning(
                "Abandoning %d queued turns at shutdown", state.pipeline_queue.unfinished_tasks
            )

    if state.pipeline_stop_event is not None:
        state.pipeline_stop_event.set()
    for thread in state.pipeline_threads:
        thread.join(timeout=max(0.0, deadline - monotonic_fn()))

    state.pipeline_queue = None
    state.pipeline_threads = []
    logger.info("Memory pipeline stopped")
