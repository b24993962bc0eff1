"""Bounded per-node worker pool with cooperative cancellation."""
from __future__ import annotations

import concurrent.futures
import logging
import threading
import time
import traceback
from collections.abc import Callable, Sequence

from .errors import error_kind
from .models import Node, NodeResult, NodeStatus

logger = logging.getLogger(__name__)

NodeTask = Callable[[Node], NodeResult]


class CancelToken:
    """Caller-controlled flag that stops the dispatch of new per-node work."""

    def __init__(self) -> None:
        """Create an un-cancelled token."""
        self._event = threading.Event()

    def cancel(self) -> None:
        """Request cancellation."""
        self._event.set()

    @property
    def cancelled(self) -> bool:
        """Return ``True`` once :meth:`cancel` has been called."""
        return self._event.is_set()

    def wait(self, timeout: float) -> bool:
        """Sleep up to *timeout* seconds, returning early (``True``) if cancelled."""
        return self._event.wait(timeout)


def cancelled_result(node: Node) -> NodeResult:
    """Return the result recorded for a node never dispatched due to cancellation."""
    return NodeResult(
        node=node.name,
        status=NodeStatus.SKIPPED,
        message="Cancelled before dispatch.",
        detail={"error": "cancelled"},
    )


def _duration_ms(start: float) -> int:
    return int((time.perf_counter() - start) * 1000)


def _unexpected_failure(node: Node, exc: Exception, duration_ms: int) -> NodeResult:
    logger.debug("%s: unhandled error\n%s", node.name, traceback.format_exc())
    return NodeResult(
        node=node.name,
        status=NodeStatus.FAILED,
        message=f"{type(exc).__name__}: {exc}",
        detail={"error": error_kind(exc), "duration_ms": duration_ms},
    )


def _run_single(task: NodeTask, node: Node, cancel: CancelToken | None) -> NodeResult:
    if cancel is not None and cancel.cancelled:
        return cancelled_result(node)
    start = time.perf_counter()
    try:
        return task(node)
    except Exception as exc:
        return _unexpected_failure(node, exc, _duration_ms(start))


def run_per_node(
    nodes: Sequence[Node],
    task: NodeTask,
    *,
    max_concurrency: int,
    cancel: CancelToken | None = None,
) -> list[NodeResult]:
    """Run *task* for every node with bounded concurrency, preserving order.

    The pool size is the node count capped at *max_concurrency*. Exceptions
    escaping *task* become ``failed`` results for that node only. Once
    *cancel* fires, nodes whose work has not started are reported as
    ``skipped``; work already running is allowed to finish.
    """
    if not nodes:
        return []

    max_workers = max(1, min(len(nodes), max_concurrency))
    if max_workers == 1:
        return [_run_single(task, node, cancel) for node in nodes]

    results: list[NodeResult | None] = [None] * len(nodes)
    with concurrent.futures.ThreadPoolExecutor(max_workers=max_workers) as executor:
        future_to_index: dict[concurrent.futures.Future[NodeResult], int] = {}
        for index, node in enumerate(nodes):
            future = executor.submit(_run_single, task, node, cancel)
            future_to_index[future] = index

        for future in concurrent.futures.as_completed(future_to_index):
            index = future_to_index[future]
            results[index] = future.result()

    return [result for result in results if result is not None]


def run_serial(
    nodes: Sequence[Node],
    task: NodeTask,
    *,
    cancel: CancelToken | None = None,
) -> list[NodeResult]:
    """Run *task* for each node one at a time (shared-storage operations)."""
    return [_run_single(task, node, cancel) for node in nodes]


__all__ = ["CancelToken", "NodeTask", "cancelled_result", "run_per_node", "run_serial"]
