"""
Execution environments for the map-side join.

An environment runs worker tasks and, when it can, distributes a one-shot
read-only payload (the broadcast side) to every one of them. Environments are
passed to the join explicitly; there is no global execution context.
"""

import threading
import uuid
from abc import ABC, abstractmethod
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Any, TypeVar

from loguru import logger

from mapside.errors import JoinCancelled, MapsideError

T = TypeVar("T")


class BroadcastHandle:
    """Reference to a broadcast payload, valid in every task of one job."""

    def __init__(self, handle_id: str, environment: str, size_bytes: int):
        self.handle_id = handle_id
        self.environment = environment
        self.size_bytes = size_bytes

    def __repr__(self) -> str:
        return (
            f"BroadcastHandle(handle_id={self.handle_id!r}, "
            f"environment={self.environment!r}, size_bytes={self.size_bytes})"
        )


class ExecutionEnvironment(ABC):
    """
    Abstract interface for the engine that runs join tasks.

    Implementations declare whether they support broadcast distribution;
    the join refuses to run on one that does not.
    """

    name: str = "abstract"
    supports_broadcast: bool = False
    # Remote environments receive dataset configs instead of live objects
    remote: bool = False

    @abstractmethod
    def broadcast(self, payload: bytes) -> BroadcastHandle:
        """
        Register a fully materialized payload for every worker task.

        Args:
            payload: Serialized broadcast side

        Returns:
            Handle that any task of the job can pass to fetch()
        """
        pass

    @abstractmethod
    def fetch(self, handle: BroadcastHandle) -> bytes:
        """Return the payload registered under handle."""
        pass

    @abstractmethod
    def run_tasks(self, fn: Callable[..., T], tasks: list[dict[str, Any]]) -> list[T]:
        """
        Run fn once per task and return the results in task order.

        The first failing task fails the whole call; outstanding tasks are
        cancelled.

        Args:
            fn: Task body, called as fn(**task, should_stop=...)
            tasks: Keyword arguments for each call

        Returns:
            One result per task, in the order of tasks
        """
        pass

    def release(self, handle: BroadcastHandle) -> None:
        """Drop a broadcast payload once its job has finished."""
        pass

    @property
    def cancelled(self) -> bool:
        """Whether the current job has been asked to stop."""
        return False

    def reset(self) -> None:
        """Forget a cancellation once its job has ended."""
        pass


class InMemoryEnvironment(ExecutionEnvironment):
    """
    Single-process environment for local testing.

    Runs tasks one after another in the calling thread and has no broadcast
    primitive, so the map-side join rejects it.
    """

    name = "in-memory"
    supports_broadcast = False

    def broadcast(self, payload: bytes) -> BroadcastHandle:
        raise MapsideError(f"The '{self.name}' environment cannot broadcast data")

    def fetch(self, handle: BroadcastHandle) -> bytes:
        raise MapsideError(f"The '{self.name}' environment cannot broadcast data")

    def run_tasks(self, fn: Callable[..., T], tasks: list[dict[str, Any]]) -> list[T]:
        return [fn(**task, should_stop=None) for task in tasks]


class ThreadPoolEnvironment(ExecutionEnvironment):
    """
    Local multi-worker environment backed by a thread pool.

    Broadcast payloads live in a process-wide registry; every task fetches the
    payload and builds its own index from it, as a separate machine would.
    """

    name = "thread-pool"
    supports_broadcast = True

    def __init__(self, n_workers: int = 4):
        if n_workers < 1:
            raise ValueError(f"n_workers must be positive, got {n_workers}")
        self.n_workers = n_workers
        self._payloads: dict[str, bytes] = {}
        self._lock = threading.Lock()
        self._stop_event = threading.Event()

    def broadcast(self, payload: bytes) -> BroadcastHandle:
        handle = BroadcastHandle(
            handle_id=f"broadcast-{uuid.uuid4().hex}",
            environment=self.name,
            size_bytes=len(payload),
        )
        with self._lock:
            self._payloads[handle.handle_id] = payload
        logger.debug(f"Registered {handle}")
        return handle

    def fetch(self, handle: BroadcastHandle) -> bytes:
        with self._lock:
            payload = self._payloads.get(handle.handle_id)
        if payload is None:
            raise MapsideError(f"Unknown broadcast handle: {handle.handle_id}")
        return payload

    def release(self, handle: BroadcastHandle) -> None:
        with self._lock:
            self._payloads.pop(handle.handle_id, None)

    def cancel(self) -> None:
        """Abort the running job, including work not yet handed to tasks."""
        self._stop_event.set()

    @property
    def cancelled(self) -> bool:
        return self._stop_event.is_set()

    def reset(self) -> None:
        self._stop_event.clear()

    def run_tasks(self, fn: Callable[..., T], tasks: list[dict[str, Any]]) -> list[T]:
        try:
            return self._run_tasks(fn, tasks)
        finally:
            self.reset()

    def _run_tasks(
        self, fn: Callable[..., T], tasks: list[dict[str, Any]]
    ) -> list[T]:
        results: list[Any] = [None] * len(tasks)

        with ThreadPoolExecutor(max_workers=self.n_workers) as executor:
            futures = {
                executor.submit(fn, **task, should_stop=self._stop_event.is_set): idx
                for idx, task in enumerate(tasks)
            }
            try:
                for future in as_completed(futures):
                    results[futures[future]] = future.result()
            except BaseException as e:
                if not isinstance(e, JoinCancelled):
                    logger.error(f"Task failed, cancelling the remaining tasks: {e}")
                self._stop_event.set()
                for future in futures:
                    future.cancel()
                raise

        if self._stop_event.is_set():
            raise JoinCancelled("Job was cancelled")
        return results
