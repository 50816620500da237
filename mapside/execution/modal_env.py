"""
Modal-backed execution environment.

Broadcast payloads are stored in a Modal Dict and worker tasks run in a
deployed Modal function. The app must be deployed before use:
    modal deploy mapside/execution/modal_env.py
"""

import uuid
from collections.abc import Callable
from typing import Any, TypeVar

import modal
from loguru import logger

from mapside.errors import MapsideError
from mapside.execution.environment import BroadcastHandle, ExecutionEnvironment

T = TypeVar("T")

APP_NAME = "mapside-join"
BROADCAST_DICT_NAME = "mapside-broadcast"

image = (
    modal.Image.debian_slim(python_version="3.12")
    .pip_install(["polars", "pylance", "loguru"])
    .add_local_python_source("mapside")
)

app = modal.App(APP_NAME)


@app.function(image=image, cpu=4, memory=16384, timeout=3600)
def distributed_join_worker(**task: Any) -> dict[str, Any]:
    """
    Modal worker function.

    Wraps the environment-agnostic join worker; the task arrives with the
    ModalEnvironment that registered the broadcast handle.
    """
    from mapside.join.worker import join_worker

    return join_worker(**task)


class ModalEnvironment(ExecutionEnvironment):
    """
    Runs join tasks on Modal.

    Holds only names, so instances can be shipped to workers and used there
    to fetch the broadcast payload.
    """

    name = "modal"
    supports_broadcast = True
    remote = True

    def __init__(
        self,
        n_workers: int = 16,
        app_name: str = APP_NAME,
        dict_name: str = BROADCAST_DICT_NAME,
        functions: dict[str, str] | None = None,
    ):
        """
        Initialize Modal environment.

        Args:
            n_workers: Number of worker tasks to spawn per job
            app_name: Name of the deployed Modal app
            dict_name: Name of the Modal Dict holding broadcast payloads
            functions: Task body name -> deployed Modal function name
        """
        self.n_workers = n_workers
        self.app_name = app_name
        self.dict_name = dict_name
        self.functions = functions or {"join_worker": "distributed_join_worker"}

    def _store(self):
        return modal.Dict.from_name(self.dict_name, create_if_missing=True)

    def broadcast(self, payload: bytes) -> BroadcastHandle:
        handle = BroadcastHandle(
            handle_id=f"broadcast-{uuid.uuid4().hex}",
            environment=self.name,
            size_bytes=len(payload),
        )
        self._store()[handle.handle_id] = payload
        logger.debug(f"Registered {handle} in Modal Dict {self.dict_name}")
        return handle

    def fetch(self, handle: BroadcastHandle) -> bytes:
        store = self._store()
        try:
            return store[handle.handle_id]
        except KeyError:
            raise MapsideError(
                f"Unknown broadcast handle: {handle.handle_id}"
            ) from None

    def release(self, handle: BroadcastHandle) -> None:
        store = self._store()
        if handle.handle_id in store:
            store.pop(handle.handle_id)

    def run_tasks(self, fn: Callable[..., T], tasks: list[dict[str, Any]]) -> list[T]:
        function_name = self.functions.get(fn.__name__)
        if function_name is None:
            raise MapsideError(f"No deployed Modal function for task '{fn.__name__}'")

        worker_function = modal.Function.from_name(self.app_name, function_name)
        worker_function.hydrate()

        calls = []
        logger.info(f"Spawning {len(tasks)} Modal workers ({function_name})")
        try:
            for task in tasks:
                calls.append(worker_function.spawn(**task))
            return [call.get() for call in calls]
        except BaseException as e:
            logger.error(f"Modal task failed, cancelling the remaining tasks: {e}")
            for call in calls:
                call.cancel()
            raise
