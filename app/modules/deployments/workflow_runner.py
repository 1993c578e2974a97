"""
Bounded pool running deployment workflows off the request path.

At most one workflow per deployment is in flight. Callers that must update
the record before the workflow starts reserve the slot first.
"""
import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor, wait as wait_futures
from typing import Any, Callable, Dict, Optional

from app.core.exceptions import ConflictError
from app.modules.deployments.process_registry import helm_processes

logger = logging.getLogger(__name__)

_RESERVED = object()


class WorkflowRunner:
    def __init__(self, max_workers: int = 4):
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="workflow")
        self._lock = threading.Lock()
        self._in_flight: Dict[str, Any] = {}
        self.stopping = threading.Event()

    def reserve(self, deployment_id: str) -> None:
        """Claim the deployment's slot; raises ConflictError if a workflow is already in flight."""
        with self._lock:
            if deployment_id in self._in_flight:
                raise ConflictError("Another operation is already in progress for this deployment")
            self._in_flight[deployment_id] = _RESERVED

    def release(self, deployment_id: str) -> None:
        """Give back a reservation that will not be submitted."""
        with self._lock:
            if self._in_flight.get(deployment_id) is _RESERVED:
                del self._in_flight[deployment_id]

    def submit(self, deployment_id: str, fn: Callable, *args, reserved: bool = False, **kwargs) -> Future:
        if self.stopping.is_set():
            self.release(deployment_id)
            raise ConflictError("Engine is shutting down")
        with self._lock:
            current = self._in_flight.get(deployment_id)
            if current is not None and not (reserved and current is _RESERVED):
                raise ConflictError("Another operation is already in progress for this deployment")

            def run():
                try:
                    return fn(*args, **kwargs)
                except Exception as e:
                    logger.exception(f"Workflow for deployment {deployment_id} crashed: {e}")
                    raise

            future = self._executor.submit(run)
            self._in_flight[deployment_id] = future

        def done(f: Future):
            with self._lock:
                if self._in_flight.get(deployment_id) is f:
                    del self._in_flight[deployment_id]

        future.add_done_callback(done)
        return future

    def is_in_flight(self, deployment_id: str) -> bool:
        with self._lock:
            return deployment_id in self._in_flight

    def get_future(self, deployment_id: str) -> Optional[Future]:
        with self._lock:
            current = self._in_flight.get(deployment_id)
        return current if isinstance(current, Future) else None

    def wait(self, deployment_id: str, timeout: Optional[float] = None) -> bool:
        """Block until the deployment's workflow finishes. Returns False on timeout."""
        future = self.get_future(deployment_id)
        if future is None:
            return True
        done, _ = wait_futures([future], timeout=timeout)
        return bool(done)

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Block until nothing is in flight (including workflows submitted while waiting)."""
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            with self._lock:
                futures = [f for f in self._in_flight.values() if isinstance(f, Future) and not f.done()]
            if not futures:
                return True
            remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
            wait_futures(futures, timeout=remaining)
            if deadline is not None and time.monotonic() >= deadline:
                with self._lock:
                    return not any(isinstance(f, Future) and not f.done() for f in self._in_flight.values())

    def shutdown(self, wait: bool = False) -> None:
        """Stop accepting work, cancel queued workflows and terminate running helm processes.
        Interrupted workflows leave their records as they were."""
        self.stopping.set()
        self._executor.shutdown(wait=False, cancel_futures=True)
        helm_processes.terminate_all()
        if wait:
            self._executor.shutdown(wait=True)
        logger.info("Workflow runner stopped")
