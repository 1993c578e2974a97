"""Child processes started on behalf of deployments, keyed by deployment id.

Workflow shutdown uses the table to stop helm runs that would otherwise
outlive the engine.
"""
import logging
import subprocess
import threading
from contextlib import contextmanager
from typing import Dict, Iterator, Optional

logger = logging.getLogger(__name__)


class ChildProcessTable:
    def __init__(self, label: str):
        self.label = label
        self._lock = threading.Lock()
        self._processes: Dict[str, subprocess.Popen] = {}

    @contextmanager
    def tracked(self, deployment_id: Optional[str], proc: subprocess.Popen) -> Iterator[subprocess.Popen]:
        """Keep proc in the table while the block runs; untracked when deployment_id is None."""
        if deployment_id is None:
            yield proc
            return
        with self._lock:
            self._processes[deployment_id] = proc
        try:
            yield proc
        finally:
            with self._lock:
                if self._processes.get(deployment_id) is proc:
                    del self._processes[deployment_id]

    def running(self, deployment_id: str) -> bool:
        with self._lock:
            proc = self._processes.get(deployment_id)
        return proc is not None and proc.poll() is None

    def terminate(self, deployment_id: str, grace_seconds: float = 3.0) -> bool:
        with self._lock:
            proc = self._processes.pop(deployment_id, None)
        if proc is None or proc.poll() is not None:
            return False
        try:
            proc.terminate()
            try:
                proc.wait(timeout=grace_seconds)
            except subprocess.TimeoutExpired:
                proc.kill()
                proc.wait()
        except Exception as e:
            logger.warning(f"Could not stop {self.label} process of deployment {deployment_id}: {e}")
        return True

    def terminate_all(self, grace_seconds: float = 3.0) -> int:
        with self._lock:
            deployment_ids = list(self._processes)
        stopped = sum(1 for deployment_id in deployment_ids if self.terminate(deployment_id, grace_seconds))
        if stopped:
            logger.info(f"Stopped {stopped} {self.label} process(es)")
        return stopped


helm_processes = ChildProcessTable("helm")
