"""
Port-Access Supervisor: keeps one `kubectl port-forward` child process per
deployment so apps are reachable on localhost when no ingress is configured.

Processes die on their own (pod restarts, API server hiccups); a periodic
sweep restarts them from the deployment's last known service tuple, or drops
them once the deployment is gone.
"""
import logging
import subprocess
import threading
import time
from typing import Callable, Dict, Iterable, List, Optional

from pydantic import BaseModel

from app.config import settings

logger = logging.getLogger(__name__)


class ForwardTarget(BaseModel):
    deployment_id: str
    namespace: str
    service_name: str
    service_port: int
    local_port: int


class _ManagedForward:
    def __init__(self, target: ForwardTarget, process: subprocess.Popen):
        self.target = target
        self.process = process
        self.started_at = time.time()

    def alive(self) -> bool:
        return self.process.poll() is None

    def reap(self) -> None:
        """Collect the exit status of a finished process and close its stderr pipe."""
        try:
            self.process.wait(timeout=0)
        except subprocess.TimeoutExpired:
            return
        if self.process.stderr is not None:
            self.process.stderr.close()


class PortForwardError(Exception):
    pass


class PortForwardSupervisor:
    def __init__(
        self,
        kubectl_bin: Optional[str] = None,
        spawn: Optional[Callable[..., subprocess.Popen]] = None,
        startup_grace_seconds: float = 1.0,
    ):
        self.kubectl_bin = kubectl_bin or settings.kubectl_bin
        self._spawn = spawn or subprocess.Popen
        self.startup_grace_seconds = startup_grace_seconds
        self._lock = threading.Lock()
        self._forwards: Dict[str, _ManagedForward] = {}

    def _command(self, target: ForwardTarget) -> List[str]:
        cmd = [
            self.kubectl_bin, "port-forward",
            f"svc/{target.service_name}",
            f"{target.local_port}:{target.service_port}",
            "-n", target.namespace,
            "--address", "0.0.0.0",
        ]
        if settings.kubeconfig:
            cmd.extend(["--kubeconfig", settings.kubeconfig])
        if settings.kube_context:
            cmd.extend(["--context", settings.kube_context])
        return cmd

    def start(self, target: ForwardTarget) -> str:
        """Start (or replace) the forward for a deployment and return its local URL."""
        self.stop(target.deployment_id)
        try:
            proc = self._spawn(
                self._command(target),
                stdout=subprocess.DEVNULL,
                stderr=subprocess.PIPE,
                text=True,
            )
        except FileNotFoundError:
            raise PortForwardError(f"kubectl binary '{self.kubectl_bin}' not found")

        if proc.stderr is not None:
            def stream_errors():
                for line in iter(proc.stderr.readline, ''):
                    if line.strip():
                        logger.warning(f"port-forward {target.service_name}:{target.local_port}: {line.rstrip()}")

            threading.Thread(target=stream_errors, daemon=True).start()

        # Let kubectl connect before declaring success
        if self.startup_grace_seconds:
            time.sleep(self.startup_grace_seconds)
        if proc.poll() is not None:
            raise PortForwardError(
                f"kubectl port-forward exited immediately (code: {proc.returncode})"
            )

        with self._lock:
            self._forwards[target.deployment_id] = _ManagedForward(target, proc)
        logger.info(f"Started port-forward {target.service_name} -> localhost:{target.local_port} (pid {proc.pid})")
        return f"http://localhost:{target.local_port}"

    def stop(self, deployment_id: str) -> bool:
        with self._lock:
            entry = self._forwards.pop(deployment_id, None)
        if entry is None:
            return False
        try:
            entry.process.terminate()
            try:
                entry.process.wait(timeout=3)
            except subprocess.TimeoutExpired:
                entry.process.kill()
        except Exception as e:
            logger.warning(f"Error stopping port-forward for deployment {deployment_id}: {e}")
        logger.info(f"Stopped port-forward {entry.target.service_name} (port {entry.target.local_port})")
        return True

    def stop_all(self) -> int:
        with self._lock:
            deployment_ids = list(self._forwards.keys())
        for deployment_id in deployment_ids:
            self.stop(deployment_id)
        return len(deployment_ids)

    def is_active(self, deployment_id: str) -> bool:
        with self._lock:
            entry = self._forwards.get(deployment_id)
        return entry is not None and entry.alive()

    def active_ids(self) -> List[str]:
        with self._lock:
            return [d for d, entry in self._forwards.items() if entry.alive()]

    def sweep(self, lookup: Callable[[str], Optional[ForwardTarget]]) -> Dict[str, int]:
        """Restart exited forwards from their deployment's current tuple; drop them if the deployment is gone."""
        with self._lock:
            dead = [(d, entry) for d, entry in self._forwards.items() if not entry.alive()]
        restarted = dropped = 0
        for deployment_id, entry in dead:
            with self._lock:
                self._forwards.pop(deployment_id, None)
            entry.reap()
            try:
                target = lookup(deployment_id)
            except Exception as e:
                logger.error(f"Port-forward lookup failed for deployment {deployment_id}: {e}")
                continue
            if target is None:
                dropped += 1
                logger.info(f"Dropped port-forward for removed deployment {deployment_id}")
                continue
            try:
                self.start(target)
                restarted += 1
            except Exception as e:
                logger.error(f"Failed to restart port-forward for deployment {deployment_id}: {e}")
        return {"restarted": restarted, "dropped": dropped}

    def ensure(self, targets: Iterable[ForwardTarget]) -> int:
        """Start forwards for targets that have no live process. Returns how many were started."""
        started = 0
        for target in targets:
            if self.is_active(target.deployment_id):
                continue
            try:
                self.start(target)
                started += 1
            except Exception as e:
                logger.error(f"Failed to start port-forward for deployment {target.deployment_id}: {e}")
        return started


_supervisor: Optional[PortForwardSupervisor] = None


def get_supervisor() -> PortForwardSupervisor:
    global _supervisor
    if _supervisor is None:
        _supervisor = PortForwardSupervisor()
    return _supervisor
