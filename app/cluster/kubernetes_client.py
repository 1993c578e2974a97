"""
Thin wrapper over the Kubernetes API used by the provisioner, the secret vault
and the deployment workers.

All calls are blocking; callers run them from worker threads.
"""

import base64
import logging
import threading
import time
from typing import Any, Dict, List, Optional, Tuple

from kubernetes import client, config
from kubernetes.client.rest import ApiException
from kubernetes.stream import stream

from app.config import settings

logger = logging.getLogger(__name__)


class PodUnavailableError(Exception):
    """No ready pod to run a command in."""


def _pod_ready(pod) -> bool:
    if pod.status is None:
        return False
    conditions = pod.status.conditions or []
    return any(c.type == "Ready" and c.status == "True" for c in conditions)


def _first_container(pod) -> Optional[str]:
    if pod.spec is None or not pod.spec.containers:
        return None
    return pod.spec.containers[0].name


class KubernetesClient:
    def __init__(self, kubeconfig: Optional[str] = None, context: Optional[str] = None):
        self.kubeconfig = kubeconfig if kubeconfig is not None else settings.kubeconfig
        self.context = context if context is not None else settings.kube_context
        self._core_api: Optional[client.CoreV1Api] = None
        self._networking_api: Optional[client.NetworkingV1Api] = None
        self._lock = threading.Lock()

    def _load(self):
        with self._lock:
            if self._core_api is not None:
                return
            if self.kubeconfig:
                api_client = config.new_client_from_config(
                    config_file=self.kubeconfig, context=self.context
                )
            else:
                try:
                    config.load_incluster_config()
                except config.ConfigException:
                    config.load_kube_config(context=self.context)
                api_client = client.ApiClient()
            self._core_api = client.CoreV1Api(api_client)
            self._networking_api = client.NetworkingV1Api(api_client)

    @property
    def core(self) -> client.CoreV1Api:
        if self._core_api is None:
            self._load()
        return self._core_api

    @property
    def networking(self) -> client.NetworkingV1Api:
        if self._networking_api is None:
            self._load()
        return self._networking_api

    def ping(self) -> None:
        """Raises when the API server cannot be reached."""
        self.core.list_namespace(limit=1)

    # Namespaces

    def create_namespace(self, name: str, labels: Dict[str, str]) -> bool:
        """Create namespace; an existing namespace counts as success. Returns True if newly created."""
        body = {
            "apiVersion": "v1",
            "kind": "Namespace",
            "metadata": {"name": name, "labels": labels},
        }
        try:
            self.core.create_namespace(body=body)
            logger.info(f"Created namespace {name}")
            return True
        except ApiException as e:
            if e.status == 409:
                logger.info(f"Namespace {name} already exists")
                return False
            raise

    def delete_namespace(self, name: str) -> bool:
        """Delete namespace; a missing namespace counts as success."""
        try:
            self.core.delete_namespace(name=name)
            logger.info(f"Deleted namespace {name}")
            return True
        except ApiException as e:
            if e.status == 404:
                logger.info(f"Namespace {name} already gone")
                return False
            raise

    # Resource quotas

    def apply_resource_quota(self, namespace: str, name: str, hard: Dict[str, str], labels: Optional[Dict[str, str]] = None):
        body = {
            "apiVersion": "v1",
            "kind": "ResourceQuota",
            "metadata": {"name": name, "namespace": namespace, "labels": labels or {}},
            "spec": {"hard": hard},
        }
        try:
            self.core.create_namespaced_resource_quota(namespace=namespace, body=body)
            logger.info(f"Created resource quota {name} in {namespace}")
        except ApiException as e:
            if e.status != 409:
                raise
            self.core.replace_namespaced_resource_quota(name=name, namespace=namespace, body=body)
            logger.info(f"Replaced resource quota {name} in {namespace}")

    def get_resource_quota(self, namespace: str) -> Optional[Dict[str, Dict[str, str]]]:
        """Return {"hard": {...}, "used": {...}} of the first quota in the namespace, or None if there is none."""
        quotas = self.core.list_namespaced_resource_quota(namespace=namespace)
        if not quotas.items:
            return None
        quota = quotas.items[0]
        return {
            "hard": dict((quota.status.hard if quota.status else None) or quota.spec.hard or {}),
            "used": dict((quota.status.used if quota.status else None) or {}),
        }

    # Network policies

    def apply_network_policy(self, namespace: str, name: str, ingress_namespace: str, labels: Optional[Dict[str, str]] = None):
        """Default-deny policy: ingress only from the namespace itself and the ingress controller;
        egress to the namespace itself, cluster DNS and the public internet."""
        body = {
            "apiVersion": "networking.k8s.io/v1",
            "kind": "NetworkPolicy",
            "metadata": {"name": name, "namespace": namespace, "labels": labels or {}},
            "spec": {
                "podSelector": {},
                "policyTypes": ["Ingress", "Egress"],
                "ingress": [
                    {"from": [{"podSelector": {}}]},
                    {"from": [{"namespaceSelector": {"matchLabels": {
                        "kubernetes.io/metadata.name": ingress_namespace
                    }}}]},
                ],
                "egress": [
                    {"to": [{"podSelector": {}}]},
                    {
                        "to": [{"namespaceSelector": {}}],
                        "ports": [{"protocol": "UDP", "port": 53}, {"protocol": "TCP", "port": 53}],
                    },
                    {"to": [{"ipBlock": {
                        "cidr": "0.0.0.0/0",
                        "except": ["10.0.0.0/8", "172.16.0.0/12", "192.168.0.0/16"],
                    }}]},
                ],
            },
        }
        try:
            self.networking.create_namespaced_network_policy(namespace=namespace, body=body)
            logger.info(f"Created network policy {name} in {namespace}")
        except ApiException as e:
            if e.status != 409:
                raise
            self.networking.replace_namespaced_network_policy(name=name, namespace=namespace, body=body)
            logger.info(f"Replaced network policy {name} in {namespace}")

    # Secrets

    def write_secret(self, namespace: str, name: str, data: Dict[str, str], labels: Optional[Dict[str, str]] = None):
        body = {
            "apiVersion": "v1",
            "kind": "Secret",
            "type": "Opaque",
            "metadata": {"name": name, "namespace": namespace, "labels": labels or {}},
            "stringData": {k: str(v) for k, v in data.items()},
        }
        try:
            self.core.create_namespaced_secret(namespace=namespace, body=body)
        except ApiException as e:
            if e.status != 409:
                raise
            self.core.replace_namespaced_secret(name=name, namespace=namespace, body=body)

    def read_secret(self, namespace: str, name: str) -> Dict[str, str]:
        """Decoded secret values; {} when the secret does not exist."""
        try:
            secret = self.core.read_namespaced_secret(name=name, namespace=namespace)
        except ApiException as e:
            if e.status == 404:
                return {}
            raise
        return {
            key: base64.b64decode(value).decode("utf-8")
            for key, value in (secret.data or {}).items()
        }

    def delete_secret(self, namespace: str, name: str) -> bool:
        try:
            self.core.delete_namespaced_secret(name=name, namespace=namespace)
            return True
        except ApiException as e:
            if e.status == 404:
                return False
            raise

    # Workload state

    def delete_pvcs(self, namespace: str, label_selector: str) -> int:
        """Delete persistent volume claims matching the selector. Returns how many were deleted."""
        pvcs = self.core.list_namespaced_persistent_volume_claim(
            namespace=namespace, label_selector=label_selector
        )
        deleted = 0
        for pvc in pvcs.items:
            try:
                self.core.delete_namespaced_persistent_volume_claim(
                    name=pvc.metadata.name, namespace=namespace
                )
                deleted += 1
            except ApiException as e:
                if e.status != 404:
                    raise
        if deleted:
            logger.info(f"Deleted {deleted} PVC(s) in {namespace} matching {label_selector}")
        return deleted

    def list_pods(self, namespace: str, label_selector: str) -> List[Any]:
        return self.core.list_namespaced_pod(namespace=namespace, label_selector=label_selector).items

    def pods_ready(self, namespace: str, label_selector: str) -> bool:
        """True when at least one pod matches and every matching pod reports Ready."""
        pods = self.list_pods(namespace, label_selector)
        if not pods:
            return False
        for pod in pods:
            if pod.status is None or pod.status.phase == "Succeeded":
                continue
            if not _pod_ready(pod):
                return False
        return True

    def wait_for_ready(
        self,
        namespace: str,
        label_selector: str,
        timeout_seconds: int,
        poll_seconds: float = 3.0,
        stop_event: Optional[threading.Event] = None,
    ) -> bool:
        """Poll until the matching pods are ready.

        Returns False on timeout, and as soon as stop_event is set.
        """
        deadline = time.monotonic() + timeout_seconds
        while True:
            if stop_event is not None and stop_event.is_set():
                return False
            try:
                if self.pods_ready(namespace, label_selector):
                    return True
            except ApiException as e:
                logger.warning(f"Readiness check failed for {namespace}/{label_selector}: {e.reason}")
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return False
            if stop_event is not None:
                stop_event.wait(min(poll_seconds, remaining))
            else:
                time.sleep(min(poll_seconds, remaining))

    # Pod access

    def find_ready_pod(self, namespace: str, instance: str) -> Tuple[str, Optional[str]]:
        """Return (pod name, first container) of a ready pod of the release.

        Charts label pods with app.kubernetes.io/instance; older ones use release.
        """
        pods = self.list_pods(namespace, f"app.kubernetes.io/instance={instance}")
        if not pods:
            pods = self.list_pods(namespace, f"release={instance}")
        if not pods:
            raise PodUnavailableError(f"No pods found for '{instance}'")
        for pod in pods:
            if _pod_ready(pod):
                return pod.metadata.name, _first_container(pod)
        raise PodUnavailableError(
            f"No ready pods found for '{instance}' ({len(pods)} pod(s) exist but none are ready)"
        )

    def exec_in_pod(
        self,
        namespace: str,
        pod_name: str,
        command: List[str],
        container: Optional[str] = None,
        timeout_seconds: int = 600,
    ) -> Dict[str, Any]:
        """Run command in the pod and collect its output.

        Returns {"exit_code", "stdout", "stderr"}. Raises TimeoutError when the
        command is still running after timeout_seconds.
        """
        kwargs = {"container": container} if container else {}
        resp = stream(
            self.core.connect_get_namespaced_pod_exec,
            pod_name, namespace,
            command=command,
            stderr=True, stdin=False, stdout=True, tty=False,
            _preload_content=False,
            **kwargs,
        )
        stdout: List[str] = []
        stderr: List[str] = []
        deadline = time.monotonic() + timeout_seconds
        try:
            while resp.is_open():
                if time.monotonic() >= deadline:
                    raise TimeoutError(f"Command in {namespace}/{pod_name} timed out after {timeout_seconds}s")
                resp.update(timeout=1)
                if resp.peek_stdout():
                    stdout.append(resp.read_stdout())
                if resp.peek_stderr():
                    stderr.append(resp.read_stderr())
            stdout.append(resp.read_stdout() or "")
            stderr.append(resp.read_stderr() or "")
            exit_code = resp.returncode
        finally:
            resp.close()
        return {
            "exit_code": exit_code if exit_code is not None else 1,
            "stdout": "".join(stdout),
            "stderr": "".join(stderr),
        }

    def read_pod_log(self, namespace: str, pod_name: str, lines: int = 100, container: Optional[str] = None) -> str:
        kwargs = {"container": container} if container else {}
        try:
            logs = self.core.read_namespaced_pod_log(
                name=pod_name, namespace=namespace, tail_lines=lines, **kwargs
            )
        except ApiException as e:
            if e.status == 404:
                return f"Pod '{pod_name}' not found in namespace '{namespace}'."
            raise
        return logs or "(no logs)"

    def read_release_logs(self, namespace: str, instance: str, lines: int = 100) -> str:
        """Last lines of every pod of the release, one section per pod."""
        pods = self.list_pods(namespace, f"app.kubernetes.io/instance={instance}")
        if not pods:
            return f"No pods found for '{instance}' in namespace '{namespace}'."
        sections = []
        for pod in pods:
            name = pod.metadata.name
            try:
                logs = self.read_pod_log(namespace, name, lines, container=_first_container(pod))
            except ApiException as e:
                logger.warning(f"Could not read logs of pod {namespace}/{name}: {e.reason}")
                logs = "(failed to retrieve logs)"
            sections.append(f"--- {name} ---\n{logs}")
        return "\n\n".join(sections)


_default_client: Optional[KubernetesClient] = None


def get_kubernetes_client() -> KubernetesClient:
    global _default_client
    if _default_client is None:
        _default_client = KubernetesClient()
    return _default_client
