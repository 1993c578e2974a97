import json
import logging
import os
import shutil
import subprocess
import tempfile
import threading
from typing import Any, Callable, Dict, List, Optional

from app.config import settings
from app.modules.deployments.process_registry import helm_processes
from app.modules.deployments.template import dump_values

logger = logging.getLogger(__name__)


class HelmDeployer:
    """Drives the helm CLI. Every operation returns a result dict instead of raising."""

    def __init__(self, helm_bin: Optional[str] = None, timeout: Optional[str] = None):
        self.helm_bin = helm_bin or settings.helm_bin
        self.timeout = timeout or settings.helm_timeout

    def _get_helm_env(self) -> dict:
        env = os.environ.copy()
        if settings.kubeconfig:
            env["KUBECONFIG"] = settings.kubeconfig
        return env

    def _base_args(self, namespace: str) -> List[str]:
        args = ["--namespace", namespace]
        if settings.kube_context:
            args.extend(["--kube-context", settings.kube_context])
        return args

    def _run_streaming(
        self,
        cmd: List[str],
        deployment_id: Optional[str],
        log_callback: Optional[Callable[[List[str]], None]],
    ) -> Dict[str, Any]:
        """Run helm via Popen, tracked so shutdown can terminate it.
        Returns {"returncode", "lines"}; lines of a trailing JSON document are not streamed."""
        lines: List[str] = []
        proc = subprocess.Popen(
            cmd,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            env=self._get_helm_env(),
            bufsize=1,
        )

        def stream_output():
            in_json = False
            for line in iter(proc.stdout.readline, ''):
                line = line.rstrip()
                lines.append(line)
                if line.startswith("{"):
                    in_json = True
                if log_callback and line.strip() and not in_json:
                    log_callback([line])

        with helm_processes.tracked(deployment_id, proc):
            stream_thread = threading.Thread(target=stream_output)
            stream_thread.start()
            proc.wait()
            stream_thread.join(timeout=5)
        return {"returncode": proc.returncode, "lines": lines}

    @staticmethod
    def _parse_json_tail(lines: List[str]) -> Optional[Dict[str, Any]]:
        for idx, line in enumerate(lines):
            if line.startswith("{"):
                try:
                    return json.loads("\n".join(lines[idx:]))
                except json.JSONDecodeError:
                    return None
        return None

    @staticmethod
    def _error_text(lines: List[str], limit: int = 20) -> str:
        meaningful = [line for line in lines if line.strip()]
        return "\n".join(meaningful[-limit:]) or "helm exited with an error"

    def upgrade_install(
        self,
        release_name: str,
        chart: str,
        namespace: str,
        values: Dict[str, Any],
        chart_version: Optional[str] = None,
        repo_url: Optional[str] = None,
        deployment_id: Optional[str] = None,
        log_callback: Optional[Callable[[List[str]], None]] = None,
    ) -> Dict[str, Any]:
        """
        Install or upgrade a release and wait for its resources.

        Returns:
            Dict with 'success' (bool), 'revision' (int or None) and 'error' (raw text)
        """
        work_dir = None
        try:
            work_dir = tempfile.mkdtemp(prefix=f"helm-{release_name}-")
            values_file = os.path.join(work_dir, "values.yaml")
            with open(values_file, "w") as f:
                f.write(dump_values(values))

            cmd = [
                self.helm_bin, "upgrade", release_name, chart,
                "--install",
                *self._base_args(namespace),
                "--values", values_file,
                "--wait",
                "--timeout", self.timeout,
                "--output", "json",
            ]
            if chart_version:
                cmd.extend(["--version", chart_version])
            if repo_url:
                cmd.extend(["--repo", repo_url])

            if log_callback:
                log_callback([f"helm upgrade --install {release_name} {chart} -n {namespace}"])
            result = self._run_streaming(cmd, deployment_id, log_callback)
            if result["returncode"] != 0:
                error = self._error_text(result["lines"])
                logger.error(f"Helm upgrade of {release_name} in {namespace} failed: {error}")
                return {"success": False, "error": error, "revision": None}

            document = self._parse_json_tail(result["lines"]) or {}
            revision = document.get("version")
            logger.info(f"Helm release {release_name} in {namespace} applied (revision {revision})")
            return {"success": True, "error": None, "revision": revision}
        except FileNotFoundError:
            return {"success": False, "error": f"helm binary '{self.helm_bin}' not found", "revision": None}
        except Exception as e:
            logger.error(f"Helm upgrade error for {release_name}: {str(e)}")
            return {"success": False, "error": str(e), "revision": None}
        finally:
            if work_dir and os.path.exists(work_dir):
                try:
                    shutil.rmtree(work_dir)
                except Exception as e:
                    logger.warning(f"Failed to cleanup work directory: {str(e)}")

    def uninstall(
        self,
        release_name: str,
        namespace: str,
        deployment_id: Optional[str] = None,
        log_callback: Optional[Callable[[List[str]], None]] = None,
    ) -> Dict[str, Any]:
        """Uninstall a release. A release that does not exist counts as success."""
        cmd = [
            self.helm_bin, "uninstall", release_name,
            *self._base_args(namespace),
            "--wait",
            "--timeout", self.timeout,
        ]
        try:
            result = self._run_streaming(cmd, deployment_id, log_callback)
        except FileNotFoundError:
            return {"success": False, "error": f"helm binary '{self.helm_bin}' not found", "not_found": False}
        except Exception as e:
            logger.error(f"Helm uninstall error for {release_name}: {str(e)}")
            return {"success": False, "error": str(e), "not_found": False}

        if result["returncode"] == 0:
            logger.info(f"Helm release {release_name} uninstalled from {namespace}")
            return {"success": True, "error": None, "not_found": False}
        error = self._error_text(result["lines"])
        if "not found" in error.lower():
            logger.info(f"Helm release {release_name} not found in {namespace}; nothing to uninstall")
            return {"success": True, "error": None, "not_found": True}
        logger.error(f"Helm uninstall of {release_name} failed: {error}")
        return {"success": False, "error": error, "not_found": False}

    def status(self, release_name: str, namespace: str) -> Optional[str]:
        """Release status (deployed, failed, pending-install, ...) or None when the release does not exist."""
        cmd = [self.helm_bin, "status", release_name, *self._base_args(namespace), "--output", "json"]
        result = subprocess.run(
            cmd,
            capture_output=True,
            text=True,
            env=self._get_helm_env(),
            timeout=60,
        )
        if result.returncode != 0:
            if "not found" in (result.stderr or "").lower():
                return None
            raise Exception(f"helm status failed: {result.stderr.strip()}")
        try:
            document = json.loads(result.stdout or "{}")
        except json.JSONDecodeError:
            logger.warning(f"Failed to parse helm status for {release_name}")
            return None
        return (document.get("info") or {}).get("status")
