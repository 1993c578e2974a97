"""
Per-deployment data export and import, run inside a ready pod of the release.

Bytes cross the exec channel base64-encoded. Uploads are written to a file in
the pod in chunks, then fed to the recipe's import command on stdin.
"""
import base64
import logging
import shlex
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel

from app.cluster.kubernetes_client import PodUnavailableError
from app.config import settings
from app.core.exceptions import ConflictError, DataTransferError, RecipeConfigurationError
from app.modules.deployments.schemas import DeploymentResponse
from app.modules.deployments.template import TemplateRenderError, render_string
from app.modules.recipes.schemas import DataExportSpec, DataImportSpec, RecipeDefinition

logger = logging.getLogger(__name__)

# Base64 characters per exec call; a multiple of 4 so chunks decode independently
CHUNK_CHARS = 32768
MAX_STDERR_IN_MESSAGE = 500


class ExportedData(BaseModel):
    content: bytes
    content_type: str
    filename: str
    description: str


class ImportOutcome(BaseModel):
    message: str
    restart_needed: bool


def _command_context(deployment: DeploymentResponse, secrets: Dict[str, str]) -> Dict[str, Any]:
    return {
        "name": deployment.name,
        "namespace": deployment.namespace,
        "release_name": deployment.release_name,
        "config": deployment.config or {},
        "secrets": secrets,
    }


def _render(recipe: RecipeDefinition, source: str, context: Dict[str, Any]) -> str:
    try:
        return render_string(source, context).strip()
    except TemplateRenderError as e:
        raise RecipeConfigurationError(f"Recipe '{recipe.slug}' data command could not be rendered: {e}")


def export_script(recipe: RecipeDefinition, spec: DataExportSpec, context: Dict[str, Any]) -> str:
    """Shell script writing the exported data to stdout."""
    if spec.type == "command":
        if not spec.command:
            raise RecipeConfigurationError(f"Recipe '{recipe.slug}' has no export command")
        return _render(recipe, spec.command, context)
    if not spec.paths:
        raise RecipeConfigurationError(f"Recipe '{recipe.slug}' has no export paths")
    args = ["tar", "czf", "-"]
    for pattern in spec.exclude:
        args.extend(["--exclude", pattern])
    args.extend(spec.paths)
    return " ".join(shlex.quote(a) for a in args)


def import_script(recipe: RecipeDefinition, spec: DataImportSpec, context: Dict[str, Any]) -> str:
    """Shell script reading the uploaded data on stdin."""
    if spec.type == "command":
        if not spec.command:
            raise RecipeConfigurationError(f"Recipe '{recipe.slug}' has no import command")
        return _render(recipe, spec.command, context)
    return f"tar xzf - -C {shlex.quote(spec.extract_path)}"


def _failure(action: str, result: Dict[str, Any]) -> DataTransferError:
    stderr = (result.get("stderr") or "").strip()[:MAX_STDERR_IN_MESSAGE]
    return DataTransferError(f"{action} failed: {stderr or 'command exited with code ' + str(result['exit_code'])}")


class DataTransfer:
    def __init__(self, cluster, timeout_seconds: Optional[int] = None, work_dir: Optional[str] = None):
        self.cluster = cluster
        self.timeout_seconds = timeout_seconds or settings.data_transfer_timeout_seconds
        self.work_dir = work_dir or settings.data_transfer_dir

    def _pod(self, deployment: DeploymentResponse):
        try:
            return self.cluster.find_ready_pod(deployment.namespace, deployment.release_name)
        except PodUnavailableError as e:
            raise ConflictError(str(e))

    def _exec(self, deployment: DeploymentResponse, pod, command: List[str]) -> Dict[str, Any]:
        pod_name, container = pod
        return self.cluster.exec_in_pod(
            deployment.namespace, pod_name, command,
            container=container, timeout_seconds=self.timeout_seconds,
        )

    def _scratch_path(self, kind: str, deployment: DeploymentResponse) -> str:
        return f"{self.work_dir.rstrip('/')}/appyard-{kind}-{deployment.id}"

    def export(
        self, deployment: DeploymentResponse, recipe: RecipeDefinition, secrets: Dict[str, str]
    ) -> ExportedData:
        spec = recipe.data_export
        script = export_script(recipe, spec, _command_context(deployment, secrets))
        pod = self._pod(deployment)
        path = shlex.quote(self._scratch_path("export", deployment))
        wrapped = f"({script}) > {path} && base64 {path}; rc=$?; rm -f {path}; exit $rc"

        logger.info(f"Exporting data of {deployment.name} from pod {pod[0]}")
        result = self._exec(deployment, pod, ["sh", "-c", wrapped])
        if result["exit_code"] != 0:
            logger.error(f"Data export of {deployment.name} failed: {result['stderr']}")
            raise _failure("Export", result)

        content = base64.b64decode("".join(result["stdout"].split()))
        timestamp = datetime.utcnow().strftime("%Y-%m-%dT%H-%M-%S")
        if spec.type == "files":
            content_type, extension = "application/gzip", "tar.gz"
        else:
            content_type, extension = spec.content_type, spec.file_extension
        logger.info(f"Exported {len(content)} bytes from {deployment.name}")
        return ExportedData(
            content=content,
            content_type=content_type,
            filename=f"{deployment.name}-{timestamp}.{extension}",
            description=spec.description,
        )

    def import_(
        self, deployment: DeploymentResponse, recipe: RecipeDefinition, secrets: Dict[str, str], data: bytes
    ) -> ImportOutcome:
        spec = recipe.data_import
        script = import_script(recipe, spec, _command_context(deployment, secrets))
        pod = self._pod(deployment)
        path = shlex.quote(self._scratch_path("import", deployment))

        encoded = base64.b64encode(data).decode()
        chunks = [encoded[i:i + CHUNK_CHARS] for i in range(0, len(encoded), CHUNK_CHARS)]
        logger.info(f"Uploading {len(data)} bytes to pod {pod[0]} of {deployment.name} in {len(chunks)} chunk(s)")
        for index, chunk in enumerate(chunks):
            redirect = ">" if index == 0 else ">>"
            result = self._exec(deployment, pod, ["sh", "-c", f"printf '%s' '{chunk}' | base64 -d {redirect} {path}"])
            if result["exit_code"] != 0:
                self._exec(deployment, pod, ["sh", "-c", f"rm -f {path}"])
                raise _failure("Upload", result)

        result = self._exec(deployment, pod, ["sh", "-c", f"({script}) < {path}; rc=$?; rm -f {path}; exit $rc"])
        if result["exit_code"] != 0:
            logger.error(f"Data import into {deployment.name} failed: {result['stderr']}")
            raise _failure("Import", result)

        logger.info(f"Imported {len(data)} bytes into {deployment.name}")
        name = recipe.display_name or recipe.slug
        return ImportOutcome(
            message=f"Data imported successfully into {name}",
            restart_needed=spec.restart_after_import,
        )
