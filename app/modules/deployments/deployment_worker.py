import time
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import HTTPException

from app.config import settings
from app.modules.deployments.dependencies import connection_info
from app.modules.deployments.error_classifier import classify
from app.modules.deployments.port_forward import ForwardTarget
from app.modules.deployments.port_manager import claim_port, release_port
from app.modules.deployments.schemas import DeploymentResponse, DeploymentStatus
from app.modules.deployments.service import DeploymentService
from app.modules.deployments.template import TemplateRenderError, render_values
from app.modules.deployments.vault import resolve_secrets
from app.modules.deployments.events import SYSTEM_ACTOR
from app.modules.recipes.schemas import RecipeDefinition

logger = logging.getLogger(__name__)

MAX_ERROR_LENGTH = 1000


class WorkflowInterrupted(Exception):
    """The runner is shutting down; the record is left for recovery."""


class DeploymentAborted(Exception):
    """Failure whose message is already fit for the user."""


class RemoteOperationError(Exception):
    """Failure reported by helm or the cluster; the raw text is classified before storing."""


def _make_log_callback(deployment_service: DeploymentService, deployment_id: str):
    """Batched log callback: lines are buffered and flushed every log_flush_interval_seconds.
    Returns (callback, flush)."""
    log_buffer: List[str] = []
    last_flush_time = [time.monotonic()]

    def _flush_logs():
        if not log_buffer:
            return
        try:
            deployment_service.append_logs(deployment_id, list(log_buffer))
            log_buffer.clear()
            last_flush_time[0] = time.monotonic()
        except Exception as e:
            logger.error(f"Error updating logs: {str(e)}")

    def log_callback(log_lines: list):
        filtered = [line for line in log_lines if line.strip()]
        if not filtered:
            return
        log_buffer.extend(filtered)
        if time.monotonic() - last_flush_time[0] >= settings.log_flush_interval_seconds:
            _flush_logs()

    return log_callback, _flush_logs


def _check_stopping(engine):
    if engine.runner.stopping.is_set():
        raise WorkflowInterrupted()


def _wait_for_dependencies(engine, deployment: DeploymentResponse) -> List[DeploymentResponse]:
    """Poll until every dependency has left PENDING/DEPLOYING; all of them must then be RUNNING."""
    if not deployment.depends_on:
        return []
    deadline = time.monotonic() + engine.dependency_wait_timeout
    settling = (DeploymentStatus.PENDING.value, DeploymentStatus.DEPLOYING.value)
    while True:
        _check_stopping(engine)
        deps = engine.deployments.get_many(deployment.depends_on)
        found = {d.id for d in deps}
        missing = [dep_id for dep_id in deployment.depends_on if dep_id not in found]
        if missing:
            raise DeploymentAborted("A dependency of this deployment no longer exists")

        waiting = [d for d in deps if d.status in settling]
        if not waiting:
            for dep in deps:
                if dep.status != DeploymentStatus.RUNNING.value:
                    raise DeploymentAborted(f"Dependency '{dep.name}' is not running")
            by_id = {d.id: d for d in deps}
            return [by_id[dep_id] for dep_id in deployment.depends_on]

        if time.monotonic() >= deadline:
            names = ", ".join(d.name for d in waiting)
            raise DeploymentAborted(f"Timed out waiting for dependencies: {names}")
        engine.runner.stopping.wait(engine.dependency_poll_interval)


def _dependency_context(engine, deps: List[DeploymentResponse]) -> Dict[str, Any]:
    """Connection info per dependency, keyed by deployment name and, where unambiguous, recipe slug."""
    context: Dict[str, Any] = {}
    for dep in deps:
        dep_recipe = engine.recipes.find_recipe(dep.recipe_slug)
        secrets = engine.vault.read(dep.namespace, dep.secret_ref)
        context[dep.name] = connection_info(dep, dep_recipe, secrets)
    for dep in deps:
        context.setdefault(dep.recipe_slug, context[dep.name])
    return context


def _ingress_host(deployment: DeploymentResponse, workspace_slug: str) -> str:
    return f"{deployment.name}-{workspace_slug}.apps.{settings.base_domain}"


def _apply(
    engine,
    deployment: DeploymentResponse,
    recipe: RecipeDefinition,
    deps: List[DeploymentResponse],
    supplied_secrets: Optional[Dict[str, str]] = None,
    restart: bool = False,
) -> DeploymentResponse:
    """Render and apply the release, confirm readiness, set up access and mark RUNNING."""
    deployment_service = engine.deployments
    deployment_id = deployment.id

    workspace = engine.workspaces.find_workspace(deployment.workspace_id)
    if workspace is None:
        raise DeploymentAborted("The workspace of this deployment no longer exists")
    tenant = engine.workspaces.get_tenant_row(deployment.tenant_id)

    secrets: Dict[str, str] = {}
    if recipe.secrets_schema and deployment.secret_ref:
        existing = engine.vault.read(deployment.namespace, deployment.secret_ref)
        secrets = resolve_secrets(recipe.secrets_schema, supplied_secrets, existing)
        if secrets != existing:
            engine.vault.write(deployment.namespace, deployment.secret_ref, secrets)

    ingress_host = _ingress_host(deployment, workspace.slug)
    context = {
        "name": deployment.name,
        "namespace": deployment.namespace,
        "release_name": deployment.release_name,
        "config": deployment.config or {},
        "secrets": secrets,
        "deps": _dependency_context(engine, deps),
        "tenant": {"id": tenant["id"], "slug": tenant["slug"]},
        "workspace": {"id": workspace.id, "slug": workspace.slug, "name": workspace.name},
        "recipe": {"slug": recipe.slug, "version": recipe.version},
        "platform": {"label_prefix": settings.label_prefix},
        "ingress": {
            "enabled": settings.ingress_enabled,
            "host": ingress_host,
            "class_name": settings.ingress_class,
            "tls": settings.tls_enabled,
            "cluster_issuer": settings.tls_cluster_issuer,
        },
        "revision": deployment.revision,
        "restart_token": datetime.utcnow().isoformat() if restart else None,
    }
    try:
        values = render_values(recipe.release.values_template, context)
    except TemplateRenderError as e:
        logger.error(f"Values of {deployment.name} could not be rendered: {e}")
        raise DeploymentAborted(f"Recipe '{recipe.slug}' could not be rendered: {e}")

    _check_stopping(engine)
    if deployment.status != DeploymentStatus.DEPLOYING.value:
        deployment_service.update_deployment_status(
            deployment_id,
            DeploymentStatus.DEPLOYING.value,
            logs=[f"Deploying {recipe.slug} {recipe.version} to {deployment.namespace}..."],
        )
        engine.events.record(
            deployment_id, "status_changed",
            {"status": deployment.status}, {"status": DeploymentStatus.DEPLOYING.value},
            triggered_by=SYSTEM_ACTOR,
        )

    log_callback, flush_logs = _make_log_callback(deployment_service, deployment_id)
    try:
        result = engine.helm.upgrade_install(
            release_name=deployment.release_name,
            chart=recipe.release.chart,
            namespace=deployment.namespace,
            values=values,
            chart_version=recipe.release.version,
            repo_url=recipe.release.repo_url,
            deployment_id=deployment_id,
            log_callback=log_callback,
        )
    finally:
        flush_logs()

    _check_stopping(engine)
    if not result["success"]:
        raise RemoteOperationError(result.get("error") or "helm upgrade failed")

    ready = engine.cluster.wait_for_ready(
        deployment.namespace,
        f"app.kubernetes.io/instance={deployment.release_name}",
        settings.readiness_timeout_seconds,
        stop_event=engine.runner.stopping,
    )
    _check_stopping(engine)
    if not ready:
        raise RemoteOperationError(f"Pods of release {deployment.release_name} are not ready")

    url = _set_up_access(engine, deployment, ingress_host)

    updated = deployment_service.update_deployment_status(
        deployment_id,
        DeploymentStatus.RUNNING.value,
        logs=[f"{deployment.name} is running" + (f" at {url}" if url else "")],
        clear_error=True,
        revision=deployment.revision + 1,
        url=url,
    )
    engine.events.record(
        deployment_id, "status_changed",
        {"status": DeploymentStatus.DEPLOYING.value},
        {"status": DeploymentStatus.RUNNING.value, "revision": deployment.revision + 1},
        triggered_by=SYSTEM_ACTOR,
    )
    logger.info(f"Deployment {deployment_id} ({deployment.name}) running, revision {deployment.revision + 1}")
    return updated


def _set_up_access(engine, deployment: DeploymentResponse, ingress_host: str) -> Optional[str]:
    if settings.ingress_enabled:
        scheme = "https" if settings.tls_enabled else "http"
        return f"{scheme}://{ingress_host}"
    if not settings.local_access_enabled or not deployment.service_port:
        return None
    # Local access is a convenience; the deployment is still RUNNING without it
    try:
        port = claim_port(engine.supabase, deployment.id)
        return engine.supervisor.start(ForwardTarget(
            deployment_id=deployment.id,
            namespace=deployment.namespace,
            service_name=deployment.service_name or deployment.name,
            service_port=deployment.service_port,
            local_port=port,
        ))
    except Exception as e:
        logger.warning(f"Local access for {deployment.name} could not be set up: {e}")
        engine.deployments.append_logs(deployment.id, [f"Local access unavailable: {e}"])
        return None


def _failure_message(error: Exception) -> str:
    if isinstance(error, DeploymentAborted):
        message = str(error)
    elif isinstance(error, HTTPException):
        message = error.detail if isinstance(error.detail, str) else str(error.detail)
    else:
        message = classify(str(error))[1]
    return message[:MAX_ERROR_LENGTH]


def _handle_failure(engine, deployment: DeploymentResponse, error: Exception, prefix: str = "") -> None:
    if isinstance(error, WorkflowInterrupted) or engine.runner.stopping.is_set():
        logger.info(f"Workflow for deployment {deployment.id} interrupted by shutdown; left as {deployment.status}")
        return
    logger.error(f"Deployment {deployment.id} ({deployment.name}) failed: {str(error)}")
    message = prefix + _failure_message(error)
    try:
        current = engine.deployments.find_deployment(deployment.id)
        previous = current.status if current else deployment.status
        engine.deployments.update_deployment_status(
            deployment.id,
            DeploymentStatus.FAILED.value,
            logs=[f"Failed: {message}"],
            error_message=message,
        )
        engine.events.record(
            deployment.id, "failed",
            {"status": previous}, {"status": DeploymentStatus.FAILED.value},
            reason=message,
            triggered_by=SYSTEM_ACTOR,
        )
    except Exception as update_error:
        logger.error(f"Failed to update deployment status: {str(update_error)}")


def run_install(engine, deployment_id: str, supplied_secrets: Optional[Dict[str, str]] = None):
    """Install workflow: wait for dependencies, then apply. Runs on the WorkflowRunner."""
    deployment = engine.deployments.find_deployment(deployment_id)
    if deployment is None or deployment.status != DeploymentStatus.PENDING.value:
        logger.info(f"Install of {deployment_id} skipped; record is no longer pending")
        return
    try:
        recipe = engine.recipes.get_recipe(deployment.recipe_slug)
        if deployment.depends_on:
            engine.deployments.append_logs(deployment_id, ["Waiting for dependencies..."])
        deps = _wait_for_dependencies(engine, deployment)
        _apply(engine, deployment, recipe, deps, supplied_secrets=supplied_secrets)
    except Exception as e:
        _handle_failure(engine, deployment, e)


def run_upgrade(engine, deployment_id: str, restart: bool = False):
    """Upgrade or restart workflow; the record was moved to DEPLOYING before submission."""
    deployment = engine.deployments.find_deployment(deployment_id)
    if deployment is None or deployment.status != DeploymentStatus.DEPLOYING.value:
        logger.info(f"Upgrade of {deployment_id} skipped; record is no longer deploying")
        return
    try:
        recipe = engine.recipes.get_recipe(deployment.recipe_slug)
        deps = engine.deployments.get_many(deployment.depends_on)
        not_running = [d.name for d in deps if d.status != DeploymentStatus.RUNNING.value]
        if not_running:
            raise DeploymentAborted(f"Dependency '{not_running[0]}' is not running")
        _apply(engine, deployment, recipe, deps, restart=restart)
    except Exception as e:
        _handle_failure(engine, deployment, e)


def run_uninstall(engine, deployment_id: str):
    """Removal workflow: local access, release, secret and volumes, then the record."""
    deployment = engine.deployments.find_deployment(deployment_id)
    if deployment is None or deployment.status != DeploymentStatus.DELETING.value:
        logger.info(f"Removal of {deployment_id} skipped; record is no longer deleting")
        return
    try:
        engine.supervisor.stop(deployment.id)
        release_port(engine.supabase, deployment.id)

        log_callback, flush_logs = _make_log_callback(engine.deployments, deployment_id)
        try:
            result = engine.helm.uninstall(
                deployment.release_name,
                deployment.namespace,
                deployment_id=deployment_id,
                log_callback=log_callback,
            )
        finally:
            flush_logs()
        _check_stopping(engine)
        if not result["success"]:
            raise RemoteOperationError(result.get("error") or "helm uninstall failed")

        engine.vault.delete(deployment.namespace, deployment.secret_ref)
        removed_volumes = engine.cluster.delete_pvcs(
            deployment.namespace, f"app.kubernetes.io/instance={deployment.release_name}"
        )
        if removed_volumes:
            logger.info(f"Deleted {removed_volumes} volume claim(s) of {deployment.name}")

        engine.events.record(
            deployment.id, "removed",
            {"status": DeploymentStatus.DELETING.value}, None,
            triggered_by=SYSTEM_ACTOR,
        )
        engine.deployments.delete_deployment(deployment.id)
        logger.info(f"Deployment {deployment_id} ({deployment.name}) removed")
    except Exception as e:
        _handle_failure(engine, deployment, e, prefix="Removal failed: ")
