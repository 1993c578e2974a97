import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

from app.config import settings
from app.modules.deployments import deployment_worker
from app.modules.deployments.dependencies import topological_order
from app.modules.deployments.events import SYSTEM_ACTOR
from app.modules.deployments.port_forward import ForwardTarget
from app.modules.deployments.schemas import DeploymentResponse, DeploymentStatus
from app.modules.workspaces.schemas import WorkspaceStatus

logger = logging.getLogger(__name__)

INTERRUPTED_MESSAGE = "The deployment was interrupted before it finished. Restart it to try again."


def _settled(deployment: DeploymentResponse, settle_seconds: float) -> bool:
    """True when the record has not been touched for settle_seconds."""
    if settle_seconds <= 0 or deployment.updated_at is None:
        return True
    updated_at = deployment.updated_at
    if updated_at.tzinfo is None:
        updated_at = updated_at.replace(tzinfo=timezone.utc)
    return datetime.now(timezone.utc) - updated_at >= timedelta(seconds=settle_seconds)


def _mark(engine, deployment: DeploymentResponse, status: str, reason: str, error_message: Optional[str] = None):
    engine.deployments.update_deployment_status(
        deployment.id,
        status,
        logs=[reason],
        error_message=error_message,
        clear_error=status == DeploymentStatus.RUNNING.value,
    )
    engine.events.record(
        deployment.id, "status_changed",
        {"status": deployment.status}, {"status": status},
        reason=reason,
        triggered_by=SYSTEM_ACTOR,
    )


def recover_interrupted(engine, settle_seconds: float = 0) -> Dict[str, int]:
    """Bring records left PENDING/DEPLOYING/DELETING without a live workflow back to a stable state."""
    counts = {"requeued": 0, "running": 0, "failed": 0}
    records = engine.deployments.list_by_status([
        DeploymentStatus.PENDING.value,
        DeploymentStatus.DEPLOYING.value,
        DeploymentStatus.DELETING.value,
    ])
    orphaned = [
        d for d in records
        if not engine.runner.is_in_flight(d.id) and _settled(d, settle_seconds)
    ]
    if not orphaned:
        return counts

    workspace_active: Dict[str, bool] = {}
    pending: List[DeploymentResponse] = []
    for deployment in orphaned:
        if deployment.workspace_id not in workspace_active:
            workspace = engine.workspaces.find_workspace(deployment.workspace_id)
            workspace_active[deployment.workspace_id] = (
                workspace is not None and workspace.status == WorkspaceStatus.ACTIVE.value
            )
        # Workspace deletion owns its deployments
        if not workspace_active[deployment.workspace_id]:
            continue

        try:
            if deployment.status == DeploymentStatus.DELETING.value:
                engine.runner.submit(deployment.id, deployment_worker.run_uninstall, engine, deployment.id)
                counts["requeued"] += 1
                continue

            release_status = engine.helm.status(deployment.release_name, deployment.namespace)
            if release_status == "deployed" and engine.cluster.pods_ready(
                deployment.namespace, f"app.kubernetes.io/instance={deployment.release_name}"
            ):
                _mark(engine, deployment, DeploymentStatus.RUNNING.value, "Recovered: release is deployed and ready")
                counts["running"] += 1
            elif release_status is None and deployment.status == DeploymentStatus.PENDING.value:
                pending.append(deployment)
            else:
                _mark(
                    engine, deployment, DeploymentStatus.FAILED.value,
                    f"Recovered: release status {release_status or 'missing'}",
                    error_message=INTERRUPTED_MESSAGE,
                )
                counts["failed"] += 1
        except Exception as e:
            logger.error(f"Error recovering deployment {deployment.id}: {str(e)}")

    # Dependencies are queued before their dependents
    by_id = {d.id: d for d in pending}
    graph = {d.id: [dep for dep in d.depends_on if dep in by_id] for d in pending}
    try:
        order = topological_order(graph)
    except ValueError:
        order = list(graph)
    for deployment_id in order:
        try:
            engine.runner.submit(deployment_id, deployment_worker.run_install, engine, deployment_id)
            counts["requeued"] += 1
        except Exception as e:
            logger.error(f"Error re-queueing install of {deployment_id}: {str(e)}")

    logger.info(
        f"Recovery: {counts['requeued']} re-queued, {counts['running']} running, {counts['failed']} failed"
    )
    return counts


def check_health(engine) -> int:
    """Mark RUNNING deployments whose pods are no longer ready as FAILED. Returns how many changed."""
    changed = 0
    for deployment in engine.deployments.list_by_status([DeploymentStatus.RUNNING.value]):
        if engine.runner.is_in_flight(deployment.id):
            continue
        try:
            ready = engine.cluster.pods_ready(
                deployment.namespace, f"app.kubernetes.io/instance={deployment.release_name}"
            )
        except Exception as e:
            # Cluster unreachable says nothing about this deployment
            logger.warning(f"Health check of {deployment.name} skipped: {e}")
            continue
        if ready:
            continue
        message = "The application is no longer ready. Check its logs or restart it."
        engine.deployments.update_deployment_status(
            deployment.id,
            DeploymentStatus.FAILED.value,
            logs=["Health check failed: pods are not ready"],
            error_message=message,
        )
        engine.events.record(
            deployment.id, "health_changed",
            {"status": DeploymentStatus.RUNNING.value}, {"status": DeploymentStatus.FAILED.value},
            reason="pods not ready",
            triggered_by=SYSTEM_ACTOR,
        )
        changed += 1
    if changed:
        logger.info(f"Health check marked {changed} deployment(s) failed")
    return changed


def _forward_target(deployment: Optional[DeploymentResponse]) -> Optional[ForwardTarget]:
    if deployment is None or deployment.status != DeploymentStatus.RUNNING.value:
        return None
    if deployment.local_port is None or not deployment.service_port:
        return None
    return ForwardTarget(
        deployment_id=deployment.id,
        namespace=deployment.namespace,
        service_name=deployment.service_name or deployment.name,
        service_port=deployment.service_port,
        local_port=deployment.local_port,
    )


def sweep_port_forwards(engine) -> Dict[str, int]:
    """Restart exited forwards and start missing ones for RUNNING deployments with a local port."""
    if not settings.local_access_enabled:
        return {"restarted": 0, "dropped": 0, "started": 0}
    result = engine.supervisor.sweep(
        lambda deployment_id: _forward_target(engine.deployments.find_deployment(deployment_id))
    )
    targets = [
        t for t in (
            _forward_target(d) for d in engine.deployments.list_by_status([DeploymentStatus.RUNNING.value])
        )
        if t is not None
    ]
    result["started"] = engine.supervisor.ensure(targets)
    return result


async def reconcile_loop(engine):
    """Background task that periodically recovers orphaned workflows and checks health"""
    while True:
        await asyncio.sleep(settings.reconcile_interval_seconds)
        try:
            await asyncio.to_thread(recover_interrupted, engine, settings.reconcile_interval_seconds)
            await asyncio.to_thread(check_health, engine)
        except Exception as e:
            logger.error(f"Error in reconcile loop: {str(e)}")


async def port_forward_loop(engine):
    """Background task that keeps local port-forwards alive"""
    while True:
        try:
            await asyncio.to_thread(sweep_port_forwards, engine)
        except Exception as e:
            logger.error(f"Error in port-forward loop: {str(e)}")
        await asyncio.sleep(settings.port_forward_sweep_seconds)
