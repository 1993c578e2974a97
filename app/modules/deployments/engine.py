"""
Deployment State Machine.

Synchronous half of every lifecycle operation: admission checks, record
transitions and workflow submission. The long-running half (helm, readiness,
local access) lives in deployment_worker and runs on the WorkflowRunner.

    PENDING -> DEPLOYING -> RUNNING
    PENDING/DEPLOYING -> FAILED
    RUNNING/FAILED -> DEPLOYING (upgrade, restart)
    RUNNING/FAILED -> DELETING -> (record removed)
"""

import logging
from typing import Any, Dict, List, Optional

from fastapi import HTTPException
from supabase import Client

from app.config import settings
from app.core.exceptions import ConflictError, InternalError, ValidationError
from app.modules.deployments import deployment_worker
from app.modules.deployments.data_transfer import DataTransfer, ExportedData, ImportOutcome
from app.modules.deployments.dependencies import DependencyResolver
from app.modules.deployments.events import DeploymentEventService
from app.modules.deployments.helm_deployer import HelmDeployer
from app.modules.deployments.port_forward import PortForwardSupervisor
from app.modules.deployments.port_manager import release_port
from app.modules.deployments.schemas import (
    DeploymentEventResponse,
    DeploymentLogsResponse,
    DeploymentResponse,
    DeploymentStatus,
    InstallResponse,
    IN_PROGRESS_STATUSES,
    OperationResponse,
)
from app.modules.deployments.service import DeploymentService
from app.modules.deployments.template import render_string
from app.modules.deployments.vault import SecretVault, secret_ref_for
from app.modules.deployments.workflow_runner import WorkflowRunner
from app.modules.recipes.config_schema import validate_config, validate_secret_values
from app.modules.recipes.schemas import RecipeDefinition
from app.modules.recipes.service import RecipeService
from app.modules.workspaces.provisioner import NamespaceProvisioner
from app.modules.workspaces.quota import QuotaGuard
from app.modules.workspaces.schemas import WorkspaceResponse
from app.modules.workspaces.service import WorkspaceService, is_dns_label

logger = logging.getLogger(__name__)


def resource_footprint(recipe: RecipeDefinition, config: Dict[str, Any]) -> Dict[str, Optional[str]]:
    """Recipe resource defaults, overridden by config fields named cpu, memory or storage."""
    footprint = recipe.resources.model_dump()
    for dimension in ("cpu", "memory", "storage"):
        if config.get(dimension):
            footprint[dimension] = str(config[dimension])
    return footprint


def release_selector(deployment: DeploymentResponse) -> str:
    return f"app.kubernetes.io/instance={deployment.release_name}"


class DeploymentEngine:
    def __init__(
        self,
        supabase: Client,
        cluster,
        helm: HelmDeployer,
        supervisor: PortForwardSupervisor,
        runner: WorkflowRunner,
        recipe_service: Optional[RecipeService] = None,
    ):
        self.supabase = supabase
        self.cluster = cluster
        self.helm = helm
        self.supervisor = supervisor
        self.runner = runner
        self.recipes = recipe_service or RecipeService(supabase)
        self.deployments = DeploymentService(supabase)
        self.events = DeploymentEventService(supabase)
        self.vault = SecretVault(cluster)
        self.data = DataTransfer(cluster)
        self.quota = QuotaGuard(cluster)
        self.resolver = DependencyResolver(self.deployments, self.recipes)
        self.provisioner = NamespaceProvisioner(cluster)
        self.workspaces = WorkspaceService(supabase, self.provisioner, teardown=self.teardown)
        self.dependency_poll_interval = settings.dependency_poll_interval_seconds
        self.dependency_wait_timeout = settings.dependency_wait_timeout_seconds

    # Install

    def install(
        self,
        tenant_id: str,
        workspace_id: str,
        recipe_slug: str,
        config: Optional[Dict[str, Any]] = None,
        name: Optional[str] = None,
        secrets: Optional[Dict[str, str]] = None,
        depends_on: Optional[List[str]] = None,
        triggered_by: Optional[str] = None,
    ) -> InstallResponse:
        """Admit the install and queue its workflow; returns the PENDING record.

        Nothing is written unless config, name, dependencies and quota all pass.
        """
        workspace = self.workspaces.get_active_workspace(tenant_id, workspace_id)
        recipe = self.recipes.get_recipe(recipe_slug)

        name = name or recipe.slug
        if not is_dns_label(name):
            raise ValidationError(
                "Invalid deployment name",
                [{"field": "name", "message": "Must be lowercase letters, digits and '-', at most 63 characters"}],
            )
        validated = validate_config(recipe.config_schema, config)
        supplied_secrets = validate_secret_values(recipe.secrets_schema, secrets)

        existing = self.deployments.find_active_by_name(workspace.id, name)
        if existing is not None:
            raise ConflictError(
                f"A service named '{name}' already exists in this workspace (status: {existing.status})"
            )

        explicit = self._explicit_dependencies(workspace, depends_on or [])
        plan = self.resolver.plan(workspace.id, recipe)
        if any(planned.name == name for planned in plan.new):
            raise ConflictError(f"Dependency '{name}' would collide with the service being installed")

        footprints = [resource_footprint(recipe, validated)]
        footprints.extend(resource_footprint(planned.recipe, planned.config) for planned in plan.new)
        self.quota.enforce(workspace.namespace, footprints)

        ids_by_name = {d.name: d.id for d in plan.reused}
        created: List[DeploymentResponse] = []
        for planned in plan.new:
            dep = self._create_record(
                tenant_id, workspace, planned.recipe, planned.name, planned.config,
                [ids_by_name[n] for n in planned.depends_on_names if n in ids_by_name],
                triggered_by,
            )
            ids_by_name[planned.name] = dep.id
            created.append(dep)

        direct = [ids_by_name[spec.name] for spec in recipe.dependencies if spec.name in ids_by_name]
        parent_depends_on = list(dict.fromkeys(direct + [d.id for d in explicit]))
        deployment = self._create_record(
            tenant_id, workspace, recipe, name, validated, parent_depends_on, triggered_by
        )

        for dep in created:
            self.runner.submit(dep.id, deployment_worker.run_install, self, dep.id)
        self.runner.submit(deployment.id, deployment_worker.run_install, self, deployment.id, supplied_secrets)

        logger.info(
            f"Queued install of {recipe.slug} as {name} in {workspace.namespace} "
            f"({len(created)} new dependencies, {len(plan.reused)} reused)"
        )
        message = f"Deployment of '{name}' queued"
        if created:
            message += f" with {len(created)} new dependenc{'y' if len(created) == 1 else 'ies'}"
        return InstallResponse(
            deployment_id=deployment.id,
            name=name,
            status=deployment.status,
            message=message,
            dependency_ids=[d.id for d in created],
            deployment=deployment,
        )

    def _explicit_dependencies(self, workspace: WorkspaceResponse, ids: List[str]) -> List[DeploymentResponse]:
        if not ids:
            return []
        found = {d.id: d for d in self.deployments.get_many(ids)}
        errors = []
        for dep_id in ids:
            dep = found.get(dep_id)
            if dep is None or dep.workspace_id != workspace.id or dep.status == DeploymentStatus.STOPPED.value:
                errors.append({"field": "depends_on", "message": f"Unknown deployment '{dep_id}'"})
        if errors:
            raise ValidationError("Invalid dependencies", errors)
        return [found[dep_id] for dep_id in ids]

    def _create_record(
        self,
        tenant_id: str,
        workspace: WorkspaceResponse,
        recipe: RecipeDefinition,
        name: str,
        config: Dict[str, Any],
        depends_on: List[str],
        triggered_by: Optional[str],
    ) -> DeploymentResponse:
        service_name = name
        if recipe.release.service_name:
            service_name = render_string(recipe.release.service_name, {"name": name, "release_name": name})
        record = self.deployments.create_deployment({
            "tenant_id": tenant_id,
            "workspace_id": workspace.id,
            "recipe_slug": recipe.slug,
            "recipe_version": recipe.version,
            "name": name,
            "namespace": workspace.namespace,
            "release_name": name,
            "config": config,
            "secret_ref": secret_ref_for(name) if recipe.secrets_schema else None,
            "depends_on": depends_on,
            "status": DeploymentStatus.PENDING.value,
            "service_name": service_name,
            "service_port": recipe.release.service_port,
            "deployment_logs": [f"Queued install of {recipe.slug} {recipe.version}"],
        })
        self.events.record(
            record.id, "created", None,
            {"status": record.status, "recipe": recipe.slug, "config": config},
            triggered_by=triggered_by,
        )
        return record

    # Upgrade / restart

    def upgrade(
        self,
        tenant_id: str,
        deployment_id: str,
        new_config: Optional[Dict[str, Any]] = None,
        triggered_by: Optional[str] = None,
        restart: bool = False,
    ) -> OperationResponse:
        deployment = self.deployments.get_deployment_by_id(deployment_id, tenant_id)
        if deployment.status not in (DeploymentStatus.RUNNING.value, DeploymentStatus.FAILED.value):
            raise ConflictError(f"Cannot change '{deployment.name}' while it is {deployment.status}")

        recipe = self.recipes.get_recipe(deployment.recipe_slug)
        merged = {**(deployment.config or {}), **(new_config or {})}
        validated = validate_config(recipe.config_schema, merged)

        deps = self.deployments.get_many(deployment.depends_on)
        found = {d.id for d in deps}
        blocked = [d.name for d in deps if d.status != DeploymentStatus.RUNNING.value]
        if len(found) != len(set(deployment.depends_on)):
            blocked.append("a removed dependency")
        if blocked:
            raise ConflictError(f"Dependencies are not running: {', '.join(blocked)}")

        self.runner.reserve(deployment.id)
        try:
            action = "restarted" if restart else "config_changed"
            self.deployments.update_deployment_status(
                deployment.id,
                DeploymentStatus.DEPLOYING.value,
                logs=["Restart requested" if restart else "Upgrade requested"],
                clear_error=True,
                config=validated,
            )
            self.events.record(
                deployment.id, action,
                {"status": deployment.status, "config": deployment.config, "revision": deployment.revision},
                {"status": DeploymentStatus.DEPLOYING.value, "config": validated},
                triggered_by=triggered_by,
            )
            self.runner.submit(
                deployment.id, deployment_worker.run_upgrade, self, deployment.id, restart,
                reserved=True,
            )
        except Exception:
            self.runner.release(deployment.id)
            raise

        verb = "Restart" if restart else "Upgrade"
        return OperationResponse(
            deployment_id=deployment.id,
            status=DeploymentStatus.DEPLOYING.value,
            message=f"{verb} of '{deployment.name}' started",
        )

    def restart(self, tenant_id: str, deployment_id: str, triggered_by: Optional[str] = None) -> OperationResponse:
        return self.upgrade(tenant_id, deployment_id, None, triggered_by=triggered_by, restart=True)

    # Remove

    def remove(
        self,
        tenant_id: str,
        deployment_id: str,
        force: bool = False,
        wait: bool = False,
        triggered_by: Optional[str] = None,
    ) -> OperationResponse:
        """Uninstall and delete a deployment.

        force skips the dependents check; only internal callers (snapshot import) use it.
        wait blocks until the uninstall workflow has finished.
        """
        deployment = self.deployments.get_deployment_by_id(deployment_id, tenant_id)
        if deployment.status in (DeploymentStatus.PENDING.value, DeploymentStatus.DEPLOYING.value):
            raise ConflictError(f"'{deployment.name}' is still being deployed; wait for it to finish")
        if deployment.status == DeploymentStatus.DELETING.value:
            raise ConflictError(f"'{deployment.name}' is already being removed")

        if not force:
            dependents = self.deployments.list_dependents(deployment)
            if dependents:
                names = ", ".join(d.name for d in dependents)
                raise ConflictError(f"Cannot remove '{deployment.name}': required by {names}")

        self.runner.reserve(deployment.id)
        try:
            self.deployments.update_deployment_status(
                deployment.id, DeploymentStatus.DELETING.value, logs=["Removal requested"]
            )
            self.events.record(
                deployment.id, "status_changed",
                {"status": deployment.status}, {"status": DeploymentStatus.DELETING.value},
                reason="force removal" if force else None,
                triggered_by=triggered_by,
            )
            self.runner.submit(deployment.id, deployment_worker.run_uninstall, self, deployment.id, reserved=True)
        except Exception:
            self.runner.release(deployment.id)
            raise

        if wait:
            self.runner.wait(deployment.id)
        return OperationResponse(
            deployment_id=deployment.id,
            status=DeploymentStatus.DELETING.value,
            message=f"Removal of '{deployment.name}' started",
        )

    def teardown(self, deployment: DeploymentResponse) -> None:
        """Best-effort release cleanup used by workspace deletion; namespace deletion covers anything left."""
        self.supervisor.stop(deployment.id)
        try:
            release_port(self.supabase, deployment.id)
        except Exception as e:
            logger.warning(f"Failed to release port of {deployment.name}: {e}")
        result = self.helm.uninstall(deployment.release_name, deployment.namespace)
        if not result["success"]:
            logger.warning(f"Helm uninstall of {deployment.name} failed: {result['error']}")
        try:
            self.vault.delete(deployment.namespace, deployment.secret_ref)
        except Exception as e:
            logger.warning(f"Failed to delete secret of {deployment.name}: {e}")

    # Reads

    def get_deployment(self, tenant_id: str, deployment_id: str) -> DeploymentResponse:
        return self.deployments.get_deployment_by_id(deployment_id, tenant_id)

    def list_deployments(self, tenant_id: str, workspace_id: Optional[str] = None) -> List[DeploymentResponse]:
        if workspace_id:
            workspace = self.workspaces.get_workspace(tenant_id, workspace_id)
            return self.deployments.list_by_workspace(workspace.id)
        return self.deployments.list_by_tenant(tenant_id)

    def get_logs(self, tenant_id: str, deployment_id: str, pod_lines: Optional[int] = None) -> DeploymentLogsResponse:
        """Buffered workflow output; with pod_lines, also the tail of the release's pod logs."""
        deployment = self.get_deployment(tenant_id, deployment_id)
        pod_logs = None
        if pod_lines:
            pod_logs = self._pod_logs(deployment, pod_lines)
        return DeploymentLogsResponse(
            deployment_id=deployment.id,
            logs=deployment.deployment_logs or [],
            status=deployment.status,
            has_more=deployment.status in IN_PROGRESS_STATUSES,
            pod_logs=pod_logs,
        )

    def _pod_logs(self, deployment: DeploymentResponse, lines: int) -> str:
        if deployment.status == DeploymentStatus.PENDING.value:
            return "Service is pending deployment; no logs available yet."
        try:
            return self.cluster.read_release_logs(deployment.namespace, deployment.release_name, lines)
        except Exception as e:
            logger.warning(f"Failed to read pod logs of {deployment.name}: {e}")
            return "Failed to retrieve logs. The service may not be running."

    # Data export / import

    def _data_target(self, tenant_id: str, deployment_id: str, action: str):
        deployment = self.get_deployment(tenant_id, deployment_id)
        if deployment.status != DeploymentStatus.RUNNING.value:
            raise ConflictError(f"'{deployment.name}' must be running to {action} data")
        recipe = self.recipes.get_recipe(deployment.recipe_slug)
        spec = recipe.data_export if action == "export" else recipe.data_import
        if spec is None:
            raise ValidationError(f"{recipe.display_name or recipe.slug} does not support data {action}")
        secrets = self.vault.read(deployment.namespace, deployment.secret_ref)
        return deployment, recipe, secrets

    def export_data(self, tenant_id: str, deployment_id: str, triggered_by: Optional[str] = None) -> ExportedData:
        try:
            deployment, recipe, secrets = self._data_target(tenant_id, deployment_id, "export")
            exported = self.data.export(deployment, recipe, secrets)
        except HTTPException:
            raise
        except Exception as e:
            logger.error(f"Error exporting data of deployment {deployment_id}: {str(e)}")
            raise InternalError()
        self.events.record(
            deployment.id, "data_exported", None,
            {"bytes": len(exported.content), "filename": exported.filename},
            triggered_by=triggered_by,
        )
        return exported

    def import_data(
        self, tenant_id: str, deployment_id: str, data: bytes, triggered_by: Optional[str] = None
    ) -> ImportOutcome:
        """Feed data to the recipe's import command. The caller restarts when restart_needed is set."""
        if not data:
            raise ValidationError("Uploaded file is empty")
        if len(data) > settings.data_import_max_bytes:
            raise ValidationError(f"Uploaded file exceeds {settings.data_import_max_bytes} bytes")
        try:
            deployment, recipe, secrets = self._data_target(tenant_id, deployment_id, "import")
            outcome = self.data.import_(deployment, recipe, secrets, data)
        except HTTPException:
            raise
        except Exception as e:
            logger.error(f"Error importing data into deployment {deployment_id}: {str(e)}")
            raise InternalError()
        self.events.record(
            deployment.id, "data_imported", None, {"bytes": len(data)},
            triggered_by=triggered_by,
        )
        return outcome

    def list_events(self, tenant_id: str, deployment_id: str) -> List[DeploymentEventResponse]:
        deployment = self.get_deployment(tenant_id, deployment_id)
        return self.events.list_events(deployment.id)

    def get_credentials(self, tenant_id: str, deployment_id: str) -> Dict[str, str]:
        deployment = self.get_deployment(tenant_id, deployment_id)
        try:
            return self.vault.read(deployment.namespace, deployment.secret_ref)
        except Exception as e:
            logger.error(f"Failed to read credentials of {deployment.name}: {e}")
            raise InternalError()

    def shutdown(self) -> None:
        self.runner.shutdown()
        self.supervisor.stop_all()
