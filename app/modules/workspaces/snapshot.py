"""
Workspace snapshots: export a workspace's secret-free desired state as a
portable document and replay it into a (possibly different) workspace.

Dependencies travel as deployment names because ids are not portable; they
are translated back to ids of the target workspace during import.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import HTTPException
from pydantic import ValidationError as PydanticValidationError

from app.core.exceptions import ValidationError
from app.modules.deployments.dependencies import find_cycle, topological_order
from app.modules.recipes.config_schema import validate_config
from app.modules.workspaces.schemas import (
    SNAPSHOT_VERSION,
    ImportResult,
    ServiceImportResult,
    SnapshotService,
    SnapshotWorkspace,
    WorkspaceSnapshot,
)

logger = logging.getLogger(__name__)

SNAPSHOT_METADATA = {"platform": "appyard", "engineVersion": "2"}


def export_workspace(engine, tenant_id: str, workspace_id: str, exported_by: Optional[str] = None) -> WorkspaceSnapshot:
    workspace = engine.workspaces.get_workspace(tenant_id, workspace_id)
    deployments = engine.deployments.list_by_workspace(workspace.id, include_stopped=False)
    names_by_id = {d.id: d.name for d in deployments}

    services: List[SnapshotService] = []
    for deployment in deployments:
        config = deployment.config or {}
        recipe = engine.recipes.find_recipe(deployment.recipe_slug)
        if recipe is None:
            logger.warning(f"Exporting {deployment.name} with unknown recipe {deployment.recipe_slug}")
        else:
            # Schemas evolve; a stale config is exported as stored
            try:
                config = validate_config(recipe.config_schema, config)
            except ValidationError as e:
                logger.warning(f"Config of {deployment.name} no longer matches {recipe.slug}: {e.errors}")
        services.append(SnapshotService(
            recipe=deployment.recipe_slug,
            name=deployment.name,
            config=config,
            depends_on=[names_by_id[dep_id] for dep_id in deployment.depends_on if dep_id in names_by_id],
            status=deployment.status,
        ))

    logger.info(f"Exported {len(services)} service(s) from workspace {workspace.id}")
    return WorkspaceSnapshot(
        version=SNAPSHOT_VERSION,
        exported_at=datetime.now(timezone.utc),
        exported_by=exported_by,
        workspace=SnapshotWorkspace(slug=workspace.slug, name=workspace.name),
        services=services,
        metadata=dict(SNAPSHOT_METADATA),
    )


def validate_snapshot(raw: Any) -> WorkspaceSnapshot:
    """Parse a snapshot document. Unknown versions are rejected before anything else is read."""
    if not isinstance(raw, dict):
        raise ValidationError("Snapshot must be a JSON object")
    version = raw.get("version")
    if version != SNAPSHOT_VERSION:
        raise ValidationError(
            f"Unsupported snapshot version: {version!r}",
            [{"field": "version", "message": f"Must be {SNAPSHOT_VERSION}"}],
        )
    try:
        snapshot = WorkspaceSnapshot.model_validate(raw)
    except PydanticValidationError as e:
        raise ValidationError(
            "Invalid snapshot",
            [{"field": ".".join(str(p) for p in err["loc"]), "message": err["msg"]} for err in e.errors()],
        )

    seen = set()
    duplicates = []
    for service in snapshot.services:
        if service.name in seen:
            duplicates.append(service.name)
        seen.add(service.name)
    if duplicates:
        raise ValidationError(
            "Duplicate service names in snapshot",
            [{"field": "services", "message": f"Duplicate name '{name}'"} for name in duplicates],
        )

    cycle = find_cycle({s.name: s.depends_on for s in snapshot.services})
    if cycle:
        raise ValidationError(
            "Dependency cycle in snapshot",
            [{"field": "services", "message": " -> ".join(cycle)}],
        )
    return snapshot


def _error_text(error: Exception) -> str:
    if isinstance(error, ValidationError):
        details = "; ".join(f"{e.get('field')}: {e.get('message')}" for e in error.errors)
        return f"{error.message}: {details}" if details else error.message
    if isinstance(error, HTTPException):
        return error.detail if isinstance(error.detail, str) else str(error.detail)
    return "Unexpected error while importing this service"


def import_workspace(
    engine,
    tenant_id: str,
    workspace_id: str,
    snapshot: WorkspaceSnapshot,
    force: bool = False,
    triggered_by: Optional[str] = None,
) -> ImportResult:
    """Queue an install per snapshot service, dependencies first.

    A failing service is reported and the rest carry on; services depending
    on it are reported as errors.
    """
    workspace = engine.workspaces.get_active_workspace(tenant_id, workspace_id)
    services = {s.name: s for s in snapshot.services}
    order = topological_order({s.name: s.depends_on for s in snapshot.services})

    existing = {d.name: d for d in engine.deployments.list_by_workspace(workspace.id, include_stopped=False)}
    ids_by_name: Dict[str, str] = {name: d.id for name, d in existing.items()}
    failed: set = set()
    outcomes: Dict[str, ServiceImportResult] = {}

    def outcome(service: SnapshotService, status: str, message: Optional[str] = None, deployment_id: Optional[str] = None):
        outcomes[service.name] = ServiceImportResult(
            name=service.name,
            recipe=service.recipe,
            deployment_id=deployment_id,
            status=status,
            message=message,
        )
        if status == "error":
            failed.add(service.name)

    for name in order:
        service = services[name]
        collision = existing.get(name)
        if collision is not None and not force:
            outcome(service, "skipped", f"A service named '{name}' already exists", collision.id)
            continue

        missing = [dep for dep in service.depends_on if dep in failed or dep not in ids_by_name]
        if missing:
            outcome(service, "error", f"Dependency '{missing[0]}' was not imported")
            continue
        if engine.recipes.find_recipe(service.recipe) is None:
            outcome(service, "error", f"Unknown recipe '{service.recipe}'")
            continue

        try:
            if collision is not None:
                engine.remove(tenant_id, collision.id, force=True, wait=True, triggered_by=triggered_by)
                if engine.deployments.find_deployment(collision.id) is not None:
                    outcome(service, "error", f"Existing service '{name}' could not be removed")
                    continue
                ids_by_name.pop(name, None)

            result = engine.install(
                tenant_id,
                workspace.id,
                service.recipe,
                config=service.config,
                name=name,
                depends_on=[ids_by_name[dep] for dep in service.depends_on],
                triggered_by=triggered_by,
            )
            ids_by_name[name] = result.deployment_id
            outcome(service, "queued", result.message, result.deployment_id)
        except HTTPException as e:
            outcome(service, "error", _error_text(e))
        except Exception as e:
            logger.error(f"Error importing service {name}: {str(e)}")
            outcome(service, "error", _error_text(e))

    results = [outcomes[s.name] for s in snapshot.services]
    import_result = ImportResult(
        services=results,
        total_queued=sum(1 for r in results if r.status == "queued"),
        total_skipped=sum(1 for r in results if r.status == "skipped"),
        total_errors=sum(1 for r in results if r.status == "error"),
    )
    logger.info(
        f"Imported snapshot into workspace {workspace.id}: {import_result.total_queued} queued, "
        f"{import_result.total_skipped} skipped, {import_result.total_errors} errors"
    )
    return import_result
