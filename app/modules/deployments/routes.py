import asyncio
import logging
from fastapi import APIRouter, Depends, File, HTTPException, Query, UploadFile
from fastapi.responses import Response
from app.modules.deployments.schemas import (
    CredentialsResponse,
    DataImportResponse,
    DeploymentCreate,
    DeploymentEventResponse,
    DeploymentLogsResponse,
    DeploymentResponse,
    DeploymentUpdate,
    InstallResponse,
    OperationResponse,
)
from app.core.dependencies import Caller, get_caller, get_engine
from typing import List, Optional

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/deployments", tags=["deployments"])


@router.post("", response_model=InstallResponse, status_code=202)
async def install_deployment(
    body: DeploymentCreate,
    caller: Caller = Depends(get_caller),
    engine=Depends(get_engine),
):
    """
    Install a recipe into a workspace (defaults to the caller's active workspace).
    Returns immediately with the PENDING record; poll GET /deployments/{id} for progress.
    """
    workspace_id = body.workspace_id or caller.active_workspace_id
    if not workspace_id:
        raise HTTPException(status_code=400, detail="No workspace selected")
    return engine.install(
        caller.tenant_id,
        workspace_id,
        body.recipe_slug,
        config=body.config,
        name=body.name,
        secrets=body.secrets,
        depends_on=body.depends_on,
        triggered_by=caller.user_id,
    )


@router.get("", response_model=List[DeploymentResponse])
async def list_deployments(
    workspace_id: Optional[str] = None,
    caller: Caller = Depends(get_caller),
    engine=Depends(get_engine),
):
    """List the tenant's deployments, optionally for one workspace"""
    return engine.list_deployments(caller.tenant_id, workspace_id)


@router.get("/{deployment_id}", response_model=DeploymentResponse)
async def get_deployment(
    deployment_id: str,
    caller: Caller = Depends(get_caller),
    engine=Depends(get_engine),
):
    return engine.get_deployment(caller.tenant_id, deployment_id)


@router.put("/{deployment_id}", response_model=OperationResponse)
async def upgrade_deployment(
    deployment_id: str,
    body: DeploymentUpdate,
    caller: Caller = Depends(get_caller),
    engine=Depends(get_engine),
):
    """Merge new config over the stored config and re-apply"""
    return engine.upgrade(caller.tenant_id, deployment_id, body.config, triggered_by=caller.user_id)


@router.post("/{deployment_id}/restart", response_model=OperationResponse)
async def restart_deployment(
    deployment_id: str,
    caller: Caller = Depends(get_caller),
    engine=Depends(get_engine),
):
    return engine.restart(caller.tenant_id, deployment_id, triggered_by=caller.user_id)


@router.delete("/{deployment_id}", response_model=OperationResponse)
async def remove_deployment(
    deployment_id: str,
    caller: Caller = Depends(get_caller),
    engine=Depends(get_engine),
):
    """Uninstall a deployment. Refused while other deployments depend on it."""
    return engine.remove(caller.tenant_id, deployment_id, triggered_by=caller.user_id)


@router.get("/{deployment_id}/logs", response_model=DeploymentLogsResponse)
async def get_deployment_logs(
    deployment_id: str,
    lines: Optional[int] = Query(None, ge=1, le=5000),
    caller: Caller = Depends(get_caller),
    engine=Depends(get_engine),
):
    """
    Poll for deployment logs.
    Returns current logs and deployment status; ?lines=N adds the last N lines of each pod.
    """
    return engine.get_logs(caller.tenant_id, deployment_id, pod_lines=lines)


@router.get("/{deployment_id}/events", response_model=List[DeploymentEventResponse])
async def list_deployment_events(
    deployment_id: str,
    caller: Caller = Depends(get_caller),
    engine=Depends(get_engine),
):
    return engine.list_events(caller.tenant_id, deployment_id)


@router.get("/{deployment_id}/credentials", response_model=CredentialsResponse)
async def get_deployment_credentials(
    deployment_id: str,
    caller: Caller = Depends(get_caller),
    engine=Depends(get_engine),
):
    """Generated and supplied secret values; empty until the install workflow has stored them"""
    return CredentialsResponse(
        deployment_id=deployment_id,
        secrets=engine.get_credentials(caller.tenant_id, deployment_id),
    )


@router.post("/{deployment_id}/export-data")
async def export_deployment_data(
    deployment_id: str,
    caller: Caller = Depends(get_caller),
    engine=Depends(get_engine),
):
    """Download the deployment's data using its recipe's export strategy"""
    exported = await asyncio.to_thread(
        engine.export_data, caller.tenant_id, deployment_id, caller.user_id
    )
    return Response(
        content=exported.content,
        media_type=exported.content_type,
        headers={
            "Content-Disposition": f'attachment; filename="{exported.filename}"',
            "X-Export-Description": exported.description,
        },
    )


@router.post("/{deployment_id}/import-data", response_model=DataImportResponse)
async def import_deployment_data(
    deployment_id: str,
    file: UploadFile = File(...),
    caller: Caller = Depends(get_caller),
    engine=Depends(get_engine),
):
    """
    Upload a file and import it using the recipe's import strategy.
    Recipes that need it are restarted afterwards.
    """
    data = await file.read()
    outcome = await asyncio.to_thread(
        engine.import_data, caller.tenant_id, deployment_id, data, caller.user_id
    )
    if not outcome.restart_needed:
        return DataImportResponse(deployment_id=deployment_id, message=outcome.message)
    try:
        engine.restart(caller.tenant_id, deployment_id, triggered_by=caller.user_id)
    except HTTPException as e:
        logger.warning(f"Restart after data import of {deployment_id} failed: {e.detail}")
        return DataImportResponse(
            deployment_id=deployment_id,
            message=f"{outcome.message}. Automatic restart failed; restart it manually.",
            restart_failed=True,
        )
    return DataImportResponse(deployment_id=deployment_id, message=outcome.message, restarting=True)
