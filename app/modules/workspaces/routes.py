from fastapi import APIRouter, BackgroundTasks, Body, Depends
from app.modules.workspaces.schemas import (
    ImportResult,
    MessageResponse,
    WorkspaceCreate,
    WorkspaceResponse,
    WorkspaceSwitch,
)
from app.modules.workspaces.service import WorkspaceService
from app.modules.workspaces.snapshot import export_workspace, import_workspace, validate_snapshot
from app.core.dependencies import Caller, get_caller, get_engine
from typing import Any, Dict, List

router = APIRouter(prefix="/workspaces", tags=["workspaces"])


def get_workspace_service(engine=Depends(get_engine)) -> WorkspaceService:
    return engine.workspaces


@router.post("", response_model=WorkspaceResponse, status_code=201)
async def create_workspace(
    body: WorkspaceCreate,
    caller: Caller = Depends(get_caller),
    service: WorkspaceService = Depends(get_workspace_service),
):
    """Create a workspace; its namespace is provisioned in the background"""
    quota = body.quota.model_dump() if body.quota else None
    return service.create_workspace(caller.tenant_id, body.name, quota)


@router.get("", response_model=List[WorkspaceResponse])
async def list_workspaces(
    caller: Caller = Depends(get_caller),
    service: WorkspaceService = Depends(get_workspace_service),
):
    return service.list_workspaces(caller.tenant_id)


@router.post("/switch", response_model=WorkspaceResponse)
async def switch_workspace(
    body: WorkspaceSwitch,
    caller: Caller = Depends(get_caller),
    service: WorkspaceService = Depends(get_workspace_service),
):
    return service.switch_workspace(caller.user_id, caller.tenant_id, body.workspace_id)


@router.get("/{workspace_id}", response_model=WorkspaceResponse)
async def get_workspace(
    workspace_id: str,
    caller: Caller = Depends(get_caller),
    service: WorkspaceService = Depends(get_workspace_service),
):
    return service.get_workspace(caller.tenant_id, workspace_id)


@router.delete("/{workspace_id}", response_model=MessageResponse)
async def delete_workspace(
    workspace_id: str,
    background_tasks: BackgroundTasks,
    caller: Caller = Depends(get_caller),
    service: WorkspaceService = Depends(get_workspace_service),
):
    """
    Delete a workspace. The tenant's last active workspace cannot be deleted.
    Releases and the namespace are torn down after the response.
    """
    workspace = service.begin_delete(caller.tenant_id, workspace_id)
    background_tasks.add_task(service.finish_delete, workspace)
    return MessageResponse(message=f"Workspace '{workspace.name}' is being deleted")


@router.get("/{workspace_id}/export")
async def export_workspace_snapshot(
    workspace_id: str,
    caller: Caller = Depends(get_caller),
    engine=Depends(get_engine),
):
    """Secret-free snapshot of the workspace's services"""
    snapshot = export_workspace(engine, caller.tenant_id, workspace_id, exported_by=caller.email or caller.user_id)
    return snapshot.model_dump(mode="json", by_alias=True)


@router.post("/{workspace_id}/import")
def import_workspace_snapshot(
    workspace_id: str,
    snapshot: Dict[str, Any] = Body(...),
    force: bool = False,
    caller: Caller = Depends(get_caller),
    engine=Depends(get_engine),
):
    """
    Replay a snapshot into the workspace. Colliding names are skipped unless force
    is set, in which case the existing deployment is removed first.
    """
    parsed = validate_snapshot(snapshot)
    result: ImportResult = import_workspace(
        engine, caller.tenant_id, workspace_id, parsed, force=force, triggered_by=caller.user_id
    )
    return result.model_dump(by_alias=True)
