from fastapi import APIRouter, Depends
from app.modules.tenants.schemas import TenantCreate, TenantResponse
from app.modules.tenants.service import TenantService
from app.modules.workspaces.schemas import MessageResponse
from app.core.dependencies import Caller, get_caller, get_current_user_id, get_engine
from typing import Dict

router = APIRouter(prefix="/tenant", tags=["tenant"])


def get_tenant_service(engine=Depends(get_engine)) -> TenantService:
    return TenantService(engine.supabase, engine.workspaces)


@router.post("", response_model=TenantResponse, status_code=201)
async def create_tenant(
    body: TenantCreate,
    user_data: Dict = Depends(get_current_user_id),
    service: TenantService = Depends(get_tenant_service),
):
    """Create a tenant owned by the caller, with a Default workspace"""
    return service.create_tenant(body.name, user_data["id"], body.slug)


@router.get("", response_model=TenantResponse)
async def get_tenant(
    caller: Caller = Depends(get_caller),
    service: TenantService = Depends(get_tenant_service),
):
    return service.get_tenant(caller.tenant_id)


@router.delete("", response_model=MessageResponse)
def deprovision_tenant(
    caller: Caller = Depends(get_caller),
    service: TenantService = Depends(get_tenant_service),
):
    """Delete every workspace of the tenant and mark it deleted"""
    return service.deprovision_tenant(caller.tenant_id)
