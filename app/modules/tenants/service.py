from supabase import Client
from app.modules.tenants.schemas import TenantResponse
from app.modules.workspaces.schemas import WorkspaceStatus
from app.modules.workspaces.service import WorkspaceService, slugify
from app.core.exceptions import ConflictError, NotFoundError, InternalError
from fastapi import HTTPException
from datetime import datetime
from typing import Dict, Optional
import logging

logger = logging.getLogger(__name__)

DEFAULT_WORKSPACE_NAME = "Default"


class TenantService:
    def __init__(self, supabase: Client, workspace_service: WorkspaceService):
        self.supabase = supabase
        self.workspaces = workspace_service

    def get_tenant(self, tenant_id: str) -> TenantResponse:
        try:
            result = self.supabase.table("tenants")\
                .select("*")\
                .eq("id", tenant_id)\
                .maybe_single()\
                .execute()
            if not result or not result.data or result.data.get("status") == "deleted":
                raise NotFoundError("Tenant")
            return TenantResponse(**result.data)
        except HTTPException:
            raise
        except Exception as e:
            logger.error(f"Error getting tenant: {str(e)}")
            raise InternalError()

    def create_tenant(self, name: str, owner_user_id: str, slug: Optional[str] = None) -> TenantResponse:
        """Create a tenant with its first workspace and point the owner at it"""
        try:
            slug = slugify(slug or name, fallback="tenant")
            existing = self.supabase.table("tenants").select("id").eq("slug", slug).execute()
            if existing.data:
                raise ConflictError(f"Tenant slug '{slug}' is already taken")

            result = self.supabase.table("tenants").insert({
                "slug": slug,
                "name": name,
                "status": "active",
            }).execute()
            if not result.data:
                raise InternalError("Failed to create tenant")
            tenant = TenantResponse(**result.data[0])

            workspace = self.workspaces.create_workspace(tenant.id, DEFAULT_WORKSPACE_NAME)
            self.supabase.table("users")\
                .update({"tenant_id": tenant.id, "active_workspace_id": workspace.id})\
                .eq("id", owner_user_id)\
                .execute()
            logger.info(f"Created tenant {tenant.id} ({slug}) with workspace {workspace.id}")
            return tenant
        except HTTPException:
            raise
        except Exception as e:
            logger.error(f"Error creating tenant: {str(e)}")
            raise InternalError()

    def deprovision_tenant(self, tenant_id: str) -> Dict[str, str]:
        """Delete every workspace (the last-workspace rule does not apply) and mark the tenant deleted"""
        tenant = self.get_tenant(tenant_id)
        result = self.supabase.table("workspaces")\
            .select("id")\
            .eq("tenant_id", tenant_id)\
            .neq("status", WorkspaceStatus.DELETED.value)\
            .execute()
        for row in result.data or []:
            try:
                self.workspaces.delete_workspace(tenant_id, row["id"], enforce_last=False)
            except ConflictError:
                logger.info(f"Workspace {row['id']} is already being deleted")
        self.supabase.table("tenants")\
            .update({"status": "deleted", "updated_at": datetime.utcnow().isoformat()})\
            .eq("id", tenant_id)\
            .execute()
        logger.info(f"Deprovisioned tenant {tenant_id}")
        return {"message": f"Tenant '{tenant.name}' deprovisioned"}
