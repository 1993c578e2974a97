from supabase import Client
from app.modules.workspaces.schemas import WorkspaceResponse, WorkspaceStatus
from app.modules.workspaces.provisioner import NamespaceProvisioner, namespace_labels
from app.modules.deployments.schemas import DeploymentResponse, DeploymentStatus
from app.core.exceptions import ConflictError, NotFoundError, InternalError, ValidationError
from app.config import settings
from typing import Any, Callable, Dict, List, Optional
from fastapi import HTTPException
from datetime import datetime
import logging
import re

logger = logging.getLogger(__name__)

_DNS_LABEL_RE = re.compile(r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?$")


def slugify(value: str, fallback: str = "workspace") -> str:
    slug = value.strip().lower()
    slug = re.sub(r"[^\w\s-]", "", slug)
    slug = re.sub(r"[\s_]+", "-", slug)
    slug = re.sub(r"-+", "-", slug).strip("-")
    return slug or fallback


def is_dns_label(value: str) -> bool:
    return len(value) <= 63 and bool(_DNS_LABEL_RE.match(value))


class WorkspaceService:
    def __init__(
        self,
        supabase: Client,
        provisioner: Optional[NamespaceProvisioner] = None,
        teardown: Optional[Callable[[DeploymentResponse], None]] = None,
    ):
        self.supabase = supabase
        self.provisioner = provisioner
        # Best-effort release cleanup for one deployment (port-forward, helm release, secret)
        self.teardown = teardown

    def get_tenant_row(self, tenant_id: str) -> Dict[str, Any]:
        result = self.supabase.table("tenants")\
            .select("*")\
            .eq("id", tenant_id)\
            .maybe_single()\
            .execute()
        if not result or not result.data or result.data.get("status") == "deleted":
            raise NotFoundError("Tenant")
        return result.data

    def find_workspace(self, workspace_id: str, tenant_id: Optional[str] = None) -> Optional[WorkspaceResponse]:
        query = self.supabase.table("workspaces").select("*").eq("id", workspace_id)
        if tenant_id:
            query = query.eq("tenant_id", tenant_id)
        result = query.maybe_single().execute()
        if not result or not result.data:
            return None
        return WorkspaceResponse(**result.data)

    def get_workspace(self, tenant_id: str, workspace_id: str) -> WorkspaceResponse:
        """Get a non-deleted workspace owned by the tenant"""
        try:
            workspace = self.find_workspace(workspace_id, tenant_id)
            if workspace is None or workspace.status == WorkspaceStatus.DELETED.value:
                raise NotFoundError("Workspace")
            return workspace
        except HTTPException:
            raise
        except Exception as e:
            logger.error(f"Error getting workspace: {str(e)}")
            raise InternalError()

    def get_active_workspace(self, tenant_id: str, workspace_id: str) -> WorkspaceResponse:
        workspace = self.get_workspace(tenant_id, workspace_id)
        if workspace.status != WorkspaceStatus.ACTIVE.value:
            raise NotFoundError("Workspace")
        return workspace

    def list_workspaces(self, tenant_id: str) -> List[WorkspaceResponse]:
        """Non-deleted workspaces of a tenant with their deployment counts, oldest first"""
        try:
            result = self.supabase.table("workspaces")\
                .select("*")\
                .eq("tenant_id", tenant_id)\
                .neq("status", WorkspaceStatus.DELETED.value)\
                .order("created_at")\
                .execute()
            workspaces = []
            for row in result.data or []:
                count = self.supabase.table("deployments")\
                    .select("id")\
                    .eq("workspace_id", row["id"])\
                    .neq("status", DeploymentStatus.STOPPED.value)\
                    .execute()
                workspaces.append(WorkspaceResponse(**row, deployment_count=len(count.data or [])))
            return workspaces
        except Exception as e:
            logger.error(f"Error listing workspaces: {str(e)}")
            raise InternalError()

    def create_workspace(
        self,
        tenant_id: str,
        name: str,
        quota: Optional[Dict[str, Any]] = None,
    ) -> WorkspaceResponse:
        """Create the workspace record; namespace provisioning continues in the background."""
        try:
            tenant = self.get_tenant_row(tenant_id)
            slug = slugify(name)
            namespace = f"{tenant['slug']}-{slug}"
            if not is_dns_label(namespace):
                raise ValidationError(
                    "Invalid workspace name",
                    [{"field": "name", "message": f"Derived namespace '{namespace}' is not a valid DNS label"}],
                )

            existing = self.supabase.table("workspaces")\
                .select("id")\
                .eq("tenant_id", tenant_id)\
                .eq("slug", slug)\
                .neq("status", WorkspaceStatus.DELETED.value)\
                .execute()
            if existing.data:
                raise ConflictError(f"A workspace named '{slug}' already exists")

            taken = self.supabase.table("workspaces")\
                .select("id")\
                .eq("namespace", namespace)\
                .neq("status", WorkspaceStatus.DELETED.value)\
                .execute()
            if taken.data:
                raise ConflictError(f"Namespace '{namespace}' is already in use")

            resolved_quota = {**settings.default_workspace_quota(), **{k: v for k, v in (quota or {}).items() if v}}
            result = self.supabase.table("workspaces").insert({
                "tenant_id": tenant_id,
                "slug": slug,
                "name": name,
                "namespace": namespace,
                "quota": resolved_quota,
                "status": WorkspaceStatus.ACTIVE.value,
            }).execute()
            if not result.data:
                raise InternalError("Failed to create workspace")
            workspace = WorkspaceResponse(**result.data[0])
            logger.info(f"Created workspace {workspace.id} ({namespace}) for tenant {tenant_id}")

            if self.provisioner is not None:
                self.provisioner.provision_in_background(
                    namespace, namespace_labels(tenant["slug"], slug), resolved_quota
                )
            return workspace
        except HTTPException:
            raise
        except Exception as e:
            logger.error(f"Error creating workspace: {str(e)}")
            raise InternalError()

    def switch_workspace(self, user_id: str, tenant_id: str, workspace_id: str) -> WorkspaceResponse:
        workspace = self.get_active_workspace(tenant_id, workspace_id)
        self.supabase.table("users")\
            .update({"active_workspace_id": workspace.id})\
            .eq("id", user_id)\
            .execute()
        return workspace

    def begin_delete(self, tenant_id: str, workspace_id: str, enforce_last: bool = True) -> WorkspaceResponse:
        """Validate the deletion and mark the workspace and its deployments DELETING."""
        try:
            workspace = self.find_workspace(workspace_id, tenant_id)
            if workspace is None or workspace.status == WorkspaceStatus.DELETED.value:
                raise NotFoundError("Workspace")
            if workspace.status == WorkspaceStatus.DELETING.value:
                raise ConflictError("Workspace is already being deleted")

            if enforce_last:
                active = self.supabase.table("workspaces")\
                    .select("id")\
                    .eq("tenant_id", tenant_id)\
                    .eq("status", WorkspaceStatus.ACTIVE.value)\
                    .execute()
                if len(active.data or []) <= 1:
                    raise ConflictError("Cannot delete the last workspace")

            now = datetime.utcnow().isoformat()
            self.supabase.table("workspaces")\
                .update({"status": WorkspaceStatus.DELETING.value, "updated_at": now})\
                .eq("id", workspace_id)\
                .execute()
            self.supabase.table("deployments")\
                .update({"status": DeploymentStatus.DELETING.value, "updated_at": now})\
                .eq("workspace_id", workspace_id)\
                .execute()
            return workspace
        except HTTPException:
            raise
        except Exception as e:
            logger.error(f"Error deleting workspace: {str(e)}")
            raise InternalError()

    def finish_delete(self, workspace: WorkspaceResponse) -> None:
        """Tear down releases, delete the namespace and records, and repoint users."""
        deployments = self.supabase.table("deployments")\
            .select("*")\
            .eq("workspace_id", workspace.id)\
            .execute()
        for row in deployments.data or []:
            if self.teardown is None:
                break
            try:
                self.teardown(DeploymentResponse(**row))
            except Exception as e:
                logger.warning(f"Cleanup of deployment {row['id']} failed; namespace deletion will remove it: {e}")

        if self.provisioner is not None:
            self.provisioner.deprovision(workspace.namespace)

        self.supabase.table("deployments").delete().eq("workspace_id", workspace.id).execute()
        self.supabase.table("workspaces")\
            .update({"status": WorkspaceStatus.DELETED.value, "updated_at": datetime.utcnow().isoformat()})\
            .eq("id", workspace.id)\
            .execute()
        self._reassign_users(workspace)
        logger.info(f"Deleted workspace {workspace.id} ({workspace.namespace})")

    def delete_workspace(self, tenant_id: str, workspace_id: str, enforce_last: bool = True) -> Dict[str, str]:
        workspace = self.begin_delete(tenant_id, workspace_id, enforce_last)
        self.finish_delete(workspace)
        return {"message": f"Workspace '{workspace.name}' deleted"}

    def _reassign_users(self, workspace: WorkspaceResponse) -> None:
        users = self.supabase.table("users")\
            .select("id")\
            .eq("active_workspace_id", workspace.id)\
            .execute()
        if not users.data:
            return
        fallback = self.supabase.table("workspaces")\
            .select("id")\
            .eq("tenant_id", workspace.tenant_id)\
            .eq("status", WorkspaceStatus.ACTIVE.value)\
            .neq("id", workspace.id)\
            .order("created_at")\
            .limit(1)\
            .execute()
        new_id = fallback.data[0]["id"] if fallback.data else None
        for user in users.data:
            self.supabase.table("users")\
                .update({"active_workspace_id": new_id})\
                .eq("id", user["id"])\
                .execute()
        logger.info(f"Reassigned {len(users.data)} user(s) from workspace {workspace.id} to {new_id}")
