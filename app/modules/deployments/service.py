from supabase import Client
from app.modules.deployments.schemas import DeploymentResponse, DeploymentStatus
from app.core.exceptions import NotFoundError, InternalError
from typing import Any, Dict, List, Optional
from fastapi import HTTPException
from datetime import datetime
import logging

logger = logging.getLogger(__name__)

MAX_STORED_LOG_LINES = 500


class DeploymentService:
    """Persistence for deployment records."""

    def __init__(self, supabase: Client):
        self.supabase = supabase

    def create_deployment(self, data: Dict[str, Any]) -> DeploymentResponse:
        try:
            payload = {
                "config": {},
                "depends_on": [],
                "status": DeploymentStatus.PENDING.value,
                "revision": 0,
                "deployment_logs": [],
                **data,
            }
            result = self.supabase.table("deployments").insert(payload).execute()
            if not result.data:
                raise InternalError("Failed to create deployment")
            return DeploymentResponse(**result.data[0])
        except HTTPException:
            raise
        except Exception as e:
            logger.error(f"Error creating deployment: {str(e)}")
            raise InternalError()

    def find_deployment(self, deployment_id: str, tenant_id: Optional[str] = None) -> Optional[DeploymentResponse]:
        query = self.supabase.table("deployments").select("*").eq("id", deployment_id)
        if tenant_id:
            query = query.eq("tenant_id", tenant_id)
        result = query.maybe_single().execute()
        if not result or not result.data:
            return None
        return DeploymentResponse(**result.data)

    def get_deployment_by_id(self, deployment_id: str, tenant_id: Optional[str] = None) -> DeploymentResponse:
        """Get deployment by ID, scoped to tenant when given"""
        try:
            deployment = self.find_deployment(deployment_id, tenant_id)
            if deployment is None:
                raise NotFoundError("Deployment")
            return deployment
        except HTTPException:
            raise
        except Exception as e:
            logger.error(f"Error getting deployment: {str(e)}")
            raise InternalError()

    def update_deployment(self, deployment_id: str, fields: Dict[str, Any]) -> Optional[DeploymentResponse]:
        """Patch arbitrary columns. May return None if the update succeeded but returned no row."""
        try:
            update_data = {**fields, "updated_at": datetime.utcnow().isoformat()}
            result = self.supabase.table("deployments")\
                .update(update_data)\
                .eq("id", deployment_id)\
                .execute()
            if result.data and len(result.data) > 0:
                return DeploymentResponse(**result.data[0])
            return self.find_deployment(deployment_id)
        except HTTPException:
            raise
        except Exception as e:
            logger.error(f"Error updating deployment: {str(e)}")
            raise InternalError()

    def update_deployment_status(
        self,
        deployment_id: str,
        status: str,
        logs: Optional[List[str]] = None,
        error_message: Optional[str] = None,
        clear_error: bool = False,
        **fields: Any,
    ) -> Optional[DeploymentResponse]:
        """Update status and related fields; logs are appended to the stored logs."""
        update_data: Dict[str, Any] = {"status": status, **fields}
        if logs:
            try:
                current = self.find_deployment(deployment_id)
                existing_logs = (current.deployment_logs if current else None) or []
                update_data["deployment_logs"] = (existing_logs + logs)[-MAX_STORED_LOG_LINES:]
            except Exception as e:
                # Status still gets written; only the log append is lost
                logger.warning(f"Could not read logs for deployment {deployment_id}: {e}")
        if error_message:
            update_data["error_message"] = error_message
        elif clear_error:
            update_data["error_message"] = None
        return self.update_deployment(deployment_id, update_data)

    def append_logs(self, deployment_id: str, logs: List[str]):
        current = self.find_deployment(deployment_id)
        if current is None:
            return
        existing_logs = current.deployment_logs or []
        self.update_deployment(deployment_id, {"deployment_logs": (existing_logs + logs)[-MAX_STORED_LOG_LINES:]})

    def delete_deployment(self, deployment_id: str):
        try:
            self.supabase.table("deployments").delete().eq("id", deployment_id).execute()
        except Exception as e:
            logger.error(f"Error deleting deployment: {str(e)}")
            raise InternalError()

    def list_by_workspace(self, workspace_id: str, include_stopped: bool = True) -> List[DeploymentResponse]:
        """List deployments of a workspace, oldest first"""
        try:
            query = self.supabase.table("deployments")\
                .select("*")\
                .eq("workspace_id", workspace_id)
            if not include_stopped:
                query = query.neq("status", DeploymentStatus.STOPPED.value)
            result = query.order("created_at").execute()
            return [DeploymentResponse(**row) for row in (result.data or [])]
        except Exception as e:
            logger.error(f"Error listing deployments: {str(e)}")
            raise InternalError()

    def list_by_tenant(self, tenant_id: str) -> List[DeploymentResponse]:
        try:
            result = self.supabase.table("deployments")\
                .select("*")\
                .eq("tenant_id", tenant_id)\
                .order("created_at", desc=True)\
                .execute()
            return [DeploymentResponse(**row) for row in (result.data or [])]
        except Exception as e:
            logger.error(f"Error listing deployments: {str(e)}")
            raise InternalError()

    def list_by_status(self, statuses: List[str]) -> List[DeploymentResponse]:
        result = self.supabase.table("deployments")\
            .select("*")\
            .in_("status", statuses)\
            .execute()
        return [DeploymentResponse(**row) for row in (result.data or [])]

    def find_active_by_name(self, workspace_id: str, name: str) -> Optional[DeploymentResponse]:
        """Non-stopped deployment with this name in the workspace, if any"""
        result = self.supabase.table("deployments")\
            .select("*")\
            .eq("workspace_id", workspace_id)\
            .eq("name", name)\
            .neq("status", DeploymentStatus.STOPPED.value)\
            .limit(1)\
            .execute()
        if not result.data:
            return None
        return DeploymentResponse(**result.data[0])

    def list_dependents(self, deployment: DeploymentResponse) -> List[DeploymentResponse]:
        """Non-stopped deployments in the same workspace whose depends_on contains the deployment"""
        result = self.supabase.table("deployments")\
            .select("*")\
            .eq("workspace_id", deployment.workspace_id)\
            .contains("depends_on", [deployment.id])\
            .neq("status", DeploymentStatus.STOPPED.value)\
            .execute()
        return [DeploymentResponse(**row) for row in (result.data or []) if row["id"] != deployment.id]

    def get_many(self, deployment_ids: List[str]) -> List[DeploymentResponse]:
        if not deployment_ids:
            return []
        result = self.supabase.table("deployments")\
            .select("*")\
            .in_("id", deployment_ids)\
            .execute()
        return [DeploymentResponse(**row) for row in (result.data or [])]
