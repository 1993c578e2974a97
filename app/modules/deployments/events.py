"""Append-only audit trail of deployment lifecycle changes."""

from supabase import Client
from app.modules.deployments.schemas import DeploymentEventResponse
from typing import Any, Dict, List, Optional
import logging

logger = logging.getLogger(__name__)

SYSTEM_ACTOR = "system"


class DeploymentEventService:
    def __init__(self, supabase: Client):
        self.supabase = supabase

    def record(
        self,
        deployment_id: str,
        action: str,
        previous_state: Optional[Dict[str, Any]] = None,
        new_state: Optional[Dict[str, Any]] = None,
        reason: Optional[str] = None,
        triggered_by: Optional[str] = None,
    ) -> None:
        """Write one event. Failures are logged and never raised."""
        try:
            self.supabase.table("deployment_events").insert({
                "deployment_id": deployment_id,
                "action": action,
                "previous_state": previous_state,
                "new_state": new_state,
                "reason": reason,
                "triggered_by": triggered_by or SYSTEM_ACTOR,
            }).execute()
        except Exception as e:
            logger.warning(f"Failed to record {action} event for deployment {deployment_id}: {e}")

    def list_events(self, deployment_id: str, limit: int = 100) -> List[DeploymentEventResponse]:
        result = self.supabase.table("deployment_events")\
            .select("*")\
            .eq("deployment_id", deployment_id)\
            .order("created_at", desc=True)\
            .limit(limit)\
            .execute()
        return [DeploymentEventResponse(**row) for row in (result.data or [])]
