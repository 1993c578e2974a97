"""Allocation of local access ports from a fixed range, unique across non-stopped deployments."""
import threading
import logging
from typing import Optional, Set

from supabase import Client
from app.config import settings
from app.modules.deployments.schemas import DeploymentStatus

logger = logging.getLogger(__name__)
_lock = threading.Lock()


class PortPoolExhausted(Exception):
    pass


def _assigned_ports(supabase: Client) -> Set[int]:
    result = supabase.table("deployments")\
        .select("id, local_port")\
        .neq("status", DeploymentStatus.STOPPED.value)\
        .execute()
    return {row["local_port"] for row in (result.data or []) if row.get("local_port") is not None}


def claim_port(
    supabase: Client,
    deployment_id: str,
    range_start: Optional[int] = None,
    range_end: Optional[int] = None,
) -> int:
    """Assign the lowest free port in the range to the deployment and return it.

    Scan and write happen under a process-wide lock so two workflows never
    claim the same port.
    """
    start = range_start if range_start is not None else settings.local_port_range_start
    end = range_end if range_end is not None else settings.local_port_range_end
    with _lock:
        current = supabase.table("deployments")\
            .select("local_port")\
            .eq("id", deployment_id)\
            .maybe_single()\
            .execute()
        if current and current.data and current.data.get("local_port") is not None:
            return current.data["local_port"]

        taken = _assigned_ports(supabase)
        for port in range(start, end + 1):
            if port not in taken:
                supabase.table("deployments")\
                    .update({"local_port": port})\
                    .eq("id", deployment_id)\
                    .execute()
                logger.info(f"Assigned local port {port} to deployment {deployment_id}")
                return port
    raise PortPoolExhausted(f"No free local ports in range {start}-{end}")


def release_port(supabase: Client, deployment_id: str) -> None:
    with _lock:
        supabase.table("deployments")\
            .update({"local_port": None})\
            .eq("id", deployment_id)\
            .execute()
