"""
Quota Guard: admission hint comparing a deployment's resource footprint
against what remains of the workspace namespace's resource quota.

The check fails open: no quota object, or a failure reading it, counts as
available. The cluster still enforces the quota itself.
"""

import logging
import re
from typing import Any, Dict, Iterable, List, Optional

from pydantic import BaseModel, Field

from app.core.exceptions import QuotaExceededError

logger = logging.getLogger(__name__)

_MEMORY_RE = re.compile(r"^(\d+(?:\.\d+)?)\s*(Ki|Mi|Gi|Ti|Pi|Ei|k|M|G|T|P|E)?$")
_MULTIPLIERS = {
    "Ki": 1024,
    "Mi": 1024 ** 2,
    "Gi": 1024 ** 3,
    "Ti": 1024 ** 4,
    "Pi": 1024 ** 5,
    "Ei": 1024 ** 6,
    "k": 1000,
    "M": 1000 ** 2,
    "G": 1000 ** 3,
    "T": 1000 ** 4,
    "P": 1000 ** 5,
    "E": 1000 ** 6,
}


def parse_cpu(value: Optional[str]) -> int:
    """CPU quantity to millicores: "4" -> 4000, "500m" -> 500, "1.5" -> 1500."""
    if value is None:
        return 0
    value = str(value).strip()
    if not value:
        return 0
    try:
        if value.endswith("m"):
            return int(float(value[:-1]))
        return int(round(float(value) * 1000))
    except ValueError:
        return 0


def parse_memory(value: Optional[str]) -> int:
    """Memory/storage quantity to bytes: "8Gi" -> 8589934592, "1G" -> 1000000000."""
    if value is None:
        return 0
    value = str(value).strip()
    match = _MEMORY_RE.match(value)
    if not match:
        try:
            return int(float(value))
        except ValueError:
            return 0
    number = float(match.group(1))
    return int(number * _MULTIPLIERS.get(match.group(2) or "", 1))


def format_cpu(millicores: int) -> str:
    if millicores >= 1000:
        return f"{millicores / 1000:.1f} cores"
    return f"{millicores}m"


def format_bytes(size: int) -> str:
    if size >= 1024 ** 3:
        return f"{size / 1024 ** 3:.1f}Gi"
    if size >= 1024 ** 2:
        return f"{size / 1024 ** 2:.0f}Mi"
    if size >= 1024:
        return f"{size / 1024:.0f}Ki"
    return f"{size}B"


def build_quota_hard(quota: Dict[str, Optional[str]]) -> Dict[str, str]:
    """Map a simplified {cpu, memory, storage} quota onto ResourceQuota hard limits."""
    hard: Dict[str, str] = {}
    if quota.get("cpu"):
        hard["limits.cpu"] = str(quota["cpu"])
        hard["requests.cpu"] = str(quota["cpu"])
    if quota.get("memory"):
        hard["limits.memory"] = str(quota["memory"])
        hard["requests.memory"] = str(quota["memory"])
    if quota.get("storage"):
        hard["requests.storage"] = str(quota["storage"])
    return hard


def sum_footprints(footprints: Iterable[Dict[str, Optional[str]]]) -> Dict[str, int]:
    """Total cpu (millicores), memory and storage (bytes) over several footprints."""
    total = {"cpu": 0, "memory": 0, "storage": 0}
    for fp in footprints:
        total["cpu"] += parse_cpu(fp.get("cpu"))
        total["memory"] += parse_memory(fp.get("memory"))
        total["storage"] += parse_memory(fp.get("storage"))
    return total


class QuotaCheck(BaseModel):
    available: bool
    reason: Optional[str] = None
    shortfalls: List[Dict[str, Any]] = Field(default_factory=list)
    usage: Optional[Dict[str, Dict[str, str]]] = None


class QuotaGuard:
    def __init__(self, cluster):
        self.cluster = cluster

    def check(self, namespace: str, footprints: Iterable[Dict[str, Optional[str]]]) -> QuotaCheck:
        needed = sum_footprints(footprints)
        try:
            usage = self.cluster.get_resource_quota(namespace)
        except Exception as e:
            logger.error(f"Failed to read quota in {namespace}, treating as available: {e}")
            return QuotaCheck(available=True)
        if not usage:
            return QuotaCheck(available=True)

        hard = usage.get("hard") or {}
        used = usage.get("used") or {}
        shortfalls: List[Dict[str, Any]] = []
        issues: List[str] = []

        cpu_key = "limits.cpu" if "limits.cpu" in hard else "requests.cpu"
        if needed["cpu"] and hard.get(cpu_key):
            remaining = parse_cpu(hard[cpu_key]) - parse_cpu(used.get(cpu_key, "0"))
            if needed["cpu"] > remaining:
                issues.append(f"CPU: need {format_cpu(needed['cpu'])}, only {format_cpu(max(remaining, 0))} available")
                shortfalls.append({"resource": "cpu", "requested": format_cpu(needed["cpu"]), "available": format_cpu(max(remaining, 0))})

        memory_key = "limits.memory" if "limits.memory" in hard else "requests.memory"
        if needed["memory"] and hard.get(memory_key):
            remaining = parse_memory(hard[memory_key]) - parse_memory(used.get(memory_key, "0"))
            if needed["memory"] > remaining:
                issues.append(f"Memory: need {format_bytes(needed['memory'])}, only {format_bytes(max(remaining, 0))} available")
                shortfalls.append({"resource": "memory", "requested": format_bytes(needed["memory"]), "available": format_bytes(max(remaining, 0))})

        if needed["storage"] and hard.get("requests.storage"):
            remaining = parse_memory(hard["requests.storage"]) - parse_memory(used.get("requests.storage", "0"))
            if needed["storage"] > remaining:
                issues.append(f"Storage: need {format_bytes(needed['storage'])}, only {format_bytes(max(remaining, 0))} available")
                shortfalls.append({"resource": "storage", "requested": format_bytes(needed["storage"]), "available": format_bytes(max(remaining, 0))})

        if issues:
            return QuotaCheck(
                available=False,
                reason=f"Quota exceeded: {'; '.join(issues)}",
                shortfalls=shortfalls,
                usage=usage,
            )
        return QuotaCheck(available=True, usage=usage)

    def enforce(self, namespace: str, footprints: Iterable[Dict[str, Optional[str]]]) -> QuotaCheck:
        """Like check, but raises QuotaExceededError when the footprint does not fit."""
        result = self.check(namespace, footprints)
        if not result.available:
            raise QuotaExceededError(result.reason, result.shortfalls)
        return result
