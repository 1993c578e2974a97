from enum import Enum
from pydantic import BaseModel, ConfigDict, Field
from typing import Optional, Dict, Any, List
from datetime import datetime


class WorkspaceStatus(str, Enum):
    ACTIVE = "active"
    DELETING = "deleting"
    DELETED = "deleted"


class WorkspaceQuota(BaseModel):
    cpu: Optional[str] = None
    memory: Optional[str] = None
    storage: Optional[str] = None


class WorkspaceCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=63)
    quota: Optional[WorkspaceQuota] = None


class WorkspaceSwitch(BaseModel):
    workspace_id: str


class WorkspaceResponse(BaseModel):
    id: str
    tenant_id: str
    slug: str
    name: str
    namespace: str
    quota: Dict[str, Any] = Field(default_factory=dict)
    status: WorkspaceStatus
    deployment_count: Optional[int] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True
        use_enum_values = True


class MessageResponse(BaseModel):
    message: str


# Snapshot documents use camelCase keys on the wire

SNAPSHOT_VERSION = 1


class SnapshotWorkspace(BaseModel):
    slug: str
    name: str


class SnapshotService(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    recipe: str
    name: str
    config: Dict[str, Any] = Field(default_factory=dict)
    depends_on: List[str] = Field(default_factory=list, alias="dependsOn")
    status: Optional[str] = None


class WorkspaceSnapshot(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    version: int
    exported_at: datetime = Field(alias="exportedAt")
    exported_by: Optional[str] = Field(default=None, alias="exportedBy")
    workspace: SnapshotWorkspace
    services: List[SnapshotService] = Field(default_factory=list)
    metadata: Optional[Dict[str, Any]] = None


class ServiceImportResult(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str
    recipe: str
    deployment_id: Optional[str] = Field(default=None, alias="deploymentId")
    status: str  # queued | skipped | error
    message: Optional[str] = None


class ImportResult(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    services: List[ServiceImportResult] = Field(default_factory=list)
    total_queued: int = Field(default=0, alias="totalQueued")
    total_skipped: int = Field(default=0, alias="totalSkipped")
    total_errors: int = Field(default=0, alias="totalErrors")
