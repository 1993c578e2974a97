from enum import Enum
from pydantic import BaseModel, Field
from typing import Optional, Dict, Any, List
from datetime import datetime


class DeploymentStatus(str, Enum):
    PENDING = "pending"
    DEPLOYING = "deploying"
    RUNNING = "running"
    FAILED = "failed"
    DELETING = "deleting"
    STOPPED = "stopped"


# Statuses during which a workflow owns the record
IN_PROGRESS_STATUSES = (DeploymentStatus.PENDING.value, DeploymentStatus.DEPLOYING.value, DeploymentStatus.DELETING.value)


class DeploymentCreate(BaseModel):
    workspace_id: Optional[str] = None  # Defaults to the caller's active workspace
    recipe_slug: str
    name: Optional[str] = None
    config: Dict[str, Any] = Field(default_factory=dict)
    secrets: Dict[str, str] = Field(default_factory=dict)
    depends_on: List[str] = Field(default_factory=list)


class DeploymentUpdate(BaseModel):
    config: Dict[str, Any] = Field(default_factory=dict)


class DeploymentResponse(BaseModel):
    id: str
    tenant_id: str
    workspace_id: str
    recipe_slug: str
    recipe_version: str
    name: str
    namespace: str
    release_name: str
    config: Dict[str, Any] = Field(default_factory=dict)
    secret_ref: Optional[str] = None
    depends_on: List[str] = Field(default_factory=list)
    status: DeploymentStatus
    error_message: Optional[str] = None
    revision: int = 0
    url: Optional[str] = None
    local_port: Optional[int] = None
    service_name: Optional[str] = None
    service_port: Optional[int] = None
    deployment_logs: List[str] = Field(default_factory=list)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True
        use_enum_values = True


class InstallResponse(BaseModel):
    deployment_id: str
    name: str
    status: str
    message: str
    dependency_ids: List[str] = Field(default_factory=list)
    deployment: Optional[DeploymentResponse] = None


class OperationResponse(BaseModel):
    deployment_id: str
    status: str
    message: str


class DeploymentLogsResponse(BaseModel):
    deployment_id: str
    logs: List[str]
    status: str
    has_more: bool = False
    pod_logs: Optional[str] = None  # tail of the release's pod logs, when requested


class DataImportResponse(BaseModel):
    deployment_id: str
    message: str
    restarting: bool = False
    restart_failed: bool = False


class DeploymentEventResponse(BaseModel):
    id: str
    deployment_id: str
    action: str
    previous_state: Optional[Dict[str, Any]] = None
    new_state: Optional[Dict[str, Any]] = None
    reason: Optional[str] = None
    triggered_by: Optional[str] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class CredentialsResponse(BaseModel):
    deployment_id: str
    secrets: Dict[str, str] = Field(default_factory=dict)
