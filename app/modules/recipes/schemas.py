from pydantic import BaseModel, Field
from typing import Optional, Dict, Any, List, Literal


class ConfigField(BaseModel):
    type: Literal["string", "integer", "number", "boolean", "enum"] = "string"
    default: Optional[Any] = None
    required: bool = False
    description: Optional[str] = None
    min: Optional[float] = None
    max: Optional[float] = None
    min_length: Optional[int] = None
    max_length: Optional[int] = None
    pattern: Optional[str] = None
    choices: Optional[List[Any]] = None


class SecretField(BaseModel):
    generate: bool = True
    length: int = 24
    description: Optional[str] = None


class DependencySpec(BaseModel):
    recipe: str
    alias: Optional[str] = None
    reason: Optional[str] = None
    default_config: Dict[str, Any] = Field(default_factory=dict)

    @property
    def name(self) -> str:
        return self.alias or self.recipe


class ResourceFootprint(BaseModel):
    cpu: Optional[str] = None
    memory: Optional[str] = None
    storage: Optional[str] = None


class HealthCheck(BaseModel):
    type: Literal["tcp", "http", "exec"] = "tcp"
    port: Optional[int] = None
    path: Optional[str] = None
    command: Optional[List[str]] = None
    interval_seconds: int = 30


class ReleaseTemplate(BaseModel):
    chart: str
    version: Optional[str] = None
    repo_url: Optional[str] = None
    values_template: str = ""
    service_name: Optional[str] = None  # Jinja expression; defaults to the deployment name
    service_port: Optional[int] = None


class ConnectionTemplate(BaseModel):
    host: str = "{{ name }}.{{ namespace }}.svc.cluster.local"
    port: Optional[str] = None
    properties: Dict[str, str] = Field(default_factory=dict)


class DataExportSpec(BaseModel):
    """How a deployment's data leaves its pod.

    command: a shell script (Jinja template) that writes the data to stdout.
    files: a gzipped tar of paths.
    """
    description: str
    type: Literal["command", "files"] = "command"
    command: Optional[str] = None
    paths: List[str] = Field(default_factory=list)
    exclude: List[str] = Field(default_factory=list)
    content_type: str = "application/octet-stream"
    file_extension: str = "bin"


class DataImportSpec(BaseModel):
    """command: a shell script reading the uploaded data on stdin. files: a tar extracted at extract_path."""
    description: str
    type: Literal["command", "files"] = "command"
    command: Optional[str] = None
    extract_path: str = "/"
    restart_after_import: bool = True


class RecipeDefinition(BaseModel):
    slug: str
    version: str = "1.0.0"
    display_name: Optional[str] = None
    description: Optional[str] = None
    category: Optional[str] = None
    config_schema: Dict[str, ConfigField] = Field(default_factory=dict)
    secrets_schema: Dict[str, SecretField] = Field(default_factory=dict)
    dependencies: List[DependencySpec] = Field(default_factory=list)
    resources: ResourceFootprint = Field(default_factory=ResourceFootprint)
    health_check: Optional[HealthCheck] = None
    release: ReleaseTemplate
    connection: Optional[ConnectionTemplate] = None
    data_export: Optional[DataExportSpec] = None
    data_import: Optional[DataImportSpec] = None

    class Config:
        from_attributes = True


class RecipeResponse(BaseModel):
    slug: str
    version: str
    display_name: Optional[str] = None
    description: Optional[str] = None
    category: Optional[str] = None
    config_schema: Dict[str, ConfigField] = Field(default_factory=dict)
    dependencies: List[DependencySpec] = Field(default_factory=list)
