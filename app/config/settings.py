from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional, List


class Settings(BaseSettings):
    # Supabase
    supabase_url: str = ""
    supabase_key: str = ""
    supabase_service_role_key: Optional[str] = None  # Required by background workers (RLS bypass)

    # Cluster
    kubeconfig: Optional[str] = None  # None: in-cluster config, then ~/.kube/config
    kube_context: Optional[str] = None
    helm_bin: str = "helm"
    kubectl_bin: str = "kubectl"
    helm_timeout: str = "5m"
    readiness_timeout_seconds: int = 180
    label_prefix: str = "appyard.io"
    ingress_namespace: str = "ingress-nginx"

    # Ingress / TLS
    ingress_enabled: bool = False
    base_domain: str = "localhost:3000"
    ingress_class: str = "nginx"
    tls_enabled: bool = False
    tls_cluster_issuer: str = "letsencrypt-prod"

    # Default workspace quota
    default_workspace_cpu_quota: str = "4"
    default_workspace_memory_quota: str = "8Gi"
    default_workspace_storage_quota: str = "50Gi"

    # Local access (port-forwards)
    port_forward_enabled: Optional[bool] = None  # None: enabled unless ingress is enabled
    local_port_range_start: int = 10000
    local_port_range_end: int = 10999
    port_forward_sweep_seconds: int = 60

    # Engine
    workflow_max_workers: int = 4
    dependency_wait_timeout_seconds: int = 600
    dependency_poll_interval_seconds: float = 2.0
    reconcile_interval_seconds: int = 120
    log_flush_interval_seconds: int = 30

    # Data export / import (exec in pod)
    data_transfer_timeout_seconds: int = 600
    data_import_max_bytes: int = 256 * 1024 * 1024
    data_transfer_dir: str = "/tmp"

    # App
    app_name: str = "appyard-backend"
    debug: bool = False
    environment: str = "development"  # development | staging | production
    log_level: str = "INFO"
    cors_origins: str = "http://localhost:3000,http://localhost:5173,http://127.0.0.1:3000,http://127.0.0.1:5173"
    rate_limit: str = "100/minute"  # slowapi format, e.g. "100/minute"

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @property
    def local_access_enabled(self) -> bool:
        if self.port_forward_enabled is None:
            return not self.ingress_enabled
        return self.port_forward_enabled

    def get_cors_origins_list(self) -> List[str]:
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]

    def default_workspace_quota(self) -> dict:
        return {
            "cpu": self.default_workspace_cpu_quota,
            "memory": self.default_workspace_memory_quota,
            "storage": self.default_workspace_storage_quota,
        }

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        env_prefix="",  # No prefix needed
        extra="ignore"
    )


settings = Settings()
