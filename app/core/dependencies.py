"""
Core dependencies for route protection and engine wiring
"""

from fastapi import Depends, Security
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from app.database.supabase_client import get_supabase, get_service_supabase
from app.modules.auth.schemas import Caller
from app.modules.auth.service import AuthService
from supabase import Client
import logging

logger = logging.getLogger(__name__)

security = HTTPBearer()

_engine = None


def get_auth_service(supabase: Client = Depends(get_supabase)) -> AuthService:
    return AuthService(supabase)


def get_current_user_id(
    credentials: HTTPAuthorizationCredentials = Security(security),
    auth_service: AuthService = Depends(get_auth_service)
) -> dict:
    """Extract current user info from JWT token"""
    return auth_service.verify_token(credentials.credentials)


def get_caller(
    user_data: dict = Depends(get_current_user_id),
    auth_service: AuthService = Depends(get_auth_service)
) -> Caller:
    """Resolve the user's tenant and active workspace from their profile row"""
    return auth_service.resolve_caller(user_data)


def get_engine():
    """Process-wide deployment engine; workflows outlive requests, so it uses the service-role client."""
    global _engine
    if _engine is None:
        from app.cluster.kubernetes_client import get_kubernetes_client
        from app.config import settings
        from app.modules.deployments.engine import DeploymentEngine
        from app.modules.deployments.helm_deployer import HelmDeployer
        from app.modules.deployments.port_forward import get_supervisor
        from app.modules.deployments.workflow_runner import WorkflowRunner

        _engine = DeploymentEngine(
            get_service_supabase(),
            get_kubernetes_client(),
            HelmDeployer(),
            get_supervisor(),
            WorkflowRunner(max_workers=settings.workflow_max_workers),
        )
    return _engine


def set_engine(engine) -> None:
    global _engine
    _engine = engine
