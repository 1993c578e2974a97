import hashlib
import logging
import time
from supabase import Client
from fastapi import HTTPException, status
from typing import Dict, Any, Tuple
from app.modules.auth.schemas import Caller

logger = logging.getLogger(__name__)

# Verified tokens, so status polling does not hit Supabase Auth on every request
_TOKEN_CACHE: Dict[str, Tuple[Dict[str, Any], float]] = {}
_TOKEN_CACHE_TTL_SEC = 60
_TOKEN_CACHE_MAX_SIZE = 500


def clear_auth_cache():
    _TOKEN_CACHE.clear()


class AuthService:
    """Bearer-token verification and tenant resolution. Sign-up and login happen in the frontend."""

    def __init__(self, supabase: Client):
        self.supabase = supabase

    def verify_token(self, token: str) -> Dict[str, Any]:
        """Return {id, email} for a valid Supabase access token, 401 otherwise"""
        key = hashlib.sha256(token.encode()).hexdigest()
        now = time.monotonic()
        cached = _TOKEN_CACHE.get(key)
        if cached and now < cached[1]:
            return cached[0]

        try:
            response = self.supabase.auth.get_user(jwt=token)
        except Exception as e:
            logger.info(f"Token rejected: {e}")
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid or expired token")
        if not response or not response.user:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid or expired token")

        user = {"id": response.user.id, "email": response.user.email}
        if len(_TOKEN_CACHE) >= _TOKEN_CACHE_MAX_SIZE:
            _TOKEN_CACHE.clear()
        _TOKEN_CACHE[key] = (user, now + _TOKEN_CACHE_TTL_SEC)
        return user

    def resolve_caller(self, user: Dict[str, Any]) -> Caller:
        """Attach the user's tenant and active workspace from their profile row"""
        try:
            result = self.supabase.table("users")\
                .select("id, tenant_id, active_workspace_id")\
                .eq("id", user["id"])\
                .maybe_single()\
                .execute()
        except Exception as e:
            logger.error(f"Error loading user profile: {str(e)}")
            raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Internal server error")

        profile = result.data if result else None
        if not profile or not profile.get("tenant_id"):
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="User does not belong to a tenant")
        return Caller(
            user_id=user["id"],
            email=user.get("email"),
            tenant_id=profile["tenant_id"],
            active_workspace_id=profile.get("active_workspace_id"),
        )
