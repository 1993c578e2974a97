from fastapi import APIRouter, Depends
from app.core.dependencies import get_caller
from app.modules.auth.schemas import Caller

router = APIRouter(prefix="/auth", tags=["auth"])


@router.get("/me", response_model=Caller)
async def get_current_user(caller: Caller = Depends(get_caller)):
    """Current user with their tenant and active workspace"""
    return caller
