from pydantic import BaseModel
from typing import Optional


class Caller(BaseModel):
    """Identity handed to every engine call: who, for which tenant, in which workspace."""
    user_id: str
    email: Optional[str] = None
    tenant_id: str
    active_workspace_id: Optional[str] = None
