# dashcore/models/identity.py
from pydantic import BaseModel


class CurrentUser(BaseModel):
    """Opaque caller identity: who is asking, with which role, in which vertical."""
    id: str
    role: str
    scope: str
