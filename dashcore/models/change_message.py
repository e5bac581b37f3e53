# dashcore/models/change_message.py
from typing import Literal, Optional
from pydantic import BaseModel


class ChangeMessage(BaseModel):
    path: str
    id: Optional[str] = None
    kind: Literal["create", "update", "delete"] = "update"
