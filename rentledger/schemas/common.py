from pydantic import BaseModel
from typing import Optional

class ErrorOut(BaseModel):
    detail: str
    operation: Optional[str] = None
    entity_id: Optional[str] = None
    retryable: bool = False
