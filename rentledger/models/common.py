import uuid
from sqlalchemy import String, DateTime, Integer, func
from sqlalchemy.orm import Mapped, mapped_column
from datetime import datetime

def new_id() -> str:
    return str(uuid.uuid4())

class IdMixin:
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)

class TSMMixin:
    # timestamps come from the database server, not the app process
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
    version: Mapped[int] = mapped_column(Integer, default=1)
