from datetime import datetime
from pydantic import BaseModel, Field


class ActivityLogOut(BaseModel):
    id: int
    action: str
    details: str
    severity: str
    target_user_id: int | None = None
    metadata: dict = Field(default_factory=dict, validation_alias="meta")
    timestamp: datetime

    class Config:
        from_attributes = True


class ActivityLogList(BaseModel):
    total: int
    items: list[ActivityLogOut]
