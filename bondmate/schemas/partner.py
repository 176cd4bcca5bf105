from datetime import datetime
from pydantic import BaseModel, Field


# ---- Relationship cache entries (stored as JSON on users) ----

class PartnerEntry(BaseModel):
    partnership_id: str
    partner_id: int
    partner_name: str
    partner_email: str
    partner_avatar: str | None = None
    partner_age: int | None = None
    partner_gender: str | None = None
    started_at: datetime
    status: str = "active"


class ExPartnerEntry(BaseModel):
    partnership_id: str | None = None
    partner_id: int
    partner_name: str
    partner_email: str
    partner_avatar: str | None = None
    partner_age: int | None = None
    partner_gender: str | None = None
    started_at: datetime
    ended_at: datetime
    ended_by: int
    ended_reason: str
    breakup_date: datetime | None = None
    data_archived: bool = False
    restored_at: datetime | None = None


class PendingRequestEntry(BaseModel):
    request_id: str
    from_user_id: int
    from_user_name: str
    from_user_email: str
    from_user_avatar: str | None = None
    from_user_age: int | None = None
    from_user_gender: str | None = None
    status: str = "pending"
    created_at: datetime


# ---- API payloads ----

class PartnerRequestCreate(BaseModel):
    to_user_id: int = Field(..., gt=0)
    message: str | None = None


class BreakupCreate(BaseModel):
    reason: str | None = None


class PartnerRequestOut(BaseModel):
    id: str
    from_user_id: int
    to_user_id: int
    status: str
    message: str | None = None
    created_at: datetime

    class Config:
        from_attributes = True


class PartnerOut(BaseModel):
    id: str
    user1_id: int
    user2_id: int
    status: str
    started_at: datetime
    restored: bool
    ended_at: datetime | None = None
    ended_by: int | None = None
    ended_reason: str | None = None

    class Config:
        from_attributes = True


class BreakupRequestOut(BaseModel):
    id: str
    from_user_id: int
    to_user_id: int
    status: str
    reason: str | None = None
    created_at: datetime

    class Config:
        from_attributes = True


class PendingRequestList(BaseModel):
    count: int
    items: list[PendingRequestEntry]


class CurrentPartnerResponse(BaseModel):
    partner: PartnerEntry | None = None


class BreakupStatus(BaseModel):
    has_breakup_request: bool
    request: BreakupRequestOut | None = None
    is_from_current_user: bool | None = None


class PartnerHistoryItem(BaseModel):
    id: int
    partner_id: int
    action: str
    details: str | None = None
    created_at: datetime

    class Config:
        from_attributes = True


class PartnerHistoryList(BaseModel):
    count: int
    items: list[PartnerHistoryItem]


class PartnerStatistics(BaseModel):
    has_partner: bool
    current_partner_id: int | None = None
    days_together: int | None = None
    total_relationships: int
    ex_partner_count: int
    pending_incoming: int
    pending_outgoing: int
    requests_sent: int
    requests_received: int
