from datetime import datetime, time
from decimal import Decimal
from typing import List, Optional, Union
from uuid import UUID

from pydantic import BaseModel, Field, field_serializer, field_validator

from coaching.core.enums import Weekday


def _parse_time_24(v: Union[str, time]) -> time:
    """Parse 24-hour time string (HH:MM or HH:MM:SS) to time."""
    if isinstance(v, time):
        return v
    if isinstance(v, str):
        v = v.strip()
        if len(v) == 5:  # HH:MM
            return datetime.strptime(v, "%H:%M").time()
        return datetime.strptime(v, "%H:%M:%S").time()
    raise ValueError("startTime/endTime must be 24-hour string (e.g. 09:00, 10:30) or time")


class ScheduleSlot(BaseModel):
    day: Weekday
    start_time: Union[str, time] = Field(..., description="24-hour format, e.g. 09:00")
    end_time: Union[str, time] = Field(..., description="24-hour format, e.g. 10:30")
    room: str = Field("", max_length=100)

    @field_validator("start_time", "end_time", mode="before")
    @classmethod
    def parse_time(cls, v: Union[str, time]) -> time:
        return _parse_time_24(v)


class ScheduleSlotResponse(BaseModel):
    day: Weekday
    start_time: time
    end_time: time
    room: str

    class Config:
        from_attributes = True

    @field_serializer("start_time", "end_time")
    def serialize_time_24(self, t: time) -> str:
        """Output as 24-hour string HH:MM (e.g. 09:00, 10:30)."""
        return t.strftime("%H:%M")


class SubjectCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    code: str = Field(..., min_length=1, max_length=50)
    description: str = ""
    credits: int = Field(0, ge=0)
    max_capacity: int = Field(..., gt=0)
    prerequisites: List[UUID] = Field(default_factory=list, description="Subject ids that must be completed first")
    faculty: str = Field("", max_length=255)
    schedule: List[ScheduleSlot] = Field(default_factory=list)
    is_active: bool = True
    add_drop_deadline: datetime
    monthly_fee_amount: Optional[Decimal] = Field(None, ge=0)


class SubjectUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    code: Optional[str] = Field(None, min_length=1, max_length=50)
    description: Optional[str] = None
    credits: Optional[int] = Field(None, ge=0)
    max_capacity: Optional[int] = Field(None, gt=0)
    prerequisites: Optional[List[UUID]] = None
    faculty: Optional[str] = Field(None, max_length=255)
    schedule: Optional[List[ScheduleSlot]] = None
    is_active: Optional[bool] = None
    add_drop_deadline: Optional[datetime] = None
    monthly_fee_amount: Optional[Decimal] = Field(None, ge=0)


class SubjectResponse(BaseModel):
    id: UUID
    name: str
    code: str
    description: str
    credits: int
    max_capacity: int
    current_enrollment: int
    prerequisites: List[UUID]
    faculty: str
    schedule: List[ScheduleSlotResponse]
    is_active: bool
    add_drop_deadline: datetime
    monthly_fee_amount: Optional[Decimal] = None
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True
