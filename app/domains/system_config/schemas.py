from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


class SystemConfigOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    key: str
    value: str
    updated_at: datetime


class SystemConfigUpdateIn(BaseModel):
    value: str = Field(min_length=1, max_length=256)
