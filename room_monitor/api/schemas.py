from __future__ import annotations
from pydantic import BaseModel, Field
from typing import Optional, Literal


class ControlRequest(BaseModel):
    device: str = Field(min_length=1)
    action: Literal["on", "off"]


class ControlResponse(BaseModel):
    accepted: bool
    device: str
    state: Optional[int] = None
    reason: Optional[str] = None


class Pagination(BaseModel):
    current_page: int
    total_pages: int
    total_records: int
    page_size: int
    has_prev: bool
    has_next: bool
