"""
Fulfillment Engine — Bulk operation schemas
"""
from typing import Any
from pydantic import BaseModel, Field


class BulkRequest(BaseModel):
    type: str = Field(..., examples=["orders"])
    action: str = Field(..., examples=["update_status"])
    item_ids: list[str] = Field(..., min_length=1, max_length=500)
    data: dict[str, Any] = Field(default_factory=dict)


class BulkResponse(BaseModel):
    processed: int
    failed: int
    errors: list[dict[str, str]]
