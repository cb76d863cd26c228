from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field


class IdempotencyRecord(BaseModel):
    key: str = Field(min_length=1, max_length=255, examples=["rebalance-pf_001-20260301-01"])
    request_fingerprint: str = Field(examples=["sha256:4f1d..."])
    method: str = Field(examples=["POST"])
    path: str = Field(examples=["/api/v1/portfolios/pf_001/rebalance"])
    status_code: int
    response_body: Any = None
    media_type: str = Field(default="application/json", examples=["application/json"])
    created_at: datetime
    expires_at: datetime


class IdempotentResponse(BaseModel):
    status_code: int
    body: Any = None
    media_type: str = "application/json"
    replayed: bool = False
