"""Pydantic schemas for usage reporting"""
from pydantic import BaseModel, Field
from typing import Optional


class UsageDetail(BaseModel):
    input_tokens: int = Field(default=0, ge=0)
    output_tokens: int = Field(default=0, ge=0)
    model_name: Optional[str] = None


class ReportUsageRequest(BaseModel):
    service: str  # 'AI_API', 'CRAWL_API'
    units: int = Field(gt=0)
    detail: Optional[UsageDetail] = None
    idempotency_key: Optional[str] = None
