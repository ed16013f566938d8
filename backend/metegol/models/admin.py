"""
backend/metegol/models/admin.py

Purpose:
    Request bodies for the admin sync and populate endpoints.

Dependencies:
    - pydantic
"""

from typing import Literal, Optional

from pydantic import BaseModel, Field


class SyncAction(BaseModel):
    action: Literal[
        "start_sync",
        "smart_sync",
        "force_sync",
        "historical_sync",
        "stop",
        "resume",
        "clear_queue",
    ]
    # force_sync target
    type: Optional[Literal["today", "yesterday", "tomorrow", "live"]] = None
    days: int = Field(default=30, ge=1, le=365)


class PopulateOverrides(BaseModel):
    leagues: Optional[list[int]] = None
    past_days: Optional[int] = Field(default=None, ge=0, le=365)
    future_days: Optional[int] = Field(default=None, ge=0, le=60)
    batch_size: Optional[int] = Field(default=None, ge=1, le=50)
    delay_between_batches: Optional[float] = Field(default=None, ge=0)


class PopulateAction(BaseModel):
    mode: Literal["quick", "full", "custom", "stop"]
    config: Optional[PopulateOverrides] = None
