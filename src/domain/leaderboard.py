from __future__ import annotations

from datetime import datetime, timedelta
from decimal import Decimal
from enum import StrEnum

from pydantic import BaseModel, ConfigDict


class LeaderboardPeriod(StrEnum):
    WEEKLY = "WEEKLY"
    MONTHLY = "MONTHLY"
    ALL_TIME = "ALL_TIME"

    def window_start(self, now: datetime) -> datetime | None:
        if self == LeaderboardPeriod.WEEKLY:
            return now - timedelta(days=7)
        if self == LeaderboardPeriod.MONTHLY:
            return now - timedelta(days=30)
        return None


class LeaderboardEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    period: LeaderboardPeriod
    collection_id: str | None
    user_id: str
    context_id: str
    rank: int
    total_pnl: Decimal
    total_pnl_percentage: Decimal
    total_portfolio_value: Decimal
    computed_at: datetime
