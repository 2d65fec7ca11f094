from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Iterable

from db.ledger_store import SqlLedgerStore
from domain.holdings import AccountSnapshot
from domain.leaderboard import LeaderboardEntry, LeaderboardPeriod
from utils.clock import Clock, utc_now

from .account_ledger import AccountLedger

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LeaderboardStats:
    period: LeaderboardPeriod
    collection_id: str | None
    participants: int
    top_performer: LeaderboardEntry | None
    average_pnl: Decimal
    average_pnl_percentage: Decimal


def rank_snapshots(
    period: LeaderboardPeriod, snapshots: Iterable[AccountSnapshot], *, computed_at: datetime
) -> list[LeaderboardEntry]:
    """Rank each board separately: individual accounts together, each collection on its own."""
    boards: dict[str | None, list[AccountSnapshot]] = defaultdict(list)
    for snapshot in snapshots:
        boards[snapshot.context.collection_id].append(snapshot)

    entries: list[LeaderboardEntry] = []
    for collection_id, board in boards.items():
        ordered = sorted(
            board,
            key=lambda snapshot: (-snapshot.total_pnl, -snapshot.total_portfolio_value, snapshot.context.user_id),
        )
        entries.extend(
            LeaderboardEntry(
                period=period,
                collection_id=collection_id,
                user_id=snapshot.context.user_id,
                context_id=snapshot.context.context_id,
                rank=rank,
                total_pnl=snapshot.total_pnl,
                total_pnl_percentage=snapshot.total_pnl_percentage,
                total_portfolio_value=snapshot.total_portfolio_value,
                computed_at=computed_at,
            )
            for rank, snapshot in enumerate(ordered, start=1)
        )
    return entries


class LeaderboardRanker:
    def __init__(self, ledger: AccountLedger, store: SqlLedgerStore, *, clock: Clock = utc_now) -> None:
        self.ledger = ledger
        self.store = store
        self._clock = clock

    def recompute(self) -> dict[LeaderboardPeriod, int]:
        """Rebuild the stored rankings of every period from current account snapshots."""
        now = self._clock()
        ranked: dict[LeaderboardPeriod, int] = {}
        for period in LeaderboardPeriod:
            entries = rank_snapshots(period, self.ledger.list_account_snapshots(period, now=now), computed_at=now)
            self.store.replace_rankings(period, entries)
            ranked[period] = len(entries)
        logger.info("Leaderboard recomputed: %s", ", ".join(f"{period}={count}" for period, count in ranked.items()))
        return ranked

    def get_leaderboard(
        self,
        period: LeaderboardPeriod = LeaderboardPeriod.ALL_TIME,
        *,
        collection_id: str | None = None,
        limit: int | None = 100,
    ) -> list[LeaderboardEntry]:
        return self.store.list_rankings(period, collection_id=collection_id, limit=limit)

    def get_user_rank(
        self,
        user_id: str,
        period: LeaderboardPeriod = LeaderboardPeriod.ALL_TIME,
        *,
        collection_id: str | None = None,
    ) -> LeaderboardEntry | None:
        for entry in self.store.list_rankings(period, collection_id=collection_id):
            if entry.user_id == user_id:
                return entry
        return None

    def get_stats(
        self, period: LeaderboardPeriod = LeaderboardPeriod.ALL_TIME, *, collection_id: str | None = None
    ) -> LeaderboardStats:
        entries = self.store.list_rankings(period, collection_id=collection_id)
        count = len(entries)
        if not count:
            return LeaderboardStats(
                period=period,
                collection_id=collection_id,
                participants=0,
                top_performer=None,
                average_pnl=Decimal(0),
                average_pnl_percentage=Decimal(0),
            )
        return LeaderboardStats(
            period=period,
            collection_id=collection_id,
            participants=count,
            top_performer=entries[0],
            average_pnl=sum((entry.total_pnl for entry in entries), start=Decimal(0)) / count,
            average_pnl_percentage=sum((entry.total_pnl_percentage for entry in entries), start=Decimal(0)) / count,
        )


__all__ = ["LeaderboardRanker", "LeaderboardStats", "rank_snapshots"]
