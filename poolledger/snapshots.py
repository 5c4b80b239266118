"""Point-in-time copies of pool and tranche aggregates."""

from __future__ import annotations
from datetime import datetime
from typing import Iterable, List, Optional

from .core import Store, day_start
from .entities import Pool, PoolSnapshot, Tranche, TrancheSnapshot


def snapshot_pool(
    store: Store,
    pool: Pool,
    block_number: int,
    timestamp: datetime,
    period_start: Optional[datetime] = None,
    epoch_id: Optional[str] = None,
) -> PoolSnapshot:
    """Persist a snapshot keyed by period or epoch, falling back to the block."""
    if epoch_id is not None:
        key = f"epoch-{epoch_id}"
    elif period_start is not None:
        key = f"period-{period_start.date().isoformat()}"
    else:
        key = f"block-{block_number}"
    snapshot = PoolSnapshot(
        id=f"{pool.id}-{key}",
        pool_id=pool.id,
        block_number=block_number,
        timestamp=timestamp,
        period_start=period_start,
        epoch_id=epoch_id,
        portfolio_valuation=pool.portfolio_valuation,
        total_reserve=pool.total_reserve,
        net_asset_value=pool.net_asset_value,
        normalized_nav=pool.normalized_nav,
        sum_debt=pool.sum_debt,
        sum_borrowed_amount=pool.sum_borrowed_amount,
        sum_borrowed_amount_by_period=pool.sum_borrowed_amount_by_period,
        sum_repaid_amount=pool.sum_repaid_amount,
        sum_repaid_amount_by_period=pool.sum_repaid_amount_by_period,
        sum_borrows_count=pool.sum_borrows_count,
        sum_repays_count=pool.sum_repays_count,
        sum_invested_amount=pool.sum_invested_amount,
        sum_redeemed_amount=pool.sum_redeemed_amount,
        weighted_average_interest_rate_per_sec=pool.weighted_average_interest_rate_per_sec,
    )
    store.save(snapshot)
    return snapshot


def snapshot_tranches(
    store: Store,
    tranches: Iterable[Tranche],
    block_number: int,
    timestamp: datetime,
    period_start: Optional[datetime] = None,
) -> List[TrancheSnapshot]:
    start = period_start or day_start(timestamp)
    snapshots = []
    for tranche in tranches:
        snapshot = TrancheSnapshot(
            id=f"{tranche.id}-period-{start.date().isoformat()}",
            tranche_id=tranche.tranche_id,
            pool_id=tranche.pool_id,
            block_number=block_number,
            timestamp=timestamp,
            period_start=start,
            token_price=tranche.token_price,
            token_supply=tranche.token_supply,
            debt=tranche.debt,
            sum_fulfilled_invest_orders=tranche.sum_fulfilled_invest_orders,
            sum_fulfilled_redeem_orders=tranche.sum_fulfilled_redeem_orders,
        )
        store.save(snapshot)
        snapshots.append(snapshot)
    return snapshots


def latest_tranche_price(store: Store, tranche: Tranche, period_start: datetime) -> int:
    """Price from the tranche's snapshot for a period, else its current price."""
    snapshot = store.get(TrancheSnapshot, f"{tranche.id}-period-{period_start.date().isoformat()}")
    return snapshot.token_price if snapshot is not None else tranche.token_price
