"""
valuation.py - Pool and Tranche Valuation

Combines loan debt, reserve balances and tranche NAV contributions into a
single pool NAV.

Pool valuation figures (portfolio_valuation, total_reserve,
net_asset_value) are held WAD-scaled, so fractions of a currency unit from
supply x price survive aggregation. Only normalized_nav is expressed in the
currency's native decimals; the rescale truncates.

Key Formulas:
    portfolio_valuation = sum(outstanding_debt of active, non-cash loans)
    net_asset_value     = portfolio_valuation + total_reserve
                          (or sum of tranche partial NAVs after an epoch)
    tranche partial NAV = supply * price
    normalized_nav      = net_asset_value rescaled from 27 to currency decimals
"""

from __future__ import annotations
from typing import Iterable

from .core import WAD_DECIMALS, AssetStatus, div_trunc, rescale
from .entities import Asset, Currency, Pool, Tranche


def to_wad(amount: int, currency_decimals: int) -> int:
    """Lift an amount in native currency decimals into the WAD domain."""
    return rescale(amount, currency_decimals, WAD_DECIMALS)


def normalize_nav(nav_wad: int, currency_decimals: int) -> int:
    """Express a WAD-scaled NAV in the currency's native decimals, truncating."""
    return rescale(nav_wad, WAD_DECIMALS, currency_decimals)


def calculate_portfolio_valuation(assets: Iterable[Asset], currency_decimals: int) -> int:
    total = sum(
        a.outstanding_debt for a in assets
        if a.status is AssetStatus.ACTIVE and not a.is_cash
    )
    return to_wad(total, currency_decimals)


def calculate_net_asset_value(portfolio_valuation: int, total_reserve: int) -> int:
    return portfolio_valuation + total_reserve


def tranche_nav_wad(tranche: Tranche, currency_decimals: int) -> int:
    # supply (currency decimals) x price (WAD) / 10**decimals lands in WAD.
    return div_trunc(tranche.token_supply * tranche.token_price, 10 ** currency_decimals)


def calculate_tranche_nav(tranches: Iterable[Tranche], currency_decimals: int) -> int:
    return sum(tranche_nav_wad(t, currency_decimals) for t in tranches if t.is_active)


# ============================================================================
# POOL UPDATES
# ============================================================================

def refresh_pool_nav(pool: Pool, currency: Currency) -> None:
    """Recompute NAV from the pool's portfolio valuation and reserve."""
    pool.net_asset_value = calculate_net_asset_value(pool.portfolio_valuation, pool.total_reserve)
    pool.normalized_nav = normalize_nav(pool.net_asset_value, currency.decimals)


def set_nav_from_tranches(pool: Pool, tranches: Iterable[Tranche], currency: Currency) -> None:
    pool.net_asset_value = calculate_tranche_nav(tranches, currency.decimals)
    pool.normalized_nav = normalize_nav(pool.net_asset_value, currency.decimals)


def set_portfolio_valuation(pool: Pool, amount: int, currency: Currency) -> None:
    """Set portfolio valuation from an amount in native currency decimals."""
    pool.portfolio_valuation = to_wad(amount, currency.decimals)
    refresh_pool_nav(pool, currency)


def set_total_reserve(pool: Pool, amount: int, currency: Currency) -> None:
    pool.total_reserve = to_wad(amount, currency.decimals)
    refresh_pool_nav(pool, currency)


def force_zero_valuation(pool: Pool, currency: Currency) -> None:
    """Valuation of a pool that has reached end of life: nothing held, nothing owed."""
    pool.portfolio_valuation = 0
    pool.total_reserve = 0
    refresh_pool_nav(pool, currency)
