"""Configuration for legacy pool synchronisation and event processing."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
import json
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Sequence, Tuple

from .core import DEFAULT_BATCH_SIZE, ConfigurationError


# Multicall3 is deployed at the same address on every EVM chain.
MULTICALL3_ADDRESS = "0xcA11bde05977b3631167028862bE2a173976CA11"

# Legacy pools are denominated in DAI.
DAI_MAINNET_ADDRESS = "0x6B175474E89094C44Da98b954EedeAC495271d0F"


@dataclass(slots=True, frozen=True)
class ContractAddress:
    """One deployment of a contract, effective from `start_block` onward."""
    address: Optional[str]
    start_block: Optional[int] = None


def resolve_contract(
    entries: Sequence[ContractAddress], block_number: int
) -> Optional[ContractAddress]:
    """
    Pick the deployment in effect at `block_number`.

    A single entry is returned unconditionally. Otherwise the entry with the
    greatest start block not after `block_number` wins; None when every entry
    starts later.
    """
    if len(entries) == 1:
        return entries[0]
    ordered = sorted(entries, key=lambda e: e.start_block or 0, reverse=True)
    for entry in ordered:
        if (entry.start_block or 0) <= block_number:
            return entry
    return None


@dataclass(slots=True, frozen=True)
class LegacyPoolConfig:
    """
    Static description of one legacy (EVM) pool.

    `closed_after_block` forces a zero valuation and closes the pool once the
    block is passed. `skip_maturity_lookup` disables maturityDate reads for
    pools whose feed does not expose them.
    """
    id: str
    short_name: str
    start_block: int
    nav_feed: Tuple[ContractAddress, ...] = ()
    reserve: Tuple[ContractAddress, ...] = ()
    assessor: Tuple[ContractAddress, ...] = ()
    shelf: Tuple[ContractAddress, ...] = ()
    pile: Tuple[ContractAddress, ...] = ()
    senior_interest_rate: int = 0
    closed_after_block: Optional[int] = None
    skip_maturity_lookup: bool = False

    def is_closed_at(self, block_number: int) -> bool:
        return self.closed_after_block is not None and block_number > self.closed_after_block


@dataclass(slots=True, frozen=True)
class CurrencyConfig:
    address: str
    symbol: str
    name: str
    decimals: int


@dataclass(slots=True, frozen=True)
class EngineSettings:
    chain_id: str = "1"
    multicall_address: str = MULTICALL3_ADDRESS
    batch_size: int = DEFAULT_BATCH_SIZE
    batch_timeout: float = 30.0
    # pool manager address -> escrow address
    escrows: Mapping[str, str] = field(default_factory=dict)
    # chain id -> days on which LP token transfers were migrations, not trades
    lp_migration_dates: Mapping[str, Tuple[date, ...]] = field(default_factory=dict)
    legacy_currency: CurrencyConfig = CurrencyConfig(
        address=DAI_MAINNET_ADDRESS, symbol="DAI", name="Dai Stablecoin", decimals=18,
    )

    def escrow_for(self, pool_manager: str) -> str:
        escrow = self.escrows.get(pool_manager.lower()) or self.escrows.get(pool_manager)
        if not escrow:
            raise ConfigurationError(f"no escrow configured for pool manager {pool_manager}")
        return escrow

    def is_lp_migration_day(self, chain_id: str, day: date) -> bool:
        return day in self.lp_migration_dates.get(chain_id, ())


SETTINGS = EngineSettings(
    lp_migration_dates={"1": (date(2024, 8, 7),)},
)


def _contracts(raw: Any) -> Tuple[ContractAddress, ...]:
    if not raw:
        return ()
    return tuple(
        ContractAddress(address=item.get("address"), start_block=item.get("startBlock"))
        for item in raw
    )


def load_legacy_pools(data: Sequence[Mapping[str, Any]]) -> Tuple[LegacyPoolConfig, ...]:
    """Build pool configs from plain mappings (camelCase keys, as published)."""
    pools = []
    for raw in data:
        try:
            pools.append(LegacyPoolConfig(
                id=raw["id"].lower(),
                short_name=raw.get("shortName", raw["id"]),
                start_block=int(raw["startBlock"]),
                nav_feed=_contracts(raw.get("navFeed")),
                reserve=_contracts(raw.get("reserve")),
                assessor=_contracts(raw.get("assessor")),
                shelf=_contracts(raw.get("shelf")),
                pile=_contracts(raw.get("pile")),
                senior_interest_rate=int(raw.get("seniorInterestRate", 0)),
                closed_after_block=raw.get("closedAfterBlock"),
                skip_maturity_lookup=bool(raw.get("skipMaturityLookup", False)),
            ))
        except KeyError as e:
            raise ConfigurationError(f"legacy pool entry missing {e.args[0]!r}") from e
    return tuple(pools)


def load_settings(data: Mapping[str, Any]) -> EngineSettings:
    migration_dates = {
        chain: tuple(date.fromisoformat(d) for d in days)
        for chain, days in data.get("lpMigrationDates", {}).items()
    }
    kwargs: Dict[str, Any] = {
        "chain_id": str(data.get("chainId", "1")),
        "multicall_address": data.get("multicallAddress", MULTICALL3_ADDRESS),
        "batch_size": int(data.get("batchSize", DEFAULT_BATCH_SIZE)),
        "batch_timeout": float(data.get("batchTimeout", 30.0)),
        "escrows": {k.lower(): v for k, v in data.get("escrows", {}).items()},
        "lp_migration_dates": migration_dates,
    }
    if "currency" in data:
        c = data["currency"]
        kwargs["legacy_currency"] = CurrencyConfig(
            address=c["address"], symbol=c["symbol"], name=c["name"], decimals=int(c["decimals"]),
        )
    return EngineSettings(**kwargs)


def load_config_file(path: Path) -> Tuple[EngineSettings, Tuple[LegacyPoolConfig, ...]]:
    """Read `{"settings": {...}, "legacyPools": [...]}` from a JSON file."""
    with open(path, "r") as f:
        data = json.load(f)
    return load_settings(data.get("settings", {})), load_legacy_pools(data.get("legacyPools", []))
