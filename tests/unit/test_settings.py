"""
test_settings.py - Unit tests for configuration loading and lookup

Tests:
- resolve_contract picks the deployment in effect at a block
- Legacy pool and engine settings loaders (camelCase input)
- Escrow and LP migration day lookups
"""

import json
import pytest
from datetime import date

from poolledger import (
    DEFAULT_BATCH_SIZE, MULTICALL3_ADDRESS, ConfigurationError, ContractAddress, EngineSettings,
    LegacyPoolConfig, load_config_file, load_legacy_pools, load_settings, resolve_contract,
)


POOL_JSON = {
    "id": "0x4597F91CC06687BDB74147C80C097A79358ED29B",
    "shortName": "NS2",
    "startBlock": 100,
    "navFeed": [{"address": "0xaaa", "startBlock": 100}, {"address": "0xbbb", "startBlock": 500}],
    "reserve": [{"address": "0xccc"}],
    "seniorInterestRate": "1000000003170979198376458650",
    "closedAfterBlock": 900,
}


class TestResolveContract:

    def test_single_entry_always_wins(self):
        only = ContractAddress("0xaaa", start_block=1000)
        assert resolve_contract([only], 1) is only

    def test_latest_started_entry(self):
        entries = [ContractAddress("0xaaa", 100), ContractAddress("0xbbb", 500)]
        assert resolve_contract(entries, 499).address == "0xaaa"
        assert resolve_contract(entries, 500).address == "0xbbb"
        assert resolve_contract(entries, 10_000).address == "0xbbb"

    def test_nothing_started_yet(self):
        entries = [ContractAddress("0xaaa", 100), ContractAddress("0xbbb", 500)]
        assert resolve_contract(entries, 50) is None

    def test_missing_start_block_counts_as_zero(self):
        entries = [ContractAddress("0xaaa"), ContractAddress("0xbbb", 500)]
        assert resolve_contract(entries, 1).address == "0xaaa"


class TestLegacyPoolConfig:

    def test_load(self):
        (pool,) = load_legacy_pools([POOL_JSON])
        assert pool.id == POOL_JSON["id"].lower()
        assert pool.short_name == "NS2"
        assert pool.start_block == 100
        assert len(pool.nav_feed) == 2
        assert pool.reserve[0].start_block is None
        assert pool.senior_interest_rate == 1000000003170979198376458650
        assert pool.shelf == ()
        assert not pool.skip_maturity_lookup

    def test_missing_required_key(self):
        with pytest.raises(ConfigurationError):
            load_legacy_pools([{"id": "0x1"}])

    def test_is_closed_after_block(self):
        pool = LegacyPoolConfig(id="p", short_name="p", start_block=0, closed_after_block=900)
        assert not pool.is_closed_at(900)
        assert pool.is_closed_at(901)
        assert not LegacyPoolConfig(id="q", short_name="q", start_block=0).is_closed_at(10 ** 9)


class TestEngineSettings:

    def test_defaults(self):
        settings = load_settings({})
        assert settings.chain_id == "1"
        assert settings.batch_size == DEFAULT_BATCH_SIZE
        assert settings.multicall_address == MULTICALL3_ADDRESS
        assert settings.legacy_currency.symbol == "DAI"

    def test_load(self):
        settings = load_settings({
            "chainId": 8453,
            "batchSize": 10,
            "escrows": {"0xABC": "0xdef"},
            "lpMigrationDates": {"8453": ["2024-08-07"]},
            "currency": {"address": "0x1", "symbol": "USDC", "name": "USD Coin", "decimals": "6"},
        })
        assert settings.chain_id == "8453"
        assert settings.batch_size == 10
        assert settings.escrow_for("0xabc") == "0xdef"
        assert settings.escrow_for("0xABC") == "0xdef"
        assert settings.is_lp_migration_day("8453", date(2024, 8, 7))
        assert not settings.is_lp_migration_day("1", date(2024, 8, 7))
        assert settings.legacy_currency.decimals == 6

    def test_unknown_pool_manager(self):
        with pytest.raises(ConfigurationError):
            EngineSettings().escrow_for("0xabc")

    def test_load_config_file(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text(json.dumps({"settings": {"batchSize": 5}, "legacyPools": [POOL_JSON]}))
        settings, pools = load_config_file(path)
        assert settings.batch_size == 5
        assert pools[0].short_name == "NS2"
