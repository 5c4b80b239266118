"""
conftest.py - Shared pytest fixtures for pool ledger tests

Provides fresh stores, settings and processors, a processor whose store
already holds a two-tranche pool, and a FakeExecutor for contract reads.
"""

import pytest

from poolledger import EngineSettings, EventProcessor, InMemoryStore

from tests.fakes import ESCROW, POOL_MANAGER, FakeExecutor, at, create_pool


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def settings():
    return EngineSettings(
        chain_id="1",
        escrows={POOL_MANAGER: ESCROW},
        lp_migration_dates={"1": (at(days=30).date(),)},
    )


@pytest.fixture
def processor(store, settings):
    return EventProcessor(store, settings)


@pytest.fixture
def pool_processor(processor):
    """Processor whose store already holds pool POOL_ID."""
    create_pool(processor)
    return processor


@pytest.fixture
def executor():
    return FakeExecutor()
