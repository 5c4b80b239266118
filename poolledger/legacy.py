"""
legacy.py - Legacy Pool Synchronisation

Legacy (EVM) pools emit no usable events; their state is read periodically
from the pool contracts through batched multicall reads pinned at a block.

Per configured pool and block (LegacyPoolSynchronizer):
1. Resolve the nav feed, reserve, assessor, shelf and pile deployments in
   effect at the block
2. Initialise the pool, its senior (index 1) and junior (index 0) tranches
   and its currency on first sight
3. Pools past their configured closing block get a zero valuation and close
4. Read currentNAV, totalBalance and both tranche token prices
5. Discover loans created since the last pass (shelf `token` until the
   registry is the null address) and read their NFT id and maturity
6. Read nftLocked, debt and loanRates for every non-closed loan, then the
   rates of every referenced rate group
7. Apply one DebtObservation per loan and recompute the pool's debt sums

Once per UTC day (LegacyBlockProcessor) every pool whose start block has
passed is synchronised and snapshotted for the period.

A missing result never counts as zero: the stored value stands and a
warning is logged.

Each pool is applied all-or-nothing: a pool whose reads contradict its
stored state (an active loan without a rate group) is logged and skipped
while the other pools of the pass continue.
"""

from __future__ import annotations
from contextlib import nullcontext
from dataclasses import dataclass
from datetime import datetime, timezone
import logging
from typing import Callable, Dict, Iterable, List, Optional, Sequence

from .core import (
    NULL_ADDRESS, AssetStatus, AssetType, AssetValuationMethod, CallExecutor, DataConsistencyFault,
    ProcessingContext, Store, day_start,
)
from .config import SETTINGS, EngineSettings, LegacyPoolConfig, resolve_contract
from .entities import Asset, Currency, Pool, Tranche
from .multicall import LEGACY_FUNCTIONS, Call, MulticallAggregator, MulticallResults, prepare_call
from .store import paginated_get, require
from . import accrual, snapshots, valuation


logger = logging.getLogger(__name__)

SENIOR_TRANCHE_ID = "senior"
JUNIOR_TRANCHE_ID = "junior"

AggregatorFactory = Callable[[int], MulticallAggregator]


@dataclass(slots=True)
class _PoolContracts:
    config: LegacyPoolConfig
    nav_feed: Optional[str]
    reserve: Optional[str]
    assessor: Optional[str]
    shelf: Optional[str]
    pile: Optional[str]


def _address_at(entries, block_number: int) -> Optional[str]:
    entry = resolve_contract(entries, block_number) if entries else None
    return entry.address if entry is not None and entry.address else None


def _loan_index(asset: Asset) -> int:
    return int(asset.asset_id)


class LegacyPoolSynchronizer:
    """
    Reads legacy pool contracts and folds the results into the store.

    Example:
        sync = LegacyPoolSynchronizer(store, executor, settings, pools)
        sync.sync_legacy_pool("0x4597...", block_number=17_000_000, timestamp=ts)
    """

    def __init__(
        self,
        store: Store,
        executor: CallExecutor,
        settings: EngineSettings = SETTINGS,
        pools: Sequence[LegacyPoolConfig] = (),
        aggregator_factory: Optional[AggregatorFactory] = None,
    ):
        self.store = store
        self.executor = executor
        self.settings = settings
        self.pools: Dict[str, LegacyPoolConfig] = {p.id: p for p in pools}
        self.aggregator_factory = aggregator_factory or (
            lambda block: MulticallAggregator(executor, block, settings.batch_size)
        )

    # ========================================================================
    # SETUP
    # ========================================================================

    def _currency(self) -> Currency:
        cfg = self.settings.legacy_currency
        currency_id = f"{self.settings.chain_id}-{cfg.address.lower()}"
        currency = self.store.get(Currency, currency_id)
        if currency is None:
            currency = Currency(id=currency_id, decimals=cfg.decimals, symbol=cfg.symbol, name=cfg.name)
            self.store.save(currency)
        return currency

    def _init_pool(self, cfg: LegacyPoolConfig, currency: Currency, ctx: ProcessingContext) -> Pool:
        logger.info("Initialising legacy pool %s (%s)", cfg.id, cfg.short_name)
        pool = Pool(
            id=cfg.id,
            currency_id=currency.id,
            name=cfg.short_name,
            is_active=True,
            created_at=ctx.timestamp,
            created_at_block=ctx.block_number,
        )
        self.store.save(pool)
        self.store.save(Tranche(
            id=Tranche.make_id(pool.id, SENIOR_TRANCHE_ID),
            pool_id=pool.id,
            tranche_id=SENIOR_TRANCHE_ID,
            index=1,
            interest_rate_per_sec=cfg.senior_interest_rate,
        ))
        self.store.save(Tranche(
            id=Tranche.make_id(pool.id, JUNIOR_TRANCHE_ID),
            pool_id=pool.id,
            tranche_id=JUNIOR_TRANCHE_ID,
            index=0,
        ))
        return pool

    # ========================================================================
    # POOL LEVEL
    # ========================================================================

    def sync_legacy_pool(self, pool_id: str, block_number: int, timestamp: datetime) -> Optional[Pool]:
        """Synchronise one configured pool at a block. Returns the saved pool."""
        synced = self.sync_pools([pool_id], block_number, timestamp)
        return synced[0] if synced else None

    def sync_pools(self, pool_ids: Iterable[str], block_number: int, timestamp: datetime) -> List[Pool]:
        """
        Synchronise several pools at one block, sharing the pool-level batch.

        Returns every pool touched, including pools closed by configuration.
        """
        ctx = ProcessingContext(
            chain_id=self.settings.chain_id, block_number=block_number, timestamp=timestamp,
        )
        currency = self._currency()
        aggregator = self.aggregator_factory(block_number)

        touched: List[Pool] = []
        open_pools: Dict[str, Pool] = {}
        contracts: Dict[str, _PoolContracts] = {}
        calls: List[Call] = []

        for pool_id in pool_ids:
            try:
                cfg = self.pools[pool_id]
            except KeyError:
                raise ValueError(f"pool {pool_id} is not a configured legacy pool") from None
            pool = self.store.get(Pool, cfg.id)
            if pool is None:
                pool = self._init_pool(cfg, currency, ctx)

            if cfg.is_closed_at(block_number):
                if pool.is_active:
                    logger.info("Closing legacy pool %s after block %d", pool.id, cfg.closed_after_block)
                    valuation.force_zero_valuation(pool, currency)
                    pool.close(ctx.timestamp, block_number)
                    self.store.save(pool)
                touched.append(pool)
                continue
            if not pool.is_active:
                touched.append(pool)
                continue

            c = _PoolContracts(
                config=cfg,
                nav_feed=_address_at(cfg.nav_feed, block_number),
                reserve=_address_at(cfg.reserve, block_number),
                assessor=_address_at(cfg.assessor, block_number),
                shelf=_address_at(cfg.shelf, block_number),
                pile=_address_at(cfg.pile, block_number),
            )
            contracts[pool.id] = c
            open_pools[pool.id] = pool
            touched.append(pool)

            if c.nav_feed:
                calls.append(prepare_call(c.nav_feed, pool.id, "currentNAV"))
            if c.reserve:
                calls.append(prepare_call(c.reserve, pool.id, "totalBalance"))
            if c.assessor:
                calls.append(prepare_call(c.assessor, pool.id, "calcSeniorTokenPrice"))
                calls.append(prepare_call(c.assessor, pool.id, "calcJuniorTokenPrice"))

        results = aggregator.run(calls)
        atomic = getattr(self.store, "atomic", None)
        for pool_id, pool in open_pools.items():
            c = contracts[pool_id]
            try:
                with atomic() if atomic is not None else nullcontext():
                    self._apply_pool_results(pool, results, currency, block_number)
                    if c.nav_feed and c.shelf and c.pile:
                        self.update_loans(aggregator, pool, c, ctx)
                    self.store.save(pool)
            except DataConsistencyFault as e:
                logger.error("Skipping pool %s at block %d: %s", pool_id, block_number, e)
                stored = require(self.store, Pool, pool_id)
                touched = [stored if p.id == pool_id else p for p in touched]
        return touched

    def _apply_pool_results(self, pool: Pool, results: MulticallResults, currency: Currency, block_number: int) -> None:
        nav = results.get(pool.id, "currentNAV")
        if nav is not None:
            valuation.set_portfolio_valuation(pool, nav.nav, currency)
        balance = results.get(pool.id, "totalBalance")
        if balance is not None:
            valuation.set_total_reserve(pool, balance.balance, currency)

        for tranche_id, kind in ((SENIOR_TRANCHE_ID, "calcSeniorTokenPrice"), (JUNIOR_TRANCHE_ID, "calcJuniorTokenPrice")):
            price = results.get(pool.id, kind)
            if price is None:
                continue
            tranche = require(self.store, Tranche, Tranche.make_id(pool.id, tranche_id))
            tranche.update_price(price.price, block_number)
            self.store.save(tranche)

    # ========================================================================
    # LOAN LEVEL
    # ========================================================================

    def discover_loans(self, shelf: str, known_count: int, block_number: int) -> List[int]:
        """
        Loan indices registered on the shelf beyond the first `known_count`.

        Loans are numbered from 1; the first index whose registry is the null
        address ends the scan. A failed read is fatal for the pass.
        """
        token = LEGACY_FUNCTIONS["token"]
        found = []
        index = known_count + 1
        while True:
            call = prepare_call(shelf, str(index), "token", index)
            raw = self.executor.aggregate([(call.target, call.call_data)], block_number)
            result = token.decode(raw[0])
            if result.registry.lower() == NULL_ADDRESS:
                break
            found.append(index)
            index += 1
        logger.info("Found %d new loans on shelf %s", len(found), shelf)
        return found

    def update_loans(
        self,
        aggregator: MulticallAggregator,
        pool: Pool,
        contracts: _PoolContracts,
        ctx: ProcessingContext,
    ) -> accrual.DebtSums:
        logger.info("Starting the update of loans for pool %s", pool.id)
        existing: List[Asset] = list(paginated_get(self.store, Asset, [("pool_id", "=", pool.id)]))
        new_loans = [
            Asset(
                id=Asset.make_id(pool.id, str(index)),
                pool_id=pool.id,
                asset_id=str(index),
                asset_type=AssetType.OTHER,
                valuation_method=AssetValuationMethod.DISCOUNTED_CASH_FLOW,
                created_at=ctx.timestamp,
            )
            for index in self.discover_loans(contracts.shelf, len(existing), ctx.block_number)
        ]
        if new_loans:
            self._describe_new_loans(aggregator, new_loans, contracts)

        loans = [a for a in existing + new_loans if a.status is not AssetStatus.CLOSED]
        logger.info("%d open loans for pool %s", len(loans), pool.id)

        detail_calls: List[Call] = []
        for loan in loans:
            index = _loan_index(loan)
            detail_calls.append(prepare_call(contracts.shelf, loan.id, "nftLocked", index))
            detail_calls.append(prepare_call(contracts.pile, loan.id, "debt", index))
            detail_calls.append(prepare_call(contracts.pile, loan.id, "loanRates", index))
        details = aggregator.run(detail_calls)

        groups = set()
        for loan in loans:
            loan_rates = details.get(loan.id, "loanRates")
            if loan_rates is not None:
                loan.rate_group = loan_rates.rate_group
                groups.add(loan_rates.rate_group)
        rate_calls = [prepare_call(contracts.pile, str(group), "rates", group) for group in sorted(groups)]
        rate_results = aggregator.run(rate_calls)
        rate_table = accrual.RateTable()
        for group in groups:
            rates = rate_results.get(str(group), "rates")
            if rates is not None:
                rate_table.add(group, rates)

        observations = []
        for loan in loans:
            debt = details.get(loan.id, "debt")
            locked = details.get(loan.id, "nftLocked")
            observed_debt = debt.debt if debt is not None else None
            observations.append(accrual.DebtObservation(
                debt=observed_debt,
                nft_locked=locked.locked if locked is not None else None,
                rate_per_sec=self._rate_for(loan, observed_debt, rate_table, rate_results),
            ))

        # every rate is resolved before the first write
        for loan, observation in zip(loans, observations):
            accrual.apply_debt_observation(loan, observation)
            logger.info("Saving loan %s for pool %s", loan.id, pool.id)
            self.store.save(loan)

        sums = accrual.recompute_pool_debt_sums(pool, loans)
        logger.info("Completed the update of loans for pool %s", pool.id)
        return sums

    @staticmethod
    def _rate_for(
        loan: Asset,
        observed_debt: Optional[int],
        rate_table: accrual.RateTable,
        rate_results: MulticallResults,
    ) -> Optional[int]:
        group = loan.rate_group
        if group is None:
            return None
        if rate_results.get(str(group), "rates") is None:
            logger.warning("No rates result for group %d of asset %s", group, loan.id)
            return None
        # a positive debt activates the loan in this same pass
        if loan.status is AssetStatus.ACTIVE or (observed_debt is not None and observed_debt > 0):
            return rate_table.resolve(group, loan.id)
        return rate_table.get(group)

    def _describe_new_loans(
        self,
        aggregator: MulticallAggregator,
        new_loans: List[Asset],
        contracts: _PoolContracts,
    ) -> None:
        nft_results = aggregator.run([
            prepare_call(contracts.nav_feed, loan.id, "nftID", _loan_index(loan)) for loan in new_loans
        ])
        maturity_calls = []
        for loan in new_loans:
            nft = nft_results.get(loan.id, "nftID")
            if nft is None:
                continue
            loan.nft_id = "0x" + bytes(nft.nft_id).hex()
            if not contracts.config.skip_maturity_lookup:
                maturity_calls.append(prepare_call(contracts.nav_feed, loan.id, "maturityDate", bytes(nft.nft_id)))
        maturity_results = aggregator.run(maturity_calls)
        for loan in new_loans:
            maturity = maturity_results.get(loan.id, "maturityDate")
            if maturity is not None:
                loan.actual_maturity_date = datetime.fromtimestamp(maturity.maturity_date, tz=timezone.utc)
            logger.info(
                "Initialising new loan %s with nft id %s and maturity date %s",
                loan.id, loan.nft_id, loan.actual_maturity_date,
            )


# ============================================================================
# BLOCK DRIVER
# ============================================================================

class LegacyBlockProcessor:
    """
    Runs the synchronizer once per UTC day.

    The first block seen in a new period triggers a pass over every pool
    whose start block has been reached, followed by pool and tranche
    snapshots for the period and a reset of the pools' per-period
    accumulators. Later blocks of the same period are no-ops.
    """

    def __init__(self, synchronizer: LegacyPoolSynchronizer, last_period_start: Optional[datetime] = None):
        self.synchronizer = synchronizer
        self.last_period_start = last_period_start

    def is_new_period(self, timestamp: datetime) -> bool:
        return self.last_period_start is None or day_start(timestamp) > self.last_period_start

    def process_block(self, block_number: int, timestamp: datetime) -> bool:
        """Returns True when the block opened a new period and pools were synchronised."""
        if not self.is_new_period(timestamp):
            return False
        period_start = day_start(timestamp)
        logger.info("New period on block %d: %s", block_number, period_start.isoformat())

        sync = self.synchronizer
        store = sync.store
        eligible = [p.id for p in sync.pools.values() if block_number >= p.start_block]
        pools = sync.sync_pools(eligible, block_number, timestamp)

        for pool in pools:
            pool = require(store, Pool, pool.id)
            snapshots.snapshot_pool(store, pool, block_number, timestamp, period_start=period_start)
            tranches = store.get_by_fields(Tranche, [("pool_id", "=", pool.id)], order_by=("index",))
            snapshots.snapshot_tranches(store, tranches, block_number, timestamp, period_start=period_start)
            pool.reset_period_accumulators()
            store.save(pool)

        self.last_period_start = period_start
        return True
