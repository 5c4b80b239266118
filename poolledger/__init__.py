"""
poolledger - Lending Pool State Indexer

Derives point-in-time and historical state of lending pools (tranches,
loans, investor positions, epochs) from decoded chain events and from
periodic batched contract reads.

Usage:
    from poolledger import InMemoryStore, EventProcessor, PoolCreated, TrancheSpec, BlockInfo

    store = InMemoryStore()
    processor = EventProcessor(store)
    processor.process(PoolCreated(
        block=BlockInfo(1, datetime(2024, 1, 1, tzinfo=timezone.utc)),
        pool_id="1",
        currency_id="usdc",
        currency_decimals=6,
        tranches=(TrancheSpec("junior", 0), TrancheSpec("senior", 1, interest_rate_per_sec=...)),
    ))

    # Legacy pools are read from chain, once per UTC day
    executor = Web3MulticallExecutor.from_url(url, MULTICALL3_ADDRESS)
    sync = LegacyPoolSynchronizer(store, executor, settings, pools)
    LegacyBlockProcessor(sync).process_block(block_number, timestamp)
"""

# Core types
from .core import (
    WAD,
    WAD_DECIMALS,
    SECONDS_PER_DAY,
    DEFAULT_BATCH_SIZE,
    ONCHAIN_CASH_ASSET_ID,
    NULL_ADDRESS,
    ProcessResult,
    EpochStatus,
    AssetStatus,
    AssetType,
    AssetValuationMethod,
    InvestorTransactionType,
    AssetTransactionType,
    PoolLedgerError,
    MissingEntity,
    MissingExternalData,
    DataConsistencyFault,
    InsufficientLots,
    RateGroupMissing,
    EncodingFault,
    ConfigurationError,
    ProcessingContext,
    Store,
    CallExecutor,
    div_trunc,
    wad_mul,
    wad_div,
    apply_percentage,
    rescale,
    content_hash,
    chunked,
    day_start,
)

# Configuration
from .config import (
    MULTICALL3_ADDRESS,
    ContractAddress,
    LegacyPoolConfig,
    CurrencyConfig,
    EngineSettings,
    SETTINGS,
    resolve_contract,
    load_legacy_pools,
    load_settings,
    load_config_file,
)

# Persistence and records
from .store import InMemoryStore, paginated_get, require
from .entities import (
    Currency,
    Pool,
    Tranche,
    Epoch,
    EpochState,
    Asset,
    InvestorPosition,
    AssetPosition,
    OutstandingOrder,
    TrancheBalance,
    InvestorTransaction,
    AssetTransaction,
    OracleTransaction,
    PoolSnapshot,
    TrancheSnapshot,
    ProcessedEvent,
)

# Events
from .events import (
    ExternalAmount,
    PrincipalAmount,
    RepaidAmount,
    BlockInfo,
    ChainEvent,
    LoanCreated,
    LoanBorrowed,
    LoanRepaid,
    LoanWrittenOff,
    LoanClosed,
    LoanDebtTransferred,
    LoanDebtTransferredLegacy,
    LoanDebtIncreased,
    LoanDebtDecreased,
    TrancheSpec,
    PoolCreated,
    PoolUpdated,
    MetadataSet,
    TrancheOrderSummary,
    EpochClosed,
    TrancheSolution,
    EpochExecuted,
    InvestOrderUpdated,
    RedeemOrderUpdated,
    OracleFed,
    EvmTransfer,
    EvmDeployTranche,
)

# Engines
from .positions import Lot, LotQueue, FifoSale, calculate_fifo_sale, buy, sell_fifo, buy_asset, sell_asset_fifo
from .accrual import (
    DebtChange,
    DebtObservation,
    DebtTransfer,
    RateTable,
    classify_debt_change,
    apply_debt_observation,
    recompute_pool_debt_sums,
)
from .epochs import calculate_fulfillment, calculate_carry_over, open_epoch, close_epoch, execute_epoch
from .valuation import (
    calculate_portfolio_valuation,
    calculate_net_asset_value,
    calculate_tranche_nav,
    normalize_nav,
)
from .multicall import (
    FunctionSpec,
    LEGACY_FUNCTIONS,
    Call,
    MulticallAggregator,
    MulticallResults,
    Web3MulticallExecutor,
    prepare_call,
)

# Processing
from .event_handlers import DEFAULT_HANDLERS
from .processor import EventProcessor
from .legacy import LegacyPoolSynchronizer, LegacyBlockProcessor


__all__ = [
    # Constants
    'WAD', 'WAD_DECIMALS', 'SECONDS_PER_DAY', 'DEFAULT_BATCH_SIZE',
    'ONCHAIN_CASH_ASSET_ID', 'NULL_ADDRESS', 'MULTICALL3_ADDRESS',
    # Enums
    'ProcessResult', 'EpochStatus', 'AssetStatus', 'AssetType', 'AssetValuationMethod',
    'InvestorTransactionType', 'AssetTransactionType',
    # Errors
    'PoolLedgerError', 'MissingEntity', 'MissingExternalData', 'DataConsistencyFault',
    'InsufficientLots', 'RateGroupMissing', 'EncodingFault', 'ConfigurationError',
    # Core
    'ProcessingContext', 'Store', 'CallExecutor',
    'div_trunc', 'wad_mul', 'wad_div', 'apply_percentage', 'rescale',
    'content_hash', 'chunked', 'day_start',
    # Configuration
    'ContractAddress', 'LegacyPoolConfig', 'CurrencyConfig', 'EngineSettings', 'SETTINGS',
    'resolve_contract', 'load_legacy_pools', 'load_settings', 'load_config_file',
    # Store and entities
    'InMemoryStore', 'paginated_get', 'require',
    'Currency', 'Pool', 'Tranche', 'Epoch', 'EpochState', 'Asset',
    'InvestorPosition', 'AssetPosition', 'OutstandingOrder', 'TrancheBalance',
    'InvestorTransaction', 'AssetTransaction', 'OracleTransaction',
    'PoolSnapshot', 'TrancheSnapshot', 'ProcessedEvent',
    # Events
    'ExternalAmount', 'PrincipalAmount', 'RepaidAmount', 'BlockInfo', 'ChainEvent',
    'LoanCreated', 'LoanBorrowed', 'LoanRepaid', 'LoanWrittenOff', 'LoanClosed',
    'LoanDebtTransferred', 'LoanDebtTransferredLegacy', 'LoanDebtIncreased', 'LoanDebtDecreased',
    'TrancheSpec', 'PoolCreated', 'PoolUpdated', 'MetadataSet',
    'TrancheOrderSummary', 'EpochClosed', 'TrancheSolution', 'EpochExecuted',
    'InvestOrderUpdated', 'RedeemOrderUpdated', 'OracleFed', 'EvmTransfer', 'EvmDeployTranche',
    # Positions
    'Lot', 'LotQueue', 'FifoSale', 'calculate_fifo_sale', 'buy', 'sell_fifo', 'buy_asset', 'sell_asset_fifo',
    # Accrual
    'DebtChange', 'DebtObservation', 'DebtTransfer', 'RateTable',
    'classify_debt_change', 'apply_debt_observation', 'recompute_pool_debt_sums',
    # Epochs
    'calculate_fulfillment', 'calculate_carry_over', 'open_epoch', 'close_epoch', 'execute_epoch',
    # Valuation
    'calculate_portfolio_valuation', 'calculate_net_asset_value', 'calculate_tranche_nav', 'normalize_nav',
    # Multicall
    'FunctionSpec', 'LEGACY_FUNCTIONS', 'Call', 'MulticallAggregator', 'MulticallResults',
    'Web3MulticallExecutor', 'prepare_call',
    # Processing
    'DEFAULT_HANDLERS', 'EventProcessor', 'LegacyPoolSynchronizer', 'LegacyBlockProcessor',
]

__version__ = '0.1.0'
