"""
Core types and pure functions for the pool ledger engine.

This module provides the foundational pieces every other module builds on:
1. Constants: fixed-point scale, batch size, reserved asset ids
2. Enums: entity status and transaction type vocabularies
3. Exceptions: PoolLedgerError and the failure taxonomy
4. Protocols: Store (entity persistence) and CallExecutor (batched reads)
5. ProcessingContext: immutable per-event context
6. Fixed-point helpers: wad_mul, wad_div, rescale
7. Canonical serialization used for deterministic event ids

All arithmetic is integer fixed-point. Division truncates toward zero and
there is no floating point anywhere in the engine.
"""

from __future__ import annotations
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
import hashlib
from typing import (
    Any, Iterator, List, Optional, Protocol, Sequence, Tuple,
    runtime_checkable,
)


# ============================================================================
# CONSTANTS
# ============================================================================

# Single fixed-point scale for prices, percentages and per-second rates.
WAD_DECIMALS = 27
WAD = 10 ** WAD_DECIMALS

SECONDS_PER_DAY = 86400

# Calls per aggregator round trip.
DEFAULT_BATCH_SIZE = 30

# Reserved asset id for the on-chain cash asset of every pool.
ONCHAIN_CASH_ASSET_ID = "0"

NULL_ADDRESS = "0x0000000000000000000000000000000000000000"

# Runtime spec versions at which chain semantics changed.
SPEC_VERSION_SETTLEMENT_PRICE_FIXED = 1025
SPEC_VERSION_TRANSFER_INTEREST = 1100


# ============================================================================
# TYPE ALIASES
# ============================================================================

# (field, op, value) query filter understood by Store.get_by_fields.
FieldFilter = Tuple[str, str, Any]


# ============================================================================
# ENUMS
# ============================================================================

class ProcessResult(Enum):
    """
    Outcome of feeding one event through the processor.

    APPLIED: Handler ran and every write was committed.
    ALREADY_APPLIED: Event id was previously processed (idempotent replay).
    IGNORED: No handler is registered for the event kind.
    """
    APPLIED = "applied"
    ALREADY_APPLIED = "already_applied"
    IGNORED = "ignored"


class EpochStatus(Enum):
    OPEN = "OPEN"
    CLOSED = "CLOSED"
    EXECUTED = "EXECUTED"


class AssetStatus(Enum):
    CREATED = "CREATED"
    ACTIVE = "ACTIVE"
    CLOSED = "CLOSED"


class AssetType(Enum):
    ONCHAIN_CASH = "OnchainCash"
    OFFCHAIN_CASH = "OffchainCash"
    OTHER = "Other"


class AssetValuationMethod(Enum):
    CASH = "Cash"
    DISCOUNTED_CASH_FLOW = "DiscountedCashFlow"
    ORACLE = "Oracle"
    OUTSTANDING_DEBT = "OutstandingDebt"


class InvestorTransactionType(Enum):
    INVEST_ORDER_UPDATE = "INVEST_ORDER_UPDATE"
    REDEEM_ORDER_UPDATE = "REDEEM_ORDER_UPDATE"
    INVEST_ORDER_CANCEL = "INVEST_ORDER_CANCEL"
    REDEEM_ORDER_CANCEL = "REDEEM_ORDER_CANCEL"
    EXECUTE_INVEST = "INVEST_EXECUTION"
    EXECUTE_REDEEM = "REDEEM_EXECUTION"
    TRANSFER_IN = "TRANSFER_IN"
    TRANSFER_OUT = "TRANSFER_OUT"
    INVEST_COLLECT = "INVEST_COLLECT"
    REDEEM_COLLECT = "REDEEM_COLLECT"
    INVEST_LP_COLLECT = "INVEST_LP_COLLECT"
    REDEEM_LP_COLLECT = "REDEEM_LP_COLLECT"


class AssetTransactionType(Enum):
    CREATED = "CREATED"
    PRICED = "PRICED"
    BORROWED = "BORROWED"
    REPAID = "REPAID"
    CLOSED = "CLOSED"
    CASH_TRANSFER = "CASH_TRANSFER"
    DEPOSIT_FROM_INVESTMENTS = "DEPOSIT_FROM_INVESTMENTS"
    WITHDRAWAL_FOR_REDEMPTIONS = "WITHDRAWAL_FOR_REDEMPTIONS"
    WITHDRAWAL_FOR_FEES = "WITHDRAWAL_FOR_FEES"
    INCREASE_DEBT = "INCREASE_DEBT"
    DECREASE_DEBT = "DECREASE_DEBT"


# ============================================================================
# EXCEPTIONS
# ============================================================================

class PoolLedgerError(Exception):
    """Base exception for all pool ledger errors."""
    pass


class MissingEntity(PoolLedgerError):
    """Raised when a referenced pool, epoch, asset, tranche or currency does not exist."""

    def __init__(self, entity_type: str, entity_id: str):
        super().__init__(f"{entity_type} {entity_id} not found")
        self.entity_type = entity_type
        self.entity_id = entity_id


class MissingExternalData(PoolLedgerError):
    """Raised when a batched read produced no result for a required call."""
    pass


class DataConsistencyFault(PoolLedgerError):
    """Raised when stored state contradicts an operation (oversell, bad transition)."""
    pass


class InsufficientLots(DataConsistencyFault):
    """Raised when a FIFO sale requests more quantity than the open lots hold."""

    def __init__(self, owner: str, requested: int, available: int):
        super().__init__(
            f"{owner}: cannot sell {requested}, only {available} held in open lots"
        )
        self.owner = owner
        self.requested = requested
        self.available = available


class RateGroupMissing(DataConsistencyFault):
    """Raised when an active loan's rate group has no entry in the rate table."""
    pass


class EncodingFault(PoolLedgerError):
    """Raised when a call result cannot be decoded with its expected signature."""
    pass


class ConfigurationError(PoolLedgerError):
    """Raised when required contract or escrow configuration is absent."""
    pass


# ============================================================================
# PROCESSING CONTEXT
# ============================================================================

@dataclass(frozen=True, slots=True)
class ProcessingContext:
    """
    Immutable context for a single unit of work (one event or one block pass).

    Built once by the processor and handed to every engine call so that no
    engine function reads ambient state.
    """
    chain_id: str
    block_number: int
    timestamp: datetime
    spec_version: Optional[int] = None
    extrinsic_hash: Optional[str] = None
    signer: Optional[str] = None

    def __post_init__(self):
        if self.block_number < 0:
            raise ValueError(f"block_number must be non-negative, got {self.block_number}")
        if self.timestamp.tzinfo is None:
            object.__setattr__(self, "timestamp", self.timestamp.replace(tzinfo=timezone.utc))

    @property
    def period_start(self) -> datetime:
        """Start of the UTC day containing this context's timestamp."""
        ts = self.timestamp.astimezone(timezone.utc)
        return ts.replace(hour=0, minute=0, second=0, microsecond=0)

    def spec_below(self, version: int) -> bool:
        """True when the runtime spec version is known and older than `version`."""
        return self.spec_version is not None and self.spec_version < version


# ============================================================================
# PROTOCOLS
# ============================================================================

@runtime_checkable
class Store(Protocol):
    """
    Entity persistence used by every engine component.

    Entities are dataclasses with an `id` attribute. Implementations must
    return copies from reads so that callers cannot alias persisted state.
    """

    def get(self, entity_type: type, entity_id: str) -> Optional[Any]:
        """Fetch one entity by id, or None."""
        ...

    def save(self, entity: Any) -> None:
        """Insert or replace an entity."""
        ...

    def get_by_fields(
        self,
        entity_type: type,
        filters: Sequence[FieldFilter],
        limit: Optional[int] = None,
        offset: int = 0,
        order_by: Sequence[str] = (),
    ) -> List[Any]:
        """Query entities matching every filter, optionally ordered and paged."""
        ...

    def remove(self, entity_type: type, entity_id: str) -> None:
        """Delete an entity; deleting a missing id is a no-op."""
        ...


@runtime_checkable
class CallExecutor(Protocol):
    """
    Executes one batch of read calls as a single atomic aggregate read.

    Returns the raw return data of every call in order, or raises when the
    batch as a whole fails (timeout, revert, transport error).
    """

    def aggregate(self, calls: Sequence[Tuple[str, bytes]], block_number: int) -> List[bytes]:
        ...


# ============================================================================
# FIXED-POINT ARITHMETIC
# ============================================================================

def div_trunc(numerator: int, denominator: int) -> int:
    """Integer division truncating toward zero (not floor)."""
    if denominator == 0:
        raise ZeroDivisionError("fixed-point division by zero")
    quotient = abs(numerator) // abs(denominator)
    return quotient if (numerator >= 0) == (denominator > 0) else -quotient


def wad_mul(a: int, b: int) -> int:
    """Multiply two WAD-scaled values: a * b / WAD, truncated."""
    return div_trunc(a * b, WAD)


def wad_div(a: int, b: int) -> int:
    """Divide two WAD-scaled values: a * WAD / b, truncated."""
    return div_trunc(a * WAD, b)


def apply_percentage(amount: int, percentage: int) -> int:
    """Apply a WAD-scaled fraction to an amount."""
    return div_trunc(amount * percentage, WAD)


def rescale(value: int, from_decimals: int, to_decimals: int) -> int:
    """Move a fixed-point value between decimal scales, truncating on the way down."""
    if to_decimals >= from_decimals:
        return value * 10 ** (to_decimals - from_decimals)
    return div_trunc(value, 10 ** (from_decimals - to_decimals))


# ============================================================================
# CANONICAL SERIALIZATION
# ============================================================================

def _canonicalize(value: Any) -> str:
    """
    Produce a canonical string representation of a value for hashing.

    Dict ordering and dataclass construction history do not affect the output.
    Enums serialize by value, datetimes by ISO format.
    """
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, Enum):
        return f"E:{value.value}"
    if isinstance(value, int):
        return f"N:{value}"
    if isinstance(value, str):
        return f"S:{value}"
    if isinstance(value, datetime):
        return f"T:{value.isoformat()}"
    if isinstance(value, dict):
        items = sorted(value.items(), key=lambda kv: str(kv[0]))
        serialized = ",".join(f"{_canonicalize(k)}:{_canonicalize(v)}" for k, v in items)
        return f"{{{serialized}}}"
    if isinstance(value, (list, tuple)):
        serialized = ",".join(_canonicalize(item) for item in value)
        return f"[{serialized}]"
    if hasattr(value, "__dataclass_fields__"):
        fields = {name: getattr(value, name) for name in value.__dataclass_fields__}
        return f"{type(value).__name__}{_canonicalize(fields)}"
    return f"R:{repr(value)}"


def content_hash(value: Any, length: int = 32) -> str:
    """Deterministic sha256 prefix of a value's canonical form."""
    return hashlib.sha256(_canonicalize(value).encode()).hexdigest()[:length]


def chunked(items: Sequence[Any], size: int) -> Iterator[Sequence[Any]]:
    """Yield consecutive slices of at most `size` items."""
    if size <= 0:
        raise ValueError(f"chunk size must be positive, got {size}")
    for start in range(0, len(items), size):
        yield items[start:start + size]


def day_start(ts: datetime) -> datetime:
    """Start of the UTC day containing `ts`."""
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc).replace(hour=0, minute=0, second=0, microsecond=0)
