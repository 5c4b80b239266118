"""
events.py - Decoded Chain Events

Immutable event records consumed by the processor. Each event class carries
a `kind` string used as the dispatch key, the block it was observed in, and,
where the chain provides them, the extrinsic/transaction hash and signer.

Events are just data. Handlers are plain functions in event_handlers.py.

Two shapes exist for debt transfers:
    LoanDebtTransferred        principal/interest/unscheduled breakdown
    LoanDebtTransferredLegacy  a single amount (older runtimes)
Both are normalized into one DebtTransfer request before any state changes.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime
from typing import ClassVar, Optional, Tuple

from .core import WAD, div_trunc


# ============================================================================
# AMOUNTS
# ============================================================================

@dataclass(frozen=True, slots=True)
class ExternalAmount:
    """Quantity of an externally priced asset at a settlement price (both WAD-scaled)."""
    quantity: int
    settlement_price: int


@dataclass(frozen=True, slots=True)
class PrincipalAmount:
    """
    Principal of a borrow or repayment.

    Internally priced loans move a plain currency amount; externally priced
    loans move a quantity at a settlement price.
    """
    internal: Optional[int] = None
    external: Optional[ExternalAmount] = None

    def __post_init__(self):
        if (self.internal is None) == (self.external is None):
            raise ValueError("PrincipalAmount needs exactly one of internal or external")

    @property
    def is_external(self) -> bool:
        return self.external is not None

    @property
    def amount(self) -> int:
        if self.external is not None:
            return div_trunc(self.external.quantity * self.external.settlement_price, WAD)
        return self.internal


@dataclass(frozen=True, slots=True)
class RepaidAmount:
    principal: PrincipalAmount
    interest: int = 0
    unscheduled: int = 0

    @property
    def total(self) -> int:
        return self.principal.amount + self.interest + self.unscheduled


# ============================================================================
# EVENT BASE
# ============================================================================

@dataclass(frozen=True, slots=True)
class BlockInfo:
    number: int
    timestamp: datetime


@dataclass(frozen=True, slots=True)
class ChainEvent:
    block: BlockInfo
    extrinsic_hash: Optional[str] = None
    signer: Optional[str] = None
    spec_version: Optional[int] = None
    # Position of the event within its block, for ids of repeated events.
    index: int = 0

    kind: ClassVar[str] = "ChainEvent"


# ============================================================================
# LOAN EVENTS
# ============================================================================

@dataclass(frozen=True, slots=True)
class LoanCreated(ChainEvent):
    kind: ClassVar[str] = "LoanCreated"
    pool_id: str = ""
    loan_id: str = ""
    collateral_class: Optional[str] = None
    collateral_item: Optional[str] = None
    is_internal: bool = True
    valuation_method: str = "OutstandingDebt"
    advance_rate: Optional[int] = None
    collateral_value: Optional[int] = None
    probability_of_default: Optional[int] = None
    loss_given_default: Optional[int] = None
    discount_rate: Optional[int] = None
    maturity_date: Optional[datetime] = None
    notional: Optional[int] = None


@dataclass(frozen=True, slots=True)
class LoanBorrowed(ChainEvent):
    kind: ClassVar[str] = "LoanBorrowed"
    pool_id: str = ""
    loan_id: str = ""
    amount: PrincipalAmount = PrincipalAmount(internal=0)


@dataclass(frozen=True, slots=True)
class LoanRepaid(ChainEvent):
    kind: ClassVar[str] = "LoanRepaid"
    pool_id: str = ""
    loan_id: str = ""
    amount: RepaidAmount = RepaidAmount(PrincipalAmount(internal=0))


@dataclass(frozen=True, slots=True)
class LoanWrittenOff(ChainEvent):
    kind: ClassVar[str] = "LoanWrittenOff"
    pool_id: str = ""
    loan_id: str = ""
    percentage: int = 0
    penalty: int = 0


@dataclass(frozen=True, slots=True)
class LoanClosed(ChainEvent):
    kind: ClassVar[str] = "LoanClosed"
    pool_id: str = ""
    loan_id: str = ""


@dataclass(frozen=True, slots=True)
class LoanDebtTransferred(ChainEvent):
    kind: ClassVar[str] = "LoanDebtTransferred"
    pool_id: str = ""
    from_loan_id: str = ""
    to_loan_id: str = ""
    repaid_amount: RepaidAmount = RepaidAmount(PrincipalAmount(internal=0))
    borrow_amount: PrincipalAmount = PrincipalAmount(internal=0)


@dataclass(frozen=True, slots=True)
class LoanDebtTransferredLegacy(ChainEvent):
    kind: ClassVar[str] = "LoanDebtTransferredLegacy"
    pool_id: str = ""
    from_loan_id: str = ""
    to_loan_id: str = ""
    amount: int = 0


@dataclass(frozen=True, slots=True)
class LoanDebtIncreased(ChainEvent):
    kind: ClassVar[str] = "LoanDebtIncreased"
    pool_id: str = ""
    loan_id: str = ""
    amount: PrincipalAmount = PrincipalAmount(internal=0)


@dataclass(frozen=True, slots=True)
class LoanDebtDecreased(ChainEvent):
    kind: ClassVar[str] = "LoanDebtDecreased"
    pool_id: str = ""
    loan_id: str = ""
    amount: RepaidAmount = RepaidAmount(PrincipalAmount(internal=0))


# ============================================================================
# POOL AND EPOCH EVENTS
# ============================================================================

@dataclass(frozen=True, slots=True)
class TrancheSpec:
    tranche_id: str
    index: int
    interest_rate_per_sec: Optional[int] = None
    token_address: Optional[str] = None


@dataclass(frozen=True, slots=True)
class PoolCreated(ChainEvent):
    kind: ClassVar[str] = "PoolCreated"
    pool_id: str = ""
    currency_id: str = ""
    currency_decimals: int = 18
    currency_symbol: str = ""
    max_reserve: int = 0
    max_nav_age: int = 0
    min_epoch_time: int = 0
    tranches: Tuple[TrancheSpec, ...] = ()


@dataclass(frozen=True, slots=True)
class PoolUpdated(ChainEvent):
    kind: ClassVar[str] = "PoolUpdated"
    pool_id: str = ""
    max_reserve: Optional[int] = None
    max_nav_age: Optional[int] = None
    min_epoch_time: Optional[int] = None
    tranches: Tuple[TrancheSpec, ...] = ()


@dataclass(frozen=True, slots=True)
class MetadataSet(ChainEvent):
    kind: ClassVar[str] = "MetadataSet"
    pool_id: str = ""
    metadata: str = ""


@dataclass(frozen=True, slots=True)
class TrancheOrderSummary:
    """
    Per-tranche totals frozen when an epoch closes.

    Outstanding amounts are the order book at close. Redeem amounts are in
    tranche tokens.
    """
    tranche_id: str
    sum_outstanding_invest_orders: int = 0
    sum_outstanding_redeem_orders: int = 0
    token_price: Optional[int] = None


@dataclass(frozen=True, slots=True)
class EpochClosed(ChainEvent):
    kind: ClassVar[str] = "EpochClosed"
    pool_id: str = ""
    epoch_index: int = 0
    tranches: Tuple[TrancheOrderSummary, ...] = ()


@dataclass(frozen=True, slots=True)
class TrancheSolution:
    """
    Fulfillment decided for one tranche of an executed epoch.

    Percentages are WAD-scaled fractions in [0, WAD]. `token_supply`, when
    given, is the on-chain supply after execution; otherwise supply is
    derived from the fulfilled amounts.
    """
    tranche_id: str
    token_price: int
    invest_fulfillment_percentage: int
    redeem_fulfillment_percentage: int
    token_supply: Optional[int] = None


@dataclass(frozen=True, slots=True)
class EpochExecuted(ChainEvent):
    kind: ClassVar[str] = "EpochExecuted"
    pool_id: str = ""
    epoch_index: int = 0
    solutions: Tuple[TrancheSolution, ...] = ()
    pool_fees_paid: int = 0


@dataclass(frozen=True, slots=True)
class InvestOrderUpdated(ChainEvent):
    kind: ClassVar[str] = "InvestOrderUpdated"
    pool_id: str = ""
    tranche_id: str = ""
    account_id: str = ""
    amount: int = 0


@dataclass(frozen=True, slots=True)
class RedeemOrderUpdated(ChainEvent):
    kind: ClassVar[str] = "RedeemOrderUpdated"
    pool_id: str = ""
    tranche_id: str = ""
    account_id: str = ""
    amount: int = 0


@dataclass(frozen=True, slots=True)
class OracleFed(ChainEvent):
    kind: ClassVar[str] = "OracleFed"
    key: str = ""
    value: int = 0


# ============================================================================
# EVM LOGS
# ============================================================================

@dataclass(frozen=True, slots=True)
class EvmTransfer(ChainEvent):
    """ERC-20 Transfer of a tranche token."""
    kind: ClassVar[str] = "EvmTransfer"
    token_address: str = ""
    from_address: str = ""
    to_address: str = ""
    amount: int = 0


@dataclass(frozen=True, slots=True)
class EvmDeployTranche(ChainEvent):
    """Tranche token deployed on an EVM domain by a pool manager."""
    kind: ClassVar[str] = "EvmDeployTranche"
    pool_id: str = ""
    tranche_id: str = ""
    token_address: str = ""
    pool_manager: str = ""
