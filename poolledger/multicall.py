"""
multicall.py - Batched Read-Only Contract Calls

Groups independent contract reads into fixed-size batches, executes each
batch as one aggregate read, and decodes every result with the signature of
the function that produced it.

Failure model:
    - A batch that fails as a whole (timeout, revert, transport error) leaves
      every call in it without a result. Other batches are unaffected.
    - A result that cannot be decoded is recorded as an EncodingFault for
      that call only; the rest of the batch still decodes.
    - "No result" is never zero. Callers keep the previously stored value.

Results are keyed by logical key, then by call kind:

    results = aggregator.run(calls)
    debt = results.get(asset_id, "debt")      # decoded tuple or None
    debt = results[asset_id]["debt"]          # same, dict style

Usage:
    aggregator = MulticallAggregator(executor, block_number=18_000_000)
    calls = [
        prepare_call(nav_feed, pool_id, "currentNAV"),
        prepare_call(pile, loan_id, "debt", 7),
    ]
    results = aggregator.run(calls)
"""

from __future__ import annotations
from collections import namedtuple
from dataclasses import dataclass, field
import logging
from typing import Any, Dict, List, Optional, Sequence, Tuple

from eth_abi import decode, encode
from eth_utils import function_signature_to_4byte_selector, to_checksum_address
from web3 import Web3

from .core import (
    DEFAULT_BATCH_SIZE, CallExecutor, EncodingFault, MissingExternalData, chunked,
)


logger = logging.getLogger(__name__)


# ============================================================================
# FUNCTION SIGNATURES
# ============================================================================

@dataclass(frozen=True, slots=True)
class FunctionSpec:
    """
    ABI description of one read-only contract function.

    Decoded results are named tuples so that callers can use either
    `result[0]` or `result.rate_per_second`.
    """
    name: str
    inputs: Tuple[str, ...]
    outputs: Tuple[str, ...]
    output_names: Tuple[str, ...]

    @property
    def signature(self) -> str:
        return f"{self.name}({','.join(self.inputs)})"

    @property
    def selector(self) -> bytes:
        return function_signature_to_4byte_selector(self.signature)

    def encode(self, *args: Any) -> bytes:
        if len(args) != len(self.inputs):
            raise ValueError(f"{self.signature} takes {len(self.inputs)} arguments, got {len(args)}")
        return self.selector + encode(list(self.inputs), list(args))

    def decode(self, raw: bytes) -> Any:
        try:
            values = decode(list(self.outputs), bytes(raw))
        except Exception as e:
            raise EncodingFault(f"cannot decode {self.signature} result: {e}") from e
        return _result_type(self.name, self.output_names)(*values)


_RESULT_TYPES: Dict[Tuple[str, Tuple[str, ...]], type] = {}


def _result_type(name: str, fields: Tuple[str, ...]) -> type:
    key = (name, fields)
    if key not in _RESULT_TYPES:
        _RESULT_TYPES[key] = namedtuple(f"{name[0].upper()}{name[1:]}Result", fields)
    return _RESULT_TYPES[key]


def _fn(name: str, inputs: Tuple[str, ...], outputs: Tuple[str, ...], names: Tuple[str, ...]) -> FunctionSpec:
    return FunctionSpec(name=name, inputs=inputs, outputs=outputs, output_names=names)


# Fixed ABI set read from legacy pool contracts (nav feed, reserve,
# assessor, shelf, pile).
LEGACY_FUNCTIONS: Dict[str, FunctionSpec] = {
    f.name: f for f in (
        _fn("currentNAV", (), ("uint256",), ("nav",)),
        _fn("totalBalance", (), ("uint256",), ("balance",)),
        _fn("calcSeniorTokenPrice", (), ("uint256",), ("price",)),
        _fn("calcJuniorTokenPrice", (), ("uint256",), ("price",)),
        _fn("nftID", ("uint256",), ("bytes32",), ("nft_id",)),
        _fn("maturityDate", ("bytes32",), ("uint256",), ("maturity_date",)),
        _fn("nftLocked", ("uint256",), ("bool",), ("locked",)),
        _fn("debt", ("uint256",), ("uint256",), ("debt",)),
        _fn("loanRates", ("uint256",), ("uint256",), ("rate_group",)),
        _fn(
            "rates", ("uint256",),
            ("uint256", "uint256", "uint256", "uint48", "uint256"),
            ("pie", "chi", "rate_per_second", "last_updated", "fixed_rate"),
        ),
        _fn("token", ("uint256",), ("address", "uint256"), ("registry", "nft")),
    )
}


# ============================================================================
# CALLS AND RESULTS
# ============================================================================

@dataclass(slots=True)
class Call:
    """
    One pending read: where to send it, what it means, and what came back.

    `key` groups calls that belong to the same logical object (a pool id,
    an asset id); `kind` is the function name.
    """
    target: str
    key: str
    kind: str
    call_data: bytes
    function: FunctionSpec
    raw_result: Optional[bytes] = None
    decoded: Any = None
    error: Optional[Exception] = None


def prepare_call(
    target: str,
    key: str,
    kind: str,
    *args: Any,
    functions: Dict[str, FunctionSpec] = LEGACY_FUNCTIONS,
) -> Call:
    try:
        function = functions[kind]
    except KeyError:
        raise ValueError(f"unknown contract function {kind!r}") from None
    logger.debug("setting up call %s-%s to %s with params %s", key, kind, target, args)
    return Call(
        target=to_checksum_address(target),
        key=key,
        kind=kind,
        call_data=function.encode(*args),
        function=function,
    )


@dataclass(slots=True)
class BatchOutcome:
    index: int
    size: int
    error: Optional[Exception] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class MulticallResults:
    """Decoded results grouped as results[key][kind]. Missing entries are None."""

    def __init__(self, calls: Sequence[Call], batches: Sequence[BatchOutcome]):
        self.calls = list(calls)
        self.batches = list(batches)
        self._by_key: Dict[str, Dict[str, Any]] = {}
        for call in self.calls:
            self._by_key.setdefault(call.key, {})[call.kind] = call.decoded

    def __getitem__(self, key: str) -> Dict[str, Any]:
        return self._by_key.get(key, {})

    def __contains__(self, key: str) -> bool:
        return key in self._by_key

    def get(self, key: str, kind: str) -> Any:
        return self._by_key.get(key, {}).get(kind)

    def keys(self) -> List[str]:
        return list(self._by_key)

    @property
    def failures(self) -> List[Call]:
        """Calls that produced no usable result."""
        return [c for c in self.calls if c.decoded is None]


# ============================================================================
# AGGREGATOR
# ============================================================================

class MulticallAggregator:
    """
    Executes calls in batches through a CallExecutor pinned at one block.

    Batches run sequentially. The executor is the only component that
    suspends on network I/O and is expected to enforce its own timeout.
    """

    def __init__(
        self,
        executor: CallExecutor,
        block_number: int,
        batch_size: int = DEFAULT_BATCH_SIZE,
    ):
        if batch_size <= 0:
            raise ValueError(f"batch_size must be positive, got {batch_size}")
        self.executor = executor
        self.block_number = block_number
        self.batch_size = batch_size

    def run(self, calls: Sequence[Call]) -> MulticallResults:
        calls = list(calls)
        if not calls:
            return MulticallResults([], [])
        batches = self._execute(calls)
        self._decode(calls)
        return MulticallResults(calls, batches)

    def _execute(self, calls: List[Call]) -> List[BatchOutcome]:
        outcomes = []
        batches = list(chunked(calls, self.batch_size))
        for i, batch in enumerate(batches):
            logger.info(
                "Processing multicall batch %d of %d with size %d at block %d",
                i + 1, len(batches), len(batch), self.block_number,
            )
            outcome = BatchOutcome(index=i, size=len(batch))
            try:
                return_data = self.executor.aggregate(
                    [(c.target, c.call_data) for c in batch], self.block_number
                )
                if len(return_data) != len(batch):
                    raise EncodingFault(
                        f"batch {i + 1} returned {len(return_data)} results for {len(batch)} calls"
                    )
            except Exception as e:
                logger.error("Error calling multicall batch %d: %s", i + 1, e)
                outcome.error = e
                for call in batch:
                    call.error = e
            else:
                for call, raw in zip(batch, return_data):
                    call.raw_result = raw
            outcomes.append(outcome)
        return outcomes

    @staticmethod
    def _decode(calls: List[Call]) -> None:
        for call in calls:
            if call.raw_result is None:
                logger.warning("Missing raw result for call %s-%s", call.key, call.kind)
                if call.error is None:
                    call.error = MissingExternalData(f"no result for {call.key}-{call.kind}")
                continue
            try:
                call.decoded = call.function.decode(call.raw_result)
            except EncodingFault as e:
                logger.error("Failed to decode call %s-%s: %s", call.key, call.kind, e)
                call.error = e
                call.decoded = None


# ============================================================================
# WEB3 EXECUTOR
# ============================================================================

_AGGREGATE = FunctionSpec(
    name="aggregate",
    inputs=("(address,bytes)[]",),
    outputs=("uint256", "bytes[]"),
    output_names=("block_number", "return_data"),
)


class Web3MulticallExecutor:
    """
    CallExecutor backed by a Multicall3 contract reached through web3.

    Each batch is one `eth_call` to `aggregate((address,bytes)[])` pinned at
    the requested block. A reverted inner call reverts the whole batch.
    """

    def __init__(self, web3: Web3, multicall_address: str):
        self.web3 = web3
        self.multicall_address = to_checksum_address(multicall_address)

    @classmethod
    def from_url(cls, provider_url: str, multicall_address: str, timeout: float = 30.0) -> Web3MulticallExecutor:
        web3 = Web3(Web3.HTTPProvider(provider_url, request_kwargs={"timeout": timeout}))
        return cls(web3, multicall_address)

    def aggregate(self, calls: Sequence[Tuple[str, bytes]], block_number: int) -> List[bytes]:
        data = _AGGREGATE.encode([(target, call_data) for target, call_data in calls])
        raw = self.web3.eth.call(
            {"to": self.multicall_address, "data": data},
            block_identifier=block_number,
        )
        result = _AGGREGATE.decode(raw)
        return [bytes(r) for r in result.return_data]
