"""
test_processor.py - Unit tests for EventProcessor

Tests:
- Content-derived event ids and at-most-once application
- Unhandled kinds are ignored, not errors
- A failing handler rolls back every write of its event
- Custom handler registration and run() accounting
"""

import pytest
from dataclasses import dataclass
from typing import ClassVar

from poolledger import (
    ChainEvent, EventProcessor, LoanBorrowed, LoanClosed, MissingEntity, OracleFed,
    OracleTransaction, Pool, PrincipalAmount, ProcessResult, ProcessedEvent,
)
from poolledger.processor import build_context, event_id

from tests.fakes import POOL_ID, blk, create_loan, create_pool


@dataclass(frozen=True, slots=True)
class UnknownEvent(ChainEvent):
    kind: ClassVar[str] = "SomethingElse"


class TestEventIds:

    def test_identical_events_share_id(self):
        a = OracleFed(block=blk(3), extrinsic_hash="0xfeed", key="k", value=1)
        b = OracleFed(block=blk(3), extrinsic_hash="0xfeed", key="k", value=1)
        assert event_id(a) == event_id(b)

    def test_any_field_changes_id(self):
        a = OracleFed(block=blk(3), extrinsic_hash="0xfeed", key="k", value=1)
        b = OracleFed(block=blk(3), extrinsic_hash="0xfeed", key="k", value=2)
        assert event_id(a) != event_id(b)

    def test_context_from_event(self, settings):
        event = OracleFed(block=blk(3), extrinsic_hash="0xfeed", spec_version=1100, key="k")
        ctx = build_context(event, settings)
        assert ctx.block_number == 3
        assert ctx.extrinsic_hash == "0xfeed"
        assert ctx.spec_version == 1100
        assert ctx.chain_id == settings.chain_id


class TestIdempotency:
    """Replaying an event never applies it twice."""

    def test_replay_is_skipped(self, pool_processor):
        assert create_loan(pool_processor, "7") is ProcessResult.APPLIED
        assert create_loan(pool_processor, "7") is ProcessResult.ALREADY_APPLIED
        assert pool_processor.store.get(Pool, POOL_ID).number_of_assets == 1

    def test_marker_recorded(self, processor):
        event = OracleFed(block=blk(3), extrinsic_hash="0xfeed", key="k", value=1)
        processor.process(event)
        marker = processor.store.get(ProcessedEvent, event_id(event))
        assert marker.kind == "OracleFed"
        assert marker.block_number == 3

    def test_unhandled_kind_ignored(self, processor):
        assert processor.process(UnknownEvent(block=blk(1))) is ProcessResult.IGNORED
        assert processor.store.count(ProcessedEvent) == 0


class TestRollback:

    def test_failing_handler_leaves_no_trace(self, pool_processor):
        store = pool_processor.store
        before = store.count(ProcessedEvent)
        event = LoanBorrowed(
            block=blk(3), pool_id=POOL_ID, loan_id="404", amount=PrincipalAmount(internal=5),
        )
        with pytest.raises(MissingEntity):
            pool_processor.process(event)
        assert store.count(ProcessedEvent) == before
        assert store.get(ProcessedEvent, event_id(event)) is None

    def test_partial_writes_rolled_back(self, processor):
        def half_done(store, ctx, event, settings):
            store.save(OracleTransaction(id="partial", key="k", value=1, hash="0x", timestamp=ctx.timestamp))
            raise RuntimeError("handler failed midway")

        processor.register(OracleFed.kind, half_done)
        with pytest.raises(RuntimeError):
            processor.process(OracleFed(block=blk(3), key="k", value=1))
        assert processor.store.get(OracleTransaction, "partial") is None

    def test_failed_event_can_be_retried(self, processor):
        closed = LoanClosed(block=blk(3), pool_id=POOL_ID, loan_id="7")
        with pytest.raises(MissingEntity):
            processor.process(closed)
        create_pool(processor)
        create_loan(processor, "7")
        assert processor.process(closed) is ProcessResult.APPLIED


class TestRun:

    def test_counts(self, store, settings):
        processor = EventProcessor(store, settings, handlers={})
        seen = []
        processor.register(OracleFed.kind, lambda s, c, e, cfg: seen.append(e.key))
        events = [
            OracleFed(block=blk(1), key="a"),
            OracleFed(block=blk(1), key="a"),
            OracleFed(block=blk(2), key="b"),
            UnknownEvent(block=blk(3)),
        ]
        counts = processor.run(events)
        assert counts[ProcessResult.APPLIED] == 2
        assert counts[ProcessResult.ALREADY_APPLIED] == 1
        assert counts[ProcessResult.IGNORED] == 1
        assert seen == ["a", "b"]

    def test_process_many_in_order(self, processor):
        results = processor.process_many([
            OracleFed(block=blk(1), key="a"),
            OracleFed(block=blk(1), key="a"),
        ])
        assert results == [ProcessResult.APPLIED, ProcessResult.ALREADY_APPLIED]
