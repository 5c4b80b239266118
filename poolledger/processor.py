"""
processor.py - Event Processor

Applies decoded chain events to a Store, one at a time, through a table of
handler functions keyed by event kind.

Processing order per event:
1. Derive a deterministic event id from the event's content
2. Skip events whose id has already been applied
3. Build the ProcessingContext (chain, block, timestamp, spec version, hash)
4. Run the handler inside store.atomic() when the store supports it
5. Record a ProcessedEvent marker in the same atomic block

A handler that raises leaves the store exactly as it was before the event
and the exception propagates to the caller.
"""

from __future__ import annotations
from contextlib import nullcontext
import logging
from typing import Dict, Iterable, List, Optional

from .core import ProcessResult, ProcessingContext, Store, content_hash
from .config import SETTINGS, EngineSettings
from .entities import ProcessedEvent
from .event_handlers import DEFAULT_HANDLERS, EventHandler
from .events import ChainEvent


logger = logging.getLogger(__name__)


def event_id(event: ChainEvent) -> str:
    """Content-derived id; identical events always map to the same id."""
    return content_hash(event)


def build_context(event: ChainEvent, settings: EngineSettings) -> ProcessingContext:
    return ProcessingContext(
        chain_id=settings.chain_id,
        block_number=event.block.number,
        timestamp=event.block.timestamp,
        spec_version=event.spec_version,
        extrinsic_hash=event.extrinsic_hash,
        signer=event.signer,
    )


class EventProcessor:
    """
    Dispatches events to handlers and guarantees at-most-once application.

    Example:
        processor = EventProcessor(InMemoryStore())
        processor.process(PoolCreated(block=BlockInfo(1, ts), pool_id="1", ...))
    """

    def __init__(
        self,
        store: Store,
        settings: EngineSettings = SETTINGS,
        handlers: Optional[Dict[str, EventHandler]] = None,
    ):
        self.store = store
        self.settings = settings
        self.handlers: Dict[str, EventHandler] = dict(DEFAULT_HANDLERS if handlers is None else handlers)

    def register(self, kind: str, handler: EventHandler) -> None:
        """Register or replace the handler for an event kind."""
        self.handlers[kind] = handler

    def process(self, event: ChainEvent) -> ProcessResult:
        eid = event_id(event)
        if self.store.get(ProcessedEvent, eid) is not None:
            logger.debug("Event %s (%s) already applied", eid, event.kind)
            return ProcessResult.ALREADY_APPLIED

        handler = self.handlers.get(event.kind)
        if handler is None:
            logger.debug("No handler registered for %s", event.kind)
            return ProcessResult.IGNORED

        ctx = build_context(event, self.settings)
        atomic = getattr(self.store, "atomic", None)
        with atomic() if atomic is not None else nullcontext():
            handler(self.store, ctx, event, self.settings)
            self.store.save(ProcessedEvent(id=eid, kind=event.kind, block_number=ctx.block_number))
        return ProcessResult.APPLIED

    def process_many(self, events: Iterable[ChainEvent]) -> List[ProcessResult]:
        """Process events in the order given; stops at the first failure."""
        return [self.process(event) for event in events]

    def run(self, events: Iterable[ChainEvent]) -> Dict[ProcessResult, int]:
        """Process a stream of events and return how many ended in each result."""
        counts = {result: 0 for result in ProcessResult}
        for event in events:
            counts[self.process(event)] += 1
        logger.info(
            "Processed events: %d applied, %d already applied, %d ignored",
            counts[ProcessResult.APPLIED],
            counts[ProcessResult.ALREADY_APPLIED],
            counts[ProcessResult.IGNORED],
        )
        return counts
