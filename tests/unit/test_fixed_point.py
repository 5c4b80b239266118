"""
test_fixed_point.py - Unit tests for core arithmetic, hashing and context

Tests:
- div_trunc / wad_mul / wad_div / apply_percentage truncate toward zero
- rescale between decimal scales
- content_hash is stable and sensitive to content
- chunked and day_start helpers
- ProcessingContext validation and period start
"""

import pytest
from datetime import datetime, timezone

from poolledger import (
    WAD, ProcessingContext, EpochStatus, apply_percentage, chunked, content_hash,
    day_start, div_trunc, rescale, wad_div, wad_mul,
)
from poolledger.events import BlockInfo, LoanClosed

from tests.fakes import at


class TestTruncatingDivision:
    """Integer division never rounds and never floors negatives."""

    def test_positive_truncates(self):
        assert div_trunc(7, 2) == 3

    def test_negative_truncates_toward_zero(self):
        assert div_trunc(-7, 2) == -3
        assert div_trunc(7, -2) == -3
        assert div_trunc(-7, -2) == 3

    def test_division_by_zero(self):
        with pytest.raises(ZeroDivisionError):
            div_trunc(1, 0)

    def test_wad_mul_and_div(self):
        half = WAD // 2
        assert wad_mul(100, half) == 50
        assert wad_div(50, half) == 100
        assert wad_mul(3, half) == 1

    def test_apply_percentage(self):
        assert apply_percentage(200, WAD // 2) == 100
        assert apply_percentage(200, 0) == 0
        assert apply_percentage(200, WAD) == 200


class TestRescale:

    def test_scale_up(self):
        assert rescale(1_500_000, 6, 27) == 1_500_000 * 10 ** 21

    def test_scale_down_truncates(self):
        assert rescale(1_999_999, 6, 0) == 1

    def test_same_scale(self):
        assert rescale(42, 18, 18) == 42


class TestContentHash:
    """Content-derived ids for idempotent processing."""

    def test_same_content_same_hash(self):
        a = LoanClosed(block=BlockInfo(5, at()), pool_id="1", loan_id="2")
        b = LoanClosed(block=BlockInfo(5, at()), pool_id="1", loan_id="2")
        assert content_hash(a) == content_hash(b)

    def test_different_content_different_hash(self):
        a = LoanClosed(block=BlockInfo(5, at()), pool_id="1", loan_id="2")
        b = LoanClosed(block=BlockInfo(5, at()), pool_id="1", loan_id="3")
        assert content_hash(a) != content_hash(b)

    def test_dict_order_irrelevant(self):
        assert content_hash({"a": 1, "b": 2}) == content_hash({"b": 2, "a": 1})

    def test_enum_and_int_distinguished(self):
        assert content_hash(EpochStatus.OPEN) != content_hash("OPEN")
        assert content_hash(1) != content_hash("1")

    def test_length(self):
        assert len(content_hash("x", length=16)) == 16


class TestHelpers:

    def test_chunked_sizes(self):
        chunks = list(chunked(list(range(7)), 3))
        assert chunks == [[0, 1, 2], [3, 4, 5], [6]]

    def test_chunked_rejects_zero(self):
        with pytest.raises(ValueError):
            list(chunked([1], 0))

    def test_day_start(self):
        ts = datetime(2024, 3, 5, 17, 45, tzinfo=timezone.utc)
        assert day_start(ts) == datetime(2024, 3, 5, tzinfo=timezone.utc)

    def test_day_start_naive_treated_as_utc(self):
        assert day_start(datetime(2024, 3, 5, 1, 0)) == datetime(2024, 3, 5, tzinfo=timezone.utc)


class TestProcessingContext:

    def test_naive_timestamp_becomes_utc(self):
        ctx = ProcessingContext(chain_id="1", block_number=1, timestamp=datetime(2024, 1, 1, 12))
        assert ctx.timestamp.tzinfo is timezone.utc

    def test_negative_block_rejected(self):
        with pytest.raises(ValueError):
            ProcessingContext(chain_id="1", block_number=-1, timestamp=at())

    def test_period_start(self):
        ctx = ProcessingContext(chain_id="1", block_number=1, timestamp=at(days=2, hours=13))
        assert ctx.period_start == at(days=2)

    def test_spec_below(self):
        ctx = ProcessingContext(chain_id="1", block_number=1, timestamp=at(), spec_version=1020)
        assert ctx.spec_below(1025)
        assert not ctx.spec_below(1020)
        unknown = ProcessingContext(chain_id="1", block_number=1, timestamp=at())
        assert not unknown.spec_below(1025)

    def test_immutable(self):
        ctx = ProcessingContext(chain_id="1", block_number=1, timestamp=at())
        with pytest.raises(AttributeError):
            ctx.block_number = 2
