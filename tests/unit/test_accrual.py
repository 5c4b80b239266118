"""
test_accrual.py - Unit tests for loan debt and interest accrual

Tests:
- borrow / repay state transitions and accumulators
- classify_debt_change (strict comparison, integer-divided rate)
- apply_debt_observation status machine
- RateTable, write-offs, pool debt sums
- Debt transfer normalisation
"""

import pytest
from collections import namedtuple

from poolledger import (
    WAD, Asset, AssetStatus, AssetType, DataConsistencyFault, DebtObservation, Pool,
    RateGroupMissing, ExternalAmount, PrincipalAmount, RepaidAmount, BlockInfo,
    LoanDebtTransferred, LoanDebtTransferredLegacy,
    apply_debt_observation, classify_debt_change, recompute_pool_debt_sums,
)
from poolledger import accrual

from tests.fakes import at, wad


Rates = namedtuple("Rates", ["pie", "chi", "rate_per_second", "last_updated", "fixed_rate"])


def _loan(**kwargs) -> Asset:
    kwargs.setdefault("id", "1-1")
    return Asset(pool_id="1", asset_id=kwargs["id"].split("-")[1], **kwargs)


class TestBorrowRepay:

    def test_borrow_then_repay_scenario(self):
        """Borrow 1000 then repay 1000: ACTIVE, then CLOSED at zero debt."""
        loan = _loan()
        accrual.borrow(loan, 1000)
        assert loan.status is AssetStatus.ACTIVE
        assert loan.outstanding_debt == 1000
        assert loan.total_borrowed == 1000
        assert loan.borrows_count == 1

        accrual.repay(loan, 1000)
        assert loan.outstanding_debt == 0
        assert loan.total_repaid == 1000
        assert loan.repays_count == 1
        assert loan.status is AssetStatus.CLOSED

    def test_partial_repay_keeps_loan_active(self):
        loan = _loan()
        accrual.borrow(loan, 1000)
        accrual.repay(loan, 400, principal=300, interest=100)
        assert loan.status is AssetStatus.ACTIVE
        assert loan.outstanding_debt == 600
        assert loan.outstanding_principal == 700
        assert loan.total_repaid_interest == 100

    def test_repay_beyond_debt_floors_at_zero(self):
        loan = _loan()
        accrual.borrow(loan, 100)
        accrual.repay(loan, 110, principal=100, interest=10)
        assert loan.outstanding_debt == 0
        assert loan.status is AssetStatus.CLOSED

    def test_repay_on_created_loan_does_not_close(self):
        loan = _loan()
        accrual.repay(loan, 0)
        assert loan.status is AssetStatus.CREATED

    def test_borrow_on_closed_loan_rejected(self):
        loan = _loan(status=AssetStatus.CLOSED)
        with pytest.raises(DataConsistencyFault):
            accrual.borrow(loan, 1)

    def test_negative_amounts_rejected(self):
        with pytest.raises(ValueError):
            accrual.borrow(_loan(), -1)
        with pytest.raises(ValueError):
            accrual.repay(_loan(), -1)


class TestExternalPricing:
    """Quantity side of loans priced by an external settlement price."""

    def test_borrow_and_repay_external(self, store):
        loan = _loan(quantity=0)
        accrual.borrow_external(store, loan, ExternalAmount(100, wad(2)), "0xa", at(), spec_version=1100)
        assert loan.quantity == 100
        assert loan.current_price is None
        profit = accrual.repay_external(store, loan, ExternalAmount(60, wad(3)), spec_version=1100)
        assert profit == 60
        assert loan.quantity == 40
        assert loan.sum_realized_profit_fifo == 60

    def test_settlement_price_sets_current_price_on_old_runtime(self, store):
        loan = _loan(quantity=0)
        accrual.borrow_external(store, loan, ExternalAmount(1, wad(7)), "0xa", at(), spec_version=1024)
        assert loan.current_price == wad(7)

    def test_negative_quantity_rejected(self, store):
        loan = _loan(quantity=5)
        with pytest.raises(DataConsistencyFault):
            accrual.repay_external(store, loan, ExternalAmount(6, WAD))

    def test_principal_amount_of_external(self):
        principal = PrincipalAmount(external=ExternalAmount(3, WAD // 2))
        assert principal.amount == 1
        assert principal.is_external

    def test_principal_amount_needs_exactly_one_side(self):
        with pytest.raises(ValueError):
            PrincipalAmount()
        with pytest.raises(ValueError):
            PrincipalAmount(internal=1, external=ExternalAmount(1, 1))


class TestClassifyDebtChange:

    def test_repayment_when_debt_falls(self):
        change = classify_debt_change(1000, 400, 0)
        assert change.repaid == 600
        assert change.borrowed == 0

    def test_no_borrow_without_rate(self):
        assert classify_debt_change(0, 500, None).borrowed == 0
        assert classify_debt_change(0, 500, 0).borrowed == 0

    def test_rate_is_integer_divided_before_multiplication(self):
        # Any rate below 2 * 10**27 divides down to 1; a per-second rate just
        # above 1.0 therefore tests growth against prev * 86400.
        rate = WAD + 10 ** 18
        assert classify_debt_change(1, 86401, rate).borrowed == 86400
        assert classify_debt_change(1, 86400, rate).borrowed == 0

    def test_sub_unity_rate_counts_any_growth_as_borrow(self):
        rate = WAD // 2
        assert classify_debt_change(10, 20, rate).borrowed == 10
        assert classify_debt_change(0, 0, rate).borrowed == 0


class TestApplyDebtObservation:
    """Status machine driven by periodic debt reads."""

    def test_zero_to_zero_stays_created(self):
        loan = _loan()
        apply_debt_observation(loan, DebtObservation(debt=0, nft_locked=True))
        assert loan.status is AssetStatus.CREATED

    def test_positive_debt_activates(self):
        loan = _loan()
        apply_debt_observation(loan, DebtObservation(debt=10, nft_locked=True))
        assert loan.status is AssetStatus.ACTIVE
        assert loan.outstanding_debt == 10

    def test_active_loan_at_zero_closes(self):
        loan = _loan(status=AssetStatus.ACTIVE, is_active=True, outstanding_debt=10)
        change = apply_debt_observation(loan, DebtObservation(debt=0, nft_locked=True))
        assert loan.status is AssetStatus.CLOSED
        assert change.repaid == 10
        assert loan.repaid_amount_by_period == 10
        assert loan.total_repaid == 10

    def test_unlocked_nft_closes(self):
        loan = _loan(status=AssetStatus.ACTIVE, is_active=True, outstanding_debt=10)
        apply_debt_observation(loan, DebtObservation(debt=10, nft_locked=False))
        assert loan.status is AssetStatus.CLOSED

    def test_missing_lock_result_does_not_close(self):
        loan = _loan(status=AssetStatus.ACTIVE, is_active=True, outstanding_debt=10)
        apply_debt_observation(loan, DebtObservation(debt=10, nft_locked=None))
        assert loan.status is AssetStatus.ACTIVE

    def test_missing_debt_keeps_prior_value(self, caplog):
        loan = _loan(status=AssetStatus.ACTIVE, is_active=True, outstanding_debt=10)
        apply_debt_observation(loan, DebtObservation(debt=None, nft_locked=True))
        assert loan.outstanding_debt == 10
        assert loan.status is AssetStatus.ACTIVE
        assert "No debt result" in caplog.text

    def test_active_never_reverts_to_created(self):
        loan = _loan()
        apply_debt_observation(loan, DebtObservation(debt=5, nft_locked=True))
        apply_debt_observation(loan, DebtObservation(debt=None, nft_locked=True))
        assert loan.status is AssetStatus.ACTIVE

    def test_per_period_overwritten_totals_accumulate(self):
        loan = _loan(status=AssetStatus.ACTIVE, is_active=True, outstanding_debt=100)
        apply_debt_observation(loan, DebtObservation(debt=80, nft_locked=True))
        apply_debt_observation(loan, DebtObservation(debt=70, nft_locked=True))
        assert loan.repaid_amount_by_period == 10
        assert loan.total_repaid == 30
        assert loan.repays_count == 2

    def test_rate_recorded(self):
        loan = _loan()
        apply_debt_observation(loan, DebtObservation(debt=1, nft_locked=True, rate_per_sec=WAD))
        assert loan.interest_rate_per_sec == WAD


class TestRateTable:

    def test_resolve(self):
        table = accrual.RateTable()
        table.add(3, Rates(0, WAD, WAD + 5, 0, 0))
        assert 3 in table
        assert table.resolve(3) == WAD + 5
        assert table.get(3) == WAD + 5

    def test_missing_group_raises(self):
        with pytest.raises(RateGroupMissing):
            accrual.RateTable().resolve(3, "1-1")

    def test_uninitialised_group_raises(self):
        table = accrual.RateTable()
        table.add(3, Rates(0, 0, WAD, 0, 0))
        with pytest.raises(RateGroupMissing):
            table.resolve(3)
        assert table.get(3) is None


class TestWriteOff:

    def test_write_off_returns_incremental_amount(self):
        loan = _loan(outstanding_debt=1000)
        assert accrual.write_off(loan, WAD // 4, 0) == 250
        assert accrual.write_off(loan, WAD // 2, 10) == 250
        assert loan.is_written_off
        assert loan.written_off_penalty == 10
        assert loan.status is AssetStatus.CREATED


class TestPoolDebtSums:

    def test_weighted_average_rate(self):
        pool = Pool(id="1")
        loans = [
            _loan(id="1-1", outstanding_debt=100, interest_rate_per_sec=10, total_borrowed=100, borrows_count=1),
            _loan(id="1-2", outstanding_debt=300, interest_rate_per_sec=20, total_repaid=5, repays_count=2),
        ]
        sums = recompute_pool_debt_sums(pool, loans)
        assert pool.sum_debt == 400
        assert pool.weighted_average_interest_rate_per_sec == (100 * 10 + 300 * 20) // 400
        assert pool.sum_borrowed_amount == 100
        assert pool.sum_repaid_amount == 5
        assert pool.sum_borrows_count == 1
        assert pool.sum_repays_count == 2
        assert sums.sum_debt == 400

    def test_no_debt_means_zero_rate(self):
        pool = Pool(id="1", weighted_average_interest_rate_per_sec=7)
        recompute_pool_debt_sums(pool, [_loan(interest_rate_per_sec=10)])
        assert pool.weighted_average_interest_rate_per_sec == 0


class TestDebtTransferNormalisation:

    def _event(self, interest=5):
        return LoanDebtTransferred(
            block=BlockInfo(1, at()),
            pool_id="1",
            from_loan_id="2",
            to_loan_id="3",
            repaid_amount=RepaidAmount(PrincipalAmount(internal=100), interest=interest),
            borrow_amount=PrincipalAmount(internal=105),
        )

    def test_interest_kept_on_current_runtime(self):
        transfer = accrual.normalize_debt_transfer(self._event(), spec_version=1100)
        assert transfer.repaid_interest == 5
        assert transfer.repaid_amount == 105
        assert transfer.borrow_principal == 105

    def test_interest_dropped_on_old_runtime(self):
        transfer = accrual.normalize_debt_transfer(self._event(), spec_version=1099)
        assert transfer.repaid_interest == 0

    def test_legacy_transfer_derives_quantity_from_price(self):
        event = LoanDebtTransferredLegacy(
            block=BlockInfo(1, at()), pool_id="1", from_loan_id="2", to_loan_id="3", amount=200,
        )
        priced = _loan(id="1-2", quantity=10, current_price=wad(4))
        cash = _loan(id="1-3", asset_type=AssetType.OFFCHAIN_CASH)
        transfer = accrual.normalize_legacy_debt_transfer(event, priced, cash)
        assert transfer.repaid_external == ExternalAmount(50, wad(4))
        assert transfer.borrow_external is None
        assert transfer.repaid_principal == 200
