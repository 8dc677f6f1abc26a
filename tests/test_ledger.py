"""Tests for TrancheLedger"""
import pytest
import pandas as pd
from tranche_tracker import (AmbiguousLotError, Config, LotConflictError, OverSellError, TrancheLedger,
                             TransactionEvent, UnknownLotError)
from tranche_tracker.config import BUY, SELL, OPEN, PARTIAL, CLOSED
from tranche_tracker.tranche_tracker import sequence_letter


def buy(row, date, symbol, shares, price, lot_id=None):
    return TransactionEvent(BUY, pd.Timestamp(date), symbol, row, shares=shares, price=price, lot_id_override=lot_id)

def sell(row, date, symbol, shares, price, lot_id=None):
    return TransactionEvent(SELL, pd.Timestamp(date), symbol, row, shares=shares, price=price, lot_id_override=lot_id)


class TestLedger:
    """Tests for lot creation, sells and status transitions"""

    def test_derived_lot_ids(self):
        ledger = TrancheLedger().replay([
            buy(0, '2024-01-01', 'ABC', 100, 10),
            buy(1, '2024-01-01', 'ABC', 10, 11),
            buy(2, '2024-01-02', 'ABC', 5, 12)])
        assert list(ledger.lots) == ['ABC_240101_A', 'ABC_240101_B', 'ABC_240102_A']
        assert ledger.lot_ids == {0: 'ABC_240101_A', 1: 'ABC_240101_B', 2: 'ABC_240102_A'}
        ledger.validate()

    def test_derived_id_skips_existing_override(self):
        ledger = TrancheLedger().replay([
            buy(0, '2024-01-01', 'ABC', 1, 10, lot_id='ABC_240101_A'),
            buy(1, '2024-01-01', 'ABC', 2, 10)])
        assert ledger.lot_ids[1] == 'ABC_240101_B', 'Derived id must not collide with an override'

    def test_sequence_letters(self):
        assert [sequence_letter(n) for n in (0, 1, 25, 26, 27)] == ['A', 'B', 'Z', 'AA', 'AB']

    def test_buys_with_same_override_accumulate(self):
        ledger = TrancheLedger().replay([
            buy(0, '2024-01-03', 'ABC', 10, 10, lot_id='core'),
            buy(1, '2024-01-01', 'ABC', 30, 14, lot_id='core')])
        lot = ledger.lots['core']
        assert lot.shares_bought == 40
        assert lot.cost_basis == pytest.approx(520)
        assert lot.average_buy_price == pytest.approx(13)
        assert lot.acquisition_date == pd.Timestamp('2024-01-01'), 'Earliest contributing buy'

    def test_status_transitions(self):
        ledger = TrancheLedger()
        lot = ledger.buy(buy(0, '2024-01-01', 'ABC', 100, 10))
        assert lot.status == OPEN
        ledger.sell(sell(1, '2024-02-01', 'ABC', 40, 12))
        assert lot.status == PARTIAL
        assert lot.shares_remaining == 60
        ledger.sell(sell(2, '2024-03-01', 'ABC', 60, 13))
        assert lot.status == CLOSED
        assert lot.shares_remaining == 0
        assert lot.last_sale_price == 13
        assert lot.status_asof(pd.Timestamp('2024-02-15')) == PARTIAL
        assert lot.shares_remaining_asof(pd.Timestamp('2023-12-31')) == 0, 'Lot did not exist yet'
        ledger.validate()

    def test_dust_closes_lot(self):
        ledger = TrancheLedger()
        lot = ledger.buy(buy(0, '2024-01-01', 'ABC', 0.3, 10))
        ledger.sell(sell(1, '2024-01-02', 'ABC', 0.1, 10))
        ledger.sell(sell(2, '2024-01-03', 'ABC', 0.2, 10))
        assert lot.status == CLOSED
        assert lot.shares_sold == lot.shares_bought

    def test_replay_is_chronological(self):
        ledger = TrancheLedger().replay([
            sell(0, '2024-02-01', 'ABC', 50, 12),
            buy(1, '2024-01-01', 'ABC', 100, 10)])
        assert not ledger.errors, 'Sell listed first but dated after the buy'
        assert ledger.get_position('ABC') == 50

    def test_same_day_tie_break_by_row(self):
        ledger = TrancheLedger().replay([
            buy(0, '2024-01-01', 'ABC', 10, 10),
            sell(1, '2024-01-01', 'ABC', 10, 11)])
        assert ledger.lots['ABC_240101_A'].status == CLOSED


class TestLedgerErrors:
    """Tests for sells and buys the ledger must refuse"""

    def test_unknown_lot(self):
        ledger = TrancheLedger()
        with pytest.raises(UnknownLotError):
            ledger.sell(sell(0, '2024-01-01', 'ABC', 1, 10))
        ledger.buy(buy(1, '2024-01-01', 'ABC', 1, 10))
        with pytest.raises(UnknownLotError, match='unknown lot nope') as e:
            ledger.sell(sell(2, '2024-01-02', 'ABC', 1, 10, lot_id='nope'))
        assert str(e.value).startswith('ABC: '), 'Message names the symbol'
        assert str(e.value).endswith('(row 2, 2024-01-02)'), 'Message names the row and date'
        assert (e.value.row, e.value.date) == (2, pd.Timestamp('2024-01-02'))

    def test_ambiguous_sell(self):
        ledger = TrancheLedger()
        ledger.buy(buy(0, '2024-01-01', 'XYZ', 60, 10))
        ledger.buy(buy(1, '2024-01-02', 'XYZ', 40, 10))
        with pytest.raises(AmbiguousLotError) as e:
            ledger.sell(sell(2, '2024-01-03', 'XYZ', 10, 10))
        assert e.value.symbol == 'XYZ'
        assert 'XYZ_240101_A' in str(e.value)
        lot = ledger.sell(sell(3, '2024-01-03', 'XYZ', 10, 10, lot_id='XYZ_240102_A'))
        assert lot.shares_remaining == 30

    def test_oversell(self):
        ledger = TrancheLedger()
        ledger.buy(buy(0, '2024-01-01', 'ABC', 10, 10))
        with pytest.raises(OverSellError) as e:
            ledger.sell(sell(1, '2024-01-02', 'ABC', 11, 10))
        assert '(row 1, 2024-01-02)' in str(e.value), 'Message names the row and date'
        assert e.value.lot_id == 'ABC_240101_A'
        assert ledger.get_position('ABC') == 10, 'Rejected sell leaves the lot untouched'

    def test_closed_lot_never_reopens(self):
        ledger = TrancheLedger()
        ledger.buy(buy(0, '2024-01-01', 'ABC', 10, 10, lot_id='L1'))
        ledger.sell(sell(1, '2024-01-02', 'ABC', 10, 10, lot_id='L1'))
        with pytest.raises(LotConflictError):
            ledger.buy(buy(2, '2024-01-03', 'ABC', 10, 10, lot_id='L1'))
        with pytest.raises(OverSellError):
            ledger.sell(sell(3, '2024-01-03', 'ABC', 1, 10, lot_id='L1'))

    def test_override_of_other_symbol(self):
        ledger = TrancheLedger()
        ledger.buy(buy(0, '2024-01-01', 'ABC', 10, 10, lot_id='L1'))
        with pytest.raises(LotConflictError):
            ledger.buy(buy(1, '2024-01-02', 'XYZ', 10, 10, lot_id='L1'))

    def test_failure_isolated_to_symbol(self):
        ledger = TrancheLedger().replay([
            buy(0, '2024-01-01', 'ABC', 10, 10),
            buy(1, '2024-01-01', 'BAD', 10, 10),
            sell(2, '2024-01-02', 'BAD', 20, 10),
            buy(3, '2024-01-03', 'BAD', 10, 10)])
        assert ledger.failed_symbols == ['BAD']
        assert isinstance(ledger.errors['BAD'], OverSellError)
        assert [lot.symbol for lot in ledger.tranches] == ['ABC']
        assert set(ledger.lot_ids) == {0}
        ledger.validate()

    def test_strict_mode_raises(self, monkeypatch):
        monkeypatch.setattr(Config, 'STRICT', True)
        with pytest.raises(UnknownLotError):
            TrancheLedger().replay([sell(0, '2024-01-01', 'ABC', 1, 10)])
