"""Tests for compute_gains and the tranche snapshot"""
import math
import pytest
import pandas as pd
from tranche_tracker import Tranche, TrancheTracker, compute_gains
from tranche_tracker.config import CLOSED

TODAY = pd.Timestamp('2024-06-30')


def make_lot(shares=100, cost=1000, sold=0, sale_price=float('nan'), roc=0, income=0, bought='2024-01-01'):
    return Tranche('ABC_240101_A', 'ABC', pd.Timestamp(bought) if bought else None, shares, cost, sold,
                   sale_price, income, roc)


class TestComputeGains:
    """Basis and gain arithmetic"""

    def test_basis_after_roc(self):
        gains = compute_gains(make_lot(roc=20, income=30), 10, TODAY)
        assert gains.adjusted_basis == pytest.approx(980)
        assert gains.consumed_basis_ratio == pytest.approx(0.02)
        assert gains.market_value == pytest.approx(1000)
        assert gains.unrealized_gain == pytest.approx(20)
        assert gains.realized_gain is None, 'Nothing sold'
        assert gains.exit_readiness == 'Ready'

    def test_zero_cost_basis(self):
        gains = compute_gains(make_lot(cost=0, roc=5), 1, TODAY)
        assert gains.consumed_basis_ratio == 0
        assert gains.percent_to_exit == 0
        assert gains.excess_roc == pytest.approx(5)

    def test_percent_to_exit_ignores_income(self):
        gains = compute_gains(make_lot(income=500), 8, TODAY)
        assert gains.percent_to_exit == pytest.approx(0.2), 'Income does not offset principal loss'
        assert gains.exit_readiness == 'Hold'
        assert compute_gains(make_lot(), 9.6, TODAY).exit_readiness == 'Near'

    def test_percent_to_exit_clamped(self):
        assert compute_gains(make_lot(), 20, TODAY).percent_to_exit == 0
        assert compute_gains(make_lot(), 0, TODAY).percent_to_exit == 1

    def test_realized_gain(self):
        lot = make_lot(sold=40, sale_price=12)
        gains = compute_gains(lot, 11, TODAY)
        assert gains.realized_gain == pytest.approx(80)
        assert gains.market_value == pytest.approx(660)

    def test_closed_lot(self):
        lot = make_lot(sold=100, sale_price=9)
        assert lot.status == CLOSED
        gains = compute_gains(lot, 11, TODAY)
        assert gains.market_value == 0
        assert gains.exit_readiness == 'Closed'
        assert gains.realized_gain == pytest.approx(-100)

    def test_holding_period(self):
        gains = compute_gains(make_lot(), 10, TODAY)
        assert gains.held_days == 181
        assert gains.term == 'ST'
        long_term = compute_gains(make_lot(bought='2023-06-29'), 10, TODAY)
        assert long_term.held_days == 367
        assert long_term.term == 'LT'
        assert compute_gains(make_lot(bought=None), 10, TODAY).held_days is None

    def test_missing_price_is_zero(self):
        gains = compute_gains(make_lot(), None, TODAY)
        assert gains.current_price == 0
        assert gains.market_value == 0


class TestSnapshot:
    """Tranche snapshot of the test transaction log"""

    def test_snapshot_df(self, tracker: TrancheTracker):
        df = tracker.snapshot_df
        assert list(df.index) == ['ABC_240102_A', 'ABC_240103_A', 'XYZ_240105_A', 'XYZ_240105_B']
        abc = df.loc['ABC_240102_A']
        assert abc['AdjBasis'] == pytest.approx(987)
        assert abc['MktValue'] == pytest.approx(950)
        assert abc['PctToExit'] == pytest.approx(37 / 987)
        assert abc['ExitReadiness'] == 'Near'
        assert abc['HeldDays'] == 180
        assert abc['CumIncome'] == pytest.approx(32)
        assert math.isnan(abc['SellPx'])
        closed = df.loc['ABC_240103_A']
        assert closed['Status'] == CLOSED
        assert closed['RealizedGain'] == pytest.approx(50)
        assert closed['ExitReadiness'] == 'Closed'
        assert df.loc['XYZ_240105_A', 'ExitReadiness'] == 'Ready'
        assert df.loc['XYZ_240105_B', 'ExitReadiness'] == 'Hold'
        assert df.loc['XYZ_240105_B', 'CurrPx'] == 22

    def test_tranches_str(self, tracker: TrancheTracker):
        text = tracker.ledger.tranches_str
        assert 'ABC_240102_A: 100/100 @ $10.00 (2024-01-02) Open ROC $13.00 Income $32.00' in text
        assert 'ABC_240103_A: 0/50 @ $12.00' in text
