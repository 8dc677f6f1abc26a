"""Tests for IncomeAggregator"""
import pytest
import pandas as pd
from tranche_tracker import DistributionAllocation, IncomeAggregator, TrancheTracker, WeekKey
from tranche_tracker.dates import week_start

GENERATED_AT = pd.Timestamp('2024-07-01 09:30')


def allocation(date, symbol, distribution, roc=.0, lot_id='L1', row=0, shares=10.0):
    date = pd.Timestamp(date)
    return DistributionAllocation(week_start(date), date, symbol, lot_id, row, shares, shares, 1.0,
                                  distribution, distribution - roc, roc, 100.0, 'Open')


class TestWeekStart:
    """Week bucketing"""

    def test_monday_anchor(self):
        assert week_start(pd.Timestamp('2024-01-10')) == pd.Timestamp('2024-01-08')
        assert week_start(pd.Timestamp('2024-01-08')) == pd.Timestamp('2024-01-08')
        assert week_start(pd.Timestamp('2024-01-14')) == pd.Timestamp('2024-01-08')

    def test_other_anchor(self):
        assert week_start(pd.Timestamp('2024-01-10'), anchor=6) == pd.Timestamp('2024-01-07')


class TestAggregator:
    """Weekly rows and running YTD totals"""

    def test_weekly_grouping(self):
        aggregator = IncomeAggregator(GENERATED_AT)
        rows = aggregator.run([
            allocation('2024-01-10', 'ABC', 6, roc=2, lot_id='L1', row=1),
            allocation('2024-01-10', 'ABC', 4, lot_id='L2', row=1),
            allocation('2024-01-12', 'ABC', 5, lot_id='L1', row=2),
            allocation('2024-01-11', 'XYZ', 7, lot_id='L3', row=3)])
        assert [(r.week_start, r.symbol) for r in rows] == [
            (pd.Timestamp('2024-01-08'), 'ABC'), (pd.Timestamp('2024-01-08'), 'XYZ')]
        abc = aggregator.weekly[WeekKey(pd.Timestamp('2024-01-08'), 'ABC')]
        assert abc.amounts['Distribution'] == pytest.approx(15)
        assert abc.amounts['ROC'] == pytest.approx(2)
        assert abc.event_count == 2, 'Distinct dividend rows'
        assert abc.tranche_count == 3, 'Allocation rows'
        assert rows[0].week_all['Distribution'] == pytest.approx(22), 'Whole week, every symbol'
        assert rows[0].ytd_all['Distribution'] == pytest.approx(15), 'Running total in symbol order'
        assert rows[1].ytd_all['Distribution'] == pytest.approx(22)
        aggregator.validate()

    def test_ytd_accumulates_and_resets(self):
        aggregator = IncomeAggregator(GENERATED_AT)
        rows = aggregator.run([
            allocation('2024-12-18', 'ABC', 10, row=1),
            allocation('2023-11-15', 'ABC', 3, row=0),
            allocation('2024-12-04', 'ABC', 5, row=2),
            allocation('2025-01-08', 'ABC', 1, row=3)])
        assert [r.ytd_symbol['Distribution'] for r in rows] == [3, 5, 15, 1]
        assert aggregator.ytd_by_symbol[(2024, 'ABC')]['Distribution'] == pytest.approx(15)
        aggregator.validate()

    def test_ytd_year_of_week_start(self):
        """2025-01-01 is a Wednesday; its week starts on 2024-12-30"""
        aggregator = IncomeAggregator(GENERATED_AT)
        rows = aggregator.run([allocation('2024-12-04', 'ABC', 5, row=0),
                               allocation('2025-01-01', 'ABC', 2, row=1)])
        assert rows[1].week_start == pd.Timestamp('2024-12-30')
        assert rows[1].ytd_symbol['Distribution'] == pytest.approx(7)

    def test_run_is_idempotent(self):
        allocations = [allocation('2024-01-10', 'ABC', 6, row=1), allocation('2024-01-17', 'ABC', 4, row=2)]
        aggregator = IncomeAggregator(GENERATED_AT)
        aggregator.run(allocations)
        first = aggregator.income_df
        aggregator.run(allocations)
        second = aggregator.income_df
        pd.testing.assert_frame_equal(first, second)
        assert second['YTDsym'].tolist() == [6, 10]
        assert (second['UpdTS'] == GENERATED_AT).all()

    def test_empty(self):
        aggregator = IncomeAggregator(GENERATED_AT)
        assert aggregator.run([]) == []
        assert aggregator.income_df.empty
        aggregator.validate()


class TestTrackerIncome:
    """Weekly income of the test transaction log"""

    def test_weekly_df(self, tracker: TrancheTracker):
        df = tracker.weekly_df
        assert list(zip(df['WkStart'], df['Symbol'])) == [
            (pd.Timestamp('2024-01-08'), 'ABC'), (pd.Timestamp('2024-01-08'), 'XYZ'),
            (pd.Timestamp('2024-02-05'), 'ABC')]
        first = df.iloc[0]
        assert first['WkInc'] == pytest.approx(30)
        assert first['TaxInc'] == pytest.approx(18)
        assert first['ROCamt'] == pytest.approx(12)
        assert first['WkIncAll'] == pytest.approx(80)
        assert first['WkTaxAll'] == pytest.approx(68)
        assert first['EvtCnt'] == 1
        assert first['TrCnt'] == 2
        assert first['IncPS'] == pytest.approx(0.2)
        last = df.iloc[2]
        assert last['YTDsym'] == pytest.approx(55)
        assert last['YTDROCSym'] == pytest.approx(17)
        assert last['YTDinc'] == pytest.approx(105)
        assert last['UpdTS'] == pd.Timestamp('2024-07-01 09:30')

    def test_totals_match_allocations(self, tracker: TrancheTracker):
        assert tracker.weekly_df['WkInc'].sum() == pytest.approx(tracker.allocations_df['Distribution'].sum())
        assert tracker.weekly_df['ROCamt'].sum() == pytest.approx(tracker.allocations_df['ROC'].sum())
