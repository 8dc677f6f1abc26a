"""Weekly/YTD Aggregator: rolls per-lot distribution allocations into weekly income rows.

Allocations are grouped by (week start, symbol).  Groups are then processed in ascending week
order while running sums are kept per (year, symbol) and per year, so every output row carries
its own weekly figures, the all-symbol total for its week, and year-to-date figures that never
decrease within a year.  The YTD year is the calendar year of the week start.
"""
import math
from collections import defaultdict
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, DefaultDict, Dict, Iterable, List, NamedTuple, Optional, Set, Tuple
import pandas as pd

if TYPE_CHECKING:
    from .tranche_tracker import DistributionAllocation

AMOUNTS = ('Distribution', 'Taxable', 'ROC')


def _zero_amounts() -> Dict[str, float]:
    return {'Distribution': .0, 'Taxable': .0, 'ROC': .0}


class WeekKey(NamedTuple):
    """Composite key of a weekly aggregate."""
    week_start: pd.Timestamp
    symbol: str


@dataclass
class WeeklyAggregate:
    """Distributions of one symbol in one week.

    Attributes:
        key (WeekKey): (week_start, symbol).
        amounts (Dict[str, float]): Distribution, Taxable and ROC totals.
        shares_eligible (float): Sum of eligible shares over the contributing allocations.
        events (Set[int]): Source rows of the contributing dividend events.
        tranche_count (int): Number of contributing (dividend, lot) allocations.
    """
    key: WeekKey
    amounts: Dict[str, float] = field(default_factory=_zero_amounts)
    shares_eligible: float = .0
    events: Set[int] = field(default_factory=set)
    tranche_count: int = 0

    @property
    def event_count(self) -> int:
        return len(self.events)

    @property
    def income_per_share(self) -> float:
        return self.amounts['Distribution'] / self.shares_eligible if self.shares_eligible else .0


@dataclass(frozen=True)
class IncomeRow:
    """One (week, symbol) output row with its weekly, week-all, and YTD figures."""
    week_start: pd.Timestamp
    symbol: str
    distribution: float
    taxable: float
    roc: float
    shares_eligible: float
    income_per_share: float
    event_count: int
    tranche_count: int
    week_all: Dict[str, float]
    ytd_symbol: Dict[str, float]
    ytd_all: Dict[str, float]
    generated_at: pd.Timestamp


class IncomeAggregator:
    """Owns the weekly aggregates and the running YTD tables.

    Attributes:
        generated_at (pd.Timestamp): Timestamp stamped on every output row.
        weekly (Dict[WeekKey, WeeklyAggregate]): Aggregates by (week_start, symbol).
        week_total_all (DefaultDict[pd.Timestamp, Dict[str, float]]): All-symbol totals per week.
        ytd_by_symbol (DefaultDict[Tuple[int, str], Dict[str, float]]): Running totals by (year, symbol).
        ytd_all (DefaultDict[int, Dict[str, float]]): Running totals by year.
        rows (List[IncomeRow]): Output rows in ascending (week_start, symbol) order.
    """
    def __init__(self, generated_at: Optional[pd.Timestamp] = None):
        self.generated_at = pd.Timestamp(generated_at) if generated_at is not None else pd.Timestamp.now()
        self._reset()

    def _reset(self):
        self.weekly: Dict[WeekKey, WeeklyAggregate] = {}
        self.week_total_all: DefaultDict[pd.Timestamp, Dict[str, float]] = defaultdict(_zero_amounts)
        self.ytd_by_symbol: DefaultDict[Tuple[int, str], Dict[str, float]] = defaultdict(_zero_amounts)
        self.ytd_all: DefaultDict[int, Dict[str, float]] = defaultdict(_zero_amounts)
        self.rows: List[IncomeRow] = []

    def add(self, allocation: 'DistributionAllocation'):
        """Add one allocation to its (week, symbol) group."""
        key = WeekKey(allocation.week_start, allocation.symbol)
        if key not in self.weekly:
            self.weekly[key] = WeeklyAggregate(key)
        group = self.weekly[key]
        group.amounts['Distribution'] += allocation.distribution
        group.amounts['Taxable'] += allocation.taxable
        group.amounts['ROC'] += allocation.roc
        group.shares_eligible += allocation.shares_eligible
        group.events.add(allocation.row)
        group.tranche_count += 1

    def run(self, allocations: Iterable['DistributionAllocation']) -> List[IncomeRow]:
        """Rebuild all tables from `allocations` and return the output rows.

        Args:
            allocations (Iterable[DistributionAllocation]): Per-lot allocations, in any order.

        Returns:
            List[IncomeRow]: One row per (week, symbol), in ascending week then symbol order.
        """
        self._reset()
        for allocation in allocations:
            self.add(allocation)
        ordered = sorted(self.weekly)
        for key in ordered:
            for column in AMOUNTS:
                self.week_total_all[key.week_start][column] += self.weekly[key].amounts[column]
        for key in ordered:
            group = self.weekly[key]
            year = key.week_start.year
            ytd_symbol = self.ytd_by_symbol[(year, key.symbol)]
            ytd_all = self.ytd_all[year]
            for column in AMOUNTS:
                ytd_symbol[column] += group.amounts[column]
                ytd_all[column] += group.amounts[column]
            self.rows.append(IncomeRow(
                key.week_start, key.symbol,
                group.amounts['Distribution'], group.amounts['Taxable'], group.amounts['ROC'],
                group.shares_eligible, group.income_per_share, group.event_count, group.tranche_count,
                dict(self.week_total_all[key.week_start]), dict(ytd_symbol), dict(ytd_all),
                self.generated_at))
        return self.rows

    def validate(self):
        """Run checks that should always be true.

        Raises:
            AssertionError: If the validation checks fail.
        """
        last_all: Dict[int, Dict[str, float]] = {}
        last_symbol: Dict[Tuple[int, str], Dict[str, float]] = {}
        for row in self.rows:
            year = row.week_start.year
            for last, key, current in ((last_all, year, row.ytd_all),
                                       (last_symbol, (year, row.symbol), row.ytd_symbol)):
                if key in last:
                    for column in AMOUNTS:
                        assert current[column] >= last[key][column] - 1e-9, \
                            f'YTD {column} decreased for {key} in week {row.week_start.strftime("%Y-%m-%d")}'
                last[key] = current
        for year, totals in self.ytd_all.items():
            for column in AMOUNTS:
                assert math.isclose(totals[column],
                                    sum(t[column] for (y, _), t in self.ytd_by_symbol.items() if y == year),
                                    rel_tol=1e-9, abs_tol=1e-9), f'YTD {column} for {year}'

    #region Properties
    @property
    def income_df(self) -> pd.DataFrame:
        """Return a DataFrame of weekly income per symbol with week-all and YTD running totals.

        Returns:
            pd.DataFrame: One row per (week, symbol).
        """
        columns = ['WkStart', 'Symbol', 'WkInc', 'TaxInc', 'ROCamt', 'WkIncAll', 'WkTaxAll', 'WkROCAll',
                   'YTDsym', 'YTDTaxSym', 'YTDROCSym', 'YTDinc', 'YTDTaxAll', 'YTDROCAll',
                   'ShElig', 'IncPS', 'EvtCnt', 'TrCnt', 'UpdTS']
        data = [[r.week_start, r.symbol, r.distribution, r.taxable, r.roc,
                 r.week_all['Distribution'], r.week_all['Taxable'], r.week_all['ROC'],
                 r.ytd_symbol['Distribution'], r.ytd_symbol['Taxable'], r.ytd_symbol['ROC'],
                 r.ytd_all['Distribution'], r.ytd_all['Taxable'], r.ytd_all['ROC'],
                 r.shares_eligible, r.income_per_share, r.event_count, r.tranche_count, r.generated_at]
                for r in self.rows]
        return pd.DataFrame(data, columns=columns)
    #endregion Properties
