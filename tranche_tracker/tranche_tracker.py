"""Tranche Trackers rebuild tax-lot state and allocate distributions across open lots.

This module provides the classes that turn a normalized transaction log into per-lot (tranche)
state, split each dividend's taxable income and return of capital (ROC) across the lots open on
its date, and report basis and gain figures for each lot.

Classes:
    Tranche: A tax lot, accumulating buys, sells and allocated distributions under one lot id.
    TrancheLedger: Replays buys and sells in date order and owns every Tranche.
    DistributionAllocation: One dividend's share allocated to one open lot.
    DistributionAllocator: Splits dividends pro-rata across lots open on the dividend date.
    GainSnapshot: Basis and gain figures for a lot at report time.
    TrancheTracker: Runs the whole pipeline and exposes the results as DataFrames.

Functions:
    compute_gains: Basis and gain figures for one lot given a current price.

Allocation is by shares remaining *as of the dividend date*: buys and sells dated after the
dividend do not change how it is split.  ROC reduces basis; PctToExit deliberately ignores
cumulative income and measures only the fraction of principal lost if the lot were sold now.
"""

__all__ = ('Tranche', 'TrancheLedger', 'DistributionAllocation', 'DistributionAllocator',
           'GainSnapshot', 'compute_gains', 'TrancheTracker')

import logging
import math
import warnings
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Callable, DefaultDict, Dict, Iterable, List, Optional, Set, Tuple, Union
import pandas as pd

from .aggregator import IncomeAggregator, IncomeRow
from .config import (BUY, SELL, DIVIDEND, OPEN, PARTIAL, CLOSED,
                     Config, DATE_ID_FORMAT, LONG_TERM_HOLDING_PERIOD)
from .dates import format_date, week_start
from .exceptions import (AmbiguousLotError, LedgerError, LotConflictError, MalformedRowError,
                         OverSellError, UnallocatedDividendWarning, UnknownLotError)
from .normalizer import NormalizationResult, TransactionEvent, normalize_transactions
# pylint: disable=invalid-name,line-too-long

logger = logging.getLogger(__name__)

PriceLookup = Callable[[str], float]


def no_trailing_zeros(f: float, max_digits: Optional[int] = None) -> str:
    """Remove trailing zeros and decimal point from a number.

    Args:
        f (float): The number to format.
        max_digits (Optional[int]): Maximum number of decimal places to display.
            Defaults to None; otherwise overrides Config.SHARE_PRECISION.

    Returns:
        str: The formatted number as a string.
    """
    if max_digits is None:
        max_digits = Config.SHARE_PRECISION
    if max_digits >= 0:
        f = round(f, max_digits)
    return str(f).rstrip('0').rstrip('.') if '.' in str(f) else str(f)


def sequence_letter(n: int) -> str:
    """Letter suffix for the n-th (0-based) lot of a symbol on a date: A..Z, AA, AB, ..."""
    letters = ''
    n += 1
    while n:
        n, rem = divmod(n - 1, 26)
        letters = chr(ord('A') + rem) + letters
    return letters


@dataclass
class Tranche:
    """Tracks one tax lot (tranche) of a symbol.

    A tranche is created by the first Buy carrying its lot id.  Further Buys with the same id add
    to it, Sells reduce it, and dividends add to its cumulative income and ROC.  It is never
    deleted; once all shares are sold it is Closed and never reopens.

    Attributes:
        lot_id (str): Lot identifier, either a manual override or SYMBOL_yymmdd_LETTER.
        symbol (str): The asset ticker symbol.
        acquisition_date (Optional[pd.Timestamp]): Earliest Buy date contributing to the lot.
        shares_bought (float): Total shares bought into the lot.
        cost_basis (float): Sum of shares * price over contributing Buys.
        shares_sold (float): Total shares sold out of the lot.
        last_sale_price (float): Price of the most recent Sell.  NaN until the first Sell.
        cumulative_income (float): Taxable distributions allocated to the lot, in dollars.
        cumulative_roc (float): Return of capital allocated to the lot, in dollars.
        history (List[Tuple[pd.Timestamp, float, float]]): (date, shares delta, cost delta) for every
            Buy and Sell applied, in replay order.  Used to answer as-of-date queries.
    """
    lot_id: str
    symbol: str
    acquisition_date: Optional[pd.Timestamp] = None
    shares_bought: float = .0
    cost_basis: float = .0
    shares_sold: float = .0
    last_sale_price: float = float('nan')
    cumulative_income: float = .0
    cumulative_roc: float = .0
    history: List[Tuple[pd.Timestamp, float, float]] = field(default_factory=list, repr=False)

    @property
    def shares_remaining(self) -> float:
        """Shares bought minus shares sold, with dust below Config.MIN_SHARE_SIZE treated as zero."""
        remaining = self.shares_bought - self.shares_sold
        return .0 if abs(remaining) < Config.MIN_SHARE_SIZE else remaining

    @property
    def status(self) -> str:
        """OPEN, PARTIAL or CLOSED."""
        return self._status(self.shares_bought, self.shares_remaining)

    @property
    def is_open(self) -> bool:
        return self.shares_remaining > 0

    @property
    def average_buy_price(self) -> float:
        return self.cost_basis / self.shares_bought if self.shares_bought else .0

    @staticmethod
    def _status(bought: float, remaining: float) -> str:
        if remaining <= 0:
            return CLOSED
        if remaining < bought - Config.MIN_SHARE_SIZE:
            return PARTIAL
        return OPEN

    #region As-of-date queries
    def shares_bought_asof(self, date: pd.Timestamp) -> float:
        """Shares bought by Buys dated on or before `date`."""
        return sum(delta for d, delta, _ in self.history if d <= date and delta > 0)

    def shares_remaining_asof(self, date: pd.Timestamp) -> float:
        """Shares remaining counting only Buys and Sells dated on or before `date`.

        Args:
            date (pd.Timestamp): The as-of date (inclusive).

        Returns:
            float: Remaining shares at the end of `date`; 0 if the lot did not yet exist.
        """
        remaining = sum(delta for d, delta, _ in self.history if d <= date)
        return .0 if abs(remaining) < Config.MIN_SHARE_SIZE else remaining

    def cost_basis_asof(self, date: pd.Timestamp) -> float:
        """Cost basis of Buys dated on or before `date`."""
        return sum(cost for d, _, cost in self.history if d <= date)

    def status_asof(self, date: pd.Timestamp) -> str:
        """Status of the lot at the end of `date`."""
        return self._status(self.shares_bought_asof(date), self.shares_remaining_asof(date))
    #endregion As-of-date queries

    def __str__(self) -> str:
        """Return a description of the lot."""
        return f'{self.lot_id}: ' + no_trailing_zeros(self.shares_remaining) + \
            f'/{no_trailing_zeros(self.shares_bought)} @ ${self.average_buy_price:.2f} ' + \
            f'({format_date(self.acquisition_date)}) {self.status}' + \
            (f' ROC ${self.cumulative_roc:.2f}' if self.cumulative_roc else '') + \
            (f' Income ${self.cumulative_income:.2f}' if self.cumulative_income else '')


class TrancheLedger:
    """Tranche State Machine: replays Buys and Sells into Tranches.

    Events are applied in ascending (date, source row) order regardless of source order.  Every
    Sell must resolve to exactly one lot: its lot-id override, or else the only open lot of its
    symbol.  The ledger never guesses FIFO across several open lots.

    A LedgerError is fatal for the symbol it concerns: that symbol's lots are dropped from the
    run and the error is kept in `errors`, while other symbols are unaffected.  Set
    Config.STRICT to re-raise instead.

    Attributes:
        lots (Dict[str, Tranche]): All tranches indexed by lot id.
        lots_by_symbol (DefaultDict[str, List[Tranche]]): Tranches per symbol, in creation order.
        lot_ids (Dict[int, str]): Lot id resolved for each Buy/Sell, indexed by source row.
        errors (Dict[str, LedgerError]): The error that stopped each failed symbol's ledger.
    """
    def __init__(self):
        self.lots: Dict[str, Tranche] = {}
        self.lots_by_symbol: DefaultDict[str, List[Tranche]] = defaultdict(list)
        self.lot_ids: Dict[int, str] = {}
        self.errors: Dict[str, LedgerError] = {}
        # Count of derived lot ids per (symbol, yymmdd)
        self._derived_count: DefaultDict[Tuple[str, str], int] = defaultdict(int)

    def replay(self, events: Iterable[TransactionEvent]) -> 'TrancheLedger':
        """Apply all Buy and Sell events in chronological order.  Dividends are ignored.

        Args:
            events (Iterable[TransactionEvent]): Normalized events in any order.

        Returns:
            TrancheLedger: self, for chaining.

        Raises:
            LedgerError: Only when Config.STRICT is set.
        """
        trades = sorted((e for e in events if e.kind in (BUY, SELL)), key=lambda e: e.sort_key)
        for event in trades:
            if event.symbol in self.errors:
                continue
            try:
                if event.kind == BUY:
                    self.buy(event)
                else:
                    self.sell(event)
            except LedgerError as e:
                if Config.STRICT:
                    raise
                self._fail_symbol(e)
        return self

    def _fail_symbol(self, error: LedgerError):
        """Drop every lot of the failing symbol and remember why."""
        logger.error('Dropping ledger for %s: %s', error.symbol, error)
        self.errors[error.symbol] = error
        for lot in self.lots_by_symbol.pop(error.symbol, []):
            del self.lots[lot.lot_id]
        self.lot_ids = {row: lot_id for row, lot_id in self.lot_ids.items() if lot_id in self.lots}

    def derive_lot_id(self, symbol: str, date: pd.Timestamp) -> str:
        """Next unused SYMBOL_yymmdd_LETTER identifier for a Buy without override.

        Args:
            symbol (str): The asset ticker symbol.
            date (pd.Timestamp): The Buy date.

        Returns:
            str: A lot id not yet present in the ledger.
        """
        key = (symbol, date.strftime(DATE_ID_FORMAT))
        while True:
            lot_id = f'{key[0]}_{key[1]}_{sequence_letter(self._derived_count[key])}'
            self._derived_count[key] += 1
            if lot_id not in self.lots:
                return lot_id

    def buy(self, event: TransactionEvent) -> Tranche:
        """Add a Buy to its lot, creating the lot on first use.

        Args:
            event (TransactionEvent): A BUY event.

        Returns:
            Tranche: The lot the shares were added to.

        Raises:
            LotConflictError: If the override names a closed lot or a lot of another symbol.
        """
        lot_id = event.lot_id_override or self.derive_lot_id(event.symbol, event.date)
        lot = self.lots.get(lot_id)
        if lot is None:
            lot = Tranche(lot_id, event.symbol)
            self.lots[lot_id] = lot
            self.lots_by_symbol[event.symbol].append(lot)
        elif lot.symbol != event.symbol:
            raise LotConflictError(f'Lot {lot_id} belongs to {lot.symbol}', event.symbol,
                                   event.row, event.date, lot_id)
        elif lot.status == CLOSED:
            raise LotConflictError(f'Cannot buy into closed lot {lot_id}', event.symbol,
                                   event.row, event.date, lot_id)
        cost = event.shares * (event.price or .0)
        lot.shares_bought += event.shares
        lot.cost_basis += cost
        if lot.acquisition_date is None or event.date < lot.acquisition_date:
            lot.acquisition_date = event.date
        lot.history.append((event.date, event.shares, cost))
        self.lot_ids[event.row] = lot_id
        return lot

    def resolve_sell_lot(self, event: TransactionEvent) -> Tranche:
        """Find the lot a Sell applies to.

        Raises:
            UnknownLotError: If no prior Buy established the lot (or no lot of the symbol is open).
            AmbiguousLotError: If there is no override and more than one lot of the symbol is open.
        """
        if event.lot_id_override:
            lot = self.lots.get(event.lot_id_override)
            if lot is None or lot.symbol != event.symbol:
                raise UnknownLotError(f'Sell references unknown lot {event.lot_id_override}',
                                      event.symbol, event.row, event.date, event.lot_id_override)
            return lot
        open_lots = self.open_lots(event.symbol)
        if not open_lots:
            raise UnknownLotError('Sell without an established open lot', event.symbol, event.row, event.date)
        if len(open_lots) > 1:
            raise AmbiguousLotError('Sell without lot override while lots '
                                    f'{", ".join(lot.lot_id for lot in open_lots)} are open',
                                    event.symbol, event.row, event.date)
        return open_lots[0]

    def sell(self, event: TransactionEvent) -> Tranche:
        """Apply a Sell to its lot.

        Args:
            event (TransactionEvent): A SELL event.

        Returns:
            Tranche: The lot the shares were sold from.

        Raises:
            UnknownLotError: If the lot cannot be resolved.
            OverSellError: If the Sell exceeds the lot's remaining shares.
        """
        lot = self.resolve_sell_lot(event)
        remaining = lot.shares_remaining
        if event.shares > remaining + Config.MIN_SHARE_SIZE:
            raise OverSellError(f'Sell of {no_trailing_zeros(event.shares)} exceeds '
                                f'{no_trailing_zeros(remaining)} remaining in {lot.lot_id}',
                                event.symbol, event.row, event.date, lot.lot_id)
        shares = min(event.shares, remaining)
        lot.shares_sold += shares
        if lot.shares_remaining == 0:
            lot.shares_sold = lot.shares_bought  # Absorb float dust so the lot closes exactly
        lot.last_sale_price = event.price or .0
        lot.history.append((event.date, -shares, .0))
        self.lot_ids[event.row] = lot.lot_id
        return lot

    def open_lots(self, symbol: str, date: Optional[pd.Timestamp] = None) -> List[Tranche]:
        """Lots of `symbol` with shares remaining, now or as of `date`."""
        if date is None:
            return [lot for lot in self.lots_by_symbol.get(symbol, []) if lot.is_open]
        return [lot for lot in self.lots_by_symbol.get(symbol, []) if lot.shares_remaining_asof(date) > 0]

    def get_position(self, symbol: str) -> float:
        """Return the shares currently held in `symbol` across all its lots."""
        return sum(lot.shares_remaining for lot in self.lots_by_symbol.get(symbol, []))

    def validate(self):
        """Run checks that should always be true.

        Raises:
            AssertionError: If the validation checks fail.
        """
        for lot in self.lots.values():
            assert lot.shares_sold <= lot.shares_bought + Config.MIN_SHARE_SIZE, f'Oversold {lot.lot_id}'
            assert lot.shares_remaining >= 0, f'Negative remaining shares in {lot.lot_id}'
            assert math.isclose(sum(delta for _, delta, _ in lot.history),
                                lot.shares_bought - lot.shares_sold, abs_tol=Config.MIN_SHARE_SIZE), \
                f'Share history of {lot.lot_id}'

    #region Properties
    @property
    def tranches(self) -> List[Tranche]:
        """All tranches, ordered by symbol and creation."""
        return [lot for symbol in sorted(self.lots_by_symbol) for lot in self.lots_by_symbol[symbol]]

    @property
    def failed_symbols(self) -> List[str]:
        return sorted(self.errors)

    @property
    def tranches_str(self) -> str:
        """Return a string summarizing all tranches."""
        return '\n'.join([str(lot) for lot in self.tranches] or ['No tranches'])
    #endregion Properties


@dataclass(frozen=True)
class DistributionAllocation:
    """One dividend event's portion allocated to one lot open on the dividend date.

    Attributes:
        week_start (pd.Timestamp): Start of the week containing the dividend date.
        date (pd.Timestamp): Dividend date.
        symbol (str): The asset ticker symbol.
        lot_id (str): Lot receiving the allocation.
        row (int): Source row of the dividend event.
        shares_eligible (float): Lot's remaining shares at the dividend date.
        total_shares (float): Remaining shares of all open lots of the symbol at the dividend date.
        share (float): shares_eligible / total_shares.
        distribution (float): Dividend dollars allocated to the lot.
        taxable (float): Taxable dollars allocated to the lot.
        roc (float): Return-of-capital dollars allocated to the lot.
        cost_basis (float): Lot's cost basis at the dividend date.
        status (str): Lot status at the dividend date.
    """
    week_start: pd.Timestamp
    date: pd.Timestamp
    symbol: str
    lot_id: str
    row: int
    shares_eligible: float
    total_shares: float
    share: float
    distribution: float
    taxable: float
    roc: float
    cost_basis: float
    status: str

    @property
    def distribution_per_share(self) -> float:
        return self.distribution / self.shares_eligible if self.shares_eligible else .0

    @property
    def income_per_share(self) -> float:
        return self.taxable / self.shares_eligible if self.shares_eligible else .0

    @property
    def roc_per_share(self) -> float:
        return self.roc / self.shares_eligible if self.shares_eligible else .0


class DistributionAllocator:
    """Distribution Allocator: splits each dividend pro-rata across the lots open on its date.

    The allocator works on the ledger's tranches by reference and only ever adds to their
    `cumulative_income` and `cumulative_roc`.  It never creates, removes or resizes a lot.

    Allocation is additive, so each dividend event must be allocated exactly once per run.  No
    deduplication of identical rows is attempted: a clean input log is the caller's concern.

    Attributes:
        ledger (TrancheLedger): Source of lot state.
        allocations (List[DistributionAllocation]): Every (dividend, lot) allocation, in processing order.
        event_totals (Dict[int, Dict[str, float]]): Distribution/Taxable/ROC totals allocated per dividend row.
        unallocated (List[TransactionEvent]): Dividends that found no open lots.
        skipped (List[MalformedRowError]): Dividends that could not be interpreted, or whose symbol's
            ledger failed.
    """
    def __init__(self, ledger: TrancheLedger):
        self.ledger = ledger
        self.allocations: List[DistributionAllocation] = []
        self.event_totals: Dict[int, Dict[str, float]] = {}
        self.unallocated: List[TransactionEvent] = []
        self.skipped: List[MalformedRowError] = []
        self._processed: Set[int] = set()

    def run(self, events: Iterable[TransactionEvent]) -> 'DistributionAllocator':
        """Allocate every dividend in (date, row) order; dividends of failed symbols go to `skipped`.

        Args:
            events (Iterable[TransactionEvent]): Normalized events; non-dividends are ignored.

        Returns:
            DistributionAllocator: self, for chaining.
        """
        dividends = sorted((e for e in events if e.kind == DIVIDEND), key=lambda e: e.sort_key)
        for event in dividends:
            if event.symbol in self.ledger.errors:
                error = MalformedRowError(f'{event.symbol} ledger failed, dividend not allocated: '
                                          f'{self.ledger.errors[event.symbol]}', event.row, 'Sym', event.date)
                logger.warning('Skipping dividend: %s', error)
                self.skipped.append(error)
                continue
            try:
                self.allocate(event)
            except MalformedRowError as e:
                logger.warning('Skipping dividend: %s', e)
                self.skipped.append(e)
        return self

    def allocate(self, event: TransactionEvent) -> List[DistributionAllocation]:
        """Allocate one dividend across the lots of its symbol open at its date.

        Args:
            event (TransactionEvent): A DIVIDEND event.

        Returns:
            List[DistributionAllocation]: One allocation per open lot; empty if none were open.

        Raises:
            ValueError: If this event was already allocated.
            MalformedRowError: If the dividend's ROC exceeds its total.
        """
        if event.row in self._processed:
            raise ValueError(f'Dividend on row {event.row} was already allocated')
        date = event.date
        open_lots = [(lot, lot.shares_remaining_asof(date)) for lot in self.ledger.lots_by_symbol.get(event.symbol, [])]
        open_lots = [(lot, remaining) for lot, remaining in open_lots if remaining > 0]
        total_shares = sum(remaining for _, remaining in open_lots)
        if not open_lots:
            self._processed.add(event.row)
            self.unallocated.append(event)
            warnings.warn(f'No open {event.symbol} lots on {format_date(date)} for dividend on row {event.row}',
                          UnallocatedDividendWarning, stacklevel=2)
            return []

        distribution, taxable, roc = self.split_amounts(event, total_shares)
        self._processed.add(event.row)
        wk = week_start(date)
        allocated = []
        for lot, remaining in open_lots:
            share = remaining / total_shares
            lot.cumulative_roc += roc * share
            lot.cumulative_income += taxable * share
            allocated.append(DistributionAllocation(
                wk, date, event.symbol, lot.lot_id, event.row, remaining, total_shares, share,
                distribution * share, taxable * share, roc * share,
                lot.cost_basis_asof(date), lot.status_asof(date)))
        self.allocations.extend(allocated)
        self.event_totals[event.row] = {'Distribution': distribution, 'Taxable': taxable, 'ROC': roc}
        return allocated

    @staticmethod
    def split_amounts(event: TransactionEvent, total_shares: float) -> Tuple[float, float, float]:
        """Return (distribution, taxable, roc) dollars for a dividend.

        Args:
            event (TransactionEvent): A DIVIDEND event.
            total_shares (float): Shares of the symbol open at the dividend date.

        Returns:
            Tuple[float, float, float]: Distribution total, taxable income, and ROC.

        Raises:
            MalformedRowError: If ROC exceeds the distribution total.

        Notes: An explicit taxable figure is authoritative; otherwise taxable = distribution - ROC.
            An explicit ROC amount takes precedence over the ROC percentage.  A dividend given only
            as income per share is grossed up: distribution = IncPS / (1 - RocPct) * total_shares,
            or IncPS * total_shares + ROC when an ROC amount is given.
        """
        if event.dividend_total is not None:
            distribution = event.dividend_total
        elif event.dividend_per_share is not None:
            distribution = event.dividend_per_share * total_shares
        elif event.roc_amount is not None:
            distribution = event.income_per_share * total_shares + event.roc_amount
        else:
            roc_percent = event.roc_percent or .0
            if roc_percent >= 1.0:
                raise MalformedRowError('Cannot gross up income per share at 100% ROC',
                                        event.row, 'RocPct', event.date)
            distribution = event.income_per_share * total_shares / (1.0 - roc_percent)
        if event.roc_amount is not None:
            roc = event.roc_amount
        else:
            roc = (event.roc_percent or .0) * distribution
        if roc > distribution + 1e-9:
            raise MalformedRowError(f'ROC ${roc:.2f} exceeds distribution ${distribution:.2f}',
                                    event.row, 'ROCAmt', event.date)
        taxable = event.taxable_income if event.taxable_income is not None else distribution - roc
        return distribution, taxable, roc

    def validate(self):
        """Run checks that should always be true.

        Raises:
            AssertionError: If the validation checks fail.
        """
        # Each dividend is partitioned across its lots: no leakage, no double count
        by_event: DefaultDict[int, Dict[str, float]] = defaultdict(lambda: {'Distribution': .0, 'Taxable': .0, 'ROC': .0})
        for a in self.allocations:
            by_event[a.row]['Distribution'] += a.distribution
            by_event[a.row]['Taxable'] += a.taxable
            by_event[a.row]['ROC'] += a.roc
        assert set(by_event) == set(self.event_totals), 'Allocated events'
        for row, totals in self.event_totals.items():
            for column, total in totals.items():
                assert math.isclose(by_event[row][column], total, rel_tol=1e-9, abs_tol=1e-9), \
                    f'{column} allocation of dividend on row {row}'
        # Lot accumulators match allocation rows
        lot_income = sum(lot.cumulative_income for lot in self.ledger.lots.values())
        lot_roc = sum(lot.cumulative_roc for lot in self.ledger.lots.values())
        assert math.isclose(lot_income, sum(a.taxable for a in self.allocations), rel_tol=1e-6, abs_tol=1e-6), 'Lot income'
        assert math.isclose(lot_roc, sum(a.roc for a in self.allocations), rel_tol=1e-6, abs_tol=1e-6), 'Lot ROC'

    #region Properties
    @property
    def allocations_df(self) -> pd.DataFrame:
        """Return a DataFrame with one row per dividend per open lot, ordered by week, date and lot.

        Returns:
            pd.DataFrame: Per-dividend-per-lot allocations.
        """
        columns = ['WkStart', 'DistDt', 'Symbol', 'LotID', 'CostBasis', 'DistPS', 'IncPS', 'RocPS',
                   'Distribution', 'Taxable', 'ROC', 'ShElig', 'TotShr', 'Share', 'Status']
        data = [[a.week_start, a.date, a.symbol, a.lot_id, a.cost_basis, a.distribution_per_share,
                 a.income_per_share, a.roc_per_share, a.distribution, a.taxable, a.roc,
                 a.shares_eligible, a.total_shares, a.share, a.status] for a in self.allocations]
        df = pd.DataFrame(data, columns=columns)
        return df.sort_values(['WkStart', 'DistDt', 'LotID'], kind='stable').reset_index(drop=True)

    @property
    def unallocated_df(self) -> pd.DataFrame:
        """Return a DataFrame of dividends that found no open lots."""
        return pd.DataFrame([{'Row': e.row, 'Date': e.date, 'Symbol': e.symbol,
                              'Distribution': e.dividend_total, 'DistPS': e.dividend_per_share,
                              'IncPS': e.income_per_share}
                             for e in self.unallocated],
                            columns=['Row', 'Date', 'Symbol', 'Distribution', 'DistPS', 'IncPS'])
    #endregion Properties


@dataclass(frozen=True)
class GainSnapshot:
    """Basis and gain figures for one lot at report time.

    Attributes:
        current_price (float): Price used for market value (0 when unknown).
        adjusted_basis (float): cost_basis - cumulative_roc.
        consumed_basis_ratio (float): cumulative_roc / cost_basis, or 0 for a zero cost basis.
        excess_roc (float): ROC received beyond the cost basis (taxable as capital gain).
        market_value (float): shares_remaining * current_price.
        unrealized_gain (float): market_value - adjusted_basis.
        realized_gain (Optional[float]): (last_sale_price - average_buy_price) * shares_sold, None if nothing sold.
        percent_to_exit (float): Fraction of adjusted basis lost if sold now, clamped to 0-1.
        held_days (Optional[int]): Whole days since acquisition, None without an acquisition date.
        term (str): 'LT' if held at least LONG_TERM_HOLDING_PERIOD days, else 'ST'.
        exit_readiness (str): 'Closed', 'Ready', 'Near' or 'Hold'.
    """
    current_price: float
    adjusted_basis: float
    consumed_basis_ratio: float
    excess_roc: float
    market_value: float
    unrealized_gain: float
    realized_gain: Optional[float]
    percent_to_exit: float
    held_days: Optional[int]
    term: str
    exit_readiness: str


def compute_gains(lot: Tranche, current_price: float, today: pd.Timestamp) -> GainSnapshot:
    """Basis and gain figures for a lot.  A pure function of the lot, price and date.

    Args:
        lot (Tranche): The lot, after ledger replay and distribution allocation.
        current_price (float): Current market price of the lot's symbol.
        today (pd.Timestamp): Report date for the holding period.

    Returns:
        GainSnapshot: The computed figures.
    """
    current_price = current_price or .0
    remaining = lot.shares_remaining
    adjusted_basis = lot.cost_basis - lot.cumulative_roc
    consumed = lot.cumulative_roc / lot.cost_basis if lot.cost_basis else .0
    market_value = remaining * current_price
    realized = None
    if lot.shares_sold > 0:
        realized = (lot.last_sale_price - lot.average_buy_price) * lot.shares_sold
    # Fraction of principal lost if sold now; ignores cumulative income
    pct_to_exit = max(.0, min(1.0, (adjusted_basis - market_value) / adjusted_basis)) if adjusted_basis > 0 else .0
    held_days = None
    if lot.acquisition_date is not None:
        held_days = (pd.Timestamp(today).normalize() - lot.acquisition_date).days
    term = 'LT' if held_days is not None and held_days >= LONG_TERM_HOLDING_PERIOD else 'ST'
    if lot.status == CLOSED:
        readiness = 'Closed'
    elif market_value >= adjusted_basis:
        readiness = 'Ready'
    elif pct_to_exit <= Config.NEAR_EXIT_PCT:
        readiness = 'Near'
    else:
        readiness = 'Hold'
    return GainSnapshot(current_price, adjusted_basis, consumed, max(.0, lot.cumulative_roc - lot.cost_basis),
                        market_value, market_value - adjusted_basis, realized, pct_to_exit,
                        held_days, term, readiness)


class TrancheTracker:
    """Runs normalize -> replay -> allocate -> aggregate, and reports gains at a given date.

    Attributes:
        normalization (NormalizationResult): Parsed events and skipped rows.
        ledger (TrancheLedger): Tranche state.
        allocator (DistributionAllocator): Dividend allocations.
        aggregator (IncomeAggregator): Weekly and YTD income tables.
        price_lookup (PriceLookup): Symbol -> current price; a miss returns 0.
        today (pd.Timestamp): Report date for holding periods.
    """
    def __init__(self, transactions: Union[pd.DataFrame, NormalizationResult, Iterable[Any]],
                 price_lookup: Optional[PriceLookup] = None,
                 today: Optional[pd.Timestamp] = None,
                 generated_at: Optional[pd.Timestamp] = None):
        """Initialize and run the TrancheTracker.

        Args:
            transactions: Raw rows (DataFrame or mappings keyed by header), a NormalizationResult,
                or an iterable of TransactionEvents.
            price_lookup (Optional[PriceLookup]): Current price per symbol.  Defaults to 0 for all.
            today (Optional[pd.Timestamp]): Report date.  Defaults to the current date.
            generated_at (Optional[pd.Timestamp]): Timestamp stamped on income rows.  Defaults to now.

        Raises:
            MissingColumnError: If raw rows lack a required column.
            LedgerError: Only when Config.STRICT is set.
        """
        self.normalization = self._normalize(transactions)
        self.price_lookup: PriceLookup = price_lookup or (lambda symbol: .0)
        self.today = pd.Timestamp(today).normalize() if today is not None else pd.Timestamp.today().normalize()
        self.ledger = TrancheLedger().replay(self.events)
        self.allocator = DistributionAllocator(self.ledger).run(self.events)
        self.aggregator = IncomeAggregator(generated_at)
        self.aggregator.run(self.allocator.allocations)
        logger.info('Tracked %d tranches from %d events: %d allocations, %d unallocated dividends, '
                    '%d skipped rows, %d failed symbols',
                    len(self.ledger.lots), len(self.events), len(self.allocator.allocations),
                    len(self.allocator.unallocated), self.skipped_count, len(self.ledger.errors))

    @staticmethod
    def _normalize(transactions) -> NormalizationResult:
        if isinstance(transactions, NormalizationResult):
            return transactions
        if isinstance(transactions, pd.DataFrame):
            return normalize_transactions(transactions)
        items = list(transactions)
        if all(isinstance(item, TransactionEvent) for item in items):
            return NormalizationResult(events=items)
        return normalize_transactions(items)

    def validate(self):
        """Run checks that should always be true.

        Raises:
            AssertionError: If the validation checks fail.
        """
        self.ledger.validate()
        self.allocator.validate()
        self.aggregator.validate()
        assert math.isclose(sum(row.distribution for row in self.aggregator.rows),
                            sum(a.distribution for a in self.allocator.allocations), rel_tol=1e-6, abs_tol=1e-6), \
            'Weekly totals match allocations'

    #region Properties
    @property
    def events(self) -> List[TransactionEvent]:
        return self.normalization.events

    @property
    def skipped_count(self) -> int:
        """Rows skipped by the normalizer plus dividends skipped by the allocator."""
        return self.normalization.skipped_count + len(self.allocator.skipped)

    @property
    def skipped_df(self) -> pd.DataFrame:
        """Return a DataFrame of rows dropped by the normalizer or the allocator, in row order."""
        skipped = sorted(self.normalization.skipped + self.allocator.skipped,
                         key=lambda e: -1 if e.row is None else e.row)
        return pd.DataFrame([{'Row': e.row, 'Date': e.date, 'Column': e.column, 'Reason': str(e)}
                             for e in skipped],
                            columns=['Row', 'Date', 'Column', 'Reason'])

    @property
    def tranches(self) -> List[Tranche]:
        return self.ledger.tranches

    @property
    def allocations(self) -> List[DistributionAllocation]:
        return self.allocator.allocations

    @property
    def weekly(self) -> List[IncomeRow]:
        return self.aggregator.rows

    @property
    def snapshot(self) -> List[Tuple[Tranche, GainSnapshot]]:
        """Each tranche with its gain figures at `today`."""
        return [(lot, compute_gains(lot, self.price_lookup(lot.symbol), self.today)) for lot in self.tranches]

    @property
    def snapshot_df(self) -> pd.DataFrame:
        """Return a DataFrame of tranche state, basis and gains, one row per lot.

        Returns:
            pd.DataFrame: Tranche snapshot indexed by LotID.
        """
        data = [{'LotID': lot.lot_id, 'Symbol': lot.symbol, 'BuyDt': lot.acquisition_date,
                 'ShBuy': lot.shares_bought, 'BuyPx': lot.average_buy_price,
                 'ShSold': lot.shares_sold, 'SellPx': lot.last_sale_price, 'ShRem': lot.shares_remaining,
                 'CurrPx': g.current_price, 'CostBasis': lot.cost_basis, 'ROC': lot.cumulative_roc,
                 'AdjBasis': g.adjusted_basis, 'CumIncome': lot.cumulative_income,
                 'MktValue': g.market_value, 'UnrealizedGain': g.unrealized_gain,
                 'RealizedGain': g.realized_gain, 'PctToExit': g.percent_to_exit,
                 'ConsumedBasis': g.consumed_basis_ratio, 'ExcessROC': g.excess_roc,
                 'Status': lot.status, 'HeldDays': g.held_days, 'Term': g.term,
                 'ExitReadiness': g.exit_readiness}
                for lot, g in self.snapshot]
        df = pd.DataFrame(data, columns=list(data[0].keys()) if data else ['LotID'])
        return df.set_index('LotID')

    @property
    def allocations_df(self) -> pd.DataFrame:
        return self.allocator.allocations_df

    @property
    def unallocated_df(self) -> pd.DataFrame:
        return self.allocator.unallocated_df

    @property
    def weekly_df(self) -> pd.DataFrame:
        return self.aggregator.income_df

    @property
    def annotated_df(self) -> pd.DataFrame:
        """Return the transaction log annotated with ledger metrics, in source order.

        Buy/Sell rows carry the resolved lot id, the running share total of the symbol in
        replay order, and the lot's remaining shares and status at the row's date.  Dividend
        rows carry the allocated amounts and per-share figures over the shares open that day.

        Returns:
            pd.DataFrame: One row per normalized event, indexed by source row.
        """
        running: DefaultDict[str, float] = defaultdict(float)
        total_after: Dict[int, float] = {}
        for event in sorted(self.events, key=lambda e: e.sort_key):
            if event.kind in (BUY, SELL) and event.row in self.ledger.lot_ids:
                running[event.symbol] += event.shares if event.kind == BUY else -event.shares
                total_after[event.row] = running[event.symbol]
        eligible = {a.row: a.total_shares for a in self.allocator.allocations}
        data = []
        for event in self.events:
            row: Dict[str, Any] = {'Row': event.row, 'Date': event.date, 'Type': event.kind,
                                   'Symbol': event.symbol, 'WkStart': week_start(event.date)}
            if event.kind in (BUY, SELL):
                lot_id = self.ledger.lot_ids.get(event.row)
                lot = self.ledger.lots.get(lot_id) if lot_id else None
                row.update({'LotID': lot_id,
                            'CostBasis': event.shares * (event.price or .0) if event.kind == BUY else None,
                            'TotShr': total_after.get(event.row),
                            'RemShr': lot.shares_remaining_asof(event.date) if lot else None,
                            'Status': lot.status_asof(event.date) if lot else None})
            elif event.row in self.allocator.event_totals:
                totals = self.allocator.event_totals[event.row]
                shares = eligible[event.row]
                row.update({'TotShr': shares,
                            'Distribution': totals['Distribution'], 'Taxable': totals['Taxable'],
                            'ROC': totals['ROC'],
                            'DistPS': totals['Distribution'] / shares, 'IncPS': totals['Taxable'] / shares,
                            'RocPS': totals['ROC'] / shares})
            data.append(row)
        columns = ['Row', 'Date', 'Type', 'Symbol', 'WkStart', 'LotID', 'CostBasis', 'Distribution',
                   'Taxable', 'ROC', 'DistPS', 'IncPS', 'RocPS', 'TotShr', 'RemShr', 'Status']
        return pd.DataFrame(data, columns=columns).set_index('Row')
    #endregion Properties
