"""TrancheTracker package.

Provides modules for rebuilding tax-lot (tranche) state from a transaction log, allocating
dividend income and return of capital across open lots, and summarizing weekly and YTD income.
"""
from .aggregator import IncomeAggregator, IncomeRow, WeekKey, WeeklyAggregate
from .config import Config
from .exceptions import (AmbiguousLotError, LedgerError, LotConflictError, MalformedRowError,
                         MissingColumnError, MissingPriceWarning, OverSellError, TrancheTrackerError,
                         UnallocatedDividendWarning, UnknownLotError)
from .normalizer import NormalizationResult, TransactionEvent, normalize_transactions
from .prices import PriceBook
from .reconcile import build_reconciliation
from .tranche_tracker import (DistributionAllocation, DistributionAllocator, GainSnapshot, Tranche,
                              TrancheLedger, TrancheTracker, compute_gains)

__all__ = ('Config', 'TransactionEvent', 'NormalizationResult', 'normalize_transactions',
           'Tranche', 'TrancheLedger', 'DistributionAllocation', 'DistributionAllocator',
           'GainSnapshot', 'compute_gains', 'IncomeAggregator', 'IncomeRow', 'WeekKey', 'WeeklyAggregate',
           'PriceBook', 'build_reconciliation', 'TrancheTracker',
           'TrancheTrackerError', 'MissingColumnError', 'MalformedRowError', 'LedgerError',
           'UnknownLotError', 'AmbiguousLotError', 'OverSellError', 'LotConflictError',
           'UnallocatedDividendWarning', 'MissingPriceWarning')
__version__ = '0.1.0'
