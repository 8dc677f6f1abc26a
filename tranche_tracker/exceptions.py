"""Exceptions and warnings raised while building tranche state."""
from typing import Iterable, Optional
import pandas as pd


def _describe(row: Optional[int], date: Optional[pd.Timestamp]) -> str:
    parts = []
    if row is not None:
        parts.append(f'row {row}')
    if date is not None and not pd.isna(date):
        parts.append(date.strftime('%Y-%m-%d'))
    return f' ({", ".join(parts)})' if parts else ''


class TrancheTrackerError(Exception):
    """Base class for errors raised by tranche_tracker."""


class MissingColumnError(TrancheTrackerError):
    """A required column is absent from the transaction headers.  Aborts the run."""

    def __init__(self, column: str, found: Iterable[str]):
        self.column = column
        self.found = list(found)
        super().__init__(f'Missing Transactions header "{column}". Found: [{", ".join(map(str, self.found))}]')


class MalformedRowError(TrancheTrackerError, ValueError):
    """A row cannot be interpreted.  The row is skipped and the run continues."""

    def __init__(self, message: str, row: Optional[int] = None, column: Optional[str] = None,
                 date: Optional[pd.Timestamp] = None):
        self.row = row
        self.column = column
        self.date = date
        where = _describe(row, date)
        col = f' [{column}]' if column else ''
        super().__init__(f'{message}{col}{where}')


class LedgerError(TrancheTrackerError, ValueError):
    """A buy or sell cannot be applied to the lot table.  Fatal for the symbol's ledger."""

    def __init__(self, message: str, symbol: str, row: Optional[int] = None,
                 date: Optional[pd.Timestamp] = None, lot_id: Optional[str] = None):
        self.symbol = symbol
        self.row = row
        self.date = date
        self.lot_id = lot_id
        super().__init__(f'{symbol}: {message}{_describe(row, date)}')


class UnknownLotError(LedgerError):
    """A Sell references a lot that no prior Buy established."""


class AmbiguousLotError(UnknownLotError):
    """A Sell without lot override while several lots of the symbol are open."""


class OverSellError(LedgerError):
    """A Sell for more shares than remain in the lot."""


class LotConflictError(LedgerError):
    """A Buy that cannot extend the referenced lot (closed, or another symbol)."""


class UnallocatedDividendWarning(UserWarning):
    """A dividend found no open lots on its date and was not allocated."""


class MissingPriceWarning(UserWarning):
    """No current price is known for a symbol; 0 is used."""
