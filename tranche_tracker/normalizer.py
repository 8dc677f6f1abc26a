"""Transaction Normalizer: turns raw transaction rows into typed TransactionEvents.

Headers are matched case-insensitively against known synonyms (e.g. "Sym" / "Symbol",
"TrID" / "TrancheID").  A missing required column aborts with MissingColumnError before
any row is read.  Rows that cannot be interpreted are skipped, logged, and returned in
NormalizationResult.skipped so that callers can surface the count.

Source order is preserved: chronological ordering is applied downstream by explicit
(date, row) comparison.
"""
import logging
import math
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union
import pandas as pd

from .config import BUY, SELL, DIVIDEND
from .exceptions import MalformedRowError, MissingColumnError

logger = logging.getLogger(__name__)

# Canonical field -> accepted headers, in priority order.  The first entry is the preferred name.
COLUMN_SYNONYMS: Dict[str, Tuple[str, ...]] = {
    'kind': ('Type', 'Kind', 'Event', 'Action'),
    'date': ('Date', 'TradeDate', 'DistDt', 'DivDt'),
    'symbol': ('Sym', 'Symbol', 'Ticker'),
    'shares': ('Shr', 'Shares', 'Qty', 'Quantity'),
    'price': ('Price', 'Px'),
    'dividend_total': ('Dist', 'Distribution', 'DivTotal', 'TotInc'),
    'dividend_per_share': ('DistPS', 'DivPS', 'DividendPerShare'),
    'income_per_share': ('IncPS', 'IncomePerShare'),
    'roc_percent': ('RocPct', 'ROCPercent', 'ROC%'),
    'roc_amount': ('ROCAmt', 'RocAmount'),
    'taxable_income': ('Inc', 'TaxInc', 'TaxableIncome'),
    'lot_id_override': ('TIDOverride', 'TrID', 'TrancheID', 'LotID'),
}
REQUIRED_COLUMNS = ('kind', 'date', 'symbol', 'shares', 'price')
# At least one of these must be present
DIVIDEND_AMOUNT_COLUMNS = ('dividend_total', 'dividend_per_share', 'income_per_share')

KIND_ALIASES = {
    'buy': BUY, 'purchase': BUY, 'bought': BUY,
    'sell': SELL, 'sale': SELL, 'sold': SELL,
    'dividend': DIVIDEND, 'div': DIVIDEND, 'distribution': DIVIDEND,
}

_NUMERIC_NOISE = re.compile(r'[\s$€£¥,]')


@dataclass(frozen=True)
class TransactionEvent:
    """A normalized buy, sell, or dividend record.

    Attributes:
        kind (str): BUY, SELL or DIVIDEND.
        date (pd.Timestamp): Calendar date of the event (time component removed).
        symbol (str): Upper-case ticker symbol.
        row (int): 0-based position of the row in the source, used for tie-breaks and messages.
        shares (Optional[float]): Shares bought or sold (always positive).
        price (Optional[float]): Price per share of a buy or sell.
        dividend_total (Optional[float]): Total dividend received on all shares of the symbol.
        dividend_per_share (Optional[float]): Dividend per share, used when no total is given.
        income_per_share (Optional[float]): Taxable income per share, grossed up by roc_percent when
            neither a total nor a dividend per share is given.
        roc_percent (Optional[float]): Return-of-capital fraction (0-1) of the dividend.
        roc_amount (Optional[float]): Return-of-capital dollars; takes precedence over roc_percent.
        taxable_income (Optional[float]): Taxable dollars, authoritative when supplied.
        lot_id_override (Optional[str]): Manually assigned lot identifier for a buy or sell.
    """
    kind: str
    date: pd.Timestamp
    symbol: str
    row: int
    shares: Optional[float] = None
    price: Optional[float] = None
    dividend_total: Optional[float] = None
    dividend_per_share: Optional[float] = None
    income_per_share: Optional[float] = None
    roc_percent: Optional[float] = None
    roc_amount: Optional[float] = None
    taxable_income: Optional[float] = None
    lot_id_override: Optional[str] = None

    @property
    def sort_key(self) -> Tuple[pd.Timestamp, int]:
        """Chronological processing order: date, then source row."""
        return (self.date, self.row)

    def __str__(self) -> str:
        desc = f'{self.date.strftime("%Y-%m-%d")} {self.kind} {self.symbol}'
        if self.kind == DIVIDEND:
            if self.dividend_total is not None:
                return desc + f' ${self.dividend_total:.2f}'
            if self.dividend_per_share is not None:
                return desc + f' ${self.dividend_per_share:.4f}/sh'
            return desc + f' ${self.income_per_share:.4f}/sh income'
        return desc + f' {self.shares:g} @ ${(self.price or .0):.2f}'


@dataclass
class NormalizationResult:
    """Events parsed from the source plus the rows that were skipped."""
    events: List[TransactionEvent] = field(default_factory=list)
    skipped: List[MalformedRowError] = field(default_factory=list)

    @property
    def skipped_count(self) -> int:
        return len(self.skipped)


#region Header resolution
def resolve_columns(headers: Sequence[Any]) -> Dict[str, int]:
    """Map canonical field names to column positions.

    Args:
        headers (Sequence[Any]): The header row.

    Returns:
        Dict[str, int]: Canonical field -> position of the first matching header.

    Raises:
        MissingColumnError: If a required column, or every dividend amount column, is absent.
    """
    folded = [str(h if h is not None else '').strip().lower() for h in headers]
    found: Dict[str, int] = {}
    for canonical, options in COLUMN_SYNONYMS.items():
        for option in options:
            if option.lower() in folded:
                found[canonical] = folded.index(option.lower())
                break
    shown = [str(h).strip() for h in headers]
    for canonical in REQUIRED_COLUMNS:
        if canonical not in found:
            raise MissingColumnError(COLUMN_SYNONYMS[canonical][0], shown)
    if not any(c in found for c in DIVIDEND_AMOUNT_COLUMNS):
        raise MissingColumnError(' or '.join(COLUMN_SYNONYMS[c][0] for c in DIVIDEND_AMOUNT_COLUMNS), shown)
    return found


def find_column(frame: pd.DataFrame, options: Sequence[str]) -> Any:
    """Return the first column of `frame` matching one of `options`, ignoring case.

    Raises:
        MissingColumnError: If none matches.
    """
    folded = {str(c).strip().lower(): c for c in frame.columns}
    for option in options:
        if option.lower() in folded:
            return folded[option.lower()]
    raise MissingColumnError(options[0], [str(c) for c in frame.columns])
#endregion Header resolution


#region Field parsers
def _is_blank(value: Any) -> bool:
    if isinstance(value, str):
        return not value.strip()
    try:
        return bool(pd.isna(value))
    except (TypeError, ValueError):  # Array-likes
        return False


def parse_number(value: Any, column: str, row: int) -> Optional[float]:
    """Parse a numeric cell, tolerating currency symbols, thousands separators and (negatives).

    Returns:
        Optional[float]: The value, or None if the cell is blank.

    Raises:
        MalformedRowError: If the cell is not blank and cannot be parsed.
    """
    if _is_blank(value):
        return None
    if isinstance(value, bool):
        raise MalformedRowError(f'Not a number: {value!r}', row, column)
    if isinstance(value, (int, float)):
        return float(value)
    text = _NUMERIC_NOISE.sub('', str(value))
    negative = text.startswith('(') and text.endswith(')')
    if negative:
        text = text[1:-1]
    try:
        number = float(text)
    except ValueError as e:
        raise MalformedRowError(f'Not a number: {value!r}', row, column) from e
    if math.isnan(number) or math.isinf(number):
        raise MalformedRowError(f'Not a number: {value!r}', row, column)
    return -number if negative else number


def parse_percent(value: Any, column: str, row: int) -> Optional[float]:
    """Parse a fraction given either as 0.4 or as "40%"."""
    if isinstance(value, str) and value.strip().endswith('%'):
        number = parse_number(value.strip()[:-1], column, row)
        return None if number is None else number / 100.0
    return parse_number(value, column, row)


def parse_date(value: Any) -> Optional[pd.Timestamp]:
    """Parse a cell into a midnight pd.Timestamp, or None if it is not a date."""
    if _is_blank(value):
        return None
    try:
        date = pd.to_datetime(value, errors='coerce')
    except (TypeError, ValueError):
        return None
    if date is None or pd.isna(date) or not isinstance(date, pd.Timestamp):
        return None
    if date.tzinfo is not None:
        date = date.tz_localize(None)
    return date.normalize()
#endregion Field parsers


def _normalize_row(values: Sequence[Any], columns: Dict[str, int], row: int) -> TransactionEvent:
    """Build one TransactionEvent from a raw row.

    Raises:
        MalformedRowError: If the row cannot be interpreted.
    """
    def cell(canonical: str) -> Any:
        return values[columns[canonical]] if canonical in columns else None

    def number(canonical: str) -> Optional[float]:
        return parse_number(cell(canonical), COLUMN_SYNONYMS[canonical][0], row)

    date = parse_date(cell('date'))
    if date is None:
        raise MalformedRowError(f'Unparsable date {cell("date")!r}', row, 'Date')
    raw_kind = '' if _is_blank(cell('kind')) else str(cell('kind')).strip().lower()
    kind = KIND_ALIASES.get(raw_kind)
    if kind is None:
        raise MalformedRowError(f'Unknown event type {cell("kind")!r}', row, 'Type', date)
    symbol = '' if _is_blank(cell('symbol')) else str(cell('symbol')).strip().upper()
    if not symbol:
        raise MalformedRowError('Missing symbol', row, 'Sym', date)

    if kind in (BUY, SELL):
        shares = number('shares')
        price = number('price')
        if shares is None or shares == 0:
            raise MalformedRowError(f'{kind} without shares', row, 'Shr', date)
        if shares < 0:
            if kind == BUY:
                raise MalformedRowError(f'Negative shares {shares:g}', row, 'Shr', date)
            shares = -shares  # Brokers commonly report sells as negative quantities
        if price is not None and price < 0:
            raise MalformedRowError(f'Negative price {price:g}', row, 'Price', date)
        override = cell('lot_id_override')
        override = None if _is_blank(override) else str(override).strip()
        return TransactionEvent(kind, date, symbol, row, shares=shares, price=price or .0,
                                lot_id_override=override)

    dividend_total = number('dividend_total')
    dividend_per_share = number('dividend_per_share')
    roc_percent = parse_percent(cell('roc_percent'), COLUMN_SYNONYMS['roc_percent'][0], row)
    roc_amount = number('roc_amount')
    taxable_income = number('taxable_income')
    income_per_share = number('income_per_share')
    if dividend_total is None and dividend_per_share is None and income_per_share is None:
        raise MalformedRowError('Dividend without amount', row, 'Dist', date)
    for canonical, value in (('dividend_total', dividend_total), ('dividend_per_share', dividend_per_share),
                             ('income_per_share', income_per_share),
                             ('roc_amount', roc_amount), ('taxable_income', taxable_income)):
        if value is not None and value < 0:
            raise MalformedRowError(f'Negative amount {value:g}', row, COLUMN_SYNONYMS[canonical][0], date)
    if roc_percent is not None and not 0.0 <= roc_percent <= 1.0:
        raise MalformedRowError(f'ROC percent {roc_percent:g} outside 0-1', row, 'RocPct', date)
    if dividend_total is None and dividend_per_share is None and roc_amount is None \
            and roc_percent is not None and roc_percent >= 1.0:
        # IncPS / (1 - RocPct) has no value at 100% ROC
        raise MalformedRowError('Cannot gross up income per share at 100% ROC', row, 'RocPct', date)
    if dividend_total is not None and roc_amount is not None and roc_amount > dividend_total + 1e-9:
        raise MalformedRowError(f'ROC ${roc_amount:.2f} exceeds distribution ${dividend_total:.2f}',
                                row, 'ROCAmt', date)
    return TransactionEvent(kind, date, symbol, row,
                            dividend_total=dividend_total, dividend_per_share=dividend_per_share,
                            income_per_share=income_per_share, roc_percent=roc_percent, roc_amount=roc_amount, taxable_income=taxable_income)


def normalize_transactions(rows: Union[pd.DataFrame, Iterable[Mapping[str, Any]]]) -> NormalizationResult:
    """Parse raw transaction rows into TransactionEvents, in source order.

    Args:
        rows: A DataFrame whose columns are the transaction headers, or an iterable of
            mappings keyed by header.

    Returns:
        NormalizationResult: The parsed events and the skipped rows.

    Raises:
        MissingColumnError: If a required column is absent.  No rows are parsed in that case.
    """
    frame = rows if isinstance(rows, pd.DataFrame) else pd.DataFrame(list(rows))
    columns = resolve_columns(list(frame.columns))
    result = NormalizationResult()
    for position, values in enumerate(frame.itertuples(index=False, name=None)):
        try:
            result.events.append(_normalize_row(values, columns, position))
        except MalformedRowError as e:
            logger.warning('Skipping transaction: %s', e)
            result.skipped.append(e)
    if result.skipped:
        logger.info('Normalized %d transactions; skipped %d malformed rows',
                    len(result.events), result.skipped_count)
    return result
