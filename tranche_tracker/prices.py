"""Current market prices by symbol."""
import logging
import warnings
from typing import Dict, Mapping, Optional, Set, Union
import pandas as pd

from .exceptions import MissingPriceWarning
from .normalizer import find_column

logger = logging.getLogger(__name__)

SYMBOL_COLUMNS = ('Sym', 'Symbol', 'Ticker')
PRICE_COLUMNS = ('CurrPx', 'CurrentPrice', 'Price', 'Px')


class PriceBook:
    """Symbol -> current price lookup.

    A PriceBook is callable, so it can be passed wherever a price lookup function is expected.
    A symbol without a price returns 0, with a MissingPriceWarning issued once per symbol.

    Attributes:
        prices (Dict[str, float]): Current price by symbol.
        updated_at (Dict[str, pd.Timestamp]): When each symbol's price last changed.
        warned_no_price (Set[str]): Symbols we have warned are missing a price.
    """
    def __init__(self, prices: Optional[Mapping[str, float]] = None, at: Optional[pd.Timestamp] = None):
        self.prices: Dict[str, float] = {}
        self.updated_at: Dict[str, pd.Timestamp] = {}
        self.warned_no_price: Set[str] = set()
        for symbol, price in (prices or {}).items():
            self.update(symbol, price, at)

    @classmethod
    def from_frame(cls, frame: pd.DataFrame, at: Optional[pd.Timestamp] = None) -> 'PriceBook':
        """Build from a table with symbol and price columns (e.g. Sym, CurrPx).

        Raises:
            MissingColumnError: If no symbol or price column is found.
        """
        symbol_col = find_column(frame, SYMBOL_COLUMNS)
        price_col = find_column(frame, PRICE_COLUMNS)
        book = cls()
        for symbol, price in zip(frame[symbol_col], frame[price_col]):
            if pd.isna(symbol) or not str(symbol).strip():
                continue
            price = pd.to_numeric(price, errors='coerce')
            if pd.isna(price):
                logger.warning('Ignoring unparsable price for %s', symbol)
                continue
            book.update(str(symbol), float(price), at)
        return book

    def update(self, symbol: str, price: Union[float, int], at: Optional[pd.Timestamp] = None) -> bool:
        """Set a symbol's price, stamping `at` only when the price actually changed.

        Args:
            symbol (str): The asset ticker symbol.
            price (float): The new price.
            at (Optional[pd.Timestamp]): Time of the update.  Defaults to now.

        Returns:
            bool: True if the price changed.
        """
        symbol = symbol.strip().upper()
        price = float(price)
        if self.prices.get(symbol) == price:
            return False
        self.prices[symbol] = price
        self.updated_at[symbol] = pd.Timestamp(at) if at is not None else pd.Timestamp.now()
        return True

    def get(self, symbol: str) -> float:
        """Return the current price of `symbol`, or 0 if unknown."""
        symbol = symbol.strip().upper()
        if symbol not in self.prices:
            if symbol not in self.warned_no_price:
                self.warned_no_price.add(symbol)
                warnings.warn(f'No price data for {symbol}', MissingPriceWarning, stacklevel=2)
            return .0
        return self.prices[symbol]

    __call__ = get

    @property
    def prices_df(self) -> pd.DataFrame:
        """Return a DataFrame of prices and last-update times, indexed by symbol."""
        return pd.DataFrame({'CurrPx': pd.Series(self.prices, dtype=float),
                             'LastUpdate': pd.Series(self.updated_at, dtype='datetime64[ns]')})
