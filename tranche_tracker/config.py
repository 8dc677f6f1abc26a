"""Settings and constants shared by the tranche_tracker modules."""
# pylint: disable=invalid-name

LONG_TERM_HOLDING_PERIOD = 366  # Minimum number of holding days for a lot to be long-term
DATE_ID_FORMAT = '%y%m%d'  # Date part of derived lot identifiers, e.g. ABC_240101_A

# Event kinds
BUY = 'Buy'
SELL = 'Sell'
DIVIDEND = 'Dividend'

# Tranche status
OPEN = 'Open'
PARTIAL = 'Partial'
CLOSED = 'Closed'


class Config:
    """Settings for tranche_tracker.

    Attributes:
        SHARE_PRECISION (int): Maximum number of decimal places to use for shares; -1 for no limit.
        MIN_SHARE_SIZE (float): Share counts smaller than this are treated as zero.
        WEEK_ANCHOR (int): Weekday on which weeks start (0 = Monday ... 6 = Sunday).
        NEAR_EXIT_PCT (float): A lot with percent-to-exit at or below this is classified "Near".
        STRICT (bool): Re-raise ledger errors instead of dropping the failing symbol.
    """
    SHARE_PRECISION = 4
    MIN_SHARE_SIZE = 0.0001
    WEEK_ANCHOR = 0
    NEAR_EXIT_PCT = 0.05
    STRICT = False
