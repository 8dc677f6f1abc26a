"""Date helpers."""
from typing import Optional
import pandas as pd

from .config import Config


def week_start(date: pd.Timestamp, anchor: Optional[int] = None) -> pd.Timestamp:
    """Return the start of the week containing `date`.

    Args:
        date (pd.Timestamp): Any date.
        anchor (Optional[int]): Weekday that starts the week (0 = Monday).  Defaults to Config.WEEK_ANCHOR.

    Returns:
        pd.Timestamp: The most recent `anchor` weekday on or before `date`, at midnight.
    """
    if anchor is None:
        anchor = Config.WEEK_ANCHOR
    date = pd.Timestamp(date).normalize()
    return date - pd.Timedelta(days=(date.weekday() - anchor) % 7)


def format_date(date: Optional[pd.Timestamp]) -> str:
    """Format as yyyy-mm-dd, or '' for a missing date."""
    if date is None or pd.isna(date):
        return ''
    return date.strftime('%Y-%m-%d')
