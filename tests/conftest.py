"""Test configuration for pytest"""
import sys
import os
import warnings
import pytest
import pandas as pd

# Add the project root to the Python path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from tranche_tracker import PriceBook, TrancheTracker  # pylint: disable=wrong-import-position

REPORT_DATE = pd.Timestamp('2024-06-30')
GENERATED_AT = pd.Timestamp('2024-07-01 09:30')


@pytest.fixture(scope='session')
def transactions():
    """Fixture to read the transaction log from the tests directory"""
    test_dir = os.path.dirname(__file__)
    path = os.path.join(test_dir, 'Transactions.csv')
    return pd.read_csv(path, dtype=str, keep_default_na=False)

@pytest.fixture(scope='session')
def market_data():
    """Fixture to read current prices from the tests directory"""
    test_dir = os.path.dirname(__file__)
    path = os.path.join(test_dir, 'MarketData.csv')
    return pd.read_csv(path)

@pytest.fixture(scope='session')
def tracker(transactions, market_data):
    """TrancheTracker run over the test transaction log"""
    with warnings.catch_warnings():
        warnings.simplefilter('ignore')
        return TrancheTracker(transactions, PriceBook.from_frame(market_data),
                              today=REPORT_DATE, generated_at=GENERATED_AT)
