"""Command line entry point: tranche-tracker TRANSACTIONS.csv [--prices PRICES.csv] [--out DIR]."""
import argparse
import logging
import sys
import warnings
from pathlib import Path
from typing import List, Optional
import pandas as pd

from .config import Config
from .exceptions import MissingColumnError, TrancheTrackerError
from .prices import PriceBook
from .reconcile import build_reconciliation
from .tranche_tracker import TrancheTracker

logger = logging.getLogger(__name__)


def create_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='tranche-tracker',
        description='Rebuild tranche state from a transaction log, allocate distributions, '
                    'and report weekly and year-to-date income.')
    parser.add_argument('transactions', type=Path, help='CSV of buy/sell/dividend transactions')
    parser.add_argument('--prices', type=Path, help='CSV of current prices (Sym, CurrPx)')
    parser.add_argument('--broker', type=Path, help='CSV of broker-reported figures (Sym, Box3, Note)')
    parser.add_argument('--cpa-notes', type=Path, help='CSV of CPA notes (Sym, NoteDate, NoteType, CPA_Note)')
    parser.add_argument('--out', type=Path, help='Directory to write CSV reports to')
    parser.add_argument('--today', type=pd.Timestamp, help='Report date (YYYY-MM-DD); defaults to today')
    parser.add_argument('--strict', action='store_true', help='Abort on the first ledger error')
    parser.add_argument('-v', '--verbose', action='store_true', help='Enable debug logging')
    return parser


def write_reports(tracker: TrancheTracker, out: Path, broker: Optional[pd.DataFrame] = None,
                  cpa_notes: Optional[pd.DataFrame] = None) -> List[Path]:
    """Write every report view of `tracker` as CSV files under `out`.

    Returns:
        List[Path]: The files written.
    """
    out.mkdir(parents=True, exist_ok=True)
    reports = {
        'TrancheState.csv': tracker.snapshot_df,
        'TrancheTracker.csv': tracker.allocations_df,
        'IncomeTracker.csv': tracker.weekly_df,
        'Transactions.csv': tracker.annotated_df,
        'Unallocated.csv': tracker.unallocated_df,
        'Skipped.csv': tracker.skipped_df,
        'CpaSummary.csv': build_reconciliation(tracker.allocations_df, tracker.events, broker, cpa_notes),
    }
    written = []
    for name, df in reports.items():
        path = out / name
        df.to_csv(path, float_format='%.6f')
        written.append(path)
    return written


def main(argv: Optional[List[str]] = None) -> int:
    """Run the pipeline from the command line.  Returns the process exit code."""
    args = create_parser().parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO,
                        format='%(levelname)s %(name)s: %(message)s')
    warnings.simplefilter('default')
    strict = Config.STRICT
    Config.STRICT = strict or args.strict
    try:
        transactions = pd.read_csv(args.transactions, dtype=str, keep_default_na=False)
        prices = PriceBook.from_frame(pd.read_csv(args.prices)) if args.prices else PriceBook()
        tracker = TrancheTracker(transactions, prices, today=args.today)
    except MissingColumnError as e:
        logger.error('%s', e)
        return 2
    except TrancheTrackerError as e:
        if args.verbose:
            logger.exception('Exception:')
        else:
            logger.error('%s', e)
        return 1
    finally:
        Config.STRICT = strict

    for symbol, error in tracker.ledger.errors.items():
        logger.error('Symbol %s excluded: %s', symbol, error)
    if tracker.skipped_count:
        logger.warning('%d rows skipped', tracker.skipped_count)

    if args.out:
        broker = pd.read_csv(args.broker) if args.broker else None
        cpa_notes = pd.read_csv(args.cpa_notes) if args.cpa_notes else None
        for path in write_reports(tracker, args.out, broker, cpa_notes):
            logger.info('Wrote %s', path)
    else:
        print(tracker.ledger.tranches_str)
        weekly = tracker.weekly_df
        if len(weekly):
            print(weekly[['WkStart', 'Symbol', 'WkInc', 'TaxInc', 'ROCamt', 'YTDsym', 'YTDinc']].to_string(index=False))
    return 1 if tracker.ledger.errors else 0


if __name__ == '__main__':
    sys.exit(main())
