"""Per-symbol reconciliation of allocated distributions against broker and CPA records.

Broker-reported figures (Form 1099 Box 3, "nondividend distributions") and CPA notes are
external inputs.  They are merged around the allocation results here so that differences
between the ROC the ledger allocated and the ROC reported elsewhere are visible per symbol.
"""
from collections import defaultdict
from typing import DefaultDict, Dict, Iterable, List, Optional
import pandas as pd

from .config import DIVIDEND
from .normalizer import TransactionEvent, find_column

ROC_FLAG = 'ROC > TotInc'


def reported_roc(events: Iterable[TransactionEvent]) -> Dict[str, float]:
    """ROC stated in the transaction log per symbol: explicit amounts, or percent * total when both are given."""
    roc: DefaultDict[str, float] = defaultdict(float)
    for event in events:
        if event.kind != DIVIDEND:
            continue
        if event.roc_amount is not None:
            roc[event.symbol] += event.roc_amount
        elif event.roc_percent is not None and event.dividend_total is not None:
            roc[event.symbol] += event.roc_percent * event.dividend_total
    return dict(roc)


def cpa_note_map(cpa_notes: Optional[pd.DataFrame]) -> Dict[str, str]:
    """Join CPA notes per symbol as "date (type): note; ..."."""
    if cpa_notes is None or cpa_notes.empty:
        return {}
    sym = find_column(cpa_notes, ('Sym', 'Symbol'))
    date = find_column(cpa_notes, ('NoteDate', 'Date'))
    kind = find_column(cpa_notes, ('NoteType', 'Type'))
    note = find_column(cpa_notes, ('CPA_Note', 'Note'))
    notes: DefaultDict[str, List[str]] = defaultdict(list)
    for _, r in cpa_notes.iterrows():
        if pd.isna(r[sym]) or not str(r[sym]).strip():
            continue
        notes[str(r[sym]).strip().upper()].append(f'{r[date]} ({r[kind]}): {r[note]}')
    return {s: '; '.join(entries) for s, entries in notes.items()}


def build_reconciliation(allocations_df: pd.DataFrame,
                         events: Iterable[TransactionEvent],
                         broker: Optional[pd.DataFrame] = None,
                         cpa_notes: Optional[pd.DataFrame] = None) -> pd.DataFrame:
    """Return one reconciliation row per symbol seen in any input.

    Args:
        allocations_df (pd.DataFrame): Per-lot allocations (DistributionAllocator.allocations_df).
        events (Iterable[TransactionEvent]): The normalized transaction log.
        broker (Optional[pd.DataFrame]): Broker figures with columns Sym, Box3 and optional Note.
        cpa_notes (Optional[pd.DataFrame]): CPA notes with columns Sym, NoteDate, NoteType, CPA_Note.

    Returns:
        pd.DataFrame: Indexed by Symbol with columns Box3, AllocatedTotInc, AllocatedROC,
            ReportedROC, BasisAdjFlag, BrokerNote, CPA_Note, Summary.
    """
    if len(allocations_df):
        allocated = allocations_df.groupby('Symbol')[['Distribution', 'ROC']].sum()
    else:
        allocated = pd.DataFrame(columns=['Distribution', 'ROC'], dtype=float)
    actual = reported_roc(events)
    box3: Dict[str, object] = {}
    broker_notes: Dict[str, object] = {}
    if broker is not None and not broker.empty:
        sym = find_column(broker, ('Sym', 'Symbol'))
        box3_col = find_column(broker, ('Box3',))
        note_col = next((c for c in broker.columns if str(c).strip().lower() == 'note'), None)
        for _, r in broker.iterrows():
            if pd.isna(r[sym]):
                continue
            key = str(r[sym]).strip().upper()
            box3[key] = r[box3_col]
            if note_col is not None and not pd.isna(r[note_col]):
                broker_notes[key] = r[note_col]
    notes = cpa_note_map(cpa_notes)

    symbols = sorted(set(allocated.index) | set(actual) | set(box3) | set(broker_notes) | set(notes))
    data = []
    for symbol in symbols:
        tot = float(allocated.loc[symbol, 'Distribution']) if symbol in allocated.index else .0
        roc = float(allocated.loc[symbol, 'ROC']) if symbol in allocated.index else .0
        actual_roc = actual.get(symbol, .0)
        b3 = box3.get(symbol, '')
        b_note = broker_notes.get(symbol, 'No broker note')
        c_note = notes.get(symbol, 'No CPA note')
        data.append({'Symbol': symbol, 'Box3': b3, 'AllocatedTotInc': tot, 'AllocatedROC': roc,
                     'ReportedROC': actual_roc, 'BasisAdjFlag': ROC_FLAG if max(roc, actual_roc) > tot + 1e-9 else '',
                     'BrokerNote': b_note, 'CPA_Note': c_note,
                     'Summary': f'{symbol}: Box3={b3}, AllocatedROC={roc:.2f}, ReportedROC={actual_roc:.2f}, '
                                f'{b_note} | {c_note}'})
    columns = ['Symbol', 'Box3', 'AllocatedTotInc', 'AllocatedROC', 'ReportedROC', 'BasisAdjFlag',
               'BrokerNote', 'CPA_Note', 'Summary']
    return pd.DataFrame(data, columns=columns).set_index('Symbol')
