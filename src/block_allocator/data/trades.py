import numpy as np
import pandas as pd
from typing import Dict, List, Optional, Union, Any
from dataclasses import dataclass, field, replace
from datetime import date, datetime
import logging

logger = logging.getLogger(__name__)

UNKNOWN_STRATEGY = 'Unknown'

DateLike = Union[str, date, datetime, pd.Timestamp, None]


@dataclass
class Trade:
    """Single closed trade as handed over by the storage collaborator."""
    date_opened: DateLike
    pl: float
    strategy: Optional[str] = None
    time_opened: str = ''
    date_closed: DateLike = None
    time_closed: str = ''
    num_contracts: float = 1.0
    funds_at_close: Optional[float] = None
    margin_req: Optional[float] = None
    opening_commissions_fees: float = 0.0
    closing_commissions_fees: float = 0.0
    extra: Dict[str, Any] = field(default_factory=dict)

    @property
    def strategy_name(self) -> str:
        return self.strategy or UNKNOWN_STRATEGY

    @property
    def date_key(self) -> Optional[str]:
        """ISO calendar date the trade was opened on, or None if unparseable."""
        return to_date_key(self.date_opened)

    @property
    def sort_key(self):
        opened = pd.to_datetime(self.date_opened, errors='coerce')
        ts = opened.value if not pd.isna(opened) else np.iinfo(np.int64).max
        return (ts, self.time_opened or '')

    def scaled(self, factor: float) -> 'Trade':
        """Copy with P&L and commissions scaled by ``factor``."""
        return replace(
            self,
            pl=self.pl * factor,
            opening_commissions_fees=(self.opening_commissions_fees or 0.0) * factor,
            closing_commissions_fees=(self.closing_commissions_fees or 0.0) * factor,
        )


def to_date_key(value: DateLike) -> Optional[str]:
    if value is None:
        return None
    ts = pd.to_datetime(value, errors='coerce')
    if pd.isna(ts):
        return None
    return ts.strftime('%Y-%m-%d')


def sort_trades(trades: List[Trade]) -> List[Trade]:
    """Order by open date, then open time."""
    return sorted(trades, key=lambda t: t.sort_key)


def group_trades_by_strategy(trades: List[Trade]) -> Dict[str, List[Trade]]:
    grouped: Dict[str, List[Trade]] = {}
    for trade in trades:
        grouped.setdefault(trade.strategy_name, []).append(trade)
    return grouped


# Accepted column spellings for DataFrame input
_COLUMN_ALIASES = {
    'date_opened': ['date_opened', 'dateOpened', 'Date Opened'],
    'time_opened': ['time_opened', 'timeOpened', 'Time Opened'],
    'date_closed': ['date_closed', 'dateClosed', 'Date Closed'],
    'time_closed': ['time_closed', 'timeClosed', 'Time Closed'],
    'pl': ['pl', 'P/L', 'pnl'],
    'strategy': ['strategy', 'Strategy'],
    'num_contracts': ['num_contracts', 'numContracts', 'No. of Contracts'],
    'funds_at_close': ['funds_at_close', 'fundsAtClose', 'Funds at Close'],
    'margin_req': ['margin_req', 'marginReq', 'Margin Req.'],
    'opening_commissions_fees': ['opening_commissions_fees', 'openingCommissionsFees',
                                 'Opening Commissions + Fees'],
    'closing_commissions_fees': ['closing_commissions_fees', 'closingCommissionsFees',
                                 'Closing Commissions + Fees'],
}


def _optional_float(value) -> Optional[float]:
    if value is None or (isinstance(value, float) and np.isnan(value)):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def trades_from_frame(df: pd.DataFrame) -> List[Trade]:
    """
    Build trade records from a DataFrame.

    Args:
        df: One row per trade. Column names may use snake_case, camelCase
            or the broker export headers listed in ``_COLUMN_ALIASES``.

    Returns:
        List of Trade objects in row order.
    """
    if df is None or df.empty:
        return []

    columns = {}
    for name, aliases in _COLUMN_ALIASES.items():
        for alias in aliases:
            if alias in df.columns:
                columns[name] = alias
                break

    missing = [name for name in ('date_opened', 'pl') if name not in columns]
    if missing:
        raise ValueError(f"Trade frame is missing required columns: {missing}")

    trades = []
    for _, row in df.iterrows():
        strategy = row[columns['strategy']] if 'strategy' in columns else None
        if isinstance(strategy, float) and np.isnan(strategy):
            strategy = None
        contracts = _optional_float(row[columns['num_contracts']]) if 'num_contracts' in columns else None
        trades.append(Trade(
            date_opened=row[columns['date_opened']],
            pl=float(row[columns['pl']]),
            strategy=strategy,
            time_opened=str(row[columns['time_opened']]) if 'time_opened' in columns else '',
            date_closed=row[columns['date_closed']] if 'date_closed' in columns else None,
            time_closed=str(row[columns['time_closed']]) if 'time_closed' in columns else '',
            num_contracts=contracts if contracts is not None else 1.0,
            funds_at_close=_optional_float(row[columns['funds_at_close']]) if 'funds_at_close' in columns else None,
            margin_req=_optional_float(row[columns['margin_req']]) if 'margin_req' in columns else None,
            opening_commissions_fees=_optional_float(
                row[columns['opening_commissions_fees']]) or 0.0 if 'opening_commissions_fees' in columns else 0.0,
            closing_commissions_fees=_optional_float(
                row[columns['closing_commissions_fees']]) or 0.0 if 'closing_commissions_fees' in columns else 0.0,
        ))

    logger.debug(f"Loaded {len(trades)} trades from frame")
    return trades


def trades_to_frame(trades: List[Trade]) -> pd.DataFrame:
    return pd.DataFrame([{
        'date_opened': t.date_opened,
        'time_opened': t.time_opened,
        'date_closed': t.date_closed,
        'time_closed': t.time_closed,
        'strategy': t.strategy_name,
        'pl': t.pl,
        'num_contracts': t.num_contracts,
        'funds_at_close': t.funds_at_close,
        'margin_req': t.margin_req,
        'opening_commissions_fees': t.opening_commissions_fees,
        'closing_commissions_fees': t.closing_commissions_fees,
    } for t in trades])
