#performance_analyzer.py

import time
from typing import Any, Dict, List, Optional

import numpy as np
import pandas as pd

from config.logging_config import get_logger
from trade_ledger import Ledger


class PerformanceAnalyzer:
    """
    Aggregates execution records (``ExecutionResult.to_dict()`` rows) into KPIs.
    Everything here is derived from the records alone, so a session summary can
    be rebuilt by replaying the executions ledger.
    """

    def __init__(self, execution_records: Optional[List[Dict[str, Any]]] = None):
        self.logger = get_logger(__name__)
        self.executions_df = self._to_frame(execution_records or [])

    @classmethod
    def from_ledger(cls, ledger: Ledger, since: Optional[float] = None) -> "PerformanceAnalyzer":
        record_filter = None
        if since is not None:
            record_filter = lambda r: float(r.get('executed_at', 0)) >= since  # noqa: E731
        return cls(ledger.query(record_filter))

    @staticmethod
    def _to_frame(records: List[Dict[str, Any]]) -> pd.DataFrame:
        if not records:
            return pd.DataFrame(columns=['executed_at', 'success', 'actual_profit_amount', 'requires_reconciliation',
                                         'execution_mode', 'failure_reason', 'pair'])
        df = pd.DataFrame([{
            'executed_at': r.get('executed_at'),
            'success': bool(r.get('success')),
            'actual_profit_amount': float(r.get('actual_profit_amount') or 0.0),
            'requires_reconciliation': bool(r.get('requires_reconciliation')),
            'execution_mode': r.get('execution_mode'),
            'failure_reason': r.get('failure_reason'),
            'pair': (r.get('opportunity') or {}).get('pair'),
        } for r in records])
        return df.sort_values(by='executed_at').reset_index(drop=True)

    def calculate_kpis(self) -> Dict[str, Any]:
        df = self.executions_df
        total = len(df)
        successful = df[df['success']] if total else df
        num_successful = len(successful)

        kpis = {
            'total_executions': total,
            'successful_executions': num_successful,
            'failed_executions': total - num_successful,
            'win_rate_percent': (num_successful / total * 100.0) if total else 0.0,
            'net_profit': 0.0,
            'average_profit': 0.0,
            'profit_factor': 0.0,
            'max_drawdown': 0.0,
            'reconciliation_required': int(df['requires_reconciliation'].sum()) if total else 0,
            'failures_by_reason': {},
        }
        if total:
            failures = df[~df['success']]['failure_reason'].value_counts()
            kpis['failures_by_reason'] = {str(k): int(v) for k, v in failures.items()}
        if successful.empty:
            return kpis

        profits = successful['actual_profit_amount']
        gross_profit = profits[profits > 0].sum()
        gross_loss = abs(profits[profits < 0].sum())

        cumulative = profits.cumsum()
        drawdown = cumulative.cummax() - cumulative

        kpis.update({
            'net_profit': float(profits.sum()),
            'average_profit': float(profits.mean()),
            'profit_factor': float(gross_profit / gross_loss) if gross_loss > 0 else float('inf'),
            'max_drawdown': float(np.maximum(drawdown.max(), 0.0)),
        })
        return kpis

    def profit_by_pair(self) -> Dict[str, float]:
        df = self.executions_df
        if df.empty:
            return {}
        successful = df[df['success']]
        if successful.empty:
            return {}
        grouped = successful.groupby('pair')['actual_profit_amount'].sum().sort_values(ascending=False)
        return {str(k): float(v) for k, v in grouped.items()}


def summarize_opportunities(records: List[Dict[str, Any]], now: Optional[float] = None) -> Dict[str, Any]:
    """Counts for the last hour / 24h and the average and best net profit among recorded opportunities."""
    now = time.time() if now is None else now
    if not records:
        return {'total': 0, 'last_hour': 0, 'last_24h': 0, 'average_net_profit_percent': 0.0,
                'max_net_profit_percent': 0.0}

    df = pd.DataFrame(records)
    detected = df['detected_at'].astype(float)
    net = df['net_profit_percent'].astype(float)
    return {
        'total': len(df),
        'last_hour': int((detected >= now - 3600).sum()),
        'last_24h': int((detected >= now - 86400).sum()),
        'average_net_profit_percent': float(net.mean()),
        'max_net_profit_percent': float(net.max()),
    }


def summarize_session(execution_records: List[Dict[str, Any]], scan_stats: Dict[str, Any]) -> Dict[str, Any]:
    kpis = PerformanceAnalyzer(execution_records).calculate_kpis()
    return {
        'scans': scan_stats.get('total_scans', 0),
        'opportunities_detected': scan_stats.get('total_opportunities', 0),
        'executions': kpis['total_executions'],
        'successes': kpis['successful_executions'],
        'failures': kpis['failed_executions'],
        'win_rate_percent': kpis['win_rate_percent'],
        'cumulative_profit': kpis['net_profit'],
        'reconciliation_required': kpis['reconciliation_required'],
    }


def format_kpis(kpis: Dict[str, Any], currency: str = "") -> Dict[str, str]:
    """Display strings for the CLI."""
    suffix = f" {currency}" if currency else ""
    profit_factor = kpis.get('profit_factor', 0.0)
    return {
        "Total Executions": str(kpis.get('total_executions', 0)),
        "Successful": str(kpis.get('successful_executions', 0)),
        "Win Rate (%)": f"{kpis.get('win_rate_percent', 0.0):.2f}",
        "Net Profit": f"{kpis.get('net_profit', 0.0):,.4f}{suffix}",
        "Average Profit": f"{kpis.get('average_profit', 0.0):,.4f}{suffix}",
        "Profit Factor": "inf" if profit_factor == float('inf') else f"{profit_factor:.2f}",
        "Max Drawdown": f"{kpis.get('max_drawdown', 0.0):,.4f}{suffix}",
        "Needs Reconciliation": str(kpis.get('reconciliation_required', 0)),
    }
