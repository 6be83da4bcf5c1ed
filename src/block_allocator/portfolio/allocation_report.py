import pandas as pd
from typing import Any, Dict, Optional
from dataclasses import asdict, is_dataclass
from datetime import datetime
from enum import Enum
import logging

from .hierarchical_optimizer import HierarchicalConfig, HierarchicalResult

logger = logging.getLogger(__name__)


def _config_to_dict(config: Optional[HierarchicalConfig]) -> Optional[Dict[str, Any]]:
    if config is None:
        return None

    def convert(value):
        if is_dataclass(value):
            return {k: convert(v) for k, v in asdict(value).items()}
        if isinstance(value, dict):
            return {k: convert(v) for k, v in value.items()}
        if isinstance(value, Enum):
            return value.value
        return value

    return convert(config)


def prepare_optimization_export(result: HierarchicalResult,
                                total_capital: float,
                                mode: str = 'hierarchical',
                                duration: Optional[float] = None,
                                config: Optional[HierarchicalConfig] = None) -> Dict[str, Any]:
    """
    Plain-dict export of a hierarchical result, ready for JSON serialization.

    Block and strategy weights come from the unfiltered optimization; the
    margin-filtered view, when present, is included under ``margin_filter``.
    """
    block_weights = []
    strategy_weights = []

    for block in result.optimized_blocks:
        block_weight = result.block_weights.get(block.block_name, 0.0)
        block_weights.append({
            'block_name': block.block_name,
            'weight': block_weight,
            'capital_allocation': block_weight * total_capital,
            'sharpe_ratio': block.metrics.sharpe_ratio,
            'annualized_return': block.metrics.annualized_return,
            'annualized_volatility': block.metrics.annualized_volatility,
            'is_locked': block.is_locked,
        })
        for strategy, weight in block.strategy_weights.items():
            strategy_weights.append({
                'block_name': block.block_name,
                'strategy_name': strategy,
                'weight_in_block': weight,
                'weight_in_portfolio': block_weight * weight,
                'capital_allocation': block_weight * weight * total_capital,
            })

    export = {
        'exported_at': datetime.now().isoformat(),
        'optimization_mode': mode,
        'total_capital': total_capital,
        'duration': duration,
        'config': _config_to_dict(config),
        'portfolio_metrics': result.portfolio_metrics.to_dict(),
        'block_weights': block_weights,
        'strategy_weights': strategy_weights,
    }

    filtered = result.filtered_result
    if filtered is not None:
        export['margin_filter'] = {
            'portfolio_metrics': filtered.portfolio_metrics.to_dict(),
            'combined_allocation': filtered.combined_allocation,
            'total_filtered_weight': filtered.total_filtered_weight,
            'filtered_strategies': [asdict(f) for f in filtered.filtered_strategies],
        }

    return export


def allocation_frame(result: HierarchicalResult, total_capital: float) -> pd.DataFrame:
    """One row per (block, strategy) of the effective allocation, weights as fractions."""
    rows = []
    allocation = result.effective_allocation

    for block in result.optimized_blocks:
        block_weight = result.block_weights.get(block.block_name, 0.0)
        final = allocation.get(block.block_name, {})
        for strategy, weight in block.strategy_weights.items():
            portfolio_weight = final.get(strategy, 0.0)
            rows.append({
                'block': block.block_name,
                'strategy': strategy,
                'block_weight': block_weight,
                'weight_in_block': weight,
                'weight_in_portfolio': portfolio_weight,
                'capital_allocation': portfolio_weight * total_capital,
            })

    columns = ['block', 'strategy', 'block_weight', 'weight_in_block',
               'weight_in_portfolio', 'capital_allocation']
    return pd.DataFrame(rows, columns=columns)


def generate_optimization_report(result: HierarchicalResult, total_capital: float) -> str:
    """Human-readable summary of a hierarchical optimization."""
    try:
        report_lines = []
        report_lines.append("=" * 80)
        report_lines.append("HIERARCHICAL ALLOCATION REPORT")
        report_lines.append("=" * 80)
        report_lines.append(f"Generated: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")
        report_lines.append(f"Total Capital: ${total_capital:,.2f}")
        report_lines.append("")

        report_lines.append("BLOCK WEIGHTS")
        report_lines.append("-" * 40)
        for block in result.optimized_blocks:
            weight = result.block_weights.get(block.block_name, 0.0)
            locked = " [locked]" if block.is_locked else ""
            report_lines.append(
                f"{block.block_name:20s}: {weight:8.4f} ({weight*100:6.2f}%)  "
                f"${weight * total_capital:,.0f}{locked}"
            )
        report_lines.append("")

        report_lines.append("STRATEGY ALLOCATION")
        report_lines.append("-" * 40)
        for _, row in allocation_frame(result, total_capital).iterrows():
            report_lines.append(
                f"{row['block'] + ' / ' + row['strategy']:40s}: "
                f"{row['weight_in_portfolio']*100:6.2f}%  ${row['capital_allocation']:,.0f}"
            )
        report_lines.append("")

        metrics = result.portfolio_metrics
        report_lines.append("PORTFOLIO METRICS")
        report_lines.append("-" * 40)
        report_lines.append(f"Annualized Return: {metrics.annualized_return:.2f}%")
        report_lines.append(f"Annualized Volatility: {metrics.annualized_volatility:.2f}%")
        report_lines.append(f"Sharpe Ratio: {metrics.sharpe_ratio:.3f}")
        report_lines.append("")

        filtered = result.filtered_result
        if filtered is not None:
            report_lines.append("MARGIN FILTER")
            report_lines.append("-" * 40)
            for f in filtered.filtered_strategies:
                report_lines.append(
                    f"Removed {f.block_name} / {f.strategy_name}: "
                    f"${f.allocated_capital:,.0f} allocated < ${f.required_margin:,.0f} margin"
                )
            report_lines.append(f"Redistributed Weight: {filtered.total_filtered_weight*100:.2f}%")
            report_lines.append(f"Filtered Sharpe Ratio: {filtered.portfolio_metrics.sharpe_ratio:.3f}")
            report_lines.append("")

        return "\n".join(report_lines)

    except Exception as e:
        logger.error(f"Error generating report: {str(e)}")
        return "Error generating optimization report"
