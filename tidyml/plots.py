"""
Plot builders for the sensitivity analysis.

Every builder returns a new matplotlib `Figure` created without pyplot, so
building a plot never displays it and never touches global figure state.
Display is left to the caller (`save_plots`, the Streamlit app, or the
`on_plot` hook of the dispatcher).
"""
import os
import logging
import numpy as np
import pandas as pd
import seaborn as sns
from matplotlib.figure import Figure
from typing import Dict, List, Optional
from tidyml.exceptions import ComputationError

logger = logging.getLogger(__name__)

POSITIVE_COLOR = "steelblue"
NEGATIVE_COLOR = "firebrick"


def _figure(n_items: int, horizontal: bool = True) -> Figure:
    if horizontal:
        return Figure(figsize=(9, max(3.0, 0.45 * n_items + 1.5)))
    return Figure(figsize=(max(6.0, 0.6 * n_items + 2), 5))


def plot_barplot(summary: pd.DataFrame, title: str, x_label: str) -> Figure:
    """
    Ranked horizontal bars with +/- one standard error whiskers.
    `summary` is the output of `summarize`; the most important feature is drawn at the top.
    """
    ordered = summary.sort_values('mean_importance', ascending=True, kind='stable')
    errors = ordered['std_error'].fillna(0.0).to_numpy()

    fig = _figure(len(ordered))
    ax = fig.subplots()
    positions = np.arange(len(ordered))
    ax.barh(positions, ordered['mean_importance'], xerr=errors, color=POSITIVE_COLOR, height=0.7,
            error_kw={'capsize': 3})
    ax.set_yticks(positions)
    ax.set_yticklabels(ordered['feature'])

    for pos, (mean, se) in enumerate(zip(ordered['mean_importance'], errors)):
        ax.annotate(f"{mean:.3f} +/- {se:.3f}", xy=(mean + se, pos), xytext=(4, 0),
                    textcoords="offset points", va="center", fontsize=8)

    ax.set_xlabel(x_label)
    ax.set_ylabel("Feature")
    ax.set_title(title)
    ax.margins(x=0.25)
    return fig


def directional_coefficients(importance_table: pd.DataFrame, feature_values: pd.DataFrame) -> pd.Series:
    """
    Linear sensitivity of importance to the feature value,
    cov(importance, value) / var(value), per feature.
    """
    coefficients = {}
    for col in importance_table.columns:
        x = feature_values[col].to_numpy(dtype=float)
        imp = importance_table[col].to_numpy(dtype=float)
        variance = np.var(x, ddof=1)
        if not np.isfinite(variance) or variance == 0:
            raise ComputationError(f"Feature '{col}' has zero variance; directional sensitivity is undefined.")
        coefficients[col] = np.cov(imp, x, ddof=1)[0, 1] / variance
    return pd.Series(coefficients, name='coefficient').sort_values(ascending=False, kind='stable')


def plot_directional(importance_table: pd.DataFrame, feature_values: pd.DataFrame,
                     title: str, y_label: str = "cov(importance, X) / var(X)") -> Figure:
    """Signed bars showing whether high feature values push the prediction up or down."""
    coefficients = directional_coefficients(importance_table, feature_values)
    colors = [POSITIVE_COLOR if value > 0 else NEGATIVE_COLOR for value in coefficients]

    fig = _figure(len(coefficients), horizontal=False)
    ax = fig.subplots()
    positions = np.arange(len(coefficients))
    ax.bar(positions, coefficients.to_numpy(), color=colors)
    ax.axhline(0, linestyle="--", color="black", linewidth=0.8)

    for pos, value in zip(positions, coefficients):
        ax.annotate(f"{value:.3f}", xy=(pos, value), xytext=(0, 4 if value >= 0 else -12),
                    textcoords="offset points", ha="center", fontsize=8)

    ax.set_xticks(positions)
    ax.set_xticklabels(coefficients.index, rotation=45, ha="right")
    ax.set_xlabel("Feature")
    ax.set_ylabel(y_label)
    ax.set_title(title)
    fig.tight_layout()
    return fig


def _order_by_mean_abs(importance_table: pd.DataFrame, ascending: bool) -> List[str]:
    return importance_table.abs().mean(axis=0).sort_values(ascending=ascending, kind='stable').index.tolist()


def plot_boxplot(importance_table: pd.DataFrame, title: str, y_label: str) -> Figure:
    """Per-feature distribution of importance values, ordered by mean absolute importance."""
    order = _order_by_mean_abs(importance_table, ascending=False)
    long = importance_table.melt(var_name='feature', value_name='value')

    fig = _figure(len(order), horizontal=False)
    ax = fig.subplots()
    sns.boxplot(data=long, x='feature', y='value', order=order, color="lightgray", ax=ax)
    ax.tick_params(axis='x', labelrotation=45)
    ax.set_xlabel("Feature")
    ax.set_ylabel(y_label)
    ax.set_title(title)
    fig.tight_layout()
    return fig


def plot_swarm(importance_table: pd.DataFrame, color_values: pd.DataFrame, title: str, x_label: str,
               random_state: int = 42) -> Figure:
    """
    Per-observation importance for every feature, jittered around the
    feature's row and coloured by the feature value (scaled per feature).
    """
    order = _order_by_mean_abs(importance_table, ascending=True)
    rng = np.random.default_rng(random_state)

    fig = _figure(len(order))
    ax = fig.subplots()
    scatter = None
    for pos, col in enumerate(order):
        values = importance_table[col].to_numpy(dtype=float)
        raw = color_values[col].to_numpy(dtype=float)
        span = np.nanmax(raw) - np.nanmin(raw)
        scaled = (raw - np.nanmin(raw)) / span if span > 0 else np.full_like(raw, 0.5)
        jitter = rng.uniform(-0.3, 0.3, size=len(values))
        scatter = ax.scatter(values, pos + jitter, c=scaled, cmap="magma", vmin=0, vmax=1, s=12)

    ax.axvline(0, color="gray", linewidth=0.8)
    ax.set_yticks(np.arange(len(order)))
    ax.set_yticklabels(order)
    ax.set_xlabel(x_label)
    ax.set_ylabel("Feature")
    ax.set_title(title)
    if scatter is not None:
        colorbar = fig.colorbar(scatter, ax=ax)
        colorbar.set_label("Feature value (low to high)")
    return fig


def plot_olden(importances: pd.Series, title: str = "Olden Feature Importance") -> Figure:
    """Signed connection-weight importance, largest at the top."""
    ordered = importances.sort_values(ascending=True, kind='stable')
    colors = [POSITIVE_COLOR if value > 0 else NEGATIVE_COLOR for value in ordered]

    fig = _figure(len(ordered))
    ax = fig.subplots()
    ax.barh(np.arange(len(ordered)), ordered.to_numpy(), color=colors)
    ax.axvline(0, linestyle="--", color="black", linewidth=0.8)
    ax.set_yticks(np.arange(len(ordered)))
    ax.set_yticklabels(ordered.index)
    ax.set_xlabel("Importance")
    ax.set_ylabel("Feature")
    ax.set_title(title)
    return fig


def plot_sobol(indices: pd.DataFrame, title: str = "Sobol Indices (Jansen)") -> Figure:
    """Grouped bars of first and total order indices with bootstrap standard errors."""
    ordered = indices.sort_values('total_order', ascending=True, kind='stable')
    positions = np.arange(len(ordered))
    height = 0.38

    fig = _figure(len(ordered))
    ax = fig.subplots()
    ax.barh(positions - height / 2, ordered['first_order'], height=height,
            xerr=ordered['first_order_se'].fillna(0.0), color=POSITIVE_COLOR, label="First order")
    ax.barh(positions + height / 2, ordered['total_order'], height=height,
            xerr=ordered['total_order_se'].fillna(0.0), color="darkorange", label="Total order")
    ax.set_yticks(positions)
    ax.set_yticklabels(ordered.index)
    ax.set_xlabel("Sobol index")
    ax.set_ylabel("Feature")
    ax.set_title(title)
    ax.legend(loc="lower right")
    return fig


def save_plots(plots: Dict[str, Figure], directory: str, fmt: str = "png",
               keys: Optional[List[str]] = None) -> List[str]:
    """Writes figures to `directory` as `<key>.<fmt>` and returns the file paths."""
    os.makedirs(directory, exist_ok=True)
    paths = []
    for key in keys or list(plots):
        path = os.path.join(directory, f"{key}.{fmt}")
        plots[key].savefig(path, bbox_inches="tight")
        paths.append(path)
    logger.info("Saved %d plots to %s", len(paths), directory)
    return paths
