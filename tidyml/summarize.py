import numpy as np
import pandas as pd
from scipy.stats import sem


def summarize(importance_table: pd.DataFrame, absolute: bool = True) -> pd.DataFrame:
    """
    Collapses a per-observation importance table into a ranked summary.

    Returns a frame with one row per feature: the mean (of absolute values
    unless `absolute=False`) and the standard error of the mean, sorted by
    decreasing mean.
    """
    values = importance_table.abs() if absolute else importance_table
    matrix = values.to_numpy(dtype=float)

    if len(matrix) > 1:
        std_error = sem(matrix, axis=0, ddof=1)
    else:
        std_error = np.full(matrix.shape[1], np.nan)

    summary = pd.DataFrame({
        'feature': list(importance_table.columns),
        'mean_importance': matrix.mean(axis=0),
        'std_error': std_error,
    })
    return summary.sort_values('mean_importance', ascending=False, kind='stable').reset_index(drop=True)
