import logging
import pandas as pd
from typing import List
from tidyml.config import AnalysisConfig
from tidyml.state import AnalysisObject
from tidyml.exceptions import InsufficientDataError, TargetConstantError, ExcessiveMissingDataError

logger = logging.getLogger(__name__)


def validate_dataset(df: pd.DataFrame, outcome: str, features: List[str], task: str,
                     config: AnalysisConfig, state: AnalysisObject) -> pd.DataFrame:
    """
    Validates the modelling frame before it is split.
    Returns a frame restricted to the outcome and the surviving features,
    and records every intervention in the state audit log.
    """
    df = df[features + [outcome]].copy()

    # 1. Check minimum samples
    if len(df) < config.min_samples_absolute:
        raise InsufficientDataError(
            f"Dataset has {len(df)} samples, which is less than the minimum required "
            f"({config.min_samples_absolute})."
        )

    # 2. A regression outcome stored as text is coerced, non-numbers become NaN
    if task == "regression" and not pd.api.types.is_numeric_dtype(df[outcome]):
        coerced = pd.to_numeric(df[outcome], errors='coerce')
        if coerced.notna().mean() > 0.20:
            df[outcome] = coerced
            state.warnings.append(
                f"Outcome '{outcome}' contained mixed text/numbers. Text values were coerced to NaN and dropped."
            )

    # 3. Check missing percentage of outcome
    missing_pct = df[outcome].isnull().mean()
    if missing_pct > config.max_missing_percentage:
        raise ExcessiveMissingDataError(
            f"Outcome '{outcome}' has {missing_pct:.2%} missing values, exceeding limit of "
            f"{config.max_missing_percentage:.0%}."
        )

    initial_len = len(df)
    df = df.dropna(subset=[outcome])
    dropped_count = initial_len - len(df)
    if dropped_count > 0:
        state.warnings.append(f"Dropped {dropped_count} rows with missing values in '{outcome}'.")

    # 4. Outcome must vary
    if df[outcome].nunique() <= 1:
        raise TargetConstantError(f"Outcome '{outcome}' is constant (1 or fewer unique values).")

    # 5. Drop features that are 100% null
    cols_to_drop_null = [col for col in features if df[col].isnull().all()]
    if cols_to_drop_null:
        df = df.drop(columns=cols_to_drop_null)
        for col in cols_to_drop_null:
            state.dropped_columns.append({"col": col, "reason": "100% missing"})
        logger.info("Dropped all-null features: %s", cols_to_drop_null)

    if len(df.columns) <= 1:
        raise InsufficientDataError("All features were dropped due to data quality issues. No data left to train on.")

    state.preprocessing_steps.append(f"Validated {len(df)} rows and {len(df.columns) - 1} features.")
    return df
