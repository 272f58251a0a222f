import logging
import re
import pandas as pd
from sklearn.base import clone
from sklearn.compose import ColumnTransformer
from sklearn.model_selection import train_test_split
from sklearn.pipeline import Pipeline
from sklearn.impute import SimpleImputer
from sklearn.preprocessing import StandardScaler, OneHotEncoder
from typing import List, Optional, Tuple
from tidyml.config import AnalysisConfig
from tidyml.state import AnalysisObject
from tidyml.data_validator import validate_dataset
from tidyml.exceptions import FormulaError, ValidationError

logger = logging.getLogger(__name__)

TASKS = ("regression", "classification")


def parse_formula(formula: str, columns: List[str]) -> Tuple[str, List[str]]:
    """
    Splits an outcome formula such as "y ~ x1 + x2" or "y ~ ." into the
    outcome column and the list of feature columns.
    """
    if not isinstance(formula, str) or formula.count("~") != 1:
        raise FormulaError(f"Formula must look like 'y ~ x1 + x2', got {formula!r}.")

    lhs, rhs = (side.strip() for side in formula.split("~"))
    if not lhs:
        raise FormulaError("Formula has no outcome on the left-hand side.")
    if lhs not in columns:
        raise FormulaError(f"Outcome '{lhs}' is not a column of the data.")

    if rhs == ".":
        features = [col for col in columns if col != lhs]
    else:
        features = [term.strip() for term in re.split(r"\+", rhs) if term.strip()]

    if not features:
        raise FormulaError("Formula has no features on the right-hand side.")

    missing = [col for col in features if col not in columns]
    if missing:
        raise FormulaError(f"Features not found in the data: {missing}")
    if lhs in features:
        raise FormulaError(f"Outcome '{lhs}' cannot also be a feature.")

    return lhs, features


def split_features(X: pd.DataFrame) -> Tuple[List[str], List[str]]:
    """Returns (numeric_features, categorical_features)."""
    numeric_features = X.select_dtypes(include=['number']).columns.tolist()
    categorical_features = X.select_dtypes(include=['object', 'category', 'string', 'bool']).columns.tolist()
    return numeric_features, categorical_features


def build_preprocessor(X: pd.DataFrame, state: AnalysisObject) -> ColumnTransformer:
    """
    Constructs the preprocessing recipe dynamically from the feature dtypes.
    The recipe is returned unfitted; `prepare` fits it on the training split.
    Updates state with the preprocessing steps.
    """
    numeric_features, categorical_features = split_features(X)

    # Numeric Pipeline
    numeric_transformer = Pipeline(steps=[
        ('imputer', SimpleImputer(strategy='median')),
        ('scaler', StandardScaler())
    ])

    # Categorical Pipeline
    categorical_transformer = Pipeline(steps=[
        ('imputer', SimpleImputer(strategy='most_frequent')),
        ('encoder', OneHotEncoder(handle_unknown='ignore', sparse_output=False))
    ])

    # Baked columns keep the original numeric names so results map back to the raw data
    preprocessor = ColumnTransformer(
        transformers=[
            ('num', numeric_transformer, numeric_features),
            ('cat', categorical_transformer, categorical_features)
        ],
        verbose_feature_names_out=False
    )
    preprocessor.set_output(transform="pandas")

    if numeric_features:
        state.preprocessing_steps.append(
            f"Applied median imputation and standard scaling to {len(numeric_features)} numeric features."
        )

    if categorical_features:
        state.preprocessing_steps.append(
            f"Applied most_frequent imputation and one-hot encoding to {len(categorical_features)} categorical features."
        )

    return preprocessor


def prepare(recipe: ColumnTransformer, train: pd.DataFrame, features: List[str]) -> ColumnTransformer:
    """Fits a fresh copy of the recipe on the training table."""
    return clone(recipe).fit(train[features])


def bake(fitted_recipe: ColumnTransformer, table: pd.DataFrame, features: List[str],
         outcome: Optional[str] = None) -> pd.DataFrame:
    """
    Applies a fitted recipe to a table. The outcome column is appended
    untouched when it is present in the table.
    """
    baked = fitted_recipe.transform(table[features])
    if outcome is not None and outcome in table.columns:
        baked[outcome] = table[outcome].values
    return baked.reset_index(drop=True)


def all_continuous(analysis: AnalysisObject) -> bool:
    """True when every raw feature of the analysis is numeric."""
    _, categorical = split_features(analysis.train_data[analysis.features])
    return not categorical


def _split(df: pd.DataFrame, outcome: str, task: str, config: AnalysisConfig):
    stratify = df[outcome] if task == "classification" else None
    train, rest = train_test_split(
        df, train_size=config.train_fraction, stratify=stratify, random_state=config.random_seed
    )

    validation_share = config.validation_fraction / (1.0 - config.train_fraction)
    stratify = rest[outcome] if task == "classification" else None
    validation, test = train_test_split(
        rest, train_size=validation_share, stratify=stratify, random_state=config.random_seed
    )
    return train, validation, test


def preprocessing(df: pd.DataFrame, formula: str, task: str,
                  config: Optional[AnalysisConfig] = None) -> AnalysisObject:
    """
    First pipeline stage: validates the data, splits it into
    train/validation/test and builds the (unfitted) preprocessing recipe.
    """
    config = config or AnalysisConfig()
    if task not in TASKS:
        raise ValidationError(f"Task must be one of {TASKS}, got '{task}'.")

    outcome, features = parse_formula(formula, df.columns.tolist())
    analysis = AnalysisObject(task=task, formula=formula, outcome=outcome)

    df_clean = validate_dataset(df, outcome, features, task, config, analysis)
    analysis.features = [col for col in features if col in df_clean.columns]

    if task == "classification":
        labels = df_clean[outcome].astype(str)
        df_clean[outcome] = pd.Categorical(labels, categories=sorted(labels.unique()))
        analysis.outcome_levels = len(df_clean[outcome].cat.categories)

    train, validation, test = _split(df_clean, outcome, task, config)
    analysis.full_data = df_clean
    analysis.train_data = train
    analysis.validation_data = validation
    analysis.test_data = test

    analysis.transformer = build_preprocessor(train[analysis.features], analysis)

    logger.info(
        "Preprocessed %s task: %d train / %d validation / %d test rows",
        task, len(train), len(validation), len(test)
    )
    analysis.preprocessing_steps.append(
        f"Split data into {len(train)} train, {len(validation)} validation and {len(test)} test rows."
    )
    return analysis
