"""
Feature importance computers.

Every computer takes the fitted model, the baked train and test tables (the
outcome column included), the outcome name, the task and the number of
outcome levels, and returns one of the `ImportanceResult` variants below.
"""
import logging
import numpy as np
import pandas as pd
import shap
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Tuple, Union
from scipy.special import expit, softmax
from sklearn.ensemble import GradientBoostingClassifier
from sklearn.inspection import permutation_importance
from tidyml.config import AnalysisConfig
from tidyml.metrics import DEFAULT_METRICS, get_metric, make_tuning_scorer
from tidyml.exceptions import ComputationError

logger = logging.getLogger(__name__)


# ==========================================
# Result types
# ==========================================

@dataclass(frozen=True, eq=False)
class PerObservation:
    """One importance value per row (observation or repetition) per feature."""
    table: pd.DataFrame

    def tables(self) -> List[Tuple[Optional[str], pd.DataFrame]]:
        return [(None, self.table)]


@dataclass(frozen=True, eq=False)
class PerClass:
    """Multi-class outcomes: one per-observation table per outcome class."""
    tables_by_class: Dict[str, pd.DataFrame] = field(default_factory=dict)

    def tables(self) -> List[Tuple[Optional[str], pd.DataFrame]]:
        return list(self.tables_by_class.items())


@dataclass(frozen=True, eq=False)
class PerFeaturePerClass:
    """One row per output class (a single 'importance' row otherwise), one column per feature."""
    table: pd.DataFrame


@dataclass(frozen=True, eq=False)
class VarianceIndices:
    """First and total order Sobol indices, one row per feature."""
    table: pd.DataFrame


ImportanceResult = Union[PerObservation, PerClass, PerFeaturePerClass, VarianceIndices]


def _split_xy(table: pd.DataFrame, outcome: str) -> Tuple[pd.DataFrame, np.ndarray]:
    return table.drop(columns=[outcome]), np.asarray(table[outcome])


def _is_multiclass(task: str, outcome_levels: int) -> bool:
    return task == "classification" and outcome_levels > 2


# ==========================================
# Permutation Feature Importance
# ==========================================

def _one_vs_rest_scorer(metric, index: int, label):
    """Scores one class against the rest, signed so that greater is better."""
    def score(estimator, X, y):
        pred = estimator.predict_proba(X) if metric.needs_proba else estimator.predict(X)
        truth = np.asarray(y) == label
        if metric.needs_proba:
            one_vs_rest = np.column_stack([1 - pred[:, index], pred[:, index]])
        else:
            one_vs_rest = pred == label
        value = metric(truth, one_vs_rest, [False, True])
        return value if metric.greater_is_better else -value
    return score


def pfi_importance(model, train: pd.DataFrame, test: pd.DataFrame, outcome: str, task: str,
                   outcome_levels: int, config: AnalysisConfig, metric: Optional[str] = None) -> ImportanceResult:
    """
    Permutation feature importance on the test table.

    Each feature is permuted `config.pfi_repetitions` times; every row of the
    returned table is one repetition. Scorers are signed so that greater is
    better, hence positive values mean the permutation hurt the model,
    whatever the metric's direction. Multi-class outcomes are scored one
    class against the rest.
    """
    metric = get_metric(metric or DEFAULT_METRICS[task], task)
    X, y = _split_xy(test, outcome)
    columns = list(X.columns)

    if _is_multiclass(task, outcome_levels):
        scoring = {str(label): _one_vs_rest_scorer(metric, k, label) for k, label in enumerate(model.classes_)}
    else:
        classes = list(model.classes_) if task == "classification" else []
        scoring = make_tuning_scorer(metric.name, task, classes)

    result = permutation_importance(
        model, X, y,
        scoring=scoring,
        n_repeats=config.pfi_repetitions,
        random_state=config.random_seed
    )
    logger.debug("PFI computed with %s over %d repetitions", metric.name, config.pfi_repetitions)

    if _is_multiclass(task, outcome_levels):
        return PerClass({label: pd.DataFrame(result[label].importances.T, columns=columns) for label in scoring})
    return PerObservation(pd.DataFrame(result.importances.T, columns=columns))


# ==========================================
# SHAP
# ==========================================

def _output_functions(model, columns: List[str], task: str, outcome_levels: int) -> List[Tuple[Optional[str], Callable]]:
    """Single-output prediction functions, one per explained output."""
    def frame(X):
        return pd.DataFrame(X, columns=columns)

    if task == "regression":
        return [(None, lambda X: model.predict(frame(X)))]

    classes = list(model.classes_)
    if outcome_levels <= 2:
        return [(None, lambda X: model.predict_proba(frame(X))[:, 1])]

    return [(str(label), (lambda k: lambda X: model.predict_proba(frame(X))[:, k])(k))
            for k, label in enumerate(classes)]


def _split_shap_output(shap_values, task: str, outcome_levels: int) -> List[np.ndarray]:
    # Handle SHAP shape differences between Binary/Multiclass/Regression
    if isinstance(shap_values, list):  # Older SHAP classifiers: one array per class
        arrays = [np.asarray(v) for v in shap_values]
    else:
        shap_values = np.asarray(shap_values)
        if shap_values.ndim == 3:  # Newer SHAP classifiers: (samples, features, classes)
            arrays = [shap_values[:, :, k] for k in range(shap_values.shape[2])]
        else:  # Regression or a single log-odds output
            arrays = [shap_values]

    if task == "regression" or outcome_levels <= 2:
        # Positive class for binary outcomes
        return [arrays[-1]]
    return arrays


def _supports_tree_explainer(model, task: str, outcome_levels: int) -> bool:
    # shap only explains binary gradient boosting classifiers exactly
    if isinstance(model, GradientBoostingClassifier) and _is_multiclass(task, outcome_levels):
        return False
    return hasattr(model, 'estimators_')


def shap_importance(model, train: pd.DataFrame, test: pd.DataFrame, outcome: str, task: str,
                    outcome_levels: int, config: AnalysisConfig) -> ImportanceResult:
    """
    SHAP values for every test observation. Tree ensembles use the exact tree
    explainer, every other model (multi-class gradient boosting included) the
    kernel explainer over a sample of the training rows.
    """
    X_train, _ = _split_xy(train, outcome)
    X_test, _ = _split_xy(test, outcome)
    columns = list(X_test.columns)

    if _supports_tree_explainer(model, task, outcome_levels):
        explainer = shap.TreeExplainer(model)
        arrays = _split_shap_output(explainer.shap_values(X_test), task, outcome_levels)
        labels = [str(c) for c in model.classes_] if _is_multiclass(task, outcome_levels) else [None]
        outputs = list(zip(labels, arrays))
    else:
        background = shap.sample(X_train, min(config.shap_background_size, len(X_train)),
                                 random_state=config.random_seed)
        outputs = []
        for label, func in _output_functions(model, columns, task, outcome_levels):
            explainer = shap.KernelExplainer(func, background)
            values = explainer.shap_values(X_test, nsamples=config.shap_nsamples)
            outputs.append((label, np.asarray(values).reshape(len(X_test), len(columns))))

    tables = {label: pd.DataFrame(values, columns=columns) for label, values in outputs}
    if _is_multiclass(task, outcome_levels):
        return PerClass(tables)
    return PerObservation(tables[None])


# ==========================================
# Neural network internals (Integrated Gradients, Olden)
# ==========================================

_ACTIVATIONS = {
    'identity': (lambda z: z, lambda z, a: np.ones_like(z)),
    'relu': (lambda z: np.maximum(z, 0), lambda z, a: (z > 0).astype(float)),
    'tanh': (np.tanh, lambda z, a: 1 - a ** 2),
    'logistic': (expit, lambda z, a: a * (1 - a)),
}


def _mlp_forward(model, X: np.ndarray):
    """Returns the pre-activations and activations of every layer."""
    hidden, _ = _ACTIVATIONS[model.activation]
    pre_activations, activations = [], [X]
    n_layers = len(model.coefs_)
    for i, (W, b) in enumerate(zip(model.coefs_, model.intercepts_)):
        z = activations[-1] @ W + b
        pre_activations.append(z)
        if i < n_layers - 1:
            activations.append(hidden(z))
        elif model.out_activation_ == 'softmax':
            activations.append(softmax(z, axis=1))
        elif model.out_activation_ == 'logistic':
            activations.append(expit(z))
        else:
            activations.append(z)
    return pre_activations, activations


def _mlp_input_gradient(model, X: np.ndarray, output_index: int) -> np.ndarray:
    """Gradient of one network output with respect to every input, per row."""
    pre_activations, activations = _mlp_forward(model, X)
    _, hidden_grad = _ACTIVATIONS[model.activation]
    out = activations[-1]
    n_out = out.shape[1]

    if model.out_activation_ == 'softmax':
        p = out[:, [output_index]]
        delta = p * (np.eye(n_out)[output_index][None, :] - out)
    else:
        delta = np.zeros_like(out)
        if model.out_activation_ == 'logistic':
            delta[:, output_index] = out[:, output_index] * (1 - out[:, output_index])
        else:
            delta[:, output_index] = 1.0

    for i in range(len(model.coefs_) - 1, 0, -1):
        grad = delta @ model.coefs_[i].T
        delta = grad * hidden_grad(pre_activations[i - 1], activations[i])

    return delta @ model.coefs_[0].T


def integrated_gradients_importance(model, train: pd.DataFrame, test: pd.DataFrame, outcome: str, task: str,
                                    outcome_levels: int, config: AnalysisConfig) -> ImportanceResult:
    """
    Integrated gradients along the straight line from a baseline input to each
    test observation, using the trapezoid rule over `config.ig_steps` steps.
    """
    X_train, _ = _split_xy(train, outcome)
    X_test, _ = _split_xy(test, outcome)
    columns = list(X_test.columns)
    X = X_test.to_numpy(dtype=float)

    if config.ig_baseline == "mean":
        baseline = X_train.to_numpy(dtype=float).mean(axis=0, keepdims=True)
    else:
        baseline = np.zeros((1, X.shape[1]))

    alphas = np.linspace(0.0, 1.0, config.ig_steps + 1)

    def attributions(output_index):
        grads = [_mlp_input_gradient(model, baseline + a * (X - baseline), output_index) for a in alphas]
        avg_grad = (np.sum(grads, axis=0) - (grads[0] + grads[-1]) / 2) / config.ig_steps
        return pd.DataFrame((X - baseline) * avg_grad, columns=columns)

    if _is_multiclass(task, outcome_levels):
        return PerClass({str(label): attributions(k) for k, label in enumerate(model.classes_)})
    return PerObservation(attributions(0))


def olden_importance(model, train: pd.DataFrame, test: pd.DataFrame, outcome: str, task: str,
                     outcome_levels: int, config: AnalysisConfig) -> ImportanceResult:
    """
    Olden's connection weight method: the sum over every input-to-output path
    of the product of its weights, i.e. the product of the weight matrices.
    """
    columns = [col for col in test.columns if col != outcome]
    weights = model.coefs_[0]
    for W in model.coefs_[1:]:
        weights = weights @ W

    if _is_multiclass(task, outcome_levels):
        index = [str(label) for label in model.classes_]
    else:
        index = ['importance']
    return PerFeaturePerClass(pd.DataFrame(weights.T, index=index, columns=columns))


# ==========================================
# Sobol indices (Jansen estimator)
# ==========================================

def _jansen_indices(yA: np.ndarray, yB: np.ndarray, yAB: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    variance = np.var(np.concatenate([yA, yB]), ddof=1)
    if not np.isfinite(variance) or variance <= 0:
        raise ComputationError("Model output has zero variance over the Sobol design; indices are undefined.")
    first = (variance - np.mean((yB[:, None] - yAB) ** 2, axis=0) / 2) / variance
    total = np.mean((yA[:, None] - yAB) ** 2, axis=0) / (2 * variance)
    return first, total


def sobol_jansen_importance(model, train: pd.DataFrame, test: pd.DataFrame, outcome: str, task: str,
                            outcome_levels: int, config: AnalysisConfig) -> ImportanceResult:
    """
    First and total order Sobol indices with the Jansen (1999) Monte Carlo
    estimator. The two designs resample every training column independently.
    """
    X_train, _ = _split_xy(train, outcome)
    columns = list(X_train.columns)
    n = config.sobol_samples
    rng = np.random.default_rng(config.random_seed)

    def design():
        return pd.DataFrame({col: rng.choice(X_train[col].to_numpy(dtype=float), size=n, replace=True)
                             for col in columns})

    A, B = design(), design()
    yA = np.asarray(model.predict(A), dtype=float)
    yB = np.asarray(model.predict(B), dtype=float)

    yAB = np.empty((n, len(columns)))
    for i, col in enumerate(columns):
        AB = A.copy()
        AB[col] = B[col].to_numpy()
        yAB[:, i] = model.predict(AB)

    first, total = _jansen_indices(yA, yB, yAB)

    boot_first, boot_total = [], []
    for _ in range(config.sobol_bootstrap):
        idx = rng.integers(0, n, size=n)
        f, t = _jansen_indices(yA[idx], yB[idx], yAB[idx])
        boot_first.append(f)
        boot_total.append(t)

    if config.sobol_bootstrap > 1:
        first_se = np.std(boot_first, axis=0, ddof=1)
        total_se = np.std(boot_total, axis=0, ddof=1)
    else:
        first_se = total_se = np.full(len(columns), np.nan)

    table = pd.DataFrame({
        'first_order': first,
        'first_order_se': first_se,
        'total_order': total,
        'total_order_se': total_se,
    }, index=pd.Index(columns, name='feature'))
    return VarianceIndices(table)
