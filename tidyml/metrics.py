"""
Named performance metrics shared by tuning, permutation importance and the
result summaries.

Classification metrics receive the true labels, then either the predicted
labels or a probability matrix whose columns follow `classes`. Binary problems
treat the last class as the positive one.
"""
import numpy as np
from dataclasses import dataclass
from typing import Callable, Dict, List, Sequence
from sklearn.metrics import (
    mean_squared_error, mean_absolute_error, mean_absolute_percentage_error, r2_score,
    roc_auc_score, average_precision_score, accuracy_score, balanced_accuracy_score,
    precision_score, recall_score, f1_score, cohen_kappa_score, matthews_corrcoef
)
from tidyml.exceptions import InvalidMetricError


@dataclass(frozen=True)
class Metric:
    name: str
    task: str
    greater_is_better: bool
    needs_proba: bool
    func: Callable

    def __call__(self, y_true, y_pred, classes: Sequence = ()) -> float:
        return float(self.func(np.asarray(y_true), np.asarray(y_pred), list(classes)))


def _one_hot(y, classes):
    return (y[:, None] == np.asarray(classes, dtype=object)[None, :]).astype(float)


def _rmse(y, pred, classes):
    return np.sqrt(mean_squared_error(y, pred))


def _roc_auc(y, proba, classes):
    if len(classes) == 2:
        return roc_auc_score(y == classes[1], proba[:, 1])
    return roc_auc_score(y, proba, multi_class='ovr', labels=classes)


def _pr_auc(y, proba, classes):
    if len(classes) == 2:
        return average_precision_score(y == classes[1], proba[:, 1])
    onehot = _one_hot(y, classes)
    return np.mean([average_precision_score(onehot[:, k], proba[:, k]) for k in range(len(classes))])


def _brier(y, proba, classes):
    # Halved multi-class Brier score, equal to the usual binary score for two classes
    return np.mean(np.sum((_one_hot(y, classes) - proba) ** 2, axis=1)) / 2


def _averaged(score_func):
    def wrapped(y, pred, classes):
        if len(classes) == 2:
            return score_func(y, pred, pos_label=classes[1], average='binary', zero_division=0)
        return score_func(y, pred, labels=classes, average='macro', zero_division=0)
    return wrapped


METRICS: Dict[str, Metric] = {m.name: m for m in [
    Metric('rmse', 'regression', False, False, _rmse),
    Metric('mae', 'regression', False, False, lambda y, p, c: mean_absolute_error(y, p)),
    Metric('mape', 'regression', False, False, lambda y, p, c: 100 * mean_absolute_percentage_error(y, p)),
    Metric('rsq', 'regression', True, False, lambda y, p, c: r2_score(y, p)),
    Metric('roc_auc', 'classification', True, True, _roc_auc),
    Metric('pr_auc', 'classification', True, True, _pr_auc),
    Metric('brier_class', 'classification', False, True, _brier),
    Metric('accuracy', 'classification', True, False, lambda y, p, c: accuracy_score(y, p)),
    Metric('bal_accuracy', 'classification', True, False, lambda y, p, c: balanced_accuracy_score(y, p)),
    Metric('precision', 'classification', True, False, _averaged(precision_score)),
    Metric('recall', 'classification', True, False, _averaged(recall_score)),
    Metric('f_meas', 'classification', True, False, _averaged(f1_score)),
    Metric('kap', 'classification', True, False, lambda y, p, c: cohen_kappa_score(y, p)),
    Metric('mcc', 'classification', True, False, lambda y, p, c: matthews_corrcoef(y, p)),
]}

DEFAULT_METRICS = {'regression': 'rmse', 'classification': 'roc_auc'}


def get_metric(name: str, task: str) -> Metric:
    """Looks up a metric by name and checks it fits the task."""
    if name not in METRICS:
        raise InvalidMetricError(f"Unknown metric '{name}'. Available metrics: {sorted(METRICS)}")
    metric = METRICS[name]
    if metric.task != task:
        raise InvalidMetricError(f"Metric '{name}' is a {metric.task} metric and cannot be used for {task}.")
    return metric


def metrics_for_task(task: str) -> List[str]:
    return [name for name, metric in METRICS.items() if metric.task == task]


def evaluate(metric: Metric, estimator, X, y, classes: Sequence = ()) -> float:
    """Scores a fitted estimator on (X, y) with the right kind of prediction."""
    if metric.needs_proba:
        return metric(y, estimator.predict_proba(X), classes)
    return metric(y, estimator.predict(X), classes)


def make_tuning_scorer(name: str, task: str, classes: Sequence = ()):
    """Wraps a metric as a scikit-learn scorer for the hyperparameter search."""
    metric = get_metric(name, task)
    classes = list(classes)

    def score(estimator, X, y):
        value = evaluate(metric, estimator, X, y, classes)
        return value if metric.greater_is_better else -value

    return score
