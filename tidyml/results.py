import numpy as np
import pandas as pd
import seaborn as sns
from matplotlib.figure import Figure
from sklearn.calibration import calibration_curve
from sklearn.metrics import roc_curve, precision_recall_curve, confusion_matrix
from tidyml.state import AnalysisObject
from tidyml.metrics import METRICS
from tidyml.exceptions import InvalidModelError, ValidationError

DATA_SETS = ("train", "validation", "test")

REGRESSION_SUMMARY = ['rmse', 'mae', 'mape', 'rsq']
CLASSIFICATION_SUMMARY = ['accuracy', 'bal_accuracy', 'precision', 'recall', 'f_meas',
                          'kap', 'mcc', 'roc_auc', 'pr_auc', 'brier_class']


def _data_sets(new_data: str):
    if new_data == "all":
        return list(DATA_SETS)
    if new_data not in DATA_SETS:
        raise ValidationError(f"new_data must be one of {DATA_SETS + ('all',)}, got '{new_data}'.")
    return [new_data]


def get_predictions(analysis: AnalysisObject, new_data: str = "test") -> pd.DataFrame:
    """
    Predictions of the final workflow on one split, or on every split with
    new_data="all". Classification adds one `prob_<class>` column per class.
    """
    if analysis.final_model is None:
        raise InvalidModelError("The analysis has no fitted model. Run fine_tuning() first.")

    frames = []
    for data_set in _data_sets(new_data):
        dat = getattr(analysis, f"{data_set}_data")
        X = dat[analysis.features]
        predictions = pd.DataFrame({'prediction': analysis.final_model.predict(X)})
        if analysis.is_classification:
            proba = analysis.final_model.predict_proba(X)
            for k, label in enumerate(analysis.final_model.classes_):
                predictions[f"prob_{label}"] = proba[:, k]
        predictions['truth'] = np.asarray(dat[analysis.outcome])
        predictions['data_set'] = data_set
        frames.append(predictions)

    return pd.concat(frames, ignore_index=True)


def _summary(analysis: AnalysisObject, metric_names, new_data: str) -> pd.DataFrame:
    predictions = get_predictions(analysis, new_data)
    classes = list(analysis.final_model.classes_) if analysis.is_classification else []
    prob_columns = [f"prob_{label}" for label in classes]

    rows = []
    for data_set, group in predictions.groupby('data_set', sort=False):
        row = {'data_set': data_set}
        for name in metric_names:
            metric = METRICS[name]
            pred = group[prob_columns].to_numpy() if metric.needs_proba else group['prediction']
            row[name] = metric(group['truth'], pred, classes)
        rows.append(row)
    return pd.DataFrame(rows).set_index('data_set')


def summary_regression(analysis: AnalysisObject, new_data: str = "test") -> pd.DataFrame:
    return _summary(analysis, REGRESSION_SUMMARY, new_data)


def summary_binary(analysis: AnalysisObject, new_data: str = "test") -> pd.DataFrame:
    if analysis.outcome_levels != 2:
        raise ValidationError("summary_binary requires a binary classification outcome.")
    return _summary(analysis, CLASSIFICATION_SUMMARY, new_data)


def summary_multiclass(analysis: AnalysisObject, new_data: str = "test") -> pd.DataFrame:
    """Metric table for multi-class outcomes; label metrics are macro averaged."""
    if analysis.outcome_levels <= 2:
        raise ValidationError("summary_multiclass requires more than two outcome levels.")
    return _summary(analysis, CLASSIFICATION_SUMMARY, new_data)


def summarize_performance(analysis: AnalysisObject, new_data: str = "test") -> pd.DataFrame:
    """Picks the summary that fits the task and the number of outcome levels."""
    if not analysis.is_classification:
        return summary_regression(analysis, new_data)
    if analysis.outcome_levels == 2:
        return summary_binary(analysis, new_data)
    return summary_multiclass(analysis, new_data)


def _positive_class(predictions: pd.DataFrame) -> str:
    prob_columns = [col for col in predictions.columns if col.startswith("prob_")]
    if len(prob_columns) != 2:
        raise ValidationError("Curves are only available for binary classification predictions.")
    return prob_columns[1][len("prob_"):]


def roc_curve_binary(predictions: pd.DataFrame) -> pd.DataFrame:
    """ROC curve points per data set, the second class being the event."""
    positive = _positive_class(predictions)
    frames = []
    for data_set, group in predictions.groupby('data_set', sort=False):
        fpr, tpr, thresholds = roc_curve(group['truth'].astype(str) == positive, group[f"prob_{positive}"])
        frames.append(pd.DataFrame({
            'data_set': data_set, 'threshold': thresholds, 'specificity': 1 - fpr, 'sensitivity': tpr
        }))
    return pd.concat(frames, ignore_index=True)


def pr_curve_binary(predictions: pd.DataFrame) -> pd.DataFrame:
    """Precision-recall curve points per data set, the second class being the event."""
    positive = _positive_class(predictions)
    frames = []
    for data_set, group in predictions.groupby('data_set', sort=False):
        precision, recall, thresholds = precision_recall_curve(
            group['truth'].astype(str) == positive, group[f"prob_{positive}"]
        )
        frames.append(pd.DataFrame({
            'data_set': data_set, 'threshold': np.append(thresholds, np.nan),
            'recall': recall, 'precision': precision
        }))
    return pd.concat(frames, ignore_index=True)


def gain_curve_binary(predictions: pd.DataFrame) -> pd.DataFrame:
    """
    Cumulative gain per data set: the share of events found when the
    observations are tested in decreasing order of event probability.
    """
    positive = _positive_class(predictions)
    frames = []
    for data_set, group in predictions.groupby('data_set', sort=False):
        ordered = group.sort_values(f"prob_{positive}", ascending=False, kind='stable')
        events = (ordered['truth'].astype(str) == positive).to_numpy()
        n = np.arange(1, len(ordered) + 1)
        n_events = np.cumsum(events)
        frames.append(pd.DataFrame({
            'data_set': data_set,
            'n': n,
            'n_events': n_events,
            'percent_tested': 100 * n / len(ordered),
            'percent_found': 100 * n_events / max(events.sum(), 1),
        }))
    return pd.concat(frames, ignore_index=True)


def lift_curve_binary(predictions: pd.DataFrame) -> pd.DataFrame:
    """Lift per data set: percent of events found over percent tested."""
    gain = gain_curve_binary(predictions)
    gain['lift'] = gain['percent_found'] / gain['percent_tested']
    return gain[['data_set', 'n', 'n_events', 'percent_tested', 'lift']]


def calibration_curve_binary(predictions: pd.DataFrame, n_bins: int = 10) -> pd.DataFrame:
    """Mean predicted against observed event probability per probability bin and data set."""
    positive = _positive_class(predictions)
    frames = []
    for data_set, group in predictions.groupby('data_set', sort=False):
        prob_observed, prob_pred = calibration_curve(
            group['truth'].astype(str) == positive, group[f"prob_{positive}"], n_bins=n_bins, strategy='uniform'
        )
        frames.append(pd.DataFrame({'data_set': data_set, 'prob_pred': prob_pred, 'prob_observed': prob_observed}))
    return pd.concat(frames, ignore_index=True)


def confusion_matrix_table(predictions: pd.DataFrame) -> pd.DataFrame:
    """Counts of truth (rows) against predicted class (columns)."""
    labels = [col[len("prob_"):] for col in predictions.columns if col.startswith("prob_")]
    if not labels:
        raise ValidationError("A confusion matrix needs classification predictions.")
    matrix = confusion_matrix(predictions['truth'].astype(str), predictions['prediction'].astype(str), labels=labels)
    return pd.DataFrame(matrix, index=pd.Index(labels, name='truth'), columns=pd.Index(labels, name='prediction'))


# ==========================================
# Plots
# ==========================================

def plot_dist_probs_binary(predictions: pd.DataFrame) -> Figure:
    """Density of the predicted event probability, one curve per true class."""
    positive = _positive_class(predictions)
    fig = Figure(figsize=(8, 5))
    ax = fig.subplots()
    sns.kdeplot(data=predictions.assign(truth=predictions['truth'].astype(str)), x=f"prob_{positive}",
                hue='truth', fill=True, alpha=0.5, common_norm=False, ax=ax)
    ax.set_title("Probability Distribution by Class")
    ax.set_xlabel("Predicted Probability")
    ax.set_ylabel("Density")
    return fig


def plot_calibration_curve_binary(predictions: pd.DataFrame, n_bins: int = 10) -> Figure:
    """Reliability plot: observed against mean predicted probability, diagonal for reference."""
    table = calibration_curve_binary(predictions, n_bins=n_bins)
    fig = Figure(figsize=(6, 6))
    ax = fig.subplots()
    sns.scatterplot(data=table, x='prob_pred', y='prob_observed', hue='data_set', ax=ax)
    ax.plot([0, 1], [0, 1], linestyle="--", color="red", linewidth=1)
    ax.set_xlim(0, 1)
    ax.set_ylim(0, 1)
    ax.set_title("Reliability Plot")
    ax.set_xlabel("Predicted Probability")
    ax.set_ylabel("Observed Probability")
    return fig


def plot_conf_mat(predictions: pd.DataFrame) -> Figure:
    table = confusion_matrix_table(predictions)
    fig = Figure(figsize=(6, 5))
    ax = fig.subplots()
    sns.heatmap(table, annot=True, fmt="d", cmap="Blues", cbar=False, ax=ax)
    ax.set_title("Confusion Matrix")
    return fig
