"""
Sensitivity analysis: the last pipeline stage.

Computes feature importance for the fitted workflow of an analysis object with
any of five methods, summarizes the results and builds their plots:

- PFI (Permutation Feature Importance): score degradation when a feature is shuffled.
- SHAP (SHapley Additive exPlanations): per-observation additive attributions.
- IntegratedGradients (neural networks only): path-integrated input gradients.
- Olden (neural networks only): connection-weight importance.
- SobolJansen (continuous features, regression only): first and total order
  variance-based indices, Jansen (1999) estimator.

For classification outcomes with more than two levels every method except
SobolJansen produces one result and one set of plots per class.
"""
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, Iterable, List, Optional, Union
import pandas as pd
from sklearn.neural_network import MLPClassifier, MLPRegressor
from tidyml.config import AnalysisConfig
from tidyml.state import AnalysisObject
from tidyml.preprocessing import prepare, bake, all_continuous, split_features
from tidyml.metrics import get_metric
from tidyml.summarize import summarize
from tidyml.importance import (
    ImportanceResult, PerObservation, PerClass, PerFeaturePerClass, VarianceIndices,
    pfi_importance, shap_importance, integrated_gradients_importance, olden_importance, sobol_jansen_importance
)
from tidyml.plots import plot_barplot, plot_directional, plot_boxplot, plot_swarm, plot_olden, plot_sobol
from tidyml.exceptions import (
    ValidationError, UnsupportedMethodError, EmptyMethodSetError, ComputationError
)

logger = logging.getLogger(__name__)


class Method(Enum):
    """Supported sensitivity methods, in the order they are run."""
    PFI = "PFI"
    SHAP = "SHAP"
    INTEGRATED_GRADIENTS = "IntegratedGradients"
    OLDEN = "Olden"
    SOBOL_JANSEN = "SobolJansen"


ALIASES = {
    "Integrated Gradients": Method.INTEGRATED_GRADIENTS,
    "Sobol_Jansen": Method.SOBOL_JANSEN,
}


@dataclass(frozen=True)
class MethodSpec:
    compute: Callable[..., ImportanceResult]
    unit: str
    requires_network: bool = False
    requires_continuous: bool = False
    regression_only: bool = False


METHOD_SPECS: Dict[Method, MethodSpec] = {
    Method.PFI: MethodSpec(pfi_importance, "Permutation Feature Importance"),
    Method.SHAP: MethodSpec(shap_importance, "SHAP"),
    Method.INTEGRATED_GRADIENTS: MethodSpec(integrated_gradients_importance, "Integrated Gradients",
                                            requires_network=True),
    Method.OLDEN: MethodSpec(olden_importance, "Olden", requires_network=True),
    Method.SOBOL_JANSEN: MethodSpec(sobol_jansen_importance, "Sobol", requires_continuous=True,
                                    regression_only=True),
}


def parse_methods(methods: Union[str, Method, Iterable[Union[str, Method]]]) -> List[Method]:
    """Maps method names (or members) to `Method` members in run order."""
    if isinstance(methods, (str, Method)):
        methods = [methods]
    methods = list(methods or [])
    if not methods:
        raise EmptyMethodSetError("At least one sensitivity method must be requested.")

    selected = set()
    for method in methods:
        if isinstance(method, Method):
            selected.add(method)
        elif method in ALIASES:
            selected.add(ALIASES[method])
        else:
            try:
                selected.add(Method(method))
            except ValueError:
                raise UnsupportedMethodError(
                    method, f"unknown method, expected one of {[m.value for m in Method]}"
                ) from None
    return [method for method in Method if method in selected]


def is_neural_network(model) -> bool:
    return isinstance(model, (MLPRegressor, MLPClassifier))


def check_preconditions(methods: List[Method], model, analysis: AnalysisObject):
    """Raises UnsupportedMethodError for the first method whose precondition fails."""
    for method in methods:
        spec = METHOD_SPECS[method]
        if spec.requires_network and not is_neural_network(model):
            raise UnsupportedMethodError(
                method.value, f"the fitted model must be a neural network, got {type(model).__name__}"
            )
        if spec.regression_only and analysis.task != "regression":
            raise UnsupportedMethodError(
                method.value, "only continuous outcomes are supported (task must be 'regression')"
            )
        if spec.requires_continuous and not all_continuous(analysis):
            _, categorical = split_features(analysis.train_data[analysis.features])
            raise UnsupportedMethodError(
                method.value, f"all input features must be continuous, categorical features: {categorical}"
            )


def summarize_result(method: Method, result: ImportanceResult) -> Dict[Optional[str], pd.DataFrame]:
    """
    Display summaries of a raw result, keyed by class label (None when the
    result is not split by class).
    """
    if isinstance(result, (PerObservation, PerClass)):
        absolute = method is not Method.PFI
        return {label: summarize(table, absolute=absolute) for label, table in result.tables()}
    if isinstance(result, PerFeaturePerClass):
        return {None: result.table}
    if isinstance(result, VarianceIndices):
        return {None: result.table}
    raise TypeError(f"Unexpected importance result {type(result).__name__}")


def _plot_key(method: Method, label: Optional[str], kind: str) -> str:
    if label is None:
        return f"{method.value}_{kind}"
    return f"{method.value}_{label}_{kind}"


def _per_observation_plots(method: Method, label: Optional[str], table: pd.DataFrame, summary: pd.DataFrame,
                           feature_values: pd.DataFrame, color_values: pd.DataFrame,
                           config: AnalysisConfig) -> Dict[str, object]:
    unit = METHOD_SPECS[method].unit
    suffix = f" for class {label}" if label is not None else ""

    if method is Method.PFI:
        return {_plot_key(method, label, "barplot"): plot_barplot(summary, f"{unit}{suffix}", "Importance")}

    return {
        _plot_key(method, label, "barplot"): plot_barplot(
            summary, f"Mean |{unit}| value{suffix}", f"Mean |{unit}|"),
        _plot_key(method, label, "directional"): plot_directional(
            table, feature_values, f"Directional Sensitivity of {unit} Values{suffix}"),
        _plot_key(method, label, "boxplot"): plot_boxplot(
            table, f"{unit} Value Distribution{suffix}", f"{unit} value"),
        _plot_key(method, label, "swarmplot"): plot_swarm(
            table, color_values, f"{unit} Swarm Plot{suffix}", f"{unit} value", random_state=config.random_seed),
    }


def _build_plots(method: Method, result: ImportanceResult, feature_values: pd.DataFrame,
                 color_values: pd.DataFrame, config: AnalysisConfig, verbose: bool) -> Dict[str, object]:
    figures = {}
    summaries = summarize_result(method, result)

    if verbose:
        print(f"######### {method.value} Results #########")

    if isinstance(result, (PerObservation, PerClass)):
        for label, table in result.tables():
            if verbose:
                if label is not None:
                    print(f"\n{method.value} for class {label}")
                print(summaries[label])
            figures.update(_per_observation_plots(
                method, label, table, summaries[label], feature_values, color_values, config))

    elif isinstance(result, PerFeaturePerClass):
        if verbose:
            print(result.table)
        for label, row in result.table.iterrows():
            class_label = None if label == 'importance' else str(label)
            suffix = f" for class {class_label}" if class_label is not None else ""
            figures[_plot_key(method, class_label, "barplot")] = plot_olden(
                row, f"Olden Feature Importance{suffix}")

    elif isinstance(result, VarianceIndices):
        if verbose:
            print(result.table)
        figures[_plot_key(method, None, "barplot")] = plot_sobol(result.table)

    if verbose:
        print()
    return figures


def _color_values(raw_test: pd.DataFrame, baked_features: pd.DataFrame) -> pd.DataFrame:
    """Original feature values where a baked column maps to a numeric raw column, baked values otherwise."""
    colors = {}
    for col in baked_features.columns:
        if col in raw_test.columns and pd.api.types.is_numeric_dtype(raw_test[col]):
            colors[col] = raw_test[col].to_numpy()
        else:
            colors[col] = baked_features[col].to_numpy()
    return pd.DataFrame(colors)


def sensitivity_analysis(analysis: AnalysisObject, methods=("PFI",), metric: Optional[str] = None,
                         verbose: bool = True, on_plot: Optional[Callable[[str, object], None]] = None,
                         config: Optional[AnalysisConfig] = None) -> AnalysisObject:
    """
    Runs the requested sensitivity methods on the fitted workflow.

    The training and test splits are baked with the stored recipe (fitted on
    the training split). Raw results are stored under
    `sensitivity_analysis[<method>]` and plots under `plots[<key>]`, with keys
    `<method>_<kind>` or `<method>_<class>_<kind>` for multi-class outcomes.
    Entries from earlier calls are kept.

    `metric` only applies to PFI; it defaults to 'rmse' for regression and
    'roc_auc' for classification. `on_plot(key, figure)` is called for every
    plot as soon as it is built.

    Returns a new analysis object; the one passed in is not modified. If a
    method fails, the ComputationError carries the results of the methods
    that finished before it in `partial_result`.
    """
    config = config or AnalysisConfig()
    selected = parse_methods(methods)

    if analysis.final_model is None:
        raise ValidationError("The analysis has no fitted model. Run fine_tuning() first.")
    model = analysis.final_model.named_steps['model']

    check_preconditions(selected, model, analysis)
    if metric is not None:
        get_metric(metric, analysis.task)

    analysis = analysis.clone()
    features, outcome = analysis.features, analysis.outcome

    recipe = prepare(analysis.transformer, analysis.train_data, features)
    bake_train = bake(recipe, analysis.train_data, features, outcome)
    bake_test = bake(recipe, analysis.test_data, features, outcome)

    feature_values = bake_test.drop(columns=[outcome])
    color_values = _color_values(analysis.test_data[features].reset_index(drop=True), feature_values)

    for method in selected:
        spec = METHOD_SPECS[method]
        extra = {'metric': metric} if method is Method.PFI else {}
        logger.info("Running %s sensitivity analysis", method.value)

        try:
            result = spec.compute(model, bake_train, bake_test, outcome, analysis.task,
                                  analysis.outcome_levels, config, **extra)
            analysis.sensitivity_analysis[method.value] = result
            figures = _build_plots(method, result, feature_values, color_values, config, verbose)
        except ValidationError:
            raise
        except ComputationError as exc:
            exc.partial_result = analysis
            raise
        except Exception as exc:
            raise ComputationError(f"{method.value} failed: {exc}", partial_result=analysis) from exc

        for key, fig in figures.items():
            analysis.plots[key] = fig
            if on_plot is not None:
                on_plot(key, fig)

    analysis.preprocessing_steps.append(
        f"Sensitivity analysis with {', '.join(m.value for m in selected)}."
    )
    return analysis
