import pytest
import pandas as pd
import numpy as np
import sys
import os
from sklearn.datasets import make_classification

# Add project root to sys.path
sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from tidyml.config import AnalysisConfig
from tidyml.preprocessing import preprocessing
from tidyml.model_trainer import build_model, fine_tuning
from tidyml import sensitivity
from tidyml.sensitivity import Method, MethodSpec, parse_methods, sensitivity_analysis, summarize_result
from tidyml.importance import PerObservation, PerClass, PerFeaturePerClass, VarianceIndices
from tidyml.plots import directional_coefficients
from tidyml.exceptions import (
    ValidationError, UnsupportedMethodError, EmptyMethodSetError, InvalidMetricError, ComputationError
)

NN_PARAMS = {'hidden_units': 5, 'learn_rate': 0.01, 'penalty': 0.001}

@pytest.fixture(scope="module")
def config():
    return AnalysisConfig(min_samples_absolute=10, cv_folds=3, grid_levels=2, pfi_repetitions=5,
                          shap_background_size=10, shap_nsamples=50, ig_steps=20,
                          sobol_samples=200, sobol_bootstrap=10)

@pytest.fixture(scope="module")
def regression_df():
    rng = np.random.default_rng(7)
    df = pd.DataFrame(rng.uniform(-1, 1, size=(120, 4)), columns=['x1', 'x2', 'x3', 'x4'])
    df['y'] = 3 * df['x1'] + df['x2'] + 0.1 * rng.normal(size=120)
    return df

def _train(df, formula, task, model_name, hyperparameters, config):
    analysis = preprocessing(df, formula, task, config)
    analysis = build_model(analysis, model_name, hyperparameters)
    return fine_tuning(analysis, config=config)

@pytest.fixture(scope="module")
def nn_regression(regression_df, config):
    return _train(regression_df, "y ~ .", "regression", "Neural Network", NN_PARAMS, config)

@pytest.fixture(scope="module")
def linear_regression(regression_df, config):
    return _train(regression_df, "y ~ .", "regression", "Linear", None, config)

@pytest.fixture(scope="module")
def nn_multiclass(config):
    X, y = make_classification(n_samples=200, n_features=4, n_informative=4, n_redundant=0,
                               n_classes=4, n_clusters_per_class=1, random_state=0)
    df = pd.DataFrame(X, columns=['x1', 'x2', 'x3', 'x4'])
    df['label'] = np.array(['a', 'b', 'c', 'd'])[y]
    return _train(df, "label ~ .", "classification", "Neural Network", NN_PARAMS, config)

@pytest.fixture(scope="module")
def binary_logistic(config):
    rng = np.random.default_rng(11)
    df = pd.DataFrame(rng.normal(size=(150, 3)), columns=['x1', 'x2', 'x3'])
    df['label'] = np.where(2 * df['x1'] + 0.3 * rng.normal(size=150) > 0, 'yes', 'no')
    return _train(df, "label ~ .", "classification", "Linear", {'C': 1.0}, config)

def test_parse_methods_order_and_aliases():
    assert parse_methods(["Olden", "PFI", "Integrated Gradients"]) == \
        [Method.PFI, Method.INTEGRATED_GRADIENTS, Method.OLDEN]
    assert parse_methods("Sobol_Jansen") == [Method.SOBOL_JANSEN]
    assert parse_methods([Method.SHAP, "SHAP"]) == [Method.SHAP]

def test_empty_method_set(nn_regression, config):
    with pytest.raises(EmptyMethodSetError):
        sensitivity_analysis(nn_regression, [], config=config)

def test_unknown_method(nn_regression, config):
    with pytest.raises(UnsupportedMethodError, match="LIME"):
        sensitivity_analysis(nn_regression, ["LIME"], config=config)

def test_network_only_methods_rejected(linear_regression, config):
    for method in ("Olden", "IntegratedGradients"):
        with pytest.raises(UnsupportedMethodError, match=method):
            sensitivity_analysis(linear_regression, [method], verbose=False, config=config)

def test_sobol_rejected_for_classification(nn_multiclass, config):
    with pytest.raises(UnsupportedMethodError, match="SobolJansen"):
        sensitivity_analysis(nn_multiclass, ["SobolJansen"], verbose=False, config=config)

def test_sobol_rejected_with_categorical_features(regression_df, config):
    df = regression_df.assign(group=np.where(regression_df['x3'] > 0, 'high', 'low'))
    trained = _train(df, "y ~ .", "regression", "Linear", None, config)
    with pytest.raises(UnsupportedMethodError, match="categorical"):
        sensitivity_analysis(trained, ["PFI", "SobolJansen"], verbose=False, config=config)

def test_invalid_metric(nn_regression, config):
    with pytest.raises(InvalidMetricError):
        sensitivity_analysis(nn_regression, ["PFI"], metric="roc_auc", verbose=False, config=config)

def test_requires_fitted_model(regression_df, config):
    analysis = build_model(preprocessing(regression_df, "y ~ .", "regression", config), "Linear")
    with pytest.raises(ValidationError):
        sensitivity_analysis(analysis, ["PFI"], config=config)

def test_pfi_regression(nn_regression, config):
    result = sensitivity_analysis(nn_regression, ["PFI"], metric="rmse", verbose=False, config=config)

    pfi = result.sensitivity_analysis["PFI"]
    assert isinstance(pfi, PerObservation)
    assert pfi.table.shape == (config.pfi_repetitions, 4)
    assert list(result.plots) == ["PFI_barplot"]

    summary = summarize_result(Method.PFI, pfi)[None]
    assert summary.loc[0, 'feature'] == 'x1'
    assert summary['mean_importance'].is_monotonic_decreasing
    assert pfi.table['x1'].mean() > pfi.table['x4'].mean()

def test_caller_is_not_modified(nn_regression, config):
    sensitivity_analysis(nn_regression, ["PFI"], verbose=False, config=config)
    assert nn_regression.sensitivity_analysis == {}
    assert nn_regression.plots == {}

def test_results_accumulate(nn_regression, config):
    first = sensitivity_analysis(nn_regression, ["PFI"], verbose=False, config=config)
    second = sensitivity_analysis(first, ["Olden"], verbose=False, config=config)

    assert set(second.sensitivity_analysis) == {"PFI", "Olden"}
    assert {"PFI_barplot", "Olden_barplot"} <= set(second.plots)
    assert "Olden" not in first.sensitivity_analysis

def test_idempotent(nn_regression, config):
    first = sensitivity_analysis(nn_regression, ["PFI"], verbose=False, config=config)
    second = sensitivity_analysis(nn_regression, ["PFI"], verbose=False, config=config)
    pd.testing.assert_frame_equal(
        summarize_result(Method.PFI, first.sensitivity_analysis["PFI"])[None],
        summarize_result(Method.PFI, second.sensitivity_analysis["PFI"])[None],
    )

def test_all_regression_methods(nn_regression, config):
    result = sensitivity_analysis(
        nn_regression, ["SHAP", "IntegratedGradients", "Olden", "SobolJansen"], verbose=False, config=config
    )

    assert isinstance(result.sensitivity_analysis["SHAP"], PerObservation)
    assert result.sensitivity_analysis["SHAP"].table.shape == (len(nn_regression.test_data), 4)
    assert isinstance(result.sensitivity_analysis["IntegratedGradients"], PerObservation)
    assert isinstance(result.sensitivity_analysis["Olden"], PerFeaturePerClass)
    assert isinstance(result.sensitivity_analysis["SobolJansen"], VarianceIndices)

    expected = {f"{method}_{kind}" for method in ("SHAP", "IntegratedGradients")
                for kind in ("barplot", "directional", "boxplot", "swarmplot")}
    expected |= {"Olden_barplot", "SobolJansen_barplot"}
    assert set(result.plots) == expected
    assert result.plots["IntegratedGradients_barplot"].axes[0].get_title() == "Mean |Integrated Gradients| value"

def test_constant_one_hot_column_in_test_split(regression_df, config):
    df = regression_df.assign(group=np.where(regression_df['x3'] > 0, 'high', 'low'))
    trained = _train(df, "y ~ .", "regression", "Linear", None, config)
    single_group = trained.clone()
    single_group.test_data = single_group.test_data.assign(group='high')

    with pytest.raises(ComputationError, match="zero variance") as excinfo:
        sensitivity_analysis(single_group, ["PFI", "SHAP"], verbose=False, config=config)

    partial = excinfo.value.partial_result
    assert "PFI" in partial.sensitivity_analysis
    assert "PFI_barplot" in partial.plots
    assert not any(key.startswith("SHAP_") for key in partial.plots)

def test_multiclass_keys(nn_multiclass, config):
    result = sensitivity_analysis(nn_multiclass, ["PFI", "IntegratedGradients", "Olden"],
                                  verbose=False, config=config)

    pfi = result.sensitivity_analysis["PFI"]
    assert isinstance(pfi, PerClass)
    assert [label for label, _ in pfi.tables()] == ['a', 'b', 'c', 'd']
    assert isinstance(result.sensitivity_analysis["IntegratedGradients"], PerClass)
    assert result.sensitivity_analysis["Olden"].table.shape == (4, 4)

    pfi_keys = [k for k in result.plots if k.startswith("PFI_")]
    ig_keys = [k for k in result.plots if k.startswith("IntegratedGradients_")]
    olden_keys = [k for k in result.plots if k.startswith("Olden_")]
    assert sorted(pfi_keys) == [f"PFI_{c}_barplot" for c in 'abcd']
    assert len(ig_keys) == 4 * 4
    assert "IntegratedGradients_c_swarmplot" in ig_keys
    assert sorted(olden_keys) == [f"Olden_{c}_barplot" for c in 'abcd']

def test_binary_shap_direction(binary_logistic, config):
    result = sensitivity_analysis(binary_logistic, ["SHAP"], verbose=False, config=config)

    shap_values = result.sensitivity_analysis["SHAP"].table
    assert shap_values.shape == (len(binary_logistic.test_data), 3)

    # The event class 'yes' becomes more likely as x1 grows
    raw_x1 = pd.DataFrame({'x1': binary_logistic.test_data['x1'].to_numpy()})
    assert directional_coefficients(shap_values[['x1']], raw_x1)['x1'] > 0
    assert "SHAP_directional" in result.plots

def test_on_plot_and_verbose(nn_regression, config, capsys):
    seen = []
    result = sensitivity_analysis(nn_regression, ["PFI", "Olden"], verbose=True,
                                  on_plot=lambda key, fig: seen.append(key), config=config)

    assert seen == list(result.plots)
    out = capsys.readouterr().out
    assert "######### PFI Results #########" in out
    assert "######### Olden Results #########" in out

def test_failure_keeps_partial_result(nn_regression, config, monkeypatch):
    def broken(*args, **kwargs):
        raise ValueError("singular matrix")

    monkeypatch.setitem(sensitivity.METHOD_SPECS, Method.OLDEN,
                        MethodSpec(broken, "Olden", requires_network=True))

    with pytest.raises(ComputationError) as excinfo:
        sensitivity_analysis(nn_regression, ["PFI", "Olden"], verbose=False, config=config)

    assert isinstance(excinfo.value.__cause__, ValueError)
    partial = excinfo.value.partial_result
    assert set(partial.sensitivity_analysis) == {"PFI"}
    assert "PFI_barplot" in partial.plots

if __name__ == "__main__":
    sys.exit(pytest.main([__file__]))
