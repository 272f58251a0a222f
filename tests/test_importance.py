import pytest
import pandas as pd
import numpy as np
import sys
import os
from sklearn.datasets import make_classification
from sklearn.dummy import DummyRegressor
from sklearn.ensemble import RandomForestRegressor, RandomForestClassifier, GradientBoostingClassifier
from sklearn.linear_model import LinearRegression, LogisticRegression
from sklearn.neural_network import MLPRegressor, MLPClassifier

# Add project root to sys.path
sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from tidyml.config import AnalysisConfig
from tidyml.importance import (
    PerObservation, PerClass, PerFeaturePerClass, VarianceIndices,
    pfi_importance, shap_importance, integrated_gradients_importance, olden_importance,
    sobol_jansen_importance, _mlp_input_gradient
)
from tidyml.summarize import summarize
from tidyml.exceptions import ComputationError

FEATURES = ['x1', 'x2', 'x3', 'x4']

@pytest.fixture
def config():
    return AnalysisConfig(pfi_repetitions=5, shap_background_size=10, shap_nsamples=50,
                          ig_steps=200, sobol_samples=500, sobol_bootstrap=20)

def _table(X, y):
    df = pd.DataFrame(X, columns=FEATURES[:X.shape[1]])
    df['y'] = y
    return df

@pytest.fixture
def regression_tables():
    # x1 drives the outcome, x4 is noise
    rng = np.random.default_rng(1)
    X = rng.normal(size=(200, 4))
    y = 3 * X[:, 0] + 0.5 * X[:, 1] + 0.1 * rng.normal(size=200)
    return _table(X[:150], y[:150]), _table(X[150:], y[150:])

@pytest.fixture
def multiclass_tables():
    X, y = make_classification(n_samples=300, n_features=4, n_informative=4, n_redundant=0,
                               n_classes=4, n_clusters_per_class=1, random_state=0)
    labels = np.array(['a', 'b', 'c', 'd'])[y]
    return _table(X[:200], labels[:200]), _table(X[200:], labels[200:])

def _fit(model, table):
    return model.fit(table[[c for c in table.columns if c != 'y']], table['y'])

def test_pfi_regression(regression_tables, config):
    train, test = regression_tables
    model = _fit(LinearRegression(), train)

    result = pfi_importance(model, train, test, 'y', 'regression', 0, config, metric='rmse')

    assert isinstance(result, PerObservation)
    assert result.table.shape == (config.pfi_repetitions, 4)
    assert list(result.table.columns) == FEATURES

    summary = summarize(result.table, absolute=False)
    assert summary.loc[0, 'feature'] == 'x1'
    assert result.table['x1'].mean() > result.table['x4'].mean()

def test_pfi_positive_for_greater_is_better_metric(regression_tables, config):
    train, test = regression_tables
    model = _fit(LinearRegression(), train)

    result = pfi_importance(model, train, test, 'y', 'regression', 0, config, metric='rsq')
    assert (result.table['x1'] > 0).all()

def test_pfi_multiclass(multiclass_tables, config):
    train, test = multiclass_tables
    model = _fit(LogisticRegression(max_iter=1000), train)

    result = pfi_importance(model, train, test, 'y', 'classification', 4, config)

    assert isinstance(result, PerClass)
    assert [label for label, _ in result.tables()] == ['a', 'b', 'c', 'd']
    for _, table in result.tables():
        assert table.shape == (config.pfi_repetitions, 4)

def test_pfi_is_reproducible(regression_tables, config):
    train, test = regression_tables
    model = _fit(LinearRegression(), train)

    first = pfi_importance(model, train, test, 'y', 'regression', 0, config)
    second = pfi_importance(model, train, test, 'y', 'regression', 0, config)
    pd.testing.assert_frame_equal(first.table, second.table)

def test_shap_tree_regression(regression_tables, config):
    train, test = regression_tables
    model = _fit(RandomForestRegressor(n_estimators=20, random_state=0), train)

    result = shap_importance(model, train, test, 'y', 'regression', 0, config)

    assert isinstance(result, PerObservation)
    assert result.table.shape == (len(test), 4)
    assert summarize(result.table).loc[0, 'feature'] == 'x1'

def test_shap_kernel_regression(regression_tables, config):
    train, test = regression_tables
    model = _fit(LinearRegression(), train)

    result = shap_importance(model, train, test.head(10), 'y', 'regression', 0, config)

    assert result.table.shape == (10, 4)
    assert summarize(result.table).loc[0, 'feature'] == 'x1'

@pytest.mark.parametrize("model", [
    RandomForestClassifier(n_estimators=20, random_state=0),
    GradientBoostingClassifier(n_estimators=20, random_state=0),
    LogisticRegression(max_iter=1000),
], ids=["random_forest", "gradient_boosting", "logistic"])
def test_shap_multiclass(model, multiclass_tables, config):
    train, test = multiclass_tables
    model = _fit(model, train)

    result = shap_importance(model, train, test.head(10), 'y', 'classification', 4, config)

    assert isinstance(result, PerClass)
    assert [label for label, _ in result.tables()] == ['a', 'b', 'c', 'd']
    for _, table in result.tables():
        assert table.shape == (10, 4)
        assert np.isfinite(table.to_numpy()).all()

@pytest.mark.parametrize("model", [
    RandomForestClassifier(n_estimators=20, random_state=0),
    GradientBoostingClassifier(n_estimators=20, random_state=0),
], ids=["random_forest", "gradient_boosting"])
def test_shap_binary_trees(model, multiclass_tables, config):
    train, test = (t.assign(y=np.where(t['y'] == 'a', 'a', 'other')) for t in multiclass_tables)
    model = _fit(model, train)

    result = shap_importance(model, train, test, 'y', 'classification', 2, config)

    assert isinstance(result, PerObservation)
    assert result.table.shape == (len(test), 4)

def test_mlp_gradient_matches_finite_differences(regression_tables):
    train, _ = regression_tables
    model = _fit(MLPRegressor(hidden_layer_sizes=(5,), activation='tanh', max_iter=500, random_state=0), train)

    X = train[FEATURES].to_numpy()[:5]
    grad = _mlp_input_gradient(model, X, 0)

    eps = 1e-5
    for j in range(4):
        shift = np.zeros(4)
        shift[j] = eps
        upper = model.predict(pd.DataFrame(X + shift, columns=FEATURES))
        lower = model.predict(pd.DataFrame(X - shift, columns=FEATURES))
        np.testing.assert_allclose(grad[:, j], (upper - lower) / (2 * eps), atol=1e-4)

def test_integrated_gradients_completeness(regression_tables, config):
    train, test = regression_tables
    model = _fit(MLPRegressor(hidden_layer_sizes=(5,), activation='tanh', max_iter=500, random_state=0), train)

    result = integrated_gradients_importance(model, train, test, 'y', 'regression', 0, config)

    assert isinstance(result, PerObservation)
    assert result.table.shape == (len(test), 4)
    # Attributions add up to f(x) - f(baseline)
    X = test[FEATURES]
    expected = model.predict(X) - model.predict(pd.DataFrame(np.zeros_like(X), columns=FEATURES))
    np.testing.assert_allclose(result.table.sum(axis=1), expected, atol=1e-2)

def test_integrated_gradients_multiclass(multiclass_tables, config):
    train, test = multiclass_tables
    model = _fit(MLPClassifier(hidden_layer_sizes=(6,), max_iter=1000, random_state=0), train)

    result = integrated_gradients_importance(model, train, test, 'y', 'classification', 4, config)

    assert isinstance(result, PerClass)
    assert len(result.tables()) == 4
    assert result.tables()[0][1].shape == (len(test), 4)

def test_olden_multiclass(multiclass_tables, config):
    train, test = multiclass_tables
    model = _fit(MLPClassifier(hidden_layer_sizes=(6,), max_iter=1000, random_state=0), train)

    result = olden_importance(model, train, test, 'y', 'classification', 4, config)

    assert isinstance(result, PerFeaturePerClass)
    assert result.table.shape == (4, 4)
    assert list(result.table.index) == ['a', 'b', 'c', 'd']
    assert list(result.table.columns) == FEATURES

def test_olden_regression(regression_tables, config):
    train, test = regression_tables
    model = _fit(MLPRegressor(hidden_layer_sizes=(5, 3), max_iter=500, random_state=0), train)

    result = olden_importance(model, train, test, 'y', 'regression', 0, config)

    assert list(result.table.index) == ['importance']
    expected = model.coefs_[0] @ model.coefs_[1] @ model.coefs_[2]
    np.testing.assert_allclose(result.table.loc['importance'].to_numpy(), expected[:, 0])

def test_sobol_linear_model(config):
    rng = np.random.default_rng(3)
    X = rng.uniform(-1, 1, size=(400, 3))
    train = _table(X, 2 * X[:, 0] + X[:, 1])
    model = _fit(LinearRegression(), train)

    result = sobol_jansen_importance(model, train, train, 'y', 'regression', 0, config)

    assert isinstance(result, VarianceIndices)
    table = result.table
    assert list(table.columns) == ['first_order', 'first_order_se', 'total_order', 'total_order_se']
    assert list(table.index) == ['x1', 'x2', 'x3']
    assert table.loc['x1', 'total_order'] > table.loc['x2', 'total_order'] > table.loc['x3', 'total_order']
    assert table.loc['x3', 'total_order'] < 0.01
    # Additive model: total order close to 4/5 for x1
    assert table.loc['x1', 'total_order'] == pytest.approx(0.8, abs=0.1)
    assert (table['total_order_se'] >= 0).all()

def test_sobol_constant_model(regression_tables, config):
    train, test = regression_tables
    model = _fit(DummyRegressor(strategy='constant', constant=1.0), train)

    with pytest.raises(ComputationError):
        sobol_jansen_importance(model, train, test, 'y', 'regression', 0, config)

if __name__ == "__main__":
    sys.exit(pytest.main([__file__]))
