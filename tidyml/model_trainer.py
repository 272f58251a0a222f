import logging
import numpy as np
import pandas as pd
from dataclasses import dataclass
from typing import Any, Dict, List, Optional
from sklearn.base import clone
from sklearn.pipeline import Pipeline
from sklearn.model_selection import GridSearchCV, RandomizedSearchCV, KFold, StratifiedKFold, cross_val_score
from sklearn.ensemble import RandomForestRegressor, RandomForestClassifier, GradientBoostingRegressor, GradientBoostingClassifier
from sklearn.linear_model import LinearRegression, LogisticRegression
from sklearn.neural_network import MLPRegressor, MLPClassifier
from sklearn.svm import SVR, SVC
from tidyml.config import AnalysisConfig
from tidyml.state import AnalysisObject
from tidyml.metrics import DEFAULT_METRICS, get_metric, evaluate, make_tuning_scorer
from tidyml.exceptions import InvalidModelError, InvalidTunerError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Range:
    """A tunable hyperparameter range. 'log10' ranges are given as exponents."""
    low: float
    high: float
    kind: str = "int"

    def values(self, levels: int) -> List[Any]:
        points = np.linspace(self.low, self.high, max(levels, 1))
        if self.kind == "int":
            return sorted({int(round(p)) for p in points})
        if self.kind == "log10":
            return [float(10 ** p) for p in points]
        return [float(p) for p in points]


class Hyperparameters:
    """
    Base class for the hyperparameter space of a model family.

    User values given as a (low, high) pair replace the default range and are
    tuned; scalar values fix the parameter.
    """
    model_name: str = ""

    def __init__(self, hyperparams: Optional[Dict[str, Any]] = None):
        self.ranges: Dict[str, Range] = {}
        self.fixed: Dict[str, Any] = {}
        self.set_hyperparams(hyperparams)

    def default_hyperparams(self) -> Dict[str, Range]:
        return {}

    def set_hyperparams(self, hyperparams: Optional[Dict[str, Any]] = None):
        self.ranges = self.default_hyperparams()
        self.fixed = {}
        for name, value in (hyperparams or {}).items():
            if name not in self.ranges:
                raise InvalidModelError(
                    f"Unknown hyperparameter '{name}' for {self.model_name}. "
                    f"Available: {sorted(self.default_hyperparams())}"
                )
            if isinstance(value, (list, tuple)) and len(value) == 2:
                self.ranges[name] = Range(value[0], value[1], self.ranges[name].kind)
            else:
                del self.ranges[name]
                self.fixed[name] = value
        return self

    def convert(self, name: str, value: Any) -> Dict[str, Any]:
        """Maps a hyperparameter value onto estimator parameters."""
        return {name: value}

    def estimator(self, task: str, random_state: int):
        raise NotImplementedError

    def applies_to(self, name: str, task: str) -> bool:
        return True

    def build(self, task: str, random_state: int):
        model = self.estimator(task, random_state)
        for name, value in self.fixed.items():
            if self.applies_to(name, task):
                model.set_params(**self.convert(name, value))
        return model

    def grid(self, levels: int, task: str) -> Dict[str, List[Any]]:
        """Parameter grid keyed for the 'model' step of the workflow."""
        param_grid = {}
        for name, rng in self.ranges.items():
            if not self.applies_to(name, task):
                continue
            for value in rng.values(levels):
                for param, converted in self.convert(name, value).items():
                    param_grid.setdefault(f"model__{param}", []).append(converted)
        return param_grid


class HyperparamsRF(Hyperparameters):
    model_name = "Random Forest"

    def default_hyperparams(self):
        return {
            'n_estimators': Range(100, 300),
            'max_features': Range(0.3, 1.0, "float"),
            'min_samples_split': Range(2, 25),
        }

    def estimator(self, task, random_state):
        if task == "regression":
            return RandomForestRegressor(random_state=random_state)
        return RandomForestClassifier(random_state=random_state)


class HyperparamsNN(Hyperparameters):
    model_name = "Neural Network"

    def default_hyperparams(self):
        return {
            'hidden_units': Range(2, 10),
            'learn_rate': Range(-3, -1, "log10"),
            'penalty': Range(-5, -1, "log10"),
        }

    def convert(self, name, value):
        if name == 'hidden_units':
            return {'hidden_layer_sizes': tuple(value) if isinstance(value, (list, tuple)) else (int(value),)}
        if name == 'learn_rate':
            return {'learning_rate_init': value}
        return {'alpha': value}

    def estimator(self, task, random_state):
        if task == "regression":
            return MLPRegressor(max_iter=2000, random_state=random_state)
        return MLPClassifier(max_iter=2000, random_state=random_state)


class HyperparamsGB(Hyperparameters):
    model_name = "Gradient Boosting"

    def default_hyperparams(self):
        return {
            'n_estimators': Range(50, 200),
            'learning_rate': Range(-2, -0.5, "log10"),
            'max_depth': Range(2, 6),
        }

    def estimator(self, task, random_state):
        if task == "regression":
            return GradientBoostingRegressor(random_state=random_state)
        return GradientBoostingClassifier(random_state=random_state)


class HyperparamsLinear(Hyperparameters):
    model_name = "Linear"

    def default_hyperparams(self):
        # Ordinary least squares has nothing to tune; C only applies to the logistic model
        return {'C': Range(-2, 2, "log10")}

    def applies_to(self, name, task):
        return task == "classification"

    def estimator(self, task, random_state):
        if task == "regression":
            return LinearRegression()
        return LogisticRegression(max_iter=1000)


class HyperparamsSVM(Hyperparameters):
    model_name = "SVM"

    def default_hyperparams(self):
        return {'C': Range(-1, 2, "log10")}

    def estimator(self, task, random_state):
        if task == "regression":
            return SVR()
        return SVC(probability=True, random_state=random_state)


MODELS = {cls.model_name: cls for cls in
          [HyperparamsRF, HyperparamsNN, HyperparamsGB, HyperparamsLinear, HyperparamsSVM]}

TUNERS = {"Grid Search CV": GridSearchCV, "Random Search CV": RandomizedSearchCV}


def build_model(analysis: AnalysisObject, model_name: str,
                hyperparameters: Optional[Dict[str, Any]] = None) -> AnalysisObject:
    """
    Second pipeline stage: selects the model family and its hyperparameter
    space. Nothing is fitted here.
    """
    if model_name not in MODELS:
        raise InvalidModelError(f"Unknown model '{model_name}'. Available models: {sorted(MODELS)}")

    analysis = analysis.clone()
    analysis.model_name = model_name
    analysis.hyperparameters = MODELS[model_name](hyperparameters)

    tuned = sorted(analysis.hyperparameters.ranges)
    analysis.preprocessing_steps.append(
        f"Built {model_name} model (tuned: {', '.join(tuned) if tuned else 'none'})."
    )
    return analysis


def _cv(task: str, folds: int, random_state: int):
    if task == "classification":
        return StratifiedKFold(n_splits=folds, shuffle=True, random_state=random_state)
    return KFold(n_splits=folds, shuffle=True, random_state=random_state)


def fine_tuning(analysis: AnalysisObject, tuner: str = "Grid Search CV", metrics: Optional[List[str]] = None,
                verbose: bool = False, config: Optional[AnalysisConfig] = None) -> AnalysisObject:
    """
    Third pipeline stage: tunes the hyperparameters with cross validation on
    the training split, keeps the best workflow fitted on the training data
    and scores it on the validation and test splits.
    """
    config = config or AnalysisConfig()
    if analysis.hyperparameters is None:
        raise InvalidModelError("No model has been built yet. Call build_model() first.")
    if tuner not in TUNERS:
        raise InvalidTunerError(f"Unknown tuner '{tuner}'. Available tuners: {sorted(TUNERS)}")

    metrics = list(metrics or [DEFAULT_METRICS[analysis.task]])
    metric_objects = [get_metric(name, analysis.task) for name in metrics]

    analysis = analysis.clone()
    classes = analysis.outcome_classes
    X = analysis.train_data[analysis.features]
    y = analysis.train_data[analysis.outcome]

    model = analysis.hyperparameters.build(analysis.task, config.random_seed)
    pipeline = Pipeline([('preprocessor', clone(analysis.transformer)), ('model', model)])

    scoring = make_tuning_scorer(metrics[0], analysis.task, classes)
    cv = _cv(analysis.task, config.cv_folds, config.random_seed)

    if tuner == "Grid Search CV":
        param_grid = analysis.hyperparameters.grid(config.grid_levels, analysis.task)
    else:
        # Random search samples from a denser grid
        param_grid = analysis.hyperparameters.grid(config.grid_levels * 3, analysis.task)

    if param_grid:
        if tuner == "Grid Search CV":
            search = GridSearchCV(pipeline, param_grid=param_grid, cv=cv, scoring=scoring, n_jobs=config.n_jobs)
        else:
            search = RandomizedSearchCV(
                pipeline,
                param_distributions=param_grid,
                n_iter=config.n_iter,
                cv=cv,
                scoring=scoring,
                random_state=config.random_seed,
                n_jobs=config.n_jobs
            )
        search.fit(X, y)
        final_model = search.best_estimator_
        results = pd.DataFrame(search.cv_results_)
        keep = [col for col in results.columns if col.startswith('param_')] + \
               ['mean_test_score', 'std_test_score', 'rank_test_score']
        tuner_results = results[keep].sort_values('rank_test_score').reset_index(drop=True)
    else:
        # Fallback for models without tunable parameters
        cv_scores = cross_val_score(pipeline, X, y, cv=cv, scoring=scoring)
        final_model = pipeline.fit(X, y)
        tuner_results = pd.DataFrame({
            'mean_test_score': [np.mean(cv_scores)],
            'std_test_score': [np.std(cv_scores)],
            'rank_test_score': [1]
        })

    # Loss-type metrics were negated for the search; report their natural sign
    if not metric_objects[0].greater_is_better:
        tuner_results['mean_test_score'] = -tuner_results['mean_test_score']

    rows = []
    for data_set in ("validation", "test"):
        data = getattr(analysis, f"{data_set}_data")
        row = {'data_set': data_set}
        for metric in metric_objects:
            row[metric.name] = evaluate(metric, final_model, data[analysis.features], data[analysis.outcome], classes)
        rows.append(row)

    analysis.tuner = tuner
    analysis.tuner_results = tuner_results
    analysis.metrics = pd.DataFrame(rows).set_index('data_set')
    analysis.final_model = final_model

    logger.info("Tuned %s with %s (%d candidates)", analysis.model_name, tuner, len(tuner_results))
    analysis.preprocessing_steps.append(
        f"Tuned {analysis.model_name} with {tuner} using {config.cv_folds}-fold CV on '{metrics[0]}'."
    )

    if verbose:
        print(f"######### {analysis.model_name} Tuning Results #########")
        print(analysis.metrics)

    return analysis
