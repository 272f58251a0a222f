import copy
from dataclasses import dataclass, field
from typing import List, Dict, Optional, Any

import pandas as pd


@dataclass
class AnalysisObject:
    """
    State container threaded through preprocessing, model building, tuning and
    sensitivity analysis.

    Every stage works on a `clone()` and returns it, so the caller's object is
    never modified.
    """
    task: str = "regression"
    formula: Optional[str] = None
    outcome: Optional[str] = None
    features: List[str] = field(default_factory=list)

    full_data: Optional[pd.DataFrame] = None
    train_data: Optional[pd.DataFrame] = None
    validation_data: Optional[pd.DataFrame] = None
    test_data: Optional[pd.DataFrame] = None
    transformer: Any = None
    outcome_levels: int = 0

    model_name: Optional[str] = None
    hyperparameters: Any = None
    tuner: Optional[str] = None
    tuner_results: Optional[pd.DataFrame] = None
    metrics: Optional[pd.DataFrame] = None
    final_model: Any = None

    sensitivity_analysis: Dict[str, Any] = field(default_factory=dict)
    plots: Dict[str, Any] = field(default_factory=dict)

    # Audit log
    dropped_columns: List[Dict] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    preprocessing_steps: List[str] = field(default_factory=list)

    def clone(self) -> "AnalysisObject":
        """
        Copy every mapping and list; frames and fitted estimators are shared
        because no stage mutates them in place.
        """
        new = copy.copy(self)
        new.features = list(self.features)
        new.sensitivity_analysis = dict(self.sensitivity_analysis)
        new.plots = dict(self.plots)
        new.dropped_columns = [dict(item) for item in self.dropped_columns]
        new.warnings = list(self.warnings)
        new.preprocessing_steps = list(self.preprocessing_steps)
        return new

    @property
    def is_classification(self) -> bool:
        return self.task == "classification"

    @property
    def outcome_classes(self) -> List[str]:
        """Outcome labels in level order (empty for regression)."""
        if not self.is_classification or self.train_data is None:
            return []
        return [str(c) for c in self.train_data[self.outcome].cat.categories]
