import os
import json
import logging
from datetime import datetime

import joblib

from tidyml.state import AnalysisObject
from tidyml.exceptions import AnalysisError

logger = logging.getLogger(__name__)


def _metadata_path(filepath: str) -> str:
    root, _ = os.path.splitext(filepath)
    return f"{root}_metadata.json"


def save_analysis(analysis: AnalysisObject, filepath="analysis.pkl"):
    """Dumps the analysis object with joblib and writes a JSON metadata sidecar."""
    joblib.dump(analysis, filepath)
    meta_path = _metadata_path(filepath)
    with open(meta_path, "w") as f:
        json.dump({
            "model_name": analysis.model_name,
            "task": analysis.task,
            "formula": analysis.formula,
            "tuner": analysis.tuner,
            "sensitivity_methods": list(analysis.sensitivity_analysis),
            "timestamp": datetime.now().isoformat()
        }, f)
    logger.info("Saved analysis to %s", filepath)
    return filepath, meta_path


def load_analysis(filepath: str) -> AnalysisObject:
    analysis = joblib.load(filepath)
    if not isinstance(analysis, AnalysisObject):
        raise AnalysisError(f"{filepath} does not contain an AnalysisObject (got {type(analysis).__name__}).")
    return analysis
