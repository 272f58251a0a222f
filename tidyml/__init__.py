from tidyml.config import AnalysisConfig
from tidyml.state import AnalysisObject
from tidyml.preprocessing import preprocessing
from tidyml.model_trainer import build_model, fine_tuning
from tidyml.sensitivity import sensitivity_analysis, Method
from tidyml.datasets import sim_data

__version__ = "0.1.0"
