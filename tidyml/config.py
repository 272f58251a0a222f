import os
from dataclasses import dataclass
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

@dataclass(frozen=True)
class AnalysisConfig:
    """Configuration for the pipeline stages and the sensitivity analysis."""
    # Data validation
    max_missing_percentage: float = float(os.getenv("MAX_MISSING_PERCENTAGE", 0.40))
    min_samples_absolute: int = int(os.getenv("MIN_SAMPLES_ABSOLUTE", 30))

    # Splitting (test gets the remainder)
    train_fraction: float = float(os.getenv("TRAIN_FRACTION", 0.6))
    validation_fraction: float = float(os.getenv("VALIDATION_FRACTION", 0.2))
    random_seed: int = int(os.getenv("RANDOM_SEED", 42))

    # Tuning
    cv_folds: int = int(os.getenv("CV_FOLDS", 5))
    n_iter: int = int(os.getenv("TUNING_ITERATIONS", 10))
    grid_levels: int = int(os.getenv("GRID_LEVELS", 3))
    n_jobs: int = int(os.getenv("N_JOBS", 1))

    # Sensitivity analysis
    pfi_repetitions: int = int(os.getenv("PFI_REPETITIONS", 10))
    shap_background_size: int = int(os.getenv("SHAP_BACKGROUND_SIZE", 50))
    shap_nsamples: int = int(os.getenv("SHAP_NSAMPLES", 200))
    ig_steps: int = int(os.getenv("IG_STEPS", 50))
    ig_baseline: str = os.getenv("IG_BASELINE", "zero")
    sobol_samples: int = int(os.getenv("SOBOL_SAMPLES", 1000))
    sobol_bootstrap: int = int(os.getenv("SOBOL_BOOTSTRAP", 100))
