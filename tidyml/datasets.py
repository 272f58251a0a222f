import numpy as np
import pandas as pd

POLYTOMOUS_LEVELS = ["Low", "Somewhat", "Quite a bit", "Very much"]

# Correlation of each predictor with psychological wellbeing
_CORRELATIONS = {
    'emot_intel': 0.50,
    'resilience': 0.40,
    'life_sat': 0.60,
    'depression': -0.80,
    'age': 0.15,
}

# (mean, sd, low, high) on the reported scale
_SCALES = {
    'psych_well': (50.22, 24.45, 0, 100),
    'age': (51.63, 17.11, 18, 85),
    'emot_intel': (71.97, 23.79, 24, 120),
    'resilience': (11.93, 4.46, 4, 20),
    'depression': (31.45, 14.85, 0, 63),
    'life_sat': (20.09, 7.42, 5, 35),
}


def _rescale(z: np.ndarray, name: str) -> np.ndarray:
    mean, sd, low, high = _SCALES[name]
    return np.clip(np.round(mean + sd * z), low, high)


def sim_data(n_samples: int = 1000, random_state: int = 42) -> pd.DataFrame:
    """
    Simulated psychological wellbeing survey.

    `psych_well` (0-100) is the continuous outcome; `psych_well_bin`
    ("Low"/"High", split at the median) and `psych_well_pol` (quartiles, four
    levels) are its binary and polytomous versions. Emotional intelligence,
    resilience, life satisfaction and age are positively correlated with the
    outcome, depression strongly negatively; gender and socioeconomic status
    are unrelated to it.
    """
    rng = np.random.default_rng(random_state)
    latent = rng.standard_normal(n_samples)

    df = pd.DataFrame({'psych_well': _rescale(latent, 'psych_well')})
    df['psych_well_bin'] = np.where(df['psych_well'] > df['psych_well'].median(), "High", "Low")
    df['psych_well_pol'] = pd.qcut(df['psych_well'].rank(method='first'), 4, labels=POLYTOMOUS_LEVELS).astype(str)

    df['gender'] = rng.choice(["Female", "Male"], size=n_samples, p=[0.507, 0.493])
    df['socioec_status'] = rng.choice(["Low", "Medium", "High"], size=n_samples, p=[0.343, 0.347, 0.310])

    for name in ['age', 'emot_intel', 'resilience', 'depression', 'life_sat']:
        r = _CORRELATIONS[name]
        z = r * latent + np.sqrt(1 - r ** 2) * rng.standard_normal(n_samples)
        df[name] = _rescale(z, name)

    return df[['psych_well', 'psych_well_bin', 'psych_well_pol', 'gender', 'age', 'socioec_status',
               'emot_intel', 'resilience', 'depression', 'life_sat']]
