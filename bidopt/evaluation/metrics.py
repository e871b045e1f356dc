from typing import Sequence

import numpy as np


def population_variance(values: Sequence[float]) -> float:
    """Population variance (ddof=0). Empty input has zero variance."""
    if len(values) == 0:
        return 0.0
    return float(np.var(np.asarray(values, dtype=float)))


def coefficient_of_variation(values: Sequence[float], floor: float = 1.0) -> float:
    """
    Standard deviation over mean, with the mean floored at `floor`
    so sparse click series do not explode the ratio.
    """
    if len(values) == 0:
        return 0.0
    arr = np.asarray(values, dtype=float)
    return float(np.std(arr) / max(float(np.mean(arr)), floor))


def r_squared(y_true: Sequence[float], y_pred: Sequence[float]) -> float:
    """
    Coefficient of determination. Returns 0.0 when the target is constant.
    Not clamped; callers clamp where a bounded score is required.
    """
    y_true = np.asarray(y_true, dtype=float)
    y_pred = np.asarray(y_pred, dtype=float)
    if len(y_true) == 0:
        return 0.0

    ss_tot = np.sum((y_true - np.mean(y_true)) ** 2)
    if ss_tot == 0:
        return 0.0
    ss_res = np.sum((y_true - y_pred) ** 2)
    return float(1.0 - ss_res / ss_tot)
