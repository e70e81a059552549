"""Small helpers shared by the estimation modules"""
from typing import Iterable

import numpy as np
import pandas as pd
from scipy.special import expit
from scipy.stats import norm

from irrmap.errors import DataIntegrityError


__all__ = ['expit', 'z_score', 'validate_columns', 'finite_rows']


def z_score(confidence: float) -> float:
    """Two sided standard normal quantile for a confidence level

    Args:
        confidence (float): Confidence level in the open interval (0, 1)

    Returns:
        float: The z value such that P(-z < Z < z) == confidence

    Examples:
        >>> round(z_score(0.95), 4)
        1.96
        >>> z_score(0.99) > z_score(0.95)
        True
    """
    if not 0 < confidence < 1:
        raise ValueError(f"confidence must be in (0, 1), got {confidence}")
    return float(norm.ppf(0.5 + confidence / 2))


def validate_columns(df: pd.DataFrame, columns: Iterable[str], what: str = 'table'):
    """Raise a ``DataIntegrityError`` if any named column is absent from ``df``

    Examples:
        >>> import pandas as pd
        >>> validate_columns(pd.DataFrame({'a': [1]}), ['a'])
        >>> validate_columns(pd.DataFrame({'a': [1]}), ['a', 'b'], 'observations')
        Traceback (most recent call last):
        ...
        irrmap.errors.DataIntegrityError: observations is missing required columns: ['b']
    """
    missing = [c for c in columns if c not in df.columns]
    if missing:
        raise DataIntegrityError(f"{what} is missing required columns: {missing}")


def finite_rows(arr: np.ndarray) -> np.ndarray:
    """Boolean mask of the rows of a 2D array that contain only finite values"""
    return np.isfinite(arr).all(axis=1)


if __name__ == "__main__":
    import doctest
    doctest.testmod()
