"""Labelled survey observations and their raster covariates

The store is built from a table with one row per surveyed unit. Columns are
always accessed by name; a table whose schema does not carry the declared
columns is rejected at construction rather than silently read at the wrong
position. Records with incomplete covariates are dropped (and counted) before
any model sees them.
"""
from dataclasses import dataclass, field
from typing import List, Any, Optional, Tuple, Iterable
import logging

import numpy as np
import pandas as pd
import xarray as xr
import rioxarray  # noqa: F401
from sklearn.model_selection import train_test_split

from irrmap.errors import DataIntegrityError
from irrmap.utils import validate_columns

logger = logging.getLogger(__name__)


@dataclass
class ObservationStore:
    """Container of labelled observations with validated schema

    Args:
        data (pd.DataFrame): Survey table, one row per unit
        covariates (list): Names of the covariate columns used as features
        label (str): Name of the column holding the two-level label
        positive_label: Label level encoded as 1 (e.g. ``'Y'`` for irrigated)
        key (str): Unique unit identifier column
        area (str): Small area identifier column
        levels (tuple): Optional explicit pair of admissible label levels.
            Inferred from the data when omitted

    Attributes:
        data (pd.DataFrame): Cleaned table with an additional integer ``target``
            column
        n_dropped (int): Number of records removed for incomplete covariates

    Examples:
        >>> import pandas as pd
        >>> df = pd.DataFrame({'unit_id': [1, 2, 3, 4],
        ...                    'area_id': ['a', 'a', 'b', 'b'],
        ...                    'irrigated': ['Y', 'N', 'Y', 'N'],
        ...                    'ndvi': [0.8, 0.2, None, 0.1]})
        >>> store = ObservationStore(df, covariates=['ndvi'], label='irrigated',
        ...                          positive_label='Y')
        >>> store.n_dropped
        1
        >>> store.labels().tolist()
        [1, 0, 0]
        >>> store.counts_by_area().to_dict("index")
        {'a': {'n_irrigated': 1, 'n_other': 1}, 'b': {'n_irrigated': 0, 'n_other': 1}}
    """
    data: pd.DataFrame
    covariates: List[str]
    label: str
    positive_label: Any
    key: str = 'unit_id'
    area: str = 'area_id'
    levels: Optional[Tuple[Any, Any]] = None
    n_dropped: int = field(init=False, default=0)

    def __post_init__(self):
        self.covariates = list(self.covariates)
        validate_columns(self.data, [self.key, self.area, self.label] + self.covariates,
                         'observations')
        self._validate_unique_key(self.data, self.key)
        if self.data[self.area].isna().any():
            n = int(self.data[self.area].isna().sum())
            raise DataIntegrityError(
                f"{n} observations have no small area identifier in '{self.area}'")
        data = self.data.copy()
        target = self._encode_label(data[self.label])
        data['target'] = target
        incomplete = data[self.covariates].isna().any(axis=1)
        self.n_dropped = int(incomplete.sum())
        if self.n_dropped:
            logger.warning("Dropping %d observations with missing covariates",
                           self.n_dropped)
        self.data = data.loc[~incomplete].reset_index(drop=True)

    @staticmethod
    def _validate_unique_key(df: pd.DataFrame, key: str):
        if df[key].duplicated().any():
            dups = df.loc[df[key].duplicated(), key].unique().tolist()
            raise DataIntegrityError(f"Key '{key}' contains non-unique values: {dups[:10]}")

    def _encode_label(self, values: pd.Series) -> np.ndarray:
        if values.isna().any():
            raise DataIntegrityError(f"Label column '{self.label}' contains missing values")
        observed = set(values.unique())
        levels = set(self.levels) if self.levels is not None else observed
        if len(levels) != 2:
            raise DataIntegrityError(
                f"Label column '{self.label}' must have exactly two levels, got {sorted(map(str, levels))}")
        if self.positive_label not in levels:
            raise DataIntegrityError(
                f"Positive label {self.positive_label!r} is not a level of '{self.label}'")
        unexpected = observed - levels
        if unexpected:
            raise DataIntegrityError(
                f"Label column '{self.label}' contains unexpected levels: {sorted(map(str, unexpected))}")
        return (values == self.positive_label).astype(int).to_numpy()

    def __len__(self):
        return len(self.data)

    def features(self, frame: Optional[pd.DataFrame] = None) -> pd.DataFrame:
        """Covariate matrix (named columns) of ``frame`` or of the whole store"""
        frame = self.data if frame is None else frame
        return frame[self.covariates]

    def labels(self, frame: Optional[pd.DataFrame] = None) -> pd.Series:
        """Encoded 0/1 labels of ``frame`` or of the whole store"""
        frame = self.data if frame is None else frame
        return frame['target']

    def split(self, validation_size: float = 0.2,
              seed: Optional[int] = None) -> Tuple[pd.DataFrame, pd.DataFrame]:
        """Label stratified random partition into calibration and validation sets

        Args:
            validation_size (float): Proportion of units held out for validation
            seed (int): Random seed; identical seeds give identical partitions

        Returns:
            tuple: ``(calibration, validation)`` DataFrames
        """
        cal, val = train_test_split(self.data,
                                    test_size=validation_size,
                                    stratify=self.data['target'],
                                    random_state=seed)
        return cal, val

    def counts_by_area(self) -> pd.DataFrame:
        """Surveyed irrigated / non irrigated counts per small area"""
        grouped = self.data.groupby(self.area)['target']
        counts = pd.DataFrame({'n_irrigated': grouped.sum(),
                               'n_other': grouped.count() - grouped.sum()})
        return counts.astype(int)

    def check_areas(self, known: Iterable[Any]):
        """Fail if any observation refers to a small area outside ``known``"""
        known = set(known)
        unmatched = sorted(set(self.data[self.area]) - known, key=str)
        if unmatched:
            raise DataIntegrityError(
                f"{len(unmatched)} small area identifiers cannot be matched: {unmatched[:10]}")


def extract_covariates(points: pd.DataFrame, stack: xr.Dataset,
                       x: str = 'x', y: str = 'y') -> pd.DataFrame:
    """Sample a covariate stack at point locations (nearest cell)

    Args:
        points (pd.DataFrame): Table with projected coordinates columns
        stack (xr.Dataset): Covariate stack, one variable per covariate, with
            ``x`` and ``y`` dimensions in the same CRS as ``points``
        x, y (str): Coordinate column names in ``points``

    Returns:
        pd.DataFrame: One column per stack variable, indexed like ``points``.
        Points falling on no-data cells get NaN.

    Examples:
        >>> import numpy as np
        >>> import pandas as pd
        >>> import xarray as xr
        >>> ds = xr.Dataset({'elev': (('y', 'x'), np.arange(6.).reshape(2, 3))},
        ...                 coords={'y': [15., 5.], 'x': [5., 15., 25.]})
        >>> pts = pd.DataFrame({'x': [4., 24.], 'y': [14., 6.]})
        >>> extract_covariates(pts, ds)['elev'].tolist()
        [0.0, 5.0]
    """
    validate_columns(points, [x, y], 'points')
    xs = xr.DataArray(points[x].to_numpy(), dims='point')
    ys = xr.DataArray(points[y].to_numpy(), dims='point')
    sampled = stack.sel(x=xs, y=ys, method='nearest')
    out = {}
    for name, da in sampled.data_vars.items():
        values = np.asarray(da.values, dtype=np.float64)
        nodata = stack[name].rio.nodata
        if nodata is not None and not np.isnan(nodata):
            values = np.where(values == nodata, np.nan, values)
        out[name] = values
    return pd.DataFrame(out, index=points.index)


if __name__ == "__main__":
    import doctest
    doctest.testmod()
