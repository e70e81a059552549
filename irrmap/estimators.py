"""
Poststratified estimators of the irrigated share of a region of interest.

Both estimators share the same aggregation: per small area adjusted rates are
averaged over the areas that have surveyed units and are present in the
poststratification table; the standard error uses the binomial approximation
over the total number of surveyed units; the confidence interval is symmetric
(normal approximation); area totals scale the proportion and its bounds by the
summed cropland area of the included areas.

Small areas that cannot be estimated (no surveyed unit, no model coefficients)
are omitted, counted and reported; they are never treated as zero.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, fields
from typing import Dict, Optional, Any, Tuple, Union
import logging

import numpy as np
import pandas as pd

from irrmap.errors import DataIntegrityError
from irrmap.hierarchical import FittedHierarchicalModel
from irrmap.utils import expit, validate_columns, z_score

logger = logging.getLogger(__name__)

TABLE_COLUMNS = ['cropland_area', 'n_irrigated', 'n_other']


@dataclass(frozen=True, eq=False)
class PoststratifiedEstimate:
    """Region of interest wide estimate

    Attributes:
        proportion (float): Estimated irrigated share of cropland
        se (float): Standard error of ``proportion``
        lower, upper (float): Confidence bounds of ``proportion``
        confidence (float): Confidence level of the bounds
        total, total_lower, total_upper (float): Irrigated area and bounds, in
            the units of the table's ``cropland_area``
        cropland_area (float): Summed cropland area of the included areas
        n_areas (int): Number of small areas included
        n_surveyed (int): Number of surveyed units in the included areas
        n_omitted (int): Number of small areas omitted
        omitted (tuple): Identifiers of the omitted small areas
        rates (pd.DataFrame): Per area rates of the included areas
    """
    proportion: float
    se: float
    lower: float
    upper: float
    confidence: float
    total: float
    total_lower: float
    total_upper: float
    cropland_area: float
    n_areas: int
    n_surveyed: int
    n_omitted: int
    omitted: Tuple[Any, ...] = ()
    rates: pd.DataFrame = field(default=None, repr=False)

    def to_dict(self) -> Dict[str, Any]:
        d = {f.name: getattr(self, f.name) for f in fields(self) if f.name != 'rates'}
        d['omitted'] = list(self.omitted)
        return d


def _prepare_table(table: pd.DataFrame, key: str) -> pd.DataFrame:
    if key in table.columns:
        table = table.set_index(key)
    elif table.index.name != key:
        raise DataIntegrityError(f"Poststratification table has no '{key}' column or index")
    validate_columns(table, TABLE_COLUMNS, 'poststratification table')
    if table.index.duplicated().any():
        raise DataIntegrityError("Poststratification table has duplicated small areas")
    if (table[['n_irrigated', 'n_other']] < 0).any().any():
        raise DataIntegrityError("Survey counts must be non negative")
    cropland = table['cropland_area']
    surveyed = (table['n_irrigated'] + table['n_other']) > 0
    invalid = cropland.isna() | (cropland < 0) | (surveyed & (cropland == 0))
    if invalid.any():
        raise DataIntegrityError(
            f"Cropland area must be positive in surveyed small areas: {table.index[invalid].tolist()[:10]}")
    if 'irrigated_area' in table.columns:
        exceeds = table['irrigated_area'] > cropland
        if exceeds.any():
            raise DataIntegrityError(
                f"Irrigated area exceeds cropland area in small areas: {table.index[exceeds].tolist()[:10]}")
    return table


class BaseEstimator(ABC):
    """Abstract strategy for poststratified estimation

    Subclasses only define how the adjusted rate of each small area is obtained;
    exclusion rules and aggregation are common to all estimators.

    Args:
        key (str): Small area identifier column (or index name) of the table
    """
    required = []

    def __init__(self, key: str = 'area_id'):
        self.key = key

    @abstractmethod
    def area_rates(self, table: pd.DataFrame) -> pd.DataFrame:
        """Per area rates, with at least an ``adjusted`` column

        Args:
            table (pd.DataFrame): Validated table, indexed by small area, already
                restricted to areas with surveyed units

        Returns:
            pd.DataFrame: Indexed like ``table``. Rows with NaN ``adjusted``
            are omitted from the estimate
        """
        pass

    def unmatched(self, table: pd.DataFrame) -> list:
        """Small areas known to the estimator but absent from ``table``"""
        return []

    def estimate(self, table: pd.DataFrame, confidence: float = 0.95,
                 weight: Optional[str] = None) -> PoststratifiedEstimate:
        """Aggregate per area rates into a region of interest estimate

        Args:
            table (pd.DataFrame): Poststratification table, one row per small area
            confidence (float): Confidence level of the interval
            weight (str): Optional table column used to weight the per area
                rates (e.g. ``'cropland_area'``). Unweighted mean when None

        Returns:
            PoststratifiedEstimate
        """
        table = _prepare_table(table, self.key)
        validate_columns(table, self.required, 'poststratification table')
        n_survey = table['n_irrigated'] + table['n_other']
        surveyed = table.loc[n_survey > 0]
        omitted = table.index[n_survey <= 0].tolist()
        omitted += self.unmatched(table)

        rates = self.area_rates(surveyed)
        unusable = rates['adjusted'].isna()
        omitted += rates.index[unusable].tolist()
        rates = rates.loc[~unusable]
        included = surveyed.loc[rates.index]
        if omitted:
            logger.warning("Omitting %d small areas from the estimate: %s",
                           len(omitted), omitted[:10])
        if rates.empty:
            raise DataIntegrityError("No small area with surveyed units can be estimated")

        if weight is None:
            p = float(rates['adjusted'].mean())
        else:
            validate_columns(included, [weight], 'poststratification table')
            p = float(np.average(rates['adjusted'], weights=included[weight]))
        n = int((included['n_irrigated'] + included['n_other']).sum())
        se = float(np.sqrt(p * (1 - p) / n))
        half = z_score(confidence) * se
        cropland = float(included['cropland_area'].sum())
        return PoststratifiedEstimate(proportion=p,
                                      se=se,
                                      lower=p - half,
                                      upper=p + half,
                                      confidence=confidence,
                                      total=p * cropland,
                                      total_lower=(p - half) * cropland,
                                      total_upper=(p + half) * cropland,
                                      cropland_area=cropland,
                                      n_areas=len(rates),
                                      n_surveyed=n,
                                      n_omitted=len(omitted),
                                      omitted=tuple(omitted),
                                      rates=rates)


class DirectRatioEstimator(BaseEstimator):
    """Survey rates reweighted toward a reference irrigated area ratio

    For each small area:

    - ``roi = irrigated_area / cropland_area``
    - ``sample = n_irrigated / (n_irrigated + n_other)``
    - ``weight = roi / sample``
    - ``adjusted = sample * weight``

    The adjustment reduces algebraically to ``adjusted == roi``; the weight is
    kept explicit to document the reweighting mechanism and serves as a
    baseline for the model based estimator. Areas whose survey rate is zero
    have an undefined weight; their adjusted rate is still ``roi``.

    Examples:
        >>> import pandas as pd
        >>> table = pd.DataFrame({'area_id': [1, 2, 3],
        ...                       'cropland_area': [100., 200., 50.],
        ...                       'irrigated_area': [10., 50., 5.],
        ...                       'n_irrigated': [2, 5, 0],
        ...                       'n_other': [8, 15, 0]})
        >>> est = DirectRatioEstimator().estimate(table)
        >>> round(est.proportion, 4), est.n_areas, est.omitted
        (0.175, 2, (3,))
        >>> est.rates['adjusted'].tolist() == est.rates['roi'].tolist()
        True
    """
    required = ['irrigated_area']

    def area_rates(self, table):
        roi = table['irrigated_area'] / table['cropland_area']
        sample = table['n_irrigated'] / (table['n_irrigated'] + table['n_other'])
        with np.errstate(divide='ignore', invalid='ignore'):
            weight = roi / sample
            adjusted = np.where(sample > 0, sample * weight, roi)
        return pd.DataFrame({'roi': roi,
                             'sample': sample,
                             'weight': weight,
                             'adjusted': adjusted},
                            index=table.index)


class MRPEstimator(BaseEstimator):
    """Multilevel regression and poststratification

    Each small area's rate is the inverse logit of its model implied linear
    predictor at the area's mean spatial score:

    ``eta = slope_i * mean_score_i + intercept_i`` and ``adjusted = expit(eta)``

    where ``intercept_i`` and ``slope_i`` are the area's combined (fixed plus
    random) coefficients. They are taken from ``model`` when given (see
    :meth:`FittedHierarchicalModel.coef`), otherwise from the table's
    ``intercept`` and ``slope`` columns. Areas without coefficients are omitted.

    Args:
        model (FittedHierarchicalModel): Optional fitted model
        key (str): Small area identifier column

    Examples:
        >>> import numpy as np
        >>> import pandas as pd
        >>> table = pd.DataFrame({'area_id': ['a', 'b'],
        ...                       'cropland_area': [10., 30.],
        ...                       'mean_score': [0.2, 0.8],
        ...                       'intercept': [0.0, -1.0],
        ...                       'slope': [2.0, 2.0],
        ...                       'n_irrigated': [3, 6],
        ...                       'n_other': [7, 4]})
        >>> est = MRPEstimator().estimate(table)
        >>> rates = est.rates['adjusted'].round(4).tolist()
        >>> rates
        [0.5987, 0.6457]
        >>> bool(np.isclose(est.proportion, np.mean(rates), atol=1e-4))
        True
    """
    required = ['mean_score']

    def __init__(self, model: Optional[FittedHierarchicalModel] = None, key: str = 'area_id'):
        super().__init__(key=key)
        self.model = model

    def unmatched(self, table):
        if self.model is None:
            return []
        return self.model.areas.index.difference(table.index).tolist()

    def coefficients(self, table: pd.DataFrame) -> pd.DataFrame:
        if self.model is not None:
            return self.model.coef().reindex(table.index)
        validate_columns(table, ['intercept', 'slope'], 'poststratification table')
        return table[['intercept', 'slope']]

    def area_rates(self, table):
        coefs = self.coefficients(table)
        eta = coefs['slope'] * table['mean_score'] + coefs['intercept']
        return pd.DataFrame({'intercept': coefs['intercept'],
                             'slope': coefs['slope'],
                             'mean_score': table['mean_score'],
                             'eta': eta,
                             'adjusted': expit(eta)},
                            index=table.index)


def poststratify(source: Union[None, FittedHierarchicalModel, BaseEstimator],
                 table: pd.DataFrame, confidence: float = 0.95,
                 weight: Optional[str] = None, key: str = 'area_id') -> PoststratifiedEstimate:
    """Poststratified estimate from survey rates only, or from a fitted model

    Args:
        source: ``None`` for the direct ratio adjustment, a
            ``FittedHierarchicalModel`` for MRP, or any ``BaseEstimator``
            instance. When ``source`` is ``'table'`` the MRP coefficients are
            read from the table itself
        table (pd.DataFrame): Poststratification table
        confidence (float): Confidence level
        weight (str): Optional weighting column (unweighted mean by default)
        key (str): Small area identifier column

    Returns:
        PoststratifiedEstimate
    """
    if source is None:
        estimator = DirectRatioEstimator(key=key)
    elif isinstance(source, FittedHierarchicalModel):
        estimator = MRPEstimator(model=source, key=key)
    elif isinstance(source, BaseEstimator):
        estimator = source
    elif source == 'table':
        estimator = MRPEstimator(key=key)
    else:
        raise TypeError(f"Unsupported estimation source: {source!r}")
    return estimator.estimate(table, confidence=confidence, weight=weight)


def poststratification_table(summary: pd.DataFrame, counts: pd.DataFrame,
                             names: Optional[pd.Series] = None,
                             model: Optional[FittedHierarchicalModel] = None) -> pd.DataFrame:
    """Assemble a poststratification table from zonal summaries and survey counts

    Args:
        summary (pd.DataFrame): Per area totals indexed by area id (see
            :func:`irrmap.scoring.summarize_areas`)
        counts (pd.DataFrame): Per area ``n_irrigated`` / ``n_other``
            (see :meth:`irrmap.observations.ObservationStore.counts_by_area`)
        names (pd.Series): Optional area names indexed by area id
        model (FittedHierarchicalModel): Optional model whose per area
            coefficients are stored in ``intercept`` / ``slope`` columns

    Returns:
        pd.DataFrame: One row per area of ``summary`` with an ``area_id`` column.
        Areas without surveyed units get zero counts.

    Raises:
        DataIntegrityError: If survey counts refer to areas absent from ``summary``
    """
    validate_columns(counts, ['n_irrigated', 'n_other'], 'survey counts')
    unmatched = counts.index.difference(summary.index)
    if len(unmatched):
        raise DataIntegrityError(
            f"Survey counts refer to {len(unmatched)} unknown small areas: {list(unmatched[:10])}")
    table = summary.copy()
    table.index.name = 'area_id'
    table = table.join(counts[['n_irrigated', 'n_other']], how='left')
    table[['n_irrigated', 'n_other']] = table[['n_irrigated', 'n_other']].fillna(0).astype(int)
    if names is not None:
        table.insert(0, 'name', names.reindex(table.index))
    if model is not None:
        coefs = model.coef()
        table = table.join(coefs, how='left')
    return table.reset_index()


if __name__ == "__main__":
    import doctest
    doctest.testmod(verbose=False)
