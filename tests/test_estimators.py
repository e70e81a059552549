import numpy as np
import pandas as pd
import pytest

from irrmap.errors import DataIntegrityError
from irrmap.estimators import (DirectRatioEstimator, MRPEstimator, PoststratifiedEstimate,
                               poststratification_table, poststratify)
from irrmap.hierarchical import FittedHierarchicalModel

from conftest import AREA_RATES


def exact_model(rates, intercept=-0.5):
    """Model whose per area coefficients reproduce ``rates`` with a zero slope"""
    rates = np.asarray(rates)
    u = np.log(rates / (1 - rates)) - intercept
    areas = pd.DataFrame({'n': 20, 'u': u, 'u_se': 0.1},
                         index=pd.Index(np.arange(1, len(rates) + 1), name='area_id'))
    return FittedHierarchicalModel(intercept=intercept, slope=0.0, intercept_se=0.1,
                                   slope_se=0.1, cov=np.array([[1.0]]), areas=areas,
                                   loglik=-100.0, n_obs=100)


def test_mrp_recovers_area_rates(area_table):
    est = poststratify('table', area_table)
    np.testing.assert_allclose(est.rates['adjusted'], AREA_RATES)
    assert est.proportion == pytest.approx(np.mean(AREA_RATES))
    assert est.n_areas == 5 and est.n_omitted == 0


def test_mrp_recovers_population_weighted_rate(area_table):
    area_table['cropland_area'] = [50., 100., 150., 200., 500.]
    est = poststratify('table', area_table, weight='cropland_area')
    expected = np.average(AREA_RATES, weights=area_table['cropland_area'])
    assert est.proportion == pytest.approx(expected, rel=1e-12)
    assert est.cropland_area == pytest.approx(1000.)
    assert est.total == pytest.approx(expected * 1000.)


def test_mrp_from_fitted_model(area_table):
    model = exact_model(AREA_RATES)
    est = poststratify(model, area_table.drop(columns=['intercept', 'slope']))
    assert est.proportion == pytest.approx(np.mean(AREA_RATES))
    np.testing.assert_allclose(est.rates['intercept'], area_table['intercept'].to_numpy())


def test_mrp_omits_areas_without_coefficients(area_table):
    model = exact_model(AREA_RATES[:4])
    est = MRPEstimator(model).estimate(area_table)
    assert est.n_omitted == 1
    assert est.omitted == (5,)
    assert est.proportion == pytest.approx(np.mean(AREA_RATES[:4]))


def test_direct_adjustment_reduces_to_reference_ratio(area_table):
    area_table['n_irrigated'] = [1, 7, 3, 9, 12]
    area_table['n_other'] = [19, 13, 17, 11, 8]
    est = poststratify(None, area_table)
    rates = est.rates
    np.testing.assert_allclose(rates['adjusted'], rates['roi'])
    np.testing.assert_allclose(rates['weight'] * rates['sample'], rates['roi'])
    assert est.proportion == pytest.approx(np.mean(AREA_RATES))


def test_direct_adjustment_with_zero_survey_rate(area_table):
    area_table['n_irrigated'] = [0, 4, 6, 8, 10]
    est = DirectRatioEstimator().estimate(area_table)
    assert est.rates.loc[1, 'adjusted'] == pytest.approx(0.1)
    assert est.n_omitted == 0


def test_zero_count_areas_are_omitted(area_table, caplog):
    area_table.loc[area_table['area_id'] == 3, ['n_irrigated', 'n_other']] = 0
    with caplog.at_level('WARNING', logger='irrmap.estimators'):
        est = poststratify(None, area_table)
    assert est.n_omitted == 1
    assert est.omitted == (3,)
    assert est.n_areas == 4
    assert est.n_surveyed == 80
    assert est.cropland_area == pytest.approx(400.)
    assert 'Omitting 1 small areas' in caplog.text


def test_confidence_interval(area_table):
    est95 = poststratify(None, area_table, confidence=0.95)
    est99 = poststratify(None, area_table, confidence=0.99)
    p = est95.proportion
    assert est95.se == pytest.approx(np.sqrt(p * (1 - p) / 100))
    assert est95.upper - p == pytest.approx(p - est95.lower)
    assert est95.upper - p == pytest.approx(1.959964 * est95.se, rel=1e-5)
    assert est99.lower <= est95.lower and est99.upper >= est95.upper
    assert est95.total_lower <= est95.total <= est95.total_upper


def test_estimation_is_repeatable(area_table):
    a = poststratify('table', area_table).to_dict()
    b = poststratify('table', area_table).to_dict()
    assert a == b
    assert 'rates' not in a
    assert a['omitted'] == []


def test_all_areas_unsurveyed_raises(area_table):
    area_table[['n_irrigated', 'n_other']] = 0
    with pytest.raises(DataIntegrityError):
        poststratify(None, area_table)


def test_table_validation(area_table):
    with pytest.raises(DataIntegrityError, match='cropland_area'):
        poststratify(None, area_table.drop(columns=['cropland_area']))
    with pytest.raises(DataIntegrityError, match='duplicated'):
        poststratify(None, pd.concat([area_table, area_table.iloc[:1]]))
    with pytest.raises(DataIntegrityError, match='irrigated_area'):
        poststratify(None, area_table.drop(columns=['irrigated_area']))
    with pytest.raises(TypeError):
        poststratify(42, area_table)


def test_estimate_result_type(area_table):
    est = poststratify(None, area_table)
    assert isinstance(est, PoststratifiedEstimate)
    assert est.confidence == 0.95


def test_poststratification_table():
    summary = pd.DataFrame({'land_area': [10., 20., 30.],
                            'cropland_area': [5., 10., 15.],
                            'mean_score': [0.1, 0.5, 0.9]},
                           index=pd.Index([1, 2, 3], name='area_id'))
    counts = pd.DataFrame({'n_irrigated': [2, 1], 'n_other': [3, 4]},
                          index=pd.Index([1, 3], name='area_id'))
    names = pd.Series(['Arua', 'Gulu', 'Lira'], index=[1, 2, 3])
    table = poststratification_table(summary, counts, names=names,
                                     model=exact_model([0.2, 0.3, 0.4]))
    assert table['area_id'].tolist() == [1, 2, 3]
    assert table['name'].tolist() == ['Arua', 'Gulu', 'Lira']
    assert table['n_irrigated'].tolist() == [2, 0, 1]
    assert table['n_other'].tolist() == [3, 0, 4]
    assert {'intercept', 'slope'} <= set(table.columns)
    est = poststratify('table', table)
    assert est.omitted == (2,)
    assert est.proportion == pytest.approx(0.3)


def test_poststratification_table_rejects_unknown_areas():
    summary = pd.DataFrame({'cropland_area': [5.]}, index=pd.Index([1], name='area_id'))
    counts = pd.DataFrame({'n_irrigated': [1], 'n_other': [1]}, index=[9])
    with pytest.raises(DataIntegrityError, match='unknown small areas'):
        poststratification_table(summary, counts)


def test_mrp_counts_model_areas_missing_from_table(area_table, caplog):
    model = exact_model(AREA_RATES + [0.6, 0.7])
    with caplog.at_level('WARNING', logger='irrmap.estimators'):
        est = MRPEstimator(model).estimate(area_table)
    assert est.n_omitted == 2
    assert est.omitted == (6, 7)
    assert est.n_areas == 5
    assert est.proportion == pytest.approx(np.mean(AREA_RATES))
    assert 'Omitting 2 small areas' in caplog.text


def test_table_rejects_empty_cropland_in_surveyed_area(area_table):
    area_table.loc[area_table['area_id'] == 1, 'cropland_area'] = 0.
    with pytest.raises(DataIntegrityError, match='Cropland area must be positive'):
        poststratify(None, area_table)
    with pytest.raises(DataIntegrityError, match='Cropland area must be positive'):
        poststratify('table', area_table)


def test_table_rejects_irrigated_area_above_cropland(area_table):
    area_table.loc[area_table['area_id'] == 2, 'irrigated_area'] = 150.
    with pytest.raises(DataIntegrityError, match='exceeds cropland'):
        poststratify(None, area_table)


def test_unsurveyed_area_without_cropland_is_omitted(area_table):
    rows = area_table['area_id'] == 4
    area_table.loc[rows, ['cropland_area', 'irrigated_area']] = 0.
    area_table.loc[rows, ['n_irrigated', 'n_other']] = 0
    est = poststratify(None, area_table)
    assert est.omitted == (4,)
    assert np.isfinite(est.proportion)
