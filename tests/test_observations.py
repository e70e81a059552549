import numpy as np
import pandas as pd
import pytest
import xarray as xr

from irrmap.errors import DataIntegrityError
from irrmap.observations import ObservationStore, extract_covariates


def test_store_encodes_labels(observations, calibration_table):
    assert len(observations) == len(calibration_table)
    assert observations.n_dropped == 0
    expected = (calibration_table['irrigated'] == 'Y').astype(int).tolist()
    assert observations.labels().tolist() == expected
    assert list(observations.features().columns) == ['crp', 'ppt']


def test_store_drops_incomplete_rows(calibration_table):
    calibration_table.loc[[3, 7], 'ppt'] = np.nan
    store = ObservationStore(calibration_table, covariates=['crp', 'ppt'],
                             label='irrigated', positive_label='Y')
    assert store.n_dropped == 2
    assert len(store) == 98
    assert not store.features().isna().any().any()


def test_missing_column_raises(calibration_table):
    with pytest.raises(DataIntegrityError, match='elev'):
        ObservationStore(calibration_table, covariates=['crp', 'elev'],
                         label='irrigated', positive_label='Y')


def test_duplicated_key_raises(calibration_table):
    calibration_table.loc[1, 'unit_id'] = 0
    with pytest.raises(DataIntegrityError, match='non-unique'):
        ObservationStore(calibration_table, covariates=['crp'],
                         label='irrigated', positive_label='Y')


def test_label_levels_are_checked(calibration_table):
    with pytest.raises(DataIntegrityError, match='Positive label'):
        ObservationStore(calibration_table, covariates=['crp'],
                         label='irrigated', positive_label='yes')
    calibration_table.loc[0, 'irrigated'] = 'maybe'
    with pytest.raises(DataIntegrityError, match='exactly two levels'):
        ObservationStore(calibration_table, covariates=['crp'],
                         label='irrigated', positive_label='Y')


def test_explicit_levels_allow_single_observed_level(calibration_table):
    table = calibration_table.assign(irrigated='N')
    store = ObservationStore(table, covariates=['crp'], label='irrigated',
                             positive_label='Y', levels=('Y', 'N'))
    assert store.labels().sum() == 0


def test_split_is_stratified_and_seeded(observations):
    cal, val = observations.split(validation_size=0.2, seed=3)
    assert len(cal) == 80 and len(val) == 20
    assert val['target'].sum() == 10
    assert set(cal['unit_id']).isdisjoint(val['unit_id'])
    cal2, val2 = observations.split(validation_size=0.2, seed=3)
    assert val['unit_id'].tolist() == val2['unit_id'].tolist()


def test_counts_by_area(observations, calibration_table):
    counts = observations.counts_by_area()
    assert counts[['n_irrigated', 'n_other']].to_numpy().sum() == len(calibration_table)
    assert counts['n_irrigated'].sum() == 50


def test_check_areas(observations):
    observations.check_areas([1, 2, 3, 4, 5])
    with pytest.raises(DataIntegrityError, match='cannot be matched'):
        observations.check_areas([1, 2, 3])


def test_extract_covariates_masks_nodata():
    ds = xr.Dataset({'elev': (('y', 'x'), np.array([[1., -9999.], [3., 4.]]))},
                    coords={'y': [15., 5.], 'x': [5., 15.]})
    ds['elev'] = ds['elev'].rio.write_nodata(-9999.)
    points = pd.DataFrame({'x': [5., 15., 14.], 'y': [5., 15., 6.]}, index=[10, 11, 12])
    out = extract_covariates(points, ds)
    assert out.index.tolist() == [10, 11, 12]
    assert out.loc[10, 'elev'] == 3.
    assert np.isnan(out.loc[11, 'elev'])
    assert out.loc[12, 'elev'] == 4.


def test_missing_area_identifier_raises(calibration_table):
    calibration_table['area_id'] = calibration_table['area_id'].astype(float)
    calibration_table.loc[[2, 40, 81], 'area_id'] = np.nan
    with pytest.raises(DataIntegrityError, match='3 observations have no small area'):
        ObservationStore(calibration_table, covariates=['crp', 'ppt'],
                         label='irrigated', positive_label='Y')
