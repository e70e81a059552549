import numpy as np
import pandas as pd
import pytest
import xarray as xr
from shapely.geometry import Point, box, mapping

from irrmap.errors import SamplingError
from irrmap.sampling import (RESOLUTIONS, cell_bounds, cube, cube_sample, grid_id,
                             grid_ids, sampling_frame)


@pytest.fixture
def roi():
    """Disc shaped region of interest on a 60 x 60 grid of 1 km cells"""
    n = 60
    x = 480500. + 1000. * np.arange(n)
    y = 130500. - 1000. * np.arange(n)
    xx, yy = np.meshgrid(x, y)
    inside = (xx - x.mean()) ** 2 + (yy - y.mean()) ** 2 < (25000.) ** 2
    return xr.DataArray(inside, dims=('y', 'x'), coords={'y': y, 'x': x})


@pytest.mark.parametrize('seed', [0, 1, 2, 3, 4])
def test_sample_size_and_balance(roi, seed):
    sample = cube_sample(roi, 120, seed=seed)
    assert len(sample) == 120
    assert not sample[['row', 'col']].duplicated().any()
    assert roi.values[sample['row'], sample['col']].all()
    xx, yy = np.meshgrid(roi['x'].values, roi['y'].values)
    mask = roi.values
    # balanced within two cells of the population mean coordinates
    assert abs(sample['x'].mean() - xx[mask].mean()) < 2000
    assert abs(sample['y'].mean() - yy[mask].mean()) < 2000


def test_sample_is_deterministic(roi):
    a = cube_sample(roi, 50, seed=9)
    b = cube_sample(roi, 50, seed=9)
    pd.testing.assert_frame_equal(a, b)
    c = cube_sample(roi, 50, seed=10)
    assert not a[['row', 'col']].equals(c[['row', 'col']])


def test_coordinates_match_cells(roi):
    sample = cube_sample(roi, 10, seed=0)
    np.testing.assert_array_equal(sample['x'], roi['x'].values[sample['col']])
    np.testing.assert_array_equal(sample['y'], roi['y'].values[sample['row']])


def test_empty_and_impossible_requests(roi):
    empty = cube_sample(roi, 0, seed=0)
    assert empty.empty
    assert list(empty.columns) == ['x', 'y', 'row', 'col']
    n_cells = int(roi.values.sum())
    with pytest.raises(SamplingError):
        cube_sample(roi, n_cells + 1, seed=0)
    with pytest.raises(SamplingError):
        cube_sample(roi, -1, seed=0)


def test_census_selects_every_cell(roi):
    n_cells = int(roi.values.sum())
    sample = cube_sample(roi, n_cells, seed=0)
    assert len(sample) == n_cells


def test_numpy_mask_uses_indices():
    mask = np.zeros((10, 10), dtype=bool)
    mask[2:8, 3:9] = True
    sample = cube_sample(mask, 6, seed=2)
    assert len(sample) == 6
    assert (sample['x'] == sample['col']).all()
    assert sample['row'].between(2, 7).all()


def test_cube_preserves_inclusion_probabilities():
    pik = np.full(20, 0.25)
    X = np.column_stack([pik, np.linspace(0, 1, 20)])
    counts = np.zeros(20)
    for seed in range(400):
        s = cube(pik, X, seed=seed)
        assert s.sum() == 5
        counts += s
    np.testing.assert_allclose(counts / 400, pik, atol=0.1)


def test_cube_rejects_invalid_probabilities():
    with pytest.raises(SamplingError):
        cube(np.array([0.5, 1.5]), np.ones((2, 1)))


def test_grid_id_signs_and_indices():
    assert grid_id(1.0, 1.0, 100000) == 'E1N1'
    assert grid_id(-250000.0, -0.5, 100000) == 'W3S1'
    assert grid_id(100000.0, 200000.0, 100000) == 'E1N2'
    ids = grid_id(np.array([12500.1, -12500.1]), np.array([5.0, 5.0]), 12500)
    assert ids.tolist() == ['E2N1', 'W2N1']


def test_grid_ids_columns():
    frame = grid_ids([512345.0], [-34567.0])
    assert list(frame.columns) == [f"gid_{r}" for r in RESOLUTIONS]
    assert frame.iloc[0].tolist() == ['E6S1', 'E11S1', 'E21S2', 'E41S3']


def test_grid_ids_are_nested():
    rng = np.random.default_rng(5)
    x = rng.uniform(-600000, 600000, 200)
    y = rng.uniform(-400000, 400000, 200)
    ids = grid_ids(x, y, RESOLUTIONS)
    for i in range(len(x)):
        point = Point(x[i], y[i])
        for coarse, fine in zip(RESOLUTIONS[:-1], RESOLUTIONS[1:]):
            outer = box(*cell_bounds(ids[f"gid_{coarse}"][i], coarse))
            inner = box(*cell_bounds(ids[f"gid_{fine}"][i], fine))
            assert outer.covers(inner)
            assert inner.covers(point)


def test_cell_bounds_rejects_malformed_ids():
    with pytest.raises(ValueError):
        cell_bounds('X1N1', 1000)


def test_sampling_frame(roi):
    sample = cube_sample(roi, 20, seed=0)
    west = {'type': 'Feature', 'properties': {'area_id': 'west'},
            'geometry': mapping(box(450000, 50000, 505000, 150000))}
    east = {'type': 'Feature', 'properties': {'area_id': 'east'},
            'geometry': mapping(box(505000, 50000, 520000, 150000))}
    frame = sampling_frame(sample, 'EPSG:32636', areas=[west, east])
    assert len(frame) == 20
    # UTM zone 36N near the equator, around Uganda
    assert frame['lon'].between(32.5, 33.5).all()
    assert frame['lat'].between(0.5, 1.5).all()
    assert {f"gid_{r}" for r in RESOLUTIONS} <= set(frame.columns)
    expected = np.where(frame['x'] < 505000, 'west', np.where(frame['x'] <= 520000, 'east', None))
    assert frame['area_id'].tolist() == expected.tolist()


def test_sampling_frame_unmatched_locations():
    sample = pd.DataFrame({'x': [500000., 900000.], 'y': [100000., 100000.]})
    area = {'type': 'Feature', 'properties': {'area_id': 7},
            'geometry': mapping(box(490000, 90000, 510000, 110000))}
    frame = sampling_frame(sample, 'EPSG:32636', resolutions=[50000], areas=[area])
    assert frame['area_id'].tolist()[0] == 7
    assert pd.isna(frame['area_id'].iloc[1])
    assert list(frame.columns[-2:]) == ['gid_50000', 'area_id']
