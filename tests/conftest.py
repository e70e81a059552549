"""
Shared pytest fixtures for irrmap tests.

Synthetic survey observations with one perfectly predictive covariate, a small
projected covariate stack with missing cells, small area zones on the same
grid and a five area poststratification table with known rates.
"""
import numpy as np
import pandas as pd
import pytest
import xarray as xr
import rioxarray
from sklearn.ensemble import RandomForestClassifier
from sklearn.linear_model import LogisticRegression

from irrmap.ensemble import EnsembleConfig, train_ensemble
from irrmap.learners import GridSearchLearner
from irrmap.observations import ObservationStore

CRS = 'EPSG:32636'
AREA_RATES = [0.1, 0.2, 0.3, 0.4, 0.5]


def make_calibration(n=100, seed=0):
    """Balanced two class survey table; ``crp`` separates the classes"""
    rng = np.random.default_rng(seed)
    irrigated = np.repeat([1, 0], n // 2)
    rng.shuffle(irrigated)
    return pd.DataFrame({
        'unit_id': np.arange(n),
        'area_id': rng.integers(1, 6, n),
        'x': rng.uniform(500000, 505000, n),
        'y': rng.uniform(100000, 104000, n),
        'irrigated': np.where(irrigated == 1, 'Y', 'N'),
        'crp': np.where(irrigated == 1, rng.uniform(0.6, 1.0, n), rng.uniform(0.0, 0.4, n)),
        'ppt': rng.normal(800, 50, n),
    })


@pytest.fixture
def calibration_table():
    return make_calibration()


@pytest.fixture
def observations(calibration_table):
    return ObservationStore(calibration_table, covariates=['crp', 'ppt'],
                            label='irrigated', positive_label='Y')


def fast_learners(k=5, seed=0):
    """Two quick learners, enough to exercise stacking"""
    return [GridSearchLearner('rf',
                              RandomForestClassifier(n_estimators=25, random_state=seed),
                              {'min_samples_leaf': [1, 5]}, k=k, seed=seed),
            GridSearchLearner('glm', LogisticRegression(max_iter=5000),
                              {'C': [0.1, 1.0]}, k=k, seed=seed)]


@pytest.fixture(scope='session')
def trained_ensemble():
    store = ObservationStore(make_calibration(), covariates=['crp', 'ppt'],
                             label='irrigated', positive_label='Y')
    return train_ensemble(store.features(), store.labels(), learners=fast_learners(),
                          config=EnsembleConfig(k=5, seed=0))


@pytest.fixture
def covariate_stack():
    """30 x 40 stack of 100 m cells; one missing ``crp`` cell per row band"""
    rng = np.random.default_rng(1)
    ny, nx = 30, 40
    x = 500050. + 100. * np.arange(nx)
    y = 103950. - 100. * np.arange(ny)
    crp = rng.uniform(0, 1, (ny, nx))
    crp[::10, 5] = np.nan
    ppt = rng.normal(800, 50, (ny, nx))
    ds = xr.Dataset({'crp': (('y', 'x'), crp), 'ppt': (('y', 'x'), ppt)},
                    coords={'y': y, 'x': x})
    return ds.rio.write_crs(CRS)


@pytest.fixture
def zones(covariate_stack):
    """Five vertical strips of area ids 1..5, NaN on the last column"""
    ny, nx = covariate_stack.sizes['y'], covariate_stack.sizes['x']
    z = np.repeat(np.arange(1, 6, dtype=np.float64), nx // 5)[None, :].repeat(ny, axis=0)
    z[:, -1] = np.nan
    return xr.DataArray(z, dims=('y', 'x'),
                        coords={'y': covariate_stack['y'], 'x': covariate_stack['x']})


@pytest.fixture
def area_table():
    """Five areas with known irrigated rates, expressed as exact model coefficients"""
    rates = np.array(AREA_RATES)
    return pd.DataFrame({'area_id': [1, 2, 3, 4, 5],
                         'name': ['Arua', 'Gulu', 'Lira', 'Mbale', 'Soroti'],
                         'land_area': [500., 500., 500., 500., 500.],
                         'cropland_area': [100., 100., 100., 100., 100.],
                         'irrigated_area': rates * 100.,
                         'mean_score': [0.2, 0.4, 0.1, 0.7, 0.5],
                         'intercept': np.log(rates / (1 - rates)),
                         'slope': [0., 0., 0., 0., 0.],
                         'n_irrigated': [2, 4, 6, 8, 10],
                         'n_other': [18, 16, 14, 12, 10]})


def simulate_glmm(n_areas=30, n_per_area=60, b0=-1.0, b1=3.0, tau=0.6, slope_sd=0.0,
                  seed=42):
    """Binary outcomes from a logistic model with area random effects"""
    rng = np.random.default_rng(seed)
    area = np.repeat(np.arange(n_areas), n_per_area)
    u = rng.normal(0, tau, n_areas)
    v = rng.normal(0, slope_sd, n_areas) if slope_sd > 0 else np.zeros(n_areas)
    score = rng.uniform(0, 1, area.size)
    eta = b0 + u[area] + (b1 + v[area]) * score
    y = (rng.uniform(size=area.size) < 1 / (1 + np.exp(-eta))).astype(int)
    return y, area, score, u
