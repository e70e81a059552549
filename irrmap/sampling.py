"""
Spatially balanced sampling frames

Candidate survey locations are drawn from a region of interest mask with the
cube method (Deville & Tillé, 2004): every eligible cell gets the same
inclusion probability ``n / N`` and the sample is drawn so that the
Horvitz-Thompson estimates of the cell coordinates match their population
totals. The draw is a sequence of random walks on the inclusion probability
vector and is therefore run sequentially.

Sampled locations are then labelled with nested multi-resolution grid
identifiers, of the form ``E12N34``, and optionally attributed to the
administrative unit that contains them.
"""
import re
from typing import Iterable, List, Optional, Sequence, Tuple, Union
import logging

import numpy as np
import pandas as pd
import xarray as xr
from pyproj import Transformer
from rtree.index import Index
from shapely.geometry import Point, shape

from irrmap.errors import SamplingError

logger = logging.getLogger(__name__)

EPS = 1e-9
RESOLUTIONS = (100000, 50000, 25000, 12500)
GID_PATTERN = re.compile(r'^([EW])(\d+)([NS])(\d+)$')


def _eligible_cells(mask, x=None, y=None):
    """Row, col and cell center coordinates of every True cell of ``mask``"""
    if isinstance(mask, xr.DataArray):
        if mask.ndim != 2:
            raise SamplingError("Sampling mask must be two dimensional")
        if 'y' in mask.dims and 'x' in mask.dims:
            mask = mask.transpose('y', 'x')
            x = mask['x'].values if x is None else x
            y = mask['y'].values if y is None else y
        values = np.asarray(mask.fillna(0).values, dtype=bool)
    else:
        values = np.asarray(mask)
        if values.ndim != 2:
            raise SamplingError("Sampling mask must be two dimensional")
        values = np.where(np.isnan(values.astype(np.float64)), 0, values).astype(bool)
    nrow, ncol = values.shape
    x = np.arange(ncol, dtype=np.float64) if x is None else np.asarray(x, dtype=np.float64)
    y = np.arange(nrow, dtype=np.float64) if y is None else np.asarray(y, dtype=np.float64)
    if x.shape != (ncol,) or y.shape != (nrow,):
        raise SamplingError("Coordinate vectors do not match the mask shape")
    row, col = np.nonzero(values)
    return row, col, x[col], y[row]


def _round(pik):
    pik[pik < EPS] = 0.0
    pik[pik > 1 - EPS] = 1.0
    return pik


def _is_fractional(value):
    return EPS <= value <= 1 - EPS


def _step(pik, A, units, rng):
    """Random move of ``pik[units]`` in the kernel of the balancing constraints

    The move direction ``u`` satisfies ``A[units].T @ u == 0`` so that the
    balancing equations are preserved; its length is chosen such that at least
    one unit reaches 0 or 1, and its sign at random such that the expected
    update is zero (the martingale property of the inclusion probabilities).
    """
    B = A[units].T
    _, _, vt = np.linalg.svd(B)
    u = vt[-1]
    p = pik[units]
    with np.errstate(divide='ignore', invalid='ignore'):
        up = np.where(u > 0, (1 - p) / u, np.where(u < 0, -p / u, np.inf))
        down = np.where(u > 0, p / u, np.where(u < 0, (p - 1) / u, np.inf))
    l1 = up.min()
    l2 = down.min()
    if rng.random() < l2 / (l1 + l2):
        p = p + l1 * u
    else:
        p = p - l2 * u
    pik[units] = _round(np.clip(p, 0.0, 1.0))


def _flight(pik, A, order, rng):
    """Flight phase, until at most ``A.shape[1]`` units remain fractional

    Units are visited in ``order``; the working set holds ``q + 1`` fractional
    units, refilled from the queue as units reach 0 or 1.
    """
    q = A.shape[1]
    queue = [k for k in order if _is_fractional(pik[k])]
    active = queue[:q + 1]
    cursor = q + 1
    while len(active) == q + 1:
        _step(pik, A, np.array(active), rng)
        active = [k for k in active if _is_fractional(pik[k])]
        while len(active) < q + 1 and cursor < len(queue):
            k = queue[cursor]
            cursor += 1
            if _is_fractional(pik[k]):
                active.append(k)
    return pik


def cube(pik: np.ndarray, X: np.ndarray, seed=None) -> np.ndarray:
    """Balanced sample selection with the cube method

    Flight phase on all balancing variables, then a landing phase that relaxes
    the balancing variables from the last one, so that the first column (the
    inclusion probabilities themselves, ensuring a fixed sample size) is
    relaxed last. Any unit still fractional after that is drawn independently.

    Args:
        pik (np.ndarray): Inclusion probabilities, in [0, 1]
        X (np.ndarray): Balancing variables, shape ``(N, p)``
        seed: Seed of the random generator (``numpy.random.default_rng``)

    Returns:
        np.ndarray: Boolean selection indicator of length N

    Examples:
        >>> import numpy as np
        >>> pik = np.full(10, 0.3)
        >>> X = np.column_stack([pik, np.arange(10.)])
        >>> s = cube(pik, X, seed=1)
        >>> int(s.sum())
        3
        >>> bool((cube(pik, X, seed=1) == s).all())
        True
    """
    rng = np.random.default_rng(seed)
    pik = np.asarray(pik, dtype=np.float64).copy()
    if ((pik < 0) | (pik > 1)).any():
        raise SamplingError("Inclusion probabilities must lie in [0, 1]")
    pik = _round(pik)
    X = np.asarray(X, dtype=np.float64)
    if X.ndim == 1:
        X = X[:, None]
    if X.shape[0] != pik.shape[0]:
        raise SamplingError("Balancing variables and inclusion probabilities differ in length")
    A = np.zeros_like(X)
    positive = pik > 0
    A[positive] = X[positive] / pik[positive, None]
    order = rng.permutation(pik.shape[0])
    for q in range(A.shape[1], 0, -1):
        pik = _flight(pik, A[:, :q], order, rng)
    leftover = np.array([_is_fractional(v) for v in pik], dtype=bool)
    if leftover.any():
        logger.debug("Drawing %d remaining fractional units independently", leftover.sum())
        pik[leftover] = rng.random(leftover.sum()) < pik[leftover]
    return pik > 0.5


def _standardize(v: np.ndarray) -> np.ndarray:
    sd = v.std()
    return (v - v.mean()) / (sd if sd > 0 else 1.0)


def cube_sample(mask, n: int, seed=None, x=None, y=None) -> pd.DataFrame:
    """Spatially balanced sample of ``n`` cells of a region of interest mask

    Every eligible cell has inclusion probability ``n / N`` and the sample is
    balanced on the cell coordinates, so that the mean coordinates of the
    selected cells are close to those of the whole region.

    Args:
        mask (xr.DataArray or np.ndarray): Two dimensional boolean mask of
            eligible cells. A DataArray with ``x`` / ``y`` coordinates provides
            the cell coordinates
        n (int): Sample size
        seed: Seed of the random generator, for reproducible draws
        x, y (array-like): Optional cell center coordinates of the columns and
            rows of ``mask``, overriding the DataArray coordinates. Array indices
            are used when no coordinates are available

    Returns:
        pd.DataFrame: ``x``, ``y``, ``row`` and ``col`` of the selected cells,
        ordered by row then column. Empty when ``n == 0``

    Raises:
        SamplingError: If ``n`` is negative or exceeds the number of eligible cells

    Examples:
        >>> import numpy as np
        >>> mask = np.ones((20, 20), dtype=bool)
        >>> sample = cube_sample(mask, 25, seed=0)
        >>> len(sample), bool(sample[['row', 'col']].duplicated().any())
        (25, False)
        >>> bool(abs(sample['x'].mean() - 9.5) < 1.5)
        True
    """
    row, col, xs, ys = _eligible_cells(mask, x, y)
    N = len(row)
    if n < 0:
        raise SamplingError(f"Sample size must be non negative, got {n}")
    if n > N:
        raise SamplingError(f"Requested {n} cells but the mask only has {N} eligible cells")
    if n == 0:
        return pd.DataFrame({'x': np.empty(0), 'y': np.empty(0),
                             'row': np.empty(0, dtype=np.int64),
                             'col': np.empty(0, dtype=np.int64)})
    logger.info("Drawing a balanced sample of %d out of %d eligible cells", n, N)
    pik = np.full(N, n / N)
    X = np.column_stack([pik, _standardize(xs) * pik, _standardize(ys) * pik])
    selected = cube(pik, X, seed=seed)
    if selected.sum() != n:
        logger.warning("Balanced draw selected %d cells instead of %d", selected.sum(), n)
    out = pd.DataFrame({'x': xs[selected], 'y': ys[selected],
                        'row': row[selected].astype(np.int64),
                        'col': col[selected].astype(np.int64)})
    return out.sort_values(['row', 'col']).reset_index(drop=True)


def grid_id(x, y, resolution: float) -> Union[str, np.ndarray]:
    """Geocode of the grid cell containing a projected location

    Cell indices are the ceiling of the absolute coordinates divided by
    ``resolution``, prefixed by the hemisphere of the coordinate (``E`` / ``W``
    for x, ``N`` / ``S`` for y). Cells of a resolution that divides a coarser
    one are nested in exactly one coarser cell.

    Args:
        x, y (float or array-like): Projected coordinates
        resolution (float): Cell size, in the units of the coordinates

    Returns:
        str for scalar inputs, array of str otherwise

    Examples:
        >>> grid_id(1234567., -45000., 100000)
        'E13S1'
        >>> grid_id([-150000., 250000.], [50000., 0.], 100000).tolist()
        ['W2N1', 'E3N0']
    """
    scalar = np.ndim(x) == 0 and np.ndim(y) == 0
    x = np.atleast_1d(np.asarray(x, dtype=np.float64))
    y = np.atleast_1d(np.asarray(y, dtype=np.float64))
    if resolution <= 0:
        raise ValueError("resolution must be positive")
    ix = np.ceil(np.abs(x) / resolution).astype(np.int64)
    iy = np.ceil(np.abs(y) / resolution).astype(np.int64)
    ew = np.where(x < 0, 'W', 'E')
    ns = np.where(y < 0, 'S', 'N')
    ids = np.array([f"{a}{i}{b}{j}" for a, i, b, j in zip(ew, ix, ns, iy)], dtype=object)
    return ids[0] if scalar else ids


def _label(resolution) -> str:
    return str(int(resolution)) if float(resolution).is_integer() else str(resolution)


def grid_ids(x, y, resolutions: Sequence[float] = RESOLUTIONS) -> pd.DataFrame:
    """One ``gid_<resolution>`` column per resolution"""
    return pd.DataFrame({f"gid_{_label(res)}": grid_id(x, y, res) for res in resolutions})


def cell_bounds(gid: str, resolution: float) -> Tuple[float, float, float, float]:
    """Bounds ``(minx, miny, maxx, maxy)`` of the cell identified by ``gid``

    Examples:
        >>> cell_bounds('E13S1', 100000)
        (1200000.0, -100000.0, 1300000.0, 0.0)
    """
    match = GID_PATTERN.match(gid)
    if match is None:
        raise ValueError(f"Invalid grid identifier: {gid!r}")
    ew, ix, ns, iy = match.groups()

    def _interval(index, positive):
        index = int(index)
        lo, hi = max(index - 1, 0) * resolution, index * resolution
        return (float(lo), float(hi)) if positive else (0.0 - hi, 0.0 - lo)

    minx, maxx = _interval(ix, ew == 'E')
    miny, maxy = _interval(iy, ns == 'N')
    return minx, miny, maxx, maxy


def attribute_areas(x, y, areas: List[dict], area_key: str = 'area_id') -> pd.Series:
    """Identifier of the polygon feature containing each location

    Args:
        x, y (array-like): Coordinates, in the CRS of ``areas``
        areas (list): Feature collection (list of GeoJSON like features) of
            administrative units, with ``area_key`` in their properties
        area_key (str): Property holding the unit identifier

    Returns:
        pd.Series: Area identifiers, missing where no feature contains the point
    """
    shapes = [shape(feature['geometry']) for feature in areas]
    rtree = Index()
    for i, geom in enumerate(shapes):
        rtree.insert(i, geom.bounds)
    ids = []
    for xi, yi in zip(np.asarray(x, dtype=np.float64), np.asarray(y, dtype=np.float64)):
        point = Point(xi, yi)
        candidates = [i for i in rtree.intersection((xi, yi, xi, yi))
                      if shapes[i].intersects(point)]
        ids.append(areas[min(candidates)]['properties'][area_key] if candidates else None)
    out = pd.Series(ids, dtype=object)
    n_missing = int(out.isna().sum())
    if n_missing:
        logger.warning("%d locations fall outside every administrative unit", n_missing)
    return out


def sampling_frame(sample: pd.DataFrame, crs, resolutions: Iterable[float] = RESOLUTIONS,
                   areas: Optional[List[dict]] = None,
                   area_key: str = 'area_id') -> pd.DataFrame:
    """Survey frame of sampled locations

    Args:
        sample (pd.DataFrame): Sampled locations with projected ``x`` / ``y``
            (see :func:`cube_sample`)
        crs: CRS of the coordinates (anything ``pyproj`` accepts)
        resolutions (iterable): Grid resolutions, in CRS units
        areas (list): Optional feature collection of administrative units, in
            the same CRS as the sample
        area_key (str): Property identifying each administrative unit

    Returns:
        pd.DataFrame: ``sample`` with ``lon``, ``lat``, one ``gid_<res>`` column
        per resolution and, when ``areas`` is given, an ``area_key`` column
    """
    frame = sample.reset_index(drop=True).copy()
    transformer = Transformer.from_crs(crs, 'EPSG:4326', always_xy=True)
    lon, lat = transformer.transform(frame['x'].to_numpy(), frame['y'].to_numpy())
    frame['lon'] = lon
    frame['lat'] = lat
    frame = pd.concat([frame, grid_ids(frame['x'], frame['y'], list(resolutions))], axis=1)
    if areas is not None:
        frame[area_key] = attribute_areas(frame['x'], frame['y'], areas, area_key)
    return frame


if __name__ == "__main__":
    import doctest
    doctest.testmod()
