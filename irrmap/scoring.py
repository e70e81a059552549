"""Application of a fitted ensemble to raster covariate stacks

A covariate stack is an ``xarray.Dataset`` with one variable per covariate on a
common ``(y, x)`` grid (see :func:`load_stack`). Scoring walks the grid in
blocks of rows so that only one block of covariates is held in memory per
worker; blocks are scored concurrently against the same read-only model.
No-data cells (any covariate missing) and cells outside the region of interest
are propagated as NaN, never filled.
"""
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple, Union
import logging

import joblib
import numpy as np
import pandas as pd
import xarray as xr
import rioxarray

from irrmap.ensemble import FittedEnsemble
from irrmap.errors import DataIntegrityError
from irrmap.utils import finite_rows

logger = logging.getLogger(__name__)


def as_dataset(stack: Union[xr.Dataset, xr.DataArray]) -> xr.Dataset:
    """Normalize a covariate stack to a Dataset with one variable per covariate

    A ``DataArray`` must have a ``band`` dimension whose coordinate values (or
    ``long_name`` attribute, as written by rasterio) name the covariates.
    """
    if isinstance(stack, xr.Dataset):
        return stack
    if isinstance(stack, xr.DataArray):
        if 'band' not in stack.dims:
            raise DataIntegrityError("A DataArray covariate stack requires a 'band' dimension")
        names = stack.attrs.get('long_name')
        if isinstance(names, (list, tuple)) and len(names) == stack.sizes['band']:
            stack = stack.assign_coords(band=list(names))
        ds = stack.to_dataset(dim='band')
        return ds.rename({k: str(k) for k in ds.data_vars})
    raise TypeError(f"Unsupported covariate stack type: {type(stack).__name__}")


def load_stack(paths: Iterable[Union[str, Path]], chunks=None) -> xr.Dataset:
    """Open single band rasters as one covariate stack

    Variables are named after the file stems. Rasters must share grid and CRS
    exactly; no implicit resampling is performed.

    Args:
        paths (iterable): Paths to single band rasters (e.g. GeoTIFF)
        chunks: Passed to ``rioxarray.open_rasterio`` for lazy (dask) loading

    Returns:
        xr.Dataset: Covariate stack with no-data masked to NaN
    """
    arrays = {}
    for path in paths:
        path = Path(path)
        da = rioxarray.open_rasterio(path, chunks=chunks, masked=True)
        arrays[path.stem] = da.squeeze('band', drop=True)
    if not arrays:
        raise ValueError("No raster paths provided")
    try:
        ds = xr.merge([da.rename(name) for name, da in arrays.items()],
                      join='exact', combine_attrs='drop_conflicts')
    except ValueError as e:
        raise DataIntegrityError(f"Covariate rasters are not aligned: {e}") from e
    crs = next(iter(arrays.values())).rio.crs
    if crs is not None:
        ds = ds.rio.write_crs(crs)
    return ds


@dataclass
class RoiMask:
    """Region of interest mask from covariate thresholds

    A cell belongs to the region of interest when every listed covariate lies
    within its ``(low, high)`` bounds (inclusive, ``None`` for unbounded).
    Missing covariates exclude the cell.

    Args:
        thresholds (dict): ``{covariate: (low, high)}``

    Examples:
        >>> import numpy as np
        >>> import xarray as xr
        >>> ds = xr.Dataset({'crp': (('y', 'x'), np.array([[0.1, 0.6], [np.nan, 0.9]]))},
        ...                 coords={'y': [1, 0], 'x': [0, 1]})
        >>> RoiMask({'crp': (0.5, None)})(ds).values.tolist()
        [[False, True], [False, True]]
    """
    thresholds: Dict[str, Tuple[Optional[float], Optional[float]]] = field(default_factory=dict)

    def __call__(self, ds: xr.Dataset) -> xr.DataArray:
        missing = [k for k in self.thresholds if k not in ds.data_vars]
        if missing:
            raise DataIntegrityError(f"Covariate stack is missing mask covariates: {missing}")
        mask = None
        for name, (low, high) in self.thresholds.items():
            da = ds[name]
            cond = da.notnull()
            if low is not None:
                cond = cond & (da >= low)
            if high is not None:
                cond = cond & (da <= high)
            mask = cond if mask is None else mask & cond
        if mask is None:
            first = next(iter(ds.data_vars.values()))
            mask = xr.ones_like(first, dtype=bool)
        return mask.rename('roi')


def roi_mask(stack: Union[xr.Dataset, xr.DataArray],
             thresholds: Dict[str, Tuple[Optional[float], Optional[float]]]) -> xr.DataArray:
    """Functional form of :class:`RoiMask`"""
    return RoiMask(thresholds)(as_dataset(stack))


def _nodata_values(ds: xr.Dataset, features: List[str]) -> Dict[str, Optional[float]]:
    out = {}
    for name in features:
        nodata = ds[name].rio.nodata
        out[name] = None if nodata is None or np.isnan(nodata) else nodata
    return out


def _read_block(ds, features, nodata, mask, start, stop):
    """Materialize rows ``start:stop`` of the stack as a (rows, cols, features) array"""
    layers = []
    for name in features:
        arr = np.asarray(ds[name].isel(y=slice(start, stop)).values, dtype=np.float64)
        if nodata[name] is not None:
            arr = np.where(arr == nodata[name], np.nan, arr)
        layers.append(arr)
    values = np.stack(layers, axis=-1)
    mask_block = None
    if mask is not None:
        mask_block = np.asarray(mask.isel(y=slice(start, stop)).values, dtype=bool)
    return start, values, mask_block


def _score_block(model: FittedEnsemble, start: int, values: np.ndarray,
                 mask_block: Optional[np.ndarray], outputs: List[str]):
    rows, cols, nfeat = values.shape
    flat = values.reshape(-1, nfeat)
    valid = finite_rows(flat)
    if mask_block is not None:
        valid &= mask_block.ravel()
    scored = {name: np.full(rows * cols, np.nan, dtype=np.float32) for name in outputs}
    if valid.any():
        X = pd.DataFrame(flat[valid], columns=list(model.features))
        preds = model.predict(X)
        for name in outputs:
            scored[name][valid] = preds[name].to_numpy(dtype=np.float32)
    return start, {k: v.reshape(rows, cols) for k, v in scored.items()}


def score_stack(model: FittedEnsemble, stack: Union[xr.Dataset, xr.DataArray],
                mask: Optional[xr.DataArray] = None, chunk_size: int = 256,
                n_jobs: Optional[int] = None) -> xr.Dataset:
    """Probability surfaces of every base learner and of the stacked model

    Args:
        model (FittedEnsemble): Trained ensemble, applied read-only
        stack (xr.Dataset or xr.DataArray): Covariate stack holding (at least)
            the covariates the model was trained on, with ``y`` and ``x``
            dimensions. May be lazily loaded; it is read block by block
        mask (xr.DataArray): Optional boolean region of interest on the same grid
        chunk_size (int): Number of grid rows per block
        n_jobs (int): Number of blocks scored concurrently (threads)

    Returns:
        xr.Dataset: One float32 variable per learner plus ``stacked``, on the
        input grid, NaN where covariates are missing or outside ``mask``
    """
    ds = as_dataset(stack)
    features = list(model.features)
    missing = [f for f in features if f not in ds.data_vars]
    if missing:
        raise DataIntegrityError(f"Covariate stack is missing model covariates: {missing}")
    for dim in ('y', 'x'):
        if dim not in ds.dims:
            raise DataIntegrityError(f"Covariate stack has no '{dim}' dimension")
    ds = ds[features].transpose('y', 'x', ...)
    if mask is not None:
        if mask.shape != (ds.sizes['y'], ds.sizes['x']):
            raise DataIntegrityError("Mask and covariate stack grids differ")
        mask = mask.transpose('y', 'x')
    ny, nx = ds.sizes['y'], ds.sizes['x']
    outputs = model.names + ['stacked']
    nodata = _nodata_values(ds, features)
    surfaces = {name: np.full((ny, nx), np.nan, dtype=np.float32) for name in outputs}

    starts = range(0, ny, chunk_size)
    logger.info("Scoring %d x %d grid in %d blocks of %d rows", ny, nx, len(starts), chunk_size)
    tasks = (joblib.delayed(_score_block)(model,
                                          *_read_block(ds, features, nodata, mask,
                                                       start, min(start + chunk_size, ny)),
                                          outputs)
             for start in starts)
    results = joblib.Parallel(n_jobs=n_jobs, prefer='threads', return_as='generator')(tasks)
    for start, block in results:
        for name, arr in block.items():
            surfaces[name][start:start + arr.shape[0]] = arr

    coords = {'y': ds['y'], 'x': ds['x']}
    out = xr.Dataset({name: (('y', 'x'), arr) for name, arr in surfaces.items()},
                     coords=coords)
    crs = ds.rio.crs
    if crs is not None:
        out = out.rio.write_crs(crs)
    for name in outputs:
        out[name] = out[name].rio.write_nodata(np.nan, encoded=False)
    return out


def score(model: FittedEnsemble, stack: Union[xr.Dataset, xr.DataArray], **kwargs) -> xr.Dataset:
    """Functional alias of :func:`score_stack`"""
    return score_stack(model, stack, **kwargs)


def write_surface(surface: xr.Dataset, directory: Union[str, Path]) -> List[Path]:
    """Write each probability surface as a float32 GeoTIFF named after its variable"""
    directory = Path(directory)
    directory.mkdir(parents=True, exist_ok=True)
    paths = []
    for name, da in surface.data_vars.items():
        path = directory / f"{name}.tif"
        da.rio.to_raster(path)
        paths.append(path)
    return paths


def _cell_area(da: xr.DataArray) -> float:
    if da.sizes['x'] < 2 or da.sizes['y'] < 2:
        return 1.0
    dx = abs(float(da['x'][1] - da['x'][0]))
    dy = abs(float(da['y'][1] - da['y'][0]))
    return dx * dy


def summarize_areas(surface: xr.Dataset, zones: xr.DataArray,
                    mask: Optional[xr.DataArray] = None,
                    irrigated: Optional[xr.DataArray] = None,
                    cell_area: Optional[float] = None,
                    variable: str = 'stacked') -> pd.DataFrame:
    """Per small area totals and mean probability

    Args:
        surface (xr.Dataset): Output of :func:`score_stack`
        zones (xr.DataArray): Small area identifiers on the same grid; NaN (or
            the raster no-data value) outside every area
        mask (xr.DataArray): Boolean cropland / region of interest mask. All
            zone cells when omitted
        irrigated (xr.DataArray): Optional boolean reference irrigation layer,
            used for the masked irrigated area of each small area
        cell_area (float): Area of one cell. Derived from the grid spacing when
            omitted (CRS units squared)
        variable (str): Surface variable averaged into ``mean_score``

    Returns:
        pd.DataFrame: Indexed by ``area_id`` with ``land_area``, ``cropland_area``,
        ``mean_score`` and, when ``irrigated`` is given, ``irrigated_area``
    """
    score = surface[variable]
    if zones.shape != score.shape:
        raise DataIntegrityError("Zones and surface grids differ")
    if cell_area is None:
        cell_area = _cell_area(score)
    z = np.asarray(zones.values, dtype=np.float64).ravel()
    nodata = zones.rio.nodata
    in_zone = np.isfinite(z)
    if nodata is not None and not np.isnan(nodata):
        in_zone &= z != nodata
    roi = np.ones_like(in_zone) if mask is None else np.asarray(mask.values, dtype=bool).ravel()
    df = pd.DataFrame({'area_id': z[in_zone],
                       'roi': roi[in_zone],
                       'score': np.where(roi, np.asarray(score.values).ravel(), np.nan)[in_zone]})
    if irrigated is not None:
        irr = np.asarray(irrigated.fillna(0).values, dtype=bool).ravel()
        df['irrigated'] = (irr & roi)[in_zone]
    df['area_id'] = df['area_id'].astype(np.int64)
    grouped = df.groupby('area_id')
    out = pd.DataFrame({'land_area': grouped.size() * cell_area,
                        'cropland_area': grouped['roi'].sum() * cell_area,
                        'mean_score': grouped['score'].mean()})
    if irrigated is not None:
        out['irrigated_area'] = grouped['irrigated'].sum() * cell_area
    return out


if __name__ == "__main__":
    import doctest
    doctest.testmod()
