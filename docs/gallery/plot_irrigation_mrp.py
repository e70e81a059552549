"""
Irrigated area estimation with MRP
==================================

This example walks through the complete ``irrmap`` workflow on a synthetic
landscape: a stacked ensemble is trained on labelled survey points, applied to
a raster covariate stack, and its score feeds a hierarchical binomial model
whose area level predictions are poststratified into a regional estimate of
the irrigated share of cropland.

Because the landscape is simulated, the true irrigated share is known and can
be compared with the direct and model based estimates.
"""

import numpy as np
import pandas as pd
import xarray as xr
import matplotlib.pyplot as plt

from irrmap.observations import ObservationStore, extract_covariates
from irrmap.ensemble import EnsembleConfig, train_ensemble
from irrmap.learners import default_learners
from irrmap.scoring import RoiMask, score_stack, summarize_areas
from irrmap.hierarchical import select_model
from irrmap.estimators import poststratification_table, poststratify
from irrmap.sampling import cube_sample, sampling_frame

rng = np.random.default_rng(42)

##############################################################
# Simulate a landscape
# --------------------
#
# Two covariates on a 100 x 120 grid of 250 m cells: a cropland intensity layer
# (``crp``) and a dry season greenness layer (``ndvi``) that is higher on
# irrigated fields. Six districts are laid out as vertical strips, each with
# its own irrigation prevalence.

ny, nx = 100, 120
x = 450125. + 250. * np.arange(nx)
y = 124875. - 250. * np.arange(ny)
district = np.repeat(np.arange(1, 7), nx // 6)[None, :].repeat(ny, axis=0)
prevalence = np.array([0.05, 0.1, 0.15, 0.2, 0.3, 0.4])

crp = rng.beta(2, 2, (ny, nx))
cropland = crp > 0.4
irrigated = cropland & (rng.uniform(size=(ny, nx)) < prevalence[district - 1])
ndvi = np.clip(0.25 + 0.35 * irrigated + rng.normal(0, 0.1, (ny, nx)), 0, 1)

stack = xr.Dataset({'crp': (('y', 'x'), crp), 'ndvi': (('y', 'x'), ndvi)},
                   coords={'y': y, 'x': x}).rio.write_crs('EPSG:32636')
zones = xr.DataArray(district.astype(float), dims=('y', 'x'), coords={'y': y, 'x': x})
truth = irrigated[cropland].mean()

##############################################################
# Draw a balanced survey sample
# -----------------------------
#
# Survey locations are drawn over cropland with the cube method, so that their
# mean coordinates match those of the cropland area, and receive nested grid
# identifiers.

roi = RoiMask({'crp': (0.4, None)})(stack)
sample = cube_sample(roi, 600, seed=1)
frame = sampling_frame(sample, 'EPSG:32636')
frame['unit_id'] = np.arange(len(frame))
frame['area_id'] = district[frame['row'], frame['col']]
frame['irrigated'] = np.where(irrigated[frame['row'], frame['col']], 'Y', 'N')
frame = frame.join(extract_covariates(frame, stack))
print(frame.head())

fig, ax = plt.subplots(figsize=(8, 6))
ax.imshow(np.where(cropland, district, np.nan), cmap='Pastel1',
          extent=[x[0], x[-1], y[-1], y[0]])
ax.scatter(frame['x'], frame['y'], c=(frame['irrigated'] == 'Y'), cmap='coolwarm', s=6)
ax.set_title("Cropland by district and surveyed units (red: irrigated)")
plt.show()

##############################################################
# Train the stacked ensemble and score the stack
# ----------------------------------------------

store = ObservationStore(frame, covariates=['crp', 'ndvi'], label='irrigated',
                         positive_label='Y')
model = train_ensemble(store.features(), store.labels(),
                       learners=default_learners(k=5, seed=1),
                       config=EnsembleConfig(k=5, seed=1))
print(model.meta_coefficients)

surface = score_stack(model, stack, mask=roi)
surface['stacked'].plot(figsize=(8, 6), vmin=0, vmax=1)
plt.title("Stacked probability of irrigation")
plt.show()

##############################################################
# Hierarchical model and poststratification
# -----------------------------------------
#
# The stacked score of each surveyed unit is the single predictor of a binomial
# model with district random intercepts; random slopes are retained only when
# they improve AIC materially.

store.data['score'] = model.predict(store.features())['stacked'].to_numpy()
selection = select_model(store.labels(), store.data['area_id'], store.data['score'])
print(selection.reason)
print(selection.chosen.summary())

summary = summarize_areas(surface, zones, mask=roi, irrigated=stack['ndvi'] > 0.45)
table = poststratification_table(summary, store.counts_by_area(), model=selection.chosen)
mrp = poststratify(selection.chosen, table, weight='cropland_area')
direct = poststratify(None, table, weight='cropland_area')

results = pd.DataFrame([direct.to_dict(), mrp.to_dict()], index=['direct', 'mrp'])
print(results[['proportion', 'lower', 'upper', 'n_areas', 'n_omitted']])

fig, ax = plt.subplots(figsize=(6, 4))
ax.errorbar([0, 1], results['proportion'],
            yerr=[results['proportion'] - results['lower'],
                  results['upper'] - results['proportion']],
            fmt='o', capsize=4)
ax.axhline(truth, color='grey', linestyle='--', label='True share')
ax.set_xticks([0, 1])
ax.set_xticklabels(['Direct', 'MRP'])
ax.set_ylabel("Irrigated share of cropland")
ax.legend()
plt.show()
