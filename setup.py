#!/usr/bin/env python
# -*- coding: utf-8 -*-

import codecs
from setuptools import setup, find_packages

# Parse the version from the main __init__.py
with open('irrmap/__init__.py') as f:
    for line in f:
        if line.find("__version__") >= 0:
            version = line.split("=")[1].strip()
            version = version.strip('"')
            version = version.strip("'")
            continue


with codecs.open('README.rst', encoding='utf-8') as f:
    readme = f.read()

extra_reqs = {'dask': ['dask'],
              'bayes': ['pymc', 'arviz'],
              'docs': ['sphinx',
                       'sphinx_rtd_theme',
                       'matplotlib',
                       'sphinx-gallery'],
              'test': ['pytest', 'pymc', 'arviz']}

setup(name='irrmap',
      version=version,
      description=u"Small area estimation of smallholder irrigation from survey points and raster covariates",
      long_description_content_type="text/x-rst",
      long_description=readme,
      keywords='irrigation, small area estimation, MRP, stacking, xarray, sampling',
      author=u"irrmap developers",
      license='EUPL-v1.2',
      classifiers=[
          'Programming Language :: Python :: 3.9',
          'Programming Language :: Python :: 3.10',
          'Programming Language :: Python :: 3.11',
      ],
      packages=find_packages(exclude=['tests', 'docs']),
      install_requires=[
          'numpy',
          'pandas',
          'xarray',
          'rioxarray',
          'scipy',
          'scikit-learn',
          'joblib>=1.3',
          'shapely',
          'rtree',
          'pyproj'
      ],
      python_requires=">=3.9",
      extras_require=extra_reqs)
