# Configuration file for the Sphinx documentation builder.
#
# For the full list of built-in configuration values, see the documentation:
# https://www.sphinx-doc.org/en/master/usage/configuration.html

import os
import sys

sys.path.insert(0, os.path.abspath('..'))

import irrmap

# -- Project information -----------------------------------------------------

project = 'irrmap'
copyright = '2026, irrmap developers'
author = 'irrmap developers'
version = irrmap.__version__
release = irrmap.__version__

# -- General configuration ---------------------------------------------------

extensions = [
    'sphinx.ext.autodoc',
    'sphinx.ext.autosummary',
    'sphinx.ext.napoleon',
    'sphinx.ext.intersphinx',
    'sphinx.ext.mathjax',
    'sphinx_rtd_theme',
    'sphinx_gallery.gen_gallery',
]

exclude_patterns = ['_build', 'Thumbs.db', '.DS_Store', 'gallery/README.rst']

# Docstrings are Google style, with runnable Examples sections
napoleon_google_docstring = True
napoleon_numpy_docstring = False
napoleon_use_rtype = False
autosummary_generate = True
autodoc_member_order = 'bysource'
autodoc_typehints = 'description'
autodoc_default_options = {
    'members': True,
    'show-inheritance': True,
}

intersphinx_mapping = {
    'python': ('https://docs.python.org/3', None),
    'numpy': ('https://numpy.org/doc/stable/', None),
    'pandas': ('https://pandas.pydata.org/docs/', None),
    'xarray': ('https://docs.xarray.dev/en/stable/', None),
    'rioxarray': ('https://corteva.github.io/rioxarray/stable/', None),
    'scipy': ('https://docs.scipy.org/doc/scipy/', None),
    'sklearn': ('https://scikit-learn.org/stable/', None),
    'shapely': ('https://shapely.readthedocs.io/en/stable/', None),
    'pyproj': ('https://pyproj4.github.io/pyproj/stable/', None),
    'pymc': ('https://www.pymc.io/projects/docs/en/stable/', None),
}

# Gallery configuration
sphinx_gallery_conf = {
    'filename_pattern': '/plot_',
    'examples_dirs': 'gallery',
    'gallery_dirs': 'auto_examples',
    'doc_module': ('irrmap',),
    'backreferences_dir': 'gen_modules/backreferences',
    'reference_url': {'irrmap': None},
    'within_subsection_order': 'FileNameSortKey',
    'remove_config_comments': True,
}

# -- Options for HTML output -------------------------------------------------

html_theme = 'sphinx_rtd_theme'
html_title = f'irrmap {release}'
html_theme_options = {
    'navigation_depth': 3,
    'collapse_navigation': False,
}
