"""Small area estimation of smallholder irrigation from survey points and
raster covariates
"""
import logging

__version__ = "0.1.0"

logging.getLogger(__name__).addHandler(logging.NullHandler())
