"""
Feature pyramid interface.
"""

from .pyramid import FeaturePyramid, PyramidLevel

__all__ = [
    'FeaturePyramid',
    'PyramidLevel',
]
