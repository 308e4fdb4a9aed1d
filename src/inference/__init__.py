"""
AOG Inference Module.
"""

from .errors import ConfigurationError, InferenceError, StaleCacheError
from .config import InferenceConfig, load_config, load_inference_config
from .cache import ScoreMapCache
from .distance_transform import dt1d, dt2d
from .propagation import ScorePropagator
from .parsing import Backtracker, ParseNode, ParseTree
from .detection import Candidate, Selection, select_candidates
from .loss import LossContext, OverlapMaps, compute_overlap_maps
from .engine import InferenceEngine

__all__ = [
    # Errors
    'ConfigurationError',
    'InferenceError',
    'StaleCacheError',
    # Configuration
    'InferenceConfig',
    'load_config',
    'load_inference_config',
    # Components
    'ScoreMapCache',
    'dt1d',
    'dt2d',
    'ScorePropagator',
    'Backtracker',
    'ParseNode',
    'ParseTree',
    'Candidate',
    'Selection',
    'select_candidates',
    'LossContext',
    'OverlapMaps',
    'compute_overlap_maps',
    # Engine
    'InferenceEngine',
]
