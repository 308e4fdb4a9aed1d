"""
Inference configuration.

Settings controlling detection and loss-augmented parsing, loadable from
YAML files with `__base__` inheritance.
"""

from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Optional, Union

import yaml


@dataclass
class InferenceConfig:
    """
    Detection and parsing settings.

    Args:
        threshold: Minimum root score for a candidate
        use_nms: Apply duplicate suppression during selection
        nms_overlap: Overlap above which a candidate is suppressed
        nms_divided_by_union: IoU if True, intersection over smaller if False
        fg_overlap: Overlap with a box at or above which a window is foreground
        bg_overlap: Overlap with another box at or above which a window is excluded
        max_detections: Maximum number of candidates (None for no cap)
        extended: Also return every raw detection and skip suppression
        collect_features: Store terminal feature patches and deformation
            features in parse trees
    """

    threshold: float = 0.0
    use_nms: bool = True
    nms_overlap: float = 0.5
    nms_divided_by_union: bool = True
    fg_overlap: float = 0.7
    bg_overlap: float = 0.5
    max_detections: Optional[int] = None
    extended: bool = False
    collect_features: bool = False

    def __post_init__(self):
        for name in ('nms_overlap', 'fg_overlap', 'bg_overlap'):
            value = getattr(self, name)
            if not 0.0 <= value <= 1.0:
                raise ValueError(f"{name} must lie in [0, 1], got {value}")
        if self.max_detections is not None and self.max_detections < 0:
            raise ValueError(f"max_detections must be non-negative, got {self.max_detections}")

    @classmethod
    def from_dict(cls, config: dict) -> 'InferenceConfig':
        """Build from a dict, rejecting unknown keys."""
        known = {f.name for f in fields(cls)}
        unknown = set(config) - known
        if unknown:
            raise ValueError(f"Unknown inference settings: {sorted(unknown)}")
        return cls(**config)

    def to_dict(self) -> dict:
        return asdict(self)


def load_config(config_path: Union[str, Path]) -> dict:
    """Load and merge config files."""
    config_path = Path(config_path)
    with open(config_path, 'r') as f:
        config = yaml.safe_load(f) or {}

    # Handle base config inheritance
    if '__base__' in config:
        base_config = load_config(config_path.parent / config['__base__'])
        # Merge: config overrides base
        config = deep_merge(base_config, config)
        del config['__base__']

    return config


def deep_merge(base: dict, override: dict) -> dict:
    """Deep merge two dictionaries."""
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def load_inference_config(config_path: Union[str, Path]) -> InferenceConfig:
    """Load the `inference` section of a YAML config file."""
    config = load_config(config_path)
    return InferenceConfig.from_dict(config.get('inference', {}))
