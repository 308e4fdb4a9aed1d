"""
Errors raised by the AOG inference engine.

Invalid pyramid levels and empty selections are not errors: the former are
recorded in the cache's validity status and the latter is an empty result.
"""


class InferenceError(Exception):
    """Base class for inference engine errors."""


class ConfigurationError(InferenceError, ValueError):
    """
    Malformed grammar, or a grammar that cannot be evaluated on a pyramid.

    Raised before any score is computed.
    """


class StaleCacheError(InferenceError, RuntimeError):
    """
    A score map cache was used outside its valid lifetime.

    Raised when selecting or parsing on a cache that was never propagated,
    was released, or belongs to another engine, and when recovering a
    backup that was never taken.
    """
