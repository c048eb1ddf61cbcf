"""
dishlog – restaurant visit recording toolkit.

Shared utilities (config, logging, paths, domain models) plus the dish
database package that turns receipt photos into restaurants, dishes and
dish instances.
"""

__all__ = [
    "config",
    "logging",
    "paths",
]
