"""
VIO Feature Triangulation Package

Geometric core of the MSCKF measurement update: recovers the world position
of a tracked feature from its observations in the sliding window of camera
poses and flags whether the estimate is usable.

Modules:
- camera: CameraPose, CameraPoseStore, normalized-coordinate helpers
- feature: Feature record (observations, position, validity flag)
- triangulation: initial guess, Levenberg-Marquardt refinement, validity gate
- config: TriangulationConfig and YAML loading
- stats: TriangulationStats outcome counters
- math_utils: quaternion / rotation / relative-pose helpers

Usage:
    from vio_feature import triangulation
    from vio_feature.camera import CameraPose, CameraPoseStore
    from vio_feature.feature import Feature
    from vio_feature.triangulation import triangulate
"""

__version__ = "1.0.0"

# Lazy module imports - access as vio_feature.triangulation, etc.
import importlib

# Available submodules
_SUBMODULES = {
    "camera", "config", "feature", "math_utils", "stats", "triangulation",
}


def __getattr__(name):
    """Lazy module loading."""
    if name in _SUBMODULES:
        module = importlib.import_module(f".{name}", __name__)
        globals()[name] = module  # Cache in globals to avoid repeated import
        return module
    raise AttributeError(f"module 'vio_feature' has no attribute '{name}'")


def __dir__():
    """List available submodules."""
    return list(_SUBMODULES)


__all__ = list(_SUBMODULES)
