"""
SfM Refine Package
Bundle adjustment of structure-from-motion scenes with geo priors and GCPs
"""

__version__ = "0.1.0"


# Lazy imports for scipy-backed components - only import when actually used
def __getattr__(name):
    """Lazy import for module attributes"""

    if name == "BundleAdjuster":
        from .core.bundle_adjustment import BundleAdjuster
        return BundleAdjuster
    elif name == "bundle_adjust":
        from .core.bundle_adjustment import bundle_adjust
        return bundle_adjust
    elif name == "BundleAdjustmentConfig":
        from .core.bundle_adjustment import BundleAdjustmentConfig
        return BundleAdjustmentConfig
    elif name == "OptimizeOptions":
        from .core.bundle_adjustment import OptimizeOptions
        return OptimizeOptions
    elif name == "SfMData":
        from .core.bundle_adjustment import SfMData
        return SfMData
    # Utilities (lighter imports)
    elif name == "angle_axis_to_rotation_matrix":
        from .utils.geometry import angle_axis_to_rotation_matrix
        return angle_axis_to_rotation_matrix
    elif name == "rotation_matrix_to_angle_axis":
        from .utils.geometry import rotation_matrix_to_angle_axis
        return rotation_matrix_to_angle_axis

    raise AttributeError(f"module '{__name__}' has no attribute '{name}'")


__all__ = [
    # Main optimizer
    "BundleAdjuster",
    "bundle_adjust",
    "BundleAdjustmentConfig",
    "OptimizeOptions",
    "SfMData",

    # Utilities
    "angle_axis_to_rotation_matrix",
    "rotation_matrix_to_angle_axis",
]
