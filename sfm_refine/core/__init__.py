"""
Core refinement components
"""

from .bundle_adjustment import (
    BundleAdjuster,
    BundleAdjustmentConfig,
    OptimizeOptions,
    SfMData,
    bundle_adjust,
)

__all__ = [
    "BundleAdjuster",
    "BundleAdjustmentConfig",
    "OptimizeOptions",
    "SfMData",
    # Convenience function
    "bundle_adjust",
]
