"""
Bundle adjustment module

Refines camera poses, camera intrinsics and landmark positions of an SfM
scene by nonlinear least squares, with optional ground control points and
geo-referenced camera center priors.

Key Features:
- Robust (LMedS) registration of the scene to view priors
- Per-category freezing policies for intrinsics, extrinsics and structure
- Five pinhole camera models (none, radial k1, radial k3, Brown t2, fisheye)
- Sparse or dense trust-region solve with threaded residual evaluation

Usage:
    from sfm_refine.core.bundle_adjustment import BundleAdjuster, OptimizeOptions

    ba = BundleAdjuster(config)
    ok = ba.adjust(sfm_data, OptimizeOptions())
"""

from .config import (
    BundleAdjustmentConfig,
    ControlPointOptions,
    ExtrinsicParameterType,
    IntrinsicParameterType,
    LinearSolverType,
    OptimizeOptions,
    PreconditionerType,
    RegistrationConfig,
    SolverConfig,
    SparseBackend,
    StructureParameterType,
)
from .errors import (
    BundleAdjustmentError,
    DegenerateRegistration,
    OrphanControlPoint,
    UnsupportedCameraModel,
    UnusableSolution,
)
from .scene import Landmark, Observation, Pose3, SfMData, View, ViewPrior
from .cameras import (
    CameraModel,
    IntrinsicBase,
    PinholeIntrinsic,
    PinholeIntrinsicBrownT2,
    PinholeIntrinsicFisheye,
    PinholeIntrinsicRadialK1,
    PinholeIntrinsicRadialK3,
    ReprojectionResidual,
    intrinsic_to_cost_function,
)
from .problem import BlockKind, HuberLoss, ParameterBlock, PoseCenterResidual, Problem
from .registration import RegistrationResult, Similarity3, register_scene_to_priors
from .solver import SolverSummary, TerminationType, solve
from .optimizer import AdjustmentState, BundleAdjuster, bundle_adjust

__all__ = [
    # Configuration
    "BundleAdjustmentConfig",
    "ControlPointOptions",
    "ExtrinsicParameterType",
    "IntrinsicParameterType",
    "LinearSolverType",
    "OptimizeOptions",
    "PreconditionerType",
    "RegistrationConfig",
    "SolverConfig",
    "SparseBackend",
    "StructureParameterType",

    # Errors
    "BundleAdjustmentError",
    "DegenerateRegistration",
    "OrphanControlPoint",
    "UnsupportedCameraModel",
    "UnusableSolution",

    # Scene
    "Landmark",
    "Observation",
    "Pose3",
    "SfMData",
    "View",
    "ViewPrior",

    # Cameras
    "CameraModel",
    "IntrinsicBase",
    "PinholeIntrinsic",
    "PinholeIntrinsicBrownT2",
    "PinholeIntrinsicFisheye",
    "PinholeIntrinsicRadialK1",
    "PinholeIntrinsicRadialK3",
    "ReprojectionResidual",
    "intrinsic_to_cost_function",

    # Problem and solver
    "BlockKind",
    "HuberLoss",
    "ParameterBlock",
    "PoseCenterResidual",
    "Problem",
    "SolverSummary",
    "TerminationType",
    "solve",

    # Registration
    "RegistrationResult",
    "Similarity3",
    "register_scene_to_priors",

    # Main optimizer
    "AdjustmentState",
    "BundleAdjuster",
    "bundle_adjust",
]
