"""
Configuration management for bundle adjustment

Adjustment policies are enums; solver and registration settings use
dataclasses for type safety and validation.
"""

import functools
from dataclasses import dataclass, field
from enum import Enum, Flag
from typing import Optional, Dict, Any, Tuple

import numpy as np
import psutil
from scipy.optimize import least_squares


class ExtrinsicParameterType(Enum):
    """Which part of each camera pose is refined"""
    NONE = "none"
    ADJUST_ROTATION = "adjust_rotation"
    ADJUST_TRANSLATION = "adjust_translation"
    ADJUST_ALL = "adjust_all"


class IntrinsicParameterType(Flag):
    """Which intrinsic parameters are refined (any partial combination is a subset policy)"""
    NONE = 0
    ADJUST_FOCAL_LENGTH = 1
    ADJUST_PRINCIPAL_POINT = 2
    ADJUST_DISTORTION = 4
    ADJUST_ALL = ADJUST_FOCAL_LENGTH | ADJUST_PRINCIPAL_POINT | ADJUST_DISTORTION


class StructureParameterType(Enum):
    """Whether landmark positions are refined"""
    NONE = "none"
    ADJUST_ALL = "adjust_all"


class LinearSolverType(Enum):
    """Trust-region subproblem strategy"""
    SPARSE_SCHUR = "sparse_schur"
    DENSE_SCHUR = "dense_schur"


class SparseBackend(Enum):
    """Sparse trust-region backends, in descending priority order"""
    TRF_LSMR = "trf_lsmr"
    DOGBOX_LSMR = "dogbox_lsmr"


class PreconditionerType(Enum):
    """JACOBI scales variables by the Jacobian column norms"""
    JACOBI = "jacobi"
    IDENTITY = "identity"


# Robust losses of the structure residuals
ROBUST_LOSSES = ("huber", "cauchy", "soft_l1")

# least_squares method behind each sparse backend
SPARSE_BACKEND_METHODS = {
    SparseBackend.TRF_LSMR: "trf",
    SparseBackend.DOGBOX_LSMR: "dogbox",
}


@functools.lru_cache(maxsize=None)
def is_sparse_backend_available(backend: SparseBackend) -> bool:
    """Check that least_squares accepts the LSMR subproblem with a sparsity pattern for `backend`"""
    method = SPARSE_BACKEND_METHODS[backend]
    try:
        least_squares(
            lambda x: x - 1.0, np.zeros(1), method=method, tr_solver="lsmr",
            jac_sparsity=np.ones((1, 1)), max_nfev=1,
        )
    except (ValueError, TypeError):
        return False
    return True


def select_linear_solver() -> Tuple[LinearSolverType, Optional[SparseBackend]]:
    """
    Pick the linear solver strategy

    Default is a dense representation; the first available sparse backend
    (by descending efficiency) takes over when there is one.
    """
    for backend in SparseBackend:
        if is_sparse_backend_available(backend):
            return LinearSolverType.SPARSE_SCHUR, backend
    return LinearSolverType.DENSE_SCHUR, None


def _parse_enum(enum_cls, value):
    if isinstance(value, enum_cls):
        return value
    if isinstance(value, str):
        if enum_cls is IntrinsicParameterType:
            result = IntrinsicParameterType.NONE
            for name in value.split("|"):
                result |= IntrinsicParameterType[name.strip().upper()]
            return result
        return enum_cls[value.strip().upper()]
    return enum_cls(value)


@dataclass
class ControlPointOptions:
    """Usage of ground control points"""

    use_control_points: bool = False

    # Weight applied to every GCP reprojection residual (0.0 means unweighted)
    weight: float = 20.0

    def __post_init__(self):
        if self.weight < 0.0:
            raise ValueError(f"Control point weight must be >= 0, got {self.weight}")


@dataclass
class OptimizeOptions:
    """Adjustment policy: which parameter categories are refined"""

    intrinsics_opt: IntrinsicParameterType = IntrinsicParameterType.ADJUST_ALL
    extrinsics_opt: ExtrinsicParameterType = ExtrinsicParameterType.ADJUST_ALL
    structure_opt: StructureParameterType = StructureParameterType.ADJUST_ALL
    control_point_opt: ControlPointOptions = field(default_factory=ControlPointOptions)

    # Geo-registration to view priors and pose center prior residuals
    use_motion_prior: bool = True

    def __post_init__(self):
        self.intrinsics_opt = _parse_enum(IntrinsicParameterType, self.intrinsics_opt)
        self.extrinsics_opt = _parse_enum(ExtrinsicParameterType, self.extrinsics_opt)
        self.structure_opt = _parse_enum(StructureParameterType, self.structure_opt)

    @classmethod
    def from_dict(cls, options_dict: Dict[str, Any]) -> "OptimizeOptions":
        """Create options from dictionary (policy names as strings)"""
        options_dict = dict(options_dict)
        control_point_opt = ControlPointOptions(**options_dict.pop("control_point_opt", {}))
        return cls(control_point_opt=control_point_opt, **options_dict)

    def to_dict(self) -> Dict[str, Any]:
        intrinsic_flags = [
            flag.name for flag in (IntrinsicParameterType.ADJUST_FOCAL_LENGTH,
                                   IntrinsicParameterType.ADJUST_PRINCIPAL_POINT,
                                   IntrinsicParameterType.ADJUST_DISTORTION)
            if flag & self.intrinsics_opt
        ]
        return {
            "intrinsics_opt": "|".join(intrinsic_flags) or "NONE",
            "extrinsics_opt": self.extrinsics_opt.name,
            "structure_opt": self.structure_opt.name,
            "control_point_opt": dict(self.control_point_opt.__dict__),
            "use_motion_prior": self.use_motion_prior,
        }


@dataclass
class SolverConfig:
    """Configuration of the nonlinear least-squares solve"""

    # Linear solver strategy; None selects the best available at construction
    linear_solver_type: Optional[LinearSolverType] = None
    sparse_backend: Optional[SparseBackend] = None
    preconditioner_type: PreconditionerType = PreconditionerType.JACOBI

    # Threads used to evaluate residuals; None means 1, or all cores when multithreaded
    multithreaded: bool = False
    num_threads: Optional[int] = None

    # Convergence
    parameter_tolerance: float = 1e-8
    function_tolerance: float = 1e-6
    gradient_tolerance: float = 1e-10
    # Residual evaluation budget of the solver, None leaves it to scipy
    max_num_function_evaluations: Optional[int] = None

    # Finite difference scheme for the Jacobian: "2-point" or "3-point"
    jacobian: str = "2-point"

    # Print the solver's full report after the solve
    print_summary: bool = False

    # Minimizer progress verbosity forwarded to the solver (0, 1 or 2)
    minimizer_progress: int = 0

    def __post_init__(self):
        if self.sparse_backend is not None:
            self.sparse_backend = _parse_enum(SparseBackend, self.sparse_backend)

        if self.linear_solver_type is None:
            self.linear_solver_type, backend = select_linear_solver()
            if self.sparse_backend is None:
                self.sparse_backend = backend
        else:
            self.linear_solver_type = _parse_enum(LinearSolverType, self.linear_solver_type)
            if (self.linear_solver_type == LinearSolverType.SPARSE_SCHUR
                    and self.sparse_backend is None):
                self.sparse_backend = next(
                    (b for b in SparseBackend if is_sparse_backend_available(b)), None
                )
                if self.sparse_backend is None:
                    raise ValueError("SPARSE_SCHUR requested but no sparse backend is available")

        if self.linear_solver_type == LinearSolverType.DENSE_SCHUR:
            self.sparse_backend = None
        self.preconditioner_type = _parse_enum(PreconditionerType, self.preconditioner_type)

        if self.num_threads is None:
            self.num_threads = (psutil.cpu_count() or 1) if self.multithreaded else 1
        if self.num_threads < 1:
            raise ValueError(f"num_threads must be >= 1, got {self.num_threads}")

        for name in ("parameter_tolerance", "function_tolerance", "gradient_tolerance"):
            if getattr(self, name) <= 0.0:
                raise ValueError(f"{name} must be > 0, got {getattr(self, name)}")
        max_nfev = self.max_num_function_evaluations
        if max_nfev is not None and max_nfev < 1:
            raise ValueError(f"max_num_function_evaluations must be >= 1, got {max_nfev}")
        if self.jacobian not in ("2-point", "3-point"):
            raise ValueError(f"Invalid jacobian scheme: {self.jacobian}")
        if self.minimizer_progress not in (0, 1, 2):
            raise ValueError(f"minimizer_progress must be 0, 1 or 2, got {self.minimizer_progress}")


@dataclass
class RegistrationConfig:
    """Configuration of the least-median-of-squares similarity fit"""

    # Probability of drawing at least one outlier-free sample
    probability: float = 0.99

    # Assumed upper bound of the outlier ratio
    outlier_ratio: float = 0.5

    # Lower bound on the number of random samples
    min_iterations: int = 0

    # Refit the similarity on the LMedS inliers
    refine_inliers: bool = True

    # Seed of the sample generator (the fit is deterministic for a given seed)
    seed: int = 0

    def __post_init__(self):
        if not (0.0 < self.probability < 1.0):
            raise ValueError(f"probability must be in (0, 1), got {self.probability}")
        if not (0.0 <= self.outlier_ratio < 1.0):
            raise ValueError(f"outlier_ratio must be in [0, 1), got {self.outlier_ratio}")
        if self.min_iterations < 0:
            raise ValueError(f"min_iterations must be >= 0, got {self.min_iterations}")


@dataclass
class BundleAdjustmentConfig:
    """Main configuration of the bundle adjuster"""

    solver: SolverConfig = field(default_factory=SolverConfig)
    registration: RegistrationConfig = field(default_factory=RegistrationConfig)

    # Robust loss shared by the structure residuals; a = loss_threshold² (pixels²)
    use_loss_function: bool = True
    loss_function: str = "huber"
    loss_threshold: float = 4.0

    # Snapshot poses and landmarks before registration and restore them if the solve fails
    restore_on_failure: bool = False

    # Log statistics about the minimization
    verbose: bool = True

    # Logging level: "DEBUG", "INFO", "WARNING", "ERROR"
    log_level: str = "INFO"

    def __post_init__(self):
        if self.loss_function not in ROBUST_LOSSES:
            raise ValueError(f"Invalid loss_function: {self.loss_function}")
        if self.loss_threshold <= 0.0:
            raise ValueError(f"loss_threshold must be > 0, got {self.loss_threshold}")
        if self.log_level not in ("DEBUG", "INFO", "WARNING", "ERROR"):
            raise ValueError(f"Invalid log_level: {self.log_level}")

    @classmethod
    def from_dict(cls, config_dict: Dict[str, Any]) -> "BundleAdjustmentConfig":
        """Create config from dictionary (for CLI/JSON loading)"""
        config_dict = dict(config_dict)
        solver = SolverConfig(**config_dict.pop("solver", {}))
        registration = RegistrationConfig(**config_dict.pop("registration", {}))
        return cls(solver=solver, registration=registration, **config_dict)

    def to_dict(self) -> Dict[str, Any]:
        """Export config to dictionary"""
        solver = dict(self.solver.__dict__)
        for key in ("linear_solver_type", "sparse_backend", "preconditioner_type"):
            if solver[key] is not None:
                solver[key] = solver[key].name
        return {
            "solver": solver,
            "registration": dict(self.registration.__dict__),
            "use_loss_function": self.use_loss_function,
            "loss_function": self.loss_function,
            "loss_threshold": self.loss_threshold,
            "restore_on_failure": self.restore_on_failure,
            "verbose": self.verbose,
            "log_level": self.log_level,
        }
