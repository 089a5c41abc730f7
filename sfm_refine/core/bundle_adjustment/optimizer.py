"""
Bundle adjustment of an SfM scene

Jointly refines camera poses, camera intrinsics and landmark positions by
minimizing reprojection error:

    minimize Σ ρ( ||π(K_c, [R|t]_v, X_j) - x_vj||² )            (structure)
           + Σ ||w_gcp · (π(K_c, [R|t]_v, G_k) - x_vk)||²        (control points)
           + Σ ρ_prior( ||w_v · (C_v - C_v^prior)||² )           (view priors)

where ρ is the configured robust loss (Huber by default) shared by the
structure residuals and ρ_prior a Huber loss scaled by the robust
geo-registration error.

Per call: Idle -> Registering -> BuildingProblem -> Solving -> Applied | Failed
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Optional, Tuple

import numpy as np

from .cameras import check_camera_model, intrinsic_to_cost_function
from .config import (
    BundleAdjustmentConfig,
    ExtrinsicParameterType,
    IntrinsicParameterType,
    OptimizeOptions,
    StructureParameterType,
)
from .errors import OrphanControlPoint, UnsupportedCameraModel, UnusableSolution
from .problem import (
    LOSS_FUNCTIONS,
    BlockKind,
    HuberLoss,
    ParameterBlock,
    PoseCenterResidual,
    Problem,
)
from .registration import RegistrationResult, register_scene_to_priors
from .scene import Landmark, Pose3, SfMData
from .solver import SolverSummary, solve
from ...utils.geometry import angle_axis_to_rotation_matrix, rotation_matrix_to_angle_axis

logger = logging.getLogger(__name__)


class AdjustmentState(Enum):
    IDLE = "idle"
    REGISTERING = "registering"
    BUILDING_PROBLEM = "building_problem"
    SOLVING = "solving"
    APPLIED = "applied"
    FAILED = "failed"


@dataclass
class SceneSnapshot:
    """Copies of the poses and landmark positions of a scene"""

    poses: Dict[int, Pose3] = field(default_factory=dict)
    structure: Dict[int, np.ndarray] = field(default_factory=dict)

    @classmethod
    def capture(cls, sfm_data: SfMData) -> "SceneSnapshot":
        return cls(
            poses={pose_id: pose.copy() for pose_id, pose in sfm_data.poses.items()},
            structure={
                landmark_id: landmark.X.copy()
                for landmark_id, landmark in sfm_data.structure.items()
            },
        )

    def restore(self, sfm_data: SfMData) -> None:
        for pose_id, saved in self.poses.items():
            pose = sfm_data.poses.get(pose_id)
            if pose is not None:
                pose.rotation = saved.rotation.copy()
                pose.center = saved.center.copy()
        for landmark_id, X in self.structure.items():
            landmark = sfm_data.structure.get(landmark_id)
            if landmark is not None:
                landmark.X[:] = X


class BundleAdjuster:
    """
    Bundle adjuster over an SfMData scene

    The scene must not be touched by anyone else during `adjust`.
    """

    def __init__(self, config: Optional[BundleAdjustmentConfig] = None):
        """
        Args:
            config: BundleAdjustmentConfig or None (uses defaults)
        """
        self.config = config or BundleAdjustmentConfig()
        self.logger = logging.getLogger(__name__)

        # Configure logging
        logging.basicConfig(level=getattr(logging, self.config.log_level))

        self.state = AdjustmentState.IDLE
        self.last_summary: Optional[SolverSummary] = None
        self.last_registration: Optional[RegistrationResult] = None

    def adjust(self, sfm_data: SfMData, options: Optional[OptimizeOptions] = None) -> bool:
        """
        Refine the scene in place

        Args:
            sfm_data: scene to refine
            options: adjustment policy (defaults refine everything)

        Returns:
            True if the solver returned a usable solution and it was written
            back. On False the poses and intrinsics are unrefined, but the
            scene may already carry the geo-registration transform unless
            `restore_on_failure` is set.
        """
        options = options or OptimizeOptions()
        self.last_summary = None
        self.last_registration = None

        snapshot = SceneSnapshot.capture(sfm_data) if self.config.restore_on_failure else None

        self.state = AdjustmentState.REGISTERING
        registration = RegistrationResult()
        if options.use_motion_prior:
            registration = register_scene_to_priors(sfm_data, self.config.registration)
        self.last_registration = registration

        self.state = AdjustmentState.BUILDING_PROBLEM
        problem = self._build_problem(sfm_data, options, registration.fitting_error)

        self.state = AdjustmentState.SOLVING
        summary = solve(problem, self.config.solver)
        self.last_summary = summary

        try:
            self._check_solution(summary)
        except UnusableSolution as e:
            if self.config.verbose:
                self.logger.error(f"Bundle Adjustment failed: {e}")
            problem.restore_initial_values()
            if snapshot is not None:
                snapshot.restore(sfm_data)
            self.state = AdjustmentState.FAILED
            return False

        if self.config.verbose:
            self._log_statistics(sfm_data, summary)

        self._write_back(sfm_data, problem, options)
        self.state = AdjustmentState.APPLIED
        return True

    @staticmethod
    def _check_solution(summary: SolverSummary) -> None:
        if not summary.is_solution_usable():
            raise UnusableSolution(summary.termination_type.name, summary.message)

    # ----- problem construction -----

    def _build_problem(self, sfm_data: SfMData, options: OptimizeOptions,
                       pose_center_robust_fitting_error: float = 0.0) -> Problem:
        """Parameter blocks and residual blocks for the whole scene"""
        problem = Problem()

        self._add_pose_blocks(problem, sfm_data, options)
        self._add_intrinsic_blocks(problem, sfm_data, options)
        self._add_structure_residuals(problem, sfm_data, options)

        if options.control_point_opt.use_control_points:
            self._add_control_point_residuals(problem, sfm_data, options)

        if options.use_motion_prior:
            self._add_pose_prior_residuals(problem, sfm_data, pose_center_robust_fitting_error)

        self.logger.info(
            f"Bundle adjustment problem: {len(problem.parameter_blocks)} parameter blocks, "
            f"{problem.num_residual_blocks} residual blocks"
        )
        return problem

    def _add_pose_blocks(self, problem: Problem, sfm_data: SfMData,
                         options: OptimizeOptions) -> None:
        """One [angle-axis, translation] block per valid pose"""
        for pose_id, pose in sfm_data.poses.items():
            if not pose.is_valid():
                self.logger.warning(
                    f"Pose {pose_id} has no orthonormal rotation or a non-finite center; "
                    "excluded from the adjustment"
                )
                continue

            angle_axis = rotation_matrix_to_angle_axis(pose.rotation)
            block = problem.add_parameter_block(
                BlockKind.POSE, pose_id, np.concatenate([angle_axis, pose.translation])
            )

            if options.extrinsics_opt == ExtrinsicParameterType.NONE:
                block.set_constant()
            elif options.extrinsics_opt == ExtrinsicParameterType.ADJUST_TRANSLATION:
                block.set_constant_indices([0, 1, 2])
            elif options.extrinsics_opt == ExtrinsicParameterType.ADJUST_ROTATION:
                block.set_constant_indices([3, 4, 5])

    def _add_intrinsic_blocks(self, problem: Problem, sfm_data: SfMData,
                              options: OptimizeOptions) -> None:
        """Native parameter vector of every supported intrinsic"""
        for intrinsic_id, intrinsic in sfm_data.intrinsics.items():
            try:
                check_camera_model(intrinsic, intrinsic_id)
            except UnsupportedCameraModel as e:
                self.logger.warning(f"{e}; excluded from the adjustment")
                continue

            block = problem.add_parameter_block(
                BlockKind.INTRINSIC, intrinsic_id, np.array(intrinsic.params(), dtype=np.float64)
            )
            if options.intrinsics_opt == IntrinsicParameterType.NONE:
                block.set_constant()
            else:
                constant_indices = intrinsic.subset_parameterization(options.intrinsics_opt)
                if constant_indices:
                    block.set_constant_indices(constant_indices)

    def _view_blocks(self, problem: Problem, sfm_data: SfMData,
                     view_id: int) -> Optional[Tuple[object, ParameterBlock, ParameterBlock]]:
        """(intrinsic, intrinsic block, pose block) of a view, None if unavailable"""
        view = sfm_data.views.get(view_id)
        if view is None:
            self.logger.debug(f"Observation references unknown view {view_id}")
            return None
        if not sfm_data.is_pose_and_intrinsic_defined(view):
            self.logger.debug(
                f"View {view_id} references a missing intrinsic ({view.intrinsic_id}) "
                f"or pose ({view.pose_id})"
            )
            return None

        intrinsic_block = problem.get_parameter_block(BlockKind.INTRINSIC, view.intrinsic_id)
        pose_block = problem.get_parameter_block(BlockKind.POSE, view.pose_id)
        if intrinsic_block is None or pose_block is None:
            self.logger.debug(
                f"View {view_id} has an excluded intrinsic ({view.intrinsic_id}) "
                f"or pose ({view.pose_id})"
            )
            return None

        return sfm_data.intrinsics[view.intrinsic_id], intrinsic_block, pose_block

    def _add_reprojection_residuals(self, problem: Problem, sfm_data: SfMData,
                                    kind: BlockKind, point_id: int, landmark: Landmark,
                                    loss_function, weight: float = 0.0) -> Tuple[Optional[ParameterBlock], int]:
        """Residuals of every observation of one point; returns (point block, skipped count)"""
        point_block = None
        skipped = 0

        for view_id, observation in landmark.obs.items():
            blocks = self._view_blocks(problem, sfm_data, view_id)
            if blocks is None:
                skipped += 1
                continue
            intrinsic, intrinsic_block, pose_block = blocks

            cost_function = intrinsic_to_cost_function(
                intrinsic, observation.x, weight, sfm_data.views[view_id].intrinsic_id
            )

            if point_block is None:
                # The block shares the point's storage: refined values land in the scene
                point_block = problem.add_parameter_block(kind, point_id, landmark.X)
            problem.add_residual_block(
                cost_function, loss_function, intrinsic_block, pose_block, point_block
            )

        return point_block, skipped

    def _add_structure_residuals(self, problem: Problem, sfm_data: SfMData,
                                 options: OptimizeOptions) -> None:
        """One reprojection residual per track observation"""
        loss_function = None
        if self.config.use_loss_function:
            loss_function = LOSS_FUNCTIONS[self.config.loss_function](self.config.loss_threshold ** 2)

        total_skipped = 0
        for landmark_id, landmark in sfm_data.structure.items():
            point_block, skipped = self._add_reprojection_residuals(
                problem, sfm_data, BlockKind.LANDMARK, landmark_id, landmark, loss_function
            )
            total_skipped += skipped
            if point_block is not None and options.structure_opt == StructureParameterType.NONE:
                point_block.set_constant()

        if total_skipped:
            self.logger.warning(
                f"Skipped {total_skipped} observations without a supported camera model or pose"
            )

    def _add_control_point_residuals(self, problem: Problem, sfm_data: SfMData,
                                     options: OptimizeOptions) -> None:
        """Weighted reprojection residuals of fixed ground control points"""
        weight = options.control_point_opt.weight

        for gcp_id, gcp in sfm_data.control_points.items():
            point_block, _ = self._add_reprojection_residuals(
                problem, sfm_data, BlockKind.CONTROL_POINT, gcp_id, gcp, None, weight
            )
            try:
                self._fix_control_point(gcp_id, gcp, point_block)
            except OrphanControlPoint as e:
                self.logger.warning(str(e))

    @staticmethod
    def _fix_control_point(gcp_id: int, gcp: Landmark,
                           point_block: Optional[ParameterBlock]) -> None:
        if not gcp.obs:
            raise OrphanControlPoint(gcp_id)
        if point_block is not None:
            point_block.set_constant()

    def _add_pose_prior_residuals(self, problem: Problem, sfm_data: SfMData,
                                  fitting_error: float) -> None:
        """Anchor the camera centers of views carrying a usable prior"""
        if len(sfm_data.views) <= 3:
            return

        # An exact registration leaves no scale for the robust loss
        loss_function = HuberLoss(fitting_error ** 2) if fitting_error > 0.0 else None

        for view in sfm_data.views_with_usable_prior():
            pose_block = problem.get_parameter_block(BlockKind.POSE, view.pose_id)
            if pose_block is None:
                continue
            cost_function = PoseCenterResidual(view.prior.pose_center, view.prior.center_weight)
            problem.add_residual_block(cost_function, loss_function, pose_block)

    # ----- result write-back -----

    def _write_back(self, sfm_data: SfMData, problem: Problem, options: OptimizeOptions) -> None:
        """
        Copy refined blocks into the scene

        Landmark blocks share the scene's storage and need no copy.
        """
        if options.extrinsics_opt != ExtrinsicParameterType.NONE:
            for block in problem.blocks_of_kind(BlockKind.POSE):
                if problem.is_variable(block):
                    self._update_pose(sfm_data.poses[block.owner_id], block, options)

        if options.intrinsics_opt != IntrinsicParameterType.NONE:
            for block in problem.blocks_of_kind(BlockKind.INTRINSIC):
                if problem.is_variable(block):
                    intrinsic = sfm_data.intrinsics[block.owner_id]
                    if not intrinsic.update_from_params(block.values.tolist()):
                        self.logger.warning(
                            f"Intrinsic {block.owner_id} rejected its refined parameters"
                        )

    @staticmethod
    def _update_pose(pose: Pose3, block: ParameterBlock, options: OptimizeOptions) -> None:
        if options.extrinsics_opt == ExtrinsicParameterType.ADJUST_TRANSLATION:
            # Rotation was held fixed: keep the stored matrix as is
            R_refined = pose.rotation
        else:
            R_refined = angle_axis_to_rotation_matrix(block.values[:3])
        t_refined = block.values[3:6]
        pose.rotation = R_refined
        pose.center = -R_refined.T @ t_refined

    # ----- reporting -----

    def _log_statistics(self, sfm_data: SfMData, summary: SolverSummary) -> None:
        self.logger.info(
            "Bundle Adjustment statistics (approximated RMSE):\n"
            f" #views: {len(sfm_data.views)}\n"
            f" #poses: {len(sfm_data.poses)}\n"
            f" #intrinsics: {len(sfm_data.intrinsics)}\n"
            f" #tracks: {len(sfm_data.structure)}\n"
            f" #residuals: {summary.num_residuals}\n"
            f" Initial RMSE: {summary.initial_rmse:.6f}\n"
            f" Final RMSE: {summary.final_rmse:.6f}\n"
            f" Time (s): {summary.total_time_in_seconds:.4f}"
        )


def bundle_adjust(sfm_data: SfMData, options: Optional[OptimizeOptions] = None,
                  config: Optional[BundleAdjustmentConfig] = None) -> bool:
    """Refine `sfm_data` in place with a fresh BundleAdjuster"""
    return BundleAdjuster(config).adjust(sfm_data, options)
