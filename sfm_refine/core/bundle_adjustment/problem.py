"""
Nonlinear least-squares problem built for one adjustment

Parameter blocks are vectors owned by one scene entity (pose, intrinsic,
landmark or control point) with per-index constancy markers. Residual blocks
tie a cost function and an optional robust loss to parameter blocks. The
problem packs the free scalars of all blocks into the flat vector handed to
the solver, evaluates the stacked residuals and describes the Jacobian
sparsity.

Objective:
    minimize 0.5 * Σ ρ_i( ||f_i(x_i)||² )
              i
where ρ_i is the block's robust loss (identity when it has none).
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

import numpy as np
from scipy.sparse import lil_matrix

from ...utils.geometry import angle_axis_rotate_point

logger = logging.getLogger(__name__)


class BlockKind(Enum):
    """Provenance of a parameter block"""
    POSE = "pose"
    INTRINSIC = "intrinsic"
    LANDMARK = "landmark"
    CONTROL_POINT = "control_point"


class ParameterBlock:
    """
    Adjustable vector of one entity

    `values` is used as given: a landmark's coordinate array can be passed
    directly so that refined values land in the scene without a copy.
    """

    def __init__(self, kind: BlockKind, owner_id: Any, values: np.ndarray):
        if not isinstance(values, np.ndarray) or values.dtype != np.float64:
            values = np.array(values, dtype=np.float64)
        self.kind = kind
        self.owner_id = owner_id
        self.values = values.reshape(-1) if values.ndim != 1 else values
        self.constant = np.zeros(self.values.size, dtype=bool)
        self.initial_values = self.values.copy()

    @property
    def size(self) -> int:
        return self.values.size

    def set_constant(self) -> None:
        """Hold the whole block fixed"""
        self.constant[:] = True

    def set_constant_indices(self, indices: Iterable[int]) -> None:
        """Hold a subset of the block fixed"""
        indices = list(indices)
        for index in indices:
            if not 0 <= index < self.size:
                raise IndexError(
                    f"Constant index {index} out of range for {self.kind.value} block "
                    f"{self.owner_id} of size {self.size}"
                )
        self.constant[indices] = True

    def is_constant(self) -> bool:
        return bool(np.all(self.constant))

    @property
    def free_indices(self) -> np.ndarray:
        return np.flatnonzero(~self.constant)

    def restore(self) -> None:
        """Write back the values the block was created with"""
        self.values[:] = self.initial_values

    def __repr__(self) -> str:
        return (f"ParameterBlock(kind={self.kind.value}, owner_id={self.owner_id}, "
                f"size={self.size}, free={self.free_indices.size})")


class LossFunction(ABC):
    """
    Robust loss ρ(s) applied to the squared norm s of a residual block

    The residual is rescaled so that its squared norm equals ρ(s), which
    lets a plain least-squares solver minimize the robustified cost.
    """

    def __init__(self, a: float):
        self.a = float(a)

    @abstractmethod
    def rho(self, s: float) -> float:
        pass

    def apply(self, residual: np.ndarray) -> np.ndarray:
        s = float(residual @ residual)
        if s == 0.0:
            return residual
        return residual * np.sqrt(self.rho(s) / s)

    def __repr__(self) -> str:
        return f"{type(self).__name__}(a={self.a})"


class HuberLoss(LossFunction):
    """ρ(s) = s for s <= a², 2a√s - a² otherwise"""

    def rho(self, s: float) -> float:
        b = self.a * self.a
        if s > b:
            return 2.0 * self.a * np.sqrt(s) - b
        return s


class CauchyLoss(LossFunction):
    """ρ(s) = a² log(1 + s / a²)"""

    def rho(self, s: float) -> float:
        b = self.a * self.a
        return b * np.log1p(s / b)


class SoftLOneLoss(LossFunction):
    """ρ(s) = 2a² (√(1 + s / a²) - 1)"""

    def rho(self, s: float) -> float:
        b = self.a * self.a
        return 2.0 * b * (np.sqrt(1.0 + s / b) - 1.0)


# Loss names accepted by BundleAdjustmentConfig.loss_function
LOSS_FUNCTIONS = {
    "huber": HuberLoss,
    "cauchy": CauchyLoss,
    "soft_l1": SoftLOneLoss,
}


class PoseCenterResidual:
    """
    Distance between the camera center of a pose block and a prior center

    Parameter block: [angle-axis (3), translation (3)]; C = -Rᵗ t.
    """

    num_residuals = 3

    def __init__(self, center: np.ndarray, weight: float):
        self.center = np.asarray(center, dtype=np.float64).reshape(3)
        self.weight = float(weight)

    def __call__(self, cam_extrinsics: np.ndarray) -> np.ndarray:
        # Rotating by the negated angle-axis applies Rᵗ
        pose_center = -angle_axis_rotate_point(-cam_extrinsics[:3], cam_extrinsics[3:6])
        return self.weight * (pose_center - self.center)


@dataclass
class ResidualBlock:
    """Cost function evaluated on parameter blocks, with an optional robust loss"""

    cost_function: Callable[..., np.ndarray]
    loss_function: Optional[LossFunction]
    parameter_blocks: Tuple[ParameterBlock, ...]
    row_offset: int = 0

    @property
    def num_residuals(self) -> int:
        return self.cost_function.num_residuals

    def evaluate(self) -> np.ndarray:
        residual = np.asarray(
            self.cost_function(*(block.values for block in self.parameter_blocks)),
            dtype=np.float64,
        )
        if self.loss_function is not None:
            residual = self.loss_function.apply(residual)
        return residual


@dataclass
class _FreeLayout:
    """Where the free scalars of each variable block sit in the packed vector"""

    blocks: List[ParameterBlock] = field(default_factory=list)
    offsets: Dict[int, int] = field(default_factory=dict)  # {id(block): offset}
    size: int = 0


class Problem:
    """Parameter blocks and residual blocks of one bundle adjustment"""

    def __init__(self):
        self.parameter_blocks: List[ParameterBlock] = []
        self.residual_blocks: List[ResidualBlock] = []
        self._blocks_by_key: Dict[Tuple[BlockKind, Any], ParameterBlock] = {}
        self._num_residuals = 0
        self._layout: Optional[_FreeLayout] = None

    # ----- construction -----

    def add_parameter_block(self, kind: BlockKind, owner_id: Any,
                            values: np.ndarray) -> ParameterBlock:
        """Register the block of an entity; an entity has at most one block"""
        key = (kind, owner_id)
        block = self._blocks_by_key.get(key)
        if block is None:
            block = ParameterBlock(kind, owner_id, values)
            self._blocks_by_key[key] = block
            self.parameter_blocks.append(block)
            self._layout = None
        return block

    def get_parameter_block(self, kind: BlockKind, owner_id: Any) -> Optional[ParameterBlock]:
        return self._blocks_by_key.get((kind, owner_id))

    def blocks_of_kind(self, kind: BlockKind) -> List[ParameterBlock]:
        return [block for block in self.parameter_blocks if block.kind == kind]

    def add_residual_block(self, cost_function, loss_function: Optional[LossFunction],
                           *parameter_blocks: ParameterBlock) -> ResidualBlock:
        for block in parameter_blocks:
            if self._blocks_by_key.get((block.kind, block.owner_id)) is not block:
                raise ValueError(f"{block!r} is not part of this problem")
        residual_block = ResidualBlock(
            cost_function, loss_function, tuple(parameter_blocks), self._num_residuals
        )
        self.residual_blocks.append(residual_block)
        self._num_residuals += residual_block.num_residuals
        self._layout = None
        return residual_block

    # ----- statistics -----

    @property
    def num_residuals(self) -> int:
        """Number of scalar residuals"""
        return self._num_residuals

    @property
    def num_residual_blocks(self) -> int:
        return len(self.residual_blocks)

    @property
    def num_parameters(self) -> int:
        """Number of scalars over all parameter blocks, constant ones included"""
        return sum(block.size for block in self.parameter_blocks)

    @property
    def num_effective_parameters(self) -> int:
        """Number of free scalars handed to the solver"""
        return self._free_layout().size

    # ----- packing -----

    def _free_layout(self) -> _FreeLayout:
        """Free scalars of the blocks referenced by at least one residual block"""
        if self._layout is not None:
            return self._layout

        referenced = set()
        for residual_block in self.residual_blocks:
            referenced.update(id(block) for block in residual_block.parameter_blocks)

        layout = _FreeLayout()
        for block in self.parameter_blocks:
            if id(block) not in referenced or block.is_constant():
                continue
            layout.blocks.append(block)
            layout.offsets[id(block)] = layout.size
            layout.size += block.free_indices.size

        logger.debug(
            f"Problem layout: {len(layout.blocks)} variable blocks, "
            f"{layout.size} free parameters, {self._num_residuals} residuals"
        )
        self._layout = layout
        return layout

    def is_variable(self, block: ParameterBlock) -> bool:
        """True if the solver adjusts at least one scalar of `block`"""
        return id(block) in self._free_layout().offsets

    def parameters(self) -> np.ndarray:
        """Pack the current free values into a flat vector"""
        layout = self._free_layout()
        x = np.empty(layout.size)
        for block in layout.blocks:
            offset = layout.offsets[id(block)]
            free = block.free_indices
            x[offset:offset + free.size] = block.values[free]
        return x

    def set_parameters(self, x: np.ndarray) -> None:
        """Scatter a flat vector of free values into the parameter blocks"""
        layout = self._free_layout()
        if x.size != layout.size:
            raise ValueError(f"Expected {layout.size} parameters, got {x.size}")
        for block in layout.blocks:
            offset = layout.offsets[id(block)]
            free = block.free_indices
            block.values[free] = x[offset:offset + free.size]

    def restore_initial_values(self) -> None:
        for block in self.parameter_blocks:
            block.restore()

    # ----- evaluation -----

    def _evaluate_range(self, start: int, stop: int, out: np.ndarray) -> None:
        for residual_block in self.residual_blocks[start:stop]:
            offset = residual_block.row_offset
            out[offset:offset + residual_block.num_residuals] = residual_block.evaluate()

    def evaluate(self, x: np.ndarray, executor=None, num_chunks: int = 1) -> np.ndarray:
        """
        Stacked (robustified) residuals at `x`

        With an executor, residual blocks are split into `num_chunks`
        contiguous ranges evaluated concurrently; every range writes its own
        rows, so the result does not depend on the number of chunks.
        """
        self.set_parameters(x)
        residuals = np.empty(self._num_residuals)
        num_blocks = len(self.residual_blocks)

        if executor is None or num_chunks <= 1 or num_blocks < 2 * num_chunks:
            self._evaluate_range(0, num_blocks, residuals)
            return residuals

        bounds = np.linspace(0, num_blocks, num_chunks + 1).astype(int)
        futures = [
            executor.submit(self._evaluate_range, start, stop, residuals)
            for start, stop in zip(bounds[:-1], bounds[1:])
            if stop > start
        ]
        for future in futures:
            future.result()
        return residuals

    def cost(self, x: np.ndarray) -> float:
        residuals = self.evaluate(x)
        return 0.5 * float(residuals @ residuals)

    def jacobian_sparsity(self) -> lil_matrix:
        """
        Sparsity pattern of the Jacobian

        Each residual block depends on the free scalars of its own parameter
        blocks only (camera, pose and point for a reprojection).
        """
        layout = self._free_layout()
        sparsity = lil_matrix((self._num_residuals, layout.size), dtype=int)

        for residual_block in self.residual_blocks:
            rows = slice(residual_block.row_offset,
                         residual_block.row_offset + residual_block.num_residuals)
            for block in residual_block.parameter_blocks:
                offset = layout.offsets.get(id(block))
                if offset is None:
                    continue
                sparsity[rows, offset:offset + block.free_indices.size] = 1

        return sparsity
