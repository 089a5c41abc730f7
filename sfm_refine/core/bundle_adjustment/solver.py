"""
Optimizer driver

Configures scipy's trust-region least-squares solver from a SolverConfig and
runs it once, synchronously, over a fully built Problem. Residual
evaluation is spread over a thread pool when more than one thread is
configured.
"""

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

import numpy as np
from scipy.optimize import least_squares

from .config import (
    LinearSolverType,
    PreconditionerType,
    SolverConfig,
    SPARSE_BACKEND_METHODS,
)
from .problem import Problem

logger = logging.getLogger(__name__)


class TerminationType(Enum):
    """Why the minimization stopped"""
    CONVERGENCE = "convergence"
    NO_CONVERGENCE = "no_convergence"
    FAILURE = "failure"


# least_squares status -> termination type
_STATUS_TO_TERMINATION = {
    -1: TerminationType.FAILURE,
    0: TerminationType.NO_CONVERGENCE,
    1: TerminationType.CONVERGENCE,
    2: TerminationType.CONVERGENCE,
    3: TerminationType.CONVERGENCE,
    4: TerminationType.CONVERGENCE,
}


@dataclass
class SolverSummary:
    """Outcome and statistics of one minimization"""

    termination_type: TerminationType = TerminationType.FAILURE
    message: str = ""
    linear_solver_type: Optional[LinearSolverType] = None
    num_threads: int = 1
    num_parameter_blocks: int = 0
    num_parameters: int = 0
    num_effective_parameters: int = 0
    num_residual_blocks: int = 0
    num_residuals: int = 0
    initial_cost: float = float("nan")
    final_cost: float = float("nan")
    num_function_evaluations: int = 0
    num_jacobian_evaluations: int = 0
    total_time_in_seconds: float = 0.0

    def is_solution_usable(self) -> bool:
        """Converged, or stopped early on a finite cost"""
        return (
            self.termination_type in (TerminationType.CONVERGENCE, TerminationType.NO_CONVERGENCE)
            and np.isfinite(self.final_cost)
        )

    @staticmethod
    def _rmse(cost: float, num_residuals: int) -> float:
        if num_residuals == 0:
            return 0.0
        return float(np.sqrt(cost / num_residuals))

    @property
    def initial_rmse(self) -> float:
        return self._rmse(self.initial_cost, self.num_residuals)

    @property
    def final_rmse(self) -> float:
        return self._rmse(self.final_cost, self.num_residuals)

    def to_dict(self) -> Dict[str, Any]:
        summary = dict(self.__dict__)
        summary["termination_type"] = self.termination_type.name
        summary["linear_solver_type"] = (
            self.linear_solver_type.name if self.linear_solver_type else None
        )
        summary["initial_rmse"] = self.initial_rmse
        summary["final_rmse"] = self.final_rmse
        summary["usable"] = self.is_solution_usable()
        return summary

    def full_report(self) -> str:
        linear_solver = self.linear_solver_type.name if self.linear_solver_type else "-"
        return "\n".join([
            "Solver Summary",
            f"  Parameter blocks        {self.num_parameter_blocks}",
            f"  Parameters              {self.num_parameters}",
            f"  Effective parameters    {self.num_effective_parameters}",
            f"  Residual blocks         {self.num_residual_blocks}",
            f"  Residuals               {self.num_residuals}",
            f"  Linear solver           {linear_solver}",
            f"  Threads                 {self.num_threads}",
            f"  Initial cost            {self.initial_cost:.6e}",
            f"  Final cost              {self.final_cost:.6e}",
            f"  Initial RMSE            {self.initial_rmse:.6f}",
            f"  Final RMSE              {self.final_rmse:.6f}",
            f"  Function evaluations    {self.num_function_evaluations}",
            f"  Jacobian evaluations    {self.num_jacobian_evaluations}",
            f"  Total time (s)          {self.total_time_in_seconds:.4f}",
            f"  Termination             {self.termination_type.name} ({self.message})",
        ])


@contextmanager
def _evaluation_pool(num_threads: int):
    """Thread pool for residual evaluation, or None when single threaded"""
    if num_threads <= 1:
        yield None
        return
    with ThreadPoolExecutor(max_workers=num_threads) as executor:
        yield executor


def least_squares_options(problem: Problem, config: SolverConfig) -> Dict[str, Any]:
    """Keyword arguments for scipy.optimize.least_squares"""
    options = {
        "jac": config.jacobian,
        "loss": "linear",  # robust losses are applied per residual block
        "xtol": config.parameter_tolerance,
        "ftol": config.function_tolerance,
        "gtol": config.gradient_tolerance,
        "x_scale": "jac" if config.preconditioner_type == PreconditionerType.JACOBI else 1.0,
        "max_nfev": config.max_num_function_evaluations,
        "verbose": config.minimizer_progress,
    }

    if config.linear_solver_type == LinearSolverType.SPARSE_SCHUR:
        options["method"] = SPARSE_BACKEND_METHODS[config.sparse_backend]
        options["tr_solver"] = "lsmr"
        options["jac_sparsity"] = problem.jacobian_sparsity()
    else:
        options["method"] = "trf"
        options["tr_solver"] = "exact"

    return options


def solve(problem: Problem, config: SolverConfig) -> SolverSummary:
    """
    Run one blocking minimization over `problem`

    The refined values are scattered back into the parameter blocks when the
    solver returns a finite solution. Solver errors are reported through the
    summary, never raised.
    """
    summary = SolverSummary(
        linear_solver_type=config.linear_solver_type,
        num_threads=config.num_threads,
        num_parameter_blocks=len(problem.parameter_blocks),
        num_parameters=problem.num_parameters,
        num_effective_parameters=problem.num_effective_parameters,
        num_residual_blocks=problem.num_residual_blocks,
        num_residuals=problem.num_residuals,
    )
    start_time = time.time()
    x0 = problem.parameters()

    with _evaluation_pool(config.num_threads) as executor:

        def residual_fn(x):
            return problem.evaluate(x, executor, config.num_threads)

        f0 = residual_fn(x0)
        summary.num_function_evaluations = 1
        summary.initial_cost = 0.5 * float(f0 @ f0)

        if not np.all(np.isfinite(f0)):
            summary.message = "Residuals are not finite at the initial point"
            summary.total_time_in_seconds = time.time() - start_time
            logger.error(summary.message)
            return summary

        if x0.size == 0 or f0.size == 0:
            # Nothing to minimize: the initial state is the solution
            summary.termination_type = TerminationType.CONVERGENCE
            summary.message = "No free parameters" if x0.size == 0 else "No residuals"
            summary.final_cost = summary.initial_cost
            summary.total_time_in_seconds = time.time() - start_time
            return summary

        options = least_squares_options(problem, config)
        logger.debug(
            f"Solving {summary.num_effective_parameters} parameters / "
            f"{summary.num_residuals} residuals with method={options['method']}, "
            f"tr_solver={options['tr_solver']}, threads={config.num_threads}"
        )

        try:
            result = least_squares(residual_fn, x0, **options)
        except (ValueError, np.linalg.LinAlgError) as e:
            summary.message = str(e)
            summary.total_time_in_seconds = time.time() - start_time
            logger.error(f"Least squares solver failed: {e}")
            return summary

    summary.num_function_evaluations += int(result.nfev)
    summary.num_jacobian_evaluations = int(result.njev or 0)
    summary.message = str(result.message)
    summary.final_cost = float(result.cost)
    summary.termination_type = _STATUS_TO_TERMINATION.get(result.status, TerminationType.FAILURE)

    if np.all(np.isfinite(result.x)):
        problem.set_parameters(result.x)
    else:
        summary.termination_type = TerminationType.FAILURE
        summary.message = "Solver returned non-finite parameters"

    summary.total_time_in_seconds = time.time() - start_time

    if config.print_summary:
        logger.info("\n" + summary.full_report())

    return summary
