"""
Error kinds raised while building and solving a bundle adjustment problem

Only UnusableSolution changes the outcome of an adjustment (it turns into a
False return); the others are logged where they are caught and the offending
entity is left out of the problem.
"""


class BundleAdjustmentError(Exception):
    """Base class for bundle adjustment errors"""


class UnsupportedCameraModel(BundleAdjustmentError):
    """Intrinsic whose camera model is not one of the supported variants"""

    def __init__(self, intrinsic_id, model_type):
        self.intrinsic_id = intrinsic_id
        self.model_type = model_type
        super().__init__(
            f"Unsupported camera model {model_type!r} for intrinsic {intrinsic_id}"
        )


class UnusableSolution(BundleAdjustmentError):
    """The solver did not return a usable solution"""

    def __init__(self, termination_type, message: str = ""):
        self.termination_type = termination_type
        super().__init__(
            f"Bundle adjustment failed ({termination_type}): {message}".rstrip(": ")
        )


class OrphanControlPoint(BundleAdjustmentError):
    """Ground control point without any linked image observation"""

    def __init__(self, control_point_id):
        self.control_point_id = control_point_id
        super().__init__(
            f"Cannot use this GCP id: {control_point_id}. "
            "There is no linked image observation."
        )


class DegenerateRegistration(BundleAdjustmentError):
    """Not enough (or not well spread) correspondences for a similarity fit"""
