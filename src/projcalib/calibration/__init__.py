from projcalib.calibration.orchestrator import CalibrationResult, CameraCalibrator
from projcalib.calibration.problems import (
    CameraGridProblem,
    CameraParametrization,
    ZeroSkewProblem,
    camera_to_parameters,
    parameters_to_camera,
)

__all__ = [
    "CalibrationResult",
    "CameraCalibrator",
    "CameraGridProblem",
    "CameraParametrization",
    "ZeroSkewProblem",
    "camera_to_parameters",
    "parameters_to_camera",
]
