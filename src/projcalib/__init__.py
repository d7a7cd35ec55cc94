from projcalib import config
from projcalib.calibration import CalibrationResult, CameraCalibrator
from projcalib.config import CalibrationConfig, ConfigValidationError, load_calibration_config, parse_calibration_config
from projcalib.core.calibration_data import CalibrationPoint, RealGridData
from projcalib.core.camera import Camera
from projcalib.errors import DegenerateInputError, NonFiniteJacobianError

__all__ = [
    "config",
    "CalibrationConfig",
    "CalibrationPoint",
    "CalibrationResult",
    "Camera",
    "CameraCalibrator",
    "ConfigValidationError",
    "DegenerateInputError",
    "NonFiniteJacobianError",
    "RealGridData",
    "load_calibration_config",
    "parse_calibration_config",
]
