"""Stereo depth estimation and direct photometric pose tracking for a stereo VO front-end."""

from stereo_odometry.camera import CameraModel, CameraPyramid, PinholeCamera, StereoRig
from stereo_odometry.config import (
    CameraConfig,
    KernelBackend,
    MatchingPattern,
    OdometryConfig,
    RobustLoss,
    SolverConfig,
    StereoConfig,
    load_config,
    setup_logging,
)
from stereo_odometry.geometry import Pose
from stereo_odometry.odometry import FrameResult, StereoOdometry
from stereo_odometry.pyramid import DepthPyramid, ImagePyramid
from stereo_odometry.solver import LevelReport, PoseSolver, SolveResult
from stereo_odometry.status import Status
from stereo_odometry.stereo import DepthResult, DepthStats, StereoDepthEstimator

__all__ = [
    "CameraConfig",
    "CameraModel",
    "CameraPyramid",
    "DepthPyramid",
    "DepthResult",
    "DepthStats",
    "FrameResult",
    "ImagePyramid",
    "KernelBackend",
    "LevelReport",
    "MatchingPattern",
    "OdometryConfig",
    "PinholeCamera",
    "Pose",
    "PoseSolver",
    "RobustLoss",
    "SolveResult",
    "SolverConfig",
    "Status",
    "StereoConfig",
    "StereoDepthEstimator",
    "StereoOdometry",
    "StereoRig",
    "load_config",
    "setup_logging",
]
