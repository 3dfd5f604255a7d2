#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Camera Pose Module

Camera poses of the sliding window as supplied by the filter, and the
normalized-coordinate helpers used by triangulation.

Camera Frame: OpenCV convention (X-right, Y-down, Z-forward).
Normalized coordinates are (x/z, y/z) after intrinsics and distortion have
been removed upstream.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from typing import Dict, Iterator, Optional, Tuple

import numpy as np

from .math_utils import is_rotation_matrix, quat_to_rot, rot_to_quat, transform_point


def normalized_to_unit_ray(x_norm: float, y_norm: float) -> np.ndarray:
    """
    Convert normalized coordinates (x/z, y/z) to a unit ray in camera frame.

    Returns:
        3D unit vector pointing in ray direction (Z positive = forward)
    """
    ray = np.array([x_norm, y_norm, 1.0], dtype=np.float64)
    return ray / np.linalg.norm(ray)


@dataclass(eq=False)
class CameraPose:
    """
    Pose of one camera frame in the world.

    orientation: R_w_c, columns are the camera axes in world frame
    position: camera origin in world frame
    """

    orientation: np.ndarray
    position: np.ndarray

    def __post_init__(self):
        self.orientation = np.array(self.orientation, dtype=np.float64)
        self.position = np.array(self.position, dtype=np.float64).reshape(-1)
        if self.position.shape != (3,) or not np.all(np.isfinite(self.position)):
            raise ValueError(f"camera position must be a finite 3-vector, got {self.position!r}")
        if not is_rotation_matrix(self.orientation):
            raise ValueError("camera orientation must be a rotation matrix (orthonormal, det=+1)")

    @classmethod
    def from_quaternion(cls, q_wxyz: np.ndarray, position: np.ndarray) -> "CameraPose":
        """Build a pose from a [w,x,y,z] quaternion for R_w_c."""
        return cls(quat_to_rot(q_wxyz), position)

    @property
    def quaternion(self) -> np.ndarray:
        return rot_to_quat(self.orientation)

    def world_to_camera(self, p_w: np.ndarray) -> np.ndarray:
        R_c_w = self.orientation.T
        return transform_point(R_c_w, -R_c_w @ self.position, np.asarray(p_w, dtype=np.float64))

    def camera_to_world(self, p_c: np.ndarray) -> np.ndarray:
        return transform_point(self.orientation, self.position, np.asarray(p_c, dtype=np.float64))

    def project(self, p_w: np.ndarray) -> np.ndarray:
        """Project a world point to normalized coordinates (u, v)."""
        p_c = self.world_to_camera(p_w)
        return p_c[:2] / p_c[2]

    def ray_to_world(self, uv: np.ndarray) -> np.ndarray:
        """Unit viewing ray of an observation, expressed in world frame."""
        return self.orientation @ normalized_to_unit_ray(uv[0], uv[1])


class CameraPoseStore(Mapping):
    """
    Camera poses of the sliding window keyed by frame id.

    Iteration is always in ascending frame id, independent of insertion
    order. The filter owns and mutates the store; triangulation only reads
    it for the duration of one call.
    """

    def __init__(self, poses: Optional[Dict[int, CameraPose]] = None):
        self._poses: Dict[int, CameraPose] = {}
        for frame_id, pose in (poses or {}).items():
            self[frame_id] = pose

    def __getitem__(self, frame_id: int) -> CameraPose:
        return self._poses[frame_id]

    def __setitem__(self, frame_id: int, pose: CameraPose):
        if not isinstance(pose, CameraPose):
            raise ValueError(f"expected CameraPose for frame {frame_id}, got {type(pose).__name__}")
        self._poses[int(frame_id)] = pose

    def __delitem__(self, frame_id: int):
        del self._poses[frame_id]

    def __iter__(self) -> Iterator[int]:
        return iter(sorted(self._poses))

    def __len__(self) -> int:
        return len(self._poses)

    def __repr__(self) -> str:
        return f"CameraPoseStore(frames={list(self)})"

    def snapshot(self) -> "CameraPoseStore":
        """Independent copy, safe to share read-only across worker threads."""
        return CameraPoseStore({
            frame_id: CameraPose(pose.orientation.copy(), pose.position.copy())
            for frame_id, pose in self._poses.items()
        })

    def window(self) -> Tuple[int, ...]:
        """Frame ids in ascending order."""
        return tuple(self)
