#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Feature Triangulation Math Utilities
====================================

Small linear-algebra layer used by the triangulation core. Everything the
core needs (rotation handling, relative poses, point transforms, ray angles)
lives here so the solver only deals with plain numpy arrays.

Quaternion Convention:
----------------------
All quaternions use Hamilton convention with [w, x, y, z] ordering:
- w is the scalar (real) part
- [x, y, z] is the vector (imaginary) part

Pose Convention:
----------------
A camera pose is (R_w_c, p_w_c):
- R_w_c: columns are the camera axes expressed in world frame
- p_w_c: camera origin in world frame
A world point maps into the camera as p_c = R_w_c^T @ (p_w - p_w_c).

Author: VIO project
"""

import numpy as np
from typing import Tuple
from scipy.spatial.transform import Rotation as R_scipy


# Tolerance used when checking orthonormality of incoming rotations
ROTATION_TOLERANCE = 1e-6


# =============================================================================
# Quaternion Operations (all use [w, x, y, z] Hamilton convention)
# =============================================================================

def quat_normalize(q: np.ndarray) -> np.ndarray:
    """
    Normalize quaternion to unit length.

    Args:
        q: Quaternion [w, x, y, z]

    Returns:
        Normalized quaternion with ||q|| = 1
    """
    q = np.asarray(q, dtype=np.float64)
    norm = np.linalg.norm(q)
    if norm < 1e-10:
        return np.array([1.0, 0.0, 0.0, 0.0])
    return q / norm


def quat_to_rot(q: np.ndarray) -> np.ndarray:
    """Convert quaternion [w,x,y,z] to 3x3 rotation matrix."""
    w, x, y, z = quat_normalize(q)
    return R_scipy.from_quat([x, y, z, w]).as_matrix()


def rot_to_quat(R: np.ndarray) -> np.ndarray:
    """Convert 3x3 rotation matrix to quaternion [w,x,y,z] with w >= 0."""
    x, y, z, w = R_scipy.from_matrix(np.asarray(R, dtype=np.float64)).as_quat()
    q = np.array([w, x, y, z])
    if q[0] < 0:
        q = -q
    return quat_normalize(q)


def is_rotation_matrix(R: np.ndarray, tol: float = ROTATION_TOLERANCE) -> bool:
    """Check that R is orthonormal with determinant +1."""
    R = np.asarray(R, dtype=np.float64)
    if R.shape != (3, 3) or not np.all(np.isfinite(R)):
        return False
    if not np.allclose(R.T @ R, np.eye(3), atol=tol):
        return False
    return abs(np.linalg.det(R) - 1.0) < tol


# =============================================================================
# Matrix Operations
# =============================================================================

def relative_transform(R_w_a: np.ndarray, p_w_a: np.ndarray,
                       R_w_b: np.ndarray, p_w_b: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """
    Compose the transform that maps points from frame a into frame b.

    p_b = R_b_a @ p_a + t_b_a

    Args:
        R_w_a, p_w_a: Pose of frame a in world
        R_w_b, p_w_b: Pose of frame b in world

    Returns:
        (R_b_a, t_b_a)
    """
    R_b_a = R_w_b.T @ R_w_a
    t_b_a = R_w_b.T @ (p_w_a - p_w_b)
    return R_b_a, t_b_a


def transform_point(R: np.ndarray, t: np.ndarray, p: np.ndarray) -> np.ndarray:
    """Apply p' = R @ p + t."""
    return R @ p + t


def ray_angle(ray_a: np.ndarray, ray_b: np.ndarray) -> float:
    """Angle between two directions in radians (inputs need not be unit)."""
    na = np.linalg.norm(ray_a)
    nb = np.linalg.norm(ray_b)
    if na < 1e-12 or nb < 1e-12:
        return 0.0
    cos_angle = np.dot(ray_a, ray_b) / (na * nb)
    return float(np.arccos(np.clip(cos_angle, -1.0, 1.0)))
