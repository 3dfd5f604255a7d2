#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Feature Triangulation Module

Recovers the world position of one tracked feature from its observations in
the camera frames of the sliding window, then decides whether the result is
fit for the MSCKF measurement update.

Pipeline (per feature):
1. Initial guess: two-view linear triangulation in inverse depth
   (alpha, beta, rho) = (x/z, y/z, 1/z) relative to a base camera frame.
2. Refinement: Levenberg-Marquardt over all usable views, minimizing the
   normalized-plane reprojection error.
3. Validity gate: positive depth in every view, parallax, optional motion
   check, bounded RMS reprojection error.

Nothing here raises for bad geometry. Every failure mode ends as
feature.is_valid = False plus a reason in the returned report.

References:
- Mourikis & Roumeliotis, "A Multi-State Constraint Kalman Filter for Vision-aided Inertial Navigation"
- Sun et al., "Robust Stereo Visual Inertial Odometry for Fast Autonomous Flight" (S-MSCKF)

Author: VIO project
"""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

import numpy as np

from .camera import CameraPose, CameraPoseStore
from .config import VERBOSE_DEBUG, TriangulationConfig
from .feature import Feature
from .math_utils import ray_angle, relative_transform, transform_point
from .stats import TriangulationStats


# Outcome / condition labels
SUCCESS = "SUCCESS"
INSUFFICIENT_OBSERVATIONS = "INSUFFICIENT_OBSERVATIONS"
DEGENERATE_GEOMETRY = "DEGENERATE_GEOMETRY"
NON_CONVERGENCE = "NON_CONVERGENCE"
GATE_REJECTION = "GATE_REJECTION"

# Optimizer termination labels
TERM_CONVERGED = "converged"
TERM_MAX_ITERATIONS = "max_iterations"
TERM_DAMPING_LIMIT = "damping_limit"

# Smallest |rho| kept by the linear guess (point at ~1e9 units)
MIN_INVERSE_DEPTH = 1e-9

# Floor on diag(J^T J) so the Marquardt scaling stays invertible
MIN_HESSIAN_DIAG = 1e-12

_DEFAULT_CONFIG = TriangulationConfig()


@dataclass
class RefinementResult:
    """Levenberg-Marquardt outcome in inverse-depth coordinates."""

    solution: np.ndarray
    cost: float
    initial_cost: float
    iterations: int
    converged: bool
    termination: str
    damping: float


@dataclass
class TriangulationReport:
    """Diagnostics of one triangulate() call."""

    feature_id: int
    status: str = INSUFFICIENT_OBSERVATIONS
    is_valid: bool = False
    conditions: List[str] = field(default_factory=list)
    gate_failures: List[str] = field(default_factory=list)
    used_frames: List[int] = field(default_factory=list)
    skipped_frames: List[int] = field(default_factory=list)
    initial_pair: Optional[Tuple[int, int]] = None
    degenerate_guess: bool = False
    converged: bool = False
    termination: Optional[str] = None
    iterations: int = 0
    final_cost: float = float('nan')
    rms_error: float = float('nan')
    parallax_deg: float = float('nan')


# =============================================================================
# Inverse-depth helpers
# =============================================================================

def inverse_depth_to_point(x: np.ndarray) -> np.ndarray:
    """(alpha, beta, rho) -> (x, y, z) in the base camera frame."""
    alpha, beta, rho = x
    return np.array([alpha, beta, 1.0]) / rho


def point_to_inverse_depth(p: np.ndarray) -> np.ndarray:
    """(x, y, z) in the base camera frame -> (alpha, beta, rho)."""
    return np.array([p[0] / p[2], p[1] / p[2], 1.0 / p[2]])


def relative_pose(base: CameraPose, other: CameraPose) -> Tuple[np.ndarray, np.ndarray]:
    """(R, t) mapping base-camera points into the other camera: p_o = R p_b + t."""
    return relative_transform(base.orientation, base.position,
                              other.orientation, other.position)


# =============================================================================
# Initial Guess
# =============================================================================

def select_initial_pair(frame_ids: Sequence[int], poses: Mapping[int, CameraPose],
                        strategy: str = "first_last") -> Tuple[int, int]:
    """
    Choose the two frames that seed the linear initial guess.

    Args:
        frame_ids: Usable frame ids in ascending order (at least two)
        poses: Camera poses keyed by frame id
        strategy: "first_last" (oldest and newest frame) or "max_baseline"
                  (pair with the largest camera-centre distance)

    Returns:
        (base_frame_id, other_frame_id)
    """
    if len(frame_ids) < 2:
        raise ValueError("need at least two frames to select an initial pair")

    if strategy == "first_last":
        return frame_ids[0], frame_ids[-1]

    if strategy == "max_baseline":
        best_pair = (frame_ids[0], frame_ids[-1])
        best_baseline = -1.0
        for i in range(len(frame_ids)):
            for j in range(i + 1, len(frame_ids)):
                baseline = np.linalg.norm(poses[frame_ids[j]].position - poses[frame_ids[i]].position)
                # Strict comparison keeps the earliest pair on ties
                if baseline > best_baseline:
                    best_baseline = baseline
                    best_pair = (frame_ids[i], frame_ids[j])
        return best_pair

    raise ValueError(f"unknown pair selection strategy: {strategy!r}")


def generate_initial_guess(uv_base: np.ndarray, uv_other: np.ndarray,
                           R: np.ndarray, t: np.ndarray) -> Tuple[np.ndarray, bool]:
    """
    Two-view linear triangulation in inverse depth.

    Unknowns are (alpha, beta, rho) in the base frame. The base view fixes
    alpha = u0 and beta = v0; the other view contributes

        u1 * (R[2] . [alpha, beta, 1] + t_z rho) = R[0] . [alpha, beta, 1] + t_x rho

    (and the v counterpart) after cross-multiplying. The stacked 4x3 system
    is solved in the least-squares sense.

    Args:
        uv_base: Normalized observation in the base frame
        uv_other: Normalized observation in the other frame
        R, t: Base -> other transform (p_o = R p_b + t)

    Returns:
        (x, degenerate): x = [alpha, beta, rho]; degenerate is True when the
        system is rank deficient or rho collapsed onto the floor. The guess
        is always defined; downstream gating decides usability.
    """
    u0, v0 = uv_base
    u1, v1 = uv_other

    A = np.array([
        [1.0, 0.0, 0.0],
        [0.0, 1.0, 0.0],
        [u1 * R[2, 0] - R[0, 0], u1 * R[2, 1] - R[0, 1], u1 * t[2] - t[0]],
        [v1 * R[2, 0] - R[1, 0], v1 * R[2, 1] - R[1, 1], v1 * t[2] - t[1]],
    ])
    b = np.array([
        u0,
        v0,
        R[0, 2] - u1 * R[2, 2],
        R[1, 2] - v1 * R[2, 2],
    ])

    x, _, rank, _ = np.linalg.lstsq(A, b, rcond=None)
    degenerate = rank < 3

    if not np.isfinite(x[2]) or abs(x[2]) < MIN_INVERSE_DEPTH:
        x[2] = MIN_INVERSE_DEPTH if not np.isfinite(x[2]) or x[2] >= 0 else -MIN_INVERSE_DEPTH
        degenerate = True

    return x, degenerate


# =============================================================================
# Reprojection model
# =============================================================================

def _project_inverse_depth(x: np.ndarray, R: np.ndarray, t: np.ndarray) -> np.ndarray:
    """h = R [alpha, beta, 1] + rho t  (point in view frame, scaled by rho)."""
    return R @ np.array([x[0], x[1], 1.0]) + x[2] * t


def reprojection_residual(x: np.ndarray, R: np.ndarray, t: np.ndarray,
                          uv: np.ndarray) -> np.ndarray:
    """Predicted minus measured normalized coordinates for one view."""
    h = _project_inverse_depth(x, R, t)
    with np.errstate(divide='ignore', invalid='ignore'):
        return h[:2] / h[2] - uv


def reprojection_jacobian(x: np.ndarray, R: np.ndarray, t: np.ndarray) -> np.ndarray:
    """
    d(residual)/d(alpha, beta, rho) for one view (2x3).

    With W = [R[:,0], R[:,1], t] and h = R [alpha, beta, 1] + rho t:
        J[0] = W[0] / h_z - h_x W[2] / h_z^2
        J[1] = W[1] / h_z - h_y W[2] / h_z^2
    """
    h = _project_inverse_depth(x, R, t)
    W = np.column_stack((R[:, 0], R[:, 1], t))
    with np.errstate(divide='ignore', invalid='ignore'):
        inv_z = 1.0 / h[2]
        inv_z2 = inv_z * inv_z
        return np.vstack((
            W[0] * inv_z - h[0] * W[2] * inv_z2,
            W[1] * inv_z - h[1] * W[2] * inv_z2,
        ))


def _huber_weight(error_norm: float, huber_epsilon: Optional[float]) -> float:
    """Square-root IRLS weight of the Huber loss (1.0 inside the quadratic zone)."""
    if huber_epsilon is None or error_norm <= huber_epsilon:
        return 1.0
    return float(np.sqrt(huber_epsilon / error_norm))


def _huber_cost(error_sq: float, huber_epsilon: Optional[float]) -> float:
    if huber_epsilon is None or error_sq <= huber_epsilon * huber_epsilon:
        return error_sq
    return 2.0 * huber_epsilon * np.sqrt(error_sq) - huber_epsilon * huber_epsilon


def total_cost(x: np.ndarray, relative_poses: Sequence[Tuple[np.ndarray, np.ndarray]],
               measurements: Sequence[np.ndarray], huber_epsilon: Optional[float] = None) -> float:
    """Sum of (optionally Huber-robustified) squared reprojection errors."""
    cost = 0.0
    with np.errstate(invalid='ignore', over='ignore'):
        for (R, t), uv in zip(relative_poses, measurements):
            r = reprojection_residual(x, R, t, uv)
            cost += _huber_cost(float(r @ r), huber_epsilon)
    return cost


def _normal_equations(x: np.ndarray, relative_poses, measurements,
                      huber_epsilon: Optional[float]) -> Tuple[np.ndarray, np.ndarray]:
    """Accumulate H = sum w^2 J^T J and g = sum w^2 J^T r."""
    H = np.zeros((3, 3))
    g = np.zeros(3)
    with np.errstate(invalid='ignore', over='ignore'):
        for (R, t), uv in zip(relative_poses, measurements):
            J = reprojection_jacobian(x, R, t)
            r = reprojection_residual(x, R, t, uv)
            w2 = _huber_weight(float(np.linalg.norm(r)), huber_epsilon) ** 2
            H += w2 * (J.T @ J)
            g += w2 * (J.T @ r)
    return H, g


# =============================================================================
# Nonlinear Refinement (Levenberg-Marquardt)
# =============================================================================

def refine_inverse_depth(x0: np.ndarray,
                         relative_poses: Sequence[Tuple[np.ndarray, np.ndarray]],
                         measurements: Sequence[np.ndarray],
                         config: TriangulationConfig = _DEFAULT_CONFIG,
                         debug: bool = False) -> RefinementResult:
    """
    Levenberg-Marquardt refinement of (alpha, beta, rho) over all views.

    Each outer iteration relinearizes and solves

        (H + lambda * diag(H)) delta = -g

    A step is accepted only if it lowers the cost (lambda shrinks); otherwise
    lambda grows and the step is retried from the same point, at most
    max_inner_iterations times.

    Termination:
    - converged: step norm < estimation_precision, or relative cost
      decrease < cost_tolerance
    - max_iterations: outer iteration cap reached
    - damping_limit: lambda hit max_damping without a cost decrease
    The best estimate found is always returned.

    Args:
        x0: Initial [alpha, beta, rho]
        relative_poses: (R, t) base -> view for every view
        measurements: Normalized (u, v) for every view, same order
        config: Optimizer settings
        debug: Print per-iteration diagnostics

    Returns:
        RefinementResult
    """
    x = np.array(x0, dtype=np.float64)
    cost = total_cost(x, relative_poses, measurements, config.huber_epsilon)
    initial_cost = cost
    lam = config.initial_damping
    converged = False
    termination = TERM_MAX_ITERATIONS
    iterations = 0

    for outer in range(config.max_iterations):
        iterations = outer + 1
        H, g = _normal_equations(x, relative_poses, measurements, config.huber_epsilon)
        scaling = np.diag(np.maximum(np.diag(H), MIN_HESSIAN_DIAG))

        for _ in range(config.max_inner_iterations):
            try:
                delta = np.linalg.solve(H + lam * scaling, -g)
            except np.linalg.LinAlgError:
                delta = None

            if delta is not None and np.all(np.isfinite(delta)):
                if np.linalg.norm(delta) < config.estimation_precision:
                    converged = True
                    termination = TERM_CONVERGED
                    break

                x_new = x + delta
                new_cost = total_cost(x_new, relative_poses, measurements, config.huber_epsilon)

                if new_cost < cost:
                    rel_decrease = (cost - new_cost) / cost if cost > 0 else 1.0
                    x, cost = x_new, new_cost
                    lam = max(lam / config.damping_decrease, config.min_damping)
                    if debug and VERBOSE_DEBUG:
                        print(f"[FEAT-TRI] iter={iterations} cost={cost:.3e} lambda={lam:.1e}")
                    if rel_decrease < config.cost_tolerance:
                        converged = True
                        termination = TERM_CONVERGED
                    break

            if lam >= config.max_damping:
                termination = TERM_DAMPING_LIMIT
                break
            lam = min(lam * config.damping_increase, config.max_damping)

        if converged or termination == TERM_DAMPING_LIMIT:
            break

    if debug:
        print(f"[FEAT-TRI] LM {termination}: iters={iterations}, "
              f"cost {initial_cost:.3e} -> {cost:.3e}, lambda={lam:.1e}")

    return RefinementResult(
        solution=x,
        cost=cost,
        initial_cost=initial_cost,
        iterations=iterations,
        converged=converged,
        termination=termination,
        damping=lam,
    )


# =============================================================================
# Validity Gate
# =============================================================================

def check_motion(first_pose: CameraPose, last_pose: CameraPose, uv_first: np.ndarray,
                 translation_threshold: float) -> bool:
    """
    Check that the camera moved enough across the feature's track.

    The translation between the first and last frame is split along the
    first viewing ray; only the orthogonal part makes depth observable.
    """
    direction = first_pose.ray_to_world(uv_first)
    translation = last_pose.position - first_pose.position
    parallel = np.dot(translation, direction)
    orthogonal = translation - parallel * direction
    return bool(np.linalg.norm(orthogonal) > translation_threshold)


def max_parallax_angle(p_w: np.ndarray, base_pose: CameraPose,
                       other_poses: Iterable[CameraPose]) -> float:
    """Largest angle (rad) subtended at p_w between the base camera and any other camera."""
    if not np.all(np.isfinite(p_w)):
        return float('nan')
    ray_base = p_w - base_pose.position
    angles = [ray_angle(ray_base, p_w - pose.position) for pose in other_poses]
    return max(angles) if angles else 0.0


def depths_in_views(p_c0: np.ndarray,
                    relative_poses: Sequence[Tuple[np.ndarray, np.ndarray]]) -> np.ndarray:
    """Depth (z) of a base-frame point in every view."""
    return np.array([transform_point(R, t, p_c0)[2] for R, t in relative_poses])


def rms_reprojection_error(x: np.ndarray, relative_poses, measurements) -> float:
    """Root mean square of the per-view reprojection error norm."""
    errors_sq = [float(r @ r) for r in
                 (reprojection_residual(x, R, t, uv) for (R, t), uv in zip(relative_poses, measurements))]
    return float(np.sqrt(np.mean(errors_sq)))


# =============================================================================
# Entry points
# =============================================================================

def triangulate(feature: Feature, poses: Mapping[int, CameraPose],
                config: Optional[TriangulationConfig] = None,
                stats: Optional[TriangulationStats] = None,
                debug: bool = False) -> TriangulationReport:
    """
    Triangulate one feature and gate the result.

    Mutates feature.position and feature.is_valid in place. Observations
    whose frame is missing from poses are skipped and listed in the report.
    With fewer than two usable observations the feature is left untouched
    except for is_valid = False.

    Args:
        feature: Feature to triangulate (caller holds it exclusively)
        poses: Camera poses keyed by frame id, read only during the call
        config: Triangulation settings (defaults if None)
        stats: Optional counters updated with the outcome
        debug: Print diagnostics

    Returns:
        TriangulationReport
    """
    config = config or _DEFAULT_CONFIG
    report = TriangulationReport(feature_id=feature.id)
    feature.is_valid = False

    usable, skipped = feature.usable_observations(poses)
    report.used_frames = usable
    report.skipped_frames = skipped
    if skipped and debug:
        print(f"[FEAT-TRI] fid={feature.id}: no pose for frames {skipped}, observations skipped")

    if len(usable) < 2:
        report.status = INSUFFICIENT_OBSERVATIONS
        report.conditions.append(INSUFFICIENT_OBSERVATIONS)
        if debug:
            print(f"[FEAT-TRI] fid={feature.id}: {len(usable)} usable observation(s), skipped")
        if stats is not None:
            stats.record(report)
        return report

    base_id, other_id = select_initial_pair(usable, poses, config.pair_selection)
    report.initial_pair = (base_id, other_id)
    base_pose = poses[base_id]

    # Relative poses are computed once; nothing from `poses` is kept after return
    relative_poses = [relative_pose(base_pose, poses[fid]) for fid in usable]
    measurements = [feature.observations[fid] for fid in usable]

    # 1. Initial guess from the selected pair
    R_ob, t_ob = relative_poses[usable.index(other_id)]
    x0, degenerate = generate_initial_guess(
        feature.observations[base_id], feature.observations[other_id], R_ob, t_ob)
    report.degenerate_guess = degenerate
    if degenerate:
        report.conditions.append(DEGENERATE_GEOMETRY)

    # 2. Refinement over all usable views
    refined = refine_inverse_depth(x0, relative_poses, measurements, config, debug=debug)
    report.converged = refined.converged
    report.termination = refined.termination
    report.iterations = refined.iterations
    report.final_cost = refined.cost
    if not refined.converged:
        report.conditions.append(NON_CONVERGENCE)

    p_c0 = inverse_depth_to_point(refined.solution)
    p_w = base_pose.camera_to_world(p_c0)
    feature.position = p_w

    # 3. Validity gate
    depths = depths_in_views(p_c0, relative_poses)
    if not np.all(depths > 0):
        report.gate_failures.append('fail_depth_sign')

    first_id, last_id = usable[0], usable[-1]
    if config.translation_threshold > 0 and not check_motion(
            poses[first_id], poses[last_id], feature.observations[first_id],
            config.translation_threshold):
        report.gate_failures.append('fail_motion')

    parallax = max_parallax_angle(p_w, base_pose, (poses[fid] for fid in usable if fid != base_id))
    report.parallax_deg = float(np.degrees(parallax))
    if not report.parallax_deg >= config.min_parallax_deg:
        report.gate_failures.append('fail_parallax')

    report.rms_error = rms_reprojection_error(refined.solution, relative_poses, measurements)
    if not report.rms_error <= config.max_reprojection_rms:
        report.gate_failures.append('fail_reproj_error')

    if report.gate_failures:
        report.status = GATE_REJECTION
        report.conditions.append(GATE_REJECTION)
    else:
        report.status = SUCCESS
        report.is_valid = True
    feature.is_valid = report.is_valid

    if debug:
        print(f"[FEAT-TRI] fid={feature.id}: status={report.status} "
              f"p_w=[{p_w[0]:.3f}, {p_w[1]:.3f}, {p_w[2]:.3f}] "
              f"rms={report.rms_error:.4f} parallax={report.parallax_deg:.2f}deg "
              f"failures={report.gate_failures}")

    if stats is not None:
        stats.record(report)
    return report


def triangulate_features(features: Iterable[Feature], poses: Mapping[int, CameraPose],
                         config: Optional[TriangulationConfig] = None,
                         stats: Optional[TriangulationStats] = None,
                         max_workers: Optional[int] = None) -> Dict[int, TriangulationReport]:
    """
    Triangulate many independent features against one pose snapshot.

    Features are independent, so with max_workers > 1 they run on a thread
    pool. The pose store is snapshotted first so workers never observe a
    concurrent writer. Stats are tallied on the calling thread.

    Returns:
        {feature_id: TriangulationReport}
    """
    features = list(features)
    if len({id(f) for f in features}) != len(features):
        raise ValueError("the same Feature object was passed more than once")
    ids = [f.id for f in features]
    if len(set(ids)) != len(ids):
        duplicates = sorted({fid for fid in ids if ids.count(fid) > 1})
        raise ValueError(f"duplicate feature ids: {duplicates}")

    store = poses if isinstance(poses, CameraPoseStore) else CameraPoseStore(dict(poses))
    snapshot = store.snapshot()

    if max_workers is None or max_workers <= 1:
        reports = [triangulate(f, snapshot, config) for f in features]
    else:
        with ThreadPoolExecutor(max_workers=max_workers) as pool:
            reports = list(pool.map(lambda f: triangulate(f, snapshot, config), features))

    results = {}
    for report in reports:
        if stats is not None:
            stats.record(report)
        results[report.feature_id] = report
    return results
