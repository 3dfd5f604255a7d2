import numpy as np
from scipy.spatial.transform import Rotation as R_scipy

from vio_feature.camera import CameraPose, CameraPoseStore
from vio_feature.config import TriangulationConfig
from vio_feature.feature import Feature
from vio_feature.triangulation import (
    DEGENERATE_GEOMETRY,
    GATE_REJECTION,
    INSUFFICIENT_OBSERVATIONS,
    NON_CONVERGENCE,
    SUCCESS,
    check_motion,
    triangulate,
)


def _two_view_store(baseline: float) -> CameraPoseStore:
    return CameraPoseStore({
        0: CameraPose(np.eye(3), [0.0, 0.0, 0.0]),
        1: CameraPose(np.eye(3), [baseline, 0.0, 0.0]),
    })


def _observe(poses, point, fid=0) -> Feature:
    feature = Feature(id=fid)
    for frame_id, pose in poses.items():
        feature.add_observation(frame_id, pose.project(point))
    return feature


def test_near_zero_baseline_is_rejected():
    poses = _two_view_store(1e-6)
    feature = _observe(poses, np.array([0.2, 0.1, 5.0]))

    report = triangulate(feature, poses)

    assert feature.is_valid is False
    assert report.status == GATE_REJECTION
    assert 'fail_parallax' in report.gate_failures


def test_coincident_cameras_give_defined_but_invalid_estimate():
    poses = CameraPoseStore({
        0: CameraPose(np.eye(3), [0.0, 0.0, 0.0]),
        1: CameraPose(R_scipy.from_euler('y', 10.0, degrees=True).as_matrix(), [0.0, 0.0, 0.0]),
    })
    feature = _observe(poses, np.array([0.3, 0.2, 4.0]))

    report = triangulate(feature, poses)

    assert report.degenerate_guess
    assert DEGENERATE_GEOMETRY in report.conditions
    assert np.all(np.isfinite(feature.position))
    assert feature.is_valid is False
    assert 'fail_parallax' in report.gate_failures


def test_point_behind_cameras_is_rejected():
    # Rays diverge in front of the cameras, so they meet behind them
    poses = _two_view_store(1.0)
    feature = Feature(id=3, observations={0: [-0.1, 0.0], 1: [0.1, 0.0]})

    report = triangulate(feature, poses)

    assert feature.is_valid is False
    assert report.gate_failures == ['fail_depth_sign']
    assert feature.position[2] < 0


def test_single_observation_is_left_untouched():
    poses = _two_view_store(1.0)
    feature = Feature(id=4, observations={0: [0.1, 0.2]})

    report = triangulate(feature, poses)

    assert report.status == INSUFFICIENT_OBSERVATIONS
    assert feature.is_valid is False
    assert feature.position is None


def test_insufficient_observations_keep_previous_position():
    poses = _two_view_store(1.0)
    previous = np.array([1.0, 2.0, 3.0])
    feature = Feature(id=5, observations={0: [0.1, 0.2]}, position=previous, is_valid=True)

    triangulate(feature, poses)

    assert feature.is_valid is False
    np.testing.assert_array_equal(feature.position, previous)


def test_observations_without_pose_are_skipped():
    poses = _two_view_store(1.0)
    point = np.array([0.3, -0.2, 5.0])
    feature = _observe(poses, point)
    feature.add_observation(42, [0.0, 0.0])

    report = triangulate(feature, poses)

    assert report.skipped_frames == [42]
    assert report.used_frames == [0, 1]
    assert feature.is_valid
    np.testing.assert_allclose(feature.position, point, atol=1e-6)


def test_missing_poses_can_leave_too_few_observations():
    poses = _two_view_store(1.0)
    feature = Feature(id=6, observations={0: [0.1, 0.0], 7: [0.2, 0.0], 9: [0.3, 0.0]})

    report = triangulate(feature, poses)

    assert report.status == INSUFFICIENT_OBSERVATIONS
    assert report.skipped_frames == [7, 9]
    assert feature.position is None


def test_large_residual_is_rejected_but_position_kept():
    poses = CameraPoseStore({
        i: CameraPose(np.eye(3), [0.4 * i, 0.1 * i, 0.0]) for i in range(4)
    })
    point = np.array([0.5, 0.2, 5.0])
    rng = np.random.default_rng(0)
    feature = Feature(id=7)
    for frame_id, pose in poses.items():
        feature.add_observation(frame_id, pose.project(point) + rng.normal(0.0, 0.01, size=2))

    strict = TriangulationConfig(max_reprojection_rms=1e-4)
    report = triangulate(feature, poses, strict)

    assert feature.is_valid is False
    assert report.gate_failures == ['fail_reproj_error']
    assert report.rms_error > 1e-4
    assert feature.position is not None

    report = triangulate(feature, poses)
    assert report.status == SUCCESS
    assert feature.is_valid


def test_motion_check_gate():
    poses = CameraPoseStore({
        0: CameraPose(np.eye(3), [0.0, 0.0, 0.0]),
        1: CameraPose(np.eye(3), [0.0, 0.0, 1.0]),
    })
    feature = _observe(poses, np.array([1.0, 0.0, 5.0]))

    report = triangulate(feature, poses, TriangulationConfig(translation_threshold=0.1))
    assert report.status == SUCCESS

    report = triangulate(feature, poses, TriangulationConfig(translation_threshold=0.5))
    assert report.gate_failures == ['fail_motion']
    assert feature.is_valid is False


def test_check_motion_only_counts_orthogonal_translation():
    first = CameraPose(np.eye(3), [0.0, 0.0, 0.0])
    along_ray = CameraPose(np.eye(3), [0.0, 0.0, 2.0])
    sideways = CameraPose(np.eye(3), [0.3, 0.0, 0.0])

    assert not check_motion(first, along_ray, np.array([0.0, 0.0]), 0.2)
    assert check_motion(first, sideways, np.array([0.0, 0.0]), 0.2)


def test_parallax_threshold_is_configurable():
    poses = _two_view_store(0.05)
    feature = _observe(poses, np.array([0.0, 0.0, 5.0]))

    report = triangulate(feature, poses)
    assert report.parallax_deg > 0.3
    assert feature.is_valid

    report = triangulate(feature, poses, TriangulationConfig(min_parallax_deg=5.0))
    assert report.gate_failures == ['fail_parallax']
    assert feature.is_valid is False


def test_iteration_cap_keeps_estimate_and_still_gates():
    poses = CameraPoseStore({
        i: CameraPose(np.eye(3), [0.4 * i, 0.1 * i, 0.0]) for i in range(4)
    })
    point = np.array([0.5, 0.2, 5.0])
    rng = np.random.default_rng(3)
    feature = Feature(id=8)
    for frame_id, pose in poses.items():
        feature.add_observation(frame_id, pose.project(point) + rng.normal(0.0, 0.01, size=2))

    report = triangulate(feature, poses, TriangulationConfig(max_iterations=1))

    assert NON_CONVERGENCE in report.conditions
    assert report.converged is False
    assert report.termination == "max_iterations"
    assert report.iterations == 1
    assert feature.position is not None
    assert np.all(np.isfinite(feature.position))
    # gate ran on the capped estimate
    assert np.isfinite(report.rms_error)
    assert report.parallax_deg > 0.0
    assert report.status in (SUCCESS, GATE_REJECTION)
    assert feature.is_valid == (report.status == SUCCESS)
