import numpy as np
import pytest
from scipy.spatial.transform import Rotation as R_scipy

from vio_feature.camera import CameraPose, CameraPoseStore
from vio_feature.config import TriangulationConfig
from vio_feature.feature import Feature
from vio_feature.stats import TriangulationStats
from vio_feature.triangulation import triangulate, triangulate_features


def _scene():
    poses = CameraPoseStore({
        i: CameraPose(np.eye(3), [0.3 * i, 0.0, 0.0]) for i in range(4)
    })
    points = [np.array([0.2 * k - 0.4, 0.1 * k, 3.0 + 0.3 * k]) for k in range(5)]
    features = []
    for fid, point in enumerate(points):
        rng = np.random.default_rng(fid)
        feature = Feature(id=fid)
        for frame_id, pose in poses.items():
            feature.add_observation(frame_id, pose.project(point) + rng.normal(0.0, 0.0005, size=2))
        features.append(feature)
    return poses, points, features


def test_stats_count_outcomes():
    poses, _, features = _scene()
    stats = TriangulationStats()

    triangulate(features[0], poses, stats=stats)
    triangulate(Feature(id=99, observations={0: [0.0, 0.0]}), poses, stats=stats)
    behind = Feature(id=100, observations={0: [-0.1, 0.0], 1: [0.1, 0.0], 8: [0.0, 0.0]})
    triangulate(behind, poses, stats=stats)

    assert stats.total_attempt == 3
    assert stats.success == 1
    assert stats.fail_few_obs == 1
    assert stats.fail_depth_sign == 1
    assert stats.missing_pose == 1


def test_stats_count_degenerate_and_capped_refinements():
    stats = TriangulationStats()

    rotation_only = CameraPoseStore({
        0: CameraPose(np.eye(3), [0.0, 0.0, 0.0]),
        1: CameraPose(R_scipy.from_euler('y', 10.0, degrees=True).as_matrix(), [0.0, 0.0, 0.0]),
    })
    point = np.array([0.3, 0.2, 4.0])
    spinning = Feature(id=20)
    for frame_id, pose in rotation_only.items():
        spinning.add_observation(frame_id, pose.project(point))
    triangulate(spinning, rotation_only, stats=stats)

    assert stats.degenerate_guess == 1
    assert stats.fail_parallax == 1

    poses, _, features = _scene()
    rng = np.random.default_rng(7)
    noisy = Feature(id=21)
    for frame_id, obs in features[1].sorted_observations():
        noisy.add_observation(frame_id, obs + rng.normal(0.0, 0.01, size=2))
    report = triangulate(noisy, poses, TriangulationConfig(max_iterations=1), stats=stats)

    assert not report.converged
    assert stats.total_attempt == 2
    assert stats.non_converged >= 1
    assert stats.degenerate_guess == 1


def test_merge_reset_and_print(capsys):
    a = TriangulationStats(total_attempt=2, success=1, fail_parallax=1)
    b = TriangulationStats(total_attempt=1, fail_few_obs=1)

    a.merge(b)
    a.print_stats()
    out = capsys.readouterr().out

    assert a.as_dict()["total_attempt"] == 3
    assert "[TRI-STATS] Total: 3, Success: 1" in out
    assert "fail_parallax: 1" in out
    assert "fail_depth_sign" not in out

    a.reset()
    a.print_stats()
    assert "No triangulation attempts" in capsys.readouterr().out


def test_batch_triangulation_serial_and_threaded_agree():
    poses, points, serial_features = _scene()
    _, _, threaded_features = _scene()
    stats = TriangulationStats()

    serial = triangulate_features(serial_features, poses)
    threaded = triangulate_features(threaded_features, poses, stats=stats, max_workers=4)

    assert sorted(serial) == sorted(threaded) == list(range(5))
    assert stats.total_attempt == 5 and stats.success == 5
    for a, b, point in zip(serial_features, threaded_features, points):
        assert a.is_valid and b.is_valid
        assert np.array_equal(a.position, b.position)
        assert np.linalg.norm(a.position - point) < 0.1


def test_batch_rejects_aliased_features():
    poses, _, features = _scene()
    with pytest.raises(ValueError):
        triangulate_features([features[0], features[0]], poses)


def test_debug_output_is_tagged(capsys):
    poses, _, features = _scene()
    triangulate(features[0], poses, debug=True)
    out = capsys.readouterr().out
    assert "[FEAT-TRI]" in out
    assert "status=SUCCESS" in out


def test_batch_rejects_duplicate_feature_ids():
    poses, _, features = _scene()
    twin = Feature(id=features[0].id, observations=dict(features[1].observations))

    with pytest.raises(ValueError, match="duplicate feature ids"):
        triangulate_features([features[0], twin], poses)
    assert features[0].position is None
