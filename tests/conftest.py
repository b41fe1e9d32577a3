import numpy as np
import pytest

gtsam = pytest.importorskip("gtsam")

from robust_pgo.lie import POSE3


ODOM_VARIANCE = 0.001


class EchoSolver:
    """Solver test double: returns the initial estimate untouched."""

    def __init__(self):
        self.calls = []

    def optimize(self, graph, initial):
        self.calls.append((graph.size(), initial.size()))
        return initial


def noise(dim=6, variance=ODOM_VARIANCE):
    return gtsam.noiseModel.Isotropic.Variance(dim, variance)


def perturb(pose, rng, scale):
    return pose.compose(gtsam.Pose3.Expmap(rng.normal(0.0, scale, 6)))


def ground_truth(prefix, n, start=None):
    """Poses of a gently turning, climbing path, keyed by Symbol(prefix, k)."""
    step = gtsam.Pose3(gtsam.Rot3.Ypr(0.12, 0.01, -0.02), gtsam.Point3(1.0, 0.05, 0.02))
    pose = start if start is not None else gtsam.Pose3()
    poses = {}
    for k in range(n):
        poses[gtsam.symbol(prefix, k)] = pose
        pose = pose.compose(step)
    return poses


def make_robot(prefix, n, loops=(), lc_noise=0.01, outliers=(), seed=0, start=None):
    """Odometry chain plus loop closures; returns (graph, values, poses).

    ``loops`` are (i, j) index pairs measured from ground truth with a small
    perturbation; ``outliers`` are (i, j) pairs with a gross error.
    """
    rng = np.random.default_rng(seed)
    poses = ground_truth(prefix, n, start)
    keys = sorted(poses)
    graph = gtsam.NonlinearFactorGraph()
    values = gtsam.Values()
    for key in keys:
        values.insert(key, poses[key])
    for k1, k2 in zip(keys[:-1], keys[1:]):
        graph.add(gtsam.BetweenFactorPose3(k1, k2, poses[k1].between(poses[k2]), noise()))
    for i, j in loops:
        k1, k2 = gtsam.symbol(prefix, i), gtsam.symbol(prefix, j)
        rel = perturb(poses[k1].between(poses[k2]), rng, lc_noise)
        graph.add(gtsam.BetweenFactorPose3(k1, k2, rel, noise()))
    for i, j in outliers:
        k1, k2 = gtsam.symbol(prefix, i), gtsam.symbol(prefix, j)
        bad = poses[k1].between(poses[k2]).compose(
            gtsam.Pose3(gtsam.Rot3.Yaw(2.0), gtsam.Point3(8.0, -6.0, 3.0)))
        graph.add(gtsam.BetweenFactorPose3(k1, k2, bad, noise()))
    return graph, values, poses


def prior_on(values, key):
    return gtsam.PriorFactorPose3(key, POSE3.at(values, key), noise())


ROBOT_A_LOOPS = ((2, 40), (5, 45), (10, 30))
ROBOT_B_LOOPS = ((1, 35), (4, 38))


@pytest.fixture
def echo_solver():
    return EchoSolver()


@pytest.fixture
def robot_a():
    """50 poses, 49 odometry edges and 3 loop closures."""
    return make_robot("a", 50, ROBOT_A_LOOPS, seed=1)


@pytest.fixture
def robot_b():
    """42 poses, 41 odometry edges and 2 loop closures, offset from robot a."""
    start = gtsam.Pose3(gtsam.Rot3.Yaw(0.5), gtsam.Point3(3.0, -2.0, 0.0))
    return make_robot("b", 42, ROBOT_B_LOOPS, seed=2, start=start)
