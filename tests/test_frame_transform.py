"""
Tests for world <-> vehicle frame conversion of reference waypoints.
"""

import math

import numpy as np
import pytest

from control.errors import InvalidInput
from trajectory.utils import to_vehicle_frame, to_world_frame


POSES = [
    (0.0, 0.0, 0.0),
    (10.0, -5.0, math.pi / 2),
    (-120.3, 45.7, -2.3),
    (1e3, 2e3, 3.1),
    (3.0, 4.0, -math.pi),
]


class TestToVehicleFrame:
    def test_identity_pose_leaves_points_unchanged(self):
        xs, ys = to_vehicle_frame([1.0, 2.0, 3.0], [4.0, 5.0, 6.0], 0.0, 0.0, 0.0)
        assert xs == pytest.approx([1.0, 2.0, 3.0])
        assert ys == pytest.approx([4.0, 5.0, 6.0])

    def test_point_ahead_of_vehicle_lands_on_x_axis(self):
        """Vehicle at (2, 3) facing +y: a point 5 m further along +y is straight ahead."""
        xs, ys = to_vehicle_frame([2.0], [8.0], 2.0, 3.0, math.pi / 2)
        assert xs[0] == pytest.approx(5.0)
        assert ys[0] == pytest.approx(0.0, abs=1e-12)

    def test_point_to_the_left_has_positive_y(self):
        xs, ys = to_vehicle_frame([0.0], [1.0], 0.0, 0.0, 0.0)
        assert xs[0] == pytest.approx(0.0)
        assert ys[0] == pytest.approx(1.0)

    def test_matches_formula(self):
        px, py, psi = 5.0, -2.0, 0.7
        ptsx, ptsy = [7.5, -3.0], [1.0, 4.2]
        xs, ys = to_vehicle_frame(ptsx, ptsy, px, py, psi)
        for i in range(2):
            dx, dy = ptsx[i] - px, ptsy[i] - py
            assert xs[i] == pytest.approx(math.cos(psi) * dx + math.sin(psi) * dy)
            assert ys[i] == pytest.approx(math.cos(psi) * dy - math.sin(psi) * dx)

    def test_output_length_matches_input(self):
        xs, ys = to_vehicle_frame(list(range(7)), list(range(7)), 1.0, 1.0, 0.3)
        assert len(xs) == 7
        assert len(ys) == 7

    def test_empty_input(self):
        xs, ys = to_vehicle_frame([], [], 1.0, 2.0, 0.5)
        assert len(xs) == 0
        assert len(ys) == 0

    def test_unequal_lengths_rejected(self):
        with pytest.raises(InvalidInput):
            to_vehicle_frame([1.0, 2.0], [1.0], 0.0, 0.0, 0.0)

    def test_non_finite_rejected(self):
        with pytest.raises(InvalidInput):
            to_vehicle_frame([1.0, float("nan")], [1.0, 2.0], 0.0, 0.0, 0.0)
        with pytest.raises(InvalidInput):
            to_vehicle_frame([1.0], [1.0], 0.0, float("inf"), 0.0)


class TestRoundTrip:
    @pytest.mark.parametrize("pose", POSES)
    def test_world_vehicle_world_recovers_points(self, pose):
        px, py, psi = pose
        rng = np.random.default_rng(7)
        ptsx = rng.uniform(-500.0, 500.0, size=20)
        ptsy = rng.uniform(-500.0, 500.0, size=20)

        xs, ys = to_vehicle_frame(ptsx, ptsy, px, py, psi)
        wx, wy = to_world_frame(xs, ys, px, py, psi)

        np.testing.assert_allclose(wx, ptsx, rtol=1e-9, atol=1e-9)
        np.testing.assert_allclose(wy, ptsy, rtol=1e-9, atol=1e-9)

    def test_distances_preserved(self):
        ptsx, ptsy = [0.0, 3.0], [0.0, 4.0]
        xs, ys = to_vehicle_frame(ptsx, ptsy, 12.0, -7.0, 1.1)
        assert math.hypot(xs[1] - xs[0], ys[1] - ys[0]) == pytest.approx(5.0)
