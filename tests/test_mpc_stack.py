"""
Integration tests for the per-cycle pipeline: telemetry in, command out,
including config loading and the fallback policy.
"""

import math

import numpy as np
import pytest

from control.errors import InvalidInput
from control.mpc_controller import HorizonConfig, MPCController
from data.formats.data_format import ControlCommand, Telemetry
from mpc_stack import (
    ControlSession,
    MPCStack,
    build_safety_config,
    build_telemetry_config,
    load_config,
)


def make_config(reference_speed=10.0, **sections):
    config = {
        "control": {"mpc": {"reference_speed": reference_speed, "solve_deadline_s": None}},
    }
    config.update(sections)
    return config


def straight_payload(speed=10.0, steering_angle=0.0, throttle=0.0):
    """Waypoints 0..50 m straight ahead of a vehicle at the origin facing +x."""
    return {
        "ptsx": [0.0, 10.0, 20.0, 30.0, 40.0, 50.0],
        "ptsy": [0.0] * 6,
        "x": 0.0,
        "y": 0.0,
        "psi": 0.0,
        "speed": speed,
        "steering_angle": steering_angle,
        "throttle": throttle,
    }


def timeout_stack(**safety):
    controller = MPCController(HorizonConfig(reference_speed=10.0, solve_deadline_s=1e-9))
    return MPCStack(config=make_config(safety=safety), controller=controller)


class TestTelemetryParsing:
    def test_valid_payload(self):
        telemetry = Telemetry.from_message(straight_payload())
        assert len(telemetry.ptsx) == 6
        assert telemetry.speed == 10.0

    def test_missing_field(self):
        payload = straight_payload()
        del payload["psi"]
        with pytest.raises(InvalidInput, match="psi"):
            Telemetry.from_message(payload)

    def test_unequal_waypoint_lists(self):
        payload = straight_payload()
        payload["ptsy"] = payload["ptsy"][:-1]
        with pytest.raises(InvalidInput):
            Telemetry.from_message(payload)

    @pytest.mark.parametrize("value", ["fast", None, float("nan"), float("inf")])
    def test_bad_scalar(self, value):
        payload = straight_payload()
        payload["speed"] = value
        with pytest.raises(InvalidInput):
            Telemetry.from_message(payload)

    def test_waypoints_must_be_a_list(self):
        payload = straight_payload()
        payload["ptsx"] = "0,10,20"
        with pytest.raises(InvalidInput):
            Telemetry.from_message(payload)

    def test_outgoing_message_has_only_wire_fields(self):
        command = ControlCommand(steering_angle=0.1, throttle=0.2, mpc_x=[1.0], mpc_y=[0.0],
                                 fallback=True, fallback_reason="hold: test")
        assert set(command.to_message()) == {
            "steering_angle", "throttle", "mpc_x", "mpc_y", "next_x", "next_y"
        }


class TestEndToEnd:
    def test_straight_road_at_target_speed(self):
        stack = MPCStack(config=make_config(reference_speed=10.0))
        command = stack.process_message(straight_payload(speed=10.0))

        assert not command.fallback
        assert command.status == "converged"
        assert abs(command.steering_angle) < 0.01
        assert abs(command.throttle) < 0.05

    def test_below_target_speed_accelerates(self):
        stack = MPCStack(config=make_config(reference_speed=20.0))
        command = stack.process_message(straight_payload(speed=10.0))
        assert not command.fallback
        assert command.throttle > 0.0

    def test_display_lines(self):
        stack = MPCStack(config=make_config())
        command = stack.process_message(straight_payload())
        assert len(command.mpc_x) == stack.horizon_config.horizon + 1
        assert len(command.mpc_y) == len(command.mpc_x)
        np.testing.assert_allclose(command.next_x, [0.0, 10.0, 20.0, 30.0, 40.0, 50.0], atol=1e-9)
        np.testing.assert_allclose(command.next_y, 0.0, atol=1e-9)

    def test_rotated_pose(self):
        """Same road seen from a vehicle facing +y in world coordinates."""
        stack = MPCStack(config=make_config())
        payload = straight_payload()
        payload["ptsx"], payload["ptsy"] = [5.0] * 6, [3.0 + 10.0 * i for i in range(6)]
        payload.update(x=5.0, y=3.0, psi=math.pi / 2)
        command = stack.process_message(payload)
        assert not command.fallback
        assert abs(command.steering_angle) < 0.01

    def test_steering_normalized_for_channel(self):
        stack = MPCStack(config=make_config())
        assert stack.command_steering(stack.horizon_config.max_steer / 2) == pytest.approx(0.5)
        assert stack.command_steering(10.0) == 1.0

    def test_steering_sent_in_radians_when_not_normalized(self):
        stack = MPCStack(config=make_config(telemetry={"normalize_steering": False}))
        assert stack.command_steering(0.2) == pytest.approx(0.2)

    def test_normalized_telemetry_steering(self):
        stack = MPCStack(config=make_config(telemetry={"steering_units": "normalized"}))
        telemetry = Telemetry.from_message(straight_payload(steering_angle=0.5, throttle=0.1))
        actuation = stack.reported_actuation(telemetry)
        assert actuation.steering == pytest.approx(0.5 * stack.horizon_config.max_steer)
        assert actuation.throttle == pytest.approx(0.1)

    def test_success_updates_session(self):
        stack = MPCStack(config=make_config())
        session = ControlSession(consecutive_failures=3)
        stack.process_message(straight_payload(), session)
        assert session.cycles == 1
        assert session.consecutive_failures == 0
        assert session.last_command is not None
        assert session.warm_start.shape == (stack.horizon_config.horizon, 2)

    def test_warm_start_disabled(self):
        config = make_config()
        config["control"]["mpc"]["warm_start"] = False
        stack = MPCStack(config=config)
        session = ControlSession()
        stack.process_message(straight_payload(), session)
        stack.process_message(straight_payload(), session)
        assert session.cycles == 2
        assert not stack.warm_start_enabled


class TestFallback:
    def test_unequal_lists_fall_back(self):
        stack = MPCStack(config=make_config())
        payload = straight_payload()
        payload["ptsx"] = payload["ptsx"][:4]
        command = stack.process_message(payload)
        assert command.fallback
        assert command.status == "invalid_input"
        assert command.fallback_reason.startswith("hold:")

    def test_degenerate_fit_falls_back(self):
        stack = MPCStack(config=make_config())
        payload = straight_payload()
        payload["ptsx"] = [5.0] * 6
        payload["ptsy"] = [0.0, 1.0, 2.0, 3.0, 4.0, 5.0]
        command = stack.process_message(payload)
        assert command.fallback
        assert command.status == "degenerate_fit"

    def test_too_few_waypoints_fall_back(self):
        stack = MPCStack(config=make_config())
        payload = straight_payload()
        payload["ptsx"], payload["ptsy"] = [0.0, 10.0, 20.0], [0.0, 0.0, 0.0]
        command = stack.process_message(payload)
        assert command.fallback
        assert command.status == "degenerate_fit"

    def test_timeout_holds_then_brakes(self):
        stack = timeout_stack(fallback_mode="hold", max_hold_cycles=1, brake_throttle=-0.3)
        session = ControlSession()
        payload = straight_payload(steering_angle=0.1, throttle=0.3)

        first = stack.process_message(payload, session)
        assert first.fallback
        assert first.status == "timeout"
        assert first.fallback_reason.startswith("hold:")
        assert first.throttle == pytest.approx(0.3)
        assert first.steering_angle == pytest.approx(0.1 / stack.horizon_config.max_steer)

        second = stack.process_message(payload, session)
        assert second.fallback
        assert second.fallback_reason.startswith("brake:")
        assert second.throttle == pytest.approx(-0.3)
        assert session.consecutive_failures == 2
        assert session.fallbacks == 2
        assert session.warm_start is None

    def test_brake_mode_brakes_immediately(self):
        stack = timeout_stack(fallback_mode="brake", brake_throttle=-0.2)
        command = stack.process_message(straight_payload(throttle=0.5))
        assert command.fallback_reason.startswith("brake:")
        assert command.throttle == pytest.approx(-0.2)

    def test_fallback_clips_held_command(self):
        stack = timeout_stack(fallback_mode="hold")
        command = stack.process_message(straight_payload(steering_angle=2.0, throttle=5.0))
        assert command.steering_angle == pytest.approx(1.0)
        assert command.throttle == pytest.approx(1.0)

    def test_recovery_resets_failure_count(self):
        stack = MPCStack(config=make_config())
        session = ControlSession()
        bad = straight_payload()
        bad["ptsy"] = [0.0]
        stack.process_message(bad, session)
        assert session.consecutive_failures == 1

        command = stack.process_message(straight_payload(), session)
        assert not command.fallback
        assert session.consecutive_failures == 0
        assert session.fallbacks == 1

    def test_fallback_carries_no_predicted_line(self):
        command = timeout_stack().process_message(straight_payload())
        assert command.mpc_x == []
        assert command.mpc_y == []
        assert len(command.next_x) == 6


class TestConfig:
    def test_load_config_from_file(self, tmp_path):
        path = tmp_path / "mpc.yaml"
        path.write_text(
            "control:\n"
            "  mpc:\n"
            "    horizon: 8\n"
            "    reference_speed: 30.0\n"
            "    weights:\n"
            "      cte: 1500.0\n"
            "safety:\n"
            "  fallback_mode: brake\n"
        )
        config = load_config(str(path))
        assert config["control"]["mpc"]["horizon"] == 8

        stack = MPCStack(config_path=str(path))
        assert stack.horizon_config.horizon == 8
        assert stack.horizon_config.reference_speed == pytest.approx(30.0)
        assert stack.horizon_config.w_cte == pytest.approx(1500.0)
        assert stack.safety_config.fallback_mode == "brake"

    def test_missing_file_gives_defaults(self, tmp_path):
        assert load_config(str(tmp_path / "missing.yaml")) == {}

    def test_empty_file_gives_defaults(self, tmp_path):
        path = tmp_path / "empty.yaml"
        path.write_text("")
        assert load_config(str(path)) == {}

    def test_shipped_config_matches_defaults(self):
        stack = MPCStack()
        assert stack.horizon_config == HorizonConfig()
        assert stack.bridge_config.port == 4567
        assert stack.bridge_config.pacing_delay_s == pytest.approx(0.1)

    def test_unknown_modes_fall_back_to_defaults(self):
        assert build_safety_config({"fallback_mode": "panic"}).fallback_mode == "hold"
        assert build_telemetry_config({"steering_units": "degrees"}).steering_units == "radians"

    def test_negative_hold_cycles_clamped(self):
        assert build_safety_config({"max_hold_cycles": -3}).max_hold_cycles == 0
