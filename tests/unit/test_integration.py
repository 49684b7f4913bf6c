"""
Unit Tests for Integration Module
==================================

Tests for program argument parsing, the program registry, the
single-flight refresh and the session lifecycle.

Author: Robotic Arm Prototype Team
License: MIT
"""

import threading
import time

import numpy as np
import pytest

from redundant_arm.control.loop import SimulatedClock, TerminationReason
from redundant_arm.integration.programs import (
    ProgramRegistry,
    argument_pattern,
    parse_numbers,
    set_joints,
)
from redundant_arm.integration.session import (
    PeriodicRefresh,
    SessionConfig,
    SessionContext,
    SessionState,
    SingleFlightTask,
)
from redundant_arm.simulation.robots import ActuatorError, SimulatedServoChain

Q0 = [0.3, 0.3, 0.5, 0.5]


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def config():
    """Fast session configuration in virtual time."""
    return SessionConfig(refresh_period=0.02, log_level="WARNING")


@pytest.fixture
def session(config):
    """Connected session on a simulated servo chain."""
    session = SessionContext(config)
    assert session.connect()
    yield session
    session.disconnect()


# =============================================================================
# Program Argument Tests
# =============================================================================


class TestParseNumbers:
    """Tests for the program argument grammar."""

    def test_valid(self):
        assert parse_numbers("0.1, -0.2; 0.3,0", 4) == [0.1, -0.2, 0.3, 0.0]
        assert parse_numbers("-300;-300;  300", 3) == [-300.0, -300.0, 300.0]
        assert parse_numbers("  12  ", 1) == [12.0]

    def test_no_arguments(self):
        assert parse_numbers("", 0) == []
        assert parse_numbers(None, 0) == []
        with pytest.raises(ValueError):
            parse_numbers("1", 0)

    @pytest.mark.parametrize("text", ["1,2,3", "1,2,3,4,5", "1, x, 3, 4", "1 ,2,3,4", "1.,2,3,4", "+1,2,3,4"])
    def test_invalid(self, text):
        with pytest.raises(ValueError, match="Please enter 4 numbers"):
            parse_numbers(text, 4)

    def test_pattern(self):
        assert argument_pattern(2).match("-1.5;2")
        assert not argument_pattern(2).match("1;2;3")
        with pytest.raises(ValueError):
            argument_pattern(0)


class TestProgramRegistry:
    """Tests for program lookup."""

    def test_default_programs(self):
        registry = ProgramRegistry.default()
        assert registry.names() == ["follow_circle", "set_joints", "set_position", "trajectory_2d"]
        assert "set_joints" in registry
        assert registry.get("set_joints").n_args == 4
        assert registry.get("trajectory_2d").parse("") == []

    def test_duplicate_and_missing(self):
        registry = ProgramRegistry()
        registry.register("set_joints", set_joints, 4)

        with pytest.raises(ValueError):
            registry.register("set_joints", set_joints, 4)
        with pytest.raises(KeyError):
            registry.get("dance")


# =============================================================================
# Configuration Tests
# =============================================================================


class TestSessionConfig:
    """Tests for SessionConfig."""

    def test_defaults_valid(self):
        config = SessionConfig()
        assert config.validate() == []
        assert config.loop_config().time_step == 0.15
        assert config.controller_config().nullspace_gain == -1.0

    def test_validate_reports_issues(self):
        issues = SessionConfig(time_step=0.0, singularity_policy="maybe", log_level="LOUD").validate()
        assert len(issues) == 3

    def test_yaml_round_trip(self, tmp_path):
        config = SessionConfig(name="bench", time_step=0.05, singularity_policy="WARN")
        path = tmp_path / "session.yaml"

        config.to_yaml(path)

        assert SessionConfig.from_yaml(path) == config

    def test_partial_and_unknown_keys(self):
        assert SessionConfig.from_dict({"time_step": 0.05}).time_step == 0.05
        with pytest.raises(ValueError):
            SessionConfig.from_dict({"time_stepp": 0.05})

    def test_invalid_config_rejected(self):
        with pytest.raises(ValueError):
            SessionContext(SessionConfig(refresh_period=-1.0))


# =============================================================================
# Single-Flight Refresh Tests
# =============================================================================


class TestSingleFlightTask:
    """Tests for coalescing, non-overlapping runs."""

    def test_coalescing(self):
        gate = threading.Event()
        started = threading.Event()
        lock = threading.Lock()
        active = []
        overlaps = []

        def work():
            with lock:
                active.append(1)
                overlaps.append(len(active))
            started.set()
            gate.wait(2.0)
            with lock:
                active.pop()

        task = SingleFlightTask(work, "test")
        task.start()
        try:
            assert task.trigger()
            assert started.wait(2.0)

            # One run executing, one pending, the rest coalesce
            assert task.trigger()
            assert not task.trigger()
            assert not task.trigger()

            gate.set()
            task.wait_idle()

            assert task.runs == 2
            assert max(overlaps) == 1
        finally:
            task.stop()

        assert not task.is_running

    def test_failures_do_not_stop_worker(self):
        calls = []

        def flaky():
            calls.append(1)
            if len(calls) == 1:
                raise RuntimeError("bus timeout")

        task = SingleFlightTask(flaky, "flaky")
        task.start()
        try:
            task.trigger()
            task.wait_idle()
            task.trigger()
            task.wait_idle()
        finally:
            task.stop()

        assert task.failures == 1
        assert task.runs == 1

    def test_stop_while_busy(self):
        """Stopping with a run pending behind a slow one does not raise."""
        gate = threading.Event()
        started = threading.Event()

        def work():
            started.set()
            gate.wait(2.0)

        task = SingleFlightTask(work, "busy")
        task.start()
        try:
            task.trigger()
            assert started.wait(2.0)
            task.trigger()

            task.stop(timeout=0.05)
            assert task.is_running
        finally:
            gate.set()

        task.stop()
        assert not task.is_running
        assert task.runs == 2

    @pytest.mark.slow
    def test_periodic_refresh(self):
        counter = []
        refresh = PeriodicRefresh(SingleFlightTask(lambda: counter.append(1), "periodic"), 0.02)

        refresh.start()
        time.sleep(0.3)
        refresh.stop()

        runs = len(counter)
        assert runs >= 3
        assert not refresh.is_running

        time.sleep(0.1)
        assert len(counter) == runs
        refresh.close()

    def test_invalid_period(self):
        with pytest.raises(ValueError):
            PeriodicRefresh(SingleFlightTask(lambda: None), 0.0)


# =============================================================================
# Session Tests
# =============================================================================


class TestSessionLifecycle:
    """Tests for connecting and disconnecting."""

    def test_launch_requires_connection(self, config):
        session = SessionContext(config)

        outcome = session.launch_program("set_joints", "0, 0, 0, 0")

        assert not outcome.success
        assert outcome.message == "Not connected"
        assert session.state == SessionState.DISCONNECTED
        with pytest.raises(RuntimeError):
            session.update_configuration()

    def test_connect(self, session):
        assert session.is_connected
        assert session.state == SessionState.CONNECTED
        assert session.refresh_active
        assert np.allclose(session.chain.configuration, 0.0)

        # Straight arm after zeroing
        assert session.singularity_warning

    def test_disconnect(self, config):
        session = SessionContext(config)
        session.connect()
        session.disconnect()

        assert not session.is_connected
        assert not session.refresh_active
        session.disconnect()

    def test_context_manager(self, config):
        with SessionContext(config) as session:
            assert session.is_connected
            assert session.get_status()["state"] == "CONNECTED"
        assert not session.is_connected

    def test_connection_failure(self, config):
        servo = SimulatedServoChain(SimulatedClock())
        servo.disconnect()

        assert not SessionContext(config, servo_chain=servo).connect()
        with pytest.raises(ActuatorError):
            with SessionContext(config, servo_chain=servo):
                pass

    def test_no_driver_without_simulation(self):
        session = SessionContext(SessionConfig(use_simulation=False, log_level="WARNING"))
        assert not session.connect()


class TestLaunchProgram:
    """Tests for launching programs."""

    def test_unknown_program(self, session):
        outcome = session.launch_program("dance")
        assert not outcome.success
        assert "not found" in outcome.message

    def test_bad_arguments(self, session):
        outcome = session.launch_program("set_joints", "0.1, 0.2")
        assert not outcome.success
        assert "Please enter 4 numbers" in outcome.message
        assert session.refresh_active

    def test_set_joints(self, session):
        outcome = session.launch_program("set_joints", "0.3, 0.3, 0.5, 0.5", wait=True, timeout=30)

        assert outcome.success
        assert outcome.result.reason == TerminationReason.GOAL_REACHED
        assert np.allclose(session.chain.configuration, Q0, atol=0.01)
        assert not session.is_program_running
        assert session.refresh_active
        assert len(session.path_recorder) > 0

    def test_trajectory_2d(self, session):
        session.launch_program("set_joints", "0.3, 0.3, 0.5, 0.5", wait=True, timeout=30)

        outcome = session.launch_program("trajectory_2d", wait=True, timeout=60)

        assert outcome.success
        assert outcome.result is not None
        assert outcome.result.ticks > 0

    def test_program_error_reported(self, config):
        def broken(session, loop, args):
            raise RuntimeError("servo fault")

        registry = ProgramRegistry()
        registry.register("broken", broken)

        with SessionContext(config, registry=registry) as session:
            outcome = session.launch_program("broken", wait=True, timeout=10)

            assert not outcome.success
            assert "servo fault" in outcome.message
            assert session.refresh_active

    def test_stop_program(self):
        config = SessionConfig(
            refresh_period=0.02, singularity_policy="WARN", max_ticks=10 ** 7, log_level="WARNING"
        )
        with SessionContext(config) as session:
            session.launch_program("set_joints", "0.3, 0.3, 0.5, 0.5", wait=True, timeout=30)

            outcome = session.launch_program("set_position", "0; 0; 2000")
            assert outcome.success
            time.sleep(0.2)
            assert session.state == SessionState.RUNNING_PROGRAM

            session.stop_program()
            result = session.wait_for_program(timeout=5)

            assert result.reason == TerminationReason.STOP_REQUESTED
            assert session.state == SessionState.CONNECTED


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
