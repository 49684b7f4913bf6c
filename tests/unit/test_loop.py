"""
Unit Tests for Control Loop
============================

Tests for the tick-based control loop driving a simulated arm.

Author: Robotic Arm Prototype Team
License: MIT
"""

import threading

import numpy as np
import pytest

from redundant_arm.control.kinematics import KinematicChain
from redundant_arm.control.controller import (
    ControllerConfig,
    JointSpaceController,
    NullspaceController,
    PIDConfig,
    PIDController,
)
from redundant_arm.control.frames import rotz
from redundant_arm.control.trajectory import TrajectoryGenerator
from redundant_arm.control.loop import (
    ControlLoop,
    LoopConfig,
    LoopState,
    SimulatedClock,
    SingularityPolicy,
    TerminationReason,
    WallClock,
)
from redundant_arm.feedback.telemetry import PathRecorder, TelemetryHub
from redundant_arm.simulation.robots import RealRobot, SimulatedRobot, SimulatedServoChain

Q0 = np.array([0.3, 0.3, 0.5, 0.5])
Q_NEAR_SINGULAR = np.array([0.0, 0.0, 0.0, 0.02])


# =============================================================================
# Helpers
# =============================================================================


class RecordingRobot(SimulatedRobot):
    """Simulated robot that keeps every velocity command."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.commands = []

    def set_joint_velocities(self, q_dot):
        self.commands.append(np.array(q_dot, dtype=float))
        super().set_joint_velocities(q_dot)


class ShortReadingRobot(RecordingRobot):
    """Reports only three joint angles while broken."""

    broken = True

    def get_configuration(self):
        q = super().get_configuration()
        return q[:3] if self.broken else q


class RaisingSink:
    def publish(self, frame):
        raise RuntimeError("display closed")


class CallbackSink:
    """Calls a function on the frame of one tick."""

    def __init__(self, tick, callback):
        self.tick = tick
        self.callback = callback

    def publish(self, frame):
        if frame.tick == self.tick:
            self.callback()


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def clock():
    return SimulatedClock()


@pytest.fixture
def chain():
    return KinematicChain.default_arm()


@pytest.fixture
def robot(chain, clock):
    return RecordingRobot(chain, clock, Q0)


@pytest.fixture
def position_controller():
    """Pure position control (no nullspace motion)."""
    return NullspaceController(ControllerConfig(position_gain=2.0, nullspace_gain=0.0))


def rotated_target(chain, q, angle):
    """End-effector position rotated about the vertical axis through the shoulder."""
    center, _ = chain.reach()
    x = chain.forward_kinematics(q)
    return center + rotz(angle) @ (x - center)


# =============================================================================
# Configuration Tests
# =============================================================================


class TestLoopConfig:
    """Tests for LoopConfig."""

    def test_defaults(self):
        config = LoopConfig()
        assert config.time_step == 0.01
        assert config.actuation_interval == 1
        assert config.singularity_policy == SingularityPolicy.ABORT
        assert config.control_rate == pytest.approx(100.0)

    def test_policy_from_string(self):
        assert LoopConfig(singularity_policy="warn").singularity_policy == SingularityPolicy.WARN

    def test_hardware_timing(self):
        config = LoopConfig.for_hardware()
        assert config.time_step == 0.15
        assert config.realtime

    def test_invalid(self):
        with pytest.raises(ValueError):
            LoopConfig(time_step=0.0)
        with pytest.raises(ValueError):
            LoopConfig(actuation_interval=0)
        with pytest.raises(ValueError):
            LoopConfig(max_ticks=0)
        with pytest.raises(KeyError):
            LoopConfig(singularity_policy="ignore")


class TestSimulatedClock:
    """Tests for virtual time."""

    def test_sleep_advances(self):
        clock = SimulatedClock(start=2.0)
        clock.sleep(0.5)
        clock.advance(0.25)
        assert clock.now() == pytest.approx(2.75)

    def test_negative_sleep_ignored(self):
        clock = SimulatedClock()
        clock.sleep(-1.0)
        assert clock.now() == 0.0


# =============================================================================
# Seek Position Tests
# =============================================================================


class TestSeekPosition:
    """Tests for closed-loop position seeking."""

    def test_reaches_target(self, chain, clock, robot, position_controller):
        target = rotated_target(chain, Q0, 0.2)
        loop = ControlLoop(
            robot, chain, position_controller,
            LoopConfig(time_step=0.05, max_ticks=20000, singularity_policy="warn"), clock
        )

        result = loop.seek_position(target)

        assert result.state == LoopState.COMPLETED
        assert result.reason == TerminationReason.GOAL_REACHED
        assert result.success
        assert result.final_error < 5.0
        assert np.linalg.norm(chain.forward_kinematics(robot.get_configuration()) - target) < 5.0
        assert loop.state == LoopState.COMPLETED

    def test_error_decreases(self, chain, clock, robot, position_controller):
        target = rotated_target(chain, Q0, 0.2)
        loop = ControlLoop(robot, chain, position_controller, LoopConfig(time_step=0.05), clock)

        result = loop.seek_position(target)
        distances = np.linalg.norm(result.path - target, axis=1)

        assert len(result.path) == result.ticks
        assert np.all(np.diff(distances) <= 1e-6)

    def test_final_zero_command(self, chain, clock, robot, position_controller):
        loop = ControlLoop(robot, chain, position_controller, LoopConfig(time_step=0.05), clock)

        result = loop.seek_position(rotated_target(chain, Q0, 0.2))

        assert len(robot.commands) == result.commands_sent + 1
        assert np.array_equal(robot.commands[-1], np.zeros(4))
        assert np.array_equal(robot.joint_velocities, np.zeros(4))

    def test_chain_state_committed(self, chain, clock, robot, position_controller):
        loop = ControlLoop(robot, chain, position_controller, LoopConfig(time_step=0.05), clock)

        result = loop.seek_position(rotated_target(chain, Q0, 0.2))

        assert np.allclose(chain.end_effector_position(), result.path[-1], atol=1e-8)

    def test_invalid_target(self, chain, clock, robot):
        loop = ControlLoop(robot, chain, clock=clock)
        with pytest.raises(ValueError):
            loop.seek_position([1.0, 2.0])
        assert loop.state == LoopState.IDLE


# =============================================================================
# Tick Mechanics Tests
# =============================================================================


class TestTickMechanics:
    """Tests for actuation interval, budget, stop and telemetry."""

    def test_actuation_interval(self, chain, clock, robot, position_controller):
        config = LoopConfig(time_step=0.05, actuation_interval=3, max_ticks=10, singularity_policy="warn")
        loop = ControlLoop(robot, chain, position_controller, config, clock)

        result = loop.seek_position([0.0, 0.0, 2000.0])

        assert result.ticks == 10
        assert result.commands_sent == 4
        assert result.state == LoopState.ABORTED
        assert result.reason == TerminationReason.BUDGET_EXHAUSTED
        assert len(robot.commands) == 5

    def test_ticks_take_time_step(self, chain, clock, robot, position_controller):
        config = LoopConfig(time_step=0.05, max_ticks=10, singularity_policy="warn")
        loop = ControlLoop(robot, chain, position_controller, config, clock)

        loop.seek_position([0.0, 0.0, 2000.0])

        assert clock.now() == pytest.approx(0.5)

    def test_stop_request(self, chain, clock, robot, position_controller):
        config = LoopConfig(time_step=0.05, singularity_policy="warn")
        loop = ControlLoop(robot, chain, position_controller, config, clock)
        loop.telemetry = TelemetryHub([CallbackSink(5, loop.stop)])

        result = loop.seek_position([0.0, 0.0, 2000.0])

        assert result.reason == TerminationReason.STOP_REQUESTED
        assert result.state == LoopState.ABORTED
        assert result.ticks == 6
        assert np.array_equal(robot.commands[-1], np.zeros(4))

    @pytest.mark.slow
    def test_stop_from_other_thread(self, chain):
        clock = WallClock()
        robot = SimulatedRobot(chain, clock, Q0)
        config = LoopConfig(time_step=0.01, singularity_policy="warn")
        loop = ControlLoop(robot, chain, NullspaceController(), config, clock)

        timer = threading.Timer(0.2, loop.stop)
        timer.start()
        try:
            result = loop.seek_position([0.0, 0.0, 2000.0])
        finally:
            timer.cancel()

        assert result.reason == TerminationReason.STOP_REQUESTED
        assert result.ticks < config.max_ticks

    def test_telemetry_frames(self, chain, clock, robot, position_controller):
        recorder = PathRecorder()
        config = LoopConfig(time_step=0.05, telemetry_interval=2, max_ticks=10, singularity_policy="warn")
        loop = ControlLoop(robot, chain, position_controller, config, clock, telemetry=recorder)

        result = loop.seek_position([0.0, 0.0, 2000.0])

        assert len(recorder) == 5
        assert np.allclose(recorder.path, result.path[::2])

    def test_sink_errors_are_isolated(self, chain, clock, robot, position_controller):
        hub = TelemetryHub([RaisingSink()])
        loop = ControlLoop(
            robot, chain, position_controller,
            LoopConfig(time_step=0.05, max_ticks=5, singularity_policy="warn"), clock, telemetry=hub
        )

        result = loop.seek_position([0.0, 0.0, 2000.0])

        assert result.ticks == 5
        assert hub.errors == 5

    def test_runs_can_repeat(self, chain, clock, robot, position_controller):
        loop = ControlLoop(robot, chain, position_controller, LoopConfig(time_step=0.05), clock)

        first = loop.seek_position(rotated_target(chain, Q0, 0.1))
        second = loop.seek_position(rotated_target(chain, Q0, -0.1))

        assert first.success and second.success
        assert loop.get_status()["last_reason"] == "GOAL_REACHED"

    def test_stop_before_start(self, chain, clock, robot, position_controller):
        """A stop requested before the first tick ends the run on that tick."""
        loop = ControlLoop(robot, chain, position_controller, LoopConfig(time_step=0.05), clock)

        loop.stop()
        stopped = loop.seek_position(rotated_target(chain, Q0, 0.1))

        assert stopped.reason == TerminationReason.STOP_REQUESTED
        assert stopped.ticks == 0
        assert stopped.commands_sent == 0
        assert np.array_equal(robot.commands[-1], np.zeros(4))

        # The request does not carry over into the next run
        resumed = loop.seek_position(rotated_target(chain, Q0, 0.1))
        assert resumed.reason == TerminationReason.GOAL_REACHED

    def test_unexpected_error_leaves_loop_reusable(self, chain, clock, position_controller):
        """A sensing fault is re-raised, the arm is stopped and the loop leaves RUNNING."""
        robot = ShortReadingRobot(chain, clock, Q0)
        loop = ControlLoop(robot, chain, position_controller, LoopConfig(time_step=0.05), clock)

        with pytest.raises(ValueError):
            loop.seek_position(rotated_target(chain, Q0, 0.1))

        assert loop.state == LoopState.ABORTED
        assert loop.last_result.reason == TerminationReason.ERROR
        assert loop.last_result.ticks == 0
        assert np.array_equal(robot.commands[-1], np.zeros(4))

        robot.broken = False
        result = loop.seek_position(chain.forward_kinematics(Q0))

        assert result.reason == TerminationReason.GOAL_REACHED
        assert result.ticks == 1


# =============================================================================
# Singularity Policy Tests
# =============================================================================


class TestSingularityPolicy:
    """Tests for abort and warn handling of near-singular configurations."""

    def test_abort(self, chain, clock):
        robot = RecordingRobot(chain, clock, Q_NEAR_SINGULAR)
        loop = ControlLoop(robot, chain, config=LoopConfig(time_step=0.05), clock=clock)

        result = loop.seek_position([100.0, 100.0, 400.0])

        assert result.state == LoopState.ABORTED
        assert result.reason == TerminationReason.SINGULARITY
        assert result.ticks == 1
        assert result.commands_sent == 0
        assert result.singularity_events == 1
        assert len(robot.commands) == 1
        assert np.array_equal(robot.commands[0], np.zeros(4))

    def test_goal_reached_on_singular_tick(self, chain, clock):
        robot = RecordingRobot(chain, clock, Q_NEAR_SINGULAR)
        loop = ControlLoop(robot, chain, config=LoopConfig(time_step=0.05), clock=clock)

        result = loop.seek_position(chain.forward_kinematics(Q_NEAR_SINGULAR))

        assert result.state == LoopState.COMPLETED
        assert result.reason == TerminationReason.GOAL_REACHED
        assert result.singularity_events == 1
        assert result.commands_sent == 0

    def test_warn(self, chain, clock):
        robot = RecordingRobot(chain, clock, Q_NEAR_SINGULAR)
        config = LoopConfig(time_step=0.05, max_ticks=20, singularity_policy="warn")
        loop = ControlLoop(robot, chain, config=config, clock=clock)

        result = loop.seek_position([100.0, 100.0, 400.0])

        assert result.singularity_events >= 1
        assert result.commands_sent == result.ticks
        assert all(np.all(np.isfinite(command)) for command in robot.commands)


# =============================================================================
# Actuator Failure Tests
# =============================================================================


class RejectingServoChain(SimulatedServoChain):
    def write_velocities(self, velocities):
        return False


def servo_robot(chain, servo):
    """RealRobot over a servo chain already in velocity mode."""
    servo.set_operating_mode("velocity")
    servo.torque_enable(True)
    return RealRobot(servo, chain)


class TestActuatorFailure:
    """Tests for aborting on actuator errors."""

    def test_lost_connection(self, chain, clock, position_controller):
        servo = SimulatedServoChain(clock, Q0)
        robot = servo_robot(chain, servo)
        loop = ControlLoop(
            robot, chain, position_controller,
            LoopConfig(time_step=0.05, singularity_policy="warn"), clock,
            telemetry=CallbackSink(3, servo.disconnect)
        )

        result = loop.seek_position([0.0, 0.0, 2000.0])

        assert result.state == LoopState.ABORTED
        assert result.reason == TerminationReason.ACTUATOR_FAILURE
        assert result.ticks == 4
        assert result.commands_sent == 4

    def test_rejected_write(self, chain, clock, position_controller):
        robot = servo_robot(chain, RejectingServoChain(clock, Q0))
        config = LoopConfig(time_step=0.05, singularity_policy="warn")
        loop = ControlLoop(robot, chain, position_controller, config, clock)

        result = loop.seek_position([0.0, 0.0, 2000.0])

        assert result.reason == TerminationReason.ACTUATOR_FAILURE
        assert result.commands_sent == 0
        assert loop.state == LoopState.ABORTED


# =============================================================================
# Trajectory, Waypoint and Joint-Space Tests
# =============================================================================


class TestFollowTrajectory:
    """Tests for trajectory tracking."""

    def test_one_sample_per_tick(self, chain, clock, robot, position_controller):
        x0 = chain.forward_kinematics(Q0)
        waypoints = [x0, x0 + [40.0, 0.0, 0.0], x0 + [40.0, 40.0, 0.0]]
        trajectory = TrajectoryGenerator(50.0, 0.05).generate(waypoints)
        loop = ControlLoop(
            robot, chain, position_controller,
            LoopConfig(time_step=0.05), clock
        )

        result = loop.follow_trajectory(trajectory)

        assert result.state == LoopState.COMPLETED
        assert result.reason == TerminationReason.TRAJECTORY_COMPLETE
        assert result.ticks == len(trajectory) == 32
        assert len(result.path) == len(trajectory)
        assert result.final_error < 30.0


class TestFollowWaypoints:
    """Tests for point-to-point PID waypoint following."""

    def test_all_waypoints_reached(self, chain, clock, robot):
        x0 = chain.forward_kinematics(Q0)
        waypoints = [x0 + [10.0, 0.0, 0.0], x0 + [10.0, 10.0, 0.0]]
        loop = ControlLoop(robot, chain, config=LoopConfig(time_step=0.05), clock=clock)

        result = loop.follow_waypoints(waypoints, PIDController(PIDConfig()))

        assert result.state == LoopState.COMPLETED
        assert result.reason == TerminationReason.TRAJECTORY_COMPLETE
        assert result.legs == [TerminationReason.GOAL_REACHED] * 2

    def test_leg_budget(self, chain, clock, robot):
        waypoints = [[0.0, 0.0, 2000.0], chain.forward_kinematics(Q0)]
        loop = ControlLoop(
            robot, chain, config=LoopConfig(time_step=0.05, singularity_policy="warn"), clock=clock
        )

        result = loop.follow_waypoints(waypoints, max_ticks_per_waypoint=5)

        assert result.legs[0] == TerminationReason.BUDGET_EXHAUSTED
        assert len(result.legs) == 2

    def test_singular_legs_skipped(self, chain, clock):
        robot = RecordingRobot(chain, clock, Q_NEAR_SINGULAR)
        loop = ControlLoop(robot, chain, config=LoopConfig(time_step=0.05), clock=clock)

        result = loop.follow_waypoints([[100.0, 0.0, 500.0], [0.0, 100.0, 500.0], [0.0, 0.0, 400.0]])

        assert result.state == LoopState.ABORTED
        assert result.reason == TerminationReason.SINGULARITY
        assert result.legs == [TerminationReason.SINGULARITY] * 3
        assert result.ticks == 3
        assert result.commands_sent == 0

    def test_reached_leg_on_singular_tick(self, chain, clock):
        """The waypoint after a leg reached on a singular tick is still tried."""
        robot = RecordingRobot(chain, clock, Q_NEAR_SINGULAR)
        loop = ControlLoop(robot, chain, config=LoopConfig(time_step=0.05), clock=clock)
        start = chain.forward_kinematics(Q_NEAR_SINGULAR)

        result = loop.follow_waypoints([start, [0.0, 100.0, 500.0], [0.0, 0.0, 400.0]])

        assert result.legs == [
            TerminationReason.GOAL_REACHED,
            TerminationReason.SINGULARITY,
            TerminationReason.SINGULARITY,
        ]
        assert result.ticks == 3

    def test_last_leg_reached_on_singular_tick(self, chain, clock):
        robot = RecordingRobot(chain, clock, Q_NEAR_SINGULAR)
        loop = ControlLoop(robot, chain, config=LoopConfig(time_step=0.05), clock=clock)

        result = loop.follow_waypoints([chain.forward_kinematics(Q_NEAR_SINGULAR)])

        assert result.state == LoopState.COMPLETED
        assert result.reason == TerminationReason.TRAJECTORY_COMPLETE
        assert result.legs == [TerminationReason.GOAL_REACHED]
        assert result.ticks == 1
        assert result.commands_sent == 0

    def test_invalid_waypoints(self, chain, clock, robot):
        loop = ControlLoop(robot, chain, clock=clock)
        with pytest.raises(ValueError):
            loop.follow_waypoints([])
        with pytest.raises(ValueError):
            loop.follow_waypoints([[0.0, 0.0, 400.0]], max_ticks_per_waypoint=0)


class TestMoveToConfiguration:
    """Tests for joint-space moves."""

    def test_reaches_configuration(self, chain, clock, robot):
        q_target = np.array([0.5, 0.2, 0.4, 0.6])
        loop = ControlLoop(robot, chain, config=LoopConfig(time_step=0.05), clock=clock)

        result = loop.move_to_configuration(q_target, JointSpaceController(gain=2.0))

        assert result.reason == TerminationReason.GOAL_REACHED
        assert np.max(np.abs(robot.get_configuration() - q_target)) < 0.01
        assert result.singularity_events == 0


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
