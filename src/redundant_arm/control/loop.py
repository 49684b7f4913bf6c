"""
Control Loop Module
===================

Real-time driver connecting the robot adapter, kinematic chain and
velocity controller.

State Machine:

    IDLE → RUNNING → {COMPLETED, ABORTED}

Tick Order (RUNNING):
    1. Stop check (external stop request)
    2. Sense configuration from the adapter
    3. Commit configuration to the kinematic chain
    4. Compute velocity command
    5. Singularity policy (abort or warn)
    6. Actuate, every N-th tick only
    7. Publish telemetry
    8. Termination check
    9. Pad to the tick period

Every exit from RUNNING sends a final zero-velocity command. Actuator
failures abort the run and are reported in the LoopResult, they are never
raised to the caller.

Timing:
    - SimulatedClock: virtual time, sleeping advances instantly (free-run)
    - WallClock: monotonic time, each tick is padded to the period

Author: Robotic Arm Prototype Team
License: MIT
"""

from __future__ import annotations

import logging
import time
import threading
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Optional, List, Dict, Any, Sequence, Union
import numpy as np
from numpy.typing import NDArray

from .kinematics import KinematicChain
from .controller import (
    ControlOutput,
    NullspaceController,
    PIDController,
    JointSpaceController,
)
from .trajectory import Trajectory
from ..simulation.robots import ActuatorError, Clock, RobotAdapter
from ..feedback.telemetry import TelemetryFrame, TelemetryHub, TelemetrySink

logger = logging.getLogger(__name__)

FloatArray = NDArray[np.floating]


# =============================================================================
# Enums and Configuration
# =============================================================================

class LoopState(Enum):
    """Control loop state."""
    IDLE = auto()
    RUNNING = auto()
    COMPLETED = auto()
    ABORTED = auto()


class TerminationReason(Enum):
    """Why a run (or a waypoint leg) ended."""
    GOAL_REACHED = auto()
    TRAJECTORY_COMPLETE = auto()
    BUDGET_EXHAUSTED = auto()
    SINGULARITY = auto()
    STOP_REQUESTED = auto()
    ACTUATOR_FAILURE = auto()
    ERROR = auto()   # Unexpected exception, re-raised to the caller


class SingularityPolicy(Enum):
    """Reaction to a near-singular Jacobian."""
    ABORT = auto()   # Stop stepping toward the current goal
    WARN = auto()    # Log and keep going


@dataclass
class LoopConfig:
    """
    Configuration for the control loop.

    Attributes:
        time_step: Tick period (s)
        actuation_interval: Send a command every N ticks
        goal_tolerance: Position tolerance for goal seeking (mm)
        max_ticks: Tick budget per run
        singularity_policy: ABORT or WARN
        telemetry_interval: Publish telemetry every N ticks
        realtime: Use wall-clock timing when no clock is given
    """
    time_step: float = 0.01
    actuation_interval: int = 1
    goal_tolerance: float = 5.0
    max_ticks: int = 10000
    singularity_policy: SingularityPolicy = SingularityPolicy.ABORT
    telemetry_interval: int = 1
    realtime: bool = False

    def __post_init__(self) -> None:
        """Validate configuration."""
        if isinstance(self.singularity_policy, str):
            self.singularity_policy = SingularityPolicy[self.singularity_policy.upper()]
        if self.time_step <= 0:
            raise ValueError("time_step must be positive")
        if self.actuation_interval < 1:
            raise ValueError("actuation_interval must be at least 1")
        if self.goal_tolerance <= 0:
            raise ValueError("goal_tolerance must be positive")
        if self.max_ticks < 1:
            raise ValueError("max_ticks must be at least 1")
        if self.telemetry_interval < 1:
            raise ValueError("telemetry_interval must be at least 1")

    @property
    def control_rate(self) -> float:
        """Tick rate in Hz."""
        return 1.0 / self.time_step

    @classmethod
    def for_hardware(cls, **kwargs) -> "LoopConfig":
        """
        Timing for the physical servo chain.

        The servo bus cannot complete a read and a write in less than
        0.15 s, so the tick period is raised accordingly.
        """
        kwargs.setdefault("time_step", 0.15)
        kwargs.setdefault("realtime", True)
        return cls(**kwargs)


# =============================================================================
# Clocks
# =============================================================================

class SimulatedClock:
    """Virtual time; sleeping advances the clock instantly."""

    def __init__(self, start: float = 0.0) -> None:
        self._time = float(start)
        self._lock = threading.Lock()

    def now(self) -> float:
        with self._lock:
            return self._time

    def sleep(self, duration: float) -> None:
        if duration > 0:
            with self._lock:
                self._time += duration

    advance = sleep


class WallClock:
    """Monotonic wall-clock time."""

    def now(self) -> float:
        return time.perf_counter()

    def sleep(self, duration: float) -> None:
        if duration > 0:
            time.sleep(duration)


# =============================================================================
# Results
# =============================================================================

@dataclass
class LoopResult:
    """
    Outcome of a control loop run.

    Attributes:
        state: Final state (COMPLETED or ABORTED)
        reason: Termination reason
        ticks: Number of ticks executed
        commands_sent: Velocity commands sent (excluding the final stop)
        final_error: Remaining error at the last tick (mm, rad for joint moves)
        path: Sensed end-effector positions, shape (ticks, 3)
        singularity_events: Ticks at which the Jacobian was near singular
        message: Human-readable summary
        legs: Per-waypoint outcomes (waypoint following only)
    """
    state: LoopState
    reason: TerminationReason
    ticks: int
    commands_sent: int
    final_error: float
    path: FloatArray
    singularity_events: int = 0
    message: str = ""
    legs: List[TerminationReason] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.state == LoopState.COMPLETED


@dataclass
class _Step:
    """Result of one task evaluation."""
    q_dot: FloatArray
    error: float
    output: Optional[ControlOutput] = None
    target: Optional[FloatArray] = None
    finished: Optional[TerminationReason] = None


class _Task:
    """A control objective evaluated once per tick."""

    description = "task"

    def step(self, tick: int, q: FloatArray) -> _Step:
        raise NotImplementedError

    def on_singularity(self) -> bool:
        """Handle an aborting singularity; True ends the whole run."""
        return True


class _SeekTask(_Task):
    description = "seek position"

    def __init__(self, loop: "ControlLoop", target: FloatArray) -> None:
        self.loop = loop
        self.target = target

    def step(self, tick: int, q: FloatArray) -> _Step:
        output = self.loop.controller.compute(self.loop.chain, q, self.target)
        error = output.error_norm
        finished = TerminationReason.GOAL_REACHED if error < self.loop.config.goal_tolerance else None
        return _Step(output.q_dot, error, output, self.target, finished)


class _TrajectoryTask(_Task):
    description = "follow trajectory"

    def __init__(self, loop: "ControlLoop", trajectory: Trajectory) -> None:
        self.loop = loop
        self.trajectory = trajectory

    def step(self, tick: int, q: FloatArray) -> _Step:
        point = self.trajectory[tick]
        output = self.loop.controller.compute(
            self.loop.chain, q, point.position, point.velocity
        )
        finished = None
        if tick >= len(self.trajectory) - 1:
            finished = TerminationReason.TRAJECTORY_COMPLETE
        return _Step(output.q_dot, output.error_norm, output, point.position, finished)


class _WaypointTask(_Task):
    description = "follow waypoints"

    def __init__(
        self,
        loop: "ControlLoop",
        waypoints: FloatArray,
        pid: PIDController,
        max_ticks_per_waypoint: int
    ) -> None:
        self.loop = loop
        self.waypoints = waypoints
        self.pid = pid
        self.max_ticks_per_waypoint = max_ticks_per_waypoint
        self.legs: List[TerminationReason] = []
        self._index = 0
        self._leg_ticks = 0
        self._advanced = False
        self.pid.reset()

    def _next_leg(self, outcome: TerminationReason) -> Optional[TerminationReason]:
        logger.info(f"Waypoint {self._index + 1}/{len(self.waypoints)}: {outcome.name}")
        self.legs.append(outcome)
        self._index += 1
        self._leg_ticks = 0
        self._advanced = True
        self.pid.reset()
        if self._index >= len(self.waypoints):
            return TerminationReason.TRAJECTORY_COMPLETE
        return None

    def step(self, tick: int, q: FloatArray) -> _Step:
        target = self.waypoints[self._index]
        output = self.pid.compute(self.loop.chain, q, target)
        error = output.error_norm
        self._leg_ticks += 1

        finished = None
        self._advanced = False
        if error < self.loop.config.goal_tolerance:
            finished = self._next_leg(TerminationReason.GOAL_REACHED)
        elif self._leg_ticks >= self.max_ticks_per_waypoint:
            finished = self._next_leg(TerminationReason.BUDGET_EXHAUSTED)

        return _Step(output.q_dot, error, output, target, finished)

    def on_singularity(self) -> bool:
        # A leg that ended on this tick keeps its outcome; the next one
        # has not been tried yet
        if self._advanced:
            return False
        # Only the current leg is given up
        return self._next_leg(TerminationReason.SINGULARITY) is not None


class _JointTask(_Task):
    description = "move to configuration"

    def __init__(
        self,
        loop: "ControlLoop",
        q_target: FloatArray,
        controller: JointSpaceController,
        tolerance: float
    ) -> None:
        self.loop = loop
        self.q_target = q_target
        self.controller = controller
        self.tolerance = tolerance

    def step(self, tick: int, q: FloatArray) -> _Step:
        q_dot = self.controller.compute(self.loop.chain, q, self.q_target)
        error = float(np.max(np.abs(self.q_target - q)))
        finished = TerminationReason.GOAL_REACHED if error < self.tolerance else None
        return _Step(q_dot, error, finished=finished)


# =============================================================================
# Control Loop
# =============================================================================

class ControlLoop:
    """
    Tick-based driver for the arm.

    The robot adapter and the loop must share a clock: with a
    SimulatedClock the whole run executes in virtual time.

    Example:
        >>> clock = SimulatedClock()
        >>> chain = KinematicChain.default_arm()
        >>> robot = SimulatedRobot(chain, clock, [0.3, 0.3, 0.5, 0.5])
        >>> loop = ControlLoop(robot, chain, clock=clock)
        >>> result = loop.seek_position([-300, -300, 300])
        >>> result.reason
        <TerminationReason.GOAL_REACHED: 1>
    """

    def __init__(
        self,
        robot: RobotAdapter,
        chain: KinematicChain,
        controller: Optional[NullspaceController] = None,
        config: Optional[LoopConfig] = None,
        clock: Optional[Clock] = None,
        telemetry: Optional[Union[TelemetryHub, TelemetrySink]] = None
    ) -> None:
        """
        Initialize control loop.

        Args:
            robot: Adapter to sense and actuate
            chain: Kinematic model (state is committed every tick)
            controller: Nullspace controller (default gains if None)
            config: Loop configuration
            clock: Time source shared with the adapter
            telemetry: Hub or single sink receiving frames
        """
        self.robot = robot
        self.chain = chain
        self.controller = controller or NullspaceController()
        self.config = config or LoopConfig()

        if clock is None:
            clock = WallClock() if self.config.realtime else SimulatedClock()
        self.clock = clock

        if telemetry is None or isinstance(telemetry, TelemetryHub):
            self.telemetry = telemetry
        else:
            self.telemetry = TelemetryHub([telemetry])

        self._state = LoopState.IDLE
        self._state_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._stop_reason = TerminationReason.STOP_REQUESTED
        self._last_result: Optional[LoopResult] = None

        logger.info(
            f"ControlLoop initialized: dt={self.config.time_step}s, "
            f"actuation every {self.config.actuation_interval} ticks, "
            f"policy={self.config.singularity_policy.name}"
        )

    # =========================================================================
    # State Management
    # =========================================================================

    @property
    def state(self) -> LoopState:
        """Current loop state."""
        with self._state_lock:
            return self._state

    @property
    def last_result(self) -> Optional[LoopResult]:
        return self._last_result

    def _set_state(self, state: LoopState) -> None:
        """Set loop state (thread-safe)."""
        with self._state_lock:
            old_state = self._state
            self._state = state
        logger.info(f"Control loop state: {old_state.name} → {state.name}")

    def stop(self, reason: TerminationReason = TerminationReason.STOP_REQUESTED) -> None:
        """
        Request the loop to stop at the next tick (thread-safe).

        A request made before a run reaches its first tick stops that run
        on the first tick. Requests are cleared when a run ends.
        """
        self._stop_reason = reason
        self._stop_event.set()
        logger.info(f"Stop requested: {reason.name}")

    # =========================================================================
    # Operations
    # =========================================================================

    def seek_position(self, target: FloatArray) -> LoopResult:
        """
        Drive the end-effector to a fixed position with the nullspace controller.

        Args:
            target: Goal position (mm)

        Returns:
            LoopResult, COMPLETED with GOAL_REACHED once within tolerance
        """
        target = _position(target, "target")
        return self._run(_SeekTask(self, target))

    def follow_trajectory(self, trajectory: Trajectory) -> LoopResult:
        """
        Track a sampled trajectory with position and feed-forward velocity.

        One sample is consumed per tick; the run completes when the samples
        are exhausted.
        """
        if len(trajectory) == 0:
            raise ValueError("Trajectory is empty")
        return self._run(_TrajectoryTask(self, trajectory))

    def follow_waypoints(
        self,
        waypoints: Sequence[FloatArray],
        pid: Optional[PIDController] = None,
        max_ticks_per_waypoint: int = 1000
    ) -> LoopResult:
        """
        Visit waypoints one by one with point-to-point PID control.

        PID state is reset at every waypoint. Under the ABORT policy a
        singularity gives up the current waypoint and continues with the
        next one.

        Args:
            waypoints: Ordered positions (mm)
            pid: PID controller (default gains if None)
            max_ticks_per_waypoint: Tick budget per waypoint

        Returns:
            LoopResult with per-waypoint outcomes in `legs`
        """
        points = np.asarray(waypoints, dtype=float)
        if points.ndim != 2 or points.shape[1] != 3 or len(points) == 0:
            raise ValueError(f"Waypoints must be a non-empty list of 3-vectors, got shape {points.shape}")
        if max_ticks_per_waypoint < 1:
            raise ValueError("max_ticks_per_waypoint must be at least 1")

        if pid is None:
            pid = PIDController(singularity_threshold=self.controller.config.singularity_threshold)
        return self._run(_WaypointTask(self, points, pid, max_ticks_per_waypoint))

    def move_to_configuration(
        self,
        q_target: FloatArray,
        joint_controller: Optional[JointSpaceController] = None,
        tolerance: float = 0.01
    ) -> LoopResult:
        """
        Joint-space move to a configuration.

        Args:
            q_target: Target joint angles (rad)
            joint_controller: Joint-space controller (default gain if None)
            tolerance: Largest remaining joint error (rad)
        """
        q_target = self.chain.validate_configuration(q_target)
        if tolerance <= 0:
            raise ValueError("tolerance must be positive")
        return self._run(_JointTask(self, q_target, joint_controller or JointSpaceController(), tolerance))

    # =========================================================================
    # Tick Loop
    # =========================================================================

    def _run(self, task: _Task) -> LoopResult:
        if self.state == LoopState.RUNNING:
            raise RuntimeError("Control loop is already running")

        cfg = self.config
        self._set_state(LoopState.RUNNING)
        logger.info(f"Starting {task.description}")

        tick = 0
        commands_sent = 0
        singularity_events = 0
        error = float("nan")
        path: List[FloatArray] = []
        state = LoopState.ABORTED
        reason = TerminationReason.BUDGET_EXHAUSTED
        message = ""
        was_singular = False

        next_time = self.clock.now()

        try:
            while True:
                if self._stop_event.is_set():
                    reason = self._stop_reason
                    message = "Stop requested"
                    break
                if tick >= cfg.max_ticks:
                    reason = TerminationReason.BUDGET_EXHAUSTED
                    message = f"Tick budget of {cfg.max_ticks} exhausted"
                    logger.warning(message)
                    break

                # Sense and commit
                q = self.robot.get_configuration()
                self.chain.set_configuration(q)
                x = self.robot.forward_kinematics(q)
                path.append(x)

                step = task.step(tick, q)
                error = step.error
                output = step.output
                finished = step.finished
                actuate = True

                # Singularity policy
                if output is not None and output.near_singular:
                    singularity_events += 1
                    if not was_singular:
                        logger.warning(
                            f"Near singularity at tick {tick}: measure="
                            f"{output.singularity_measure:.1f}, q={np.round(q, 3)}"
                        )
                    if cfg.singularity_policy == SingularityPolicy.ABORT:
                        actuate = False
                        # A step that already finished the task is not aborted
                        if finished is None and task.on_singularity():
                            reason = TerminationReason.SINGULARITY
                            message = f"Singularity at tick {tick}"
                            tick += 1
                            break
                was_singular = output is not None and output.near_singular

                if actuate and tick % cfg.actuation_interval == 0:
                    self.robot.set_joint_velocities(step.q_dot)
                    commands_sent += 1

                if self.telemetry is not None and tick % cfg.telemetry_interval == 0:
                    self.telemetry.publish(TelemetryFrame(
                        tick=tick,
                        time=self.clock.now(),
                        configuration=q,
                        end_effector=x,
                        target=step.target,
                        singularity_measure=output.singularity_measure if output is not None else 0.0,
                        near_singular=output.near_singular if output is not None else False
                    ))

                tick += 1

                if finished is not None:
                    state = LoopState.COMPLETED
                    reason = finished
                    message = f"{task.description} finished after {tick} ticks"
                    break

                # Pad to the tick period
                next_time += cfg.time_step
                remaining = next_time - self.clock.now()
                if remaining > 0:
                    self.clock.sleep(remaining)

        except ActuatorError as e:
            state = LoopState.ABORTED
            reason = TerminationReason.ACTUATOR_FAILURE
            message = f"Actuator failure: {e}"
            logger.error(message)

        except Exception as e:
            state = LoopState.ABORTED
            reason = TerminationReason.ERROR
            message = f"{task.description} failed at tick {tick}: {e}"
            logger.error(message)
            raise

        finally:
            self._send_stop()
            self._last_result = LoopResult(
                state=state,
                reason=reason,
                ticks=tick,
                commands_sent=commands_sent,
                final_error=error,
                path=np.array(path).reshape(-1, 3),
                singularity_events=singularity_events,
                message=message,
                legs=list(getattr(task, "legs", []))
            )
            self._stop_event.clear()
            self._set_state(state)

        logger.info(f"Run ended: {reason.name} after {tick} ticks, final error={error:.3f}")
        return self._last_result

    def _send_stop(self) -> None:
        try:
            self.robot.set_joint_velocities(np.zeros(self.chain.n_joints))
        except ActuatorError as e:
            logger.error(f"Final zero-velocity command failed: {e}")

    def get_status(self) -> Dict[str, Any]:
        """Loop status for monitoring."""
        result = self._last_result
        return {
            "state": self.state.name,
            "time_step": self.config.time_step,
            "actuation_interval": self.config.actuation_interval,
            "last_reason": result.reason.name if result else None,
            "last_ticks": result.ticks if result else 0,
            "last_error": result.final_error if result else None,
        }


def _position(value: FloatArray, name: str) -> FloatArray:
    vector = np.asarray(value, dtype=float).flatten()
    if vector.shape != (3,) or not np.all(np.isfinite(vector)):
        raise ValueError(f"{name} must be a finite 3-vector, got {value}")
    return vector
