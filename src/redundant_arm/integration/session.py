"""
Session Module
==============

Connection lifecycle, periodic state refresh and program launching for
one arm.

A SessionContext owns the kinematic model, the controller and the robot
adapter for the lifetime of a connection. It is created explicitly and
used as a context manager; there is no global instance.

Refresh:
    While connected and idle, the sensed configuration is mirrored into the
    kinematic model every `refresh_period` seconds and the singularity
    indicator is updated. Refreshes run on a single worker fed by a
    length-1 queue: overlapping triggers coalesce into one pending run,
    runs never overlap, and a pending run is never dropped.

Programs:
    Launching a program pauses the refresh, runs the program in a worker
    thread against a fresh ControlLoop, and restarts the refresh when the
    program ends.

Author: Robotic Arm Prototype Team
License: MIT
"""

from __future__ import annotations

import logging
import queue
import threading
from dataclasses import dataclass, asdict, fields
from enum import Enum, auto
from typing import Optional, List, Dict, Any, Callable, Sequence
import numpy as np
import yaml

from ..control.kinematics import KinematicChain
from ..control.controller import ControllerConfig, NullspaceController
from ..control.loop import (
    ControlLoop,
    LoopConfig,
    LoopResult,
    SimulatedClock,
    WallClock,
)
from ..simulation.robots import (
    ActuatorError,
    Clock,
    RealRobot,
    ServoChain,
    SimulatedServoChain,
)
from ..feedback.telemetry import (
    PathRecorder,
    SingularityIndicator,
    TelemetryFrame,
    TelemetryHub,
    TelemetrySink,
)
from .programs import ProgramRegistry, ProgramSpec

logger = logging.getLogger(__name__)


# =============================================================================
# Configuration
# =============================================================================

@dataclass
class SessionConfig:
    """
    Configuration for an arm session.

    Attributes:
        name: Session identifier
        port: Serial port of the servo chain
        use_simulation: Use an in-process servo chain when no driver is given
        realtime: Pace control loops with the wall clock
        refresh_period: Period of the configuration refresh (s)
        time_step: Control loop tick period (s)
        actuation_interval: Send a command every N ticks
        goal_tolerance: Goal tolerance (mm)
        max_ticks: Tick budget per program run
        singularity_policy: "ABORT" or "WARN"
        singularity_threshold: Condition proxy threshold
        position_gain: Nullspace controller position gain
        nullspace_gain: Signed gain of the secondary objective
        pid_kp, pid_ki, pid_kd: PID gains for waypoint following
        average_speed: Trajectory speed (mm/s)
        plane_height: Height of planar trajectories (mm)
        log_level: Logging verbosity
    """
    name: str = "RedundantArm"
    port: str = "COM3"
    use_simulation: bool = True
    realtime: bool = False
    refresh_period: float = 0.1
    time_step: float = 0.15
    actuation_interval: int = 1
    goal_tolerance: float = 5.0
    max_ticks: int = 10000
    singularity_policy: str = "ABORT"
    singularity_threshold: float = 25.0
    position_gain: float = 1.0
    nullspace_gain: float = -1.0
    pid_kp: float = 8.0
    pid_ki: float = 0.0
    pid_kd: float = 0.1
    average_speed: float = 50.0
    plane_height: float = 400.0
    log_level: str = "INFO"

    def validate(self) -> List[str]:
        """Validate configuration, return list of issues."""
        issues = []
        if self.refresh_period <= 0:
            issues.append("refresh_period must be positive")
        if self.time_step <= 0:
            issues.append("time_step must be positive")
        if self.actuation_interval < 1:
            issues.append("actuation_interval must be at least 1")
        if self.goal_tolerance <= 0:
            issues.append("goal_tolerance must be positive")
        if self.max_ticks < 1:
            issues.append("max_ticks must be at least 1")
        if self.singularity_policy.upper() not in ("ABORT", "WARN"):
            issues.append("singularity_policy must be ABORT or WARN")
        if self.singularity_threshold <= 1.0:
            issues.append("singularity_threshold must be > 1")
        if self.position_gain < 0:
            issues.append("position_gain must be non-negative")
        if self.average_speed <= 0:
            issues.append("average_speed must be positive")
        if not isinstance(getattr(logging, self.log_level.upper(), None), int):
            issues.append(f"Unknown log_level {self.log_level!r}")
        return issues

    def loop_config(self) -> LoopConfig:
        return LoopConfig(
            time_step=self.time_step,
            actuation_interval=self.actuation_interval,
            goal_tolerance=self.goal_tolerance,
            max_ticks=self.max_ticks,
            singularity_policy=self.singularity_policy,
            realtime=self.realtime
        )

    def controller_config(self) -> ControllerConfig:
        return ControllerConfig(
            position_gain=self.position_gain,
            nullspace_gain=self.nullspace_gain,
            singularity_threshold=self.singularity_threshold
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SessionConfig":
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            raise ValueError(f"Unknown session config keys: {sorted(unknown)}")
        return cls(**data)

    @classmethod
    def from_yaml(cls, path: str) -> "SessionConfig":
        """
        Load configuration from YAML file.

        Args:
            path: Path to YAML configuration file

        Returns:
            SessionConfig instance
        """
        with open(path, "r") as f:
            data = yaml.safe_load(f) or {}
        return cls.from_dict(data)

    def to_yaml(self, path: str) -> None:
        """Save configuration to YAML file."""
        with open(path, "w") as f:
            yaml.safe_dump(self.to_dict(), f, default_flow_style=False, sort_keys=False)


# =============================================================================
# Single-Flight Refresh
# =============================================================================

_STOP = object()


class SingleFlightTask:
    """
    Runs a function on one worker thread, at most one run pending.

    `trigger` enqueues a run into a length-1 queue. While a run is pending,
    further triggers coalesce into it; while a run executes, one more can
    be pending. Runs never overlap.
    """

    def __init__(self, function: Callable[[], None], name: str = "task") -> None:
        self._function = function
        self.name = name
        self._queue: "queue.Queue[object]" = queue.Queue(maxsize=1)
        self._thread: Optional[threading.Thread] = None
        self.runs = 0
        self.failures = 0

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        """Start the worker thread."""
        if self.is_running:
            return
        self._thread = threading.Thread(target=self._worker, name=self.name, daemon=True)
        self._thread.start()

    def trigger(self) -> bool:
        """
        Request a run.

        Returns:
            True if a new run was queued, False if coalesced with a pending one
        """
        try:
            self._queue.put_nowait(True)
            return True
        except queue.Full:
            return False

    def wait_idle(self) -> None:
        """Block until every queued run has finished."""
        self._queue.join()

    def stop(self, timeout: float = 1.0) -> None:
        """
        Finish pending work and stop the worker.

        If the current run does not finish within `timeout` while another
        is pending, the worker is left running and `stop` can be retried.
        """
        if self._thread is None:
            return
        try:
            self._queue.put(_STOP, timeout=timeout)
        except queue.Full:
            logger.warning(f"{self.name} still busy after {timeout}s, worker not stopped")
            return
        self._thread.join(timeout=timeout)
        self._thread = None

    def _worker(self) -> None:
        while True:
            item = self._queue.get()
            try:
                if item is _STOP:
                    return
                self._function()
                self.runs += 1
            except Exception as e:
                self.failures += 1
                logger.error(f"{self.name} failed: {e}")
            finally:
                self._queue.task_done()


class PeriodicRefresh:
    """Triggers a SingleFlightTask at a fixed period from a timer thread."""

    def __init__(self, task: SingleFlightTask, period: float) -> None:
        if period <= 0:
            raise ValueError("period must be positive")
        self.task = task
        self.period = period
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        """Start triggering (and the task worker)."""
        if self.is_running:
            return
        self.task.start()
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._timer, name=f"{self.task.name}-timer", daemon=True)
        self._thread.start()
        logger.info(f"Refresh started ({self.period}s)")

    def stop(self) -> None:
        """Stop triggering and wait for pending runs to finish."""
        if self._thread is not None:
            self._stop_event.set()
            self._thread.join(timeout=1.0)
            self._thread = None
            logger.info("Refresh stopped")
        if self.task.is_running:
            self.task.wait_idle()

    def close(self) -> None:
        """Stop triggering and the task worker."""
        self.stop()
        self.task.stop()

    def _timer(self) -> None:
        while not self._stop_event.wait(self.period):
            self.task.trigger()


# =============================================================================
# Session Context
# =============================================================================

class SessionState(Enum):
    """Session lifecycle state."""
    DISCONNECTED = auto()
    CONNECTED = auto()
    RUNNING_PROGRAM = auto()


@dataclass
class LaunchResult:
    """
    Outcome of a program launch.

    Attributes:
        success: Whether the program was started (and, when waited for,
            ran without error)
        message: Human-readable status
        result: Loop result when the launch waited for completion
    """
    success: bool
    message: str
    result: Optional[LoopResult] = None


class SessionContext:
    """
    Lifecycle of one arm connection.

    Example:
        >>> with SessionContext(SessionConfig()) as session:
        ...     outcome = session.launch_program("set_joints", "0.3, 0.3, 0.5, 0.5", wait=True)
        ...     outcome.result.reason
        <TerminationReason.GOAL_REACHED: 1>
    """

    def __init__(
        self,
        config: Optional[SessionConfig] = None,
        servo_chain: Optional[ServoChain] = None,
        registry: Optional[ProgramRegistry] = None,
        clock: Optional[Clock] = None,
        sinks: Sequence[TelemetrySink] = ()
    ) -> None:
        """
        Initialize session.

        Args:
            config: Session configuration
            servo_chain: Servo driver (simulated chain if None and allowed)
            registry: Program registry (built-in programs if None)
            clock: Time source (derived from config.realtime if None)
            sinks: Additional telemetry sinks

        Raises:
            ValueError: If the configuration is invalid
        """
        self.config = config or SessionConfig()
        issues = self.config.validate()
        if issues:
            raise ValueError(f"Invalid session configuration: {'; '.join(issues)}")

        logging.basicConfig(level=getattr(logging, self.config.log_level.upper()))

        self.clock = clock or (WallClock() if self.config.realtime else SimulatedClock())
        self.chain = KinematicChain.default_arm()
        self.controller = NullspaceController(self.config.controller_config())
        self.registry = registry or ProgramRegistry.default()

        self.singularity_indicator = SingularityIndicator()
        self.path_recorder = PathRecorder()
        self.telemetry = TelemetryHub([self.singularity_indicator, self.path_recorder, *sinks])

        self._servo_chain = servo_chain
        self.robot: Optional[RealRobot] = None

        self._refresh = PeriodicRefresh(
            SingleFlightTask(self._refresh_configuration, f"{self.config.name}-refresh"),
            self.config.refresh_period
        )
        self._refresh_count = 0

        self._lock = threading.Lock()
        self._program_thread: Optional[threading.Thread] = None
        self._program_loop: Optional[ControlLoop] = None
        self._program_result: Optional[LoopResult] = None
        self._program_error: Optional[str] = None

        logger.info(f"Session {self.config.name} created, programs: {self.registry.names()}")

    def __enter__(self) -> "SessionContext":
        if not self.connect():
            raise ActuatorError(f"Could not connect on port {self.config.port}")
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.disconnect()

    # =========================================================================
    # State
    # =========================================================================

    @property
    def is_connected(self) -> bool:
        return self.robot is not None

    @property
    def is_program_running(self) -> bool:
        thread = self._program_thread
        return thread is not None and thread.is_alive()

    @property
    def state(self) -> SessionState:
        if not self.is_connected:
            return SessionState.DISCONNECTED
        if self.is_program_running:
            return SessionState.RUNNING_PROGRAM
        return SessionState.CONNECTED

    @property
    def refresh_active(self) -> bool:
        return self._refresh.is_running

    @property
    def singularity_warning(self) -> bool:
        return self.singularity_indicator.active

    # =========================================================================
    # Connection
    # =========================================================================

    def connect(self) -> bool:
        """
        Connect to the servo chain and start the refresh.

        Returns:
            True if connected
        """
        if self.is_connected:
            return True

        servo_chain = self._servo_chain
        if servo_chain is None:
            if not self.config.use_simulation:
                logger.error(f"No servo chain driver available for port {self.config.port}")
                return False
            servo_chain = SimulatedServoChain(self.clock)

        if not servo_chain.check_connection():
            logger.warning(f"Connection failed on port {self.config.port}")
            return False

        robot = RealRobot(servo_chain, self.chain)
        try:
            robot.initialize()
        except ActuatorError as e:
            logger.error(f"Servo chain setup failed: {e}")
            return False

        self._servo_chain = servo_chain
        self.robot = robot
        logger.info(f"Connected on port {self.config.port}, zero position set")

        try:
            self.update_configuration()
        except ActuatorError as e:
            logger.error(f"Initial configuration read failed: {e}")

        self._refresh.start()
        return True

    def disconnect(self) -> None:
        """Stop any program, the refresh and the servo chain."""
        if not self.is_connected:
            return

        logger.info("Disconnecting...")
        self.stop_program()
        self._refresh.close()

        robot, self.robot = self.robot, None
        robot.shutdown()
        logger.info("Disconnected")

    # =========================================================================
    # Refresh
    # =========================================================================

    def update_configuration(self) -> np.ndarray:
        """
        Mirror the sensed configuration into the model.

        Updates the singularity indicator and publishes telemetry.

        Returns:
            Sensed joint angles

        Raises:
            RuntimeError: If not connected
            ActuatorError: If reading the servo chain fails
        """
        robot = self.robot
        if robot is None:
            raise RuntimeError("Session is not connected")

        q = robot.get_configuration()
        self.chain.set_configuration(q)

        J = self.chain.jacobian_from_state()
        measure = self.controller.singularity_measure(J)

        self._refresh_count += 1
        self.telemetry.publish(TelemetryFrame(
            tick=self._refresh_count,
            time=self.clock.now(),
            configuration=q,
            end_effector=self.chain.end_effector_position(),
            singularity_measure=measure,
            near_singular=self.controller.exceeds_threshold(measure)
        ))
        return q

    def _refresh_configuration(self) -> None:
        if self.robot is None:
            return
        try:
            self.update_configuration()
        except ActuatorError as e:
            logger.error(f"Configuration refresh failed: {e}")

    # =========================================================================
    # Programs
    # =========================================================================

    def make_loop(self) -> ControlLoop:
        """Fresh control loop over the connected robot."""
        if self.robot is None:
            raise RuntimeError("Session is not connected")
        return ControlLoop(
            self.robot,
            self.chain,
            self.controller,
            self.config.loop_config(),
            self.clock,
            self.telemetry
        )

    def launch_program(
        self,
        name: str,
        args: str = "",
        wait: bool = False,
        timeout: Optional[float] = None
    ) -> LaunchResult:
        """
        Start a registered program.

        Any running program is stopped first. The refresh is paused while
        the program runs.

        Args:
            name: Program name
            args: Argument text
            wait: Block until the program ends
            timeout: Maximum wait (s)

        Returns:
            LaunchResult; failures are reported, not raised
        """
        if not self.is_connected:
            return LaunchResult(False, "Not connected")

        if name not in self.registry:
            return LaunchResult(
                False, f"Program {name} not found in available programs {self.registry.names()}"
            )
        spec = self.registry.get(name)

        try:
            values = spec.parse(args)
        except ValueError as e:
            return LaunchResult(False, str(e))

        self.stop_program()
        self._refresh.stop()

        loop = self.make_loop()
        thread = threading.Thread(
            target=self._run_program, args=(spec, loop, values),
            name=f"program-{name}", daemon=True
        )
        with self._lock:
            self._program_loop = loop
            self._program_result = None
            self._program_error = None
            self._program_thread = thread

        logger.info(f"Program {name} starting...")
        thread.start()

        if not wait:
            return LaunchResult(True, f"Program {name} started")

        result = self.wait_for_program(timeout)
        if self._program_error is not None:
            return LaunchResult(False, f"Program {name} failed: {self._program_error}", result)
        if result is None:
            return LaunchResult(True, f"Program {name} still running")
        return LaunchResult(True, f"Program {name} ended: {result.reason.name}", result)

    def _run_program(self, spec: ProgramSpec, loop: ControlLoop, values: List[float]) -> None:
        result = None
        try:
            result = spec.run(self, loop, values)
        except (ValueError, RuntimeError) as e:
            self._program_error = str(e)
            logger.error(f"Failed to run program {spec.name}: {e}")
        finally:
            with self._lock:
                self._program_result = result
                self._program_loop = None
            logger.info(f"Program {spec.name} ended")
            if self.is_connected:
                self._refresh.start()

    def wait_for_program(self, timeout: Optional[float] = None) -> Optional[LoopResult]:
        """
        Wait for the running program.

        Returns:
            Loop result of the program, None if it is still running or failed
        """
        thread = self._program_thread
        if thread is not None:
            thread.join(timeout)
            if thread.is_alive():
                return None
        return self._program_result

    def stop_program(self, timeout: float = 5.0) -> None:
        """Stop a running program and wait for it to end."""
        with self._lock:
            loop = self._program_loop
            thread = self._program_thread

        if loop is not None:
            loop.stop()
        if thread is not None and thread.is_alive():
            thread.join(timeout)
            if thread.is_alive():
                logger.warning("Program did not stop within timeout")

    def get_status(self) -> Dict[str, Any]:
        """Session status for monitoring."""
        return {
            "name": self.config.name,
            "state": self.state.name,
            "configuration": self.chain.configuration.tolist(),
            "singularity_warning": self.singularity_warning,
            "refresh_active": self.refresh_active,
            "refresh_count": self._refresh_count,
            "telemetry_errors": self.telemetry.errors,
        }
