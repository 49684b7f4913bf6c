"""
Robot Adapters Module
=====================

Uniform actuator surface over the simulated kinematic arm and the physical
servo chain.

Both adapters expose:
    - get_configuration(): sensed joint angles (rad)
    - set_joint_velocities(q_dot): hold a joint velocity command (rad/s)
    - forward_kinematics(q): end-effector position of the shared model

Simulation is purely kinematic: the held velocity is integrated over the
time elapsed on the adapter's clock, so sharing a simulated clock with the
control loop gives deterministic, faster-than-real-time runs.

Author: Robotic Arm Prototype Team
License: MIT
"""

from __future__ import annotations

import logging
import threading
from typing import Optional, Protocol, runtime_checkable
import numpy as np
from numpy.typing import NDArray

from ..control.kinematics import KinematicChain, N_JOINTS

logger = logging.getLogger(__name__)

FloatArray = NDArray[np.floating]


class ActuatorError(RuntimeError):
    """Failure of the actuation channel (connection loss, rejected write)."""


class Clock(Protocol):
    """Time source shared by the loop and the adapters."""

    def now(self) -> float:
        ...

    def sleep(self, duration: float) -> None:
        ...


@runtime_checkable
class RobotAdapter(Protocol):
    """Capability surface the control loop drives."""

    def get_configuration(self) -> FloatArray:
        ...

    def set_joint_velocities(self, q_dot: FloatArray) -> None:
        ...

    def forward_kinematics(self, q: FloatArray) -> FloatArray:
        ...


def _joint_vector(values: FloatArray, name: str) -> FloatArray:
    vector = np.asarray(values, dtype=float).flatten()
    if vector.shape != (N_JOINTS,):
        raise ValueError(f"{name} must have {N_JOINTS} elements, got {vector.size}")
    if not np.all(np.isfinite(vector)):
        raise ValueError(f"{name} contains non-finite values: {vector}")
    return vector


# =============================================================================
# Simulated Robot
# =============================================================================

class SimulatedRobot:
    """
    Kinematic simulation of the arm.

    The commanded velocity is held until the next command and integrated
    explicitly over clock time:

        q(t) = q(t_0) + q̇ · (t − t_0)

    Example:
        >>> clock = SimulatedClock()
        >>> robot = SimulatedRobot(KinematicChain.default_arm(), clock)
        >>> robot.set_joint_velocities([0.1, 0.0, 0.0, 0.0])
        >>> clock.sleep(1.0)
        >>> robot.get_configuration()
        array([0.1, 0. , 0. , 0. ])
    """

    def __init__(
        self,
        chain: KinematicChain,
        clock: Clock,
        initial_configuration: Optional[FloatArray] = None,
        max_joint_velocity: Optional[float] = None
    ) -> None:
        """
        Initialize simulated robot.

        Args:
            chain: Kinematic model used for forward kinematics
            clock: Time source for integration
            initial_configuration: Start angles (zeros if None)
            max_joint_velocity: Optional symmetric velocity saturation (rad/s)
        """
        self.chain = chain
        self.clock = clock
        self.max_joint_velocity = max_joint_velocity

        if initial_configuration is None:
            self._q = np.zeros(N_JOINTS)
        else:
            self._q = chain.validate_configuration(initial_configuration)
        self._q_dot = np.zeros(N_JOINTS)
        self._last_time = clock.now()
        self._lock = threading.Lock()

        self.commands_received = 0

    def _integrate(self) -> None:
        now = self.clock.now()
        dt = now - self._last_time
        if dt > 0:
            self._q = self._q + self._q_dot * dt
        self._last_time = now

    def get_configuration(self) -> FloatArray:
        """Joint angles at the current clock time."""
        with self._lock:
            self._integrate()
            return self._q.copy()

    def set_joint_velocities(self, q_dot: FloatArray) -> None:
        """Hold a new joint velocity from the current clock time on."""
        q_dot = _joint_vector(q_dot, "q_dot")
        if self.max_joint_velocity is not None:
            q_dot = np.clip(q_dot, -self.max_joint_velocity, self.max_joint_velocity)

        with self._lock:
            self._integrate()
            self._q_dot = q_dot
            self.commands_received += 1

    def set_configuration(self, q: FloatArray) -> None:
        """Teleport to a configuration (zero velocity)."""
        q = self.chain.validate_configuration(q)
        with self._lock:
            self._q = q
            self._q_dot = np.zeros(N_JOINTS)
            self._last_time = self.clock.now()

    def forward_kinematics(self, q: FloatArray) -> FloatArray:
        return self.chain.forward_kinematics(q)

    @property
    def joint_velocities(self) -> FloatArray:
        """Currently held velocity command."""
        return self._q_dot.copy()


# =============================================================================
# Servo Chain
# =============================================================================

class ServoChain(Protocol):
    """Driver surface of the physical servo chain."""

    def check_connection(self) -> bool:
        ...

    def read_positions(self) -> FloatArray:
        ...

    def write_velocities(self, velocities: FloatArray) -> bool:
        ...

    def torque_enable(self, enabled: bool) -> bool:
        ...

    def set_operating_mode(self, mode: str) -> bool:
        ...

    def set_zero_position(self) -> bool:
        ...

    def close(self) -> None:
        ...


class SimulatedServoChain:
    """
    In-process stand-in for the servo chain driver.

    Servos only move while torque is enabled in velocity mode. Positions
    are reported relative to the zero set by `set_zero_position`.
    """

    OPERATING_MODES = ("velocity", "position")

    def __init__(
        self,
        clock: Clock,
        initial_positions: Optional[FloatArray] = None
    ) -> None:
        self.clock = clock
        self.connected = True
        self.torque_enabled = False
        self.operating_mode = "position"

        self._raw = (
            np.zeros(N_JOINTS) if initial_positions is None
            else _joint_vector(initial_positions, "initial_positions")
        )
        self._zero = np.zeros(N_JOINTS)
        self._velocities = np.zeros(N_JOINTS)
        self._last_time = clock.now()

        self.writes = 0

    def _require_connection(self) -> None:
        if not self.connected:
            raise ConnectionError("Servo chain is not connected")

    def _integrate(self) -> None:
        now = self.clock.now()
        if self.torque_enabled and self.operating_mode == "velocity":
            self._raw = self._raw + self._velocities * max(0.0, now - self._last_time)
        self._last_time = now

    def check_connection(self) -> bool:
        return self.connected

    def read_positions(self) -> FloatArray:
        self._require_connection()
        self._integrate()
        return self._raw - self._zero

    def write_velocities(self, velocities: FloatArray) -> bool:
        self._require_connection()
        self._integrate()
        self._velocities = _joint_vector(velocities, "velocities")
        self.writes += 1
        return True

    def torque_enable(self, enabled: bool) -> bool:
        self._require_connection()
        self._integrate()
        self.torque_enabled = bool(enabled)
        return True

    def set_operating_mode(self, mode: str) -> bool:
        self._require_connection()
        if mode not in self.OPERATING_MODES:
            return False
        if self.torque_enabled:
            # Mode changes require torque off
            return False
        self.operating_mode = mode
        return True

    def set_zero_position(self) -> bool:
        self._require_connection()
        self._integrate()
        self._zero = self._raw.copy()
        return True

    def disconnect(self) -> None:
        """Simulate a lost connection."""
        self.connected = False

    def close(self) -> None:
        self._velocities = np.zeros(N_JOINTS)
        self.connected = False


# =============================================================================
# Real Robot
# =============================================================================

class RealRobot:
    """
    Adapter over a physical (or simulated) servo chain.

    Driver exceptions and rejected writes are raised as ActuatorError so
    the control loop can abort the run. `initialize` and `shutdown` belong
    to the connection lifecycle and are not called by the loop.
    """

    def __init__(self, servo_chain: ServoChain, chain: KinematicChain) -> None:
        self.servo_chain = servo_chain
        self.chain = chain
        self._initialized = False

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    def initialize(self) -> bool:
        """
        Prepare the servos for velocity control.

        Sequence: torque off, velocity mode, zero at current position,
        torque on.

        Returns:
            True on success

        Raises:
            ActuatorError: If the chain is disconnected or a step fails
        """
        self._call("check_connection")

        steps = (
            ("torque_enable", (False,)),
            ("set_operating_mode", ("velocity",)),
            ("set_zero_position", ()),
            ("torque_enable", (True,)),
        )
        for name, args in steps:
            self._call(name, *args)

        self._initialized = True
        logger.info("Servo chain initialized in velocity mode")
        return True

    def shutdown(self) -> bool:
        """
        Stop the servos and release the chain.

        Returns:
            True if every step succeeded
        """
        success = True
        for name, args in (("write_velocities", (np.zeros(N_JOINTS),)), ("torque_enable", (False,))):
            try:
                self._call(name, *args)
            except ActuatorError as e:
                logger.error(f"Shutdown step {name} failed: {e}")
                success = False

        try:
            self.servo_chain.close()
        except OSError as e:
            logger.error(f"Closing servo chain failed: {e}")
            success = False

        self._initialized = False
        logger.info("Servo chain shut down")
        return success

    def _call(self, name: str, *args):
        try:
            result = getattr(self.servo_chain, name)(*args)
        except OSError as e:
            raise ActuatorError(f"Servo chain {name} failed: {e}") from e

        if result is False:
            raise ActuatorError(f"Servo chain rejected {name}{args}")
        return result

    def get_configuration(self) -> FloatArray:
        positions = self._call("read_positions")
        try:
            return _joint_vector(positions, "positions")
        except ValueError as e:
            raise ActuatorError(f"Invalid position reading: {e}") from e

    def set_joint_velocities(self, q_dot: FloatArray) -> None:
        self._call("write_velocities", _joint_vector(q_dot, "q_dot"))

    def forward_kinematics(self, q: FloatArray) -> FloatArray:
        return self.chain.forward_kinematics(q)
