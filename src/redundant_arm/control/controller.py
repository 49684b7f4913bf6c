"""
Velocity Controller Module
==========================

Redundancy-resolving velocity control for the 4-joint arm.

Control Law (NullspaceController):

    u   = Kp · (x_d − x) + Kff · v_d                 primary Cartesian command
    u   ← (J Jᵀ / ‖J Jᵀ‖) · u                        singularity filter
    q̇   = J⁺ u + α · (I − J⁺ J) · ∇H(q)              primary + nullspace term

    The filter projects the commanded velocity onto the directions the arm
    can realize, so near-singular directions are damped instead of being
    amplified by the pseudo-inverse. Any vector in the range of
    N = I − J⁺J produces no end-effector motion to first order; the
    secondary objective H (shoulder elevation by default) is pushed
    through N with signed gain α.

Singularity Detection:
    The condition proxy ‖J‖·‖J⁺‖ (or the smallest singular value of J) is
    reported with every output. Whether to abort or continue is decided by
    the caller.

Other Controllers:
    - PIDController: position-only PID in Cartesian space, no nullspace
    - JointSpaceController: proportional joint-space motion

Author: Robotic Arm Prototype Team
License: MIT
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Optional, Protocol
import numpy as np
from numpy.typing import NDArray
from scipy import linalg

from .kinematics import KinematicChain

logger = logging.getLogger(__name__)

FloatArray = NDArray[np.floating]


# =============================================================================
# Configuration
# =============================================================================

class SingularityMeasure(Enum):
    """How closeness to a singularity is quantified."""
    CONDITION = auto()           # ‖J‖·‖J⁺‖, large near singularities
    MIN_SINGULAR_VALUE = auto()  # σ_min(J), small near singularities


@dataclass
class ControllerConfig:
    """
    Configuration for the nullspace velocity controller.

    Attributes:
        position_gain: Proportional gain on position error (1/s)
        feedforward_gain: Weight of the desired velocity
        nullspace_gain: Signed gain α of the secondary objective
            (negative descends the objective)
        singularity_measure: Measure used for singularity detection
        singularity_threshold: Condition proxy above which J is near singular
        min_singular_value: σ_min below which J is near singular
        pinv_rcond: Relative cutoff for small singular values in J⁺
    """
    position_gain: float = 1.0
    feedforward_gain: float = 1.0
    nullspace_gain: float = -1.0
    singularity_measure: SingularityMeasure = SingularityMeasure.CONDITION
    singularity_threshold: float = 25.0
    min_singular_value: float = 10.0
    pinv_rcond: Optional[float] = None

    def __post_init__(self) -> None:
        """Validate gains and thresholds."""
        if self.position_gain < 0:
            raise ValueError("position_gain must be non-negative")
        if self.singularity_threshold <= 1.0:
            raise ValueError("singularity_threshold must be > 1 (condition number)")
        if self.min_singular_value <= 0:
            raise ValueError("min_singular_value must be positive")
        if isinstance(self.singularity_measure, str):
            self.singularity_measure = SingularityMeasure[self.singularity_measure.upper()]


# =============================================================================
# Singularity Helpers
# =============================================================================

def pseudo_inverse(J: FloatArray, rcond: Optional[float] = None) -> FloatArray:
    """SVD-based Moore-Penrose pseudo-inverse."""
    if rcond is None:
        return linalg.pinv(J)
    return linalg.pinv(J, rtol=rcond)


def condition_proxy(J: FloatArray) -> float:
    """
    Condition-number proxy ‖J‖₂ · ‖J⁺‖₂ = σ_max / σ_min.

    Returns:
        Proxy value, inf if J has lost rank
    """
    s = linalg.svdvals(J)
    tolerance = max(J.shape) * np.finfo(float).eps * s[0]
    if s[0] == 0.0 or s[-1] <= tolerance:
        return float("inf")
    return float(s[0] / s[-1])


def smallest_singular_value(J: FloatArray) -> float:
    """Smallest singular value of J."""
    return float(linalg.svdvals(J).min())


def singularity_filter(J: FloatArray, u: FloatArray) -> FloatArray:
    """
    Project a Cartesian command onto the realizable directions.

        u ← (J Jᵀ / ‖J Jᵀ‖₂) · u

    Returns:
        Filtered command, zero if J vanishes
    """
    JJT = J @ J.T
    norm = np.linalg.norm(JJT, 2)
    if norm == 0.0 or not np.isfinite(norm):
        return np.zeros_like(u)
    return (JJT / norm) @ u


# =============================================================================
# Secondary Objectives
# =============================================================================

class SecondaryObjective(Protocol):
    """Scalar objective H(q) used in the nullspace."""

    def value(self, chain: KinematicChain, q: FloatArray) -> float:
        ...

    def gradient(self, chain: KinematicChain, q: FloatArray) -> FloatArray:
        ...


class ShoulderElevationObjective:
    """Shoulder elevation H(q) = arccos(cos q1 cos q2), analytic gradient."""

    def value(self, chain: KinematicChain, q: FloatArray) -> float:
        return chain.shoulder_elevation(q)

    def gradient(self, chain: KinematicChain, q: FloatArray) -> FloatArray:
        return chain.shoulder_elevation_gradient(q)


class JointCenteringObjective:
    """Quadratic joint-angle penalty H(q) = ½‖q‖², penalizing high angles."""

    def value(self, chain: KinematicChain, q: FloatArray) -> float:
        q = np.asarray(q, dtype=float)
        return float(0.5 * q @ q)

    def gradient(self, chain: KinematicChain, q: FloatArray) -> FloatArray:
        return np.asarray(q, dtype=float).copy()


@dataclass
class ToolAxisObjective:
    """
    Tool z-axis alignment H(q) = ½‖z(q) − z_d‖².

    The gradient is obtained by central differences of the end-effector
    orientation.
    """
    z_desired: FloatArray = field(default_factory=lambda: np.array([0.0, 0.0, 1.0]))
    step: float = 1e-6

    def __post_init__(self) -> None:
        z = np.asarray(self.z_desired, dtype=float).flatten()
        norm = np.linalg.norm(z)
        if z.shape != (3,) or norm == 0.0:
            raise ValueError("z_desired must be a non-zero 3-vector")
        self.z_desired = z / norm

    def value(self, chain: KinematicChain, q: FloatArray) -> float:
        z = chain.end_effector_rotation(q)[:, 2]
        return float(0.5 * np.sum((z - self.z_desired) ** 2))

    def gradient(self, chain: KinematicChain, q: FloatArray) -> FloatArray:
        q = np.asarray(q, dtype=float)
        gradient = np.zeros(len(q))

        for i in range(len(q)):
            q_plus = q.copy()
            q_minus = q.copy()
            q_plus[i] += self.step
            q_minus[i] -= self.step
            gradient[i] = (self.value(chain, q_plus) - self.value(chain, q_minus)) / (2 * self.step)

        return gradient


# =============================================================================
# Nullspace Controller
# =============================================================================

@dataclass
class ControlOutput:
    """
    Result of one controller evaluation.

    Attributes:
        q_dot: Commanded joint velocity (rad/s)
        primary: Task part J⁺u
        secondary: Nullspace part α·N·∇H
        position_error: x_d − x (zero without position target)
        command: Filtered Cartesian command u
        jacobian: J at q
        jacobian_pinv: J⁺ at q
        nullspace: N = I − J⁺J
        singularity_measure: Value of the configured singularity measure
        near_singular: Whether the measure crossed its threshold
    """
    q_dot: FloatArray
    primary: FloatArray
    secondary: FloatArray
    position_error: FloatArray
    command: FloatArray
    jacobian: FloatArray
    jacobian_pinv: FloatArray
    nullspace: FloatArray
    singularity_measure: float
    near_singular: bool

    @property
    def error_norm(self) -> float:
        return float(np.linalg.norm(self.position_error))


def _optional_vector(value: Optional[FloatArray], name: str) -> Optional[FloatArray]:
    """Interpret None or NaN-filled input as an unset target."""
    if value is None:
        return None

    vector = np.asarray(value, dtype=float).flatten()
    if vector.shape != (3,):
        raise ValueError(f"{name} must have 3 elements, got {vector.size}")
    if np.any(np.isnan(vector)):
        return None
    if not np.all(np.isfinite(vector)):
        raise ValueError(f"{name} contains non-finite values: {vector}")
    return vector


class NullspaceController:
    """
    Stateless redundancy-resolving velocity controller.

    Example:
        >>> chain = KinematicChain.default_arm()
        >>> controller = NullspaceController()
        >>> q = np.array([0.3, 0.3, 0.5, 0.5])
        >>> q_dot = controller.compute_velocity_command(chain, q, [-300, -300, 300])
    """

    def __init__(
        self,
        config: Optional[ControllerConfig] = None,
        objective: Optional[SecondaryObjective] = None
    ) -> None:
        """
        Initialize controller.

        Args:
            config: Controller configuration
            objective: Secondary objective (shoulder elevation if None)
        """
        self.config = config or ControllerConfig()
        self.objective = objective if objective is not None else ShoulderElevationObjective()

        logger.info(
            f"NullspaceController initialized: Kp={self.config.position_gain}, "
            f"alpha={self.config.nullspace_gain}, objective={type(self.objective).__name__}"
        )

    def singularity_measure(self, J: FloatArray) -> float:
        """Value of the configured singularity measure."""
        if self.config.singularity_measure == SingularityMeasure.MIN_SINGULAR_VALUE:
            return smallest_singular_value(J)
        return condition_proxy(J)

    def is_near_singular(self, J: FloatArray) -> bool:
        """Whether J is past the configured singularity threshold."""
        return self.exceeds_threshold(self.singularity_measure(J))

    def exceeds_threshold(self, measure: float) -> bool:
        """Whether an already computed measure is past the threshold."""
        if self.config.singularity_measure == SingularityMeasure.MIN_SINGULAR_VALUE:
            return measure < self.config.min_singular_value
        return measure > self.config.singularity_threshold

    def compute(
        self,
        chain: KinematicChain,
        q: FloatArray,
        target_position: Optional[FloatArray] = None,
        target_velocity: Optional[FloatArray] = None
    ) -> ControlOutput:
        """
        Evaluate the control law.

        Args:
            chain: Kinematic model
            q: Current configuration (rad)
            target_position: Goal position or None
            target_velocity: Feed-forward velocity or None

        Returns:
            ControlOutput with the commanded joint velocity and intermediates

        Raises:
            ValueError: On malformed configuration or target vectors
        """
        q = chain.validate_configuration(q)
        x_d = _optional_vector(target_position, "target_position")
        v_d = _optional_vector(target_velocity, "target_velocity")

        # 1-3. Primary Cartesian command
        x = chain.forward_kinematics(q)
        error = x_d - x if x_d is not None else np.zeros(3)

        u = self.config.position_gain * error
        if v_d is not None:
            u = u + self.config.feedforward_gain * v_d

        # 4-5. Jacobian and singularity filter
        J = chain.jacobian(q)
        u = singularity_filter(J, u)

        # 6-8. Pseudo-inverse, primary solution, nullspace projector
        J_pinv = pseudo_inverse(J, self.config.pinv_rcond)
        primary = J_pinv @ u
        N = np.eye(chain.n_joints) - J_pinv @ J

        # 9. Secondary objective through the nullspace
        secondary = np.zeros(chain.n_joints)
        if self.config.nullspace_gain != 0.0:
            gradient = self.objective.gradient(chain, q)
            secondary = self.config.nullspace_gain * (N @ gradient)

        q_dot = primary + secondary
        if not np.all(np.isfinite(q_dot)):
            logger.error(f"Non-finite joint velocity at q={q}, commanding zero")
            q_dot = np.zeros(chain.n_joints)

        measure = self.singularity_measure(J)

        return ControlOutput(
            q_dot=q_dot,
            primary=primary,
            secondary=secondary,
            position_error=error,
            command=u,
            jacobian=J,
            jacobian_pinv=J_pinv,
            nullspace=N,
            singularity_measure=measure,
            near_singular=self.exceeds_threshold(measure)
        )

    def compute_velocity_command(
        self,
        chain: KinematicChain,
        q: FloatArray,
        target_position: Optional[FloatArray] = None,
        target_velocity: Optional[FloatArray] = None
    ) -> FloatArray:
        """Commanded joint velocity only (see `compute`)."""
        return self.compute(chain, q, target_position, target_velocity).q_dot


# =============================================================================
# PID Controller
# =============================================================================

@dataclass
class PIDConfig:
    """
    Gains for the position-only PID controller.

    Attributes:
        kp: Proportional gain
        ki: Integral gain (per tick sum)
        kd: Derivative gain (per tick difference)
    """
    kp: float = 8.0
    ki: float = 0.0
    kd: float = 0.1


class PIDController:
    """
    Position-only Cartesian PID controller (no nullspace, no feed-forward).

        u  = Kp e + Ki Σe + Kd (e − e_prev)
        q̇  = J⁺ u

    The integral and previous error belong to one point-to-point leg and are
    cleared by `reset()` when a new waypoint begins.
    """

    def __init__(
        self,
        config: Optional[PIDConfig] = None,
        singularity_threshold: float = 25.0
    ) -> None:
        self.config = config or PIDConfig()
        self.singularity_threshold = singularity_threshold
        self._integral = np.zeros(3)
        self._previous_error: Optional[FloatArray] = None

    def reset(self) -> None:
        """Clear integral and derivative state."""
        self._integral = np.zeros(3)
        self._previous_error = None

    def compute(
        self,
        chain: KinematicChain,
        q: FloatArray,
        target_position: FloatArray
    ) -> ControlOutput:
        """
        Evaluate one PID step.

        Args:
            chain: Kinematic model
            q: Current configuration
            target_position: Goal position

        Returns:
            ControlOutput (secondary term is always zero)
        """
        q = chain.validate_configuration(q)
        x_d = _optional_vector(target_position, "target_position")
        if x_d is None:
            raise ValueError("PID control requires a target position")

        error = x_d - chain.forward_kinematics(q)

        self._integral = self._integral + error
        derivative = np.zeros(3) if self._previous_error is None else error - self._previous_error
        self._previous_error = error

        cfg = self.config
        u = cfg.kp * error + cfg.ki * self._integral + cfg.kd * derivative

        J = chain.jacobian(q)
        J_pinv = pseudo_inverse(J)
        q_dot = J_pinv @ u
        if not np.all(np.isfinite(q_dot)):
            logger.error(f"Non-finite PID joint velocity at q={q}, commanding zero")
            q_dot = np.zeros(chain.n_joints)

        measure = condition_proxy(J)

        return ControlOutput(
            q_dot=q_dot,
            primary=q_dot.copy(),
            secondary=np.zeros(chain.n_joints),
            position_error=error,
            command=u,
            jacobian=J,
            jacobian_pinv=J_pinv,
            nullspace=np.eye(chain.n_joints) - J_pinv @ J,
            singularity_measure=measure,
            near_singular=measure > self.singularity_threshold
        )


# =============================================================================
# Joint-Space Controller
# =============================================================================

class JointSpaceController:
    """
    Proportional joint-space controller.

        q̇ = K (q_target − q), clipped to ±max_velocity
    """

    def __init__(self, gain: float = 1.0, max_velocity: Optional[float] = 0.5) -> None:
        if gain <= 0:
            raise ValueError("gain must be positive")
        if max_velocity is not None and max_velocity <= 0:
            raise ValueError("max_velocity must be positive")
        self.gain = gain
        self.max_velocity = max_velocity

    def compute(
        self,
        chain: KinematicChain,
        q: FloatArray,
        q_target: FloatArray
    ) -> FloatArray:
        """Joint velocity toward q_target."""
        q = chain.validate_configuration(q)
        q_target = chain.validate_configuration(q_target)

        q_dot = self.gain * (q_target - q)
        if self.max_velocity is not None:
            q_dot = np.clip(q_dot, -self.max_velocity, self.max_velocity)
        return q_dot
