"""
Kinematics Module
=================

Forward kinematics and Jacobian for the 4-joint redundant arm, built on a
tree of rigid-body frames.

Mathematical Background:

    Forward Kinematics:
        Walking the chain base-to-tip, every frame adds its fixed offset in
        the current orientation, and every joint composes its local
        rotation on the right:

            p ← p + R · offset_i
            R ← R · Rot(a_i, q_i)

    Geometric Jacobian (linear part):
        For a revolute joint with global axis w_i located at o_i:

            J[:, i] = w_i × (p_ee − o_i)

        The 3x4 Jacobian maps joint velocities to end-effector linear
        velocity. With 4 joints and a 3-DOF positioning task the arm has one
        degree of redundancy.

    Shoulder Elevation:
        Angle of the upper arm from vertical, a function of the first two
        joints only:

            H(q) = arccos(cos q1 · cos q2)

Arm Specifications (default arm, mm):
    - Joint 1: 83.51 above origin, rotates about y
    - Joint 2: co-located with joint 1, rotates about x
    - Joint 3: 119.35 above joint 2, rotates about z (upper arm twist)
    - Joint 4: 163.99 above joint 3, rotates about x (elbow)
    - End-effector: 218.86 beyond joint 4
    - Total reach from shoulder: ~502mm

Author: Robotic Arm Prototype Team
License: MIT
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Tuple, List, Callable
import numpy as np
from numpy.typing import NDArray
import sympy as sp
from scipy import linalg

from .frames import FrameTree, NO_PARENT, axis_rotation, unit_axis

logger = logging.getLogger(__name__)

# Type aliases
FloatArray = NDArray[np.floating]

# The chain models exactly this many revolute joints
N_JOINTS = 4

# Below this, the shoulder elevation gradient is treated as degenerate
ELEVATION_EPS = 1e-9


# =============================================================================
# Data Classes
# =============================================================================

@dataclass
class JointLimits:
    """
    Joint limits and constraints.

    Attributes:
        lower: Lower position limit (rad)
        upper: Upper position limit (rad)
        velocity: Maximum velocity (rad/s)
    """
    lower: float = -np.pi
    upper: float = np.pi
    velocity: float = 2.0

    def __post_init__(self) -> None:
        """Validate limits."""
        if self.lower >= self.upper:
            raise ValueError(f"lower ({self.lower}) must be < upper ({self.upper})")
        if self.velocity <= 0:
            raise ValueError("velocity must be positive")

    def clamp(self, value: float) -> float:
        """Clamp value to position limits."""
        return float(np.clip(value, self.lower, self.upper))

    def is_within(self, value: float, margin: float = 0.0) -> bool:
        """Check if value is within limits with optional margin."""
        return (self.lower + margin) <= value <= (self.upper - margin)

    def center(self) -> float:
        """Get center of joint range."""
        return (self.lower + self.upper) / 2


@dataclass(frozen=True)
class ChainPoses:
    """Global joint origins and axes plus end-effector pose at one configuration."""
    joint_origins: FloatArray   # (n_joints, 3)
    joint_axes: FloatArray      # (n_joints, 3)
    end_effector_position: FloatArray
    end_effector_rotation: FloatArray


# =============================================================================
# Kinematic Chain
# =============================================================================

class KinematicChain:
    """
    Kinematic model of a 4-joint revolute chain ending in an end-effector.

    The frame tree holds the mutable state (one angle per joint);
    `forward_kinematics` and `jacobian` are pure functions of the joint
    angles passed in and never touch that state.

    Example:
        >>> chain = KinematicChain.default_arm()
        >>> chain.forward_kinematics(np.zeros(4))
        array([  0.  ,   0.  , 585.71])
        >>> J = chain.jacobian([0.3, 0.3, 0.5, 0.5])
        >>> J.shape
        (3, 4)
    """

    # Default geometry (mm)
    DEFAULT_OFFSETS = {
        "joint_1": (0.0, 0.0, 83.51),
        "joint_2": (0.0, 0.0, 0.0),
        "joint_3": (0.0, 0.0, 119.35),
        "joint_4": (0.0, 0.0, 163.99),
        "end_effector": (0.0, 0.0, 218.86),
    }
    DEFAULT_AXES = ("y", "x", "z", "x")

    def __init__(
        self,
        tree: FrameTree,
        joints: List[int],
        end_effector: int,
        joint_limits: Optional[List[JointLimits]] = None,
        enforce_limits: bool = False,
        limit_policy: str = "reject"
    ) -> None:
        """
        Initialize kinematic chain.

        Args:
            tree: Frame tree holding the chain
            joints: Joint indices ordered base to tip
            end_effector: Index of the end-effector frame
            joint_limits: Optional per-joint limits
            enforce_limits: Whether configurations are checked against limits
            limit_policy: "reject" (ValueError) or "clamp" when out of limits

        Raises:
            ValueError: If the chain layout is invalid
        """
        if len(joints) != N_JOINTS:
            raise ValueError(f"Expected {N_JOINTS} joints, got {len(joints)}")
        if limit_policy not in ("reject", "clamp"):
            raise ValueError(f"Unknown limit policy {limit_policy!r}")

        self.tree = tree
        self.joints = list(joints)
        self.end_effector = end_effector
        self.n_joints = N_JOINTS

        # The path root -> end-effector must contain exactly the chain joints, in order
        self._path = tree.path_from_root(end_effector)
        path_joints = [i for i in self._path if tree[i].is_joint]
        if path_joints != self.joints:
            raise ValueError(
                f"Joints {self.joints} do not match the joints on the path to "
                f"the end-effector {path_joints}"
            )
        self._q_index = {joint: i for i, joint in enumerate(self.joints)}

        if joint_limits is None:
            self.joint_limits = [JointLimits() for _ in range(self.n_joints)]
        else:
            if len(joint_limits) != self.n_joints:
                raise ValueError("joint_limits length must match number of joints")
            self.joint_limits = list(joint_limits)
        self.enforce_limits = enforce_limits
        self.limit_policy = limit_policy

        self._symbolic: Optional[Tuple[Tuple[sp.Symbol, ...], sp.Matrix]] = None
        self._jacobian_fn: Optional[Callable[..., FloatArray]] = None

        logger.info(
            f"KinematicChain initialized: joints "
            f"{[tree[i].label for i in self.joints]} -> {tree[end_effector].label}"
        )

    @classmethod
    def default_arm(cls, **kwargs) -> "KinematicChain":
        """
        Create the reference 4-joint arm.

        Returns:
            KinematicChain with the prototype arm geometry
        """
        offsets = cls.DEFAULT_OFFSETS

        tree = FrameTree()
        origin = tree.add_frame([0.0, 0.0, 0.0], NO_PARENT, "Origin")

        joints = []
        parent = origin
        for i, axis in enumerate(cls.DEFAULT_AXES, start=1):
            parent = tree.add_joint(offsets[f"joint_{i}"], parent, f"Joint {i}", axis)
            joints.append(parent)

        end_effector = tree.add_frame(offsets["end_effector"], parent, "Endeffector")

        return cls(tree, joints, end_effector, **kwargs)

    # =========================================================================
    # Configuration State
    # =========================================================================

    @property
    def configuration(self) -> FloatArray:
        """Joint angles currently committed to the frame tree."""
        return np.array([self.tree.angle(j) for j in self.joints])

    def set_configuration(self, q: FloatArray) -> None:
        """
        Overwrite the joint angles of the frame tree.

        Args:
            q: Joint angles (rad), shape (4,)
        """
        q = self.validate_configuration(q)
        for joint, angle in zip(self.joints, q):
            self.tree.set_angle(joint, angle)

    def validate_configuration(self, q: FloatArray) -> FloatArray:
        """
        Check a configuration at the chain boundary.

        Args:
            q: Joint angles

        Returns:
            Configuration as float array (clamped if the clamp policy is set)

        Raises:
            ValueError: On wrong length, non-finite values or limit violation
        """
        q = np.asarray(q, dtype=float).flatten()

        if len(q) != self.n_joints:
            raise ValueError(f"Expected {self.n_joints} joints, got {len(q)}")
        if not np.all(np.isfinite(q)):
            raise ValueError(f"Configuration contains non-finite values: {q}")

        if self.enforce_limits:
            valid, violations = self.check_joint_limits(q)
            if not valid:
                if self.limit_policy == "clamp":
                    logger.debug(f"Clamping joints {violations} to limits")
                    return self.clamp_joints(q)
                raise ValueError(f"Configuration violates limits on joints: {violations}")

        return q

    def check_joint_limits(self, q: FloatArray) -> Tuple[bool, List[int]]:
        """
        Check if joint angles are within limits.

        Returns:
            Tuple of (all_within_limits, list_of_violated_joints)
        """
        q = np.asarray(q).flatten()
        violations = [
            i for i, (qi, limit) in enumerate(zip(q, self.joint_limits))
            if not limit.is_within(qi)
        ]
        return len(violations) == 0, violations

    def clamp_joints(self, q: FloatArray) -> FloatArray:
        """Clamp joint angles to limits."""
        q = np.asarray(q, dtype=float).flatten().copy()
        for i in range(self.n_joints):
            q[i] = self.joint_limits[i].clamp(q[i])
        return q

    # =========================================================================
    # Numeric Kinematics
    # =========================================================================

    def poses(self, q: FloatArray) -> ChainPoses:
        """
        Global joint origins/axes and end-effector pose for a configuration.

        Pure function of q; the frame tree state is not read or written
        (except for the fixed root orientation).
        """
        q = self.validate_configuration(q)
        tree = self.tree

        root = tree[self._path[0]]
        position = root.offset.copy()
        rotation = root.rotation.copy()

        origins = np.zeros((self.n_joints, 3))
        axes = np.zeros((self.n_joints, 3))

        for index in self._path[1:]:
            frame = tree[index]
            position = position + rotation @ frame.offset
            if frame.is_joint:
                i = self._q_index[index]
                origins[i] = position
                axes[i] = rotation @ unit_axis(frame.axis)
                rotation = rotation @ axis_rotation(frame.axis, q[i])

        return ChainPoses(
            joint_origins=origins,
            joint_axes=axes,
            end_effector_position=position,
            end_effector_rotation=rotation
        )

    def forward_kinematics(self, q: FloatArray) -> FloatArray:
        """
        End-effector position for a configuration.

        Args:
            q: Joint angles (rad), shape (4,)

        Returns:
            Global end-effector position, shape (3,)

        Raises:
            ValueError: If q has wrong length or invalid values
        """
        return self.poses(q).end_effector_position

    def end_effector_rotation(self, q: FloatArray) -> FloatArray:
        """End-effector orientation (3x3) for a configuration."""
        return self.poses(q).end_effector_rotation

    def jacobian(self, q: FloatArray) -> FloatArray:
        """
        Compute the linear-velocity geometric Jacobian.

            ẋ = J(q) · q̇

        Args:
            q: Joint angles (rad)

        Returns:
            3 x 4 Jacobian matrix
        """
        poses = self.poses(q)
        p_ee = poses.end_effector_position

        J = np.zeros((3, self.n_joints))
        for i in range(self.n_joints):
            J[:, i] = np.cross(poses.joint_axes[i], p_ee - poses.joint_origins[i])

        return J

    def finite_difference_jacobian(
        self,
        q: FloatArray,
        step: float = 1e-6
    ) -> FloatArray:
        """
        Central-difference approximation of the Jacobian from FK.

        Args:
            q: Joint angles
            step: Perturbation per joint (rad)

        Returns:
            3 x 4 numeric Jacobian
        """
        q = self.validate_configuration(q)
        J = np.zeros((3, self.n_joints))

        for i in range(self.n_joints):
            q_plus = q.copy()
            q_minus = q.copy()
            q_plus[i] += step
            q_minus[i] -= step
            J[:, i] = (self.forward_kinematics(q_plus) - self.forward_kinematics(q_minus)) / (2 * step)

        return J

    def jacobian_error(self, q: FloatArray, step: float = 1e-6) -> float:
        """
        Largest relative column deviation between analytic and numeric Jacobian.

        Columns with vanishing norm are compared absolutely.
        """
        J = self.jacobian(q)
        J_fd = self.finite_difference_jacobian(q, step)

        errors = []
        for i in range(self.n_joints):
            scale = max(np.linalg.norm(J_fd[:, i]), 1.0)
            errors.append(np.linalg.norm(J[:, i] - J_fd[:, i]) / scale)

        error = float(max(errors))
        if error > 1e-3:
            logger.warning(f"Jacobian deviates from finite differences: {error:.2e}")
        return error

    # =========================================================================
    # Frame Tree State
    # =========================================================================

    def end_effector_position(self) -> FloatArray:
        """End-effector position read from the committed frame tree."""
        return self.tree.global_position(self.end_effector)

    def jacobian_from_state(self) -> FloatArray:
        """Jacobian assembled from the committed frame tree."""
        p_ee = self.end_effector_position()

        J = np.zeros((3, self.n_joints))
        for i, joint in enumerate(self.joints):
            w = self.tree.joint_axis(joint)
            o = self.tree.global_position(joint)
            J[:, i] = np.cross(w, p_ee - o)

        return J

    def joint_positions(self, q: Optional[FloatArray] = None) -> FloatArray:
        """
        Global positions of origin, joints and end-effector (for display).

        Returns:
            Array of shape (n_frames_on_path, 3)
        """
        if q is None:
            return np.array([self.tree.global_position(i) for i in self._path])

        poses = self.poses(q)
        root = self.tree[self._path[0]].offset
        return np.vstack([root, poses.joint_origins, poses.end_effector_position])

    # =========================================================================
    # Symbolic Kinematics
    # =========================================================================

    def symbolic_forward_kinematics(self) -> Tuple[Tuple[sp.Symbol, ...], sp.Matrix]:
        """
        Parametric end-effector position in the joint symbols q1..q4.

        Returns:
            Tuple of (joint symbols, 3x1 sympy matrix)
        """
        if self._symbolic is None:
            symbols = sp.symbols(f"q1:{self.n_joints + 1}", real=True)
            tree = self.tree

            root = tree[self._path[0]]
            position = sp.Matrix(root.offset.tolist())
            rotation = sp.Matrix(root.rotation.tolist())

            for index in self._path[1:]:
                frame = tree[index]
                position = position + rotation * sp.Matrix(frame.offset.tolist())
                if frame.is_joint:
                    theta = symbols[self._q_index[index]]
                    rotation = rotation * _symbolic_rotation(frame.axis, theta)

            self._symbolic = (symbols, position)

        return self._symbolic

    def symbolic_jacobian(self) -> sp.Matrix:
        """Parametric 3x4 Jacobian, the derivative of symbolic FK."""
        symbols, position = self.symbolic_forward_kinematics()
        return position.jacobian(sp.Matrix(symbols))

    def jacobian_function(self) -> Callable[[FloatArray], FloatArray]:
        """
        Numeric function compiled from the symbolic Jacobian.

        Returns:
            Callable mapping q (4,) to J (3, 4)
        """
        if self._jacobian_fn is None:
            symbols, _ = self.symbolic_forward_kinematics()
            compiled = sp.lambdify(symbols, self.symbolic_jacobian(), modules="numpy")

            def jacobian_fn(q: FloatArray) -> FloatArray:
                q = self.validate_configuration(q)
                return np.array(compiled(*q), dtype=float)

            self._jacobian_fn = jacobian_fn

        return self._jacobian_fn

    # =========================================================================
    # Derived Measures
    # =========================================================================

    def shoulder_elevation(self, q: FloatArray) -> float:
        """
        Angle of the upper arm from vertical (rad).

            H(q) = arccos(cos q1 · cos q2)
        """
        q = self.validate_configuration(q)
        return float(np.arccos(np.clip(np.cos(q[0]) * np.cos(q[1]), -1.0, 1.0)))

    def shoulder_elevation_gradient(self, q: FloatArray) -> FloatArray:
        """
        Analytic gradient of the shoulder elevation.

            ∂H/∂q = [sin q1 cos q2, cos q1 sin q2, 0, 0] / sqrt(1 − (cos q1 cos q2)²)

        Returns:
            Gradient (4,); zero where the upper arm is exactly vertical
        """
        q = self.validate_configuration(q)
        c1, s1 = np.cos(q[0]), np.sin(q[0])
        c2, s2 = np.cos(q[1]), np.sin(q[1])

        denominator = np.sqrt(max(0.0, 1.0 - (c1 * c2) ** 2))
        gradient = np.zeros(self.n_joints)
        if denominator < ELEVATION_EPS:
            return gradient

        gradient[0] = s1 * c2 / denominator
        gradient[1] = c1 * s2 / denominator
        return gradient

    def manipulability(self, q: FloatArray) -> float:
        """
        Yoshikawa manipulability measure.

            w = sqrt(det(J Jᵀ))

        Higher values indicate configurations farther from singularities.
        """
        J = self.jacobian(q)
        return float(np.sqrt(max(0.0, linalg.det(J @ J.T))))

    def reach(self) -> Tuple[FloatArray, float]:
        """
        Shoulder center and maximum reach of the arm.

        Returns:
            Tuple of (position of the first joint, summed link lengths beyond it)
        """
        first = self._path.index(self.joints[0])
        center = self.poses(np.zeros(self.n_joints)).joint_origins[0]
        max_reach = float(sum(
            np.linalg.norm(self.tree[i].offset) for i in self._path[first + 1:]
        ))
        return center, max_reach


def _symbolic_rotation(axis: str, theta: sp.Symbol) -> sp.Matrix:
    """Principal-axis rotation as a sympy matrix."""
    c, s = sp.cos(theta), sp.sin(theta)
    if axis == "x":
        return sp.Matrix([[1, 0, 0], [0, c, -s], [0, s, c]])
    if axis == "y":
        return sp.Matrix([[c, 0, s], [0, 1, 0], [-s, 0, c]])
    if axis == "z":
        return sp.Matrix([[c, -s, 0], [s, c, 0], [0, 0, 1]])
    raise ValueError(f"Invalid rotation axis {axis!r}")
