"""
Control Module
==============

Kinematics and velocity control for the 4-joint redundant arm, including
the frame tree, redundancy-resolving controllers, trajectory generation
and the real-time control loop.

Key Components:
    - Frames: Arena-based tree of rigid-body frames
    - Kinematics: Forward kinematics, Jacobian, symbolic model
    - Controller: Nullspace, PID and joint-space velocity control
    - Trajectory: Constant-speed trajectories and planar paths
    - Loop: Tick-based driver with singularity policy

Arm Configuration:
    4 revolute joints for a 3-DOF positioning task:
    - Shoulder: 2 DOF (rotations about y and x)
    - Upper arm: 1 DOF (twist about z)
    - Elbow: 1 DOF (flexion about x)

    The one redundant degree of freedom is used for a secondary objective.

Author: Robotic Arm Prototype Team
License: MIT
"""

from .frames import (
    NO_PARENT,
    FrameRecord,
    FrameTree,
    axis_rotation,
)

from .kinematics import (
    N_JOINTS,
    JointLimits,
    KinematicChain,
)

from .controller import (
    ControllerConfig,
    ControlOutput,
    SingularityMeasure,
    NullspaceController,
    ShoulderElevationObjective,
    JointCenteringObjective,
    ToolAxisObjective,
    PIDConfig,
    PIDController,
    JointSpaceController,
)

from .trajectory import (
    Trajectory,
    TrajectoryPoint,
    TrajectoryGenerator,
    PathPlanner2D,
    circle_waypoints,
)

from .loop import (
    LoopState,
    TerminationReason,
    SingularityPolicy,
    LoopConfig,
    LoopResult,
    SimulatedClock,
    WallClock,
    ControlLoop,
)

__version__ = "0.1.0"

__all__ = [
    # Frames
    "NO_PARENT",
    "FrameRecord",
    "FrameTree",
    "axis_rotation",
    # Kinematics
    "N_JOINTS",
    "JointLimits",
    "KinematicChain",
    # Controller
    "ControllerConfig",
    "ControlOutput",
    "SingularityMeasure",
    "NullspaceController",
    "ShoulderElevationObjective",
    "JointCenteringObjective",
    "ToolAxisObjective",
    "PIDConfig",
    "PIDController",
    "JointSpaceController",
    # Trajectory
    "Trajectory",
    "TrajectoryPoint",
    "TrajectoryGenerator",
    "PathPlanner2D",
    "circle_waypoints",
    # Loop
    "LoopState",
    "TerminationReason",
    "SingularityPolicy",
    "LoopConfig",
    "LoopResult",
    "SimulatedClock",
    "WallClock",
    "ControlLoop",
]
