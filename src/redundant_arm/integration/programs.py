"""
Programs Module
===============

Launchable arm programs and their argument grammar.

Each program is a function ``run(session, loop, args) -> LoopResult`` that
drives the arm through a ControlLoop prepared by the session. Arguments
are given as text: numbers (negatives allowed) separated by ',' or ';'.

Available Programs:
    - set_joints: joint-space move to 4 angles (rad)
    - set_position: nullspace control to an (x, y, z) position (mm)
    - trajectory_2d: constant-speed circle in a horizontal plane
    - follow_circle: point-to-point PID along circle waypoints

Author: Robotic Arm Prototype Team
License: MIT
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Callable, Dict, List, Any
import numpy as np

from ..control.controller import PIDController, PIDConfig
from ..control.loop import ControlLoop, LoopResult
from ..control.trajectory import TrajectoryGenerator, PathPlanner2D, circle_waypoints

logger = logging.getLogger(__name__)

_NUMBER = r"-?\d+(\.\d+)?"

# Waypoint circle visited by follow_circle (mm)
CIRCLE_CENTER = (-75.0, -75.0, 500.0)
CIRCLE_RADIUS = 150.0
CIRCLE_POINTS = 10


def argument_pattern(count: int) -> "re.Pattern[str]":
    """Regular expression accepting `count` numbers separated by ',' or ';'."""
    if count < 1:
        raise ValueError("count must be at least 1")
    return re.compile(rf"^({_NUMBER}[,;] *){{{count - 1}}}{_NUMBER}$")


def parse_numbers(text: str, count: int) -> List[float]:
    """
    Parse a program argument string.

    Args:
        text: Argument text, e.g. "0.1, -0.2; 0.3, 0"
        count: Expected number of values (0 for none)

    Returns:
        Parsed values

    Raises:
        ValueError: If the text does not match the grammar
    """
    text = (text or "").strip()

    if count == 0:
        if text:
            raise ValueError("This program takes no arguments.")
        return []

    if not argument_pattern(count).match(text):
        raise ValueError(
            f"Please enter {count} numbers (including negatives) "
            f"separated by commas or semicolons."
        )
    return [float(value) for value in re.split(r"[,;]", text)]


# =============================================================================
# Programs
# =============================================================================

def set_joints(session: Any, loop: ControlLoop, args: List[float]) -> LoopResult:
    """Joint-space move to the given angles."""
    return loop.move_to_configuration(np.array(args))


def set_position(session: Any, loop: ControlLoop, args: List[float]) -> LoopResult:
    """Drive the end-effector to a position with the nullspace controller."""
    return loop.seek_position(np.array(args))


def trajectory_2d(session: Any, loop: ControlLoop, args: List[float]) -> LoopResult:
    """
    Follow a planned circle in a horizontal plane.

    The trajectory starts at the current end-effector position.
    """
    config = session.config
    q = session.robot.get_configuration()

    planner = PathPlanner2D(session.chain, config.plane_height)
    waypoints = [session.chain.forward_kinematics(q)] + planner.plan(q)

    generator = TrajectoryGenerator(config.average_speed, loop.config.time_step)
    trajectory = generator.generate(waypoints)
    logger.info(
        f"Trajectory: {len(trajectory)} samples, {trajectory.duration:.1f}s "
        f"at {config.average_speed:.0f}mm/s"
    )
    return loop.follow_trajectory(trajectory)


def follow_circle(session: Any, loop: ControlLoop, args: List[float]) -> LoopResult:
    """Visit waypoints on a fixed circle with point-to-point PID control."""
    waypoints = circle_waypoints(CIRCLE_CENTER, CIRCLE_RADIUS, CIRCLE_POINTS)
    pid = PIDController(
        PIDConfig(kp=session.config.pid_kp, ki=session.config.pid_ki, kd=session.config.pid_kd),
        singularity_threshold=session.config.singularity_threshold
    )
    return loop.follow_waypoints(waypoints, pid)


# =============================================================================
# Registry
# =============================================================================

ProgramFunction = Callable[[Any, ControlLoop, List[float]], LoopResult]


@dataclass(frozen=True)
class ProgramSpec:
    """A registered program."""
    name: str
    run: ProgramFunction
    n_args: int
    description: str = ""

    def parse(self, text: str) -> List[float]:
        return parse_numbers(text, self.n_args)


class ProgramRegistry:
    """
    Name → program lookup.

    Example:
        >>> registry = ProgramRegistry.default()
        >>> registry.names()
        ['follow_circle', 'set_joints', 'set_position', 'trajectory_2d']
    """

    def __init__(self) -> None:
        self._programs: Dict[str, ProgramSpec] = {}

    def __contains__(self, name: str) -> bool:
        return name in self._programs

    def register(
        self,
        name: str,
        run: ProgramFunction,
        n_args: int = 0,
        description: str = ""
    ) -> None:
        """Register a program under a unique name."""
        if name in self._programs:
            raise ValueError(f"Program {name!r} is already registered")
        if n_args < 0:
            raise ValueError("n_args must be non-negative")
        self._programs[name] = ProgramSpec(name, run, n_args, description)
        logger.debug(f"Registered program {name} ({n_args} args)")

    def get(self, name: str) -> ProgramSpec:
        """
        Look up a program.

        Raises:
            KeyError: If no program has that name
        """
        return self._programs[name]

    def names(self) -> List[str]:
        return sorted(self._programs)

    @classmethod
    def default(cls) -> "ProgramRegistry":
        """Registry with the built-in programs."""
        registry = cls()
        registry.register("set_joints", set_joints, 4, "Move to 4 joint angles (rad)")
        registry.register("set_position", set_position, 3, "Move end-effector to x, y, z (mm)")
        registry.register("trajectory_2d", trajectory_2d, 0, "Follow a circle in a horizontal plane")
        registry.register("follow_circle", follow_circle, 0, "PID point-to-point along a circle")
        return registry
