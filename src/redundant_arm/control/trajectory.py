"""
Trajectory Generation Module
============================

Constant-speed Cartesian trajectories through waypoints, and simple path
planning in a horizontal plane.

Mathematical Background:

    Constant-Speed Polyline:
        Waypoints w_0..w_m form straight segments of lengths L_j. With
        average speed v the path takes

            T = L / v,   L = Σ L_j

        Samples are taken every dt at t_k = k·dt, k = 1..n with
        n = ceil(T / dt). The arc length reached at t_k is

            s_k = min(v · t_k, L)

        and the desired position is interpolated linearly inside the segment
        containing s_k. The desired velocity is the segment's unit direction
        times v, except for the final sample where the arm comes to rest.

    Planar Path:
        At height h, the arm reaches points within an annulus centered
        above the shoulder with outer radius

            r_out = sqrt(r_max² − (h − z_shoulder)²)

        The planner returns points on a circle inside that annulus.

Author: Robotic Arm Prototype Team
License: MIT
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Iterator, List, Sequence
import numpy as np
from numpy.typing import NDArray

from .kinematics import KinematicChain

logger = logging.getLogger(__name__)

FloatArray = NDArray[np.floating]

# Guards ceil(T/dt) against float noise when T is a whole multiple of dt
SAMPLE_TOLERANCE = 1e-9


# =============================================================================
# Trajectory Data
# =============================================================================

@dataclass(frozen=True)
class TrajectoryPoint:
    """
    A single trajectory sample.

    Attributes:
        index: Sample index (0-based)
        time: Time from trajectory start (s)
        position: Desired end-effector position (mm)
        velocity: Desired end-effector velocity (mm/s)
    """
    index: int
    time: float
    position: FloatArray
    velocity: FloatArray


@dataclass(frozen=True)
class Trajectory:
    """
    Immutable sampled trajectory.

    Attributes:
        positions: Desired positions, shape (n, 3)
        velocities: Desired velocities, shape (n, 3)
        times: Sample times, shape (n,)
        sample_interval: Time between samples (s)
        average_speed: Speed the trajectory was generated with (mm/s)
    """
    positions: FloatArray
    velocities: FloatArray
    times: FloatArray
    sample_interval: float
    average_speed: float

    def __post_init__(self) -> None:
        for array in (self.positions, self.velocities, self.times):
            array.setflags(write=False)

    def __len__(self) -> int:
        return len(self.times)

    def __getitem__(self, index: int) -> TrajectoryPoint:
        if index < 0:
            index += len(self)
        if not 0 <= index < len(self):
            raise IndexError(f"Trajectory index {index} out of range")
        return TrajectoryPoint(
            index=index,
            time=float(self.times[index]),
            position=self.positions[index],
            velocity=self.velocities[index]
        )

    def __iter__(self) -> Iterator[TrajectoryPoint]:
        for i in range(len(self)):
            yield self[i]

    @property
    def duration(self) -> float:
        """Time of the last sample (s)."""
        return float(self.times[-1])

    @property
    def path_length(self) -> float:
        """Length of the sampled polyline (mm)."""
        return float(np.sum(np.linalg.norm(np.diff(self.positions, axis=0), axis=1)))


# =============================================================================
# Trajectory Generator
# =============================================================================

class TrajectoryGenerator:
    """
    Constant-speed trajectory through a list of waypoints.

    Generation is deterministic: the same waypoints, speed and interval
    always produce identical arrays, so a trajectory can be regenerated
    instead of stored.

    Example:
        >>> generator = TrajectoryGenerator(average_speed=50.0, sample_interval=0.15)
        >>> trajectory = generator.generate([[0, 0, 300], [100, 0, 300]])
        >>> len(trajectory)
        14
    """

    def __init__(self, average_speed: float = 50.0, sample_interval: float = 0.15) -> None:
        """
        Initialize generator.

        Args:
            average_speed: End-effector speed along the path (mm/s)
            sample_interval: Time between samples (s)
        """
        if not average_speed > 0:
            raise ValueError(f"average_speed must be positive, got {average_speed}")
        if not sample_interval > 0:
            raise ValueError(f"sample_interval must be positive, got {sample_interval}")

        self.average_speed = float(average_speed)
        self.sample_interval = float(sample_interval)

    def generate(self, waypoints: Sequence[FloatArray]) -> Trajectory:
        """
        Sample the polyline through the waypoints.

        Args:
            waypoints: Ordered positions, each of shape (3,)

        Returns:
            Trajectory with n = ceil(L / v / dt) samples (at least one)

        Raises:
            ValueError: On an empty list or malformed waypoints
        """
        points = _as_waypoints(waypoints)
        v = self.average_speed
        dt = self.sample_interval

        # Drop zero-length segments
        keep = [0]
        for i in range(1, len(points)):
            if np.linalg.norm(points[i] - points[keep[-1]]) > 0.0:
                keep.append(i)
        points = points[keep]

        segments = np.diff(points, axis=0)
        lengths = np.linalg.norm(segments, axis=1)
        cumulative = np.concatenate([[0.0], np.cumsum(lengths)])
        total_length = float(cumulative[-1])

        duration = total_length / v
        n_samples = max(1, math.ceil(duration / dt - SAMPLE_TOLERANCE))

        times = dt * np.arange(1, n_samples + 1)
        positions = np.zeros((n_samples, 3))
        velocities = np.zeros((n_samples, 3))

        for k, t in enumerate(times):
            s = min(v * t, total_length)
            if len(lengths) == 0:
                positions[k] = points[0]
                continue

            j = int(np.searchsorted(cumulative, s, side="right")) - 1
            j = min(max(j, 0), len(lengths) - 1)
            direction = segments[j] / lengths[j]

            positions[k] = points[j] + (s - cumulative[j]) * direction
            velocities[k] = v * direction

        velocities[-1] = 0.0

        logger.debug(
            f"Generated trajectory: {len(points)} waypoints, length={total_length:.1f}mm, "
            f"duration={duration:.2f}s, samples={n_samples}"
        )

        return Trajectory(
            positions=positions,
            velocities=velocities,
            times=times,
            sample_interval=dt,
            average_speed=v
        )

    def stream(self, trajectory: Trajectory) -> Iterator[TrajectoryPoint]:
        """Yield trajectory samples in order."""
        yield from trajectory


def _as_waypoints(waypoints: Sequence[FloatArray]) -> FloatArray:
    points = np.asarray(waypoints, dtype=float)
    if points.ndim == 1 and points.size == 3:
        points = points.reshape(1, 3)
    if points.ndim != 2 or points.shape[1] != 3 or len(points) == 0:
        raise ValueError(f"Waypoints must be a non-empty list of 3-vectors, got shape {points.shape}")
    if not np.all(np.isfinite(points)):
        raise ValueError("Waypoints contain non-finite values")
    return points


# =============================================================================
# Path Planning
# =============================================================================

def circle_waypoints(
    center: FloatArray,
    radius: float,
    n_points: int = 10,
    start_angle: float = 0.0
) -> List[FloatArray]:
    """
    Evenly spaced points on a horizontal circle.

    Args:
        center: Circle center (mm)
        radius: Circle radius (mm)
        n_points: Number of points
        start_angle: Azimuth of the first point (rad)

    Returns:
        List of n_points positions, counter-clockwise
    """
    center = np.asarray(center, dtype=float).flatten()
    if center.shape != (3,):
        raise ValueError("center must have 3 elements")
    if radius <= 0:
        raise ValueError("radius must be positive")
    if n_points < 1:
        raise ValueError("n_points must be at least 1")

    angles = start_angle + np.linspace(0.0, 2 * np.pi, n_points, endpoint=False)
    return [
        center + radius * np.array([np.cos(a), np.sin(a), 0.0])
        for a in angles
    ]


class PathPlanner2D:
    """
    Closed circular path at a fixed height inside the reachable workspace.

    The circle is centered above the shoulder, with a radius between the
    inner and outer radius of the reachable annulus at the plane height.
    The first waypoint lies at the azimuth of the current end-effector.
    """

    def __init__(
        self,
        chain: KinematicChain,
        plane_height: float,
        n_points: int = 12,
        inner_fraction: float = 0.25,
        radius_fraction: float = 0.6
    ) -> None:
        """
        Initialize planner.

        Args:
            chain: Kinematic model (for shoulder center and reach)
            plane_height: Height of the path plane (mm)
            n_points: Number of points on the circle
            inner_fraction: Inner annulus radius as fraction of the outer
            radius_fraction: Path radius as fraction of the outer radius
        """
        if n_points < 3:
            raise ValueError("n_points must be at least 3")
        if not 0.0 <= inner_fraction < radius_fraction < 1.0:
            raise ValueError("Require 0 <= inner_fraction < radius_fraction < 1")

        self.chain = chain
        self.plane_height = float(plane_height)
        self.n_points = n_points
        self.inner_fraction = inner_fraction
        self.radius_fraction = radius_fraction

    def workspace_annulus(self) -> tuple:
        """
        Reachable annulus at the plane height.

        Returns:
            Tuple of (center (3,), inner radius, outer radius)

        Raises:
            ValueError: If the plane lies outside the reachable workspace
        """
        shoulder, max_reach = self.chain.reach()
        dz = self.plane_height - shoulder[2]

        if abs(dz) >= max_reach:
            raise ValueError(
                f"Plane z={self.plane_height:.1f} is out of reach "
                f"(shoulder z={shoulder[2]:.1f}, reach={max_reach:.1f})"
            )

        outer = math.sqrt(max_reach ** 2 - dz ** 2)
        center = np.array([shoulder[0], shoulder[1], self.plane_height])
        return center, self.inner_fraction * outer, outer

    def plan(self, configuration: FloatArray) -> List[FloatArray]:
        """
        Ordered waypoints of a closed circle in the plane.

        Args:
            configuration: Current joint angles (start azimuth)

        Returns:
            n_points + 1 waypoints, the last one closing the circle
        """
        center, inner, outer = self.workspace_annulus()
        radius = self.radius_fraction * outer

        x = self.chain.forward_kinematics(configuration)
        start_angle = math.atan2(x[1] - center[1], x[0] - center[0])

        waypoints = circle_waypoints(center, radius, self.n_points, start_angle)
        waypoints.append(waypoints[0].copy())

        logger.info(
            f"Planned circle at z={self.plane_height:.1f}: radius={radius:.1f}mm "
            f"(annulus {inner:.1f}..{outer:.1f}), {len(waypoints)} waypoints"
        )
        return waypoints
