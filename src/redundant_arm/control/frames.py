"""
Frame Tree Module
=================

Rigid-body frames arranged in a rooted tree, stored as an arena of
records addressed by stable integer indices.

Conventions:

    Position:
        Each frame stores a fixed offset relative to its parent, expressed
        in the parent's frame. The global position is accumulated from the
        root:

            p_child = p_parent + R_parent · offset

    Orientation:
        Each frame stores its orientation in the *global* frame, so reading
        a global orientation is O(1). A new frame starts with its parent's
        orientation (identity for a root).

    Joint rotation:
        Rotating joint j by Δθ about its local axis a is the incremental
        global rotation

            G = Rot(R_j · a, Δθ)

        applied on the left of the joint and of every descendant:

            R ← G · R

        For the joint itself this equals R_j · Rot(a, Δθ), i.e. the local
        rotation composed on the right.

Author: Robotic Arm Prototype Team
License: MIT
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Optional, Tuple, List, Dict, Any
import numpy as np
from numpy.typing import NDArray
from scipy.spatial.transform import Rotation

logger = logging.getLogger(__name__)

FloatArray = NDArray[np.floating]

# Parent index of a root frame
NO_PARENT = -1

AXES = ("x", "y", "z")


# =============================================================================
# Elementary Rotations
# =============================================================================

def rotx(angle: float) -> FloatArray:
    """Rotation matrix about the x-axis."""
    c, s = np.cos(angle), np.sin(angle)
    return np.array([
        [1.0, 0.0, 0.0],
        [0.0, c, -s],
        [0.0, s, c]
    ])


def roty(angle: float) -> FloatArray:
    """Rotation matrix about the y-axis."""
    c, s = np.cos(angle), np.sin(angle)
    return np.array([
        [c, 0.0, s],
        [0.0, 1.0, 0.0],
        [-s, 0.0, c]
    ])


def rotz(angle: float) -> FloatArray:
    """Rotation matrix about the z-axis."""
    c, s = np.cos(angle), np.sin(angle)
    return np.array([
        [c, -s, 0.0],
        [s, c, 0.0],
        [0.0, 0.0, 1.0]
    ])


_ROTATIONS = {"x": rotx, "y": roty, "z": rotz}


def axis_rotation(axis: str, angle: float) -> FloatArray:
    """
    Rotation matrix about one of the principal axes.

    Args:
        axis: 'x', 'y' or 'z' (case-insensitive)
        angle: Rotation angle (rad)

    Returns:
        3x3 rotation matrix

    Raises:
        ValueError: If axis is not a principal axis label
    """
    try:
        return _ROTATIONS[axis.lower()](angle)
    except (KeyError, AttributeError):
        raise ValueError(f"Invalid rotation axis {axis!r}, use 'x', 'y' or 'z'") from None


def unit_axis(axis: str) -> FloatArray:
    """Unit vector of a principal axis."""
    axis = _check_axis(axis)
    vector = np.zeros(3)
    vector[AXES.index(axis)] = 1.0
    return vector


def _check_axis(axis: str) -> str:
    if not isinstance(axis, str) or axis.lower() not in AXES:
        raise ValueError(f"Invalid rotation axis {axis!r}, use 'x', 'y' or 'z'")
    return axis.lower()


# =============================================================================
# Frame Records
# =============================================================================

@dataclass
class FrameRecord:
    """
    A single node of the frame tree.

    Attributes:
        label: Human-readable name
        offset: Position relative to parent, in parent coordinates
        parent: Index of parent frame (NO_PARENT for a root)
        rotation: Global orientation (3x3)
        children: Indices of child frames, in insertion order
        axis: Local rotation axis for joints, None for fixed frames
        angle: Accumulated joint angle (rad)
    """
    label: str
    offset: FloatArray
    parent: int = NO_PARENT
    rotation: FloatArray = field(default_factory=lambda: np.eye(3))
    children: List[int] = field(default_factory=list)
    axis: Optional[str] = None
    angle: float = 0.0

    @property
    def is_joint(self) -> bool:
        """True if the frame is a revolute joint."""
        return self.axis is not None

    @property
    def is_root(self) -> bool:
        return self.parent == NO_PARENT


class FrameTree:
    """
    Arena of rigid-body frames forming a rooted tree.

    Frames are created once and never reparented. Joint frames can be
    rotated about their local axis; the rotation propagates to all
    descendants.

    Example:
        >>> tree = FrameTree()
        >>> origin = tree.add_frame([0, 0, 0], label="Origin")
        >>> j1 = tree.add_joint([0, 0, 100], origin, "Joint 1", "x")
        >>> tip = tree.add_frame([0, 0, 50], j1, "Tip")
        >>> tree.rotate(j1, np.pi / 2)
        >>> tree.global_position(tip)
        array([  0., -50., 100.])
    """

    def __init__(self) -> None:
        self._frames: List[FrameRecord] = []

    def __len__(self) -> int:
        return len(self._frames)

    def __getitem__(self, index: int) -> FrameRecord:
        return self._frames[self._check_index(index)]

    # =========================================================================
    # Construction
    # =========================================================================

    def add_frame(
        self,
        offset: FloatArray,
        parent: int = NO_PARENT,
        label: str = ""
    ) -> int:
        """
        Add a fixed frame.

        Args:
            offset: Position relative to parent (parent coordinates)
            parent: Parent index, NO_PARENT for a root frame
            label: Frame label

        Returns:
            Index of the new frame
        """
        return self._add(offset, parent, label, axis=None)

    def add_joint(
        self,
        offset: FloatArray,
        parent: int,
        label: str,
        axis: str
    ) -> int:
        """
        Add a revolute joint frame rotating about a local principal axis.

        Args:
            offset: Position relative to parent (parent coordinates)
            parent: Parent index
            label: Joint label
            axis: Local rotation axis ('x', 'y' or 'z')

        Returns:
            Index of the new joint
        """
        return self._add(offset, parent, label, axis=_check_axis(axis))

    def _add(
        self,
        offset: FloatArray,
        parent: int,
        label: str,
        axis: Optional[str]
    ) -> int:
        offset = np.asarray(offset, dtype=float).flatten()
        if offset.shape != (3,):
            raise ValueError(f"Frame offset must have 3 elements, got {offset.size}")

        if parent == NO_PARENT:
            rotation = np.eye(3)
        else:
            rotation = self[parent].rotation.copy()

        index = len(self._frames)
        self._frames.append(FrameRecord(
            label=label or f"frame_{index}",
            offset=offset,
            parent=parent,
            rotation=rotation,
            axis=axis
        ))
        if parent != NO_PARENT:
            self._frames[parent].children.append(index)

        logger.debug(f"Added frame {index} ({label!r}) under parent {parent}")
        return index

    def _check_index(self, index: int) -> int:
        if not 0 <= index < len(self._frames):
            raise ValueError(f"Unknown frame index {index}")
        return index

    # =========================================================================
    # Traversal
    # =========================================================================

    def path_from_root(self, index: int) -> List[int]:
        """Indices from the root down to (and including) index."""
        path = [self._check_index(index)]

        # A valid tree has depth < len(self); bound the walk accordingly
        for _ in range(len(self._frames)):
            parent = self._frames[path[-1]].parent
            if parent == NO_PARENT:
                return path[::-1]
            path.append(parent)

        raise RuntimeError("Cycle detected in frame tree")

    def descendants(self, index: int) -> List[int]:
        """All frames below index, breadth-first (excluding index)."""
        result: List[int] = []
        queue = list(self[index].children)

        while queue:
            child = queue.pop(0)
            result.append(child)
            queue.extend(self._frames[child].children)

        return result

    # =========================================================================
    # Poses
    # =========================================================================

    def global_position(self, index: int) -> FloatArray:
        """Position of a frame in the global frame."""
        path = self.path_from_root(index)

        position = self._frames[path[0]].offset.copy()
        for parent, child in zip(path[:-1], path[1:]):
            position = position + self._frames[parent].rotation @ self._frames[child].offset

        return position

    def global_rotation(self, index: int) -> FloatArray:
        """Orientation of a frame in the global frame."""
        return self[index].rotation.copy()

    def joint_axis(self, index: int) -> FloatArray:
        """Rotation axis of a joint expressed in the global frame."""
        record = self[index]
        if not record.is_joint:
            raise ValueError(f"Frame {index} ({record.label!r}) is not a joint")
        return record.rotation @ unit_axis(record.axis)

    def describe(
        self,
        index: int,
        reference: Optional[int] = None
    ) -> Tuple[FloatArray, FloatArray]:
        """
        Position and rotation of a frame relative to a reference frame.

        Args:
            index: Frame to describe
            reference: Reference frame index (global frame if None)

        Returns:
            Tuple of (position, rotation)
        """
        position = self.global_position(index)
        rotation = self.global_rotation(index)

        if reference is None:
            return position, rotation

        R_ref = self.global_rotation(reference)
        p_ref = self.global_position(reference)
        return R_ref.T @ (position - p_ref), R_ref.T @ rotation

    # =========================================================================
    # Joint Motion
    # =========================================================================

    def rotate(self, index: int, delta: float) -> None:
        """
        Rotate a joint about its local axis and propagate to descendants.

        Args:
            index: Joint index
            delta: Incremental angle (rad)
        """
        if delta == 0.0:
            return

        w = self.joint_axis(index)
        G = Rotation.from_rotvec(w * delta).as_matrix()

        record = self._frames[index]
        record.rotation = G @ record.rotation
        record.angle += delta

        for child in self.descendants(index):
            self._frames[child].rotation = G @ self._frames[child].rotation

    def set_angle(self, index: int, angle: float) -> None:
        """Rotate a joint to an absolute angle."""
        self.rotate(index, float(angle) - self[index].angle)

    def angle(self, index: int) -> float:
        """Current angle of a joint."""
        record = self[index]
        if not record.is_joint:
            raise ValueError(f"Frame {index} ({record.label!r}) is not a joint")
        return record.angle

    def to_dict(self) -> Dict[str, Any]:
        """Snapshot of the tree for logging/telemetry."""
        return {
            record.label: {
                "parent": record.parent,
                "axis": record.axis,
                "angle": record.angle,
                "position": self.global_position(i).tolist(),
            }
            for i, record in enumerate(self._frames)
        }
