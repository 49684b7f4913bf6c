"""
Telemetry Module
================

Fire-and-forget state publishing for displays and recorders.

The control loop publishes a TelemetryFrame every few ticks. Sinks receive
frames through a TelemetryHub, which isolates the loop from sink failures:
a raising sink is logged and skipped, never propagated.

Components:
    - TelemetryFrame: snapshot of one tick
    - PathRecorder: bounded history of end-effector positions
    - SingularityIndicator: status of the singularity warning
    - LoggingSink: debug log of frames
    - TelemetryHub: fan-out to registered sinks

Author: Robotic Arm Prototype Team
License: MIT
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Optional, List, Dict, Any, Tuple, Protocol
import numpy as np
from numpy.typing import NDArray

logger = logging.getLogger(__name__)


@dataclass
class TelemetryFrame:
    """
    Snapshot of the arm at one tick.

    Attributes:
        tick: Loop tick index
        time: Clock time (s)
        configuration: Sensed joint angles (rad)
        end_effector: End-effector position (mm)
        target: Desired position, if any
        singularity_measure: Controller singularity measure
        near_singular: Whether the singularity threshold was crossed
    """
    tick: int
    time: float
    configuration: NDArray
    end_effector: NDArray
    target: Optional[NDArray] = None
    singularity_measure: float = 0.0
    near_singular: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tick": self.tick,
            "time": self.time,
            "configuration": self.configuration.tolist(),
            "end_effector": self.end_effector.tolist(),
            "target": None if self.target is None else self.target.tolist(),
            "singularity_measure": self.singularity_measure,
            "near_singular": self.near_singular,
        }


class TelemetrySink(Protocol):
    """Receiver of telemetry frames."""

    def publish(self, frame: TelemetryFrame) -> None:
        ...


class PathRecorder:
    """
    Circular buffer of end-effector positions.

    Thread-safe storage with fixed capacity; the oldest positions are
    overwritten once full.
    """

    def __init__(self, max_samples: int = 10000) -> None:
        if max_samples < 1:
            raise ValueError("max_samples must be at least 1")
        self.max_samples = max_samples
        self._data = np.zeros((max_samples, 3))
        self._timestamps = np.zeros(max_samples)
        self._write_idx = 0
        self._count = 0
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return self._count

    def push(self, position: NDArray, timestamp: float) -> None:
        """Add a position to the buffer."""
        with self._lock:
            self._data[self._write_idx] = position
            self._timestamps[self._write_idx] = timestamp
            self._write_idx = (self._write_idx + 1) % self.max_samples
            self._count = min(self._count + 1, self.max_samples)

    def publish(self, frame: TelemetryFrame) -> None:
        self.push(frame.end_effector, frame.time)

    def get_history(self) -> Tuple[NDArray, NDArray]:
        """Ordered positions and timestamps (oldest to newest)."""
        with self._lock:
            if self._count < self.max_samples:
                return (
                    self._data[:self._count].copy(),
                    self._timestamps[:self._count].copy()
                )
            start = self._write_idx
            return (
                np.roll(self._data, -start, axis=0),
                np.roll(self._timestamps, -start)
            )

    @property
    def path(self) -> NDArray:
        """Recorded positions, shape (n, 3)."""
        return self.get_history()[0]

    def clear(self) -> None:
        with self._lock:
            self._write_idx = 0
            self._count = 0


class StatusLevel(Enum):
    """Severity of an indicator."""
    OK = auto()
    WARNING = auto()


class SingularityIndicator:
    """
    Singularity warning shown next to the arm display.

    Tracks level changes with timestamps.
    """

    def __init__(self, max_history: int = 100) -> None:
        self._level = StatusLevel.OK
        self._message = ""
        self._history: List[Tuple[float, StatusLevel, str]] = []
        self._max_history = max_history

    @property
    def level(self) -> StatusLevel:
        return self._level

    @property
    def message(self) -> str:
        return self._message

    @property
    def active(self) -> bool:
        return self._level == StatusLevel.WARNING

    def update(self, near_singular: bool, measure: float, timestamp: float = 0.0) -> None:
        """Set the warning from the latest singularity measure."""
        level = StatusLevel.WARNING if near_singular else StatusLevel.OK
        message = f"Close to singularity (measure {measure:.1f})" if near_singular else ""

        if level != self._level:
            logger.info(f"Singularity indicator: {self._level.name} → {level.name}")
            self._history.append((timestamp, level, message))
            if len(self._history) > self._max_history:
                self._history.pop(0)

        self._level = level
        self._message = message

    def publish(self, frame: TelemetryFrame) -> None:
        self.update(frame.near_singular, frame.singularity_measure, frame.time)

    def get_history(self) -> List[Tuple[float, StatusLevel, str]]:
        return list(self._history)


class LoggingSink:
    """Writes frames to the debug log."""

    def publish(self, frame: TelemetryFrame) -> None:
        logger.debug(
            f"tick={frame.tick} t={frame.time:.2f}s q={np.round(frame.configuration, 3)} "
            f"x={np.round(frame.end_effector, 1)}"
        )


@dataclass
class TelemetryHub:
    """
    Fan-out of frames to all registered sinks.

    Sink errors are logged and counted but never raised to the publisher.
    """
    sinks: List[TelemetrySink] = field(default_factory=list)
    errors: int = 0

    def add_sink(self, sink: TelemetrySink) -> None:
        self.sinks.append(sink)

    def remove_sink(self, sink: TelemetrySink) -> None:
        if sink in self.sinks:
            self.sinks.remove(sink)

    def publish(self, frame: TelemetryFrame) -> None:
        for sink in list(self.sinks):
            try:
                sink.publish(frame)
            except Exception as e:
                self.errors += 1
                logger.warning(f"Telemetry sink {type(sink).__name__} failed: {e}")
