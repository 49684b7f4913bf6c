"""
Feedback Module
===============

Telemetry for displays and recorders. Publishing never blocks or fails
the control loop.

Author: Robotic Arm Prototype Team
License: MIT
"""

from .telemetry import (
    TelemetryFrame,
    TelemetrySink,
    PathRecorder,
    SingularityIndicator,
    StatusLevel,
    LoggingSink,
    TelemetryHub,
)

__version__ = "0.1.0"

__all__ = [
    "TelemetryFrame",
    "TelemetrySink",
    "PathRecorder",
    "SingularityIndicator",
    "StatusLevel",
    "LoggingSink",
    "TelemetryHub",
]
