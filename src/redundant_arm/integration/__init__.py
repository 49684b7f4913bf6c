"""
Integration Module
==================

Session lifecycle for one arm connection and the launchable programs.

Components:
    - SessionConfig: YAML-backed session configuration
    - SessionContext: Connection, refresh and program launching
    - SingleFlightTask / PeriodicRefresh: Coalescing periodic refresh
    - ProgramRegistry: Name → program lookup with argument grammar

Author: Robotic Arm Prototype Team
License: MIT
"""

from .programs import (
    ProgramSpec,
    ProgramRegistry,
    parse_numbers,
)

from .session import (
    SessionConfig,
    SessionState,
    SessionContext,
    LaunchResult,
    SingleFlightTask,
    PeriodicRefresh,
)

__version__ = "0.1.0"

__all__ = [
    # Programs
    "ProgramSpec",
    "ProgramRegistry",
    "parse_numbers",
    # Session
    "SessionConfig",
    "SessionState",
    "SessionContext",
    "LaunchResult",
    "SingleFlightTask",
    "PeriodicRefresh",
]
