"""
Simulation Module
=================

Actuator adapters for the arm: a kinematic simulation and an adapter over
the physical servo chain, plus an in-process servo chain for testing.

Components:
    - RobotAdapter: Capability surface driven by the control loop
    - SimulatedRobot: Kinematic integration of velocity commands
    - RealRobot: Adapter over a servo chain driver
    - SimulatedServoChain: Driver stand-in

Author: Robotic Arm Prototype Team
License: MIT
"""

from .robots import (
    ActuatorError,
    RobotAdapter,
    SimulatedRobot,
    ServoChain,
    SimulatedServoChain,
    RealRobot,
)

__version__ = "0.1.0"

__all__ = [
    "ActuatorError",
    "RobotAdapter",
    "SimulatedRobot",
    "ServoChain",
    "SimulatedServoChain",
    "RealRobot",
]
