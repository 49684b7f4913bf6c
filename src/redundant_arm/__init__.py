"""
Redundant Arm Control
=====================

Kinematics, redundancy-resolving velocity control and a real-time control
loop for a 4-joint robotic arm, driven against a kinematic simulation or
a physical servo chain.

Subpackages:
    - control: Frames, kinematics, controllers, trajectories, control loop
    - simulation: Robot adapters (simulated and real)
    - feedback: Telemetry
    - integration: Session lifecycle and launchable programs

Author: Robotic Arm Prototype Team
License: MIT
"""

from . import control
from . import simulation
from . import feedback
from . import integration

__version__ = "0.1.0"

__all__ = ["control", "simulation", "feedback", "integration"]
