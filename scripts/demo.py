#!/usr/bin/env python3
"""
Redundant Arm Demo
==================

Demonstrates the arm control stack against a kinematic simulation:
1. Kinematic model (forward kinematics, Jacobian)
2. Nullspace position control
3. Planar trajectory following
4. PID waypoint following
5. Session with launchable programs

Usage:
    python scripts/demo.py
    python scripts/demo.py --seek-only
    python scripts/demo.py --trajectory-only --plane-height 300
    python scripts/demo.py --session-only --config session.yaml

Author: Robotic Arm Prototype Team
License: MIT
"""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

# Add package source to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root / "src"))

import numpy as np

# Configure logging
logging.basicConfig(
    level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

# Non-singular start configuration (rad)
START_CONFIGURATION = [0.3, 0.3, 0.5, 0.5]


def print_banner():
    """Print demo banner."""
    print(
        """
╔══════════════════════════════════════════════════════════════════╗
║                                                                  ║
║              REDUNDANT ARM CONTROL DEMONSTRATION                 ║
║                                                                  ║
║     4 joints, 3D positioning, nullspace shoulder elevation       ║
║                                                                  ║
╚══════════════════════════════════════════════════════════════════╝
    """
    )


def print_result(result) -> None:
    """Print a loop result summary."""
    print(f"   State: {result.state.name} ({result.reason.name})")
    print(f"   Ticks: {result.ticks}, commands sent: {result.commands_sent}")
    print(f"   Final error: {result.final_error:.2f}")
    print(f"   Singularity events: {result.singularity_events}")
    if result.legs:
        print(f"   Waypoints: {[leg.name for leg in result.legs]}")


def make_simulation(time_step: float):
    """Chain, clock, simulated robot and loop sharing virtual time."""
    from redundant_arm.control import (
        ControlLoop,
        KinematicChain,
        LoopConfig,
        NullspaceController,
        SimulatedClock,
    )
    from redundant_arm.simulation import SimulatedRobot

    clock = SimulatedClock()
    chain = KinematicChain.default_arm()
    robot = SimulatedRobot(chain, clock, START_CONFIGURATION)
    loop = ControlLoop(
        robot, chain, NullspaceController(), LoopConfig(time_step=time_step), clock
    )
    return chain, robot, loop


def run_kinematics_demo() -> None:
    """Show forward kinematics and Jacobian of the default arm."""
    from redundant_arm.control import KinematicChain

    print("\n" + "=" * 60)
    print("KINEMATICS")
    print("=" * 60)

    chain = KinematicChain.default_arm()
    q = np.array(START_CONFIGURATION)

    print(f"\n   Home position: {chain.forward_kinematics(np.zeros(4))}")
    print(f"   Position at q={q}: {np.round(chain.forward_kinematics(q), 2)}")

    J = chain.jacobian(q)
    print(f"\n   Jacobian shape: {J.shape}")
    print(f"   Manipulability: {chain.manipulability(q):.1f}")
    print(f"   Finite-difference deviation: {chain.jacobian_error(q):.2e}")
    print(f"   Shoulder elevation: {np.degrees(chain.shoulder_elevation(q)):.1f} deg")


def run_seek_demo(time_step: float) -> None:
    """Drive to two positions with the nullspace controller."""
    print("\n" + "=" * 60)
    print("NULLSPACE POSITION CONTROL")
    print("=" * 60)

    chain, robot, loop = make_simulation(time_step)

    for target in ([-300.0, -300.0, 300.0], [200.0, 200.0, 400.0]):
        print(f"\n   Target: {target}")
        result = loop.seek_position(target)
        print_result(result)


def run_trajectory_demo(time_step: float, plane_height: float, speed: float) -> None:
    """Follow a planned circle in a horizontal plane."""
    from redundant_arm.control import PathPlanner2D, TrajectoryGenerator

    print("\n" + "=" * 60)
    print("PLANAR TRAJECTORY")
    print("=" * 60)

    chain, robot, loop = make_simulation(time_step)
    q = robot.get_configuration()

    waypoints = [chain.forward_kinematics(q)] + PathPlanner2D(chain, plane_height).plan(q)
    trajectory = TrajectoryGenerator(speed, time_step).generate(waypoints)
    print(f"\n   {len(waypoints)} waypoints, {len(trajectory)} samples, {trajectory.duration:.1f}s")

    result = loop.follow_trajectory(trajectory)
    print_result(result)

    deviation = np.linalg.norm(result.path - trajectory.positions[:len(result.path)], axis=1)
    print(f"   Max tracking deviation: {deviation.max():.1f} mm")


def run_waypoint_demo(time_step: float) -> None:
    """Visit circle waypoints with point-to-point PID."""
    from redundant_arm.control import circle_waypoints

    print("\n" + "=" * 60)
    print("PID WAYPOINTS")
    print("=" * 60)

    chain, robot, loop = make_simulation(time_step)
    waypoints = circle_waypoints([-75.0, -75.0, 500.0], 150.0, 10)

    result = loop.follow_waypoints(waypoints)
    print_result(result)


def run_session_demo(config_path: str = None) -> None:
    """Launch programs through a session on a simulated servo chain."""
    from redundant_arm.integration import SessionConfig, SessionContext

    print("\n" + "=" * 60)
    print("SESSION")
    print("=" * 60)

    config = SessionConfig.from_yaml(config_path) if config_path else SessionConfig()

    with SessionContext(config) as session:
        programs = (
            ("set_joints", "0.3, 0.3, 0.5, 0.5"),
            ("set_position", "-300; -300; 300"),
            ("trajectory_2d", ""),
        )
        for name, args in programs:
            print(f"\n   Program {name}({args})")
            outcome = session.launch_program(name, args, wait=True)
            print(f"   {outcome.message}")
            if outcome.result is not None:
                print_result(outcome.result)

        print(f"\n   Singularity warning: {session.singularity_warning}")


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(description="Redundant Arm Control Demonstration")
    parser.add_argument(
        "--time-step", "-t", type=float, default=0.15,
        help="Control tick period in seconds (default: 0.15)",
    )
    parser.add_argument(
        "--plane-height", type=float, default=300.0,
        help="Height of the planar trajectory in mm (default: 300)",
    )
    parser.add_argument(
        "--speed", type=float, default=50.0,
        help="Trajectory speed in mm/s (default: 50)",
    )
    parser.add_argument("--config", help="Session configuration YAML file")
    parser.add_argument("--seek-only", action="store_true", help="Run only position control demo")
    parser.add_argument("--trajectory-only", action="store_true", help="Run only trajectory demo")
    parser.add_argument("--waypoints-only", action="store_true", help="Run only PID waypoint demo")
    parser.add_argument("--session-only", action="store_true", help="Run only session demo")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose logging")

    args = parser.parse_args()

    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    print_banner()

    if args.seek_only:
        run_seek_demo(args.time_step)
    elif args.trajectory_only:
        run_trajectory_demo(args.time_step, args.plane_height, args.speed)
    elif args.waypoints_only:
        run_waypoint_demo(args.time_step)
    elif args.session_only:
        run_session_demo(args.config)
    else:
        run_kinematics_demo()
        run_seek_demo(args.time_step)
        run_trajectory_demo(args.time_step, args.plane_height, args.speed)
        run_waypoint_demo(args.time_step)
        run_session_demo(args.config)

        print("\n" + "=" * 60)
        print("DEMO COMPLETE")
        print("=" * 60)


if __name__ == "__main__":
    main()
