"""Planar biped walker environment on top of pymunk.

A nine-segment figure (head, torso, pelvis and thigh/shin/foot per leg) stands
on flat static ground. Segments are joined by point constraints into a fixed
tree::

    head - torso - pelvis -+- l_thigh - l_shin - l_foot
                           +- r_thigh - r_shin - r_foot

Design
------
- Screen-style coordinates: x grows to the right, y grows downward, the
  ground surface sits at ``GROUND_Y``.
- Velocities in the observation and in the torque model are expressed per
  simulation step (px/step, rad/step); pymunk works in per-second units, so
  every read/write goes through ``DT``.
- Actions do not apply solver torques. Each action component is an
  instantaneous kick to the segment's angular velocity, clamped to
  ``MAX_ANGULAR_VELOCITY``. Ankles get half the kick of hips and knees.
- Reward parameters are passed to every ``step`` call; nothing reward-related
  is stored on the environment.

Usage
-----
    env = BipedEnv(friction=1.0)
    obs = env.reset()
    result = env.step([0.0] * ACTION_DIM, RewardParams())
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

import numpy as np

from .env_interface import Action, Obs, StepResult
from .errors import ConfigurationError, UnavailableCollaboratorError
from .params import RewardParams

logger = logging.getLogger(__name__)


OBS_DIM = 18
ACTION_DIM = 6

# World
GROUND_Y = 380.0
START_X = 200.0
DT = 1.0 / 60.0
GRAVITY = 1000.0  # px/s^2
AIR_DAMPING = 0.99 ** 60  # velocity fraction kept per second

# Actuation
MAX_ANGULAR_VELOCITY = 0.5  # rad/step
ANKLE_TORQUE_SCALE = 0.5

# Observation scaling
HEIGHT_NORM = 100.0
VELOCITY_NORM = 5.0
ANGULAR_VELOCITY_GAIN = 2.0
CONTACT_MARGIN = 8.0

# Termination
TORSO_MIN_CLEARANCE = 30.0
HEAD_MIN_CLEARANCE = 40.0
MAX_TORSO_TILT = 1.3

# Reward shaping
HEIGHT_TARGET = 90.0
UPRIGHT_SCALE = 0.1
HEIGHT_SCALE = 0.1
SURVIVAL_BONUS = 0.02

# Joints
JOINT_STIFFNESS = 1.0
JOINT_DAMPING = 0.1
JOINT_SPRING_STIFFNESS = 2000.0
JOINT_SPRING_DAMPING = 1000.0
FOOT_FRICTION_SCALE = 1.5
SKELETON_GROUP = 1


def _require_pymunk():
    try:
        import pymunk
    except Exception as e:
        raise UnavailableCollaboratorError("BipedEnv requires pymunk (pip install pymunk).") from e
    return pymunk


@dataclass(frozen=True)
class SegmentSpec:
    """One rigid segment, placed relative to (START_X, GROUND_Y)."""
    name: str
    dx: float
    dy: float
    density: float
    size: Optional[Tuple[float, float]] = None
    radius: Optional[float] = None
    friction_scale: float = 1.0


@dataclass(frozen=True)
class JointSpec:
    """Zero-length point constraint between two local anchors."""
    name: str
    body_a: str
    anchor_a: Tuple[float, float]
    body_b: str
    anchor_b: Tuple[float, float]
    stiffness: float = JOINT_STIFFNESS
    damping: float = JOINT_DAMPING


SEGMENTS: Tuple[SegmentSpec, ...] = (
    SegmentSpec("head", 0.0, -145.0, 0.001, radius=12.0),
    SegmentSpec("torso", 0.0, -115.0, 0.002, size=(24.0, 45.0)),
    SegmentSpec("pelvis", 0.0, -82.0, 0.002, size=(28.0, 18.0)),
    SegmentSpec("l_thigh", -8.0, -55.0, 0.0015, size=(14.0, 40.0)),
    SegmentSpec("l_shin", -8.0, -18.0, 0.001, size=(12.0, 38.0)),
    SegmentSpec("l_foot", -8.0, -2.0, 0.001, size=(22.0, 6.0), friction_scale=FOOT_FRICTION_SCALE),
    SegmentSpec("r_thigh", 8.0, -55.0, 0.0015, size=(14.0, 40.0)),
    SegmentSpec("r_shin", 8.0, -18.0, 0.001, size=(12.0, 38.0)),
    SegmentSpec("r_foot", 8.0, -2.0, 0.001, size=(22.0, 6.0), friction_scale=FOOT_FRICTION_SCALE),
)

JOINTS: Tuple[JointSpec, ...] = (
    JointSpec("neck", "head", (0.0, 10.0), "torso", (0.0, -20.0)),
    JointSpec("spine", "torso", (0.0, 20.0), "pelvis", (0.0, -6.0)),
    JointSpec("l_hip", "pelvis", (-6.0, 6.0), "l_thigh", (0.0, -18.0)),
    JointSpec("l_knee", "l_thigh", (0.0, 18.0), "l_shin", (0.0, -16.0)),
    JointSpec("l_ankle", "l_shin", (0.0, 16.0), "l_foot", (0.0, 0.0)),
    JointSpec("r_hip", "pelvis", (6.0, 6.0), "r_thigh", (0.0, -18.0)),
    JointSpec("r_knee", "r_thigh", (0.0, 18.0), "r_shin", (0.0, -16.0)),
    JointSpec("r_ankle", "r_shin", (0.0, 16.0), "r_foot", (0.0, 0.0)),
)

# Action index -> (segment, torque multiplier)
ACTUATED: Tuple[Tuple[str, float], ...] = (
    ("l_thigh", 1.0),
    ("l_shin", 1.0),
    ("l_foot", ANKLE_TORQUE_SCALE),
    ("r_thigh", 1.0),
    ("r_shin", 1.0),
    ("r_foot", ANKLE_TORQUE_SCALE),
)

OBS_NAMES: Tuple[str, ...] = (
    "torso_angle", "torso_ang_vel", "pelvis_angle", "torso_vx", "torso_vy", "height",
    "l_contact", "r_contact",
    "l_hip", "l_knee", "l_ankle", "l_hip_vel", "l_knee_vel",
    "r_hip", "r_knee", "r_ankle", "r_hip_vel", "r_knee_vel",
)


class BipedEnv:
    """Nine-segment biped on flat ground, stepped at a fixed 1/60 s."""

    def __init__(self, friction: float = 1.0):
        self._pymunk = _require_pymunk()
        self.ground_y = GROUND_Y
        self.friction = friction
        self.space = None
        self.ground = None
        self.segments: Dict[str, object] = {}
        self.joints: Dict[str, object] = {}
        self.fallen = False
        self.steps = 0
        self.init_x = START_X
        self.build(friction)

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    def build(self, friction: Optional[float] = None) -> None:
        """(Re)create the skeleton at rest in its initial pose.

        A brand-new space is created each time, so no body, joint or
        velocity survives from a previous episode.
        """
        if friction is not None:
            if not math.isfinite(friction) or friction < 0:
                raise ConfigurationError(f"friction must be finite and >= 0, got {friction}")
            self.friction = float(friction)

        pymunk = self._pymunk
        space = pymunk.Space()
        space.gravity = (0.0, GRAVITY)
        space.damping = AIR_DAMPING

        ground_body = pymunk.Body(body_type=pymunk.Body.STATIC)
        ground_body.position = (5000.0, self.ground_y + 30.0)
        ground_shape = pymunk.Poly.create_box(ground_body, (12000.0, 60.0))
        ground_shape.friction = self.friction
        space.add(ground_body, ground_shape)

        skeleton_filter = pymunk.ShapeFilter(group=SKELETON_GROUP)
        segments = {}
        for spec in SEGMENTS:
            body = pymunk.Body()
            body.position = (START_X + spec.dx, self.ground_y + spec.dy)
            if spec.radius is not None:
                shape = pymunk.Circle(body, spec.radius)
            else:
                shape = pymunk.Poly.create_box(body, spec.size)
            shape.density = spec.density
            shape.friction = self.friction * spec.friction_scale
            shape.filter = skeleton_filter
            space.add(body, shape)
            segments[spec.name] = body

        joints = {}
        for spec in JOINTS:
            a, b = segments[spec.body_a], segments[spec.body_b]
            pivot = pymunk.PivotJoint(a, b, spec.anchor_a, spec.anchor_b)
            pivot.collide_bodies = False
            pivot.error_bias = (1.0 - 0.1 * spec.stiffness) ** 60
            spring = pymunk.DampedSpring(
                a, b, spec.anchor_a, spec.anchor_b,
                0.0,
                JOINT_SPRING_STIFFNESS * spec.stiffness,
                JOINT_SPRING_DAMPING * spec.damping,
            )
            spring.collide_bodies = False
            space.add(pivot, spring)
            joints[spec.name] = pivot

        self.space = space
        self.ground = ground_body
        self.segments = segments
        self.joints = joints
        self.init_x = float(segments["torso"].position.x)
        self.fallen = False
        self.steps = 0

    def reset(self, friction: Optional[float] = None) -> Obs:
        self.build(friction)
        return self.get_state()

    # ------------------------------------------------------------------
    # Observation
    # ------------------------------------------------------------------

    def _ang_vel(self, name: str) -> float:
        return float(self.segments[name].angular_velocity) * DT

    def _angle(self, name: str) -> float:
        return float(self.segments[name].angle)

    def _contact(self, name: str) -> float:
        return 1.0 if self.segments[name].position.y > self.ground_y - CONTACT_MARGIN else -1.0

    def get_state(self) -> Obs:
        """Project body kinematics to the 18-float observation (read-only)."""
        torso = self.segments["torso"]
        vx = float(torso.velocity.x) * DT
        vy = float(torso.velocity.y) * DT
        pelvis_angle = self._angle("pelvis")
        state = [
            self._angle("torso"),
            self._ang_vel("torso") * ANGULAR_VELOCITY_GAIN,
            pelvis_angle,
            vx / VELOCITY_NORM,
            vy / VELOCITY_NORM,
            (self.ground_y - float(torso.position.y)) / HEIGHT_NORM,
            self._contact("l_foot"),
            self._contact("r_foot"),
        ]
        for side in ("l", "r"):
            thigh = self._angle(f"{side}_thigh")
            state.extend([
                thigh - pelvis_angle,
                self._angle(f"{side}_shin") - thigh,
                self._angle(f"{side}_foot"),
                self._ang_vel(f"{side}_thigh"),
                self._ang_vel(f"{side}_shin"),
            ])
        return state

    # ------------------------------------------------------------------
    # Dynamics
    # ------------------------------------------------------------------

    def _kick(self, name: str, delta: float) -> None:
        """Add ``delta`` rad/step to a segment's spin, clamped."""
        body = self.segments[name]
        spin = float(body.angular_velocity) * DT + delta
        spin = max(-MAX_ANGULAR_VELOCITY, min(MAX_ANGULAR_VELOCITY, spin))
        body.angular_velocity = spin / DT

    def _has_fallen(self) -> bool:
        torso = self.segments["torso"]
        head = self.segments["head"]
        too_low = torso.position.y > self.ground_y - TORSO_MIN_CLEARANCE
        too_tilted = abs(torso.angle) > MAX_TORSO_TILT
        head_low = head.position.y > self.ground_y - HEAD_MIN_CLEARANCE
        return bool(too_low or too_tilted or head_low)

    def _shaped_reward(self, action: List[float], params: RewardParams) -> float:
        torso = self.segments["torso"]
        vx = float(torso.velocity.x) * DT
        height_ratio = (self.ground_y - float(torso.position.y)) / HEIGHT_TARGET
        height_ratio = float(np.clip(height_ratio, 0.0, 1.0))
        effort = float(np.sum(np.square(action)))

        reward = vx * params.r_vel
        reward += (1.0 - abs(float(torso.angle))) * params.r_up * UPRIGHT_SCALE
        reward += height_ratio * params.r_h * HEIGHT_SCALE
        reward -= effort * params.r_eff
        reward += SURVIVAL_BONUS
        return reward

    def step(self, action: Action, params: RewardParams) -> StepResult:
        """
        Apply one action and advance the simulation by ``DT``.

        Args:
            action: 6 floats (l_hip, l_knee, l_ankle, r_hip, r_knee, r_ankle).
                Expected in [-1, 1]; the policy clamps, this method does not.
            params: Reward weights and torque scale for this step.

        Returns:
            StepResult(state, reward, done). After a fall every call returns
            the frozen observation, -r_fall and done=True without touching
            the simulation.
        """
        if self.fallen:
            return StepResult(self.get_state(), -params.r_fall, True)

        action = [float(a) for a in action]
        if len(action) != ACTION_DIM:
            raise ConfigurationError(f"expected {ACTION_DIM} action values, got {len(action)}")

        for (name, scale), value in zip(ACTUATED, action):
            self._kick(name, value * params.torque * scale)

        self.space.step(DT)
        self.steps += 1

        state = self.get_state()
        if self._has_fallen():
            self.fallen = True
            logger.debug(f"biped fell after {self.steps} steps, dist={self.dist():.1f}")
            return StepResult(state, -params.r_fall, True)

        return StepResult(state, self._shaped_reward(action, params), False)

    def dist(self) -> float:
        """Horizontal torso displacement since the last build."""
        return float(self.segments["torso"].position.x) - self.init_x

    def torso_height(self) -> float:
        return self.ground_y - float(self.segments["torso"].position.y)


def make_biped_env(params: Optional[RewardParams] = None) -> BipedEnv:
    """Build an environment using the friction from ``params``."""
    params = params or RewardParams()
    return BipedEnv(friction=params.friction)
