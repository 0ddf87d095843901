# core/motion_features.py
# Joint angles, arm span, centroid speed and sharpness from consecutive poses.
from __future__ import annotations
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Callable, Dict, Mapping, Optional, Sequence, Tuple
import logging
import math

from core.config import DEFAULT_CONFIG, FeatureConfig
from core.publisher import Callback, Publisher, Unsubscribe

_LOG = logging.getLogger(__name__)

# Landmark indices of the 33-point body model.
NOSE = 0
L_SHOULDER, R_SHOULDER = 11, 12
L_ELBOW, R_ELBOW = 13, 14
L_WRIST, R_WRIST = 15, 16
L_HIP, R_HIP = 23, 24
L_KNEE, R_KNEE = 25, 26
L_ANKLE, R_ANKLE = 27, 28

# Used when a detector does not report visibility.
DEFAULT_VISIBILITY = 0.8


@dataclass(frozen=True)
class Joint:
    x: float
    y: float
    z: float = 0.0
    visibility: Optional[float] = None


@dataclass(frozen=True)
class Pose:
    landmarks: Tuple[Joint, ...]
    timestamp_ms: float = 0.0


@dataclass(frozen=True)
class MotionFeatures:
    elbow_l: float = 0.0      # radians, 0..pi
    elbow_r: float = 0.0
    knee_l: float = 0.0
    knee_r: float = 0.0
    arm_span: float = 0.0     # (wrist span + shoulder span) / (2 * torso height)
    speed: float = 0.0        # centroid displacement per ms
    sharpness: float = 0.0    # 0..1, straighter limbs -> higher
    dt_ms: float = 0.0
    joints: Mapping[str, Tuple[float, float, float]] = field(
        default_factory=lambda: MappingProxyType({})
    )


@dataclass(frozen=True)
class PoseSummary:
    conf: float = 0.0
    shoulder_axis_deg: float = 0.0
    bbox_area: float = 0.0
    wrist: Tuple[float, float] = (0.5, 0.5)


def _visibility(j: Joint) -> float:
    return DEFAULT_VISIBILITY if j.visibility is None else float(j.visibility)


def joint_angle(a: Joint, b: Joint, c: Joint, eps: float = DEFAULT_CONFIG.angle_epsilon) -> float:
    """Angle at vertex b between b->a and b->c, in [0, pi]. Coincident points give pi/2."""
    bax, bay = a.x - b.x, a.y - b.y
    bcx, bcy = c.x - b.x, c.y - b.y
    # Floor instead of adding eps: exactly collinear points give pi, coincident ones pi/2.
    denom = max(math.hypot(bax, bay) * math.hypot(bcx, bcy), eps)
    cos_angle = (bax * bcx + bay * bcy) / denom
    return math.acos(max(-1.0, min(1.0, cos_angle)))


def sharpness_of(angles: Sequence[float]) -> float:
    if not angles:
        return 0.0
    vals = [1.0 - min(1.0, abs(math.pi - a) / math.pi) for a in angles]
    return max(0.0, min(1.0, sum(vals) / len(vals)))


def centroid(pose: Pose) -> Tuple[float, float]:
    n = len(pose.landmarks)
    if n == 0:
        return 0.0, 0.0
    return (
        sum(j.x for j in pose.landmarks) / n,
        sum(j.y for j in pose.landmarks) / n,
    )


def is_usable(pose: Optional[Pose], config: FeatureConfig = DEFAULT_CONFIG) -> bool:
    """Enough landmarks and at least one with non-zero confidence."""
    if pose is None or len(pose.landmarks) < config.min_landmarks:
        return False
    return any(_visibility(j) > 0.0 for j in pose.landmarks)


def compute_motion_features(
    pose: Pose,
    previous: Optional[Pose] = None,
    config: FeatureConfig = DEFAULT_CONFIG,
) -> MotionFeatures:
    """
    Pure feature computation. Poses with too few landmarks yield all-zero
    features; a missing or non-advancing previous pose yields speed 0.
    """
    lm = pose.landmarks
    if len(lm) < config.min_landmarks:
        return MotionFeatures()

    eps = config.angle_epsilon
    elbow_l = joint_angle(lm[L_SHOULDER], lm[L_ELBOW], lm[L_WRIST], eps)
    elbow_r = joint_angle(lm[R_SHOULDER], lm[R_ELBOW], lm[R_WRIST], eps)
    knee_l = joint_angle(lm[L_HIP], lm[L_KNEE], lm[L_ANKLE], eps)
    knee_r = joint_angle(lm[R_HIP], lm[R_KNEE], lm[R_ANKLE], eps)

    sl, sr = lm[L_SHOULDER], lm[R_SHOULDER]
    hl, hr = lm[L_HIP], lm[R_HIP]
    shoulder_span = math.hypot(sr.x - sl.x, sr.y - sl.y)
    wrist_span = math.hypot(lm[R_WRIST].x - lm[L_WRIST].x, lm[R_WRIST].y - lm[L_WRIST].y)
    torso = math.hypot(
        (hl.x + hr.x) / 2 - (sl.x + sr.x) / 2,
        (hl.y + hr.y) / 2 - (sl.y + sr.y) / 2,
    ) + eps
    arm_span = (wrist_span + shoulder_span) / (2.0 * torso)

    speed = 0.0
    dt_ms = 0.0
    if previous is not None and previous.landmarks:
        dt_ms = pose.timestamp_ms - previous.timestamp_ms
        if dt_ms > 0:
            cx, cy = centroid(pose)
            px, py = centroid(previous)
            speed = math.hypot(cx - px, cy - py) / dt_ms
        else:
            dt_ms = 0.0

    return MotionFeatures(
        elbow_l=elbow_l,
        elbow_r=elbow_r,
        knee_l=knee_l,
        knee_r=knee_r,
        arm_span=arm_span,
        speed=speed,
        sharpness=sharpness_of([elbow_l, elbow_r, knee_l, knee_r]),
        dt_ms=dt_ms,
        joints=joints_2d(pose),
    )


_JOINT_NAMES: Dict[str, int] = {
    "head": NOSE,
    "shoulder_l": L_SHOULDER, "shoulder_r": R_SHOULDER,
    "elbow_l": L_ELBOW, "elbow_r": R_ELBOW,
    "hand_l": L_WRIST, "hand_r": R_WRIST,
    "hip_l": L_HIP, "hip_r": R_HIP,
    "knee_l": L_KNEE, "knee_r": R_KNEE,
    "ankle_l": L_ANKLE, "ankle_r": R_ANKLE,
}


def joints_2d(pose: Pose) -> Mapping[str, Tuple[float, float, float]]:
    """Named (x, y, visibility) points; a missing landmark reads (0.5, 0.5, 0)."""
    out = {}
    for name, idx in _JOINT_NAMES.items():
        if idx < len(pose.landmarks):
            j = pose.landmarks[idx]
            out[name] = (j.x, j.y, 0.0 if j.visibility is None else float(j.visibility))
        else:
            out[name] = (0.5, 0.5, 0.0)
    return MappingProxyType(out)


def summarize_pose(pose: Optional[Pose]) -> PoseSummary:
    """Confidence, shoulder axis, bounding-box area and right-wrist position."""
    if pose is None or not pose.landmarks:
        return PoseSummary()
    lm = pose.landmarks
    deg = 0.0
    if len(lm) > R_SHOULDER:
        sl, sr = lm[L_SHOULDER], lm[R_SHOULDER]
        deg = math.degrees(math.atan2(sr.y - sl.y, sr.x - sl.x))
    xs = [j.x for j in lm]
    ys = [j.y for j in lm]
    area = (max(xs) - min(xs)) * (max(ys) - min(ys))
    conf = min(_visibility(j) for j in lm)
    wrist = (lm[R_WRIST].x, lm[R_WRIST].y) if len(lm) > R_WRIST else (0.5, 0.5)
    return PoseSummary(conf=conf, shoulder_axis_deg=deg, bbox_area=area, wrist=wrist)


class MotionFeatureComputor:
    """
    Stateful wrapper: keeps exactly the previous pose for differencing.

    Unusable poses (too few landmarks, all-zero confidence, no person) are
    replaced by `fallback(timestamp_ms)` when one is given, so consumers keep
    receiving values instead of stalling.
    """

    def __init__(
        self,
        config: FeatureConfig = DEFAULT_CONFIG,
        fallback: Optional[Callable[[float], Pose]] = None,
    ):
        self.config = config
        self._fallback = fallback
        self._previous: Optional[Pose] = None
        self.motion: Publisher[Optional[MotionFeatures]] = Publisher(None, name="motion")
        self.summary: Publisher[PoseSummary] = Publisher(PoseSummary(), name="pose_summary")

    def update(self, pose: Optional[Pose], timestamp_ms: Optional[float] = None) -> MotionFeatures:
        if not is_usable(pose, self.config):
            if self._fallback is not None:
                ts = pose.timestamp_ms if pose is not None else (timestamp_ms or 0.0)
                _LOG.debug("Unusable pose, substituting synthetic pose")
                pose = self._fallback(ts)
            elif pose is None:
                pose = Pose(landmarks=(), timestamp_ms=timestamp_ms or 0.0)

        features = compute_motion_features(pose, self._previous, self.config)
        # Only a usable pose is a valid base for centroid differencing.
        self._previous = pose if is_usable(pose, self.config) else None
        self.summary.publish(summarize_pose(pose))
        self.motion.publish(features)
        return features

    def reset(self) -> None:
        """Drop the previous pose; the next frame reports speed 0."""
        self._previous = None

    @property
    def previous(self) -> Optional[Pose]:
        return self._previous

    def subscribe(self, fn: Callback) -> Unsubscribe:
        return self.motion.subscribe(fn)
