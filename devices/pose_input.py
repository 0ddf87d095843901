# devices/pose_input.py
# Pose source adapters: poll a landmark detector at frame cadence, or synthesize a stand-in.
from __future__ import annotations

import logging
import math
import threading
import time
from typing import Any, Callable, Optional

from core.motion_features import Joint, Pose

_LOG = logging.getLogger(__name__)

# Called with (pose or None, timestamp_ms of the poll).
PoseCallback = Callable[[Optional[Pose], float], None]

# Confidence reported by synthetic poses; low so consumers can tell.
FALLBACK_CONF = 0.2

# Neutral standing figure (normalized image coords) for the indices the features read.
_STICK_FIGURE = {
    0: (0.5, 0.3),
    11: (0.4, 0.4), 12: (0.6, 0.4),
    13: (0.35, 0.5), 14: (0.65, 0.5),
    15: (0.30, 0.6), 16: (0.70, 0.6),
    23: (0.45, 0.75), 24: (0.55, 0.75),
    25: (0.45, 0.90), 26: (0.55, 0.90),
    27: (0.45, 1.00), 28: (0.55, 1.00),
}


def synthetic_pose(timestamp_ms: float, conf: float = FALLBACK_CONF) -> Pose:
    """33-landmark stick figure whose wrists sway slowly; deterministic in time."""
    t = timestamp_ms * 0.001
    sway = 0.1 * math.sin(t * 0.5)
    vis = max(0.0, min(1.0, conf))
    pts = []
    for i in range(33):
        x, y = _STICK_FIGURE.get(i, (0.5, 0.5))
        if i in (15, 16):
            y += sway
        pts.append(Joint(x=x, y=y, z=0.0, visibility=vis))
    return Pose(landmarks=tuple(pts), timestamp_ms=timestamp_ms)


def _joint(p: Any) -> Joint:
    if isinstance(p, Joint):
        return p
    if isinstance(p, dict):
        return Joint(
            x=float(p.get("x", 0.0)),
            y=float(p.get("y", 0.0)),
            z=float(p.get("z", 0.0) or 0.0),
            visibility=p.get("visibility"),
        )
    vis = getattr(p, "visibility", None)
    return Joint(
        x=float(p.x),
        y=float(p.y),
        z=float(getattr(p, "z", 0.0) or 0.0),
        visibility=None if vis is None else float(vis),
    )


def parse_detection(result: Any, timestamp_ms: float) -> Optional[Pose]:
    """
    Normalize a detector result into a Pose. None (or no landmarks) means
    "no person detected", which is not an error.

    Accepted shapes: a Pose; an object/dict whose `landmarks` holds one list
    per person (first person used) or a flat list; an object with
    `pose_landmarks.landmark`; a plain sequence of points.
    """
    if result is None:
        return None
    if isinstance(result, Pose):
        return result

    points = None
    if isinstance(result, dict):
        points = result.get("landmarks")
    elif hasattr(result, "landmarks"):
        points = result.landmarks
    elif hasattr(result, "pose_landmarks"):
        pl = result.pose_landmarks
        points = getattr(pl, "landmark", pl) if pl is not None else None
    else:
        points = result

    if not points:
        return None
    first = points[0]
    if isinstance(first, (list, tuple)):
        points = first
        if not points:
            return None
    return Pose(landmarks=tuple(_joint(p) for p in points), timestamp_ms=timestamp_ms)


class DetectorPoseSource:
    """
    Polls `detector.detect()` on its own thread at `fps` and forwards a Pose
    (or None when no person is in view). Detector errors are logged and
    reported downstream as "no pose" so the loop never stalls.
    """

    kind = "detector"

    def __init__(
        self,
        detector: Any,
        fps: float = 30.0,
        clock: Callable[[], float] = lambda: time.monotonic() * 1000.0,
    ):
        if not callable(getattr(detector, "detect", None)):
            raise TypeError("detector must expose a detect() method")
        self.detector = detector
        self.fps = max(1.0, float(fps))
        self._clock = clock
        self._on_pose: Optional[PoseCallback] = None
        self._run_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.errors = 0

    def open(self, on_pose: PoseCallback) -> None:
        self._on_pose = on_pose
        self._run_event.set()
        self._thread = threading.Thread(target=self._run, name="PoseSource", daemon=True)
        self._thread.start()

    def close(self) -> None:
        self._run_event.clear()
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout=2.0)
        self._thread = None
        self._on_pose = None
        closer = getattr(self.detector, "close", None)
        if callable(closer):
            closer()

    def poll_once(self) -> Optional[Pose]:
        ts = self._clock()
        try:
            pose = parse_detection(self.detector.detect(), ts)
        except Exception as e:
            self.errors += 1
            _LOG.warning("Pose detector failed: %s", e)
            pose = None
        if pose is None:
            _LOG.debug("No pose detected at %.1f ms", ts)
        cb = self._on_pose
        if cb is not None:
            cb(pose, ts)
        return pose

    def _run(self) -> None:
        period = 1.0 / self.fps
        while self._run_event.is_set():
            t0 = time.monotonic()
            self.poll_once()
            time.sleep(max(0.0, period - (time.monotonic() - t0)))


class SyntheticPoseSource:
    """Fallback producer used when no detector is attached."""

    kind = "synthetic"

    def __init__(
        self,
        fps: float = 30.0,
        conf: float = FALLBACK_CONF,
        clock: Callable[[], float] = lambda: time.monotonic() * 1000.0,
    ):
        self.fps = max(1.0, float(fps))
        self.conf = conf
        self._clock = clock
        self._on_pose: Optional[PoseCallback] = None
        self._run_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def open(self, on_pose: PoseCallback) -> None:
        self._on_pose = on_pose
        self._run_event.set()
        self._thread = threading.Thread(target=self._run, name="SyntheticPose", daemon=True)
        self._thread.start()

    def close(self) -> None:
        self._run_event.clear()
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout=2.0)
        self._thread = None
        self._on_pose = None

    def poll_once(self) -> Pose:
        pose = synthetic_pose(self._clock(), self.conf)
        cb = self._on_pose
        if cb is not None:
            cb(pose, pose.timestamp_ms)
        return pose

    def _run(self) -> None:
        period = 1.0 / self.fps
        while self._run_event.is_set():
            t0 = time.monotonic()
            self.poll_once()
            time.sleep(max(0.0, period - (time.monotonic() - t0)))
