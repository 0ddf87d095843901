# services/music_reactivity.py
# Maps AudioFeatures to six smoothed visual reactivity parameters.
from __future__ import annotations
from collections import deque
from dataclasses import dataclass, replace
from typing import Callable, Deque, Dict, Optional
import logging
import threading
import time

import numpy as np

from core.publisher import Callback, Publisher, Unsubscribe
from services.audio_features_service import AudioFeatures
from services.presets.reactivity import PRESETS

_LOG = logging.getLogger(__name__)


@dataclass(frozen=True)
class MusicAnalysis:
    """Inputs of the mapping formulas, derived from the AudioFeatures stream."""
    tempo: float = 0.0              # beats per minute, 0 = unknown
    beat_strength: float = 0.0      # 0..1
    energy: float = 0.0
    bass: float = 0.0
    mid: float = 0.0
    treble: float = 0.0
    rhythm_complexity: float = 0.0  # 0..1
    rhythm_density: float = 0.0     # 0..1


@dataclass(frozen=True)
class ReactivityParams:
    speed_multiplier: float = 1.0
    amplitude_multiplier: float = 1.0
    color_intensity: float = 0.0
    pulsation_strength: float = 0.0
    distortion_intensity: float = 0.0
    rotation_speed: float = 0.0

    # Last analysis inputs
    current_tempo: float = 0.0
    beat_strength: float = 0.0
    rhythm_complexity: float = 0.0
    bass_level: float = 0.0
    mid_level: float = 0.0
    treble_level: float = 0.0

    # Controls
    enabled: bool = True
    sensitivity: float = 1.0
    smoothing: float = 0.8


class RhythmTracker:
    """
    Turns the per-frame feature stream into MusicAnalysis.

    - beat_strength jumps to 1 on a beat and decays by `decay` per frame.
    - tempo is the beat rate over the last `tempo_beats` accepted beats. It is
      informational only; beat gating stays on the fixed interval prior.
    - rhythm_density is the onset ratio over the last `window` frames.
    - rhythm_complexity is the coefficient of variation of recent energy.
    """

    def __init__(
        self,
        window: int = 32,
        tempo_beats: int = 8,
        decay: float = 0.9,
        clock: Callable[[], float] = lambda: time.monotonic() * 1000.0,
    ):
        self._clock = clock
        self._decay = decay
        self._onsets: Deque[bool] = deque(maxlen=window)
        self._energies: Deque[float] = deque(maxlen=window)
        self._beat_times: Deque[float] = deque(maxlen=tempo_beats)
        self._beat_strength = 0.0

    def update(self, f: AudioFeatures) -> MusicAnalysis:
        if f.beat:
            self._beat_strength = 1.0
            self._beat_times.append(self._clock())
        else:
            self._beat_strength *= self._decay
        self._onsets.append(bool(f.onset))
        self._energies.append(f.energy)

        tempo = 0.0
        if len(self._beat_times) >= 2:
            gaps = np.diff(np.fromiter(self._beat_times, dtype=float))
            mean_gap = float(np.mean(gaps))
            if mean_gap > 0:
                tempo = 60000.0 / mean_gap

        e = np.fromiter(self._energies, dtype=float)
        mean_e = float(np.mean(e))
        complexity = float(np.std(e)) / mean_e if mean_e > 1e-9 else 0.0

        return MusicAnalysis(
            tempo=tempo,
            beat_strength=self._beat_strength,
            energy=f.energy,
            bass=f.low,
            mid=f.mid,
            treble=f.high,
            rhythm_complexity=min(1.0, complexity),
            rhythm_density=sum(self._onsets) / len(self._onsets),
        )


# ---------- Mapping formulas ----------

def speed_target(a: MusicAnalysis) -> float:
    tempo_factor = min(2.0, a.tempo / 120.0) if a.tempo > 0 else 1.0
    return 1.0 * tempo_factor * (1.0 + a.beat_strength * 0.5)


def amplitude_target(a: MusicAnalysis) -> float:
    return 1.0 * (1.0 + a.energy * 0.8) * (1.0 + a.bass * 0.6)


def color_intensity_target(a: MusicAnalysis) -> float:
    return min(1.0, a.treble * 0.7 + a.mid * 0.5)


def pulsation_target(a: MusicAnalysis) -> float:
    return min(1.0, a.beat_strength * 0.8 + a.rhythm_complexity * 0.3)


def distortion_target(a: MusicAnalysis) -> float:
    return min(1.0, a.energy * 0.6 + a.rhythm_complexity * 0.4)


def rotation_target(a: MusicAnalysis) -> float:
    tempo_rotation = a.tempo / 200.0 if a.tempo > 0 else 0.0
    return min(1.0, tempo_rotation + a.rhythm_density * 0.5)


def map_targets(a: MusicAnalysis) -> Dict[str, float]:
    return {
        "speed_multiplier": speed_target(a),
        "amplitude_multiplier": amplitude_target(a),
        "color_intensity": color_intensity_target(a),
        "pulsation_strength": pulsation_target(a),
        "distortion_intensity": distortion_target(a),
        "rotation_speed": rotation_target(a),
    }


def smooth_value(current: float, target: float, smoothing: float) -> float:
    # smoothing -> 1 means slower convergence
    return current + (target - current) * (1.0 - smoothing)


def _clamp(v: float, lo: float, hi: float) -> float:
    return max(lo, min(hi, float(v)))


class MusicReactivityMapper:
    """
    Owns ReactivityParams. Each AudioFeatures update moves every value toward
    target * sensitivity by a (1 - smoothing) fraction. Disabled means frozen.

    Control writes and feature updates are serialized by one writer lock;
    readers take snapshots from `params` without locking.
    """

    def __init__(self, initial: Optional[ReactivityParams] = None, tracker: Optional[RhythmTracker] = None):
        self.params: Publisher[ReactivityParams] = Publisher(initial or ReactivityParams(), name="reactivity")
        self._tracker = tracker or RhythmTracker()
        self._lock = threading.RLock()
        self._upstream: Optional[Unsubscribe] = None

    # ---------- Wiring ----------

    def start(self, features: Publisher[AudioFeatures]) -> None:
        if self._upstream is not None:
            return
        self._upstream = features.subscribe(self.update)

    def stop(self) -> None:
        if self._upstream is not None:
            self._upstream()
            self._upstream = None

    @property
    def running(self) -> bool:
        return self._upstream is not None

    def subscribe(self, fn: Callback) -> Unsubscribe:
        return self.params.subscribe(fn)

    def snapshot(self) -> ReactivityParams:
        return self.params.current()

    # ---------- Processing ----------

    def update(self, features: AudioFeatures) -> ReactivityParams:
        with self._lock:
            cur = self.params.current()
            if not cur.enabled:
                return cur
            analysis = self._tracker.update(features)
            targets = map_targets(analysis)
            smoothed = {
                key: smooth_value(getattr(cur, key), target * cur.sensitivity, cur.smoothing)
                for key, target in targets.items()
            }
            nxt = replace(
                cur,
                **smoothed,
                current_tempo=analysis.tempo,
                beat_strength=analysis.beat_strength,
                rhythm_complexity=analysis.rhythm_complexity,
                bass_level=analysis.bass,
                mid_level=analysis.mid,
                treble_level=analysis.treble,
            )
            self.params.publish(nxt)
            return nxt

    # ---------- Controls ----------

    def set_enabled(self, enabled: bool) -> None:
        self._write(enabled=bool(enabled))

    def set_sensitivity(self, sensitivity: float) -> None:
        self._write(sensitivity=_clamp(sensitivity, 0.0, 2.0))

    def set_smoothing(self, smoothing: float) -> None:
        self._write(smoothing=_clamp(smoothing, 0.0, 1.0))

    def apply_preset(self, name: str) -> bool:
        preset = PRESETS.get(name)
        if preset is None:
            _LOG.warning("Unknown reactivity preset %r ignored", name)
            return False
        self._write(enabled=preset.enabled, sensitivity=preset.sensitivity, smoothing=preset.smoothing)
        _LOG.info("Reactivity preset applied: %s", name)
        return True

    # ---------- Getters ----------

    def speed_multiplier(self) -> float:
        return self.params.current().speed_multiplier

    def amplitude_multiplier(self) -> float:
        return self.params.current().amplitude_multiplier

    def color_intensity(self) -> float:
        return self.params.current().color_intensity

    def pulsation_strength(self) -> float:
        return self.params.current().pulsation_strength

    def distortion_intensity(self) -> float:
        return self.params.current().distortion_intensity

    def rotation_speed(self) -> float:
        return self.params.current().rotation_speed

    def _write(self, **changes) -> None:
        with self._lock:
            self.params.publish(replace(self.params.current(), **changes))
