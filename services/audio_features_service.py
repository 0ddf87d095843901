# services/audio_features_service.py
# Onset / beat / phrase state machine and centroid-based band estimation on top of AudioFrame.
from __future__ import annotations
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, Optional
import time

from core.audio_pipeline import AudioFrame
from core.config import DEFAULT_CONFIG, FeatureConfig
from core.publisher import Callback, Publisher, Unsubscribe


@dataclass(frozen=True)
class AudioFeatures:
    rms: float = 0.0
    energy: float = 0.0
    centroid_hz: float = 0.0
    onset: bool = False
    beat: bool = False
    phrase: int = 0
    low: float = 0.0     # ~20-250 Hz
    mid: float = 0.0     # ~250-2000 Hz
    high: float = 0.0    # ~2000-20000 Hz


def estimate_bands(centroid_hz: float, energy: float, config: FeatureConfig = DEFAULT_CONFIG):
    """
    Rough (low, mid, high) split from the centroid alone, no filter bank.

    c = centroid / nyquist; low falls off from 0, mid peaks at 0.375, high
    rises past 0.5. All three are scaled by min(energy * gain, 1).
    """
    c = max(0.0, centroid_hz) / config.nyquist_hz
    low = max(0.0, 1.0 - 2.0 * c)
    mid = max(0.0, 1.0 - 2.0 * abs(c - 0.375))
    high = max(0.0, 2.0 * (c - 0.5))
    boost = min(max(0.0, energy) * config.band_energy_gain, 1.0)
    return (
        min(1.0, low * boost),
        min(1.0, mid * boost),
        min(1.0, high * boost),
    )


class AudioFeaturesService:
    """
    Derives onset, beat, phrase and band energies from each AudioFrame.

    State machine per frame:
      1. push energy into the ring (capacity `history_length`, oldest evicted)
      2. onset = energy > mean(ring) * onset_threshold
      3. onset and (now - last_beat) > beat_interval_ms * 0.5
         -> beat, last_beat = now, beat_count += 1, phrase += 1 every 8th beat
      4. otherwise no beat

    The beat interval is a fixed prior (no tempo tracking). The very first
    onset is always accepted as a beat.
    """

    def __init__(
        self,
        config: FeatureConfig = DEFAULT_CONFIG,
        clock: Callable[[], float] = lambda: time.monotonic() * 1000.0,
    ):
        self.config = config
        self._clock = clock  # milliseconds
        self._energy_hist: Deque[float] = deque(maxlen=config.history_length)
        self._last_beat_ms: Optional[float] = None
        self.beat_count = 0
        self.phrase_count = 0
        self.features: Publisher[AudioFeatures] = Publisher(AudioFeatures(), name="audio_features")
        self._upstream: Optional[Unsubscribe] = None

    # ---------- Wiring ----------

    def attach(self, frames: Publisher[AudioFrame]) -> None:
        """Subscribe once to the extractor's frames."""
        if self._upstream is not None:
            return
        self._upstream = frames.subscribe(self.update)

    def detach(self) -> None:
        if self._upstream is not None:
            self._upstream()
            self._upstream = None

    def subscribe(self, fn: Callback) -> Unsubscribe:
        """Register `fn`; it is called immediately with the cached features."""
        return self.features.subscribe(fn)

    def get_features(self) -> AudioFeatures:
        return self.features.current()

    # ---------- Processing ----------

    def update(self, frame: AudioFrame) -> AudioFeatures:
        cfg = self.config
        energy = frame.energy or 0.0

        self._energy_hist.append(energy)
        mean_energy = sum(self._energy_hist) / len(self._energy_hist)
        onset = energy > mean_energy * cfg.onset_threshold

        now = self._clock()
        beat = False
        if onset and (self._last_beat_ms is None or (now - self._last_beat_ms) > cfg.min_beat_gap_ms):
            beat = True
            self._last_beat_ms = now
            self.beat_count += 1
            if self.beat_count % cfg.beats_per_phrase == 0:
                self.phrase_count += 1

        low, mid, high = estimate_bands(frame.spectral_centroid_hz, energy, cfg)
        features = AudioFeatures(
            rms=frame.rms or 0.0,
            energy=energy,
            centroid_hz=frame.spectral_centroid_hz or 0.0,
            onset=onset,
            beat=beat,
            phrase=self.phrase_count,
            low=low,
            mid=mid,
            high=high,
        )
        self.features.publish(features)
        return features

    def reset_history(self) -> None:
        """Forget the energy ring and beat gate when the audio source changes.
        Beat and phrase counters keep counting."""
        self._energy_hist.clear()
        self._last_beat_ms = None
