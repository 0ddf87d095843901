# core/config.py
# Analysis constants for the feature pipeline.
from __future__ import annotations
from dataclasses import dataclass

# ---------- Audio windowing ----------

# Samples per analysis window (~23 ms at 44.1 kHz).
WINDOW_SIZE: int = 1024

# Capture / playback sample rate (Hz).
SAMPLE_RATE: int = 44100

# Single-pole low-pass coefficient for the canonical loudness signal:
#   energy = energy * (1 - alpha) + rms * alpha
# 0.15 settles within ~15 windows (~350 ms).
ENERGY_ALPHA: float = 0.15

# ---------- Onset / beat / phrase ----------

# Capacity of the trailing-energy ring buffer used for onset detection.
HISTORY_LENGTH: int = 10

# Onset when energy exceeds this multiple of the trailing mean.
ONSET_THRESHOLD: float = 1.5

# Fixed beat-interval prior (ms), ~120 BPM. Beats are gated at half of it.
BEAT_INTERVAL_MS: float = 500.0

# Accepted beats per phrase.
BEATS_PER_PHRASE: int = 8

# ---------- Band estimation ----------

# Centroid normalization constant (half of 44.1 kHz).
NYQUIST_HZ: float = 22050.0

# Bands are scaled by min(energy * gain, 1) so silence drives them to zero.
BAND_ENERGY_GAIN: float = 5.0

# ---------- Cadences ----------

# Animation-frame publish cadence (Hz). Audio frames are coalesced to this rate.
FRAME_RATE: float = 60.0

# Detector polling cadence (Hz).
POSE_FRAME_RATE: float = 30.0

# ---------- Pose geometry ----------

# Degeneracy guard for angle / length divisions.
ANGLE_EPSILON: float = 1e-6

# Landmarks required (highest used index is 28, right ankle).
MIN_LANDMARKS: int = 29


@dataclass(frozen=True)
class FeatureConfig:
    """Bundle of the constants above; passed to every analysis component."""
    window_size: int = WINDOW_SIZE
    sample_rate: int = SAMPLE_RATE
    energy_alpha: float = ENERGY_ALPHA
    history_length: int = HISTORY_LENGTH
    onset_threshold: float = ONSET_THRESHOLD
    beat_interval_ms: float = BEAT_INTERVAL_MS
    beats_per_phrase: int = BEATS_PER_PHRASE
    nyquist_hz: float = NYQUIST_HZ
    band_energy_gain: float = BAND_ENERGY_GAIN
    frame_rate: float = FRAME_RATE
    pose_frame_rate: float = POSE_FRAME_RATE
    angle_epsilon: float = ANGLE_EPSILON
    min_landmarks: int = MIN_LANDMARKS

    def __post_init__(self) -> None:
        if self.window_size <= 0 or self.sample_rate <= 0:
            raise ValueError("window_size and sample_rate must be positive.")
        if not 0.0 < self.energy_alpha <= 1.0:
            raise ValueError("energy_alpha must be in (0, 1].")
        if self.history_length <= 0 or self.beats_per_phrase <= 0:
            raise ValueError("history_length and beats_per_phrase must be positive.")
        if self.frame_rate <= 0 or self.pose_frame_rate <= 0:
            raise ValueError("frame rates must be positive.")
        if self.nyquist_hz <= 0:
            raise ValueError("nyquist_hz must be positive.")

    @property
    def min_beat_gap_ms(self) -> float:
        return self.beat_interval_ms * 0.5


DEFAULT_CONFIG = FeatureConfig()
