# core/audio_pipeline.py
# Windowed loudness + spectral centroid extraction, coalesced to the animation frame.
from __future__ import annotations
from dataclasses import dataclass
from typing import Callable, Optional, Protocol, Tuple
import logging
import threading
import time
import numpy as np

from core.config import DEFAULT_CONFIG, FeatureConfig
from core.publisher import FrameClock, FrameCoalescer, Publisher

_LOG = logging.getLogger(__name__)


class AttachError(RuntimeError):
    """An audio source could not be attached (no device, permission denied, unreadable file)."""


@dataclass(frozen=True)
class AudioFrame:
    rms: float = 0.0                  # root-mean-square of the window
    energy: float = 0.0               # single-pole smoothed rms
    spectral_centroid_hz: float = 0.0
    ts: float = 0.0                   # monotonic timestamp (s)


BlockCallback = Callable[[np.ndarray], None]


class AudioSource(Protocol):
    """Anything that can push raw sample blocks into a callback."""
    kind: str

    def open(self, on_block: BlockCallback, *, samplerate: int, blocksize: int) -> None: ...

    def close(self) -> None: ...


def analyze_window(samples: np.ndarray, samplerate: int) -> Tuple[float, float]:
    """
    Loudness and brightness of one window.

    Returns (rms, spectral_centroid_hz). The centroid is the magnitude-weighted
    mean frequency of a Hann-windowed real FFT; a silent window yields 0 Hz.
    """
    x = np.asarray(samples, dtype=np.float32)
    if x.size == 0:
        return 0.0, 0.0
    rms = float(np.sqrt(np.mean(x * x)))

    mag = np.abs(np.fft.rfft(x * np.hanning(x.size)))
    total = float(np.sum(mag))
    if total <= 1e-12:
        return rms, 0.0
    freqs = np.fft.rfftfreq(x.size, d=1.0 / samplerate)
    centroid = float(np.sum(freqs * mag) / total)
    return rms, centroid


class StopHandle:
    """Idempotent release of one attached source."""

    def __init__(self, release: Callable[[], None]):
        self._release = release
        self._lock = threading.Lock()
        self._stopped = False

    def __call__(self) -> None:
        with self._lock:
            if self._stopped:
                return
            self._stopped = True
        self._release()

    @property
    def stopped(self) -> bool:
        return self._stopped


class AudioFeatureExtractor:
    """
    Consumes raw sample blocks from one attached source and publishes AudioFrame.

    - Blocks of any size are re-cut into fixed windows of `config.window_size`.
    - energy = energy * (1 - alpha) + rms * alpha, seeded at 0.
    - Publication goes through a FrameCoalescer: at most one frame per animation
      tick, newest wins. The tick comes from an internal FrameClock, or from the
      caller via pump() when `background_publish=False`.
    - Attaching a new source fully releases the previous one first.
    """

    def __init__(
        self,
        config: FeatureConfig = DEFAULT_CONFIG,
        background_publish: bool = True,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config
        self._clock = clock
        self.frames: Publisher[AudioFrame] = Publisher(AudioFrame(), name="audio_frames")
        self._coalescer: FrameCoalescer[AudioFrame] = FrameCoalescer(self.frames)
        self._frame_clock: Optional[FrameClock] = (
            FrameClock(self._coalescer.flush, fps=config.frame_rate, name="AudioFrameClock")
            if background_publish else None
        )

        self._energy: float = 0.0
        self._pending = np.empty((0,), dtype=np.float32)
        self._source: Optional[AudioSource] = None
        self._stop_handle: Optional[StopHandle] = None
        self._attach_lock = threading.Lock()

    # ---------- Public API ----------

    def start(self, source: AudioSource) -> StopHandle:
        """Attach `source`; raises AttachError if it cannot be opened."""
        with self._attach_lock:
            if self._stop_handle is not None:
                self._stop_handle()

            self._pending = np.empty((0,), dtype=np.float32)
            try:
                source.open(
                    self.process_block,
                    samplerate=self.config.sample_rate,
                    blocksize=self.config.window_size,
                )
            except AttachError:
                raise
            except Exception as e:
                raise AttachError(f"Could not attach {getattr(source, 'kind', 'source')}: {e}") from e

            self._source = source
            if self._frame_clock is not None:
                self._frame_clock.start()
            _LOG.info("Audio source attached: %s", getattr(source, "kind", type(source).__name__))

            handle = StopHandle(lambda: self._release(source))
            self._stop_handle = handle
            return handle

    def stop(self) -> None:
        with self._attach_lock:
            if self._stop_handle is not None:
                self._stop_handle()

    def pump(self) -> bool:
        """Publish the newest pending frame, if any. Call once per animation frame."""
        return self._coalescer.flush()

    def process_block(self, block: np.ndarray) -> None:
        """Source callback: accept a block (frames,) or (frames, channels)."""
        x = np.asarray(block, dtype=np.float32)
        if x.ndim == 2:
            x = x.mean(axis=1) if x.shape[1] > 1 else x[:, 0]
        n = self.config.window_size
        buf = np.concatenate((self._pending, x)) if self._pending.size else x
        start = 0
        while buf.size - start >= n:
            self._process_window(buf[start:start + n])
            start += n
        self._pending = buf[start:].copy()

    @property
    def attached(self) -> bool:
        return self._source is not None

    @property
    def source(self) -> Optional[AudioSource]:
        return self._source

    @property
    def dropped_frames(self) -> int:
        return self._coalescer.dropped

    def current(self) -> AudioFrame:
        return self.frames.current()

    # ---------- Internal ----------

    def _process_window(self, window: np.ndarray) -> None:
        rms, centroid = analyze_window(window, self.config.sample_rate)
        a = self.config.energy_alpha
        self._energy = self._energy * (1.0 - a) + rms * a
        self._coalescer.offer(
            AudioFrame(rms=rms, energy=self._energy, spectral_centroid_hz=centroid, ts=self._clock())
        )

    def _release(self, source: AudioSource) -> None:
        if self._frame_clock is not None:
            self._frame_clock.stop()
        try:
            source.close()
        except Exception as e:
            _LOG.warning("Error while closing %s: %s", getattr(source, "kind", "source"), e)
        self._coalescer.clear()
        if self._source is source:
            self._source = None
        self._stop_handle = None
        _LOG.info("Audio source released: %s", getattr(source, "kind", type(source).__name__))
