# devices/audio_input.py
# Audio source adapters: live capture, media playback with analysis tap, synthetic fallback.
# No analysis here; sources only push raw blocks into the extractor's callback.
from __future__ import annotations

import logging
import math
import threading
import time
from typing import Optional

import numpy as np
import soundfile as sf

from core.audio_pipeline import AttachError, BlockCallback

try:
    import sounddevice as sd
    from sounddevice import PortAudioError
except Exception as e:
    sd = None
    PortAudioError = Exception

_LOG = logging.getLogger(__name__)


class InputDeviceSource:
    """
    Live capture from a PortAudio input device (microphone, loopback cable).

    The stream callback copies each block out of PortAudio's buffer and hands
    it on; nothing heavier happens on the audio thread.
    """

    kind = "microphone"

    def __init__(self, device: Optional[int | str] = None, channels: int = 1):
        if channels not in (1, 2):
            raise ValueError("InputDeviceSource supports 1 or 2 channels only.")
        self.device = device
        self.channels = channels
        self._stream = None
        self._on_block: Optional[BlockCallback] = None

    def open(self, on_block: BlockCallback, *, samplerate: int, blocksize: int) -> None:
        if sd is None:
            raise AttachError("sounddevice is not available in this environment.")
        self._on_block = on_block
        try:
            stream = sd.InputStream(
                device=self.device,
                channels=self.channels,
                samplerate=samplerate,
                blocksize=blocksize,
                callback=self._sd_callback,
            )
        except PortAudioError as e:
            raise AttachError(f"Audio device error: {e}") from e
        try:
            stream.start()
        except PortAudioError as e:
            stream.close()
            raise AttachError(f"Audio device error: {e}") from e
        self._stream = stream

    def close(self) -> None:
        stream, self._stream = self._stream, None
        if stream is not None:
            stream.stop()
            stream.close()
        self._on_block = None

    @property
    def active(self) -> bool:
        return self._stream is not None

    def _sd_callback(self, indata, frames, time_info, status):
        if status:
            _LOG.debug("Input stream status: %s", status)
        cb = self._on_block
        if cb is not None:
            cb(indata.copy())


class MediaSource:
    """
    Playback of decoded samples with an analysis tap on every output block.

    The tap sees exactly what is played, no re-encoding. When `play=False` the
    samples are streamed to the tap at real-time pace without an output device.
    """

    kind = "media"

    def __init__(self, samples: np.ndarray, samplerate: int, play: bool = True, loop: bool = False):
        data = np.asarray(samples, dtype=np.float32)
        if data.ndim == 1:
            data = data[:, None]
        self.samples = data
        self.samplerate = int(samplerate)
        self.play = play
        self.loop = loop
        self.position = 0
        self._stream = None
        self._on_block: Optional[BlockCallback] = None
        self._blocksize = 0
        self._run_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @classmethod
    def from_file(cls, path: str, play: bool = True, loop: bool = False) -> "MediaSource":
        try:
            data, sr = sf.read(path, dtype="float32", always_2d=True)
        except (OSError, RuntimeError) as e:
            raise AttachError(f"Could not read media file {path}: {e}") from e
        return cls(data, sr, play=play, loop=loop)

    def open(self, on_block: BlockCallback, *, samplerate: int, blocksize: int) -> None:
        if samplerate != self.samplerate:
            _LOG.info("Media plays at %d Hz (analysis default %d Hz)", self.samplerate, samplerate)
        self._on_block = on_block
        self._blocksize = blocksize
        self.position = 0

        if not self.play:
            self._run_event.set()
            self._thread = threading.Thread(target=self._run_silent, name="MediaSource", daemon=True)
            self._thread.start()
            return

        if sd is None:
            raise AttachError("sounddevice is not available in this environment.")
        try:
            stream = sd.OutputStream(
                channels=self.samples.shape[1],
                samplerate=self.samplerate,
                blocksize=blocksize,
                callback=self._sd_callback,
            )
        except PortAudioError as e:
            raise AttachError(f"Audio output error: {e}") from e
        try:
            stream.start()
        except PortAudioError as e:
            stream.close()
            raise AttachError(f"Audio output error: {e}") from e
        self._stream = stream

    def close(self) -> None:
        self._run_event.clear()
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout=2.0)
        self._thread = None
        stream, self._stream = self._stream, None
        if stream is not None:
            stream.stop()
            stream.close()
        self._on_block = None

    def next_block(self, frames: int) -> Optional[np.ndarray]:
        """Cut the next `frames` samples; None when exhausted (and not looping)."""
        total = self.samples.shape[0]
        if total == 0:
            return None
        if self.position >= total:
            if not self.loop:
                return None
            self.position = 0
        end = min(total, self.position + frames)
        block = self.samples[self.position:end]
        self.position = end
        if block.shape[0] < frames:
            pad = np.zeros((frames - block.shape[0], block.shape[1]), dtype=np.float32)
            block = np.concatenate((block, pad))
        return block

    def _sd_callback(self, outdata, frames, time_info, status):
        block = self.next_block(frames)
        if block is None:
            outdata.fill(0)
            raise sd.CallbackStop
        outdata[:] = block
        cb = self._on_block
        if cb is not None:
            cb(block.copy())

    def _run_silent(self) -> None:
        period = self._blocksize / float(self.samplerate)
        while self._run_event.is_set():
            t0 = time.monotonic()
            block = self.next_block(self._blocksize)
            if block is None:
                break
            cb = self._on_block
            if cb is not None:
                cb(block)
            time.sleep(max(0.0, period - (time.monotonic() - t0)))


class SyntheticAudioSource:
    """
    Deterministic low-amplitude fallback producer.

    Emits a quiet 220 Hz tone whose level breathes slowly, so downstream
    consumers keep moving (visibly degraded) when no real input exists.
    """

    kind = "synthetic"

    def __init__(self, amplitude: float = 0.02, tone_hz: float = 220.0, breath_hz: float = 0.25):
        self.amplitude = float(amplitude)
        self.tone_hz = float(tone_hz)
        self.breath_hz = float(breath_hz)
        self._samplerate = 44100
        self._blocksize = 1024
        self._index = 0
        self._on_block: Optional[BlockCallback] = None
        self._run_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def open(self, on_block: BlockCallback, *, samplerate: int, blocksize: int) -> None:
        self._on_block = on_block
        self._samplerate = samplerate
        self._blocksize = blocksize
        self._index = 0
        self._run_event.set()
        self._thread = threading.Thread(target=self._run, name="SyntheticAudio", daemon=True)
        self._thread.start()

    def close(self) -> None:
        self._run_event.clear()
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout=2.0)
        self._thread = None
        self._on_block = None

    def render_block(self, index: int) -> np.ndarray:
        """Block number `index`; identical output for identical index."""
        n = self._blocksize
        t = (np.arange(n, dtype=np.float64) + index * n) / self._samplerate
        t_block = index * n / self._samplerate
        level = self.amplitude * (0.5 + 0.5 * math.sin(2.0 * math.pi * self.breath_hz * t_block))
        return (level * np.sin(2.0 * np.pi * self.tone_hz * t)).astype(np.float32)

    def _run(self) -> None:
        period = self._blocksize / float(self._samplerate)
        while self._run_event.is_set():
            t0 = time.monotonic()
            block = self.render_block(self._index)
            self._index += 1
            cb = self._on_block
            if cb is not None:
                cb(block)
            time.sleep(max(0.0, period - (time.monotonic() - t0)))
