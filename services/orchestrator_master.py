# services/orchestrator_master.py
# Caller-owned context: builds the pipeline, wires it into the store, swaps sources, tears down.
from __future__ import annotations
from dataclasses import dataclass, replace
from typing import Any, Callable, List, Optional
import logging
import time

from core.audio_pipeline import AttachError, AudioFeatureExtractor, AudioSource, StopHandle
from core.config import DEFAULT_CONFIG, FeatureConfig
from core.motion_features import MotionFeatureComputor, MotionFeatures
from core.publisher import Unsubscribe
from core.state.reactive_store import ReactiveStateStore, Snapshot, VisualParams
from devices.audio_input import SyntheticAudioSource
from devices.pose_input import DetectorPoseSource, SyntheticPoseSource, synthetic_pose
from services.audio_features_service import AudioFeatures, AudioFeaturesService
from services.music_reactivity import MusicReactivityMapper

_LOG = logging.getLogger(__name__)


@dataclass(frozen=True)
class SourceStatus:
    audio_source: Optional[str] = None
    pose_source: Optional[str] = None
    audio_degraded: bool = False
    pose_degraded: bool = False
    error: Optional[str] = None


class ReactiveContext:
    """
    Owns every pipeline component for one session.

    Lifecycle: construct once at startup, attach_audio()/attach_pose() as
    often as needed (the previous source is released first), shutdown()
    once at exit. A missing microphone or camera never raises out of here;
    the context falls back to synthetic producers and reports `degraded`.
    """

    def __init__(
        self,
        config: FeatureConfig = DEFAULT_CONFIG,
        params: Optional[VisualParams] = None,
        background_publish: bool = True,
        log_every: float = 0.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config
        self._clock = clock
        self._last_log = 0.0
        self._log_every = float(log_every)

        self.extractor = AudioFeatureExtractor(config, background_publish=background_publish, clock=clock)
        self.features = AudioFeaturesService(config, clock=lambda: clock() * 1000.0)
        self.mapper = MusicReactivityMapper()
        self.motion = MotionFeatureComputor(config, fallback=synthetic_pose)
        self.store = ReactiveStateStore(params)

        self.features.attach(self.extractor.frames)
        self.mapper.start(self.features.features)
        self._subscriptions: List[Unsubscribe] = [
            self.features.subscribe(self._on_features),
            self.mapper.subscribe(self.store.set_reactivity),
            self.motion.subscribe(self._on_motion),
        ]

        self._audio_stop: Optional[StopHandle] = None
        self._pose_source: Any = None
        self._status = SourceStatus()
        self._closed = False

    # ---------- Sources ----------

    def attach_audio(self, source: Optional[AudioSource] = None) -> bool:
        """
        Attach `source` (or the synthetic producer when None).
        Returns True if the requested source is live, False if degraded.
        """
        self._release_audio()
        self.features.reset_history()

        error = None
        if source is not None:
            try:
                self._audio_stop = self.extractor.start(source)
                self._set_status(audio_source=source.kind, audio_degraded=False, error=None)
                return True
            except AttachError as e:
                error = str(e)
                _LOG.warning("Audio attach failed (%s); using synthetic audio", e)

        fallback = SyntheticAudioSource()
        self._audio_stop = self.extractor.start(fallback)
        self._set_status(audio_source=fallback.kind, audio_degraded=True, error=error)
        return False

    def attach_pose(self, detector: Any = None) -> bool:
        """Poll `detector` for poses (or synthesize them when None). False if degraded."""
        self._release_pose()
        self.motion.reset()

        if detector is not None:
            try:
                src = DetectorPoseSource(detector, fps=self.config.pose_frame_rate)
            except TypeError as e:
                _LOG.warning("Pose detector rejected (%s); using synthetic pose", e)
            else:
                src.open(self.motion.update)
                self._pose_source = src
                self._set_status(pose_source=src.kind, pose_degraded=False)
                return True

        synth = SyntheticPoseSource(fps=self.config.pose_frame_rate)
        synth.open(self.motion.update)
        self._pose_source = synth
        self._set_status(pose_source=synth.kind, pose_degraded=True)
        return False

    def source_status(self) -> SourceStatus:
        return self._status

    @property
    def degraded(self) -> bool:
        return self._status.audio_degraded or self._status.pose_degraded

    # ---------- Frame API ----------

    def pump(self) -> bool:
        """Publish the newest audio frame; call once per rendered frame when
        background publishing is off."""
        return self.extractor.pump()

    def get_snapshot(self) -> Snapshot:
        return self.store.get_snapshot()

    # ---------- Teardown ----------

    def shutdown(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._release_audio()
        self._release_pose()
        for unsubscribe in self._subscriptions:
            unsubscribe()
        self._subscriptions.clear()
        self.mapper.stop()
        self.features.detach()
        _LOG.info("Reactive context shut down")

    def __enter__(self) -> "ReactiveContext":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.shutdown()

    def run(self, source: Optional[AudioSource] = None, detector: Any = None) -> None:
        try:
            self.attach_audio(source)
            self.attach_pose(detector)
            while True:
                time.sleep(0.2)
        except KeyboardInterrupt:
            pass
        finally:
            self.shutdown()

    # ---------- Internal ----------

    def _on_features(self, features: AudioFeatures) -> None:
        self.store.set_music(features)
        if self._log_every <= 0:
            return
        now = self._clock()
        if now - self._last_log >= self._log_every:
            self._last_log = now
            _LOG.info(
                "[AUDIO] rms=%.3f energy=%.3f beat=%s phrase=%d low=%.2f mid=%.2f high=%.2f",
                features.rms, features.energy, features.beat, features.phrase,
                features.low, features.mid, features.high,
            )

    def _on_motion(self, motion: Optional[MotionFeatures]) -> None:
        if motion is not None:
            self.store.set_motion(motion)

    def _release_audio(self) -> None:
        if self._audio_stop is not None:
            self._audio_stop()
            self._audio_stop = None

    def _release_pose(self) -> None:
        if self._pose_source is not None:
            self._pose_source.close()
            self._pose_source = None

    def _set_status(self, **changes) -> None:
        self._status = replace(self._status, **changes)
