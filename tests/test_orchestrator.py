"""
Reactive Context Tests

End-to-end wiring (extractor -> features -> mapper -> store), source
fallback and swapping, and idempotent teardown.
"""

import numpy as np
import pytest

from services.orchestrator_master import ReactiveContext


N = 1024


class FakeSource:
    kind = "fake"

    def __init__(self, fail=False):
        self.fail = fail
        self.closed = 0
        self._cb = None

    def open(self, on_block, *, samplerate, blocksize):
        if self.fail:
            raise OSError("permission denied")
        self._cb = on_block

    def close(self):
        self.closed += 1
        self._cb = None

    def feed(self, block):
        self._cb(block)


class FakeDetector:
    def __init__(self):
        self.closed = False

    def detect(self):
        return None

    def close(self):
        self.closed = True


@pytest.fixture
def ctx():
    context = ReactiveContext(background_publish=False)
    yield context
    context.shutdown()


class TestAudioWiring:
    """Frames flow into the store's music and reactivity slices."""

    def test_pump_reaches_store(self, ctx):
        src = FakeSource()
        assert ctx.attach_audio(src) is True
        src.feed(np.full(N, 0.5, dtype=np.float32))
        assert ctx.pump() is True
        snap = ctx.get_snapshot()
        assert snap.music.rms == pytest.approx(0.5, rel=1e-5)
        assert snap.music.energy == pytest.approx(0.075, rel=1e-5)

    def test_reactivity_follows_features(self, ctx):
        src = FakeSource()
        ctx.attach_audio(src)
        before = ctx.get_snapshot().reactivity
        for _ in range(5):
            src.feed(np.full(N, 0.5, dtype=np.float32))
            ctx.pump()
        after = ctx.get_snapshot().reactivity
        assert after is not before
        assert after.bass_level > 0.0

    def test_status_live(self, ctx):
        ctx.attach_audio(FakeSource())
        status = ctx.source_status()
        assert status.audio_source == "fake"
        assert status.audio_degraded is False
        assert status.error is None


class TestFallback:
    """Attach failures degrade to synthetic producers."""

    def test_failed_audio_falls_back(self, ctx):
        assert ctx.attach_audio(FakeSource(fail=True)) is False
        status = ctx.source_status()
        assert status.audio_source == "synthetic"
        assert status.audio_degraded is True
        assert "permission denied" in status.error
        assert ctx.degraded

    def test_no_detector_is_degraded(self, ctx):
        assert ctx.attach_pose(None) is False
        status = ctx.source_status()
        assert status.pose_source == "synthetic"
        assert status.pose_degraded is True

    def test_bad_detector_is_degraded(self, ctx):
        assert ctx.attach_pose(object()) is False
        assert ctx.source_status().pose_source == "synthetic"

    def test_detector_attached(self, ctx):
        det = FakeDetector()
        assert ctx.attach_pose(det) is True
        assert ctx.source_status().pose_source == "detector"
        ctx.shutdown()
        assert det.closed


class TestSwapAndShutdown:
    """Previous sources are released; shutdown runs once."""

    def test_swap_releases_previous(self, ctx):
        first, second = FakeSource(), FakeSource()
        ctx.attach_audio(first)
        ctx.attach_audio(second)
        assert first.closed == 1
        assert second.closed == 0

    def test_recovers_after_fallback(self, ctx):
        ctx.attach_audio(FakeSource(fail=True))
        assert ctx.attach_audio(FakeSource()) is True
        status = ctx.source_status()
        assert status.audio_degraded is False
        assert status.error is None

    def test_shutdown_idempotent(self):
        src = FakeSource()
        context = ReactiveContext(background_publish=False)
        context.attach_audio(src)
        context.shutdown()
        context.shutdown()
        assert src.closed == 1
        assert not context.mapper.running

    def test_context_manager(self):
        src = FakeSource()
        with ReactiveContext(background_publish=False) as context:
            context.attach_audio(src)
        assert src.closed == 1

    def test_params_writable_through_store(self, ctx):
        ctx.store.set_params({"hand_effect": {"ripple": {"radius": 0.3}}})
        assert ctx.get_snapshot().params.hand_effect["ripple"]["radius"] == 0.3
