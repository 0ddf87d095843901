"""
Music Reactivity Mapper Tests

Mapping formulas, smoothing contraction, control clamping, presets and
the disabled (frozen) state.
"""

import pytest

from core.publisher import Publisher
from services.audio_features_service import AudioFeatures
from services.music_reactivity import (
    MusicAnalysis,
    MusicReactivityMapper,
    ReactivityParams,
    RhythmTracker,
    amplitude_target,
    color_intensity_target,
    distortion_target,
    map_targets,
    pulsation_target,
    rotation_target,
    smooth_value,
    speed_target,
)
from services.presets.reactivity import PRESETS


def features(**kw):
    return AudioFeatures(**kw)


class TestMappingFormulas:
    """Each target formula in isolation."""

    def test_speed_without_tempo(self):
        assert speed_target(MusicAnalysis()) == pytest.approx(1.0)

    def test_speed_tempo_capped(self):
        a = MusicAnalysis(tempo=480.0, beat_strength=1.0)
        assert speed_target(a) == pytest.approx(2.0 * 1.5)

    def test_amplitude(self):
        a = MusicAnalysis(energy=0.5, bass=1.0)
        assert amplitude_target(a) == pytest.approx(1.4 * 1.6)

    def test_color_intensity_capped(self):
        assert color_intensity_target(MusicAnalysis(treble=1.0, mid=1.0)) == 1.0
        assert color_intensity_target(MusicAnalysis(treble=0.5)) == pytest.approx(0.35)

    def test_pulsation(self):
        a = MusicAnalysis(beat_strength=0.5, rhythm_complexity=0.5)
        assert pulsation_target(a) == pytest.approx(0.55)

    def test_distortion(self):
        a = MusicAnalysis(energy=0.5, rhythm_complexity=0.5)
        assert distortion_target(a) == pytest.approx(0.5)

    def test_rotation(self):
        assert rotation_target(MusicAnalysis(tempo=100.0)) == pytest.approx(0.5)
        assert rotation_target(MusicAnalysis(tempo=300.0, rhythm_density=1.0)) == 1.0

    def test_targets_non_negative(self):
        targets = map_targets(MusicAnalysis())
        assert set(targets) == {
            "speed_multiplier", "amplitude_multiplier", "color_intensity",
            "pulsation_strength", "distortion_intensity", "rotation_speed",
        }
        assert all(v >= 0 for v in targets.values())


class TestSmoothing:
    """current + (target - current) * (1 - smoothing) is a contraction."""

    @pytest.mark.parametrize("s", [0.0, 0.4, 0.8, 0.95])
    def test_converges_without_overshoot(self, s):
        target = 0.7
        v = 0.0
        for _ in range(2000):
            v = smooth_value(v, target, s)
            assert v <= target + 1e-12
        assert v == pytest.approx(target, abs=1e-6)

    def test_full_smoothing_freezes(self):
        assert smooth_value(0.3, 1.0, 1.0) == 0.3

    def test_mapper_converges_to_target_times_sensitivity(self):
        mapper = MusicReactivityMapper()
        mapper.set_sensitivity(1.5)
        mapper.set_smoothing(0.8)
        f = features(energy=0.5, mid=0.4, high=0.6)
        expected = min(1.0, 0.6 * 0.7 + 0.4 * 0.5) * 1.5
        prev = 0.0
        for _ in range(300):
            p = mapper.update(f)
            assert prev <= p.color_intensity <= expected + 1e-12
            prev = p.color_intensity
        assert p.color_intensity == pytest.approx(expected, rel=1e-6)


class TestControls:
    """Enable, sensitivity and smoothing controls."""

    def test_sensitivity_clamped(self):
        mapper = MusicReactivityMapper()
        mapper.set_sensitivity(5.0)
        assert mapper.snapshot().sensitivity == 2.0
        mapper.set_sensitivity(-1.0)
        assert mapper.snapshot().sensitivity == 0.0

    def test_smoothing_clamped(self):
        mapper = MusicReactivityMapper()
        mapper.set_smoothing(1.5)
        assert mapper.snapshot().smoothing == 1.0
        mapper.set_smoothing(-0.5)
        assert mapper.snapshot().smoothing == 0.0

    def test_disabled_freezes_values(self):
        mapper = MusicReactivityMapper()
        mapper.update(features(energy=0.8, high=0.9, beat=True, onset=True))
        mapper.set_enabled(False)
        frozen = mapper.snapshot()
        for _ in range(10):
            mapper.update(features(energy=0.0))
        assert mapper.snapshot() == frozen

    def test_reenable_resumes(self):
        mapper = MusicReactivityMapper()
        mapper.set_enabled(False)
        mapper.set_enabled(True)
        before = mapper.snapshot().color_intensity
        mapper.update(features(energy=0.5, high=1.0))
        assert mapper.snapshot().color_intensity > before

    def test_getters_follow_snapshot(self):
        mapper = MusicReactivityMapper()
        mapper.update(features(energy=0.5, low=0.5, mid=0.2, high=0.3))
        p = mapper.snapshot()
        assert mapper.speed_multiplier() == p.speed_multiplier
        assert mapper.amplitude_multiplier() == p.amplitude_multiplier
        assert mapper.color_intensity() == p.color_intensity
        assert mapper.pulsation_strength() == p.pulsation_strength
        assert mapper.distortion_intensity() == p.distortion_intensity
        assert mapper.rotation_speed() == p.rotation_speed


class TestPresets:
    """Presets set {sensitivity, smoothing} in one write."""

    @pytest.mark.parametrize("name", ["subtle", "moderate", "intense", "extreme"])
    def test_apply(self, name):
        mapper = MusicReactivityMapper()
        seen = []
        mapper.subscribe(seen.append)
        assert mapper.apply_preset(name) is True
        p = mapper.snapshot()
        assert p.sensitivity == PRESETS[name].sensitivity
        assert p.smoothing == PRESETS[name].smoothing
        assert p.enabled is True
        # replay + exactly one atomic write
        assert len(seen) == 2

    def test_unknown_preset_ignored(self):
        mapper = MusicReactivityMapper()
        before = mapper.snapshot()
        assert mapper.apply_preset("nope") is False
        assert mapper.snapshot() == before

    def test_preset_does_not_reset_values(self):
        mapper = MusicReactivityMapper()
        mapper.update(features(energy=0.9, high=1.0))
        color = mapper.snapshot().color_intensity
        mapper.apply_preset("extreme")
        assert mapper.snapshot().color_intensity == color


class TestRhythmTracker:
    """Derived analysis inputs."""

    def test_beat_strength_decays(self):
        tracker = RhythmTracker(decay=0.5, clock=lambda: 0.0)
        assert tracker.update(features(beat=True, onset=True)).beat_strength == 1.0
        assert tracker.update(features()).beat_strength == pytest.approx(0.5)
        assert tracker.update(features()).beat_strength == pytest.approx(0.25)

    def test_tempo_from_beat_spacing(self):
        times = iter([0.0, 500.0, 1000.0])
        tracker = RhythmTracker(clock=lambda: next(times))
        a = None
        for _ in range(3):
            a = tracker.update(features(beat=True, onset=True, energy=0.5))
        assert a.tempo == pytest.approx(120.0)

    def test_no_tempo_with_single_beat(self):
        tracker = RhythmTracker(clock=lambda: 0.0)
        assert tracker.update(features(beat=True, onset=True)).tempo == 0.0

    def test_density_is_onset_ratio(self):
        tracker = RhythmTracker(window=4, clock=lambda: 0.0)
        a = None
        for onset in (True, False, True, False):
            a = tracker.update(features(onset=onset, energy=0.1))
        assert a.rhythm_density == pytest.approx(0.5)

    def test_complexity_zero_for_steady_energy(self):
        tracker = RhythmTracker(clock=lambda: 0.0)
        a = None
        for _ in range(10):
            a = tracker.update(features(energy=0.3))
        assert a.rhythm_complexity == pytest.approx(0.0, abs=1e-9)

    def test_bands_pass_through(self):
        tracker = RhythmTracker(clock=lambda: 0.0)
        a = tracker.update(features(low=0.1, mid=0.2, high=0.3, energy=0.4))
        assert (a.bass, a.mid, a.treble, a.energy) == (0.1, 0.2, 0.3, 0.4)


class TestWiring:
    """start/stop against an AudioFeatures publisher."""

    def test_start_stop(self):
        pub = Publisher(AudioFeatures(), name="features")
        mapper = MusicReactivityMapper()
        mapper.start(pub)
        mapper.start(pub)
        assert pub.subscriber_count() == 1
        assert mapper.running
        pub.publish(features(energy=0.5, high=1.0))
        moved = mapper.snapshot()
        assert moved.treble_level == 1.0
        mapper.stop()
        assert not mapper.running
        pub.publish(features(energy=0.0))
        assert mapper.snapshot() == moved

    def test_defaults(self):
        p = ReactivityParams()
        assert (p.enabled, p.sensitivity, p.smoothing) == (True, 1.0, 0.8)
        assert p.speed_multiplier == 1.0 and p.amplitude_multiplier == 1.0
