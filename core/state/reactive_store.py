# core/state/reactive_store.py
# Single-writer-per-slice state with immutable snapshots for lock-free renderer reads.
from __future__ import annotations
from dataclasses import dataclass, field, fields, replace
from types import MappingProxyType
from typing import Any, Mapping, Optional, Union
import threading

from core.motion_features import MotionFeatures
from core.publisher import Callback, Publisher, Unsubscribe
from services.audio_features_service import AudioFeatures
from services.music_reactivity import ReactivityParams


def freeze(value: Any) -> Any:
    """Read-only view of nested mappings (copied, so later writes to the source don't leak)."""
    if isinstance(value, Mapping):
        return MappingProxyType({k: freeze(v) for k, v in value.items()})
    return value


def thaw(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {k: thaw(v) for k, v in value.items()}
    return value


def deep_merge(base: Mapping[str, Any], patch: Mapping[str, Any], depth: int = 1) -> dict:
    """
    Merge `patch` into a copy of `base`. Nested mappings are merged (not
    replaced) for `depth` further levels; below that, patch values win.
    """
    out = thaw(base)
    for key, value in patch.items():
        current = out.get(key)
        if depth > 0 and isinstance(value, Mapping) and isinstance(current, Mapping):
            out[key] = deep_merge(current, value, depth - 1)
        else:
            out[key] = thaw(value)
    return out


DEFAULT_HAND_EFFECT = {"type": "none", "hand_selection": "none"}


@dataclass(frozen=True)
class VisualParams:
    """User / preset editable visual parameters."""
    speed: float = 0.6
    intensity: float = 0.8
    hue: float = 210.0
    music_react: float = 0.9     # 0..1
    motion_react: float = 0.9    # 0..1
    mode: str = "auto"
    fx_mode: str = "cursor"      # 'cursor' | 'pose'
    is_active: bool = False
    hand_effect: Mapping[str, Any] = field(default_factory=lambda: freeze(DEFAULT_HAND_EFFECT))


_CORE_FIELDS = frozenset(f.name for f in fields(VisualParams)) - {"hand_effect"}


@dataclass(frozen=True)
class UpdateCoreParams:
    """Replace scalar fields of VisualParams."""
    fields: Mapping[str, Any]


@dataclass(frozen=True)
class UpdateHandEffect:
    """
    Merge into hand_effect. Named sub-effects (ripple, smoke, ...) are merged
    key by key, so updating one never clears its siblings.
    """
    changes: Mapping[str, Any]


ParamsUpdate = Union[UpdateCoreParams, UpdateHandEffect]


def apply_update(params: VisualParams, update: ParamsUpdate) -> VisualParams:
    if isinstance(update, UpdateCoreParams):
        unknown = set(update.fields) - _CORE_FIELDS
        if unknown:
            raise ValueError(f"Unknown visual parameter(s): {sorted(unknown)}")
        return replace(params, **dict(update.fields))
    if isinstance(update, UpdateHandEffect):
        merged = deep_merge(params.hand_effect, update.changes, depth=1)
        return replace(params, hand_effect=freeze(merged))
    raise TypeError(f"Unsupported params update: {type(update)!r}")


def split_partial(partial: Mapping[str, Any]) -> list:
    """A plain partial dict -> typed updates (core fields first, then hand_effect)."""
    updates = []
    core = {k: v for k, v in partial.items() if k != "hand_effect"}
    if core:
        updates.append(UpdateCoreParams(core))
    if "hand_effect" in partial:
        updates.append(UpdateHandEffect(partial["hand_effect"]))
    return updates


@dataclass(frozen=True)
class Snapshot:
    music: AudioFeatures = field(default_factory=AudioFeatures)
    motion: Optional[MotionFeatures] = None
    reactivity: ReactivityParams = field(default_factory=ReactivityParams)
    params: VisualParams = field(default_factory=VisualParams)
    version: int = 0


class ReactiveStateStore:
    """
    Latest music, motion, reactivity and params in one immutable Snapshot.

    Writers build a new Snapshot and swap the reference under a writer lock;
    get_snapshot() is a plain attribute read, so renderers never lock and
    never see a half-applied write. No history is kept.
    """

    def __init__(self, params: Optional[VisualParams] = None):
        self._snapshot = Snapshot(params=params or VisualParams())
        self._write_lock = threading.Lock()
        self._changes: Publisher[Snapshot] = Publisher(self._snapshot, name="store")

    def get_snapshot(self) -> Snapshot:
        return self._snapshot

    def set_music(self, music: AudioFeatures) -> Snapshot:
        return self._commit(music=music)

    def set_motion(self, motion: Optional[MotionFeatures]) -> Snapshot:
        return self._commit(motion=motion)

    def set_reactivity(self, reactivity: ReactivityParams) -> Snapshot:
        return self._commit(reactivity=reactivity)

    def set_params(self, update: Union[ParamsUpdate, Mapping[str, Any]]) -> Snapshot:
        updates = split_partial(update) if isinstance(update, Mapping) else [update]
        with self._write_lock:
            params = self._snapshot.params
            for u in updates:
                params = apply_update(params, u)
            snap = replace(self._snapshot, params=params, version=self._snapshot.version + 1)
            self._snapshot = snap
        self._changes.publish(snap)
        return snap

    def subscribe(self, fn: Callback) -> Unsubscribe:
        return self._changes.subscribe(fn)

    def _commit(self, **slices) -> Snapshot:
        with self._write_lock:
            snap = replace(self._snapshot, version=self._snapshot.version + 1, **slices)
            self._snapshot = snap
        self._changes.publish(snap)
        return snap
