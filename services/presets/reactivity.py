# services/presets/reactivity.py
# Named music-reactivity presets: fixed {sensitivity, smoothing} pairs, applied atomically.

from dataclasses import dataclass
from typing import Dict


@dataclass(frozen=True)
class ReactivityPreset:
    enabled: bool
    sensitivity: float
    smoothing: float


PRESETS: Dict[str, ReactivityPreset] = {
    "subtle": ReactivityPreset(enabled=True, sensitivity=0.5, smoothing=0.9),
    "moderate": ReactivityPreset(enabled=True, sensitivity=1.0, smoothing=0.8),
    "intense": ReactivityPreset(enabled=True, sensitivity=1.5, smoothing=0.6),
    "extreme": ReactivityPreset(enabled=True, sensitivity=2.0, smoothing=0.4),
}


def preset_names():
    return list(PRESETS)
