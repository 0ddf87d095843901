"""
examples/demo_live_features.py

Walks through the reactive pipeline end to end without a renderer:
1. Plays a media file (or falls back to the synthetic tone) with an analysis tap.
2. Prints the store snapshot a renderer would read every frame.
3. Cycles the reactivity presets.
4. Swaps to the microphone and back, showing that the previous source is released.

Intended as both a diagnostic and a usage example for renderer authors.

Usage:
    python -m examples.demo_live_features [path/to/track.wav]
"""

import logging
import sys
import time

from core.audio_pipeline import AttachError
from devices.audio_input import InputDeviceSource, MediaSource
from services.orchestrator_master import ReactiveContext
from services.presets.reactivity import preset_names


def print_snapshot(ctx: ReactiveContext) -> None:
    snap = ctx.get_snapshot()
    m, r = snap.music, snap.reactivity
    print(
        f"   v{snap.version:<6d} energy={m.energy:.3f} onset={m.onset!s:<5} beat={m.beat!s:<5} "
        f"phrase={m.phrase} bands=({m.low:.2f},{m.mid:.2f},{m.high:.2f}) "
        f"speed×{r.speed_multiplier:.2f} amp×{r.amplitude_multiplier:.2f} "
        f"color={r.color_intensity:.2f} sharp={snap.motion.sharpness if snap.motion else 0:.2f}"
    )


def main():
    logging.basicConfig(level=logging.INFO)
    path = sys.argv[1] if len(sys.argv) > 1 else None

    with ReactiveContext() as ctx:
        # ----------------------------------------------------------------
        # 1) Media playback (or synthetic fallback)
        # ----------------------------------------------------------------
        print("→ Step 1: Attach media source")
        source = None
        if path:
            try:
                source = MediaSource.from_file(path)
            except AttachError as e:
                print(f"   Could not load {path}: {e}")
        live = ctx.attach_audio(source)
        ctx.attach_pose(None)
        print(f"   live={live} status={ctx.source_status()}")

        # ----------------------------------------------------------------
        # 2) What a renderer sees, ~4 times a second
        # ----------------------------------------------------------------
        print("→ Step 2: Snapshots")
        for _ in range(20):
            print_snapshot(ctx)
            time.sleep(0.25)

        # ----------------------------------------------------------------
        # 3) Presets
        # ----------------------------------------------------------------
        print("→ Step 3: Reactivity presets")
        for name in preset_names():
            ctx.mapper.apply_preset(name)
            time.sleep(1.0)
            print(f"   {name}:")
            print_snapshot(ctx)

        # ----------------------------------------------------------------
        # 4) Source swap
        # ----------------------------------------------------------------
        print("→ Step 4: Swap to microphone")
        live = ctx.attach_audio(InputDeviceSource())
        print(f"   live={live} status={ctx.source_status()}")
        time.sleep(2.0)
        print_snapshot(ctx)

    print("✅ Demo complete.")


if __name__ == "__main__":
    main()
