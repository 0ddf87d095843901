# app.py
# Lean entrypoint: run the feature pipeline headless and log levels.
import logging

from devices.audio_input import InputDeviceSource
from services.orchestrator_master import ReactiveContext

if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(name)s %(levelname)s %(message)s")
    ctx = ReactiveContext(
        log_every=0.5,    # log audio features twice per second
    )
    ctx.run(
        source=InputDeviceSource(device=None, channels=1),  # optionally set a PortAudio device index or name
        detector=None,    # no camera: synthetic low-confidence pose
    )
