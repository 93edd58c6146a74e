"""Audio-finish estimation.

The service reports a response as done once every audio byte has been sent,
which is well before the playback device has finished rendering it. Callers
wait here before unmuting the microphone or hanging up.

Two strategies, layered:
1. Silence detection on the rendered output: short-window RMS energy fed by
   whoever owns the output device. After non-silence has been heard, a
   sustained quiet stretch of ``silence_hold_ms`` confirms the end. Bounded by
   ``MAX_SILENCE_WAIT_MS``.
2. Transcript-length estimate: a linear function of the characters spoken,
   clamped to a sane range. Used whenever no output monitor is attached.
"""

import asyncio
import logging
import math
import struct
import time
from dataclasses import dataclass
from typing import Optional

logger = logging.getLogger(__name__)

SILENCE_THRESHOLD = 0.01
MAX_SILENCE_WAIT_MS = 15000
POLL_INTERVAL_S = 0.03
# A monitor that has not been fed for this long is treated as silent
STALE_FRAME_S = 0.1


@dataclass(frozen=True)
class PlaybackAllowance:
    ms_per_char: float
    min_ms: float
    max_ms: float
    silence_hold_ms: float

    def estimate_ms(self, chars: int) -> float:
        return min(self.max_ms, max(self.min_ms, chars * self.ms_per_char))


TURN_ALLOWANCE = PlaybackAllowance(ms_per_char=85, min_ms=800, max_ms=10000, silence_hold_ms=400)
GOODBYE_ALLOWANCE = PlaybackAllowance(ms_per_char=90, min_ms=2000, max_ms=12000, silence_hold_ms=800)


def rms(pcm16: bytes) -> float:
    """Root-mean-square level of little-endian 16-bit PCM, normalized to 0..1."""
    n = len(pcm16) // 2
    if n == 0:
        return 0.0
    samples = struct.unpack(f"<{n}h", pcm16[: n * 2])
    return math.sqrt(sum(s * s for s in samples) / n) / 32768.0


class OutputLevelMonitor:
    """Tracks the energy of audio actually being rendered to the speaker."""

    def __init__(self, attached: bool = True):
        self.attached = attached
        self.level = 0.0
        self.last_fed_at: Optional[float] = None

    def feed(self, pcm16: bytes) -> None:
        self.level = rms(pcm16)
        self.last_fed_at = time.monotonic()

    def current_level(self) -> float:
        if self.last_fed_at is None:
            return 0.0
        if time.monotonic() - self.last_fed_at > STALE_FRAME_S:
            return 0.0
        return self.level

    def is_silent(self, threshold: float = SILENCE_THRESHOLD) -> bool:
        return self.current_level() < threshold


async def wait_for_silence(
    monitor: OutputLevelMonitor,
    allowance: PlaybackAllowance,
    estimate_ms: float,
    max_wait_ms: float = MAX_SILENCE_WAIT_MS,
    poll_interval: float = POLL_INTERVAL_S,
) -> bool:
    """Wait until rendered output goes quiet. Returns True if silence was confirmed.

    Silence only counts after some non-silence has been heard. If nothing has
    been heard by the time the length estimate elapses, playback is assumed
    finished.
    """
    started = time.monotonic()
    heard_audio = False
    silent_since: Optional[float] = None

    while True:
        now = time.monotonic()
        elapsed_ms = (now - started) * 1000

        if monitor.is_silent():
            if heard_audio:
                if silent_since is None:
                    silent_since = now
                elif (now - silent_since) * 1000 >= allowance.silence_hold_ms:
                    return True
        else:
            heard_audio = True
            silent_since = None

        if not heard_audio and elapsed_ms >= estimate_ms:
            return False
        if elapsed_ms >= max_wait_ms:
            logger.warning("Output never went quiet after %.0fms, giving up", elapsed_ms)
            return False

        await asyncio.sleep(poll_interval)


async def wait_for_playback(
    chars: int,
    allowance: PlaybackAllowance,
    monitor: Optional[OutputLevelMonitor] = None,
) -> str:
    """Wait out the rest of the assistant's audio. Returns the strategy used."""
    estimate_ms = allowance.estimate_ms(chars)
    if monitor is not None and monitor.attached:
        confirmed = await wait_for_silence(monitor, allowance, estimate_ms)
        strategy = "silence" if confirmed else "silence-timeout"
    else:
        await asyncio.sleep(estimate_ms / 1000)
        strategy = "estimate"
    logger.debug("Playback wait done via %s (%d chars, estimate %.0fms)", strategy, chars, estimate_ms)
    return strategy
