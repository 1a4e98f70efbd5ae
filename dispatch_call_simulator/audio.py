#!/usr/bin/env python3
"""
Microphone capture, level metering and caller playback.
"""

import asyncio
import io
import logging
import math
from typing import AsyncGenerator, Callable, List, Optional

import numpy as np

from .config import default_config
from .errors import MicrophoneUnavailableError, PlaybackError

log = logging.getLogger(__name__)

LevelListener = Callable[[int], None]

# dBFS mapped onto the 0-100 meter.
LEVEL_FLOOR_DB = -60.0


def frame_level(frame: bytes) -> int:
    """Coarse 0-100 loudness of one int16 PCM frame."""
    samples = np.frombuffer(frame, dtype=np.int16).astype(np.float32) / 32768.0
    if not len(samples):
        return 0
    rms = float(np.sqrt(np.mean(samples * samples)))
    if rms <= 0.0:
        return 0
    db = 20.0 * math.log10(rms)
    scaled = (db - LEVEL_FLOOR_DB) / -LEVEL_FLOOR_DB * 100.0
    return int(min(100.0, max(0.0, scaled)))


class AudioSource:
    """Base class for sources of 16-bit mono PCM frames."""

    async def start(self):  # pragma: no cover - interface
        raise NotImplementedError

    def pause(self):
        pass

    def resume(self):
        pass

    def frames(self) -> AsyncGenerator[bytes, None]:  # pragma: no cover - interface
        raise NotImplementedError

    def add_level_listener(self, listener: LevelListener):
        pass

    async def close(self):
        pass


class MicrophoneSource(AudioSource):
    """sounddevice RawInputStream feeding an asyncio.Queue.

    The PortAudio callback runs on its own thread; each frame is handed to the
    event loop with ``call_soon_threadsafe`` so the queue and level listeners
    are only touched from the loop. When the queue is full the oldest frame is
    dropped.
    """

    def __init__(self, config=None, device=None):
        self.config = config or default_config
        self.device = device if device is not None else self.config.microphone_device
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=self.config.capture_queue_frames)
        self.stream = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._listeners: List[LevelListener] = []
        self._closed = False
        self.dropped_frames = 0

    def add_level_listener(self, listener: LevelListener):
        self._listeners.append(listener)

    async def start(self):
        """Open the input device. Raises MicrophoneUnavailableError when it cannot."""
        if self.stream is not None:
            return
        try:
            import sounddevice as sd
        except OSError as e:
            raise MicrophoneUnavailableError(f"PortAudio not available: {e}") from e

        self._loop = asyncio.get_running_loop()

        def audio_callback(indata, frames, time_info, status):
            if status.input_overflow:
                log.debug("input overflow")
            if self._closed:
                raise sd.CallbackStop
            self._loop.call_soon_threadsafe(self._push, bytes(indata))

        try:
            self.stream = sd.RawInputStream(
                samplerate=self.config.sample_rate,
                blocksize=self.config.frame_samples,
                channels=1,
                dtype='int16',
                device=self.device,
                callback=audio_callback,
            )
            self.stream.start()
        except (sd.PortAudioError, ValueError) as e:
            self.stream = None
            raise MicrophoneUnavailableError(f"cannot open microphone {self.device!r}: {e}") from e
        log.info("microphone opened device=%r rate=%d", self.device, self.config.sample_rate)

    def _push(self, frame: bytes):
        if self._closed:
            return
        level = frame_level(frame)
        for listener in self._listeners:
            listener(level)
        try:
            self.queue.put_nowait(frame)
        except asyncio.QueueFull:
            self.queue.get_nowait()
            self.queue.put_nowait(frame)
            self.dropped_frames += 1

    def pause(self):
        """Stop capturing; the device stays open for a cheap resume."""
        if self.stream is not None and self.stream.active:
            self.stream.stop()
        self._drain()

    def resume(self):
        if self.stream is not None and not self.stream.active:
            self.stream.start()

    def _drain(self):
        while not self.queue.empty():
            self.queue.get_nowait()

    async def frames(self) -> AsyncGenerator[bytes, None]:
        """Captured frames in capture order until the source is closed."""
        while not self._closed:
            frame = await self.queue.get()
            if frame is None:
                break
            yield frame

    async def close(self):
        if self._closed:
            return
        self._closed = True
        if self.stream is not None:
            self.stream.stop()
            self.stream.close()
            self.stream = None
            log.info("microphone released")
        self._drain()
        self.queue.put_nowait(None)


class LevelMonitor:
    """Holds the microphone while no transcription is running, for the level meter only."""

    def __init__(self, source: AudioSource, on_level: Optional[LevelListener] = None):
        self.source = source
        if on_level is not None:
            source.add_level_listener(on_level)
        self.active = False

    async def start(self):
        await self.source.start()
        self.active = True

    async def release(self):
        """Hand the device back before another component opens it."""
        if self.active:
            self.active = False
            await self.source.close()


class AudioPlayer:
    """Plays compressed sentence audio on the default output device.

    Uses pydub to decode MP3 and simpleaudio to play the PCM buffer. Only one
    buffer plays at a time; ``stop`` cuts the current one off immediately.
    """

    def __init__(self, config=None, gain: float = 1.0):
        self.config = config or default_config
        self.gain = min(1.0, max(0.1, gain))
        self._current = None
        try:
            import pydub  # noqa: F401
            import simpleaudio  # noqa: F401
        except ImportError:
            log.error("Missing packages. Install: pip install pydub simpleaudio")
            raise

    def _decode(self, audio: bytes):
        from pydub import AudioSegment
        from pydub.exceptions import CouldntDecodeError
        try:
            segment = AudioSegment.from_file(io.BytesIO(audio), format="mp3")
        except (CouldntDecodeError, OSError) as e:
            raise PlaybackError(f"cannot decode caller audio: {e}") from e
        segment = segment.set_channels(1).set_sample_width(2)
        if self.gain < 1.0:
            segment = segment.apply_gain(20.0 * math.log10(self.gain))
        return segment

    @property
    def playing(self) -> bool:
        return self._current is not None and self._current.is_playing()

    async def play(self, audio: bytes):
        """Play one payload; returns when it finished or was stopped."""
        import simpleaudio as sa
        segment = await asyncio.to_thread(self._decode, audio)
        try:
            play_obj = sa.play_buffer(
                segment.raw_data, num_channels=1, bytes_per_sample=2, sample_rate=segment.frame_rate
            )
        except Exception as e:
            raise PlaybackError(f"output device refused playback: {e}") from e
        self._current = play_obj
        try:
            while play_obj.is_playing():
                await asyncio.sleep(self.config.playback_poll_sec)
        finally:
            if play_obj.is_playing():
                play_obj.stop()
            if self._current is play_obj:
                self._current = None

    def stop(self):
        if self._current is not None:
            self._current.stop()
            self._current = None
