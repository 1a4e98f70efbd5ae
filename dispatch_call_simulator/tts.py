#!/usr/bin/env python3
"""
Text-to-Speech synthesizers for the Dispatch Call Simulator.
"""

import asyncio
import logging

from .config import default_config
from .errors import SynthesisError

log = logging.getLogger(__name__)


class BaseSynthesizer:
    """Base class for TTS synthesizers: text in, compressed audio bytes out."""

    async def synthesize(self, text: str) -> bytes:  # pragma: no cover - interface
        raise NotImplementedError

    async def close(self):  # optional cleanup
        pass


class EdgeTTSSynthesizer(BaseSynthesizer):
    """Edge TTS synthesizer; one request per sentence, MP3 payload.

    Playback is left to ``AudioPlayer`` so several sentences can be
    synthesized ahead of the one currently on the speaker.
    """

    def __init__(self, config=None, voice=None, rate=None):
        self.config = config or default_config
        self.voice = voice or self.config.tts_voice or 'en-US-AriaNeural'
        self.rate = rate or self.config.tts_rate
        try:
            import edge_tts  # noqa: F401
        except ImportError:
            log.error("edge-tts is not installed. Install: pip install 'dispatch-call-simulator[edge-tts]'")
            raise

    async def _collect(self, text: str) -> bytes:
        import edge_tts
        communicate = edge_tts.Communicate(text, voice=self.voice, rate=self.rate)
        audio_bytes = bytearray()
        async for chunk in communicate.stream():
            if chunk["type"] == "audio":
                audio_bytes.extend(chunk["data"])
        return bytes(audio_bytes)

    async def synthesize(self, text: str) -> bytes:
        import aiohttp
        import edge_tts
        try:
            data = await asyncio.wait_for(self._collect(text), timeout=self.config.tts_timeout_sec)
        except asyncio.TimeoutError as e:
            raise SynthesisError(f"synthesis timed out after {self.config.tts_timeout_sec}s") from e
        except (edge_tts.exceptions.EdgeTTSException, aiohttp.ClientError, OSError, ValueError) as e:
            raise SynthesisError(f"synthesis failed: {e}") from e
        if not data:
            raise SynthesisError(f"no audio returned for {text!r}")
        log.debug("synthesized %d bytes for %r", len(data), text)
        return data


def create_synthesizer(config=None) -> BaseSynthesizer:
    """Factory for the configured synthesizer."""
    return EdgeTTSSynthesizer(config)
