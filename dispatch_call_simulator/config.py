#!/usr/bin/env python3
"""
Configuration settings for the Dispatch Call Simulator using Pydantic.
"""

import os
from typing import Dict, Literal, Mapping, Optional, Union
from urllib.parse import urlencode

from pydantic import BaseModel, ConfigDict, Field, computed_field, field_validator


CooperationTier = Literal["low", "medium", "high"]

# Environment variable -> config field. Only variables that are set override defaults.
ENV_FIELDS: Dict[str, str] = {
    "STT_URL": "stt_url",
    "DEEPGRAM_API_KEY": "stt_api_key",
    "STT_MODEL": "stt_model",
    "STT_LANGUAGE": "stt_language",
    "OLLAMA_HOST": "ollama_host",
    "OLLAMA_MODEL": "ollama_model",
    "TTS_VOICE": "tts_voice",
    "TTS_RATE": "tts_rate",
    "MICROPHONE_DEVICE": "microphone_device",
    "LOG_LEVEL": "log_level",
}


class Config(BaseModel):
    """
    Configuration class for the Dispatch Call Simulator using Pydantic for validation.

    Also holds the call timing constants: interruption threshold, silence
    timeouts and cooperation tier boundaries.
    """

    model_config = ConfigDict(
        extra='forbid',
        validate_assignment=True,
        frozen=False,
    )

    # Audio Configuration
    sample_rate: int = Field(
        default=16000,
        description="Capture and wire sample rate in Hz (mono, 16-bit linear PCM)",
        ge=8000,
        le=48000
    )

    frame_ms: int = Field(
        default=20,
        description="Milliseconds of audio per captured frame",
        ge=5,
        le=100
    )

    capture_queue_frames: int = Field(
        default=200,
        description="Captured frames buffered while the transcription socket is unavailable",
        ge=1,
        le=10000
    )

    microphone_device: Optional[Union[int, str]] = Field(
        default=None,
        description="sounddevice input device index or name (None = system default)"
    )

    # Speech-to-Text Configuration
    stt_url: str = Field(
        default="wss://api.deepgram.com/v1/listen",
        description="Streaming transcription endpoint (provider or credential proxy)"
    )

    stt_api_key: Optional[str] = Field(
        default=None,
        description="Provider token; omit when connecting through the credential proxy"
    )

    stt_model: str = Field(
        default="nova-2",
        description="Streaming transcription model"
    )

    stt_language: str = Field(
        default="en-US",
        description="Transcription language"
    )

    stt_endpointing_ms: int = Field(
        default=500,
        description="Trailing silence before the provider finalizes a transcript (ms)",
        ge=10,
        le=5000
    )

    stt_open_timeout_sec: float = Field(
        default=10.0,
        description="Timeout for the websocket opening handshake",
        gt=0.0,
        le=60.0
    )

    stt_keepalive_sec: float = Field(
        default=5.0,
        description="Interval between KeepAlive messages while audio forwarding is paused",
        gt=0.0,
        le=60.0
    )

    reconnect_attempts: int = Field(
        default=3,
        description="Reconnect attempts after an unrequested close before giving up",
        ge=0,
        le=10
    )

    reconnect_base_delay_sec: float = Field(
        default=1.0,
        description="Backoff before the first reconnect attempt; doubles per attempt",
        ge=0.0,
        le=30.0
    )

    # LLM Configuration
    ollama_host: Optional[str] = Field(
        default=None,
        description="Ollama server URL (None = client default / OLLAMA_HOST)"
    )

    ollama_model: str = Field(
        default="llama3.1:8b",
        description="Ollama model name used for the caller persona"
    )

    max_tokens: int = Field(
        default=60,
        description="Maximum tokens per streamed caller reply",
        ge=1,
        le=4096
    )

    temperature: float = Field(default=0.8, ge=0.0, le=2.0)
    top_p: float = Field(default=0.9, ge=0.0, le=1.0)
    presence_penalty: float = Field(default=0.8, ge=-2.0, le=2.0)
    frequency_penalty: float = Field(default=0.5, ge=-2.0, le=2.0)

    retry_max_tokens: int = Field(
        default=40,
        description="Maximum tokens for the non-streaming in-character retry",
        ge=1,
        le=4096
    )

    retry_temperature: float = Field(default=0.7, ge=0.0, le=2.0)

    fallback_utterance: str = Field(
        default="Please help me! I need police right now!",
        description="Spoken when both the streamed reply and the retry are unusable"
    )

    # Sentence segmentation
    sentence_end_chars: str = Field(
        default=r"\.\!\?",
        description="Regex character set for sentence endings"
    )

    # Text-to-Speech / Playback Configuration
    tts_voice: str = Field(
        default="en-US-AriaNeural",
        description="edge-tts voice name"
    )

    tts_rate: str = Field(
        default="+10%",
        description="edge-tts speaking rate adjustment, signed percent (e.g. +10%, -5%)",
        pattern=r"^[+-]\d+%$"
    )

    tts_timeout_sec: float = Field(
        default=10.0,
        description="Upper bound for a single sentence synthesis request",
        gt=0.0,
        le=120.0
    )

    prefetch_concurrency: int = Field(
        default=3,
        description="Sentences synthesized ahead of playback concurrently",
        ge=1,
        le=16
    )

    playback_poll_sec: float = Field(
        default=0.02,
        description="Polling interval while waiting for playback to finish",
        gt=0.0,
        le=1.0
    )

    # Call Session Configuration
    interruption_min_chars: int = Field(
        default=2,
        description="A partial transcript longer than this interrupts caller playback",
        ge=0,
        le=100
    )

    cooperation_low_threshold: int = Field(default=30, ge=0, le=100)
    cooperation_high_threshold: int = Field(default=70, ge=0, le=100)

    silence_timeout_low_sec: float = Field(
        default=3.0,
        description="Silence before an uncooperative caller keeps talking",
        gt=0.0
    )

    silence_timeout_medium_sec: float = Field(default=5.0, gt=0.0)

    silence_timeout_high_sec: float = Field(
        default=8.0,
        description="Silence before a cooperative caller keeps talking",
        gt=0.0
    )

    max_silence_continuations: int = Field(
        default=1,
        description="Unprompted caller continuations allowed per dispatcher turn",
        ge=0,
        le=10
    )

    # Runtime Configuration
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO",
        description="Root log level used by the command line runner"
    )

    @computed_field
    @property
    def frame_samples(self) -> int:
        """Number of audio samples per frame."""
        return int(self.sample_rate * self.frame_ms / 1000)

    @computed_field
    @property
    def stt_query(self) -> str:
        """Query string negotiating the wire format with the transcription service."""
        return urlencode({
            "encoding": "linear16",
            "sample_rate": self.sample_rate,
            "channels": 1,
            "model": self.stt_model,
            "language": self.stt_language,
            "interim_results": "true",
            "punctuate": "true",
            "smart_format": "true",
            "endpointing": self.stt_endpointing_ms,
            "vad_events": "true",
        })

    @field_validator('fallback_utterance')
    @classmethod
    def validate_fallback_utterance(cls, v):
        """Ensure the fallback utterance has something to say."""
        if not v.strip():
            raise ValueError("fallback_utterance cannot be empty")
        return v

    @field_validator('log_level', mode='before')
    @classmethod
    def normalize_log_level(cls, v):
        if isinstance(v, str):
            return v.upper()
        return v

    def stt_endpoint(self) -> str:
        """Full transcription URL including the negotiated query parameters."""
        sep = '&' if '?' in self.stt_url else '?'
        return f"{self.stt_url}{sep}{self.stt_query}"

    def cooperation_tier(self, level: int) -> CooperationTier:
        """Bucket a 0-100 cooperation level into the persona tier."""
        if level < self.cooperation_low_threshold:
            return "low"
        if level < self.cooperation_high_threshold:
            return "medium"
        return "high"

    def silence_timeout_for(self, level: int) -> float:
        """Silence timeout in seconds; less cooperative callers wait less."""
        tier = self.cooperation_tier(level)
        if tier == "low":
            return self.silence_timeout_low_sec
        if tier == "medium":
            return self.silence_timeout_medium_sec
        return self.silence_timeout_high_sec

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None, **overrides) -> "Config":
        """Build a config from environment variables, then explicit overrides."""
        environ = os.environ if environ is None else environ
        values = {}
        for var, field in ENV_FIELDS.items():
            raw = environ.get(var)
            if raw:
                values[field] = raw
        device = values.get("microphone_device")
        if isinstance(device, str) and device.isdigit():
            values["microphone_device"] = int(device)
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)

    def model_dump_config(self) -> dict:
        """Return configuration as a dictionary, including computed fields."""
        data = self.model_dump()
        data['stt_api_key'] = '***' if self.stt_api_key else None
        return data


# Default configuration instance
default_config = Config()
