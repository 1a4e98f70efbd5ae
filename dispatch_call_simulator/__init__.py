#!/usr/bin/env python3
"""
Dispatch Call Simulator
=======================

A training simulator for 911 call-takers: the dispatcher talks into a
microphone, speech is transcribed live, a language-model caller answers
sentence by sentence through TTS, and the dispatcher can cut the caller off
mid-sentence exactly as on a real line.

Pipeline
--------
1. Microphone capture @ 16 kHz mono (20 ms frames) using sounddevice RawInputStream.
2. Streaming speech-to-text over a websocket (Deepgram protocol) with bounded reconnect.
3. Streaming caller replies from an Ollama model, segmented into sentences as tokens arrive.
4. edge-tts synthesis of up to 3 sentences ahead, played strictly in order.
5. A call state machine (ringing -> active <-> paused -> ended) handling interruption
   and silence timeouts.

Quick Start
-----------
```python
import asyncio
from dispatch_call_simulator import CallController, ScenarioParameters

async def main():
    call = CallController(ScenarioParameters(scenario="Kitchen fire", cooperation_level=25))
    await call.ring()
    await call.answer()
    await asyncio.sleep(120)
    await call.hang_up()

asyncio.run(main())
```
"""

from .config import Config, default_config
from .errors import (
    GenerationError,
    InvalidTransitionError,
    MicrophoneUnavailableError,
    ReconnectExhaustedError,
    SimulatorError,
    SynthesisError,
)
from .generation import CallerResponse, ResponseGenerator
from .llm import OllamaChatClient, sentence_stream
from .models import CallSession, CallState, ConversationTurn, Role, SentenceItem, TranscriptEvent
from .pipeline import SentencePipeline
from .scenario import ScenarioParameters
from .session import CallController, CallObserver, ServiceFactory
from .transcription import ConnectionState, TranscriptionStreamManager
from .tts import BaseSynthesizer, EdgeTTSSynthesizer

__version__ = "1.0.0"
__all__ = [
    'Config',
    'default_config',
    'SimulatorError',
    'InvalidTransitionError',
    'MicrophoneUnavailableError',
    'ReconnectExhaustedError',
    'GenerationError',
    'SynthesisError',
    'CallerResponse',
    'ResponseGenerator',
    'OllamaChatClient',
    'sentence_stream',
    'CallSession',
    'CallState',
    'ConversationTurn',
    'Role',
    'SentenceItem',
    'TranscriptEvent',
    'SentencePipeline',
    'ScenarioParameters',
    'CallController',
    'CallObserver',
    'ServiceFactory',
    'ConnectionState',
    'TranscriptionStreamManager',
    'BaseSynthesizer',
    'EdgeTTSSynthesizer',
]
