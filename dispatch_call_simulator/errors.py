#!/usr/bin/env python3
"""
Exceptions raised by the Dispatch Call Simulator.

Transient network drops, unusable model output and synthesis failures are
absorbed by the component that sees them. Only microphone denial and an
exhausted reconnect budget end the call.
"""

from typing import Optional


class SimulatorError(Exception):
    """Base class for all simulator errors."""


class InvalidTransitionError(SimulatorError):
    """A call control operation was requested in a state that does not allow it."""

    def __init__(self, operation: str, state):
        self.operation = operation
        self.state = state
        super().__init__(f"cannot {operation} while call is {getattr(state, 'value', state)}")


class MicrophoneUnavailableError(SimulatorError):
    """The capture device is missing or permission to open it was refused."""


class TranscriptionError(SimulatorError):
    """The transcription connection failed."""


class ReconnectExhaustedError(TranscriptionError):
    """Every reconnect attempt to the transcription service failed."""

    def __init__(self, attempts: int, last_error: Optional[BaseException] = None):
        self.attempts = attempts
        self.last_error = last_error
        detail = f": {last_error}" if last_error else ""
        super().__init__(f"transcription reconnect failed after {attempts} attempts{detail}")


class GenerationError(SimulatorError):
    """The text generation service failed or returned nothing usable."""


class GenerationInProgressError(GenerationError):
    """A second reply was requested while one is still being generated."""


class SynthesisError(SimulatorError):
    """Speech synthesis for a sentence failed."""


class PlaybackError(SimulatorError):
    """The output device could not play a synthesized sentence."""


# Conditions that force the call to end instead of being absorbed.
CALL_ENDING_ERRORS = (MicrophoneUnavailableError, ReconnectExhaustedError)
