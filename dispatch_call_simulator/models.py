#!/usr/bin/env python3
"""
Data model shared by the call pipeline: call state, turns, transcript events
and sentence items.
"""

import enum
import time
import uuid
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, List, Optional, Tuple, Union

if TYPE_CHECKING:
    from .scenario import ScenarioParameters

SILENCE_MARKER = "..."


class CallState(enum.Enum):
    IDLE = "idle"
    RINGING = "ringing"
    ACTIVE = "active"
    PAUSED = "paused"
    ENDED = "ended"


class Role(enum.Enum):
    DISPATCHER = "dispatcher"
    CALLER = "caller"


@dataclass(frozen=True)
class ConversationTurn:
    """One contiguous utterance. Turns are only ever appended, never edited."""
    role: Role
    text: str
    created_at: float = field(default_factory=time.time)


@dataclass(frozen=True)
class TranscriptEvent:
    """Partial or final transcript fragment from the transcription service."""
    text: str
    is_final: bool
    received_at: float = field(default_factory=time.monotonic)

    @classmethod
    def partial(cls, text: str) -> "TranscriptEvent":
        return cls(text=text, is_final=False)

    @classmethod
    def final(cls, text: str) -> "TranscriptEvent":
        return cls(text=text, is_final=True)


@dataclass(frozen=True)
class SpeechStarted:
    """Provider voice-activity marker: the dispatcher started talking."""
    received_at: float = field(default_factory=time.monotonic)


@dataclass(frozen=True)
class StreamError:
    """Transcription failure. Terminal errors end the call."""
    error: BaseException
    terminal: bool = False


# Tagged union delivered to transcription listeners.
StreamEvent = Union[TranscriptEvent, SpeechStarted, StreamError]


class SentenceStatus(enum.Enum):
    PENDING = "pending"
    READY = "ready"
    FAILED = "failed"


@dataclass(eq=False)
class SentenceItem:
    """A single caller sentence; ``sequence`` is the playback ordering key."""
    sequence: int
    text: str
    audio: Optional[bytes] = None
    status: SentenceStatus = SentenceStatus.PENDING

    @property
    def is_silence(self) -> bool:
        """The caller deliberately says nothing; there is no audio to synthesize."""
        return self.text.strip() == SILENCE_MARKER


@dataclass(frozen=True)
class SessionContext:
    """Immutable snapshot of what the model needs to stay consistent."""
    scenario: "ScenarioParameters"
    address: str
    callback_number: str
    history: Tuple[ConversationTurn, ...] = ()


@dataclass
class CallSession:
    """State owned by one answered call; discarded when it ends."""
    scenario: "ScenarioParameters"
    callback_number: str
    address: str
    session_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    turns: List[ConversationTurn] = field(default_factory=list)
    started_at: float = field(default_factory=time.time)

    def append_turn(self, role: Role, text: str) -> ConversationTurn:
        turn = ConversationTurn(role=role, text=text)
        self.turns.append(turn)
        return turn

    def context(self) -> SessionContext:
        return SessionContext(
            scenario=self.scenario,
            address=self.address,
            callback_number=self.callback_number,
            history=tuple(self.turns),
        )
