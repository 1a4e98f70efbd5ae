#!/usr/bin/env python3
"""
LLM streaming, sentence segmentation and caller-text cleanup for the
Dispatch Call Simulator.
"""

import logging
import re
from typing import Any, AsyncGenerator, AsyncIterator, Dict, List, Optional

import httpx
import ollama

from .config import default_config
from .errors import GenerationError

log = logging.getLogger(__name__)

STAGE_DIRECTION_PATTERNS = [
    re.compile(r"\[.*?\]"),          # [crying]
    re.compile(r"\(.*?\)"),          # (whispering)
    re.compile(r"\*.*?\*"),          # *sobs*
    re.compile(r"<.*?>"),            # <pause>
    # Opened but never closed before the reply ended (token limit).
    re.compile(r"\[[^\]]*$"),
    re.compile(r"\([^)]*$"),
    re.compile(r"\*[^*]*$"),
    re.compile(r"<[^>]*$"),
    re.compile(r"\b(?:caller|dispatcher|operator|911 operator)\s*:", re.IGNORECASE),
]

DIRECTION_BRACKETS = (('[', ']'), ('(', ')'), ('<', '>'))


def direction_open(text: str) -> bool:
    """True when ``text`` ends inside a stage direction."""
    if text.count('*') % 2:
        return True
    return any(text.count(o) > text.count(c) for o, c in DIRECTION_BRACKETS)


STREET_ADDRESS_RE = re.compile(
    r"\b\d{1,5}\s+[A-Za-z]+(?:\s+[A-Za-z]+)*?\s+"
    r"(?:St|Street|Ave|Avenue|Rd|Road|Blvd|Boulevard|Dr|Drive|Ln|Lane|Ct|Court|Way|Pl|Place)\b",
    re.IGNORECASE,
)

# Model talking like an assistant instead of a person in trouble.
AI_ASSISTANT_PHRASES = (
    "I can't help",
    "I'm sorry I can't assist",
    "feel free to ask",
    "I'm here to help",
    "let me know how I can assist",
    "if you need help or guidance",
    "specific context",
    "it seems like",
    "without more details",
)

# Model taking the dispatcher's side of the call.
DISPATCHER_PHRASES = (
    "what's your emergency",
    "911 what's your emergency",
    "this is 911",
    "how can I help you",
    "are you in danger",
    "do you need assistance",
    "can I help you",
    "are you okay",
    "what's happening to you",
    "do you need immediate assistance",
    "can you tell me what's wrong",
    "need immediate assistance",
    "what is your location",
    "can you tell me what happened",
    "stay on the line",
    "help is on the way",
    "I'm sending units",
)

_BLOCKLIST = tuple(p.lower() for p in AI_ASSISTANT_PHRASES + DISPATCHER_PHRASES)


class OllamaChatClient:
    """Thin async wrapper over ``ollama.AsyncClient`` that normalizes failures."""

    def __init__(self, config=None, client: Optional[ollama.AsyncClient] = None):
        self.config = config or default_config
        self.model = self.config.ollama_model
        self._client = client or ollama.AsyncClient(host=self.config.ollama_host)

    async def stream_chat(self, messages: List[Dict[str, str]], options: Dict[str, Any]) -> AsyncGenerator[str, None]:
        """Async generator yielding text deltas from a streaming chat call."""
        log.debug("chat stream model=%s messages=%d", self.model, len(messages))
        try:
            stream = await self._client.chat(model=self.model, messages=messages, stream=True, options=options)
            async for part in stream:
                content = part['message']['content']
                if content:
                    yield content
        except (ollama.ResponseError, httpx.HTTPError, ConnectionError) as e:
            raise GenerationError(f"chat stream failed: {e}") from e

    async def chat(self, messages: List[Dict[str, str]], options: Dict[str, Any]) -> str:
        """Single non-streaming completion."""
        try:
            response = await self._client.chat(model=self.model, messages=messages, options=options)
        except (ollama.ResponseError, httpx.HTTPError, ConnectionError) as e:
            raise GenerationError(f"chat request failed: {e}") from e
        return response['message']['content'] or ''


class SentenceSegmenter:
    """Accumulates token deltas and splits off whole sentences.

    A sentence ends at terminal punctuation (plus any closing quotes or
    brackets) followed by whitespace. No split is made inside a stage
    direction that is still open, so ``*gasps... sobs*`` stays in one piece
    for cleaning. Whatever remains when the stream ends is returned by
    ``flush``.
    """

    def __init__(self, config=None):
        config = config or default_config
        self._end_re = re.compile(rf"[{config.sentence_end_chars}](?:[\"'\)\]]*)\s+")
        self._buffer = ''

    def feed(self, chunk: str) -> List[str]:
        self._buffer += chunk
        sentences = []
        while True:
            end = self._next_boundary()
            if end is None:
                break
            sentence, self._buffer = self._buffer[:end], self._buffer[end:]
            if sentence.strip():
                sentences.append(sentence.strip())
        return sentences

    def _next_boundary(self) -> Optional[int]:
        for match in self._end_re.finditer(self._buffer):
            if match.start() == 0:
                continue
            if not direction_open(self._buffer[:match.end()]):
                return match.end()
        return None

    def flush(self) -> Optional[str]:
        tail = self._buffer.strip()
        self._buffer = ''
        return tail or None


async def sentence_stream(token_stream: AsyncIterator[str], config=None) -> AsyncGenerator[str, None]:
    """Yield completed sentences as tokens stream in.

    Sentence ends when we see end punctuation followed by whitespace OR we flush at end.
    """
    segmenter = SentenceSegmenter(config)
    async for chunk in token_stream:
        for sentence in segmenter.feed(chunk):
            yield sentence
    tail = segmenter.flush()
    if tail:
        yield tail


def clean_caller_text(text: str) -> str:
    """Strip stage directions and role labels, leaving only spoken words."""
    cleaned = text
    for pattern in STAGE_DIRECTION_PATTERNS:
        cleaned = pattern.sub('', cleaned)
    cleaned = re.sub(r"\s+", ' ', cleaned)
    cleaned = re.sub(r"\s+([,.!?])", r"\1", cleaned)
    cleaned = re.sub(r"([,.!?])\s+(?=[,.!?])", r"\1", cleaned)
    cleaned = cleaned.strip()
    # A lone comma or dash left behind by a removed direction is not speech.
    if not re.search(r"\w", cleaned) and cleaned != "...":
        return ''
    return cleaned


def pin_address(text: str, address: Optional[str]) -> str:
    """Replace the first street address the model invented with the call's fixed address."""
    if not address or address.lower() in text.lower():
        return text
    return STREET_ADDRESS_RE.sub(address, text, count=1)


def breaks_character(text: str) -> bool:
    """True when the text sounds like an AI assistant or a dispatcher."""
    lowered = text.lower().replace('’', "'")
    return any(phrase in lowered for phrase in _BLOCKLIST)
