#!/usr/bin/env python3
"""
Caller reply generation: one streaming chat request per dispatcher utterance,
turned into numbered, cleaned sentences as soon as each one is complete.
"""

import itertools
import logging
from typing import AsyncGenerator, List, Optional

from .config import default_config
from .errors import GenerationError, GenerationInProgressError
from .llm import SentenceSegmenter, breaks_character, clean_caller_text, pin_address, sentence_stream
from .models import SentenceItem, SessionContext
from .prompts import build_messages, build_retry_messages

log = logging.getLogger(__name__)


class CallerResponse:
    """One caller reply, consumed as an async iterator of ``SentenceItem``.

    ``sentences`` collects everything emitted so far, so ``text`` is always the
    reply as spoken, including when the consumer stops early.
    """

    def __init__(self, generator: "ResponseGenerator", utterance: str, context: SessionContext):
        self.utterance = utterance
        self.context = context
        self.sentences: List[SentenceItem] = []
        self.regenerated = False
        self.fell_back = False
        self._generator = generator
        self._agen: Optional[AsyncGenerator[SentenceItem, None]] = None

    def __aiter__(self):
        if self._agen is None:
            self._agen = self._generator._produce(self)
        return self._agen

    async def aclose(self):
        if self._agen is not None:
            await self._agen.aclose()

    @property
    def text(self) -> str:
        return ' '.join(item.text for item in self.sentences)


class ResponseGenerator:
    """Drives the caller persona for one call session.

    Sequence numbers come from a single counter per generator, so they keep
    increasing across turns of the same call. Only one reply may be generated
    at a time.
    """

    def __init__(self, client, config=None):
        self.client = client
        self.config = config or default_config
        self._sequence = itertools.count(1)
        self._in_flight: Optional[CallerResponse] = None

    @property
    def busy(self) -> bool:
        return self._in_flight is not None

    def generate_response(self, utterance: str, context: SessionContext) -> CallerResponse:
        """Start a reply to ``utterance``; iterate the result to receive its sentences."""
        if self._in_flight is not None:
            raise GenerationInProgressError("a caller reply is already being generated")
        return CallerResponse(self, utterance, context)

    def _stream_options(self) -> dict:
        return {
            "num_predict": self.config.max_tokens,
            "temperature": self.config.temperature,
            "top_p": self.config.top_p,
            "presence_penalty": self.config.presence_penalty,
            "frequency_penalty": self.config.frequency_penalty,
        }

    def _retry_options(self) -> dict:
        return {
            "num_predict": self.config.retry_max_tokens,
            "temperature": self.config.retry_temperature,
            "presence_penalty": 1.0,
            "frequency_penalty": 0.8,
        }

    def _emit(self, response: CallerResponse, text: str) -> SentenceItem:
        item = SentenceItem(sequence=next(self._sequence), text=text)
        response.sentences.append(item)
        return item

    def _finish(self, raw: str, context: SessionContext) -> str:
        return pin_address(clean_caller_text(raw), context.address)

    async def _produce(self, response: CallerResponse) -> AsyncGenerator[SentenceItem, None]:
        if self._in_flight is not None and self._in_flight is not response:
            raise GenerationInProgressError("a caller reply is already being generated")
        self._in_flight = response
        try:
            context = response.context
            messages = build_messages(response.utterance, context, self.config)
            tokens = self.client.stream_chat(messages, self._stream_options())
            sentences = sentence_stream(tokens, self.config)
            tripped = False
            try:
                async for raw in sentences:
                    text = self._finish(raw, context)
                    if not text:
                        continue
                    if breaks_character(text):
                        log.warning("caller broke character, regenerating: %r", text)
                        tripped = True
                        break
                    yield self._emit(response, text)
            except GenerationError as e:
                if response.sentences:
                    log.warning("chat stream failed after %d sentences: %s", len(response.sentences), e)
                    return
                log.warning("chat stream failed before any sentence: %s", e)
            finally:
                await sentences.aclose()
                await tokens.aclose()

            if not tripped and response.sentences:
                return

            response.regenerated = True
            text = await self._regenerate(response)
            if not text:
                log.warning("retry unusable, falling back to distress utterance")
                response.fell_back = True
                text = self.config.fallback_utterance
            for sentence in self._split(text):
                yield self._emit(response, sentence)
        finally:
            if self._in_flight is response:
                self._in_flight = None

    async def _regenerate(self, response: CallerResponse) -> str:
        """Single non-streaming retry with the stricter prompt; '' when unusable."""
        messages = build_retry_messages(response.utterance, response.context)
        try:
            reply = await self.client.chat(messages, self._retry_options())
        except GenerationError as e:
            log.warning("retry request failed: %s", e)
            return ''
        text = self._finish(reply, response.context)
        if breaks_character(text):
            log.warning("retry broke character too: %r", text)
            return ''
        return text

    def _split(self, text: str) -> List[str]:
        segmenter = SentenceSegmenter(self.config)
        parts = segmenter.feed(text)
        tail = segmenter.flush()
        if tail:
            parts.append(tail)
        return [p for p in (clean_caller_text(part) for part in parts) if p]
