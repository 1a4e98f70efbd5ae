#!/usr/bin/env python3
"""
Streaming speech-to-text over one long-lived websocket.

Audio frames go out as raw 16 kHz mono linear16 PCM; transcript JSON comes back
and is turned into ``TranscriptEvent`` / ``SpeechStarted`` / ``StreamError``
events for registered listeners. A close we did not ask for is followed by a
bounded reconnect with exponential backoff.
"""

import asyncio
import enum
import json
import logging
from typing import Awaitable, Callable, List, Optional

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from .audio import AudioSource
from .config import default_config
from .errors import ReconnectExhaustedError, TranscriptionError
from .models import SpeechStarted, StreamError, StreamEvent, TranscriptEvent

log = logging.getLogger(__name__)

EventListener = Callable[[StreamEvent], None]

CONNECT_ERRORS = (OSError, asyncio.TimeoutError, WebSocketException)

CLOSE_STREAM = json.dumps({"type": "CloseStream"})
KEEP_ALIVE = json.dumps({"type": "KeepAlive"})


class ConnectionState(enum.Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    CLOSING = "closing"


def parse_message(message) -> Optional[StreamEvent]:
    """Map one provider message to an event; None for anything not worth surfacing."""
    if isinstance(message, bytes):
        return None
    try:
        data = json.loads(message)
    except json.JSONDecodeError:
        log.warning("ignoring non-JSON transcription message: %.80r", message)
        return None
    if not isinstance(data, dict):
        return None

    kind = data.get("type")
    if kind == "SpeechStarted":
        return SpeechStarted()
    if kind not in (None, "Results"):
        log.debug("transcription message type=%s", kind)
        return None

    if "transcript" in data:
        transcript = data.get("transcript") or ""
    else:
        channel = data.get("channel")
        alternatives = channel.get("alternatives") if isinstance(channel, dict) else None
        first = alternatives[0] if alternatives else {}
        transcript = first.get("transcript") or ""
    transcript = transcript.strip()
    if not transcript:
        return None
    return TranscriptEvent(text=transcript, is_final=bool(data.get("is_final")))


class TranscriptionStreamManager:
    """Owns the transcription socket and, while started, the audio source.

    ``connector`` and ``sleep`` default to ``websockets.connect`` and
    ``asyncio.sleep``; tests pass scripted replacements.
    """

    def __init__(
        self,
        config=None,
        connector: Optional[Callable[..., Awaitable]] = None,
        sleep: Optional[Callable[[float], Awaitable]] = None,
    ):
        self.config = config or default_config
        self.connector = connector or websockets.connect
        self._sleep = sleep or asyncio.sleep
        self.state = ConnectionState.DISCONNECTED
        self.reconnect_attempts = 0
        self._listeners: List[EventListener] = []
        self._source: Optional[AudioSource] = None
        self._ws = None
        self._connected = asyncio.Event()
        self._paused = False
        self._closing = False
        self._receiver_task: Optional[asyncio.Task] = None
        self._forward_task: Optional[asyncio.Task] = None
        self._reconnect_task: Optional[asyncio.Task] = None
        self._keepalive_task: Optional[asyncio.Task] = None
        self.frames_sent = 0

    @property
    def paused(self) -> bool:
        return self._paused

    def on_event(self, listener: EventListener):
        self._listeners.append(listener)

    def remove_listener(self, listener: EventListener):
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _emit(self, event: StreamEvent):
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                log.exception("transcription listener failed on %r", event)

    async def start(self, source: AudioSource):
        """Connect, then open the source and begin forwarding its frames.

        Raises ReconnectExhaustedError when the service cannot be reached and
        MicrophoneUnavailableError when the source cannot be opened; in both
        cases nothing is left open.
        """
        if self._source is not None or self.state is not ConnectionState.DISCONNECTED:
            raise TranscriptionError("transcription stream already started")
        self._closing = False
        self._paused = False
        self._source = source
        try:
            await self._connect_with_backoff(initial=True)
            await source.start()
        except BaseException:
            await self.stop()
            raise
        self._forward_task = asyncio.create_task(self._forward_audio(source))

    async def _connect(self):
        self.state = ConnectionState.CONNECTING
        headers = None
        if self.config.stt_api_key:
            headers = {"Authorization": f"Token {self.config.stt_api_key}"}
        ws = await self.connector(
            self.config.stt_endpoint(),
            additional_headers=headers,
            open_timeout=self.config.stt_open_timeout_sec,
        )
        if self._closing:
            await ws.close()
            raise TranscriptionError("transcription stopped while connecting")
        self._ws = ws
        self.state = ConnectionState.CONNECTED
        self.reconnect_attempts = 0
        self._receiver_task = asyncio.create_task(self._receive(ws))
        self._connected.set()
        log.info("transcription connected")

    async def _connect_with_backoff(self, initial: bool):
        """Connect, retrying with delays base, 2*base, 4*base ... up to the attempt budget."""
        budget = self.config.reconnect_attempts
        last_error: Optional[BaseException] = None
        for attempt in range(0 if initial else 1, budget + 1):
            if attempt:
                delay = self.config.reconnect_base_delay_sec * 2 ** (attempt - 1)
                self.reconnect_attempts = attempt
                log.info("transcription reconnect attempt=%d delay=%.1fs", attempt, delay)
                self.state = ConnectionState.CONNECTING
                await self._sleep(delay)
            try:
                await self._connect()
                return
            except CONNECT_ERRORS as e:
                last_error = e
                log.warning("transcription connect failed: %s", e)
        self.state = ConnectionState.DISCONNECTED
        raise ReconnectExhaustedError(budget, last_error)

    async def _receive(self, ws):
        try:
            async for message in ws:
                event = parse_message(message)
                if event is not None:
                    self._emit(event)
        except ConnectionClosed as e:
            log.debug("transcription receive ended: %s", e)
        if self._closing or ws is not self._ws:
            return
        log.warning("transcription socket closed unexpectedly code=%s", getattr(ws, "close_code", None))
        self._ws = None
        self._connected.clear()
        self.state = ConnectionState.CONNECTING
        if self._reconnect_task is None:
            self._reconnect_task = asyncio.create_task(self._reconnect())

    async def _reconnect(self):
        try:
            await self._connect_with_backoff(initial=False)
        except ReconnectExhaustedError as e:
            log.error("%s", e)
            self._emit(StreamError(error=e, terminal=True))
        except TranscriptionError as e:
            log.debug("reconnect abandoned: %s", e)
        finally:
            self._reconnect_task = None

    async def _forward_audio(self, source: AudioSource):
        """Send frames in capture order; a frame whose send failed is sent again after reconnect."""
        async for frame in source.frames():
            while not self._paused:
                await self._connected.wait()
                if self._paused:
                    break
                ws = self._ws
                try:
                    await ws.send(frame)
                    self.frames_sent += 1
                    break
                except ConnectionClosed:
                    if ws is self._ws:
                        self._connected.clear()

    def pause(self):
        """Stop forwarding audio; the connection stays open."""
        if self._paused:
            return
        self._paused = True
        if self._source is not None:
            self._source.pause()
        self._keepalive_task = asyncio.create_task(self._keepalive())
        log.info("transcription paused")

    def resume(self):
        if not self._paused:
            return
        self._paused = False
        if self._keepalive_task is not None:
            self._keepalive_task.cancel()
            self._keepalive_task = None
        if self._source is not None:
            self._source.resume()
        log.info("transcription resumed")

    async def _keepalive(self):
        while True:
            await asyncio.sleep(self.config.stt_keepalive_sec)
            ws = self._ws
            if ws is None or not self._connected.is_set():
                continue
            try:
                await ws.send(KEEP_ALIVE)
            except ConnectionClosed:
                log.debug("keepalive on closed socket")

    async def stop(self):
        """Send end-of-stream, close with 1000 and release the audio source."""
        if self._closing and self.state is ConnectionState.DISCONNECTED:
            return
        self._closing = True
        self._paused = False
        if self.state is not ConnectionState.DISCONNECTED:
            self.state = ConnectionState.CLOSING
        current = asyncio.current_task()
        tasks = [
            t for t in (self._forward_task, self._keepalive_task, self._reconnect_task)
            if t is not None and t is not current and not t.done()
        ]
        for task in tasks:
            task.cancel()

        ws, self._ws = self._ws, None
        self._connected.clear()
        if ws is not None:
            try:
                await ws.send(CLOSE_STREAM)
                await ws.close(code=1000)
            except ConnectionClosed:
                log.debug("socket already closed during stop")
        if self._receiver_task is not None and self._receiver_task is not current:
            tasks.append(self._receiver_task)
        await asyncio.gather(*tasks, return_exceptions=True)

        source, self._source = self._source, None
        if source is not None:
            await source.close()
        self._forward_task = self._keepalive_task = self._reconnect_task = self._receiver_task = None
        self.state = ConnectionState.DISCONNECTED
        log.info("transcription stopped")
