#!/usr/bin/env python3
"""
Call session state machine: ringing -> active <-> paused -> ended.

The controller owns the per-call services, routes final transcripts into reply
generation, cuts the caller off when the dispatcher talks over them, and nudges
the caller to keep talking when the dispatcher goes quiet.
"""

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Optional

from .audio import AudioPlayer, AudioSource, LevelMonitor, MicrophoneSource
from .config import default_config
from .errors import CALL_ENDING_ERRORS, InvalidTransitionError
from .generation import CallerResponse, ResponseGenerator
from .llm import OllamaChatClient
from .models import CallSession, CallState, ConversationTurn, Role, SentenceItem, SessionContext, SpeechStarted, StreamError, StreamEvent
from .pipeline import SentencePipeline
from .prompts import continuation_prompt
from .scenario import ScenarioParameters, choose_address, generate_callback_number
from .transcription import TranscriptionStreamManager
from .tts import BaseSynthesizer, create_synthesizer

log = logging.getLogger(__name__)

# Operation -> states it may be called from. hang_up is allowed from anywhere.
TRANSITIONS = {
    "ring": (CallState.IDLE,),
    "answer": (CallState.RINGING,),
    "pause": (CallState.ACTIVE,),
    "resume": (CallState.PAUSED,),
}


class CallObserver:
    """Receives call notifications; override what you need."""

    def on_state_changed(self, state: CallState):
        pass

    def on_turn_appended(self, turn: ConversationTurn):
        pass

    def on_partial_transcript(self, text: str):
        pass

    def on_level_changed(self, level: int):
        pass

    def on_caller_speaking(self, item: SentenceItem):
        pass

    def on_error(self, error: BaseException, fatal: bool):
        pass


@dataclass
class CallServices:
    """Everything one answered call talks to; disposed when the call ends."""
    transcription: TranscriptionStreamManager
    generator: ResponseGenerator
    pipeline: SentencePipeline

    async def dispose(self):
        await self.transcription.stop()
        await self.pipeline.close()


class ServiceFactory:
    """Builds per-call services. Tests subclass it to swap in scripted doubles."""

    def __init__(self, config=None):
        self.config = config or default_config

    def create_source(self) -> AudioSource:
        return MicrophoneSource(self.config)

    def create_transcription(self) -> TranscriptionStreamManager:
        return TranscriptionStreamManager(self.config)

    def create_chat_client(self):
        return OllamaChatClient(self.config)

    def create_synthesizer(self) -> BaseSynthesizer:
        return create_synthesizer(self.config)

    def create_player(self, scenario: ScenarioParameters):
        return AudioPlayer(self.config, gain=scenario.gain)

    def create_services(self, scenario: ScenarioParameters, on_error, on_drained, on_playback_started) -> CallServices:
        pipeline = SentencePipeline(
            self.create_synthesizer(),
            self.create_player(scenario),
            self.config,
            on_error=on_error,
            on_drained=on_drained,
            on_playback_started=on_playback_started,
        )
        return CallServices(
            transcription=self.create_transcription(),
            generator=ResponseGenerator(self.create_chat_client(), self.config),
            pipeline=pipeline,
        )


class CallController:
    """Drives one simulated call at a time for a fixed scenario."""

    def __init__(
        self,
        scenario: ScenarioParameters,
        config=None,
        factory: Optional[ServiceFactory] = None,
        observer: Optional[CallObserver] = None,
        rng: Optional[random.Random] = None,
    ):
        self.scenario = scenario
        self.config = config or default_config
        self.factory = factory or ServiceFactory(self.config)
        self.observer = observer or CallObserver()
        self.rng = rng
        self.state = CallState.IDLE
        self.session: Optional[CallSession] = None
        self.services: Optional[CallServices] = None
        self.monitor: Optional[LevelMonitor] = None
        self.waiting_for_dispatcher = False
        self.partial_text = ''
        self.continuations = 0
        self._turn_task: Optional[asyncio.Task] = None
        self._reply: Optional[CallerResponse] = None
        self._silence_handle: Optional[asyncio.TimerHandle] = None
        self._hangup_task: Optional[asyncio.Task] = None

    # -- state ---------------------------------------------------------------

    def _require(self, operation: str):
        if self.state not in TRANSITIONS[operation]:
            raise InvalidTransitionError(operation, self.state)

    def _set_state(self, state: CallState):
        if state is self.state:
            return
        log.info("call %s -> %s", self.state.value, state.value)
        self.state = state
        self.observer.on_state_changed(state)

    @property
    def turn_in_progress(self) -> bool:
        return self._turn_task is not None and not self._turn_task.done()

    @property
    def silence_timer_armed(self) -> bool:
        return self._silence_handle is not None

    # -- call control --------------------------------------------------------

    async def ring(self):
        """Incoming call. The microphone is opened for the level meter only."""
        self._require("ring")
        self._set_state(CallState.RINGING)
        self.monitor = LevelMonitor(self.factory.create_source(), on_level=self._on_level)
        try:
            await self.monitor.start()
        except CALL_ENDING_ERRORS as e:
            await self._fail(e)
            raise

    async def answer(self) -> CallSession:
        """Create the session, hand the microphone to transcription and start listening."""
        self._require("answer")
        if self.monitor is not None:
            await self.monitor.release()
            self.monitor = None

        self.session = CallSession(
            scenario=self.scenario,
            callback_number=generate_callback_number(self.rng),
            address=choose_address(self.scenario, self.rng),
        )
        log.info("call answered session=%s callback=%s address=%r",
                 self.session.session_id, self.session.callback_number, self.session.address)
        self.services = self.factory.create_services(
            self.scenario,
            on_error=self._on_pipeline_error,
            on_drained=self._on_drained,
            on_playback_started=self._on_playback_started,
        )
        self.services.transcription.on_event(self._on_stream_event)
        self._set_state(CallState.ACTIVE)
        self.waiting_for_dispatcher = True

        source = self.factory.create_source()
        source.add_level_listener(self._on_level)
        try:
            await self.services.transcription.start(source)
        except CALL_ENDING_ERRORS as e:
            await self._fail(e)
            raise
        return self.session

    def pause(self):
        """Hold the call: stop forwarding audio, silence the caller, clear timers."""
        self._require("pause")
        self._set_state(CallState.PAUSED)
        self.services.transcription.pause()
        self._interrupt()
        self._clear_silence_timer()
        self.partial_text = ''
        self.observer.on_level_changed(0)

    def resume(self):
        self._require("resume")
        self._set_state(CallState.ACTIVE)
        self.services.transcription.resume()
        self.waiting_for_dispatcher = True

    async def hang_up(self) -> Optional[CallSession]:
        """End the call from any state and release everything it held. Idempotent."""
        pending = self._hangup_task
        if pending is not None and pending is not asyncio.current_task() and not pending.done():
            await asyncio.wait({pending})
        if self.state is CallState.ENDED:
            return None
        self._set_state(CallState.ENDED)
        self._clear_silence_timer()
        session, self.session = self.session, None
        services, self.services = self.services, None
        task, self._turn_task = self._turn_task, None
        self._reply = None
        self.waiting_for_dispatcher = False
        self.partial_text = ''

        if task is not None and not task.done():
            task.cancel()
        if services is not None:
            services.pipeline.cancel_all()
        if self.monitor is not None:
            await self.monitor.release()
            self.monitor = None
        if services is not None:
            await services.dispose()
        if task is not None and task is not asyncio.current_task():
            await asyncio.wait({task})
        self.observer.on_level_changed(0)
        return session

    async def restart(self):
        """Drop the current call and ring again with the same scenario."""
        await self.hang_up()
        self._hangup_task = None
        self._set_state(CallState.IDLE)
        await self.ring()

    def _on_hangup_done(self, task: asyncio.Task):
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            log.error("hang up after transcription loss failed: %s", error, exc_info=error)

    async def _fail(self, error: BaseException):
        log.error("call ending: %s", error)
        self.observer.on_error(error, True)
        await self.hang_up()

    # -- transcription events ------------------------------------------------

    def _on_stream_event(self, event: StreamEvent):
        if isinstance(event, StreamError):
            self.observer.on_error(event.error, event.terminal)
            if event.terminal and self._hangup_task is None and self.state is not CallState.ENDED:
                log.error("transcription lost, ending call")
                self._hangup_task = asyncio.create_task(self.hang_up())
                self._hangup_task.add_done_callback(self._on_hangup_done)
            return
        if self.state is not CallState.ACTIVE:
            return
        if isinstance(event, SpeechStarted):
            self._clear_silence_timer()
        elif event.is_final:
            self._on_final(event.text)
        else:
            self._on_partial(event.text)

    def _on_partial(self, text: str):
        self.partial_text = text
        self.observer.on_partial_transcript(text)
        if len(text.strip()) <= self.config.interruption_min_chars:
            return
        self._clear_silence_timer()
        # Also while a reply is still streaming and its next sentence is not queued yet.
        if self.services.pipeline.active or self.turn_in_progress:
            log.info("dispatcher interrupted caller: %r", text)
            self._interrupt()

    def _on_final(self, text: str):
        self.partial_text = ''
        self.waiting_for_dispatcher = False
        self._clear_silence_timer()
        previous = self._turn_task
        if self.turn_in_progress or self.services.pipeline.active:
            self._interrupt()

        context = self.session.context()
        turn = self.session.append_turn(Role.DISPATCHER, text)
        self.observer.on_turn_appended(turn)
        self.continuations = 0
        self._turn_task = asyncio.create_task(self._run_turn(text, context, previous))

    def _interrupt(self):
        """Stop the current reply: no more sentences generated, queued or played."""
        if self._turn_task is not None and not self._turn_task.done():
            self._turn_task.cancel()
        self._commit_reply(self._reply)
        if self.services is not None:
            self.services.pipeline.cancel_all()

    # -- caller turns --------------------------------------------------------

    async def _run_turn(self, utterance: str, context: SessionContext, previous: Optional[asyncio.Task]):
        if previous is not None and not previous.done():
            await asyncio.wait({previous})
        services = self.services
        response = services.generator.generate_response(utterance, context)
        self._reply = response
        try:
            async for item in response:
                services.pipeline.enqueue(item)
        finally:
            await response.aclose()
        if response.regenerated:
            log.info("caller reply regenerated fallback=%s", response.fell_back)
        self._commit_reply(response)
        self.waiting_for_dispatcher = True
        self._arm_silence_timer()

    def _commit_reply(self, reply: Optional[CallerResponse]):
        """Record what the caller actually said, once."""
        if reply is None or reply is not self._reply:
            return
        self._reply = None
        if reply.text and self.session is not None:
            turn = self.session.append_turn(Role.CALLER, reply.text)
            self.observer.on_turn_appended(turn)

    def _on_playback_started(self, item: SentenceItem):
        self.observer.on_caller_speaking(item)

    def _on_pipeline_error(self, item: SentenceItem, error: Exception):
        log.warning("caller sentence %d skipped", item.sequence)
        self.observer.on_error(error, False)

    def _on_drained(self):
        self._arm_silence_timer()

    def _on_level(self, level: int):
        if self.state in (CallState.RINGING, CallState.ACTIVE):
            self.observer.on_level_changed(level)

    # -- silence timeout -----------------------------------------------------

    def _arm_silence_timer(self):
        """Arm only when nothing is being generated, queued or played."""
        if self.state is not CallState.ACTIVE or self.services is None:
            return
        if self.turn_in_progress and self._turn_task is not asyncio.current_task():
            return
        if self.services.pipeline.active:
            return
        if self.continuations >= self.config.max_silence_continuations:
            return
        self._clear_silence_timer()
        timeout = self.config.silence_timeout_for(self.scenario.cooperation_level)
        log.debug("silence timer armed for %.1fs", timeout)
        self._silence_handle = asyncio.get_running_loop().call_later(timeout, self._on_silence_timeout)

    def _clear_silence_timer(self):
        if self._silence_handle is not None:
            self._silence_handle.cancel()
            self._silence_handle = None

    def _on_silence_timeout(self):
        self._silence_handle = None
        if self.state is not CallState.ACTIVE or self.turn_in_progress or self.services.pipeline.active:
            return
        self.continuations += 1
        tier = self.config.cooperation_tier(self.scenario.cooperation_level)
        log.info("dispatcher silent, caller continues (%s cooperation)", tier)
        context = self.session.context()
        self._turn_task = asyncio.create_task(self._run_turn(continuation_prompt(tier), context, None))
