#!/usr/bin/env python3
"""
Sentence audio pipeline: synthesizes caller sentences ahead of need and plays
them strictly in sequence order.

Items live in a dict keyed by sequence number. A single playback cursor always
takes the lowest sequence present and waits for its audio; synthesis for later
items may finish first but is never played first. ``cancel_all`` bumps an epoch
counter, so results that arrive after a cancellation are recognised as stale
and dropped.
"""

import asyncio
import logging
from typing import Callable, Dict, List, Optional

from .config import default_config
from .errors import PlaybackError, SynthesisError
from .models import SentenceItem, SentenceStatus

log = logging.getLogger(__name__)


class SentencePipeline:

    def __init__(
        self,
        synthesizer,
        player,
        config=None,
        on_error: Optional[Callable[[SentenceItem, Exception], None]] = None,
        on_drained: Optional[Callable[[], None]] = None,
        on_playback_started: Optional[Callable[[SentenceItem], None]] = None,
    ):
        self.synthesizer = synthesizer
        self.player = player
        self.config = config or default_config
        self.on_error = on_error
        self.on_drained = on_drained
        self.on_playback_started = on_playback_started
        self._items: Dict[int, SentenceItem] = {}
        self._ready: Dict[int, asyncio.Event] = {}
        self._tasks: Dict[int, asyncio.Task] = {}
        self._cursor_task: Optional[asyncio.Task] = None
        self._epoch = 0
        self.current: Optional[SentenceItem] = None

    def __len__(self) -> int:
        return len(self._items)

    @property
    def active(self) -> bool:
        """Caller audio is queued or on the speaker."""
        return bool(self._items) or self.current is not None

    @property
    def sequences(self) -> List[int]:
        return sorted(self._items)

    @property
    def synthesizing(self) -> List[int]:
        return sorted(self._tasks)

    def enqueue(self, item: SentenceItem):
        """Queue a sentence and start synthesis for the earliest pending ones."""
        if item.sequence in self._items:
            raise ValueError(f"sentence {item.sequence} is already queued")
        self._items[item.sequence] = item
        ready = asyncio.Event()
        self._ready[item.sequence] = ready
        if item.is_silence:
            item.status = SentenceStatus.READY
            ready.set()
        self._schedule()
        if self._cursor_task is None:
            self._cursor_task = asyncio.create_task(self._play_loop(self._epoch))

    def cancel_all(self):
        """Drop every queued sentence and silence the speaker now.

        Does not wait for in-flight synthesis or playback; their results are
        discarded when they arrive. Safe to call repeatedly.
        """
        self._epoch += 1
        for task in self._tasks.values():
            task.cancel()
        if self._cursor_task is not None:
            self._cursor_task.cancel()
            self._cursor_task = None
        self.player.stop()
        if self._items:
            log.info("playback cancelled, dropped sentences %s", sorted(self._items))
        self._items.clear()
        self._ready.clear()
        self._tasks.clear()
        self.current = None

    async def close(self):
        self.cancel_all()
        await self.synthesizer.close()

    def _is_live(self, item: SentenceItem, epoch: int) -> bool:
        return epoch == self._epoch and self._items.get(item.sequence) is item

    def _schedule(self):
        limit = self.config.prefetch_concurrency
        for sequence in sorted(self._items):
            if len(self._tasks) >= limit:
                break
            item = self._items[sequence]
            if item.status is SentenceStatus.PENDING and sequence not in self._tasks:
                self._tasks[sequence] = asyncio.create_task(self._synthesize(item, self._epoch))

    async def _synthesize(self, item: SentenceItem, epoch: int):
        # Any synthesizer failure (bad voice or rate included) marks the item for the on-demand retry.
        try:
            audio = await self.synthesizer.synthesize(item.text)
        except Exception as e:
            if self._is_live(item, epoch):
                log.warning("synthesis failed for sentence %d: %s", item.sequence, e)
                item.status = SentenceStatus.FAILED
        else:
            if self._is_live(item, epoch):
                item.audio = audio
                item.status = SentenceStatus.READY
            else:
                log.debug("dropping late audio for sentence %d", item.sequence)
        finally:
            if self._is_live(item, epoch):
                self._tasks.pop(item.sequence, None)
                self._ready[item.sequence].set()
                self._schedule()

    async def _synthesize_now(self, item: SentenceItem, epoch: int) -> Optional[Exception]:
        """On-demand retry for a failed item at the cursor."""
        log.info("retrying synthesis for sentence %d", item.sequence)
        try:
            audio = await self.synthesizer.synthesize(item.text)
        except Exception as e:
            if isinstance(e, SynthesisError):
                return e
            return SynthesisError(f"synthesis failed for sentence {item.sequence}: {e!r}")
        if self._is_live(item, epoch):
            item.audio = audio
            item.status = SentenceStatus.READY
        return None

    async def _play_loop(self, epoch: int):
        try:
            drained = await self._play_items(epoch)
        finally:
            if epoch == self._epoch and self._cursor_task is asyncio.current_task():
                self._cursor_task = None
        if drained and self.on_drained:
            self.on_drained()

    async def _play_items(self, epoch: int) -> bool:
        """Play from the cursor until the arena is empty; False when cancelled."""
        while epoch == self._epoch and self._items:
            sequence = min(self._items)
            item = self._items[sequence]
            await self._ready[sequence].wait()
            if epoch != self._epoch:
                return False

            error: Optional[Exception] = None
            if item.status is not SentenceStatus.READY:
                error = await self._synthesize_now(item, epoch)
                if epoch != self._epoch:
                    return False

            if item.status is SentenceStatus.READY and not item.is_silence:
                self.current = item
                if self.on_playback_started:
                    self.on_playback_started(item)
                try:
                    await self.player.play(item.audio)
                except PlaybackError as e:
                    log.warning("playback failed for sentence %d: %s", sequence, e)
                    error = e
                finally:
                    if self.current is item:
                        self.current = None
                if epoch != self._epoch:
                    return False

            self._items.pop(sequence, None)
            self._ready.pop(sequence, None)
            if error is not None:
                log.warning("skipping sentence %d: %s", sequence, error)
                if self.on_error:
                    self.on_error(item, error)

        return epoch == self._epoch
