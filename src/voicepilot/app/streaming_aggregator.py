"""
Streaming Aggregator

Collects incremental generation chunks into the visible answer and into
speech batches. Every `batch_size` chunks the batch is handed to the speech
synthesizer; the final partial batch is spoken only when the stream completes
naturally. A cancelled stream keeps what was already spoken and drops the rest.
"""

from __future__ import annotations

import asyncio
import threading
from typing import Callable, Iterable, List, Optional, Protocol

from voicepilot.config import SPEECH_BATCH_SIZE
from voicepilot.utils import logger

logger = logger.get_logger("StreamingAggregator")


class SpeechSynthesizer(Protocol):
    def speak(self, text: str) -> None: ...


class StreamingAggregator:

    def __init__(
        self,
        synthesizer: SpeechSynthesizer,
        batch_size: int = SPEECH_BATCH_SIZE,
        on_progress: Optional[Callable[[str], None]] = None,
    ) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        self._synthesizer = synthesizer
        self.batch_size = batch_size
        self._on_progress = on_progress

        self._lock = threading.Lock()
        self._visible: List[str] = []
        self._speech: List[str] = []
        self._cancelled = False
        self._finished = False
        self.flushed_batches: List[str] = []

    @property
    def text(self) -> str:
        with self._lock:
            return "".join(self._visible)

    @property
    def cancelled(self) -> bool:
        with self._lock:
            return self._cancelled

    @property
    def finished(self) -> bool:
        with self._lock:
            return self._finished

    def _flush_locked(self) -> None:
        batch = "".join(self._speech)
        self._speech.clear()
        if not batch:
            return
        self.flushed_batches.append(batch)
        logger.debug(f"Speaking batch {len(self.flushed_batches)}: {batch!r}")
        self._synthesizer.speak(batch)

    def feed(self, chunk: str) -> bool:
        """Append one chunk. Returns False once the stream is cancelled or finished."""
        with self._lock:
            if self._cancelled or self._finished:
                return False
            self._visible.append(chunk)
            self._speech.append(chunk)
            if len(self._speech) >= self.batch_size:
                self._flush_locked()
            visible = "".join(self._visible)

        if self._on_progress:
            try:
                self._on_progress(visible)
            except Exception as e:
                logger.error(f"Error in progress callback: {e}")
        return True

    def on_chunk(self, chunk: str, done: bool) -> bool:
        """Callback form: one chunk plus the generator's done signal."""
        accepted = self.feed(chunk) if chunk else not (self.cancelled or self.finished)
        if done:
            self.finish()
        return accepted

    def finish(self) -> None:
        """Natural completion: speak the remaining partial batch once."""
        with self._lock:
            if self._cancelled or self._finished:
                return
            self._finished = True
            self._flush_locked()

    def cancel(self) -> bool:
        """
        Stop accepting chunks and drop the unspoken remainder.

        Returns True only for the call that actually cancelled; repeated
        calls and calls after completion are no-ops.
        """
        with self._lock:
            if self._cancelled or self._finished:
                return False
            self._cancelled = True
            dropped = len(self._speech)
            self._speech.clear()
        logger.info(f"Stream cancelled, discarded {dropped} unspoken chunk(s)")
        return True


class StreamTask:
    """
    Cancellable handle around a blocking chunk iterator.

    The iterator is drained on a worker thread; `cancel()` may be called from
    any thread, any number of times. `drained` is set (and `on_drained`
    called) once the worker has exited and the iterator is closed.
    """

    def __init__(
        self,
        chunks: Iterable[str],
        aggregator: StreamingAggregator,
        on_cancel: Optional[Callable[[], None]] = None,
        on_drained: Optional[Callable[[], None]] = None,
    ) -> None:
        self._chunks = chunks
        self.aggregator = aggregator
        self._on_cancel = on_cancel
        self._on_drained = on_drained
        self.drained = threading.Event()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._stopped: Optional[asyncio.Event] = None
        self._cancel_requested = False

    async def run(self) -> bool:
        """
        Drain the stream. Returns True on natural completion, False if cancelled.

        Returns as soon as cancellation is requested, even if the worker is
        still blocked waiting for the next chunk.
        """
        self._loop = asyncio.get_running_loop()
        self._stopped = asyncio.Event()
        if self._cancel_requested:
            self._stopped.set()

        pump = asyncio.ensure_future(asyncio.to_thread(self._pump))
        stopped = asyncio.ensure_future(self._stopped.wait())
        try:
            done, _ = await asyncio.wait({pump, stopped}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            stopped.cancel()

        if pump not in done:
            pump.add_done_callback(self._log_late_failure)
        elif pump.exception() is not None and not self._cancel_requested:
            pump.result()
        else:
            self._log_late_failure(pump)
        return not self.aggregator.cancelled

    @staticmethod
    def _log_late_failure(future: asyncio.Future) -> None:
        # Failures after a stop request are logged, not raised
        if not future.cancelled() and future.exception() is not None:
            logger.warning(f"Stream worker ended after cancellation: {future.exception()}")

    def _pump(self) -> None:
        try:
            self._drain()
        finally:
            # The upstream iterator is closed by now, even after an early stop
            self.drained.set()
            if self._on_drained:
                self._on_drained()

    def _drain(self) -> None:
        iterator = iter(self._chunks)
        completed = False
        try:
            for chunk in iterator:
                if not self.aggregator.feed(chunk):
                    break
            else:
                completed = True
        finally:
            if completed:
                self.aggregator.finish()
            else:
                self.aggregator.cancel()
                close = getattr(iterator, "close", None)
                if close is not None:
                    close()

    def cancel(self) -> bool:
        if not self.aggregator.cancel():
            return False
        self._cancel_requested = True
        if self._on_cancel:
            self._on_cancel()
        if self._loop is not None and self._stopped is not None and not self._loop.is_closed():
            self._loop.call_soon_threadsafe(self._stopped.set)
        return True
