"""Feature extractor readiness and the pre-ready prediction queue.

State machine::

    UNLOADED -> LOADING -> READY
                       \\-> FAILED

Predictions submitted before READY wait in a FIFO queue. The load task
drains that queue once the extractor is available; anything submitted while
the drain runs lines up behind it, so results come back in submission order.
Only after the queue is empty does the state become READY. A failed load
rejects every queued entry with ``ModelLoadError``, and so does shutting
down before the model is ready.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING, Generic, TypeVar

from retrainex.errors import ModelLoadError, ModelNotReadyError

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from retrainex.ml.ranking import RankedPrediction

    PredictionCallback = Callable[[list[RankedPrediction] | None, BaseException | None], None]

logger = logging.getLogger(__name__)

E = TypeVar("E")

CLOSED_BEFORE_READY = "Classifier closed before the model loaded"


class ModelState(StrEnum):
    UNLOADED = "unloaded"
    LOADING = "loading"
    READY = "ready"
    FAILED = "failed"


@dataclass
class PendingPrediction:
    """A prediction request and the future its result is delivered on."""

    source: object
    k: int
    callback: PredictionCallback | None = None
    future: asyncio.Future[list[RankedPrediction]] = field(
        default_factory=lambda: asyncio.get_running_loop().create_future()
    )


class ModelLifecycle(Generic[E]):
    """Owns the extractor load task and the queue of early predictions."""

    def __init__(self) -> None:
        self._state = ModelState.UNLOADED
        self._extractor: E | None = None
        self._error: ModelLoadError | None = None
        self._pending: asyncio.Queue[PendingPrediction] = asyncio.Queue()
        self._settled = asyncio.Event()
        self._task: asyncio.Task[None] | None = None
        self._execute: Callable[[PendingPrediction], Awaitable[list[RankedPrediction]]] | None = None

    # -- Public API ---------------------------------------------------------

    @property
    def state(self) -> ModelState:
        return self._state

    @property
    def pending_count(self) -> int:
        return self._pending.qsize()

    @property
    def error(self) -> ModelLoadError | None:
        return self._error

    @property
    def extractor(self) -> E | None:
        return self._extractor

    def start(
        self,
        load: Callable[[], Awaitable[E]],
        execute: Callable[[PendingPrediction], Awaitable[list[RankedPrediction]]],
        on_ready: Callable[[], None] | None = None,
    ) -> None:
        """Begin loading on the running event loop.

        Args:
            load: Coroutine factory producing the ready extractor.
            execute: Runs one prediction against the loaded extractor.
            on_ready: Called once, after READY is reached and the queue is drained.

        Raises:
            RuntimeError: If already started, or no event loop is running.
        """
        if self._state is not ModelState.UNLOADED:
            raise RuntimeError(f"Lifecycle already started (state={self._state})")
        loop = asyncio.get_running_loop()
        self._execute = execute
        self._state = ModelState.LOADING
        self._task = loop.create_task(self._load_and_drain(load, on_ready), name="retrainex-model-load")
        logger.info("Model loading started")

    def require_extractor(self) -> E:
        """Return the loaded extractor.

        Raises:
            ModelLoadError: If loading failed.
            ModelNotReadyError: If loading has not finished.
        """
        if self._state is ModelState.FAILED and self._error is not None:
            raise self._error
        if self._state is not ModelState.READY or self._extractor is None:
            raise ModelNotReadyError(f"Model is not ready (state={self._state})")
        return self._extractor

    async def submit(self, entry: PendingPrediction) -> list[RankedPrediction]:
        """Run ``entry`` now if READY, otherwise queue it until the drain."""
        if self._state is ModelState.FAILED:
            self._reject(entry)
        elif self._state is ModelState.READY:
            await self._run_entry(entry)
        else:
            self._pending.put_nowait(entry)
            logger.debug("Queued prediction until model is ready (pending=%d)", self._pending.qsize())
        return await entry.future

    async def wait_until_ready(self) -> None:
        """Block until loading settles.

        Raises:
            ModelLoadError: If loading failed.
        """
        await self._settled.wait()
        if self._error is not None:
            raise self._error

    async def shutdown(self) -> None:
        """Cancel an in-flight load task.

        Predictions still waiting for the model are rejected with
        ``ModelLoadError`` and the lifecycle ends in FAILED.
        """
        if self._task is not None and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        if self._state in (ModelState.UNLOADED, ModelState.LOADING):
            self._terminate(ModelLoadError(CLOSED_BEFORE_READY))

    # -- Internal -----------------------------------------------------------

    async def _load_and_drain(self, load: Callable[[], Awaitable[E]], on_ready: Callable[[], None] | None) -> None:
        try:
            extractor = await load()
        except Exception as exc:
            logger.exception("Model load failed")
            self._fail(exc)
            return

        self._extractor = extractor
        drained = 0
        entry: PendingPrediction | None = None
        try:
            while not self._pending.empty():
                entry = self._pending.get_nowait()
                await self._run_entry(entry)
                entry = None
                drained += 1
        except asyncio.CancelledError:
            self._terminate(ModelLoadError(CLOSED_BEFORE_READY), in_flight=entry)
            raise

        # No await between the empty check and this assignment, so nothing
        # can slip into the queue after the drain.
        self._state = ModelState.READY
        self._settled.set()
        logger.info("Model ready (replayed %d queued prediction(s))", drained)
        if on_ready is not None:
            on_ready()

    async def _run_entry(self, entry: PendingPrediction) -> None:
        if self._execute is None:
            raise RuntimeError("Lifecycle not started")
        try:
            results = await self._execute(entry)
        except Exception as exc:
            _settle(entry, None, exc)
        else:
            _settle(entry, results, None)

    def _fail(self, cause: BaseException) -> None:
        error = ModelLoadError(f"Model failed to load: {cause}")
        error.__cause__ = cause
        self._terminate(error)

    def _terminate(self, error: ModelLoadError, in_flight: PendingPrediction | None = None) -> None:
        self._error = error
        self._state = ModelState.FAILED
        if in_flight is not None:
            _settle(in_flight, None, error)
        while not self._pending.empty():
            self._reject(self._pending.get_nowait())
        self._settled.set()

    def _reject(self, entry: PendingPrediction) -> None:
        if self._error is None:
            raise RuntimeError("Cannot reject a prediction before the load has failed")
        _settle(entry, None, self._error)


def _settle(
    entry: PendingPrediction,
    results: list[RankedPrediction] | None,
    error: BaseException | None,
) -> None:
    if not entry.future.done():
        if error is not None:
            entry.future.set_exception(error)
        else:
            entry.future.set_result(results or [])
    if entry.callback is not None:
        try:
            entry.callback(results, error)
        except Exception:
            logger.exception("Prediction callback raised")
