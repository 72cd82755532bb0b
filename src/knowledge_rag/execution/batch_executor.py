"""Adaptive, rate-limited batch execution for provider calls."""

from __future__ import annotations

import asyncio
import logging
import math
import random
import time
from collections import deque
from collections.abc import Awaitable, Callable, Sequence
from typing import TypeVar

from knowledge_rag.config import RateLimitConfig
from knowledge_rag.errors import (
    BatchCancelledError,
    FatalProviderError,
    ThrottledError,
    classify_provider_error,
)
from knowledge_rag.execution.tokens import (
    CharacterTokenCounter,
    TokenCounter,
    load_token_counter,
)
from knowledge_rag.types import BatchExecutionResult, BatchFailure, BatchSlice

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")

BatchExecutor = Callable[[list[T]], Awaitable[Sequence[R]]]
SleepFn = Callable[[float], Awaitable[None]]

FALLBACK_BATCH_SIZE = 128
MIN_TOKENS_PER_BATCH = 1_000
MAX_BACKOFF_MS = 60_000
MAX_JITTER_MS = 300.0
MAX_SHRINK_ROUNDS = 6
SHRINK_PAUSE_SECONDS = (0.2, 0.4)
_WINDOW_SECONDS = 60.0


class _RequestWindow:
    """Sliding one-minute window of request start times."""

    def __init__(self, limit: int, clock: Callable[[], float]) -> None:
        self._limit = limit
        self._clock = clock
        self._starts: deque[float] = deque()

    def reserve(self) -> float:
        """Record a request start and return 0, or return the seconds to wait."""
        now = self._clock()
        while self._starts and now - self._starts[0] >= _WINDOW_SECONDS:
            self._starts.popleft()
        if len(self._starts) < self._limit:
            self._starts.append(now)
            return 0.0
        return _WINDOW_SECONDS - (now - self._starts[0])


class RateLimitedBatchExecutor:
    """Runs work items through a provider call under token and request limits.

    Items are partitioned into token-bounded batches, every batch is queued
    at once, and at most `concurrency` batches run at the same time. A batch
    that hits throttling or transient server errors is retried with
    exponential backoff plus jitter; if throttling persists, the batch is
    halved and the halves are retried in turn. Results are written back at
    each batch's input offset, so output order always matches input order.

    A batch that is sleeping between retries keeps its concurrency slot.
    """

    def __init__(
        self,
        config: RateLimitConfig | None = None,
        *,
        token_counter: TokenCounter | None = None,
        sleep: SleepFn | None = None,
        clock: Callable[[], float] | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self._config = config or RateLimitConfig()
        self._token_counter = token_counter
        self._fallback_counter = CharacterTokenCounter()
        self._sleep = sleep or asyncio.sleep
        self._clock = clock or time.monotonic
        self._rng = rng or random.Random()
        self._window = _RequestWindow(self._config.requests_per_minute, self._clock)
        self._semaphore: asyncio.Semaphore | None = None
        self._semaphore_loop: asyncio.AbstractEventLoop | None = None

    def initialize(self, model: str, config: RateLimitConfig | None = None) -> None:
        """Load the tokenizer for `model` and apply `config`."""
        if config is not None:
            self._apply_config(config)
        self._token_counter = load_token_counter(model)

    def get_config(self) -> RateLimitConfig:
        return self._config.model_copy()

    def update_config(self, **changes: object) -> None:
        """Validate and apply partial config changes."""
        merged = {**self._config.model_dump(), **changes}
        self._apply_config(RateLimitConfig.model_validate(merged))

    @property
    def token_counter(self) -> TokenCounter | None:
        return self._token_counter

    def count_tokens(self, text: str) -> int:
        counter = self._token_counter or self._fallback_counter
        return counter.count_tokens(text)

    def max_tokens_per_batch(self) -> int:
        """Per-call token ceiling from a one-second slice of a worker's budget."""
        per_worker = (
            self._config.tokens_per_minute
            * self._config.safety_factor
            / self._config.concurrency
        )
        return max(MIN_TOKENS_PER_BATCH, math.floor(per_worker / 60))

    def backoff_delay_ms(self, attempt: int) -> float:
        base = min(MAX_BACKOFF_MS, self._config.base_backoff_ms * (2**attempt))
        return base + self._rng.uniform(0.0, MAX_JITTER_MS)

    def plan_batches(
        self,
        items: Sequence[T],
        token_extractor: Callable[[T], str] | None = None,
    ) -> list[BatchSlice[T]]:
        """Partition `items` into ordered, gap-free batches."""

        if self._token_counter is not None and token_extractor is not None:
            groups = self._chunk_by_tokens(items, token_extractor, self.max_tokens_per_batch())
        else:
            groups = [
                list(items[i : i + FALLBACK_BATCH_SIZE])
                for i in range(0, len(items), FALLBACK_BATCH_SIZE)
            ]

        slices: list[BatchSlice[T]] = []
        start = 0
        for group in groups:
            slices.append(BatchSlice(start=start, items=group))
            start += len(group)
        return slices

    async def execute_with_rate_limit(
        self,
        items: Sequence[T],
        executor: BatchExecutor[T, R],
        token_extractor: Callable[[T], str] | None = None,
        *,
        cancel_event: asyncio.Event | None = None,
    ) -> BatchExecutionResult[R]:
        """Run `executor` over every item and return results in input order.

        Raises the first batch's terminal error when every batch fails. When
        only some batches fail, their ranges are reported in
        `partial_failures` and their result slots stay `None`.
        """

        items = list(items)
        results: list[R | None] = [None] * len(items)
        if not items:
            return BatchExecutionResult(results=results)

        batches = self.plan_batches(items, token_extractor)
        logger.debug(
            "Executing %d items in %d batches (concurrency=%d, max_tokens_per_batch=%d)",
            len(items),
            len(batches),
            self._config.concurrency,
            self.max_tokens_per_batch(),
        )

        outcomes = await asyncio.gather(
            *(self._run_queued(batch, executor, results, cancel_event) for batch in batches),
            return_exceptions=True,
        )

        failures = [
            BatchFailure(start=batch.start, size=len(batch.items), error=outcome)
            for batch, outcome in zip(batches, outcomes, strict=True)
            if isinstance(outcome, BaseException)
        ]
        if failures and len(failures) == len(batches):
            logger.error("All %d batches failed: %s", len(batches), failures[0].error)
            raise failures[0].error
        if failures:
            logger.error(
                "%d of %d batches failed; their result slots are left empty",
                len(failures),
                len(batches),
            )
        return BatchExecutionResult(results=results, partial_failures=failures)

    async def call_with_retry(
        self,
        fn: Callable[[], Awaitable[R]],
        *,
        cancel_event: asyncio.Event | None = None,
    ) -> R:
        """Call `fn`, retrying throttling and transient errors with backoff."""

        attempt = 0
        while True:
            await self._acquire_request_slot(cancel_event)
            try:
                return await fn()
            except Exception as exc:
                if classify_provider_error(exc) is FatalProviderError:
                    raise
                if attempt >= self._config.max_retries:
                    raise
                delay_ms = self.backoff_delay_ms(attempt)
                logger.warning(
                    "Retrying request in %.0fms (attempt %d/%d): %s",
                    delay_ms,
                    attempt + 1,
                    self._config.max_retries,
                    exc,
                )
                await self._pause(delay_ms / 1000.0, cancel_event)
                attempt += 1

    async def _run_queued(
        self,
        batch: BatchSlice[T],
        executor: BatchExecutor[T, R],
        results: list[R | None],
        cancel_event: asyncio.Event | None,
    ) -> None:
        self._check_cancelled(cancel_event)
        async with self._slots():
            self._check_cancelled(cancel_event)
            try:
                await self._run_batch(batch.start, batch.items, executor, results, cancel_event, 0)
            except BaseException:
                end = batch.start + len(batch.items)
                results[batch.start : end] = [None] * len(batch.items)
                raise

    async def _run_batch(
        self,
        start: int,
        items: list[T],
        executor: BatchExecutor[T, R],
        results: list[R | None],
        cancel_event: asyncio.Event | None,
        shrink_round: int,
    ) -> None:
        try:
            output = await self.call_with_retry(lambda: executor(items), cancel_event=cancel_event)
        except Exception as exc:
            if (
                classify_provider_error(exc) is not ThrottledError
                or len(items) <= 1
                or shrink_round >= MAX_SHRINK_ROUNDS
            ):
                raise
            half = math.ceil(len(items) / 2)
            logger.warning("Rate limit hit, shrinking batch of %d items to %d", len(items), half)
            await self._pause(self._rng.uniform(*SHRINK_PAUSE_SECONDS), cancel_event)
            await self._run_batch(start, items[:half], executor, results, cancel_event, shrink_round + 1)
            await self._run_batch(
                start + half, items[half:], executor, results, cancel_event, shrink_round + 1
            )
            return

        output = list(output)
        if len(output) != len(items):
            raise ValueError(
                f"executor returned {len(output)} results for a batch of {len(items)} items"
            )
        results[start : start + len(items)] = output

    def _chunk_by_tokens(
        self,
        items: Sequence[T],
        token_extractor: Callable[[T], str],
        max_tokens: int,
    ) -> list[list[T]]:
        groups: list[list[T]] = []
        batch: list[T] = []
        tokens = 0

        for item in items:
            item_tokens = self.count_tokens(token_extractor(item))
            if batch and tokens + item_tokens > max_tokens:
                groups.append(batch)
                batch = []
                tokens = 0
            batch.append(item)
            tokens += item_tokens

        if batch:
            groups.append(batch)
        return groups

    async def _acquire_request_slot(self, cancel_event: asyncio.Event | None) -> None:
        wait = self._window.reserve()
        while wait > 0:
            logger.debug("Request window full, waiting %.2fs", wait)
            await self._pause(wait, cancel_event)
            wait = self._window.reserve()

    async def _pause(self, seconds: float, cancel_event: asyncio.Event | None) -> None:
        if cancel_event is None:
            await self._sleep(seconds)
            return

        self._check_cancelled(cancel_event)
        sleeper = asyncio.ensure_future(self._sleep(seconds))
        waiter = asyncio.ensure_future(cancel_event.wait())
        try:
            await asyncio.wait({sleeper, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (sleeper, waiter):
                if not task.done():
                    task.cancel()
        self._check_cancelled(cancel_event)

    @staticmethod
    def _check_cancelled(cancel_event: asyncio.Event | None) -> None:
        if cancel_event is not None and cancel_event.is_set():
            raise BatchCancelledError("Batch execution cancelled")

    def _slots(self) -> asyncio.Semaphore:
        loop = asyncio.get_running_loop()
        if self._semaphore is None or self._semaphore_loop is not loop:
            self._semaphore = asyncio.Semaphore(self._config.concurrency)
            self._semaphore_loop = loop
        return self._semaphore

    def _apply_config(self, config: RateLimitConfig) -> None:
        if config.concurrency != self._config.concurrency:
            self._semaphore = None
        if config.requests_per_minute != self._config.requests_per_minute:
            self._window = _RequestWindow(config.requests_per_minute, self._clock)
        self._config = config
