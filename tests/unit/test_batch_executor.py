import asyncio
import random

import pytest
from pydantic import ValidationError

from knowledge_rag.config import RateLimitConfig
from knowledge_rag.errors import (
    BatchCancelledError,
    FatalProviderError,
    PartialBatchFailureError,
    ThrottledError,
)
from knowledge_rag.execution.batch_executor import RateLimitedBatchExecutor
from knowledge_rag.execution.tokens import CharacterTokenCounter


class CharCounter:
    def count_tokens(self, text: str) -> int:
        return len(text)


class RecordingSleep:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


class StatusError(Exception):
    def __init__(self, status_code: int) -> None:
        super().__init__(f"status {status_code}")
        self.status_code = status_code


def _executor(config: RateLimitConfig | None = None, **kwargs) -> RateLimitedBatchExecutor:
    kwargs.setdefault("sleep", RecordingSleep())
    kwargs.setdefault("rng", random.Random(7))
    return RateLimitedBatchExecutor(config or RateLimitConfig(), **kwargs)


async def _double(batch: list[int]) -> list[int]:
    return [item * 2 for item in batch]


def test_max_tokens_per_batch_formula() -> None:
    assert _executor().max_tokens_per_batch() == 1000

    roomy = RateLimitConfig(tokens_per_minute=3_000_000, safety_factor=1.0, concurrency=1)
    assert _executor(roomy).max_tokens_per_batch() == 50_000


def test_plan_batches_falls_back_to_fixed_size() -> None:
    batches = _executor().plan_batches(list(range(300)), token_extractor=str)

    assert [len(batch.items) for batch in batches] == [128, 128, 44]
    assert [batch.start for batch in batches] == [0, 128, 256]


def test_plan_batches_is_token_greedy_and_never_splits_items() -> None:
    executor = _executor(token_counter=CharCounter())
    items = ["a" * 400, "b" * 400, "c" * 400, "d" * 1500, "e" * 10]

    batches = executor.plan_batches(items, token_extractor=lambda text: text)

    assert [batch.items for batch in batches] == [items[0:2], [items[2]], [items[3]], [items[4]]]
    assert [batch.start for batch in batches] == [0, 2, 3, 4]
    assert [item for batch in batches for item in batch.items] == items


@pytest.mark.asyncio
async def test_results_keep_input_order_under_concurrency() -> None:
    executor = _executor(RateLimitConfig(concurrency=3))

    async def jittery(batch: list[int]) -> list[int]:
        await asyncio.sleep(0.001 * (5 - batch[0] // 128))
        return [item * 2 for item in batch]

    result = await executor.execute_with_rate_limit(list(range(600)), jittery)

    assert result.is_complete
    assert result.unwrap() == [item * 2 for item in range(600)]


@pytest.mark.asyncio
async def test_concurrency_is_bounded() -> None:
    executor = _executor(RateLimitConfig(concurrency=2))
    active = 0
    peak = 0

    async def tracked(batch: list[int]) -> list[int]:
        nonlocal active, peak
        active += 1
        peak = max(peak, active)
        await asyncio.sleep(0.005)
        active -= 1
        return batch

    await executor.execute_with_rate_limit(list(range(128 * 6)), tracked)

    assert peak == 2


@pytest.mark.asyncio
async def test_throttled_batch_is_retried_with_backoff() -> None:
    sleep = RecordingSleep()
    executor = _executor(sleep=sleep)
    calls = 0

    async def flaky(batch: list[int]) -> list[int]:
        nonlocal calls
        calls += 1
        if calls <= 2:
            raise ThrottledError()
        return batch

    result = await executor.execute_with_rate_limit([1, 2, 3], flaky)

    assert result.unwrap() == [1, 2, 3]
    assert calls == 3
    assert 0.5 <= sleep.delays[0] <= 0.8
    assert 1.0 <= sleep.delays[1] <= 1.3


@pytest.mark.asyncio
async def test_server_errors_are_retried_by_status_code() -> None:
    executor = _executor()
    calls = 0

    async def unstable(batch: list[int]) -> list[int]:
        nonlocal calls
        calls += 1
        if calls == 1:
            raise StatusError(503)
        return batch

    result = await executor.execute_with_rate_limit([4, 5], unstable)

    assert result.unwrap() == [4, 5]
    assert calls == 2


@pytest.mark.asyncio
async def test_fatal_errors_are_not_retried() -> None:
    executor = _executor()
    calls = 0

    async def broken(batch: list[int]) -> list[int]:
        nonlocal calls
        calls += 1
        raise StatusError(401)

    with pytest.raises(StatusError):
        await executor.execute_with_rate_limit([1, 2], broken)
    assert calls == 1


def test_backoff_delay_is_capped() -> None:
    executor = _executor(RateLimitConfig(base_backoff_ms=500))

    assert 60_000 <= executor.backoff_delay_ms(20) <= 60_300


@pytest.mark.asyncio
async def test_persistent_throttling_shrinks_the_batch() -> None:
    sleep = RecordingSleep()
    executor = _executor(RateLimitConfig(max_retries=0), sleep=sleep)
    sizes: list[int] = []

    async def picky(batch: list[int]) -> list[int]:
        sizes.append(len(batch))
        if len(batch) > 2:
            raise ThrottledError()
        return [item * 2 for item in batch]

    result = await executor.execute_with_rate_limit(list(range(8)), picky)

    assert result.unwrap() == [item * 2 for item in range(8)]
    assert sizes[:3] == [8, 4, 2]
    assert sorted(sizes).count(2) == 4
    assert all(0.2 <= delay <= 0.4 for delay in sleep.delays)


@pytest.mark.asyncio
async def test_single_item_throttling_is_terminal() -> None:
    executor = _executor(RateLimitConfig(max_retries=1))

    async def always_throttled(batch: list[int]) -> list[int]:
        raise ThrottledError()

    with pytest.raises(ThrottledError):
        await executor.execute_with_rate_limit([1], always_throttled)


@pytest.mark.asyncio
async def test_partial_failures_are_reported() -> None:
    executor = _executor()

    async def second_batch_fails(batch: list[int]) -> list[int]:
        if batch[0] == 128:
            raise FatalProviderError("bad request", status_code=400)
        return batch

    result = await executor.execute_with_rate_limit(list(range(300)), second_batch_fails)

    assert not result.is_complete
    assert [(f.start, f.size) for f in result.partial_failures] == [(128, 128)]
    assert result.results[:128] == list(range(128))
    assert result.results[128:256] == [None] * 128
    assert result.results[256:] == list(range(256, 300))
    with pytest.raises(PartialBatchFailureError):
        result.unwrap()


@pytest.mark.asyncio
async def test_result_count_mismatch_is_an_error() -> None:
    executor = _executor()

    async def short(batch: list[int]) -> list[int]:
        return batch[:-1]

    with pytest.raises(ValueError):
        await executor.execute_with_rate_limit([1, 2, 3], short)


@pytest.mark.asyncio
async def test_empty_input_returns_empty_result() -> None:
    result = await _executor().execute_with_rate_limit([], _double)

    assert result.unwrap() == []


@pytest.mark.asyncio
async def test_cancelled_before_start() -> None:
    cancel = asyncio.Event()
    cancel.set()

    with pytest.raises(BatchCancelledError):
        await _executor().execute_with_rate_limit([1, 2], _double, cancel_event=cancel)


@pytest.mark.asyncio
async def test_cancellation_interrupts_backoff() -> None:
    cancel = asyncio.Event()

    async def cancelling_sleep(seconds: float) -> None:
        cancel.set()

    executor = _executor(sleep=cancelling_sleep)
    calls = 0

    async def throttled(batch: list[int]) -> list[int]:
        nonlocal calls
        calls += 1
        raise ThrottledError()

    with pytest.raises(BatchCancelledError):
        await executor.execute_with_rate_limit([1, 2], throttled, cancel_event=cancel)
    assert calls == 1


@pytest.mark.asyncio
async def test_requests_per_minute_window_waits() -> None:
    now = [0.0]
    waits: list[float] = []

    async def advancing_sleep(seconds: float) -> None:
        waits.append(seconds)
        now[0] += seconds

    executor = _executor(
        RateLimitConfig(requests_per_minute=2),
        sleep=advancing_sleep,
        clock=lambda: now[0],
    )

    async def ok() -> str:
        return "ok"

    for _ in range(3):
        assert await executor.call_with_retry(ok) == "ok"

    assert waits == [60.0]


def test_config_updates_are_validated() -> None:
    executor = _executor()

    executor.update_config(concurrency=8)
    snapshot = executor.get_config()

    assert snapshot.concurrency == 8
    assert snapshot.max_retries == 6
    with pytest.raises(ValidationError):
        executor.update_config(safety_factor=1.5)


def test_token_count_falls_back_to_characters() -> None:
    assert _executor().count_tokens("x" * 9) == 3
    assert _executor(token_counter=CharCounter()).count_tokens("x" * 9) == 9

    text = "Encrypt customer data at rest."
    assert _executor().count_tokens(text) == CharacterTokenCounter().count_tokens(text)


def test_initialize_with_unknown_model_keeps_fallback() -> None:
    executor = _executor()

    executor.initialize("definitely-not-a-model", RateLimitConfig(concurrency=2))

    assert executor.token_counter is None
    assert executor.get_config().concurrency == 2


@pytest.mark.asyncio
async def test_throttled_batch_holds_its_slot_during_backoff() -> None:
    events: list[str] = []
    throttled = False

    async def sleep(seconds: float) -> None:
        events.append("sleep")
        await asyncio.sleep(0.01)
        events.append("slept")

    async def record(batch: list[int]) -> list[int]:
        nonlocal throttled
        events.append(f"call-{batch[0]}")
        if batch[0] == 0 and not throttled:
            throttled = True
            raise ThrottledError()
        return batch

    executor = _executor(RateLimitConfig(concurrency=1), sleep=sleep)
    result = await executor.execute_with_rate_limit(list(range(256)), record)

    assert result.unwrap() == list(range(256))
    assert events == ["call-0", "sleep", "slept", "call-0", "call-128"]
