import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Sequence

from loguru import logger

from checkin_errors import ErrorKind, classify_error
from retry_policy import RetryPolicy, Sleep, run_with_retry


ProgressCallback = Callable[[int, int], Any]


@dataclass
class ItemOutcome:
    item: Any
    value: Any = None
    error: BaseException | None = None
    error_type: ErrorKind | None = None
    attempts: int = 0

    @property
    def ok(self) -> bool:
        return self.error is None


def _notify(on_progress: ProgressCallback | None, processed: int, total: int) -> None:
    if on_progress is None:
        return
    try:
        on_progress(processed, total)
    except Exception as exc:
        logger.warning("Progress callback failed", error=str(exc))


async def run_in_batches(
    items: Sequence[Any],
    worker: Callable[[Any], Awaitable[Any]],
    *,
    concurrency: int,
    rate_limit_ms: int,
    request_delay_ms: int,
    policy: RetryPolicy,
    on_progress: ProgressCallback | None = None,
    sleep: Sleep = asyncio.sleep,
) -> list[ItemOutcome]:
    """Run ``worker`` over ``items`` with bounded in-flight requests.

    Items are processed in batches of ``concurrency``. Inside a batch the i-th
    request starts ``request_delay_ms * i`` after the batch; each request goes
    through ``policy``. A batch is joined before the next starts, with a
    ``rate_limit_ms`` pause between batches. Failures never abort the run;
    they come back as outcomes with ``error`` set. Outcomes keep input order.
    """
    size = max(int(concurrency or 1), 1)
    total = len(items)
    outcomes: list[ItemOutcome] = []

    async def run_one(item: Any, index: int) -> ItemOutcome:
        if request_delay_ms and index:
            await sleep(request_delay_ms * index / 1000.0)
        result = await run_with_retry(lambda: worker(item), policy, sleep)
        if result.ok:
            return ItemOutcome(item=item, value=result.value, attempts=result.attempts)
        return ItemOutcome(
            item=item,
            error=result.error,
            error_type=classify_error(result.error),
            attempts=result.attempts,
        )

    for start in range(0, total, size):
        batch = items[start:start + size]
        outcomes.extend(await asyncio.gather(*(run_one(item, i) for i, item in enumerate(batch))))
        _notify(on_progress, len(outcomes), total)
        if start + size < total and rate_limit_ms:
            await sleep(rate_limit_ms / 1000.0)
    return outcomes
