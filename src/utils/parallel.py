# src/utils/parallel.py
"""
Bounded-concurrency execution of independent async work items.

Every stage that fans out completion calls goes through `process_in_parallel`:
at most `concurrency` processors run at once, failures are captured per item
and results come back in input order whatever order they finished in.
"""
from pydantic import BaseModel, ConfigDict
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple, TypeVar
import asyncio
import logging
import math
import time

logger = logging.getLogger(__name__)

T = TypeVar("T")

Processor = Callable[[T, int], Awaitable[Any]]


class ProcessingResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    index: int
    success: bool
    result: Any = None
    error: Optional[str] = None
    duration_ms: float = 0.0


class BatchProcessingStats(BaseModel):
    model_config = ConfigDict(frozen=True)

    total_items: int = 0
    success_count: int = 0
    failure_count: int = 0
    total_duration_ms: float = 0.0
    average_duration_ms: float = 0.0
    throughput: float = 0.0


def _elapsed_ms(start: float) -> float:
    return (time.monotonic() - start) * 1000


def _error_message(error: BaseException) -> str:
    return str(error) or type(error).__name__


async def process_in_parallel(
    items: Sequence[T],
    processor: Processor,
    concurrency: int = 3,
    continue_on_error: bool = True,
    on_item_complete: Optional[Callable[[int, int, ProcessingResult], None]] = None,
    on_batch_complete: Optional[Callable[[int, int, List[ProcessingResult]], None]] = None,
    cancel_event: Optional[asyncio.Event] = None,
) -> Tuple[List[ProcessingResult], BatchProcessingStats]:
    """
    Run `processor(item, index)` over every item with bounded concurrency.

    A new item starts as soon as a slot frees up. Callbacks run on the calling
    task as results land, in completion order. `on_batch_complete` fires once
    every item of a consecutive chunk of `concurrency` inputs has landed.

    Args:
        items: Inputs to process
        processor: Async callable taking (item, index)
        concurrency: Maximum number of processors running at once
        continue_on_error: If False, the first failure cancels outstanding
            work and is re-raised
        on_item_complete: Called with (index, total, result)
        on_batch_complete: Called with (batch_number, total_batches, results)
        cancel_event: Items not yet started when this is set are recorded as
            failures with error "cancelled"; in-flight calls finish normally

    Returns:
        Tuple of (results in input order, aggregate statistics)
    """
    items = list(items)
    total = len(items)
    if total == 0:
        return [], BatchProcessingStats()

    concurrency = max(1, concurrency)
    semaphore = asyncio.Semaphore(concurrency)
    total_batches = math.ceil(total / concurrency)
    pending_per_batch = [min(concurrency, total - b * concurrency) for b in range(total_batches)]
    results: List[Optional[ProcessingResult]] = [None] * total
    started = time.monotonic()

    async def run_one(index: int, item: T) -> ProcessingResult:
        async with semaphore:
            if cancel_event is not None and cancel_event.is_set():
                return ProcessingResult(index=index, success=False, error="cancelled")
            item_start = time.monotonic()
            try:
                value = await processor(item, index)
            except Exception as e:
                if not continue_on_error:
                    raise
                logger.debug(f"Item {index} failed: {e}")
                return ProcessingResult(
                    index=index,
                    success=False,
                    error=_error_message(e),
                    duration_ms=_elapsed_ms(item_start),
                )
            return ProcessingResult(
                index=index, success=True, result=value, duration_ms=_elapsed_ms(item_start)
            )

    tasks = [asyncio.create_task(run_one(i, item)) for i, item in enumerate(items)]

    try:
        for next_done in asyncio.as_completed(tasks):
            result = await next_done
            results[result.index] = result

            if on_item_complete:
                on_item_complete(result.index, total, result)

            batch = result.index // concurrency
            pending_per_batch[batch] -= 1
            if pending_per_batch[batch] == 0 and on_batch_complete:
                lo = batch * concurrency
                on_batch_complete(batch + 1, total_batches, results[lo:lo + concurrency])
    except BaseException:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise

    total_ms = _elapsed_ms(started)
    success_count = sum(1 for r in results if r.success)
    stats = BatchProcessingStats(
        total_items=total,
        success_count=success_count,
        failure_count=total - success_count,
        total_duration_ms=total_ms,
        average_duration_ms=sum(r.duration_ms for r in results) / total,
        throughput=total / (total_ms / 1000) if total_ms > 0 else float(total),
    )
    return results, stats


async def process_in_parallel_success_only(
    items: Sequence[T],
    processor: Processor,
    concurrency: int = 3,
    **kwargs,
) -> List[Any]:
    """Run `process_in_parallel` and return only successful values, in input order."""
    results, _ = await process_in_parallel(items, processor, concurrency=concurrency, **kwargs)
    return [r.result for r in results if r.success]


async def process_in_parallel_with_retry(
    items: Sequence[T],
    processor: Processor,
    concurrency: int = 3,
    max_retries: int = 2,
    retry_delay: float = 1.0,
    **kwargs,
) -> Tuple[List[ProcessingResult], BatchProcessingStats]:
    """
    Like `process_in_parallel` but each item is retried up to `max_retries`
    times, waiting `retry_delay` seconds between attempts.
    """
    async def processor_with_retry(item: T, index: int) -> Any:
        for attempt in range(max_retries + 1):
            try:
                return await processor(item, index)
            except Exception as e:
                if attempt == max_retries:
                    raise
                logger.warning(f"Item {index} failed ({e}). Retrying in {retry_delay}s... (attempt {attempt + 1}/{max_retries})")
                await asyncio.sleep(retry_delay)

    return await process_in_parallel(items, processor_with_retry, concurrency=concurrency, **kwargs)


def create_progress_logger(label: str = "Processing") -> Dict[str, Callable]:
    """
    Build `on_item_complete` / `on_batch_complete` callbacks that log progress.

    Usage:
        await process_in_parallel(items, fn, **create_progress_logger("Enrichment"))
    """
    def on_batch_complete(batch_number: int, total_batches: int, results: List[ProcessingResult]):
        ok = sum(1 for r in results if r.success)
        logger.info(f"{label} - batch {batch_number}/{total_batches} complete ({ok}/{len(results)} successful)")

    def on_item_complete(index: int, total: int, result: ProcessingResult):
        status = "ok" if result.success else f"failed: {result.error}"
        progress = round((index + 1) / total * 100)
        logger.debug(f"{label} - item {index + 1}/{total} ({progress}%) {status} in {result.duration_ms:.0f}ms")

    return {"on_item_complete": on_item_complete, "on_batch_complete": on_batch_complete}
