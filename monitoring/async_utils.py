import asyncio
from typing import Any, Awaitable, Callable, Iterable, List, Optional, TypeVar


T = TypeVar('T')


async def run_tasks_with_cleanup(
    tasks: Iterable[asyncio.Task],
    cleanup: Optional[Callable[[], Awaitable[None]]] = None,
) -> None:
    task_list: List[asyncio.Task] = list(tasks)
    try:
        if task_list:
            await asyncio.gather(*task_list)
    except asyncio.CancelledError:
        pass
    finally:
        for t in task_list:
            if not t.done():
                t.cancel()
        if task_list:
            await asyncio.gather(*task_list, return_exceptions=True)
        if cleanup is not None:
            await cleanup()


async def gather_bounded(
    items: Iterable[T],
    worker: Callable[[T], Awaitable[Any]],
    limit: int,
) -> List[Any]:
    """Run ``worker`` over ``items`` with at most ``limit`` coroutines in flight.

    Every item is scheduled before any result is awaited. Results keep the input
    order; a failing item yields its exception object instead of aborting the rest.
    """
    semaphore = asyncio.Semaphore(max(1, int(limit)))

    async def _run(item: T) -> Any:
        async with semaphore:
            return await worker(item)

    tasks = [asyncio.ensure_future(_run(item)) for item in items]
    if not tasks:
        return []
    return await asyncio.gather(*tasks, return_exceptions=True)
