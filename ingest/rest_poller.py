import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional


logger = logging.getLogger(__name__)

SnapshotHandler = Callable[[List[Dict[str, Any]], Optional[int]], Awaitable[None]]


class PositionPoller:
    """Periodic full position snapshot that reconciles the push-stream view."""

    def __init__(
        self,
        gateway,
        handler: SnapshotHandler,
        interval_s: float = 60.0,
        max_fails: int = 3,
        mark: Optional[Callable[[], int]] = None,
    ):
        self.gateway = gateway
        self.handler = handler
        self.mark = mark
        self.interval_s = interval_s
        self.max_fails = max_fails
        self.fail_count = 0
        self.running = False
        self._stop_event = asyncio.Event()

    async def poll_once(self) -> Optional[List[Dict[str, Any]]]:
        since = self.mark() if self.mark is not None else None
        try:
            snapshot = await self.gateway.fetch_positions()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.fail_count += 1
            log = logger.error if self.fail_count >= self.max_fails else logger.warning
            log("Position poll failed (%s/%s): %s", self.fail_count, self.max_fails, e)
            return None
        self.fail_count = 0
        await self.handler(snapshot, since)
        return snapshot

    async def run(self) -> None:
        if self._stop_event.is_set():
            # stopped before the task got its first turn
            return
        self.running = True
        try:
            while self.running:
                try:
                    await self.poll_once()
                except asyncio.CancelledError:
                    break
                except Exception:
                    logger.exception("Position snapshot handler failed")
                try:
                    await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval_s)
                    break
                except asyncio.TimeoutError:
                    continue
        finally:
            self.running = False

    async def stop(self) -> None:
        self.running = False
        self._stop_event.set()
