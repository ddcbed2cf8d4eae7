import asyncio
import json
import logging
import random
from typing import Any, Awaitable, Callable, Dict, Optional, Sequence

import websockets

from .binance_rest import BinanceAPIError
from monitoring.async_utils import run_tasks_with_cleanup


logger = logging.getLogger(__name__)

EventHandler = Callable[[Dict[str, Any]], Awaitable[None]]


class UserDataStream:
    """Account push stream over a listenKey.

    Keeps the key alive, reconnects with backoff and hands every decoded event
    to ``on_event``. Handler errors are logged and never stop the stream.
    """

    def __init__(
        self,
        gateway,
        on_event: EventHandler,
        reconnect_backoff: Sequence[float] = (1, 2, 5, 10, 30),
        keepalive_interval_s: float = 30 * 60,
        metrics=None,
        connect=None,
    ):
        self.gateway = gateway
        self.on_event = on_event
        self.reconnect_backoff = list(reconnect_backoff) or [1]
        self.keepalive_interval_s = keepalive_interval_s
        self.metrics = metrics
        self._connect = connect or websockets.connect
        self.running = False
        self.connected = False
        self._listen_key: Optional[str] = None
        self._ws = None
        self._stop_event = asyncio.Event()

    async def run(self) -> None:
        if self._stop_event.is_set():
            return
        self.running = True
        tasks = [
            asyncio.ensure_future(self._consume()),
            asyncio.ensure_future(self._keepalive_loop()),
        ]
        await run_tasks_with_cleanup(tasks, cleanup=self._release_listen_key)

    async def stop(self) -> None:
        self.running = False
        self._stop_event.set()
        ws = self._ws
        if ws is not None:
            await ws.close()

    async def dispatch(self, raw: Any) -> None:
        try:
            data = json.loads(raw) if isinstance(raw, (str, bytes)) else raw
        except ValueError:
            logger.warning("Dropping undecodable user-data message")
            return
        event = data.get("data") if isinstance(data, dict) and "data" in data else data
        if not isinstance(event, dict):
            return

        if event.get("e") == "listenKeyExpired":
            logger.warning("listenKey expired; reconnecting with a new key")
            self._listen_key = None
            raise ConnectionError("listen_key_expired")

        try:
            await self.on_event(event)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("User-data handler failed for %s event", event.get("e"))

    async def _consume(self) -> None:
        backoff_index = 0
        while self.running:
            try:
                if not self._listen_key:
                    self._listen_key = await self.gateway.create_listen_key()
                    logger.info("Obtained listenKey for user data stream")
                url = self.gateway.stream_url(self._listen_key)
                async with self._connect(url, ping_interval=20) as ws:
                    self._ws = ws
                    if not self.running:
                        # stop() ran while the socket was opening
                        break
                    self.connected = True
                    backoff_index = 0
                    logger.info("User data stream connected")
                    async for raw in ws:
                        await self.dispatch(raw)
                        if not self.running:
                            break
            except asyncio.CancelledError:
                break
            except BinanceAPIError as e:
                logger.error("listenKey error: %s", e)
                if e.is_permission_error:
                    logger.error("User data stream disabled: API key lacks permission")
                    self.running = False
                    self._stop_event.set()
                    break
            except Exception as e:
                if self.running:
                    logger.error("Account stream error: %s", e)
            finally:
                self._ws = None
                self.connected = False

            if not self.running:
                break
            if self.metrics is not None:
                self.metrics.record_reconnect()
            delay = self.reconnect_backoff[backoff_index] + random.uniform(0, 0.5)
            backoff_index = min(backoff_index + 1, len(self.reconnect_backoff) - 1)
            logger.info("Reconnecting user data stream in %.1fs", delay)
            if await self._wait_stopped(delay):
                break

    async def _keepalive_loop(self) -> None:
        while self.running:
            if await self._wait_stopped(self.keepalive_interval_s):
                break
            if not self._listen_key:
                continue
            try:
                await self.gateway.keepalive_listen_key(self._listen_key)
                logger.debug("listenKey refreshed")
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.warning("listenKey keepalive failed: %s", e)
                # force a fresh key on the next reconnect
                self._listen_key = None
                ws = self._ws
                if ws is not None:
                    await ws.close()

    async def _wait_stopped(self, timeout: float) -> bool:
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=timeout)
            return True
        except asyncio.TimeoutError:
            return False

    async def _release_listen_key(self) -> None:
        key, self._listen_key = self._listen_key, None
        if not key:
            return
        try:
            await self.gateway.close_listen_key(key)
            logger.info("listenKey closed")
        except Exception as e:
            logger.warning("Failed to close listenKey: %s", e)
