"""
Background price monitoring.

The monitor runs three periodic jobs on a scheduler: the wishlist price
sweep (first run after an initial delay, then hourly), the hourly cart
expiry cleanup, and a connectivity probe that lets queued offline changes
replay once the store is reachable again.
"""
import asyncio
import logging
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from bookstore.core.config import Settings, settings as default_settings
from bookstore.core.store import DocumentStore
from bookstore.services.cart_service import CartService
from bookstore.services.offline_queue import ConnectivityMonitor
from bookstore.services.wishlist_service import WishlistService
from bookstore.utils.helpers import get_current_timestamp

logger = logging.getLogger(__name__)

Job = Callable[[], Awaitable[Any]]


class AsyncioScheduler:
    """Runs jobs as asyncio tasks on the running event loop."""

    def __init__(self):
        self._tasks: Set[asyncio.Task] = set()

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def call_later(self, delay: float, job: Job) -> asyncio.Task:
        async def run():
            await asyncio.sleep(delay)
            await job()

        return self._spawn(run())

    def call_every(self, interval: float, job: Job, initial_delay: float = 0.0) -> asyncio.Task:
        async def run():
            await asyncio.sleep(initial_delay)
            while True:
                try:
                    await job()
                except Exception as e:
                    logger.exception(f"Scheduled job failed: {e}")
                await asyncio.sleep(interval)

        return self._spawn(run())

    def cancel(self, handle: asyncio.Task) -> None:
        handle.cancel()

    async def shutdown(self) -> None:
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)


class MonitorState(str, Enum):
    IDLE = "idle"
    SWEEPING = "sweeping"


class PriceMonitor:
    """Schedules the wishlist price sweep and cart maintenance."""

    def __init__(
        self,
        wishlist: WishlistService,
        cart: CartService,
        store: DocumentStore,
        connectivity: ConnectivityMonitor,
        scheduler=None,
        clock: Callable[[], datetime] = get_current_timestamp,
        settings: Settings = default_settings
    ):
        self.wishlist = wishlist
        self.cart = cart
        self.store = store
        self.connectivity = connectivity
        self.scheduler = scheduler or AsyncioScheduler()
        self.clock = clock
        self.settings = settings

        self.state = MonitorState.IDLE
        self.last_sweep_at: Optional[datetime] = None
        self.last_sweep_result: Optional[Dict[str, int]] = None
        self._handles: List[Any] = []

    @property
    def running(self) -> bool:
        return bool(self._handles)

    def start(self) -> None:
        if self.running:
            return
        if not self.settings.PRICE_MONITOR_ENABLED:
            logger.info("Price monitoring disabled")
            return

        self._handles = [
            self.scheduler.call_every(
                self.settings.PRICE_CHECK_INTERVAL_SECONDS,
                self.run_price_sweep,
                initial_delay=self.settings.PRICE_CHECK_INITIAL_DELAY_SECONDS
            ),
            self.scheduler.call_every(
                self.settings.CART_CLEANUP_INTERVAL_SECONDS,
                self.run_cart_cleanup,
                initial_delay=self.settings.CART_CLEANUP_INTERVAL_SECONDS
            ),
            self.scheduler.call_every(
                self.settings.CONNECTIVITY_CHECK_INTERVAL_SECONDS,
                self.check_connectivity,
                initial_delay=self.settings.CONNECTIVITY_CHECK_INTERVAL_SECONDS
            ),
        ]
        logger.info(
            f"Price monitoring started, first sweep in {self.settings.PRICE_CHECK_INITIAL_DELAY_SECONDS}s"
        )

    def stop(self) -> None:
        for handle in self._handles:
            self.scheduler.cancel(handle)
        self._handles = []
        logger.info("Price monitoring stopped")

    async def run_price_sweep(self) -> Optional[Dict[str, int]]:
        """Run one wishlist sweep. Returns None if a sweep is already in progress."""
        if self.state == MonitorState.SWEEPING:
            logger.info("Price sweep already in progress, skipping")
            return None

        self.state = MonitorState.SWEEPING
        try:
            self.last_sweep_result = await self.wishlist.check_all_prices()
            self.last_sweep_at = self.clock()
            return self.last_sweep_result
        except Exception as e:
            logger.exception(f"Price sweep failed: {e}")
            return None
        finally:
            self.state = MonitorState.IDLE

    async def run_cart_cleanup(self) -> int:
        try:
            return await self.cart.cleanup_expired_items()
        except Exception as e:
            logger.exception(f"Cart cleanup failed: {e}")
            return 0

    async def check_connectivity(self) -> bool:
        online = await self.store.ping()
        await self.connectivity.set_online(online)
        return online
