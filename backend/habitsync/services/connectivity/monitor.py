"""
Connectivity Monitor - Background reachability checks for the remote service
Pings on an interval and notifies listeners only when the state flips
"""
import logging
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from habitsync.core.config import settings
from habitsync.services.remote.base import ConnectivityChannel

logger = logging.getLogger(__name__)


class ConnectivityMonitor:
    """
    Drives a ConnectivityChannel from periodic remote.ping() calls

    A ping that gets any answer from the server (even a rejection) counts as
    online; timeouts and transport errors count as offline.
    """

    def __init__(self, remote: ConnectivityChannel, interval_seconds: Optional[int] = None):
        self.remote = remote
        self.interval_seconds = interval_seconds or settings.CONNECTIVITY_CHECK_INTERVAL_SECONDS
        self.scheduler: Optional[AsyncIOScheduler] = None

    async def check_connectivity(self) -> bool:
        """
        Ping the remote service once

        Returns:
            True if the remote answered
        """
        try:
            response = await self.remote.ping()
            online = response.success or response.status is not None
        except Exception as e:
            logger.warning(f"[CONNECTIVITY] Ping failed: {e}")
            online = False

        await self.remote.set_online(online)
        return online

    def start(self) -> None:
        """Start probing; must be called from a running event loop"""
        if self.scheduler is not None:
            logger.warning("Connectivity monitor already running")
            return

        self.scheduler = AsyncIOScheduler()
        self.scheduler.add_job(
            func=self.check_connectivity,
            trigger=IntervalTrigger(seconds=self.interval_seconds),
            id='connectivity_check',
            name='Check remote service reachability',
            replace_existing=True,
            max_instances=1,
            coalesce=True
        )
        self.scheduler.start()
        logger.info(f"Connectivity monitor started - probing every {self.interval_seconds} seconds")

    def stop(self) -> None:
        """Stop probing"""
        if self.scheduler is not None:
            self.scheduler.shutdown(wait=False)
            self.scheduler = None
            logger.info("Connectivity monitor stopped")

    @property
    def running(self) -> bool:
        return self.scheduler is not None
