import asyncio
import enum
import itertools
import logging
import typing
from contextlib import suppress

import async_timeout

from . import config
from .entitlement import EntitlementEvaluator
from .entitlement import EntitlementPolicy
from .entitlement import Tier
from .nftables import NftablesBackend
from .nftables import PacketFilter
from .reconciler import ReconcileFailed
from .reconciler import SetReconciler
from .status import StatusReporter
from .store import StoreUnavailable
from .store import UserStore

logger = logging.getLogger('dcf.watchdog')


class State(enum.Enum):
    STARTING = 'starting'
    RUNNING = 'running'
    STOPPING = 'stopping'


class Watchdog:
    """Keeps the filter sets in line with the user store

    The standard whitelist is reconciled every cycle, the VIP set every
    `vip_every` cycles. A failed cycle is logged and the next one starts on
    schedule; only :meth:`stop` ends the loop.
    """

    def __init__(
        self,
        evaluator: EntitlementEvaluator,
        packet_filter: PacketFilter,
        interval: float = 10,
        vip_every: int = 6,
        reporter: typing.Optional[StatusReporter] = None,
    ):
        self.evaluator = evaluator
        self.packet_filter = packet_filter
        self.reconciler = SetReconciler(packet_filter)
        self.interval = interval
        self.vip_every = vip_every
        self.reporter = reporter

        self.state = State.STARTING
        self.cycle = 0
        self._stop_requested = asyncio.Event()

    @classmethod
    def from_settings(cls, settings: config.Settings) -> 'Watchdog':
        store = UserStore(settings.store)
        packet_filter = NftablesBackend(settings.firewall)

        reporter = None
        if settings.status.enabled:
            reporter = StatusReporter(settings.status, store, packet_filter)

        return cls(
            EntitlementEvaluator(store, EntitlementPolicy(settings.policy)),
            packet_filter,
            interval=settings.sync.interval,
            vip_every=settings.sync.vip_every,
            reporter=reporter,
        )

    @property
    def stop_requested(self) -> bool:
        return self._stop_requested.is_set()

    def stop(self, signum=None):
        if signum is not None:
            logger.info('Received shutdown signal (%s)', signum)
        self._stop_requested.set()

    async def sync(self, tier: Tier, cycle: int = 0) -> bool:
        """One evaluate -> validate -> replace pass for `tier`

        :return: True when the set now matches the store
        """
        extra = {'cycle': cycle, 'tier': tier.value}
        loop = asyncio.get_running_loop()

        try:
            entitlement = await loop.run_in_executor(None, self.evaluator.evaluate, tier)
            count = await self.reconciler.reconcile(tier, entitlement.addresses)
        except StoreUnavailable as exc:
            logger.warning('%s sync skipped (cycle %s): %s', tier.value, cycle, exc, extra=extra)
        except ReconcileFailed as exc:
            logger.error('%s sync failed (cycle %s): %s', tier.value, cycle, exc, extra=extra)
        except Exception:
            logger.exception('%s sync crashed (cycle %s)', tier.value, cycle, extra=extra)
        else:
            logger.debug('%s sync done (cycle %s): %s addresses', tier.value, cycle, count, extra=extra)
            return True

        return False

    async def report_status(self, cycle: int = 0):
        if self.reporter is None:
            return

        try:
            await self.reporter.report()
        except Exception:
            logger.warning('Status report failed (cycle %s)', cycle, exc_info=True, extra={'cycle': cycle})

    async def run_cycle(self, cycle: int):
        await self.sync(Tier.STANDARD, cycle)

        if cycle % self.vip_every == 0:
            await self.sync(Tier.VIP, cycle)

        await self.report_status(cycle)

    async def start(self):
        """Bootstrap the filter and bring both sets up to date

        :raise BootstrapFailed: base filter structures are missing and can't be created
        """
        self.state = State.STARTING
        await self.packet_filter.ensure_bootstrap()

        await self.sync(Tier.VIP)
        await self.sync(Tier.STANDARD)

    async def wait_stop(self, timeout: float) -> bool:
        """Sleep `timeout` seconds or until stop requested"""
        with suppress(asyncio.TimeoutError):
            async with async_timeout.timeout(timeout):
                await self._stop_requested.wait()

        return self.stop_requested

    async def run(self, max_cycles: typing.Optional[int] = None):
        await self.start()

        self.state = State.RUNNING
        logger.info('Watchdog active (interval=%ss, VIP every %s cycles)', self.interval, self.vip_every)

        for cycle in itertools.count(1):
            if self.stop_requested:
                break

            self.cycle = cycle
            await self.run_cycle(cycle)

            if max_cycles is not None and cycle >= max_cycles:
                break

            if await self.wait_stop(self.interval):
                break

        self.state = State.STOPPING
        logger.info('Watchdog stopped')
