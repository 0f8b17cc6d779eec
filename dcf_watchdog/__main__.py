import asyncio
import logging
import signal
import sys
from contextlib import suppress

import uvloop
from pid.decorator import pidfile

from . import __version__
from . import config
from .nftables import BootstrapFailed
from .nftables import NftablesBackend
from .status import StatusReporter
from .store import UserStore
from .watchdog import Watchdog

logger = logging.getLogger('dcf')

SHUTDOWN_SIGNALS = (signal.SIGTERM, signal.SIGINT, signal.SIGHUP)


@pidfile('dcf-watchdog', piddir=config.settings.piddir)
def run():
    try:
        with suppress(KeyboardInterrupt):
            uvloop.run(_run_watchdog())
    except BootstrapFailed as exc:
        logger.critical('Firewall bootstrap failed, refusing to run without rules: %s', exc)
        sys.exit(1)


async def _run_watchdog():
    settings = config.settings

    logger.info('DeMoD Watchdog v%s starting ...', __version__)
    logger.info('Database: %s', settings.store.path.as_posix())
    logger.info('Port: %s', settings.firewall.port)
    logger.info('Sync interval: %ss', settings.sync.interval)

    watchdog = Watchdog.from_settings(settings)

    loop = asyncio.get_running_loop()
    for signum in SHUTDOWN_SIGNALS:
        loop.add_signal_handler(signum, watchdog.stop, signum)

    await watchdog.run()


def bootstrap():
    try:
        uvloop.run(NftablesBackend(config.settings.firewall).ensure_bootstrap())
    except BootstrapFailed as exc:
        logger.critical('Firewall bootstrap failed: %s', exc)
        sys.exit(1)


def write_status():
    settings = config.settings
    reporter = StatusReporter(settings.status, UserStore(settings.store), NftablesBackend(settings.firewall))
    snapshot = uvloop.run(reporter.report())
    logger.info('Status written to %s (%s peers)', settings.status.output.as_posix(), len(snapshot.peers))


if __name__ == '__main__':
    run()
