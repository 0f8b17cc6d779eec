"""Status snapshot for the dashboard

Collects host metrics, the whitelist size and a sanitized user listing and
writes them to a json file. Every source is optional: whatever cannot be read
is reported as zero (or an empty peer list) instead of failing the snapshot.
"""
import asyncio
import datetime
import logging
import os
import pathlib
import socket
import tempfile
import typing

from pydantic import BaseModel
from pydantic import ValidationError
from pyroute2 import IPRoute
from pyroute2.netlink.exceptions import NetlinkError

from . import __version__
from . import config
from .entitlement import Tier
from .nftables import NftError
from .nftables import PacketFilter
from .store import StoreUnavailable
from .store import UserStore
from .store import peer_listing

logger = logging.getLogger('dcf.status')


class MetaModel(BaseModel):
    updated_at: str
    node_role: str
    version: str = __version__
    generated_by: str = 'dcf-telemetry'


class SystemModel(BaseModel):
    load_avg: float = 0.0
    memory_pct: int = 0
    rx_bytes: int = 0
    tx_bytes: int = 0
    uptime_secs: int = 0


class NetworkModel(BaseModel):
    active_tunnels: int = 0


class PeerModel(BaseModel):
    username: str
    is_vip: int
    tier: typing.Literal['vip', 'paid', 'trial']
    status: typing.Literal['online', 'offline']


class StatusSnapshot(BaseModel):
    meta: MetaModel
    system: SystemModel
    network: NetworkModel
    peers: typing.List[PeerModel] = []


def read_load_avg() -> float:
    try:
        return os.getloadavg()[0]
    except OSError:
        return 0.0


def read_memory_pct(meminfo: pathlib.Path = pathlib.Path('/proc/meminfo')) -> int:
    try:
        fields = {}
        for line in meminfo.read_text().splitlines():
            name, _, value = line.partition(':')
            fields[name] = int(value.split()[0])
        total = fields['MemTotal']
        used = total - fields['MemAvailable']
    except (OSError, KeyError, ValueError, IndexError):
        return 0

    if total <= 0:
        return 0
    return round(used / total * 100)


def read_uptime(uptime: pathlib.Path = pathlib.Path('/proc/uptime')) -> int:
    try:
        return int(float(uptime.read_text().split()[0]))
    except (OSError, ValueError, IndexError):
        return 0


def default_interface_counters() -> typing.Tuple[int, int]:
    """rx/tx bytes of the interface carrying the default IPv4 route"""
    try:
        with IPRoute() as ipr:
            routes = list(ipr.get_default_routes(family=socket.AF_INET))
            if not routes:
                return 0, 0

            links = list(ipr.get_links(routes[0].get_attr('RTA_OIF')))
            stats = links[0].get_attr('IFLA_STATS64') or links[0].get_attr('IFLA_STATS')
            return int(stats['rx_bytes']), int(stats['tx_bytes'])
    except (NetlinkError, OSError, IndexError, KeyError, TypeError) as exc:
        logger.debug('Interface counters unavailable: %s', exc)
        return 0, 0


def collect_system() -> SystemModel:
    rx_bytes, tx_bytes = default_interface_counters()
    return SystemModel(
        load_avg=read_load_avg(),
        memory_pct=read_memory_pct(),
        rx_bytes=rx_bytes,
        tx_bytes=tx_bytes,
        uptime_secs=read_uptime(),
    )


def write_atomic(path: pathlib.Path, content: str):
    path.parent.mkdir(parents=True, exist_ok=True)

    fd, tmp_name = tempfile.mkstemp(prefix=f'.{path.name}.', suffix='.tmp', dir=path.parent)
    try:
        with os.fdopen(fd, 'w') as fp:
            fp.write(content)
        os.chmod(tmp_name, 0o644)
        os.replace(tmp_name, path)
    except BaseException:
        os.unlink(tmp_name)
        raise


class StatusReporter:
    def __init__(self, settings: config.StatusModel, store: UserStore, packet_filter: PacketFilter):
        self.settings = settings
        self.store = store
        self.packet_filter = packet_filter

    def _peers(self) -> typing.List[PeerModel]:
        query = peer_listing(self.settings.online_window, self.settings.peers_limit)
        try:
            rows = self.store.fetch(query)
        except StoreUnavailable as exc:
            logger.debug('Peers unavailable: %s', exc)
            return []

        peers = []
        for row in rows:
            try:
                peers.append(PeerModel.model_validate(row))
            except ValidationError as exc:
                logger.debug('Peer row skipped: %s', exc)
        return peers

    async def _active_tunnels(self) -> int:
        try:
            return await self.packet_filter.count_members(Tier.STANDARD)
        except (NftError, OSError, ValueError) as exc:
            logger.debug('Whitelist size unavailable: %s', exc)
            return 0

    async def collect(self) -> StatusSnapshot:
        loop = asyncio.get_running_loop()
        system = await loop.run_in_executor(None, collect_system)
        peers = await loop.run_in_executor(None, self._peers)

        return StatusSnapshot(
            meta=MetaModel(
                updated_at=datetime.datetime.now(datetime.timezone.utc).strftime('%Y-%m-%dT%H:%M:%SZ'),
                node_role=self.settings.node_role,
            ),
            system=system,
            network=NetworkModel(active_tunnels=await self._active_tunnels()),
            peers=peers,
        )

    async def report(self) -> StatusSnapshot:
        snapshot = await self.collect()
        write_atomic(self.settings.output, snapshot.model_dump_json(indent=2))
        logger.debug('Status written to %s', self.settings.output.as_posix())
        return snapshot
