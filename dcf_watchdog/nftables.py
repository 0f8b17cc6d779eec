import abc
import asyncio
import json
import logging
import os
import re
import typing

import async_timeout

from . import config
from .addresses import check_address
from .entitlement import Tier

logger = logging.getLogger('dcf.nftables')

UDP_DPORT_RE = re.compile(r'\budp dport (\d+)\b')


class NftError(Exception):
    def __init__(self, args, returncode, stderr):
        self.cmd_args = args
        self.returncode = returncode
        self.stderr = stderr
        super().__init__(f'{" ".join(args)} exited with {returncode}: {stderr.strip()}')


class BootstrapFailed(Exception):
    pass


class NftResult(typing.NamedTuple):
    returncode: int
    stdout: str
    stderr: str


class PacketFilter(abc.ABC):
    """Control surface of the kernel packet filter

    Every mutation is applied as a whole or not at all.
    """

    @abc.abstractmethod
    async def ensure_bootstrap(self):
        """Create table, chain, sets and port rules that do not exist yet"""

    @abc.abstractmethod
    async def replace_set(self, tier: Tier, addresses: typing.Iterable[str]):
        """Atomically replace all members of the `tier` set"""

    @abc.abstractmethod
    async def clear_set(self, tier: Tier):
        """Remove all members of the `tier` set"""

    @abc.abstractmethod
    async def count_members(self, tier: Tier) -> int:
        """Current number of members, informational only"""


class NftablesBackend(PacketFilter):
    def __init__(self, settings: config.FirewallModel):
        self.settings = settings

    def set_name(self, tier: Tier) -> str:
        if tier is Tier.VIP:
            return self.settings.vip_set
        return self.settings.whitelist_set

    @property
    def _table_ref(self) -> str:
        return f'{self.settings.family} {self.settings.table}'

    def _set_ref(self, tier: Tier) -> str:
        return f'{self._table_ref} {self.set_name(tier)}'

    async def _nft(self, *args: str, script: str = None, check: bool = True) -> NftResult:
        cmd = [self.settings.nft, *args]
        logger.debug('Run %s', cmd)

        process = await asyncio.create_subprocess_exec(
            *cmd,
            stdin=asyncio.subprocess.PIPE if script is not None else asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            async with async_timeout.timeout(self.settings.command_timeout):
                stdout, stderr = await process.communicate(script.encode() if script is not None else None)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            raise NftError(cmd, None, f'timed out after {self.settings.command_timeout}s')

        result = NftResult(process.returncode, stdout.decode(), stderr.decode())
        if check and result.returncode != os.EX_OK:
            raise NftError(cmd, result.returncode, result.stderr)
        return result

    async def apply(self, script: str) -> NftResult:
        """Apply `script` as one nft transaction"""
        return await self._nft('-f', '-', script=script)

    # -- bootstrap --

    def bootstrap_objects(self) -> typing.List[typing.Tuple[typing.Tuple[str, ...], str, str]]:
        """(list args, create statement, description) for every base object"""
        s = self.settings
        table = self._table_ref
        return [
            (
                ('list', 'table', s.family, s.table),
                f'add table {table}',
                f'table {s.table}',
            ),
            (
                ('list', 'chain', s.family, s.table, s.chain),
                f'add chain {table} {s.chain} {{ type filter hook input priority 0; policy accept; }}',
                f'chain {s.chain}',
            ),
            (
                ('list', 'set', s.family, s.table, s.whitelist_set),
                f'add set {table} {s.whitelist_set} '
                f'{{ type ipv4_addr; flags interval, timeout; timeout {s.whitelist_timeout}s; }}',
                f'whitelist set {s.whitelist_set}',
            ),
            (
                ('list', 'set', s.family, s.table, s.vip_set),
                f'add set {table} {s.vip_set} {{ type ipv4_addr; flags interval; }}',
                f'VIP set {s.vip_set}',
            ),
        ]

    def port_rules(self) -> str:
        s = self.settings
        prefix = f'add rule {self._table_ref} {s.chain} udp dport {s.port}'
        return (
            f'{prefix} ip saddr @{s.vip_set} accept\n'
            f'{prefix} ip saddr @{s.whitelist_set} accept\n'
            f'{prefix} drop\n'
        )

    async def filtered_ports(self) -> typing.Set[int]:
        """udp ports that already have rules in the chain"""
        s = self.settings
        result = await self._nft('list', 'chain', s.family, s.table, s.chain)
        return {int(port) for port in UDP_DPORT_RE.findall(result.stdout)}

    async def ensure_bootstrap(self):
        logger.info('Initializing firewall ruleset ...')
        try:
            for list_args, statement, description in self.bootstrap_objects():
                result = await self._nft(*list_args, check=False)
                if result.returncode == os.EX_OK:
                    logger.debug('Found %s', description)
                    continue

                await self.apply(statement + '\n')
                logger.info('Created %s', description)

            port = self.settings.port
            ports = await self.filtered_ports()
            if port in ports:
                logger.debug('Rules for port %s already installed', port)
            else:
                await self.apply(self.port_rules())
                logger.info('Installed firewall rules for port %s', port)

            stale = sorted(ports - {port})
            if stale:
                logger.warning(
                    'Chain %s still filters udp port(s) %s, remove those rules if the port was changed',
                    self.settings.chain,
                    ', '.join(map(str, stale)),
                )
        except (NftError, OSError) as exc:
            raise BootstrapFailed(str(exc)) from exc

        logger.info('Initializing firewall ruleset ... done!')

    # -- set membership --

    def render_replace(self, tier: Tier, addresses: typing.Iterable[str]) -> str:
        target = self._set_ref(tier)
        elements = ', '.join(check_address(address) for address in sorted(addresses))
        return f'flush set {target}\nadd element {target} {{ {elements} }}\n'

    def render_clear(self, tier: Tier) -> str:
        return f'flush set {self._set_ref(tier)}\n'

    async def replace_set(self, tier: Tier, addresses: typing.Iterable[str]):
        addresses = list(addresses)
        if not addresses:
            # `add element` with an empty list is a syntax error
            return await self.clear_set(tier)
        await self.apply(self.render_replace(tier, addresses))

    async def clear_set(self, tier: Tier):
        await self.apply(self.render_clear(tier))

    async def count_members(self, tier: Tier) -> int:
        s = self.settings
        result = await self._nft('-j', 'list', 'set', s.family, s.table, self.set_name(tier))
        for obj in json.loads(result.stdout).get('nftables', []):
            if 'set' in obj:
                return len(obj['set'].get('elem', []))
        return 0
