import json
import os
import stat

import pytest

from dcf_watchdog import __version__
from dcf_watchdog import status
from dcf_watchdog.config import StatusModel
from dcf_watchdog.entitlement import Tier
from dcf_watchdog.nftables import NftError
from dcf_watchdog.status import StatusReporter
from dcf_watchdog.status import read_memory_pct
from dcf_watchdog.status import read_uptime
from dcf_watchdog.status import write_atomic

MEMINFO = '''\
MemTotal:       16000000 kB
MemFree:         2000000 kB
MemAvailable:    4000000 kB
Buffers:          500000 kB
'''


@pytest.fixture(autouse=True)
def _no_netlink(mocker):
    mocker.patch.object(status, 'default_interface_counters', return_value=(1024, 2048))


@pytest.fixture()
def status_settings(tmp_path) -> StatusModel:
    return StatusModel(enabled=True, output=tmp_path / 'public' / 'status.json', node_role='GATEWAY-02')


@pytest.fixture()
def reporter(status_settings, user_store, packet_filter) -> StatusReporter:
    return StatusReporter(status_settings, user_store, packet_filter)


def test_read_memory_pct(tmp_path):
    meminfo = tmp_path / 'meminfo'
    meminfo.write_text(MEMINFO)
    assert read_memory_pct(meminfo) == 75


def test_read_memory_pct_unreadable(tmp_path):
    assert read_memory_pct(tmp_path / 'missing') == 0

    broken = tmp_path / 'meminfo'
    broken.write_text('MemTotal: lots\n')
    assert read_memory_pct(broken) == 0


def test_read_uptime(tmp_path):
    uptime = tmp_path / 'uptime'
    uptime.write_text('12345.67 54321.00\n')
    assert read_uptime(uptime) == 12345
    assert read_uptime(tmp_path / 'missing') == 0


def test_write_atomic_replaces_file(tmp_path):
    target = tmp_path / 'out' / 'status.json'
    write_atomic(target, '{"a": 1}')
    write_atomic(target, '{"a": 2}')

    assert json.loads(target.read_text()) == {'a': 2}
    assert stat.S_IMODE(os.stat(target).st_mode) == 0o644
    assert [p.name for p in target.parent.iterdir()] == ['status.json']


@pytest.mark.asyncio
async def test_report_writes_snapshot(reporter, status_settings, user_db, packet_filter):
    user_db.add(username='alice', last_ip='10.0.0.5', seen_ago=10)
    user_db.add(username='vip', last_ip='10.0.1.1', is_vip=True, seen_ago=3600)
    packet_filter.members[Tier.STANDARD] = {'10.0.0.5', '10.0.1.1'}

    await reporter.report()

    data = json.loads(status_settings.output.read_text())
    assert set(data) == {'meta', 'system', 'network', 'peers'}
    assert data['meta']['node_role'] == 'GATEWAY-02'
    assert data['meta']['version'] == __version__
    assert data['meta']['updated_at'].endswith('Z')
    assert data['system']['rx_bytes'] == 1024
    assert data['system']['tx_bytes'] == 2048
    assert data['network'] == {'active_tunnels': 2}
    assert data['peers'] == [
        {'username': 'vip', 'is_vip': 1, 'tier': 'vip', 'status': 'offline'},
        {'username': 'alice', 'is_vip': 0, 'tier': 'trial', 'status': 'online'},
    ]
    assert '10.0.0.5' not in status_settings.output.read_text()


@pytest.mark.asyncio
async def test_report_without_store(reporter, status_settings, user_db):
    user_db.path.unlink()

    snapshot = await reporter.report()

    assert snapshot.peers == []
    assert json.loads(status_settings.output.read_text())['peers'] == []


@pytest.mark.asyncio
async def test_report_without_filter(reporter, packet_filter, mocker):
    mocker.patch.object(
        packet_filter,
        'count_members',
        side_effect=NftError(['nft', '-j', 'list', 'set'], 1, 'Error: No such file or directory'),
    )

    snapshot = await reporter.report()

    assert snapshot.network.active_tunnels == 0
