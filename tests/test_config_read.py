import pathlib
from decimal import Decimal
from unittest.mock import create_autospec

import pytest
from pydantic import ValidationError

from dcf_watchdog import config as dcf_config
from dcf_watchdog.config import FirewallModel
from dcf_watchdog.config import Settings
from dcf_watchdog.dict_merge import dict_merge


def test_config_files_iterated_in_ascending_order():
    """listdir return paths in arbitrary order, we need expected order"""

    def make_fake_config_file(name):
        obj = create_autospec(pathlib.Path)
        obj.is_file.return_value = True
        obj.name = name
        obj.as_posix.return_value = f'/as/posix/{obj.name}'
        return obj

    arbitrary_ordered_files = [
        make_fake_config_file('10.yaml'),
        make_fake_config_file('arbitrary.yaml'),
        make_fake_config_file('01.yaml'),
        make_fake_config_file('README'),
    ]

    fake_dir = create_autospec(pathlib.Path)
    fake_dir.exists.return_value = True
    fake_dir.is_dir.return_value = True
    fake_dir.iterdir.side_effect = lambda: iter(arbitrary_ordered_files)

    assert [f.name for f in dcf_config.iter_config_files(fake_dir)] == [
        '01.yaml',
        '10.yaml',
        'arbitrary.yaml',
    ]


def test_blocks_merged_in_file_order(config):
    assert config.settings.merged_config_data == {
        'firewall': {'table': 'dcf_firewall', 'port': 7777},
        'store': {'path': '/var/lib/demod/identity.db', 'busy_timeout': 1},
        'policy': {'free_quota_bytes': 134217728, 'price_per_byte': 4.65661287e-11},
        'sync': {'interval': 10, 'vip_every': 3},
    }


def test_models_parsed(config):
    assert config.store.path == pathlib.Path('/var/lib/demod/identity.db')
    assert config.store.busy_timeout == 1
    assert config.firewall.port == 7777
    assert config.firewall.whitelist_timeout == 3600
    assert config.policy.price_per_byte == Decimal('4.65661287E-11')
    assert config.sync.interval == 10
    assert config.sync.vip_every == 3
    assert config.status.enabled is False


@pytest.mark.parametrize('firewall_port', [27015], indirect=True)
def test_firewall_port(config, firewall_port):
    assert config.firewall.port == 27015


@pytest.mark.parametrize('free_quota_bytes', [0], indirect=True)
def test_zero_free_quota(config):
    assert config.policy.free_quota_bytes == 0


def test_defaults_without_config_files(config_manager):
    with config_manager.setup() as new_config:
        assert new_config.settings.merged_config_data == {}
        assert new_config.policy.free_quota_bytes == 134217728
        assert new_config.sync.interval == 10
        assert new_config.sync.vip_every == 6
        assert new_config.firewall.table == 'dcf_firewall'
        assert new_config.firewall.vip_set == 'vip_permanent'


def test_firewall_cant_be_configured_twice(config_manager, conf_d_firewall):
    config_manager.add_config(
        '05-redefine-firewall-block.yaml',
        '''
firewall:
  port: 27015
''',
    )
    with pytest.raises(dcf_config.ConfigurationError, match='already configured'), config_manager.setup():
        ...


def test_unknown_keys_rejected(config_manager):
    config_manager.add_config('01-typo.yaml', 'sync:\n  intreval: 5\n')

    with pytest.raises(ValidationError), config_manager.setup():
        ...


@pytest.mark.parametrize(
    'name',
    ['dcf firewall', 'dcf_firewall; flush ruleset', '1table', '', 'x' * 40],
)
def test_nft_identifiers_validated(name):
    with pytest.raises(ValidationError):
        FirewallModel(table=name)


def test_sets_must_differ():
    with pytest.raises(ValidationError):
        FirewallModel(whitelist_set='allowed', vip_set='allowed')


@pytest.mark.parametrize('port', [0, 65536])
def test_port_range(port):
    with pytest.raises(ValidationError):
        FirewallModel(port=port)


@pytest.mark.parametrize(
    'loglevel, expected',
    [('debug', 'DEBUG'), ('info', 'INFO'), ('warn', 'WARNING'), ('Error', 'ERROR')],
)
def test_loglevel_aliases(monkeypatch, loglevel, expected):
    monkeypatch.setenv('DCF_LOGLEVEL', loglevel)
    assert Settings().loglevel == expected


def test_unknown_loglevel(monkeypatch):
    monkeypatch.setenv('DCF_LOGLEVEL', 'verbose')
    with pytest.raises(ValidationError):
        Settings()


def test_dict_merge_is_deep_and_pure():
    base = {'store': {'path': '/a', 'busy_timeout': 5}, 'sync': {'interval': 10}}
    override = {'store': {'path': '/b'}, 'sync': 5}

    assert dict_merge(base, override) == {'store': {'path': '/b', 'busy_timeout': 5}, 'sync': 5}
    assert base == {'store': {'path': '/a', 'busy_timeout': 5}, 'sync': {'interval': 10}}
