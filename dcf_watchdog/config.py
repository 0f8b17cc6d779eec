import logging
import pathlib
import typing
from decimal import Decimal

import sentry_sdk
import yaml
from cached_property import cached_property
from pydantic import AnyHttpUrl
from pydantic import BaseModel
from pydantic import ConfigDict
from pydantic import condecimal
from pydantic import confloat
from pydantic import conint
from pydantic import constr
from pydantic import field_validator
from pydantic_settings import BaseSettings
from pydantic_settings import SettingsConfigDict
from sentry_sdk.integrations.logging import LoggingIntegration

from . import __version__
from .dict_merge import dict_merge
from .logging import setup_logging

__all__ = (
    'StoreModel',
    'FirewallModel',
    'PolicyModel',
    'SyncModel',
    'StatusModel',
    'Settings',
    'ConfigurationError',
    'settings',
)

logger = logging.getLogger('dcf.config')

#: nft table, chain and set names end up inside `nft -f` scripts
NftIdentifier = constr(pattern=r'^[a-zA-Z][a-zA-Z0-9_]{0,31}$')

#: conf.d blocks which may be defined only once across all files
EXCLUSIVE_BLOCKS = ('firewall',)


class ConfigurationError(Exception):
    pass


class StoreModel(BaseModel):
    model_config = ConfigDict(extra='forbid')

    path: pathlib.Path = pathlib.Path('/var/lib/demod/identity.db')
    busy_timeout: confloat(gt=0) = 5  #: seconds sqlite waits for a writer lock
    locked_retries: conint(ge=1) = 3  #: tries on "database is locked" before giving up


class FirewallModel(BaseModel):
    model_config = ConfigDict(extra='forbid')

    nft: str = 'nft'
    family: typing.Literal['ip', 'inet'] = 'ip'
    table: NftIdentifier = 'dcf_firewall'
    chain: NftIdentifier = 'input'
    whitelist_set: NftIdentifier = 'whitelist'
    vip_set: NftIdentifier = 'vip_permanent'
    port: conint(ge=1, le=65535) = 7777
    whitelist_timeout: conint(gt=0) = 3600  #: seconds a whitelist element lives without refresh
    command_timeout: confloat(gt=0) = 5

    @field_validator('vip_set')
    @classmethod
    def _check_distinct_sets(cls, vip_set, info):
        if vip_set == info.data.get('whitelist_set'):
            raise ValueError('whitelist_set and vip_set must be different sets')
        return vip_set


class PolicyModel(BaseModel):
    model_config = ConfigDict(extra='forbid')

    free_quota_bytes: conint(ge=0) = 134217728  # 128 MiB
    price_per_byte: condecimal(ge=0) = Decimal('4.65661287E-11')
    activity_window: conint(gt=0) = 3600  #: seconds since `last_seen` a user counts as active

    @field_validator('price_per_byte', mode='before')
    @classmethod
    def _exact_price(cls, v):
        # yaml gives floats, keep their shortest repr instead of binary expansion
        if isinstance(v, float):
            return Decimal(repr(v))
        return v


class SyncModel(BaseModel):
    model_config = ConfigDict(extra='forbid')

    interval: confloat(gt=0) = 10
    vip_every: conint(ge=1) = 6  #: VIP set is reconciled every N-th cycle


class StatusModel(BaseModel):
    model_config = ConfigDict(extra='forbid')

    enabled: bool = False
    output: pathlib.Path = pathlib.Path('/var/lib/demod/public/status.json')
    node_role: str = 'GATEWAY-01'
    online_window: conint(gt=0) = 300
    peers_limit: conint(gt=0) = 100


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file='.env',
        env_prefix='DCF_',
        extra='ignore',
        ignored_types=(cached_property,),
    )

    sentry_dsn: typing.Optional[AnyHttpUrl] = None
    confdir_0: pathlib.Path = pathlib.Path('/etc/dcf-watchdog/conf.d/')
    confdir_1: pathlib.Path = pathlib.Path('./conf.d/')
    error_log: pathlib.Path = pathlib.Path('/dev/null')
    loglevel: str = 'INFO'
    log_format: typing.Literal['verbose', 'json'] = 'verbose'
    piddir: typing.Optional[pathlib.Path] = None

    @field_validator('loglevel')
    @classmethod
    def _check_loglevel(cls, v):
        from logging import _checkLevel  # noqa

        v = v.upper()
        if v == 'WARN':
            v = 'WARNING'
        _checkLevel(v)
        return v

    @cached_property
    def merged_config_data(self) -> dict:
        return load_configs(iter_config_files(self.confdir_0, self.confdir_1))

    def _block(self, name: str) -> dict:
        return self.merged_config_data.get(name) or {}

    @cached_property
    def store(self) -> StoreModel:
        return StoreModel.model_validate(self._block('store'))

    @cached_property
    def firewall(self) -> FirewallModel:
        return FirewallModel.model_validate(self._block('firewall'))

    @cached_property
    def policy(self) -> PolicyModel:
        return PolicyModel.model_validate(self._block('policy'))

    @cached_property
    def sync(self) -> SyncModel:
        return SyncModel.model_validate(self._block('sync'))

    @cached_property
    def status(self) -> StatusModel:
        return StatusModel.model_validate(self._block('status'))


def iter_config_files(*confdirs):
    for confdir in confdirs:
        if not confdir.exists():
            logger.info('Confdir not found: %s', confdir.absolute().as_posix())
            continue

        if not confdir.is_dir():
            logger.warning('Confdir expected to be a directory, not a file: %s', confdir.absolute().as_posix())
            continue

        for file in sorted(confdir.iterdir(), key=lambda f: f.name):
            if file.is_file() and file.name.endswith('.yaml'):
                logger.info('Found config: %s', file.as_posix())
                yield file
            else:
                logger.debug('Found non-config file, ignore: %s', file.as_posix())


def load_configs(paths: typing.Iterable[pathlib.Path]) -> dict:
    whole_config = {}
    defined_in = {}

    for path in paths:
        with path.open() as fp:
            config = yaml.safe_load(fp) or {}

        if not isinstance(config, dict):
            raise ConfigurationError(f'Config root must be a mapping: {path.as_posix()}')

        for block in EXCLUSIVE_BLOCKS:
            if block not in config:
                continue
            if block in defined_in:
                raise ConfigurationError(
                    f'{block!r} already configured in {defined_in[block].as_posix()}, '
                    f'redefined in {path.as_posix()}'
                )
            defined_in[block] = path

        whole_config = dict_merge(whole_config, config)

    return whole_config


def setup(settings_: Settings = None, reread: bool = False):
    global settings
    if settings_ is None or reread:
        logger.info('Re-read settings')
        settings_ = Settings()

    settings = settings_

    if settings.sentry_dsn:
        sentry_logging = LoggingIntegration(
            level=logging.DEBUG,  # Capture debug and above as breadcrumbs
            event_level=logging.ERROR,  # Send errors as events
        )
        sentry_sdk.init(
            dsn=str(settings.sentry_dsn),
            integrations=[sentry_logging],
            release=__version__,
        )

    setup_logging(
        loglevel=settings.loglevel,
        error_filename=settings.error_log.as_posix(),
        log_format=settings.log_format,
    )

    if settings.sentry_dsn:
        logger.debug('Sentry enabled')
    else:
        logger.debug('Sentry disabled')

    return settings


settings = Settings()

setup(settings)


def __getattr__(name):
    if name in ('store', 'firewall', 'policy', 'sync', 'status'):
        return getattr(settings, name)
    raise AttributeError(name)
