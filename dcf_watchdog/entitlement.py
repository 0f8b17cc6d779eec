import enum
import logging
import typing
from decimal import Decimal

from pydantic import BaseModel
from pydantic import ValidationError
from pydantic import condecimal
from pydantic import field_validator

from . import config
from .addresses import filter_valid
from .store import VIP_CANDIDATES
from .store import UserStore
from .store import standard_candidates

logger = logging.getLogger('dcf.entitlement')


class Tier(str, enum.Enum):
    STANDARD = 'standard'
    VIP = 'vip'


def _null_as_default(model, v, info):
    if v is None:
        return model.model_fields[info.field_name].default
    return v


class UserRecord(BaseModel):
    """Fields every tier reads

    Billing columns are parsed separately (:class:`UsageRecord`) so a broken
    usage value never hides a VIP.
    """

    last_ip: typing.Optional[str] = None
    is_vip: bool = False

    @field_validator('is_vip', mode='before')
    @classmethod
    def _null_vip(cls, v, info):
        return _null_as_default(cls, v, info)

    @property
    def address(self) -> str:
        return (self.last_ip or '').strip()


class UsageRecord(UserRecord):
    data_used: condecimal(ge=0) = Decimal(0)
    account_balance: Decimal = Decimal(0)

    @field_validator('data_used', 'account_balance', mode='before')
    @classmethod
    def _exact_number(cls, v, info):
        v = _null_as_default(cls, v, info)
        if isinstance(v, float):
            return Decimal(repr(v))
        return v


class Entitlement(typing.NamedTuple):
    """Addresses entitled under one tier in one evaluation pass"""

    tier: Tier
    addresses: typing.FrozenSet[str]


class EntitlementPolicy:
    """Billing rules deciding who may pass the filter

    A user is allowed on the standard whitelist when they are VIP, when their
    traffic fits into the free quota, or when the balance covers the traffic
    above the quota at `price_per_byte`. VIP users are always allowed on the
    permanent list.
    """

    def __init__(self, settings: config.PolicyModel):
        self.settings = settings

    @property
    def free_quota_bytes(self) -> int:
        return self.settings.free_quota_bytes

    @property
    def price_per_byte(self) -> Decimal:
        return self.settings.price_per_byte

    def overage_cost(self, data_used: Decimal) -> Decimal:
        if data_used <= self.free_quota_bytes:
            return Decimal(0)
        return (data_used - self.free_quota_bytes) * self.price_per_byte

    def is_standard_entitled(self, record: UsageRecord) -> bool:
        if record.is_vip:
            return True
        if record.data_used <= self.free_quota_bytes:
            return True
        return self.overage_cost(record.data_used) <= record.account_balance

    def is_vip_entitled(self, record: UserRecord) -> bool:
        return record.is_vip and bool(record.address)


class EntitlementEvaluator:
    def __init__(self, store: UserStore, policy: EntitlementPolicy):
        self.store = store
        self.policy = policy

    def _parse(self, model: typing.Type[UserRecord], row: dict) -> typing.Optional[UserRecord]:
        try:
            return model.model_validate(row)
        except ValidationError as exc:
            logger.warning('Malformed user row skipped (username=%r): %s', row.get('username'), exc)
            return None

    def _is_entitled(self, tier: Tier, record: UserRecord, row: dict) -> bool:
        if tier is Tier.VIP:
            return self.policy.is_vip_entitled(record)
        if record.is_vip:
            return True

        # billing columns only matter for non-VIP users
        usage = self._parse(UsageRecord, row)
        return usage is not None and self.policy.is_standard_entitled(usage)

    def select(self, rows: typing.Iterable[dict], tier: Tier) -> Entitlement:
        candidates = set()
        for row in rows:
            record = self._parse(UserRecord, row)
            if record is not None and record.address and self._is_entitled(tier, record, row):
                candidates.add(record.address)

        return Entitlement(tier, frozenset(filter_valid(candidates)))

    def evaluate(self, tier: Tier) -> Entitlement:
        """Query the store and return the addresses entitled under `tier`

        :raise StoreUnavailable: store missing or query failed
        """
        if tier is Tier.VIP:
            query = VIP_CANDIDATES
        else:
            query = standard_candidates(self.policy.settings.activity_window)

        entitlement = self.select(self.store.fetch(query), tier)
        logger.debug('%s entitlement: %s addresses', tier.value, len(entitlement.addresses))
        return entitlement
