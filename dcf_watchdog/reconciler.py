import logging
import typing

from .addresses import ValidationRejected
from .entitlement import Tier
from .nftables import NftError
from .nftables import PacketFilter

logger = logging.getLogger('dcf.reconciler')


class ReconcileFailed(Exception):
    def __init__(self, tier: Tier, reason: str):
        super().__init__(f'{tier.value} set reconciliation failed: {reason}')
        self.tier = tier
        self.reason = reason


class SetReconciler:
    """Installs the desired membership of a filter set

    Membership is never diffed against the live set: every call recomputes
    and replaces the whole set in a single transaction. A failed call leaves
    the previous membership in place and the next call starts from scratch.
    """

    def __init__(self, packet_filter: PacketFilter):
        self.packet_filter = packet_filter

    async def reconcile(self, tier: Tier, addresses: typing.Iterable[str]) -> int:
        """Make the `tier` set contain exactly `addresses`

        :return: number of members installed
        :raise ReconcileFailed: the filter rejected the transaction
        """
        desired = frozenset(addresses)

        try:
            if desired:
                await self.packet_filter.replace_set(tier, desired)
            else:
                await self.packet_filter.clear_set(tier)
        except (NftError, ValidationRejected, OSError) as exc:
            raise ReconcileFailed(tier, str(exc)) from exc

        if desired:
            logger.debug('%s set updated: %s addresses', tier.value, len(desired))
        else:
            logger.debug('%s set cleared (no authorized addresses)', tier.value)

        return len(desired)
