"""IPv4 address validation

The user store is written by another component and is not trusted: every
address goes through :func:`is_valid_ipv4` before it can become part of an
nft transaction.
"""
import logging
import re
import typing

logger = logging.getLogger('dcf.addresses')

# leading zeros are refused: "010" is octal for some parsers and decimal for others
_OCTET = r'(?:0|[1-9][0-9]{0,2})'
_DOTTED_QUAD = re.compile(r'\.'.join([_OCTET] * 4), flags=re.ASCII)


class ValidationRejected(ValueError):
    def __init__(self, candidate):
        super().__init__(f'Not a dotted-quad IPv4 address: {candidate!r}')
        self.candidate = candidate


def is_valid_ipv4(candidate) -> bool:
    if not isinstance(candidate, str):
        return False

    if _DOTTED_QUAD.fullmatch(candidate) is None:
        return False

    return all(int(octet) <= 255 for octet in candidate.split('.'))


def check_address(candidate) -> str:
    if not is_valid_ipv4(candidate):
        raise ValidationRejected(candidate)
    return candidate


def filter_valid(candidates: typing.Iterable[str]) -> typing.Iterator[str]:
    for candidate in candidates:
        if is_valid_ipv4(candidate):
            yield candidate
        else:
            logger.debug('Address rejected: %r', candidate)
