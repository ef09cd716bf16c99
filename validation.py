import re

from web3 import Web3

from errors import InvalidFormat, InvalidInput

ADDRESS_RE = re.compile(r'^0x[a-fA-F0-9]{40}$')
TX_HASH_RE = re.compile(r'^0x[a-fA-F0-9]{64}$')
TOKEN_ID_RE = re.compile(r'^[0-9]+$')

ZERO_ADDRESS = '0x' + '0' * 40


def is_address(value):
    return isinstance(value, str) and bool(ADDRESS_RE.match(value))


def is_tx_hash(value):
    return isinstance(value, str) and bool(TX_HASH_RE.match(value))


def validate_address(value, field='address'):
    """Return the checksummed form of a 0x-prefixed 20-byte hex address."""
    if not is_address(value):
        raise InvalidFormat(f'Invalid {field} format', field=field, value=value)
    return Web3.to_checksum_address(value)


def validate_tx_hash(value):
    if not is_tx_hash(value):
        raise InvalidFormat('Invalid transaction hash format', value=value)
    return value.lower()


def validate_token_id(value):
    if isinstance(value, bool):
        raise InvalidFormat('Valid token ID is required', value=value)
    if isinstance(value, int):
        token_id = value
    elif isinstance(value, str) and TOKEN_ID_RE.match(value.strip()):
        token_id = int(value.strip())
    else:
        raise InvalidFormat('Valid token ID is required', value=value)
    if token_id < 0:
        raise InvalidFormat('Valid token ID is required', value=value)
    return token_id


def validate_pagination(page, limit, max_limit=100):
    try:
        page = int(page)
        limit = int(limit)
    except (TypeError, ValueError):
        raise InvalidInput('Invalid pagination parameters')
    if page < 1 or limit < 1 or limit > max_limit:
        raise InvalidInput('Invalid pagination parameters')
    return page, limit


def require_fields(data, *fields):
    if not isinstance(data, dict):
        raise InvalidInput('Missing JSON data')
    missing = [f for f in fields if data.get(f) in (None, '')]
    if missing:
        raise InvalidInput(f'Missing required field: {missing[0]}', missing=missing)
    return data
