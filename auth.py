"""Caller identity as handed over by the upstream authentication layer.

Signatures and tokens are checked before requests get here; these
decorators only read the identity headers and put a ``CallerIdentity`` on
``flask.g``.
"""
from dataclasses import dataclass
from functools import wraps

from flask import current_app, g, request

from errors import AuthorizationError, NotAdmin, Unauthenticated
from validation import is_address, validate_address

INSTITUTION_TYPES = ('institution', 'organization', 'issuer')


@dataclass(frozen=True)
class CallerIdentity:
    wallet: str
    user_type: str = 'user'
    name: str = ''
    email: str = ''
    is_admin: bool = False

    @property
    def is_institution(self):
        return self.user_type in INSTITUTION_TYPES


def identity_from_headers(headers):
    wallet = headers.get('X-Wallet-Address')
    if not wallet or not is_address(wallet):
        return None
    return CallerIdentity(
        wallet=validate_address(wallet, 'wallet address'),
        user_type=(headers.get('X-User-Type') or 'user').lower(),
        name=headers.get('X-User-Name') or '',
        email=headers.get('X-User-Email') or '',
        is_admin=(headers.get('X-Is-Admin') or '').lower() in ('1', 'true', 'yes'),
    )


def require_identity(f):
    @wraps(f)
    def decorated_function(*args, **kwargs):
        caller = identity_from_headers(request.headers)
        if caller is None:
            current_app.logger.warning(f'Request to {request.path} without caller identity')
            raise Unauthenticated()
        g.caller = caller
        return f(*args, **kwargs)

    return decorated_function


def require_institution(f):
    @wraps(f)
    @require_identity
    def decorated_function(*args, **kwargs):
        if not g.caller.is_institution:
            raise AuthorizationError('Institution account required', address=g.caller.wallet)
        return f(*args, **kwargs)

    return decorated_function


def require_admin(f):
    @wraps(f)
    @require_identity
    def decorated_function(*args, **kwargs):
        if not g.caller.is_admin:
            current_app.logger.warning(f'Non-admin {g.caller.wallet} tried {request.path}')
            raise NotAdmin(address=g.caller.wallet)
        return f(*args, **kwargs)

    return decorated_function
