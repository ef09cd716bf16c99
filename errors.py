"""Error taxonomy shared by the contracts, the chain backends and the API.

Every error carries a ``kind`` (the category reported to callers) and an
HTTP-equivalent ``status_code``. The default message of each contract error
is the revert reason the deployed contract uses, so a revert string coming
back from a node can be mapped to the same class with ``from_revert_reason``.
"""


class CredentialError(Exception):
    kind = 'internal'
    status_code = 500
    default_message = 'Internal error'

    def __init__(self, message=None, **context):
        self.message = message or self.default_message
        self.context = {k: v for k, v in context.items() if v is not None}
        super().__init__(self.message)

    def to_dict(self, include_details=False):
        data = {'success': False, 'error': self.message, 'kind': self.kind}
        data.update(self.context)
        if include_details:
            data['details'] = f'{type(self).__name__}: {self.message}'
        return data


# Validation

class ValidationError(CredentialError):
    kind = 'validation'
    status_code = 400
    default_message = 'Invalid request'


class InvalidInput(ValidationError):
    default_message = 'Invalid input'


class InvalidFormat(ValidationError):
    default_message = 'Invalid format'


class LengthMismatch(ValidationError):
    default_message = 'Array lengths mismatch'


# Authorization

class AuthorizationError(CredentialError):
    kind = 'authorization'
    status_code = 403
    default_message = 'Not authorized'


class Unauthenticated(AuthorizationError):
    status_code = 401
    default_message = 'Missing caller identity'


class NotOwner(AuthorizationError):
    default_message = 'Not owner'


class NotAdmin(AuthorizationError):
    default_message = 'Not admin'


class NotAuthorizedIssuer(AuthorizationError):
    default_message = 'Not authorized issuer'


class NotIssuer(AuthorizationError):
    default_message = 'Only issuer can revoke'


class NotTokenOwner(AuthorizationError):
    default_message = 'Not token owner'


# Not found

class NotFound(CredentialError):
    kind = 'not_found'
    status_code = 404
    default_message = 'Not found'


class NotRegistered(NotFound):
    default_message = 'Institution not registered'


class CredentialNotFound(NotFound):
    default_message = 'Credential does not exist'


class TransactionNotFound(NotFound):
    default_message = 'Transaction not found'


# State conflicts

class ConflictError(CredentialError):
    kind = 'conflict'
    status_code = 409
    default_message = 'Conflicting state'


class AlreadyRegistered(ConflictError):
    default_message = 'Institution already registered'


class AlreadyVerified(ConflictError):
    default_message = 'Institution already verified'


class NotAuthorized(ConflictError):
    default_message = 'Institution not authorized'


class AlreadyRevoked(ConflictError):
    default_message = 'Credential already revoked'


class InvalidTransition(ConflictError):
    default_message = 'Transaction already resolved'


# Infrastructure

class TransientError(CredentialError):
    kind = 'transient'
    status_code = 503
    default_message = 'Service temporarily unavailable'


class ChainUnavailable(TransientError):
    default_message = 'Blockchain node unreachable'


class MetadataStorageError(TransientError):
    status_code = 502
    default_message = 'Failed to store credential metadata'


class ExecutionReverted(CredentialError):
    kind = 'reverted'
    status_code = 422
    default_message = 'Transaction reverted'


_REVERT_CLASSES = (
    InvalidInput, LengthMismatch, NotOwner, NotAdmin, NotAuthorizedIssuer,
    NotIssuer, NotTokenOwner, NotRegistered, CredentialNotFound,
    AlreadyRegistered, AlreadyVerified, NotAuthorized, AlreadyRevoked,
)

REVERT_REASONS = {cls.default_message: cls for cls in _REVERT_CLASSES}


def from_revert_reason(reason, **context):
    """Map a contract revert string to the matching error instance."""
    reason = (reason or '').strip()
    if reason.startswith('execution reverted:'):
        reason = reason[len('execution reverted:'):].strip()
    cls = REVERT_REASONS.get(reason)
    if cls is None:
        return ExecutionReverted(reason or None, **context)
    return cls(**context)
