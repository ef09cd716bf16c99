"""Credential ledger contract: credentials minted as uniquely-owned tokens.

A credential is valid while it is not revoked and not past its expiry. An
expiry of 0 means the credential never expires; otherwise it stays valid up
to and including the expiry instant.
"""
from dataclasses import dataclass, asdict
from enum import Enum

from contract_base import (
    Contract, Failed, Found, Missing, normalize_address, transaction, view,
)
from errors import (
    CredentialError, CredentialNotFound, InvalidInput, LengthMismatch,
    AlreadyRevoked, NotAuthorizedIssuer, NotIssuer, NotTokenOwner,
)
from validation import ZERO_ADDRESS


class CredentialType(str, Enum):
    DEGREE = 'Degree'
    CERTIFICATE = 'Certificate'
    COURSE = 'Course'
    WORKSHOP = 'Workshop'
    LICENSE = 'License'

    @classmethod
    def parse(cls, value):
        if isinstance(value, cls):
            return value
        if isinstance(value, int) and not isinstance(value, bool):
            members = list(cls)
            if 0 <= value < len(members):
                return members[value]
        try:
            return cls(value)
        except ValueError:
            raise InvalidInput(f'Unknown credential type: {value}', credential_type=value)


def is_expired(expiry_date, now):
    return expiry_date != 0 and now > expiry_date


@dataclass
class Credential:
    token_id: int
    issuer: str
    recipient: str
    credential_type: CredentialType
    institution_name: str
    issue_date: int
    expiry_date: int
    ipfs_hash: str
    revoked: bool = False

    ABI_FIELDS = ('issuer', 'recipient', 'credential_type', 'institution_name',
                  'issue_date', 'expiry_date', 'ipfs_hash', 'revoked')

    @classmethod
    def from_abi(cls, values, token_id=None):
        data = dict(zip(cls.ABI_FIELDS, values))
        data['credential_type'] = CredentialType.parse(data['credential_type'])
        return cls(token_id=token_id, **data)

    def to_dict(self):
        data = asdict(self)
        return {
            'tokenId': data['token_id'],
            'issuer': data['issuer'],
            'recipient': data['recipient'],
            'credentialType': self.credential_type.value,
            'institutionName': data['institution_name'],
            'issueDate': data['issue_date'],
            'expiryDate': data['expiry_date'],
            'ipfsHash': data['ipfs_hash'],
            'revoked': data['revoked'],
        }


@dataclass
class LedgerVerification:
    """The ledger's own view of validity; issuer authorization is not checked."""
    is_valid: bool
    issuer: str
    recipient: str
    credential_type: CredentialType
    institution_name: str
    issue_date: int
    expired: bool
    revoked: bool

    ABI_FIELDS = ('is_valid', 'issuer', 'recipient', 'credential_type',
                  'institution_name', 'issue_date', 'expired', 'revoked')

    @classmethod
    def from_abi(cls, values):
        data = dict(zip(cls.ABI_FIELDS, values))
        data['credential_type'] = CredentialType.parse(data['credential_type'])
        return cls(**data)

    def to_dict(self):
        return {
            'isValid': self.is_valid,
            'issuer': self.issuer,
            'recipient': self.recipient,
            'credentialType': self.credential_type.value,
            'institutionName': self.institution_name,
            'issueDate': self.issue_date,
            'expired': self.expired,
            'revoked': self.revoked,
        }


class CredentialLedger(Contract):
    name = 'CredentialPassport'
    symbol = 'CPASS'
    links = ('registry',)

    def __init__(self, registry, address=None):
        super().__init__(address)
        self.registry = registry
        self.next_token_id = 0
        self.credentials = {}
        self.owners = {}
        self.token_uris = {}
        self.user_credentials = {}
        self.balances = {}

    def _credential(self, token_id):
        credential = self.credentials.get(token_id)
        if credential is None:
            raise CredentialNotFound(token_id=token_id)
        return credential

    def _check_issue(self, ctx, recipient, credential_type):
        if not self.registry.is_authorized_issuer(ctx.sender):
            raise NotAuthorizedIssuer(address=ctx.sender)
        recipient = normalize_address(recipient)
        if recipient == ZERO_ADDRESS:
            raise InvalidInput('Invalid recipient', address=recipient)
        return recipient, CredentialType.parse(credential_type)

    def _mint(self, ctx, recipient, credential_type, institution_name,
              expiry_date, ipfs_hash, token_uri):
        token_id = self.next_token_id
        self.next_token_id += 1
        issuer = normalize_address(ctx.sender)

        self.credentials[token_id] = Credential(
            token_id=token_id,
            issuer=issuer,
            recipient=recipient,
            credential_type=credential_type,
            institution_name=institution_name,
            issue_date=ctx.timestamp,
            expiry_date=int(expiry_date or 0),
            ipfs_hash=ipfs_hash or '',
        )
        self.owners[token_id] = recipient
        self.balances[recipient] = self.balances.get(recipient, 0) + 1
        self.token_uris[token_id] = token_uri or ''
        self.user_credentials.setdefault(recipient, []).append(token_id)

        self.registry.increment_credential_count(ctx, issuer)
        self.emit(ctx, 'Transfer', sender=ZERO_ADDRESS, to=recipient, tokenId=token_id)
        self.emit(ctx, 'CredentialIssued', tokenId=token_id, issuer=issuer,
                  recipient=recipient, credentialType=credential_type.value)
        return token_id

    @transaction('issueCredential')
    def issue_credential(self, ctx, recipient, credential_type, institution_name,
                         expiry_date, ipfs_hash, token_uri):
        recipient, credential_type = self._check_issue(ctx, recipient, credential_type)
        return self._mint(ctx, recipient, credential_type, institution_name,
                          expiry_date, ipfs_hash, token_uri)

    @transaction('batchIssueCredentials')
    def batch_issue_credentials(self, ctx, recipients, credential_types, institution_name,
                                expiry_date, ipfs_hashes, token_uris):
        if not (len(recipients) == len(credential_types) == len(ipfs_hashes) == len(token_uris)):
            raise LengthMismatch(
                recipients=len(recipients), types=len(credential_types),
                hashes=len(ipfs_hashes), uris=len(token_uris),
            )
        # every entry is checked before the first mint so a bad entry
        # leaves the ledger untouched
        checked = [self._check_issue(ctx, r, t) for r, t in zip(recipients, credential_types)]
        return [
            self._mint(ctx, recipient, credential_type, institution_name,
                       expiry_date, ipfs_hash, token_uri)
            for (recipient, credential_type), ipfs_hash, token_uri
            in zip(checked, ipfs_hashes, token_uris)
        ]

    @transaction('revokeCredential')
    def revoke_credential(self, ctx, token_id):
        credential = self._credential(token_id)
        if normalize_address(ctx.sender) != credential.issuer:
            raise NotIssuer(token_id=token_id, sender=ctx.sender)
        if credential.revoked:
            raise AlreadyRevoked(token_id=token_id)
        credential.revoked = True
        self.emit(ctx, 'CredentialRevoked', tokenId=token_id, issuer=credential.issuer)

    @transaction('transferFrom')
    def transfer_from(self, ctx, sender, to, token_id):
        owner = self.owner_of(token_id)
        sender = normalize_address(sender)
        to = normalize_address(to)
        if normalize_address(ctx.sender) != owner or sender != owner:
            raise NotTokenOwner(token_id=token_id, sender=ctx.sender)
        if to == ZERO_ADDRESS:
            raise InvalidInput('Invalid recipient', address=to)
        self.owners[token_id] = to
        self.balances[owner] -= 1
        self.balances[to] = self.balances.get(to, 0) + 1
        self.emit(ctx, 'Transfer', sender=owner, to=to, tokenId=token_id)

    @view('verifyCredential', timed=True)
    def verify_credential(self, token_id, now):
        credential = self._credential(token_id)
        expired = is_expired(credential.expiry_date, now)
        return LedgerVerification(
            is_valid=not credential.revoked and not expired,
            issuer=credential.issuer,
            recipient=credential.recipient,
            credential_type=credential.credential_type,
            institution_name=credential.institution_name,
            issue_date=credential.issue_date,
            expired=expired,
            revoked=credential.revoked,
        )

    def lookup(self, token_id, now):
        """Read a credential's ledger verdict as a Found / Missing / Failed value."""
        try:
            return Found(self.verify_credential(token_id, now))
        except CredentialNotFound:
            return Missing(token_id)
        except (CredentialError, TypeError, KeyError) as e:
            return Failed(str(e))

    @view('getCredential')
    def get_credential(self, token_id):
        return self._credential(token_id)

    @view('getUserCredentials')
    def get_user_credentials(self, address):
        return list(self.user_credentials.get(normalize_address(address), []))

    @view('getTotalCredentials')
    def get_total_credentials(self):
        return self.next_token_id

    @view('ownerOf')
    def owner_of(self, token_id):
        self._credential(token_id)
        return self.owners[token_id]

    @view('tokenURI')
    def token_uri(self, token_id):
        self._credential(token_id)
        return self.token_uris[token_id]

    @view('balanceOf')
    def balance_of(self, address):
        return self.balances.get(normalize_address(address), 0)
