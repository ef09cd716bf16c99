"""Institution registry contract.

Holds the institution records and the set of addresses authorized to issue
credentials. Mutations are admin-gated; admins are managed by the owner.

The authorized-issuer list is enumerable but removal uses swap-with-last and
pop, so enumeration order is not stable across revocations.
"""
from dataclasses import dataclass, asdict

from contract_base import Contract, normalize_address, transaction, view
from errors import (
    AlreadyRegistered, AlreadyVerified, InvalidInput, NotAdmin,
    NotAuthorized, NotAuthorizedIssuer, NotOwner, NotRegistered,
)
from validation import ZERO_ADDRESS


@dataclass
class Institution:
    name: str
    website: str = ''
    email: str = ''
    verified: bool = False
    registration_date: int = 0
    document_hash: str = ''
    credentials_issued: int = 0

    # Field order of the Solidity struct returned by getInstitution.
    ABI_FIELDS = ('name', 'website', 'email', 'verified', 'registration_date',
                  'document_hash', 'credentials_issued')

    @classmethod
    def from_abi(cls, values):
        return cls(**dict(zip(cls.ABI_FIELDS, values)))

    def to_dict(self):
        data = asdict(self)
        return {
            'name': data['name'],
            'website': data['website'],
            'email': data['email'],
            'isVerified': data['verified'],
            'registrationDate': data['registration_date'],
            'documentHash': data['document_hash'],
            'credentialsIssued': data['credentials_issued'],
        }


@dataclass
class InstitutionStats:
    credentials_issued: int
    registration_date: int
    verified: bool

    @classmethod
    def from_abi(cls, values):
        return cls(*values)


class InstitutionRegistry(Contract):

    def __init__(self, owner, address=None):
        super().__init__(address)
        self.owner = normalize_address(owner)
        self.admins = set()
        self.institutions = {}
        self.authorized_issuers = []
        self._issuer_index = {}

    def _require_admin(self, ctx):
        if not self.is_admin(ctx.sender):
            raise NotAdmin(sender=ctx.sender)

    def _require_owner(self, ctx):
        if normalize_address(ctx.sender) != self.owner:
            raise NotOwner(sender=ctx.sender)

    def _record(self, address):
        institution = self.institutions.get(normalize_address(address))
        if institution is None or not institution.name:
            raise NotRegistered(address=address)
        return institution

    @view('isAdmin')
    def is_admin(self, address):
        address = normalize_address(address)
        return address == self.owner or address in self.admins

    @transaction('addAdmin')
    def add_admin(self, ctx, admin):
        self._require_owner(ctx)
        admin = normalize_address(admin)
        if admin == ZERO_ADDRESS:
            raise InvalidInput(address=admin)
        self.admins.add(admin)
        self.emit(ctx, 'AdminAdded', admin=admin)

    @transaction('removeAdmin')
    def remove_admin(self, ctx, admin):
        self._require_owner(ctx)
        admin = normalize_address(admin)
        self.admins.discard(admin)
        self.emit(ctx, 'AdminRemoved', admin=admin)

    @transaction('registerInstitution')
    def register_institution(self, ctx, address, name, website='', email='', document_hash=''):
        self._require_admin(ctx)
        address = normalize_address(address)
        if address == ZERO_ADDRESS or not name:
            raise InvalidInput(address=address)
        existing = self.institutions.get(address)
        if existing is not None and existing.name:
            raise AlreadyRegistered(address=address)

        self.institutions[address] = Institution(
            name=name,
            website=website or '',
            email=email or '',
            verified=False,
            registration_date=ctx.timestamp,
            document_hash=document_hash or '',
        )
        self.emit(ctx, 'InstitutionRegistered', institution=address, name=name)

    @transaction('verifyInstitution')
    def verify_institution(self, ctx, address):
        self._require_admin(ctx)
        address = normalize_address(address)
        institution = self._record(address)
        if institution.verified:
            raise AlreadyVerified(address=address)

        institution.verified = True
        self._issuer_index[address] = len(self.authorized_issuers)
        self.authorized_issuers.append(address)
        self.emit(ctx, 'InstitutionVerified', institution=address)

    @transaction('revokeInstitution')
    def revoke_institution(self, ctx, address):
        self._require_admin(ctx)
        address = normalize_address(address)
        if address not in self._issuer_index:
            raise NotAuthorized(address=address)

        # swap-and-pop; the moved issuer takes the revoked one's slot
        position = self._issuer_index.pop(address)
        last = self.authorized_issuers.pop()
        if last != address:
            self.authorized_issuers[position] = last
            self._issuer_index[last] = position

        self.institutions[address].verified = False
        self.emit(ctx, 'InstitutionRevoked', institution=address)

    @view('isAuthorizedIssuer')
    def is_authorized_issuer(self, address):
        try:
            return normalize_address(address) in self._issuer_index
        except InvalidInput:
            return False

    @view('getInstitution')
    def get_institution(self, address):
        return self._record(address)

    @view('getAllIssuers')
    def get_all_issuers(self):
        return list(self.authorized_issuers)

    @view('getVerifiedInstitutionsCount')
    def get_verified_institutions_count(self):
        return len(self.authorized_issuers)

    @view('getInstitutionStats')
    def get_institution_stats(self, address):
        institution = self._record(address)
        return InstitutionStats(
            credentials_issued=institution.credentials_issued,
            registration_date=institution.registration_date,
            verified=institution.verified,
        )

    @transaction('updateInstitutionInfo')
    def update_institution_info(self, ctx, address, name, website, email):
        self._require_admin(ctx)
        if not name:
            raise InvalidInput(address=address)
        institution = self._record(address)
        institution.name = name
        institution.website = website or ''
        institution.email = email or ''
        self.emit(ctx, 'InstitutionUpdated', institution=normalize_address(address))

    @transaction('updateInstitutionDocuments')
    def update_institution_documents(self, ctx, address, document_hash):
        self._require_admin(ctx)
        institution = self._record(address)
        institution.document_hash = document_hash or ''
        self.emit(ctx, 'InstitutionUpdated', institution=normalize_address(address))

    @transaction('incrementCredentialCount')
    def increment_credential_count(self, ctx, issuer):
        if not self.is_authorized_issuer(issuer):
            raise NotAuthorizedIssuer(address=issuer)
        self.institutions[normalize_address(issuer)].credentials_issued += 1
