"""Verification contract combining ledger validity with issuer authorization.

Detailed verification counts every attempt (per token, per verifier and in
total) before reading the ledger, so lookups of tokens that were never
minted still count against the verifier. Invalidity reasons are reported in
a fixed priority: revoked, then expired, then issuer no longer authorized.
"""
from dataclasses import dataclass

from contract_base import Contract, Failed, Found, Missing, normalize_address, transaction, view
from errors import CredentialError, InvalidInput

MSG_NOT_FOUND = 'Credential does not exist'
MSG_REVOKED = 'Credential has been revoked by issuer'
MSG_EXPIRED = 'Credential has expired'
MSG_ISSUER_REVOKED = 'Issuer is no longer authorized'
MSG_VALID = 'Credential is valid and verified'


@dataclass
class VerificationResult:
    token_id: int
    is_valid: bool
    exists: bool
    issuer: str = ''
    recipient: str = ''
    credential_type: str = ''
    institution_name: str = ''
    issue_date: int = 0
    expired: bool = False
    revoked: bool = False
    message: str = ''

    ABI_FIELDS = ('is_valid', 'exists', 'issuer', 'recipient', 'credential_type',
                  'institution_name', 'issue_date', 'expired', 'revoked', 'message')

    @classmethod
    def from_abi(cls, values, token_id=None):
        data = dict(zip(cls.ABI_FIELDS, values))
        if not isinstance(data['credential_type'], str):
            data['credential_type'] = str(data['credential_type'])
        return cls(token_id=token_id, **data)

    @classmethod
    def missing(cls, token_id, message=MSG_NOT_FOUND):
        return cls(token_id=token_id, is_valid=False, exists=False, message=message)

    def to_dict(self):
        return {
            'tokenId': self.token_id,
            'isValid': self.is_valid,
            'exists': self.exists,
            'issuer': self.issuer,
            'recipient': self.recipient,
            'credentialType': self.credential_type,
            'institutionName': self.institution_name,
            'issueDate': self.issue_date,
            'expired': self.expired,
            'revoked': self.revoked,
            'message': self.message,
        }


class VerificationAggregator(Contract):
    links = ('ledger', 'registry')

    def __init__(self, ledger, registry, address=None):
        super().__init__(address)
        self.ledger = ledger
        self.registry = registry
        self.verification_counts = {}
        self.verifier_counts = {}
        self.total_verifications = 0

    def _count(self, token_id, verifier):
        self.verification_counts[token_id] = self.verification_counts.get(token_id, 0) + 1
        self.verifier_counts[verifier] = self.verifier_counts.get(verifier, 0) + 1
        self.total_verifications += 1

    def _verdict(self, token_id, now):
        lookup = self.ledger.lookup(token_id, now)
        if isinstance(lookup, Missing):
            return VerificationResult.missing(token_id)
        if isinstance(lookup, Failed):
            return VerificationResult.missing(token_id, message=lookup.reason or MSG_NOT_FOUND)

        local = lookup.data
        if local.revoked:
            message, is_valid = MSG_REVOKED, False
        elif local.expired:
            message, is_valid = MSG_EXPIRED, False
        elif not self.registry.is_authorized_issuer(local.issuer):
            message, is_valid = MSG_ISSUER_REVOKED, False
        else:
            message, is_valid = MSG_VALID, local.is_valid

        return VerificationResult(
            token_id=token_id,
            is_valid=is_valid,
            exists=True,
            issuer=local.issuer,
            recipient=local.recipient,
            credential_type=local.credential_type.value,
            institution_name=local.institution_name,
            issue_date=local.issue_date,
            expired=local.expired,
            revoked=local.revoked,
            message=message,
        )

    @transaction('verifyCredentialDetailed')
    def verify_credential_detailed(self, ctx, token_id):
        verifier = normalize_address(ctx.sender)
        self._count(token_id, verifier)
        result = self._verdict(token_id, ctx.timestamp)
        self.emit(ctx, 'CredentialVerified', tokenId=token_id, verifier=verifier,
                  isValid=result.is_valid)
        return result

    @transaction('batchVerifyCredentials')
    def batch_verify_credentials(self, ctx, token_ids):
        results = [self.verify_credential_detailed(ctx, token_id) for token_id in token_ids]
        self.emit(ctx, 'BatchVerificationCompleted',
                  verifier=normalize_address(ctx.sender), tokenIds=list(token_ids))
        return results

    @view('quickVerify', timed=True)
    def quick_verify(self, token_id, now):
        lookup = self.ledger.lookup(token_id, now)
        if not isinstance(lookup, Found):
            return False
        return bool(lookup.data.is_valid and self.registry.is_authorized_issuer(lookup.data.issuer))

    @view('quickBatchVerify', timed=True)
    def quick_batch_verify(self, token_ids, now):
        return [self.quick_verify(token_id, now) for token_id in token_ids]

    @view('verifyOwnership')
    def verify_ownership(self, token_id, claimed_owner):
        try:
            return self.ledger.owner_of(token_id) == normalize_address(claimed_owner)
        except (CredentialError, TypeError, KeyError):
            return False

    @view('verifyIssuer')
    def verify_issuer(self, token_id, institution):
        try:
            return self.ledger.get_credential(token_id).issuer == normalize_address(institution)
        except (CredentialError, TypeError, KeyError):
            return False

    @view('getCredentialInfo', timed=True)
    def get_credential_info(self, token_id, now):
        return self.ledger.verify_credential(token_id, now)

    @view('getCredentialVerificationCount')
    def get_credential_verification_count(self, token_id):
        return self.verification_counts.get(token_id, 0)

    @view('getVerifierCount')
    def get_verifier_count(self, verifier):
        try:
            return self.verifier_counts.get(normalize_address(verifier), 0)
        except InvalidInput:
            return 0

    @view('getTotalVerifications')
    def get_total_verifications(self):
        return self.total_verifications
