"""Tests for the credential ledger contract."""
import random

import pytest

from conftest import OWNER, STRANGER, STUDENT, STUDENT_2, UNI_A, UNI_B, authorize
from contract_base import Failed, Found, Missing
from credential_ledger import CredentialType, is_expired
from errors import (
    AlreadyRevoked, CredentialNotFound, InvalidInput, LengthMismatch,
    NotAuthorizedIssuer, NotIssuer, NotTokenOwner,
)
from validation import ZERO_ADDRESS


@pytest.fixture
def issuer(registry, ctx):
    authorize(registry, ctx, UNI_A, 'Uni A')
    return UNI_A


def issue(ledger, ctx, issuer, recipient=STUDENT, credential_type='Degree', expiry=0, ipfs_hash='QmHash'):
    return ledger.issue_credential(ctx(issuer), recipient, credential_type, 'Uni A',
                                   expiry, ipfs_hash, f'ipfs://{ipfs_hash}')


# =============================================================================
# Issuance
# =============================================================================


def test_issue_credential(ledger, registry, ctx, issuer, clock):
    token_id = issue(ledger, ctx, issuer)
    assert token_id == 0

    credential = ledger.get_credential(token_id)
    assert credential.issuer == UNI_A
    assert credential.recipient == STUDENT
    assert credential.credential_type == CredentialType.DEGREE
    assert credential.issue_date == clock.now
    assert credential.revoked is False
    assert ledger.owner_of(token_id) == STUDENT
    assert ledger.token_uri(token_id) == 'ipfs://QmHash'
    assert ledger.balance_of(STUDENT) == 1
    assert ledger.get_user_credentials(STUDENT) == [0]
    assert ledger.get_total_credentials() == 1
    assert registry.get_institution(UNI_A).credentials_issued == 1


def test_issue_emits_transfer_and_issued(ledger, ctx, issuer):
    issue(ledger, ctx, issuer)
    transfer, issued = ledger.events()
    assert transfer.name == 'Transfer'
    assert transfer.args == {'sender': ZERO_ADDRESS, 'to': STUDENT, 'tokenId': 0}
    assert issued.name == 'CredentialIssued'
    assert issued.args['credentialType'] == 'Degree'


def test_token_ids_are_sequential(ledger, ctx, issuer):
    ids = [issue(ledger, ctx, issuer, recipient=r) for r in (STUDENT, STUDENT_2, STUDENT)]
    assert ids == [0, 1, 2]
    assert ledger.get_user_credentials(STUDENT) == [0, 2]


def test_issue_requires_authorized_issuer(ledger, registry, ctx):
    registry.register_institution(ctx(OWNER), UNI_B, 'Uni B')
    with pytest.raises(NotAuthorizedIssuer):
        issue(ledger, ctx, UNI_B)
    assert ledger.get_total_credentials() == 0


def test_issue_rejects_zero_recipient(ledger, ctx, issuer):
    with pytest.raises(InvalidInput):
        issue(ledger, ctx, issuer, recipient=ZERO_ADDRESS)


def test_issue_rejects_unknown_type(ledger, ctx, issuer):
    with pytest.raises(InvalidInput):
        issue(ledger, ctx, issuer, credential_type='Diploma')


def test_credential_type_parses_names_and_ordinals():
    assert CredentialType.parse('License') == CredentialType.LICENSE
    assert CredentialType.parse(1) == CredentialType.CERTIFICATE
    with pytest.raises(InvalidInput):
        CredentialType.parse(7)


# =============================================================================
# Batch issuance
# =============================================================================


def test_batch_issue(ledger, ctx, issuer, registry):
    ids = ledger.batch_issue_credentials(
        ctx(issuer), [STUDENT, STUDENT_2], ['Course', 'Workshop'], 'Uni A', 0,
        ['QmOne', 'QmTwo'], ['ipfs://QmOne', 'ipfs://QmTwo'])
    assert ids == [0, 1]
    assert ledger.get_credential(1).credential_type == CredentialType.WORKSHOP
    assert registry.get_institution(UNI_A).credentials_issued == 2
    assert len(ledger.events('CredentialIssued')) == 2


def test_batch_issue_length_mismatch(ledger, ctx, issuer):
    with pytest.raises(LengthMismatch):
        ledger.batch_issue_credentials(ctx(issuer), [STUDENT, STUDENT_2], ['Course'], 'Uni A', 0,
                                       ['QmOne', 'QmTwo'], ['u1', 'u2'])


def test_batch_issue_bad_entry_mints_nothing(ledger, ctx, issuer):
    with pytest.raises(InvalidInput):
        ledger.batch_issue_credentials(ctx(issuer), [STUDENT, ZERO_ADDRESS], ['Course', 'Course'],
                                       'Uni A', 0, ['QmOne', 'QmTwo'], ['u1', 'u2'])
    assert ledger.get_total_credentials() == 0
    assert ledger.balance_of(STUDENT) == 0


# =============================================================================
# Revocation and verification
# =============================================================================


def test_only_issuer_can_revoke(ledger, ctx, issuer):
    token_id = issue(ledger, ctx, issuer)
    with pytest.raises(NotIssuer):
        ledger.revoke_credential(ctx(STRANGER), token_id)


def test_revoke_once(ledger, ctx, issuer, clock):
    token_id = issue(ledger, ctx, issuer)
    ledger.revoke_credential(ctx(issuer), token_id)
    with pytest.raises(AlreadyRevoked):
        ledger.revoke_credential(ctx(issuer), token_id)
    result = ledger.verify_credential(token_id, now=clock.now)
    assert result.revoked is True
    assert result.is_valid is False


def test_revoke_missing_credential(ledger, ctx, issuer):
    with pytest.raises(CredentialNotFound):
        ledger.revoke_credential(ctx(issuer), 42)


def test_expiry_is_inclusive(ledger, ctx, issuer, clock):
    expiry = clock.now + 100
    token_id = issue(ledger, ctx, issuer, expiry=expiry)
    assert ledger.verify_credential(token_id, now=expiry).is_valid is True
    late = ledger.verify_credential(token_id, now=expiry + 1)
    assert late.expired is True
    assert late.is_valid is False


def test_zero_expiry_never_expires():
    assert is_expired(0, 10 ** 12) is False
    assert is_expired(5, 6) is True


def test_ledger_validity_ignores_issuer_authorization(ledger, registry, ctx, issuer, clock):
    token_id = issue(ledger, ctx, issuer)
    registry.revoke_institution(ctx(OWNER), UNI_A)
    assert ledger.verify_credential(token_id, now=clock.now).is_valid is True


def test_lookup_tags_results(ledger, ctx, issuer, clock):
    token_id = issue(ledger, ctx, issuer)
    assert isinstance(ledger.lookup(token_id, clock.now), Found)
    assert isinstance(ledger.lookup(99, clock.now), Missing)
    assert isinstance(ledger.lookup('garbage', clock.now), (Missing, Failed))


# =============================================================================
# Transfers
# =============================================================================


def test_transfer_changes_owner_not_index(ledger, ctx, issuer):
    token_id = issue(ledger, ctx, issuer)
    ledger.transfer_from(ctx(STUDENT), STUDENT, STUDENT_2, token_id)
    assert ledger.owner_of(token_id) == STUDENT_2
    assert ledger.balance_of(STUDENT) == 0
    assert ledger.balance_of(STUDENT_2) == 1
    assert ledger.get_credential(token_id).recipient == STUDENT
    assert ledger.get_user_credentials(STUDENT) == [token_id]


def test_transfer_requires_owner(ledger, ctx, issuer):
    token_id = issue(ledger, ctx, issuer)
    with pytest.raises(NotTokenOwner):
        ledger.transfer_from(ctx(STRANGER), STUDENT, STRANGER, token_id)


def test_unknown_token_views_raise(ledger):
    with pytest.raises(CredentialNotFound):
        ledger.owner_of(3)
    with pytest.raises(CredentialNotFound):
        ledger.token_uri(3)


# =============================================================================
# Invariants over random operation sequences
# =============================================================================


@pytest.mark.parametrize('seed', range(5))
def test_random_sequences_keep_ids_unique_and_revocation_final(registry, ledger, ctx, clock, seed):
    rng = random.Random(seed)
    issuers = [UNI_A, UNI_B]
    for address in issuers:
        authorize(registry, ctx, address)
    seen_ids, revoked = [], set()

    for _ in range(60):
        action = rng.choice(['issue', 'issue', 'revoke', 'revoke_issuer', 'reverify', 'tick'])
        issuer = rng.choice(issuers)
        if action == 'issue':
            try:
                seen_ids.append(issue(ledger, ctx, issuer, expiry=rng.choice([0, clock.now + 5])))
            except NotAuthorizedIssuer:
                assert not registry.is_authorized_issuer(issuer)
        elif action == 'revoke' and seen_ids:
            token_id = rng.choice(seen_ids)
            try:
                ledger.revoke_credential(ctx(ledger.get_credential(token_id).issuer), token_id)
                revoked.add(token_id)
            except AlreadyRevoked:
                assert token_id in revoked
        elif action == 'revoke_issuer' and registry.is_authorized_issuer(issuer):
            registry.revoke_institution(ctx(OWNER), issuer)
        elif action == 'reverify' and not registry.is_authorized_issuer(issuer):
            registry.verify_institution(ctx(OWNER), issuer)
        elif action == 'tick':
            clock.advance(rng.randrange(1, 10))

        assert len(seen_ids) == len(set(seen_ids))
        assert seen_ids == sorted(seen_ids)
        for token_id in revoked:
            assert ledger.get_credential(token_id).revoked is True
        for token_id in seen_ids:
            credential = ledger.get_credential(token_id)
            if credential.expiry_date == 0:
                assert ledger.verify_credential(token_id, now=clock.now).expired is False
