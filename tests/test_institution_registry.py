"""Tests for the institution registry contract."""
import pytest

from conftest import ADMIN, OWNER, STRANGER, UNI_A, UNI_B, authorize
from errors import (
    AlreadyRegistered, AlreadyVerified, InvalidInput, NotAdmin,
    NotAuthorized, NotAuthorizedIssuer, NotOwner, NotRegistered,
)
from validation import ZERO_ADDRESS


# =============================================================================
# Admin management
# =============================================================================


def test_owner_is_admin(registry):
    assert registry.is_admin(OWNER)
    assert not registry.is_admin(ADMIN)


def test_owner_adds_and_removes_admin(registry, ctx):
    registry.add_admin(ctx(OWNER), ADMIN)
    assert registry.is_admin(ADMIN)
    registry.remove_admin(ctx(OWNER), ADMIN)
    assert not registry.is_admin(ADMIN)
    assert [e.name for e in registry.events()] == ['AdminAdded', 'AdminRemoved']


def test_non_owner_cannot_add_admin(registry, ctx):
    registry.add_admin(ctx(OWNER), ADMIN)
    with pytest.raises(NotOwner):
        registry.add_admin(ctx(ADMIN), STRANGER)


def test_zero_address_cannot_be_admin(registry, ctx):
    with pytest.raises(InvalidInput):
        registry.add_admin(ctx(OWNER), ZERO_ADDRESS)


def test_owner_stays_admin_after_remove(registry, ctx):
    registry.remove_admin(ctx(OWNER), OWNER)
    assert registry.is_admin(OWNER)


# =============================================================================
# Registration and verification
# =============================================================================


def test_register_institution(registry, ctx, clock):
    registry.register_institution(ctx(OWNER), UNI_A, 'Uni A', 'https://a.example', 'a@a.example', 'QmA')
    institution = registry.get_institution(UNI_A)
    assert institution.name == 'Uni A'
    assert institution.verified is False
    assert institution.registration_date == clock.now
    assert institution.credentials_issued == 0
    assert not registry.is_authorized_issuer(UNI_A)
    assert registry.events('InstitutionRegistered')[0].args == {'institution': UNI_A, 'name': 'Uni A'}


def test_register_requires_admin(registry, ctx):
    with pytest.raises(NotAdmin):
        registry.register_institution(ctx(STRANGER), UNI_A, 'Uni A')


def test_delegated_admin_can_register(registry, ctx):
    registry.add_admin(ctx(OWNER), ADMIN)
    registry.register_institution(ctx(ADMIN), UNI_A, 'Uni A')
    assert registry.get_institution(UNI_A).name == 'Uni A'


def test_register_rejects_empty_name_and_zero_address(registry, ctx):
    with pytest.raises(InvalidInput):
        registry.register_institution(ctx(OWNER), UNI_A, '')
    with pytest.raises(InvalidInput):
        registry.register_institution(ctx(OWNER), ZERO_ADDRESS, 'Nobody')


def test_register_twice_fails(registry, ctx):
    registry.register_institution(ctx(OWNER), UNI_A, 'Uni A')
    with pytest.raises(AlreadyRegistered):
        registry.register_institution(ctx(OWNER), UNI_A, 'Uni A again')


def test_verify_unregistered_fails(registry, ctx):
    with pytest.raises(NotRegistered):
        registry.verify_institution(ctx(OWNER), UNI_A)


def test_verify_twice_fails(registry, ctx):
    authorize(registry, ctx, UNI_A)
    with pytest.raises(AlreadyVerified):
        registry.verify_institution(ctx(OWNER), UNI_A)


def test_verify_authorizes_issuer(registry, ctx):
    authorize(registry, ctx, UNI_A)
    assert registry.is_authorized_issuer(UNI_A)
    assert registry.get_institution(UNI_A).verified
    assert registry.get_all_issuers() == [UNI_A]
    assert registry.get_verified_institutions_count() == 1


def test_lookup_of_unregistered_institution(registry):
    with pytest.raises(NotRegistered):
        registry.get_institution(UNI_A)
    with pytest.raises(NotRegistered):
        registry.get_institution_stats(UNI_A)


def test_is_authorized_issuer_tolerates_garbage(registry):
    assert registry.is_authorized_issuer('not-an-address') is False


# =============================================================================
# Revocation
# =============================================================================


def test_revoke_removes_issuer_and_keeps_record(registry, ctx):
    authorize(registry, ctx, UNI_A)
    registry.revoke_institution(ctx(OWNER), UNI_A)
    assert not registry.is_authorized_issuer(UNI_A)
    assert registry.get_all_issuers() == []
    institution = registry.get_institution(UNI_A)
    assert institution.name == 'Test University'
    assert institution.verified is False


def test_revoke_unauthorized_fails(registry, ctx):
    registry.register_institution(ctx(OWNER), UNI_A, 'Uni A')
    with pytest.raises(NotAuthorized):
        registry.revoke_institution(ctx(OWNER), UNI_A)


def test_revoke_swaps_last_issuer_into_slot(registry, ctx):
    authorize(registry, ctx, UNI_A, 'Uni A')
    authorize(registry, ctx, UNI_B, 'Uni B')
    authorize(registry, ctx, STRANGER, 'Uni C')
    registry.revoke_institution(ctx(OWNER), UNI_A)
    assert registry.get_all_issuers() == [STRANGER, UNI_B]
    assert registry.get_verified_institutions_count() == 2
    # the moved issuer can still be revoked from its new slot
    registry.revoke_institution(ctx(OWNER), STRANGER)
    assert registry.get_all_issuers() == [UNI_B]


def test_revoked_institution_can_be_verified_again(registry, ctx):
    authorize(registry, ctx, UNI_A)
    registry.revoke_institution(ctx(OWNER), UNI_A)
    registry.verify_institution(ctx(OWNER), UNI_A)
    assert registry.is_authorized_issuer(UNI_A)
    assert registry.get_all_issuers() == [UNI_A]


# =============================================================================
# Info updates and counters
# =============================================================================


def test_update_info_and_documents(registry, ctx):
    registry.register_institution(ctx(OWNER), UNI_A, 'Uni A')
    registry.update_institution_info(ctx(OWNER), UNI_A, 'Uni A Renamed', 'https://new.example', 'new@a.example')
    registry.update_institution_documents(ctx(OWNER), UNI_A, 'QmNewDocs')
    institution = registry.get_institution(UNI_A)
    assert institution.name == 'Uni A Renamed'
    assert institution.website == 'https://new.example'
    assert institution.document_hash == 'QmNewDocs'


def test_update_info_rejects_empty_name(registry, ctx):
    registry.register_institution(ctx(OWNER), UNI_A, 'Uni A')
    with pytest.raises(InvalidInput):
        registry.update_institution_info(ctx(OWNER), UNI_A, '', '', '')


def test_increment_credential_count_requires_authorized_issuer(registry, ctx):
    registry.register_institution(ctx(OWNER), UNI_A, 'Uni A')
    with pytest.raises(NotAuthorizedIssuer):
        registry.increment_credential_count(ctx(UNI_A), UNI_A)
    registry.verify_institution(ctx(OWNER), UNI_A)
    registry.increment_credential_count(ctx(UNI_A), UNI_A)
    stats = registry.get_institution_stats(UNI_A)
    assert stats.credentials_issued == 1
    assert stats.verified is True
