"""Tests for the in-process chain: receipts, atomic reverts and nonces."""
import pytest

from conftest import OWNER, STRANGER, STUDENT, UNI_A
from credential_ledger import Credential
from errors import ExecutionReverted, InvalidInput, NotAdmin, NotAuthorizedIssuer
from local_chain import LocalChain
from verification_aggregator import VerificationResult


def authorize(chain, address=UNI_A, name='Uni A'):
    chain.send_transaction('registry', 'registerInstitution', address, name, '', '', '')
    chain.send_transaction('registry', 'verifyInstitution', address)


def test_contracts_have_distinct_addresses(chain):
    addresses = chain.addresses
    assert set(addresses) == {'registry', 'credential', 'verification'}
    assert len(set(addresses.values())) == 3


def test_transaction_is_mined_with_receipt(chain):
    tx_hash = chain.send_transaction('registry', 'registerInstitution', UNI_A, 'Uni A', '', '', '')
    receipt = chain.get_transaction_receipt(tx_hash)
    assert receipt.succeeded
    assert receipt.block_number == chain.get_block_number() == 1
    assert receipt.sender == OWNER
    assert receipt.to == chain.addresses['registry']
    assert [e.name for e in receipt.logs] == ['InstitutionRegistered']
    assert chain.get_transaction(tx_hash)['blockNumber'] == 1


def test_event_argument_called_name_is_kept(chain):
    tx_hash = chain.send_transaction('registry', 'registerInstitution', UNI_A, 'Uni A', '', '', '')
    [event] = chain.get_transaction_receipt(tx_hash).events('InstitutionRegistered')
    assert event.name == 'InstitutionRegistered'
    assert event.args == {'institution': UNI_A, 'name': 'Uni A'}


def test_reverted_transaction_has_failed_receipt(chain):
    tx_hash = chain.send_transaction('registry', 'registerInstitution', UNI_A, 'Uni A', '', '', '',
                                     sender=STRANGER)
    receipt = chain.get_transaction_receipt(tx_hash)
    assert receipt.status == 0
    assert receipt.revert_reason == NotAdmin.default_message
    assert receipt.logs == []
    # the nonce is consumed even though the call reverted
    assert chain.get_transaction_count(STRANGER) == 1


def test_unauthorized_mint_reverts(chain):
    authorize(chain)
    chain.send_transaction('registry', 'revokeInstitution', UNI_A)
    tx_hash = chain.send_transaction('credential', 'issueCredential',
                                     STUDENT, 'Degree', 'Uni A', 0, 'QmHash', 'uri', sender=UNI_A)
    receipt = chain.get_transaction_receipt(tx_hash)
    assert receipt.revert_reason == NotAuthorizedIssuer.default_message
    assert chain.call('credential', 'getTotalCredentials') == 0
    assert chain.call('registry', 'getInstitution', UNI_A).credentials_issued == 0


def test_failure_after_counter_update_rolls_back_both_contracts(chain, monkeypatch):
    authorize(chain, OWNER, 'Server')

    def fail_emit(ctx, event_name, **args):
        raise ExecutionReverted('log storage full')

    # the registry counter is bumped before the ledger emits its events
    monkeypatch.setattr(chain.ledger, 'emit', fail_emit)
    tx_hash = chain.send_transaction('credential', 'issueCredential',
                                     STUDENT, 'Degree', 'Server', 0, 'QmHash', 'uri')
    monkeypatch.undo()

    assert chain.get_transaction_receipt(tx_hash).revert_reason == 'log storage full'
    assert chain.call('credential', 'getTotalCredentials') == 0
    assert chain.call('credential', 'balanceOf', STUDENT) == 0
    assert chain.call('registry', 'getInstitution', OWNER).credentials_issued == 0


def test_issue_through_chain(chain):
    authorize(chain, OWNER, 'Server')
    tx_hash = chain.send_transaction('credential', 'issueCredential',
                                     STUDENT, 'Certificate', 'Server', 0, 'QmHash', 'uri')
    receipt = chain.get_transaction_receipt(tx_hash)
    assert receipt.return_value == 0
    assert [e.args['tokenId'] for e in receipt.events('CredentialIssued')] == [0]
    credential = chain.call('credential', 'getCredential', 0)
    assert isinstance(credential, Credential)
    assert chain.call('registry', 'getInstitution', OWNER).credentials_issued == 1


def test_call_discards_state_changes(chain):
    authorize(chain, OWNER, 'Server')
    chain.send_transaction('credential', 'issueCredential', STUDENT, 'Degree', 'Server', 0, 'Qm', 'uri')
    result = chain.call('verification', 'verifyCredentialDetailed', 0)
    assert isinstance(result, VerificationResult)
    assert result.is_valid
    assert chain.call('verification', 'getTotalVerifications') == 0


def test_call_propagates_contract_errors(chain):
    with pytest.raises(NotAdmin):
        chain.call('registry', 'registerInstitution', UNI_A, 'Uni A', '', '', '', sender=STRANGER)


def test_unknown_contract_or_function(chain):
    with pytest.raises(InvalidInput):
        chain.call('token', 'balanceOf', STUDENT)
    with pytest.raises(InvalidInput):
        chain.send_transaction('registry', 'selfDestruct')


def test_estimate_gas_scales_with_logs(chain):
    single = chain.estimate_gas('registry', 'registerInstitution', UNI_A, 'Uni A', '', '', '')
    assert single > 21000
    with pytest.raises(NotAdmin):
        chain.estimate_gas('registry', 'registerInstitution', UNI_A, 'Uni A', '', '', '', sender=STRANGER)


# =============================================================================
# Mempool and nonces
# =============================================================================


def test_manual_mining_keeps_transactions_pending(chain):
    chain.auto_mine = False
    tx_hash = chain.send_transaction('registry', 'registerInstitution', UNI_A, 'Uni A', '', '', '')
    assert chain.get_transaction_receipt(tx_hash) is None
    assert chain.get_transaction(tx_hash)['blockNumber'] is None
    assert chain.get_transaction_count(OWNER, 'pending') == 1
    assert chain.get_transaction_count(OWNER, 'latest') == 0

    chain.mine()
    assert chain.get_transaction_receipt(tx_hash).succeeded
    assert chain.get_transaction_count(OWNER, 'latest') == 1


def test_trailing_blocks_bury_receipts(clock):
    chain = LocalChain(clock=clock, trailing_blocks=2)
    tx_hash = chain.send_transaction('registry', 'registerInstitution', UNI_A, 'Uni A', '', '', '')
    assert chain.get_block_number() - chain.get_transaction_receipt(tx_hash).block_number == 2


def test_nonce_mismatch_rejected(chain):
    with pytest.raises(InvalidInput):
        chain.send_transaction('registry', 'registerInstitution', UNI_A, 'Uni A', '', '', '', nonce=5)
    chain.send_transaction('registry', 'registerInstitution', UNI_A, 'Uni A', '', '', '', nonce=0)
    assert chain.get_transaction_count() == 1


def test_queued_transactions_execute_in_order(chain):
    chain.auto_mine = False
    first = chain.send_transaction('registry', 'registerInstitution', UNI_A, 'Uni A', '', '', '')
    second = chain.send_transaction('registry', 'verifyInstitution', UNI_A)
    assert chain.get_transaction(second)['nonce'] == 1
    chain.mine()
    assert chain.get_transaction_receipt(first).succeeded
    assert chain.get_transaction_receipt(second).succeeded
    assert chain.call('registry', 'isAuthorizedIssuer', UNI_A) is True


def test_drop_pending(chain):
    chain.auto_mine = False
    tx_hash = chain.send_transaction('registry', 'verifyInstitution', UNI_A)
    assert chain.drop_pending() == [tx_hash]
    assert chain.get_transaction(tx_hash) is None
    chain.mine()
    assert chain.get_transaction_receipt(tx_hash) is None


def test_events_by_block_range(chain):
    authorize(chain)
    events = chain.get_events('registry')
    assert [e.name for e in events] == ['InstitutionRegistered', 'InstitutionVerified']
    assert [e.name for e in chain.get_events('registry', 'InstitutionVerified')] == ['InstitutionVerified']
    assert chain.get_events('registry', from_block=2) == [events[1]]
    with pytest.raises(InvalidInput):
        chain.get_events('token')


def test_fee_data(chain):
    fees = chain.get_fee_data()
    assert fees['maxFeePerGas'] == 2 * fees['gasPrice']
