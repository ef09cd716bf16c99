"""Tests for the JSON-RPC backend that do not need a running node."""
import json

import pytest

from blockchain import RESULT_DECODERS, Web3Backend, create_backend, load_abi
from config import TestingConfig
from conftest import OWNER, STRANGER
from errors import AuthorizationError, InvalidInput, NotRegistered
from local_chain import LocalChain

# hardhat account #0
PRIVATE_KEY = '0xac0974bec39a17e36ba4a6b4d238ff944bacb478cbed5efcae784d7bf4f2ff80'

ADDRESSES = {
    'registry': '0x5FbDB2315678afecb367f032d93F642f64180aa3',
    'credential': '0xe7f1725E7734CE288F8367e1Bb143E90bb3F0512',
    'verification': '0x9fE46736679d2D9a65F0992F2272dE9f3c7fa6e0',
}

REGISTRY_ABI = [
    {
        'type': 'function', 'name': 'isAuthorizedIssuer', 'stateMutability': 'view',
        'inputs': [{'name': 'issuer', 'type': 'address'}],
        'outputs': [{'name': '', 'type': 'bool'}],
    },
    {
        'type': 'event', 'name': 'InstitutionVerified', 'anonymous': False,
        'inputs': [{'name': 'institution', 'type': 'address', 'indexed': True}],
    },
]


@pytest.fixture
def abi_dir(tmp_path):
    # hardhat artifact for the registry, bare ABI lists for the others
    (tmp_path / 'CredentialRegistry.json').write_text(json.dumps({'contractName': 'CredentialRegistry',
                                                                  'abi': REGISTRY_ABI}))
    (tmp_path / 'CredentialNFT.json').write_text(json.dumps([]))
    (tmp_path / 'VerificationContract.json').write_text(json.dumps([]))
    return str(tmp_path)


@pytest.fixture
def backend(abi_dir):
    # nothing listens on this port; only offline behaviour is exercised
    return Web3Backend('http://127.0.0.1:9', ADDRESSES, abi_dir, private_key=PRIVATE_KEY,
                       chain_id=31337, request_timeout=1)


def test_load_abi_accepts_artifacts_and_lists(abi_dir):
    assert load_abi(abi_dir, 'registry') == REGISTRY_ABI
    assert load_abi(abi_dir, 'credential') == []


def test_signer_comes_from_private_key(backend):
    assert backend.signer == OWNER
    assert backend.chain_id == 31337
    assert backend.addresses == ADDRESSES


def test_missing_contract_address(abi_dir):
    with pytest.raises(ValueError):
        Web3Backend('http://127.0.0.1:9', dict(ADDRESSES, credential=None), abi_dir)


def test_unknown_contract_or_function(backend):
    with pytest.raises(InvalidInput):
        backend.call('token', 'balanceOf', OWNER)
    with pytest.raises(InvalidInput):
        backend.call('registry', 'selfDestruct')


def test_unknown_event(backend):
    with pytest.raises(InvalidInput):
        backend.get_events('registry', 'InstitutionExploded')
    with pytest.raises(InvalidInput):
        backend.get_events('token')


def test_server_key_only_signs_for_itself(backend):
    with pytest.raises(AuthorizationError):
        backend.send_transaction('registry', 'isAuthorizedIssuer', OWNER, sender=STRANGER)


def test_unreachable_node_is_not_connected(backend):
    assert backend.is_connected() is False


def test_decoders():
    with pytest.raises(NotRegistered):
        RESULT_DECODERS['getInstitution'](('', '', '', False, 0, '', 0), [STRANGER])
    institution = RESULT_DECODERS['getInstitution'](('Uni', 'w', 'e', True, 5, 'Qm', 2), [OWNER])
    assert institution.verified is True
    assert institution.credentials_issued == 2

    results = RESULT_DECODERS['batchVerifyCredentials'](
        [(True, True, OWNER, STRANGER, 'Degree', 'Uni', 5, False, False, 'ok'),
         (False, False, '', '', '', '', 0, False, False, 'missing')],
        [[3, 9]],
    )
    assert [r.token_id for r in results] == [3, 9]
    assert [r.exists for r in results] == [True, False]


def test_credential_decoder_parses_type_ordinal():
    credential = RESULT_DECODERS['getCredential']((OWNER, STRANGER, 4, 'Uni', 5, 0, 'Qm', False), [7])
    assert credential.token_id == 7
    assert credential.credential_type.value == 'License'


def test_create_backend_local():
    backend = create_backend({'CHAIN_BACKEND': 'local', 'CHAIN_ID': 1337, 'CONFIRMATION_BLOCKS': 3})
    assert isinstance(backend, LocalChain)
    assert backend.chain_id == 1337
    assert backend.trailing_blocks == 3


def test_testing_config_uses_local_chain():
    assert TestingConfig.CHAIN_BACKEND == 'local'
    assert TestingConfig.CONFIRMATION_BLOCKS == 0
