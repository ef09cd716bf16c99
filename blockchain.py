"""Chain backends.

``Web3Backend`` talks to the deployed registry, credential and verification
contracts over JSON-RPC and signs with the single server-held key.
``LocalChain`` (see local_chain.py) runs the same contracts in process.
Both expose the same methods, so the transaction tracker and the services
never know which one they drive.
"""
import json
import logging
import os

import requests
from web3 import Web3
from web3.exceptions import ContractLogicError, TransactionNotFound, Web3Exception
from web3.logs import DISCARD

from contract_base import Event, Receipt
from credential_ledger import Credential, LedgerVerification
from errors import (
    AuthorizationError, ChainUnavailable, ExecutionReverted, InvalidInput, NotRegistered,
    from_revert_reason,
)
from institution_registry import Institution, InstitutionStats
from local_chain import LocalChain
from verification_aggregator import VerificationResult

logger = logging.getLogger(__name__)

ABI_FILES = {
    'credential': 'CredentialNFT.json',
    'registry': 'CredentialRegistry.json',
    'verification': 'VerificationContract.json',
}


def _institution(value, args):
    institution = Institution.from_abi(value)
    if not institution.name:
        raise NotRegistered(address=args[0])
    return institution


RESULT_DECODERS = {
    'getInstitution': _institution,
    'getInstitutionStats': lambda value, args: InstitutionStats.from_abi(value),
    'getCredential': lambda value, args: Credential.from_abi(value, token_id=args[0]),
    'verifyCredential': lambda value, args: LedgerVerification.from_abi(value),
    'getCredentialInfo': lambda value, args: LedgerVerification.from_abi(value),
    'verifyCredentialDetailed': lambda value, args: VerificationResult.from_abi(value, token_id=args[0]),
    'batchVerifyCredentials': lambda value, args: [
        VerificationResult.from_abi(v, token_id=t) for v, t in zip(value, args[0])
    ],
}


def load_abi(abi_dir, name):
    path = os.path.join(abi_dir, ABI_FILES[name])
    with open(path, 'r') as f:
        contract_json = json.load(f)
    # hardhat artifacts wrap the ABI; plain ABI files are a bare list
    if isinstance(contract_json, dict):
        return contract_json['abi']
    return contract_json


class Web3Backend:

    def __init__(self, rpc_url, addresses, abi_dir, private_key=None, chain_id=None,
                 request_timeout=30):
        self.web3 = Web3(Web3.HTTPProvider(rpc_url, request_kwargs={'timeout': request_timeout}))
        self.account = self.web3.eth.account.from_key(private_key) if private_key else None
        self._chain_id = chain_id
        self.contracts = {}
        for name, address in addresses.items():
            if not address:
                raise ValueError(f'{name} contract address is not defined')
            self.contracts[name] = self.web3.eth.contract(
                address=Web3.to_checksum_address(address),
                abi=load_abi(abi_dir, name),
            )

    @property
    def signer(self):
        if self.account is not None:
            return self.account.address
        # node-managed accounts (hardhat / anvil)
        return self._rpc(lambda: self.web3.eth.accounts[0])

    @property
    def chain_id(self):
        if self._chain_id is None:
            self._chain_id = self._rpc(lambda: self.web3.eth.chain_id)
        return self._chain_id

    @property
    def addresses(self):
        return {name: contract.address for name, contract in self.contracts.items()}

    def _rpc(self, fn, **context):
        try:
            return fn()
        except ContractLogicError as e:
            raise from_revert_reason(getattr(e, 'message', None) or str(e), **context)
        except (requests.exceptions.RequestException, ConnectionError, TimeoutError) as e:
            raise ChainUnavailable(str(e), **context)
        except Web3Exception as e:
            raise ExecutionReverted(f'Node rejected request: {e}', **context)

    def _function(self, contract, function, args):
        target = self.contracts.get(contract)
        if target is None:
            raise InvalidInput(f'Unknown contract: {contract}')
        try:
            return getattr(target.functions, function)(*args)
        except (AttributeError, Web3Exception) as e:
            raise InvalidInput(f'Cannot call {contract}.{function}: {e}')

    def is_connected(self):
        try:
            return self.web3.is_connected()
        except (requests.exceptions.RequestException, ConnectionError):
            return False

    def get_block_number(self):
        return self._rpc(lambda: self.web3.eth.block_number)

    def get_transaction_count(self, address=None, block='pending'):
        address = Web3.to_checksum_address(address or self.signer)
        return self._rpc(lambda: self.web3.eth.get_transaction_count(address, block))

    def call(self, contract, function, *args, sender=None):
        fn = self._function(contract, function, args)
        value = self._rpc(lambda: fn.call({'from': sender or self.signer}),
                          function=function)
        decoder = RESULT_DECODERS.get(function)
        return decoder(value, args) if decoder else value

    def estimate_gas(self, contract, function, *args, sender=None):
        fn = self._function(contract, function, args)
        return self._rpc(lambda: fn.estimate_gas({'from': sender or self.signer}),
                         function=function)

    def get_gas_price(self):
        return self._rpc(lambda: self.web3.eth.gas_price)

    def get_fee_data(self):
        gas_price = self.get_gas_price()
        latest = self._rpc(lambda: self.web3.eth.get_block('latest'))
        base_fee = latest.get('baseFeePerGas')
        if base_fee is None:
            return {'gasPrice': gas_price, 'maxFeePerGas': None, 'maxPriorityFeePerGas': None}
        priority = self._rpc(lambda: self.web3.eth.max_priority_fee)
        return {
            'gasPrice': gas_price,
            'maxFeePerGas': 2 * base_fee + priority,
            'maxPriorityFeePerGas': priority,
        }

    def get_balance(self, address=None):
        address = Web3.to_checksum_address(address or self.signer)
        return self._rpc(lambda: self.web3.eth.get_balance(address))

    def send_transaction(self, contract, function, *args, sender=None, nonce=None, gas=None):
        sender = Web3.to_checksum_address(sender or self.signer)
        if self.account is not None and sender != self.account.address:
            raise AuthorizationError(f'Server key cannot sign for {sender}', sender=sender)

        params = {'from': sender, 'chainId': self.chain_id}
        params['nonce'] = nonce if nonce is not None else self.get_transaction_count(sender)
        if gas:
            params['gas'] = gas
        fees = self.get_fee_data()
        if fees['maxFeePerGas'] is not None:
            params['maxFeePerGas'] = fees['maxFeePerGas']
            params['maxPriorityFeePerGas'] = fees['maxPriorityFeePerGas']
            params['type'] = 2
        else:
            params['gasPrice'] = fees['gasPrice']

        fn = self._function(contract, function, args)
        tx = self._rpc(lambda: fn.build_transaction(params), function=function)
        if self.account is not None:
            signed_tx = self.web3.eth.account.sign_transaction(tx, self.account.key)
            tx_hash = self._rpc(lambda: self.web3.eth.send_raw_transaction(signed_tx.raw_transaction))
        else:
            tx_hash = self._rpc(lambda: self.web3.eth.send_transaction(tx))
        tx_hash = Web3.to_hex(tx_hash)
        logger.info('%s.%s sent with hash %s (nonce %s)', contract, function, tx_hash, params['nonce'])
        return tx_hash

    def get_transaction(self, tx_hash):
        try:
            tx = self.web3.eth.get_transaction(tx_hash)
        except TransactionNotFound:
            return None
        except (requests.exceptions.RequestException, ConnectionError, TimeoutError) as e:
            raise ChainUnavailable(str(e), tx_hash=tx_hash)
        return {
            'hash': Web3.to_hex(tx['hash']),
            'from': tx['from'],
            'to': tx.get('to'),
            'nonce': tx['nonce'],
            'value': tx.get('value', 0),
            'blockNumber': tx.get('blockNumber'),
        }

    def get_transaction_receipt(self, tx_hash):
        try:
            receipt = self.web3.eth.get_transaction_receipt(tx_hash)
        except TransactionNotFound:
            return None
        except (requests.exceptions.RequestException, ConnectionError, TimeoutError) as e:
            raise ChainUnavailable(str(e), tx_hash=tx_hash)
        return Receipt(
            transaction_hash=Web3.to_hex(receipt['transactionHash']),
            block_number=receipt['blockNumber'],
            status=receipt['status'],
            gas_used=receipt['gasUsed'],
            sender=receipt.get('from'),
            to=receipt.get('to'),
            logs=self._decode_logs(receipt),
        )

    def _event_names(self, contract):
        return [item['name'] for item in contract.abi if item.get('type') == 'event']

    def _to_event(self, log):
        return Event(
            contract=log['address'],
            name=log['event'],
            args=dict(log['args']),
            block_number=log['blockNumber'],
            transaction_hash=Web3.to_hex(log['transactionHash']),
            log_index=log['logIndex'],
        )

    def _decode_logs(self, receipt):
        events = []
        for contract in self.contracts.values():
            own = dict(receipt)
            own['logs'] = [log for log in receipt['logs'] if log['address'] == contract.address]
            if not own['logs']:
                continue
            for name in self._event_names(contract):
                decoded = getattr(contract.events, name)().process_receipt(own, errors=DISCARD)
                events.extend(self._to_event(log) for log in decoded)
        return sorted(events, key=lambda e: e.log_index)

    def get_events(self, contract, event_name=None, from_block=0, to_block=None):
        target = self.contracts.get(contract)
        if target is None:
            raise InvalidInput(f'Unknown contract: {contract}')
        names = [event_name] if event_name else self._event_names(target)
        if event_name and event_name not in self._event_names(target):
            raise InvalidInput(f'Unknown event: {event_name}')
        events = []
        for name in names:
            logs = self._rpc(lambda: getattr(target.events, name).get_logs(
                from_block=from_block, to_block=to_block if to_block is not None else 'latest'))
            events.extend(self._to_event(log) for log in logs)
        return sorted(events, key=lambda e: (e.block_number, e.log_index))


def create_backend(config):
    """Build the chain backend named by ``CHAIN_BACKEND``."""
    if config.get('CHAIN_BACKEND') == 'local':
        chain = LocalChain(
            chain_id=config.get('CHAIN_ID') or 31337,
            trailing_blocks=config.get('CONFIRMATION_BLOCKS', 0),
        )
        logger.info('using in-process chain, contracts at %s', chain.addresses)
        return chain

    return Web3Backend(
        rpc_url=config['RPC_URL'],
        addresses={
            'credential': config.get('CREDENTIAL_NFT_ADDRESS'),
            'registry': config.get('CREDENTIAL_REGISTRY_ADDRESS'),
            'verification': config.get('VERIFICATION_CONTRACT_ADDRESS'),
        },
        abi_dir=config['ABI_DIR'],
        private_key=config.get('ADMIN_PRIVATE_KEY'),
        chain_id=config.get('CHAIN_ID'),
    )
