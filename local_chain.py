"""In-process chain hosting the credential contracts.

Behaves like a development node (hardhat/anvil style): transactions get a
hash and a nonce, are mined into numbered blocks, and produce receipts with
a success flag and event logs. Each transaction runs against a snapshot of
every contract's storage and is rolled back as a whole when any contract
call raises, so the ledger's callback into the registry commits or reverts
together with the mint.

With ``auto_mine`` off, submitted transactions wait in the mempool until
``mine()`` is called, which is how tests model a transaction that never
confirms.
"""
import logging
import threading
import time
from dataclasses import dataclass

from web3 import Web3

from contract_base import CallContext, Receipt, normalize_address
from credential_ledger import CredentialLedger
from errors import CredentialError, InvalidInput
from institution_registry import InstitutionRegistry
from verification_aggregator import VerificationAggregator

logger = logging.getLogger(__name__)

DEFAULT_DEPLOYER = '0xf39Fd6e51aad88F6F4ce6aB8827279cffFb92266'

BASE_GAS = 21000
GAS_PER_LOG = 12000


@dataclass
class PendingTx:
    tx_hash: str
    sender: str
    nonce: int
    contract: str
    function: str
    args: tuple
    gas: int


class LocalChain:

    def __init__(self, deployer=DEFAULT_DEPLOYER, chain_id=31337, auto_mine=True,
                 trailing_blocks=0, clock=None):
        self.chain_id = chain_id
        self.signer = normalize_address(deployer)
        self.auto_mine = auto_mine
        self.trailing_blocks = trailing_blocks
        self.clock = clock or (lambda: int(time.time()))
        self.block_number = 0
        self.block_timestamps = {0: self.clock()}
        self.mempool = []
        self.transactions = {}
        self.receipts = {}
        self.nonces = {}
        self._lock = threading.RLock()

        self.registry = InstitutionRegistry(self.signer, address=self._contract_address(0))
        self.ledger = CredentialLedger(self.registry, address=self._contract_address(1))
        self.aggregator = VerificationAggregator(self.ledger, self.registry,
                                                 address=self._contract_address(2))
        self.contracts = {
            'registry': self.registry,
            'credential': self.ledger,
            'verification': self.aggregator,
        }

    def _contract_address(self, index):
        digest = Web3.keccak(text=f'{self.signer}:{index}')
        return Web3.to_checksum_address(Web3.to_hex(digest[-20:]))

    @property
    def addresses(self):
        return {name: contract.address for name, contract in self.contracts.items()}

    def _function(self, contract, function):
        target = self.contracts.get(contract)
        if target is None:
            raise InvalidInput(f'Unknown contract: {contract}')
        attr = target.abi_functions().get(function)
        if attr is None:
            raise InvalidInput(f'Unknown function: {contract}.{function}')
        return getattr(target, attr)

    def _invoke(self, contract, function, args, ctx):
        fn = self._function(contract, function)
        if fn.mutates:
            return fn(ctx, *args)
        if fn.timed:
            return fn(*args, now=ctx.timestamp)
        return fn(*args)

    def _snapshot(self):
        return {name: c.snapshot() for name, c in self.contracts.items()}

    def _restore(self, snapshot):
        for name, state in snapshot.items():
            self.contracts[name].restore(state)

    def _log_marks(self):
        return {name: len(c.logs) for name, c in self.contracts.items()}

    # -- node API -----------------------------------------------------------

    def is_connected(self):
        return True

    def get_block_number(self):
        with self._lock:
            return self.block_number

    def get_transaction_count(self, address=None, block='pending'):
        address = normalize_address(address or self.signer)
        with self._lock:
            mined = self.nonces.get(address, 0)
            if block != 'pending':
                return mined
            queued = [tx for tx in self.mempool if tx.sender == address]
            return mined + len(queued)

    def call(self, contract, function, *args, sender=None):
        """eth_call: execute against current state and discard every change."""
        with self._lock:
            ctx = CallContext(
                sender=normalize_address(sender or self.signer),
                timestamp=self.clock(),
                block_number=self.block_number + 1,
            )
            snapshot = self._snapshot()
            try:
                return self._invoke(contract, function, args, ctx)
            finally:
                self._restore(snapshot)

    def estimate_gas(self, contract, function, *args, sender=None):
        with self._lock:
            marks = self._log_marks()
            ctx = CallContext(
                sender=normalize_address(sender or self.signer),
                timestamp=self.clock(),
                block_number=self.block_number + 1,
            )
            snapshot = self._snapshot()
            try:
                self._invoke(contract, function, args, ctx)
                emitted = sum(len(c.logs) - marks[n] for n, c in self.contracts.items())
            finally:
                self._restore(snapshot)
            return BASE_GAS + GAS_PER_LOG * max(emitted, 1)

    def send_transaction(self, contract, function, *args, sender=None, nonce=None, gas=None):
        sender = normalize_address(sender or self.signer)
        self._function(contract, function)
        with self._lock:
            expected = self.get_transaction_count(sender)
            if nonce is None:
                nonce = expected
            if nonce != expected:
                raise InvalidInput(f'nonce mismatch: expected {expected}, got {nonce}',
                                   sender=sender)
            tx_hash = Web3.to_hex(Web3.keccak(
                text=f'{self.chain_id}:{sender}:{nonce}:{contract}:{function}:{args!r}'
            ))
            tx = PendingTx(tx_hash, sender, nonce, contract, function, tuple(args), gas or 0)
            self.mempool.append(tx)
            self.transactions[tx_hash] = tx
            logger.debug('queued %s.%s as %s (nonce %s)', contract, function, tx_hash, nonce)
            if self.auto_mine:
                self.mine(1 + self.trailing_blocks)
            return tx_hash

    def mine(self, blocks=1):
        """Mine ``blocks`` blocks; queued transactions go into the first one."""
        with self._lock:
            for i in range(blocks):
                self.block_number += 1
                self.block_timestamps[self.block_number] = self.clock()
                if i == 0:
                    queued, self.mempool = self.mempool, []
                    for tx in queued:
                        self._execute(tx)
            return self.block_number

    def drop_pending(self):
        """Forget every queued transaction, as a node does when it evicts them."""
        with self._lock:
            dropped, self.mempool = self.mempool, []
            for tx in dropped:
                self.transactions.pop(tx.tx_hash, None)
            return [tx.tx_hash for tx in dropped]

    def _execute(self, tx):
        ctx = CallContext(
            sender=tx.sender,
            timestamp=self.block_timestamps[self.block_number],
            block_number=self.block_number,
            tx_hash=tx.tx_hash,
        )
        self.nonces[tx.sender] = tx.nonce + 1
        marks = self._log_marks()
        snapshot = self._snapshot()
        target = self.contracts[tx.contract].address
        try:
            value = self._invoke(tx.contract, tx.function, tx.args, ctx)
        except CredentialError as e:
            self._restore(snapshot)
            logger.info('transaction %s reverted: %s', tx.tx_hash, e.message)
            receipt = Receipt(tx.tx_hash, self.block_number, 0, BASE_GAS,
                              sender=tx.sender, to=target, revert_reason=e.message)
        else:
            logs = []
            for name, contract in self.contracts.items():
                logs.extend(contract.logs[marks[name]:])
            receipt = Receipt(tx.tx_hash, self.block_number, 1,
                              BASE_GAS + GAS_PER_LOG * len(logs),
                              sender=tx.sender, to=target, logs=logs, return_value=value)
        self.receipts[tx.tx_hash] = receipt
        return receipt

    def get_transaction(self, tx_hash):
        with self._lock:
            tx = self.transactions.get(tx_hash)
            if tx is None:
                return None
            receipt = self.receipts.get(tx_hash)
            return {
                'hash': tx.tx_hash,
                'from': tx.sender,
                'to': self.contracts[tx.contract].address,
                'nonce': tx.nonce,
                'value': 0,
                'blockNumber': receipt.block_number if receipt else None,
            }

    def get_transaction_receipt(self, tx_hash):
        with self._lock:
            return self.receipts.get(tx_hash)

    def get_events(self, contract, event_name=None, from_block=0, to_block=None):
        target = self.contracts.get(contract)
        if target is None:
            raise InvalidInput(f'Unknown contract: {contract}')
        with self._lock:
            return target.events(event_name, from_block=max(from_block, 0), to_block=to_block)

    def get_gas_price(self):
        return Web3.to_wei(1, 'gwei')

    def get_fee_data(self):
        gas_price = self.get_gas_price()
        return {'gasPrice': gas_price, 'maxFeePerGas': 2 * gas_price,
                'maxPriorityFeePerGas': gas_price}

    def get_balance(self, address=None):
        return Web3.to_wei(10000, 'ether')
