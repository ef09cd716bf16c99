"""Shared machinery for the credential contracts.

The three contracts are plain Python objects whose storage can be snapshotted
and restored, so a host chain (``local_chain.LocalChain``) can execute each
transaction atomically across all of them. Public functions are tagged with
their ABI name so the host can dispatch calls by the same names the deployed
Solidity contracts use.
"""
import copy
from dataclasses import dataclass, field
from typing import Any, List, Optional

from web3 import Web3

from errors import InvalidInput
from validation import ZERO_ADDRESS, is_address


@dataclass(frozen=True)
class CallContext:
    """Who is calling and when: the equivalent of msg.sender and block.*."""
    sender: str
    timestamp: int
    block_number: int = 0
    tx_hash: Optional[str] = None


@dataclass
class Event:
    contract: str
    name: str
    args: dict
    block_number: int = 0
    transaction_hash: Optional[str] = None
    log_index: int = 0

    def to_dict(self):
        return {
            'contract': self.contract,
            'event': self.name,
            'args': self.args,
            'blockNumber': self.block_number,
            'transactionHash': self.transaction_hash,
            'logIndex': self.log_index,
        }


@dataclass
class Receipt:
    transaction_hash: str
    block_number: int
    status: int
    gas_used: int = 0
    sender: Optional[str] = None
    to: Optional[str] = None
    logs: List[Event] = field(default_factory=list)
    revert_reason: Optional[str] = None
    return_value: Any = None

    @property
    def succeeded(self):
        return self.status == 1

    def events(self, name):
        return [log for log in self.logs if log.name == name]


@dataclass
class Found:
    data: Any


@dataclass
class Missing:
    key: Any = None


@dataclass
class Failed:
    reason: str = ''


def external(abi_name, mutates=False, timed=False):
    """Expose a method under its ABI name.

    ``mutates`` methods receive a CallContext as first argument; ``timed``
    views receive the block timestamp as the ``now`` keyword.
    """
    def decorate(fn):
        fn.abi_name = abi_name
        fn.mutates = mutates
        fn.timed = timed
        return fn
    return decorate


def transaction(abi_name):
    return external(abi_name, mutates=True)


def view(abi_name, timed=False):
    return external(abi_name, timed=timed)


def normalize_address(address):
    if not address:
        return ZERO_ADDRESS
    if not is_address(address):
        raise InvalidInput(address=address)
    return Web3.to_checksum_address(address)


class Contract:
    # Attributes holding other contracts; excluded from snapshots.
    links = ()

    def __init__(self, address=None):
        self.address = normalize_address(address) if address else None
        self.logs = []

    @classmethod
    def abi_functions(cls):
        functions = {}
        for attr in dir(cls):
            member = getattr(cls, attr, None)
            name = getattr(member, 'abi_name', None)
            if name:
                functions[name] = attr
        return functions

    def emit(self, ctx, event_name, **args):
        event = Event(
            contract=self.address,
            name=event_name,
            args=args,
            block_number=ctx.block_number,
            transaction_hash=ctx.tx_hash,
            log_index=len(self.logs),
        )
        self.logs.append(event)
        return event

    def events(self, name=None, from_block=0, to_block=None):
        return [
            e for e in self.logs
            if (name is None or e.name == name)
            and e.block_number >= from_block
            and (to_block is None or e.block_number <= to_block)
        ]

    def snapshot(self):
        state = {k: v for k, v in vars(self).items() if k not in self.links}
        return copy.deepcopy(state)

    def restore(self, state):
        self.__dict__.update(copy.deepcopy(state))
