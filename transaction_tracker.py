"""Submit contract transactions and follow them to a terminal state.

Every state-changing call goes through ``TransactionLifecycleManager``:

* ``submit`` estimates gas, assigns the next nonce of the server key under a
  lock, broadcasts, and records a ``PendingTransaction``.
* ``wait_for_receipt`` polls for the receipt on a worker thread. A wait ends
  when the receipt is buried under enough blocks, when the transaction
  reverts, or when the deadline passes, whichever comes first. The deadline
  is checked before every poll and before every sleep, and the sleep itself
  is an Event wait so cancelling a wait wakes it immediately.
* ``refresh`` re-checks a transaction out of band. When it finds a
  confirmation that a timed-out wait missed it runs the reconciler
  registered for the transaction's kind, so the shadow store catches up.

Database writes happen only in the calling (request) thread; the polling
workers touch nothing but the chain backend.
"""
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import timedelta
from enum import Enum
from typing import Optional

from contract_base import Receipt
from errors import TransientError
from models import PendingTransaction, db, utcnow

logger = logging.getLogger(__name__)


class TxStatus(str, Enum):
    SUBMITTED = PendingTransaction.SUBMITTED
    CONFIRMED = PendingTransaction.CONFIRMED
    FAILED = PendingTransaction.FAILED
    TIMED_OUT = PendingTransaction.TIMED_OUT


@dataclass
class TxOutcome:
    tx_hash: str
    status: TxStatus
    receipt: Optional[Receipt] = None
    confirmations: int = 0
    error: Optional[str] = None

    @property
    def terminal(self):
        return self.status != TxStatus.SUBMITTED

    @property
    def confirmed(self):
        return self.status == TxStatus.CONFIRMED

    @property
    def chain_status(self):
        """What the chain itself reports, independent of our wait."""
        if self.receipt is None:
            return 'pending'
        if not self.receipt.succeeded:
            return 'failed'
        return 'confirmed' if self.status == TxStatus.CONFIRMED else 'pending'

    def to_dict(self):
        return {
            'transactionHash': self.tx_hash,
            'status': self.status.value,
            'blockNumber': self.receipt.block_number if self.receipt else None,
            'gasUsed': self.receipt.gas_used if self.receipt else None,
            'confirmations': self.confirmations,
            'error': self.error,
        }


class ReceiptWait:
    """Handle on one background confirmation wait."""

    def __init__(self, tx_hash, future, cancel_event):
        self.tx_hash = tx_hash
        self.future = future
        self._cancel = cancel_event

    def result(self, timeout=None):
        return self.future.result(timeout)

    def done(self):
        return self.future.done()

    def cancel(self):
        self._cancel.set()
        self.future.cancel()


class TransactionLifecycleManager:

    def __init__(self, backend, confirmation_blocks=2, timeout=60, poll_interval=10,
                 default_gas=500000, max_workers=4, clock=time.monotonic):
        self.backend = backend
        self.confirmation_blocks = confirmation_blocks
        self.timeout = timeout
        self.poll_interval = poll_interval
        self.default_gas = default_gas
        self.clock = clock
        self._executor = ThreadPoolExecutor(max_workers=max_workers,
                                            thread_name_prefix='tx-poll')
        self._nonce_lock = threading.Lock()
        self._last_nonce = None
        self._waits = set()
        self._waits_lock = threading.Lock()
        self._reconcilers = {}

    @classmethod
    def from_config(cls, backend, config):
        return cls(
            backend,
            confirmation_blocks=config.get('CONFIRMATION_BLOCKS', 2),
            timeout=config.get('CONFIRMATION_TIMEOUT', 60),
            poll_interval=config.get('POLL_INTERVAL', 10),
            default_gas=config.get('DEFAULT_GAS_LIMIT', 500000),
            max_workers=config.get('TX_WORKERS', 4),
        )

    def register_reconciler(self, kind, fn):
        """``fn(record, outcome)`` runs once per transaction when the chain resolves it."""
        self._reconcilers[kind] = fn

    # -- submission ---------------------------------------------------------

    def estimate_gas(self, contract, function, *args):
        """Return (gas limit, estimated).

        The limit carries a 20% margin over the node's estimate, or is the
        default when the node cannot answer. Reverts propagate so the caller
        sees why the call would fail.
        """
        try:
            estimate = self.backend.estimate_gas(contract, function, *args)
        except TransientError as e:
            logger.warning('gas estimation for %s.%s failed (%s), using default %d',
                           contract, function, e.message, self.default_gas)
            return self.default_gas, False
        return estimate + estimate // 5, True

    def next_nonce(self):
        """Caller must hold the nonce lock."""
        pending = self.backend.get_transaction_count(self.backend.signer, 'pending')
        if self._last_nonce is None:
            return pending
        return max(pending, self._last_nonce + 1)

    def broadcast(self, contract, function, *args):
        """Send under the nonce lock; returns (tx_hash, nonce)."""
        gas, _ = self.estimate_gas(contract, function, *args)
        with self._nonce_lock:
            nonce = self.next_nonce()
            tx_hash = self.backend.send_transaction(contract, function, *args,
                                                    nonce=nonce, gas=gas)
            self._last_nonce = nonce
        return tx_hash, nonce

    def submit(self, kind, contract, function, *args, subject=None):
        tx_hash, nonce = self.broadcast(contract, function, *args)
        logger.info('submitted %s (%s.%s) as %s with nonce %d',
                    kind, contract, function, tx_hash, nonce)

        record = PendingTransaction(
            tx_hash=tx_hash,
            kind=kind,
            subject=str(subject) if subject is not None else None,
            sender=self.backend.signer,
            nonce=nonce,
            deadline=utcnow() + timedelta(seconds=self.timeout),
        )
        db.session.add(record)
        db.session.commit()
        return record

    # -- confirmation -------------------------------------------------------

    def check(self, tx_hash):
        """One look at the chain; SUBMITTED means not final yet."""
        receipt = self.backend.get_transaction_receipt(tx_hash)
        if receipt is None:
            return TxOutcome(tx_hash, TxStatus.SUBMITTED)
        if not receipt.succeeded:
            return TxOutcome(tx_hash, TxStatus.FAILED, receipt,
                             error=receipt.revert_reason or 'Transaction reverted')
        confirmations = max(self.backend.get_block_number() - receipt.block_number, 0)
        if confirmations < self.confirmation_blocks:
            return TxOutcome(tx_hash, TxStatus.SUBMITTED, receipt, confirmations)
        return TxOutcome(tx_hash, TxStatus.CONFIRMED, receipt, confirmations)

    def wait_for_receipt(self, tx_hash, timeout=None):
        timeout = self.timeout if timeout is None else timeout
        cancel = threading.Event()
        future = self._executor.submit(self._poll, tx_hash, timeout, cancel)
        wait = ReceiptWait(tx_hash, future, cancel)
        with self._waits_lock:
            self._waits.add(wait)
        future.add_done_callback(lambda _: self._forget(wait))
        return wait

    def _forget(self, wait):
        with self._waits_lock:
            self._waits.discard(wait)

    def _poll(self, tx_hash, timeout, cancel):
        # the clock starts when a worker picks the wait up, not while it is queued
        deadline = self.clock() + timeout
        attempt = 0
        last = TxOutcome(tx_hash, TxStatus.SUBMITTED)
        while True:
            if self.clock() >= deadline:
                logger.warning('gave up waiting for %s after %d polls', tx_hash, attempt)
                return TxOutcome(tx_hash, TxStatus.TIMED_OUT, last.receipt, last.confirmations,
                                 error='Confirmation timed out')

            attempt += 1
            try:
                last = self.check(tx_hash)
            except TransientError as e:
                logger.warning('poll %d for %s failed: %s', attempt, tx_hash, e.message)
            else:
                logger.debug('poll %d for %s: %s (%d confirmations)',
                             attempt, tx_hash, last.status.value, last.confirmations)
                if last.terminal:
                    if last.status == TxStatus.FAILED:
                        logger.error('transaction %s reverted: %s', tx_hash, last.error)
                    return last

            remaining = deadline - self.clock()
            if remaining > 0 and cancel.wait(min(self.poll_interval, remaining)):
                logger.info('wait for %s cancelled', tx_hash)
                return TxOutcome(tx_hash, TxStatus.TIMED_OUT, last.receipt, last.confirmations,
                                 error='Wait cancelled')

    # -- resolution ---------------------------------------------------------

    def execute(self, kind, contract, function, *args, subject=None, timeout=None):
        """Submit, wait for a terminal state and record it.

        Returns (record, outcome). A timeout is not an error: the record is
        left ``timed_out`` with the hash for a later ``refresh``.
        """
        record = self.submit(kind, contract, function, *args, subject=subject)
        return record, self.follow(record, timeout=timeout)

    def follow(self, record, timeout=None):
        """Block the calling thread on the polling worker, then record the outcome."""
        outcome = self.wait_for_receipt(record.tx_hash, timeout=timeout).result()
        self._apply(record, outcome)
        return outcome

    def _apply(self, record, outcome):
        if outcome.receipt is not None:
            record.observe(outcome.chain_status, outcome.receipt.block_number,
                           outcome.receipt.gas_used)
        if record.status == PendingTransaction.SUBMITTED and outcome.terminal:
            record.resolve(outcome.status.value, error=outcome.error)
        if outcome.receipt is not None and outcome.chain_status != 'pending':
            self._reconcile(record, outcome)
        db.session.commit()

    def _reconcile(self, record, outcome):
        if record.reconciled:
            return
        reconciler = self._reconcilers.get(record.kind)
        if reconciler is not None:
            reconciler(record, outcome)
        record.reconciled = True

    def refresh(self, tx_hash):
        """Out-of-band status check; returns (record or None, outcome)."""
        outcome = self.check(tx_hash)
        record = PendingTransaction.query.filter_by(tx_hash=tx_hash).first()
        if record is not None:
            self._apply(record, outcome)
        return record, outcome

    def shutdown(self, wait=True):
        with self._waits_lock:
            waits = list(self._waits)
        for w in waits:
            w.cancel()
        self._executor.shutdown(wait=wait)
