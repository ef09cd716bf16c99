"""Institution onboarding: register if needed, then verify, one step at a time.

The verify step is only submitted once the register step is confirmed at
the required depth. A step that times out stops the workflow with a
``pending`` answer carrying the transaction hash; the institution mirror
then says ``pending`` and never more than the chain has confirmed.
"""
import logging

from errors import NotAuthorized, NotRegistered, from_revert_reason
from models import PendingTransaction
from transaction_tracker import TxStatus
from validation import validate_address

logger = logging.getLogger(__name__)

REGISTER = 'register_institution'
VERIFY = 'verify_institution'
REVOKE = 'revoke_institution'

TX_FIELDS = {
    REGISTER: 'registration_tx_hash',
    VERIFY: 'verification_tx_hash',
    REVOKE: 'revocation_tx_hash',
}


class InstitutionOnboarding:

    def __init__(self, backend, tracker, store):
        self.backend = backend
        self.tracker = tracker
        self.store = store
        for kind in TX_FIELDS:
            tracker.register_reconciler(kind, self._reconcile)

    def chain_state(self, address):
        """(Institution or None, authorized) as the registry sees it now."""
        try:
            institution = self.backend.call('registry', 'getInstitution', address)
        except NotRegistered:
            institution = None
        authorized = self.backend.call('registry', 'isAuthorizedIssuer', address)
        return institution, authorized

    def in_flight(self, address):
        """Latest registry transaction per kind for ``address`` that is not yet confirmed at depth."""
        records = (PendingTransaction.query
                   .filter(PendingTransaction.subject == address,
                           PendingTransaction.kind.in_(list(TX_FIELDS)))
                   .order_by(PendingTransaction.id)
                   .all())
        latest = {r.kind: r for r in records}
        in_flight = {}
        for kind, record in latest.items():
            if record.chain_status in ('confirmed', 'failed'):
                continue
            # never mined and no longer known to the node: dropped
            if record.chain_status is None and self.backend.get_transaction(record.tx_hash) is None:
                continue
            in_flight[kind] = record
        return in_flight

    def confirmed_state(self, address):
        """Like ``chain_state`` but limited to what confirmed receipts prove.

        Returns (institution or None, authorized, in-flight records by kind).
        """
        institution, authorized = self.chain_state(address)
        in_flight = self.in_flight(address)
        if REGISTER in in_flight:
            institution = None
        if VERIFY in in_flight:
            authorized = False
        return institution, authorized, in_flight

    def sync(self, address, **tx_fields):
        """Write the registry's confirmed view of ``address`` into the mirror."""
        institution, authorized, in_flight = self.confirmed_state(address)
        mirror = self.store.find_institution(address)
        if institution is None and mirror is None and not in_flight:
            return None

        fields = dict(tx_fields)
        if institution is not None:
            fields.update(
                name=institution.name,
                website=institution.website,
                email=institution.email,
                document_hash=institution.document_hash,
            )
        fields['is_registered'] = institution is not None
        fields['is_verified'] = authorized

        if authorized:
            status = 'verified'
        elif in_flight:
            status = 'pending'
        elif institution is None:
            status = 'unregistered'
        elif mirror is not None and (mirror.status in ('verified', 'revoked')
                                     or mirror.revocation_tx_hash):
            status = 'revoked'
        else:
            status = 'registered'
        fields['status'] = status
        return self.store.upsert_institution(address, **fields)

    def _reconcile(self, record, outcome):
        fields = {}
        if outcome.chain_status == 'confirmed':
            fields[TX_FIELDS[record.kind]] = record.tx_hash
            fields['block_number'] = outcome.receipt.block_number
        self.sync(record.subject, **fields)

    def _stop(self, address, step, record, outcome, name=None):
        if outcome.status == TxStatus.FAILED:
            logger.error('%s for %s reverted: %s', step, address, outcome.error)
            raise from_revert_reason(outcome.error, address=address, tx_hash=record.tx_hash)

        logger.warning('%s for %s not confirmed in time, leaving it pending', step, address)
        self.sync(address, name=name, **{TX_FIELDS[record.kind]: record.tx_hash})
        self.store.commit()
        return {
            'success': True,
            'status': 'pending',
            'step': step,
            'transactionHash': record.tx_hash,
            'message': f'{step.capitalize()} submitted but not yet confirmed; check the transaction status later',
        }

    def onboard(self, address, name, website='', email='', document_hash=''):
        address = validate_address(address, 'wallet address')
        transactions = {}

        # an earlier attempt may have left a step mined but not yet deep enough
        in_flight = self.in_flight(address)
        for kind, step in ((REGISTER, 'registration'), (VERIFY, 'verification')):
            record = in_flight.get(kind)
            if record is None:
                continue
            transactions[step] = record.tx_hash
            outcome = self.tracker.follow(record)
            if not outcome.confirmed:
                response = self._stop(address, step, record, outcome, name=name)
                response['transactions'] = transactions
                return response

        institution, authorized = self.chain_state(address)
        if authorized:
            mirror = self.sync(address)
            self.store.commit()
            return {
                'success': True,
                'status': 'verified',
                'alreadyVerified': not transactions,
                'message': 'Institution is already registered and verified',
                'transactions': transactions,
                'institution': mirror.to_dict() if mirror else None,
            }

        if institution is None:
            record, outcome = self.tracker.execute(
                REGISTER, 'registry', 'registerInstitution',
                address, name, website or '', email or '', document_hash or '',
                subject=address,
            )
            transactions['registration'] = record.tx_hash
            if not outcome.confirmed:
                response = self._stop(address, 'registration', record, outcome, name=name)
                response['transactions'] = transactions
                return response
            logger.info('institution %s registered in block %s', address, outcome.receipt.block_number)

        record, outcome = self.tracker.execute(
            VERIFY, 'registry', 'verifyInstitution', address, subject=address)
        transactions['verification'] = record.tx_hash
        if not outcome.confirmed:
            response = self._stop(address, 'verification', record, outcome, name=name)
            response['transactions'] = transactions
            return response
        logger.info('institution %s verified in block %s', address, outcome.receipt.block_number)

        mirror = self.sync(address)
        self.store.commit()
        return {
            'success': True,
            'status': 'verified',
            'alreadyVerified': False,
            'message': 'Institution registered and verified on chain',
            'transactions': transactions,
            'blockNumber': outcome.receipt.block_number,
            'institution': mirror.to_dict() if mirror else None,
        }

    def registration_status(self, address):
        address = validate_address(address, 'wallet address')
        # a transaction that timed out earlier may have confirmed since
        for record in self.in_flight(address).values():
            self.tracker.refresh(record.tx_hash)

        institution, authorized, in_flight = self.confirmed_state(address)
        mirror = self.sync(address)
        self.store.commit()

        if authorized:
            status = 'Fully registered and verified'
        elif institution is not None:
            status = 'Registered but not verified'
        else:
            status = 'Not registered'
        return {
            'success': True,
            'isRegistered': institution is not None,
            'isAuthorized': authorized,
            'institutionData': institution.to_dict() if institution else None,
            'status': status,
            'pending': bool(in_flight),
            'offChain': mirror.to_dict() if mirror else None,
        }

    def revoke(self, address):
        address = validate_address(address, 'institution address')
        if not self.backend.call('registry', 'isAuthorizedIssuer', address):
            raise NotAuthorized(address=address)

        record, outcome = self.tracker.execute(
            REVOKE, 'registry', 'revokeInstitution', address, subject=address)
        if not outcome.confirmed:
            return self._stop(address, 'revocation', record, outcome)

        mirror = self.sync(address)
        self.store.commit()
        return {
            'success': True,
            'status': 'revoked',
            'transactionHash': record.tx_hash,
            'blockNumber': outcome.receipt.block_number,
            'institution': mirror.to_dict() if mirror else None,
        }
