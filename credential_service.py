"""Credential operations behind the REST surface.

Issuance pins metadata first, submits the mint through the lifecycle
manager and writes ``pending`` shadow rows for the transaction. The rows
become ``issued`` only when the receipt is confirmed, whether that happens
during the request or in a later status check.

Verification verdicts always come from the verification contract; the
shadow store only adds metadata and counters.
"""
import logging
from datetime import datetime, timezone

from web3 import Web3

from credential_ledger import CredentialType
from credential_store import REVOKED
from errors import (
    CredentialNotFound, InvalidInput, NotAuthorizedIssuer, NotIssuer, AlreadyRevoked,
    NotRegistered, TransactionNotFound, TransientError, from_revert_reason,
)
from ipfs import build_metadata
from models import utcnow
from transaction_tracker import TxStatus
from validation import (
    require_fields, validate_address, validate_pagination, validate_token_id,
    validate_tx_hash,
)

logger = logging.getLogger(__name__)

ISSUE = 'issue'
BATCH_ISSUE = 'batch_issue'
REVOKE = 'revoke'
VERIFY = 'verify'

MAX_REASON_LENGTH = 500
CONTRACTS = ('credential', 'registry', 'verification')
DEFAULT_EVENT_WINDOW = 1000


def _iso_timestamp(value):
    if not value:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc).isoformat()


def jsonable(value):
    if isinstance(value, (bytes, bytearray)):
        return Web3.to_hex(value)
    if isinstance(value, dict):
        return {k: jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [jsonable(v) for v in value]
    return value


class CredentialService:

    def __init__(self, backend, tracker, store, storage, frontend_url='',
                 explorer_tx_url='', max_batch_verify=50, record_verifications=False):
        self.backend = backend
        self.tracker = tracker
        self.store = store
        self.storage = storage
        self.frontend_url = frontend_url.rstrip('/')
        self.explorer_tx_url = explorer_tx_url
        self.max_batch_verify = max_batch_verify
        self.record_verifications = record_verifications
        tracker.register_reconciler(ISSUE, self._reconcile_issue)
        tracker.register_reconciler(BATCH_ISSUE, self._reconcile_issue)
        tracker.register_reconciler(REVOKE, self._reconcile_revoke)

    @classmethod
    def from_config(cls, backend, tracker, store, storage, config):
        return cls(
            backend, tracker, store, storage,
            frontend_url=config.get('FRONTEND_URL', ''),
            explorer_tx_url=config.get('EXPLORER_TX_URL', ''),
            max_batch_verify=config.get('MAX_BATCH_VERIFY', 50),
            record_verifications=config.get('RECORD_VERIFICATIONS_ON_CHAIN', False),
        )

    def verification_url(self, token_id):
        return f'{self.frontend_url}/verify/{token_id}'

    def explorer_url(self, tx_hash):
        return f'{self.explorer_tx_url}{tx_hash}' if self.explorer_tx_url else None

    # -- helpers ------------------------------------------------------------

    def _require_issuer(self, caller):
        if not self.backend.call('registry', 'isAuthorizedIssuer', caller.wallet):
            raise NotAuthorizedIssuer('Not authorized to issue credentials', address=caller.wallet)

    def _institution_name(self, caller):
        if caller.name:
            return caller.name
        try:
            return self.backend.call('registry', 'getInstitution', caller.wallet).name
        except NotRegistered:
            return ''

    def _parse_entry(self, recipient, credential_data):
        recipient = validate_address(recipient, 'recipient address')
        require_fields(credential_data, 'title', 'credentialType')
        data = dict(credential_data)
        data['credentialType'] = CredentialType.parse(data['credentialType']).value

        if not isinstance(data['title'], str) or len(data['title']) > 200:
            raise InvalidInput('Title must be at most 200 characters')
        if len(data.get('description') or '') > 1000:
            raise InvalidInput('Description must be at most 1000 characters')
        gpa = data.get('gpa')
        if gpa is not None and (not isinstance(gpa, (int, float)) or not 0 <= gpa <= 4.0):
            raise InvalidInput('GPA must be between 0 and 4.0')
        credits = data.get('credits')
        if credits is not None and (not isinstance(credits, int) or credits < 0):
            raise InvalidInput('Credits must be a non-negative integer')
        skills = data.get('skills') or []
        if not isinstance(skills, list) or not all(isinstance(s, str) for s in skills):
            raise InvalidInput('Skills must be a list of strings')
        return recipient, data

    def _parse_expiry(self, value):
        if value in (None, ''):
            return 0
        try:
            expiry = int(value)
        except (TypeError, ValueError):
            raise InvalidInput('Expiry date must be a unix timestamp', expiryDate=value)
        if expiry < 0:
            raise InvalidInput('Expiry date must be a unix timestamp', expiryDate=value)
        return expiry

    def _refresh_from_chain(self, token_id):
        try:
            credential = self.backend.call('credential', 'getCredential', token_id)
        except CredentialNotFound:
            return None
        return self.store.apply_chain_view(credential)

    def _pending_response(self, tx, message):
        return {
            'success': True,
            'status': 'pending',
            'transactionHash': tx.tx_hash,
            'explorerUrl': self.explorer_url(tx.tx_hash),
            'message': message,
        }

    # -- reconciliation -----------------------------------------------------

    def _reconcile_issue(self, record, outcome):
        if outcome.chain_status == 'failed':
            self.store.mark_failed(record.tx_hash, outcome.error)
            return
        token_ids = [e.args['tokenId'] for e in outcome.receipt.events('CredentialIssued')]
        rows = self.store.confirm_issued(
            record.tx_hash, token_ids,
            block_number=outcome.receipt.block_number,
            gas_used=outcome.receipt.gas_used,
            verification_url_for=self.verification_url,
        )
        for row in rows:
            self._refresh_from_chain(row.token_id)
        logger.info('credentials %s from %s are issued', token_ids, record.tx_hash)

    def _reconcile_revoke(self, record, outcome):
        self._refresh_from_chain(int(record.subject))

    # -- issuance -----------------------------------------------------------

    def issue(self, caller, data):
        require_fields(data, 'recipientAddress', 'credentialData')
        recipient, credential_data = self._parse_entry(data['recipientAddress'],
                                                       data['credentialData'])
        expiry = self._parse_expiry(data.get('expiryDate'))
        self._require_issuer(caller)
        institution_name = self._institution_name(caller)

        logger.info('Storing credential metadata for %s', recipient)
        ipfs_hash = self.storage.store(build_metadata(credential_data, institution_name))
        token_uri = self.storage.resolve(ipfs_hash)

        tx = self.tracker.submit(
            ISSUE, 'credential', 'issueCredential',
            recipient, credential_data['credentialType'], institution_name,
            expiry, ipfs_hash, token_uri,
            subject=recipient,
        )
        self.store.add_pending(
            tx.tx_hash, caller.wallet, institution_name, recipient, credential_data,
            ipfs_hash=ipfs_hash, expiry_date=expiry, recipient_name=data.get('recipientName'),
        )
        self.store.commit()

        outcome = self.tracker.follow(tx)
        if outcome.status == TxStatus.FAILED:
            raise from_revert_reason(outcome.error, tx_hash=tx.tx_hash)
        if not outcome.confirmed:
            return self._pending_response(tx, 'Credential submitted; waiting for confirmation')

        record = self.store.find_by_transaction(tx.tx_hash)[0]
        return {
            'success': True,
            'status': 'issued',
            'credential': record.to_dict(),
            'transactionHash': tx.tx_hash,
        }

    def batch_issue(self, caller, data):
        credentials = data.get('credentials') if isinstance(data, dict) else None
        if not isinstance(credentials, list) or not credentials:
            raise InvalidInput('Credentials array is required and cannot be empty')
        entries = []
        for entry in credentials:
            if not isinstance(entry, dict):
                raise InvalidInput('Each credential must be an object')
            entries.append(self._parse_entry(entry.get('recipientAddress'),
                                             entry.get('credentialData', entry)))
        expiry = self._parse_expiry(data.get('expiryDate'))
        self._require_issuer(caller)
        institution_name = self._institution_name(caller)

        # every document is pinned before anything reaches the chain
        ipfs_hashes = [self.storage.store(build_metadata(cd, institution_name)) for _, cd in entries]
        token_uris = [self.storage.resolve(h) for h in ipfs_hashes]
        recipients = [recipient for recipient, _ in entries]
        types = [cd['credentialType'] for _, cd in entries]

        tx = self.tracker.submit(
            BATCH_ISSUE, 'credential', 'batchIssueCredentials',
            recipients, types, institution_name, expiry, ipfs_hashes, token_uris,
            subject=len(entries),
        )
        for (recipient, cd), ipfs_hash, entry in zip(entries, ipfs_hashes, credentials):
            self.store.add_pending(tx.tx_hash, caller.wallet, institution_name, recipient, cd,
                                   ipfs_hash=ipfs_hash, expiry_date=expiry,
                                   recipient_name=entry.get('recipientName'))
        self.store.commit()

        outcome = self.tracker.follow(tx)
        if outcome.status == TxStatus.FAILED:
            raise from_revert_reason(outcome.error, tx_hash=tx.tx_hash)
        if not outcome.confirmed:
            return self._pending_response(tx, f'{len(entries)} credentials submitted; waiting for confirmation')

        records = self.store.find_by_transaction(tx.tx_hash)
        return {
            'success': True,
            'status': 'issued',
            'transactionHash': tx.tx_hash,
            'credentialsIssued': len(records),
            'tokenIds': [r.token_id for r in records],
            'gasUsed': str(outcome.receipt.gas_used),
            'recipients': recipients,
        }

    def revoke(self, caller, token_id, reason=None):
        token_id = validate_token_id(token_id)
        if reason is not None and (not isinstance(reason, str) or len(reason) > MAX_REASON_LENGTH):
            raise InvalidInput(f'Reason must be text of at most {MAX_REASON_LENGTH} characters')

        record = self.store.find_by_token_id(token_id)
        if record is None:
            raise CredentialNotFound(token_id=token_id)
        if record.issuer_address != caller.wallet:
            raise NotIssuer('Only the issuer can revoke this credential', token_id=token_id)
        if record.status == REVOKED:
            raise AlreadyRevoked(token_id=token_id)

        tx = self.tracker.submit(REVOKE, 'credential', 'revokeCredential', token_id,
                                 subject=token_id)
        # the reason is kept even while the revocation is unconfirmed; status is not
        record.revocation_reason = reason
        self.store.commit()

        outcome = self.tracker.follow(tx)
        if outcome.status == TxStatus.FAILED:
            raise from_revert_reason(outcome.error, token_id=token_id, tx_hash=tx.tx_hash)
        if not outcome.confirmed:
            return self._pending_response(tx, 'Revocation submitted; waiting for confirmation')

        return {
            'success': True,
            'message': 'Credential revoked successfully',
            'transactionHash': tx.tx_hash,
            'credential': self.store.find_by_token_id(token_id).to_dict(),
        }

    # -- verification -------------------------------------------------------

    def _verification_response(self, result, record):
        return {
            'isValid': result.is_valid,
            'exists': result.exists,
            'tokenId': result.token_id,
            'issuer': {'address': result.issuer, 'name': result.institution_name},
            'recipient': {'address': result.recipient},
            'credentialType': result.credential_type,
            'issueDate': _iso_timestamp(result.issue_date),
            'status': {
                'expired': result.expired,
                'revoked': result.revoked,
                'message': result.message,
            },
            'metadata': record.to_dict()['metadata'] if record else None,
        }

    def _count_verification(self, result):
        if not result.exists:
            return None
        self.store.increment_verification_count(result.token_id)
        record = self.store.find_by_token_id(result.token_id)
        if record is not None and result.revoked and record.status != REVOKED:
            self.store.mark_revoked(result.token_id)
        return record

    def _record_on_chain(self, function, *args, subject=None):
        try:
            self.tracker.submit(VERIFY, 'verification', function, *args, subject=subject)
        except TransientError as e:
            logger.warning('could not record verification of %s on chain: %s', subject, e.message)

    def verify(self, token_id):
        token_id = validate_token_id(token_id)
        result = self.backend.call('verification', 'verifyCredentialDetailed', token_id)
        if self.record_verifications:
            self._record_on_chain('verifyCredentialDetailed', token_id, subject=token_id)
        record = self._count_verification(result)
        self.store.commit()

        response = {'success': True}
        response.update(self._verification_response(result, record))
        response['verificationTimestamp'] = utcnow().isoformat()
        return response

    def batch_verify(self, token_ids):
        if not isinstance(token_ids, list) or not token_ids:
            raise InvalidInput('Token IDs array is required')
        if len(token_ids) > self.max_batch_verify:
            raise InvalidInput(f'Maximum {self.max_batch_verify} credentials can be verified at once')
        token_ids = [validate_token_id(t) for t in token_ids]

        results = self.backend.call('verification', 'batchVerifyCredentials', token_ids)
        if self.record_verifications:
            self._record_on_chain('batchVerifyCredentials', token_ids, subject=len(token_ids))
        records = [self._count_verification(r) for r in results]
        self.store.commit()

        items = [self._verification_response(r, rec) for r, rec in zip(results, records)]
        valid = sum(1 for r in results if r.is_valid)
        return {
            'success': True,
            'batchVerification': {
                'total': len(results),
                'valid': valid,
                'invalid': len(results) - valid,
                'notFound': sum(1 for r in results if not r.exists),
                'results': items,
            },
            'timestamp': utcnow().isoformat(),
        }

    def quick_verify(self, token_id):
        token_id = validate_token_id(token_id)
        return {
            'success': True,
            'tokenId': token_id,
            'isValid': bool(self.backend.call('verification', 'quickVerify', token_id)),
        }

    def verify_ownership(self, token_id, claimed_owner):
        token_id = validate_token_id(token_id)
        claimed_owner = validate_address(claimed_owner, 'owner address')
        return {
            'success': True,
            'tokenId': token_id,
            'owner': claimed_owner,
            'isOwner': bool(self.backend.call('verification', 'verifyOwnership',
                                              token_id, claimed_owner)),
        }

    def issuer_authority(self, address):
        address = validate_address(address, 'issuer address')
        authorized = self.backend.call('registry', 'isAuthorizedIssuer', address)
        institution = None
        if authorized:
            institution = self.backend.call('registry', 'getInstitution', address).to_dict()
        return {
            'success': True,
            'issuerAddress': address,
            'isAuthorized': authorized,
            'institution': institution,
        }

    def history(self, token_id):
        token_id = validate_token_id(token_id)
        record = self.store.find_by_token_id(token_id)
        if record is None:
            raise CredentialNotFound(token_id=token_id)
        return {
            'success': True,
            'history': {
                'tokenId': token_id,
                'totalVerifications': record.verification_count,
                'onChainVerifications': self.backend.call(
                    'verification', 'getCredentialVerificationCount', token_id),
                'lastVerified': record.last_verified_at.isoformat() if record.last_verified_at else None,
            },
        }

    def stats(self):
        shadow = self.store.verification_stats()
        return {
            'success': True,
            'stats': {
                'credentials': {
                    'total': shadow['totalCredentials'],
                    'onChain': self.backend.call('credential', 'getTotalCredentials'),
                    'byStatus': shadow['byStatus'],
                },
                'verifications': {
                    'total': shadow['totalVerifications'],
                    'onChain': self.backend.call('verification', 'getTotalVerifications'),
                    'mostVerified': shadow['mostVerified'],
                },
                'institutions': {
                    'verified': self.backend.call('registry', 'getVerifiedInstitutionsCount'),
                },
                'timestamp': utcnow().isoformat(),
            },
        }

    # -- queries ------------------------------------------------------------

    def user_credentials(self, wallet):
        wallet = validate_address(wallet, 'wallet address')
        token_ids = self.backend.call('credential', 'getUserCredentials', wallet)
        records = self.store.find_by_recipient(wallet)
        return {
            'success': True,
            'count': len(records),
            'credentials': [r.to_dict() for r in records],
            'onChainTokenIds': [str(t) for t in token_ids],
            'stats': self.store.recipient_stats(wallet),
        }

    def issued_credentials(self, caller, status=None, page=1, limit=10):
        page, limit = validate_pagination(page, limit)
        records, total = self.store.find_by_issuer(caller.wallet, status=status or None,
                                                   page=page, limit=limit)
        return {
            'success': True,
            'credentials': [r.to_dict() for r in records],
            'pagination': {
                'currentPage': page,
                'totalPages': (total + limit - 1) // limit,
                'totalItems': total,
                'hasNext': page * limit < total,
                'hasPrev': page > 1,
            },
            'stats': self.store.issuer_stats(caller.wallet),
        }

    def details(self, token_id):
        token_id = validate_token_id(token_id)
        try:
            credential = self.backend.call('credential', 'getCredential', token_id)
        except CredentialNotFound:
            credential = None
        record = self.store.find_by_token_id(token_id)
        if credential is None and record is None:
            raise CredentialNotFound(token_id=token_id)

        response = {'success': True, 'onChain': None}
        if credential is not None:
            # minted outside this service: mirror what the ledger knows
            record = self.store.upsert_from_chain(credential, self.verification_url(token_id))
            response['onChain'] = {
                'owner': self.backend.call('credential', 'ownerOf', token_id),
                'tokenURI': self.backend.call('credential', 'tokenURI', token_id),
                'revoked': credential.revoked,
            }
        self.store.commit()
        response['credential'] = record.to_dict()
        return response

    # -- chain --------------------------------------------------------------

    def events(self, contract, event_name=None, from_block=None, to_block=None):
        if contract not in CONTRACTS:
            raise InvalidInput('Invalid contract type', contract=contract)
        try:
            current = self.backend.get_block_number()
            from_block = int(from_block) if from_block not in (None, '') else current - DEFAULT_EVENT_WINDOW
            to_block = int(to_block) if to_block not in (None, '') else None
        except (TypeError, ValueError):
            raise InvalidInput('Invalid block range')
        events = self.backend.get_events(contract, event_name or None,
                                         from_block=max(from_block, 0), to_block=to_block)
        items = [jsonable(e.to_dict()) for e in events]
        return {'success': True, 'events': items, 'count': len(items)}

    def estimate_gas(self, data):
        require_fields(data, 'contract', 'methodName')
        contract = data['contract']
        if contract not in CONTRACTS:
            by_address = {a.lower(): name for name, a in self.backend.addresses.items()}
            contract = by_address.get(str(contract).lower())
            if contract is None:
                raise InvalidInput('Invalid contract address', contract=data['contract'])
        parameters = data.get('parameters') or []
        if not isinstance(parameters, list):
            raise InvalidInput('Parameters must be a list')

        gas_limit, estimated = self.tracker.estimate_gas(contract, data['methodName'], *parameters)
        fees = self.backend.get_fee_data()
        price = fees['maxFeePerGas'] or fees['gasPrice']
        return {
            'success': True,
            'gasEstimate': {
                'gasLimit': gas_limit,
                'estimated': estimated,
                'gasPrice': fees['gasPrice'],
                'maxFeePerGas': fees['maxFeePerGas'],
                'maxPriorityFeePerGas': fees['maxPriorityFeePerGas'],
                'estimatedCostWei': gas_limit * price,
                'estimatedCostEth': str(Web3.from_wei(gas_limit * price, 'ether')),
            },
        }

    def network_info(self):
        connected = self.backend.is_connected()
        network = {'chainId': None, 'blockNumber': None, 'isConnected': connected}
        wallet = {'address': self.backend.signer, 'balance': None}
        if connected:
            network['chainId'] = str(self.backend.chain_id)
            network['blockNumber'] = self.backend.get_block_number()
            wallet['balance'] = str(Web3.from_wei(self.backend.get_balance(), 'ether'))
        return {
            'success': True,
            'network': network,
            'wallet': wallet,
            'contracts': self.backend.addresses,
        }

    def transaction_status(self, tx_hash):
        tx_hash = validate_tx_hash(tx_hash)
        record, outcome = self.tracker.refresh(tx_hash)
        tx = self.backend.get_transaction(tx_hash)
        if tx is None and outcome.receipt is None and record is None:
            raise TransactionNotFound(tx_hash=tx_hash)

        receipt = outcome.receipt
        if receipt is None:
            status = 'pending'
        elif not receipt.succeeded:
            status = 'failed'
        else:
            status = 'success'
        confirmations = 0
        if receipt is not None:
            confirmations = max(self.backend.get_block_number() - receipt.block_number, 0)

        messages = {
            'success': 'Transaction completed successfully',
            'failed': 'Transaction failed',
            'pending': 'Transaction is still pending',
        }
        return {
            'success': True,
            'transaction': {
                'hash': tx_hash,
                'status': status,
                'blockNumber': receipt.block_number if receipt else None,
                'confirmations': confirmations,
                'confirmed': outcome.confirmed,
                'gasUsed': str(receipt.gas_used) if receipt else None,
                'revertReason': receipt.revert_reason if receipt else None,
                'from': tx['from'] if tx else None,
                'to': tx['to'] if tx else None,
            },
            'tracked': record.to_dict() if record else None,
            'message': messages[status],
            'explorerUrl': self.explorer_url(tx_hash),
        }
