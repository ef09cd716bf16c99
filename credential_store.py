"""Read-optimised shadow of on-chain credential and institution state.

Nothing read from here decides validity. Rows are written when a
transaction is submitted (``pending``) and upgraded only when the chain
confirms; whenever a chain view is available it overwrites what is stored.
"""
import logging
from datetime import datetime, timezone

from sqlalchemy import func

from models import CredentialRecord, InstitutionRecord, db, utcnow
from validation import validate_address

logger = logging.getLogger(__name__)

PENDING = 'pending'
ISSUED = 'issued'
REVOKED = 'revoked'
FAILED = 'failed'
STATUSES = (PENDING, ISSUED, REVOKED, FAILED)


def from_timestamp(value):
    if not value:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc).replace(tzinfo=None)


class CredentialRecordStore:

    def __init__(self, session=None):
        self.session = session or db.session

    # -- credentials --------------------------------------------------------

    def add_pending(self, transaction_hash, issuer_address, issuer_name, recipient_address,
                    credential_data, ipfs_hash=None, image_url=None, expiry_date=0,
                    recipient_name=None):
        record = CredentialRecord(
            issuer_address=validate_address(issuer_address, 'issuer address'),
            issuer_name=issuer_name,
            recipient_address=validate_address(recipient_address, 'recipient address'),
            recipient_name=recipient_name,
            title=credential_data['title'],
            description=credential_data.get('description'),
            credential_type=credential_data['credentialType'],
            subject=credential_data.get('subject'),
            grade=credential_data.get('grade'),
            gpa=credential_data.get('gpa'),
            credits=credential_data.get('credits'),
            skills=list(credential_data.get('skills') or []),
            ipfs_hash=ipfs_hash,
            image_url=image_url or credential_data.get('imageUrl'),
            transaction_hash=transaction_hash,
            expiry_date=from_timestamp(expiry_date),
            status=PENDING,
        )
        self.session.add(record)
        return record

    def upsert_credential(self, token_id, **fields):
        record = self.find_by_token_id(token_id)
        if record is None:
            record = CredentialRecord(token_id=token_id)
            self.session.add(record)
        for key, value in fields.items():
            setattr(record, key, value)
        return record

    def find_by_token_id(self, token_id):
        return CredentialRecord.query.filter_by(token_id=token_id).first()

    def find_by_transaction(self, transaction_hash):
        return (CredentialRecord.query
                .filter_by(transaction_hash=transaction_hash)
                .order_by(CredentialRecord.id)
                .all())

    def find_by_recipient(self, address, status=None):
        query = CredentialRecord.query.filter_by(
            recipient_address=validate_address(address, 'wallet address'))
        if status:
            query = query.filter_by(status=status)
        return query.order_by(CredentialRecord.created_at.desc(), CredentialRecord.id.desc()).all()

    def find_by_issuer(self, address, status=None, page=1, limit=10):
        """Returns (records on the page, total matching)."""
        query = CredentialRecord.query.filter_by(
            issuer_address=validate_address(address, 'issuer address'))
        if status:
            query = query.filter_by(status=status)
        total = query.count()
        records = (query
                   .order_by(CredentialRecord.created_at.desc(), CredentialRecord.id.desc())
                   .offset((page - 1) * limit)
                   .limit(limit)
                   .all())
        return records, total

    def confirm_issued(self, transaction_hash, token_ids, block_number=None, gas_used=None,
                       verification_url_for=None):
        """Attach minted token ids, in log order, to the rows of one transaction."""
        records = [r for r in self.find_by_transaction(transaction_hash) if r.status == PENDING]
        if len(records) != len(token_ids):
            logger.warning('transaction %s minted %d tokens but %d rows are pending',
                           transaction_hash, len(token_ids), len(records))
        for record, token_id in zip(records, token_ids):
            record.token_id = token_id
            record.status = ISSUED
            record.block_number = block_number
            record.gas_used = str(gas_used) if gas_used is not None else None
            record.issue_date = record.issue_date or utcnow()
            if verification_url_for is not None:
                record.verification_url = verification_url_for(token_id)
        return records

    def mark_failed(self, transaction_hash, reason=None):
        records = [r for r in self.find_by_transaction(transaction_hash) if r.status == PENDING]
        for record in records:
            record.status = FAILED
        if records:
            logger.info('marked %d credential rows failed for %s: %s',
                        len(records), transaction_hash, reason)
        return records

    def increment_verification_count(self, token_id):
        updated = (CredentialRecord.query
                   .filter_by(token_id=token_id)
                   .update({
                       CredentialRecord.verification_count: CredentialRecord.verification_count + 1,
                       CredentialRecord.last_verified_at: utcnow(),
                   }, synchronize_session='fetch'))
        return updated > 0

    def mark_revoked(self, token_id, reason=None, revoked_at=None):
        record = self.find_by_token_id(token_id)
        if record is None:
            return None
        record.status = REVOKED
        record.revocation_reason = reason if reason is not None else record.revocation_reason
        record.revoked_at = record.revoked_at or revoked_at or utcnow()
        return record

    def upsert_from_chain(self, credential, verification_url=None):
        if self.find_by_token_id(credential.token_id) is None:
            self.upsert_credential(
                credential.token_id,
                issuer_address=credential.issuer,
                issuer_name=credential.institution_name,
                recipient_address=credential.recipient,
                title=f'{credential.credential_type.value} #{credential.token_id}',
                credential_type=credential.credential_type.value,
                ipfs_hash=credential.ipfs_hash,
                verification_url=verification_url,
                status=ISSUED,
            )
            self.session.flush()
        return self.apply_chain_view(credential)

    def apply_chain_view(self, credential):
        """Overwrite shadow fields with a ledger ``Credential``; the chain wins."""
        record = self.find_by_token_id(credential.token_id)
        if record is None:
            return None
        record.recipient_address = credential.recipient
        record.credential_type = credential.credential_type.value
        record.issue_date = from_timestamp(credential.issue_date) or record.issue_date
        record.expiry_date = from_timestamp(credential.expiry_date)
        record.ipfs_hash = credential.ipfs_hash or record.ipfs_hash
        if credential.revoked and record.status != REVOKED:
            self.mark_revoked(credential.token_id)
        elif not credential.revoked and record.status in (REVOKED, PENDING, FAILED):
            record.status = ISSUED
            record.revoked_at = None
        return record

    # -- statistics ---------------------------------------------------------

    def issuer_stats(self, address):
        rows = (self.session.query(CredentialRecord.status,
                                 func.count(CredentialRecord.id),
                                 func.coalesce(func.sum(CredentialRecord.verification_count), 0))
                .filter(CredentialRecord.issuer_address == validate_address(address, 'issuer address'))
                .group_by(CredentialRecord.status)
                .all())
        return {status: {'count': count, 'totalVerifications': int(total)}
                for status, count, total in rows}

    def recipient_stats(self, address):
        rows = (self.session.query(CredentialRecord.credential_type, func.count(CredentialRecord.id))
                .filter(CredentialRecord.recipient_address == validate_address(address, 'wallet address'))
                .group_by(CredentialRecord.credential_type)
                .all())
        return dict(rows)

    def verification_stats(self, top=5):
        total_credentials = CredentialRecord.query.filter(
            CredentialRecord.token_id.isnot(None)).count()
        total_verifications = self.session.query(
            func.coalesce(func.sum(CredentialRecord.verification_count), 0)).scalar()
        most_verified = (CredentialRecord.query
                         .filter(CredentialRecord.verification_count > 0)
                         .order_by(CredentialRecord.verification_count.desc())
                         .limit(top)
                         .all())
        by_status = dict(self.session.query(CredentialRecord.status, func.count(CredentialRecord.id))
                         .group_by(CredentialRecord.status).all())
        return {
            'totalCredentials': total_credentials,
            'totalVerifications': int(total_verifications or 0),
            'byStatus': by_status,
            'mostVerified': [
                {'tokenId': r.token_id, 'title': r.title, 'verificationCount': r.verification_count}
                for r in most_verified
            ],
        }

    # -- institutions -------------------------------------------------------

    def find_institution(self, address):
        return InstitutionRecord.query.filter_by(
            address=validate_address(address, 'institution address')).first()

    def upsert_institution(self, address, **fields):
        record = self.find_institution(address)
        if record is None:
            record = InstitutionRecord(address=validate_address(address, 'institution address'),
                                       name=fields.get('name') or '')
            self.session.add(record)
        for key, value in fields.items():
            if value is not None:
                setattr(record, key, value)
        return record

    def commit(self):
        self.session.commit()
