from datetime import datetime, timezone

from flask_sqlalchemy import SQLAlchemy

from errors import InvalidTransition

db = SQLAlchemy()


def utcnow():
    # sqlite stores naive datetimes; everything here is UTC
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _iso(value):
    return value.isoformat() if value else None


class CredentialRecord(db.Model):
    """Off-chain mirror of an issued credential. Never authoritative for validity."""
    __tablename__ = 'credentials'

    id = db.Column(db.Integer, primary_key=True)
    # null until the issuing transaction is confirmed and the token id is known
    token_id = db.Column(db.Integer, unique=True, index=True)
    issuer_address = db.Column(db.String(42), nullable=False, index=True)
    issuer_name = db.Column(db.String(200), nullable=False)
    recipient_address = db.Column(db.String(42), nullable=False, index=True)
    recipient_name = db.Column(db.String(200))

    title = db.Column(db.String(200), nullable=False)
    description = db.Column(db.String(1000))
    credential_type = db.Column(db.String(20), nullable=False)
    subject = db.Column(db.String(200))
    grade = db.Column(db.String(50))
    gpa = db.Column(db.Float)
    credits = db.Column(db.Integer)
    skills = db.Column(db.JSON, default=list)

    ipfs_hash = db.Column(db.String(100))
    image_url = db.Column(db.String(300))
    verification_url = db.Column(db.String(300))

    transaction_hash = db.Column(db.String(66), index=True)
    block_number = db.Column(db.Integer)
    gas_used = db.Column(db.String(32))
    issue_date = db.Column(db.DateTime)
    expiry_date = db.Column(db.DateTime)

    status = db.Column(db.String(20), default='pending', index=True)  # pending, issued, revoked, failed
    verification_count = db.Column(db.Integer, default=0, nullable=False)
    last_verified_at = db.Column(db.DateTime)
    revocation_reason = db.Column(db.String(500))
    revoked_at = db.Column(db.DateTime)

    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    def to_dict(self):
        return {
            'tokenId': self.token_id,
            'issuer': {'address': self.issuer_address, 'name': self.issuer_name},
            'recipient': {'address': self.recipient_address, 'name': self.recipient_name},
            'credentialData': {
                'title': self.title,
                'description': self.description,
                'credentialType': self.credential_type,
                'subject': self.subject,
                'grade': self.grade,
                'gpa': self.gpa,
                'credits': self.credits,
                'skills': self.skills or [],
            },
            'metadata': {
                'ipfsHash': self.ipfs_hash,
                'imageUrl': self.image_url,
                'verificationUrl': self.verification_url,
            },
            'blockchain': {
                'transactionHash': self.transaction_hash,
                'blockNumber': self.block_number,
                'gasUsed': self.gas_used,
                'issueDate': _iso(self.issue_date),
                'expiryDate': _iso(self.expiry_date),
            },
            'status': self.status,
            'verificationCount': self.verification_count,
            'lastVerifiedAt': _iso(self.last_verified_at),
            'revocationReason': self.revocation_reason,
            'revokedAt': _iso(self.revoked_at),
            'createdAt': _iso(self.created_at),
        }


class InstitutionRecord(db.Model):
    """Off-chain mirror of an institution's on-chain registration state."""
    __tablename__ = 'institutions'

    id = db.Column(db.Integer, primary_key=True)
    address = db.Column(db.String(42), unique=True, nullable=False)
    name = db.Column(db.String(200), nullable=False)
    website = db.Column(db.String(300))
    email = db.Column(db.String(200))
    document_hash = db.Column(db.String(100))

    is_registered = db.Column(db.Boolean, default=False, nullable=False)
    is_verified = db.Column(db.Boolean, default=False, nullable=False)
    status = db.Column(db.String(20), default='unregistered')  # unregistered, pending, registered, verified, revoked
    registration_tx_hash = db.Column(db.String(66))
    verification_tx_hash = db.Column(db.String(66))
    revocation_tx_hash = db.Column(db.String(66))
    block_number = db.Column(db.Integer)

    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    def to_dict(self):
        return {
            'address': self.address,
            'name': self.name,
            'website': self.website,
            'email': self.email,
            'documentHash': self.document_hash,
            'isRegistered': self.is_registered,
            'isVerified': self.is_verified,
            'status': self.status,
            'registrationTxHash': self.registration_tx_hash,
            'verificationTxHash': self.verification_tx_hash,
            'revocationTxHash': self.revocation_tx_hash,
            'blockNumber': self.block_number,
            'updatedAt': _iso(self.updated_at),
        }


class PendingTransaction(db.Model):
    __tablename__ = 'pending_transactions'

    SUBMITTED = 'submitted'
    CONFIRMED = 'confirmed'
    FAILED = 'failed'
    TIMED_OUT = 'timed_out'
    TERMINAL = (CONFIRMED, FAILED, TIMED_OUT)

    id = db.Column(db.Integer, primary_key=True)
    tx_hash = db.Column(db.String(66), unique=True, nullable=False)
    # register_institution, verify_institution, revoke_institution, issue, batch_issue, revoke, verify
    kind = db.Column(db.String(30), nullable=False)
    subject = db.Column(db.String(100))
    sender = db.Column(db.String(42))
    nonce = db.Column(db.Integer)
    submitted_at = db.Column(db.DateTime, default=utcnow)
    deadline = db.Column(db.DateTime)
    status = db.Column(db.String(20), default=SUBMITTED, nullable=False)
    resolved_at = db.Column(db.DateTime)
    error = db.Column(db.String(500))

    # what the chain said last, which may arrive after the wait timed out
    chain_status = db.Column(db.String(20))
    block_number = db.Column(db.Integer)
    gas_used = db.Column(db.Integer)
    reconciled = db.Column(db.Boolean, default=False, nullable=False)

    def resolve(self, status, error=None):
        """Move out of ``submitted``; terminal states never change again."""
        if status not in self.TERMINAL:
            raise ValueError(f'Not a terminal status: {status}')
        if self.status != self.SUBMITTED:
            raise InvalidTransition(tx_hash=self.tx_hash, status=self.status)
        self.status = status
        self.error = error
        self.resolved_at = utcnow()

    def observe(self, chain_status, block_number=None, gas_used=None):
        self.chain_status = chain_status
        if block_number is not None:
            self.block_number = block_number
        if gas_used is not None:
            self.gas_used = gas_used

    def to_dict(self):
        return {
            'txHash': self.tx_hash,
            'kind': self.kind,
            'subject': self.subject,
            'nonce': self.nonce,
            'status': self.status,
            'chainStatus': self.chain_status,
            'blockNumber': self.block_number,
            'gasUsed': self.gas_used,
            'error': self.error,
            'reconciled': self.reconciled,
            'submittedAt': _iso(self.submitted_at),
            'deadline': _iso(self.deadline),
            'resolvedAt': _iso(self.resolved_at),
        }
