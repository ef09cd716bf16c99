"""Pytest fixtures for the credential service tests."""
import itertools

import pytest

from app import create_app
from config import TestingConfig
from contract_base import CallContext
from credential_ledger import CredentialLedger
from institution_registry import InstitutionRegistry
from ipfs import LocalMetadataStorage
from local_chain import DEFAULT_DEPLOYER, LocalChain
from models import db
from verification_aggregator import VerificationAggregator

OWNER = DEFAULT_DEPLOYER
ADMIN = '0x70997970C51812dc3A010C7d01b50e0d17dc79C8'
UNI_A = '0x3C44CdDdB6a900fa2b585dd299e03d12FA4293BC'
UNI_B = '0x90F79bf6EB2c4f870365E785982E1f101E93b906'
STUDENT = '0x15d34AAf54267DB7D7c367839AAf71A00a2C6A65'
STUDENT_2 = '0x9965507D1a55bcC2695C58ba16FB37d819B0A4dc'
STRANGER = '0x976EA74026E726554dB657fA54763abd0C3a0aa9'


class Clock:
    """Settable block clock."""

    def __init__(self, now=1_700_000_000):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def ctx(clock):
    """Build CallContexts for direct contract calls: ctx(sender)."""
    blocks = itertools.count(1)

    def make(sender):
        return CallContext(sender=sender, timestamp=clock(), block_number=next(blocks))

    return make


@pytest.fixture
def registry():
    return InstitutionRegistry(OWNER)


@pytest.fixture
def ledger(registry):
    return CredentialLedger(registry)


@pytest.fixture
def aggregator(ledger, registry):
    return VerificationAggregator(ledger, registry)


def authorize(registry, ctx, address, name='Test University'):
    registry.register_institution(ctx(OWNER), address, name, 'https://uni.example', 'ops@uni.example', 'QmDocs')
    registry.verify_institution(ctx(OWNER), address)


@pytest.fixture
def chain(clock):
    return LocalChain(clock=clock)


# =============================================================================
# Application fixtures
# =============================================================================


@pytest.fixture
def app_chain(clock):
    return LocalChain(chain_id=TestingConfig.CHAIN_ID, clock=clock)


@pytest.fixture
def app(app_chain):
    app = create_app(TestingConfig, backend=app_chain, storage=LocalMetadataStorage())
    with app.app_context():
        yield app
        db.session.remove()
        db.drop_all()
    app.extensions['credentials'].tracker.shutdown()


@pytest.fixture
def services(app):
    return app.extensions['credentials']


@pytest.fixture
def client(app):
    return app.test_client()


def identity(wallet, user_type='institution', name='', is_admin=False):
    headers = {'X-Wallet-Address': wallet, 'X-User-Type': user_type}
    if name:
        headers['X-User-Name'] = name
    if is_admin:
        headers['X-Is-Admin'] = 'true'
    return headers


@pytest.fixture
def issuer_headers():
    """The server key, authorized at startup as the local issuer."""
    return identity(OWNER, name='Credential Service')


@pytest.fixture
def admin_headers():
    return identity(OWNER, is_admin=True)


def credential_payload(recipient=STUDENT, title='BSc Computer Science', credential_type='Degree', **extra):
    payload = {
        'recipientAddress': recipient,
        'recipientName': 'Ada Student',
        'credentialData': {
            'title': title,
            'description': 'Bachelor of Science',
            'credentialType': credential_type,
            'subject': 'Computer Science',
            'grade': 'First',
            'gpa': 3.8,
            'credits': 180,
            'skills': ['python', 'distributed systems'],
        },
    }
    payload.update(extra)
    return payload
