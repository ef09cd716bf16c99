import os

BASE_DIR = os.path.dirname(os.path.abspath(__file__))


def _bool(value):
    return str(value).lower() in ('1', 'true', 'yes')


class Config:
    DEBUG = _bool(os.getenv('FLASK_DEBUG', 'False'))
    TESTING = False

    # Database
    db_path = os.path.join(BASE_DIR, 'instance', 'credentials.db')
    SQLALCHEMY_DATABASE_URI = os.getenv('DATABASE_URL', f'sqlite:///{db_path}')
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Chain
    CHAIN_BACKEND = os.getenv('CHAIN_BACKEND', 'web3')
    RPC_URL = os.getenv('RPC_URL', 'http://127.0.0.1:8545')
    CHAIN_ID = int(os.getenv('CHAIN_ID')) if os.getenv('CHAIN_ID') else None
    ADMIN_PRIVATE_KEY = os.getenv('ADMIN_PRIVATE_KEY')
    CREDENTIAL_NFT_ADDRESS = os.getenv('CREDENTIAL_NFT_ADDRESS')
    CREDENTIAL_REGISTRY_ADDRESS = os.getenv('CREDENTIAL_REGISTRY_ADDRESS')
    VERIFICATION_CONTRACT_ADDRESS = os.getenv('VERIFICATION_CONTRACT_ADDRESS')
    ABI_DIR = os.getenv('ABI_DIR', os.path.join(BASE_DIR, 'abi'))

    # Transaction lifecycle
    CONFIRMATION_BLOCKS = int(os.getenv('CONFIRMATION_BLOCKS', 2))
    CONFIRMATION_TIMEOUT = float(os.getenv('CONFIRMATION_TIMEOUT', 60))
    POLL_INTERVAL = float(os.getenv('POLL_INTERVAL', 10))
    DEFAULT_GAS_LIMIT = int(os.getenv('DEFAULT_GAS_LIMIT', 500000))
    TX_WORKERS = int(os.getenv('TX_WORKERS', 4))

    # Metadata storage (Pinata)
    PINATA_JWT = os.getenv('PINATA_JWT')
    PINATA_API_URL = os.getenv('PINATA_API_URL', 'https://api.pinata.cloud')
    IPFS_GATEWAY_URL = os.getenv('IPFS_GATEWAY_URL', 'https://gateway.pinata.cloud/ipfs/')

    FRONTEND_URL = os.getenv('FRONTEND_URL', 'http://localhost:3000')
    EXPLORER_TX_URL = os.getenv('EXPLORER_TX_URL', 'https://etherscan.io/tx/')

    MAX_BATCH_VERIFY = int(os.getenv('MAX_BATCH_VERIFY', 50))
    RECORD_VERIFICATIONS_ON_CHAIN = _bool(os.getenv('RECORD_VERIFICATIONS_ON_CHAIN', 'False'))


class TestingConfig(Config):
    TESTING = True
    DEBUG = True
    SQLALCHEMY_DATABASE_URI = 'sqlite:///:memory:'
    CHAIN_BACKEND = 'local'
    CHAIN_ID = 31337
    CONFIRMATION_BLOCKS = 0
    CONFIRMATION_TIMEOUT = 2
    POLL_INTERVAL = 0.01
    TX_WORKERS = 2
    PINATA_JWT = None
