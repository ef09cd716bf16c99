"""Content-addressed storage for credential metadata.

Metadata is pinned before any mint is submitted; a pinning failure raises
MetadataStorageError and the mint never reaches the chain.
"""
import hashlib
import json
import logging
from datetime import datetime, timezone

import requests

from errors import MetadataStorageError

logger = logging.getLogger(__name__)


def build_metadata(credential_data, issuer_name, image_url=None, issued_at=None):
    """ERC-721 metadata JSON for one credential."""
    issued_at = issued_at or datetime.now(timezone.utc)
    metadata = {
        'name': credential_data['title'],
        'description': credential_data.get('description') or '',
        'image': image_url or credential_data.get('imageUrl') or '',
        'attributes': [
            {'trait_type': 'Credential Type', 'value': credential_data['credentialType']},
            {'trait_type': 'Subject', 'value': credential_data.get('subject') or ''},
            {'trait_type': 'Issuer', 'value': issuer_name},
            {'trait_type': 'Issue Date', 'value': issued_at.isoformat()},
        ],
    }
    if credential_data.get('grade'):
        metadata['attributes'].append({'trait_type': 'Grade', 'value': credential_data['grade']})
    if credential_data.get('gpa'):
        metadata['attributes'].append({'trait_type': 'GPA', 'value': str(credential_data['gpa'])})
    if credential_data.get('skills'):
        metadata['attributes'].append(
            {'trait_type': 'Skills', 'value': ', '.join(credential_data['skills'])})
    return metadata


class PinataStorage:

    def __init__(self, jwt, api_url='https://api.pinata.cloud',
                 gateway_url='https://gateway.pinata.cloud/ipfs/', timeout=30):
        self.jwt = jwt
        self.api_url = api_url.rstrip('/')
        self.gateway_url = gateway_url if gateway_url.endswith('/') else gateway_url + '/'
        self.timeout = timeout

    def store(self, metadata):
        headers = {
            'Authorization': f'Bearer {self.jwt}',
            'Content-Type': 'application/json',
        }
        try:
            response = requests.post(
                f'{self.api_url}/pinning/pinJSONToIPFS',
                json=metadata,
                headers=headers,
                timeout=self.timeout,
            )
        except requests.exceptions.RequestException as e:
            logger.error('Metadata upload failed: %s', e)
            raise MetadataStorageError(str(e))

        if not response.ok:
            logger.error('Metadata upload failed: %s', response.text)
            raise MetadataStorageError(status=response.status_code)

        ipfs_hash = response.json()['IpfsHash']
        logger.info('Metadata IPFS Hash: %s', ipfs_hash)
        return ipfs_hash

    def resolve(self, ipfs_hash):
        return f'{self.gateway_url}{ipfs_hash}'

    def fetch(self, ipfs_hash):
        try:
            response = requests.get(self.resolve(ipfs_hash), timeout=self.timeout)
        except requests.exceptions.RequestException as e:
            raise MetadataStorageError(f'Failed to retrieve metadata: {e}', ipfs_hash=ipfs_hash)
        if not response.ok:
            raise MetadataStorageError('Failed to retrieve metadata', ipfs_hash=ipfs_hash,
                                       status=response.status_code)
        return response.json()


class LocalMetadataStorage:
    """In-memory store for development against the in-process chain."""

    def __init__(self, gateway_url='https://gateway.pinata.cloud/ipfs/'):
        self.gateway_url = gateway_url if gateway_url.endswith('/') else gateway_url + '/'
        self.documents = {}

    def store(self, metadata):
        payload = json.dumps(metadata, sort_keys=True).encode()
        ipfs_hash = 'local-' + hashlib.sha256(payload).hexdigest()[:46]
        self.documents[ipfs_hash] = metadata
        return ipfs_hash

    def resolve(self, ipfs_hash):
        return f'{self.gateway_url}{ipfs_hash}'

    def fetch(self, ipfs_hash):
        try:
            return self.documents[ipfs_hash]
        except KeyError:
            raise MetadataStorageError('Failed to retrieve metadata', ipfs_hash=ipfs_hash)


def create_storage(config):
    if config.get('PINATA_JWT'):
        return PinataStorage(
            config['PINATA_JWT'],
            api_url=config.get('PINATA_API_URL', 'https://api.pinata.cloud'),
            gateway_url=config.get('IPFS_GATEWAY_URL', 'https://gateway.pinata.cloud/ipfs/'),
        )
    logger.warning('PINATA_JWT not set, keeping credential metadata in memory')
    return LocalMetadataStorage(config.get('IPFS_GATEWAY_URL', 'https://gateway.pinata.cloud/ipfs/'))
