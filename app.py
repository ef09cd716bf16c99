import atexit
import os
from types import SimpleNamespace

from flask import Flask, current_app, g, jsonify, request
from werkzeug.exceptions import HTTPException

from auth import require_admin, require_identity, require_institution
from blockchain import create_backend
from config import Config
from credential_service import CredentialService
from credential_store import CredentialRecordStore
from errors import CredentialError, InvalidInput
from ipfs import create_storage
from models import db
from onboarding import InstitutionOnboarding
from transaction_tracker import TransactionLifecycleManager
from validation import require_fields, validate_address

LOCAL_ISSUER_NAME = 'Credential Service'


def services():
    return current_app.extensions['credentials']


def json_body():
    if not request.is_json:
        raise InvalidInput('Missing JSON data')
    return request.get_json(silent=True) or {}


def create_app(config_object=None, backend=None, storage=None):
    app = Flask(__name__)
    app.config.from_object(config_object or Config)

    if app.config['SQLALCHEMY_DATABASE_URI'].startswith('sqlite:///') and ':memory:' not in app.config['SQLALCHEMY_DATABASE_URI']:
        os.makedirs(os.path.join(os.path.dirname(os.path.abspath(__file__)), 'instance'), exist_ok=True)
    db.init_app(app)

    backend = backend or create_backend(app.config)
    tracker = TransactionLifecycleManager.from_config(backend, app.config)
    store = CredentialRecordStore()
    storage = storage or create_storage(app.config)
    app.extensions['credentials'] = SimpleNamespace(
        backend=backend,
        tracker=tracker,
        store=store,
        storage=storage,
        onboarding=InstitutionOnboarding(backend, tracker, store),
        credentials=CredentialService.from_config(backend, tracker, store, storage, app.config),
    )
    atexit.register(tracker.shutdown, wait=False)

    with app.app_context():
        db.create_all()
        if app.config.get('CHAIN_BACKEND') == 'local':
            # the server key signs every mint, so it must be an authorized issuer
            result = services().onboarding.onboard(backend.signer, LOCAL_ISSUER_NAME)
            app.logger.info(f'Local chain issuer {backend.signer}: {result["status"]}')

    register_error_handlers(app)
    register_routes(app)
    return app


def register_error_handlers(app):

    @app.errorhandler(CredentialError)
    def handle_credential_error(e):
        if e.status_code >= 500:
            app.logger.error(f'{request.method} {request.path} failed: {e.kind}: {e.message}')
        else:
            app.logger.info(f'{request.method} {request.path} rejected: {e.kind}: {e.message}')
        return jsonify(e.to_dict(include_details=app.debug)), e.status_code

    @app.errorhandler(Exception)
    def handle_unexpected(e):
        if isinstance(e, HTTPException):
            return jsonify({'success': False, 'error': e.description, 'kind': 'http'}), e.code
        app.logger.exception(f'Unhandled error on {request.method} {request.path}')
        body = {'success': False, 'error': 'Internal server error', 'kind': 'internal'}
        if app.debug:
            body['details'] = str(e)
        return jsonify(body), 500


def register_routes(app):

    @app.route('/api/health')
    def health():
        backend = services().backend
        return jsonify({'success': True, 'chainConnected': backend.is_connected()})

    # -- credentials --------------------------------------------------------

    @app.route('/api/credentials/issue', methods=['POST'])
    @require_institution
    def issue_credential():
        data = json_body()
        app.logger.info(f'Issue request from {g.caller.wallet} for {data.get("recipientAddress")}')
        result = services().credentials.issue(g.caller, data)
        return jsonify(result), 202 if result['status'] == 'pending' else 201

    @app.route('/api/credentials/batch-issue', methods=['POST'])
    @require_institution
    def batch_issue_credentials():
        result = services().credentials.batch_issue(g.caller, json_body())
        return jsonify(result), 202 if result['status'] == 'pending' else 201

    @app.route('/api/credentials/revoke/<token_id>', methods=['POST'])
    @require_institution
    def revoke_credential(token_id):
        data = request.get_json(silent=True) or {}
        result = services().credentials.revoke(g.caller, token_id, data.get('reason'))
        return jsonify(result), 202 if result.get('status') == 'pending' else 200

    @app.route('/api/credentials/verify/<token_id>')
    def verify_credential(token_id):
        return jsonify(services().credentials.verify(token_id))

    @app.route('/api/credentials/details/<token_id>')
    def credential_details(token_id):
        return jsonify(services().credentials.details(token_id))

    @app.route('/api/credentials/user/<wallet_address>')
    def user_credentials(wallet_address):
        return jsonify(services().credentials.user_credentials(wallet_address))

    @app.route('/api/credentials/issued')
    @require_institution
    def issued_credentials():
        return jsonify(services().credentials.issued_credentials(
            g.caller,
            status=request.args.get('status'),
            page=request.args.get('page', 1),
            limit=request.args.get('limit', 10),
        ))

    # -- verification -------------------------------------------------------

    @app.route('/api/verification/verify', methods=['POST'])
    def verify():
        data = json_body()
        require_fields(data, 'tokenId')
        return jsonify(services().credentials.verify(data['tokenId']))

    @app.route('/api/verification/batch-verify', methods=['POST'])
    def batch_verify():
        return jsonify(services().credentials.batch_verify(json_body().get('tokenIds')))

    @app.route('/api/verification/quick/<token_id>')
    def quick_verify(token_id):
        return jsonify(services().credentials.quick_verify(token_id))

    @app.route('/api/verification/issuer/<address>')
    def issuer_authority(address):
        return jsonify(services().credentials.issuer_authority(address))

    @app.route('/api/verification/history/<token_id>')
    def verification_history(token_id):
        return jsonify(services().credentials.history(token_id))

    @app.route('/api/verification/stats')
    def verification_stats():
        return jsonify(services().credentials.stats())

    @app.route('/api/verification/ownership', methods=['POST'])
    def verify_ownership():
        data = json_body()
        require_fields(data, 'tokenId', 'ownerAddress')
        return jsonify(services().credentials.verify_ownership(data['tokenId'], data['ownerAddress']))

    # -- blockchain ---------------------------------------------------------

    @app.route('/api/blockchain/register', methods=['POST'])
    @require_institution
    def register_on_blockchain():
        data = json_body()
        details = data.get('organizationDetails') or {}
        address = g.caller.wallet
        if data.get('address') and g.caller.is_admin:
            address = validate_address(data['address'], 'institution address')
        name = details.get('name') or g.caller.name
        if not name:
            raise InvalidInput('Organization name is required')

        app.logger.info(f'Onboarding institution {address} ({name})')
        result = services().onboarding.onboard(
            address, name,
            website=details.get('website', ''),
            email=details.get('email') or g.caller.email,
            document_hash=details.get('documentHash', ''),
        )
        return jsonify(result), 202 if result['status'] == 'pending' else 200

    @app.route('/api/blockchain/registration-status')
    @require_identity
    def registration_status():
        return jsonify(services().onboarding.registration_status(g.caller.wallet))

    @app.route('/api/blockchain/institutions/<address>/revoke', methods=['POST'])
    @require_admin
    def revoke_institution(address):
        app.logger.info(f'Admin {g.caller.wallet} revoking institution {address}')
        result = services().onboarding.revoke(address)
        return jsonify(result), 202 if result['status'] == 'pending' else 200

    @app.route('/api/blockchain/transaction/<tx_hash>')
    def transaction_status(tx_hash):
        return jsonify(services().credentials.transaction_status(tx_hash))

    @app.route('/api/blockchain/events')
    def contract_events():
        return jsonify(services().credentials.events(
            request.args.get('contractType'),
            event_name=request.args.get('eventName'),
            from_block=request.args.get('fromBlock'),
            to_block=request.args.get('toBlock'),
        ))

    @app.route('/api/blockchain/estimate-gas', methods=['POST'])
    def estimate_gas():
        return jsonify(services().credentials.estimate_gas(json_body()))

    @app.route('/api/blockchain/network')
    def network_info():
        return jsonify(services().credentials.network_info())


if __name__ == '__main__':
    app = create_app()
    # Use environment variables or default to production settings
    debug_mode = os.environ.get('FLASK_DEBUG', 'False').lower() == 'true'
    port = int(os.environ.get('PORT', 5000))
    app.run(host='0.0.0.0', port=port, debug=debug_mode)
