"""
Flask API server for CA Graph - serves collected graph data via REST endpoints
"""

# Standard library imports
import json
import os
import sys
from pathlib import Path

# Third-party imports
from flask import Flask, jsonify, request
from flask_cors import CORS
import jwt

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

# Local application imports
from caGraph.collection_config import CollectionConfig
from caGraph.graph.api_client import GraphAPIClient
from caGraph.main import run_collection
from caGraph.reports.graph_builder import GRAPH_SCHEMA_VERSION
from caGraph.reports.writer import COLLECTION_FILENAME, GRAPH_FILENAME, decode_token_metadata

app = Flask(__name__)
CORS(app)


def get_output_dir() -> Path:
    """Directory holding the collection outputs (app config wins over CA_GRAPH_OUTPUT_DIR)."""
    return Path(app.config.get('OUTPUT_DIR') or os.environ.get('CA_GRAPH_OUTPUT_DIR', 'output'))


def _load_output(filename: str):
    path = get_output_dir() / filename
    if not path.exists():
        return None
    with open(path, 'r', encoding='utf-8') as f:
        return json.load(f)


# API Routes

@app.route('/api/health', methods=['GET'])
def health():
    """Liveness probe"""
    return jsonify({
        'status': 'ok',
        'schemaVersion': GRAPH_SCHEMA_VERSION,
        'graphAvailable': (get_output_dir() / GRAPH_FILENAME).exists(),
    })


@app.route('/api/graph', methods=['GET'])
def get_graph():
    """Get the latest graph document"""
    try:
        graph = _load_output(GRAPH_FILENAME)
    except json.JSONDecodeError as e:
        return jsonify({'error': f'Graph file is corrupted: {e}'}), 500

    if graph is None:
        return jsonify({'error': 'No graph available. Run a collection first.'}), 404
    return jsonify(graph)


@app.route('/api/policies', methods=['GET'])
def get_policies():
    """Get the resolved policies of the latest collection, optionally filtered by ?state="""
    try:
        collection = _load_output(COLLECTION_FILENAME)
    except json.JSONDecodeError as e:
        return jsonify({'error': f'Collection file is corrupted: {e}'}), 500

    if collection is None:
        return jsonify({'error': 'No collection available. Run a collection first.'}), 404

    policies = collection.get('policies', [])
    state = request.args.get('state')
    if state:
        policies = [p for p in policies if p.get('state') == state]

    return jsonify({'metadata': collection.get('metadata', {}), 'policies': policies})


@app.route('/api/collect', methods=['POST'])
def collect():
    """Run a collection with the given token and settings, and return its summary."""
    data = request.get_json(silent=True) or {}
    token = data.get('token')

    if not token:
        return jsonify({'success': False, 'error': 'No token provided'}), 400

    config = CollectionConfig(data.get('config') or {}).merge({'output_dir': str(get_output_dir())})
    is_valid, errors = config.validate()
    if not is_valid:
        return jsonify({'success': False, 'error': 'Invalid configuration', 'details': errors}), 400

    logs = []

    def progress_callback(percent, message: str):
        if message:
            logs.append({'percent': percent, 'message': message})

    result = run_collection(token, config, progress_callback=progress_callback, verbose=False)
    result['logs'] = logs

    if not result['success']:
        status = 401 if result['error'].startswith('Invalid token') else 500
        return jsonify(result), status
    return jsonify(result)


@app.route('/api/validate-token', methods=['POST'])
def validate_token():
    """Validate a Microsoft Graph access token."""
    data = request.get_json(silent=True) or {}
    token = data.get('token')

    if not token:
        return jsonify({'valid': False, 'error': 'No token provided'}), 400

    client = GraphAPIClient(token)
    is_valid, error_msg = client.validate_token()

    if is_valid:
        return jsonify({'valid': True, **decode_token_metadata(token)})
    return jsonify({'valid': False, 'error': error_msg}), 401


@app.route('/api/extract-tenant-id', methods=['POST'])
def extract_tenant_id():
    """Extract tenant ID from JWT token without full validation."""
    data = request.get_json(silent=True) or {}
    token = data.get('token')

    if not token:
        return jsonify({'tenant_id': None, 'error': 'No token provided'}), 400

    try:
        # Decode without verification to extract tenant ID
        decoded = jwt.decode(token, options={"verify_signature": False})
    except jwt.exceptions.PyJWTError as e:
        return jsonify({'tenant_id': None, 'error': f'Failed to decode token: {str(e)}'}), 400

    tenant_id = decoded.get('tid')
    if tenant_id:
        return jsonify({'tenant_id': tenant_id})
    return jsonify({'tenant_id': None, 'error': 'No tenant ID found in token'}), 400


def main():
    """Main entry point for the API server"""
    port = int(os.environ.get('PORT', 5000))
    debug = os.environ.get('DEBUG', 'false').lower() == 'true'

    print(f"\n{'='*60}")
    print("CA Graph API Server")
    print(f"{'='*60}")
    print(f"Serving outputs from: {get_output_dir().resolve()}")

    app.run(host='0.0.0.0', port=port, debug=debug)


if __name__ == '__main__':
    main()
