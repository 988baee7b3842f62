"""
api_server.py
~~~~~~~~~~~~~

Flask-based REST API server with WebSocket support for the tinyann engine.

This module provides endpoints for:
- Creating and managing flat-buffer networks
- Training networks on posted samples with real-time progress updates
  via WebSockets
- Running inference and switching activation functions
- Exporting and importing networks in the binary model format
- Persisting networks to/from the SQLite registry

The server uses:
- Flask for REST API endpoints
- Flask-SocketIO for WebSocket communication
- Gevent for async background training tasks
- SQLite for network persistence

Configuration is read from the environment: LOG_LEVEL, FLASK_ENV, PORT,
TINYANN_MODEL_DIR and TINYANN_RETENTION_DAYS.
"""

import os
import sys
import uuid
import logging
from typing import Dict, Any, List, Tuple

import gevent
import gevent.lock
import numpy as np
from flask import Flask, Response, request, jsonify
from flask_cors import CORS
from flask_socketio import SocketIO

from tinyann import model_io
from tinyann.activations import activation_name, get_activation
from tinyann.errors import NetworkError
from tinyann.network import Network
from tinyann.topology import calculate_counts
from tinyann.model_persistence import (
    DEFAULT_MODEL_DIR,
    save_network,
    load_network,
    list_saved_networks,
    delete_network,
    delete_old_networks
)

# ============================================================================
# LOGGING SETUP
# ============================================================================

def configure_logging() -> None:
    """
    Set up logging based on environment.

    - In production: Show fewer logs (less noise) but keep important logs
    - In development: Show more detailed logs for debugging
    """
    log_level_str = os.getenv('LOG_LEVEL', 'INFO').upper()
    log_level = getattr(logging, log_level_str, logging.INFO)
    is_production = os.getenv('FLASK_ENV') == 'production'

    logging.basicConfig(
        level=log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    # In production, silence noisy third-party logs but keep our logs visible
    if is_production:
        for logger_name in ['socketio', 'engineio', 'engineio.server',
                            'socketio.server', 'werkzeug']:
            logging.getLogger(logger_name).setLevel(logging.WARNING)
        logging.getLogger('tinyann').setLevel(logging.INFO)
    else:
        logging.getLogger('socketio').setLevel(logging.INFO)
        logging.getLogger('engineio').setLevel(logging.INFO)


configure_logging()
logger = logging.getLogger(__name__)

# ============================================================================
# FLASK APP SETUP
# ============================================================================

app = Flask(__name__)
CORS(app, resources={r"/*": {"origins": "*"}})

is_production = os.getenv('FLASK_ENV') == 'production'

# SocketIO enables real-time communication (WebSockets) for training updates
socketio = SocketIO(
    app,
    cors_allowed_origins="*",
    async_mode='gevent',
    logger=not is_production,
    engineio_logger=not is_production,
    ping_timeout=60,
    ping_interval=25
)

MODEL_DIR = DEFAULT_MODEL_DIR
RETENTION_DAYS = int(os.getenv('TINYANN_RETENTION_DAYS', '2'))

# ============================================================================
# GLOBAL STATE
# ============================================================================

# Networks currently loaded in memory: {network_id: network_info}
# network_info holds the Network, its training status and a lock that
# guards the network's scratch regions while a job trains it.
active_networks: Dict[str, Dict[str, Any]] = {}

# Training jobs being tracked: {job_id: job_info}
training_jobs: Dict[str, Dict[str, Any]] = {}


def _register_network(
    network_id: str,
    net: Network,
    trained: bool = False,
    accuracy: Any = None
) -> Dict[str, Any]:
    info = {
        'network': net,
        'trained': trained,
        'accuracy': accuracy,
        'lock': gevent.lock.BoundedSemaphore(1)
    }
    active_networks[network_id] = info
    return info


def _describe(network_id: str, info: Dict[str, Any]) -> Dict[str, Any]:
    """JSON-serializable summary of an in-memory network."""
    net = info['network']
    return {
        'network_id': network_id,
        'topology': net.topology,
        'activation': activation_name(net.activation),
        'weight_count': net.weight_count,
        'neuron_count': net.neuron_count,
        'trained': info['trained'],
        'accuracy': info['accuracy']
    }


def reload_saved_networks() -> None:
    """
    Reload all saved networks from the database into memory.

    Called at startup to restore networks that were saved before the
    application was restarted.
    """
    saved_networks = list_saved_networks(MODEL_DIR)

    if not saved_networks:
        logger.info("No saved networks to reload")
        return

    loaded_count = 0
    for net_info in saved_networks:
        network_id = net_info['network_id']
        net = load_network(network_id, MODEL_DIR)
        if net is None:
            logger.warning(f"Failed to load network {network_id}")
            continue

        _register_network(network_id, net, net_info['trained'],
                          net_info['accuracy'])
        loaded_count += 1

    logger.info(f"Reloaded {loaded_count} network(s) from database")


# ============================================================================
# BACKGROUND TASKS
# ============================================================================

# Flag to ensure cleanup task only starts once
_cleanup_task_started = False


def cleanup_old_networks_task() -> None:
    """
    Background task that runs immediately, then every 24 hours to:
    - Delete networks older than RETENTION_DAYS from the database
    - Sync in-memory networks with the database
    - Remove completed/failed training jobs from memory
    """
    logger.info("Cleanup task started")

    while True:
        try:
            logger.info("Starting automatic cleanup of old networks...")
            deleted_count = delete_old_networks(
                days=RETENTION_DAYS, model_dir=MODEL_DIR
            )

            if deleted_count > 0:
                logger.info(
                    f"Cleanup completed: deleted {deleted_count} network(s)"
                )
                _sync_with_database()
            elif deleted_count == 0:
                logger.info("Cleanup completed: no old networks found to delete")
            else:
                logger.error("Cleanup returned error code")

            cleanup_finished_training_jobs()

            logger.info("Next cleanup scheduled in 24 hours")
            gevent.sleep(86400)

        except Exception as e:
            logger.exception(f"Error during network cleanup: {e}")
            gevent.sleep(3600)


def _sync_with_database() -> None:
    """Drop in-memory networks that are no longer in the database."""
    saved_ids = {net['network_id'] for net in list_saved_networks(MODEL_DIR)}
    stale_ids = [
        nid for nid, info in active_networks.items()
        if nid not in saved_ids and info['trained']
    ]
    for nid in stale_ids:
        del active_networks[nid]
        logger.info(f"Removed network {nid} from memory (deleted from database)")


def cleanup_finished_training_jobs() -> None:
    """
    Remove completed or failed training jobs from memory.

    Only removes jobs that are no longer active.
    """
    finished_statuses = {'completed', 'failed'}
    jobs_to_remove = [
        job_id for job_id, job_info in training_jobs.items()
        if job_info.get('status') in finished_statuses
    ]

    for job_id in jobs_to_remove:
        del training_jobs[job_id]

    if jobs_to_remove:
        logger.info(f"Cleaned up {len(jobs_to_remove)} finished training job(s)")


def start_cleanup_task() -> None:
    """
    Start the background cleanup task.

    This function is idempotent - calling it multiple times has no effect.
    """
    global _cleanup_task_started

    if _cleanup_task_started:
        logger.debug("Cleanup task already started, skipping")
        return

    _cleanup_task_started = True
    logger.info("Starting cleanup task (runs immediately, then every 24 hours)")
    gevent.spawn(cleanup_old_networks_task)


# ============================================================================
# REQUEST VALIDATION
# ============================================================================

TOPOLOGY_FIELDS = ('input_neurons', 'hidden_layers', 'hidden_neurons',
                   'output_neurons')


def _is_number_list(values: Any) -> bool:
    return isinstance(values, list) and all(
        isinstance(v, (int, float)) and not isinstance(v, bool)
        for v in values
    )


def _parse_samples(
    samples: Any,
    net: Network
) -> Tuple[np.ndarray, np.ndarray]:
    """
    Validate posted training samples against the network's topology.

    Raises:
        ValueError: With a client-facing message if the samples are malformed
    """
    if not isinstance(samples, list) or not samples:
        raise ValueError('samples must be a non-empty list')

    inputs: List[List[float]] = []
    targets: List[List[float]] = []
    for index, sample in enumerate(samples):
        if not isinstance(sample, dict):
            raise ValueError(f'sample {index} must be an object')

        x = sample.get('inputs')
        y = sample.get('targets')
        if not _is_number_list(x) or len(x) != net.input_neurons:
            raise ValueError(
                f'sample {index}: inputs must be {net.input_neurons} numbers'
            )
        if not _is_number_list(y) or len(y) != net.output_neurons:
            raise ValueError(
                f'sample {index}: targets must be {net.output_neurons} numbers'
            )
        inputs.append(x)
        targets.append(y)

    return (np.asarray(inputs, dtype=np.float64),
            np.asarray(targets, dtype=np.float64))


# ============================================================================
# API ENDPOINTS
# ============================================================================

@app.route('/api/status', methods=['GET'])
def get_status():
    """
    Return server status and statistics.

    Counts only training jobs that are pending or in progress.
    """
    active_statuses = ('pending', 'training')
    active_training = sum(
        1 for job in training_jobs.values()
        if job.get('status') in active_statuses
    )

    return jsonify({
        'status': 'online',
        'active_networks': len(active_networks),
        'training_jobs': active_training
    }), 200


@app.route('/api/networks', methods=['POST'])
def create_network():
    """
    Create a new network with randomized weights.

    Request body:
        {
            'input_neurons': 2,
            'hidden_layers': 1,
            'hidden_neurons': 3,
            'output_neurons': 1,
            'activation': 'sigmoid',   # optional
            'seed': 42                 # optional
        }

    Returns:
        JSON with network_id, topology and counts
    """
    data = request.get_json(silent=True) or {}

    topology = {}
    for field in TOPOLOGY_FIELDS:
        value = data.get(field, 0)
        if not isinstance(value, int) or isinstance(value, bool):
            return jsonify({'error': f'{field} must be an integer'}), 400
        topology[field] = value

    seed = data.get('seed')
    if seed is not None and (not isinstance(seed, int) or seed < 0):
        return jsonify({'error': 'seed must be a non-negative integer'}), 400

    try:
        activation = get_activation(data.get('activation', 'sigmoid'))
    except ValueError as e:
        return jsonify({'error': str(e)}), 400

    net = Network(seed=seed, activation=activation)
    error = net.initialize(
        topology['input_neurons'],
        topology['hidden_layers'],
        topology['hidden_neurons'],
        topology['output_neurons']
    )
    if error or not net.is_initialized:
        logger.warning(f"Invalid topology requested: {topology}")
        return jsonify({
            'error': 'Invalid topology',
            'code': error.name if error else 'INVALID_PARAMETERS'
        }), 400

    network_id = str(uuid.uuid4())
    info = _register_network(network_id, net)

    logger.info(f"Created network {network_id} with topology {topology}")

    response = _describe(network_id, info)
    response['status'] = 'created'
    return jsonify(response), 201


@app.route('/api/networks', methods=['GET'])
def list_networks():
    """List all available networks (both in-memory and saved)."""
    in_memory = []
    for nid, info in active_networks.items():
        entry = _describe(nid, info)
        entry['status'] = 'in_memory'
        in_memory.append(entry)

    in_memory_ids = set(active_networks.keys())
    saved_only = []
    for net in list_saved_networks(MODEL_DIR):
        if net['network_id'] not in in_memory_ids:
            net['status'] = 'saved'
            saved_only.append(net)

    logger.debug(
        f"Listing networks: {len(in_memory)} in memory, {len(saved_only)} saved"
    )

    return jsonify({'networks': in_memory + saved_only}), 200


@app.route('/api/networks/<network_id>/inference', methods=['POST'])
def run_inference(network_id: str):
    """
    Run a forward pass.

    Request body:
        {'inputs': [0, 1]}

    Returns:
        JSON with the output activations
    """
    info = active_networks.get(network_id)
    if info is None:
        logger.warning(f"Inference requested for non-existent network: {network_id}")
        return jsonify({'error': 'Network not found'}), 404

    net = info['network']
    inputs = (request.get_json(silent=True) or {}).get('inputs')
    if not _is_number_list(inputs) or len(inputs) != net.input_neurons:
        return jsonify({
            'error': f'inputs must be a list of {net.input_neurons} numbers'
        }), 400

    if not info['lock'].acquire(blocking=False):
        return jsonify({'error': 'Network is busy training'}), 409

    try:
        outputs = [float(value) for value in net.inference(inputs)]
    finally:
        info['lock'].release()

    return jsonify({'network_id': network_id, 'outputs': outputs}), 200


@app.route('/api/networks/<network_id>/activation', methods=['PUT'])
def set_activation(network_id: str):
    """
    Switch the activation function of a network.

    Request body:
        {'activation': 'gaussian'}
    """
    info = active_networks.get(network_id)
    if info is None:
        return jsonify({'error': 'Network not found'}), 404

    name = (request.get_json(silent=True) or {}).get('activation')
    try:
        activation = get_activation(name)
    except ValueError as e:
        return jsonify({'error': str(e)}), 400

    if not info['lock'].acquire(blocking=False):
        return jsonify({'error': 'Network is busy training'}), 409

    try:
        info['network'].activation = activation
    finally:
        info['lock'].release()
    logger.info(f"Network {network_id} now uses activation '{name}'")

    return jsonify(_describe(network_id, info)), 200


@app.route('/api/networks/<network_id>/train', methods=['POST'])
def train_network(network_id: str):
    """
    Start training a network in the background.

    Request body:
        {
            'samples': [{'inputs': [0, 0], 'targets': [1]}, ...],
            'epochs': 3000,          # optional
            'learning_rate': 6.0     # optional
        }

    Returns:
        JSON with job_id, network_id, and status
    """
    info = active_networks.get(network_id)
    if info is None:
        logger.warning(f"Training requested for non-existent network: {network_id}")
        return jsonify({'error': 'Network not found'}), 404

    data = request.get_json(silent=True) or {}
    epochs = data.get('epochs', 3000)
    learning_rate = data.get('learning_rate', 6.0)

    if not isinstance(epochs, int) or isinstance(epochs, bool) or epochs < 1:
        return jsonify({'error': 'epochs must be a positive integer'}), 400
    if not isinstance(learning_rate, (int, float)) or learning_rate <= 0:
        return jsonify({'error': 'learning_rate must be a positive number'}), 400

    try:
        inputs, targets = _parse_samples(data.get('samples'), info['network'])
    except ValueError as e:
        return jsonify({'error': str(e)}), 400

    job_id = str(uuid.uuid4())
    training_jobs[job_id] = {
        'job_id': job_id,
        'network_id': network_id,
        'status': 'pending',
        'progress': 0,
        'epochs': epochs
    }

    logger.info(
        f"Created training job {job_id} for network {network_id}: "
        f"epochs={epochs}, samples={len(inputs)}, lr={learning_rate}"
    )

    socketio.start_background_task(
        train_network_task,
        network_id, job_id, inputs, targets, epochs, float(learning_rate)
    )

    return jsonify({
        'job_id': job_id,
        'network_id': network_id,
        'status': 'training_started'
    }), 202


def train_network_task(
    network_id: str,
    job_id: str,
    inputs: np.ndarray,
    targets: np.ndarray,
    epochs: int,
    learning_rate: float
) -> None:
    """
    Background task that trains a network sample by sample.

    Sends progress updates via WebSocket roughly every 1% of the epochs
    and yields to other greenlets between updates.
    """
    info = active_networks[network_id]
    net = info['network']
    job = training_jobs[job_id]
    report_every = max(1, epochs // 100)

    try:
        logger.info(f"Starting training for job {job_id}")

        with info['lock']:
            job['status'] = 'training'

            for epoch in range(1, epochs + 1):
                for x, y in zip(inputs, targets):
                    net.train(learning_rate, x, y)

                if epoch % report_every == 0 or epoch == epochs:
                    accuracy = net.calculate_accuracy(inputs, targets)
                    job['progress'] = epoch / epochs * 100

                    socketio.emit('training_update', {
                        'job_id': job_id,
                        'network_id': network_id,
                        'epoch': epoch,
                        'total_epochs': epochs,
                        'accuracy': accuracy,
                        'progress': job['progress']
                    })
                    gevent.sleep(0)

            accuracy = net.calculate_accuracy(inputs, targets)

        info['trained'] = True
        info['accuracy'] = accuracy

        job['status'] = 'completed'
        job['accuracy'] = accuracy
        job['progress'] = 100

        save_network(net, network_id, model_dir=MODEL_DIR,
                     trained=True, accuracy=accuracy)

        logger.info(f"Training completed for job {job_id}: accuracy {accuracy:.2%}")

        socketio.emit('training_complete', {
            'job_id': job_id,
            'network_id': network_id,
            'status': 'completed',
            'accuracy': accuracy,
            'progress': 100
        })
        gevent.sleep(0)

    except Exception as e:
        logger.exception(f"Training failed for job {job_id}: {e}")

        job['status'] = 'failed'
        job['error'] = str(e)

        socketio.emit('training_error', {
            'job_id': job_id,
            'network_id': network_id,
            'status': 'failed',
            'error': str(e)
        })
        gevent.sleep(0)


@app.route('/api/training/<job_id>', methods=['GET'])
def get_training_status(job_id: str):
    """Get the current status of a training job."""
    if job_id in training_jobs:
        return jsonify(training_jobs[job_id]), 200

    logger.warning(f"Status requested for non-existent job: {job_id}")
    return jsonify({'error': 'Training job not found'}), 404


@app.route('/api/networks/<network_id>/model', methods=['GET'])
def export_network(network_id: str):
    """Download a network in the binary model format."""
    info = active_networks.get(network_id)
    if info is None:
        return jsonify({'error': 'Network not found'}), 404

    try:
        data = model_io.dumps(info['network'])
    except ValueError as e:
        logger.error(f"Could not export network {network_id}: {e}")
        return jsonify({'error': str(e)}), 500

    return Response(
        data,
        mimetype='application/octet-stream',
        headers={
            'Content-Disposition': f'attachment; filename={network_id}.ann'
        }
    )


@app.route('/api/networks/import', methods=['POST'])
def import_network():
    """
    Create a network from an uploaded binary model.

    The request body is the raw model file. The optional query parameter
    ``activation`` selects the activation function (default sigmoid).
    """
    try:
        activation = get_activation(request.args.get('activation', 'sigmoid'))
    except ValueError as e:
        return jsonify({'error': str(e)}), 400

    net, error = model_io.loads(request.get_data())
    if error:
        logger.warning(f"Rejected model upload: {error.name}")
        return jsonify({'error': 'Invalid model file', 'code': error.name}), 400

    # The codec trusts the header's counts; only serve layouts that match
    # their topology, and never an empty network
    expected_counts = calculate_counts(**net.topology)
    if (not net.is_initialized or
            (net.weight_count, net.neuron_count) != expected_counts):
        logger.warning(
            f"Rejected model upload with topology {net.topology} and counts "
            f"({net.weight_count}, {net.neuron_count})"
        )
        return jsonify({
            'error': 'Invalid model file',
            'code': NetworkError.INVALID_PARAMETERS.name
        }), 400

    net.activation = activation
    network_id = str(uuid.uuid4())
    info = _register_network(network_id, net, trained=True)

    logger.info(f"Imported network {network_id} with topology {net.topology}")

    response = _describe(network_id, info)
    response['status'] = 'imported'
    return jsonify(response), 201


@app.route('/api/networks/<network_id>', methods=['DELETE'])
def delete_network_endpoint(network_id: str):
    """Delete a network from both memory and disk."""
    deleted_from_memory = False
    if network_id in active_networks:
        del active_networks[network_id]
        deleted_from_memory = True

    deleted_from_disk = delete_network(network_id, MODEL_DIR)

    if not deleted_from_memory and not deleted_from_disk:
        logger.warning(f"Delete attempted for non-existent network: {network_id}")
        return jsonify({'error': 'Network not found'}), 404

    logger.info(
        f"Deleted network {network_id}: memory={deleted_from_memory}, "
        f"disk={deleted_from_disk}"
    )

    return jsonify({
        'network_id': network_id,
        'deleted_from_memory': deleted_from_memory,
        'deleted_from_disk': deleted_from_disk
    }), 200


@app.route('/api/networks', methods=['DELETE'])
def delete_all_networks():
    """Delete all networks from both memory and disk."""
    in_memory_ids = list(active_networks.keys())
    saved_ids = [net['network_id'] for net in list_saved_networks(MODEL_DIR)]
    all_network_ids = list(set(in_memory_ids + saved_ids))

    deleted_from_memory_count = 0
    deleted_from_disk_count = 0

    for network_id in all_network_ids:
        if network_id in active_networks:
            del active_networks[network_id]
            deleted_from_memory_count += 1

        if delete_network(network_id, MODEL_DIR):
            deleted_from_disk_count += 1

    logger.info(
        f"Deleted all networks: {len(all_network_ids)} total, "
        f"{deleted_from_memory_count} from memory, "
        f"{deleted_from_disk_count} from disk"
    )

    return jsonify({
        'deleted_count': len(all_network_ids),
        'deleted_from_memory': deleted_from_memory_count,
        'deleted_from_disk': deleted_from_disk_count,
        'message': f'Successfully deleted {len(all_network_ids)} network(s)'
    }), 200


@app.route('/api/networks/cleanup', methods=['POST'])
def cleanup_old_networks_endpoint():
    """
    Manually trigger cleanup of saved networks older than specified days.

    Request body (optional):
        {'days': 2}  # defaults to RETENTION_DAYS
    """
    data = request.get_json(silent=True) or {}
    days = data.get('days', RETENTION_DAYS)

    if not isinstance(days, (int, float)) or days < 0:
        return jsonify({'error': 'days must be a non-negative number'}), 400

    deleted_count = delete_old_networks(days=int(days), model_dir=MODEL_DIR)
    if deleted_count == -1:
        return jsonify({'error': 'Error occurred during cleanup'}), 500

    if deleted_count:
        _sync_with_database()

    logger.info(
        f"Manual cleanup: deleted {deleted_count} network(s) "
        f"older than {days} day(s)"
    )

    return jsonify({
        'deleted_count': deleted_count,
        'days': days,
        'message': (
            f'Successfully deleted {deleted_count} network(s) '
            f'older than {days} day(s)'
        )
    }), 200


# ============================================================================
# SERVER STARTUP
# ============================================================================

if __name__ == '__main__':
    is_cloud = bool(os.environ.get('PORT'))
    port = int(os.environ.get('PORT', 8000))

    if is_cloud:
        logger.info(f"Starting server in production mode on port {port}")
    else:
        logger.info(f"Starting server at http://localhost:{port}/")

    reload_saved_networks()
    start_cleanup_task()

    try:
        socketio.run(
            app,
            host='0.0.0.0',
            port=port,
            debug=not is_cloud,
            use_reloader=False
        )
    except OSError as e:
        if "Address already in use" in str(e):
            logger.error(f"Port {port} is already in use.")
            sys.exit(1)
        else:
            raise
