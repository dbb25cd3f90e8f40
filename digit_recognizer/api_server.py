"""
api_server.py
~~~~~~~~~~~~~

Flask-based REST API server with WebSocket support for the digit recognizer.

This module provides endpoints for:
- Creating a network and training it on MNIST in the background
- Following and cancelling training jobs
- Recognizing a digit drawn on a 28x28 canvas
- Showing random test examples the network got right or wrong

The server uses:
- Flask for REST API endpoints
- Flask-SocketIO for WebSocket communication
- Gevent for async background training tasks

Networks only live in memory; nothing is persisted across restarts.
"""

import os
import sys
import uuid
import base64
import logging
import random
from io import BytesIO
from typing import Dict, Any, List, Optional, Tuple

import gevent
from gevent.event import Event
import numpy as np
from flask import Flask, request, jsonify
from flask_cors import CORS
from flask_socketio import SocketIO

# Use non-GUI backend for matplotlib (required for server environments)
import matplotlib
matplotlib.use('Agg')
import matplotlib.pyplot as plt

from digit_recognizer import mnist_loader
from digit_recognizer.activations import RELU, SOFTMAX
from digit_recognizer.matrix import Matrix
from digit_recognizer.network import NeuralNetwork, NetworkOptions

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

    if is_production:
        for logger_name in ['socketio', 'engineio', 'engineio.server',
                            'socketio.server', 'werkzeug']:
            logging.getLogger(logger_name).setLevel(logging.WARNING)
        logging.getLogger('digit_recognizer').setLevel(logging.INFO)
    else:
        logging.getLogger('socketio').setLevel(logging.INFO)
        logging.getLogger('engineio').setLevel(logging.INFO)


configure_logging()
logger = logging.getLogger(__name__)

# ============================================================================
# CONFIGURATION
# ============================================================================

IMAGE_SIDE = 28
INPUT_SIZE = IMAGE_SIDE * IMAGE_SIDE
DEFAULT_HIDDEN_NEURONS = 10
MAX_HIDDEN_NEURONS = 200
DEFAULT_LEARNING_RATE = 0.1


def _optional_int_env(name: str) -> Optional[int]:
    value = os.getenv(name)
    return int(value) if value else None


DATA_DIR = os.getenv('MNIST_DATA_DIR', 'data')
TRAIN_LIMIT = _optional_int_env('MNIST_TRAIN_LIMIT')
TEST_LIMIT = _optional_int_env('MNIST_TEST_LIMIT')

# ============================================================================
# FLASK APP SETUP
# ============================================================================

app = Flask(__name__)
CORS(app, resources={r"/*": {"origins": "*"}})

is_production = os.getenv('FLASK_ENV') == 'production'

socketio = SocketIO(
    app,
    cors_allowed_origins="*",
    async_mode='gevent',
    logger=not is_production,
    engineio_logger=not is_production,
    ping_timeout=60,
    ping_interval=25
)

# ============================================================================
# GLOBAL STATE
# ============================================================================

# Networks currently loaded in memory: {network_id: network_info}
active_networks: Dict[str, Dict[str, Any]] = {}

# Training jobs being tracked: {job_id: job_info}
training_jobs: Dict[str, Dict[str, Any]] = {}

# Cancellation flags for running jobs: {job_id: Event}
cancel_events: Dict[str, Event] = {}

# MNIST dataset, loaded on first use
training_data: Optional[List[Tuple[Matrix, Matrix]]] = None
test_data: Optional[List[Tuple[Matrix, int]]] = None


# ============================================================================
# DATA LOADING
# ============================================================================

def load_mnist_data() -> None:
    """
    Load the MNIST dataset into global variables.

    Does nothing if the data is already loaded.

    Raises:
        RuntimeError: If no training samples could be decoded; nothing is
            cached so the next call tries again
    """
    global training_data, test_data

    if training_data is not None and test_data is not None:
        return

    logger.info(f"Loading MNIST data from {DATA_DIR}...")
    loaded_training, loaded_test = mnist_loader.load_data_wrapper(
        DATA_DIR, train_limit=TRAIN_LIMIT, test_limit=TEST_LIMIT
    )
    if not loaded_training:
        raise RuntimeError(f"MNIST training data in {DATA_DIR} could not be decoded")

    training_data, test_data = loaded_training, loaded_test
    logger.info(
        f"Data loaded: {len(training_data)} training, {len(test_data)} test"
    )


# ============================================================================
# HELPER FUNCTIONS
# ============================================================================

def build_network(
    hidden_neurons: int,
    learning_rate: float,
    seed: Optional[int] = None
) -> NeuralNetwork:
    """Create a randomized 784 -> hidden (ReLU) -> 10 (Softmax) network."""
    net = NeuralNetwork(INPUT_SIZE, NetworkOptions(learning_rate=learning_rate))
    net.add_layer(hidden_neurons, RELU)
    net.add_layer(mnist_loader.NUM_CLASSES, SOFTMAX)
    net.randomize_params(seed=seed)
    return net


def parse_image(raw: Any) -> Matrix:
    """
    Validate a drawn image and turn it into an input column.

    Raises:
        ValueError: If the image is not 784 numbers in [0, 1]
    """
    if not isinstance(raw, list) or len(raw) != INPUT_SIZE:
        raise ValueError(f'image must be a list of {INPUT_SIZE} numbers')
    for value in raw:
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ValueError('image values must be numbers')
        if not 0.0 <= value <= 1.0:
            raise ValueError('image values must be between 0 and 1')
    return mnist_loader.image_to_matrix(raw)


def create_digit_image(image: Matrix, predicted: int, actual: int) -> str:
    """
    Create a base64-encoded PNG image of a digit.

    Args:
        image: 784x1 input column
        predicted: The digit the network predicted (0-9)
        actual: The correct digit (0-9)

    Returns:
        Base64-encoded PNG image string
    """
    pixels = np.array(image.tolist()).reshape(IMAGE_SIDE, IMAGE_SIDE)

    plt.figure(figsize=(3, 3))
    plt.imshow(pixels, cmap='gray')
    plt.title(f"Predicted: {predicted} | Actual: {actual}")
    plt.axis('off')

    buffer = BytesIO()
    plt.savefig(buffer, format='png', bbox_inches='tight')
    buffer.seek(0)
    img_base64 = base64.b64encode(buffer.getvalue()).decode('utf-8')
    plt.close()

    return img_base64


# ============================================================================
# API ENDPOINTS
# ============================================================================

@app.route('/api/status', methods=['GET'])
def get_status():
    """Return server status and counts of networks and running jobs."""
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
    Create a network and start training it in the background.

    Request body (all optional):
        {
            'hidden_neurons': 10,
            'learning_rate': 0.1,
            'epochs': 1,
            'seed': null
        }

    Returns:
        JSON with network_id, job_id, architecture and status
    """
    data = request.get_json(silent=True) or {}
    hidden_neurons = data.get('hidden_neurons', DEFAULT_HIDDEN_NEURONS)
    learning_rate = data.get('learning_rate', DEFAULT_LEARNING_RATE)
    epochs = data.get('epochs', 1)
    seed = data.get('seed')

    if (not isinstance(hidden_neurons, int) or isinstance(hidden_neurons, bool)
            or not 1 <= hidden_neurons <= MAX_HIDDEN_NEURONS):
        return jsonify({
            'error': f'hidden_neurons must be an integer between 1 and {MAX_HIDDEN_NEURONS}'
        }), 400
    if (not isinstance(learning_rate, (int, float)) or isinstance(learning_rate, bool)
            or learning_rate <= 0):
        return jsonify({'error': 'learning_rate must be a positive number'}), 400
    if not isinstance(epochs, int) or isinstance(epochs, bool) or epochs < 1:
        return jsonify({'error': 'epochs must be a positive integer'}), 400
    if seed is not None and (not isinstance(seed, int) or isinstance(seed, bool)
                             or seed < 0):
        return jsonify({'error': 'seed must be a non-negative integer'}), 400

    network_id = str(uuid.uuid4())
    job_id = str(uuid.uuid4())

    net = build_network(hidden_neurons, float(learning_rate), seed)
    active_networks[network_id] = {
        'network': net,
        'architecture': net.sizes,
        'trained': False,
        'accuracy': None
    }
    training_jobs[job_id] = {
        'network_id': network_id,
        'status': 'pending',
        'progress': 0,
        'epochs': epochs
    }
    cancel_events[job_id] = Event()

    logger.info(
        f"Created network {network_id} with architecture {net.sizes}; "
        f"training job {job_id}: epochs={epochs}, lr={learning_rate}"
    )

    socketio.start_background_task(train_network_task, network_id, job_id, epochs)

    return jsonify({
        'network_id': network_id,
        'job_id': job_id,
        'architecture': net.sizes,
        'status': 'training_started'
    }), 202


def train_network_task(network_id: str, job_id: str, epochs: int) -> None:
    """
    Background task that trains a network on the MNIST training set.

    Sends progress updates via WebSocket as training progresses.
    """
    net = active_networks[network_id]['network']
    cancel_event = cancel_events[job_id]

    def on_epoch_complete(data: Dict[str, Any]) -> None:
        """Called after each training epoch to send progress updates."""
        progress = (data['epoch'] / data['total_epochs']) * 100

        training_jobs[job_id]['status'] = 'training'
        training_jobs[job_id]['progress'] = progress

        socketio.emit('training_update', {
            'job_id': job_id,
            'network_id': network_id,
            'epoch': data['epoch'],
            'total_epochs': data['total_epochs'],
            'accuracy': data.get('accuracy'),
            'elapsed_time': data['elapsed_time'],
            'progress': progress,
            'correct': data.get('correct'),
            'total': data.get('total')
        })
        gevent.sleep(0)

    def yield_to_other_tasks():
        gevent.sleep(0)

    try:
        load_mnist_data()
        training_jobs[job_id]['status'] = 'training'
        logger.info(f"Starting training for job {job_id}")

        samples = net.train_online(
            training_data,
            epochs,
            test_data=test_data,
            callback=on_epoch_complete,
            yield_func=yield_to_other_tasks,
            cancel_event=cancel_event
        )

        accuracy = None
        if test_data and not cancel_event.is_set():
            accuracy = net.evaluate(test_data) / len(test_data)

        # Deleting the network also counts as cancelling its job
        if cancel_event.is_set() or network_id not in active_networks:
            training_jobs[job_id]['status'] = 'cancelled'
            logger.info(f"Training cancelled for job {job_id} after {samples} samples")
            socketio.emit('training_cancelled', {
                'job_id': job_id,
                'network_id': network_id,
                'status': 'cancelled',
                'samples_seen': samples
            })
            gevent.sleep(0)
            return

        active_networks[network_id]['trained'] = True
        active_networks[network_id]['accuracy'] = accuracy

        training_jobs[job_id]['status'] = 'completed'
        training_jobs[job_id]['accuracy'] = accuracy
        training_jobs[job_id]['progress'] = 100

        if accuracy is None:
            logger.info(f"Training completed for job {job_id} (no test data)")
        else:
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

        training_jobs[job_id]['status'] = 'failed'
        training_jobs[job_id]['error'] = str(e)

        socketio.emit('training_error', {
            'job_id': job_id,
            'network_id': network_id,
            'status': 'failed',
            'error': str(e)
        })
        gevent.sleep(0)

    finally:
        cancel_events.pop(job_id, None)


@app.route('/api/training/<job_id>', methods=['GET'])
def get_training_status(job_id: str):
    """Get the current status of a training job."""
    if job_id not in training_jobs:
        logger.warning(f"Status requested for non-existent job: {job_id}")
        return jsonify({'error': 'Training job not found'}), 404
    return jsonify(training_jobs[job_id]), 200


@app.route('/api/training/<job_id>/cancel', methods=['POST'])
def cancel_training(job_id: str):
    """Ask a running training job to stop after the current sample."""
    event = cancel_events.get(job_id)
    if event is None:
        if job_id in training_jobs:
            return jsonify({
                'error': f"Training job is already {training_jobs[job_id]['status']}"
            }), 409
        logger.warning(f"Cancel requested for non-existent job: {job_id}")
        return jsonify({'error': 'Training job not found'}), 404

    event.set()
    logger.info(f"Cancellation requested for job {job_id}")
    return jsonify({'job_id': job_id, 'status': 'cancelling'}), 200


@app.route('/api/networks', methods=['GET'])
def list_networks():
    """List all networks held in memory."""
    networks = [
        {
            'network_id': nid,
            'architecture': info['architecture'],
            'trained': info['trained'],
            'accuracy': info['accuracy']
        }
        for nid, info in active_networks.items()
    ]
    return jsonify({'networks': networks}), 200


@app.route('/api/networks/<network_id>', methods=['DELETE'])
def delete_network(network_id: str):
    """Remove a network from memory, cancelling its training if running."""
    if network_id not in active_networks:
        logger.warning(f"Delete attempted for non-existent network: {network_id}")
        return jsonify({'error': 'Network not found'}), 404

    for job_id, job in training_jobs.items():
        if job['network_id'] == network_id and job_id in cancel_events:
            cancel_events[job_id].set()

    del active_networks[network_id]
    logger.info(f"Deleted network {network_id}")
    return jsonify({'network_id': network_id, 'deleted': True}), 200


@app.route('/api/networks/<network_id>/predict', methods=['POST'])
def predict_digit(network_id: str):
    """
    Recognize a drawn digit.

    Request body:
        {'image': [784 numbers between 0 and 1, row by row]}

    Returns:
        JSON with the recognized digit and the score of every class
    """
    if network_id not in active_networks:
        return jsonify({'error': 'Network not found'}), 404

    info = active_networks[network_id]
    if not info['trained']:
        return jsonify({'error': 'Network is not trained yet'}), 409

    data = request.get_json(silent=True) or {}
    try:
        image = parse_image(data.get('image'))
    except ValueError as e:
        return jsonify({'error': str(e)}), 400

    output = info['network'].run(image)
    if output.any_nan():
        logger.warning(f"Network {network_id} produced NaN scores")

    return jsonify({
        'network_id': network_id,
        'digit': output.argmax(),
        'scores': output.tolist()
    }), 200


@app.route('/api/networks/<network_id>/example', methods=['GET'])
def get_example(network_id: str):
    """
    Find a random test example the network classified correctly or not.

    Query parameters:
        outcome: 'successful' (default) or 'unsuccessful'

    Returns JSON with image, prediction details and network output.
    """
    if network_id not in active_networks:
        logger.warning(f"Example requested for non-existent network: {network_id}")
        return jsonify({'error': 'Network not found'}), 404

    outcome = request.args.get('outcome', 'successful')
    if outcome not in ('successful', 'unsuccessful'):
        return jsonify({'error': "outcome must be 'successful' or 'unsuccessful'"}), 400

    if not test_data:
        logger.error("Test data not loaded")
        return jsonify({'error': 'Test data not available'}), 500

    net = active_networks[network_id]['network']
    want_correct = outcome == 'successful'

    max_attempts = 200
    for attempt in range(max_attempts):
        index = random.randrange(len(test_data))
        x, actual_digit = test_data[index]

        output = net.run(x)
        predicted_digit = output.argmax()

        if (predicted_digit == actual_digit) == want_correct:
            logger.debug(f"Found {outcome} example on attempt {attempt + 1}")
            return jsonify({
                'network_id': network_id,
                'example_index': index,
                'predicted_digit': predicted_digit,
                'actual_digit': actual_digit,
                'image_data': create_digit_image(x, predicted_digit, actual_digit),
                'network_output': output.tolist()
            }), 200

    logger.warning(f"No {outcome} example found after {max_attempts} attempts")
    return jsonify({
        'error': f'No {outcome} example found after {max_attempts} attempts'
    }), 404


# ============================================================================
# SERVER STARTUP
# ============================================================================

def main() -> None:
    port = int(os.environ.get('PORT', 8000))
    logger.info(f"Starting server at http://localhost:{port}/")

    try:
        socketio.run(
            app,
            host='0.0.0.0',
            port=port,
            debug=not is_production,
            use_reloader=False
        )
    except OSError as e:
        if "Address already in use" in str(e):
            logger.error(f"Port {port} is already in use.")
            sys.exit(1)
        raise


if __name__ == '__main__':
    main()
