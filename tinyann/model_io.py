"""
model_io.py
~~~~~~~~~~~

Binary model codec.

Layout (little-endian):

    offset  size             field
    0       4                magic b"diwa"
    4       4                input_neurons   (int32)
    8       4                hidden_neurons  (int32)
    12      4                hidden_layers   (int32)
    16      4                output_neurons  (int32)
    20      4                weight_count    (int32)
    24      4                neuron_count    (int32)
    28      8 * weight_count weights         (float64)

Note that the hidden width precedes the hidden layer count on the wire.
Loading trusts the persisted weight and neuron counts as written.
"""

import io
import logging
import os
import struct
from typing import BinaryIO, Optional, Tuple, Union

import numpy as np

from tinyann.errors import NetworkError
from tinyann.network import Network
from tinyann.topology import validate_topology

# Configure module logger
logger = logging.getLogger(__name__)

MAGIC = b'diwa'
HEADER = struct.Struct('<4s6i')
FIELDS = struct.Struct('<6i')
WEIGHT_DTYPE = np.dtype('<f8')

PathLike = Union[str, os.PathLike]


def _stream_usable(stream, capability: str) -> bool:
    """True if ``stream`` is open and reports ``capability`` ('readable'/'writable')."""
    if stream is None or getattr(stream, 'closed', False):
        return False

    check = getattr(stream, capability, None)
    if check is None:
        return True
    try:
        return bool(check())
    except ValueError:
        # io raises ValueError when probing a closed file
        return False


def _read_exact(stream: BinaryIO, size: int) -> Optional[bytes]:
    """Read ``size`` bytes, or return None if the stream ends early."""
    data = stream.read(size) if size else b''
    if data is None or len(data) < size:
        return None
    return data


def save_to_file(network: Network, stream: BinaryIO) -> NetworkError:
    """
    Serialize a network's topology and weights to an open binary stream.

    Args:
        network: Network to save
        stream: Writable binary stream; it is flushed but not closed

    Returns:
        NetworkError.NO_ERROR on success, STREAM_NOT_OPEN if the stream
        cannot be written, MODEL_SAVE_ERROR if writing fails
    """
    if not _stream_usable(stream, 'writable'):
        logger.error("Cannot save model: stream is not open for writing")
        return NetworkError.STREAM_NOT_OPEN

    try:
        header = HEADER.pack(
            MAGIC,
            network.input_neurons,
            network.hidden_neurons,
            network.hidden_layers,
            network.output_neurons,
            network.weight_count,
            network.neuron_count
        )
        payload = np.asarray(network.weights, dtype=WEIGHT_DTYPE).tobytes()

        stream.write(header)
        stream.write(payload)
        if hasattr(stream, 'flush'):
            stream.flush()

    except struct.error as e:
        logger.error(f"Model header out of range: {e}")
        return NetworkError.MODEL_SAVE_ERROR
    except OSError as e:
        logger.error(f"I/O error saving model: {e}")
        return NetworkError.MODEL_SAVE_ERROR

    logger.debug(
        f"Saved model {network.topology} "
        f"({HEADER.size + len(payload)} bytes)"
    )
    return NetworkError.NO_ERROR


def load_from_file(network: Network, stream: BinaryIO) -> NetworkError:
    """
    Replace ``network`` with the model read from an open binary stream.

    The network is re-laid out from the persisted header without
    randomizing, then its weights are filled from the payload. On any
    error the network is left exactly as it was.

    Returns:
        NetworkError.NO_ERROR on success, STREAM_NOT_OPEN if the stream
        cannot be read, INVALID_MAGIC_NUMBER for foreign data,
        MODEL_READ_ERROR for truncated data, INVALID_PARAMETERS for an
        impossible topology, ALLOCATION_FAILED if the buffer could not
        be obtained
    """
    if not _stream_usable(stream, 'readable'):
        logger.error("Cannot load model: stream is not open for reading")
        return NetworkError.STREAM_NOT_OPEN

    try:
        magic = _read_exact(stream, len(MAGIC))
        if magic != MAGIC:
            logger.error(f"Invalid magic number {magic!r}, expected {MAGIC!r}")
            return NetworkError.INVALID_MAGIC_NUMBER

        fields = _read_exact(stream, FIELDS.size)
        if fields is None:
            logger.error("Model header is truncated")
            return NetworkError.MODEL_READ_ERROR

        (input_neurons, hidden_neurons, hidden_layers, output_neurons,
         weight_count, neuron_count) = FIELDS.unpack(fields)

        if validate_topology(input_neurons, hidden_layers, hidden_neurons,
                             output_neurons) or min(weight_count,
                                                    neuron_count) < 0:
            logger.error(
                f"Model header describes an invalid topology "
                f"({input_neurons}, {hidden_layers}, {hidden_neurons}, "
                f"{output_neurons}, {weight_count}, {neuron_count})"
            )
            return NetworkError.INVALID_PARAMETERS

        payload = _read_exact(stream, weight_count * WEIGHT_DTYPE.itemsize)
        if payload is None:
            logger.error(
                f"Model payload is truncated: expected {weight_count} weights"
            )
            return NetworkError.MODEL_READ_ERROR

    except OSError as e:
        logger.error(f"I/O error loading model: {e}")
        return NetworkError.MODEL_READ_ERROR

    error = network._allocate(input_neurons, hidden_layers, hidden_neurons,
                              output_neurons, weight_count, neuron_count)
    if error:
        return error

    network.weights[:] = np.frombuffer(payload, dtype=WEIGHT_DTYPE)

    logger.debug(f"Loaded model {network.topology}")
    return NetworkError.NO_ERROR


def dumps(network: Network) -> bytes:
    """Return the binary model for ``network``."""
    buffer = io.BytesIO()
    error = save_to_file(network, buffer)
    if error:
        # BytesIO writes cannot fail short of an out-of-range header
        raise ValueError(f"Cannot serialize network: {error.name}")
    return buffer.getvalue()


def loads(
    data: bytes,
    seed: Optional[int] = None
) -> Tuple[Optional[Network], NetworkError]:
    """
    Build a new network from binary model data.

    Returns:
        (network, NetworkError.NO_ERROR) on success, (None, error) otherwise
    """
    network = Network(seed=seed)
    error = load_from_file(network, io.BytesIO(data))
    if error:
        return None, error
    return network, error


def save_model(network: Network, path: PathLike) -> NetworkError:
    """
    Save a network to a model file, creating parent directories.

    Example:
        >>> save_model(net, "models/xor.ann")
        <NetworkError.NO_ERROR: 'no_error'>
    """
    try:
        directory = os.path.dirname(os.fspath(path))
        if directory:
            os.makedirs(directory, exist_ok=True)

        with open(path, 'wb') as stream:
            error = save_to_file(network, stream)

    except OSError as e:
        logger.error(f"Could not open '{path}' for writing: {e}")
        return NetworkError.STREAM_NOT_OPEN

    if not error:
        logger.info(f"Saved model {network.topology} to '{path}'")
    return error


def load_model(
    path: PathLike,
    seed: Optional[int] = None
) -> Tuple[Optional[Network], NetworkError]:
    """
    Load a network from a model file.

    Returns:
        (network, NetworkError.NO_ERROR) on success, (None, error) otherwise

    Example:
        >>> net, error = load_model("models/xor.ann")
        >>> if not error:
        ...     print(net.inference([0, 1]))
    """
    network = Network(seed=seed)
    try:
        with open(path, 'rb') as stream:
            error = load_from_file(network, stream)

    except OSError as e:
        logger.error(f"Could not open '{path}' for reading: {e}")
        return None, NetworkError.STREAM_NOT_OPEN

    if error:
        return None, error

    logger.info(f"Loaded model {network.topology} from '{path}'")
    return network, error
