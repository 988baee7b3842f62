"""
test_model_io.py
~~~~~~~~~~~~~~~~

Unit tests for the binary model codec.
"""

import pytest
import io
import os
import struct
import sys

import numpy as np

# Add repository root to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from tinyann.errors import NetworkError
from tinyann.network import Network
from tinyann import model_io


@pytest.fixture
def trained_network():
    """Create a 2-3-1 network with a few training steps applied."""
    net = Network(seed=21)
    net.initialize(2, 1, 3, 1)
    for _ in range(10):
        net.train(6.0, [0, 1], [0])
        net.train(6.0, [1, 1], [1])
    return net


def header_bytes(*fields, magic=b'diwa'):
    return magic + struct.pack('<6i', *fields)


@pytest.mark.unit
class TestSaveToFile:
    """Wire layout written by save_to_file."""

    def test_layout(self, trained_network):
        """Test magic, header field order and little-endian weights."""
        stream = io.BytesIO()

        assert trained_network.save_to_file(stream) is NetworkError.NO_ERROR

        data = stream.getvalue()
        assert len(data) == 28 + 8 * 13
        assert data[:4] == b'diwa'
        # hidden_neurons precedes hidden_layers on the wire
        assert struct.unpack('<6i', data[4:28]) == (2, 3, 1, 1, 13, 6)
        np.testing.assert_array_equal(
            np.frombuffer(data[28:], dtype='<f8'), trained_network.weights
        )

    def test_closed_stream(self, trained_network):
        stream = io.BytesIO()
        stream.close()

        assert model_io.save_to_file(trained_network, stream) is \
            NetworkError.STREAM_NOT_OPEN

    def test_none_stream(self, trained_network):
        assert model_io.save_to_file(trained_network, None) is \
            NetworkError.STREAM_NOT_OPEN

    def test_read_only_stream(self, trained_network, tmp_path):
        path = tmp_path / 'model.ann'
        path.write_bytes(b'')

        with open(path, 'rb') as stream:
            assert model_io.save_to_file(trained_network, stream) is \
                NetworkError.STREAM_NOT_OPEN

    def test_write_failure(self, trained_network):
        class FailingStream(io.RawIOBase):
            def writable(self):
                return True

            def write(self, data):
                raise OSError("disk full")

        assert model_io.save_to_file(trained_network, FailingStream()) is \
            NetworkError.MODEL_SAVE_ERROR


@pytest.mark.unit
class TestLoadFromFile:
    """Decoding models into a network."""

    def test_round_trip(self, trained_network):
        """Test that topology and weights survive bit for bit."""
        stream = io.BytesIO()
        trained_network.save_to_file(stream)
        stream.seek(0)

        loaded = Network()
        assert loaded.load_from_file(stream) is NetworkError.NO_ERROR

        assert loaded.topology == trained_network.topology
        assert loaded.weight_count == trained_network.weight_count
        assert loaded.neuron_count == trained_network.neuron_count
        assert loaded.weights.tobytes() == trained_network.weights.tobytes()
        np.testing.assert_array_equal(
            loaded.inference([1, 0]), trained_network.inference([1, 0])
        )

    def test_round_trip_without_hidden_layers(self):
        net = Network(seed=2)
        net.initialize(5, 0, 0, 3)

        loaded, error = model_io.loads(model_io.dumps(net))

        assert error is NetworkError.NO_ERROR
        assert loaded.topology == net.topology
        assert loaded.weights.tobytes() == net.weights.tobytes()

    def test_load_does_not_randomize(self):
        """Test that loading twice with different seeds yields the same weights."""
        net = Network(seed=4)
        net.initialize(3, 2, 4, 2)
        data = model_io.dumps(net)

        first, _ = model_io.loads(data, seed=100)
        second, _ = model_io.loads(data, seed=200)

        np.testing.assert_array_equal(first.weights, second.weights)

    def test_load_replaces_existing_topology(self, trained_network):
        other = Network(seed=6)
        other.initialize(4, 2, 2, 3)

        error = trained_network.load_from_file(
            io.BytesIO(model_io.dumps(other))
        )

        assert error is NetworkError.NO_ERROR
        assert trained_network.topology == other.topology
        np.testing.assert_array_equal(trained_network.weights, other.weights)

    def test_invalid_magic_keeps_state(self, trained_network):
        """Test that a foreign file is rejected without touching the network."""
        weights = trained_network.weights.copy()
        data = header_bytes(4, 2, 2, 3, 25, 11, magic=b'nope')

        error = trained_network.load_from_file(io.BytesIO(data))

        assert error is NetworkError.INVALID_MAGIC_NUMBER
        assert trained_network.weight_count == 13
        np.testing.assert_array_equal(trained_network.weights, weights)

    def test_empty_stream_is_invalid_magic(self):
        net = Network()
        assert net.load_from_file(io.BytesIO(b'')) is \
            NetworkError.INVALID_MAGIC_NUMBER

    def test_closed_stream(self):
        stream = io.BytesIO(b'diwa')
        stream.close()

        assert Network().load_from_file(stream) is NetworkError.STREAM_NOT_OPEN

    def test_truncated_header(self):
        assert Network().load_from_file(io.BytesIO(b'diwa\x02\x00')) is \
            NetworkError.MODEL_READ_ERROR

    def test_truncated_payload_keeps_state(self, trained_network):
        weights = trained_network.weights.copy()
        data = header_bytes(2, 3, 1, 1, 13, 6) + b'\x00' * 16

        error = trained_network.load_from_file(io.BytesIO(data))

        assert error is NetworkError.MODEL_READ_ERROR
        np.testing.assert_array_equal(trained_network.weights, weights)

    def test_invalid_topology_in_header(self):
        data = header_bytes(2, 3, 1, 0, 9, 5)

        assert Network().load_from_file(io.BytesIO(data)) is \
            NetworkError.INVALID_PARAMETERS

    def test_persisted_counts_used_verbatim(self):
        """Test that weight and neuron counts come from the header, not the topology."""
        weights = np.arange(14, dtype='<f8')
        data = header_bytes(2, 3, 1, 1, 14, 7) + weights.tobytes()

        net = Network()
        assert net.load_from_file(io.BytesIO(data)) is NetworkError.NO_ERROR

        assert net.weight_count == 14
        assert net.neuron_count == 7
        np.testing.assert_array_equal(net.weights, weights)


@pytest.mark.integration
class TestModelFiles:
    """save_model / load_model on the filesystem."""

    def test_save_and_load_model(self, trained_network, tmp_path):
        path = tmp_path / 'nested' / 'xor.ann'

        assert model_io.save_model(trained_network, path) is NetworkError.NO_ERROR
        assert path.exists()

        loaded, error = model_io.load_model(path)

        assert error is NetworkError.NO_ERROR
        assert loaded.weights.tobytes() == trained_network.weights.tobytes()

    def test_load_missing_file(self, tmp_path):
        loaded, error = model_io.load_model(tmp_path / 'missing.ann')

        assert loaded is None
        assert error is NetworkError.STREAM_NOT_OPEN

    def test_load_foreign_file(self, tmp_path):
        path = tmp_path / 'foreign.bin'
        path.write_bytes(b'\x89PNG' + b'\x00' * 40)

        loaded, error = model_io.load_model(path)

        assert loaded is None
        assert error is NetworkError.INVALID_MAGIC_NUMBER

    def test_save_to_unwritable_path(self, trained_network, tmp_path):
        directory = tmp_path / 'a_directory'
        directory.mkdir()

        assert model_io.save_model(trained_network, directory) is \
            NetworkError.STREAM_NOT_OPEN
