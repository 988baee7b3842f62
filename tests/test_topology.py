"""
test_topology.py
~~~~~~~~~~~~~~~~

Unit tests for the layout algebra of the flat network buffer.
"""

import pytest
import os
import sys

import numpy as np

# Add repository root to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from tinyann.errors import NetworkError
from tinyann.topology import (
    Layer,
    buffer_size,
    build_layers,
    calculate_counts,
    validate_topology,
)


def expected_weight_count(inputs, hidden_layers, hidden_neurons, outputs):
    if hidden_layers == 0:
        return (inputs + 1) * outputs
    return ((inputs + 1) * hidden_neurons +
            (hidden_layers - 1) * (hidden_neurons + 1) * hidden_neurons +
            (hidden_neurons + 1) * outputs)


@pytest.mark.unit
class TestCalculateCounts:
    """Weight and neuron counts of a topology."""

    def test_xor_topology(self):
        """Test the counts of the 2-3-1 XOR network."""
        assert calculate_counts(2, 1, 3, 1) == (13, 6)

    def test_no_hidden_layers(self):
        """Test that outputs connect straight to the inputs."""
        assert calculate_counts(4, 0, 0, 2) == (10, 6)

    def test_hidden_width_ignored_without_hidden_layers(self):
        """Test that a width without layers adds no weights or neurons."""
        assert calculate_counts(4, 0, 7, 2) == (10, 6)

    def test_deep_network(self):
        """Test a network with several hidden layers."""
        # (3+1)*5 + 2*(5+1)*5 + (5+1)*2
        assert calculate_counts(3, 3, 5, 2) == (92, 20)

    def test_randomized_topologies_match_closed_form(self):
        """Test counts against the closed forms over random small topologies."""
        rng = np.random.default_rng(1234)

        for _ in range(200):
            inputs = int(rng.integers(0, 10))
            hidden_layers = int(rng.integers(0, 5))
            hidden_neurons = int(rng.integers(1, 10)) if hidden_layers else 0
            outputs = int(rng.integers(1, 10))

            weight_count, neuron_count = calculate_counts(
                inputs, hidden_layers, hidden_neurons, outputs
            )

            assert weight_count == expected_weight_count(
                inputs, hidden_layers, hidden_neurons, outputs
            )
            assert neuron_count == (
                inputs + hidden_neurons * hidden_layers + outputs
            )

    def test_buffer_size_holds_all_regions(self):
        """Test that the buffer is weights plus two neuron-sized regions."""
        assert buffer_size(13, 6) == 25


@pytest.mark.unit
class TestValidateTopology:
    """Rejection of topologies that cannot be laid out."""

    def test_valid_topology(self):
        assert validate_topology(2, 1, 3, 1) is NetworkError.NO_ERROR

    def test_all_zero_sentinel_is_valid(self):
        assert validate_topology(0, 0, 0, 0) is NetworkError.NO_ERROR

    @pytest.mark.parametrize('topology', [
        (2, 1, 3, 0),
        (2, 2, 0, 1),
        (-1, 1, 3, 1),
        (2, -1, 3, 1),
        (2, 1, 3, -1),
    ])
    def test_invalid_topologies(self, topology):
        """Test missing outputs, empty hidden layers and negative counts."""
        assert validate_topology(*topology) is NetworkError.INVALID_PARAMETERS


@pytest.mark.unit
class TestBuildLayers:
    """Ordered layer descriptors."""

    def test_xor_layers(self):
        """Test offsets of the 2-3-1 network."""
        hidden, output = build_layers(2, 1, 3, 1)

        assert hidden == Layer(width=3, fan_in=2, weight_offset=0,
                               input_offset=0, output_offset=2)
        assert output == Layer(width=1, fan_in=3, weight_offset=9,
                               input_offset=2, output_offset=5)

    def test_no_hidden_layers(self):
        """Test that the output layer reads the inputs directly."""
        (output,) = build_layers(4, 0, 0, 2)

        assert output == Layer(width=2, fan_in=4, weight_offset=0,
                               input_offset=0, output_offset=4)

    def test_layers_tile_the_weights_region(self):
        """Test that layer weight spans are contiguous and sum to the count."""
        topology = (3, 4, 5, 2)
        layers = build_layers(*topology)
        weight_count, neuron_count = calculate_counts(*topology)

        assert len(layers) == 5
        offset = 0
        for layer in layers:
            assert layer.weight_offset == offset
            offset += layer.weight_span
        assert offset == weight_count
        assert layers[-1].output_offset + layers[-1].width == neuron_count

    def test_empty_topology_has_no_layers(self):
        assert build_layers(0, 0, 0, 0) == ()
