"""
topology.py
~~~~~~~~~~~

Layout algebra for the flat network buffer.

A network with ``hidden_layers`` layers of ``hidden_neurons`` each is
stored as one weights region followed by an outputs region and a deltas
region. This module computes the sizes of those regions and the ordered
layer descriptors used to walk them.
"""

import logging
from dataclasses import dataclass
from typing import Tuple

from tinyann.errors import NetworkError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Layer:
    """
    Offsets of one computed layer (hidden or output) inside the buffer.

    Attributes:
        width: Number of neurons in the layer
        fan_in: Number of incoming connections per neuron (bias excluded)
        weight_offset: Index of the layer's first weight in the weights region
        input_offset: Index of the layer's first source value in the outputs region
        output_offset: Index of the layer's first activation in the outputs region
    """
    width: int
    fan_in: int
    weight_offset: int
    input_offset: int
    output_offset: int

    @property
    def weight_span(self) -> int:
        """Number of weights owned by the layer (bias plus inputs per neuron)."""
        return self.width * (self.fan_in + 1)


def is_empty_topology(
    input_neurons: int,
    hidden_layers: int,
    hidden_neurons: int,
    output_neurons: int
) -> bool:
    """Return True for the all-zero sentinel that leaves a network empty."""
    return (input_neurons == 0 and hidden_layers == 0 and
            hidden_neurons == 0 and output_neurons == 0)


def validate_topology(
    input_neurons: int,
    hidden_layers: int,
    hidden_neurons: int,
    output_neurons: int
) -> NetworkError:
    """
    Check that a topology can be laid out.

    Args:
        input_neurons: Number of input neurons
        hidden_layers: Number of hidden layers
        hidden_neurons: Number of neurons in each hidden layer
        output_neurons: Number of output neurons

    Returns:
        NetworkError.NO_ERROR for valid topologies (including the all-zero
        sentinel), NetworkError.INVALID_PARAMETERS otherwise
    """
    if is_empty_topology(
            input_neurons, hidden_layers, hidden_neurons, output_neurons):
        return NetworkError.NO_ERROR

    if min(input_neurons, hidden_layers, hidden_neurons, output_neurons) < 0:
        logger.warning(
            f"Negative neuron count in topology "
            f"({input_neurons}, {hidden_layers}, {hidden_neurons}, "
            f"{output_neurons})"
        )
        return NetworkError.INVALID_PARAMETERS

    if output_neurons < 1:
        logger.warning("Topology needs at least one output neuron")
        return NetworkError.INVALID_PARAMETERS

    if hidden_layers > 0 and hidden_neurons < 1:
        logger.warning(
            f"{hidden_layers} hidden layer(s) requested with no hidden neurons"
        )
        return NetworkError.INVALID_PARAMETERS

    return NetworkError.NO_ERROR


def calculate_counts(
    input_neurons: int,
    hidden_layers: int,
    hidden_neurons: int,
    output_neurons: int
) -> Tuple[int, int]:
    """
    Compute the weight and neuron counts of a topology.

    Example:
        >>> calculate_counts(2, 1, 3, 1)
        (13, 6)
    """
    if hidden_layers:
        hidden_weight_count = (
            (input_neurons + 1) * hidden_neurons +
            (hidden_layers - 1) * (hidden_neurons + 1) * hidden_neurons
        )
        output_weight_count = (hidden_neurons + 1) * output_neurons
    else:
        hidden_weight_count = 0
        output_weight_count = (input_neurons + 1) * output_neurons

    weight_count = hidden_weight_count + output_weight_count
    neuron_count = (
        input_neurons + hidden_neurons * hidden_layers + output_neurons
    )
    return weight_count, neuron_count


def buffer_size(weight_count: int, neuron_count: int) -> int:
    """Length of the flat buffer: weights, then outputs, then deltas."""
    return weight_count + 2 * neuron_count


def build_layers(
    input_neurons: int,
    hidden_layers: int,
    hidden_neurons: int,
    output_neurons: int
) -> Tuple[Layer, ...]:
    """
    Build the ordered layer descriptors for a topology.

    The sequence holds every hidden layer followed by the output layer, in
    the same neuron-major order the weights region is laid out in. The
    input layer has no weights and is not part of the sequence.
    """
    layers = []
    weight_offset = 0
    input_offset = 0
    output_offset = input_neurons
    fan_in = input_neurons

    for _ in range(hidden_layers):
        layer = Layer(hidden_neurons, fan_in, weight_offset,
                      input_offset, output_offset)
        layers.append(layer)

        weight_offset += layer.weight_span
        input_offset = output_offset
        output_offset += hidden_neurons
        fan_in = hidden_neurons

    if output_neurons:
        layers.append(Layer(output_neurons, fan_in, weight_offset,
                            input_offset, output_offset))

    return tuple(layers)
