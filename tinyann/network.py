"""
network.py
~~~~~~~~~~

A fully-connected feedforward neural network stored in one flat buffer.

All state lives in a single float64 numpy allocation split into three
adjacent regions:

- weights: a bias weight followed by one weight per incoming connection,
  for every hidden and output neuron, layer by layer
- outputs: the echoed inputs, then every hidden activation, then the
  output activations
- deltas: per-neuron error signals from the last training call

Layers are not objects; they are ``Layer`` descriptors (offsets into the
buffer) computed once per initialization. Training is on-line stochastic
gradient descent with backpropagation.

Example:
    >>> net = Network(seed=7)
    >>> net.initialize(2, 1, 3, 1)
    <NetworkError.NO_ERROR: 'no_error'>
    >>> net.train(6.0, [0, 1], [0])
    >>> net.inference([0, 1]).shape
    (1,)
"""

import logging
import math
from typing import Optional, Sequence

import numpy as np

from tinyann.activations import (
    Activation,
    activation_name,
    layer_transfer,
    sigmoid,
)
from tinyann.errors import NetworkError
from tinyann.topology import (
    Layer,
    buffer_size,
    build_layers,
    calculate_counts,
    is_empty_topology,
    validate_topology,
)

# Configure module logger
logger = logging.getLogger(__name__)


class Network:
    """
    Feedforward network with uniform hidden-layer width.

    The network is constructed empty; call ``initialize`` (or load a model
    with ``load_from_file``) before running inference.
    """

    def __init__(
        self,
        seed: Optional[int] = None,
        activation: Activation = sigmoid
    ):
        """
        Create an empty network.

        Args:
            seed: Seed for the generator used to randomize weights
            activation: Transfer function applied to every neuron
        """
        self._rng = np.random.default_rng(seed)
        self.activation = activation
        self._set_layout(0, 0, 0, 0, 0, 0, np.zeros(0))

    def _set_layout(
        self,
        input_neurons: int,
        hidden_layers: int,
        hidden_neurons: int,
        output_neurons: int,
        weight_count: int,
        neuron_count: int,
        buffer: np.ndarray
    ) -> None:
        """Adopt ``buffer`` and point the region views into it."""
        self.input_neurons = input_neurons
        self.hidden_layers = hidden_layers
        self.hidden_neurons = hidden_neurons
        self.output_neurons = output_neurons
        self.weight_count = weight_count
        self.neuron_count = neuron_count

        self._buffer = buffer
        self.weights = buffer[:weight_count]
        self.outputs = buffer[weight_count:weight_count + neuron_count]
        self.deltas = buffer[weight_count + neuron_count:]

        self._layers = build_layers(
            input_neurons, hidden_layers, hidden_neurons, output_neurons
        )

    def _allocate(
        self,
        input_neurons: int,
        hidden_layers: int,
        hidden_neurons: int,
        output_neurons: int,
        weight_count: int,
        neuron_count: int
    ) -> NetworkError:
        """
        Replace the buffer with a zeroed one sized for the given counts.

        The counts are used as given; callers loading a model pass the
        persisted values. On failure the network keeps its previous state.
        """
        try:
            buffer = np.zeros(buffer_size(weight_count, neuron_count),
                              dtype=np.float64)
        except MemoryError:
            logger.error(
                f"Could not allocate buffer for {weight_count} weights and "
                f"{neuron_count} neurons"
            )
            return NetworkError.ALLOCATION_FAILED

        self._set_layout(input_neurons, hidden_layers, hidden_neurons,
                         output_neurons, weight_count, neuron_count, buffer)
        return NetworkError.NO_ERROR

    def initialize(
        self,
        input_neurons: int,
        hidden_layers: int,
        hidden_neurons: int,
        output_neurons: int,
        randomize_weights: bool = True
    ) -> NetworkError:
        """
        Lay out the network for a topology and allocate its buffer.

        The all-zero topology is a no-op that leaves the network as it is.

        Args:
            input_neurons: Number of input neurons
            hidden_layers: Number of hidden layers
            hidden_neurons: Number of neurons in each hidden layer
            output_neurons: Number of output neurons
            randomize_weights: Draw weights uniformly from [-0.5, 0.5)

        Returns:
            NetworkError.NO_ERROR on success, INVALID_PARAMETERS for a bad
            topology, ALLOCATION_FAILED if the buffer could not be obtained
        """
        error = validate_topology(
            input_neurons, hidden_layers, hidden_neurons, output_neurons
        )
        if error:
            return error

        if is_empty_topology(
                input_neurons, hidden_layers, hidden_neurons, output_neurons):
            return NetworkError.NO_ERROR

        weight_count, neuron_count = calculate_counts(
            input_neurons, hidden_layers, hidden_neurons, output_neurons
        )

        error = self._allocate(input_neurons, hidden_layers, hidden_neurons,
                               output_neurons, weight_count, neuron_count)
        if error:
            return error

        if randomize_weights:
            self._randomize_weights()

        logger.info(
            f"Initialized network {self.topology} with "
            f"{weight_count} weights and {neuron_count} neurons"
        )
        return NetworkError.NO_ERROR

    def _randomize_weights(self) -> None:
        self.weights[:] = self._rng.random(self.weight_count) - 0.5

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def activation(self) -> Activation:
        """Transfer function used by inference and training."""
        return self._activation

    @activation.setter
    def activation(self, activation: Activation) -> None:
        # The getter hands back the callable as given
        self._activation = activation
        self._transfer = layer_transfer(activation)

    def set_activation_function(self, activation: Activation) -> None:
        self.activation = activation

    def get_activation_function(self) -> Activation:
        return self._activation

    @property
    def layers(self) -> Sequence[Layer]:
        """Hidden and output layer descriptors, in propagation order."""
        return self._layers

    @property
    def is_initialized(self) -> bool:
        return bool(self._layers)

    @property
    def topology(self) -> dict:
        return {
            'input_neurons': self.input_neurons,
            'hidden_layers': self.hidden_layers,
            'hidden_neurons': self.hidden_neurons,
            'output_neurons': self.output_neurons,
        }

    def __repr__(self) -> str:
        return (
            f"Network(input_neurons={self.input_neurons}, "
            f"hidden_layers={self.hidden_layers}, "
            f"hidden_neurons={self.hidden_neurons}, "
            f"output_neurons={self.output_neurons}, "
            f"activation={activation_name(self._activation)})"
        )

    # ------------------------------------------------------------------
    # Buffer views
    # ------------------------------------------------------------------

    def _layer_weights(self, layer: Layer) -> np.ndarray:
        """(width, fan_in + 1) view of a layer's weights; column 0 is the bias."""
        start = layer.weight_offset
        return self.weights[start:start + layer.weight_span].reshape(
            layer.width, layer.fan_in + 1
        )

    def _layer_inputs(self, layer: Layer) -> np.ndarray:
        return self.outputs[layer.input_offset:
                            layer.input_offset + layer.fan_in]

    def _layer_outputs(self, layer: Layer) -> np.ndarray:
        return self.outputs[layer.output_offset:
                            layer.output_offset + layer.width]

    def _layer_deltas(self, layer: Layer) -> np.ndarray:
        # Deltas share the outputs' indexing; the input prefix stays unused
        return self.deltas[layer.output_offset:
                           layer.output_offset + layer.width]

    # ------------------------------------------------------------------
    # Inference and training
    # ------------------------------------------------------------------

    def inference(self, inputs: Sequence[float]) -> np.ndarray:
        """
        Run a forward pass.

        Args:
            inputs: Exactly ``input_neurons`` values

        Returns:
            Read-only view of the output activations. The view belongs to
            the network and is overwritten by the next inference or
            training call; copy it to keep the values.
        """
        self.outputs[:self.input_neurons] = inputs

        for layer in self._layers:
            weights = self._layer_weights(layer)
            # The bias input is fixed at -1
            sums = weights[:, 1:] @ self._layer_inputs(layer) - weights[:, 0]
            self._layer_outputs(layer)[:] = self._transfer(sums)

        if not self._layers:
            return self.outputs[self.neuron_count:]

        result = self._layer_outputs(self._layers[-1]).view()
        result.flags.writeable = False
        return result

    def train(
        self,
        learning_rate: float,
        inputs: Sequence[float],
        targets: Sequence[float]
    ) -> None:
        """
        Adjust the weights towards ``targets`` with one backpropagation step.

        Args:
            learning_rate: Step size; no clipping is applied
            inputs: Exactly ``input_neurons`` values
            targets: Exactly ``output_neurons`` expected outputs
        """
        self.inference(inputs)
        layers = self._layers
        if not layers:
            return

        output_layer = layers[-1]
        outputs = self._layer_outputs(output_layer)
        targets = np.asarray(targets, dtype=np.float64)
        self._layer_deltas(output_layer)[:] = (
            (targets - outputs) * outputs * (1.0 - outputs)
        )

        # Hidden deltas, last hidden layer first. Column 0 of the next
        # layer's weights is its bias, so the feeding weights start at 1.
        for index in range(len(layers) - 2, -1, -1):
            layer = layers[index]
            downstream = layers[index + 1]
            outputs = self._layer_outputs(layer)
            propagated = (
                self._layer_weights(downstream)[:, 1:].T
                @ self._layer_deltas(downstream)
            )
            self._layer_deltas(layer)[:] = (
                outputs * (1.0 - outputs) * propagated
            )

        # Output layer first, then hidden layers from last to first
        for layer in reversed(layers):
            weights = self._layer_weights(layer)
            deltas = self._layer_deltas(layer)
            weights[:, 0] += deltas * learning_rate * -1.0
            weights[:, 1:] += learning_rate * np.outer(
                deltas, self._layer_inputs(layer)
            )

    # ------------------------------------------------------------------
    # Evaluation helpers
    # ------------------------------------------------------------------

    def test_inference(
        self,
        inputs: Sequence[float],
        expected: Sequence[float],
        strict: bool = False
    ) -> bool:
        """
        Check one sample against its expected outputs.

        A sample is wrong when an output falls below 0.5 while its expected
        value is non-zero. With ``strict`` an output at or above 0.5 for a
        zero expectation also counts as wrong.
        """
        outputs = self.inference(inputs)
        expected = np.asarray(expected, dtype=np.float64) != 0
        missed = (outputs < 0.5) & expected
        if strict:
            missed |= (outputs >= 0.5) & ~expected
        return not bool(np.any(missed))

    def calculate_accuracy(
        self,
        inputs,
        expected,
        epoch: int = 1,
        strict: bool = False
    ) -> float:
        """
        Fraction of correct ``test_inference`` results.

        Args:
            inputs: One input row, or a 2-D sequence of input rows
            expected: The matching expected output row(s)
            epoch: Number of times every sample is evaluated
            strict: Also count outputs above threshold for zero targets

        Returns:
            Accuracy in [0.0, 1.0]

        Raises:
            ValueError: If epoch < 1 or no samples were given
        """
        if epoch < 1:
            raise ValueError(f"epoch must be >= 1, got {epoch}")

        inputs = np.asarray(inputs, dtype=np.float64)
        expected = np.asarray(expected, dtype=np.float64)
        if inputs.ndim == 1:
            inputs = inputs.reshape(1, -1)
            expected = expected.reshape(1, -1)

        if len(inputs) == 0:
            raise ValueError("calculate_accuracy needs at least one sample")

        correct = 0
        for _ in range(epoch):
            for row, target in zip(inputs, expected):
                if self.test_inference(row, target, strict=strict):
                    correct += 1

        return correct / (epoch * len(inputs))

    def calculate_loss(
        self,
        inputs,
        expected,
        epoch: int = 1,
        strict: bool = False
    ) -> float:
        """Complement of ``calculate_accuracy``."""
        return 1.0 - self.calculate_accuracy(inputs, expected, epoch, strict)

    def recommended_hidden_neuron_count(self) -> Optional[int]:
        """Geometric-mean rule of thumb: sqrt(inputs * outputs)."""
        if self.input_neurons <= 0 or self.output_neurons <= 0:
            return None
        return int(math.sqrt(self.input_neurons * self.output_neurons))

    def recommended_hidden_layer_count(
        self,
        num_samples: int,
        alpha: int
    ) -> Optional[int]:
        """
        Rule of thumb: samples / (alpha * (inputs + outputs)).

        Returns None when any operand is not positive or the result is
        below one layer.
        """
        if (self.input_neurons <= 0 or self.output_neurons <= 0 or
                num_samples <= 0 or alpha <= 0):
            return None

        count = num_samples // (
            alpha * (self.input_neurons + self.output_neurons)
        )
        if count < 1:
            return None
        return count

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def save_to_file(self, stream) -> NetworkError:
        """Write the model to an open binary stream (see tinyann.model_io)."""
        from tinyann import model_io
        return model_io.save_to_file(self, stream)

    def load_from_file(self, stream) -> NetworkError:
        """Replace this network with the model read from ``stream``."""
        from tinyann import model_io
        return model_io.load_from_file(self, stream)
