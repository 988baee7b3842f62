"""
activations.py
~~~~~~~~~~~~~~

Transfer functions applied to a layer's weighted sums.

The built-in functions accept a numpy array (or a scalar) and return values
of the same shape. Inputs outside [LOWER_BOUND, UPPER_BOUND] are clamped to
0 and 1 respectively to avoid overflow in ``exp``. Any other callable is
treated as a scalar function and vectorized before it is applied to a layer.

Training uses the logistic derivative ``f(x) * (1 - f(x))`` whatever the
active function is, so only the sigmoid trains with an exact gradient.
"""

from typing import Callable, Dict

import numpy as np

LOWER_BOUND = -30.0
UPPER_BOUND = 30.0

Activation = Callable[[np.ndarray], np.ndarray]


def _clamped(x, transform: Activation) -> np.ndarray:
    x = np.asarray(x, dtype=np.float64)
    inner = transform(np.clip(x, LOWER_BOUND, UPPER_BOUND))
    return np.where(x < LOWER_BOUND, 0.0,
                    np.where(x > UPPER_BOUND, 1.0, inner))


def sigmoid(x) -> np.ndarray:
    """Logistic function 1 / (1 + e^-x), bounded to [0, 1]."""
    return _clamped(x, lambda z: 1.0 / (1.0 + np.exp(-z)))


def gaussian(x) -> np.ndarray:
    """Bell curve e^(-x^2), with the same clamping as the sigmoid."""
    return _clamped(x, lambda z: np.exp(-z * z))


ACTIVATIONS: Dict[str, Activation] = {
    'sigmoid': sigmoid,
    'gaussian': gaussian,
}


def get_activation(name: str) -> Activation:
    """
    Look up a built-in activation function by name.

    Raises:
        ValueError: If no activation is registered under ``name``
    """
    try:
        return ACTIVATIONS[name]
    except KeyError:
        raise ValueError(
            f"Unknown activation '{name}'. "
            f"Choose from: {', '.join(sorted(ACTIVATIONS))}"
        ) from None


def activation_name(activation: Activation) -> str:
    """Return the registered name of ``activation`` or its __name__."""
    for name, func in ACTIVATIONS.items():
        if func is activation:
            return name
    return getattr(activation, '__name__', repr(activation))


def layer_transfer(activation: Activation) -> Activation:
    """
    Return a version of ``activation`` that maps a whole layer at once.

    Built-in functions already work on arrays and are returned unchanged;
    anything else is wrapped with ``numpy.vectorize`` so plain scalar
    functions (for example ones built on ``math.exp``) can be plugged in.
    """
    if any(activation is func for func in ACTIVATIONS.values()):
        return activation
    return np.vectorize(activation, otypes=[np.float64])
