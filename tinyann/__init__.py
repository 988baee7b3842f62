"""
tinyann package
~~~~~~~~~~~~~~~

Lightweight feedforward neural network engine for memory-constrained
deployments. Contains the flat-buffer network implementation, activation
functions, the binary model codec, a SQLite model registry and the API
server.
"""

from tinyann.errors import NetworkError
from tinyann.network import Network

__version__ = "1.0.0"

__all__ = ["Network", "NetworkError", "__version__"]
