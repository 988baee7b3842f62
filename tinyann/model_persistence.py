"""
model_persistence.py
~~~~~~~~~~~~~~~~~~~~

SQLite-based registry for trained networks.

Each row stores a network as a blob in the binary model format of
``tinyann.model_io``, next to its topology (as JSON, for querying),
activation name, training status and accuracy.
"""

import sqlite3
import json
import os
import logging
from typing import Optional, List, Dict, Any, Generator
from contextlib import contextmanager

from tinyann import model_io
from tinyann.activations import activation_name, get_activation
from tinyann.network import Network
from tinyann.topology import calculate_counts

# Configure module logger
logger = logging.getLogger(__name__)

DEFAULT_MODEL_DIR = os.getenv('TINYANN_MODEL_DIR', 'models')


class ModelDatabase:
    """
    Manages the SQLite database of saved networks.

    The database stores:
    - Network metadata (topology, activation, training status, accuracy)
    - Serialized networks as binary model blobs
    """

    def __init__(self, db_path: str = f'{DEFAULT_MODEL_DIR}/networks.db'):
        """
        Initialize the database connection.

        Args:
            db_path: Path to the SQLite database file
        """
        self.db_path = db_path
        self._ensure_directory()
        self._initialize_schema()

    def _ensure_directory(self) -> None:
        """Create the database directory if it doesn't exist."""
        db_dir = os.path.dirname(self.db_path)
        if db_dir and not os.path.exists(db_dir):
            os.makedirs(db_dir)

    @contextmanager
    def _get_connection(self) -> Generator[sqlite3.Connection, None, None]:
        """
        Context manager for database connections.

        Yields:
            sqlite3.Connection: Database connection
        """
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _initialize_schema(self) -> None:
        """Create the database schema if it doesn't exist."""
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute('''
                CREATE TABLE IF NOT EXISTS networks (
                    network_id TEXT PRIMARY KEY,
                    topology TEXT NOT NULL,
                    activation TEXT NOT NULL,
                    model_data BLOB NOT NULL,
                    trained INTEGER NOT NULL DEFAULT 0,
                    accuracy REAL,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            ''')

            cursor.execute('''
                CREATE INDEX IF NOT EXISTS idx_trained
                ON networks(trained)
            ''')

            cursor.execute('''
                CREATE INDEX IF NOT EXISTS idx_created_at
                ON networks(created_at DESC)
            ''')

    @staticmethod
    def _row_to_metadata(row: sqlite3.Row) -> Dict[str, Any]:
        topology = json.loads(row['topology'])
        weight_count, neuron_count = calculate_counts(
            topology['input_neurons'],
            topology['hidden_layers'],
            topology['hidden_neurons'],
            topology['output_neurons']
        )
        return {
            'network_id': row['network_id'],
            'topology': topology,
            'activation': row['activation'],
            'weight_count': weight_count,
            'neuron_count': neuron_count,
            'trained': bool(row['trained']),
            'accuracy': row['accuracy'],
            'created_at': row['created_at'],
            'updated_at': row['updated_at']
        }

    def save_network_to_db(
        self,
        network: Network,
        network_id: str,
        trained: bool = True,
        accuracy: Optional[float] = None
    ) -> bool:
        """
        Save a network to the database, replacing any previous version.

        The original creation time of an existing entry is kept.

        Args:
            network: Network to save
            network_id: Unique identifier for the network
            trained: Whether the network has been trained
            accuracy: Training accuracy (0.0 to 1.0)

        Returns:
            bool: True if successful

        Raises:
            ValueError: If accuracy is out of range or the network
                cannot be serialized
        """
        if accuracy is not None and not 0.0 <= accuracy <= 1.0:
            raise ValueError(
                f"Accuracy must be between 0.0 and 1.0, got {accuracy}"
            )

        model_data = model_io.dumps(network)
        topology_json = json.dumps(network.topology)

        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute('''
                INSERT INTO networks
                (network_id, topology, activation, model_data, trained,
                 accuracy, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, CURRENT_TIMESTAMP)
                ON CONFLICT(network_id) DO UPDATE SET
                    topology = excluded.topology,
                    activation = excluded.activation,
                    model_data = excluded.model_data,
                    trained = excluded.trained,
                    accuracy = excluded.accuracy,
                    updated_at = CURRENT_TIMESTAMP
            ''', (
                network_id,
                topology_json,
                activation_name(network.activation),
                model_data,
                1 if trained else 0,
                accuracy
            ))

        logger.info(
            f"Saved network '{network_id}' with topology "
            f"{network.topology}, trained={trained}, accuracy={accuracy}"
        )
        return True

    def load_network_from_db(self, network_id: str) -> Optional[Network]:
        """
        Load a network from the database.

        Args:
            network_id: Unique identifier of the network

        Returns:
            Network object or None if not found or unreadable
        """
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute(
                'SELECT model_data, activation FROM networks '
                'WHERE network_id = ?',
                (network_id,)
            )
            row = cursor.fetchone()

        if row is None:
            logger.warning(f"Network '{network_id}' not found")
            return None

        network, error = model_io.loads(bytes(row['model_data']))
        if error:
            logger.error(
                f"Stored model for network '{network_id}' is unreadable: "
                f"{error.name}"
            )
            return None

        try:
            network.activation = get_activation(row['activation'])
        except ValueError:
            logger.warning(
                f"Network '{network_id}' uses unregistered activation "
                f"'{row['activation']}', falling back to sigmoid"
            )

        logger.info(f"Loaded network '{network_id}'")
        return network

    def list_networks_from_db(self) -> List[Dict[str, Any]]:
        """
        List all networks with metadata, newest first.

        Returns:
            List of network metadata dictionaries
        """
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute('''
                SELECT
                    network_id,
                    topology,
                    activation,
                    trained,
                    accuracy,
                    created_at,
                    updated_at
                FROM networks
                ORDER BY created_at DESC
            ''')
            networks = [self._row_to_metadata(row)
                        for row in cursor.fetchall()]

        logger.debug(f"Listed {len(networks)} networks")
        return networks

    def delete_network_from_db(self, network_id: str) -> bool:
        """
        Delete a network from the database.

        Returns:
            bool: True if deleted, False if not found
        """
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute(
                'DELETE FROM networks WHERE network_id = ?',
                (network_id,)
            )

            deleted = cursor.rowcount > 0
            if deleted:
                logger.info(f"Deleted network '{network_id}'")
            else:
                logger.warning(
                    f"Could not delete network '{network_id}': not found"
                )
            return deleted

    def delete_old_networks_from_db(self, days: int) -> int:
        """
        Delete networks created more than ``days`` days ago.

        Args:
            days: Age threshold in days (0 deletes anything older than now)

        Returns:
            int: Number of networks deleted

        Raises:
            ValueError: If days is negative
        """
        if days < 0:
            raise ValueError(f"days must be non-negative, got {days}")

        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute(
                "DELETE FROM networks "
                "WHERE created_at < datetime('now', ?)",
                (f'-{int(days)} days',)
            )
            deleted = cursor.rowcount

        logger.info(f"Deleted {deleted} network(s) older than {days} day(s)")
        return deleted

    def get_network_metadata_from_db(
        self,
        network_id: str
    ) -> Optional[Dict[str, Any]]:
        """
        Get network metadata without decoding the model.

        Returns:
            Metadata dictionary or None if not found
        """
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute('''
                SELECT
                    network_id,
                    topology,
                    activation,
                    trained,
                    accuracy,
                    created_at,
                    updated_at
                FROM networks
                WHERE network_id = ?
            ''', (network_id,))
            row = cursor.fetchone()

        if row is None:
            logger.warning(
                f"Metadata for network '{network_id}' not found"
            )
            return None

        return self._row_to_metadata(row)


# Global database instance
_db = None


def _get_db(model_dir: str = DEFAULT_MODEL_DIR) -> ModelDatabase:
    """
    Get the database for ``model_dir``.

    The default directory shares one global instance; other directories
    get a fresh instance per call.
    """
    global _db
    if model_dir != DEFAULT_MODEL_DIR:
        return ModelDatabase(db_path=f'{model_dir}/networks.db')
    if _db is None:
        _db = ModelDatabase()
    return _db


def save_network(
    network: Network,
    network_id: str,
    model_dir: str = DEFAULT_MODEL_DIR,
    trained: bool = True,
    accuracy: Optional[float] = None
) -> bool:
    """
    Save a network to the registry.

    Args:
        network: The network to save
        network_id: A unique identifier for the network
        model_dir: Directory for the database file
        trained: Whether the network has been trained
        accuracy: The accuracy of the trained network (0.0 to 1.0)

    Returns:
        bool: True if the save was successful, False otherwise

    Example:
        >>> net = Network(seed=1)
        >>> net.initialize(2, 1, 3, 1)
        >>> save_network(net, "xor", trained=False)
        True
    """
    if not network_id or not isinstance(network_id, str):
        logger.error("Invalid network_id: must be a non-empty string")
        return False

    try:
        db = _get_db(model_dir)
        return db.save_network_to_db(network, network_id, trained, accuracy)

    except ValueError as e:
        logger.error(f"Validation error saving network '{network_id}': {e}")
        return False
    except sqlite3.Error as e:
        logger.error(f"Database error saving network '{network_id}': {e}")
        return False
    except Exception as e:
        logger.exception(
            f"Unexpected error saving network '{network_id}': {e}"
        )
        return False


def load_network(
    network_id: str,
    model_dir: str = DEFAULT_MODEL_DIR
) -> Optional[Network]:
    """
    Load a network from the registry.

    Returns:
        The loaded network or None if not found

    Example:
        >>> net = load_network("xor")
        >>> if net:
        ...     print(net.inference([0, 1]))
    """
    if not network_id or not isinstance(network_id, str):
        logger.error("Invalid network_id: must be a non-empty string")
        return None

    try:
        return _get_db(model_dir).load_network_from_db(network_id)

    except sqlite3.Error as e:
        logger.error(
            f"Database error loading network '{network_id}': {e}"
        )
        return None
    except Exception as e:
        logger.exception(
            f"Unexpected error loading network '{network_id}': {e}"
        )
        return None


def list_saved_networks(
    model_dir: str = DEFAULT_MODEL_DIR
) -> List[Dict[str, Any]]:
    """
    List all saved networks with their metadata.

    Returns:
        list: Metadata dictionaries, empty on error
    """
    try:
        return _get_db(model_dir).list_networks_from_db()

    except sqlite3.Error as e:
        logger.error(f"Database error listing networks: {e}")
        return []
    except json.JSONDecodeError as e:
        logger.error(f"JSON decode error listing networks: {e}")
        return []
    except Exception as e:
        logger.exception(f"Unexpected error listing networks: {e}")
        return []


def delete_network(
    network_id: str,
    model_dir: str = DEFAULT_MODEL_DIR
) -> bool:
    """
    Delete a saved network.

    Returns:
        bool: True if deletion was successful, False otherwise
    """
    if not network_id or not isinstance(network_id, str):
        logger.error("Invalid network_id: must be a non-empty string")
        return False

    try:
        return _get_db(model_dir).delete_network_from_db(network_id)

    except sqlite3.Error as e:
        logger.error(f"Database error deleting network '{network_id}': {e}")
        return False
    except Exception as e:
        logger.exception(
            f"Unexpected error deleting network '{network_id}': {e}"
        )
        return False


def delete_old_networks(
    days: int = 2,
    model_dir: str = DEFAULT_MODEL_DIR
) -> int:
    """
    Delete saved networks older than ``days`` days.

    Returns:
        int: Number of networks deleted, or -1 on database error

    Raises:
        ValueError: If days is negative
    """
    if days < 0:
        raise ValueError(f"days must be non-negative, got {days}")

    try:
        return _get_db(model_dir).delete_old_networks_from_db(days)

    except sqlite3.Error as e:
        logger.error(f"Database error deleting old networks: {e}")
        return -1
    except Exception as e:
        logger.exception(f"Unexpected error deleting old networks: {e}")
        return -1


def get_network_metadata(
    network_id: str,
    model_dir: str = DEFAULT_MODEL_DIR
) -> Optional[Dict[str, Any]]:
    """
    Get metadata for a saved network without decoding its model.

    Returns:
        dict: Network metadata or None if not found
    """
    if not network_id or not isinstance(network_id, str):
        logger.error("Invalid network_id: must be a non-empty string")
        return None

    try:
        return _get_db(model_dir).get_network_metadata_from_db(network_id)

    except sqlite3.Error as e:
        logger.error(
            f"Database error getting metadata for '{network_id}': {e}"
        )
        return None
    except json.JSONDecodeError as e:
        logger.error(
            f"JSON decode error getting metadata for '{network_id}': {e}"
        )
        return None
    except Exception as e:
        logger.exception(
            f"Unexpected error getting metadata for '{network_id}': {e}"
        )
        return None
