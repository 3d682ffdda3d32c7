"""
This module handles the encryption key for the HabitLog data files.

It uses the `cryptography` library (Fernet symmetric encryption) so that the snapshot,
the change log, the password hashes and the bloodwork bytes are encrypted at rest.
The key lives in a file (`secret.key` by default). If the file does not exist it is
generated on first use.

Security Note: the key file must be kept secure and must not be committed to version
control. Losing it makes every stored record unreadable; the store then starts over
from its seed data.
"""
# habitlog/encryption.py

import logging
import os

from cryptography.fernet import Fernet

from habitlog import config

logger = logging.getLogger(__name__)


def write_key(path: str) -> bytes:
    """Generates a new Fernet key and saves it to `path`."""
    key = Fernet.generate_key()
    directory = os.path.dirname(path)
    if directory:
        os.makedirs(directory, exist_ok=True)
    with open(path, "wb") as key_file:
        key_file.write(key)
    return key


def load_key(path: str) -> bytes:
    """Loads the Fernet key from `path`.

    Raises:
        FileNotFoundError: If the key file does not exist.
    """
    with open(path, "rb") as key_file:
        return key_file.read()


def get_encryptor(path: str | None = None) -> Fernet:
    """Returns a Fernet instance for the key at `path`, generating the key if needed."""
    path = path or config.KEY_FILE
    try:
        key = load_key(path)
    except FileNotFoundError:
        logger.warning("Encryption key not found at %s. Generating a new one.", path)
        key = write_key(path)
    return Fernet(key)
