"""
Encryption utilities for backup archives.

Files are encrypted with AES-256-GCM under a static key from configuration.
Encrypted file layout (no header, no version byte):

    [12-byte nonce][ciphertext][16-byte authentication tag]
"""

import base64
import binascii
import logging
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from ipfs_backup.config import ConfigurationError


logger = logging.getLogger(__name__)

KEY_SIZE = 32
NONCE_SIZE = 12
TAG_SIZE = 16
CHUNK_SIZE = 64 * 1024


class EncryptionError(Exception):
    """Raised when a file cannot be encrypted or decrypted."""
    pass


class AuthenticationFailed(EncryptionError):
    """Raised when the authentication tag of an encrypted file does not verify."""
    pass


def load_key(encoded_key: str) -> bytes:
    """
    Decode the configured encryption key.

    Args:
        encoded_key: Base64-encoded 256-bit key

    Returns:
        32 raw key bytes

    Raises:
        ConfigurationError: If the key is missing, not base64 or not 32 bytes
    """
    if not encoded_key:
        raise ConfigurationError("BACKUP_ENCRYPTION_KEY is not configured")

    try:
        key = base64.b64decode(encoded_key, validate=True)
    except (binascii.Error, ValueError) as e:
        raise ConfigurationError(f"BACKUP_ENCRYPTION_KEY is not valid base64: {e}")

    if len(key) != KEY_SIZE:
        raise ConfigurationError(
            f"BACKUP_ENCRYPTION_KEY must decode to {KEY_SIZE} bytes (256 bits), got {len(key)}"
        )

    return key


def generate_key() -> str:
    """Generate a new random key in the configuration (base64) format."""
    return base64.b64encode(os.urandom(KEY_SIZE)).decode()


def _remove_quietly(path: str):
    try:
        if os.path.exists(path):
            os.remove(path)
    except OSError as e:
        logger.warning(f"Failed to remove partial output {path}: {e}")


class FileCipher:
    """Encrypts and decrypts whole files as a single AES-256-GCM unit."""

    def __init__(self, key: bytes):
        """
        Initialize the cipher.

        Args:
            key: 32 raw key bytes (see load_key)
        """
        if len(key) != KEY_SIZE:
            raise ConfigurationError(f"Encryption key must be {KEY_SIZE} bytes, got {len(key)}")
        self._key = key

    @classmethod
    def from_config(cls, settings) -> 'FileCipher':
        return cls(load_key(settings.get('BACKUP_ENCRYPTION_KEY', '')))

    def encrypt(self, input_path: str, output_path: str) -> str:
        """
        Encrypt a file.

        The plaintext is streamed in chunks, so the input may be larger
        than available memory.

        Args:
            input_path: Path to plaintext file
            output_path: Path where the encrypted file is written

        Returns:
            output_path

        Raises:
            EncryptionError: If reading, encrypting or writing fails
        """
        logger.debug(f"Encrypting {input_path} -> {output_path}")

        # A nonce must never repeat under the same key
        nonce = os.urandom(NONCE_SIZE)
        encryptor = Cipher(algorithms.AES(self._key), modes.GCM(nonce)).encryptor()

        try:
            with open(input_path, 'rb') as src, open(output_path, 'wb') as dst:
                dst.write(nonce)
                while True:
                    chunk = src.read(CHUNK_SIZE)
                    if not chunk:
                        break
                    dst.write(encryptor.update(chunk))
                dst.write(encryptor.finalize())
                dst.write(encryptor.tag)
        except OSError as e:
            _remove_quietly(output_path)
            raise EncryptionError(f"Failed to encrypt {input_path}: {e}") from e

        return output_path

    def decrypt(self, input_path: str, output_path: str) -> str:
        """
        Decrypt a file produced by encrypt().

        Plaintext goes to a temporary file next to output_path and is
        renamed into place only once the tag has verified.

        Args:
            input_path: Path to encrypted file
            output_path: Path where the plaintext is written

        Returns:
            output_path

        Raises:
            AuthenticationFailed: If the file is truncated, tampered with or
                encrypted under another key
            EncryptionError: If the file cannot be read or written
        """
        logger.debug(f"Decrypting {input_path} -> {output_path}")

        try:
            total_size = os.path.getsize(input_path)
        except OSError as e:
            raise EncryptionError(f"Encrypted file not readable: {input_path}: {e}") from e

        if total_size < NONCE_SIZE + TAG_SIZE:
            raise AuthenticationFailed(
                f"Encrypted file too short ({total_size} bytes): {input_path}"
            )

        partial_path = f"{output_path}.partial"

        try:
            with open(input_path, 'rb') as src:
                nonce = src.read(NONCE_SIZE)
                src.seek(total_size - TAG_SIZE)
                tag = src.read(TAG_SIZE)
                src.seek(NONCE_SIZE)

                decryptor = Cipher(algorithms.AES(self._key), modes.GCM(nonce, tag)).decryptor()
                remaining = total_size - NONCE_SIZE - TAG_SIZE

                with open(partial_path, 'wb') as dst:
                    while remaining > 0:
                        chunk = src.read(min(CHUNK_SIZE, remaining))
                        if not chunk:
                            raise EncryptionError(f"Unexpected end of file: {input_path}")
                        remaining -= len(chunk)
                        dst.write(decryptor.update(chunk))
                    dst.write(decryptor.finalize())

            os.replace(partial_path, output_path)

        except InvalidTag:
            _remove_quietly(partial_path)
            raise AuthenticationFailed(f"Authentication tag mismatch: {input_path}")
        except OSError as e:
            _remove_quietly(partial_path)
            raise EncryptionError(f"Failed to decrypt {input_path}: {e}") from e
        except EncryptionError:
            _remove_quietly(partial_path)
            raise

        return output_path
