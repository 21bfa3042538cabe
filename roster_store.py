"""
Wallet roster persistence.

Loads and saves the durable wallet roster as JSON. Two layouts are read:

- the plain list written by older tooling:
  ``[{"pubkey": ..., "privateKey": [64 ints], "name": ..., "isSeasoned": ...}]``
- the enveloped layout written here:
  ``{"version", "updated_at", "encrypted", "salt", "wallets": [...]}``

With a password, secrets are stored Fernet-encrypted under a single
PBKDF2-derived key per file. A roster that cannot be parsed or decrypted
raises RosterLoadError; the pool must never run on an assumed-empty roster.
"""

import os
import json
import base64
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import List, Dict, Any, Optional

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from solders.keypair import Keypair

from utils import logger, RosterLoadError, format_pubkey


ROSTER_VERSION = "2.0"


@dataclass
class WalletRecord:
    """Persistent part of a pool wallet."""
    pubkey: str
    keypair: Keypair
    name: str
    is_seasoned: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            'pubkey': self.pubkey,
            'privateKey': list(bytes(self.keypair)),
            'name': self.name,
            'isSeasoned': self.is_seasoned,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'WalletRecord':
        """
        Build a record from its serialized form.

        Raises:
            ValueError: not a mapping, missing secret, wrong length, or a
                pubkey that does not belong to the secret
        """
        if not isinstance(data, dict):
            raise ValueError(f"wallet entry must be an object, got {type(data).__name__}")

        secret = data.get('privateKey')
        if secret is None:
            raise ValueError("wallet entry has no privateKey")

        secret = bytes(secret)
        if len(secret) != 64:
            raise ValueError(f"privateKey must be 64 bytes, got {len(secret)}")
        try:
            keypair = Keypair.from_bytes(secret)
        except Exception as e:
            raise ValueError(f"invalid keypair bytes: {e}") from e

        derived = str(keypair.pubkey())
        pubkey = data.get('pubkey') or derived
        if pubkey != derived:
            raise ValueError(f"pubkey {format_pubkey(pubkey)} does not match its secret key")

        return cls(
            pubkey=pubkey,
            keypair=keypair,
            name=data.get('name') or f"Wallet-{pubkey[:6]}",
            is_seasoned=bool(data.get('isSeasoned', False)),
        )

    @classmethod
    def generate(cls, name: str) -> 'WalletRecord':
        keypair = Keypair()
        return cls(pubkey=str(keypair.pubkey()), keypair=keypair, name=name)


class WalletRosterStore:
    """
    JSON file store for the wallet roster.

    Args:
        path: Roster file location
        password: When set, secrets are encrypted at rest
        kdf_iterations: PBKDF2 iterations for the file key
    """

    def __init__(self, path: str, password: Optional[str] = None, kdf_iterations: int = 480000):
        self.path = Path(path)
        self.password = password
        self.kdf_iterations = kdf_iterations

    def _fernet(self, salt: bytes) -> Fernet:
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=salt,
            iterations=self.kdf_iterations,
        )
        return Fernet(base64.urlsafe_b64encode(kdf.derive(self.password.encode())))

    def load_roster(self) -> List[WalletRecord]:
        """
        Load every wallet record from disk.

        Returns:
            Records in file order; empty when no roster file exists yet

        Raises:
            RosterLoadError: unreadable, corrupt or undecryptable roster
        """
        if not self.path.exists():
            logger.info(f"No existing roster at {self.path}")
            return []

        try:
            with open(self.path, 'r') as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise RosterLoadError(f"Failed to read roster {self.path}: {e}") from e

        if isinstance(data, list):
            entries = data
        elif isinstance(data, dict) and isinstance(data.get('wallets'), list):
            entries = data['wallets']
            if data.get('encrypted'):
                entries = self._decrypt_entries(entries, data.get('salt'))
        else:
            raise RosterLoadError(f"Unrecognized roster layout in {self.path}")

        records = []
        for index, entry in enumerate(entries):
            try:
                records.append(WalletRecord.from_dict(entry))
            except (ValueError, TypeError) as e:
                raise RosterLoadError(f"Corrupt wallet entry #{index} in {self.path}: {e}") from e

        logger.info(f"Loaded {len(records)} wallets from {self.path}")
        return records

    def _decrypt_entries(self, entries: List[Dict[str, Any]], salt_b64: Optional[str]) -> List[Dict[str, Any]]:
        if not self.password:
            raise RosterLoadError(f"Roster {self.path} is encrypted; a password is required")
        if not salt_b64:
            raise RosterLoadError(f"Roster {self.path} is missing its salt")

        try:
            salt = base64.b64decode(salt_b64, validate=True)
        except (TypeError, ValueError) as e:
            raise RosterLoadError(f"Roster {self.path} has an invalid salt") from e

        fernet = self._fernet(salt)
        decrypted = []
        for index, entry in enumerate(entries):
            if not isinstance(entry, dict):
                raise RosterLoadError(f"Corrupt wallet entry #{index} in {self.path}: not an object")
            try:
                secret = fernet.decrypt(base64.b64decode(entry['encryptedKey']))
            except (InvalidToken, KeyError, TypeError, ValueError) as e:
                raise RosterLoadError(f"Cannot decrypt roster {self.path}: wrong password or corrupt entry") from e
            decrypted.append({**entry, 'privateKey': list(secret)})
        return decrypted

    def save_roster(self, records: List[WalletRecord]):
        """Write the full roster atomically with owner-only permissions."""
        entries = [r.to_dict() for r in records]
        data: Dict[str, Any] = {
            'version': ROSTER_VERSION,
            'updated_at': datetime.now().isoformat(),
            'encrypted': bool(self.password),
            'salt': None,
            'wallets': entries,
        }

        if self.password:
            salt = os.urandom(16)
            fernet = self._fernet(salt)
            data['salt'] = base64.b64encode(salt).decode()
            data['wallets'] = [
                {
                    'pubkey': e['pubkey'],
                    'name': e['name'],
                    'isSeasoned': e['isSeasoned'],
                    'encryptedKey': base64.b64encode(fernet.encrypt(bytes(e['privateKey']))).decode(),
                }
                for e in entries
            ]

        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(self.path.suffix + '.tmp')

        try:
            fd = os.open(tmp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
            with os.fdopen(fd, 'w') as f:
                json.dump(data, f, indent=2)
            os.chmod(tmp_path, 0o600)
            os.replace(tmp_path, self.path)
        except Exception as e:
            logger.error(f"Failed to save roster: {e}")
            raise

        logger.debug(f"Saved {len(records)} wallets to {self.path}")
