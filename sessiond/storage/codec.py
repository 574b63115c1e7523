"""
Session record codec.

Sessions are stored as JSON documents tagged with the schema version. The
password never reaches Redis in clear text: it is obfuscated with a Fernet
key derived from the configured encryption key.
"""

import base64
import json
import logging
import threading
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from sessiond.exceptions import ConfigurationError, SessiondError, VersionMismatchError
from sessiond.storage.keys import VERSION
from sessiond.storage.models import Session

logger = logging.getLogger(__name__)

_KDF_SALT = b"ox-sessiond-password-obfuscation"
_KDF_ITERATIONS = 100_000


class Obfuscator:
    """Reversible password obfuscation backed by Fernet."""

    def __init__(self, encryption_key: str):
        if not encryption_key:
            raise ConfigurationError("Missing encryption key for password obfuscation")
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=_KDF_SALT,
            iterations=_KDF_ITERATIONS,
        )
        key = base64.urlsafe_b64encode(kdf.derive(encryption_key.encode("utf-8")))
        self._fernet: Optional[Fernet] = Fernet(key)
        self._lock = threading.Lock()

    def _cipher(self) -> Fernet:
        with self._lock:
            if self._fernet is None:
                raise SessiondError("Obfuscator has been destroyed")
            return self._fernet

    def obfuscate(self, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        return self._cipher().encrypt(value.encode("utf-8")).decode("ascii")

    def unobfuscate(self, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        try:
            return self._cipher().decrypt(value.encode("ascii")).decode("utf-8")
        except InvalidToken as e:
            raise SessiondError("Stored password cannot be unobfuscated") from e

    def destroy(self) -> None:
        """Drop the key material; the obfuscator is unusable afterwards."""
        with self._lock:
            self._fernet = None


class SessionCodec:
    """Turns sessions into Redis values and back."""

    def __init__(self, obfuscator: Obfuscator, version: int = VERSION):
        self.obfuscator = obfuscator
        self.version = version

    def encode(self, session: Session) -> str:
        data = session.to_dict()
        data["password"] = self.obfuscator.obfuscate(data.get("password"))
        data["version"] = self.version
        return json.dumps(data, separators=(",", ":"))

    def decode(self, value) -> Session:
        """Decode a stored record.

        Raises:
            VersionMismatchError: If the record was written with another schema version
        """
        if isinstance(value, bytes):
            value = value.decode("utf-8")
        data = json.loads(value)
        found = int(data.get("version", 0))
        if found != self.version:
            raise VersionMismatchError(found, self.version)
        data["password"] = self.obfuscator.unobfuscate(data.get("password"))
        return Session.from_dict(data)
