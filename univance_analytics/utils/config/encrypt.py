import logging

from cryptography.fernet import Fernet

#-----------------------------------------------------------------------------

class AbstractEncrypter:
    def decrypt(self, s: str) -> str: ...
    def encrypt(self, s: str) -> str: ...
    def is_encrypted(self, s: str) -> bool: ...

#-----------------------------------------------------------------------------

class FernetEncrypter(AbstractEncrypter):
    """Encrypts secret config values in place so YAML files never keep them in plain text."""

    # Fernet tokens are base64 of a 0x80 version byte followed by the timestamp.
    TOKEN_PREFIX = "gAAAA"

    def __init__(self, key: str):
        self._key = key.strip()

        try:
            self._fernet = Fernet(self._key) if self._key else None
        except Exception as e:
            logging.error(f"Invalid config encryption key: {str(e)}")
            self._fernet = None

    @property
    def enabled(self) -> bool:
        return self._fernet is not None

    #-----------------------------------------------------

    def decrypt(self, s: str) -> str:
        if not s or not self._fernet or not self.is_encrypted(s):
            return s

        try:
            return self._fernet.decrypt(s.encode()).decode()
        except Exception as e:
            # Wrong key: hand back the token untouched.
            logging.error(f"Failed to decrypt config value: {str(e)}")
            return s


    def encrypt(self, s: str) -> str:
        if not s or not self._fernet:
            return s

        try:
            return self._fernet.encrypt(s.encode()).decode()
        except Exception as e:
            logging.error(f"Failed to encrypt config value: {str(e)}")
            return s


    def is_encrypted(self, s: str) -> bool:
        return s.startswith(self.TOKEN_PREFIX)

#-----------------------------------------------------------------------------
