import logging
from typing import Any, Optional

import keyring
from keyring.backends import fail, null
from keyring.errors import KeyringError


logger = logging.getLogger("uvicorn.error")


class SecretVault:
    """Stores credentials in the OS keyring when one is usable."""

    def __init__(self, service_name: str, backend: Optional[Any] = None) -> None:
        self.service_name = service_name
        self._backend = backend

    def _keyring(self) -> Any:
        if self._backend is None:
            self._backend = keyring.get_keyring()
        return self._backend

    @property
    def available(self) -> bool:
        try:
            backend = self._keyring()
        except Exception as exc:
            logger.warning("Keyring lookup failed: %s", exc)
            return False
        return not isinstance(backend, (fail.Keyring, null.Keyring))

    def encrypt(self, name: str, value: str) -> bool:
        if not self.available:
            logger.warning("No OS keyring available; %s will be stored in clear text", name)
            return False
        try:
            self._keyring().set_password(self.service_name, name, value)
        except (KeyringError, ValueError, RuntimeError, OSError) as exc:
            logger.warning("Keyring write for %s failed, storing in clear text: %s", name, exc)
            return False
        return True

    def decrypt(self, name: str) -> Optional[str]:
        if not self.available:
            return None
        try:
            return self._keyring().get_password(self.service_name, name)
        except (KeyringError, ValueError, RuntimeError, OSError) as exc:
            logger.warning("Keyring read for %s failed: %s", name, exc)
            return None

    def forget(self, name: str) -> None:
        if not self.available:
            return
        try:
            self._keyring().delete_password(self.service_name, name)
        except (KeyringError, ValueError, RuntimeError, OSError) as exc:
            logger.debug("Keyring delete for %s skipped: %s", name, exc)
