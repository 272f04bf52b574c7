"""In-memory secret store for testing."""

from __future__ import annotations

import threading

from provisioner.core.errors import SecretAlreadyExistsError


class InMemorySecretStore:
    def __init__(self):
        self._secrets: dict[str, dict[str, str]] = {}
        self._lock = threading.Lock()
        self.creates = 0

    def get_secret(self, name: str) -> dict[str, str] | None:
        with self._lock:
            data = self._secrets.get(name)
            return dict(data) if data is not None else None

    def create_secret(self, name: str, data: dict[str, str]) -> None:
        if not self.create_secret_if_absent(name, data):
            raise SecretAlreadyExistsError(f"secret {name!r} already exists", resource=name)

    def create_secret_if_absent(self, name: str, data: dict[str, str]) -> bool:
        with self._lock:
            if name in self._secrets:
                return False
            self._secrets[name] = dict(data)
            self.creates += 1
            return True

    def put_secret(self, name: str, data: dict[str, str]) -> None:
        """Overwrite a secret unconditionally (test setup only)."""
        with self._lock:
            self._secrets[name] = dict(data)

    def delete_secret(self, name: str) -> None:
        with self._lock:
            self._secrets.pop(name, None)
