"""
Credential store interface.

The control plane only checks that a referenced secret exists and wires a
mount reference into agent specs. Secret contents are never read.
"""

from __future__ import annotations

from typing import Protocol

SECRET_MOUNT_ROOT = "/var/run/secrets/swarmplane"


class SecretStore(Protocol):
    async def exists(self, name: str) -> bool: ...

    async def mount_spec(self, name: str) -> dict[str, str]: ...


class InMemorySecretStore:
    def __init__(self, names: set[str] | None = None):
        self.names = set(names or ())

    def add(self, name: str) -> None:
        self.names.add(name)

    async def exists(self, name: str) -> bool:
        return name in self.names

    async def mount_spec(self, name: str) -> dict[str, str]:
        return {"secret": name, "mount_path": f"{SECRET_MOUNT_ROOT}/{name}"}
