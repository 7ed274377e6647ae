"""
Secret resolution for per-principal Clio credentials.

Each principal (user initials, or the shared "pbi" service principal) owns
a client id / client secret / refresh token triple stored under:

    {principal}-clio-v1-clientid
    {principal}-clio-v1-clientsecret
    {principal}-clio-v1-refreshtoken

Resolvers only need `get_secret(name) -> Optional[str]`. A resolver that
also has `set_secret(name, value)` is writable: TokenCache uses it to keep
a rotated refresh token, since Clio may invalidate the old one on use.

The file store keeps secrets as JSON on disk with owner-only permissions;
`python -m datahub setup` writes it.
"""
import json
import os
import stat
from pathlib import Path
from typing import Dict, Iterable, Optional, Protocol

SECRETS_FILE_DEFAULT = Path.home() / ".datahub" / "secrets.json"


def credential_names(principal: str) -> Dict[str, str]:
    """Secret names for a principal's Clio OAuth triple."""
    prefix = principal.lower()
    return {
        "client_id": f"{prefix}-clio-v1-clientid",
        "client_secret": f"{prefix}-clio-v1-clientsecret",
        "refresh_token": f"{prefix}-clio-v1-refreshtoken",
    }


class SecretResolver(Protocol):
    def get_secret(self, name: str) -> Optional[str]:
        ...


class EnvSecretResolver:
    """Reads `pbi-clio-v1-clientid` from the PBI_CLIO_V1_CLIENTID env var."""

    def __init__(self, environ: Optional[Dict[str, str]] = None):
        self._environ = os.environ if environ is None else environ

    @staticmethod
    def env_name(name: str) -> str:
        return name.upper().replace("-", "_")

    def get_secret(self, name: str) -> Optional[str]:
        return self._environ.get(self.env_name(name)) or None


class FileSecretStore:
    """
    JSON secret store on disk.

    Directory: 0700 (rwx------)
    File:      0600 (rw-------)
    """

    def __init__(self, path: Path = SECRETS_FILE_DEFAULT):
        self._path = Path(path)

    @property
    def path(self) -> Path:
        return self._path

    def exists(self) -> bool:
        return self._path.exists()

    def load(self) -> Dict[str, str]:
        if not self._path.exists():
            return {}
        return json.loads(self._path.read_text())

    def save(self, secrets: Dict[str, str]) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        os.chmod(self._path.parent, stat.S_IRWXU)  # 0700

        self._path.write_text(json.dumps(secrets, indent=2, sort_keys=True))
        os.chmod(self._path, stat.S_IRUSR | stat.S_IWUSR)  # 0600

    def get_secret(self, name: str) -> Optional[str]:
        return self.load().get(name) or None

    def set_secret(self, name: str, value: str) -> None:
        secrets = self.load()
        secrets[name] = value
        self.save(secrets)

    def has_principal(self, principal: str) -> bool:
        secrets = self.load()
        return all(secrets.get(n) for n in credential_names(principal).values())

    def store_principal(self, principal: str, client_id: str, client_secret: str, refresh_token: str) -> None:
        names = credential_names(principal)
        secrets = self.load()
        secrets[names["client_id"]] = client_id
        secrets[names["client_secret"]] = client_secret
        secrets[names["refresh_token"]] = refresh_token
        self.save(secrets)

    def clear_principal(self, principal: str) -> None:
        secrets = self.load()
        for name in credential_names(principal).values():
            secrets.pop(name, None)
        self.save(secrets)


class ChainSecretResolver:
    """First non-empty answer wins; writes go to the first writable resolver."""

    def __init__(self, resolvers: Iterable[SecretResolver]):
        self._resolvers = list(resolvers)

    def get_secret(self, name: str) -> Optional[str]:
        for resolver in self._resolvers:
            value = resolver.get_secret(name)
            if value:
                return value
        return None

    def set_secret(self, name: str, value: str) -> None:
        for resolver in self._resolvers:
            if hasattr(resolver, "set_secret"):
                resolver.set_secret(name, value)
                return
        raise TypeError("No writable secret resolver configured")
