"""Secrets lookup for Safee Core.

Organization passphrases and deployment secrets are resolved from
layered sources, highest priority first:

1. Values rotated at runtime
2. HashiCorp Vault (optional, needs ``hvac``)
3. Process environment
4. Docker secrets (``/run/secrets``)
5. ``.env`` file

Nothing here writes to ``os.environ``. Passphrases are never persisted by
the core and never logged; only masked values are exposed.
"""

import os
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from typing import Dict, List, Optional, Tuple
from uuid import UUID
import logging

logger = logging.getLogger(__name__)


# Must be present in production
REQUIRED_SECRETS = [
    "DATABASE_URL",
]

# Reported by get_sources() when set
OPTIONAL_SECRETS = [
    "REDIS_PASSWORD",
    "VAULT_TOKEN",
]

# Shared passphrase; per-organization overrides append _<ORG UUID HEX>
PASSPHRASE_PREFIX = "SAFEE_ORG_PASSPHRASE"

DOCKER_SECRETS_PATH = "/run/secrets"

UNSAFE_DEFAULTS = [
    "changeme",
    "password",
    "secret",
    "devpass",
]


def passphrase_key(organization_id: UUID) -> str:
    """Secret name holding an organization's passphrase."""
    return f"{PASSPHRASE_PREFIX}_{organization_id.hex.upper()}"


def mask(value: str, show_chars: int = 4) -> str:
    if not value or len(value) <= show_chars * 2:
        return "****"
    return f"{value[:show_chars]}****{value[-show_chars:]}"


@dataclass
class SecretSource:
    """Where a secret's effective value came from."""
    name: str
    source: str  # rotated, vault, env, docker_secret, env_file
    masked_value: str


@dataclass
class SecretsManager:
    env_file: Optional[str] = ".env"
    docker_secrets_path: str = DOCKER_SECRETS_PATH
    vault_url: Optional[str] = None
    vault_token: Optional[str] = None
    vault_path: str = "safee"
    _rotated: Dict[str, str] = field(default_factory=dict)
    _vault: Dict[str, str] = field(default_factory=dict)
    _docker: Dict[str, str] = field(default_factory=dict)
    _env_file: Dict[str, str] = field(default_factory=dict)
    _loaded: bool = False

    def load(self) -> None:
        """Read the file and Vault layers once; the environment is read live."""
        if self._loaded:
            return
        if self.env_file:
            self._env_file = self._read_env_file(Path(self.env_file))
        self._docker = self._read_docker_secrets(Path(self.docker_secrets_path))
        if self.vault_url and self.vault_token:
            self._vault = self._read_vault()
        self._loaded = True

    def _layers(self) -> List[Tuple[str, Dict[str, str]]]:
        return [
            ("rotated", self._rotated),
            ("vault", self._vault),
            ("env", dict(os.environ)),
            ("docker_secret", self._docker),
            ("env_file", self._env_file),
        ]

    def _lookup(self, key: str) -> Optional[Tuple[str, str]]:
        self.load()
        for source, values in self._layers():
            value = values.get(key)
            if value:
                return source, value
        return None

    @staticmethod
    def _read_env_file(path: Path) -> Dict[str, str]:
        if not path.exists():
            return {}
        values = {}
        try:
            for line in path.read_text().splitlines():
                line = line.strip()
                if not line or line.startswith("#") or "=" not in line:
                    continue
                key, value = line.split("=", 1)
                key, value = key.strip(), value.strip().strip('"').strip("'")
                if key and value:
                    values[key] = value
        except OSError as e:
            logger.warning(f"Failed to read env file {path}: {e}")
        return values

    @staticmethod
    def _read_docker_secrets(path: Path) -> Dict[str, str]:
        if not path.is_dir():
            return {}
        values = {}
        for secret_file in path.iterdir():
            if not secret_file.is_file():
                continue
            try:
                # safee-org-passphrase -> SAFEE_ORG_PASSPHRASE
                values[secret_file.name.upper().replace("-", "_")] = secret_file.read_text().strip()
            except OSError as e:
                logger.warning(f"Failed to read Docker secret {secret_file.name}: {e}")
        return values

    def _read_vault(self) -> Dict[str, str]:
        try:
            import hvac
        except ImportError:
            logger.info("hvac not installed, skipping Vault integration")
            return {}

        try:
            client = hvac.Client(url=self.vault_url, token=self.vault_token)
            if not client.is_authenticated():
                logger.warning("Vault authentication failed")
                return {}
            secret = client.secrets.kv.v2.read_secret_version(path=self.vault_path, mount_point="secret")
        except Exception as e:
            logger.warning(f"Failed to load from Vault: {e}")
            return {}
        return {key.upper(): str(value) for key, value in secret["data"]["data"].items()}

    def get(self, key: str, default: Optional[str] = None) -> Optional[str]:
        found = self._lookup(key)
        return found[1] if found else default

    def get_passphrase(self, organization_id: UUID) -> Optional[str]:
        """
        Passphrase material for an organization.

        The organization-specific secret wins over the shared
        ``SAFEE_ORG_PASSPHRASE``. Returns None when neither is set.
        """
        return self.get(passphrase_key(organization_id)) or self.get(PASSPHRASE_PREFIX)

    def validate(self, production_mode: bool = True) -> List[str]:
        """Problems with required secrets and the shared passphrase, as messages."""
        errors = []
        for key in REQUIRED_SECRETS:
            value = self.get(key)
            if not value:
                errors.append(f"Missing required secret: {key}")
            elif production_mode and any(unsafe in value for unsafe in UNSAFE_DEFAULTS):
                errors.append(f"Secret {key} has an unsafe default value")

        passphrase = self.get(PASSPHRASE_PREFIX)
        if production_mode and passphrase and passphrase in UNSAFE_DEFAULTS:
            errors.append(f"Secret {PASSPHRASE_PREFIX} has an unsafe default value")
        return errors

    def get_sources(self) -> Dict[str, SecretSource]:
        """Effective source and masked value of every known secret."""
        self.load()
        keys = set(REQUIRED_SECRETS + OPTIONAL_SECRETS + [PASSPHRASE_PREFIX])
        for _, values in self._layers():
            keys.update(k for k in values if k.startswith(PASSPHRASE_PREFIX))

        sources = {}
        for key in sorted(keys):
            found = self._lookup(key)
            if found:
                sources[key] = SecretSource(name=key, source=found[0], masked_value=mask(found[1]))
        return sources

    def rotate(self, key: str, new_value: str) -> None:
        """
        Override a secret for the rest of this process.

        The backing store (Vault, Docker secret, ...) must be updated
        separately.
        """
        self._rotated[key] = new_value
        logger.info(f"Secret {key} rotated")


@lru_cache
def get_secrets_manager() -> SecretsManager:
    return SecretsManager(
        vault_url=os.environ.get("VAULT_ADDR"),
        vault_token=os.environ.get("VAULT_TOKEN"),
    )

