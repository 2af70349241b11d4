"""
TEL Registry Configuration

Configuration sources (in order of precedence):
    1. Environment variables (TEL_*)
    2. Config file (YAML)
    3. Keyword arguments / defaults

Example YAML:

    digest_algorithm: sha256
    allow_reissuance: true
    escrow_max_age: 300
    escrow_max_per_member: 64
    storage_path: ./tel-data
"""

import os
from dataclasses import dataclass, fields, asdict
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Union

import yaml

from tel_registry.core.digest import SUPPORTED_ALGORITHMS


ENV_PREFIX = "TEL_"


class ConfigError(Exception):
    """Configuration error."""
    pass


def _parse_bool(value: str) -> bool:
    lowered = value.strip().lower()
    if lowered in ("1", "true", "yes", "on"):
        return True
    if lowered in ("0", "false", "no", "off"):
        return False
    raise ConfigError(f"Not a boolean: {value!r}")


def _parse_optional(cast):
    def parse(value: str):
        if value.strip().lower() in ("", "none", "null"):
            return None
        return cast(value)
    return parse


_ENV_PARSERS = {
    "digest_algorithm": str,
    "allow_reissuance": _parse_bool,
    "escrow_max_age": _parse_optional(float),
    "escrow_max_per_member": _parse_optional(int),
    "storage_path": _parse_optional(str),
}


@dataclass
class RegistryConfig:
    """
    Settings for a ``RegistryManager``.

    Attributes:
        digest_algorithm: Digest used for self_digest of locally built events
        allow_reissuance: Whether a revoked member may be issued again
        escrow_max_age: Seconds an escrowed event may wait (None: unbounded)
        escrow_max_per_member: Escrow entries held per member (None: unbounded)
        storage_path: Directory for FileBackend (None: in-memory)
    """
    digest_algorithm: str = "sha256"
    allow_reissuance: bool = True
    escrow_max_age: Optional[float] = 300.0
    escrow_max_per_member: Optional[int] = 1024
    storage_path: Optional[str] = None

    def __post_init__(self):
        errors = self.validate()
        if errors:
            raise ConfigError("; ".join(errors))

    def validate(self) -> List[str]:
        errors = []
        if self.digest_algorithm not in SUPPORTED_ALGORITHMS:
            errors.append(
                f"digest_algorithm must be one of {', '.join(SUPPORTED_ALGORITHMS)}"
            )
        if self.escrow_max_age is not None and self.escrow_max_age <= 0:
            errors.append("escrow_max_age must be positive")
        if self.escrow_max_per_member is not None and self.escrow_max_per_member < 1:
            errors.append("escrow_max_per_member must be at least 1")
        return errors

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> 'RegistryConfig':
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            raise ConfigError(f"Unknown config keys: {', '.join(sorted(unknown))}")
        return cls(**dict(data))

    @classmethod
    def from_file(cls, path: Union[str, Path]) -> 'RegistryConfig':
        """Load from a YAML file, then apply TEL_* environment overrides."""
        try:
            with open(path, 'r') as f:
                data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ConfigError(f"Cannot load config {path}: {e}") from e
        if not isinstance(data, dict):
            raise ConfigError(f"Config {path} must be a mapping")
        return cls.from_env(base=data)

    @classmethod
    def from_env(
        cls,
        environ: Optional[Mapping[str, str]] = None,
        base: Optional[Mapping[str, Any]] = None
    ) -> 'RegistryConfig':
        """Build from ``base`` with TEL_* environment variables on top."""
        environ = os.environ if environ is None else environ
        values: Dict[str, Any] = dict(base or {})
        for name, parse in _ENV_PARSERS.items():
            key = ENV_PREFIX + name.upper()
            if key in environ:
                try:
                    values[name] = parse(environ[key])
                except ValueError as e:
                    raise ConfigError(f"Invalid {key}: {e}") from e
        return cls.from_dict(values)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
