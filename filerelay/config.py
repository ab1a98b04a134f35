"""
Configuration Management

Settings come from three layers, highest first:
1. Environment variables (FILERELAY_<FIELD>, also read from a .env file)
2. A JSON config file
3. The defaults on Config

Every field can be set from any layer; values are coerced to the
field's type, so "9000" from the environment becomes 9000.
"""

import os
from pathlib import Path
from dataclasses import dataclass, field, fields
from typing import Any, Optional
import json

from dotenv import find_dotenv, load_dotenv

ENV_PREFIX = 'FILERELAY_'


@dataclass
class Config:
    """File Relay configuration."""
    # Relay
    relay_host: str = '127.0.0.1'
    relay_port: int = 8765
    room: str = 'room-1'
    listen_host: str = '0.0.0.0'
    peer_name: str = ''

    # Transfer
    chunk_size: int = 64 * 1024  # 64KB
    max_in_flight: int = 64
    max_completed: int = 1024
    max_total_chunks: int = 1 << 20  # largest file accepted is chunk_size times this
    idle_timeout: float = 0.0  # 0 disables idle eviction

    # Storage
    data_dir: Path = field(default_factory=lambda: Path('./filerelay_data'))

    # API
    api_port: int = 8080

    # Timeouts (seconds)
    connect_timeout: float = 10.0

    # Logging
    log_level: str = 'INFO'

    def _set(self, name: str, value: Any):
        kind = next(f.type for f in fields(self) if f.name == name)
        setattr(self, name, kind(value))

    @classmethod
    def from_env(cls) -> 'Config':
        """Load configuration from environment variables and .env."""
        load_dotenv(find_dotenv(usecwd=True))

        config = cls()
        for f in fields(cls):
            value = os.getenv(ENV_PREFIX + f.name.upper())
            if value:
                config._set(f.name, value)
        return config

    @classmethod
    def from_file(cls, path: Path) -> 'Config':
        """Load configuration from a JSON file; unknown keys are ignored."""
        path = Path(path)
        if not path.exists():
            return cls()

        with open(path) as f:
            data = json.load(f)

        config = cls()
        for f in fields(cls):
            if data.get(f.name) is not None:
                config._set(f.name, data[f.name])
        return config

    def to_dict(self) -> dict:
        """Plain JSON-serializable view."""
        return {
            f.name: str(getattr(self, f.name)) if f.type is Path else getattr(self, f.name)
            for f in fields(self)
        }

    def save(self, path: Path):
        """Save configuration to a JSON file."""
        with open(path, 'w') as f:
            json.dump(self.to_dict(), f, indent=2)


def load_config(config_path: Optional[Path] = None) -> Config:
    """
    Load configuration from file and environment.

    An environment value wins over the file whenever it differs from
    the default.
    """
    config = Config.from_file(config_path) if config_path else Config()

    env_config = Config.from_env()
    defaults = Config()
    for f in fields(Config):
        env_val = getattr(env_config, f.name)
        if env_val != getattr(defaults, f.name):
            setattr(config, f.name, env_val)

    return config
