"""
Central configuration for strata.

Defaults:
    /etc/strata/strata.yaml                 - Main configuration file
    /etc/strata/config.protect.d/           - Config protect definitions
    /var/lib/strata/packages.db             - Installed package database
    /var/cache/strata/packages/             - Downloaded artifacts

The STRATA_CONFIG environment variable points to an alternate config file.

strata.yaml format (every key optional):

    general:
      concurrency: 4
      debug: false
    solver:
      type: explainer        # or qlearning
      rate: 0.7
      discount: 1.0
      max_attempts: 9000
      max_steps: 100000
      seed: 0
    system:
      rootfs: /
      database_engine: sqlite  # or memory
      database_path: /var/lib/strata/packages.db
      pkgs_cache_path: /var/cache/strata/packages
    repositories:
      - /srv/strata/main
    config_protect_confdir:
      - /etc/strata/config.protect.d
    finalizer_envs:
      LANG: C
"""

import logging
import os
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Union

import yaml

from .errors import ConfigError

# Config file
CONFIG_FILE = Path("/etc/strata/strata.yaml")
CONFIG_ENV = "STRATA_CONFIG"
CONFIG_PROTECT_CONFDIR = Path("/etc/strata/config.protect.d")

# State and cache paths (system-wide, requires root)
BASE_DIR = Path("/var/lib/strata")
DB_PATH = BASE_DIR / "packages.db"
CACHE_DIR = Path("/var/cache/strata/packages")


def get_config_path() -> Path:
    """Config file in use: $STRATA_CONFIG or the system default."""
    env = os.environ.get(CONFIG_ENV)
    if env:
        return Path(env).expanduser()
    return CONFIG_FILE


def get_db_path() -> Path:
    """Get the default installed database path."""
    return DB_PATH


def get_cache_dir() -> Path:
    """Get the default artifact cache directory."""
    return CACHE_DIR


def setup_logging(debug: bool = False):
    """Configure root logging for applications embedding strata."""
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format='%(name)s - %(levelname)s - %(message)s',
        stream=sys.stderr
    )


@dataclass
class Config:
    """Parsed strata.yaml."""
    concurrency: int = field(default_factory=lambda: os.cpu_count() or 1)
    debug: bool = False
    solver_type: str = "explainer"
    learn_rate: float = 0.7
    discount: float = 1.0
    max_attempts: int = 9000
    max_steps: int = 100000
    seed: int = 0
    rootfs: str = "/"
    database_engine: str = "sqlite"
    database_path: Path = field(default_factory=get_db_path)
    pkgs_cache_path: Path = field(default_factory=get_cache_dir)
    repositories: List[str] = field(default_factory=list)
    config_protect_confdir: List[str] = field(default_factory=lambda: [str(CONFIG_PROTECT_CONFDIR)])
    finalizer_envs: Dict[str, str] = field(default_factory=dict)

    def solver_options(self):
        from .resolution.solver import SolverOptions, StrategyKind
        try:
            kind = StrategyKind.from_string(self.solver_type)
        except ValueError as e:
            raise ConfigError(str(e)) from e
        return SolverOptions(
            type=kind,
            learn_rate=self.learn_rate,
            discount=self.discount,
            max_attempts=self.max_attempts,
            max_steps=self.max_steps,
            seed=self.seed,
        )

    def installer_options(self, **overrides):
        """InstallerOptions from this config; keyword arguments override."""
        from .config_protect import config_protect_from_confs, load_config_protect_confs
        from .installer import InstallerOptions

        confs = load_config_protect_confs(self.config_protect_confdir)
        options = InstallerOptions(
            concurrency=self.concurrency,
            solver_options=self.solver_options(),
            finalizer_envs=dict(self.finalizer_envs),
            config_protect=config_protect_from_confs(confs),
        )
        for key, value in overrides.items():
            if not hasattr(options, key):
                raise ConfigError(f"Unknown installer option: {key}")
            setattr(options, key, value)
        return options

    def open_database(self):
        """Open the installed database of the configured system."""
        from .database import InMemoryDatabase, SqliteDatabase
        if self.database_engine == "memory":
            return InMemoryDatabase()
        return SqliteDatabase(self.database_path)

    def load_repositories(self):
        """Load the configured local repositories."""
        from .repository import Repositories, load_repository
        return Repositories([
            load_repository(path, Path(self.pkgs_cache_path) / Path(path).name)
            for path in self.repositories
        ])

    def system(self):
        from .system import System
        return System(self.open_database(), self.rootfs)


def _section(data: dict, name: str) -> dict:
    value = data.get(name) or {}
    if not isinstance(value, dict):
        raise ConfigError(f"Section '{name}' must be a mapping")
    return value


def _list(data: dict, name: str, default: List[str]) -> List[str]:
    value = data.get(name)
    if value is None:
        return default
    if isinstance(value, str):
        return [value]
    if not isinstance(value, list):
        raise ConfigError(f"'{name}' must be a list")
    return [str(v) for v in value]


def load_config(path: Optional[Union[str, Path]] = None) -> Config:
    """Load strata.yaml.

    A missing file yields the defaults.

    Args:
        path: Config file, defaults to get_config_path()

    Raises:
        ConfigError: if the file cannot be parsed or has wrong types
    """
    config_path = Path(path) if path is not None else get_config_path()
    config = Config()
    if not config_path.exists():
        return config

    try:
        with open(config_path, 'r') as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"Failed to load {config_path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"{config_path}: top level must be a mapping")

    general = _section(data, 'general')
    solver = _section(data, 'solver')
    system = _section(data, 'system')

    try:
        if 'concurrency' in general:
            config.concurrency = max(1, int(general['concurrency']))
        config.debug = bool(general.get('debug', config.debug))

        config.solver_type = str(solver.get('type', config.solver_type))
        config.learn_rate = float(solver.get('rate', config.learn_rate))
        config.discount = float(solver.get('discount', config.discount))
        config.max_attempts = int(solver.get('max_attempts', config.max_attempts))
        config.max_steps = int(solver.get('max_steps', config.max_steps))
        config.seed = int(solver.get('seed', config.seed))
    except (TypeError, ValueError) as e:
        raise ConfigError(f"{config_path}: {e}") from e

    config.rootfs = str(system.get('rootfs', config.rootfs))
    config.database_engine = str(system.get('database_engine', config.database_engine))
    if system.get('database_path'):
        config.database_path = Path(system['database_path'])
    if system.get('pkgs_cache_path'):
        config.pkgs_cache_path = Path(system['pkgs_cache_path'])

    config.repositories = _list(data, 'repositories', config.repositories)
    config.config_protect_confdir = _list(data, 'config_protect_confdir',
                                          config.config_protect_confdir)
    envs = data.get('finalizer_envs') or {}
    if not isinstance(envs, dict):
        raise ConfigError("'finalizer_envs' must be a mapping")
    config.finalizer_envs = {str(k): str(v) for k, v in envs.items()}

    return config
