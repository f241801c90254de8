"""
Configuration file protection

Files under a protected directory are never overwritten once they exist on
the target with different content: the incoming version is written next to
them as ._cfg0001_<name> (then ._cfg0002_, ...) for the administrator to
merge. Uninstall leaves protected files in place.

Protected directories come from YAML files in the config_protect_confdir:

    name: "system config"
    dirs:
      - /etc/
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, List, Union

import yaml

from .package import CONFIG_PROTECT_ANNOTATION, Package

logger = logging.getLogger(__name__)

CFG_PREFIX = "._cfg"


def _normalize(path: str) -> str:
    return "/" + str(path).strip("/")


@dataclass
class ConfigProtectConf:
    """One config protect definition file."""
    name: str
    dirs: List[str] = field(default_factory=list)
    filename: str = ""


class ConfigProtect:
    """Set of protected directories, relative to the target root."""

    def __init__(self, dirs: Iterable[str] = ()):
        self.dirs: List[str] = []
        self.add_dirs(dirs)

    def add_dirs(self, dirs: Iterable[str]):
        for d in dirs:
            d = _normalize(d)
            if d != "/" and d not in self.dirs:
                self.dirs.append(d)

    def for_package(self, package: Package) -> 'ConfigProtect':
        """Copy extended with the directory annotated on package, if any."""
        result = ConfigProtect(self.dirs)
        annotated = package.annotations.get(CONFIG_PROTECT_ANNOTATION)
        if annotated:
            result.add_dirs(a.strip() for a in annotated.split(",") if a.strip())
        return result

    def protected(self, path: str) -> bool:
        """True if path (relative to the target root) lies in a protected dir."""
        p = _normalize(path)
        return any(p == d or p.startswith(d + "/") for d in self.dirs)

    def __bool__(self) -> bool:
        return bool(self.dirs)


def protected_name(dest: Path) -> Path:
    """First free ._cfgNNNN_<name> path next to dest."""
    n = 1
    while True:
        candidate = dest.with_name(f"{CFG_PREFIX}{n:04d}_{dest.name}")
        if not candidate.exists() and not candidate.is_symlink():
            return candidate
        n += 1


def load_config_protect_confs(dirs: Iterable[Union[str, Path]]) -> List[ConfigProtectConf]:
    """Load every *.yml / *.yaml config protect file found in dirs.

    Unreadable or malformed files are skipped with a warning.
    """
    confs = []
    for d in dirs:
        confdir = Path(d)
        if not confdir.is_dir():
            logger.debug(f"Config protect directory {confdir} not found, skipping")
            continue
        files = sorted(list(confdir.glob("*.yml")) + list(confdir.glob("*.yaml")))
        for conf_file in files:
            try:
                with open(conf_file, 'r') as f:
                    data = yaml.safe_load(f) or {}
            except (OSError, yaml.YAMLError) as e:
                logger.warning(f"Failed to load config protect file {conf_file}: {e}")
                continue
            if not isinstance(data, dict):
                logger.warning(f"Ignoring config protect file {conf_file}: not a mapping")
                continue
            confs.append(ConfigProtectConf(
                name=str(data.get('name', conf_file.stem)),
                dirs=[str(x) for x in data.get('dirs') or []],
                filename=str(conf_file),
            ))
            logger.debug(f"Loaded config protect {conf_file}")
    return confs


def config_protect_from_confs(confs: Iterable[ConfigProtectConf],
                              extra_dirs: Iterable[str] = ()) -> ConfigProtect:
    protect = ConfigProtect(extra_dirs)
    for conf in confs:
        protect.add_dirs(conf.dirs)
    return protect
