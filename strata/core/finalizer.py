"""
Package finalizers

A finalizer is a set of shell hooks a package runs after install (and before
uninstall). Definitions are YAML:

    shell: ["/bin/bash", "-c"]   # optional, defaults to sh -c
    install:
      - ldconfig
    uninstall:
      - rm -f /var/cache/foo

Hooks run on the host when the target is the live root, otherwise inside the
target through a chroot.
"""

import logging
import os
import subprocess
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

import yaml

from .errors import FinalizerError
from .package import Package

logger = logging.getLogger(__name__)

DEFAULT_SHELL = ["sh", "-c"]
DEFAULT_PATH = "/usr/local/sbin:/usr/local/bin:/usr/sbin:/usr/bin:/sbin:/bin"


class HostSandbox:
    """Run commands directly on the host."""

    def run(self, cmd: str, args: List[str], env: Dict[str, str], rootfs: str = "/"
            ) -> subprocess.CompletedProcess:
        full_env = dict(os.environ)
        full_env.update(env or {})
        logger.debug(f"Running: {cmd} {' '.join(args)}")
        return subprocess.run([cmd] + list(args), env=full_env, capture_output=True, text=True)


class ChrootSandbox:
    """Run commands inside an alternate root through chroot(8)."""

    def __init__(self, chroot_cmd: str = "chroot"):
        self.chroot_cmd = chroot_cmd

    def run(self, cmd: str, args: List[str], env: Dict[str, str], rootfs: str = "/"
            ) -> subprocess.CompletedProcess:
        full_env = {'PATH': DEFAULT_PATH}
        full_env.update(env or {})
        argv = [self.chroot_cmd, rootfs, cmd] + list(args)
        logger.debug(f"Running: {' '.join(argv)}")
        return subprocess.run(argv, env=full_env, capture_output=True, text=True)


def default_sandbox(target: str):
    """Sandbox suited to a target root."""
    if os.path.abspath(target or "/") == "/":
        return HostSandbox()
    return ChrootSandbox()


@dataclass
class Finalizer:
    """Install/uninstall hooks of one package."""
    shell: List[str] = field(default_factory=list)
    install: List[str] = field(default_factory=list)
    uninstall: List[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> 'Finalizer':
        data = data or {}
        return cls(
            shell=[str(s) for s in data.get('shell') or []],
            install=[str(s) for s in data.get('install') or []],
            uninstall=[str(s) for s in data.get('uninstall') or []],
        )

    @classmethod
    def from_yaml(cls, text: str) -> 'Finalizer':
        """Parse a finalizer definition.

        Raises:
            ValueError: if the document is not a mapping
        """
        data = yaml.safe_load(text)
        if data is not None and not isinstance(data, dict):
            raise ValueError("finalizer definition must be a mapping")
        return cls.from_dict(data)

    @classmethod
    def for_package(cls, package: Package) -> 'Finalizer':
        return cls.from_dict(package.finalizer)

    def to_dict(self) -> dict:
        data = {}
        for key in ('shell', 'install', 'uninstall'):
            value = getattr(self, key)
            if value:
                data[key] = list(value)
        return data

    def command(self) -> Tuple[str, List[str]]:
        shell = self.shell or DEFAULT_SHELL
        return shell[0], list(shell[1:])

    def _run(self, hooks: List[str], package: Package, target: str, sandbox,
             envs: Dict[str, str]):
        cmd, args = self.command()
        for hook in hooks:
            logger.info(f"Executing finalizer for {package.human_readable_string()}: {hook}")
            try:
                result = sandbox.run(cmd, args + [hook], dict(envs or {}), target)
            except FinalizerError:
                raise
            except Exception as e:
                raise FinalizerError(package, f"{hook}: {e}") from e
            # Sandboxes may only raise on failure and return nothing
            if result is None:
                continue
            output = (getattr(result, 'stdout', '') or '') + (getattr(result, 'stderr', '') or '')
            if getattr(result, 'returncode', 0) != 0:
                raise FinalizerError(
                    package, f"'{hook}' exited with status {result.returncode}: {output.strip()}"
                )
            if output.strip():
                logger.debug(output.strip())

    def run_install(self, package: Package, target: str = "/", sandbox=None,
                    envs: Dict[str, str] = None):
        """Run the install hooks.

        Raises:
            FinalizerError: on the first hook failing or exiting non-zero
        """
        self._run(self.install, package, target, sandbox or default_sandbox(target), envs)

    def run_uninstall(self, package: Package, target: str = "/", sandbox=None,
                      envs: Dict[str, str] = None):
        """Run the uninstall hooks.

        Raises:
            FinalizerError: on the first hook failing or exiting non-zero
        """
        self._run(self.uninstall, package, target, sandbox or default_sandbox(target), envs)
