"""
Package artifacts

An artifact is a (possibly compressed) tarball holding the files of one
package, laid out relative to the root filesystem. Clients bring artifacts
from a repository into a local cache; unpacking writes them into a target
root, honouring config protection.
"""

import hashlib
import io
import logging
import os
import shutil
import tarfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Union

from .compression import compress_bytes, open_tar, tar_members
from .config_protect import ConfigProtect, protected_name
from .package import Package

logger = logging.getLogger(__name__)

CHUNK_SIZE = 1024 * 1024


def sha256_file(path: Union[str, Path]) -> str:
    h = hashlib.sha256()
    with open(path, 'rb') as f:
        for chunk in iter(lambda: f.read(CHUNK_SIZE), b''):
            h.update(chunk)
    return h.hexdigest()


@dataclass
class ArtifactDescriptor:
    """Index entry of a repository: which file holds which package."""
    package: Package
    path: str
    files: List[str] = field(default_factory=list)
    checksum: str = ""

    def to_dict(self) -> dict:
        data = {'package': self.package.to_dict(), 'path': self.path}
        if self.files:
            data['files'] = list(self.files)
        if self.checksum:
            data['checksum'] = self.checksum
        return data

    @classmethod
    def from_dict(cls, data: dict) -> 'ArtifactDescriptor':
        return cls(
            package=Package.from_dict(data['package']),
            path=str(data['path']),
            files=[str(f) for f in data.get('files') or []],
            checksum=str(data.get('checksum') or ''),
        )


def safe_relative_path(path: str) -> str:
    """Normalized path relative to a target root.

    Raises:
        ValueError: if the path would escape the target root
    """
    name = os.path.normpath(path.lstrip('/'))
    if name == '.' or name == '..' or name.startswith('../') or os.path.isabs(name):
        raise ValueError(f"unsafe path: {path}")
    return name


def _member_name(member: tarfile.TarInfo) -> str:
    try:
        return safe_relative_path(member.name)
    except ValueError:
        raise ValueError(f"unsafe path in archive: {member.name}") from None


@dataclass
class Artifact:
    """An artifact available on local disk."""
    path: Path
    package: Package
    files: List[str] = field(default_factory=list)
    checksum: str = ""

    def verify(self):
        """Check the file against its recorded checksum.

        Raises:
            ValueError: on mismatch
        """
        if not self.checksum:
            return
        actual = sha256_file(self.path)
        if actual != self.checksum:
            raise ValueError(f"checksum mismatch for {self.path}: "
                             f"expected {self.checksum}, got {actual}")

    def file_list(self) -> List[str]:
        """Files the artifact installs, relative to the root."""
        if self.files:
            return list(self.files)
        return [os.path.normpath(n.lstrip('/')) for n in tar_members(self.path)]

    def unpack(self, target: Union[str, Path], protect: Optional[ConfigProtect] = None) -> List[str]:
        """Extract into target.

        Files in protected directories that already exist with different
        content are written as ._cfgNNNN_<name> instead.

        Returns:
            Files installed, relative to target (original names)

        Raises:
            ValueError: on unsafe member paths
            tarfile.TarError, OSError: on unreadable archives or write errors
        """
        root = Path(target)
        installed = []
        with open_tar(self.path) as tar:
            for member in tar:
                name = _member_name(member)
                dest = root / name

                if member.isdir():
                    dest.mkdir(parents=True, exist_ok=True)
                    continue

                dest.parent.mkdir(parents=True, exist_ok=True)
                if member.issym():
                    if dest.is_symlink() or dest.exists():
                        dest.unlink()
                    os.symlink(member.linkname, dest)
                elif member.islnk():
                    source = root / _member_name(tarfile.TarInfo(member.linkname))
                    if dest.is_symlink() or dest.exists():
                        dest.unlink()
                    try:
                        os.link(source, dest)
                    except OSError:
                        shutil.copy2(source, dest)
                elif member.isfile():
                    data = tar.extractfile(member).read()
                    if (protect and protect.protected(name) and dest.is_file()
                            and dest.read_bytes() != data):
                        dest = protected_name(dest)
                        logger.info(f"Protected file {name} kept, new version written "
                                    f"to {dest.name}")
                    elif dest.is_symlink() or dest.exists():
                        dest.unlink()
                    with open(dest, 'wb') as f:
                        f.write(data)
                    os.chmod(dest, member.mode & 0o7777)
                else:
                    logger.debug(f"Skipping special file {name} in {self.path}")
                    continue
                installed.append(name)
        return installed


def pack_artifact(source_dir: Union[str, Path], dest: Union[str, Path], fmt: str = 'zstd') -> List[str]:
    """Create an artifact tarball from the content of source_dir.

    Returns:
        Files packed, relative to source_dir
    """
    source = Path(source_dir)
    buf = io.BytesIO()
    files = []
    with tarfile.open(fileobj=buf, mode='w') as tar:
        for path in sorted(source.rglob('*')):
            rel = path.relative_to(source).as_posix()
            tar.add(path, arcname=rel, recursive=False)
            if not path.is_dir() or path.is_symlink():
                files.append(rel)
    Path(dest).write_bytes(compress_bytes(buf.getvalue(), fmt))
    return files


class LocalClient:
    """Artifact client for repositories stored in a local directory."""

    def __init__(self, repository_dir: Union[str, Path], cache_dir: Union[str, Path]):
        self.repository_dir = Path(repository_dir)
        self.cache_dir = Path(cache_dir)

    def download_file(self, name: str) -> str:
        """Copy a repository file into the cache and return its path.

        Raises:
            FileNotFoundError: if the repository has no such file
        """
        src = self.repository_dir / name
        if not src.is_file():
            raise FileNotFoundError(f"{src} not found")
        self.cache_dir.mkdir(parents=True, exist_ok=True)
        dest = self.cache_dir / Path(name).name
        tmp = dest.with_name(dest.name + '.part')
        shutil.copyfile(src, tmp)
        os.replace(tmp, dest)
        return str(dest)

    def download_artifact(self, descriptor: ArtifactDescriptor) -> Artifact:
        """Bring an artifact into the cache, reusing a valid cached copy."""
        cached = self.cache_dir / Path(descriptor.path).name
        if cached.is_file() and descriptor.checksum and sha256_file(cached) == descriptor.checksum:
            logger.debug(f"Using cached {cached}")
            path = cached
        else:
            path = Path(self.download_file(descriptor.path))
        return Artifact(path=path, package=descriptor.package,
                        files=list(descriptor.files), checksum=descriptor.checksum)
