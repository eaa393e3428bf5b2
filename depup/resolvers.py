"""
npm registry resolver.
"""

from __future__ import annotations

import logging
import shutil
import tarfile
import tempfile
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import Dict, Optional, Tuple
from urllib.parse import quote

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from .errors import ResolutionError
from .interfaces import PackageRegistry
from .models import Manifest
from .versioning import is_range, max_satisfying, split_spec


logger = logging.getLogger(__name__)

DEFAULT_REGISTRY = "https://registry.npmjs.org"
DEFAULT_TIMEOUT = 30.0


def get_session(retries: int = 3, backoff_factor: float = 0.5) -> requests.Session:
    """Create a requests session with retry logic."""
    session = requests.Session()
    retry = Retry(
        total=retries,
        backoff_factor=backoff_factor,
        status_forcelist=[429, 500, 502, 503, 504],
        allowed_methods=["GET"],
    )
    adapter = HTTPAdapter(max_retries=retry)
    session.mount("http://", adapter)
    session.mount("https://", adapter)
    return session


@dataclass
class ResolverCache:
    """Shared in-memory caches for resolver operations."""

    manifest_cache: Dict[Tuple[str, str], Manifest] = field(default_factory=dict)
    session: requests.Session = field(default_factory=get_session)


def _manifest_from_json(data: Dict) -> Manifest:
    return Manifest(
        name=data["name"],
        version=data["version"],
        dependencies=dict(data.get("dependencies") or {}),
        dev_dependencies=dict(data.get("devDependencies") or {}),
        tarball=(data.get("dist") or {}).get("tarball"),
    )


class NpmRegistryResolver(PackageRegistry):
    """Resolver for the npm registry HTTP API."""

    def __init__(
        self,
        registry_url: str = DEFAULT_REGISTRY,
        cache: Optional[ResolverCache] = None,
        default_timeout: float = DEFAULT_TIMEOUT,
    ) -> None:
        self.registry_url = registry_url.rstrip("/")
        self.cache = cache or ResolverCache()
        self.default_timeout = default_timeout

    def _url(self, name: str, selector: Optional[str] = None) -> str:
        url = f"{self.registry_url}/{quote(name, safe='@')}"
        if selector is not None:
            url = f"{url}/{quote(selector, safe='')}"
        return url

    def _get_json(self, spec: str, url: str, timeout: Optional[float]) -> Dict:
        logger.debug("Fetching %s", url)
        try:
            with self.cache.session.get(url, timeout=timeout or self.default_timeout) as response:
                if response.status_code == 404:
                    raise ResolutionError(spec, "no such package or version")
                response.raise_for_status()
                data = response.json()
        except ResolutionError:
            raise
        except requests.Timeout as e:
            raise ResolutionError(spec, "registry request timed out") from e
        except requests.RequestException as e:
            raise ResolutionError(spec, f"registry unreachable: {e}") from e
        except ValueError as e:
            raise ResolutionError(spec, f"malformed registry response: {e}") from e
        if not isinstance(data, dict):
            raise ResolutionError(spec, "malformed registry response: expected an object")
        return data

    def resolve_manifest(self, spec: str, timeout: Optional[float] = None) -> Manifest:
        """Resolve ``name``, ``name@version``, ``name@tag`` or ``name@range``.

        A range is matched against every version in the package document and
        resolves to the highest one it admits.
        """
        try:
            name, selector = split_spec(spec)
        except ValueError as e:
            raise ResolutionError(spec, str(e)) from e
        selector = selector or "latest"

        # Dist-tags and ranges move, so only exact versions are cached.
        cache_key = (name, selector)
        if cache_key in self.cache.manifest_cache:
            logger.debug("Cache hit: manifest %s@%s", name, selector)
            return self.cache.manifest_cache[cache_key]

        if is_range(selector):
            packument = self._get_json(spec, self._url(name), timeout)
            versions = packument.get("versions")
            if not isinstance(versions, dict):
                raise ResolutionError(spec, "malformed registry response: no versions")
            version = max_satisfying(versions, selector)
            if version is None:
                raise ResolutionError(spec, f"no version matches {selector}")
            logger.debug("Range %s@%s resolved to %s", name, selector, version)
            data = versions[version]
        else:
            data = self._get_json(spec, self._url(name, selector), timeout)

        try:
            manifest = _manifest_from_json(data)
        except (KeyError, TypeError, AttributeError) as e:
            raise ResolutionError(spec, f"malformed registry response: {e}") from e

        self.cache.manifest_cache[(manifest.name, manifest.version)] = manifest
        return manifest

    def latest_version(self, name: str, timeout: Optional[float] = None) -> str:
        return self.resolve_manifest(f"{name}@latest", timeout=timeout).version

    def extract(self, spec: str, target_dir: Path, timeout: Optional[float] = None) -> Path:
        manifest = self.resolve_manifest(spec, timeout=timeout)
        if not manifest.tarball:
            raise ResolutionError(spec, "registry response has no tarball URL")

        target_dir = Path(target_dir)
        target_dir.mkdir(parents=True, exist_ok=True)
        logger.info("Downloading %s@%s", manifest.name, manifest.version)
        with tempfile.TemporaryDirectory() as tmpdir:
            archive = Path(tmpdir) / "package.tgz"
            try:
                with self.cache.session.get(
                    manifest.tarball, stream=True, timeout=timeout or self.default_timeout
                ) as response:
                    response.raise_for_status()
                    with open(archive, "wb") as f:
                        for chunk in response.iter_content(chunk_size=8192):
                            f.write(chunk)
            except requests.RequestException as e:
                raise ResolutionError(spec, f"tarball download failed: {e}") from e
            try:
                unpack_tarball(archive, target_dir)
            except (tarfile.TarError, OSError) as e:
                raise ResolutionError(spec, f"tarball could not be unpacked: {e}") from e
        return target_dir


def unpack_tarball(archive: Path, target_dir: Path) -> None:
    """Unpack an npm tarball, dropping its single top-level folder.

    Links, devices and members that would land outside ``target_dir`` are
    skipped.
    """
    root = target_dir.resolve()
    with tarfile.open(archive, "r:gz") as tar:
        for member in tar.getmembers():
            parts = PurePosixPath(member.name).parts
            if len(parts) < 2 or not (member.isfile() or member.isdir()):
                continue
            relative = Path(*parts[1:])
            destination = (root / relative).resolve()
            if root != destination and root not in destination.parents:
                logger.warning("Skipping unsafe archive member %s", member.name)
                continue
            if member.isdir():
                destination.mkdir(parents=True, exist_ok=True)
                continue
            destination.parent.mkdir(parents=True, exist_ok=True)
            source = tar.extractfile(member)
            if source is None:
                continue
            with source, open(destination, "wb") as f:
                shutil.copyfileobj(source, f)
