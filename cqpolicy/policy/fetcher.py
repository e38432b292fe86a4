"""
Policy bundle fetching and caching.

Bundles are downloaded from the hub as zip archives and installed under
``<cache_dir>/<organization>/<repository>``. Every fetch is staged next to
the destination and swapped into place with directory renames, so readers
see either the previous bundle or the new one, never a partial tree.
"""

import asyncio
import hashlib
import json
import logging
import os
import shutil
import tempfile
import zipfile
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import AsyncIterator, Dict, Optional
from uuid import uuid4

import anyio
import httpx

from cqpolicy.config import settings
from cqpolicy.policy.errors import CanceledError, DownloadError, InvalidReferenceError
from cqpolicy.policy.models import HubReference, LocalBundle


logger = logging.getLogger(__name__)

BUNDLE_METADATA_FILE = ".cqpolicy-bundle.json"


class BundleFetcher:
    """
    Downloads policy bundles from the hub into a local cache directory.

    Concurrent ensure() calls for the same destination are serialized; calls
    for different references run independently.
    """

    def __init__(
        self,
        cache_dir: Path,
        hub_url: str = settings.HUB_URL,
        token: Optional[str] = settings.HUB_TOKEN,
        timeout_s: float = settings.HTTP_TIMEOUT,
        client: Optional[httpx.AsyncClient] = None,
    ):
        """
        Initialize the fetcher.

        Args:
            cache_dir: Cache root owned by the caller
            hub_url: Base URL of the hub API
            token: Optional bearer token for private repositories
            timeout_s: Per-request HTTP timeout
            client: Optional shared httpx client; not closed by the fetcher
        """
        self.cache_dir = Path(cache_dir)
        self.hub_url = hub_url.rstrip("/")
        self.token = token
        self.timeout_s = timeout_s
        self._client = client
        self._locks: Dict[str, asyncio.Lock] = {}
        self._lock_users: Dict[str, int] = {}

    def bundle_path(self, reference: HubReference) -> Path:
        """
        Destination directory of a reference.

        Raises:
            InvalidReferenceError: If the destination would fall outside the cache root
        """
        destination = self.cache_dir / reference.organization / reference.repository
        root = self.cache_dir.resolve()
        if root not in destination.resolve().parents:
            raise InvalidReferenceError(reference.repo_path, "bundle path escapes the cache directory")
        return destination

    def archive_url(self, reference: HubReference) -> str:
        url = f"{self.hub_url}/repos/{reference.organization}/{reference.repository}/zipball"
        if reference.ref:
            url += f"/{reference.ref}"
        return url

    async def ensure(self, reference: HubReference, timeout: Optional[float] = None) -> LocalBundle:
        """
        Fetch a reference and install it in the cache, replacing any previous copy.

        Args:
            reference: Hub reference to fetch
            timeout: Optional deadline in seconds for the whole operation

        Returns:
            LocalBundle describing the installed copy

        Raises:
            DownloadError: If the bundle cannot be downloaded or unpacked
            CanceledError: If the deadline expires
        """
        destination = self.bundle_path(reference)
        key = str(destination)
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._lock_users[key] = self._lock_users.get(key, 0) + 1
        try:
            with anyio.fail_after(timeout):
                async with lock:
                    return await self._fetch_and_install(reference, destination)
        except TimeoutError as e:
            raise CanceledError(f"download of policy {reference}") from e
        finally:
            self._lock_users[key] -= 1
            if not self._lock_users[key]:
                del self._lock_users[key]
                self._locks.pop(key, None)

    def read_bundle(self, reference: HubReference) -> Optional[LocalBundle]:
        """Describe the cached copy of a reference without fetching, or None if absent."""
        destination = self.bundle_path(reference)
        metadata_file = destination / BUNDLE_METADATA_FILE
        if not metadata_file.is_file():
            return None
        try:
            metadata = json.loads(metadata_file.read_text(encoding="utf-8"))
            fetched_at = datetime.fromisoformat(metadata["fetched_at"])
            digest = str(metadata.get("digest", ""))
        except (OSError, ValueError, KeyError, TypeError) as e:
            logger.warning("Ignoring unreadable bundle metadata %s: %s", metadata_file, e)
            return None
        return LocalBundle(reference=reference, path=destination, digest=digest, fetched_at=fetched_at)

    async def _fetch_and_install(self, reference: HubReference, destination: Path) -> LocalBundle:
        destination.parent.mkdir(parents=True, exist_ok=True)
        staging = Path(tempfile.mkdtemp(prefix=f".{reference.repository}-", dir=destination.parent))
        try:
            archive = staging / "bundle.zip"
            digest = await self._download(reference, archive)

            fetched_at = datetime.now(timezone.utc)
            content = await anyio.to_thread.run_sync(
                _extract_archive, archive, staging / "extract", str(reference)
            )
            metadata = {
                "organization": reference.organization,
                "repository": reference.repository,
                "ref": reference.ref,
                "digest": digest,
                "fetched_at": fetched_at.isoformat(),
            }
            (content / BUNDLE_METADATA_FILE).write_text(json.dumps(metadata, indent=2), encoding="utf-8")

            await anyio.to_thread.run_sync(_swap_into_place, content, destination)
            logger.info("Installed policy %s at %s (sha256 %s)", reference, destination, digest[:12])
            return LocalBundle(reference=reference, path=destination, digest=digest, fetched_at=fetched_at)
        finally:
            shutil.rmtree(staging, ignore_errors=True)

    async def _download(self, reference: HubReference, archive: Path) -> str:
        url = self.archive_url(reference)
        headers = {"Accept": "application/vnd.github+json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"

        logger.info("Downloading policy %s from %s", reference, url)
        sha = hashlib.sha256()
        size = 0
        try:
            async with self._session() as client:
                async with client.stream("GET", url, headers=headers) as response:
                    if response.status_code >= 400:
                        raise DownloadError(
                            str(reference),
                            _status_message(response.status_code),
                            status_code=response.status_code,
                        )
                    async with await anyio.open_file(archive, "wb") as f:
                        async for chunk in response.aiter_bytes():
                            sha.update(chunk)
                            await f.write(chunk)
                            size += len(chunk)
        except httpx.RequestError as e:
            raise DownloadError(str(reference), f"request failed: {e.__class__.__name__}: {e}") from e

        logger.debug("Downloaded %d bytes for policy %s", size, reference)
        return sha.hexdigest()

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[httpx.AsyncClient]:
        if self._client is not None:
            yield self._client
            return
        async with httpx.AsyncClient(timeout=self.timeout_s, follow_redirects=True) as client:
            yield client


def _status_message(status_code: int) -> str:
    if status_code in (401, 403):
        return f"access denied (HTTP {status_code})"
    if status_code == 404:
        return "policy not found on hub (HTTP 404)"
    return f"hub returned HTTP {status_code}"


def _extract_archive(archive: Path, target: Path, reference: str) -> Path:
    """Extract a bundle archive and return the directory holding its content."""
    if not zipfile.is_zipfile(archive):
        raise DownloadError(reference, "hub response is not a valid zip archive")

    try:
        with zipfile.ZipFile(archive, "r") as zip_ref:
            # Check for zip-slip
            for member in zip_ref.namelist():
                normalized = os.path.normpath(member)
                if normalized.startswith("..") or os.path.isabs(member):
                    raise DownloadError(reference, f"unsafe path in archive: {member}")
            zip_ref.extractall(target)
    except zipfile.BadZipFile as e:
        raise DownloadError(reference, f"corrupt archive: {e}") from e

    target.mkdir(parents=True, exist_ok=True)
    entries = list(target.iterdir())
    # Hub archives wrap the repository in a single <org>-<repo>-<sha> directory
    if len(entries) == 1 and entries[0].is_dir():
        return entries[0]
    return target


def _swap_into_place(source: Path, destination: Path) -> None:
    """Replace destination with source using renames on the same filesystem."""
    backup = None
    if destination.exists():
        backup = destination.with_name(f".{destination.name}.old-{uuid4().hex}")
        os.replace(destination, backup)
    try:
        os.replace(source, destination)
    except OSError:
        if backup is not None:
            os.replace(backup, destination)
        raise
    if backup is not None:
        shutil.rmtree(backup, ignore_errors=True)
