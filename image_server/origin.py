from __future__ import annotations

"""
Origin fetch + local mirror.

Mirror layout: <mirror_dir>/<resource id with ':' replaced by '_'>, e.g.
    mgid:file:gsp:entertainment-assets:/cc/images/a.jpg
    -> <mirror_dir>/mgid_file_gsp_entertainment-assets_/cc/images/a.jpg

Concurrent misses on the same mirror path are thinned out by a short claim in
the cache store. Whoever does not get the claim is served the placeholder
image right away instead of waiting for the other worker's download.
"""

import logging
from pathlib import Path
from typing import Optional

import requests

from common.logging_setup import NullTrace
from image_server.config import ServiceContext
from image_server.errors import (
    ImageDecodeError,
    InvalidResourceError,
    MirrorWriteError,
    PlaceholderUnavailableError,
)
from image_server.transform import DecodedImage, decode


log = logging.getLogger(__name__)


class OriginFetcher:
    """Downloads origin assets and writes them to the local mirror."""

    def __init__(self, ctx: ServiceContext):
        self.base_url = ctx.config.remote_base_url
        self.quality_suffix = ctx.config.origin_quality_suffix
        self.timeout = ctx.config.http_timeout_s
        self.session = ctx.session

    def build_url(self, resource_id: str) -> str:
        return f"{self.base_url}{resource_id}{self.quality_suffix}"

    def fetch(self, resource_id: str, mirror_path: Path) -> Optional[bytes]:
        """
        GET the origin asset and mirror it locally.

        Returns the fetched bytes, or None if the remote side failed.

        Raises:
            MirrorWriteError: the download worked but the mirror could not be written.
        """
        url = self.build_url(resource_id)
        log.info("Remote fetch image: %s", url)
        try:
            r = self.session.get(url, timeout=self.timeout)
        except requests.RequestException as e:
            log.warning("Error on remote fetch of %s: %s", url, e)
            return None
        if r.status_code != 200 or not r.content:
            log.warning("Remote fetch of %s failed: %s", url, r.status_code)
            return None

        self._write_mirror(mirror_path, r.content)
        return r.content

    @staticmethod
    def _write_mirror(path: Path, data: bytes) -> None:
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(data)
        except OSError as e:
            log.error("Failed to write mirror file %s: %s", path, e)
            raise MirrorWriteError(f"cannot write {path}: {e}") from e
        log.info("Bytes written to file", extra={"extra": {"path": str(path), "bytes": len(data)}})


class FetchCoordinator:
    """Serves assets from the mirror, fetching at most once per claim window."""

    def __init__(self, ctx: ServiceContext, fetcher: Optional[OriginFetcher] = None):
        self.mirror_dir = Path(ctx.config.mirror_dir)
        self.placeholder_id = ctx.config.placeholder_path
        self.store = ctx.store
        self.fetcher = fetcher or OriginFetcher(ctx)

    # ----------------------------
    # Public API
    # ----------------------------
    def mirror_path(self, resource_id: str) -> Path:
        """
        Local mirror path of a resource.

        Raises:
            InvalidResourceError: empty ids and ids that would leave the mirror dir.
        """
        rel = resource_id.replace(":", "_").lstrip("/")
        if not rel or ".." in rel.split("/"):
            raise InvalidResourceError(f"invalid resource id: {resource_id!r}")
        return self.mirror_dir / rel

    def ensure_local(self, resource_id: str, *, force_refresh: bool = False, trace=None) -> DecodedImage:
        """
        Return the decoded asset, fetching and mirroring it if needed.

        Falls back to the placeholder when the fetch fails or another
        worker holds the fetch claim.
        """
        trace = trace or NullTrace()
        path = self.mirror_path(resource_id)
        trace.add("Mirror path %s", path)

        if force_refresh:
            self._drop_mirror(path)
            trace.add("cacheRefresh: local mirror removed")

        image = self._read_mirror(path)
        if image is not None:
            trace.add("Found image locally")
            return image

        claimed = self.store.claim(str(path))
        if claimed or force_refresh:
            trace.add("Fetching %s from origin (claimed=%s)", resource_id, claimed)
            data = self.fetcher.fetch(resource_id, path)
            if data is not None:
                try:
                    return decode(data, str(path))
                except ImageDecodeError as e:
                    log.warning("Fetched bytes for %s are not an image: %s", resource_id, e)
                    self._drop_mirror(path)
            trace.add("Origin fetch failed, serving placeholder")
            return self.load_placeholder(trace)

        log.info("Fetch claim for %s held elsewhere, serving placeholder", path)
        trace.add("Fetch claim held by another worker, serving placeholder")
        return self.load_placeholder(trace)

    def load_placeholder(self, trace=None) -> DecodedImage:
        """
        Load the placeholder through the same mirror/claim/fetch path.

        Raises:
            PlaceholderUnavailableError: not mirrored and not obtainable.
        """
        trace = trace or NullTrace()
        path = self.mirror_path(self.placeholder_id)
        image = self._read_mirror(path)
        if image is not None:
            trace.add("Placeholder served from %s", path)
            return image

        if not self.store.claim(str(path)):
            log.error("Cannot load default image %s", path)
            raise PlaceholderUnavailableError(f"placeholder {path} missing and fetch claim denied")

        trace.add("Fetching placeholder from origin")
        data = self.fetcher.fetch(self.placeholder_id, path)
        if data is None:
            raise PlaceholderUnavailableError(f"placeholder {self.placeholder_id} could not be fetched")
        try:
            return decode(data, str(path))
        except ImageDecodeError as e:
            raise PlaceholderUnavailableError(str(e)) from e

    # ----------------------------
    # internals
    # ----------------------------
    @staticmethod
    def _read_mirror(path: Path) -> Optional[DecodedImage]:
        if not path.is_file():
            return None
        try:
            data = path.read_bytes()
        except OSError as e:
            log.warning("Mirror file %s unreadable: %s", path, e)
            return None
        try:
            return decode(data, str(path))
        except ImageDecodeError as e:
            # a broken mirror is re-fetched on this miss
            log.warning("Mirror file %s is corrupt, discarding: %s", path, e)
            FetchCoordinator._drop_mirror(path)
            return None

    @staticmethod
    def _drop_mirror(path: Path) -> None:
        try:
            path.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            log.warning("Error deleting local cached image %s: %s", path, e)
