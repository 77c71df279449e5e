from __future__ import annotations

import json
import logging
from typing import Any, Dict, Optional

import requests

from common.logging_setup import NullTrace
from image_server.config import ServiceContext


log = logging.getLogger(__name__)


def get_field(obj: Any, name: str, default: Any = None) -> Any:
    """
    Case-insensitive key lookup on a JSON object.

    The metadata service is not consistent about key casing
    ("ImageAssetRefs" vs "imageAssetRefs"), so exact matches win and any
    casing is accepted otherwise.
    """
    if not isinstance(obj, dict):
        return default
    if name in obj:
        return obj[name]
    lname = name.lower()
    for k, v in obj.items():
        if isinstance(k, str) and k.lower() == lname:
            return v
    return default


class MetadataClient:
    """Looks up content-item descriptors, cached for an hour in the store."""

    def __init__(self, ctx: ServiceContext):
        self.query_template = ctx.config.metadata_query
        self.timeout = ctx.config.http_timeout_s
        self.session = ctx.session
        self.store = ctx.store

    def build_url(self, item_id: str, namespace: str) -> str:
        return self.query_template.replace("[NAMESPACE]", namespace, 1).replace("[KEYID]", item_id, 1)

    def fetch_raw(self, item_id: str, namespace: str, *, force_refresh: bool = False, trace=None) -> Optional[bytes]:
        """
        Raw response bytes for an item, from the cache or the service.

        Failed requests return None and are not cached. Successful bodies are
        cached as-is, before anyone tries to parse them.
        """
        trace = trace or NullTrace()
        url = self.build_url(item_id, namespace)

        if not force_refresh:
            raw = self.store.get_object(url)
            if raw:
                trace.add("Metadata for %s served from cache", item_id)
                return raw

        log.info("Fetching metadata: %s", url)
        trace.add("Fetching metadata for %s:%s", namespace, item_id)
        try:
            r = self.session.get(url, timeout=self.timeout)
        except requests.RequestException as e:
            log.warning("Error fetching metadata for %s: %s", item_id, e)
            return None
        if r.status_code != 200:
            log.warning("Metadata query for %s failed: %s %s", item_id, r.status_code, r.text[:200])
            return None

        raw = r.content
        self.store.put_object(url, raw)
        return raw

    def fetch_descriptor(self, item_id: str, namespace: str, *, force_refresh: bool = False, trace=None) -> Optional[Dict]:
        """
        The single document describing `item_id`, or None.

        The service answers with {"response": {"docs": [...]}}; anything but
        exactly one document counts as not found.
        """
        raw = self.fetch_raw(item_id, namespace, force_refresh=force_refresh, trace=trace)
        if raw is None:
            return None
        try:
            data = json.loads(raw)
        except ValueError as e:
            log.warning("Metadata for %s is not valid JSON: %s", item_id, e)
            return None

        docs = get_field(get_field(data, "response"), "docs")
        if not isinstance(docs, list) or len(docs) != 1 or not isinstance(docs[0], dict):
            log.info("Failed to fetch object by id %s (%s docs)", item_id, len(docs) if isinstance(docs, list) else 0)
            return None
        return docs[0]
