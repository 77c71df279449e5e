from __future__ import annotations

import logging
from typing import Optional, Tuple

from common.types import RenderRequest, RenderResult
from common.utils import timer_ms
from image_server.config import ServiceContext
from image_server.directives import parse_directives, split_segment
from image_server.errors import InvalidResourceError
from image_server.metadata import MetadataClient
from image_server.origin import FetchCoordinator
from image_server.transform import DecodedImage, TransformPipeline
from image_server.variants import VariantResolver


log = logging.getLogger(__name__)


class RenderCoordinator:
    """
    Top-level request flow.

    Order:
      1) rendered result from the cache (skipped on cacheRefresh)
      2) variant resolution for identifiers (metadata cache / service)
      3) local mirror, else origin fetch under a claim, else placeholder
      4) transform, then write format + bytes back to the cache
    """

    def __init__(
        self,
        ctx: ServiceContext,
        *,
        fetch: Optional[FetchCoordinator] = None,
        resolver: Optional[VariantResolver] = None,
        pipeline: Optional[TransformPipeline] = None,
    ):
        self.store = ctx.store
        self.variant_dimensions = ctx.config.variant_dimensions
        self.fetch = fetch or FetchCoordinator(ctx)
        self.resolver = resolver or VariantResolver(MetadataClient(ctx))
        self.pipeline = pipeline or TransformPipeline()

    def render(self, req: RenderRequest) -> Optional[RenderResult]:
        """
        Serve a request. Returns None for requests that do not name an
        image (callers answer 404); these are never cached.
        """
        trace = req.trace
        if req.force_refresh:
            trace.add("cacheRefresh: result cache bypassed")
        else:
            entry = self.store.get_result(req.path)
            if entry.is_hit:
                trace.add("Image cache found for %s (%s)", req.path, entry.fmt)
                return RenderResult(payload=entry.payload, fmt=entry.fmt, from_cache=True)
            if entry.payload:
                log.warning("Cached image for %s has no format, regenerating", req.path)
                trace.add("Cached image without format, regenerating")

        log.info("Generating image", extra={"extra": req.to_meta()})
        out = self.generate(req)
        if out is None:
            return None
        data, fmt = out
        if self.store.put_result(req.path, data, fmt):
            trace.add("Result cached for %s", req.path)
        return RenderResult(payload=data, fmt=fmt)

    def generate(self, req: RenderRequest) -> Optional[Tuple[bytes, str]]:
        trace = req.trace
        parts = split_segment(req.segment)
        if parts is None:
            log.info("404: invalid image request %s", req.path)
            trace.add("No mgid in %s", req.segment)
            return None
        directives, resource = parts
        opts = parse_directives(directives, resource, req.options)
        trace.add("Directives %s -> %s", directives or "(none)", opts)

        if req.by_identifier:
            image = self._load_by_identifier(resource, req)
        else:
            try:
                image = self.fetch.ensure_local(resource, force_refresh=req.force_refresh, trace=trace)
            except InvalidResourceError as e:
                log.info("Invalid id requested: %s", e)
                trace.add("Invalid resource %s", resource)
                return None

        (data, fmt), dt_ms = timer_ms(self.pipeline.render)(image, opts, req.accept, trace)
        trace.add("Transform took %.1f ms", dt_ms)
        return data, fmt

    def target_size(self, req: RenderRequest) -> Tuple[int, int]:
        """Dimensions used to rank variants, per `variants.dimensions`."""
        o = req.options
        if self.variant_dimensions == "crop":
            return o.cw, o.ch
        return o.rw, o.rh

    def _load_by_identifier(self, identifier: str, req: RenderRequest) -> DecodedImage:
        trace = req.trace
        width, height = self.target_size(req)
        res = self.resolver.resolve(identifier, width, height, force_refresh=req.force_refresh, trace=trace)
        if res.empty:
            trace.add("Nothing resolved for %s, serving placeholder", identifier)
            return self.fetch.load_placeholder(trace)

        if not res.crop.is_zero:
            req.options.override_crop(res.crop)
            trace.add("Crop directive overridden by variant crop-set")

        try:
            return self.fetch.ensure_local(res.uri, force_refresh=req.force_refresh, trace=trace)
        except InvalidResourceError as e:
            log.warning("Resolved asset %s cannot be mirrored: %s", res.uri, e)
            return self.fetch.load_placeholder(trace)
