"""
End-to-end tests for RenderCoordinator with a fake origin, metadata service and cache store
"""

import json

import pytest

from common.logging_setup import TraceCollector
from common.types import RenderRequest
from image_server.renderer import RenderCoordinator
from tests.conftest import METADATA_URL, ORIGIN_URL, PLACEHOLDER_SIZE
from tests.helpers import fake_response, image_bytes, open_image

PHOTO = "mgid:file:gsp:entertainment-assets:/cc/images/photo.jpg"
WIDE = "mgid:file:gsp:assets:/wide.jpg"
SQUARE = "mgid:file:gsp:assets:/square.jpg"
ITEM_ID = "mgid:arc:video:example.com:abc-123"


def _img(uri, w, h, crops=()):
    return {
        "ImageAssetRefs": [{"URI": uri, "Width": w, "Height": h}],
        "VirtualImageParams": [
            {"CropSizeWidth": cw, "CropSizeHeight": ch, "TopLeftX": x, "TopLeftY": y} for cw, ch, x, y in crops
        ],
    }


ITEM = {
    "ImagesWithCaptions": [{"Image": _img(WIDE, 1920, 1080)}],
    "Images": [_img(SQUARE, 1600, 1200, crops=[(600, 600, 100, 50)])],
}


class FakeRemote:
    """Routes session.get calls to canned origin assets and metadata documents."""

    def __init__(self):
        self.assets = {}
        self.docs = []
        self.urls = []

    def get(self, url, timeout=None):
        self.urls.append(url)
        if url.startswith(METADATA_URL):
            return fake_response(200, json.dumps({"response": {"docs": self.docs}}).encode())
        resource = url[len(ORIGIN_URL):].rsplit("?", 1)[0]
        if resource in self.assets:
            return fake_response(200, self.assets[resource])
        return fake_response(404, b"not found")

    def count(self, prefix):
        return sum(1 for u in self.urls if u.startswith(prefix))


@pytest.fixture
def remote(session):
    r = FakeRemote()
    session.get.side_effect = r.get
    return r


@pytest.fixture
def coordinator(ctx):
    return RenderCoordinator(ctx)


def _uri(segment, **kw):
    return RenderRequest(path="/uri/" + segment, segment=segment, **kw)


def _oid(segment, **kw):
    return RenderRequest(path="/oid/" + segment, segment=segment, by_identifier=True, **kw)


class TestDirectPath:
    """Requests naming an origin asset directly (/uri/)"""

    def test_resize_fetch_and_cache(self, coordinator, remote, ctx, mirror_dir):
        remote.assets[PHOTO] = image_bytes((1920, 1280))
        req = _uri("rw=480:rh=320:q=50/" + PHOTO)

        result = coordinator.render(req)

        assert result.fmt == "jpg"
        assert result.content_type == "image/jpg"
        assert not result.from_cache
        assert open_image(result.payload).size == (480, 320)
        assert (mirror_dir / "mgid_file_gsp_entertainment-assets_/cc/images/photo.jpg").is_file()
        cached = ctx.store.get_result(req.path)
        assert cached.is_hit
        assert cached.payload == result.payload

    def test_second_request_is_served_from_cache(self, coordinator, remote):
        remote.assets[PHOTO] = image_bytes((100, 80))
        first = coordinator.render(_uri("rw=50/" + PHOTO))
        second = coordinator.render(_uri("rw=50/" + PHOTO))
        assert second.from_cache
        assert second.payload == first.payload
        assert remote.count(ORIGIN_URL) == 1

    def test_no_directives(self, coordinator, remote):
        remote.assets[PHOTO] = image_bytes((100, 80))
        result = coordinator.render(_uri(PHOTO))
        assert open_image(result.payload).size == (100, 80)

    def test_cached_payload_without_format_is_regenerated(self, coordinator, remote, fake_redis):
        remote.assets[PHOTO] = image_bytes((100, 80))
        req = _uri("rw=50/" + PHOTO)
        fake_redis.set("imageServer_cache_" + req.path, b"stale bytes")

        result = coordinator.render(req)

        assert not result.from_cache
        assert open_image(result.payload).size[0] == 50
        assert fake_redis.data["imageServer_cache_format_" + req.path] == b"jpg"

    def test_cache_refresh_refetches_and_rewrites(self, coordinator, remote, ctx):
        remote.assets[PHOTO] = image_bytes((1920, 1280))
        first = coordinator.render(_uri("rw=480/" + PHOTO))
        assert open_image(first.payload).size == (480, 320)

        remote.assets[PHOTO] = image_bytes((1920, 1080))
        stale = coordinator.render(_uri("rw=480/" + PHOTO))
        assert stale.from_cache

        trace = TraceCollector()
        fresh = coordinator.render(_uri("rw=480/" + PHOTO, force_refresh=True, trace=trace))
        assert not fresh.from_cache
        assert open_image(fresh.payload).size == (480, 271)
        assert remote.count(ORIGIN_URL) == 2
        assert ctx.store.get_result("/uri/rw=480/" + PHOTO).payload == fresh.payload
        assert any("cacheRefresh" in line for line in trace.lines)

    def test_missing_origin_serves_placeholder(self, coordinator, remote, placeholder):
        result = coordinator.render(_uri("f=png/" + PHOTO))
        assert result.fmt == "png"
        assert open_image(result.payload).size == PLACEHOLDER_SIZE

    @pytest.mark.parametrize("segment", ["rw=480/not-an-id.jpg", "rw=480", "a/b/mgid:x/../y", ""])
    def test_requests_without_a_resource_are_rejected(self, coordinator, remote, fake_redis, segment):
        assert coordinator.render(_uri(segment)) is None
        assert not any(k.startswith("imageServer_cache_") for k in fake_redis.data)

    def test_escaping_resource_is_rejected(self, coordinator, remote):
        assert coordinator.render(_uri("mgid:x:/../../etc/passwd")) is None
        assert remote.urls == []


class TestIdentifier:
    """Requests naming a content item (/oid/)"""

    def test_matching_crop_set_is_applied(self, coordinator, remote):
        remote.docs = [ITEM]
        remote.assets[SQUARE] = image_bytes((1600, 1200))
        remote.assets[WIDE] = image_bytes((1920, 1080))
        req = _oid("rw=500:rh=500/" + ITEM_ID)

        result = coordinator.render(req)

        assert open_image(result.payload).size == (500, 500)
        assert (req.options.cw, req.options.ch, req.options.cx, req.options.cy) == (600, 600, 100, 50)
        assert remote.count(ORIGIN_URL + SQUARE) == 1
        assert remote.count(ORIGIN_URL + WIDE) == 0

    def test_native_size_match_keeps_requested_crop(self, coordinator, remote):
        remote.docs = [ITEM]
        remote.assets[WIDE] = image_bytes((1920, 1080))
        req = _oid("rw=1920:rh=1080:cw=100:ch=50/" + ITEM_ID)
        result = coordinator.render(req)
        assert (req.options.cw, req.options.ch) == (100, 50)
        assert open_image(result.payload).size == (1920, 1080)

    def test_unsupported_provider_serves_placeholder(self, coordinator, remote, placeholder):
        result = coordinator.render(_oid("rw=40:rh=20/mgid:foo:video:example.com:abc-123"))
        assert result is not None
        assert open_image(result.payload).size == (40, 20)
        assert remote.urls == []

    def test_unknown_item_serves_placeholder(self, coordinator, remote, placeholder):
        remote.docs = []
        result = coordinator.render(_oid("rw=40:rh=20/" + ITEM_ID))
        assert open_image(result.payload).size == (40, 20)
        assert remote.count(METADATA_URL) == 1

    def test_cache_refresh_bypasses_metadata_cache(self, coordinator, remote, ctx):
        remote.docs = [ITEM]
        remote.assets[SQUARE] = image_bytes((1600, 1200))
        coordinator.render(_oid("rw=500:rh=500/" + ITEM_ID))
        coordinator.render(_oid("rw=400:rh=400/" + ITEM_ID))
        assert remote.count(METADATA_URL) == 1

        coordinator.render(_oid("rw=500:rh=500/" + ITEM_ID, force_refresh=True))
        assert remote.count(METADATA_URL) == 2
        assert remote.count(ORIGIN_URL + SQUARE) == 2


class TestVariantDimensions:
    def test_resize_directives_by_default(self, coordinator):
        req = _oid(ITEM_ID)
        req.options.rw, req.options.rh, req.options.cw, req.options.ch = 500, 400, 10, 10
        assert coordinator.target_size(req) == (500, 400)

    def test_crop_directives_when_configured(self, ctx, remote):
        ctx.config.variant_dimensions = "crop"
        coordinator = RenderCoordinator(ctx)
        req = _oid(ITEM_ID)
        req.options.rw, req.options.rh, req.options.cw, req.options.ch = 500, 400, 10, 10
        assert coordinator.target_size(req) == (10, 10)

    def test_crop_dimensions_pick_the_square_variant(self, ctx, remote):
        ctx.config.variant_dimensions = "crop"
        remote.docs = [ITEM]
        remote.assets[SQUARE] = image_bytes((1600, 1200))
        # resize is 16:9 but the crop directive asks for a square
        req = _oid("rw=160:rh=90:cw=300:ch=300/" + ITEM_ID)
        RenderCoordinator(ctx).render(req)
        assert remote.count(ORIGIN_URL + SQUARE) == 1
        assert (req.options.cw, req.options.ch) == (600, 600)
