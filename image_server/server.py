from __future__ import annotations

import argparse
import logging
from typing import Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import HTMLResponse, JSONResponse, PlainTextResponse, Response

from common.logging_setup import NullTrace, TraceCollector, setup_logging
from common.types import RenderRequest
from image_server.config import ServiceContext, load_config
from image_server.errors import ImageServerError
from image_server.renderer import RenderCoordinator


log = logging.getLogger(__name__)

# "/uri/" and "/oid/" are both 5 characters long
ROUTE_PREFIX_LEN = 5

HELP_HTML = """<pre style="font-family:monospace">
========================================================================================================================
| Help
========================================================================================================================

How to make an url with uri:
------------------------------------------------------------------------------------------------------------------------
/uri/{your parameters separated by colons}/{image mgid string}
Example:
/uri/rw=480:rh=320:ch=600:cw=800:cx=200:cy=200:q=50/mgid:file:gsp:entertainment-assets:/cc/images/shows/example.jpg

How to make an url with image id:
------------------------------------------------------------------------------------------------------------------------
/oid/{your parameters separated by colons}/{item mgid string}
Example:
/oid/rw=480:rh=320:q=50/mgid:arc:series:example.com:7c2d44b4-c8b1-43a9-9bfc-32af988eab20
/oid/rw=500:rh=500:q=90/mgid:arc:video:example.com:2b469942-7bba-4d3a-9393-e9355f710d2c


Resize Parameters: (only need one of the parameters)
------------------------------------------------------------------------------------------------------------------------
rw - Resize width in pixels
rh - Resize height in pixels


Crop Parameters: (both crop width and crop height are required)
------------------------------------------------------------------------------------------------------------------------
cw - Crop width in pixels
ch - Crop height in pixels
cx - Crop x offset in pixels from top left as 0,0. Default is 0.
cy - Crop y offset in pixels from top left as 0,0. Default is 0.
cc - Crop to the center of the image.  Overrides cx and cy when used. true(1) false(0)  Default is false;


Quality Parameters: (if not passed no quality processing occurs.  Does nothing for gifs.)
------------------------------------------------------------------------------------------------------------------------
q - Quality, can be 0.5 or 50 but 1 is just 1 out of 100.
f - Format, can be either jpg, png, gif or webp.
n - Normalize, stretches the contrast of every color channel to span the full range.  Not applied to animated gifs.  true(1) false(0)  Default is false;


Animation Mode Parameters: (params used for handling animated gifs)
------------------------------------------------------------------------------------------------------------------------
am=s - Get still image (ie first frame of animated gif)
am=p - Get animated gif in preview mode which reduces the frames to 5 and sets the delay per frame to 1.5 seconds


Query String Parameters:
------------------------------------------------------------------------------------------------------------------------
help - Returns this page
debug - Returns information about how the requested url was processed. No image is returned.
cacheRefresh - clears the cache for this image request and fetches the image from the remote url
</pre>"""


def create_app(ctx: Optional[ServiceContext] = None) -> FastAPI:
    """
    Build the FastAPI app. Without a context, settings come from
    config/params.yaml and the environment (see image_server.config).

    Handlers are plain `def` so every request runs on its own worker thread.
    """
    if ctx is None:
        config = load_config()
        setup_logging(config.log_level)
        ctx = ServiceContext.from_config(config)

    coordinator = RenderCoordinator(ctx)
    app = FastAPI(title="Image Server", version="1.0.0")
    app.state.ctx = ctx
    app.state.coordinator = coordinator

    @app.exception_handler(ImageServerError)
    async def image_server_error_handler(request: Request, exc: ImageServerError):
        log.error("Request %s aborted: %s", request.url.path, exc)
        return JSONResponse(status_code=500, content={"detail": "Image server error", "hint": str(exc)[:200]})

    def _serve(request: Request, by_identifier: bool) -> Response:
        qs = request.query_params
        if "help" in qs:
            return HTMLResponse(HELP_HTML)

        debug = "debug" in qs
        path = request.url.path
        req = RenderRequest(
            path=path,
            segment=path[ROUTE_PREFIX_LEN:],
            by_identifier=by_identifier,
            accept=request.headers.get("accept", ""),
            force_refresh="cacheRefresh" in qs,
            trace=TraceCollector() if debug else NullTrace(),
        )
        result = coordinator.render(req)

        if debug:
            if result is not None:
                req.trace.add("Response image/%s, %d bytes%s", result.fmt, len(result.payload), " (cached)" if result.from_cache else "")
            return PlainTextResponse(req.trace.render())
        if result is None:
            return PlainTextResponse("404: Invalid image request", status_code=404)
        return Response(content=result.payload, media_type=result.content_type)

    @app.get("/uri/{rest:path}")
    def image_by_uri(rest: str, request: Request):
        return _serve(request, by_identifier=False)

    @app.get("/oid/{rest:path}")
    def image_by_id(rest: str, request: Request):
        return _serve(request, by_identifier=True)

    @app.get("/health")
    def health():
        return {
            "status": "ok",
            "cache_store": ctx.store.ping(),
            "mirror_dir": str(ctx.config.mirror_dir),
        }

    @app.get("/", response_class=HTMLResponse)
    def help_page():
        return HTMLResponse(HELP_HTML)

    return app


def main() -> None:
    ap = argparse.ArgumentParser(description="Image Server")
    ap.add_argument("--config", default=None, help="YAML settings (default: config/params.yaml)")
    ap.add_argument("--host", default=None)
    ap.add_argument("--port", type=int, default=None)
    args = ap.parse_args()

    config = load_config(args.config)
    setup_logging(config.log_level)
    ctx = ServiceContext.from_config(config)
    log.info("Image Server ready", extra={"extra": {"cache_store": ctx.store.ping()}})
    uvicorn.run(create_app(ctx), host=args.host or config.host, port=args.port or config.port)


# -------- local dev entrypoint --------
if __name__ == "__main__":
    main()
