from __future__ import annotations

"""
Transform pipeline: decoded frames + RenderOptions -> encoded bytes.

Stage order is fixed:
    format decision -> animation mode -> crop -> resize -> normalize
    -> encoder presets -> quality -> metadata strip -> encode

Every per-frame stage runs on all frames of an animation; frames are
coalesced to full canvases at decode time so crop/resize never see partial
GIF layers.
"""

import io
import logging
import math
import zlib
from dataclasses import dataclass
from typing import Any, Dict, List, Tuple

import numpy as np
from PIL import Image, ImageSequence

from common.logging_setup import NullTrace
from common.types import ANIMATION_PREVIEW, ANIMATION_STILL, RenderOptions
from common.utils import floor_ratio
from image_server.errors import ImageDecodeError


log = logging.getLogger(__name__)

# output label -> Pillow encoder
SUPPORTED_FORMATS: Dict[str, str] = {
    "jpg": "JPEG",
    "jpeg": "JPEG",
    "png": "PNG",
    "webp": "WEBP",
    "gif": "GIF",
}
WEBP_MEDIA_TYPE = "image/webp"

PREVIEW_FRAMES = 5
PREVIEW_FRAME_MS = 1500


@dataclass
class DecodedImage:
    """
    An origin asset ready for the pipeline.

    Attributes:
        frames: full-canvas frames, mode RGB or RGBA.
        durations: per-frame display time in ms (0 for stills).
        label_path: path the asset was loaded from; its extension drives the default format.
        has_alpha: the origin carries transparency.
        loop: animation loop count as stored in the origin.
        source_format: container format Pillow identified, e.g. "JPEG".
    """
    frames: List[Image.Image]
    durations: List[int]
    label_path: str
    has_alpha: bool = False
    loop: int = 0
    source_format: str = ""

    @property
    def animated(self) -> bool:
        return len(self.frames) > 1

    @property
    def size(self) -> Tuple[int, int]:
        return self.frames[0].size

    @property
    def extension(self) -> str:
        name = self.label_path.rsplit("/", 1)[-1]
        if "." not in name:
            return ""
        return name.rsplit(".", 1)[-1].lower()


def _frame_has_alpha(frame: Image.Image) -> bool:
    if frame.mode in ("RGBA", "LA", "PA", "La", "RGBa"):
        return True
    return frame.mode == "P" and "transparency" in frame.info


def decode(data: bytes, label_path: str) -> DecodedImage:
    """
    Decode image bytes into coalesced RGB/RGBA frames.

    Raises:
        ImageDecodeError: if Pillow cannot identify or fully read the bytes.
    """
    try:
        im = Image.open(io.BytesIO(data))
        has_alpha = _frame_has_alpha(im)
        loop = int(im.info.get("loop", 0) or 0)
        source_format = im.format or ""
        frames: List[Image.Image] = []
        durations: List[int] = []
        for frame in ImageSequence.Iterator(im):
            has_alpha = has_alpha or _frame_has_alpha(frame)
            durations.append(int(frame.info.get("duration", 0) or 0))
            frames.append(frame.convert("RGBA" if has_alpha else "RGB"))
    except (OSError, ValueError, Image.DecompressionBombError) as e:
        raise ImageDecodeError(f"cannot decode {label_path}: {e}") from e
    if not frames:
        raise ImageDecodeError(f"no frames in {label_path}")
    if has_alpha:
        frames = [f if f.mode == "RGBA" else f.convert("RGBA") for f in frames]
    return DecodedImage(
        frames=frames,
        durations=durations,
        label_path=label_path,
        has_alpha=has_alpha,
        loop=loop,
        source_format=source_format,
    )


def resize_dimensions(width: int, height: int, rw: int, rh: int) -> Tuple[int, int]:
    """
    Output size for a resize request.

    Both given: exactly (rw, rh). One given: the other follows the source
    aspect ratio truncated to two decimals, floor(w/h*100).
    """
    if rw > 0 and rh > 0:
        return rw, rh
    ratio = max(1, floor_ratio(width, height, 100))
    if rw > 0:
        return rw, max(1, rw * 100 // ratio)
    return max(1, rh * ratio // 100), rh


def fit_pixel_budget(width: int, height: int, max_pixels=None) -> Tuple[int, int]:
    """
    Shrink (width, height) uniformly until width*height fits the pixel budget
    (Pillow's MAX_IMAGE_PIXELS unless given; no budget means no limit).
    """
    budget = Image.MAX_IMAGE_PIXELS if max_pixels is None else max_pixels
    if not budget or width * height <= budget:
        return width, height
    scale = math.sqrt(budget / (width * height))
    w = max(1, int(width * scale))
    h = max(1, int(height * scale))
    # very thin sizes floor one side to 1, keep the other inside the budget
    w = max(1, min(w, budget // h))
    h = max(1, min(h, budget // w))
    return w, h


def crop_box(width: int, height: int, o: RenderOptions) -> Tuple[int, int, int, int]:
    """Crop rectangle (left, top, right, bottom) clipped to the frame."""
    if o.cc:
        # truncate toward zero so an oversized crop stays centered
        x = int((width - o.cw) / 2)
        y = int((height - o.ch) / 2)
    else:
        x, y = o.cx, o.cy
    return (max(0, x), max(0, y), min(width, x + o.cw), min(height, y + o.ch))


class TransformPipeline:
    """Applies RenderOptions to a DecodedImage and encodes the result."""

    def render(
        self,
        image: DecodedImage,
        options: RenderOptions,
        accept: str = "",
        trace=None,
    ) -> Tuple[bytes, str]:
        """
        Run all stages and return (encoded bytes, format label).
        """
        trace = trace or NullTrace()

        fmt = self.decide_format(image, options.f, accept, trace)
        frames, durations = self.apply_animation_mode(image, options.am, trace)

        if options.crop_active:
            frames = [self._crop(f, options, trace) for f in frames]

        if options.resize_active:
            frames = [self._resize(f, options) for f in frames]
            trace.add("Resized to %dx%d (requested rw=%d rh=%d)", frames[0].width, frames[0].height, options.rw, options.rh)

        if options.n:
            if fmt == "gif" and len(frames) > 1:
                trace.add("Normalize skipped for animated gif")
            else:
                frames = [self._normalize(f) for f in frames]
                trace.add("Normalized %d frame(s)", len(frames))

        params = self.encoder_presets(fmt)
        frames = self._normalize_colorspace(frames, fmt)
        params.update(self.quality_params(fmt, options.q))
        if options.q > 0:
            trace.add("Quality %d mapped to %s", options.q, params)

        frames = self._strip(frames)
        data = self._encode(frames, durations, image.loop, fmt, params)
        trace.add("Encoded %s, %d bytes", fmt, len(data))
        return data, fmt

    # ----------------------------
    # Stages
    # ----------------------------
    @staticmethod
    def decide_format(image: DecodedImage, requested: str, accept: str, trace=None) -> str:
        """
        Explicit format wins, then a webp-capable Accept header, then the
        origin's extension. Opaque stills and 'jpeg' origins become 'jpg'.
        """
        trace = trace or NullTrace()
        if requested:
            if requested in SUPPORTED_FORMATS:
                trace.add("Format %s requested explicitly", requested)
                return requested
            log.warning("Unsupported format %r requested for %s, ignoring", requested, image.label_path)
            trace.add("Unsupported format %s ignored", requested)

        if WEBP_MEDIA_TYPE in (accept or ""):
            trace.add("Accept header allows webp")
            return "webp"

        ext = image.extension
        if ext == "jpeg" or (not image.animated and not image.has_alpha):
            fmt = "jpg"
        elif ext in SUPPORTED_FORMATS:
            fmt = ext
        else:
            fmt = "gif" if image.animated else "png"
        trace.add("Format %s derived from extension %r of %s (decoded as %s)", fmt, ext, image.label_path, image.source_format)
        return fmt

    @staticmethod
    def apply_animation_mode(image: DecodedImage, mode: str, trace=None) -> Tuple[List[Image.Image], List[int]]:
        trace = trace or NullTrace()
        frames, durations = list(image.frames), list(image.durations)
        if not image.animated or not mode:
            return frames, durations
        if mode == ANIMATION_STILL:
            trace.add("Still mode: keeping first of %d frames", len(frames))
            return frames[:1], durations[:1]
        if mode == ANIMATION_PREVIEW:
            n = len(frames)
            if n > PREVIEW_FRAMES:
                idx = [round(i * (n - 1) / (PREVIEW_FRAMES - 1)) for i in range(PREVIEW_FRAMES)]
                frames = [frames[i] for i in idx]
            trace.add("Preview mode: %d of %d frames at %d ms", len(frames), n, PREVIEW_FRAME_MS)
            return frames, [PREVIEW_FRAME_MS] * len(frames)
        return frames, durations

    @staticmethod
    def _crop(frame: Image.Image, o: RenderOptions, trace) -> Image.Image:
        box = crop_box(frame.width, frame.height, o)
        if box[2] <= box[0] or box[3] <= box[1]:
            log.warning("Crop %s outside of %dx%d frame, skipped", box, frame.width, frame.height)
            trace.add("Crop %s outside frame, skipped", box)
            return frame
        trace.add("Crop x=%d y=%d w=%d h=%d", box[0], box[1], box[2] - box[0], box[3] - box[1])
        return frame.crop(box)

    @staticmethod
    def _resize(frame: Image.Image, o: RenderOptions) -> Image.Image:
        requested = resize_dimensions(frame.width, frame.height, o.rw, o.rh)
        size = fit_pixel_budget(*requested)
        if size != requested:
            log.warning("Resize to %dx%d exceeds the pixel budget, using %dx%d", *requested, *size)
        if size == frame.size:
            return frame
        return frame.resize(size, Image.Resampling.LANCZOS)

    @staticmethod
    def _normalize(frame: Image.Image) -> Image.Image:
        """Stretch every color channel to span 0..255 (alpha untouched)."""
        arr = np.asarray(frame).astype(np.float32)
        n_color = 3 if frame.mode == "RGBA" else arr.shape[2]
        color = arr[..., :n_color]
        lo = color.min(axis=(0, 1))
        hi = color.max(axis=(0, 1))
        span = np.where(hi > lo, hi - lo, 1.0)
        stretched = np.where(hi > lo, (color - lo) * (255.0 / span), color)
        arr[..., :n_color] = stretched
        return Image.fromarray(np.clip(arr + 0.5, 0, 255).astype(np.uint8))

    @staticmethod
    def encoder_presets(fmt: str) -> Dict[str, Any]:
        pil = SUPPORTED_FORMATS[fmt]
        if pil == "PNG":
            return {"compress_level": 9, "compress_type": zlib.Z_FILTERED}
        if pil == "JPEG":
            # 4:4:4, no chroma subsampling
            return {"subsampling": 0}
        if pil == "WEBP":
            return {"method": 6}
        return {}

    @staticmethod
    def quality_params(fmt: str, q: int) -> Dict[str, Any]:
        """
        Map quality onto the format's compression mode.

        jpg/jpeg: lossy quality. png: zlib level from q. webp: lossless mode,
        q becomes the compression effort. gif: nothing.
        """
        if q <= 0:
            return {}
        pil = SUPPORTED_FORMATS[fmt]
        if pil == "JPEG":
            return {"quality": q}
        if pil == "PNG":
            return {"compress_level": min(9, q // 10)}
        if pil == "WEBP":
            return {"lossless": True, "quality": q}
        return {}

    @staticmethod
    def _normalize_colorspace(frames: List[Image.Image], fmt: str) -> List[Image.Image]:
        target = "RGB" if SUPPORTED_FORMATS[fmt] == "JPEG" else None
        out = []
        for f in frames:
            mode = target or ("RGBA" if f.mode in ("RGBA", "LA", "PA") else "RGB")
            out.append(f if f.mode == mode else f.convert(mode))
        return out

    @staticmethod
    def _strip(frames: List[Image.Image]) -> List[Image.Image]:
        # encoders pick up icc/exif/xmp/comments from .info
        for f in frames:
            f.info = {}
        return frames

    @staticmethod
    def _encode(
        frames: List[Image.Image],
        durations: List[int],
        loop: int,
        fmt: str,
        params: Dict[str, Any],
    ) -> bytes:
        pil = SUPPORTED_FORMATS[fmt]
        buf = io.BytesIO()
        if pil == "JPEG" or len(frames) == 1:
            frames[0].save(buf, format=pil, **params)
        else:
            frames[0].save(
                buf,
                format=pil,
                save_all=True,
                append_images=frames[1:],
                duration=[d or 100 for d in durations[: len(frames)]],
                loop=loop,
                **params,
            )
        return buf.getvalue()
