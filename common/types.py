from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple

from common.logging_setup import NullTrace


ANIMATION_STILL = "still"
ANIMATION_PREVIEW = "preview"


@dataclass(slots=True)
class RenderOptions:
    """
    Typed directive set parsed from a request path segment.

    Attributes:
        rw, rh: resize width/height in pixels (0 = unset).
        cw, ch: crop width/height in pixels (0 = unset).
        cx, cy: crop offsets from the top-left corner.
        cc: crop around the image center (overrides cx/cy).
        q: quality 1..100 (0 = unset).
        f: explicit output format label ("" = unset).
        n: normalize (contrast stretch).
        am: animation mode, "still" | "preview" | "".
    """
    rw: int = 0
    rh: int = 0
    cw: int = 0
    ch: int = 0
    cx: int = 0
    cy: int = 0
    cc: bool = False
    q: int = 0
    f: str = ""
    n: bool = False
    am: str = ""

    @property
    def crop_active(self) -> bool:
        return self.cw > 0 and self.ch > 0

    @property
    def resize_active(self) -> bool:
        return self.rw > 0 or self.rh > 0

    def override_crop(self, crop: "CropSet") -> None:
        """Replace the crop rectangle (used when a variant carries its own crop-set)."""
        self.cw = crop.width
        self.ch = crop.height
        self.cx = crop.x
        self.cy = crop.y


@dataclass(frozen=True)
class AssetRef:
    """One encoded rendition of a candidate image."""
    width: int
    height: int
    uri: str
    fmt: str = ""


@dataclass(frozen=True)
class CropSet:
    """Pre-authored crop rectangle on a candidate image."""
    width: int
    height: int
    x: int = 0
    y: int = 0

    @property
    def is_zero(self) -> bool:
        return self.width == 0 or self.height == 0


ZERO_CROP = CropSet(0, 0, 0, 0)


@dataclass(frozen=True)
class CandidateImage:
    assets: Tuple[AssetRef, ...]
    crop_sets: Tuple[CropSet, ...] = ()

    @property
    def primary(self) -> AssetRef:
        return self.assets[0]


@dataclass(frozen=True)
class Resolution:
    """Outcome of variant resolution; an empty `uri` means nothing was found."""
    uri: str = ""
    crop: CropSet = ZERO_CROP

    @property
    def empty(self) -> bool:
        return not self.uri


@dataclass(frozen=True)
class CacheEntry:
    """Computed result as stored in the cache (payload + companion format)."""
    payload: Optional[bytes]
    fmt: Optional[str]

    @property
    def is_hit(self) -> bool:
        # both halves must be present, an empty format forces regeneration
        return bool(self.payload) and bool(self.fmt)


@dataclass(frozen=True)
class RenderResult:
    payload: bytes
    fmt: str
    from_cache: bool = False

    @property
    def content_type(self) -> str:
        return f"image/{self.fmt}"


@dataclass
class RenderRequest:
    """
    One inbound render call.

    Attributes:
        path: full request path, used as the result cache key.
        segment: path with the route prefix stripped ("<directives>/<id>" or "<id>").
        by_identifier: True for content-item identifiers (/oid/), False for direct paths (/uri/).
        accept: value of the inbound Accept header.
        force_refresh: bypass result/metadata caches and the local mirror.
        trace: sink for the request's decision trace.
    """
    path: str
    segment: str
    by_identifier: bool = False
    accept: str = ""
    force_refresh: bool = False
    trace: Any = field(default_factory=NullTrace)
    options: RenderOptions = field(default_factory=RenderOptions)

    def to_meta(self) -> Dict[str, Any]:
        """Request summary without the trace (safe to log)."""
        return {
            "path": self.path,
            "by_identifier": self.by_identifier,
            "force_refresh": self.force_refresh,
        }
