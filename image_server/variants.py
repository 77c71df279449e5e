from __future__ import annotations

"""
Best-variant selection for content-item identifiers.

An identifier looks like  mgid:arc:<type>:<namespace>:<item id>.  The item's
descriptor lists candidate images (captioned images first, then plain
images); each candidate may carry pre-authored crop-sets. Every crop-set (or
the native size of a candidate without any) becomes one scored option and the
options are ranked against the requested size:

    target = floor(width / height * 10)

    1. ratio == target and (width_diff or height_diff) beats best  -> adopt
    2. ratio == target and best.ratio != target                    -> adopt
    3. best.ratio != target and both diffs beat best               -> adopt
    4. otherwise keep best

The first option seeds best.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from common.logging_setup import NullTrace
from common.types import AssetRef, CandidateImage, CropSet, Resolution, ZERO_CROP
from common.utils import floor_ratio
from image_server.metadata import MetadataClient, get_field


log = logging.getLogger(__name__)

SUPPORTED_PROVIDER = "arc"
IDENTIFIER_SEGMENTS = 5


def _to_int(v: Any) -> int:
    try:
        return int(v)
    except (TypeError, ValueError):
        return 0


def _image_from(obj: Any) -> Optional[CandidateImage]:
    refs = get_field(obj, "ImageAssetRefs") or []
    assets = []
    for r in refs if isinstance(refs, list) else []:
        uri = get_field(r, "URI") or ""
        if not uri:
            continue
        assets.append(AssetRef(
            width=_to_int(get_field(r, "Width")),
            height=_to_int(get_field(r, "Height")),
            uri=str(uri),
            fmt=str(get_field(get_field(r, "Format"), "TypeName") or ""),
        ))
    if not assets:
        return None
    vips = get_field(obj, "VirtualImageParams") or []
    crop_sets = tuple(
        CropSet(
            width=_to_int(get_field(v, "CropSizeWidth")),
            height=_to_int(get_field(v, "CropSizeHeight")),
            x=_to_int(get_field(v, "TopLeftX")),
            y=_to_int(get_field(v, "TopLeftY")),
        )
        for v in (vips if isinstance(vips, list) else [])
    )
    return CandidateImage(assets=tuple(assets), crop_sets=crop_sets)


def candidates_from_descriptor(doc: Dict) -> List[CandidateImage]:
    """
    Candidate images of a descriptor, in selection order.

    A descriptor that is itself an image yields just that image; an item
    yields its captioned images followed by its plain images.
    """
    if get_field(doc, "ImageAssetRefs"):
        own = _image_from(doc)
        return [own] if own else []

    out: List[CandidateImage] = []
    for wrapped in get_field(doc, "ImagesWithCaptions") or []:
        c = _image_from(get_field(wrapped, "Image"))
        if c:
            out.append(c)
    for img in get_field(doc, "Images") or []:
        c = _image_from(img)
        if c:
            out.append(c)
    return out


@dataclass(frozen=True)
class ScoredOption:
    ratio: int
    width_diff: int
    height_diff: int
    candidate: CandidateImage
    crop_set: Optional[CropSet] = None


def flatten_options(candidates: List[CandidateImage], width: int, height: int) -> List[ScoredOption]:
    """
    One option per usable crop-set. Candidates without crop-sets, or whose
    crop-sets all have a zero dimension, get one option for their native size.
    """
    options: List[ScoredOption] = []
    for cand in candidates:
        usable = [cs for cs in cand.crop_sets if cs.width > 0 and cs.height > 0]
        if usable:
            for cs in usable:
                options.append(ScoredOption(
                    ratio=floor_ratio(cs.width, cs.height),
                    width_diff=abs(width - cs.width),
                    height_diff=abs(height - cs.height),
                    candidate=cand,
                    crop_set=cs,
                ))
        else:
            a = cand.primary
            if a.height <= 0:
                continue
            options.append(ScoredOption(
                ratio=floor_ratio(a.width, a.height),
                width_diff=abs(width - a.width),
                height_diff=abs(height - a.height),
                candidate=cand,
            ))
    return options


def prefer(option: ScoredOption, best: ScoredOption, target: int) -> bool:
    """Whether `option` replaces `best` for the target ratio."""
    if option.ratio == target and (option.width_diff < best.width_diff or option.height_diff < best.height_diff):
        return True
    if option.ratio == target and best.ratio != target:
        return True
    if best.ratio != target and option.width_diff < best.width_diff and option.height_diff < best.height_diff:
        return True
    return False


def select_best(options: List[ScoredOption], target: int) -> ScoredOption:
    best = options[0]
    for option in options[1:]:
        if prefer(option, best, target):
            best = option
    return best


class VariantResolver:
    """Maps a content-item identifier plus a target size to an asset and crop."""

    def __init__(self, metadata: MetadataClient):
        self.metadata = metadata

    def resolve(self, identifier: str, width: int, height: int, *, force_refresh: bool = False, trace=None) -> Resolution:
        """
        Resolve `identifier` to the best-fitting asset URI and crop rectangle.

        Returns an empty Resolution for unsupported identifiers and items
        without usable images.
        """
        trace = trace or NullTrace()
        pieces = identifier.split(":")
        if len(pieces) != IDENTIFIER_SEGMENTS:
            log.info("Invalid identifier %s, expected %d segments", identifier, IDENTIFIER_SEGMENTS)
            trace.add("Identifier %s has %d segments, expected %d", identifier, len(pieces), IDENTIFIER_SEGMENTS)
            return Resolution()
        if pieces[1] != SUPPORTED_PROVIDER:
            log.info("Invalid provider %s, only %s is supported", pieces[1], SUPPORTED_PROVIDER)
            trace.add("Provider %s not supported", pieces[1])
            return Resolution()

        doc = self.metadata.fetch_descriptor(pieces[4], pieces[3], force_refresh=force_refresh, trace=trace)
        if doc is None:
            trace.add("No descriptor for %s", identifier)
            return Resolution()

        candidates = candidates_from_descriptor(doc)
        if not candidates:
            trace.add("Descriptor for %s has no images", identifier)
            return Resolution()
        trace.add("%d candidate image(s) for %s", len(candidates), identifier)

        if width == 0 or height == 0:
            uri = candidates[0].primary.uri
            trace.add("No target size, using first image %s", uri)
            return Resolution(uri=uri)

        target = floor_ratio(width, height)
        options = flatten_options(candidates, width, height)
        if not options:
            return Resolution(uri=candidates[0].primary.uri)

        best = select_best(options, target)
        uri = best.candidate.primary.uri
        crop = best.crop_set if best.crop_set is not None else ZERO_CROP
        log.info(
            "Best image for %s", identifier,
            extra={"extra": {"uri": uri, "ratio": best.ratio, "target": target, "crop": [crop.width, crop.height, crop.x, crop.y]}},
        )
        trace.add(
            "Best image %s (ratio %d, target %d), crop w=%d h=%d x=%d y=%d",
            uri, best.ratio, target, crop.width, crop.height, crop.x, crop.y,
        )
        return Resolution(uri=uri, crop=crop)
