from __future__ import annotations

import logging
import math
from typing import Optional, Tuple

from common.types import ANIMATION_PREVIEW, ANIMATION_STILL, RenderOptions
from common.utils import clamp


log = logging.getLogger(__name__)

MGID_MARKER = "mgid:"

_ANIMATION_MODES = {
    "s": ANIMATION_STILL,
    ANIMATION_STILL: ANIMATION_STILL,
    "p": ANIMATION_PREVIEW,
    ANIMATION_PREVIEW: ANIMATION_PREVIEW,
}


def parse_uint(s: str) -> int:
    """Unsigned decimal parse; anything else (sign, fraction, junk) -> 0."""
    if s.isascii() and s.isdigit():
        return int(s)
    log.info("Failed to convert number: %s", s)
    return 0


def parse_int(s: str, default: int = 0) -> int:
    try:
        return int(s)
    except ValueError:
        return default


def parse_quality(s: str) -> int:
    """
    Quality in 1..100.

    Values below 1 are read as a fraction ("0.5" -> 50); "1" is one out of
    a hundred, not 100%. Values above 100 clamp to 100, junk gives 0 (unset).
    """
    try:
        v = float(s)
    except ValueError:
        log.info("Failed to convert quality: %s", s)
        return 0
    if not math.isfinite(v) or v <= 0:
        return 0
    if v < 1:
        v *= 100
    return clamp(int(v), 0, 100)


def parse_directives(s: str, resource: str = "", options: Optional[RenderOptions] = None) -> RenderOptions:
    """
    Parse "name=value" tokens separated by ':' into RenderOptions.

    Tokens without exactly one '=' are skipped; unknown names are logged and
    ignored. A bad value only resets its own field.

    Params:
        s: directive string, e.g. "rw=480:rh=320:q=50"
        resource: the requested resource, for log context only
        options: existing options to update in place (new ones if None)
    """
    p = options if options is not None else RenderOptions()
    for token in s.split(":"):
        nv = token.split("=")
        if len(nv) != 2:
            continue
        name, value = nv
        if name == "rw":
            p.rw = parse_uint(value)
        elif name == "rh":
            p.rh = parse_uint(value)
        elif name == "cw":
            p.cw = parse_uint(value)
        elif name == "ch":
            p.ch = parse_uint(value)
        elif name == "cx":
            p.cx = parse_int(value, p.cx)
        elif name == "cy":
            p.cy = parse_int(value, p.cy)
        elif name == "cc":
            p.cc = value == "1"
        elif name == "q":
            p.q = parse_quality(value)
        elif name == "f":
            p.f = value.strip().lower()
        elif name == "n":
            p.n = value == "1"
        elif name == "am":
            p.am = _ANIMATION_MODES.get(value.strip().lower(), "")
        else:
            log.warning("Unknown parameter %s for %s", name, resource)
            continue
        log.debug("Found param %s=%s", name, value)
    return p


def split_segment(segment: str) -> Optional[Tuple[str, str]]:
    """
    Split a route segment into (directives, resource).

        "mgid:..."                -> ("", "mgid:...")
        "rw=480:rh=320/mgid:..."  -> ("rw=480:rh=320", "mgid:...")

    Returns None when the segment carries no mgid at all.
    """
    idx = segment.find(MGID_MARKER)
    if idx == -1:
        return None
    if idx == 0:
        return "", segment
    slash = segment.find("/")
    if slash == -1 or slash > idx:
        # directives must sit before the first '/', which precedes the mgid
        return None
    return segment[:slash], segment[slash + 1:]
