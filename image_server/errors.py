from __future__ import annotations


class ImageServerError(RuntimeError):
    """Base class for failures that abort a request."""


class PlaceholderUnavailableError(ImageServerError):
    """The fallback image could neither be read from the mirror nor fetched."""


class MirrorWriteError(ImageServerError):
    """An origin asset was fetched but could not be written to the local mirror."""


class InvalidResourceError(ValueError):
    """A resource identifier cannot be mapped to a mirror path."""


class ImageDecodeError(ValueError):
    """Bytes that were expected to be an image could not be decoded."""
