"""
Test doubles and image builders shared by the unit and integration tests.
"""

import io
import threading
from typing import Dict, Optional, Tuple
from unittest.mock import Mock

import redis
from PIL import Image


class FakeRedis:
    """In-memory stand-in for redis.Redis covering get/set(ex, nx)/ping."""

    def __init__(self):
        self.data: Dict[str, bytes] = {}
        self.ttls: Dict[str, Optional[int]] = {}
        self.fail_reads = False
        self.fail_writes = False
        self.fail_keys = set()
        self._lock = threading.Lock()

    def get(self, key):
        if self.fail_reads:
            raise redis.exceptions.ConnectionError("read failed")
        with self._lock:
            return self.data.get(key)

    def set(self, key, value, ex=None, nx=False):
        if self.fail_writes or any(key.startswith(p) for p in self.fail_keys):
            raise redis.exceptions.ConnectionError("write failed")
        if isinstance(value, str):
            value = value.encode("utf-8")
        with self._lock:
            if nx and key in self.data:
                return None
            self.data[key] = bytes(value)
            self.ttls[key] = ex
            return True

    def ping(self):
        return True


def fake_response(status_code: int = 200, content: bytes = b"", text: str = "") -> Mock:
    r = Mock()
    r.status_code = status_code
    r.content = content
    r.text = text or content[:200].decode("latin-1")
    return r


def image_bytes(
    size: Tuple[int, int] = (64, 48),
    fmt: str = "JPEG",
    color=(200, 30, 30),
    mode: str = "RGB",
    **save_kwargs,
) -> bytes:
    buf = io.BytesIO()
    Image.new(mode, size, color).save(buf, format=fmt, **save_kwargs)
    return buf.getvalue()


def gif_bytes(frames: int = 8, size: Tuple[int, int] = (40, 30)) -> bytes:
    imgs = [Image.new("RGB", size, (i * 30 % 256, 80, 160)) for i in range(frames)]
    buf = io.BytesIO()
    imgs[0].save(buf, format="GIF", save_all=True, append_images=imgs[1:], duration=100, loop=0)
    return buf.getvalue()


def open_image(data: bytes) -> Image.Image:
    return Image.open(io.BytesIO(data))
