import io
import os
import time
from pathlib import Path

import pytest
from PIL import Image

from pixelpress.conversion.service import JobProcessor
from pixelpress.security import FixedWindowRateLimiter, InMemoryLockRegistry
from pixelpress.session.store import SessionStore


def make_png(width: int = 24, height: int = 24) -> bytes:
    """Noise PNG; random pixels keep it well above the minimum upload size."""
    img = Image.frombytes("RGB", (width, height), os.urandom(width * height * 3))
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return buf.getvalue()


class FakeEngine:
    """Writes a fixed payload instead of converting; can fail, stall or produce nothing."""

    name = "fake"

    def __init__(self, fail_for=(), empty_for=(), delay: float = 0.0):
        self.fail_for = tuple(fail_for)
        self.empty_for = tuple(empty_for)
        self.delay = delay
        self.calls: list[tuple[Path, Path]] = []

    def probe(self, path: Path) -> tuple[int, int]:
        return (24, 24)

    def transform(self, input_path: Path, output_path: Path, options) -> None:
        self.calls.append((input_path, output_path))
        if self.delay:
            time.sleep(self.delay)
        if any(token in input_path.name for token in self.fail_for):
            raise RuntimeError("engine exploded")
        if any(token in input_path.name for token in self.empty_for):
            output_path.write_bytes(b"")
            return
        output_path.write_bytes(b"converted:" + input_path.read_bytes()[:16])


@pytest.fixture
def png_bytes() -> bytes:
    return make_png()


@pytest.fixture
def store(tmp_path) -> SessionStore:
    return SessionStore(tmp_path / "sessions", outputs_dirname="converted", tool="picture-press")


@pytest.fixture
def fake_engine() -> FakeEngine:
    return FakeEngine()


@pytest.fixture
def processor(fake_engine):
    proc = JobProcessor(fake_engine, timeout=5)
    yield proc
    proc.shutdown()


@pytest.fixture
def limiter() -> FixedWindowRateLimiter:
    return FixedWindowRateLimiter()


@pytest.fixture
def locks() -> InMemoryLockRegistry:
    return InMemoryLockRegistry()
