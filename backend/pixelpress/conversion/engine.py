"""Image engines: ImageMagick (preferred, via subprocess) and Pillow (fallback).

The rest of the application treats an engine as opaque: ``probe`` returns pixel
dimensions and ``transform`` writes a converted file or raises.
"""
import logging
import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Protocol

from PIL import Image

from pixelpress import config
from pixelpress.conversion.models import TransformOptions
from pixelpress.conversion.resize import hex_to_rgb, normalize_mode, resize_contain, resize_cover, resize_proportional

logger = logging.getLogger("pixelpress.engine")

# Formats whose encoders keep an alpha channel
ALPHA_FORMATS = {"png", "webp", "gif", "tiff", "ico"}
LOSSY_FORMATS = {"jpeg", "webp"}


class ImageEngine(Protocol):
    name: str

    def probe(self, path: Path) -> tuple[int, int]: ...

    def transform(self, input_path: Path, output_path: Path, options: TransformOptions) -> None: ...


@dataclass(frozen=True)
class EngineInfo:
    engine: str
    magick_available: bool
    note: str


class PillowEngine:
    """Pure-Python fallback. Cannot read SVG."""

    name = "pillow"

    def probe(self, path: Path) -> tuple[int, int]:
        with Image.open(path) as img:
            return img.size

    def transform(self, input_path: Path, output_path: Path, options: TransformOptions) -> None:
        fmt = options.format.lower()
        keep_alpha = options.transparent and fmt in ALPHA_FORMATS
        background = hex_to_rgb(options.background)
        with Image.open(input_path) as img:
            work = normalize_mode(img, keep_alpha, background)
            if options.width or options.height:
                work = self._resize(work, options, background)
            work.save(str(output_path), **self._save_kwargs(fmt, options, work))

    @staticmethod
    def _resize(img: Image.Image, options: TransformOptions, background: tuple[int, int, int]) -> Image.Image:
        tw, th = options.width, options.height
        if options.fit == "width" or tw is None or th is None:
            return resize_proportional(img, tw, None if options.fit == "width" else th)
        if options.fit == "contain":
            fill = (*background, 0 if options.transparent else 255) if img.mode == "RGBA" else background
            return resize_contain(img, tw, th, fill)
        return resize_cover(img, tw, th)

    @staticmethod
    def _save_kwargs(fmt: str, options: TransformOptions, img: Image.Image) -> dict:
        quality = options.quality or config.DEFAULT_QUALITY
        if fmt == "jpeg":
            return {"format": "JPEG", "quality": quality, "optimize": True}
        if fmt == "webp":
            return {"format": "WEBP", "quality": quality, "method": 4}
        if fmt == "png":
            return {"format": "PNG", "optimize": True}
        if fmt == "gif":
            return {"format": "GIF"}
        if fmt == "tiff":
            return {"format": "TIFF"}
        if fmt == "bmp":
            return {"format": "BMP"}
        if fmt == "ico":
            return {"format": "ICO", "sizes": [img.size]}
        raise ValueError(f"Unsupported output format: {fmt}")


class MagickEngine:
    """Shells out to ImageMagick 7 (``magick``) or the legacy ``convert``/``identify`` pair."""

    name = "magick"

    def __init__(self, timeout: float = config.ENGINE_TIMEOUT_SECONDS):
        self.timeout = timeout
        if shutil.which("magick"):
            self._convert = ["magick"]
            self._identify = ["magick", "identify"]
        else:
            self._convert = ["convert"]
            self._identify = ["identify"]

    @staticmethod
    def available() -> bool:
        return bool(shutil.which("magick") or (shutil.which("convert") and shutil.which("identify")))

    def _run(self, cmd: list[str]) -> str:
        result = subprocess.run(cmd, capture_output=True, text=True, timeout=self.timeout)
        if result.returncode != 0:
            raise RuntimeError((result.stderr or result.stdout or "ImageMagick failed").strip())
        return result.stdout

    def probe(self, path: Path) -> tuple[int, int]:
        out = self._run([*self._identify, "-format", "%w %h", f"{path}[0]"])
        width, height = out.strip().split()[:2]
        return int(width), int(height)

    def transform(self, input_path: Path, output_path: Path, options: TransformOptions) -> None:
        fmt = options.format.lower()
        source = str(input_path) if fmt == "gif" else f"{input_path}[0]"
        cmd = [*self._convert, source, "-auto-orient"]
        background = options.background or "#ffffff"
        tw, th = options.width, options.height
        if tw or th:
            if options.fit == "width" or tw is None or th is None:
                cmd += ["-resize", f"{tw or ''}x{th or ''}"]
            elif options.fit == "contain":
                pad = "none" if options.transparent and fmt in ALPHA_FORMATS else background
                cmd += ["-resize", f"{tw}x{th}", "-background", pad, "-gravity", "center", "-extent", f"{tw}x{th}"]
            else:
                cmd += ["-resize", f"{tw}x{th}^", "-gravity", "center", "-extent", f"{tw}x{th}"]
        if not (options.transparent and fmt in ALPHA_FORMATS):
            cmd += ["-background", background, "-alpha", "remove", "-alpha", "off"]
        if options.quality and fmt in LOSSY_FORMATS:
            cmd += ["-quality", str(options.quality)]
        cmd.append(f"{fmt}:{output_path}")
        self._run(cmd)


def select_engine(preference: Optional[str] = None) -> tuple[ImageEngine, EngineInfo]:
    """Prefer ImageMagick when present; fall back to Pillow."""
    preference = (preference or config.IMAGE_ENGINE or "auto").lower()
    magick = MagickEngine.available()
    if preference == "pillow":
        return PillowEngine(), EngineInfo("pillow", magick, "Using Pillow engine (configured).")
    if magick:
        return MagickEngine(), EngineInfo("magick", True, "Using ImageMagick engine.")
    if preference == "magick":
        logger.warning("IMAGE_ENGINE=magick but ImageMagick was not found; falling back to Pillow")
    return PillowEngine(), EngineInfo(
        "pillow",
        False,
        "ImageMagick not detected. Using Pillow fallback (no SVG input).",
    )
