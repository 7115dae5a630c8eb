"""Pixel Forge asset generation: favicons, PWA icons, social cards, SEO and responsive images.

Every asset is one engine call run through ``JobProcessor.process_unit`` so it
gets the same timeout, verification and failure rules as a plain conversion.
"""
import html
import logging
import re
from dataclasses import asdict, dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Optional

from pixelpress.conversion.models import ConversionResult, JobInput, TransformOptions
from pixelpress.conversion.service import JobProcessor, ProgressCallback
from pixelpress.errors import StorageError, ValidationError
from pixelpress.session.store import write_json_atomic, write_text_atomic

logger = logging.getLogger("pixelpress.generation")

MANIFEST_FILENAME = "manifest.json"
META_TAGS_FILENAME = "meta-tags.html"
HEX_COLOR_CHARS = set("0123456789abcdefABCDEF")
COLLISION_SUFFIX_RE = re.compile(r"_\d+$")


class GenerationType(str, Enum):
    FAVICON = "favicon"
    PWA = "pwa"
    SOCIAL = "social"
    SEO = "seo"
    WEB = "web"
    ALL = "all"


GENERATION_FORMATS = ("png", "jpeg", "webp")


@dataclass(frozen=True)
class AssetTarget:
    category: str
    filename: str  # without extension
    width: Optional[int]
    height: Optional[int]
    fit: str = "cover"
    format: Optional[str] = None  # fixed format; None follows the options
    purpose: Optional[str] = None


# Fixed targets per generation type
ASSET_PRESETS: dict[str, list[AssetTarget]] = {
    "favicon": [
        AssetTarget("favicon", "favicon-16x16", 16, 16, "contain", "png", "icon"),
        AssetTarget("favicon", "favicon-32x32", 32, 32, "contain", "png", "icon"),
        AssetTarget("favicon", "favicon-48x48", 48, 48, "contain", "png", "icon"),
        AssetTarget("favicon", "favicon", 48, 48, "contain", "ico", "shortcut icon"),
        AssetTarget("favicon", "apple-touch-icon", 180, 180, "contain", "png", "apple-touch-icon"),
    ],
    "pwa": [
        AssetTarget("pwa", "pwa-192x192", 192, 192, "contain", "png"),
        AssetTarget("pwa", "pwa-512x512", 512, 512, "contain", "png"),
    ],
    "social": [
        AssetTarget("social", "og-image", 1200, 630, purpose="og:image"),
        AssetTarget("social", "twitter-card", 1200, 675, purpose="twitter:image"),
        AssetTarget("social", "linkedin-share", 1200, 627),
    ],
    "seo": [
        AssetTarget("seo", "seo-preview", 1200, 630),
    ],
    "web": [
        AssetTarget("web", "web-640w", 640, None, "width"),
        AssetTarget("web", "web-1280w", 1280, None, "width"),
        AssetTarget("web", "web-1920w", 1920, None, "width"),
    ],
}


def _is_hex_color(value: str) -> bool:
    digits = value[1:] if value.startswith("#") else value
    return len(digits) in (3, 6) and set(digits) <= HEX_COLOR_CHARS


@dataclass
class GenerationOptions:
    generation_types: list[str] = field(default_factory=lambda: [GenerationType.ALL.value])
    format: str = "png"
    quality: Optional[int] = None
    transparent: bool = True
    background_color: Optional[str] = None
    theme_color: Optional[str] = None
    app_name: Optional[str] = None
    description: Optional[str] = None
    url_prefix: Optional[str] = None
    image_path: Optional[str] = None  # relative to the session root; defaults to the latest upload

    def validate(self) -> list[str]:
        errors: list[str] = []
        valid_types = [t.value for t in GenerationType]
        if not self.generation_types:
            errors.append("At least one generation type is required")
        for t in self.generation_types:
            if t not in valid_types:
                errors.append(f"Unsupported generation type: {t}")
        if self.format not in GENERATION_FORMATS:
            errors.append(f"Unsupported output format: {self.format}")
        if self.quality is not None:
            if isinstance(self.quality, bool) or not isinstance(self.quality, int) or not 1 <= self.quality <= 100:
                errors.append("Quality must be a number between 1 and 100")
        for label, value in (("Background color", self.background_color), ("Theme color", self.theme_color)):
            if value and not _is_hex_color(value):
                errors.append(f"{label} must be a hex color like #ffffff")
        if self.app_name and len(self.app_name) > 100:
            errors.append("App name must be at most 100 characters")
        if self.description and len(self.description) > 500:
            errors.append("Description must be at most 500 characters")
        if self.url_prefix:
            if ".." in self.url_prefix:
                errors.append("URL prefix contains a path traversal sequence")
            if any(ord(c) < 0x20 for c in self.url_prefix):
                errors.append("URL prefix contains control characters")
        if self.image_path is not None and (not self.image_path.strip() or "\x00" in self.image_path):
            errors.append("Image path is invalid")
        return errors

    def selected_types(self) -> list[str]:
        if GenerationType.ALL.value in self.generation_types:
            return list(ASSET_PRESETS)
        return [t for t in ASSET_PRESETS if t in self.generation_types]

    def to_dict(self) -> dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None}


def asset_targets(options: GenerationOptions) -> list[AssetTarget]:
    return [target for t in options.selected_types() for target in ASSET_PRESETS[t]]


class AssetGenerator:
    """Expands one source image into the selected asset set."""

    def __init__(self, processor: JobProcessor):
        self.processor = processor

    def run(
        self,
        input_path: Path,
        output_dir: Path,
        options: GenerationOptions,
        on_progress: Optional[ProgressCallback] = None,
        source_name: Optional[str] = None,
    ) -> list[ConversionResult]:
        problems = options.validate()
        if problems:
            raise ValidationError(problems)
        targets = asset_targets(options)
        if not targets:
            raise ValidationError("No assets selected")
        self.processor.ensure_output_dir(output_dir)

        item = JobInput(path=input_path, name=source_name or input_path.name)
        total = len(targets)
        results: list[ConversionResult] = []
        self.processor.notify(on_progress, 0, total, "Preparing generation...")
        for index, target in enumerate(targets):
            fmt = target.format or options.format
            filename = f"{target.filename}.{fmt}"
            self.processor.notify(on_progress, index, total, f"Generating {target.category} asset", filename)
            transform = TransformOptions(
                format=fmt,
                quality=options.quality if fmt in ("jpeg", "webp") else None,
                width=target.width,
                height=target.height,
                fit=target.fit,
                background=options.background_color,
                transparent=options.transparent,
            )
            result = self.processor.process_unit(item, output_dir, filename, transform, category=target.category)
            results.append(result)
            self.processor.notify(on_progress, index + 1, total, f"Generated {target.category} asset", filename)

        self.processor.raise_if_all_failed(results, "asset generations")
        self._write_documents(output_dir, options, results)
        return results

    def _write_documents(self, output_dir: Path, options: GenerationOptions, results: list[ConversionResult]) -> None:
        prefix = options.url_prefix or ""
        manifest_written = False
        try:
            if GenerationType.PWA.value in options.selected_types():
                manifest = build_manifest(options, prefix, results)
                if manifest["icons"]:
                    write_json_atomic(output_dir / MANIFEST_FILENAME, manifest)
                    manifest_written = True
            write_text_atomic(
                output_dir / META_TAGS_FILENAME,
                build_meta_tags(options, prefix, results, manifest_written),
            )
        except OSError as e:
            raise StorageError(f"Could not write generated metadata: {e}") from e
        logger.info("Generated %s of %s assets", sum(1 for r in results if r.success), len(results))


def build_manifest(options: GenerationOptions, prefix: str, results: list[ConversionResult]) -> dict[str, Any]:
    name = options.app_name or "App"
    icons = []
    for r in results:
        if r.success and r.category == "pwa":
            icons.append({
                "src": f"{prefix}{r.converted_name}",
                "sizes": f"{r.width}x{r.height}",
                "type": f"image/{options.format}",
            })
    manifest = {
        "name": name,
        "short_name": name[:12],
        "start_url": "/",
        "display": "standalone",
        "background_color": options.background_color or "#ffffff",
        "theme_color": options.theme_color or "#ffffff",
        "icons": icons,
    }
    if options.description:
        manifest["description"] = options.description
    return manifest


def build_meta_tags(
    options: GenerationOptions,
    prefix: str,
    results: list[ConversionResult],
    with_manifest: bool = False,
) -> str:
    """HTML ``<head>`` snippet referencing the generated assets."""
    lines: list[str] = []

    def url(name: str) -> str:
        return html.escape(f"{prefix}{name}", quote=True)

    targets = {t.filename: t for preset in ASSET_PRESETS.values() for t in preset}
    for r in results:
        if not r.success:
            continue
        target = targets.get(COLLISION_SUFFIX_RE.sub("", Path(r.converted_name).stem))
        if target is None or target.purpose is None:
            continue
        if target.purpose == "icon":
            lines.append(f'<link rel="icon" type="image/png" sizes="{r.width}x{r.height}" href="{url(r.converted_name)}">')
        elif target.purpose in ("shortcut icon", "apple-touch-icon"):
            lines.append(f'<link rel="{target.purpose}" href="{url(r.converted_name)}">')
        elif target.purpose == "og:image":
            lines.append(f'<meta property="og:image" content="{url(r.converted_name)}">')
            lines.append(f'<meta property="og:image:width" content="{r.width}">')
            lines.append(f'<meta property="og:image:height" content="{r.height}">')
        elif target.purpose == "twitter:image":
            lines.append('<meta name="twitter:card" content="summary_large_image">')
            lines.append(f'<meta name="twitter:image" content="{url(r.converted_name)}">')
    if with_manifest:
        lines.append(f'<link rel="manifest" href="{url(MANIFEST_FILENAME)}">')
    if options.theme_color:
        lines.append(f'<meta name="theme-color" content="{html.escape(options.theme_color, quote=True)}">')
    if options.app_name:
        lines.append(f'<meta property="og:title" content="{html.escape(options.app_name, quote=True)}">')
    if options.description:
        description = html.escape(options.description, quote=True)
        lines.append(f'<meta name="description" content="{description}">')
        lines.append(f'<meta property="og:description" content="{description}">')
    return "\n".join(lines) + "\n"
