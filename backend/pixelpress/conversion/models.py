"""Conversion request/response models."""
import re
from dataclasses import asdict, dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Optional

RESERVED_NAME_RE = re.compile(r"^(CON|PRN|AUX|NUL|COM[1-9]|LPT[1-9])(\.|$)", re.IGNORECASE)
UNSAFE_NAME_CHARS_RE = re.compile(r'[/\\<>:"|?*\x00-\x1f]')


class OutputFormat(str, Enum):
    JPEG = "jpeg"
    PNG = "png"
    WEBP = "webp"
    GIF = "gif"
    TIFF = "tiff"
    BMP = "bmp"


class NamingConvention(str, Enum):
    KEEP_ORIGINAL = "keep-original"
    CUSTOM_PATTERN = "custom-pattern"


class SupportedFormats:
    OUTPUT = [f.value for f in OutputFormat]
    LOSSY = ["jpeg", "webp"]
    LABELS = {"jpeg": "JPEG", "png": "PNG", "webp": "WebP", "gif": "GIF", "tiff": "TIFF", "bmp": "BMP"}

    @classmethod
    def describe(cls) -> list[dict[str, Any]]:
        return [
            {"format": f, "label": cls.LABELS[f], "supports_quality": f in cls.LOSSY}
            for f in cls.OUTPUT
        ]


def name_part_problems(label: str, value: str) -> list[str]:
    """Problems with a user-supplied fragment that ends up in an output filename."""
    problems = []
    if UNSAFE_NAME_CHARS_RE.search(value):
        problems.append(f"{label} contains invalid filename characters")
    if ".." in value:
        problems.append(f"{label} contains a path traversal sequence")
    if RESERVED_NAME_RE.match(value):
        problems.append(f"{label} is a reserved device name")
    return problems


@dataclass
class ConversionOptions:
    output_format: str
    quality: Optional[int] = None
    naming_convention: str = NamingConvention.KEEP_ORIGINAL.value
    custom_pattern: Optional[str] = None
    prefix: Optional[str] = None
    suffix: Optional[str] = None

    def validate(self) -> list[str]:
        """Every problem with these options; empty when valid."""
        errors: list[str] = []
        if self.output_format not in SupportedFormats.OUTPUT:
            errors.append(f"Unsupported output format: {self.output_format}")
        if self.quality is not None:
            if isinstance(self.quality, bool) or not isinstance(self.quality, int) or not 1 <= self.quality <= 100:
                errors.append("Quality must be a number between 1 and 100")
            if self.output_format not in SupportedFormats.LOSSY:
                errors.append(f"Quality setting not applicable for {self.output_format} format")
        if self.naming_convention not in [n.value for n in NamingConvention]:
            errors.append(f"Unsupported naming convention: {self.naming_convention}")
        if self.naming_convention == NamingConvention.CUSTOM_PATTERN.value:
            if not (self.custom_pattern or self.prefix or self.suffix):
                errors.append("Custom pattern, prefix, or suffix required when using custom-pattern naming")
        if self.custom_pattern is not None and len(self.custom_pattern) > 200:
            errors.append("Custom pattern must be at most 200 characters")
        for label, value in (("Custom pattern", self.custom_pattern), ("Prefix", self.prefix), ("Suffix", self.suffix)):
            if value:
                errors.extend(name_part_problems(label, value))
        return errors

    def to_dict(self) -> dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None}


@dataclass(frozen=True)
class JobInput:
    """A file to process; ``name`` is the client-facing name used for output naming."""

    path: Path
    name: str


@dataclass
class TransformOptions:
    """Save options handed to the image engine."""

    format: str
    quality: Optional[int] = None
    width: Optional[int] = None
    height: Optional[int] = None
    fit: str = "cover"  # cover | contain | width
    background: Optional[str] = None  # hex fill for contain, or flattening when not transparent
    transparent: bool = True


@dataclass
class ConversionResult:
    original_name: str
    converted_name: str = ""
    original_size: int = 0
    converted_size: int = 0
    width: Optional[int] = None
    height: Optional[int] = None
    success: bool = False
    error: Optional[str] = None
    converted_path: Optional[str] = None
    category: Optional[str] = None

    @classmethod
    def failure(cls, original_name: str, original_size: int, error: str, category: Optional[str] = None) -> "ConversionResult":
        return cls(
            original_name=original_name,
            original_size=original_size,
            success=False,
            error=error,
            category=category,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "originalName": self.original_name,
            "convertedName": self.converted_name,
            "originalSize": self.original_size,
            "convertedSize": self.converted_size,
            "width": self.width,
            "height": self.height,
            "success": self.success,
            "error": self.error,
            "convertedPath": self.converted_path,
            "category": self.category,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ConversionResult":
        return cls(
            original_name=data.get("originalName", ""),
            converted_name=data.get("convertedName", ""),
            original_size=int(data.get("originalSize") or 0),
            converted_size=int(data.get("convertedSize") or 0),
            width=data.get("width"),
            height=data.get("height"),
            success=bool(data.get("success")),
            error=data.get("error"),
            converted_path=data.get("convertedPath"),
            category=data.get("category"),
        )


@dataclass
class JobTicket:
    session_id: str
    kind: str
    total: int
    status: str = "processing"
    options: dict[str, Any] = field(default_factory=dict)
