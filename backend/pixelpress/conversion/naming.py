"""Output filename strategies and collision handling."""
from pathlib import Path

from pixelpress.conversion.models import ConversionOptions, NamingConvention
from pixelpress.session.uploads import sanitize_filename


def output_stem(original_name: str) -> str:
    """Safe stem of a client-supplied name, e.g. ``"my photo.png"`` -> ``"my_photo"``."""
    base = Path(original_name.replace("\\", "/")).name
    return sanitize_filename(Path(base).stem or base)


def generate_output_filename(original_name: str, options: ConversionOptions, index: int) -> str:
    """Destination filename for the ``index``-th (0-based) input.

    keep-original swaps the extension; custom-pattern fills {name}, {index}
    (1-based) and {format}, falling back to prefix + name + suffix.
    """
    stem = output_stem(original_name)
    fmt = options.output_format
    ext = f".{fmt}"
    if options.naming_convention == NamingConvention.CUSTOM_PATTERN.value:
        if options.custom_pattern:
            name = (
                options.custom_pattern
                .replace("{name}", stem)
                .replace("{index}", str(index + 1))
                .replace("{format}", fmt)
            )
            return f"{name}{ext}"
        return f"{options.prefix or ''}{stem}{options.suffix or ''}{ext}"
    return f"{stem}{ext}"


def ensure_unique_filename(output_dir: Path, filename: str) -> str:
    """Append ``_N`` to the stem until no file of that name exists in ``output_dir``."""
    candidate = filename
    path = Path(filename)
    stem, ext = path.stem, path.suffix
    counter = 1
    while (output_dir / candidate).exists():
        candidate = f"{stem}_{counter}{ext}"
        counter += 1
    return candidate
