"""Pillow resize strategies behind the asset "fit" modes."""
import logging
from typing import Optional, Tuple, Union

from PIL import Image

logger = logging.getLogger("pixelpress.resize")

Color = Union[Tuple[int, int, int], Tuple[int, int, int, int]]


def has_alpha(img: Image.Image) -> bool:
    return img.mode in ("RGBA", "LA", "PA") or (img.mode == "P" and "transparency" in img.info)


def normalize_mode(img: Image.Image, keep_alpha: bool, background: Tuple[int, int, int] = (255, 255, 255)) -> Image.Image:
    """RGBA when alpha should survive, otherwise RGB flattened onto ``background``."""
    if keep_alpha and has_alpha(img):
        return img.convert("RGBA") if img.mode != "RGBA" else img
    if has_alpha(img):
        rgba = img.convert("RGBA")
        flat = Image.new("RGB", rgba.size, background)
        flat.paste(rgba, mask=rgba.getchannel("A"))
        return flat
    return img.convert("RGB") if img.mode != "RGB" else img


def resize_cover(img: Image.Image, target_width: int, target_height: int) -> Image.Image:
    """Scale so the image covers the target, then center-crop (may lose edges)."""
    w, h = img.size
    if (w, h) == (target_width, target_height):
        return img.copy()
    scale = max(target_width / w, target_height / h)
    new_w, new_h = max(1, round(w * scale)), max(1, round(h * scale))
    resized = img.resize((new_w, new_h), Image.Resampling.LANCZOS)
    left = (new_w - target_width) // 2
    top = (new_h - target_height) // 2
    return resized.crop((left, top, left + target_width, top + target_height))


def resize_contain(img: Image.Image, target_width: int, target_height: int, fill: Color) -> Image.Image:
    """Scale to fit inside the target and pad the remainder with ``fill``."""
    w, h = img.size
    scale = min(target_width / w, target_height / h)
    new_w, new_h = max(1, int(w * scale)), max(1, int(h * scale))
    resized = img.resize((new_w, new_h), Image.Resampling.LANCZOS)
    out = Image.new(img.mode if img.mode in ("RGB", "RGBA") else "RGB", (target_width, target_height), fill)
    paste_x = (target_width - new_w) // 2
    paste_y = (target_height - new_h) // 2
    if resized.mode == "RGBA":
        out.paste(resized, (paste_x, paste_y), resized)
    else:
        out.paste(resized, (paste_x, paste_y))
    return out


def resize_proportional(img: Image.Image, width: Optional[int] = None, height: Optional[int] = None) -> Image.Image:
    """Scale by whichever bound is given (the tighter one when both are); never distorts."""
    w, h = img.size
    factors = [t / s for t, s in ((width, w), (height, h)) if t]
    if not factors:
        return img.copy()
    factor = min(factors)
    size = (max(1, round(w * factor)), max(1, round(h * factor)))
    return img if size == img.size else img.resize(size, Image.Resampling.LANCZOS)


def hex_to_rgb(hex_color: Optional[str], default: Tuple[int, int, int] = (255, 255, 255)) -> Tuple[int, int, int]:
    """Parse #RRGGBB (or #RGB) to (r,g,b). ``default`` if missing or invalid."""
    if not hex_color:
        return default
    value = hex_color.strip().lstrip("#")
    if len(value) == 3:
        value = "".join(c * 2 for c in value)
    if len(value) == 6:
        try:
            return (int(value[0:2], 16), int(value[2:4], 16), int(value[4:6], 16))
        except ValueError:
            pass
    logger.warning("Invalid color %r, using %s", hex_color, default)
    return default
