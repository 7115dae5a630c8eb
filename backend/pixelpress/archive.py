"""Zip creation for a session's outputs directory."""
import contextlib
import logging
import os
import tempfile
import zipfile
from pathlib import Path

from pixelpress.errors import StorageError

logger = logging.getLogger("pixelpress.archive")


def build_archive(source_dir: Path, dest_zip_path: Path) -> int:
    """Zip every visible regular file under ``source_dir`` (paths relative to it) into ``dest_zip_path``.

    The archive is assembled in a temp file beside the destination and renamed
    into place, so a reader never sees a partial zip. Returns the number of
    files archived.
    """
    source_dir = Path(source_dir)
    dest_zip_path = Path(dest_zip_path)
    tmp = None
    try:
        fd, tmp = tempfile.mkstemp(prefix=f".{dest_zip_path.name}.", suffix=".tmp", dir=str(dest_zip_path.parent))
        os.close(fd)
        count = 0
        with zipfile.ZipFile(tmp, "w", zipfile.ZIP_DEFLATED) as zf:
            for path in sorted(source_dir.rglob("*")):
                if not path.is_file() or path.is_symlink():
                    continue
                if path.name.startswith("."):
                    # Hidden names are engine output still being written
                    continue
                zf.write(path, path.relative_to(source_dir).as_posix())
                count += 1
        os.replace(tmp, dest_zip_path)
    except (OSError, zipfile.BadZipFile, zipfile.LargeZipFile) as e:
        if tmp is not None:
            with contextlib.suppress(OSError):
                os.unlink(tmp)
        raise StorageError(f"Could not build archive: {e}") from e
    logger.info("Created zip %s with %s files", dest_zip_path.name, count)
    return count
