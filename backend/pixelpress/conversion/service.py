"""Drives the image engine over a batch of files, one at a time, with progress."""
import contextlib
import logging
import os
import subprocess
import uuid
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeoutError
from pathlib import Path
from typing import Callable, Optional, Sequence, Union

from pixelpress import config
from pixelpress.conversion.engine import ImageEngine, select_engine
from pixelpress.conversion.models import (
    ConversionOptions,
    ConversionResult,
    JobInput,
    SupportedFormats,
    TransformOptions,
)
from pixelpress.conversion.naming import ensure_unique_filename, generate_output_filename
from pixelpress.errors import EngineError, StorageError, ValidationError

logger = logging.getLogger("pixelpress.jobs")

# (current, total, operation, current_file)
ProgressCallback = Callable[[int, int, str, Optional[str]], None]

PARTIAL_SUFFIX = ".partial"


class EngineTimeout(Exception):
    pass


def as_job_input(item: Union[Path, str, JobInput]) -> JobInput:
    if isinstance(item, JobInput):
        return item
    path = Path(item)
    return JobInput(path=path, name=path.name)


class JobProcessor:
    """Sequential batch runner with a per-file engine timeout.

    A single file's failure is recorded and the batch continues; only a batch
    where every file failed raises.
    """

    def __init__(
        self,
        engine: ImageEngine,
        timeout: float = config.ENGINE_TIMEOUT_SECONDS,
        executor: Optional[ThreadPoolExecutor] = None,
    ):
        self.engine = engine
        self.timeout = timeout
        self._executor = executor or ThreadPoolExecutor(max_workers=config.MAX_WORKERS, thread_name_prefix="engine")
        logger.info("JobProcessor initialized with engine=%s timeout=%ss", engine.name, timeout)

    def shutdown(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)

    @staticmethod
    def notify(on_progress: Optional[ProgressCallback], current: int, total: int, operation: str, current_file: Optional[str] = None) -> None:
        """Best-effort progress callback; its failures never abort the job."""
        if on_progress is None:
            return
        try:
            on_progress(current, total, operation, current_file)
        except Exception as e:
            logger.warning("Progress callback failed (%s/%s): %s", current, total, e)

    def _call(self, fn, *args, on_abandon: Optional[Callable[[], None]] = None):
        """Run ``fn`` on the engine pool; ``on_abandon`` runs once a timed-out call finally returns."""
        future = self._executor.submit(fn, *args)
        try:
            return future.result(timeout=self.timeout)
        except FuturesTimeoutError:
            if not future.cancel() and on_abandon is not None:
                # The thread cannot be stopped; clean up after it instead
                future.add_done_callback(lambda _f: on_abandon())
            raise EngineTimeout(f"Engine timed out after {self.timeout:g}s")
        except subprocess.TimeoutExpired:
            raise EngineTimeout(f"Engine timed out after {self.timeout:g}s")

    def _probe(self, path: Path) -> tuple[Optional[int], Optional[int]]:
        try:
            width, height = self._call(self.engine.probe, path)
            return width, height
        except Exception as e:
            logger.debug("Could not probe %s: %s", path, e)
            return None, None

    def process_unit(
        self,
        item: JobInput,
        output_dir: Path,
        filename: str,
        transform: TransformOptions,
        category: Optional[str] = None,
    ) -> ConversionResult:
        """Convert one input into ``output_dir/filename`` (made unique). Never raises for engine failures."""
        try:
            st = item.path.stat()
            original_size = st.st_size
        except OSError:
            return ConversionResult.failure(item.name, 0, "Input file is missing", category)
        if original_size == 0 or not os.access(item.path, os.R_OK):
            return ConversionResult.failure(item.name, original_size, "Input file is empty or unreadable", category)

        original_w, original_h = self._probe(item.path)
        # The engine writes to a private name; only an in-time result is renamed into place
        partial = output_dir / f".{uuid.uuid4().hex}{PARTIAL_SUFFIX}{Path(filename).suffix}"
        try:
            self._call(self.engine.transform, item.path, partial, transform, on_abandon=lambda: self._discard(partial))
        except EngineTimeout as e:
            logger.warning("Engine timeout for %s -> %s", item.name, filename)
            self._discard(partial)
            return ConversionResult.failure(item.name, original_size, str(e), category)
        except Exception as e:
            logger.warning("Engine failed for %s -> %s: %s", item.name, filename, e)
            self._discard(partial)
            return ConversionResult.failure(item.name, original_size, str(e) or e.__class__.__name__, category)

        try:
            converted_size = partial.stat().st_size
        except OSError:
            converted_size = 0
        if converted_size == 0:
            self._discard(partial)
            return ConversionResult.failure(item.name, original_size, "Engine produced no output", category)

        converted_name = ensure_unique_filename(output_dir, filename)
        out_path = output_dir / converted_name
        try:
            os.replace(partial, out_path)
        except OSError as e:
            self._discard(partial)
            return ConversionResult.failure(item.name, original_size, f"Could not store output: {e}", category)

        width, height = self._probe(out_path)
        logger.info("Converted %s -> %s", item.name, converted_name)
        return ConversionResult(
            original_name=item.name,
            converted_name=converted_name,
            original_size=original_size,
            converted_size=converted_size,
            width=width if width is not None else original_w,
            height=height if height is not None else original_h,
            success=True,
            converted_path=str(out_path),
            category=category,
        )

    @staticmethod
    def _discard(path: Path) -> None:
        with contextlib.suppress(OSError):
            path.unlink(missing_ok=True)

    @staticmethod
    def ensure_output_dir(output_dir: Path) -> None:
        try:
            output_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageError(f"Cannot create output directory: {e}") from e

    @staticmethod
    def raise_if_all_failed(results: list[ConversionResult], what: str = "conversions") -> None:
        if not results or any(r.success for r in results):
            return
        errors = list(dict.fromkeys(r.error for r in results if r.error))
        summary = f"All {what} failed. Common issues: {', '.join(errors)}" if errors else f"All {what} failed due to unknown errors."
        raise EngineError(summary, results=results)

    def run(
        self,
        inputs: Sequence[Union[Path, str, JobInput]],
        output_dir: Path,
        options: ConversionOptions,
        on_progress: Optional[ProgressCallback] = None,
    ) -> list[ConversionResult]:
        """Convert ``inputs`` sequentially into ``output_dir``."""
        problems = options.validate()
        if problems:
            raise ValidationError(problems)
        items = [as_job_input(i) for i in inputs]
        if not items:
            raise ValidationError("No input files provided")
        self.ensure_output_dir(output_dir)

        fmt = options.output_format
        transform = TransformOptions(
            format=fmt,
            quality=options.quality if fmt in SupportedFormats.LOSSY else None,
            transparent=True,
        )
        total = len(items)
        results: list[ConversionResult] = []
        self.notify(on_progress, 0, total, "Starting conversion...")
        for index, item in enumerate(items):
            self.notify(on_progress, index, total, "Converting image", item.name)
            filename = generate_output_filename(item.name, options, index)
            result = self.process_unit(item, output_dir, filename, transform)
            results.append(result)
            operation = "Converted image" if result.success else "Conversion failed for image"
            self.notify(on_progress, index + 1, total, operation, item.name)

        self.raise_if_all_failed(results)
        failed = sum(1 for r in results if not r.success)
        if failed:
            logger.warning("Partial conversion failure: %s of %s files failed", failed, total)
        return results


# Singleton
_job_processor: Optional[JobProcessor] = None


def get_job_processor() -> JobProcessor:
    global _job_processor
    if _job_processor is None:
        engine, info = select_engine()
        logger.info(info.note)
        _job_processor = JobProcessor(engine)
    return _job_processor
