"""Transport-agnostic operations for both tools.

Every operation runs under the rate limiter, and jobs and archive builds under
the lock registry. Blocking filesystem and engine work is pushed to threads so
the event loop stays responsive.
"""
import asyncio
import logging
import os
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional
from urllib.parse import quote

from pixelpress import config
from pixelpress.archive import build_archive
from pixelpress.conversion.engine import EngineInfo
from pixelpress.conversion.generation import AssetGenerator, GenerationOptions, asset_targets
from pixelpress.conversion.models import ConversionOptions, ConversionResult, JobInput, JobTicket
from pixelpress.conversion.service import JobProcessor, get_job_processor
from pixelpress.errors import (
    ConflictError,
    EngineError,
    ForbiddenError,
    NotFoundError,
    PixelPressError,
    RateLimitedError,
    ValidationError,
)
from pixelpress.files import FileGateway, ServedFile
from pixelpress.security import LockRegistry, RateLimiter, get_lock_registry, get_rate_limiter, limiter_key
from pixelpress.session.models import Progress, SessionHandle, SessionMetadata, SessionStatus
from pixelpress.session.store import SessionStore
from pixelpress.session.uploads import SavedFile, UploadIngestor, UploadPayload

logger = logging.getLogger("pixelpress.facade")


@dataclass(frozen=True)
class ToolProfile:
    """What differs between the two tools sharing this core."""

    name: str
    key_prefix: str
    root: Path
    outputs_dirname: str
    allowed_mime_types: tuple[str, ...]
    archive_name: str
    job_kind: str

    @property
    def route_prefix(self) -> str:
        return f"/api/{self.name}"


PICTURE_PRESS = ToolProfile(
    name="picture-press",
    key_prefix="pp",
    root=config.PICTURE_PRESS_ROOT,
    outputs_dirname="converted",
    allowed_mime_types=config.PICTURE_PRESS_MIME_TYPES,
    archive_name="converted-images.zip",
    job_kind="conversion",
)
PIXEL_FORGE = ToolProfile(
    name="pixel-forge",
    key_prefix="pf",
    root=config.PIXEL_FORGE_ROOT,
    outputs_dirname="generated",
    allowed_mime_types=config.PIXEL_FORGE_MIME_TYPES,
    archive_name="assets.zip",
    job_kind="generation",
)


@dataclass
class UploadReceipt:
    session_id: str
    files: list[SavedFile]
    created_session: bool = False


@dataclass
class ArchiveInfo:
    session_id: str
    file_name: str
    file_count: int
    size: int
    download_url: str


@dataclass
class JobReport:
    """Job outcome as recorded in session metadata."""

    session_id: str
    status: str
    results: list[ConversionResult] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def successes(self) -> list[ConversionResult]:
        return [r for r in self.results if r.success]

    @property
    def failures(self) -> list[ConversionResult]:
        return [r for r in self.results if not r.success]

    def summary(self) -> dict[str, Any]:
        total_original = sum(r.original_size for r in self.results)
        total_converted = sum(r.converted_size for r in self.successes)
        return {
            "total_original_size": total_original,
            "total_converted_size": total_converted,
            "total_savings": total_original - total_converted,
            "success_count": len(self.successes),
            "failure_count": len(self.failures),
        }


def compression_ratio(result: ConversionResult) -> int:
    if result.original_size <= 0:
        return 0
    return round((result.original_size - result.converted_size) / result.original_size * 100)


class ToolFacade:
    """Shared session, upload, progress, archive and download operations.

    Subclasses supply the job itself via ``_check_options`` and ``_execute``.
    """

    archive_needs_completed_job = True

    def __init__(
        self,
        profile: ToolProfile,
        store: Optional[SessionStore] = None,
        processor: Optional[JobProcessor] = None,
        limiter: Optional[RateLimiter] = None,
        locks: Optional[LockRegistry] = None,
        rate_limits: Optional[dict[str, int]] = None,
        rate_window: float = config.RATE_LIMIT_WINDOW_SECONDS,
        sweep_interval: float = config.SWEEP_INTERVAL_SECONDS,
        engine_info: Optional[EngineInfo] = None,
    ):
        self.profile = profile
        self.store = store or SessionStore(
            profile.root,
            outputs_dirname=profile.outputs_dirname,
            tool=profile.name,
            default_ttl=config.SESSION_TTL_SECONDS,
        )
        self._processor = processor
        self.limiter = limiter or get_rate_limiter()
        self.locks = locks or get_lock_registry()
        self.rate_limits = {**config.RATE_LIMITS, **(rate_limits or {})}
        self.rate_window = rate_window
        self.sweep_interval = sweep_interval
        self._engine_info = engine_info
        self.ingestor = UploadIngestor(self.store, profile.allowed_mime_types)
        self.gateway = FileGateway(self.store)
        self._jobs: dict[str, asyncio.Task] = {}
        # Single worker keeps progress writes in submission order
        self._progress_channel = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"{profile.key_prefix}-progress")

    @property
    def processor(self) -> JobProcessor:
        if self._processor is None:
            self._processor = get_job_processor()
        return self._processor

    def shutdown(self) -> None:
        self._progress_channel.shutdown(wait=True)

    # Helpers

    def _limit(self, route: str, client: str, session_id: Optional[str] = None) -> None:
        key = limiter_key(f"{self.profile.key_prefix}:{route}", client, session_id)
        if not self.limiter.check(key, self.rate_limits[route], self.rate_window):
            logger.warning("Rate limit hit for %s", key)
            raise RateLimitedError("Too many requests, please slow down.", {"route": route})

    def _lock_key(self, kind: str, session_id: str) -> str:
        return f"{self.profile.key_prefix}:{kind}:{session_id}"

    def file_url(self, session_id: str, relative_path: str) -> str:
        return f"{self.profile.route_prefix}/files/{quote(session_id)}/{quote(relative_path)}"

    def result_url(self, session_id: str, result: ConversionResult) -> Optional[str]:
        if not result.success or not result.converted_path:
            return None
        try:
            relative = Path(result.converted_path).relative_to(self.store.root / session_id).as_posix()
        except ValueError:
            return None
        return self.file_url(session_id, relative)

    async def _opportunistic_sweep(self) -> None:
        removed = await asyncio.to_thread(self.store.maybe_sweep_expired, self.sweep_interval)
        if removed:
            logger.info("[%s] opportunistic cleanup removed %s session(s)", self.profile.name, len(removed))

    def _write_progress_quietly(self, session_id: str, progress: Progress) -> None:
        try:
            self.store.write_progress(session_id, progress)
        except Exception as e:
            logger.warning("[%s] progress write failed for %s: %s", self.profile.name, session_id, e)

    async def _publish_progress(self, session_id: str, progress: Progress) -> None:
        """Awaited write through the progress channel, behind any queued writes."""
        future = self._progress_channel.submit(self._write_progress_quietly, session_id, progress)
        await asyncio.wrap_future(future)

    # Operations

    async def new_session(self, client: str, ttl: Optional[float] = None) -> SessionHandle:
        if ttl is not None and not 0 < ttl <= config.MAX_SESSION_TTL_SECONDS:
            raise ValidationError(f"ttl must be greater than 0 and at most {config.MAX_SESSION_TTL_SECONDS:g} seconds")
        self._limit("newSession", client)
        await self._opportunistic_sweep()
        return await asyncio.to_thread(self.store.create_session, ttl)

    async def upload_files(
        self,
        client: str,
        files: list[UploadPayload],
        session_id: Optional[str] = None,
    ) -> UploadReceipt:
        """Save a batch; a session is created when none is given."""
        self._limit("upload", client, session_id)
        await self._opportunistic_sweep()
        created = False
        if session_id is None:
            # Reject a bad batch before creating anything on disk
            self.ingestor.validate(files, config.MAX_UPLOAD_FILE_BYTES, config.MAX_UPLOAD_TOTAL_BYTES)
            handle = await asyncio.to_thread(self.store.create_session)
            session_id = handle.id
            created = True
        try:
            saved = await asyncio.to_thread(self.ingestor.save_uploads, session_id, files)
        except PixelPressError:
            if created:
                await asyncio.to_thread(self.store.destroy, session_id)
            raise
        return UploadReceipt(session_id=session_id, files=saved, created_session=created)

    def _check_options(self, options: Any) -> list[str]:
        raise NotImplementedError

    def _prepare(self, handle: SessionHandle, meta: SessionMetadata, options: Any) -> int:
        """Check the session can run this job; returns the number of work units."""
        raise NotImplementedError

    def _execute(self, handle: SessionHandle, meta: SessionMetadata, options: Any, on_progress) -> list[ConversionResult]:
        raise NotImplementedError

    async def start_job(self, client: str, session_id: str, options: Any) -> JobTicket:
        """Validate, take the session's job lock and run the job in the background.

        The lock is held until the background task finishes, so a second call
        for the same session gets ConflictError until then.
        """
        self._limit("startJob", client, session_id)
        problems = self._check_options(options)
        if problems:
            raise ValidationError(problems)
        lock_key = self._lock_key(self.profile.job_kind, session_id)
        if not self.locks.acquire(lock_key):
            raise ConflictError(
                f"A {self.profile.job_kind} is already in progress for this session. Please wait for it to complete.",
                {"lock": lock_key},
            )
        try:
            handle = await asyncio.to_thread(self.store.open, session_id)
            meta = await asyncio.to_thread(self.store.read_metadata, session_id)
            total = self._prepare(handle, meta, options)
            await asyncio.to_thread(self.store.update_metadata, session_id, {
                "status": SessionStatus.PROCESSING,
                "jobOptions": options.to_dict(),
                "lastError": None,
            })
            await self._publish_progress(session_id, Progress(0, total, f"Starting {self.profile.job_kind}..."))
        except BaseException:
            self.locks.release(lock_key)
            raise

        task = asyncio.create_task(self._run_job(handle, meta, options, total, lock_key))
        self._jobs[session_id] = task
        task.add_done_callback(lambda t: self._job_done(session_id, t))
        logger.info("[%s] started %s for session %s (%s units)", self.profile.name, self.profile.job_kind, session_id, total)
        return JobTicket(
            session_id=session_id,
            kind=self.profile.job_kind,
            total=total,
            status=SessionStatus.PROCESSING.value,
            options=options.to_dict(),
        )

    def _job_done(self, session_id: str, task: asyncio.Task) -> None:
        if self._jobs.get(session_id) is task:
            del self._jobs[session_id]
        if not task.cancelled() and task.exception() is not None:
            logger.warning("[%s] job for session %s failed: %s", self.profile.name, session_id, task.exception())

    async def _run_job(
        self,
        handle: SessionHandle,
        meta: SessionMetadata,
        options: Any,
        total: int,
        lock_key: str,
    ) -> list[ConversionResult]:
        session_id = handle.id
        reported = {"current": 0}

        def on_progress(current: int, total_units: int, operation: str, current_file: Optional[str]) -> None:
            # Runs on the job thread: hand off and keep going
            reported["current"] = max(reported["current"], current)
            self._progress_channel.submit(
                self._write_progress_quietly,
                session_id,
                Progress(reported["current"], total_units, operation, current_file),
            )

        try:
            results = await asyncio.to_thread(self._execute, handle, meta, options, on_progress)
            failed = sum(1 for r in results if not r.success)
            await asyncio.to_thread(self.store.update_metadata, session_id, {
                "status": SessionStatus.COMPLETED,
                "lastResults": [r.to_dict() for r in results],
                "lastError": None,
            })
            operation = "Completed" if not failed else f"Completed with {failed} failure{'' if failed == 1 else 's'}"
            await self._publish_progress(session_id, Progress(total, total, operation))
            return results
        except Exception as e:
            await self._record_failure(session_id, e, reported["current"], total)
            raise
        finally:
            self.locks.release(lock_key)

    async def _record_failure(self, session_id: str, error: Exception, current: int, total: int) -> None:
        """Best-effort: bookkeeping failures are logged, never raised over ``error``."""
        message = error.message if isinstance(error, PixelPressError) else str(error) or error.__class__.__name__
        patch: dict[str, Any] = {"status": SessionStatus.ERROR, "lastError": message}
        if isinstance(error, EngineError) and error.results:
            patch["lastResults"] = [r.to_dict() for r in error.results]
        try:
            await asyncio.to_thread(self.store.update_metadata, session_id, patch)
        except Exception as e:
            logger.warning("[%s] could not record failure for %s: %s", self.profile.name, session_id, e)
        await self._publish_progress(session_id, Progress(current, total, f"Failed: {message}"))

    async def wait_for_job(self, session_id: str) -> Optional[list[ConversionResult]]:
        """Await the in-flight job for ``session_id``; None when nothing is running."""
        task = self._jobs.get(session_id)
        if task is None:
            return None
        return await task

    def job_running(self, session_id: str) -> bool:
        return session_id in self._jobs

    async def get_progress(self, client: str, session_id: str) -> Progress:
        self._limit("progress", client, session_id)
        return await asyncio.to_thread(self.store.read_progress, session_id)

    async def get_results(self, client: str, session_id: str) -> JobReport:
        self._limit("results", client, session_id)
        meta = await asyncio.to_thread(self.store.read_metadata, session_id)
        results = [ConversionResult.from_dict(r) for r in meta.last_results or [] if isinstance(r, dict)]
        return JobReport(session_id=session_id, status=meta.status.value, results=results, error=meta.last_error)

    async def build_archive(self, client: str, session_id: str) -> ArchiveInfo:
        self._limit("archive", client, session_id)
        lock_key = self._lock_key("zip", session_id)
        with self.locks.held(lock_key, "Archive creation already in progress for this session."):
            handle = await asyncio.to_thread(self.store.open, session_id)
            meta = await asyncio.to_thread(self.store.read_metadata, session_id)
            if self.archive_needs_completed_job and meta.status != SessionStatus.COMPLETED:
                raise ValidationError(f"No completed {self.profile.job_kind} found. Please run one first.")
            has_outputs = await asyncio.to_thread(lambda: any(p.is_file() and not p.name.startswith(".") for p in handle.outputs_dir.rglob("*")))
            if not has_outputs:
                raise ValidationError("No output files found to archive.")
            zip_path = handle.root / self.profile.archive_name
            count = await asyncio.to_thread(build_archive, handle.outputs_dir, zip_path)
            size = zip_path.stat().st_size
        logger.info("[%s] archived %s files for session %s", self.profile.name, count, session_id)
        return ArchiveInfo(
            session_id=session_id,
            file_name=self.profile.archive_name,
            file_count=count,
            size=size,
            download_url=self.file_url(session_id, self.profile.archive_name),
        )

    async def download_file(
        self,
        session_id: str,
        segments: list[str],
        if_none_match: Optional[str] = None,
        if_modified_since: Optional[str] = None,
    ) -> ServedFile:
        return await asyncio.to_thread(self.gateway.serve, session_id, segments, if_none_match, if_modified_since)

    async def cleanup_session(self, client: str, session_id: str) -> bool:
        """Idempotent; unknown or already removed sessions are fine."""
        self._limit("cleanupSession", client, session_id)
        return await asyncio.to_thread(self.store.destroy, session_id)

    async def sweep_expired(self, client: str) -> list[str]:
        self._limit("sweepExpired", client)
        return await asyncio.to_thread(self.store.sweep_expired)

    def engine_info(self) -> EngineInfo:
        if self._engine_info is None:
            name = self.processor.engine.name
            self._engine_info = EngineInfo(name, name == "magick", f"Using {name} engine.")
        return self._engine_info


def _resolve_in(root: Path, stored: str) -> Path:
    """Absolute path of ``stored`` (absolute or root-relative); Forbidden if it leaves ``root``."""
    root_abs = os.path.abspath(root)
    candidate = os.path.normpath(os.path.join(root_abs, stored))
    if candidate != root_abs and not candidate.startswith(root_abs + os.sep):
        raise ForbiddenError("Path is outside the session workspace")
    return Path(candidate)


class PicturePressFacade(ToolFacade):
    """Bulk format conversion of every uploaded file."""

    def __init__(self, **kwargs):
        kwargs.setdefault("profile", PICTURE_PRESS)
        super().__init__(**kwargs)

    def _check_options(self, options: ConversionOptions) -> list[str]:
        return options.validate()

    def _inputs(self, handle: SessionHandle, meta: SessionMetadata) -> list[JobInput]:
        return [JobInput(path=_resolve_in(handle.root, f.stored_path), name=f.original_name) for f in meta.uploaded_files]

    def _prepare(self, handle: SessionHandle, meta: SessionMetadata, options: ConversionOptions) -> int:
        if not meta.uploaded_files:
            raise ValidationError("No uploaded files found. Please upload images first.")
        inputs = self._inputs(handle, meta)
        missing = [i.name for i in inputs if not i.path.is_file()]
        if missing:
            raise ValidationError([f"Uploaded file is missing: {name}" for name in missing])
        return len(inputs)

    def _execute(self, handle, meta, options: ConversionOptions, on_progress) -> list[ConversionResult]:
        return self.processor.run(self._inputs(handle, meta), handle.outputs_dir, options, on_progress)


class PixelForgeFacade(ToolFacade):
    """Web asset generation from one uploaded image."""

    # Generated assets can be zipped whenever some exist
    archive_needs_completed_job = False

    def __init__(self, **kwargs):
        kwargs.setdefault("profile", PIXEL_FORGE)
        super().__init__(**kwargs)

    def _check_options(self, options: GenerationOptions) -> list[str]:
        return options.validate()

    def _source(self, handle: SessionHandle, meta: SessionMetadata, options: GenerationOptions) -> tuple[Path, str]:
        if options.image_path:
            path = _resolve_in(handle.root, options.image_path)
            _resolve_in(handle.uploads_dir, str(path))
            match = next((f for f in meta.uploaded_files if os.path.abspath(f.stored_path) == str(path)), None)
            name = match.original_name if match else path.name
        elif meta.uploaded_files:
            latest = meta.uploaded_files[-1]
            path, name = _resolve_in(handle.root, latest.stored_path), latest.original_name
        else:
            raise ValidationError("No uploaded image found. Please upload an image first.")
        if not path.is_file():
            raise NotFoundError(f"Source image not found: {options.image_path or name}")
        return path, name

    def _prepare(self, handle: SessionHandle, meta: SessionMetadata, options: GenerationOptions) -> int:
        self._source(handle, meta, options)
        if not options.url_prefix:
            options.url_prefix = self.file_url(handle.id, f"{self.profile.outputs_dirname}/")
        return len(asset_targets(options))

    def _execute(self, handle, meta, options: GenerationOptions, on_progress) -> list[ConversionResult]:
        path, name = self._source(handle, meta, options)
        return AssetGenerator(self.processor).run(path, handle.outputs_dir, options, on_progress, source_name=name)


# Singletons
_picture_press: Optional[PicturePressFacade] = None
_pixel_forge: Optional[PixelForgeFacade] = None


def get_picture_press() -> PicturePressFacade:
    global _picture_press
    if _picture_press is None:
        _picture_press = PicturePressFacade()
    return _picture_press


def get_pixel_forge() -> PixelForgeFacade:
    global _pixel_forge
    if _pixel_forge is None:
        _pixel_forge = PixelForgeFacade()
    return _pixel_forge
