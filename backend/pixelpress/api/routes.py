"""HTTP routes: shared info endpoints plus one router per tool."""
import logging
from typing import Callable, Optional

from fastapi import APIRouter, Depends, File, Request, UploadFile
from fastapi.responses import FileResponse, Response
from pydantic import BaseModel, Field

from pixelpress import config
from pixelpress.conversion.generation import GenerationOptions
from pixelpress.conversion.models import ConversionOptions, ConversionResult, NamingConvention, SupportedFormats
from pixelpress.facade import (
    PICTURE_PRESS,
    PIXEL_FORGE,
    JobReport,
    ToolFacade,
    ToolProfile,
    compression_ratio,
    get_picture_press,
    get_pixel_forge,
)
from pixelpress.security import client_identity
from pixelpress.session.models import Progress
from pixelpress.session.uploads import UploadPayload, saved_file_dict

logger = logging.getLogger("pixelpress.api")
router = APIRouter(prefix="/api", tags=["pixel-press"])

READ_CHUNK = 1024 * 1024


def get_client(request: Request) -> str:
    return client_identity(request.headers, request.client.host if request.client else None)


def get_session_header(request: Request) -> Optional[str]:
    """Existing session from the X-Session-ID header, if any."""
    return (request.headers.get("X-Session-ID") or "").strip() or None


class NewSessionBody(BaseModel):
    ttl: Optional[float] = None


class Base64File(BaseModel):
    name: str
    data: str
    mime_type: str


class Base64UploadBody(BaseModel):
    session_id: Optional[str] = None
    files: list[Base64File] = Field(default_factory=list)


class ConversionOptionsBody(BaseModel):
    output_format: str
    quality: Optional[int] = None
    naming_convention: str = NamingConvention.KEEP_ORIGINAL.value
    custom_pattern: Optional[str] = None
    prefix: Optional[str] = None
    suffix: Optional[str] = None


class GenerationOptionsBody(BaseModel):
    generation_types: list[str] = Field(default_factory=lambda: ["all"])
    format: str = "png"
    quality: Optional[int] = None
    transparent: bool = True
    background_color: Optional[str] = None
    theme_color: Optional[str] = None
    app_name: Optional[str] = None
    description: Optional[str] = None
    url_prefix: Optional[str] = None
    image_path: Optional[str] = None


class ConversionJobBody(BaseModel):
    session_id: str
    options: ConversionOptionsBody


class GenerationJobBody(BaseModel):
    session_id: str
    options: GenerationOptionsBody = Field(default_factory=GenerationOptionsBody)


def progress_dict(progress: Progress) -> dict:
    return {
        "current": progress.current,
        "total": progress.total,
        "current_operation": progress.current_operation,
        "current_file": progress.current_file,
        "files_processed": progress.current,
        "total_files": progress.total,
    }


def result_dict(facade: ToolFacade, session_id: str, result: ConversionResult) -> dict:
    out = {
        "original_name": result.original_name,
        "converted_name": result.converted_name,
        "original_size": result.original_size,
        "converted_size": result.converted_size,
        "width": result.width,
        "height": result.height,
        "success": result.success,
        "error": result.error,
    }
    if result.category:
        out["category"] = result.category
    if result.success:
        url = facade.result_url(session_id, result)
        out["compression_ratio"] = compression_ratio(result)
        out["download_url"] = url
        out["preview_url"] = url
    return out


def report_dict(facade: ToolFacade, report: JobReport) -> dict:
    return {
        "session_id": report.session_id,
        "status": report.status,
        "error": report.error,
        "results": [result_dict(facade, report.session_id, r) for r in report.results],
        "failures": [
            {"original_name": r.original_name, "error": r.error or "Unknown error occurred during conversion"}
            for r in report.failures
        ],
        **report.summary(),
    }


def raw_path_segments(request: Request, session_id: str, file_path: str) -> list[str]:
    """Still-encoded path segments after the session id, so each can be decoded once on its own."""
    raw = request.scope.get("raw_path")
    if raw:
        path = raw.decode("latin-1")
        marker = f"/files/{session_id}/"
        idx = path.find(marker)
        if idx != -1:
            return path[idx + len(marker):].split("/")
    return file_path.split("/")


async def read_upload(file: UploadFile, limit: int) -> bytes:
    """Read at most ``limit + 1`` bytes; anything larger fails validation anyway."""
    chunks = []
    total = 0
    while chunk := await file.read(READ_CHUNK):
        chunks.append(chunk)
        total += len(chunk)
        if total > limit:
            break
    return b"".join(chunks)


@router.get("/health")
def health(facade: ToolFacade = Depends(get_picture_press)):
    info = facade.engine_info()
    return {"status": "ok", "engine": info.engine, "engine_note": info.note}


@router.get("/formats")
def get_formats():
    return {
        "picture_press": {
            "input": list(config.PICTURE_PRESS_MIME_TYPES),
            "output": SupportedFormats.describe(),
        },
        "pixel_forge": {
            "input": list(config.PIXEL_FORGE_MIME_TYPES),
            "output": ["png", "jpeg", "webp"],
        },
    }


@router.get("/limits")
def get_limits():
    """Upload limits for the client."""
    return {
        "max_files_per_upload": config.MAX_FILES_PER_UPLOAD,
        "max_file_size_mb": config.MAX_UPLOAD_FILE_MB,
        "max_file_size_bytes": config.MAX_UPLOAD_FILE_BYTES,
        "max_total_size_mb": config.MAX_UPLOAD_TOTAL_MB,
        "max_total_size_bytes": config.MAX_UPLOAD_TOTAL_BYTES,
        "min_file_size_bytes": config.MIN_UPLOAD_BYTES,
        "session_ttl_seconds": config.SESSION_TTL_SECONDS,
    }


def build_tool_router(profile: ToolProfile, get_facade: Callable[[], ToolFacade], job_body, to_options) -> APIRouter:
    """Session, upload, job, progress, archive and file routes for one tool."""
    tool = APIRouter(prefix=profile.route_prefix, tags=[profile.name])

    @tool.post("/sessions", status_code=201)
    async def new_session(
        request: Request,
        body: Optional[NewSessionBody] = None,
        client: str = Depends(get_client),
        facade: ToolFacade = Depends(get_facade),
    ):
        handle = await facade.new_session(client, body.ttl if body else None)
        request.state.session_id = handle.id
        return {"session_id": handle.id}

    @tool.post("/upload")
    async def upload(
        request: Request,
        files: list[UploadFile] = File(...),
        session_id: Optional[str] = Depends(get_session_header),
        client: str = Depends(get_client),
        facade: ToolFacade = Depends(get_facade),
    ):
        """Multipart upload; creates a session unless X-Session-ID names one."""
        payloads = []
        for file in files:
            data = await read_upload(file, config.MAX_UPLOAD_FILE_BYTES)
            payloads.append(UploadPayload(
                name=file.filename or "",
                data=data,
                mime_type=file.content_type or "",
            ))
        receipt = await facade.upload_files(client, payloads, session_id)
        request.state.session_id = receipt.session_id
        return {
            "session_id": receipt.session_id,
            "files": [saved_file_dict(s, facade.file_url(receipt.session_id, s.stored_path)) for s in receipt.files],
        }

    @tool.post("/upload-base64")
    async def upload_base64(
        request: Request,
        body: Base64UploadBody,
        client: str = Depends(get_client),
        facade: ToolFacade = Depends(get_facade),
    ):
        payloads = [UploadPayload(name=f.name, data=f.data, mime_type=f.mime_type) for f in body.files]
        receipt = await facade.upload_files(client, payloads, body.session_id)
        request.state.session_id = receipt.session_id
        return {
            "session_id": receipt.session_id,
            "files": [saved_file_dict(s, facade.file_url(receipt.session_id, s.stored_path)) for s in receipt.files],
        }

    @tool.post("/jobs", status_code=202)
    async def start_job(
        body: job_body,
        client: str = Depends(get_client),
        facade: ToolFacade = Depends(get_facade),
    ):
        ticket = await facade.start_job(client, body.session_id, to_options(body.options))
        return {
            "session_id": ticket.session_id,
            "kind": ticket.kind,
            "status": ticket.status,
            "total": ticket.total,
            "progress_url": f"{profile.route_prefix}/progress/{ticket.session_id}",
            "results_url": f"{profile.route_prefix}/results/{ticket.session_id}",
        }

    @tool.get("/progress/{session_id}")
    async def get_progress(
        session_id: str,
        client: str = Depends(get_client),
        facade: ToolFacade = Depends(get_facade),
    ):
        return progress_dict(await facade.get_progress(client, session_id))

    @tool.get("/results/{session_id}")
    async def get_results(
        session_id: str,
        client: str = Depends(get_client),
        facade: ToolFacade = Depends(get_facade),
    ):
        report = await facade.get_results(client, session_id)
        out = report_dict(facade, report)
        info = facade.engine_info()
        out["engine"] = info.engine
        out["engine_note"] = info.note
        return out

    @tool.post("/archive/{session_id}")
    async def build_archive(
        session_id: str,
        client: str = Depends(get_client),
        facade: ToolFacade = Depends(get_facade),
    ):
        info = await facade.build_archive(client, session_id)
        return {
            "session_id": info.session_id,
            "file_name": info.file_name,
            "file_count": info.file_count,
            "size": info.size,
            "download_url": info.download_url,
        }

    @tool.api_route("/files/{session_id}/{file_path:path}", methods=["GET", "HEAD"])
    async def download_file(
        request: Request,
        session_id: str,
        file_path: str,
        facade: ToolFacade = Depends(get_facade),
    ):
        served = await facade.download_file(
            session_id,
            raw_path_segments(request, session_id, file_path),
            if_none_match=request.headers.get("if-none-match"),
            if_modified_since=request.headers.get("if-modified-since"),
        )
        if served.status == 304:
            return Response(status_code=304, headers=served.headers)
        return FileResponse(served.path, headers=served.headers, media_type=served.media_type)

    @tool.delete("/sessions/{session_id}")
    async def cleanup_session(
        session_id: str,
        client: str = Depends(get_client),
        facade: ToolFacade = Depends(get_facade),
    ):
        removed = await facade.cleanup_session(client, session_id)
        return {"ok": True, "removed": removed}

    @tool.post("/sweep")
    async def sweep_expired(
        client: str = Depends(get_client),
        facade: ToolFacade = Depends(get_facade),
    ):
        removed = await facade.sweep_expired(client)
        return {"removed": removed}

    return tool


picture_press_router = build_tool_router(
    PICTURE_PRESS,
    get_picture_press,
    ConversionJobBody,
    lambda o: ConversionOptions(**o.model_dump()),
)
pixel_forge_router = build_tool_router(
    PIXEL_FORGE,
    get_pixel_forge,
    GenerationJobBody,
    lambda o: GenerationOptions(**o.model_dump()),
)
