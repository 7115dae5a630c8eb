"""FastAPI application entry point."""
import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from pixelpress.api.routes import picture_press_router, pixel_forge_router, router
from pixelpress.config import CORS_ORIGINS, logger as config_logger
from pixelpress.conversion.service import get_job_processor
from pixelpress.errors import (
    ConflictError,
    ForbiddenError,
    NotFoundError,
    PixelPressError,
    RateLimitedError,
    ValidationError,
)
from pixelpress.facade import get_picture_press, get_pixel_forge

logging.getLogger("uvicorn").setLevel(logging.INFO)

ERROR_STATUS = (
    (ValidationError, 400),
    (ForbiddenError, 403),
    (NotFoundError, 404),
    (ConflictError, 409),
    (RateLimitedError, 429),
)


def status_for(exc: PixelPressError) -> int:
    for cls, status in ERROR_STATUS:
        if isinstance(exc, cls):
            return status
    return 500


@asynccontextmanager
async def lifespan(app: FastAPI):
    processor = get_job_processor()
    facades = (get_picture_press(), get_pixel_forge())
    for facade in facades:
        try:
            removed = await asyncio.to_thread(facade.store.sweep_expired)
            if removed:
                config_logger.info("Startup sweep removed %s %s session(s)", len(removed), facade.profile.name)
        except PixelPressError as e:
            config_logger.warning("Startup sweep failed for %s: %s", facade.profile.name, e)
    config_logger.info("Pixel Press API started (engine=%s)", processor.engine.name)
    yield
    config_logger.info("Pixel Press API shutting down")
    for facade in facades:
        facade.shutdown()
    processor.shutdown()


app = FastAPI(
    title="Pixel Press API",
    description="Session-scoped image conversion (Picture Press) and web asset generation (Pixel Forge).",
    version="1.0.0",
    lifespan=lifespan,
)
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS if CORS_ORIGINS else ["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Session-ID", "ETag", "Content-Disposition"],
)


@app.exception_handler(PixelPressError)
async def pixelpress_error_handler(request: Request, exc: PixelPressError):
    status = status_for(exc)
    if status >= 500:
        config_logger.error("%s %s failed: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=status, content=exc.to_dict())


async def session_header_middleware(request, call_next):
    """Set X-Session-ID on the response when the route created or used a session."""
    response = await call_next(request)
    if hasattr(request.state, "session_id"):
        response.headers["X-Session-ID"] = request.state.session_id
    return response


app.middleware("http")(session_header_middleware)
app.include_router(router)
app.include_router(picture_press_router)
app.include_router(pixel_forge_router)


if __name__ == "__main__":
    import uvicorn
    from pixelpress.config import HOST, PORT
    uvicorn.run("pixelpress.main:app", host=HOST, port=PORT, reload=True)
