import logging

from fastapi import FastAPI
from fastapi import Request
from fastapi import status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from docwriter.api.routes import router
from docwriter.core.config import settings
from docwriter.core.exceptions import CredentialError
from docwriter.core.exceptions import DocBuilderError
from docwriter.core.exceptions import InvalidActionError
from docwriter.core.exceptions import PipelineError
from docwriter.core.exceptions import SessionBusyError
from docwriter.core.exceptions import SessionNotFoundError
from docwriter.core.logging import setup_logging

setup_logging()

app = FastAPI(title="docwriter", description="Staged long-document generation with review gates")

logger = logging.getLogger(__name__)

# Domain exception -> HTTP status; anything at 500 is logged as an error
ERROR_STATUS: dict[type[Exception], int] = {
    SessionNotFoundError: status.HTTP_404_NOT_FOUND,
    SessionBusyError: status.HTTP_409_CONFLICT,
    InvalidActionError: status.HTTP_409_CONFLICT,
    CredentialError: status.HTTP_400_BAD_REQUEST,
    PipelineError: status.HTTP_500_INTERNAL_SERVER_ERROR,
    DocBuilderError: status.HTTP_500_INTERNAL_SERVER_ERROR,
}


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    logger.error("HTTP %d on %s: %s", exc.status_code, request.url.path, exc.detail)
    return JSONResponse({"detail": exc.detail}, status_code=exc.status_code)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    logger.error("Request validation failed on %s: %s", request.url.path, exc.errors())
    return JSONResponse(
        {"error": "Input validation failed", "details": exc.errors()},
        status_code=422,
    )


async def domain_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    status_code = next(code for exc_type, code in ERROR_STATUS.items() if isinstance(exc, exc_type))
    if status_code >= 500:
        logger.error("%s on %s: %s", type(exc).__name__, request.url.path, str(exc))
    else:
        logger.warning("%s on %s: %s", type(exc).__name__, request.url.path, str(exc))
    return JSONResponse({"error": str(exc)}, status_code=status_code)


for _exc_type in ERROR_STATUS:
    app.add_exception_handler(_exc_type, domain_exception_handler)


@app.get("/health", status_code=status.HTTP_200_OK, tags=["Health"])
async def health_check() -> dict[str, str]:
    return {"status": "ok"}


app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_allowed_origins,
    allow_methods=["POST", "GET", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["*"],
)
app.include_router(router)
