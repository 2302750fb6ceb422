import logging
from contextlib import asynccontextmanager
from typing import Any, Optional

from fastapi import APIRouter, Depends, FastAPI, Path, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.datastructures import Headers
from starlette.types import ASGIApp, Message, Receive, Scope, Send
import uvicorn

from .config import Settings, settings
from .errors import ApiError, StorageError
from .persistence import Persistence, get_persistence
from .schemas import (
    ApiErrorDetail,
    ApiErrorPayload,
    ApiErrorResponse,
    FleetWrite,
    HealthResponse,
    ItemsRecordWrite,
    NoteWrite,
    RecordWriteResponse,
    SuccessResponse,
    SyncDeleteResponse,
    SyncPayload,
    SyncWriteResponse,
    UploadDeleteRequest,
    UploadRequest,
    UploadResponse,
)
from .services.sync import MAX_YEAR, MIN_YEAR, utc_timestamp
from .services.uploads import UploadService
from .storage import MediaStorage, get_media_storage

logger = logging.getLogger(__name__)

router = APIRouter()


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def build_error_response(
    status_code: int,
    code: str,
    message: str,
    details: Optional[list[ApiErrorDetail]] = None,
) -> JSONResponse:
    payload = ApiErrorResponse(error=ApiErrorPayload(code=code, message=message, details=details or []))
    return JSONResponse(status_code=status_code, content=payload.model_dump())


def get_store(request: Request) -> Persistence:
    return request.app.state.persistence


def get_uploads(request: Request) -> UploadService:
    return request.app.state.uploads


@router.get("/", response_model=HealthResponse)
def health(request: Request) -> HealthResponse:
    return HealthResponse(
        status="OK",
        message="Casa DW API running",
        timestamp=utc_timestamp(),
        storage=request.app.state.persistence.backend_name,
        media=request.app.state.uploads.storage.backend_name,
    )


def _write_items(kind: str, payload: ItemsRecordWrite, persistence: Persistence) -> RecordWriteResponse:
    record = persistence.put_record(payload.userId, kind, payload.month, payload.year, {"items": payload.items})
    return RecordWriteResponse(data=record)


@router.get("/api/expenses/{user_id}/{month}/{year}")
def get_expenses(
    user_id: str,
    month: int = Path(ge=1, le=12),
    year: int = Path(ge=MIN_YEAR, le=MAX_YEAR),
    persistence: Persistence = Depends(get_store),
) -> dict[str, Any]:
    return persistence.get_record(user_id, "expenses", month, year)


@router.post("/api/expenses", response_model=RecordWriteResponse)
def save_expenses(payload: ItemsRecordWrite, persistence: Persistence = Depends(get_store)) -> RecordWriteResponse:
    return _write_items("expenses", payload, persistence)


@router.get("/api/income/{user_id}/{month}/{year}")
def get_income(
    user_id: str,
    month: int = Path(ge=1, le=12),
    year: int = Path(ge=MIN_YEAR, le=MAX_YEAR),
    persistence: Persistence = Depends(get_store),
) -> dict[str, Any]:
    return persistence.get_record(user_id, "income", month, year)


@router.post("/api/income", response_model=RecordWriteResponse)
def save_income(payload: ItemsRecordWrite, persistence: Persistence = Depends(get_store)) -> RecordWriteResponse:
    return _write_items("income", payload, persistence)


@router.get("/api/fleet/{user_id}")
def get_fleet(user_id: str, persistence: Persistence = Depends(get_store)) -> dict[str, Any]:
    return persistence.get_fleet(user_id)


@router.post("/api/fleet", response_model=RecordWriteResponse)
def save_fleet(payload: FleetWrite, persistence: Persistence = Depends(get_store)) -> RecordWriteResponse:
    return RecordWriteResponse(data=persistence.put_fleet(payload.userId, payload.vehicles))


@router.get("/api/notes/{user_id}/{month}/{year}")
def get_note(
    user_id: str,
    month: int = Path(ge=1, le=12),
    year: int = Path(ge=MIN_YEAR, le=MAX_YEAR),
    persistence: Persistence = Depends(get_store),
) -> dict[str, Any]:
    return persistence.get_record(user_id, "notes", month, year)


@router.post("/api/notes", response_model=RecordWriteResponse)
def save_note(payload: NoteWrite, persistence: Persistence = Depends(get_store)) -> RecordWriteResponse:
    record = persistence.put_record(payload.userId, "notes", payload.month, payload.year, {"content": payload.content})
    return RecordWriteResponse(data=record)


@router.get("/api/sync/{user_id}")
def sync_read(user_id: str, persistence: Persistence = Depends(get_store)) -> dict[str, Any]:
    return persistence.sync_read(user_id)


@router.post("/api/sync", response_model=SyncWriteResponse)
def sync_write(payload: SyncPayload, persistence: Persistence = Depends(get_store)) -> SyncWriteResponse:
    patch = payload.model_dump(exclude_unset=True, exclude={"userId"})
    document = persistence.sync_write(payload.userId, patch)
    return SyncWriteResponse(updatedAt=document.get("updatedAt"))


@router.delete("/api/sync/{user_id}", response_model=SyncDeleteResponse)
def sync_delete(user_id: str, persistence: Persistence = Depends(get_store)) -> SyncDeleteResponse:
    existed = persistence.delete_user(user_id)
    logger.info("deleted data for %s (existed=%s)", user_id, existed)
    return SyncDeleteResponse(message=f"data for {user_id} deleted")


@router.post("/api/upload", response_model=UploadResponse)
def upload_file(payload: UploadRequest, uploads: UploadService = Depends(get_uploads)) -> UploadResponse:
    result = uploads.upload(payload.file, payload.filename, payload.userId)
    return UploadResponse(url=result["url"], publicId=result["publicId"])


@router.delete("/api/upload", response_model=SuccessResponse)
def delete_file(
    payload: Optional[UploadDeleteRequest] = None,
    uploads: UploadService = Depends(get_uploads),
) -> SuccessResponse:
    uploads.remove(payload.publicId if payload else None)
    return SuccessResponse()


class BodySizeLimitMiddleware:
    """
    Reject request bodies over ``max_body_bytes`` with 413.

    A declared ``Content-Length`` is checked up front. Bodies without one are
    read up to the limit and then replayed to the app, so a chunked upload
    never buffers more than the limit.
    """

    def __init__(self, app: ASGIApp, max_body_bytes: int) -> None:
        self.app = app
        self.max_body_bytes = max_body_bytes

    def _reject(self) -> JSONResponse:
        return build_error_response(
            status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            "PAYLOAD_TOO_LARGE",
            f"request body exceeds {self.max_body_bytes} bytes",
        )

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return
        length = Headers(scope=scope).get("content-length")
        if length and length.isdigit():
            if int(length) > self.max_body_bytes:
                await self._reject()(scope, receive, send)
                return
            await self.app(scope, receive, send)
            return

        chunks: list[bytes] = []
        received = 0
        more_body = True
        while more_body:
            message = await receive()
            if message["type"] != "http.request":
                # client went away before the body was complete
                return
            chunk = message.get("body", b"")
            received += len(chunk)
            if received > self.max_body_bytes:
                logger.warning("rejected %s %s: body over %d bytes", scope["method"], scope["path"], self.max_body_bytes)
                await self._reject()(scope, receive, send)
                return
            chunks.append(chunk)
            more_body = message.get("more_body", False)

        body = b"".join(chunks)
        replayed = False

        async def replay() -> Message:
            nonlocal replayed
            if not replayed:
                replayed = True
                return {"type": "http.request", "body": body, "more_body": False}
            return await receive()

        await self.app(scope, replay, send)


def create_app(
    persistence: Optional[Persistence] = None,
    media: Optional[MediaStorage] = None,
    app_settings: Settings = settings,
) -> FastAPI:
    configure_logging(app_settings.log_level)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        store = app.state.persistence
        logger.info("storage backend: %s, media backend: %s", store.backend_name, app.state.uploads.storage.backend_name)
        try:
            store.check_connection()
        except StorageError as exc:
            logger.critical("cannot connect to storage: %s", exc.message)
            raise SystemExit(1) from exc
        yield

    app = FastAPI(
        title="Casa DW API",
        version="0.1.0",
        description="Expenses, income, fleet, notes and full-state sync for the Casa DW tracker.",
        lifespan=lifespan,
    )
    app.state.settings = app_settings
    app.state.persistence = persistence or get_persistence(app_settings)
    app.state.uploads = UploadService(
        media or get_media_storage(app_settings),
        root_folder=app_settings.upload_root_folder,
        fallback_namespace=app_settings.upload_fallback_namespace,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(app_settings.cors_origins),
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(BodySizeLimitMiddleware, max_body_bytes=app_settings.max_body_bytes)

    @app.exception_handler(ApiError)
    async def api_error_handler(request: Request, exc: ApiError) -> JSONResponse:
        details = [ApiErrorDetail(**detail) for detail in exc.details]
        return build_error_response(exc.status_code, exc.code, exc.message, details)

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        details: list[ApiErrorDetail] = []
        for err in exc.errors():
            loc = ".".join(str(item) for item in err.get("loc", []) if item != "body")
            details.append(ApiErrorDetail(field=loc or "body", message=err.get("msg", "validation error")))
        return build_error_response(status.HTTP_400_BAD_REQUEST, "VALIDATION_ERROR", "Invalid request payload", details)

    app.include_router(router)
    return app


app = create_app()


def run() -> None:
    uvicorn.run("casadw.main:app", host=settings.host, port=settings.port, log_level=settings.log_level.lower())
