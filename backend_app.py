# backend/app.py

from functools import lru_cache
from typing import List, Optional

from fastapi import BackgroundTasks, Depends, FastAPI, File, Form, HTTPException, Request, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from openai import OpenAI
from pydantic import AliasChoices, BaseModel, Field
from starlette.background import BackgroundTask
from starlette.exceptions import HTTPException as StarletteHTTPException

from backend_brain import Diagnosis, FixLensBrain, ProviderError
from backend_logging import RequestLoggingMiddleware, configure_logging, get_logger
from backend_logs import log_error, log_interaction
from backend_matcher import knowledge_stats
from backend_settings import Settings, get_settings


logger = get_logger("api")

EMPTY_TRANSCRIPT_REPLY = (
    "I couldn't understand the audio clearly. Please try again or describe the sound in text."
)


class DiagnoseRequest(BaseModel):
    message: str = Field(default="", validation_alias=AliasChoices("message", "userMessage", "text"))
    language: Optional[str] = Field(default=None, validation_alias=AliasChoices("language", "uiLanguage"))
    systems: Optional[List[str]] = None


class MatchOut(BaseModel):
    id: str
    title: str
    system: str
    score: int


class DiagnoseResponse(BaseModel):
    reply: str
    mode: str
    language: Optional[str] = None
    model: str
    matches: List[MatchOut] = []
    transcript: Optional[str] = None


@lru_cache
def _openai_client(api_key: str) -> OpenAI:
    return OpenAI(api_key=api_key)


def get_brain(settings: Settings = Depends(get_settings)) -> FixLensBrain:
    client = _openai_client(settings.openai_api_key) if settings.openai_api_key else None
    return FixLensBrain(client, settings)


def _error_payload(code: int, message: str) -> dict:
    return {"error": {"code": code, "message": message}}


def _read_upload(upload: UploadFile, max_bytes: int) -> bytes:
    data = upload.file.read(max_bytes + 1)
    if len(data) > max_bytes:
        raise HTTPException(status_code=413, detail=f"Upload exceeds {max_bytes} bytes.")
    if not data:
        raise HTTPException(status_code=400, detail="Uploaded file is empty.")
    return data


def _to_response(diagnosis: Diagnosis, transcript: Optional[str] = None) -> DiagnoseResponse:
    return DiagnoseResponse(
        reply=diagnosis.reply,
        mode=diagnosis.mode,
        language=diagnosis.language,
        model=diagnosis.model,
        matches=[
            MatchOut(id=m.record.id, title=m.title, system=m.record.system, score=m.score)
            for m in diagnosis.matches
        ],
        transcript=transcript,
    )


def _schedule_log(
    background_tasks: BackgroundTasks,
    endpoint: str,
    text: Optional[str],
    diagnosis: Diagnosis,
) -> None:
    background_tasks.add_task(
        log_interaction,
        endpoint=endpoint,
        mode=diagnosis.mode,
        user_text=text,
        reply=diagnosis.reply,
        model=diagnosis.model,
        user_lang=diagnosis.language,
        matched_titles=[m.title for m in diagnosis.matches],
        latency_ms=diagnosis.latency_ms,
    )


def _validation_message(exc: RequestValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()) if p != "body")
        parts.append(f"{loc}: {err.get('msg', 'invalid')}" if loc else err.get("msg", "invalid"))
    return "; ".join(parts) or "Invalid request."


def register_exception_handlers(app: FastAPI) -> None:
    # starlette's HTTPException also covers routing errors (404, 405)
    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        logger.warning("http_exception", path=request.url.path, status_code=exc.status_code, detail=exc.detail)
        return JSONResponse(
            status_code=exc.status_code,
            content=_error_payload(exc.status_code, str(exc.detail)),
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        message = _validation_message(exc)
        logger.warning("validation_error", path=request.url.path, error=message)
        return JSONResponse(status_code=422, content=_error_payload(422, message))

    @app.exception_handler(ProviderError)
    async def provider_exception_handler(request: Request, exc: ProviderError):
        logger.error("provider_error", path=request.url.path, error=str(exc))
        return JSONResponse(
            status_code=502,
            content=_error_payload(502, str(exc)),
            background=BackgroundTask(log_error, request.url.path, exc),
        )

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception):
        logger.exception("unhandled_exception", path=request.url.path, error_type=type(exc).__name__)
        return JSONResponse(
            status_code=500,
            content=_error_payload(500, "A server error has occurred."),
            background=BackgroundTask(log_error, request.url.path, exc),
        )


def create_app() -> FastAPI:
    settings = get_settings()
    configure_logging(settings.log_level)

    app = FastAPI(
        title=settings.app_name,
        description="FixLens diagnosis API: text, image and audio descriptions of vehicle problems.",
        version="1.0.0",
    )

    # The mobile app and web previews call from anywhere
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization"],
    )
    app.add_middleware(RequestLoggingMiddleware)
    register_exception_handlers(app)

    @app.get("/", response_class=PlainTextResponse)
    def root():
        return "FixLens Brain API is running"

    @app.get("/health")
    def health_check():
        return {"status": "ok"}

    @app.get("/api/knowledge/stats")
    def knowledge_stats_endpoint():
        return knowledge_stats()

    @app.post("/api/diagnose", response_model=DiagnoseResponse)
    def diagnose_endpoint(
        payload: DiagnoseRequest,
        background_tasks: BackgroundTasks,
        brain: FixLensBrain = Depends(get_brain),
    ):
        text = payload.message.strip()
        if not text:
            raise HTTPException(status_code=422, detail="Message must not be empty.")

        diagnosis = brain.diagnose("text", text, language=payload.language, systems=payload.systems)
        _schedule_log(background_tasks, "/api/diagnose", text, diagnosis)
        return _to_response(diagnosis)

    @app.post("/api/image-diagnose", response_model=DiagnoseResponse)
    def image_diagnose_endpoint(
        background_tasks: BackgroundTasks,
        image: Optional[UploadFile] = File(None),
        file: Optional[UploadFile] = File(None),
        description: Optional[str] = Form(None),
        message: Optional[str] = Form(None),
        language: Optional[str] = Form(None),
        brain: FixLensBrain = Depends(get_brain),
        settings: Settings = Depends(get_settings),
    ):
        upload = image or file
        if upload is None:
            raise HTTPException(status_code=400, detail="No image file uploaded.")
        data = _read_upload(upload, settings.max_upload_bytes)

        text = (description or message or "").strip()
        diagnosis = brain.diagnose(
            "image", text, image=data, image_content_type=upload.content_type, language=language
        )
        _schedule_log(background_tasks, "/api/image-diagnose", text, diagnosis)
        return _to_response(diagnosis)

    @app.post("/api/audio-diagnose", response_model=DiagnoseResponse)
    def audio_diagnose_endpoint(
        background_tasks: BackgroundTasks,
        audio: Optional[UploadFile] = File(None),
        file: Optional[UploadFile] = File(None),
        language: Optional[str] = Form(None),
        brain: FixLensBrain = Depends(get_brain),
        settings: Settings = Depends(get_settings),
    ):
        upload = audio or file
        if upload is None:
            raise HTTPException(status_code=400, detail="No audio file uploaded.")
        data = _read_upload(upload, settings.max_upload_bytes)

        transcript = brain.transcribe(data, upload.filename, upload.content_type)
        if not transcript:
            return DiagnoseResponse(
                reply=EMPTY_TRANSCRIPT_REPLY,
                mode="audio",
                language=language,
                model=settings.openai_model_transcribe,
                transcript="",
            )

        diagnosis = brain.diagnose("audio", transcript, language=language)
        _schedule_log(background_tasks, "/api/audio-diagnose", transcript, diagnosis)
        return _to_response(diagnosis, transcript=transcript)

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8080)
