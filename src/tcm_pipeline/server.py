from __future__ import annotations

import os
import time
from contextlib import asynccontextmanager

import httpx
import structlog

from .config import PipelineConfig
from .contracts import CompletionRequest, GenerationOptions, Message
from .endpoints import (
    ANALYZE_AUDIO,
    ANALYZE_IMAGE,
    CHAT,
    CONSULT,
    REPORT_CHAT,
    SUMMARIZE_INQUIRY,
    EndpointSpec,
    image_prompt_role,
)
from .errors import ConfigurationError, InvalidRequestError, PipelineError, user_facing_error
from .gemini_session import CompletionInvoker, GeminiSession
from .http_security import install_middlewares
from .logging import configure_logging
from .metrics import maybe_start_metrics, server_errors_total, server_request_latency_seconds, server_requests_total
from .patient_context import (
    basic_info_context,
    build_consult_input,
    build_inquiry_summary_input,
    build_report_context,
)
from .pipeline import CompletionPipeline, Invoker
from .prompts import assemble_prompt, build_system_prompt, resolve_template, user_instruction
from .schemas import (
    AnalyzeAudioRequest,
    AnalyzeImageRequest,
    ChatRequest,
    ConsultRequest,
    ReportChatRequest,
    SummarizeInquiryRequest,
    make_error_response,
    parse_media,
    to_messages,
)
from .settings_store import AdminSettingsStore, resolve_api_key, store_from_config
from .streaming import TEXT_STREAM_MEDIA_TYPE, deadline_stream, encode_text_stream
from .tiering import tier_for_doctor_level

log = structlog.get_logger()

MODEL_HEADER = "X-Model-Used"
STREAM_TOTAL_TIMEOUT_SECONDS = 300.0


def _build_request(
    endpoint: EndpointSpec,
    *,
    system_prompt: str,
    messages: tuple[Message, ...],
    candidates: tuple[str, ...],
) -> CompletionRequest:
    return CompletionRequest(
        system_prompt=system_prompt,
        messages=messages,
        candidate_models=candidates,
        output_mode=endpoint.output_mode,
        generation=GenerationOptions(temperature=endpoint.temperature),
    )


def create_app(
    cfg: PipelineConfig | None = None,
    *,
    invoker: Invoker | None = None,
    settings_store: AdminSettingsStore | None = None,
):
    try:
        from fastapi import FastAPI
        from fastapi.exceptions import RequestValidationError
        from fastapi.responses import JSONResponse, StreamingResponse
    except ImportError as e:  # pragma: no cover
        raise RuntimeError('Install the "server" extra: pip install -e ".[server]"') from e

    cfg = cfg or PipelineConfig()
    configure_logging(level=cfg.log_level, fmt=cfg.log_format, secrets=cfg.log_secrets())
    store = settings_store if settings_store is not None else store_from_config(cfg)
    retry = cfg.retry_policy()
    http_client: httpx.AsyncClient | None = None

    def _pipeline() -> CompletionPipeline:
        if invoker is not None:
            return CompletionPipeline(invoker, retry=retry)
        api_key = resolve_api_key(cfg, store)
        if not api_key:
            raise ConfigurationError("No Gemini API key configured.")
        session = GeminiSession(api_key, client=http_client, base_url=cfg.gemini_api_base)
        return CompletionPipeline(CompletionInvoker(session), retry=retry)

    def _request_id(request) -> str | None:
        return getattr(getattr(request, "state", None), "request_id", None)

    def _observe(path: str, status_code: int, started_at: float) -> None:
        server_requests_total.labels(path=path, status=str(status_code)).inc()
        server_request_latency_seconds.labels(path=path).observe(max(0.0, time.monotonic() - started_at))

    def _error(request, status_code: int, *, message: str, type_: str, code: str | None = None) -> JSONResponse:
        server_errors_total.labels(type=type_).inc()
        return JSONResponse(
            status_code=status_code,
            content=make_error_response(
                message=message, type=type_, code=code, request_id=_request_id(request)
            ).model_dump(),
        )

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        nonlocal http_client
        maybe_start_metrics(enable=cfg.enable_metrics, bind=cfg.metrics_bind, port=cfg.metrics_port)
        http_client = httpx.AsyncClient(timeout=180)
        try:
            yield
        finally:
            await http_client.aclose()
            http_client = None

    app = FastAPI(
        title="tcm-completion-pipeline",
        version="0.1.0",
        lifespan=lifespan,
        docs_url="/docs" if cfg.enable_api_docs else None,
        redoc_url="/redoc" if cfg.enable_api_docs else None,
        openapi_url="/openapi.json" if cfg.enable_api_docs else None,
    )
    install_middlewares(app, cfg=cfg)

    @app.exception_handler(RequestValidationError)
    async def _validation_error_handler(request, exc: RequestValidationError):
        fields = sorted({".".join(str(p) for p in err.get("loc", ())[1:]) for err in exc.errors()})
        return _error(
            request,
            400,
            message=f"Malformed request body ({', '.join(f for f in fields if f) or 'body'}).",
            type_="invalid_request_error",
        )

    @app.exception_handler(InvalidRequestError)
    async def _invalid_request_handler(request, exc: InvalidRequestError):
        return _error(request, 400, message=str(exc), type_="invalid_request_error")

    @app.exception_handler(ConfigurationError)
    async def _config_error_handler(request, exc: ConfigurationError):
        log.error("service_not_configured", error=str(exc))
        message, code = user_facing_error(exc)
        return _error(request, 503, message=message, type_="configuration_error", code=code)

    @app.exception_handler(PipelineError)
    async def _pipeline_error_handler(request, exc: PipelineError):
        log.error("pipeline_error", error_type=type(exc).__name__, error=str(exc))
        message, code = user_facing_error(exc)
        return _error(request, 500, message=message, type_="api_error", code=code)

    @app.exception_handler(Exception)
    async def _unexpected_error_handler(request, exc: Exception):
        log.exception("unexpected_error", error_type=type(exc).__name__)
        return _error(request, 500, message="An error occurred. Please try again.", type_="api_error")

    async def _run_json(path: str, started_at: float, endpoint: EndpointSpec, request: CompletionRequest):
        outcome = await _pipeline().run(request, endpoint)
        _observe(path, 200, started_at)
        return JSONResponse(content=outcome.payload, headers={MODEL_HEADER: outcome.model_id or "none"})

    async def _run_stream(path: str, started_at: float, endpoint: EndpointSpec, request: CompletionRequest):
        outcome = await _pipeline().stream(request, endpoint)
        chunks = deadline_stream(
            outcome.chunks,
            idle_timeout=endpoint.timeout_seconds,
            total_timeout=STREAM_TOTAL_TIMEOUT_SECONDS,
        )
        _observe(path, 200, started_at)
        return StreamingResponse(
            encode_text_stream(chunks),
            media_type=TEXT_STREAM_MEDIA_TYPE,
            headers={MODEL_HEADER: outcome.model_id or "none"},
        )

    def _check_message_count(count: int) -> None:
        if count > cfg.max_messages:
            raise InvalidRequestError("Too many messages.")

    @app.get("/healthz")
    async def healthz() -> dict[str, str]:
        return {"status": "ok"}

    @app.post("/api/chat")
    async def chat(req: ChatRequest):
        started_at = time.monotonic()
        _check_message_count(len(req.messages))
        system_prompt = build_system_prompt(
            CHAT.prompt_role,
            context=basic_info_context(req.basic_info),
            language=req.language,
            source=store,
        )
        request = _build_request(
            CHAT,
            system_prompt=system_prompt,
            messages=to_messages(req.messages),
            candidates=CHAT.candidates(tier=tier_for_doctor_level(req.doctor_level)),
        )
        return await _run_stream("/api/chat", started_at, CHAT, request)

    @app.post("/api/analyze-image")
    async def analyze_image(req: AnalyzeImageRequest):
        started_at = time.monotonic()
        if not req.image:
            raise InvalidRequestError("No image was provided. Please take a photo.")
        role = image_prompt_role(req.type)
        endpoint = ANALYZE_IMAGE.with_min_confidence(cfg.min_confidence)
        text = user_instruction(role, main_complaint=req.main_complaint, symptoms=req.symptoms)
        request = _build_request(
            endpoint,
            system_prompt=build_system_prompt(role, language=req.language, source=store),
            messages=(Message(role="user", content=text, attachments=(parse_media(req.image, "image/jpeg"),)),),
            candidates=endpoint.candidates(),
        )
        return await _run_json("/api/analyze-image", started_at, endpoint, request)

    @app.post("/api/analyze-audio")
    async def analyze_audio(req: AnalyzeAudioRequest):
        started_at = time.monotonic()
        if not req.audio:
            raise InvalidRequestError("No audio was provided. Please record your voice.")
        role = ANALYZE_AUDIO.prompt_role
        request = _build_request(
            ANALYZE_AUDIO,
            system_prompt=build_system_prompt(role, language=req.language, source=store),
            messages=(
                Message(role="user", content=user_instruction(role), attachments=(parse_media(req.audio, "audio/webm"),)),
            ),
            candidates=ANALYZE_AUDIO.candidates(),
        )
        return await _run_json("/api/analyze-audio", started_at, ANALYZE_AUDIO, request)

    @app.post("/api/summarize-inquiry")
    async def summarize_inquiry(req: SummarizeInquiryRequest):
        started_at = time.monotonic()
        if not req.chat_history:
            raise InvalidRequestError("No chat history provided.")
        _check_message_count(len(req.chat_history))
        user_text = build_inquiry_summary_input(
            chat_history=[m.model_dump() for m in req.chat_history],
            basic_info=req.basic_info,
            report_files=req.report_files,
            medicine_files=req.medicine_files,
        )
        request = _build_request(
            SUMMARIZE_INQUIRY,
            system_prompt=build_system_prompt(
                SUMMARIZE_INQUIRY.prompt_role,
                context=basic_info_context(req.basic_info),
                language=req.language,
                source=store,
            ),
            messages=(Message(role="user", content=user_text),),
            candidates=SUMMARIZE_INQUIRY.candidates(
                requested_model=req.model, tier=tier_for_doctor_level(req.doctor_level)
            ),
        )
        return await _run_json("/api/summarize-inquiry", started_at, SUMMARIZE_INQUIRY, request)

    @app.post("/api/consult")
    async def consult(req: ConsultRequest):
        started_at = time.monotonic()
        data = req.data.to_context()
        template = req.prompt if req.prompt and req.prompt.strip() else resolve_template(CONSULT.prompt_role, store)
        context = basic_info_context(req.data.basic_info)
        request = _build_request(
            CONSULT,
            system_prompt=assemble_prompt(template, context, req.language),
            messages=(Message(role="user", content=build_consult_input(data, language=req.language)),),
            candidates=CONSULT.candidates(requested_model=req.model),
        )
        return await _run_stream("/api/consult", started_at, CONSULT, request)

    @app.post("/api/report-chat")
    async def report_chat(req: ReportChatRequest):
        started_at = time.monotonic()
        _check_message_count(len(req.messages))
        system_prompt = build_system_prompt(
            REPORT_CHAT.prompt_role,
            context={"report_context": build_report_context(req.report_data, req.patient_info)},
            language=req.language,
            source=store,
        )
        request = _build_request(
            REPORT_CHAT,
            system_prompt=system_prompt,
            messages=to_messages(req.messages),
            candidates=REPORT_CHAT.candidates(requested_model=req.model),
        )
        return await _run_stream("/api/report-chat", started_at, REPORT_CHAT, request)

    return app


def main() -> None:  # pragma: no cover
    try:
        import uvicorn
    except ImportError as e:
        raise RuntimeError('Install the "server" extra: pip install -e ".[server]"') from e

    host = os.getenv("HOST", "0.0.0.0")
    port = int(os.getenv("PORT", "8000"))
    uvicorn.run("tcm_pipeline.server:create_app", host=host, port=port, factory=True)


if __name__ == "__main__":  # pragma: no cover
    main()
