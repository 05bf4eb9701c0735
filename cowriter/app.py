"""FastAPI application for the cowriter editor backend.

Endpoints used by the rich-text editor plugin to rewrite or generate content
through an LLM provider. Every LLM call goes through the same steps:

1. Resolve the caller and check the sliding-window rate limit
2. Parse and validate the body into a request model
3. Resolve the LLM configuration (requested or default)
4. Call the provider
5. Escape the result into a response model

All responses carry X-RateLimit-* headers once the limit was checked.
Provider and unexpected failures are logged server-side and answered with
generic messages.
"""

import json
import os
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response, StreamingResponse

from cowriter.auth import AuthenticationError, resolve_user
from cowriter.cache import CacheBackend, InMemoryCache
from cowriter.config import CowriterConfig, load_config
from cowriter.limiter import RateLimiter, RateLimitResult
from cowriter.models import (
    CompleteRequest,
    CompleteResponse,
    ExecuteTaskRequest,
    escape_html,
    parse_body,
    trim,
    validate_messages,
)
from cowriter.provider import ChatOptions, LlmService, ProviderError
from cowriter.repository import ConfigurationRepository, LlmConfiguration
from cowriter.tasks import TaskConfig, TaskRepository, load_tasks
from cowriter.telemetry import log_request, logger, setup_logging

CONFIG_PATH = os.getenv("COWRITER_CONFIG", "config/example.config.json")

SYSTEM_PROMPT = (
    "You are a professional writing assistant integrated into a CMS editor.\n"
    "Your task is to improve, enhance, or generate text based on the user's request.\n"
    "Respond ONLY with the improved/generated text, without any explanations,\n"
    "markdown formatting, or additional commentary."
)

NO_CONFIGURATION = "No LLM configuration available. Please configure an LLM configuration."
PROVIDER_FAILURE = "LLM provider error occurred. Please try again later."
UNEXPECTED_FAILURE = "An unexpected error occurred."

_FORM_CONTENT_TYPES = ("application/x-www-form-urlencoded", "multipart/form-data")

_config: Optional[CowriterConfig] = None
_cache: Optional[CacheBackend] = None
_limiter: Optional[RateLimiter] = None
_llm_service: Optional[LlmService] = None
_configuration_repository: Optional[ConfigurationRepository] = None
_task_repository: Optional[TaskRepository] = None


def get_config() -> CowriterConfig:
    """Return the loaded service configuration (lazy-init)."""
    global _config
    if _config is None:
        _config = load_config(CONFIG_PATH)
    return _config


def get_cache() -> CacheBackend:
    """Return the shared cache holding rate-limit windows (lazy-init)."""
    global _cache
    if _cache is None:
        _cache = InMemoryCache()
    return _cache


def get_limiter() -> RateLimiter:
    """Return the rate limiter (lazy-init from config)."""
    global _limiter
    if _limiter is None:
        cfg = get_config()
        _limiter = RateLimiter(
            get_cache(),
            requests_per_minute=cfg.rate_limit.requests_per_minute,
            window_seconds=cfg.rate_limit.window_seconds,
        )
    return _limiter


def get_llm_service() -> LlmService:
    """Return the provider client (lazy-init from config)."""
    global _llm_service
    if _llm_service is None:
        _llm_service = LlmService(get_config().providers)
    return _llm_service


def get_configuration_repository() -> ConfigurationRepository:
    """Return the LLM configuration repository (lazy-init from config)."""
    global _configuration_repository
    if _configuration_repository is None:
        _configuration_repository = ConfigurationRepository.from_config(get_config())
    return _configuration_repository


def get_task_repository() -> TaskRepository:
    """Return the task repository (lazy-init from the task file)."""
    global _task_repository
    if _task_repository is None:
        cfg = get_config()
        task_config = TaskConfig()
        if cfg.tasks_file:
            try:
                task_config = load_tasks(cfg.tasks_file)
            except (FileNotFoundError, ValueError) as exc:
                logger.warning("Task file not loaded: %s", exc)
        _task_repository = TaskRepository(task_config)
    return _task_repository


@asynccontextmanager
async def lifespan(application: FastAPI) -> AsyncIterator[None]:
    """Initialize config, logging and repositories on startup."""
    cfg = get_config()
    setup_logging(cfg.log_file)
    get_limiter()
    get_llm_service()
    get_configuration_repository()
    get_task_repository()
    yield


app = FastAPI(title="Cowriter", version="1.0.0", lifespan=lifespan)


def _new_request_id() -> str:
    return "cw-{}".format(uuid.uuid4().hex[:12])


def _json_response(
    body: Dict[str, Any],
    rate_limit: Optional[RateLimitResult] = None,
    status: int = 200,
) -> JSONResponse:
    """Build a JSON response carrying the rate-limit headers."""
    headers = rate_limit.get_headers() if rate_limit is not None else None
    return JSONResponse(status_code=status, content=body, headers=headers)


def _error_response(
    message: str,
    status: int,
    rate_limit: Optional[RateLimitResult] = None,
) -> JSONResponse:
    return _json_response(
        CompleteResponse.from_error(message).to_dict(), rate_limit, status
    )


def _rate_limited_response(rate_limit: RateLimitResult) -> JSONResponse:
    retry_after = rate_limit.get_retry_after()
    response = _json_response(
        CompleteResponse.rate_limited(retry_after).to_dict(), rate_limit, 429
    )
    response.headers["Retry-After"] = str(retry_after)
    return response


def _sse_event(payload: Dict[str, Any]) -> str:
    return "data: {}\n\n".format(json.dumps(payload))


def _sse_error_response(
    message: str, status: int, rate_limit: RateLimitResult
) -> Response:
    headers = {"Cache-Control": "no-cache"}
    headers.update(rate_limit.get_headers())
    return Response(
        content=_sse_event({"error": message}),
        status_code=status,
        media_type="text/event-stream",
        headers=headers,
    )


def _current_user(request: Request) -> str:
    """Resolve the caller identity. Raises AuthenticationError."""
    return resolve_user(
        request.headers.get("X-API-Key"),
        request.headers.get("X-Backend-User"),
        get_config().auth,
    )


async def _read_body(request: Request) -> Dict[str, Any]:
    """Read a JSON or form-encoded body as a dict. Never raises."""
    content_type = request.headers.get("content-type", "").split(";")[0].strip()
    if content_type in _FORM_CONTENT_TYPES:
        try:
            form = await request.form()
        except Exception as exc:
            # malformed form bodies degrade to an empty payload
            logger.info("Unparseable form body: %s", exc)
            return {}
        return parse_body(None, form)
    return parse_body(await request.body())


def _admit(
    request: Request, action: str, request_id: str
) -> Tuple[Optional[str], Optional[RateLimitResult], Optional[Response]]:
    """Authenticate and rate-limit; returns (user, limit, early response)."""
    try:
        user_id = _current_user(request)
    except AuthenticationError as exc:
        log_request(
            user_id="",
            action=action,
            outcome="auth_error",
            error=exc.detail,
            request_id=request_id,
        )
        return None, None, _error_response(exc.detail, 401)

    rate_limit = get_limiter().check_limit(user_id)
    if not rate_limit.allowed:
        log_request(
            user_id=user_id,
            action=action,
            outcome="rate_limited",
            request_id=request_id,
        )
        return user_id, rate_limit, _rate_limited_response(rate_limit)

    return user_id, rate_limit, None


async def _run_completion(
    *,
    action: str,
    user_id: str,
    request_id: str,
    messages: List[Dict[str, str]],
    configuration: LlmConfiguration,
    options: ChatOptions,
    rate_limit: RateLimitResult,
) -> JSONResponse:
    """Call the provider and wrap the result in an escaped response."""
    try:
        result = await get_llm_service().chat(messages, options)
    except ProviderError as exc:
        logger.error("Cowriter provider error: %s", exc.detail)
        log_request(
            user_id=user_id,
            action=action,
            outcome="provider_error",
            configuration=configuration.identifier,
            model=options.model,
            error=exc.detail,
            request_id=request_id,
        )
        return _error_response(PROVIDER_FAILURE, 500, rate_limit)
    except Exception:
        logger.exception("Cowriter unexpected error")
        log_request(
            user_id=user_id,
            action=action,
            outcome="unexpected_error",
            configuration=configuration.identifier,
            model=options.model,
            request_id=request_id,
        )
        return _error_response(UNEXPECTED_FAILURE, 500, rate_limit)

    response = CompleteResponse.from_completion(result)
    log_request(
        user_id=user_id,
        action=action,
        outcome="success",
        configuration=configuration.identifier,
        model=options.model,
        usage=response.usage.to_dict() if response.usage else None,
        request_id=request_id,
    )
    return _json_response(response.to_dict(), rate_limit)


@app.post("/cowriter/complete", response_model=None)
async def complete(request: Request) -> Response:
    """Complete a single prompt.

    Body: ``{"prompt": str, "configuration"?: str}``. The prompt may start
    with ``#cw:<model> `` to run this request against another model.
    """
    request_id = _new_request_id()
    user_id, rate_limit, early = _admit(request, "complete", request_id)
    if early is not None:
        return early

    dto = CompleteRequest.from_request(parsed_body=await _read_body(request))
    error = dto.validation_error()
    if error is not None:
        log_request(
            user_id=user_id,
            action="complete",
            outcome="validation_error",
            error=error,
            request_id=request_id,
        )
        return _error_response(error, 400, rate_limit)

    configuration = get_configuration_repository().resolve(dto.configuration)
    if configuration is None:
        return _error_response(NO_CONFIGURATION, 404, rate_limit)

    options = configuration.to_chat_options()
    if dto.model_override is not None:
        options = options.with_model(dto.model_override)

    return await _run_completion(
        action="complete",
        user_id=user_id,
        request_id=request_id,
        messages=[
            {"role": "system", "content": SYSTEM_PROMPT},
            {"role": "user", "content": dto.prompt},
        ],
        configuration=configuration,
        options=options,
        rate_limit=rate_limit,
    )


@app.post("/cowriter/chat", response_model=None)
async def chat(request: Request) -> Response:
    """Continue a conversation.

    Body: ``{"messages": [{"role", "content"}], "configuration"?: str}``.
    """
    request_id = _new_request_id()
    user_id, rate_limit, early = _admit(request, "chat", request_id)
    if early is not None:
        return early

    try:
        body = json.loads(await request.body())
    except (ValueError, RecursionError):
        return _error_response("Invalid JSON in request body", 400, rate_limit)

    if not isinstance(body, dict):
        return _error_response("Invalid JSON structure", 400, rate_limit)

    raw_messages = body.get("messages")
    if not isinstance(raw_messages, list) or not raw_messages:
        return _error_response("Messages array is required", 400, rate_limit)

    messages = validate_messages(raw_messages)
    if messages is None:
        return _error_response(
            "Invalid messages: each message must have a valid role "
            "(user/assistant) and string content",
            400,
            rate_limit,
        )

    identifier = body.get("configuration")
    configuration = get_configuration_repository().resolve(
        identifier if isinstance(identifier, str) else None
    )
    if configuration is None:
        return _error_response(NO_CONFIGURATION, 404, rate_limit)

    return await _run_completion(
        action="chat",
        user_id=user_id,
        request_id=request_id,
        messages=[{"role": "system", "content": SYSTEM_PROMPT}] + messages,
        configuration=configuration,
        options=configuration.to_chat_options(),
        rate_limit=rate_limit,
    )


@app.post("/cowriter/stream", response_model=None)
async def stream(request: Request) -> Response:
    """Stream a completion as Server-Sent Events.

    Each chunk is sent as ``data: {"content": ...}``; the stream ends with
    ``data: {"done": true, "model": ...}``. Failures after the stream has
    started are reported as a final ``data: {"error": ...}`` event.
    """
    request_id = _new_request_id()
    user_id, rate_limit, early = _admit(request, "stream", request_id)
    if early is not None:
        return early

    dto = CompleteRequest.from_request(parsed_body=await _read_body(request))
    error = dto.validation_error()
    if error is not None:
        return _sse_error_response(error, 400, rate_limit)

    configuration = get_configuration_repository().resolve(dto.configuration)
    if configuration is None:
        return _sse_error_response(NO_CONFIGURATION, 404, rate_limit)

    options = configuration.to_chat_options()
    if dto.model_override is not None:
        options = options.with_model(dto.model_override)

    messages = [
        {"role": "system", "content": SYSTEM_PROMPT},
        {"role": "user", "content": dto.prompt},
    ]

    async def events() -> AsyncIterator[str]:
        try:
            async for chunk in get_llm_service().stream_chat(messages, options):
                yield _sse_event({"content": escape_html(chunk)})
        except ProviderError as exc:
            logger.error("Cowriter streaming provider error: %s", exc.detail)
            yield _sse_event({"error": PROVIDER_FAILURE})
            return
        except Exception:
            logger.exception("Cowriter streaming unexpected error")
            yield _sse_event({"error": UNEXPECTED_FAILURE})
            return

        yield _sse_event({"done": True, "model": escape_html(options.model)})
        log_request(
            user_id=user_id,
            action="stream",
            outcome="success",
            configuration=configuration.identifier,
            model=options.model,
            request_id=request_id,
        )

    headers = {"Cache-Control": "no-cache", "X-Accel-Buffering": "no"}
    headers.update(rate_limit.get_headers())
    return StreamingResponse(events(), media_type="text/event-stream", headers=headers)


@app.get("/cowriter/configurations", response_model=None)
async def get_configurations(request: Request) -> Response:
    """List active LLM configurations for the editor's selector."""
    try:
        _current_user(request)
    except AuthenticationError as exc:
        return _error_response(exc.detail, 401)

    configurations = []
    for configuration in get_configuration_repository().find_active():
        if not isinstance(configuration, LlmConfiguration):
            continue
        configurations.append(
            {
                "identifier": escape_html(configuration.identifier),
                "name": escape_html(configuration.name),
                "isDefault": configuration.is_default,
            }
        )

    return _json_response({"success": True, "configurations": configurations})


@app.get("/cowriter/tasks", response_model=None)
async def get_tasks(request: Request) -> Response:
    """List active content tasks for the cowriter dialog."""
    try:
        _current_user(request)
    except AuthenticationError as exc:
        return _error_response(exc.detail, 401)

    tasks = [
        {
            "uid": task.uid,
            "identifier": escape_html(task.identifier),
            "name": escape_html(task.name),
            "description": escape_html(task.description),
        }
        for task in get_task_repository().find_by_category("content")
        if task.active
    ]
    return _json_response({"success": True, "tasks": tasks})


@app.post("/cowriter/tasks/execute", response_model=None)
async def execute_task(request: Request) -> Response:
    """Run a task template against the editor selection or content element.

    Body: ``{"taskUid": int, "context": str, "contextType": "selection" |
    "content_element", "adHocRules"?: str, "editorCapabilities"?: str,
    "configuration"?: str}``.
    """
    request_id = _new_request_id()
    user_id, rate_limit, early = _admit(request, "execute_task", request_id)
    if early is not None:
        return early

    dto = ExecuteTaskRequest.from_request(parsed_body=await _read_body(request))
    if not dto.is_valid():
        return _error_response("Invalid task execution request.", 400, rate_limit)

    task = get_task_repository().find_by_uid(dto.task_uid)
    if task is None or not task.active:
        return _error_response("Task not found or inactive.", 404, rate_limit)

    messages = [{"role": "user", "content": task.build_prompt({"input": dto.context})}]
    if trim(dto.ad_hoc_rules):
        messages.append(
            {"role": "user", "content": "Additional instructions: " + dto.ad_hoc_rules}
        )
    if trim(dto.editor_capabilities):
        messages.append(
            {
                "role": "user",
                "content": "The editor supports only these formatting features: "
                + dto.editor_capabilities,
            }
        )

    repository = get_configuration_repository()
    configuration = None
    if task.configuration:
        configuration = repository.find_one_by_identifier(task.configuration)
    if configuration is None:
        configuration = repository.resolve(dto.configuration)
    if configuration is None:
        return _error_response(NO_CONFIGURATION, 404, rate_limit)

    return await _run_completion(
        action="execute_task",
        user_id=user_id,
        request_id=request_id,
        messages=messages,
        configuration=configuration,
        options=configuration.to_chat_options(),
        rate_limit=rate_limit,
    )
