"""Request and response models for the cowriter endpoints.

Request models are built from untrusted HTTP bodies by total factories: any
input, including malformed JSON or binary garbage, yields a well-typed model
with empty/default fields, and ``is_valid()`` decides rejection. Response
models HTML-escape every string that comes from the LLM before it is stored,
so nothing unescaped can reach serialization.
"""

import json
import math
import re
from collections.abc import Mapping
from typing import Any, Dict, List, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from cowriter.provider import CompletionResponse, UsageStatistics

MAX_PROMPT_LENGTH = 32768
MAX_CONTEXT_LENGTH = 32768
MAX_RULES_LENGTH = 4096
MAX_CAPABILITIES_LENGTH = 2048
MAX_MESSAGES = 50
MAX_MESSAGE_CONTENT_LENGTH = 32768

ALLOWED_CONTEXT_TYPES = ("selection", "content_element")

# The "system" role is set server-side only.
ALLOWED_ROLES = ("user", "assistant")

# "#cw:<token>" followed by whitespace, at the very start of the prompt.
MODEL_OVERRIDE_PATTERN = re.compile(r"^#cw:(\S+)\s+")

# e.g. gpt-4o, claude-3-opus-20240229, mistral/mixtral-8x7b, openai:gpt-4
MODEL_NAME_PATTERN = re.compile(r"[a-zA-Z0-9][-a-zA-Z0-9_.:/]*")

_NUMERIC_STRING = re.compile(r"\s*[+-]?(\d+(\.\d*)?|\.\d+)([eE][+-]?\d+)?\s*")

# Leading/trailing whitespace and NUL bytes.
_EDGE_BLANKS = re.compile(r"^[\s\x00]+|[\s\x00]+$")

_HTML_ESCAPES = str.maketrans(
    {
        "&": "&amp;",
        "<": "&lt;",
        ">": "&gt;",
        '"': "&quot;",
        "'": "&apos;",
    }
)

RawBody = Union[bytes, str, None]


def escape_html(value: str) -> str:
    """Replace &, <, >, " and ' with their named HTML entities."""
    return value.translate(_HTML_ESCAPES)


def parse_body(raw_body: RawBody, parsed_body: Any = None) -> Dict[str, Any]:
    """Return the request payload as a dict, never raising.

    A pre-parsed body (form data) wins; otherwise the raw body is decoded as
    JSON. Anything that is not an object becomes an empty dict.
    """
    body = parsed_body
    if body is None and raw_body:
        try:
            body = json.loads(raw_body)
        except (ValueError, TypeError, RecursionError):
            body = None
    if isinstance(body, Mapping):
        return dict(body)
    return {}


def _scalar_to_string(value: Any) -> Optional[str]:
    """Stringify a JSON scalar; None for anything else."""
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "1" if value else ""
    if isinstance(value, int):
        try:
            return str(value)
        except ValueError:
            # beyond the interpreter's int-to-str digit limit
            return None
    if isinstance(value, float):
        if value.is_integer() and abs(value) < 1e15:
            return str(int(value))
        return repr(value)
    return None


def extract_string(data: Dict[str, Any], key: str) -> str:
    return _scalar_to_string(data.get(key)) or ""


def extract_nullable_string(data: Dict[str, Any], key: str) -> Optional[str]:
    return _scalar_to_string(data.get(key)) or None


def extract_int(data: Dict[str, Any], key: str) -> int:
    """Coerce numeric scalars and numeric strings to int; 0 otherwise."""
    value = data.get(key)
    if isinstance(value, bool):
        return 0
    if isinstance(value, int):
        return value
    if isinstance(value, str) and _NUMERIC_STRING.fullmatch(value):
        try:
            value = float(value)
        except ValueError:
            return 0
    if isinstance(value, float) and math.isfinite(value):
        return int(value)
    return 0


def trim(value: str) -> str:
    """Strip surrounding whitespace and NUL bytes."""
    return _EDGE_BLANKS.sub("", value)


def _codepoints_within(value: str, limit: int) -> bool:
    return len(value) <= limit


def split_model_override(prompt: str) -> Tuple[Optional[str], str]:
    """Split a leading ``#cw:<model>`` directive off the prompt.

    Returns (model, remaining prompt). When the directive is missing or the
    model name is not allowed, the prompt comes back unchanged.
    """
    match = MODEL_OVERRIDE_PATTERN.match(prompt)
    if match is None:
        return None, prompt

    candidate = match.group(1)
    if MODEL_NAME_PATTERN.fullmatch(candidate) is None:
        return None, prompt

    return candidate, trim(prompt[match.end():])


class CompleteRequest(BaseModel):
    """Parsed body of a completion request."""

    model_config = ConfigDict(frozen=True, protected_namespaces=())

    prompt: str = ""
    configuration: Optional[str] = None
    model_override: Optional[str] = None

    @classmethod
    def from_request(
        cls, raw_body: RawBody = None, parsed_body: Any = None
    ) -> "CompleteRequest":
        """Build a request from a JSON or form-encoded body. Never raises."""
        data = parse_body(raw_body, parsed_body)
        model_override, prompt = split_model_override(extract_string(data, "prompt"))

        # Fields are already coerced; skip re-validation so odd input
        # (e.g. lone surrogates from JSON escapes) cannot raise.
        return cls.model_construct(
            prompt=prompt,
            configuration=extract_nullable_string(data, "configuration"),
            model_override=model_override,
        )

    def is_valid(self) -> bool:
        trimmed = trim(self.prompt)
        return trimmed != "" and _codepoints_within(trimmed, MAX_PROMPT_LENGTH)

    def validation_error(self) -> Optional[str]:
        """User-facing reason the request is invalid, or None."""
        if trim(self.prompt) == "":
            return "No prompt provided"
        if not self.is_valid():
            return "Prompt exceeds maximum allowed length"
        return None


class ExecuteTaskRequest(BaseModel):
    """Parsed body of a task execution request."""

    model_config = ConfigDict(frozen=True)

    task_uid: int = 0
    context: str = ""
    context_type: str = ""
    ad_hoc_rules: str = ""
    configuration: Optional[str] = None
    editor_capabilities: str = ""

    @classmethod
    def from_request(
        cls, raw_body: RawBody = None, parsed_body: Any = None
    ) -> "ExecuteTaskRequest":
        """Build a request from a JSON or form-encoded body. Never raises."""
        data = parse_body(raw_body, parsed_body)
        return cls.model_construct(
            task_uid=extract_int(data, "taskUid"),
            context=extract_string(data, "context"),
            context_type=extract_string(data, "contextType"),
            ad_hoc_rules=extract_string(data, "adHocRules"),
            configuration=extract_nullable_string(data, "configuration"),
            editor_capabilities=extract_string(data, "editorCapabilities"),
        )

    def is_valid(self) -> bool:
        if self.task_uid <= 0:
            return False
        if trim(self.context) == "":
            return False
        if not _codepoints_within(self.context, MAX_CONTEXT_LENGTH):
            return False
        if self.context_type not in ALLOWED_CONTEXT_TYPES:
            return False
        if not _codepoints_within(self.ad_hoc_rules, MAX_RULES_LENGTH):
            return False
        return _codepoints_within(self.editor_capabilities, MAX_CAPABILITIES_LENGTH)


def validate_messages(raw_messages: List[Any]) -> Optional[List[Dict[str, str]]]:
    """Validate chat history from the client.

    Returns the normalized messages, or None if any message has the wrong
    shape, a disallowed role, non-string or oversized content, or if there
    are too many messages.
    """
    if len(raw_messages) > MAX_MESSAGES:
        return None

    validated: List[Dict[str, str]] = []
    for message in raw_messages:
        if not isinstance(message, dict):
            return None

        role = message.get("role")
        content = message.get("content")

        if not isinstance(role, str) or role not in ALLOWED_ROLES:
            return None
        if not isinstance(content, str):
            return None
        if not _codepoints_within(content, MAX_MESSAGE_CONTENT_LENGTH):
            return None

        validated.append({"role": role, "content": content})

    return validated


class UsageData(BaseModel):
    """Token usage returned to the editor."""

    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)

    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    estimated_cost: Optional[float] = None

    @classmethod
    def from_usage_statistics(cls, usage: UsageStatistics) -> "UsageData":
        return cls(
            prompt_tokens=usage.prompt_tokens,
            completion_tokens=usage.completion_tokens,
            total_tokens=usage.total_tokens,
            estimated_cost=usage.estimated_cost,
        )

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)


class CompleteResponse(BaseModel):
    """Outward-facing completion result.

    Use the named factories; they guarantee LLM-derived strings are escaped.
    """

    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)

    success: bool
    content: Optional[str] = None
    model: Optional[str] = None
    finish_reason: Optional[str] = None
    usage: Optional[UsageData] = None
    error: Optional[str] = None
    retry_after: Optional[int] = Field(default=None, ge=0)

    @classmethod
    def from_completion(cls, response: CompletionResponse) -> "CompleteResponse":
        """Wrap a raw completion, escaping content, model and finish reason."""
        return cls(
            success=True,
            content=escape_html(response.content),
            model=escape_html(response.model or ""),
            finish_reason=escape_html(response.finish_reason or ""),
            usage=UsageData.from_usage_statistics(response.usage),
        )

    @classmethod
    def from_error(cls, message: str) -> "CompleteResponse":
        """Error response; message must be a fixed, user-safe string."""
        return cls(success=False, error=message)

    @classmethod
    def rate_limited(cls, retry_after: int) -> "CompleteResponse":
        return cls(
            success=False,
            error="Rate limit exceeded. Please try again later.",
            retry_after=retry_after,
        )

    def to_dict(self) -> Dict[str, Any]:
        """JSON body; fields of the other branch are omitted, not nulled."""
        if self.success:
            include = {"success", "content", "model", "finish_reason", "usage"}
        else:
            include = {"success", "error"}
            if self.retry_after is not None:
                include.add("retry_after")
        return self.model_dump(by_alias=True, include=include)
