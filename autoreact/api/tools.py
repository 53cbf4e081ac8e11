"""Backend tool registry and invoker.

Provides:
- ToolParam / ToolReturn / RestEndpoint / ToolDefinition: explicit tool metadata
- ToolRegistry: registration table, summaries and detail lookup
- ToolInvoker: executes a definition either as a local callable or as an
  HTTP call to a REST endpoint (httpx)

Registration is explicit: every parameter is declared, nothing is inferred
from function signatures.
"""

from __future__ import annotations

import dataclasses
import inspect
import json
import logging
import re
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import httpx

from autoreact.api.models import RequestContext

logger = logging.getLogger(__name__)

_PLACEHOLDER_RE = re.compile(r"\{([^}]+)\}")
_FORWARD_SKIP_HEADERS = frozenset(
    {"content-type", "accept", "content-length", "host", "cookie", "connection", "transfer-encoding"}
)

_CLIENT_ERROR_MESSAGES = {
    400: "Request parameter error",
    401: "Unauthorized, login or authentication required",
    403: "Insufficient permissions, no access to this resource",
    404: "Requested resource does not exist",
    405: "Unsupported request method",
    409: "Request conflict, resource may already exist or state does not allow this operation",
    429: "Too many requests, rate limited",
}


class ToolInvocationError(Exception):
    """Raised when a tool cannot be invoked or its handler fails."""


class ParamSource(Enum):
    REQUEST_BODY = "request_body"
    PATH_VARIABLE = "path_variable"
    REQUEST_PARAM = "request_param"
    OTHER = "other"


class ToolKind(Enum):
    METHOD = "method"
    REST = "rest"


@dataclass
class ToolParam:
    """One declared tool parameter.

    `type` is a JSON-schema type name. Object parameters may carry nested
    `properties` (JSON-schema property definitions) for introspection.
    """

    name: str
    type: str = "string"
    description: str | None = None
    required: bool = True
    example: Any = None
    source: ParamSource = ParamSource.OTHER
    properties: dict[str, Any] | None = None

    @property
    def is_complex(self) -> bool:
        return self.type == "object" and bool(self.properties)


@dataclass
class ToolReturn:
    type: str = "string"
    description: str | None = None


@dataclass
class RestEndpoint:
    method: str
    path: str  # absolute URL or path relative to the tool base URL
    consumes: str | None = None
    produces: str | None = None


@dataclass
class ToolDefinition:
    name: str
    description: str
    params: list[ToolParam] = field(default_factory=list)
    handler: Callable[..., Any] | None = None
    rest: RestEndpoint | None = None
    returns: ToolReturn | None = None
    request_example: str | None = None
    response_example: str | None = None

    def __post_init__(self) -> None:
        if (self.handler is None) == (self.rest is None):
            raise ValueError(f"Tool {self.name!r} needs exactly one of handler or rest endpoint")

    @property
    def kind(self) -> ToolKind:
        return ToolKind.REST if self.rest is not None else ToolKind.METHOD

    @property
    def method_signature(self) -> str:
        params = ", ".join(f"{p.type} {p.name}" for p in self.params)
        return f"{self.name}({params})"

    @property
    def has_rest_params(self) -> bool:
        return any(p.source is not ParamSource.OTHER for p in self.params)


@dataclass
class ToolSummary:
    name: str
    description: str


# ---------------------------------------------------------------------------
# ToolRegistry
# ---------------------------------------------------------------------------


class ToolRegistry:
    """In-memory tool registration table, keyed by tool name."""

    def __init__(self) -> None:
        self._definitions: dict[str, ToolDefinition] = {}

    def register(self, definition: ToolDefinition) -> None:
        if definition.name in self._definitions:
            logger.warning("Tool %s registered twice, replacing previous definition", definition.name)
        self._definitions[definition.name] = definition

    def tool(
        self,
        name: str,
        description: str,
        params: list[ToolParam] | None = None,
        returns: ToolReturn | None = None,
        request_example: str | None = None,
    ) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
        """Decorator registering a local callable with an explicit parameter list."""

        def decorator(fn: Callable[..., Any]) -> Callable[..., Any]:
            self.register(ToolDefinition(
                name=name,
                description=description,
                params=list(params or []),
                handler=fn,
                returns=returns,
                request_example=request_example,
            ))
            return fn

        return decorator

    def list_summaries(self) -> list[ToolSummary]:
        return [ToolSummary(d.name, d.description) for d in self._definitions.values()]

    def get_definition(self, name: str) -> ToolDefinition | None:
        return self._definitions.get(name)

    # Detail and definition share one object; kept as two names for callers
    # that only need metadata.
    get_detail = get_definition

    def names(self) -> list[str]:
        return list(self._definitions)

    def __len__(self) -> int:
        return len(self._definitions)

    def __contains__(self, name: object) -> bool:
        return name in self._definitions


# ---------------------------------------------------------------------------
# Result serialisation
# ---------------------------------------------------------------------------


def _json_default(value: Any) -> Any:
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return dataclasses.asdict(value)
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (set, frozenset)):
        return list(value)
    return str(value)


def serialize_result(result: Any) -> str:
    """Render a tool result as observation text."""
    if result is None:
        return ""
    if isinstance(result, str):
        return result
    return json.dumps(result, ensure_ascii=False, default=_json_default)


def _parse_arguments(arguments: str | dict[str, Any] | None) -> dict[str, Any]:
    if arguments is None:
        return {}
    if isinstance(arguments, dict):
        return arguments
    if not arguments.strip():
        return {}
    try:
        parsed = json.loads(arguments)
    except json.JSONDecodeError as e:
        raise ToolInvocationError(f"Invalid tool arguments JSON: {e}") from e
    if not isinstance(parsed, dict):
        raise ToolInvocationError("Invalid tool arguments JSON: expected an object")
    return parsed


# ---------------------------------------------------------------------------
# ToolInvoker
# ---------------------------------------------------------------------------


class ToolInvoker:
    """Executes tool definitions.

    Local tools are called with keyword arguments (coroutines are awaited).
    REST tools issue one HTTP request through the shared httpx client and
    return the response body; 4xx/5xx responses become a JSON error object
    so the model can read them as an observation.
    """

    def __init__(self, http: httpx.AsyncClient | None = None, default_base_url: str = "http://localhost:8000") -> None:
        self._http = http
        self._default_base_url = default_base_url.rstrip("/")

    async def invoke(
        self,
        definition: ToolDefinition,
        arguments: str | dict[str, Any] | None,
        context: RequestContext | None = None,
    ) -> Any:
        args = _parse_arguments(arguments)
        if definition.kind is ToolKind.REST:
            return await self._invoke_rest(definition, args, context)
        return await self._invoke_local(definition, args)

    async def invoke_with_args(
        self,
        definition: ToolDefinition,
        args: list[Any],
        context: RequestContext | None = None,
    ) -> Any:
        """Invoke with positional arguments mapped onto declared params in order."""
        mapped = {p.name: args[i] for i, p in enumerate(definition.params) if i < len(args)}
        return await self.invoke(definition, mapped, context)

    # ------------------------------------------------------------------
    # Local callables
    # ------------------------------------------------------------------

    async def _invoke_local(self, definition: ToolDefinition, args: dict[str, Any]) -> Any:
        params = definition.params
        kwargs: dict[str, Any] = {}

        # A single object parameter receives the whole mapping when the
        # caller passed its fields directly instead of wrapping them.
        if len(params) == 1 and args and params[0].name not in args and params[0].type == "object":
            kwargs[params[0].name] = args
        else:
            for param in params:
                if param.name in args:
                    kwargs[param.name] = args[param.name]
                elif param.required:
                    raise ToolInvocationError(f"Missing required argument: {param.name}")
                else:
                    kwargs[param.name] = None

        try:
            result = definition.handler(**kwargs)
            if inspect.isawaitable(result):
                result = await result
        except ToolInvocationError:
            raise
        except Exception as e:
            raise ToolInvocationError(f"Tool invocation failed: {definition.name}. Error: {e}") from e
        return result

    # ------------------------------------------------------------------
    # REST endpoints
    # ------------------------------------------------------------------

    async def _invoke_rest(
        self,
        definition: ToolDefinition,
        args: dict[str, Any],
        context: RequestContext | None,
    ) -> str:
        if self._http is None:
            raise ToolInvocationError("HTTP client not configured for REST tools")
        endpoint = definition.rest
        url, remaining = self._build_url(endpoint.path, args, context)
        method = endpoint.method.upper()

        headers = {"Accept": endpoint.produces or "application/json"}
        if context is not None:
            for key, value in context.headers.items():
                if key.lower() not in _FORWARD_SKIP_HEADERS and value is not None:
                    headers[key] = value
            if context.cookies:
                headers["Cookie"] = "; ".join(f"{k}={v}" for k, v in context.cookies.items())

        request_kwargs: dict[str, Any] = {"headers": headers}
        if method in ("GET", "DELETE"):
            if remaining:
                request_kwargs["params"] = {k: _query_value(v) for k, v in remaining.items()}
        else:
            headers["Content-Type"] = endpoint.consumes or "application/json"
            request_kwargs["content"] = json.dumps(
                self._build_body(definition, remaining), ensure_ascii=False, default=_json_default
            )

        try:
            response = await self._http.request(method, url, **request_kwargs)
        except httpx.HTTPError as e:
            raise ToolInvocationError(
                f"REST API invocation failed: {definition.name}. Error: {e}"
            ) from e

        if response.status_code >= 400:
            return self._error_payload(response, definition)
        return response.text

    def _build_url(
        self, path: str, args: dict[str, Any], context: RequestContext | None
    ) -> tuple[str, dict[str, Any]]:
        if path.startswith(("http://", "https://")):
            url = path
        else:
            base = (context.base_url if context and context.base_url else self._default_base_url).rstrip("/")
            url = base + (path if path.startswith("/") else "/" + path)

        remaining: dict[str, Any] = {}
        for key, value in args.items():
            placeholder = "{" + key + "}"
            if placeholder in url:
                url = url.replace(placeholder, _path_value(value))
            else:
                remaining[key] = value

        missing = _PLACEHOLDER_RE.findall(url)
        if missing:
            raise ToolInvocationError(
                f"Missing required path parameters: {missing}. Available parameters: {list(args)}"
            )
        return url, remaining

    @staticmethod
    def _build_body(definition: ToolDefinition, remaining: dict[str, Any]) -> Any:
        body_params = [p for p in definition.params if p.source is ParamSource.REQUEST_BODY]
        if len(body_params) == 1 and body_params[0].name in remaining:
            return remaining[body_params[0].name]
        return remaining

    @staticmethod
    def _error_payload(response: httpx.Response, definition: ToolDefinition) -> str:
        status = response.status_code
        if status >= 500:
            base = "Server error"
        else:
            base = _CLIENT_ERROR_MESSAGES.get(status, "Client request error")

        message = base
        body = response.text
        if body and body.strip():
            detail = None
            if body.strip().startswith("{"):
                try:
                    data = response.json()
                    detail = data.get("message") or data.get("error") or data.get("msg")
                except (json.JSONDecodeError, AttributeError):
                    detail = None
            if detail:
                message = f"{base}: {detail}"
            else:
                preview = body if len(body) <= 100 else body[:100] + "..."
                message = f"{base} ({preview})"

        return json.dumps(
            {"error": True, "status": status, "message": message, "tool": definition.name},
            ensure_ascii=False,
        )


def _path_value(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (str, int, float)):
        return str(value)
    return json.dumps(value, ensure_ascii=False)


def _query_value(value: Any) -> Any:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        return json.dumps(value, ensure_ascii=False)
    return value
