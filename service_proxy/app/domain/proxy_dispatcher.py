"""
Request-level forwarding from the proxy's API surface to upstream clients.
"""

import json
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urlencode

from starlette.datastructures import QueryParams, UploadFile
from starlette.requests import Request
from starlette.responses import Response

from shared.errors import (
    ExternalServiceError,
    GatewayTimeoutError,
    MethodNotAllowedError,
    UnsupportedMediaTypeError,
    UpstreamTimeoutError,
    ValidationError,
)
from shared.logging import get_logger, set_endpoint_context
from ..adapters.upstream_client import AuthenticatedHttpClient, ClientRegistry


ALLOWED_METHODS = ("GET", "POST", "PUT", "PATCH", "DELETE")
SELECTOR_HEADER = "x-api-endpoint"
SELECTOR_PARAM = "endpoint"

JSON_MIME = "application/json"
MULTIPART_MIME = "multipart/form-data"


def mime_type(content_type: Optional[str]) -> str:
    return (content_type or "").split(";")[0].strip().lower()


def build_upstream_url(path: str, query: QueryParams) -> str:
    """Forwarded path plus the inbound query minus the endpoint selector.

    Parameters are re-encoded sorted by name (values keep their order) so
    equal inputs always produce the same URL.
    """
    items = sorted(
        ((key, value) for key, value in query.multi_items() if key != SELECTOR_PARAM),
        key=lambda item: item[0],
    )
    url = "/" + path.lstrip("/")
    encoded = urlencode(items)
    return f"{url}?{encoded}" if encoded else url


def _find_errno(error: Optional[BaseException]) -> Optional[int]:
    seen = 0
    while error is not None and seen < 10:
        errno = getattr(error, "errno", None)
        if isinstance(errno, int):
            return errno
        error = error.__cause__ or error.__context__
        seen += 1
    return None


class ProxyDispatcher:
    """Selects the upstream client and translates the inbound request for it."""

    def __init__(self, clients: ClientRegistry):
        self.clients = clients
        self.logger = get_logger("proxy.dispatcher")

    async def dispatch(self, request: Request, path: str) -> Response:
        endpoint = request.headers.get(SELECTOR_HEADER) or request.query_params.get(SELECTOR_PARAM)
        set_endpoint_context(endpoint)
        client = self.clients.get(endpoint)
        url = build_upstream_url(path, request.query_params)

        method = request.method.upper()
        if method not in ALLOWED_METHODS:
            raise MethodNotAllowedError(method, ALLOWED_METHODS)

        self.logger.debug("Forwarding request", method=method, url=url, upstream=client.name)
        try:
            upstream_response = await self._forward(client, method, url, request)
        except UpstreamTimeoutError as exc:
            detail = str(exc.cause) or exc.cause.__class__.__name__
            self.logger.error(
                "Upstream request timeout",
                upstream=client.name,
                url=url,
                timeout_ms=exc.timeout_ms,
                detail=detail,
            )
            raise GatewayTimeoutError(detail, endpoint, url, exc.timeout_ms) from exc
        except ExternalServiceError as exc:
            self._log_upstream_failure(exc, client, url)
            raise

        headers = {}
        location = upstream_response.headers.get("location")
        if location is not None and upstream_response.is_redirect:
            headers["Location"] = location
        return Response(
            content=upstream_response.content,
            status_code=upstream_response.status_code,
            headers=headers,
            media_type=upstream_response.headers.get("content-type"),
        )

    async def _forward(self, client: AuthenticatedHttpClient, method: str, url: str, request: Request):
        if method != "POST":
            return await client.request(method, url, **await self._passthrough_body(request))

        content_type = mime_type(request.headers.get("content-type"))
        if content_type == JSON_MIME:
            return await client.post(url, json=await self._json_body(request))
        if content_type == MULTIPART_MIME:
            return await self._forward_multipart(client, url, request)
        raise UnsupportedMediaTypeError(content_type)

    async def _passthrough_body(self, request: Request) -> Dict[str, Any]:
        body = await request.body()
        if not body:
            return {}
        kwargs: Dict[str, Any] = {"content": body}
        content_type = request.headers.get("content-type")
        if content_type:
            kwargs["headers"] = {"Content-Type": content_type}
        return kwargs

    async def _json_body(self, request: Request) -> Any:
        body = await request.body()
        if not body:
            return None
        try:
            return json.loads(body)
        except ValueError as exc:
            raise ValidationError("Request body is not valid JSON", {"detail": str(exc)}) from exc

    async def _forward_multipart(self, client: AuthenticatedHttpClient, url: str, request: Request):
        """Re-assemble the form so httpx computes a fresh boundary.

        Scalar fields keep their first value only. File parts are handed to
        httpx as file objects, which it streams in chunks. httpx reads them
        synchronously: parts up to the form parser's spool size are served
        from memory, larger ones from a temporary file on the event loop.
        """
        form = await request.form()
        try:
            fields: List[Tuple[str, Tuple[Optional[str], Any]]] = []
            uploads: List[Tuple[str, Tuple[Optional[str], Any, str]]] = []
            seen = set()
            for key, value in form.multi_items():
                if isinstance(value, UploadFile):
                    uploads.append((key, (value.filename, value.file, value.content_type or "application/octet-stream")))
                elif key not in seen:
                    seen.add(key)
                    fields.append((key, (None, value.encode("utf-8"))))

            return await client.post(url, files=fields + uploads)
        finally:
            await form.close()

    def _log_upstream_failure(self, exc: ExternalServiceError, client: AuthenticatedHttpClient, url: str) -> None:
        cause = getattr(exc, "cause", None)
        self.logger.error(
            "Upstream request failed",
            upstream=client.name,
            url=url,
            code=exc.code,
            message=exc.message,
            error_type=cause.__class__.__name__ if cause is not None else None,
            errno=_find_errno(cause),
            status=getattr(exc, "upstream_status", None),
            body=getattr(exc, "body", None),
            cause=repr(cause) if cause is not None else None,
        )
