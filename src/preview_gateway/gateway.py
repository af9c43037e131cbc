"""Proxy gateway: serves preview traffic for one instance through ordered strategies."""

from __future__ import annotations

import asyncio
import html
import json
import mimetypes
import os
from abc import ABC, abstractmethod
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from http import HTTPStatus
from pathlib import Path
from typing import Any
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

import httpx
import structlog

from preview_gateway.classifier import (
    NON_RENDERABLE_EXTENSIONS,
    file_extension,
    forwarded_query,
    is_asset_path,
    strip_base_path,
)
from preview_gateway.collaborators import AuthVerifier, ProjectFileStore
from preview_gateway.exceptions import (
    ForbiddenError,
    InstanceNotReadyError,
    NotFoundError,
    UnauthorizedError,
    UpstreamUnavailableError,
)
from preview_gateway.models.instance import PreviewInstance
from preview_gateway.models.proxy import ProxyRequest, ProxyResponse
from preview_gateway.navigation import NavigationTracker
from preview_gateway.registry import InstanceRegistry
from preview_gateway.rewriter import rewrite_html, rewrite_location

logger = structlog.get_logger()

# Hop-by-hop headers never forwarded to the instance
HOP_BY_HOP_REQUEST_HEADERS = frozenset(
    {
        "host",
        "connection",
        "keep-alive",
        "proxy-authenticate",
        "proxy-authorization",
        "te",
        "trailer",
        "transfer-encoding",
        "upgrade",
        "accept-encoding",
        "content-length",
    }
)

# The body is decoded and re-serialised, so framing headers are recomputed
DROPPED_RESPONSE_HEADERS = frozenset(
    {"content-length", "content-encoding", "transfer-encoding", "connection", "keep-alive"}
)

NO_CACHE_HEADERS = {
    "Cache-Control": "no-cache, no-store, must-revalidate",
    "Pragma": "no-cache",
    "Expires": "0",
}

FALLBACK_HEADER = "X-Preview-Fallback"

REDIRECT_HEADERS = ("location", "content-location")

STATIC_ROOTS = (".", "dist", "build", "out", "public")
LISTING_SKIP_DIRS = frozenset({"node_modules", ".git", ".next"})

TEXT_MEDIA_TYPES = ("application/javascript", "application/json")

MEDIA_TYPES = {
    "js": "application/javascript",
    "mjs": "application/javascript",
    "css": "text/css",
    "html": "text/html",
    "json": "application/json",
    "svg": "image/svg+xml",
    "ts": "text/plain",
    "tsx": "text/plain",
    "jsx": "text/plain",
    "md": "text/markdown",
    "woff2": "font/woff2",
}


def guess_media_type(path: str) -> str:
    ext = file_extension(path)
    media_type = MEDIA_TYPES.get(ext) or mimetypes.guess_type(path)[0] or "application/octet-stream"
    if media_type.startswith("text/") or media_type in TEXT_MEDIA_TYPES:
        media_type = f"{media_type}; charset=utf-8"
    return media_type


def with_token(url: str, token: str) -> str:
    """Append the gateway token to a URL unless it already has one."""
    parts = urlsplit(url)
    if any(key == "token" for key, _ in parse_qsl(parts.query, keep_blank_values=True)):
        return url
    token_param = urlencode({"token": token})
    query = f"{parts.query}&{token_param}" if parts.query else token_param
    return urlunsplit(parts._replace(query=query))


def decode_body(body: bytes, media_type: str) -> tuple[str, str]:
    """Decode a text body, returning the text and the encoding used."""
    charset = "utf-8"
    for part in media_type.split(";")[1:]:
        key, _, value = part.strip().partition("=")
        if key.lower() == "charset" and value:
            charset = value.strip("\"'")
    try:
        return body.decode(charset), charset
    except (UnicodeDecodeError, LookupError):
        return body.decode("latin-1"), "latin-1"


@dataclass
class ResolutionContext:
    """Everything a strategy needs to answer one request."""

    instance: PreviewInstance
    request: ProxyRequest
    target_path: str
    query_string: str
    is_asset: bool


class ResolutionStrategy(ABC):
    """One way of producing a response. ``None`` passes the request to the next strategy."""

    name: str = "strategy"

    @abstractmethod
    async def resolve(self, ctx: ResolutionContext) -> ProxyResponse | None: ...


class LiveEditOverrideStrategy(ResolutionStrategy):
    """Serves unsaved file contents from the project file store."""

    name = "override"

    def __init__(self, file_store: ProjectFileStore) -> None:
        self._file_store = file_store

    async def resolve(self, ctx: ResolutionContext) -> ProxyResponse | None:
        ext = file_extension(ctx.target_path)
        if not ext:
            return None

        try:
            content = await self._file_store.read(ctx.instance.project_id, ctx.target_path)
        except Exception as e:
            logger.warning(
                "File store lookup failed",
                project_id=ctx.instance.project_id,
                path=ctx.target_path,
                error=str(e),
            )
            return None

        if content is None:
            return None

        logger.debug(
            "Serving live-edit override",
            instance_id=ctx.instance.id,
            path=ctx.target_path,
        )

        if ext in NON_RENDERABLE_EXTENSIONS and ctx.request.wants_document:
            return ProxyResponse(
                status_code=HTTPStatus.OK,
                headers={"content-type": "text/html; charset=utf-8", **NO_CACHE_HEADERS},
                body=render_source_viewer(ctx.target_path, content).encode("utf-8"),
                source=self.name,
            )

        return ProxyResponse(
            status_code=HTTPStatus.OK,
            headers={"content-type": guess_media_type(ctx.target_path), **NO_CACHE_HEADERS},
            body=content,
            source=self.name,
        )


def render_source_viewer(path: str, content: bytes) -> str:
    text = content.decode("utf-8", errors="replace")
    title = html.escape(path)
    return (
        "<!DOCTYPE html>\n"
        '<html><head><meta charset="utf-8">'
        f"<title>{title}</title>"
        "<style>body{margin:0;font-family:monospace;background:#1e1e1e;color:#d4d4d4}"
        "header{padding:8px 16px;background:#252526;color:#9cdcfe}"
        "pre{margin:0;padding:16px;white-space:pre-wrap}</style>"
        "</head><body>"
        f"<header>{title}</header>"
        f"<pre><code>{html.escape(text)}</code></pre>"
        "</body></html>"
    )


class UpstreamStrategy(ResolutionStrategy):
    """Forwards the request to the instance's backing process."""

    name = "upstream"

    def __init__(self, client: httpx.AsyncClient, timeout: httpx.Timeout | None = None) -> None:
        self._client = client
        self._timeout = timeout

    async def resolve(self, ctx: ResolutionContext) -> ProxyResponse | None:
        instance = ctx.instance
        address = instance.backing_address
        if not address:
            return None

        target_url = f"http://{address}{ctx.target_path}"
        if ctx.query_string:
            target_url = f"{target_url}?{ctx.query_string}"

        headers = {
            k: v
            for k, v in ctx.request.headers.items()
            if k.lower() not in HOP_BY_HOP_REQUEST_HEADERS
        }
        headers["host"] = address
        headers["x-forwarded-proto"] = ctx.request.header("x-forwarded-proto") or ctx.request.scheme
        forwarded_host = ctx.request.header("x-forwarded-host") or ctx.request.header("host")
        if forwarded_host:
            headers["x-forwarded-host"] = forwarded_host
        if ctx.request.client_host:
            prior = ctx.request.header("x-forwarded-for")
            headers["x-forwarded-for"] = (
                f"{prior}, {ctx.request.client_host}" if prior else ctx.request.client_host
            )

        logger.debug(
            "Proxying request",
            instance_id=instance.id,
            method=ctx.request.method,
            path=ctx.target_path,
            target_url=target_url,
        )

        try:
            request_kwargs: dict[str, Any] = {}
            if self._timeout is not None:
                request_kwargs["timeout"] = self._timeout
            response = await self._client.request(
                method=ctx.request.method,
                url=target_url,
                headers=headers,
                content=ctx.request.body,
                follow_redirects=False,
                **request_kwargs,
            )
        except httpx.TransportError as e:
            logger.warning(
                "Failed to reach preview server",
                instance_id=instance.id,
                target_url=target_url,
                error=str(e) or type(e).__name__,
            )
            raise UpstreamUnavailableError(target_url, str(e) or type(e).__name__) from e

        return ProxyResponse(
            status_code=response.status_code,
            headers=response.headers.copy(),
            body=response.content,
            source=self.name,
        )


class StaticFileStrategy(ResolutionStrategy):
    """Serves built or plain files from the instance workspace when the server is down."""

    name = "static"

    async def resolve(self, ctx: ResolutionContext) -> ProxyResponse | None:
        workspace = Path(ctx.instance.workspace_path)
        if not workspace.is_dir():
            return None

        match = find_static_file(workspace, ctx.target_path)
        if match is None:
            return None

        content = await asyncio.to_thread(match.read_bytes)
        logger.info(
            "Serving static fallback",
            instance_id=ctx.instance.id,
            path=ctx.target_path,
            file=str(match.relative_to(workspace.resolve())),
        )
        return ProxyResponse(
            status_code=HTTPStatus.OK,
            headers={
                "content-type": guess_media_type(match.name),
                FALLBACK_HEADER: self.name,
                **NO_CACHE_HEADERS,
            },
            body=content,
            source=self.name,
        )


def _static_candidates(path: str) -> list[str]:
    relative = path.strip("/")
    if not relative:
        return ["index.html"]
    return [relative, f"{relative}.html", f"{relative}/index.html"]


def find_static_file(workspace: Path, path: str) -> Path | None:
    """Resolve a request path to a file in the workspace.

    Tries each static root in order; extension-less paths finally fall back to
    the first root ``index.html`` found. Anything resolving outside the
    workspace is ignored.
    """
    root = workspace.resolve()
    candidates = _static_candidates(path)
    if file_extension(path) == "" and "index.html" not in candidates:
        fallbacks = ["index.html"]
    else:
        fallbacks = []

    for names in (candidates, fallbacks):
        for static_root in STATIC_ROOTS:
            for name in names:
                candidate = (root / static_root / name).resolve()
                if not candidate.is_relative_to(root):
                    logger.warning("Rejected static path outside workspace", path=path)
                    continue
                if candidate.is_file():
                    return candidate
    return None


class DirectoryListingStrategy(ResolutionStrategy):
    """Last resort: a page listing the project's files. Always answers."""

    name = "listing"

    def __init__(
        self,
        file_store: ProjectFileStore,
        max_entries: int = 500,
        max_depth: int = 4,
    ) -> None:
        self._file_store = file_store
        self._max_entries = max_entries
        self._max_depth = max_depth

    async def resolve(self, ctx: ResolutionContext) -> ProxyResponse | None:
        workspace = Path(ctx.instance.workspace_path)
        if workspace.is_dir():
            entries = await asyncio.to_thread(
                list_workspace_files, workspace, self._max_entries, self._max_depth
            )
        else:
            try:
                entries = sorted(await self._file_store.list_files(ctx.instance.project_id))
            except Exception as e:
                logger.warning(
                    "File store listing failed",
                    project_id=ctx.instance.project_id,
                    error=str(e),
                )
                entries = []
            entries = entries[: self._max_entries]

        return ProxyResponse(
            status_code=HTTPStatus.OK,
            headers={
                "content-type": "text/html; charset=utf-8",
                FALLBACK_HEADER: self.name,
                **NO_CACHE_HEADERS,
            },
            body=render_listing(ctx.instance, ctx.target_path, entries).encode("utf-8"),
            source=self.name,
        )


def list_workspace_files(workspace: Path, max_entries: int, max_depth: int) -> list[str]:
    entries: list[str] = []
    root = str(workspace)
    for dirpath, dirnames, filenames in os.walk(root):
        rel_dir = os.path.relpath(dirpath, root)
        depth = 0 if rel_dir == "." else rel_dir.count(os.sep) + 1
        dirnames[:] = sorted(
            d for d in dirnames if d not in LISTING_SKIP_DIRS and depth < max_depth
        )
        for filename in sorted(filenames):
            rel = filename if rel_dir == "." else f"{rel_dir}/{filename}"
            entries.append(rel.replace(os.sep, "/"))
            if len(entries) >= max_entries:
                return entries
    return entries


def render_listing(instance: PreviewInstance, path: str, entries: Sequence[str]) -> str:
    items = "\n".join(f"<li><code>{html.escape(e)}</code></li>" for e in entries)
    if not items:
        items = "<li>No files found.</li>"
    return (
        "<!DOCTYPE html>\n"
        '<html><head><meta charset="utf-8">'
        f"<title>{html.escape(instance.name)}</title>"
        "<style>body{font-family:system-ui,sans-serif;margin:2rem;color:#222}"
        "code{font-size:0.9em}</style>"
        "</head><body>"
        "<h1>Preview server is not responding</h1>"
        f"<p>Nothing could be served for <code>{html.escape(path)}</code>. "
        "Project files:</p>"
        f"<ul>{items}</ul>"
        "</body></html>"
    )


class ProxyGateway:
    """Entry point for proxied preview requests."""

    def __init__(
        self,
        registry: InstanceRegistry,
        tracker: NavigationTracker,
        auth_verifier: AuthVerifier,
        strategies: Sequence[ResolutionStrategy],
        *,
        extra_asset_prefixes: Iterable[str] = (),
        public_base_url: str | None = None,
    ) -> None:
        self.registry = registry
        self.tracker = tracker
        self.auth_verifier = auth_verifier
        self.strategies = list(strategies)
        self._extra_asset_prefixes = tuple(extra_asset_prefixes)
        self._public_base_url = public_base_url

    async def handle(
        self,
        project_id: str,
        instance_id: str,
        request: ProxyRequest,
    ) -> ProxyResponse:
        """Serve one request for an instance.

        Raises:
            NotFoundError: Unknown instance, or one belonging to another project
            InstanceNotReadyError: The instance is not running
            UnauthorizedError: Content request without a valid token
            ForbiddenError: Token belongs to someone other than the owner
        """
        instance = self.registry.get(instance_id)
        if instance is None or instance.project_id != project_id:
            raise NotFoundError("Preview not found")
        if not instance.is_running:
            raise InstanceNotReadyError(instance.id, instance.status.value)

        target_path = strip_base_path(request.path, instance.public_base_path)
        is_asset = is_asset_path(target_path, self._extra_asset_prefixes)

        if not is_asset:
            await self.authorize(instance, request.token)
            self.tracker.record(instance.id, target_path)

        ctx = ResolutionContext(
            instance=instance,
            request=request,
            target_path=target_path,
            query_string=forwarded_query(request.query),
            is_asset=is_asset,
        )
        response = await self._resolve(ctx)

        response.headers = httpx.Headers(
            [
                (k, v)
                for k, v in response.headers.multi_items()
                if k.lower() not in DROPPED_RESPONSE_HEADERS
            ]
        )
        if instance.origin_url:
            self._rewrite_redirects(instance, request, response)
        if response.is_html and instance.origin_url:
            text, encoding = decode_body(response.body, response.media_type)
            rewritten = rewrite_html(
                text,
                instance.public_base_path,
                instance.origin_url,
                public_origin=self.public_origin(request),
            )
            response.body = rewritten.encode(encoding, errors="replace")

        self.registry.touch(instance.id)
        return response

    def _rewrite_redirects(
        self, instance: PreviewInstance, request: ProxyRequest, response: ProxyResponse
    ) -> None:
        """Keep redirects inside the instance's proxy path.

        A re-anchored content ``Location`` also carries the caller's token so the
        followed request passes authorization.
        """
        base = instance.public_base_path.rstrip("/")
        for name in REDIRECT_HEADERS:
            location = response.headers.get(name)
            if not location:
                continue
            rewritten = rewrite_location(location, base, instance.origin_url or "")
            if name == "location" and request.token and rewritten.startswith(f"{base}/"):
                target = strip_base_path(urlsplit(rewritten).path, base)
                if not is_asset_path(target, self._extra_asset_prefixes):
                    rewritten = with_token(rewritten, request.token)
            if rewritten != location:
                logger.debug(
                    "Rewrote redirect header",
                    instance_id=instance.id,
                    header=name,
                    location=location,
                )
                response.headers[name] = rewritten

    async def _resolve(self, ctx: ResolutionContext) -> ProxyResponse:
        for strategy in self.strategies:
            try:
                response = await strategy.resolve(ctx)
            except UpstreamUnavailableError as e:
                if ctx.is_asset:
                    return ProxyResponse(
                        status_code=HTTPStatus.INTERNAL_SERVER_ERROR,
                        headers={"content-type": "application/json"},
                        body=json.dumps(
                            {"error": "Failed to proxy asset", "detail": e.reason}
                        ).encode("utf-8"),
                        source=strategy.name,
                    )
                continue
            if response is not None:
                return response

        # Only reachable when the strategy list has no listing strategy
        raise UpstreamUnavailableError(ctx.instance.origin_url or "", "no strategy answered")

    async def authorize(self, instance: PreviewInstance, token: str | None) -> None:
        """Require a valid token belonging to the instance owner."""
        if not token:
            raise UnauthorizedError("Authentication required")
        principal = await self.auth_verifier.verify(token)
        if principal is None:
            raise UnauthorizedError("Invalid token")
        if principal.user_id != instance.owner_id:
            raise ForbiddenError("Access denied")

    def public_origin(self, request: ProxyRequest) -> str | None:
        """Externally reachable origin of the gateway for this request."""
        if self._public_base_url:
            return self._public_base_url.rstrip("/")
        host = request.header("x-forwarded-host") or request.header("host")
        if not host:
            return None
        proto = request.header("x-forwarded-proto") or request.scheme
        return f"{proto.split(',')[0].strip()}://{host.split(',')[0].strip()}"
