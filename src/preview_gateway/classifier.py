"""Request classification and path helpers for proxied preview traffic."""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from urllib.parse import urlencode

ASSET_PREFIXES = (
    "/_next/",
    "/@vite/",
    "/@react-refresh",
    "/@fs/",
    "/@id/",
    "/node_modules/",
    "/__vite",
)

ASSET_DIRECTORIES = ("static/", "assets/", "public/", "images/", "fonts/")

ASSET_EXTENSIONS = frozenset(
    {
        "css",
        "js",
        "mjs",
        "map",
        "png",
        "jpg",
        "jpeg",
        "gif",
        "svg",
        "webp",
        "avif",
        "ico",
        "woff",
        "woff2",
        "ttf",
        "eot",
        "otf",
        "mp4",
        "webm",
        "mp3",
        "wav",
    }
)

# Source files a browser cannot render directly
NON_RENDERABLE_EXTENSIONS = frozenset(
    {"ts", "tsx", "jsx", "md", "mdx", "py", "vue", "svelte", "json", "yml", "yaml", "toml"}
)


def file_extension(path: str) -> str:
    """Lowercased extension of the last path segment, '' when there is none."""
    last = path.rstrip("/").rsplit("/", 1)[-1]
    if "." not in last or (last.startswith(".") and last.count(".") == 1):
        return ""
    return last.rsplit(".", 1)[-1].lower()


def is_asset_path(path: str, extra_prefixes: Iterable[str] = ()) -> bool:
    """True when the path is a static bundle asset that may be served without a token."""
    if not path.startswith("/"):
        path = f"/{path}"
    if path.startswith(ASSET_PREFIXES):
        return True
    if file_extension(path) in ASSET_EXTENSIONS:
        return True
    if path.lstrip("/").startswith(ASSET_DIRECTORIES):
        return True
    for prefix in extra_prefixes:
        if prefix and path.startswith(prefix if prefix.startswith("/") else f"/{prefix}"):
            return True
    return False


def strip_base_path(full_path: str, base_path: str) -> str:
    """Path relative to the instance's public base path, defaulting to ``/``."""
    base = base_path.rstrip("/")
    if full_path.startswith(base):
        full_path = full_path[len(base) :]
    if not full_path:
        return "/"
    if not full_path.startswith("/"):
        full_path = f"/{full_path}"
    return full_path


def forwarded_query(query: Mapping[str, str] | Iterable[tuple[str, str]]) -> str:
    """Query string to forward upstream, without the gateway's own token.

    Repeated keys are kept in their original order.
    """
    pairs = query.items() if isinstance(query, Mapping) else query
    return urlencode([(k, v) for k, v in pairs if k != "token"])
