"""HTML rewriting for previews served under a proxy path.

Previewed applications assume they own the root of their origin. Every rule in
``RULES`` re-anchors one family of root-relative or loopback references so the
page keeps working when served from ``proxy_base_path`` (proxy mode), or when
served from an unrelated origin but loading its resources from the instance
directly (origin mode, used by inspection).

Every rule leaves already re-anchored references alone, so rewriting is
idempotent. A small runtime shim covering what static rewriting cannot see
(fetch calls, client-side navigation) is injected once after the rules.
"""

from __future__ import annotations

import json
import re
from collections.abc import Callable
from dataclasses import dataclass
from urllib.parse import urlsplit

SHIM_MARKER = 'data-preview-gateway="shim"'

LOOPBACK_HOSTS = frozenset({"localhost", "127.0.0.1", "0.0.0.0", "[::1]"})  # noqa: S104


@dataclass(frozen=True)
class RewriteContext:
    """Where rewritten references should point.

    ``anchor_base`` is prefixed to root-relative paths: the proxy base path in
    proxy mode, the instance origin in origin mode.
    """

    anchor_base: str
    origin_url: str
    proxy_mode: bool
    public_origin: str | None = None

    @property
    def origin_aliases(self) -> tuple[str, ...]:
        """The instance origin plus the same port on every loopback name."""
        parts = urlsplit(self.origin_url)
        aliases = [self.origin_url.rstrip("/")]
        if parts.port is not None:
            for host in LOOPBACK_HOSTS:
                alias = f"{parts.scheme}://{host}:{parts.port}"
                if alias not in aliases:
                    aliases.append(alias)
        return tuple(aliases)

    @property
    def origin_netlocs(self) -> frozenset[str]:
        """``host:port`` forms under which the instance is reachable."""
        return frozenset(urlsplit(alias).netloc for alias in self.origin_aliases)

    @property
    def origin_host(self) -> str:
        return urlsplit(self.origin_url).netloc

    def is_anchored(self, path: str) -> bool:
        if not self.proxy_mode:
            return False
        base = self.anchor_base
        return path == base or path.startswith(f"{base}/") or path.startswith(f"{base}?")

    def anchor(self, path: str) -> str:
        """Re-anchor a root-relative path, leaving already anchored ones unchanged."""
        if self.is_anchored(path):
            return path
        return f"{self.anchor_base}{path}"

    def strip_origin(self, url: str) -> str | None:
        """Path part of an absolute URL on the instance origin, else None."""
        for alias in self.origin_aliases:
            if url == alias:
                return "/"
            if url.startswith(alias) and url[len(alias)] in "/?#":
                rest = url[len(alias) :]
                return rest if rest.startswith("/") else f"/{rest}"
        return None


@dataclass(frozen=True)
class RewriteRule:
    name: str
    pattern: re.Pattern[str]
    replace: Callable[[re.Match[str], RewriteContext], str]


def rewrite_url(url: str, ctx: RewriteContext) -> str:
    """Rewrite a single URL; anything not root-relative or on the instance origin is kept."""
    if not url or url.startswith("//"):
        return url
    if url.startswith("/"):
        return ctx.anchor(url)
    if "://" in url:
        path = ctx.strip_origin(url)
        if path is not None:
            return ctx.anchor(path)
    return url


# --- Rule implementations ---


def _replace_attribute(match: re.Match[str], ctx: RewriteContext) -> str:
    url = match.group("url")
    rewritten = rewrite_url(url, ctx)
    if rewritten == url:
        return match.group(0)
    quote = match.group("quote")
    return f"{match.group('prefix')}{quote}{rewritten}{quote}"


def _replace_srcset(match: re.Match[str], ctx: RewriteContext) -> str:
    value = match.group("value")
    if "data:" in value:
        return match.group(0)
    candidates = []
    for candidate in value.split(","):
        parts = candidate.strip().split()
        if not parts:
            continue
        parts[0] = rewrite_url(parts[0], ctx)
        candidates.append(" ".join(parts))
    quote = match.group("quote")
    return f"{match.group('prefix')}{quote}{', '.join(candidates)}{quote}"


def _replace_css_url(match: re.Match[str], ctx: RewriteContext) -> str:
    url = match.group("url")
    quote = match.group("quote")
    return f"url({quote}{rewrite_url(url, ctx)}{quote})"


def _replace_loader_path(match: re.Match[str], ctx: RewriteContext) -> str:
    url = match.group("url")
    rewritten = rewrite_url(url, ctx)
    if rewritten == url:
        return match.group(0)
    quote = match.group("quote")
    return f"__webpack_require__.p = {quote}{rewritten}{quote}"


def _replace_asset_prefix(match: re.Match[str], ctx: RewriteContext) -> str:
    return f'{match.group("prefix")}"{ctx.anchor_base}"'


def _replace_socket(match: re.Match[str], ctx: RewriteContext) -> str:
    scheme = match.group("scheme")
    host = match.group("host")
    path = match.group("path") or "/"

    if host not in ctx.origin_netlocs:
        return match.group(0)

    if not ctx.proxy_mode:
        return f"{scheme}://{ctx.origin_host}{path}"

    if ctx.is_anchored(path):
        return match.group(0)

    anchored = ctx.anchor(path)
    if ctx.public_origin:
        public = urlsplit(ctx.public_origin)
        ws_scheme = "wss" if public.scheme == "https" else "ws"
        return f"{ws_scheme}://{public.netloc}{anchored}"
    return f"{scheme}://{host}{anchored}"


RULES: tuple[RewriteRule, ...] = (
    RewriteRule(
        "attribute-urls",
        re.compile(
            r"(?P<prefix>(?<![\w-])(?:src|href|action|poster|data-src)\s*=\s*)"
            r"(?P<quote>[\"'])(?P<url>[^\"'<>]*)(?P=quote)",
            re.IGNORECASE,
        ),
        _replace_attribute,
    ),
    RewriteRule(
        "srcset-urls",
        re.compile(
            r"(?P<prefix>(?<![\w-])srcset\s*=\s*)(?P<quote>[\"'])(?P<value>[^\"'<>]*)(?P=quote)",
            re.IGNORECASE,
        ),
        _replace_srcset,
    ),
    RewriteRule(
        "css-urls",
        re.compile(r"url\(\s*(?P<quote>[\"']?)(?P<url>/(?!/)[^)\"'\s]*)(?P=quote)\s*\)"),
        _replace_css_url,
    ),
    RewriteRule(
        "loader-public-path",
        re.compile(r"__webpack_require__\.p\s*=\s*(?P<quote>[\"'])(?P<url>[^\"']*)(?P=quote)"),
        _replace_loader_path,
    ),
    RewriteRule(
        "asset-prefix",
        re.compile(r"(?P<prefix>\"assetPrefix\"\s*:\s*)\"[^\"]*\""),
        _replace_asset_prefix,
    ),
    RewriteRule(
        "live-reload-socket",
        re.compile(
            r"(?<![A-Za-z])(?P<scheme>wss?)://(?P<host>[^/\"'\s<>?#]+)(?P<path>/[^\"'\s<>]*)?"
        ),
        _replace_socket,
    ),
)


def apply_rules(html: str, ctx: RewriteContext) -> str:
    for rule in RULES:
        html = rule.pattern.sub(lambda m, rule=rule: rule.replace(m, ctx), html)
    return html


# --- Runtime shim ---

_SHIM_TEMPLATE = """<script data-preview-gateway="shim">
(function () {
  if (window.__previewGatewayShim) return;
  window.__previewGatewayShim = true;
  var BASE = __BASE__;
  var TRACK = __TRACK__;
  var TOKEN = new URLSearchParams(window.location.search).get('token');

  function anchor(url) {
    if (typeof url !== 'string') return url;
    if (url.charAt(0) !== '/' || url.charAt(1) === '/') return url;
    if (url === BASE || url.indexOf(BASE + '/') === 0) return url;
    return BASE + url;
  }

  function withToken(url) {
    if (!TOKEN || url.indexOf('token=') !== -1) return url;
    return url + (url.indexOf('?') === -1 ? '?' : '&') + 'token=' + encodeURIComponent(TOKEN);
  }

  function currentPath() {
    var path = window.location.pathname;
    if (path.indexOf(BASE) === 0) path = path.slice(BASE.length);
    return path || '/';
  }

  if (window.__webpack_require__) {
    window.__webpack_require__.p = anchor(window.__webpack_require__.p);
  }

  var originalFetch = window.fetch;
  if (originalFetch) {
    window.fetch = function (input, init) {
      if (typeof input === 'string') {
        input = anchor(input);
      } else if (input && input.url && input.url.indexOf(window.location.origin + '/') === 0) {
        var path = input.url.slice(window.location.origin.length);
        var anchored = anchor(path);
        if (anchored !== path) input = new Request(anchored, input);
      }
      return originalFetch.call(this, input, init);
    };
  }

  if (!TRACK) return;

  function report() {
    window.parent.postMessage({ type: 'PREVIEW_NAVIGATION', path: currentPath() }, '*');
  }

  document.addEventListener('click', function (event) {
    var el = event.target;
    while (el && el.tagName !== 'A') el = el.parentElement;
    if (!el || el.target === '_blank' || event.defaultPrevented) return;
    var raw = el.getAttribute('href');
    if (!raw || raw.charAt(0) !== '/' || raw.charAt(1) === '/') return;
    event.preventDefault();
    window.location.assign(withToken(anchor(raw)));
  }, true);

  ['pushState', 'replaceState'].forEach(function (name) {
    var original = window.history[name];
    window.history[name] = function () {
      var result = original.apply(this, arguments);
      report();
      return result;
    };
  });
  window.addEventListener('popstate', report);

  window.addEventListener('message', function (event) {
    if (event.data && event.data.type === 'GET_CURRENT_PATH') {
      window.parent.postMessage({ type: 'CURRENT_PATH_RESPONSE', path: currentPath() }, '*');
    }
  });

  if (document.readyState === 'loading') {
    document.addEventListener('DOMContentLoaded', report);
  } else {
    report();
  }
})();
</script>"""


def build_shim(ctx: RewriteContext) -> str:
    # json.dumps with "</" escaped keeps the base path from closing the script tag
    base = json.dumps(ctx.anchor_base).replace("</", "<\\/")
    return _SHIM_TEMPLATE.replace("__BASE__", base).replace(
        "__TRACK__", "true" if ctx.proxy_mode else "false"
    )


_HEAD_CLOSE = re.compile(r"</head\s*>", re.IGNORECASE)
_BODY_CLOSE = re.compile(r"</body\s*>", re.IGNORECASE)


def inject_before_close(html: str, snippet: str) -> str:
    """Insert a snippet before </head>, else before </body>, else append it."""
    for pattern in (_HEAD_CLOSE, _BODY_CLOSE):
        match = pattern.search(html)
        if match:
            return html[: match.start()] + snippet + html[match.start() :]
    return html + snippet


def inject_shim(html: str, ctx: RewriteContext) -> str:
    if SHIM_MARKER in html:
        return html
    return inject_before_close(html, build_shim(ctx))


# --- Entry points ---


def rewrite_html(
    html: str,
    proxy_base_path: str,
    origin_url: str,
    *,
    public_origin: str | None = None,
) -> str:
    """Rewrite a page so it keeps working when served under ``proxy_base_path``.

    Args:
        html: Page as returned by the instance
        proxy_base_path: Public path prefix of the instance, without trailing slash
        origin_url: Raw origin of the instance (``http://host:port``)
        public_origin: Externally reachable origin of the gateway; decides the
            scheme and host of rewritten live-reload socket URLs

    Returns:
        The rewritten page. Rewriting the result again returns it unchanged.
    """
    ctx = RewriteContext(
        anchor_base=proxy_base_path.rstrip("/"),
        origin_url=origin_url.rstrip("/"),
        proxy_mode=True,
        public_origin=public_origin.rstrip("/") if public_origin else None,
    )
    return inject_shim(apply_rules(html, ctx), ctx)


def rewrite_location(location: str, proxy_base_path: str, origin_url: str) -> str:
    """Re-anchor a redirect target under ``proxy_base_path``.

    Root-relative targets and targets on the instance origin are re-anchored;
    relative and external ones are returned unchanged.
    """
    ctx = RewriteContext(
        anchor_base=proxy_base_path.rstrip("/"),
        origin_url=origin_url.rstrip("/"),
        proxy_mode=True,
    )
    return rewrite_url(location, ctx)


def rewrite_for_origin(html: str, origin_url: str) -> str:
    """Rewrite a page served from elsewhere so its resources load from the instance itself."""
    origin = origin_url.rstrip("/")
    ctx = RewriteContext(anchor_base=origin, origin_url=origin, proxy_mode=False)
    return inject_shim(apply_rules(html, ctx), ctx)
