"""Inspection overlay: the live page annotated with per-element metadata.

The page is fetched straight from the instance, parsed with BeautifulSoup, and
every interactive or structural element gets a ``data-preview-inspect`` JSON
attribute describing it. A small click script reads that attribute, adds
layout information only the browser knows, and posts it to the embedding frame.

``generate`` never raises: failures produce a degraded document that still
tells the embedding frame what happened.
"""

from __future__ import annotations

import html as html_module
import json
import re
from http import HTTPStatus

import httpx
import structlog
from bs4 import BeautifulSoup, Tag

from preview_gateway.exceptions import InstanceNotReadyError, RenderDegradedError
from preview_gateway.models.instance import (
    ActionKind,
    InspectionElement,
    ParentContext,
    PreviewInstance,
    SemanticRole,
)
from preview_gateway.navigation import NavigationTracker, normalize_path
from preview_gateway.registry import InstanceRegistry
from preview_gateway.rewriter import inject_before_close, rewrite_for_origin

logger = structlog.get_logger()

INSPECT_ATTR = "data-preview-inspect"
INSPECT_ID_ATTR = "data-preview-inspect-id"
INSPECTOR_ATTR = "data-preview-inspector"
INSPECTOR_PREFIX = "preview-inspector"

MAX_TEXT_SNIPPET = 100
MAX_ATTRIBUTE_VALUE = 200
SHORT_LABEL_LENGTH = 20
CONTENT_TEXT_LENGTH = 80

CANDIDATE_SELECTOR = ", ".join(
    [
        "button",
        "input:not([type=hidden i])",
        "select",
        "textarea",
        "a[href]",
        "[onclick]",
        "[role=button]",
        "[role=link]",
        "nav",
        "header",
        "main",
        "aside",
        "footer",
        "section",
        "form",
        *(f"{tag}[class*={hint}]" for tag in ("div", "span") for hint in ("button", "btn", "link")),
    ]
)

LANDMARK_NAMES = {
    "header": "Header",
    "nav": "Navigation",
    "main": "Main",
    "aside": "Sidebar",
    "footer": "Footer",
    "section": "Section",
    "form": "Form",
}
FORM_FIELDS = frozenset({"input", "select", "textarea"})
ACTION_INPUT_TYPES = frozenset({"submit", "button", "reset"})

# Checked in order; the first matching kind wins
ACTION_KEYWORDS: tuple[tuple[ActionKind, re.Pattern[str]], ...] = (
    (ActionKind.DESTRUCTIVE, re.compile(r"\b(delete|remove|destroy|discard|trash|erase)\b", re.I)),
    (ActionKind.CANCEL, re.compile(r"\b(cancel|close|dismiss|back|abort)\b", re.I)),
    (ActionKind.EDIT, re.compile(r"\b(edit|update|change|rename|modify)\b", re.I)),
    (ActionKind.CREATE, re.compile(r"\b(create|add|new)\b", re.I)),
    (
        ActionKind.SUBMIT,
        re.compile(
            r"\b(submit|save|send|confirm|continue|apply|ok|done|sign ?in|log ?in|"
            r"sign ?up|register|subscribe|buy|checkout|get started)\b",
            re.I,
        ),
    ),
)

CSS_MODULE_CLASS = re.compile(r"^([A-Z][A-Za-z0-9]*)_[A-Za-z0-9-]+__[A-Za-z0-9-]+$")
PASCAL_CLASS = re.compile(r"^[A-Z][a-z0-9]+(?:[A-Z][a-z0-9]*)*$")
BEM_CLASS = re.compile(r"^([a-z][a-z0-9]*(?:-[a-z0-9]+)*)(?:__[a-z0-9-]+|--[a-z0-9-]+)+$")
SAFE_CSS_IDENT = re.compile(r"^-?[A-Za-z_][A-Za-z0-9_-]*$")
BASE_TAG = re.compile(r"<base\b[^>]*>", re.IGNORECASE)
HIDDEN_STYLE = re.compile(r"display\s*:\s*none|visibility\s*:\s*hidden", re.IGNORECASE)


# --- Element analysis ---


def pascal_case(text: str) -> str:
    words = re.findall(r"[A-Za-z0-9]+", text)
    return "".join(word[:1].upper() + word[1:] for word in words)


def element_text(tag: Tag) -> str:
    return " ".join(tag.get_text(" ", strip=True).split())


def _class_list(tag: Tag) -> list[str]:
    classes = tag.get("class") or []
    if isinstance(classes, str):
        classes = classes.split()
    return list(classes)


def _attr(tag: Tag, name: str) -> str:
    value = tag.get(name)
    if value is None:
        return ""
    if isinstance(value, list):
        return " ".join(value)
    return str(value)


def _is_machinery(tag: Tag) -> bool:
    if tag.has_attr(INSPECTOR_ATTR) or tag.has_attr(INSPECT_ID_ATTR):
        return True
    if _attr(tag, "id").startswith(INSPECTOR_PREFIX):
        return True
    return any(c.startswith(INSPECTOR_PREFIX) for c in _class_list(tag))


def _hides_itself(tag: Tag) -> bool:
    if tag.has_attr("hidden"):
        return True
    if _attr(tag, "aria-hidden").lower() == "true":
        return True
    return bool(HIDDEN_STYLE.search(_attr(tag, "style")))


def is_excluded(tag: Tag) -> bool:
    """Hidden elements, elements inside hidden ancestors and the inspector's own markup."""
    if _is_machinery(tag) or _hides_itself(tag):
        return True
    for parent in tag.parents:
        if not isinstance(parent, Tag) or parent.name == "[document]":
            break
        if _hides_itself(parent) or parent.has_attr(INSPECTOR_ATTR):
            return True
    return False


def guess_component_name(tag: Tag, text: str) -> str:
    """Best guess at the source component that rendered the element."""
    for attr in ("data-component", "data-component-name"):
        value = _attr(tag, attr).strip()
        if value:
            return value
    test_id = _attr(tag, "data-testid").strip()
    if test_id and pascal_case(test_id):
        return pascal_case(test_id)

    for cls in _class_list(tag):
        match = CSS_MODULE_CLASS.match(cls)
        if match:
            return match.group(1)
    for cls in _class_list(tag):
        if PASCAL_CLASS.match(cls):
            return cls
    for cls in _class_list(tag):
        match = BEM_CLASS.match(cls)
        if match:
            return pascal_case(match.group(1))

    name = tag.name
    label = pascal_case(text) if text and len(text) < SHORT_LABEL_LENGTH else ""
    if name == "button" or _attr(tag, "role").lower() == "button":
        return f"{label}Button"
    if name == "a" or _attr(tag, "role").lower() == "link":
        return f"{label}Link"
    if name in FORM_FIELDS:
        field_name = (
            _attr(tag, "name")
            or _attr(tag, "id")
            or _attr(tag, "aria-label")
            or _attr(tag, "placeholder")
        )
        return f"{pascal_case(field_name)}Input"
    if name in LANDMARK_NAMES:
        return LANDMARK_NAMES[name]
    return name.capitalize()


def classify_role(tag: Tag, text: str) -> tuple[SemanticRole, ActionKind | None]:
    name = tag.name
    role = _attr(tag, "role").lower()
    input_type = _attr(tag, "type").lower()
    classes = " ".join(_class_list(tag)).lower()

    is_action = (
        name == "button"
        or role == "button"
        or (name == "input" and input_type in ACTION_INPUT_TYPES)
        or "btn" in classes
        or "button" in classes
        or (tag.has_attr("onclick") and name not in ("a", *FORM_FIELDS))
    )
    if is_action:
        label = " ".join(
            filter(None, [text, _attr(tag, "value"), _attr(tag, "aria-label"), _attr(tag, "title")])
        )
        return SemanticRole.ACTION, classify_action(label, input_type)

    if name == "a" or role == "link" or "link" in classes:
        return SemanticRole.NAVIGATION, None
    if name in FORM_FIELDS:
        return SemanticRole.INPUT, None
    if name in LANDMARK_NAMES:
        return SemanticRole.LAYOUT, None
    if len(text) >= CONTENT_TEXT_LENGTH:
        return SemanticRole.CONTENT, None
    return SemanticRole.UNKNOWN, None


def classify_action(label: str, input_type: str = "") -> ActionKind | None:
    for kind, pattern in ACTION_KEYWORDS:
        if pattern.search(label):
            return kind
    if input_type == "submit":
        return ActionKind.SUBMIT
    return None


def _nth_of_type(tag: Tag) -> int | None:
    parent = tag.parent
    if parent is None:
        return None
    siblings = parent.find_all(tag.name, recursive=False)
    if len(siblings) < 2:  # noqa: PLR2004
        return None
    for index, sibling in enumerate(siblings, start=1):
        if sibling is tag:
            return index
    return None


def build_selector(tag: Tag, depth: int = 4) -> str:
    """CSS selector from the nearest id ancestor, or up to ``depth`` qualified ancestors."""
    parts: list[str] = []
    node: Tag | None = tag
    while isinstance(node, Tag) and node.name != "[document]" and len(parts) < max(depth, 1):
        node_id = _attr(node, "id")
        if node_id and SAFE_CSS_IDENT.match(node_id):
            parts.append(f"#{node_id}")
            break

        part = node.name
        classes = [c for c in _class_list(node) if SAFE_CSS_IDENT.match(c)][:2]
        part += "".join(f".{c}" for c in classes)
        nth = _nth_of_type(node)
        if nth is not None:
            part += f":nth-of-type({nth})"
        parts.append(part)
        node = node.parent
    return " > ".join(reversed(parts))


def _attributes(tag: Tag) -> dict[str, str]:
    attributes: dict[str, str] = {}
    for key in tag.attrs:
        if key in (INSPECT_ATTR, INSPECT_ID_ATTR):
            continue
        attributes[key] = _attr(tag, key)[:MAX_ATTRIBUTE_VALUE]
    return attributes


def _parent_context(tag: Tag) -> ParentContext | None:
    parent = tag.parent
    if not isinstance(parent, Tag) or parent.name == "[document]":
        return None
    return ParentContext(
        tag_name=parent.name,
        class_name=" ".join(_class_list(parent)),
        role=_attr(parent, "role") or None,
    )


def describe_element(tag: Tag, element_id: str, selector_depth: int = 4) -> InspectionElement:
    text = element_text(tag)
    role, action_kind = classify_role(tag, text)
    return InspectionElement(
        id=element_id,
        selector=build_selector(tag, selector_depth),
        tag_name=tag.name,
        component_name_guess=guess_component_name(tag, text),
        text_snippet=text[:MAX_TEXT_SNIPPET],
        attributes=_attributes(tag),
        semantic_role=role,
        action_kind=action_kind,
        parent_context=_parent_context(tag),
    )


def annotate(
    soup: BeautifulSoup,
    max_elements: int = 500,
    selector_depth: int = 4,
) -> list[InspectionElement]:
    """Describe every candidate element and write the description onto it."""
    elements: list[InspectionElement] = []
    seen: set[int] = set()
    for tag in soup.select(CANDIDATE_SELECTOR):
        if len(elements) >= max_elements:
            break
        if id(tag) in seen or is_excluded(tag):
            continue
        seen.add(id(tag))

        element = describe_element(tag, f"insp-{len(elements) + 1}", selector_depth)
        tag[INSPECT_ATTR] = json.dumps(element.model_dump(by_alias=True, mode="json"))
        tag[INSPECT_ID_ATTR] = element.id
        elements.append(element)
    return elements


def strip_base_tags(page: str) -> str:
    return BASE_TAG.sub("", page)


def extract_elements(
    page: str,
    *,
    max_elements: int = 500,
    selector_depth: int = 4,
) -> list[InspectionElement]:
    """Inspection elements of a page, without producing the overlay document."""
    soup = BeautifulSoup(strip_base_tags(page), "html.parser")
    return annotate(soup, max_elements, selector_depth)


# --- Documents ---


def _script_json(value: object) -> str:
    return json.dumps(value).replace("</", "<\\/")


_OVERLAY_STYLE = """<style data-preview-inspector="style">
[data-preview-inspect-id] { cursor: crosshair !important; }
#preview-inspector-highlight {
  position: fixed; pointer-events: none; z-index: 2147483647; display: none;
  border: 2px solid #3b82f6; background: rgba(59, 130, 246, 0.12); border-radius: 2px;
}
#preview-inspector-label {
  position: absolute; top: -22px; left: -2px; padding: 2px 6px; white-space: nowrap;
  font: 11px/16px ui-monospace, monospace; color: #fff; background: #3b82f6;
}
</style>"""

_OVERLAY_SCRIPT = """<script data-preview-inspector="overlay">
(function () {
  var PATH = __PATH__;
  var COUNT = __COUNT__;
  function post(message) { window.parent.postMessage(message, '*'); }

  var highlight = document.createElement('div');
  highlight.id = 'preview-inspector-highlight';
  highlight.setAttribute('data-preview-inspector', 'highlight');
  var label = document.createElement('div');
  label.id = 'preview-inspector-label';
  highlight.appendChild(label);

  function mount() { document.body.appendChild(highlight); }
  if (document.body) { mount(); } else { document.addEventListener('DOMContentLoaded', mount); }

  function inspectable(el) {
    while (el && el.nodeType === 1 && !el.hasAttribute('data-preview-inspect-id')) {
      el = el.parentElement;
    }
    return el && el.nodeType === 1 ? el : null;
  }

  function metadata(el) {
    try { return JSON.parse(el.getAttribute('data-preview-inspect')); } catch (e) { return {}; }
  }

  function onMove(event) {
    var el = inspectable(event.target);
    if (!el) { highlight.style.display = 'none'; return; }
    var rect = el.getBoundingClientRect();
    highlight.style.display = 'block';
    highlight.style.top = rect.top + 'px';
    highlight.style.left = rect.left + 'px';
    highlight.style.width = rect.width + 'px';
    highlight.style.height = rect.height + 'px';
    label.textContent = metadata(el).componentNameGuess || el.tagName.toLowerCase();
  }

  function onClick(event) {
    var el = inspectable(event.target);
    if (!el) return;
    event.preventDefault();
    event.stopPropagation();
    var meta = metadata(el);
    var rect = el.getBoundingClientRect();
    var style = window.getComputedStyle(el);
    meta.boundingBox = { x: rect.x, y: rect.y, width: rect.width, height: rect.height };
    meta.computedStyles = {
      color: style.color, backgroundColor: style.backgroundColor,
      fontSize: style.fontSize, fontWeight: style.fontWeight, fontFamily: style.fontFamily,
      padding: style.padding, margin: style.margin, display: style.display,
      borderRadius: style.borderRadius
    };
    meta.accessibility = {
      role: el.getAttribute('role'), ariaLabel: el.getAttribute('aria-label'),
      tabIndex: el.tabIndex, focusable: el.tabIndex >= 0, disabled: !!el.disabled
    };
    post({ type: 'INSPECTION_ELEMENT_CLICKED', element: meta, path: PATH });
  }

  document.addEventListener('mousemove', onMove, true);
  document.addEventListener('click', onClick, true);

  window.addEventListener('message', function (event) {
    if (event.data && event.data.type === 'EXIT_INSPECTION') {
      document.removeEventListener('mousemove', onMove, true);
      document.removeEventListener('click', onClick, true);
      if (highlight.parentNode) highlight.parentNode.removeChild(highlight);
      post({ type: 'INSPECTION_EXIT', path: PATH });
    }
  });

  post({ type: 'INSPECTION_READY', path: PATH, elementCount: COUNT });
})();
</script>"""


def build_overlay(path: str, element_count: int) -> str:
    script = _OVERLAY_SCRIPT.replace("__PATH__", _script_json(path)).replace(
        "__COUNT__", str(element_count)
    )
    return _OVERLAY_STYLE + script


def _insert_into_body(page: str, snippet: str) -> str:
    match = re.search(r"</body\s*>", page, re.IGNORECASE)
    if match:
        return page[: match.start()] + snippet + page[match.start() :]
    return page + snippet


def render_unavailable(instance_id: str, status: str | None) -> str:
    """Friendly page for instances that are missing or not running."""
    state = status or "unknown"
    return (
        "<!DOCTYPE html>\n"
        '<html><head><meta charset="utf-8"><title>Preview not available</title>'
        "<style>body{font-family:system-ui,sans-serif;display:flex;align-items:center;"
        "justify-content:center;height:100vh;margin:0;color:#555}</style></head><body>"
        f'<div id="preview-inspector-notice" {INSPECTOR_ATTR}="unavailable">'
        "<h1>Preview not available</h1>"
        f"<p>The preview is {html_module.escape(state)}. Start it to use inspection mode.</p>"
        "</div>"
        f'<script {INSPECTOR_ATTR}="status">'
        "window.parent.postMessage({ type: 'INSPECTION_UNAVAILABLE', instanceId: "
        f"{_script_json(instance_id)}, status: {_script_json(state)} }}, '*');"
        "</script>"
        "</body></html>"
    )


def render_degraded(message: str, original_html: str | None = None) -> str:
    """The page as fetched (or an empty skeleton) with a visible failure notice."""
    notice = (
        f'<div id="preview-inspector-notice" {INSPECTOR_ATTR}="degraded" '
        'style="position:fixed;top:0;left:0;right:0;z-index:2147483647;padding:8px 12px;'
        'background:#fef3c7;color:#92400e;font:13px system-ui,sans-serif;">'
        f"Inspection mode is unavailable for this page: {html_module.escape(message)}"
        "</div>"
        f'<script {INSPECTOR_ATTR}="error">'
        "window.parent.postMessage({ type: 'INSPECTION_ERROR', error: "
        f"{_script_json(message)} }}, '*');"
        "</script>"
    )
    if not original_html:
        return (
            "<!DOCTYPE html>\n"
            '<html><head><meta charset="utf-8"><title>Inspection unavailable</title></head>'
            f"<body>{notice}</body></html>"
        )
    return _insert_into_body(original_html, notice)


class InspectionOverlayGenerator:
    """Builds inspection documents for running instances."""

    def __init__(
        self,
        registry: InstanceRegistry,
        tracker: NavigationTracker,
        client: httpx.AsyncClient,
        *,
        timeout: float = 15.0,
        max_elements: int = 500,
        selector_depth: int = 4,
    ) -> None:
        self.registry = registry
        self.tracker = tracker
        self._client = client
        self._timeout = timeout
        self._max_elements = max_elements
        self._selector_depth = selector_depth

    def resolve_path(self, instance_id: str, requested_path: str | None) -> str:
        """Explicit path, else the last visited one, else ``/``. Recorded for next time."""
        if requested_path and requested_path.strip():
            path = normalize_path(requested_path.strip())
        else:
            path = self.tracker.get(instance_id)
        return self.tracker.record(instance_id, path)

    async def fetch_page(self, instance: PreviewInstance, path: str) -> str:
        url = f"{instance.origin_url}{path}"
        try:
            response = await self._client.get(
                url,
                headers={"Accept": "text/html"},
                timeout=self._timeout,
                follow_redirects=True,
            )
        except httpx.HTTPError as e:
            raise RenderDegradedError(
                f"Could not load {path}: {str(e) or type(e).__name__}"
            ) from e

        if not HTTPStatus.OK <= response.status_code < HTTPStatus.MULTIPLE_CHOICES:
            raise RenderDegradedError(
                f"Preview returned HTTP {response.status_code} for {path}",
                original_html=response.text or None,
            )
        return response.text

    def render_overlay(self, instance: PreviewInstance, path: str, page: str) -> str:
        try:
            soup = BeautifulSoup(strip_base_tags(page), "html.parser")
            elements = annotate(soup, self._max_elements, self._selector_depth)
            document = rewrite_for_origin(str(soup), instance.origin_url or "")
            document = inject_before_close(document, build_overlay(path, len(elements)))
        except Exception as e:
            raise RenderDegradedError(f"Could not annotate page: {e}", original_html=page) from e

        logger.info(
            "Inspection overlay generated",
            instance_id=instance.id,
            path=path,
            element_count=len(elements),
        )
        return document

    async def generate(self, instance_id: str, requested_path: str | None = None) -> str:
        """Inspection document for an instance. Never raises."""
        instance = self.registry.get(instance_id)
        if instance is None or not instance.is_running:
            status = instance.status.value if instance else None
            logger.info("Inspection requested for unavailable preview", instance_id=instance_id)
            return render_unavailable(instance_id, status)

        path = self.resolve_path(instance.id, requested_path)
        page: str | None = None
        try:
            page = await self.fetch_page(instance, path)
            return self.render_overlay(instance, path, page)
        except RenderDegradedError as e:
            logger.warning(
                "Inspection degraded",
                instance_id=instance.id,
                path=path,
                error=e.message,
            )
            return self._degraded(instance, e.message, e.original_html or page)
        except Exception as e:
            logger.exception("Inspection failed", instance_id=instance.id, path=path)
            return self._degraded(instance, str(e) or type(e).__name__, page)

    def _degraded(self, instance: PreviewInstance, message: str, page: str | None) -> str:
        if page and instance.origin_url:
            try:
                page = rewrite_for_origin(strip_base_tags(page), instance.origin_url)
            except Exception:
                logger.warning("Could not rewrite degraded page", instance_id=instance.id)
        return render_degraded(message, page)

    async def elements(
        self, instance_id: str, requested_path: str | None = None
    ) -> tuple[str, list[InspectionElement]]:
        """Path and element list for the JSON variant.

        Raises:
            InstanceNotReadyError: The instance is not running
            RenderDegradedError: The page could not be fetched
        """
        instance = self.registry.get(instance_id)
        if instance is None or not instance.is_running:
            status = instance.status.value if instance else "unknown"
            raise InstanceNotReadyError(instance_id, status)

        path = self.resolve_path(instance.id, requested_path)
        page = await self.fetch_page(instance, path)
        return path, extract_elements(
            page, max_elements=self._max_elements, selector_depth=self._selector_depth
        )
