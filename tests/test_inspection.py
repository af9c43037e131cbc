"""Tests for the inspection overlay."""

from __future__ import annotations

import json
from collections.abc import AsyncGenerator

import httpx
import pytest
import pytest_asyncio
import respx
from bs4 import BeautifulSoup

from preview_gateway.exceptions import InstanceNotReadyError, RenderDegradedError
from preview_gateway.inspection import (
    INSPECT_ATTR,
    InspectionOverlayGenerator,
    build_selector,
    classify_action,
    classify_role,
    extract_elements,
    guess_component_name,
    is_excluded,
    pascal_case,
    render_degraded,
    render_unavailable,
)
from preview_gateway.models.instance import ActionKind, SemanticRole
from preview_gateway.navigation import NavigationTracker
from preview_gateway.registry import InstanceRegistry
from tests.conftest import (
    PROJECT_ID,
    UPSTREAM_ORIGIN,
    FakeLauncher,
    start_running_instance,
)

PRICING_PAGE = """<!DOCTYPE html>
<html>
<head><base href="/"><title>Pricing</title></head>
<body>
  <header class="SiteHeader">
    <nav><a href="/">Home</a><a href="/pricing">Pricing</a></nav>
  </header>
  <main id="content">
    <section class="pricing-card pricing-card--featured">
      <h2>Pro</h2>
      <button class="btn btn-primary">Subscribe</button>
      <button>Cancel</button>
    </section>
    <form>
      <input name="email" type="email" placeholder="Email">
      <input type="hidden" name="csrf" value="x">
      <button type="submit">Send</button>
    </form>
    <button data-testid="delete-account">Delete account</button>
    <div hidden><button>Secret</button></div>
    <button style="display: none">Ghost</button>
  </main>
</body>
</html>
"""


def _tag(markup: str, name: str):
    return BeautifulSoup(markup, "html.parser").find(name)


@pytest_asyncio.fixture
async def inspector(
    registry: InstanceRegistry, tracker: NavigationTracker
) -> AsyncGenerator[InspectionOverlayGenerator, None]:
    async with httpx.AsyncClient() as client:
        yield InspectionOverlayGenerator(registry, tracker, client, timeout=2.0)


class TestExtractElements:
    def test_candidates_in_document_order(self):
        elements = extract_elements(PRICING_PAGE)

        assert [e.tag_name for e in elements] == [
            "header",
            "nav",
            "a",
            "a",
            "main",
            "section",
            "button",
            "button",
            "form",
            "input",
            "button",
            "button",
        ]
        assert [e.id for e in elements] == [f"insp-{i}" for i in range(1, 13)]

    def test_hidden_elements_excluded(self):
        texts = [e.text_snippet for e in extract_elements(PRICING_PAGE)]
        assert "Secret" not in texts
        assert "Ghost" not in texts

    def test_every_button_has_unique_selector_and_action_role(self):
        soup = BeautifulSoup(PRICING_PAGE, "html.parser")
        buttons = [e for e in extract_elements(PRICING_PAGE) if e.tag_name == "button"]

        assert len(buttons) == 4
        for button in buttons:
            assert button.semantic_role == SemanticRole.ACTION
            matches = soup.select(button.selector)
            assert len(matches) == 1, button.selector
            assert matches[0].get_text(strip=True) == button.text_snippet

    def test_action_kinds(self):
        kinds = {
            e.text_snippet: e.action_kind
            for e in extract_elements(PRICING_PAGE)
            if e.tag_name == "button"
        }
        assert kinds == {
            "Subscribe": ActionKind.SUBMIT,
            "Cancel": ActionKind.CANCEL,
            "Send": ActionKind.SUBMIT,
            "Delete account": ActionKind.DESTRUCTIVE,
        }

    def test_component_names(self):
        names = {e.text_snippet: e.component_name_guess for e in extract_elements(PRICING_PAGE)}
        assert names["Subscribe"] == "SubscribeButton"
        assert names["Home"] == "HomeLink"
        assert names["Delete account"] == "DeleteAccount"

    def test_layout_and_input_roles(self):
        elements = {e.selector: e for e in extract_elements(PRICING_PAGE)}

        main = elements["#content"]
        assert main.semantic_role == SemanticRole.LAYOUT
        assert main.component_name_guess == "Main"

        email = next(e for e in elements.values() if e.tag_name == "input")
        assert email.semantic_role == SemanticRole.INPUT
        assert email.component_name_guess == "EmailInput"
        assert email.attributes["placeholder"] == "Email"

    def test_parent_context(self):
        subscribe = next(
            e for e in extract_elements(PRICING_PAGE) if e.text_snippet == "Subscribe"
        )
        assert subscribe.parent_context is not None
        assert subscribe.parent_context.tag_name == "section"
        assert subscribe.parent_context.class_name == "pricing-card pricing-card--featured"

    def test_max_elements(self):
        assert len(extract_elements(PRICING_PAGE, max_elements=3)) == 3

    def test_camel_case_serialisation(self):
        element = extract_elements(PRICING_PAGE)[0]
        data = element.model_dump(by_alias=True, mode="json")
        assert data["tagName"] == "header"
        assert data["componentNameGuess"] == "SiteHeader"
        assert data["semanticRole"] == "layout"


class TestElementHelpers:
    def test_pascal_case(self):
        assert pascal_case("delete-account") == "DeleteAccount"
        assert pascal_case("get started now") == "GetStartedNow"
        assert pascal_case("") == ""

    def test_css_module_class(self):
        tag = _tag('<button class="Hero_cta__a1b2c">Go</button>', "button")
        assert guess_component_name(tag, "Go") == "Hero"

    def test_explicit_component_attribute(self):
        tag = _tag('<div data-component="PricingTable"></div>', "div")
        assert guess_component_name(tag, "") == "PricingTable"

    def test_role_button_on_div(self):
        tag = _tag('<div role="button">Remove item</div>', "div")
        role, kind = classify_role(tag, "Remove item")
        assert role == SemanticRole.ACTION
        assert kind == ActionKind.DESTRUCTIVE

    def test_long_text_is_content(self):
        text = "word " * 30
        tag = _tag(f"<div>{text}</div>", "div")
        assert classify_role(tag, text.strip())[0] == SemanticRole.CONTENT

    @pytest.mark.parametrize(
        ("label", "input_type", "expected"),
        [
            ("Save changes", "", ActionKind.SUBMIT),
            ("Add to cart", "", ActionKind.CREATE),
            ("Edit profile", "", ActionKind.EDIT),
            ("Close", "", ActionKind.CANCEL),
            ("Go", "submit", ActionKind.SUBMIT),
            ("Go", "", None),
        ],
    )
    def test_classify_action(self, label, input_type, expected):
        assert classify_action(label, input_type) == expected

    def test_aria_hidden_ancestor_excluded(self):
        soup = BeautifulSoup('<div aria-hidden="true"><a href="/x">x</a></div>', "html.parser")
        assert is_excluded(soup.find("a"))

    def test_inspector_markup_excluded(self):
        soup = BeautifulSoup(
            '<div data-preview-inspector="overlay"><button>x</button></div>', "html.parser"
        )
        assert is_excluded(soup.find("button"))

    def test_selector_depth(self):
        soup = BeautifulSoup(
            "<div><section><article><p><a href='/x'>x</a></p></article></section></div>",
            "html.parser",
        )
        assert build_selector(soup.find("a"), depth=2) == "p > a"


class TestGenerate:
    @pytest.mark.asyncio
    async def test_overlay_document(
        self,
        inspector: InspectionOverlayGenerator,
        registry: InstanceRegistry,
        tracker: NavigationTracker,
        fake_launcher: FakeLauncher,
    ):
        instance = await start_running_instance(registry, fake_launcher)

        with respx.mock(assert_all_called=False) as mock:
            mock.get(f"{UPSTREAM_ORIGIN}/pricing").mock(
                return_value=httpx.Response(200, html=PRICING_PAGE)
            )
            document = await inspector.generate(instance.id, "/pricing")

        soup = BeautifulSoup(document, "html.parser")
        annotated = soup.select(f"[{INSPECT_ATTR}]")
        assert len(annotated) == 12
        first = json.loads(annotated[0][INSPECT_ATTR])
        assert first["componentNameGuess"] == "SiteHeader"

        assert soup.find("base") is None
        assert "INSPECTION_READY" in document
        assert "var COUNT = 12;" in document
        assert 'var PATH = "/pricing";' in document
        assert f'href="{UPSTREAM_ORIGIN}/pricing"' in document
        assert tracker.get(instance.id) == "/pricing"

    @pytest.mark.asyncio
    async def test_defaults_to_last_visited_path(
        self,
        inspector: InspectionOverlayGenerator,
        registry: InstanceRegistry,
        tracker: NavigationTracker,
        fake_launcher: FakeLauncher,
    ):
        instance = await start_running_instance(registry, fake_launcher)
        tracker.record(instance.id, "/about")

        with respx.mock(assert_all_called=False) as mock:
            route = mock.get(f"{UPSTREAM_ORIGIN}/about").mock(
                return_value=httpx.Response(
                    200, html="<html><body><a href='/'>Home</a></body></html>"
                )
            )
            await inspector.generate(instance.id)

        assert route.called

    @pytest.mark.asyncio
    async def test_unreachable_instance_degrades(
        self,
        inspector: InspectionOverlayGenerator,
        registry: InstanceRegistry,
        fake_launcher: FakeLauncher,
    ):
        instance = await start_running_instance(registry, fake_launcher)

        with respx.mock(assert_all_called=False) as mock:
            mock.get(f"{UPSTREAM_ORIGIN}/pricing").mock(
                side_effect=httpx.ConnectError("Connection refused")
            )
            document = await inspector.generate(instance.id, "/pricing")

        assert "INSPECTION_ERROR" in document
        assert 'data-preview-inspector="degraded"' in document
        assert "Could not load /pricing" in document

    @pytest.mark.asyncio
    async def test_error_status_degrades(
        self,
        inspector: InspectionOverlayGenerator,
        registry: InstanceRegistry,
        fake_launcher: FakeLauncher,
    ):
        instance = await start_running_instance(registry, fake_launcher)

        with respx.mock(assert_all_called=False) as mock:
            mock.get(f"{UPSTREAM_ORIGIN}/broken").mock(
                return_value=httpx.Response(500, text="boom")
            )
            document = await inspector.generate(instance.id, "/broken")

        assert "HTTP 500" in document
        assert "INSPECTION_ERROR" in document

    @pytest.mark.asyncio
    async def test_error_status_keeps_fetched_page(
        self,
        inspector: InspectionOverlayGenerator,
        registry: InstanceRegistry,
        fake_launcher: FakeLauncher,
    ):
        instance = await start_running_instance(registry, fake_launcher)
        error_page = "<html><body><h1>Something went wrong</h1></body></html>"

        with respx.mock(assert_all_called=False) as mock:
            mock.get(f"{UPSTREAM_ORIGIN}/broken").mock(
                return_value=httpx.Response(500, html=error_page)
            )
            document = await inspector.generate(instance.id, "/broken")

        assert "<h1>Something went wrong</h1>" in document
        assert 'data-preview-inspector="degraded"' in document
        assert document.index("Something went wrong") < document.index("INSPECTION_ERROR")

    @pytest.mark.asyncio
    async def test_unknown_instance(self, inspector: InspectionOverlayGenerator):
        document = await inspector.generate("pv_missing", "/")

        assert "INSPECTION_UNAVAILABLE" in document
        assert 'data-preview-inspector="unavailable"' in document

    @pytest.mark.asyncio
    async def test_starting_instance(
        self, inspector: InspectionOverlayGenerator, registry: InstanceRegistry
    ):
        slow = FakeLauncher(delay=10.0)
        instance = registry.create(PROJECT_ID, "user-1", slow.launch)

        document = await inspector.generate(instance.id)

        assert "The preview is starting." in document
        await registry.stop(instance.id)


class TestElements:
    @pytest.mark.asyncio
    async def test_elements(
        self,
        inspector: InspectionOverlayGenerator,
        registry: InstanceRegistry,
        fake_launcher: FakeLauncher,
    ):
        instance = await start_running_instance(registry, fake_launcher)

        with respx.mock(assert_all_called=False) as mock:
            mock.get(f"{UPSTREAM_ORIGIN}/pricing").mock(
                return_value=httpx.Response(200, html=PRICING_PAGE)
            )
            path, elements = await inspector.elements(instance.id, "pricing?plan=pro")

        assert path == "/pricing"
        assert len(elements) == 12

    @pytest.mark.asyncio
    async def test_not_running(self, inspector: InspectionOverlayGenerator):
        with pytest.raises(InstanceNotReadyError):
            await inspector.elements("pv_missing")

    @pytest.mark.asyncio
    async def test_fetch_failure(
        self,
        inspector: InspectionOverlayGenerator,
        registry: InstanceRegistry,
        fake_launcher: FakeLauncher,
    ):
        instance = await start_running_instance(registry, fake_launcher)

        with respx.mock(assert_all_called=False) as mock:
            mock.get(f"{UPSTREAM_ORIGIN}/").mock(side_effect=httpx.ReadTimeout("timed out"))
            with pytest.raises(RenderDegradedError):
                await inspector.elements(instance.id, "/")


class TestDocuments:
    def test_unavailable_escapes_ids(self):
        document = render_unavailable("</script><b>", "stopped")
        assert "</script><b>" not in document
        assert "The preview is stopped." in document

    def test_degraded_keeps_original_page(self):
        document = render_degraded("boom", "<html><body><p>Hello</p></body></html>")
        assert document.index("<p>Hello</p>") < document.index("INSPECTION_ERROR")
        assert document.endswith("</body></html>")

    def test_degraded_without_page(self):
        document = render_degraded("boom")
        assert document.startswith("<!DOCTYPE html>")
        assert "Inspection mode is unavailable for this page: boom" in document
