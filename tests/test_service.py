from unittest.mock import AsyncMock, Mock

import pytest
from lsprotocol.types import CompletionItemKind, DiagnosticSeverity, Position

from vue_class_language_server.component import parse_component
from vue_class_language_server.documents import DocumentCache
from vue_class_language_server.markup import DIRECTIVE_DOCS, parse_html
from vue_class_language_server.position import LineIndex
from vue_class_language_server.service import (
    PositionKind,
    VueLanguageService,
    classify_position,
    describe_member,
)
from vue_class_language_server.typescript import (
    CompletionEntry,
    EngineDiagnostic,
    EngineLocation,
    QuickInfo,
    TypeScriptService,
)

from samples import APP, APP_URI, CHILD, CHILD_URI


def _position(text, offset):
    line, character = LineIndex(text).position_at(offset)
    return Position(line=line, character=character)


@pytest.fixture
def cache():
    cache = DocumentCache(read_file=lambda uri: CHILD if uri == CHILD_URI else None)
    cache.open(APP_URI, APP, 1)
    return cache


@pytest.fixture
def engine():
    engine = Mock(spec=TypeScriptService)
    engine.available = True
    return engine


def test_classify_position():
    html = parse_html(APP)
    assert classify_position(APP, html, APP.index(':msg="msg"') + 7) == PositionKind.EXPRESSION
    assert classify_position(APP, html, APP.index("{{ upper }}") + 4) == PositionKind.EXPRESSION
    assert classify_position(APP, html, APP.index('v-if="count"') + 7) == PositionKind.EXPRESSION
    assert classify_position(APP, html, APP.index('id="app"') + 5) == PositionKind.MARKUP
    assert classify_position(APP, html, APP.index("v-if")) == PositionKind.MARKUP
    assert classify_position(APP, html, APP.index("count = 0")) == PositionKind.SCRIPT
    assert classify_position(APP, html, len(APP)) == PositionKind.NONE


def test_classify_outside_interpolation():
    text = "<template><p>a {{ b }} c</p></template>"
    html = parse_html(text)
    assert classify_position(text, html, text.index("a ")) == PositionKind.MARKUP
    assert classify_position(text, html, text.index(" c")) == PositionKind.MARKUP
    assert classify_position(text, html, text.index("b")) == PositionKind.EXPRESSION


def test_describe_member():
    metadata = parse_component(APP[APP.index("\nimport Vue") : APP.index("</script>")])
    assert describe_member(metadata, "const msg: string") == "(property) App.msg: string"
    assert describe_member(metadata, "const upper: string") == "(computed) App.upper: string"
    assert describe_member(metadata, "const count: number") == "(data) App.count: number"
    assert describe_member(metadata, "const item: number") == "const item: number"
    assert describe_member(metadata, "(property) x: number") == "(property) x: number"


@pytest.mark.asyncio
async def test_hover_expression(cache, engine):
    engine.quick_info = AsyncMock(
        side_effect=lambda file_name, offset: QuickInfo(offset, 5, "const upper: string", "Shouted")
    )
    service = VueLanguageService(cache, engine)

    offset = APP.index("{{ upper }}") + 3
    hover = await service.do_hover(APP_URI, _position(APP, offset))

    assert hover is not None
    assert "(computed) App.upper: string" in hover.contents.value
    assert "Shouted" in hover.contents.value
    assert hover.range.start == _position(APP, offset)
    assert hover.range.end == _position(APP, offset + 5)

    vdoc = cache.get_virtual_document(APP_URI)
    engine.sync.assert_called_with(APP_URI + ".ts", vdoc.version, vdoc.synthetic_text)
    file_name, synthetic = engine.quick_info.call_args[0]
    assert vdoc.synthetic_text[synthetic : synthetic + 5] == "upper"


@pytest.mark.asyncio
async def test_hover_engine_error_returns_none(cache, engine):
    engine.quick_info = AsyncMock(side_effect=RuntimeError("boom"))
    service = VueLanguageService(cache, engine)
    offset = APP.index("{{ upper }}") + 3
    assert await service.do_hover(APP_URI, _position(APP, offset)) is None


@pytest.mark.asyncio
async def test_hover_without_engine(cache):
    service = VueLanguageService(cache)
    offset = APP.index("{{ upper }}") + 3
    assert await service.do_hover(APP_URI, _position(APP, offset)) is None


@pytest.mark.asyncio
async def test_complete_expression_filters_kinds(cache, engine):
    engine.completions = AsyncMock(
        return_value=[
            CompletionEntry("msg", kind=CompletionItemKind.Constant, sort_text="11"),
            CompletionEntry("window", kind=CompletionItemKind.Variable, sort_text="15"),
            CompletionEntry("if", kind=CompletionItemKind.Keyword, sort_text="15"),
            CompletionEntry("HelloWorld", kind=CompletionItemKind.Class, sort_text="11"),
            CompletionEntry("count", kind=CompletionItemKind.Variable, sort_text="11"),
        ]
    )
    service = VueLanguageService(cache, engine)

    offset = APP.index("{{ upper }}") + 3
    result = await service.do_complete(APP_URI, _position(APP, offset))

    assert [item.label for item in result.items] == ["msg", "count"]
    assert all(item.kind == CompletionItemKind.Property for item in result.items)
    assert result.items[0].detail == "(property) App.msg: string"


@pytest.mark.asyncio
async def test_complete_script_passes_through(cache, engine):
    engine.completions = AsyncMock(
        return_value=[CompletionEntry("toUpperCase", kind=CompletionItemKind.Method)]
    )
    service = VueLanguageService(cache, engine)

    offset = APP.index("toUpperCase")
    result = await service.do_complete(APP_URI, _position(APP, offset))

    assert [item.label for item in result.items] == ["toUpperCase"]
    assert result.items[0].kind == CompletionItemKind.Method
    vdoc = cache.get_virtual_document(APP_URI)
    _, synthetic, _ = engine.completions.call_args[0]
    assert vdoc.synthetic_text[synthetic:].startswith("toUpperCase")


@pytest.mark.asyncio
async def test_definition_of_preamble_binding_resolves_to_member(cache, engine):
    vdoc = cache.get_virtual_document(APP_URI)
    binding = vdoc.synthetic_text.index("const {msg") + len("const {")
    engine.definition = AsyncMock(
        return_value=[EngineLocation(vdoc.file_name, {}, start=binding, length=3)]
    )
    service = VueLanguageService(cache, engine)

    offset = APP.index(':msg="msg"') + len(':msg="')
    locations = await service.find_definition(APP_URI, _position(APP, offset))

    assert len(locations) == 1
    assert locations[0].uri == APP_URI
    member = APP.index("msg!: string")
    assert locations[0].range.start == _position(APP, member)
    assert locations[0].range.end == _position(APP, member + 3)


@pytest.mark.asyncio
async def test_definition_outside_projection_passes_through(cache, engine):
    lsp_range = {"start": {"line": 3, "character": 2}, "end": {"line": 3, "character": 9}}
    engine.definition = AsyncMock(
        return_value=[EngineLocation("file:///proj/node_modules/vue/types/vue.d.ts", lsp_range)]
    )
    service = VueLanguageService(cache, engine)

    offset = APP.index("{{ upper }}") + 3
    locations = await service.find_definition(APP_URI, _position(APP, offset))

    assert locations[0].uri == "file:///proj/node_modules/vue/types/vue.d.ts"
    assert locations[0].range.start == Position(line=3, character=2)


def test_map_diagnostics(cache):
    service = VueLanguageService(cache)
    vdoc = cache.get_virtual_document(APP_URI)
    in_render = vdoc.synthetic_text.index("if(count)") + 3
    in_script = vdoc.synthetic_text.index("count = 0")

    diagnostics = service.map_diagnostics(
        APP_URI,
        [
            EngineDiagnostic(in_render, 5, "Not a boolean", severity=1, code=2322),
            EngineDiagnostic(in_script, 5, "Unused", severity=4, source="typescript"),
        ],
    )

    template_offset = APP.index('v-if="count"') + len('v-if="')
    assert diagnostics[0].range.start == _position(APP, template_offset)
    assert diagnostics[0].range.end == _position(APP, template_offset + 5)
    assert diagnostics[0].severity == DiagnosticSeverity.Error
    assert diagnostics[0].code == 2322
    assert diagnostics[0].source == "ts"

    assert diagnostics[1].range.start == _position(APP, APP.index("count = 0"))
    assert diagnostics[1].source == "typescript"


def test_map_diagnostics_clamps_to_document(cache):
    service = VueLanguageService(cache)
    vdoc = cache.get_virtual_document(APP_URI)
    end = len(vdoc.synthetic_text) - 1
    diagnostics = service.map_diagnostics(APP_URI, [EngineDiagnostic(end, 500, "x")])
    assert diagnostics[0].range.end == _position(APP, len(APP))


def test_template_diagnostics():
    cache = DocumentCache(read_file=lambda uri: None)
    text = "<template><div><p v-else>z</p></div></template>"
    cache.open("file:///x.vue", text, 1)
    diagnostics = VueLanguageService(cache).template_diagnostics("file:///x.vue")

    assert len(diagnostics) == 1
    assert diagnostics[0].severity == DiagnosticSeverity.Warning
    assert diagnostics[0].range.start == _position(text, text.index("v-else"))
    assert diagnostics[0].range.end == _position(text, text.index("v-else") + 6)


@pytest.mark.asyncio
async def test_markup_hover_directive(cache):
    service = VueLanguageService(cache)
    hover = await service.do_hover(APP_URI, _position(APP, APP.index("v-if") + 1))
    assert hover.contents.value == DIRECTIVE_DOCS["v-if"]


@pytest.mark.asyncio
async def test_markup_hover_registered_component(cache):
    service = VueLanguageService(cache)
    hover = await service.do_hover(APP_URI, _position(APP, APP.index("<HelloWorld") + 3))

    assert "**HelloWorld**" in hover.contents.value
    assert "Greets the user." in hover.contents.value
    assert "- `msg`: `String` (required)" in hover.contents.value


@pytest.mark.asyncio
async def test_markup_hover_component_prop(cache):
    service = VueLanguageService(cache)
    hover = await service.do_hover(APP_URI, _position(APP, APP.index(":msg") + 2))
    assert "(property) HelloWorld.msg: String" in hover.contents.value
    assert "Text of the greeting." in hover.contents.value


@pytest.mark.asyncio
async def test_markup_completion_in_start_tag(cache):
    service = VueLanguageService(cache)
    offset = APP.index("<HelloWorld") + len("<HelloWorld ")
    result = await service.do_complete(APP_URI, _position(APP, offset))

    labels = [item.label for item in result.items]
    assert labels[0] == ":msg"
    assert "v-if" in labels and "v-for" in labels


@pytest.mark.asyncio
async def test_markup_completion_of_component_tags():
    text = APP.replace("<HelloWorld :msg=\"msg\"/>", "<Hel")
    cache = DocumentCache(read_file=lambda uri: CHILD if uri == CHILD_URI else None)
    cache.open(APP_URI, text, 1)
    service = VueLanguageService(cache)

    result = await service.do_complete(APP_URI, _position(text, text.index("<Hel") + 4))
    assert [item.label for item in result.items] == ["HelloWorld"]
    assert result.items[0].kind == CompletionItemKind.Class


def test_map_to_and_from_generated(cache):
    service = VueLanguageService(cache)
    offset = APP.index("{{ upper }}") + 3
    generated = service.map_to_generated(APP_URI, _position(APP, offset))
    assert generated is not None
    assert service.map_from_generated(APP_URI, generated) == _position(APP, offset)


def test_classify_inside_interpolation_with_less_than():
    text = "<template><p>{{ count < 10 }}</p></template>"
    html = parse_html(text)
    assert classify_position(text, html, text.index("10")) == PositionKind.EXPRESSION
    assert classify_position(text, html, text.index("count")) == PositionKind.EXPRESSION


def test_document_symbols(cache):
    symbols = VueLanguageService(cache).document_symbols(APP_URI)

    assert [symbol.name for symbol in symbols] == ["template", "script"]
    template = symbols[0]
    assert template.selection_range.start == _position(APP, 1)
    assert template.selection_range.end == _position(APP, len("<template"))
    div = template.children[0]
    assert div.name == "div#app"
    assert [child.name for child in div.children] == ["HelloWorld", "p"]
    assert symbols[1].children == []


def test_document_highlights_from_end_tag(cache):
    service = VueLanguageService(cache)
    end_tag = APP.index("</p>")
    highlights = service.document_highlights(APP_URI, _position(APP, end_tag + 3))

    start_tag = APP.index("<p v-if")
    assert [(h.range.start, h.range.end) for h in highlights] == [
        (_position(APP, start_tag + 1), _position(APP, start_tag + 2)),
        (_position(APP, end_tag + 2), _position(APP, end_tag + 3)),
    ]


def test_document_highlights_of_self_closing_tag_and_content(cache):
    service = VueLanguageService(cache)
    offset = APP.index("<HelloWorld") + 4
    assert len(service.document_highlights(APP_URI, _position(APP, offset))) == 1
    offset = APP.index("{{ upper }}") + 3
    assert service.document_highlights(APP_URI, _position(APP, offset)) == []
