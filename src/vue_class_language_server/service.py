"""Language features for .vue documents.

Positions inside template expressions are projected forward into the virtual
TypeScript document, answered by the TypeScript server, and results are
projected back. Positions in plain markup are answered locally.
"""

import logging
import re
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from lsprotocol import converters
from lsprotocol.types import (
    CompletionItem,
    CompletionItemKind,
    CompletionList,
    Diagnostic,
    DiagnosticSeverity,
    DocumentHighlight,
    DocumentHighlightKind,
    DocumentSymbol,
    Hover,
    InsertTextFormat,
    Location,
    MarkupContent,
    MarkupKind,
    Position,
    Range,
    SymbolKind,
)

from .component import MEMBER_ROLES, ComponentMember, ComponentMetadata, MemberKind
from .documents import CacheEntry, DocumentCache, VirtualDocument, get_uri
from .markup import (
    DIRECTIVE_DOCS,
    DIRECTIVE_SNIPPETS,
    HtmlDocument,
    Node,
    TokenType,
    directive_doc,
    element_name,
    is_inside_start_tag,
    scan,
)
from .transpiler import ExpressionKind, is_binding, template_warnings
from .typescript import CompletionEntry, EngineDiagnostic, EngineLocation, TypeScriptService

logger = logging.getLogger(__name__)

converter = converters.get_converter()

DIAGNOSTIC_SOURCE = "vue-class"

# Kinds kept when completing inside a template expression
EXPRESSION_COMPLETION_KINDS = frozenset(
    [
        CompletionItemKind.Variable,
        CompletionItemKind.Constant,
        CompletionItemKind.Field,
        CompletionItemKind.Property,
    ]
)
# TypeScript sorts globals and keywords under this prefix
GLOBAL_SORT_PREFIX = "15"

_CONST_DISPLAY_RE = re.compile(r"^const ([\w$]+)")
_TAG_PREFIX_RE = re.compile(r"<([\w-]*)$")


class PositionKind(Enum):
    EXPRESSION = "expression"
    SCRIPT = "script"
    MARKUP = "markup"
    NONE = "none"


def _in_interpolation(content: str, index: int) -> bool:
    left_open = content.rfind("{{", 0, index)
    if left_open < 0 or content.rfind("}}", 0, index) > left_open:
        return False
    right_close = content.find("}}", index)
    if right_close < 0:
        return False
    right_open = content.find("{{", index)
    return right_open < 0 or right_open > right_close


def _inside_value(text: str, value_start: int, value_end: int, offset: int) -> bool:
    if text[:1] in ("'", '"'):
        closed = len(text) > 1 and text[-1] == text[0]
        return value_start < offset and (offset < value_end or not closed)
    return value_start <= offset <= value_end


def classify_position(text: str, html: HtmlDocument, offset: int) -> PositionKind:
    """Decide which engine answers a query at ``offset``.

    Only the tokens of the innermost node up to ``offset`` are scanned.
    """
    script = html.find_root("script")
    if (
        script is not None
        and script.start_tag_end is not None
        and script.content_start <= offset <= script.content_end
    ):
        return PositionKind.SCRIPT

    template = html.find_root("template")
    if template is None or not template.start < offset <= template.end:
        return PositionKind.NONE

    node = html.find_node_at(offset)
    attribute_name: Optional[str] = None
    for token in scan(text, node.start, node.end):
        if token.offset > offset:
            break
        if token.type == TokenType.ATTRIBUTE_NAME:
            attribute_name = token.text
        elif token.type == TokenType.ATTRIBUTE_VALUE:
            if _inside_value(token.text, token.offset, token.end, offset):
                if attribute_name is not None and is_binding(attribute_name):
                    return PositionKind.EXPRESSION
                return PositionKind.MARKUP
            attribute_name = None
        elif token.type in (TokenType.START_TAG_CLOSE, TokenType.START_TAG_SELF_CLOSE):
            attribute_name = None
        elif token.type == TokenType.CONTENT and offset <= token.end:
            if _in_interpolation(token.text, offset - token.offset):
                return PositionKind.EXPRESSION
    return PositionKind.MARKUP


def describe_member(metadata: ComponentMetadata, display: str) -> str:
    """Rewrite ``const name: T`` into ``(role) Component.name: T`` for members."""
    match = _CONST_DISPLAY_RE.match(display)
    if not match:
        return display
    member = metadata.find_member(match.group(1))
    if member is None:
        return display
    role = MEMBER_ROLES[member.kind]
    return f"({role}) {metadata.name}.{member.name}{display[match.end():]}"


def describe_component(name: str, component: ComponentMetadata) -> str:
    parts = [f"**{name}**"]
    if component.documentation:
        parts.append(component.documentation)
    props = ([component.model] if component.model else []) + component.props
    if props:
        lines = ["**Props:**"]
        for prop in props:
            line = f"- `{prop.name}`: `{prop.type}`"
            if prop.required:
                line += " (required)"
            if prop.kind == MemberKind.MODEL:
                line += f" (v-model, event `{prop.event or 'input'}`)"
            lines.append(line)
        parts.append("\n".join(lines))
    return "\n\n".join(parts)


def _markdown(value: str) -> MarkupContent:
    return MarkupContent(kind=MarkupKind.Markdown, value=value)


def _coerce_severity(value: Optional[int]) -> Optional[DiagnosticSeverity]:
    if value is None:
        return None
    try:
        return DiagnosticSeverity(value)
    except ValueError:
        return None


class VueLanguageService:
    """Hover, completion, definition and diagnostics over the document cache."""

    def __init__(self, cache: DocumentCache, engine: Optional[TypeScriptService] = None):
        self.cache = cache
        self.engine = engine

    @property
    def engine_available(self) -> bool:
        return self.engine is not None and self.engine.available

    def virtual_document(self, uri: str) -> Optional[VirtualDocument]:
        """The current virtual document, synced with the TypeScript server."""
        vdoc = self.cache.get_virtual_document(uri)
        if vdoc is not None and self.engine_available:
            self.engine.sync(vdoc.file_name, vdoc.version, vdoc.synthetic_text)
        return vdoc

    def _range(self, entry: CacheEntry, start: int, end: int) -> Range:
        size = len(entry.text)
        start = max(min(start, size), 0)
        end = max(min(end, size), start)
        start_line, start_char = entry.line_index.position_at(start)
        end_line, end_char = entry.line_index.position_at(end)
        return Range(
            start=Position(line=start_line, character=start_char),
            end=Position(line=end_line, character=end_char),
        )

    def _locate(
        self, uri: str, position: Position
    ) -> Optional[Tuple[CacheEntry, HtmlDocument, int, PositionKind]]:
        entry = self.cache.get(uri)
        html = self.cache.get_html(uri)
        if entry is None or html is None:
            return None
        offset = entry.line_index.offset_at(position.line, position.character)
        return entry, html, offset, classify_position(entry.text, html, offset)

    def _to_synthetic(
        self, vdoc: VirtualDocument, kind: PositionKind, offset: int
    ) -> Optional[int]:
        if kind == PositionKind.EXPRESSION:
            return vdoc.template_to_synthetic(offset)
        if kind == PositionKind.SCRIPT:
            return vdoc.to_synthetic_offset(offset)
        return None

    async def do_hover(self, uri: str, position: Position) -> Optional[Hover]:
        located = self._locate(uri, position)
        if located is None:
            return None
        entry, html, offset, kind = located
        if kind == PositionKind.MARKUP:
            return self.markup_hover(uri, entry, html, offset)
        if kind == PositionKind.NONE:
            return None

        vdoc = self.virtual_document(uri)
        if vdoc is None or not self.engine_available:
            return None
        synthetic = self._to_synthetic(vdoc, kind, offset)
        if synthetic is None:
            return None
        try:
            info = await self.engine.quick_info(vdoc.file_name, synthetic)
        except Exception as e:
            logger.error(f"TypeScript hover failed: {e}")
            return None
        if info is None or not (info.display or info.documentation):
            return None

        display = info.display
        if kind == PositionKind.EXPRESSION:
            display = describe_member(vdoc.metadata, display)
        value = f"```typescript\n{display}\n```" if display else ""
        if info.documentation:
            value = f"{value}\n\n{info.documentation}" if value else info.documentation

        start = vdoc.to_document_offset(info.start)
        return Hover(contents=_markdown(value), range=self._range(entry, start, start + info.length))

    async def do_complete(
        self, uri: str, position: Position, context: Optional[Any] = None
    ) -> CompletionList:
        empty = CompletionList(is_incomplete=False, items=[])
        located = self._locate(uri, position)
        if located is None:
            return empty
        entry, html, offset, kind = located
        if kind == PositionKind.MARKUP:
            return self.markup_completions(uri, entry, html, offset)
        if kind == PositionKind.NONE:
            return empty

        vdoc = self.virtual_document(uri)
        if vdoc is None or not self.engine_available:
            return empty
        synthetic = self._to_synthetic(vdoc, kind, offset)
        if synthetic is None:
            return empty
        try:
            entries = await self.engine.completions(
                vdoc.file_name,
                synthetic,
                converter.unstructure(context) if context is not None else None,
            )
        except Exception as e:
            logger.error(f"TypeScript completion failed: {e}")
            return empty

        if kind == PositionKind.SCRIPT:
            items = [self._script_item(e) for e in entries]
        else:
            items = [
                self._expression_item(vdoc.metadata, e)
                for e in entries
                if e.kind in EXPRESSION_COMPLETION_KINDS
                and not (e.sort_text or "").startswith(GLOBAL_SORT_PREFIX)
            ]
        return CompletionList(is_incomplete=False, items=items)

    def _script_item(self, entry: CompletionEntry) -> CompletionItem:
        kind = None
        if entry.kind is not None:
            try:
                kind = CompletionItemKind(entry.kind)
            except ValueError:
                kind = None
        return CompletionItem(
            label=entry.name,
            kind=kind,
            detail=entry.detail,
            sort_text=entry.sort_text,
            insert_text=entry.insert_text,
        )

    def _expression_item(self, metadata: ComponentMetadata, entry: CompletionEntry) -> CompletionItem:
        member = metadata.find_member(entry.name)
        detail = entry.detail
        documentation = None
        if member is not None:
            detail = f"({MEMBER_ROLES[member.kind]}) {metadata.name}.{member.name}: {member.type}"
            if member.documentation:
                documentation = _markdown(member.documentation)
        return CompletionItem(
            label=entry.name,
            kind=CompletionItemKind.Property,
            detail=detail,
            documentation=documentation,
            sort_text=entry.sort_text,
        )

    async def find_definition(self, uri: str, position: Position) -> Optional[List[Location]]:
        located = self._locate(uri, position)
        if located is None:
            return None
        entry, html, offset, kind = located
        if kind not in (PositionKind.EXPRESSION, PositionKind.SCRIPT):
            return None

        vdoc = self.virtual_document(uri)
        if vdoc is None or not self.engine_available:
            return None
        synthetic = self._to_synthetic(vdoc, kind, offset)
        if synthetic is None:
            return None
        try:
            targets = await self.engine.definition(vdoc.file_name, synthetic)
        except Exception as e:
            logger.error(f"TypeScript definition failed: {e}")
            return None

        locations = [self._map_location(target) for target in targets]
        return [location for location in locations if location is not None] or None

    def _map_location(self, target: EngineLocation) -> Optional[Location]:
        target_uri = get_uri(target.uri)
        if target.start is None or target_uri == target.uri:
            return Location(uri=target.uri, range=converter.structure(target.range, Range))

        vdoc = self.cache.get_virtual_document(target_uri)
        entry = self.cache.get(target_uri)
        if vdoc is None or entry is None:
            return None
        if vdoc.in_preamble(target.start):
            # Destructured binding: resolve to the class member it stands for
            name = vdoc.synthetic_text[target.start : target.start + target.length]
            member = vdoc.metadata.find_member(name)
            if member is not None:
                start = vdoc.script_start + member.name_start
                return Location(
                    uri=target_uri, range=self._range(entry, start, start + len(member.name))
                )
        start = vdoc.to_document_offset(target.start)
        return Location(uri=target_uri, range=self._range(entry, start, start + target.length))

    def map_diagnostics(self, uri: str, diagnostics: List[EngineDiagnostic]) -> List[Diagnostic]:
        """Translate diagnostics of the virtual document into document ranges."""
        entry = self.cache.get(uri)
        vdoc = self.cache.get_virtual_document(uri)
        if entry is None or vdoc is None:
            return []
        mapped = []
        for diag in diagnostics:
            start = vdoc.to_document_offset(diag.start)
            mapped.append(
                Diagnostic(
                    range=self._range(entry, start, start + diag.length),
                    message=diag.message,
                    severity=_coerce_severity(diag.severity),
                    code=diag.code,
                    source=diag.source or "ts",
                )
            )
        return mapped

    def template_diagnostics(self, uri: str) -> List[Diagnostic]:
        """Warnings for ``v-else``/``v-else-if`` without a preceding ``v-if``."""
        entry = self.cache.get(uri)
        html = self.cache.get_html(uri)
        template = html.find_root("template") if html else None
        if entry is None or template is None:
            return []
        diagnostics = []
        for expression in template_warnings(entry.text, template):
            if expression.kind == ExpressionKind.ELSE:
                start, end = expression.source_start - len(expression.name), expression.source_end
            else:
                start, end = expression.source_start, expression.source_end
            diagnostics.append(
                Diagnostic(
                    range=self._range(entry, start, end),
                    message=f"`{expression.name}` has no preceding `v-if` or `v-else-if` element",
                    severity=DiagnosticSeverity.Warning,
                    source=DIAGNOSTIC_SOURCE,
                )
            )
        return diagnostics

    def map_to_generated(self, uri: str, position: Position) -> Optional[Position]:
        located = self._locate(uri, position)
        if located is None:
            return None
        _, _, offset, kind = located
        vdoc = self.virtual_document(uri)
        if vdoc is None:
            return None
        synthetic = self._to_synthetic(vdoc, kind, offset)
        if synthetic is None:
            return None
        line, character = vdoc.line_index.position_at(synthetic)
        return Position(line=line, character=character)

    def map_from_generated(self, uri: str, position: Position) -> Optional[Position]:
        entry = self.cache.get(uri)
        vdoc = self.virtual_document(uri)
        if entry is None or vdoc is None:
            return None
        synthetic = vdoc.line_index.offset_at(position.line, position.character)
        offset = vdoc.to_document_offset(synthetic)
        line, character = entry.line_index.position_at(offset)
        return Position(line=line, character=character)

    def document_symbols(self, uri: str) -> List[DocumentSymbol]:
        """Outline of the markup tree, one symbol per element."""
        entry = self.cache.get(uri)
        html = self.cache.get_html(uri)
        if entry is None or html is None:
            return []
        return [self._symbol(entry, node) for node in html.roots if node.tag]

    def _symbol(self, entry: CacheEntry, node: Node) -> DocumentSymbol:
        name_start = node.start + 1
        return DocumentSymbol(
            name=element_name(node),
            kind=SymbolKind.Field,
            range=self._range(entry, node.start, node.end),
            selection_range=self._range(entry, name_start, name_start + len(node.tag or "")),
            children=[self._symbol(entry, child) for child in node.children if child.tag],
        )

    def document_highlights(self, uri: str, position: Position) -> List[DocumentHighlight]:
        """Highlight an element's start and end tag names from either one."""
        entry = self.cache.get(uri)
        html = self.cache.get_html(uri)
        if entry is None or html is None:
            return []
        offset = entry.line_index.offset_at(position.line, position.character)
        node = html.find_node_at(offset)
        if not node.tag:
            return []

        spans = [(node.start + 1, node.start + 1 + len(node.tag))]
        if node.closed and node.end_tag_start is not None:
            end_name = node.end_tag_start + 2
            spans.append((end_name, end_name + len(node.tag)))
        if not any(start <= offset <= end for start, end in spans):
            return []
        return [
            DocumentHighlight(range=self._range(entry, start, end), kind=DocumentHighlightKind.Read)
            for start, end in spans
        ]

    def registered_components(self, uri: str) -> Dict[str, ComponentMetadata]:
        try:
            return self.cache.get_registered_components(uri)
        except Exception as e:
            logger.error(f"Failed to load registered components of {uri}: {e}")
            return {}

    def markup_hover(
        self, uri: str, entry: CacheEntry, html: HtmlDocument, offset: int
    ) -> Optional[Hover]:
        node = html.find_node_at(offset)
        if node.tag is None:
            return None
        component = self.registered_components(uri).get(node.tag)

        for token in scan(entry.text, node.start, node.content_start):
            if token.offset > offset:
                break
            if not token.offset <= offset <= token.end:
                continue
            if token.type == TokenType.START_TAG and component is not None:
                return Hover(
                    contents=_markdown(describe_component(node.tag, component)),
                    range=self._range(entry, token.offset, token.end),
                )
            if token.type == TokenType.ATTRIBUTE_NAME:
                value = None
                if component is not None:
                    prop = _find_prop(component, token.text)
                    if prop is not None:
                        value = f"```typescript\n(property) {node.tag}.{prop.name}: {prop.type}\n```"
                        if prop.documentation:
                            value += f"\n\n{prop.documentation}"
                if value is None:
                    value = directive_doc(token.text)
                if value is None:
                    return None
                return Hover(
                    contents=_markdown(value),
                    range=self._range(entry, token.offset, token.end),
                )
        return None

    def markup_completions(
        self, uri: str, entry: CacheEntry, html: HtmlDocument, offset: int
    ) -> CompletionList:
        node = html.find_node_at(offset)
        components = self.registered_components(uri)
        items: List[CompletionItem] = []

        if is_inside_start_tag(entry.text, node, offset):
            component = components.get(node.tag or "")
            if component is not None:
                for prop in component.props:
                    items.append(
                        CompletionItem(
                            label=f":{prop.name}",
                            kind=CompletionItemKind.Property,
                            detail=prop.type,
                            documentation=_markdown(prop.documentation) if prop.documentation else None,
                            insert_text=f':{prop.name}="$1"',
                            insert_text_format=InsertTextFormat.Snippet,
                        )
                    )
            for name, snippet in DIRECTIVE_SNIPPETS.items():
                items.append(
                    CompletionItem(
                        label=name,
                        kind=CompletionItemKind.Keyword,
                        documentation=_markdown(DIRECTIVE_DOCS[name]),
                        insert_text=snippet,
                        insert_text_format=InsertTextFormat.Snippet,
                    )
                )
        elif _TAG_PREFIX_RE.search(entry.text, max(node.start, 0), offset):
            for name, component in components.items():
                items.append(
                    CompletionItem(
                        label=name,
                        kind=CompletionItemKind.Class,
                        detail=f"component {component.name}",
                        documentation=_markdown(describe_component(name, component)),
                    )
                )
        return CompletionList(is_incomplete=False, items=items)


def _find_prop(component: ComponentMetadata, attribute_name: str) -> Optional[ComponentMember]:
    name = attribute_name
    for prefix in ("v-bind:", ":"):
        if name.startswith(prefix):
            name = name[len(prefix) :]
            break
    for member in component.props:
        if member.name == name:
            return member
    return None
