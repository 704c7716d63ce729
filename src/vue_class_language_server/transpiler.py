import re
from dataclasses import dataclass
from enum import Enum
from typing import Iterator, List, NamedTuple, Optional, Sequence, Union

from .markup import Node, Token, TokenType, scan
from .position import PositionMap

# Attribute bound to an expression: `:prop` shorthand or any `v-*` directive
BINDING_RE = re.compile(r"^:|^v-\w+")
INTERPOLATION_RE = re.compile(r"{{\s*(.*?)\s*}}+", re.DOTALL)
LOOP_SEPARATOR_RE = re.compile(r"\sin\s")

RENDER_HEADER = "render(){"
RENDER_FOOTER = "}"


class ExpressionKind(Enum):
    IF = "if"
    ELSE_IF = "else-if"
    ELSE = "else"
    FOR = "for"
    BINDING = "binding"
    INTERPOLATION = "interpolation"


_DIRECTIVE_KINDS = {
    "v-if": ExpressionKind.IF,
    "v-else-if": ExpressionKind.ELSE_IF,
    "v-else": ExpressionKind.ELSE,
    "v-for": ExpressionKind.FOR,
}


@dataclass(frozen=True)
class Expression:
    """A dynamic template fragment, in original document offsets."""

    source_start: int
    source_end: int
    text: str
    kind: ExpressionKind
    name: str = ""  # attribute name, empty for interpolations


def is_binding(attribute_name: str) -> bool:
    return BINDING_RE.match(attribute_name) is not None


def is_static(node: Node) -> bool:
    return not any(is_binding(name) for name in node.attributes)


def _attribute_expression(
    name: str, value: Optional[Token], name_end: int
) -> Optional[Expression]:
    kind = _DIRECTIVE_KINDS.get(name)
    if kind == ExpressionKind.ELSE:
        return Expression(name_end, name_end, "", kind, name)
    if value is None:
        return None
    start = value.offset
    end = value.end
    # The expression starts one past the opening quote
    if value.text[:1] in ("'", '"'):
        start += 1
        if len(value.text) > 1 and value.text[-1] == value.text[0]:
            end -= 1
    return Expression(
        start,
        end,
        value.text[start - value.offset : end - value.offset],
        kind or ExpressionKind.BINDING,
        name,
    )


def _segment_expressions(
    text: str, node: Node, start: int, end: int, with_start_tag: bool
) -> Iterator[Expression]:
    tag_static = is_static(node)
    attribute_name: Optional[str] = None
    name_end = node.start
    in_start_tag = with_start_tag

    for token in scan(text, start, end):
        if in_start_tag:
            if tag_static:
                if token.type in (TokenType.START_TAG_CLOSE, TokenType.START_TAG_SELF_CLOSE):
                    in_start_tag = False
                continue
            if token.type in (
                TokenType.ATTRIBUTE_NAME,
                TokenType.START_TAG_CLOSE,
                TokenType.START_TAG_SELF_CLOSE,
            ):
                if attribute_name is not None:
                    # Previous attribute had no value
                    expression = _attribute_expression(attribute_name, None, name_end)
                    if expression:
                        yield expression
                attribute_name = None
                if token.type == TokenType.ATTRIBUTE_NAME:
                    name_end = token.end
                    if is_binding(token.text):
                        attribute_name = token.text
                else:
                    in_start_tag = False
            elif token.type == TokenType.ATTRIBUTE_VALUE:
                if attribute_name is not None:
                    expression = _attribute_expression(attribute_name, token, name_end)
                    if expression:
                        yield expression
                attribute_name = None
            continue

        if token.type == TokenType.CONTENT:
            for match in INTERPOLATION_RE.finditer(token.text):
                expression_start = token.offset + match.start(1)
                yield Expression(
                    expression_start,
                    expression_start + len(match.group(1)),
                    match.group(1),
                    ExpressionKind.INTERPOLATION,
                )


def node_items(text: str, node: Node) -> Iterator[Union[Expression, Node]]:
    """The bound attributes of ``node``, then its own interpolations and its
    child elements interleaved in document order."""
    if node.tag is None:
        yield from node.children
        return
    start = node.start
    with_start_tag = True
    for child in node.children:
        yield from _segment_expressions(text, node, start, child.start, with_start_tag)
        with_start_tag = False
        yield child
        start = max(start, child.end)
    yield from _segment_expressions(text, node, start, node.content_end, with_start_tag)


def collect_node_expressions(text: str, node: Node) -> List[Expression]:
    """Expressions owned by ``node`` itself, not by its child elements."""
    return [item for item in node_items(text, node) if isinstance(item, Expression)]


def iter_nodes(node: Node) -> Iterator[Node]:
    """Pre-order walk, children in declaration order."""
    yield node
    for child in node.children:
        yield from iter_nodes(child)


def collect_expressions(text: str, root: Node) -> List[Expression]:
    """Every dynamic expression under ``root`` in document order."""
    expressions: List[Expression] = []
    for item in node_items(text, root):
        if isinstance(item, Expression):
            expressions.append(item)
        else:
            expressions.extend(collect_expressions(text, item))
    return expressions


def _loop_first(
    items: Iterator[Union[Expression, Node]]
) -> List[Union[Expression, Node]]:
    """Move a node's ``v-for`` ahead of its ``v-if``: the loop binds first."""
    ordered = list(items)
    kinds = [item.kind if isinstance(item, Expression) else None for item in ordered]
    if ExpressionKind.IF in kinds and ExpressionKind.FOR in kinds:
        condition = kinds.index(ExpressionKind.IF)
        loop = kinds.index(ExpressionKind.FOR)
        if condition < loop:
            ordered.insert(condition, ordered.pop(loop))
    return ordered


class RenderResult(NamedTuple):
    render: str
    position_map: PositionMap


class TemplateTranspiler:
    """Projects template expressions into a synthetic ``render(){...}`` method.

    Directive nesting is preserved as real control flow so the analysis
    engine narrows conditions and types loop variables as it would in
    hand-written code. Each emitted expression records a breakpoint pairing
    its template offset with its offset in the synthetic document.
    """

    def __init__(self, text: str, template: Node, offset: int, predeclared: Sequence[str]):
        self.text = text
        self.template = template
        self.offset = offset
        self.predeclared = list(predeclared)
        self.source: List[int] = []
        self.target: List[int] = []
        self.body: List[str] = []
        self._body_length = 0
        self._body_start = 0

    @property
    def preamble(self) -> str:
        return "const {" + ",".join(self.predeclared) + "} = this;"

    def transpile(self) -> RenderResult:
        header = RENDER_HEADER + self.preamble
        self._body_start = self.offset + len(header)
        self._emit_node(self.template)
        render = header + "".join(self.body) + RENDER_FOOTER
        return RenderResult(render, PositionMap(self.source, self.target))

    def _append(self, text: str) -> None:
        self.body.append(text)
        self._body_length += len(text)

    def _mark(self, source_offset: int) -> None:
        self.source.append(source_offset)
        self.target.append(self._body_start + self._body_length)

    def _emit_node(self, node: Node) -> None:
        # One closing brace per block this node opens
        suffix = ""
        for item in _loop_first(node_items(self.text, node)):
            if isinstance(item, Node):
                self._emit_node(item)
                continue
            kind = item.kind
            if kind == ExpressionKind.IF:
                self._append("if(")
                self._mark(item.source_start)
                self._append(item.text + "){")
                suffix += "}"
            elif kind == ExpressionKind.ELSE_IF:
                self._append("else if(")
                self._mark(item.source_start)
                self._append(item.text + "){")
                suffix += "}"
            elif kind == ExpressionKind.ELSE:
                # Follows the '}' that closed the previous branch
                self._append("else{")
                suffix += "}"
            elif kind == ExpressionKind.FOR:
                self._append("for(const ")
                self._mark(item.source_start)
                self._append(LOOP_SEPARATOR_RE.sub(" of ", item.text, count=1) + "){")
                suffix += "}"
            else:
                self._mark(item.source_start)
                self._append(item.text + ";")
        self._append(suffix)


def compile_template_to_render(
    text: str, template: Node, offset: int, predeclared: Sequence[str]
) -> RenderResult:
    """Compile ``template`` (a node of ``text``) into a render method.

    ``offset`` is where ``render(){`` will be inserted in the synthetic
    document; breakpoint targets are expressed in that document.
    """
    return TemplateTranspiler(text, template, offset, predeclared).transpile()


def template_warnings(text: str, template: Node) -> List[Expression]:
    """``v-else``/``v-else-if`` directives with no ``v-if`` sibling before them."""
    orphans: List[Expression] = []
    for node in iter_nodes(template):
        open_chain = False
        for child in node.children:
            if child.tag is None:
                continue
            names = set(child.attributes)
            if names & {"v-else", "v-else-if"} and not open_chain:
                for expression in collect_node_expressions(text, child):
                    if expression.kind in (ExpressionKind.ELSE, ExpressionKind.ELSE_IF):
                        orphans.append(expression)
            # A chain stays open only after v-if / v-else-if
            open_chain = bool(names & {"v-if", "v-else-if"})
    return orphans
