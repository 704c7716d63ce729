"""Markup scanning and parsing for .vue single-file components.

The scanner produces a flat token stream with absolute offsets, the parser
builds a node tree from it. Both only understand as much HTML as the template
projection and the position classifier need: tags, attributes, text content,
comments, and raw ``<script>``/``<style>`` bodies.
"""

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterator, List, Optional


class TokenType(Enum):
    START_TAG_OPEN = "startTagOpen"
    START_TAG = "startTag"
    START_TAG_CLOSE = "startTagClose"
    START_TAG_SELF_CLOSE = "startTagSelfClose"
    END_TAG_OPEN = "endTagOpen"
    END_TAG = "endTag"
    END_TAG_CLOSE = "endTagClose"
    ATTRIBUTE_NAME = "attributeName"
    DELIMITER_ASSIGN = "delimiterAssign"
    ATTRIBUTE_VALUE = "attributeValue"
    CONTENT = "content"
    COMMENT = "comment"
    RAW_CONTENT = "rawContent"
    WHITESPACE = "whitespace"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class Token:
    type: TokenType
    text: str
    offset: int

    @property
    def length(self) -> int:
        return len(self.text)

    @property
    def end(self) -> int:
        return self.offset + len(self.text)


VOID_ELEMENTS = frozenset(
    [
        "area",
        "base",
        "br",
        "col",
        "embed",
        "hr",
        "img",
        "input",
        "link",
        "meta",
        "param",
        "source",
        "track",
        "wbr",
    ]
)

RAW_TEXT_ELEMENTS = frozenset(["script", "style"])

_TAG_NAME_RE = re.compile(r"[^\s\"'`=<>/]+")
_ATTRIBUTE_NAME_RE = re.compile(r"[^\s\"'>/=]+")
_WHITESPACE_RE = re.compile(r"\s+")
_QUOTED_VALUE_RE = re.compile(r"\"[^\"]*\"?|'[^']*'?")
_UNQUOTED_VALUE_RE = re.compile(r"[^\s\"'`=<>]+")
# Interpolations are opaque: a "<" inside "{{ }}" does not open a tag
_CONTENT_RE = re.compile(r"<?(?:\{\{(?:(?!\{\{|\}\}).)*\}\}|[^<])*", re.DOTALL)
_COMMENT_RE = re.compile(r"<!--.*?(?:-->|\Z)", re.DOTALL)
_DECLARATION_RE = re.compile(r"<![^>]*>?")

# Scanner states
_CONTENT = 0
_AFTER_OPEN = 1
_WITHIN_TAG = 2
_AFTER_ATTRIBUTE_NAME = 3
_BEFORE_ATTRIBUTE_VALUE = 4
_WITHIN_END_TAG = 5
_WITHIN_RAW = 6


def scan(text: str, start: int = 0, end: Optional[int] = None) -> Iterator[Token]:
    """Tokenize ``text[start:end]``. Token offsets index into ``text``."""
    if end is None or end > len(text):
        end = len(text)
    pos = start
    state = _CONTENT
    last_tag = ""

    while pos < end:
        token: Optional[Token] = None

        if state == _CONTENT:
            if text.startswith("<!--", pos, end):
                match = _COMMENT_RE.match(text, pos, end)
                token = Token(TokenType.COMMENT, match.group(0), pos)
            elif text.startswith("<!", pos, end):
                match = _DECLARATION_RE.match(text, pos, end)
                token = Token(TokenType.COMMENT, match.group(0), pos)
            elif text.startswith("</", pos, end):
                token = Token(TokenType.END_TAG_OPEN, "</", pos)
                state = _WITHIN_END_TAG
            elif text[pos] == "<" and pos + 1 < end and text[pos + 1].isalpha():
                token = Token(TokenType.START_TAG_OPEN, "<", pos)
                state = _AFTER_OPEN
            else:
                match = _CONTENT_RE.match(text, pos, end)
                token = Token(TokenType.CONTENT, match.group(0), pos)

        elif state == _AFTER_OPEN:
            match = _TAG_NAME_RE.match(text, pos, end)
            state = _WITHIN_TAG
            if match:
                last_tag = match.group(0).lower()
                token = Token(TokenType.START_TAG, match.group(0), pos)

        elif state == _WITHIN_TAG:
            match = _WHITESPACE_RE.match(text, pos, end)
            if match:
                token = Token(TokenType.WHITESPACE, match.group(0), pos)
            elif text.startswith("/>", pos, end):
                token = Token(TokenType.START_TAG_SELF_CLOSE, "/>", pos)
                state = _CONTENT
            elif text[pos] == ">":
                token = Token(TokenType.START_TAG_CLOSE, ">", pos)
                state = _WITHIN_RAW if last_tag in RAW_TEXT_ELEMENTS else _CONTENT
            elif text[pos] == "<":
                # Unterminated start tag, resume as content without consuming
                state = _CONTENT
            else:
                match = _ATTRIBUTE_NAME_RE.match(text, pos, end)
                if match:
                    token = Token(TokenType.ATTRIBUTE_NAME, match.group(0), pos)
                    state = _AFTER_ATTRIBUTE_NAME
                else:
                    token = Token(TokenType.UNKNOWN, text[pos], pos)

        elif state == _AFTER_ATTRIBUTE_NAME:
            match = _WHITESPACE_RE.match(text, pos, end)
            if match:
                token = Token(TokenType.WHITESPACE, match.group(0), pos)
            elif text[pos] == "=":
                token = Token(TokenType.DELIMITER_ASSIGN, "=", pos)
                state = _BEFORE_ATTRIBUTE_VALUE
            else:
                state = _WITHIN_TAG

        elif state == _BEFORE_ATTRIBUTE_VALUE:
            match = _WHITESPACE_RE.match(text, pos, end)
            if match:
                token = Token(TokenType.WHITESPACE, match.group(0), pos)
            else:
                match = _QUOTED_VALUE_RE.match(text, pos, end) or _UNQUOTED_VALUE_RE.match(
                    text, pos, end
                )
                if match:
                    token = Token(TokenType.ATTRIBUTE_VALUE, match.group(0), pos)
                state = _WITHIN_TAG

        elif state == _WITHIN_END_TAG:
            match = _WHITESPACE_RE.match(text, pos, end) or _TAG_NAME_RE.match(
                text, pos, end
            )
            if match:
                token_type = (
                    TokenType.WHITESPACE
                    if match.group(0).isspace()
                    else TokenType.END_TAG
                )
                token = Token(token_type, match.group(0), pos)
            elif text[pos] == ">":
                token = Token(TokenType.END_TAG_CLOSE, ">", pos)
                state = _CONTENT
            elif text[pos] == "<":
                state = _CONTENT
            else:
                token = Token(TokenType.UNKNOWN, text[pos], pos)

        elif state == _WITHIN_RAW:
            closing = re.compile(r"</" + re.escape(last_tag) + r"\b", re.IGNORECASE)
            match = closing.search(text, pos, end)
            raw_end = match.start() if match else end
            state = _CONTENT
            if raw_end > pos:
                token = Token(TokenType.RAW_CONTENT, text[pos:raw_end], pos)

        if token is not None:
            pos = token.end
            yield token


@dataclass(eq=False)
class Node:
    """An element of the markup tree. ``tag`` is ``None`` for the document root."""

    tag: Optional[str]
    start: int
    end: int
    start_tag_end: Optional[int] = None
    end_tag_start: Optional[int] = None
    closed: bool = False
    attributes: Dict[str, Optional[str]] = field(default_factory=dict)
    children: List["Node"] = field(default_factory=list)
    parent: Optional["Node"] = field(default=None, repr=False)

    def find_node_at(self, offset: int) -> "Node":
        """Return the innermost node whose span contains ``offset``."""
        for child in reversed(self.children):
            if child.start < offset:
                if offset <= child.end:
                    return child.find_node_at(offset)
                break
        return self

    @property
    def content_start(self) -> int:
        return self.start_tag_end if self.start_tag_end is not None else self.start

    @property
    def content_end(self) -> int:
        return self.end_tag_start if self.end_tag_start is not None else self.end


@dataclass
class HtmlDocument:
    root: Node

    @property
    def roots(self) -> List[Node]:
        return self.root.children

    def find_root(self, tag: str) -> Optional[Node]:
        for node in self.roots:
            if node.tag and node.tag.lower() == tag:
                return node
        return None

    def find_node_at(self, offset: int) -> Node:
        return self.root.find_node_at(offset)


def parse_html(text: str) -> HtmlDocument:
    root = Node(tag=None, start=0, end=len(text), closed=True)
    current = root
    pending_attribute: Optional[str] = None
    end_tag_start = 0
    closing: Optional[Node] = None

    for token in scan(text):
        if closing is not None and token.type not in (
            TokenType.END_TAG,
            TokenType.END_TAG_CLOSE,
            TokenType.WHITESPACE,
        ):
            # End tag without '>'
            closing.end = token.offset
            current = closing.parent or root
            closing = None

        if token.type == TokenType.START_TAG_OPEN:
            child = Node(tag=None, start=token.offset, end=len(text), parent=current)
            current.children.append(child)
            current = child
        elif token.type == TokenType.START_TAG:
            current.tag = token.text
        elif token.type == TokenType.ATTRIBUTE_NAME:
            pending_attribute = token.text
            current.attributes[pending_attribute] = None
        elif token.type == TokenType.ATTRIBUTE_VALUE:
            if pending_attribute is not None:
                current.attributes[pending_attribute] = token.text
                pending_attribute = None
        elif token.type == TokenType.START_TAG_CLOSE:
            pending_attribute = None
            if current.parent is not None:
                current.start_tag_end = token.end
                current.end = token.end
                if current.tag and current.tag.lower() in VOID_ELEMENTS:
                    current.closed = True
                    current = current.parent
        elif token.type == TokenType.START_TAG_SELF_CLOSE:
            pending_attribute = None
            if current.parent is not None:
                current.start_tag_end = token.end
                current.end = token.end
                current.closed = True
                current = current.parent
        elif token.type == TokenType.END_TAG_OPEN:
            end_tag_start = token.offset
        elif token.type == TokenType.END_TAG:
            name = token.text.lower()
            node = current
            while node.parent is not None and (node.tag or "").lower() != name:
                node = node.parent
            if node.parent is not None:
                # Close everything opened inside the matching element
                while current is not node:
                    current.end = end_tag_start
                    current.closed = False
                    current = current.parent
                node.closed = True
                node.end_tag_start = end_tag_start
                closing = node
        elif token.type == TokenType.END_TAG_CLOSE:
            if closing is not None:
                closing.end = token.end
                current = closing.parent or root
                closing = None

    if closing is not None:
        closing.end = len(text)
        current = closing.parent or root
    while current.parent is not None:
        current.end = len(text)
        current.closed = False
        current = current.parent

    return HtmlDocument(root=root)


def attribute_value_text(raw: Optional[str]) -> str:
    """Strip the surrounding quotes of a raw attribute value."""
    if not raw:
        return ""
    if raw[0] in "\"'":
        raw = raw[1:]
        if raw.endswith(("\"", "'")):
            raw = raw[:-1]
    return raw


def element_name(node: Node) -> str:
    """``tag#id.class`` label of an element, as outlines show it."""
    name = node.tag or ""
    element_id = attribute_value_text(node.attributes.get("id"))
    if element_id:
        name += "#" + element_id
    classes = attribute_value_text(node.attributes.get("class")).split()
    if classes:
        name += "." + ".".join(classes)
    return name


# Documentation shown for template directives when hovering plain markup
DIRECTIVE_DOCS: Dict[str, str] = {
    "v-if": "**v-if**\n\nConditionally render the element based on the truthy-ness of the expression value.\n\nExample: `v-if=\"isVisible\"`",
    "v-else-if": "**v-else-if**\n\nThe \"else if block\" for `v-if`. Must immediately follow a `v-if` or `v-else-if` element.",
    "v-else": "**v-else**\n\nThe \"else block\" for `v-if` or a `v-if` / `v-else-if` chain. Takes no expression.",
    "v-for": "**v-for**\n\nRender the element multiple times based on the source data.\n\n**Syntax:**\n- `v-for=\"item in items\"`\n- `v-for=\"(item, index) in items\"`",
    "v-show": "**v-show**\n\nToggle the element's `display` CSS property based on the truthy-ness of the expression value.",
    "v-model": "**v-model**\n\nCreate a two-way binding on a form input element or a component.",
    "v-bind": "**v-bind**\n\nDynamically bind one or more attributes, or a component prop to an expression.\n\nShorthand: `:`",
    "v-on": "**v-on**\n\nAttach an event listener to the element.\n\nShorthand: `@`",
    "v-slot": "**v-slot**\n\nDenote named slots or scoped slots that expect to receive props.\n\nShorthand: `#`",
    "v-html": "**v-html**\n\nUpdate the element's `innerHTML`.",
    "v-text": "**v-text**\n\nUpdate the element's text content.",
    "v-once": "**v-once**\n\nRender the element and component once only.",
    "v-pre": "**v-pre**\n\nSkip compilation for this element and all its children.",
    "v-cloak": "**v-cloak**\n\nRemains on the element until the associated component instance finishes compilation.",
}

# Snippets offered inside an opening tag
DIRECTIVE_SNIPPETS: Dict[str, str] = {
    "v-if": 'v-if="$1"',
    "v-else-if": 'v-else-if="$1"',
    "v-else": "v-else",
    "v-for": 'v-for="${1:item} in ${2:items}"',
    "v-show": 'v-show="$1"',
    "v-model": 'v-model="$1"',
    "v-bind": 'v-bind:${1:name}="$2"',
    "v-on": 'v-on:${1:event}="$2"',
    "v-slot": "v-slot:${1:name}",
    "v-html": 'v-html="$1"',
    "v-text": 'v-text="$1"',
    "v-once": "v-once",
    "v-pre": "v-pre",
    "v-cloak": "v-cloak",
}


def directive_doc(attribute_name: str) -> Optional[str]:
    """Look up directive documentation, resolving `:x` and `@x` shorthands."""
    if attribute_name.startswith(":"):
        return DIRECTIVE_DOCS["v-bind"]
    if attribute_name.startswith("@"):
        return DIRECTIVE_DOCS["v-on"]
    if attribute_name.startswith("#"):
        return DIRECTIVE_DOCS["v-slot"]
    # v-on:click.stop -> v-on
    base = re.split(r"[:.]", attribute_name, maxsplit=1)[0]
    return DIRECTIVE_DOCS.get(base)


def is_inside_start_tag(text: str, node: Node, offset: int) -> bool:
    """Whether ``offset`` lies between a node's tag name and its closing '>'."""
    if node.tag is None or node.start >= offset:
        return False
    if node.start_tag_end is not None and offset >= node.start_tag_end:
        return False
    return offset > node.start + 1 + len(node.tag)
