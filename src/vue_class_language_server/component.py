"""Metadata extraction for decorator-based Vue class components.

The ``<script>`` section is parsed with tree-sitter's TypeScript grammar. The
default-exported class is located and each member of its body becomes a
``ComponentMember`` tagged with a ``MemberKind``. Offsets are character
offsets into the script text, not tree-sitter byte offsets.
"""

import logging
import os
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Tuple

import tree_sitter_typescript as tstypescript
from pygls.uris import from_fs_path, to_fs_path
from tree_sitter import Language, Node, Parser

TYPESCRIPT_LANGUAGE = Language(tstypescript.language_typescript())

logger = logging.getLogger(__name__)


class MemberKind(Enum):
    MODEL = "model"
    PROP = "prop"
    COMPUTED = "computed"
    DATA = "data"
    METHOD = "method"


# Label used when describing a member's role in hover text
MEMBER_ROLES: Dict[MemberKind, str] = {
    MemberKind.MODEL: "model",
    MemberKind.PROP: "property",
    MemberKind.COMPUTED: "computed",
    MemberKind.DATA: "data",
    MemberKind.METHOD: "method",
}

# Order in which member names are predeclared in the render method
PREDECLARE_ORDER = (
    MemberKind.MODEL,
    MemberKind.PROP,
    MemberKind.COMPUTED,
    MemberKind.DATA,
    MemberKind.METHOD,
)


@dataclass(frozen=True)
class ComponentMember:
    kind: MemberKind
    name: str
    start: int  # offsets into the script text
    end: int
    name_start: int
    type: str = "unknown"
    required: Optional[bool] = False  # None when the decorator option isn't a literal
    event: str = ""
    documentation: str = ""


@dataclass(frozen=True)
class RegisteredChild:
    name: str
    specifier: str
    uri: Optional[str]


@dataclass
class ComponentMetadata:
    uri: str
    name: str = "default"
    documentation: str = ""
    members: List[ComponentMember] = field(default_factory=list)
    registered_children: List[RegisteredChild] = field(default_factory=list)
    # Offset right after the last class member, or right after the body's '{'
    insertion_offset: Optional[int] = None

    @property
    def model(self) -> Optional[ComponentMember]:
        models = self.of_kind(MemberKind.MODEL)
        return models[0] if models else None

    @property
    def props(self) -> List[ComponentMember]:
        return self.of_kind(MemberKind.PROP)

    @property
    def computed_props(self) -> List[ComponentMember]:
        return self.of_kind(MemberKind.COMPUTED)

    @property
    def data(self) -> List[ComponentMember]:
        return self.of_kind(MemberKind.DATA)

    @property
    def methods(self) -> List[ComponentMember]:
        return self.of_kind(MemberKind.METHOD)

    def of_kind(self, kind: MemberKind) -> List[ComponentMember]:
        return [member for member in self.members if member.kind == kind]

    def find_member(self, name: str) -> Optional[ComponentMember]:
        for kind in PREDECLARE_ORDER:
            for member in self.of_kind(kind):
                if member.name == name:
                    return member
        return None

    def predeclared_names(self) -> List[str]:
        names: List[str] = []
        model = self.model
        if model:
            names.append(model.name)
        for kind in PREDECLARE_ORDER[1:]:
            names.extend(member.name for member in self.of_kind(kind))
        return names


_JSDOC_TAG_RE = re.compile(r"@(\w+)\s*(.*)")

_CLASS_NODES = ("class_declaration", "abstract_class_declaration", "class")
# Class body elements after which the render method may be inserted
_ELEMENT_NODES = (
    "method_definition",
    "public_field_definition",
    "method_signature",
    "abstract_method_signature",
    "index_signature",
    "class_static_block",
)
# Elements that end with a closing brace and need no separator
_BLOCK_NODES = ("method_definition", "class_static_block")


class _Source:
    """Script text with tree-sitter byte offsets mapped to character offsets."""

    def __init__(self, text: str):
        self.text = text
        self.data = text.encode("utf-8")
        self._chars: Optional[List[int]] = None
        if len(self.data) != len(text):
            chars: List[int] = []
            for index, char in enumerate(text):
                chars.extend([index] * len(char.encode("utf-8")))
            chars.append(len(text))
            self._chars = chars

    def offset(self, byte: int) -> int:
        if self._chars is None:
            return byte
        return self._chars[min(byte, len(self._chars) - 1)]

    def start(self, node: Node) -> int:
        return self.offset(node.start_byte)

    def end(self, node: Node) -> int:
        return self.offset(node.end_byte)

    def text_of(self, node: Node) -> str:
        return self.text[self.start(node) : self.end(node)]


@dataclass
class _Decorator:
    name: str
    node: Node
    arguments: List[Node] = field(default_factory=list)


def jsdoc_to_markdown(comment: str) -> str:
    """Render a ``/** ... */`` block as markdown, with tags in italics."""
    body = comment.strip()
    if body.startswith("/**"):
        body = body[3:]
    if body.endswith("*/"):
        body = body[:-2]
    lines = [re.sub(r"^\s*\*?\s?", "", line).rstrip() for line in body.splitlines()]

    description: List[str] = []
    tags: List[str] = []
    for line in lines:
        match = _JSDOC_TAG_RE.match(line)
        if match:
            tag, rest = match.groups()
            if tag == "param":
                param = re.match(r"(?:\{[^}]*\}\s*)?([\w$.\[\]]+)\s*-?\s*(.*)", rest)
                if param:
                    tags.append(f"*@{tag}* `{param.group(1)}` -- {param.group(2)}")
                    continue
            tags.append(f"*@{tag}* -- {rest}")
        elif tags:
            tags[-1] += " " + line.strip()
        else:
            description.append(line)

    markdown = "\n".join(description).strip()
    if tags:
        markdown += "\n\n" + "\n\n".join(tags)
    return markdown.strip()


def _jsdoc(source: _Source, node: Optional[Node]) -> str:
    if node is None or node.type != "comment":
        return ""
    text = source.text_of(node)
    return jsdoc_to_markdown(text) if text.startswith("/**") else ""


def _string_value(source: _Source, node: Optional[Node]) -> Optional[str]:
    """Value of a string literal node, ``None`` for anything else."""
    if node is None:
        return None
    if node.type == "string" or (
        node.type == "template_string"
        and not any(child.type == "template_substitution" for child in node.named_children)
    ):
        return source.text_of(node)[1:-1]
    return None


def _arguments(node: Node) -> List[Node]:
    return [child for child in node.named_children if child.type != "comment"]


def _decorator(source: _Source, node: Node) -> _Decorator:
    """Name and call arguments of ``@Name``, ``@Name(...)`` or ``@ns.Name(...)``."""
    children = _arguments(node)
    expression: Optional[Node] = children[0] if children else None
    arguments: List[Node] = []
    if expression is not None and expression.type == "call_expression":
        call_arguments = expression.child_by_field_name("arguments")
        if call_arguments is not None:
            arguments = _arguments(call_arguments)
        expression = expression.child_by_field_name("function")
    if expression is not None and expression.type == "member_expression":
        expression = expression.child_by_field_name("property")
    name = source.text_of(expression) if expression is not None else ""
    return _Decorator(name=name, node=node, arguments=arguments)


def _object_entries(source: _Source, node: Node) -> Dict[str, Node]:
    """Keys of an object literal mapped to their value nodes."""
    entries: Dict[str, Node] = {}
    for child in node.named_children:
        if child.type == "pair":
            key = child.child_by_field_name("key")
            value = child.child_by_field_name("value")
            if key is None or value is None:
                continue
            name = _string_value(source, key)
            entries[name if name is not None else source.text_of(key)] = value
        elif child.type == "shorthand_property_identifier":
            entries[source.text_of(child)] = child
    return entries


def _member_options(
    source: _Source, decorator: _Decorator, kind: MemberKind
) -> Dict[str, object]:
    options: Dict[str, object] = {}
    arguments = decorator.arguments
    if kind == MemberKind.MODEL and arguments:
        event = _string_value(source, arguments[0])
        if event is not None:
            options["event"] = event
        arguments = arguments[1:]
    if not arguments:
        return options

    first = arguments[0]
    if first.type == "object":
        entries = _object_entries(source, first)
        type_node = entries.get("type")
        if type_node is not None and type_node.type == "identifier":
            options["type"] = source.text_of(type_node)
        required = entries.get("required")
        if required is not None:
            options["required"] = {"true": True, "false": False}.get(required.type)
    elif first.type == "identifier":
        # @Prop(String)
        options["type"] = source.text_of(first)
    return options


def _member_name(source: _Source, node: Node) -> Tuple[str, int]:
    if node.type == "string":
        return source.text_of(node)[1:-1], source.start(node) + 1
    if node.type == "computed_property_name":
        return "", source.start(node)
    return source.text_of(node), source.start(node)


def _class_member(
    source: _Source,
    node: Node,
    decorators: List[_Decorator],
    start: int,
    end: int,
    documentation: str,
) -> Optional[ComponentMember]:
    if any(child.type in ("static", "static get") for child in node.children):
        return None
    name_node = node.child_by_field_name("name")
    if name_node is None:
        return None
    name, name_start = _member_name(source, name_node)
    if not name:
        return None

    type_text = ""
    if node.type == "method_definition":
        accessor = next(
            (child.type for child in node.children if child.type in ("get", "set")), None
        )
        if accessor == "get":
            kind = MemberKind.COMPUTED
        elif accessor == "set" or name == "constructor":
            return None
        else:
            kind = MemberKind.METHOD
    elif node.type == "public_field_definition":
        kind = MemberKind.DATA
        annotation = node.child_by_field_name("type")
        if annotation is not None:
            type_text = source.text_of(annotation).lstrip(":").strip()
    else:
        return None

    options: Dict[str, object] = {}
    if kind == MemberKind.DATA:
        by_name = {decorator.name: decorator for decorator in reversed(decorators)}
        if "Model" in by_name:
            kind = MemberKind.MODEL
            options = _member_options(source, by_name["Model"], kind)
        elif "Prop" in by_name:
            kind = MemberKind.PROP
            options = _member_options(source, by_name["Prop"], kind)

    return ComponentMember(
        kind=kind,
        name=name,
        start=start,
        end=end,
        name_start=name_start,
        type=str(options.get("type") or type_text or "unknown"),
        required=options.get("required", False),  # type: ignore[arg-type]
        event=str(options.get("event", "")),
        documentation=documentation,
    )


def _parse_members(
    source: _Source, body: Node
) -> Tuple[List[ComponentMember], Optional[int]]:
    """Members of a ``class_body`` and the offset right after the last one."""
    members: List[ComponentMember] = []
    last_end: Optional[int] = None
    needs_separator = False
    after_element = False
    pending: List[Node] = []
    documentation = ""

    for child in body.children:
        if child.type == "comment":
            documentation = _jsdoc(source, child)
            continue
        if child.type == "decorator":
            pending.append(child)
            continue
        if child.type in (";", ","):
            if after_element:
                last_end = source.end(child)
                needs_separator = False
            continue
        after_element = False
        if child.type not in _ELEMENT_NODES:
            continue

        decorator_nodes = pending + [c for c in child.named_children if c.type == "decorator"]
        decorators = [_decorator(source, node) for node in decorator_nodes]
        start = source.start(pending[0] if pending else child)
        end = source.end(child)
        member = _class_member(source, child, decorators, start, end, documentation)
        if member is not None:
            members.append(member)

        pending = []
        documentation = ""
        last_end = end
        after_element = True
        needs_separator = child.type not in _BLOCK_NODES

    if last_end is not None and needs_separator:
        # Property ended by a line break: the render method starts the next line
        newline = source.text.find("\n", last_end)
        if newline != -1 and not source.text[last_end:newline].strip():
            last_end = newline + 1
    return members, last_end


def resolve_component_uri(specifier: str, base_uri: str) -> Optional[str]:
    """Resolve an import specifier of a .vue file relative to ``base_uri``."""
    if os.path.isabs(specifier):
        return from_fs_path(specifier)
    if not specifier.startswith("."):
        # Bare or aliased module paths are not resolved
        return None
    base_path = to_fs_path(base_uri)
    if not base_path:
        return None
    path = os.path.normpath(os.path.join(os.path.dirname(base_path), specifier))
    return from_fs_path(path)


def _vue_imports(source: _Source, root: Node) -> Dict[str, str]:
    """Default imports of ``.vue`` files: local name -> specifier."""
    imports: Dict[str, str] = {}
    for statement in root.named_children:
        if statement.type != "import_statement":
            continue
        specifier = _string_value(source, statement.child_by_field_name("source"))
        if not specifier or not specifier.endswith(".vue"):
            continue
        for clause in statement.named_children:
            if clause.type != "import_clause":
                continue
            for child in clause.named_children:
                if child.type == "identifier":
                    imports[source.text_of(child)] = specifier
    return imports


def _registered_children(
    source: _Source, root: Node, decorator: Optional[_Decorator], base_uri: str
) -> List[RegisteredChild]:
    if decorator is None or not decorator.arguments or decorator.arguments[0].type != "object":
        return []
    components = _object_entries(source, decorator.arguments[0]).get("components")
    if components is None or components.type != "object":
        return []

    imports = _vue_imports(source, root)
    children: List[RegisteredChild] = []
    for name, value in _object_entries(source, components).items():
        if value.type not in ("identifier", "shorthand_property_identifier"):
            continue
        specifier = imports.get(source.text_of(value))
        if specifier is None:
            continue
        children.append(
            RegisteredChild(
                name=name,
                specifier=specifier,
                uri=resolve_component_uri(specifier, base_uri),
            )
        )
    return children


def _default_class(root: Node) -> Optional[Tuple[Node, Node]]:
    """The ``export default class`` statement and its class node."""
    for statement in root.named_children:
        if statement.type != "export_statement":
            continue
        if not any(child.type == "default" for child in statement.children):
            continue
        declaration = statement.child_by_field_name("declaration")
        if declaration is None:
            declaration = statement.child_by_field_name("value")
        if declaration is not None and declaration.type in _CLASS_NODES:
            return statement, declaration
    return None


def parse_component(script: str, uri: str = "") -> Optional[ComponentMetadata]:
    """Extract metadata of the default-exported class in ``script``.

    Returns ``None`` when the script has no ``export default class``.
    """
    source = _Source(script)
    tree = Parser(TYPESCRIPT_LANGUAGE).parse(source.data)
    root = tree.root_node
    found = _default_class(root)
    if found is None:
        return None
    statement, declaration = found
    if root.has_error:
        logger.debug(f"Script of {uri or 'component'} has syntax errors")

    metadata = ComponentMetadata(uri=uri)
    name_node = declaration.child_by_field_name("name")
    if name_node is not None:
        metadata.name = source.text_of(name_node)
    metadata.documentation = _jsdoc(source, statement.prev_named_sibling)

    decorators = [
        _decorator(source, node)
        for node in statement.children + declaration.children
        if node.type == "decorator"
    ]
    class_decorator = next(
        (d for d in decorators if d.name == "Component"),
        decorators[0] if decorators else None,
    )

    body = declaration.child_by_field_name("body")
    if body is None:
        return metadata
    members, last_end = _parse_members(source, body)
    metadata.members = members
    metadata.insertion_offset = last_end if last_end is not None else source.start(body) + 1
    metadata.registered_children = _registered_children(source, root, class_decorator, uri)

    logger.debug(
        f"Parsed component {metadata.name}: {len(members)} members, "
        f"{len(metadata.registered_children)} registered children"
    )
    return metadata
