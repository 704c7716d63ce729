"""Per-document state: parsed markup, component metadata and the virtual
TypeScript document submitted to the analysis engine.

Every open document owns one ``CacheEntry``. Derived state is dropped when the
document changes, or when a component it registers changes, and is rebuilt
lazily by the next query.
"""

import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional

from pygls.uris import to_fs_path

from .component import ComponentMetadata, parse_component
from .markup import HtmlDocument, parse_html
from .position import LineIndex, PositionMap
from .transpiler import RENDER_HEADER, compile_template_to_render

logger = logging.getLogger(__name__)


def get_file_name(uri: str) -> str:
    """Identifier of the virtual TypeScript file for a document."""
    if uri.endswith(".vue"):
        return uri + ".ts"
    return uri


def get_uri(file_name: str) -> str:
    """Inverse of ``get_file_name``."""
    if file_name.endswith(".vue.ts"):
        return file_name[: -len(".ts")]
    return file_name


@dataclass
class VirtualDocument:
    """The script section with a synthesized ``render`` method inserted.

    Offsets named ``synthetic`` index into ``synthetic_text``; offsets named
    ``document`` index into the full .vue text.
    """

    uri: str
    synthetic_text: str
    script_start: int
    script_end: int
    insertion_offset: int
    render: str
    position_map: PositionMap
    predeclared_names: List[str]
    metadata: ComponentMetadata
    template_start: int
    version: int
    line_index: LineIndex = field(init=False, repr=False)

    def __post_init__(self):
        self.line_index = LineIndex(self.synthetic_text)

    @property
    def file_name(self) -> str:
        return get_file_name(self.uri)

    @property
    def render_end(self) -> int:
        return self.insertion_offset + len(self.render)

    @property
    def body_start(self) -> int:
        """Synthetic offset of the first statement after the preamble."""
        return (
            self.insertion_offset
            + len(RENDER_HEADER)
            + len("const {" + ",".join(self.predeclared_names) + "} = this;")
        )

    def in_render(self, synthetic_offset: int) -> bool:
        return self.insertion_offset <= synthetic_offset < self.render_end

    def in_preamble(self, synthetic_offset: int) -> bool:
        return self.insertion_offset <= synthetic_offset < self.body_start

    def to_document_offset(self, synthetic_offset: int) -> int:
        if synthetic_offset < self.insertion_offset:
            return self.script_start + synthetic_offset
        if self.in_render(synthetic_offset):
            if not len(self.position_map):
                return self.template_start
            return self.position_map.position_at_source(synthetic_offset)
        return self.script_start + synthetic_offset - len(self.render)

    def to_synthetic_offset(self, document_offset: int) -> Optional[int]:
        """Synthetic offset of a position inside the script section."""
        if not self.script_start <= document_offset <= self.script_end:
            return None
        relative = document_offset - self.script_start
        if relative <= self.insertion_offset:
            return relative
        return relative + len(self.render)

    def template_to_synthetic(self, document_offset: int) -> int:
        return self.position_map.position_at_target(document_offset)


def build_virtual_document(
    uri: str,
    text: str,
    html: HtmlDocument,
    metadata: Optional[ComponentMetadata],
    version: int,
) -> Optional[VirtualDocument]:
    """Assemble the virtual document, or ``None`` when there is nothing to project."""
    template = html.find_root("template")
    script = html.find_root("script")
    if template is None or script is None or script.start_tag_end is None:
        return None
    if metadata is None or metadata.insertion_offset is None:
        return None

    script_start = script.content_start
    script_end = script.content_end
    content = text[script_start:script_end]
    insertion = metadata.insertion_offset
    predeclared = metadata.predeclared_names()

    render, position_map = compile_template_to_render(text, template, insertion, predeclared)
    synthetic_text = content[:insertion] + render + content[insertion:]

    return VirtualDocument(
        uri=uri,
        synthetic_text=synthetic_text,
        script_start=script_start,
        script_end=script_end,
        insertion_offset=insertion,
        render=render,
        position_map=position_map,
        predeclared_names=predeclared,
        metadata=metadata,
        template_start=template.content_start,
        version=version,
    )


@dataclass(eq=False)
class CacheEntry:
    uri: str
    text: str
    version: int = 0
    is_open: bool = True
    html: Optional[HtmlDocument] = None
    metadata: Optional[ComponentMetadata] = None
    virtual: Optional[VirtualDocument] = None
    synthetic_version: int = 0
    _metadata_ready: bool = False
    _virtual_ready: bool = False
    _line_index: Optional[LineIndex] = None
    lock: threading.RLock = field(default_factory=threading.RLock, repr=False)

    @property
    def ready(self) -> bool:
        return self._virtual_ready

    @property
    def line_index(self) -> LineIndex:
        if self._line_index is None:
            self._line_index = LineIndex(self.text)
        return self._line_index

    def invalidate(self) -> None:
        with self.lock:
            self.html = None
            self.metadata = None
            self.virtual = None
            self._metadata_ready = False
            self._virtual_ready = False
            self._line_index = None

    def registers(self, uri: str) -> bool:
        if self.metadata is None:
            return False
        return any(child.uri == uri for child in self.metadata.registered_children)


def _read_file(uri: str) -> Optional[str]:
    path = to_fs_path(uri)
    if not path:
        return None
    try:
        return Path(path).read_text(encoding="utf-8")
    except OSError as e:
        logger.debug(f"Cannot read component {uri}: {e}")
        return None


class DocumentCache:
    """Index of ``CacheEntry`` by URI with explicit invalidation."""

    def __init__(self, read_file: Callable[[str], Optional[str]] = _read_file):
        self._entries: Dict[str, CacheEntry] = {}
        self._lock = threading.Lock()
        self._read_file = read_file

    def __contains__(self, uri: str) -> bool:
        return uri in self._entries

    def get(self, uri: str) -> Optional[CacheEntry]:
        return self._entries.get(uri)

    def open_uris(self) -> List[str]:
        return [uri for uri, entry in self._entries.items() if entry.is_open]

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def open(self, uri: str, text: str, version: int = 0) -> CacheEntry:
        with self._lock:
            entry = self._entries.get(uri)
            if entry is None:
                entry = CacheEntry(uri=uri, text=text, version=version)
                self._entries[uri] = entry
        with entry.lock:
            entry.text = text
            entry.version = version
            entry.is_open = True
            entry.invalidate()
        self._invalidate_dependents(uri)
        return entry

    def update(self, uri: str, text: str, version: int = 0) -> List[str]:
        """Replace a document's text. Returns every URI whose state was dropped."""
        entry = self._entries.get(uri)
        if entry is None:
            self.open(uri, text, version)
            return [uri] + self.dependents_of(uri)
        with entry.lock:
            entry.text = text
            entry.version = version
            entry.invalidate()
        return [uri] + self._invalidate_dependents(uri)

    def close(self, uri: str) -> None:
        with self._lock:
            self._entries.pop(uri, None)
        self._invalidate_dependents(uri)

    def forget(self, uri: str) -> List[str]:
        """Drop state loaded from disk for ``uri`` (e.g. the file changed)."""
        entry = self._entries.get(uri)
        if entry is not None and not entry.is_open:
            with self._lock:
                self._entries.pop(uri, None)
        elif entry is not None:
            return []
        return self._invalidate_dependents(uri)

    def dependents_of(self, uri: str) -> List[str]:
        return [
            other
            for other, entry in list(self._entries.items())
            if other != uri and entry.registers(uri)
        ]

    def _invalidate_dependents(self, uri: str) -> List[str]:
        dependents = self.dependents_of(uri)
        for other in dependents:
            entry = self._entries.get(other)
            if entry is not None:
                entry.invalidate()
        if dependents:
            logger.debug(f"Invalidated {dependents} after change of {uri}")
        return dependents

    def get_text(self, uri: str) -> Optional[str]:
        entry = self._entries.get(uri)
        return entry.text if entry else None

    def get_html(self, uri: str) -> Optional[HtmlDocument]:
        entry = self._entries.get(uri)
        if entry is None:
            return None
        with entry.lock:
            if entry.html is None:
                entry.html = parse_html(entry.text)
            return entry.html

    def get_component(self, uri: str) -> Optional[ComponentMetadata]:
        """Metadata of an open document, or of a component file on disk."""
        entry = self._entries.get(uri)
        if entry is None:
            text = self._read_file(uri)
            if text is None:
                return None
            with self._lock:
                entry = self._entries.setdefault(
                    uri, CacheEntry(uri=uri, text=text, is_open=False)
                )
        with entry.lock:
            if not entry._metadata_ready:
                html = self.get_html(uri)
                script = html.find_root("script") if html else None
                if script is not None and script.start_tag_end is not None:
                    script_text = entry.text[script.content_start : script.content_end]
                    try:
                        entry.metadata = parse_component(script_text, uri)
                    except Exception:
                        logger.exception(f"Failed to parse component {uri}")
                        entry.metadata = None
                entry._metadata_ready = True
            return entry.metadata

    def get_registered_components(self, uri: str) -> Dict[str, ComponentMetadata]:
        """Metadata of every child component registered by ``uri``, by tag name."""
        metadata = self.get_component(uri)
        if metadata is None:
            return {}
        components: Dict[str, ComponentMetadata] = {}
        for child in metadata.registered_children:
            child_metadata = self.get_component(child.uri) if child.uri else None
            if child_metadata is None:
                child_metadata = ComponentMetadata(uri=child.uri or child.specifier, name=child.name)
            components[child.name] = child_metadata
        return components

    def get_virtual_document(self, uri: str) -> Optional[VirtualDocument]:
        """Return the virtual document, rebuilding it if absent.

        A rebuild failure is logged and yields ``None``.
        """
        entry = self._entries.get(uri)
        if entry is None:
            return None
        with entry.lock:
            if entry.ready:
                return entry.virtual
            try:
                html = self.get_html(uri)
                metadata = self.get_component(uri)
                entry.synthetic_version += 1
                entry.virtual = build_virtual_document(
                    uri, entry.text, html, metadata, entry.synthetic_version
                )
            except Exception:
                logger.exception(f"Failed to build virtual document for {uri}")
                entry.virtual = None
            entry._virtual_ready = True
            if entry.virtual is not None:
                logger.debug(
                    f"Built virtual document for {uri} v{entry.virtual.version} "
                    f"({len(entry.virtual.position_map)} breakpoints)"
                )
            return entry.virtual
