"""Vue Class Component Language Server"""

import asyncio
import logging
import os
from typing import Any, Dict, List, Optional

from lsprotocol import converters
from lsprotocol.types import (
    CompletionList,
    CompletionOptions,
    CompletionParams,
    DefinitionParams,
    Diagnostic,
    DidChangeTextDocumentParams,
    DidChangeWatchedFilesParams,
    DidCloseTextDocumentParams,
    DidOpenTextDocumentParams,
    DocumentHighlight,
    DocumentHighlightParams,
    DocumentSymbol,
    DocumentSymbolParams,
    Hover,
    HoverParams,
    Location,
    Position,
    PublishDiagnosticsParams,
    TextDocumentSyncKind,
)
from pygls.lsp.server import LanguageServer

from . import __version__
from .config import ServerConfig, apply_logging, configure_logging
from .documents import DocumentCache, get_file_name, get_uri
from .service import VueLanguageService
from .typescript import EngineDiagnostic, TypeScriptClient, TypeScriptService

logger = logging.getLogger(__name__)

converter = converters.get_converter()

server = LanguageServer(
    "vue-class-language-server",
    __version__,
    text_document_sync_kind=TextDocumentSyncKind.Full,
)

config = ServerConfig()
cache = DocumentCache()
service = VueLanguageService(cache)
engine: Optional[TypeScriptService] = None
engine_diagnostics: Dict[str, List[Diagnostic]] = {}
pending_validations: Dict[str, asyncio.TimerHandle] = {}
event_loop: Optional[asyncio.AbstractEventLoop] = None


@server.feature("initialize")
def initialize(ls: LanguageServer, params: Any):
    """Read client options and start the TypeScript server."""
    global config, engine

    options = getattr(params, "initialization_options", None)
    config = ServerConfig.from_initialization_options(
        options if isinstance(options, dict) else None
    )
    apply_logging(config)

    if not config.use_typescript:
        logger.info("TypeScript server disabled by client.")
        return

    client = TypeScriptClient(config.typescript_server_command or None)
    if not client.start():
        logger.error("TypeScript server failed to start. Template type checking disabled.")
        return

    engine = TypeScriptService(client)
    service.engine = engine
    engine.set_diagnostics_callback(
        lambda file_name, diagnostics: on_engine_diagnostics(ls, file_name, diagnostics)
    )
    asyncio.create_task(_init_typescript(ls, params))


async def _init_typescript(ls: LanguageServer, params: Any):
    global event_loop
    event_loop = asyncio.get_running_loop()
    if not engine:
        return
    try:
        init_dict = converter.unstructure(params)
        init_dict["processId"] = os.getpid()
        init_dict.pop("initializationOptions", None)
        await engine.initialize(init_dict)
        logger.info("TypeScript server initialized")
    except Exception as e:
        logger.error(f"Failed to initialize TypeScript server: {e}")
        return

    # Documents opened while the engine was starting
    for uri in cache.open_uris():
        validate(ls, uri)


@server.feature("shutdown")
def shutdown(ls: LanguageServer, params: Any):
    for handle in pending_validations.values():
        handle.cancel()
    pending_validations.clear()
    if engine:
        engine.stop()


def _publish_diagnostics(ls: LanguageServer, uri: str) -> None:
    entry = cache.get(uri)
    if entry is None or not entry.is_open:
        return
    diagnostics = service.template_diagnostics(uri)
    diagnostics.extend(engine_diagnostics.get(uri, []))
    ls.text_document_publish_diagnostics(
        PublishDiagnosticsParams(uri=uri, diagnostics=diagnostics, version=entry.version)
    )


def validate(ls: LanguageServer, uri: str) -> None:
    """Rebuild the virtual document, submit it and publish local diagnostics."""
    pending_validations.pop(uri, None)
    try:
        service.virtual_document(uri)
    except Exception as e:
        logger.error(f"Failed to sync {uri} with TypeScript server: {e}")
    _publish_diagnostics(ls, uri)


def schedule_validation(ls: LanguageServer, uri: str) -> None:
    """Validate ``uri`` once edits pause for ``diagnostics_delay`` seconds."""
    handle = pending_validations.pop(uri, None)
    if handle:
        handle.cancel()
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        loop = None
    if loop is None or config.diagnostics_delay <= 0:
        validate(ls, uri)
        return
    pending_validations[uri] = loop.call_later(config.diagnostics_delay, validate, ls, uri)


def on_engine_diagnostics(
    ls: LanguageServer, file_name: str, diagnostics: List[EngineDiagnostic]
) -> None:
    # Called from the TypeScript reader thread
    if event_loop is None:
        return
    event_loop.call_soon_threadsafe(publish_engine_diagnostics, ls, file_name, diagnostics)


def publish_engine_diagnostics(
    ls: LanguageServer, file_name: str, diagnostics: List[EngineDiagnostic]
) -> None:
    uri = get_uri(file_name)
    if uri not in cache:
        return
    try:
        engine_diagnostics[uri] = service.map_diagnostics(uri, diagnostics)
    except Exception as e:
        logger.error(f"Failed to map diagnostics for {uri}: {e}")
        return
    _publish_diagnostics(ls, uri)


@server.feature("textDocument/didOpen")
def did_open(ls: LanguageServer, params: DidOpenTextDocumentParams):
    """Text document did open notification."""
    uri = params.text_document.uri
    if not uri.startswith("file://"):
        return

    dependents = cache.dependents_of(uri)
    cache.open(uri, params.text_document.text, params.text_document.version)
    validate(ls, uri)
    for other in dependents:
        schedule_validation(ls, other)
    logger.info(f"Document opened: {uri}")


@server.feature("textDocument/didChange")
def did_change(ls: LanguageServer, params: DidChangeTextDocumentParams):
    """Text document did change notification."""
    uri = params.text_document.uri
    if uri not in cache or not params.content_changes:
        return

    # Full sync: the last change holds the whole text
    text = params.content_changes[-1].text
    for invalidated in cache.update(uri, text, params.text_document.version):
        entry = cache.get(invalidated)
        if entry is not None and entry.is_open:
            schedule_validation(ls, invalidated)

    logger.debug(f"Document changed: {uri}")


@server.feature("textDocument/didClose")
def did_close(ls: LanguageServer, params: DidCloseTextDocumentParams):
    uri = params.text_document.uri
    handle = pending_validations.pop(uri, None)
    if handle:
        handle.cancel()
    dependents = cache.dependents_of(uri)
    cache.close(uri)
    engine_diagnostics.pop(uri, None)
    if engine:
        engine.close(get_file_name(uri))
    ls.text_document_publish_diagnostics(PublishDiagnosticsParams(uri=uri, diagnostics=[]))
    for other in dependents:
        schedule_validation(ls, other)


@server.feature("workspace/didChangeWatchedFiles")
def did_change_watched_files(ls: LanguageServer, params: DidChangeWatchedFilesParams):
    """Drop components read from disk when their file changes."""
    for change in params.changes:
        for dependent in cache.forget(change.uri):
            schedule_validation(ls, dependent)


@server.feature("textDocument/hover")
async def hover(ls: LanguageServer, params: HoverParams) -> Optional[Hover]:
    """Provide hover information"""
    uri = params.text_document.uri
    if uri not in cache:
        return None
    try:
        return await service.do_hover(uri, params.position)
    except Exception as e:
        logger.error(f"Hover failed: {e}")
        return None


@server.feature(
    "textDocument/completion",
    CompletionOptions(trigger_characters=[".", "<", ":", "@", " "]),
)
async def completions(ls: LanguageServer, params: CompletionParams) -> CompletionList:
    """Provide completions"""
    uri = params.text_document.uri
    if uri not in cache:
        return CompletionList(is_incomplete=False, items=[])
    try:
        return await service.do_complete(uri, params.position, params.context)
    except Exception as e:
        logger.error(f"Completion failed: {e}")
        return CompletionList(is_incomplete=False, items=[])


@server.feature("textDocument/definition")
async def definition(
    ls: LanguageServer, params: DefinitionParams
) -> Optional[List[Location]]:
    """Provide go to definition"""
    uri = params.text_document.uri
    if uri not in cache:
        return None
    try:
        return await service.find_definition(uri, params.position)
    except Exception as e:
        logger.error(f"Definition failed: {e}")
        return None


@server.feature("textDocument/documentSymbol")
def document_symbol(ls: LanguageServer, params: DocumentSymbolParams) -> List[DocumentSymbol]:
    """Outline of the elements in the file"""
    uri = params.text_document.uri
    if uri not in cache:
        return []
    try:
        return service.document_symbols(uri)
    except Exception as e:
        logger.error(f"Document symbols failed: {e}")
        return []


@server.feature("textDocument/documentHighlight")
def document_highlight(
    ls: LanguageServer, params: DocumentHighlightParams
) -> List[DocumentHighlight]:
    """Highlight matching start and end tags"""
    uri = params.text_document.uri
    if uri not in cache:
        return []
    try:
        return service.document_highlights(uri, params.position)
    except Exception as e:
        logger.error(f"Document highlight failed: {e}")
        return []


def _read_params(params: Any):
    """Extract ``uri`` and ``position`` from a custom request's params."""
    uri = None
    position = None
    if isinstance(params, dict):
        uri = params.get("uri")
        pos_dict = params.get("position")
        if pos_dict:
            position = Position(line=pos_dict["line"], character=pos_dict["character"])
    elif hasattr(params, "uri"):
        uri = params.uri
        raw_position = getattr(params, "position", None)
        if raw_position is not None:
            position = Position(line=raw_position.line, character=raw_position.character)
    return uri, position


@server.feature("vue/virtualCode")
def virtual_code(ls: LanguageServer, params: Any) -> Optional[Dict[str, Any]]:
    """Return the virtual TypeScript document of a .vue file."""
    uri, _ = _read_params(params)
    if not uri or uri not in cache:
        return None

    vdoc = service.virtual_document(uri)
    if vdoc is None:
        return None
    return {
        "uri": uri,
        "fileName": vdoc.file_name,
        "version": vdoc.version,
        "content": vdoc.synthetic_text,
    }


@server.feature("vue/mapToGenerated")
def map_to_generated(ls: LanguageServer, params: Any) -> Optional[Dict[str, Any]]:
    """Map a position in the .vue file to the virtual TypeScript document."""
    uri, position = _read_params(params)
    if not uri or not position or uri not in cache:
        return None

    generated = service.map_to_generated(uri, position)
    if generated is None:
        return None
    return {"line": generated.line, "character": generated.character}


@server.feature("vue/mapFromGenerated")
def map_from_generated(ls: LanguageServer, params: Any) -> Optional[Dict[str, Any]]:
    """Map a position in the virtual TypeScript document back to the .vue file."""
    uri, position = _read_params(params)
    if not uri or not position or uri not in cache:
        return None

    original = service.map_from_generated(uri, position)
    if original is None:
        return None
    return {"line": original.line, "character": original.character}


def start():
    """Start the language server"""
    env_config = ServerConfig.from_initialization_options(None)
    configure_logging(env_config.level, env_config.log_file)
    logger.info("Vue Class Language Server starting...")
    try:
        server.start_io()
    except Exception:
        logger.exception("Server crashed")
        raise


if __name__ == "__main__":
    start()
