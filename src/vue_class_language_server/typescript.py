import asyncio
import json
import logging
import os
import re
import shutil
import subprocess
import sys
import threading
from asyncio import AbstractEventLoop
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from .position import LineIndex

logger = logging.getLogger(__name__)

EXECUTABLE = "typescript-language-server"


class TypeScriptError(Exception):
    """Error response returned by the TypeScript language server."""

    def __init__(self, method: str, error: Any):
        self.method = method
        self.error = error
        message = error.get("message") if isinstance(error, dict) else error
        super().__init__(f"TypeScript error in {method}: {message}")


class TypeScriptClient:
    """
    A JSON-RPC client driving a typescript-language-server subprocess.
    """

    def __init__(self, command: Optional[Sequence[str]] = None):
        self.command = list(command) if command else None
        self.process: Optional[subprocess.Popen] = None
        self._response_callbacks: Dict[
            int, Tuple[AbstractEventLoop, Callable[[Any, Optional[Any]], None]]
        ] = {}
        self._request_id = 0
        self._lock = threading.Lock()
        self.running = False
        self._diagnostics_callback: Optional[Callable[[Dict[str, Any]], None]] = None

    def set_diagnostics_callback(
        self, callback: Callable[[Dict[str, Any]], None]
    ) -> None:
        self._diagnostics_callback = callback

    def start(self) -> bool:
        """Start the typescript-language-server process."""
        try:
            cmd = self.command or self._build_command()
            if not cmd:
                logger.warning(f"{EXECUTABLE} not found in PATH or node_modules.")
                return False

            logger.info(f"Starting TypeScript server: {cmd}")
            self.process = subprocess.Popen(
                cmd,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                bufsize=0,
            )
            self.running = True

            self._reader_thread = threading.Thread(target=self._read_loop, daemon=True)
            self._reader_thread.start()
            self._stderr_thread = threading.Thread(
                target=self._read_stderr, daemon=True
            )
            self._stderr_thread.start()
            return True

        except FileNotFoundError:
            logger.warning(f"{EXECUTABLE} not found. Template type checking disabled.")
            return False
        except Exception as e:
            logger.error(f"Failed to start TypeScript server: {e}")
            return False

    def _build_command(self) -> Optional[List[str]]:
        executable = self._find_executable()
        if executable:
            return [executable, "--stdio"]
        return None

    def _find_executable(self) -> Optional[str]:
        # 1. PATH
        path_exe = shutil.which(EXECUTABLE)
        if path_exe:
            return path_exe

        # 2. node_modules of the working directory (project-local install)
        bin_dir = os.path.join(os.getcwd(), "node_modules", ".bin")
        for name in (EXECUTABLE, EXECUTABLE + ".cmd"):
            local_exe = os.path.join(bin_dir, name)
            if os.path.exists(local_exe):
                return local_exe

        # 3. Next to the python executable (npm installed into a venv prefix)
        py_dir = os.path.dirname(sys.executable)
        same_dir_exe = os.path.join(py_dir, EXECUTABLE)
        if os.path.exists(same_dir_exe):
            return same_dir_exe

        return None

    def stop(self):
        self.running = False
        if self.process:
            try:
                self.process.terminate()
            except OSError as e:
                logger.debug(f"TypeScript server already gone: {e}")
            self.process = None

    def send_notification(self, method: str, params: Any):
        """Send a JSON-RPC notification (no ID)."""
        msg = {"jsonrpc": "2.0", "method": method, "params": params}
        self._send(msg)

    async def send_request(self, method: str, params: Any) -> Any:
        """Send a JSON-RPC request and wait for the response."""
        loop = asyncio.get_running_loop()
        future = loop.create_future()

        req_id = self._get_next_id()
        msg = {"jsonrpc": "2.0", "id": req_id, "method": method, "params": params}

        def resolve_future(result, error=None):
            if not future.done():
                if error:
                    future.set_exception(TypeScriptError(method, error))
                else:
                    future.set_result(result)

        with self._lock:
            self._response_callbacks[req_id] = (loop, resolve_future)

        self._send(msg)
        return await future

    def _get_next_id(self) -> int:
        with self._lock:
            self._request_id += 1
            return self._request_id

    def _send(self, msg: Dict[str, Any]):
        if not self.process or not self.process.stdin:
            return

        content_bytes = json.dumps(msg).encode("utf-8")
        body_bytes = (
            f"Content-Length: {len(content_bytes)}\r\n\r\n".encode("utf-8")
            + content_bytes
        )

        try:
            self.process.stdin.write(body_bytes)
            self.process.stdin.flush()
        except BrokenPipeError:
            logger.error("TypeScript server process died")
            self._fail_pending("process died")
            self.stop()

    def _fail_pending(self, reason: str) -> None:
        with self._lock:
            pending = list(self._response_callbacks.values())
            self._response_callbacks.clear()
        for loop, callback in pending:
            loop.call_soon_threadsafe(callback, None, {"message": reason})

    def _read_loop(self):
        """Reads JSON-RPC messages from stdout."""
        if not self.process or not self.process.stdout:
            return
        stdout = self.process.stdout

        while self.running:
            line = stdout.readline()
            if not line:
                logger.info("TypeScript server stdout closed")
                break

            line_str = line.decode("utf-8", errors="ignore").strip()
            if line_str.startswith("Content-Length:"):
                try:
                    length = int(line_str.split(":")[1].strip())
                    # Skip the blank separator line
                    stdout.readline()
                    body = stdout.read(length)
                    self._handle_message(body)
                except Exception as e:
                    logger.error(f"Error parsing TypeScript server message: {e}")

        self._fail_pending("stdout closed")

    def _read_stderr(self):
        if not self.process or not self.process.stderr:
            return
        for line in self.process.stderr:
            logger.info(f"[tsserver STDERR] {line.decode('utf-8', errors='ignore').strip()}")

    def _handle_message(self, body: bytes):
        try:
            msg = json.loads(body)

            # Response to one of our requests
            if "id" in msg and "method" not in msg:
                with self._lock:
                    callback_info = self._response_callbacks.pop(msg["id"], None)
                if callback_info:
                    loop, callback = callback_info
                    if "error" in msg:
                        loop.call_soon_threadsafe(callback, None, msg["error"])
                    else:
                        loop.call_soon_threadsafe(callback, msg.get("result"), None)
                return

            # Request from the server
            if "id" in msg and "method" in msg:
                self._handle_incoming_request(msg)
                return

            if msg.get("method") == "textDocument/publishDiagnostics":
                if self._diagnostics_callback:
                    try:
                        self._diagnostics_callback(msg.get("params") or {})
                    except Exception as e:
                        logger.error(f"Diagnostics callback failed: {e}")
            elif msg.get("method") == "window/logMessage":
                params = msg.get("params", {})
                logger.debug(f"[tsserver] {params.get('message', '')}")

        except Exception as e:
            logger.error(f"Failed to handle message: {e}")

    def _handle_incoming_request(self, msg: Dict[str, Any]):
        """Answer requests initiated by the TypeScript server."""
        method = msg.get("method")
        req_id = msg.get("id")
        params = msg.get("params") or {}

        logger.debug(f"[tsserver Request] {method} id={req_id}")

        if method == "workspace/configuration":
            # null for every item: use defaults
            result = [None] * len(params.get("items", []))
            self._send({"jsonrpc": "2.0", "id": req_id, "result": result})
        elif method in ("client/registerCapability", "window/workDoneProgress/create"):
            self._send({"jsonrpc": "2.0", "id": req_id, "result": None})
        else:
            logger.warning(f"Unhandled TypeScript server request: {method}")
            self._send(
                {
                    "jsonrpc": "2.0",
                    "id": req_id,
                    "error": {"code": -32601, "message": "Method not found"},
                }
            )


@dataclass(frozen=True)
class QuickInfo:
    start: int
    length: int
    display: str
    documentation: str = ""


@dataclass(frozen=True)
class CompletionEntry:
    name: str
    kind: Optional[int] = None
    detail: Optional[str] = None
    sort_text: Optional[str] = None
    insert_text: Optional[str] = None


@dataclass(frozen=True)
class EngineDiagnostic:
    start: int
    length: int
    message: str
    severity: Optional[int] = None
    code: Optional[Any] = None
    source: Optional[str] = None


@dataclass(frozen=True)
class EngineLocation:
    """A definition target. Offsets are set for files synced by this service."""

    uri: str
    range: Dict[str, Any]
    start: Optional[int] = None
    length: int = 0


_CODE_BLOCK_RE = re.compile(r"```\w*\n(.*?)\n?```", re.DOTALL)


def _split_hover_contents(contents: Any) -> Tuple[str, str]:
    """Split LSP hover contents into (signature, documentation)."""
    if isinstance(contents, str):
        return "", contents
    if isinstance(contents, dict):
        if "language" in contents:
            return contents.get("value", ""), ""
        value = contents.get("value", "")
        match = _CODE_BLOCK_RE.search(value)
        if not match:
            return "", value.strip()
        documentation = (value[: match.start()] + value[match.end() :]).strip()
        return match.group(1).strip(), documentation
    if isinstance(contents, list):
        display = ""
        docs = []
        for part in contents:
            part_display, part_doc = _split_hover_contents(part)
            if part_display and not display:
                display = part_display
            if part_doc:
                docs.append(part_doc)
        return display, "\n\n".join(docs)
    return "", ""


class TypeScriptService:
    """Offset-addressed view of the TypeScript server.

    Files are identified by the virtual file name and kept in sync with full
    text; positions are converted with a ``LineIndex`` of the last synced text.
    """

    def __init__(self, client: Optional[TypeScriptClient]):
        self.client = client
        self.initialized = False
        self._files: Dict[str, Tuple[int, LineIndex]] = {}
        self._diagnostics_callback: Optional[
            Callable[[str, List[EngineDiagnostic]], None]
        ] = None
        if client is not None:
            client.set_diagnostics_callback(self._on_diagnostics)

    @property
    def available(self) -> bool:
        return self.initialized and self.client is not None and self.client.running

    def set_diagnostics_callback(
        self, callback: Callable[[str, List[EngineDiagnostic]], None]
    ) -> None:
        self._diagnostics_callback = callback

    async def initialize(self, params: Dict[str, Any]) -> Any:
        if not self.client:
            return None
        result = await self.client.send_request("initialize", params)
        self.client.send_notification("initialized", {})
        self.initialized = True
        return result

    def line_index(self, file_name: str) -> Optional[LineIndex]:
        synced = self._files.get(file_name)
        return synced[1] if synced else None

    def sync(self, file_name: str, version: int, text: str) -> None:
        """Submit ``text`` unless this version was already sent."""
        if not self.available:
            return
        synced = self._files.get(file_name)
        if synced and synced[0] == version:
            return
        if synced is None:
            self.client.send_notification(
                "textDocument/didOpen",
                {
                    "textDocument": {
                        "uri": file_name,
                        "languageId": "typescript",
                        "version": version,
                        "text": text,
                    }
                },
            )
        else:
            self.client.send_notification(
                "textDocument/didChange",
                {
                    "textDocument": {"uri": file_name, "version": version},
                    "contentChanges": [{"text": text}],
                },
            )
        self._files[file_name] = (version, LineIndex(text))

    def close(self, file_name: str) -> None:
        if self._files.pop(file_name, None) is None or not self.available:
            return
        self.client.send_notification(
            "textDocument/didClose", {"textDocument": {"uri": file_name}}
        )

    def _position_params(self, file_name: str, offset: int) -> Optional[Dict[str, Any]]:
        index = self.line_index(file_name)
        if index is None or not self.available:
            return None
        line, character = index.position_at(offset)
        return {
            "textDocument": {"uri": file_name},
            "position": {"line": line, "character": character},
        }

    def _range_offsets(self, index: LineIndex, lsp_range: Dict[str, Any]) -> Tuple[int, int]:
        start = lsp_range.get("start") or {}
        end = lsp_range.get("end") or start
        start_offset = index.offset_at(start.get("line", 0), start.get("character", 0))
        end_offset = index.offset_at(end.get("line", 0), end.get("character", 0))
        return start_offset, max(end_offset - start_offset, 0)

    async def quick_info(self, file_name: str, offset: int) -> Optional[QuickInfo]:
        params = self._position_params(file_name, offset)
        if params is None:
            return None
        result = await self.client.send_request("textDocument/hover", params)
        if not result or "contents" not in result:
            return None
        display, documentation = _split_hover_contents(result["contents"])
        if result.get("range"):
            start, length = self._range_offsets(self.line_index(file_name), result["range"])
        else:
            start, length = offset, 0
        return QuickInfo(start, length, display, documentation)

    async def completions(
        self, file_name: str, offset: int, context: Optional[Dict[str, Any]] = None
    ) -> List[CompletionEntry]:
        params = self._position_params(file_name, offset)
        if params is None:
            return []
        if context:
            params["context"] = context
        result = await self.client.send_request("textDocument/completion", params)
        if not result:
            return []
        items = result if isinstance(result, list) else result.get("items", [])
        return [
            CompletionEntry(
                name=item["label"],
                kind=item.get("kind"),
                detail=item.get("detail"),
                sort_text=item.get("sortText"),
                insert_text=item.get("insertText"),
            )
            for item in items
        ]

    async def definition(self, file_name: str, offset: int) -> List[EngineLocation]:
        params = self._position_params(file_name, offset)
        if params is None:
            return []
        result = await self.client.send_request("textDocument/definition", params)
        if not result:
            return []
        if isinstance(result, dict):
            result = [result]

        locations = []
        for item in result:
            # Location or LocationLink
            uri = item.get("uri") or item.get("targetUri")
            lsp_range = item.get("range") or item.get("targetSelectionRange")
            if not uri or not lsp_range:
                continue
            index = self.line_index(uri)
            if index is not None:
                start, length = self._range_offsets(index, lsp_range)
                locations.append(EngineLocation(uri, lsp_range, start, length))
            else:
                locations.append(EngineLocation(uri, lsp_range))
        return locations

    def _on_diagnostics(self, params: Dict[str, Any]) -> None:
        file_name = params.get("uri")
        index = self.line_index(file_name) if file_name else None
        if index is None or not self._diagnostics_callback:
            return
        diagnostics = []
        for diag in params.get("diagnostics") or []:
            if not diag.get("range"):
                continue
            start, length = self._range_offsets(index, diag["range"])
            diagnostics.append(
                EngineDiagnostic(
                    start=start,
                    length=length,
                    message=diag.get("message", ""),
                    severity=diag.get("severity"),
                    code=diag.get("code"),
                    source=diag.get("source"),
                )
            )
        self._diagnostics_callback(file_name, diagnostics)

    def stop(self) -> None:
        if self.client:
            self.client.stop()
        self.initialized = False
        self._files.clear()
