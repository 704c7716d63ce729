import asyncio
import json
from unittest.mock import AsyncMock, Mock

import pytest

from vue_class_language_server.typescript import (
    EngineDiagnostic,
    QuickInfo,
    TypeScriptClient,
    TypeScriptError,
    TypeScriptService,
    _split_hover_contents,
)

FILE = "file:///proj/src/App.vue.ts"


@pytest.fixture
def client():
    client = Mock(spec=TypeScriptClient)
    client.running = True
    return client


@pytest.fixture
def service(client):
    service = TypeScriptService(client)
    service.initialized = True
    return service


def test_split_hover_contents():
    markdown = {"kind": "markdown", "value": "\n```typescript\nconst msg: string\n```\nGreeting"}
    assert _split_hover_contents(markdown) == ("const msg: string", "Greeting")
    assert _split_hover_contents({"language": "typescript", "value": "let a: number"}) == (
        "let a: number",
        "",
    )
    assert _split_hover_contents(
        [{"language": "typescript", "value": "let a: number"}, "Docs"]
    ) == ("let a: number", "Docs")
    assert _split_hover_contents("plain") == ("", "plain")


def test_sync_opens_then_changes(service, client):
    service.sync(FILE, 1, "let a = 1;")
    service.sync(FILE, 1, "let a = 1;")
    service.sync(FILE, 2, "let a = 2;")

    methods = [call.args[0] for call in client.send_notification.call_args_list]
    assert methods == ["textDocument/didOpen", "textDocument/didChange"]
    opened = client.send_notification.call_args_list[0].args[1]["textDocument"]
    assert opened["languageId"] == "typescript"
    assert opened["version"] == 1


def test_sync_skipped_before_initialize(client):
    service = TypeScriptService(client)
    service.sync(FILE, 1, "let a = 1;")
    client.send_notification.assert_not_called()


def test_close(service, client):
    service.sync(FILE, 1, "let a = 1;")
    service.close(FILE)
    client.send_notification.assert_called_with(
        "textDocument/didClose", {"textDocument": {"uri": FILE}}
    )
    assert service.line_index(FILE) is None


@pytest.mark.asyncio
async def test_quick_info(service, client):
    service.sync(FILE, 1, "let msg = 1;\n")
    client.send_request = AsyncMock(
        return_value={
            "contents": {"kind": "markdown", "value": "\n```typescript\nlet msg: number\n```\n"},
            "range": {"start": {"line": 0, "character": 4}, "end": {"line": 0, "character": 7}},
        }
    )

    info = await service.quick_info(FILE, 5)

    assert info == QuickInfo(4, 3, "let msg: number", "")
    method, params = client.send_request.call_args[0]
    assert method == "textDocument/hover"
    assert params["position"] == {"line": 0, "character": 5}


@pytest.mark.asyncio
async def test_quick_info_for_unsynced_file(service, client):
    client.send_request = AsyncMock()
    assert await service.quick_info("file:///other.ts", 0) is None
    client.send_request.assert_not_called()


@pytest.mark.asyncio
async def test_completions_accepts_list_and_completion_list(service, client):
    service.sync(FILE, 1, "this.")
    client.send_request = AsyncMock(
        return_value={"isIncomplete": False, "items": [{"label": "msg", "kind": 5, "sortText": "11"}]}
    )
    entries = await service.completions(FILE, 5)
    assert [(e.name, e.kind, e.sort_text) for e in entries] == [("msg", 5, "11")]

    client.send_request = AsyncMock(return_value=[{"label": "count"}])
    entries = await service.completions(FILE, 5)
    assert [e.name for e in entries] == ["count"]


@pytest.mark.asyncio
async def test_definition_converts_synced_locations(service, client):
    service.sync(FILE, 1, "const a = 1;\nconst b = a;\n")
    client.send_request = AsyncMock(
        return_value=[
            {"uri": FILE, "range": {"start": {"line": 0, "character": 6}, "end": {"line": 0, "character": 7}}},
            {
                "targetUri": "file:///lib.d.ts",
                "targetRange": {"start": {"line": 9, "character": 0}, "end": {"line": 9, "character": 3}},
                "targetSelectionRange": {"start": {"line": 9, "character": 0}, "end": {"line": 9, "character": 3}},
            },
        ]
    )

    locations = await service.definition(FILE, 19)

    assert (locations[0].uri, locations[0].start, locations[0].length) == (FILE, 6, 1)
    assert locations[1].uri == "file:///lib.d.ts"
    assert locations[1].start is None


def test_diagnostics_are_converted_to_offsets(service):
    received = []
    service.set_diagnostics_callback(lambda file_name, diags: received.append((file_name, diags)))
    service.sync(FILE, 1, "let a = 1;\nlet b: string = a;\n")

    service._on_diagnostics(
        {
            "uri": FILE,
            "diagnostics": [
                {
                    "range": {"start": {"line": 1, "character": 4}, "end": {"line": 1, "character": 5}},
                    "message": "Type 'number' is not assignable to type 'string'.",
                    "severity": 1,
                    "code": 2322,
                    "source": "typescript",
                }
            ],
        }
    )

    assert received == [
        (
            FILE,
            [
                EngineDiagnostic(
                    15, 1, "Type 'number' is not assignable to type 'string'.", 1, 2322, "typescript"
                )
            ],
        )
    ]


def test_client_answers_configuration_requests():
    client = TypeScriptClient()
    client._send = Mock()
    request = {"jsonrpc": "2.0", "id": 3, "method": "workspace/configuration", "params": {"items": [{}, {}]}}

    client._handle_message(json.dumps(request).encode("utf-8"))

    client._send.assert_called_once_with({"jsonrpc": "2.0", "id": 3, "result": [None, None]})


def test_client_forwards_published_diagnostics():
    client = TypeScriptClient()
    callback = Mock()
    client.set_diagnostics_callback(callback)
    message = {"jsonrpc": "2.0", "method": "textDocument/publishDiagnostics", "params": {"uri": FILE, "diagnostics": []}}

    client._handle_message(json.dumps(message).encode("utf-8"))

    callback.assert_called_once_with({"uri": FILE, "diagnostics": []})


@pytest.mark.asyncio
async def test_client_resolves_responses():
    client = TypeScriptClient()
    client._send = Mock()

    task = asyncio.create_task(client.send_request("textDocument/hover", {}))
    await asyncio.sleep(0)
    request_id = client._send.call_args[0][0]["id"]
    client._handle_message(json.dumps({"jsonrpc": "2.0", "id": request_id, "result": {"ok": True}}).encode())

    assert await task == {"ok": True}


@pytest.mark.asyncio
async def test_client_raises_error_responses():
    client = TypeScriptClient()
    client._send = Mock()

    task = asyncio.create_task(client.send_request("textDocument/definition", {}))
    await asyncio.sleep(0)
    request_id = client._send.call_args[0][0]["id"]
    error = {"code": -32603, "message": "No project"}
    client._handle_message(json.dumps({"jsonrpc": "2.0", "id": request_id, "error": error}).encode())

    with pytest.raises(TypeScriptError, match="No project"):
        await task


def test_start_without_executable(monkeypatch):
    client = TypeScriptClient()
    monkeypatch.setattr(client, "_find_executable", lambda: None)
    assert client.start() is False
    assert not client.running
