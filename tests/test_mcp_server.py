import io
import json

from conftest import FakeResponse
from mcp_freshrelease_server import SERVER_NAME, handle_message, serve
from tool_dispatcher import ToolSession


def _rpc(method, params=None, id_=1):
    msg = {"jsonrpc": "2.0", "id": id_, "method": method}
    if params is not None:
        msg["params"] = params
    return msg


def test_initialize(dispatcher):
    resp = handle_message(dispatcher, ToolSession(), _rpc("initialize", {"protocolVersion": "2025-03-26"}))
    assert resp["id"] == 1
    assert resp["result"]["serverInfo"]["name"] == SERVER_NAME
    assert resp["result"]["protocolVersion"] == "2025-03-26"
    assert "tools" in resp["result"]["capabilities"]


def test_notifications_get_no_response(dispatcher):
    msg = {"jsonrpc": "2.0", "method": "notifications/initialized"}
    assert handle_message(dispatcher, ToolSession(), msg) is None


def test_tools_list_is_stable(dispatcher):
    first = handle_message(dispatcher, ToolSession(), _rpc("tools/list"))
    second = handle_message(dispatcher, ToolSession(), _rpc("tools/list", id_=2))
    names = [t["name"] for t in first["result"]["tools"]]
    assert names == [t["name"] for t in second["result"]["tools"]]
    assert "search_user_by_name" in names


def test_tools_call_returns_outcome(dispatcher, upstream):
    upstream.add("GET", "/FBOTS/statuses", FakeResponse(200, {"statuses": []}))
    resp = handle_message(dispatcher, ToolSession(), _rpc("tools/call", {"name": "get_statuses", "arguments": {}}))
    assert resp["result"]["isError"] is False
    assert json.loads(resp["result"]["content"][0]["text"]) == {"statuses": []}


def test_tools_call_unknown_tool_is_a_result_not_rpc_error(dispatcher):
    resp = handle_message(dispatcher, ToolSession(), _rpc("tools/call", {"name": "nope"}))
    assert "error" not in resp
    assert resp["result"]["isError"] is True
    assert "nope" in resp["result"]["content"][0]["text"]


def test_bad_arguments_and_methods(dispatcher):
    resp = handle_message(dispatcher, ToolSession(), _rpc("tools/call", {"name": "get_issue", "arguments": "x"}))
    assert resp["error"]["code"] == -32602

    resp = handle_message(dispatcher, ToolSession(), _rpc("resources/list"))
    assert resp["error"]["code"] == -32601

    resp = handle_message(dispatcher, ToolSession(), ["not", "an", "object"])
    assert resp["error"]["code"] == -32600


def test_serve_stdio_session_keeps_token(dispatcher, upstream):
    dispatcher.config.api_token = ""
    upstream.add("GET", "/FBOTS/statuses", FakeResponse(200, {"statuses": []}))
    lines = [
        "not json",
        "",
        json.dumps(_rpc("tools/call", {"name": "get_statuses"}, id_=1)),
        json.dumps(_rpc("tools/call", {"name": "set_api_token", "arguments": {"api_token": "tok"}}, id_=2)),
        json.dumps(_rpc("tools/call", {"name": "get_statuses"}, id_=3)),
    ]
    out = io.StringIO()

    serve(dispatcher, io.StringIO("\n".join(lines) + "\n"), out)

    responses = [json.loads(line) for line in out.getvalue().splitlines()]
    assert responses[0]["error"]["code"] == -32700
    assert responses[1]["result"]["isError"] is True
    assert "Unauthorized" in responses[1]["result"]["content"][0]["text"]
    assert responses[2]["result"]["isError"] is False
    assert responses[3]["result"]["isError"] is False
    assert upstream.calls[0]["headers"]["Authorization"] == "Token tok"
