"""
Freshrelease MCP Server (stdio)
===============================

最小可用的 MCP（Model Context Protocol）server：JSON-RPC over stdio，一行一个消息。
工具目录见 tool_registry.py，具体调用见 tool_dispatcher.py。

配置从 settings 文件 + 环境变量 FRESHRELEASE_* 读取（见 freshrelease_client.load_config）。
注意：不要把 token 提交到 git。stdout 只写协议帧，日志一律走 stderr。
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from typing import Any, Dict, Optional, TextIO

from freshrelease_client import load_config
from tool_dispatcher import ToolDispatcher, ToolSession


SERVER_NAME = "freshrelease-mcp-server"
SERVER_VERSION = "1.0.0"
DEFAULT_PROTOCOL_VERSION = "2024-11-05"

logger = logging.getLogger(__name__)


class MCPError(Exception):
    def __init__(self, code: int, message: str, data: Any | None = None):
        super().__init__(message)
        self.code = code
        self.message = message
        self.data = data


# ========= MCP JSON-RPC plumbing =========

def _result(id_: Any, result: Any) -> Dict[str, Any]:
    return {"jsonrpc": "2.0", "id": id_, "result": result}


def _error(id_: Any, code: int, message: str, data: Any | None = None) -> Dict[str, Any]:
    err: Dict[str, Any] = {"code": code, "message": message}
    if data is not None:
        err["data"] = data
    return {"jsonrpc": "2.0", "id": id_, "error": err}


def _initialize(params: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "protocolVersion": str(params.get("protocolVersion") or DEFAULT_PROTOCOL_VERSION),
        "serverInfo": {"name": SERVER_NAME, "version": SERVER_VERSION},
        "capabilities": {"tools": {}},
    }


def handle_message(dispatcher: ToolDispatcher, session: Optional[ToolSession], req: Any) -> Optional[Dict[str, Any]]:
    """
    处理一条已解码的 JSON-RPC 消息，返回要回写的响应；通知（没有 id）返回 None。
    stdio 和 HTTP /mcp 共用这一个入口。
    """
    if not isinstance(req, dict):
        return _error(None, -32600, "Invalid Request: expected a JSON object")

    id_ = req.get("id")
    method = req.get("method")
    is_notification = "id" not in req

    try:
        params = req.get("params") or {}
        if not isinstance(params, dict):
            raise MCPError(-32602, "params must be an object")

        if method == "initialize":
            out = _initialize(params)
        elif isinstance(method, str) and method.startswith("notifications/"):
            return None
        elif method == "ping":
            out = {}
        elif method == "tools/list":
            out = {"tools": dispatcher.list_tools()}
        elif method == "tools/call":
            tool_name = str(params.get("name") or "")
            arguments = params.get("arguments") or {}
            if not isinstance(arguments, dict):
                raise MCPError(-32602, "arguments must be an object")
            out = dispatcher.call_tool(tool_name, arguments, session=session).to_dict()
        else:
            raise MCPError(-32601, f"Method not found: {method}")
    except MCPError as e:
        if is_notification:
            return None
        return _error(id_, e.code, e.message, e.data)
    except Exception as e:
        logger.exception("Unhandled error for method %s", method)
        if is_notification:
            return None
        return _error(id_, -32099, f"Unhandled error: {e}")

    if is_notification:
        return None
    return _result(id_, out)


def serve(dispatcher: ToolDispatcher, stdin: TextIO, stdout: TextIO) -> None:
    # 一个 stdio 进程 = 一条连接 = 一个 session
    session = ToolSession()
    for line in stdin:
        line = line.strip()
        if not line:
            continue
        try:
            req = json.loads(line)
        except ValueError as e:
            resp: Optional[Dict[str, Any]] = _error(None, -32700, f"Parse error: {e}")
        else:
            resp = handle_message(dispatcher, session, req)
        if resp is not None:
            stdout.write(json.dumps(resp, ensure_ascii=False) + "\n")
            stdout.flush()


def setup_logging(level: Optional[str] = None) -> None:
    logging.basicConfig(
        level=(level or os.getenv("LOG_LEVEL") or "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )


def main(argv: Optional[list[str]] = None) -> None:
    ap = argparse.ArgumentParser(description="Freshrelease MCP server over stdio")
    ap.add_argument("--settings", default=None, help="settings json 路径（默认 FRESHRELEASE_SETTINGS_PATH 或 out/settings.json）")
    ap.add_argument("--log-level", default=None)
    args = ap.parse_args(argv)

    setup_logging(args.log_level)
    dispatcher = ToolDispatcher(load_config(args.settings))
    logger.info("%s %s ready on stdio (%s tools)", SERVER_NAME, SERVER_VERSION, len(dispatcher.registry))
    serve(dispatcher, sys.stdin, sys.stdout)


if __name__ == "__main__":
    main()
