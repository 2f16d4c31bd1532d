"""
HTTP 版 MCP 入口（FastAPI）。

  GET  /            健康检查 + endpoint 列表
  GET  /tools       工具目录
  POST /tools/call  {"name": ..., "arguments": {...}} -> {"content": [...], "isError": bool}
  POST /mcp         单条 JSON-RPC 消息（initialize / tools/list / tools/call ...）

会话身份：优先用请求头 Mcp-Session-Id（initialize 的响应里会下发一个），
其次用浏览器 session cookie。两者都没有的请求不建会话，set_api_token 会直接报错。

本地运行：uvicorn web.server:app --port 3000
"""

from __future__ import annotations

import logging
import os
import re
import threading
import time
import uuid
from collections import OrderedDict
from typing import Any, Callable, Dict, Optional

from fastapi import Body, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.sessions import SessionMiddleware
from starlette.responses import JSONResponse, PlainTextResponse, Response

from freshrelease_client import load_config
from mcp_freshrelease_server import SERVER_NAME, SERVER_VERSION, handle_message, setup_logging
from tool_dispatcher import ToolDispatcher, ToolSession


logger = logging.getLogger(__name__)

SESSION_HEADER = "Mcp-Session-Id"
_SESSION_ID_RE = re.compile(r"^[\x21-\x7e]{1,128}$")


class SessionStore:
    """
    session id -> ToolSession，带上限和空闲过期；token 只留在服务端。
    """

    def __init__(self, max_size: int = 1000, idle_ttl: float = 3600.0, clock: Callable[[], float] = time.monotonic):
        self.max_size = max_size
        self.idle_ttl = idle_ttl
        self._clock = clock
        self._items: "OrderedDict[str, tuple[ToolSession, float]]" = OrderedDict()
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)

    def __contains__(self, sid: object) -> bool:
        with self._lock:
            return sid in self._items

    def clear(self) -> None:
        with self._lock:
            self._items.clear()

    def _evict_idle(self, now: float) -> None:
        # 最久未用的在前面
        while self._items:
            last_seen = next(iter(self._items.values()))[1]
            if now - last_seen < self.idle_ttl:
                break
            self._items.popitem(last=False)

    def get_or_create(self, sid: str) -> ToolSession:
        with self._lock:
            now = self._clock()
            self._evict_idle(now)
            entry = self._items.pop(sid, None)
            session = entry[0] if entry else ToolSession()
            self._items[sid] = (session, now)
            while len(self._items) > self.max_size:
                self._items.popitem(last=False)
            return session


app = FastAPI(title="Freshrelease MCP Server")

app.add_middleware(
    SessionMiddleware,
    secret_key=os.getenv("APP_SESSION_SECRET", os.urandom(32).hex()),
    same_site="lax",
    https_only=False,
)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", SESSION_HEADER],
    expose_headers=[SESSION_HEADER],
)


SESSIONS = SessionStore(
    max_size=int(os.getenv("MCP_SESSION_MAX", "1000")),
    idle_ttl=float(os.getenv("MCP_SESSION_IDLE_SECONDS", "3600")),
)


@app.exception_handler(Exception)
async def _unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return PlainTextResponse(f"{type(exc).__name__}: {exc}", status_code=500)


def _dispatcher() -> ToolDispatcher:
    dispatcher = getattr(app.state, "dispatcher", None)
    if dispatcher is None:
        dispatcher = ToolDispatcher(load_config())
        app.state.dispatcher = dispatcher
    return dispatcher


def _session_id(request: Request) -> Optional[str]:
    """
    返回一个稳定的 session id；请求里两种身份都没有时返回 None。
    没 cookie 的请求会被种上 cookie，下一次请求起才算有身份。
    """
    header_sid = (request.headers.get(SESSION_HEADER) or "").strip()
    if header_sid:
        if not _SESSION_ID_RE.match(header_sid):
            raise HTTPException(status_code=400, detail=f"invalid {SESSION_HEADER} header")
        return f"h:{header_sid}"

    cookie_sid = request.session.get("sid")
    if cookie_sid:
        return f"c:{cookie_sid}"
    request.session["sid"] = uuid.uuid4().hex
    return None


def _session_for(request: Request) -> Optional[ToolSession]:
    sid = _session_id(request)
    if sid is None:
        return None
    return SESSIONS.get_or_create(sid)


@app.get("/", name="health")
def health() -> Dict[str, Any]:
    return {
        "status": "ok",
        "service": SERVER_NAME,
        "version": SERVER_VERSION,
        "endpoints": {
            "health": "/",
            "mcp": "/mcp",
            "tools_list": "/tools",
            "tools_call": "/tools/call",
        },
    }


@app.get("/tools", name="tools_list")
def tools_list() -> Dict[str, Any]:
    return {"tools": _dispatcher().list_tools()}


@app.post("/tools/call", name="tools_call")
def tools_call(request: Request, payload: Any = Body(...)) -> Dict[str, Any]:
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="request body must be a JSON object")
    name = str(payload.get("name") or "").strip()
    if not name:
        raise HTTPException(status_code=400, detail="name is required")
    arguments = payload.get("arguments") or {}
    if not isinstance(arguments, dict):
        raise HTTPException(status_code=400, detail="arguments must be an object")

    outcome = _dispatcher().call_tool(name, arguments, session=_session_for(request))
    return outcome.to_dict()


@app.post("/mcp", name="mcp_jsonrpc")
def mcp_jsonrpc(request: Request, payload: Any = Body(...)) -> Response:
    headers: Dict[str, str] = {}
    session = _session_for(request)
    if session is None and isinstance(payload, dict) and payload.get("method") == "initialize":
        # 不带 cookie 的客户端靠这个 header 维持会话
        new_sid = uuid.uuid4().hex
        session = SESSIONS.get_or_create(f"h:{new_sid}")
        headers[SESSION_HEADER] = new_sid

    resp = handle_message(_dispatcher(), session, payload)
    if resp is None:
        return Response(status_code=202, headers=headers)
    return JSONResponse(resp, headers=headers)


if __name__ == "__main__":
    import uvicorn

    setup_logging()
    uvicorn.run(app, host="0.0.0.0", port=int(os.getenv("PORT", "3000")))
