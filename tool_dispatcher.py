"""
Tool Dispatcher
===============

把一次 MCP tools/call（工具名 + arguments）翻译成 0~N 次 Freshrelease REST 调用，
再把结果包成统一的 content 结构：

    {"content": [{"type": "text", "text": "..."}], "isError": false}

任何错误都在 call_tool 里转换成 isError=true 的结果，transport 永远拿到一个完整对象。
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional

from freshrelease_client import FreshreleaseConfig, call_upstream, issue_browse_url
from tool_errors import InvalidArgument, NotFound, ToolError, Unauthorized
from tool_registry import DEFAULT_ISSUE_TYPE_ID, ToolRegistry, build_registry, validate_arguments


logger = logging.getLogger(__name__)

ISSUE_NOT_FOUND = {"error": "Issue not found"}

_UPDATABLE_TEXT_FIELDS = ("title", "description")
_ID_FIELDS = ("issue_type_id", "status_id", "owner_id", "priority_id")


@dataclass
class ToolOutcome:
    content: List[Dict[str, str]]
    is_error: bool = False

    @classmethod
    def from_payload(cls, payload: Any) -> "ToolOutcome":
        text = payload if isinstance(payload, str) else json.dumps(payload, ensure_ascii=False, indent=2)
        return cls(content=[{"type": "text", "text": text}])

    @classmethod
    def failure(cls, message: str) -> "ToolOutcome":
        return cls(content=[{"type": "text", "text": message or "Error"}], is_error=True)

    @property
    def text(self) -> str:
        return "\n".join(item.get("text", "") for item in self.content)

    def to_dict(self) -> Dict[str, Any]:
        return {"content": list(self.content), "isError": self.is_error}


@dataclass
class ToolSession:
    """
    一条连接（stdio 进程 / 浏览器 session）自己的凭据格子。
    只通过参数传进 dispatcher，不要做成模块级全局变量。
    """

    api_token: Optional[str] = None


# ========= 纯函数 helper =========

def extract_project_key(issue_key: str) -> str:
    """FBOTS-12345 -> FBOTS"""
    prefix, sep, _ = issue_key.strip().partition("-")
    if not sep or not prefix:
        raise InvalidArgument(f"Invalid issue key format: {issue_key}. Expected format: PROJECT-NUMBER")
    return prefix


def coerce_id(value: Any) -> Any:
    # "14" -> 14；非纯数字的字符串原样透传
    if isinstance(value, str) and value.strip().isdecimal():
        return int(value.strip())
    return value


def present_fields(arguments: Dict[str, Any], names: Iterable[str]) -> Dict[str, Any]:
    """
    omit-if-absent：只保留调用方明确给了值的字段。

    None / 空字符串 / 其他 falsy 值都视为“没给”，不会出现在结果里，
    这样 update 时不会把上游已有的值清空。
    """
    out: Dict[str, Any] = {}
    for name in names:
        value = arguments.get(name)
        if isinstance(value, str):
            value = value if value.strip() else None
        if value:
            out[name] = value
    return out


def match_user(users: Iterable[Dict[str, Any]], needle: str) -> Optional[Dict[str, Any]]:
    needle = needle.lower()
    for u in users:
        if not isinstance(u, dict):
            continue
        name = str(u.get("name") or "").lower()
        email = str(u.get("email") or "").lower()
        if needle in name or needle in email:
            return u
    return None


# ========= dispatcher =========

Handler = Callable[[Dict[str, Any], str], Any]


class ToolDispatcher:
    def __init__(self, config: FreshreleaseConfig, registry: Optional[ToolRegistry] = None):
        self.config = config
        self.registry = registry or build_registry(config.project_key)
        self._handlers: Dict[str, Handler] = {
            "get_users": self._get_users,
            "get_issue": self._get_issue,
            "get_statuses": self._get_statuses,
            "get_issue_types": self._get_issue_types,
            "create_issue": self._create_issue,
            "update_issue": self._update_issue,
            "add_comment": self._add_comment,
            "get_comments": self._get_comments,
            "search_user_by_name": self._search_user_by_name,
        }

    def list_tools(self) -> List[Dict[str, Any]]:
        return self.registry.list()

    def call_tool(
        self,
        name: str,
        arguments: Optional[Dict[str, Any]] = None,
        session: Optional[ToolSession] = None,
    ) -> ToolOutcome:
        logger.info("Tool called: %s", name)
        try:
            payload = self._run(name, arguments, session)
        except ToolError as e:
            logger.warning("Tool %s failed: %s: %s", name, type(e).__name__, e)
            return ToolOutcome.failure(f"{type(e).__name__}: {e}")
        except Exception as e:
            logger.exception("Tool %s raised an unexpected error", name)
            return ToolOutcome.failure(f"{type(e).__name__}: {e}")
        return ToolOutcome.from_payload(payload)

    def _run(self, name: str, arguments: Optional[Dict[str, Any]], session: Optional[ToolSession]) -> Any:
        definition = self.registry.get(name)
        if definition is None:
            raise NotFound(f"Unknown tool: {name}")
        args = validate_arguments(definition, arguments)
        if "issue_key" in args:
            # key 格式错误属于参数错误，要先于凭据检查报出来
            extract_project_key(args["issue_key"])

        if name == "set_api_token":
            return self._set_api_token(args, session)

        handler = self._handlers.get(name)
        if handler is None:
            raise NotFound(f"Unknown tool: {name}")
        return handler(args, self._resolve_token(args, session))

    def _resolve_token(self, args: Dict[str, Any], session: Optional[ToolSession]) -> str:
        token = (
            str(args.get("api_token") or "").strip()
            or (session.api_token if session and session.api_token else "")
            or self.config.api_token
        )
        if not token:
            raise Unauthorized(
                "API token is required. Provide api_token in the tool call, call set_api_token, "
                "or set the FRESHRELEASE_API_TOKEN environment variable."
            )
        return token

    def _project(self, args: Dict[str, Any]) -> str:
        return str(args.get("project_key") or "").strip() or self.config.project_key

    def _get(self, token: str, path: str, what: str, params: Optional[Dict[str, Any]] = None) -> Any:
        return call_upstream(self.config, token, "GET", path, params=params).expect_json(what)

    # ----- handlers -----

    def _set_api_token(self, args: Dict[str, Any], session: Optional[ToolSession]) -> Dict[str, Any]:
        if session is None:
            raise InvalidArgument(
                "set_api_token is only available within a session "
                "(stdio connection, Mcp-Session-Id header or session cookie)"
            )
        session.api_token = str(args["api_token"]).strip()
        logger.info("Session API token updated")
        return {"success": True, "message": "API token set for this session"}

    def _get_users(self, args: Dict[str, Any], token: str) -> Any:
        page = args.get("page", 1)
        if page < 1:
            raise InvalidArgument(f"page must be >= 1, got {page}")
        return self._get(token, f"{self._project(args)}/users", "get users", params={"page": page})

    def _get_issue(self, args: Dict[str, Any], token: str) -> Any:
        issue_key = args["issue_key"].strip()
        project_key = extract_project_key(issue_key)
        logger.info("Fetching issue %s from project %s", issue_key, project_key)
        result = call_upstream(self.config, token, "GET", f"{project_key}/issues/{issue_key}")
        if result.status_code == 404:
            return dict(ISSUE_NOT_FOUND)
        return result.expect_json("get issue")

    def _get_statuses(self, args: Dict[str, Any], token: str) -> Any:
        return self._get(token, f"{self._project(args)}/statuses", "get statuses")

    def _get_issue_types(self, args: Dict[str, Any], token: str) -> Any:
        return self._get(token, f"{self._project(args)}/issue_types", "get issue types")

    def _create_issue(self, args: Dict[str, Any], token: str) -> Any:
        project_key = self._project(args)
        issue_type_id = args.get("issue_type_id") or DEFAULT_ISSUE_TYPE_ID
        optional_ids = present_fields(args, ("owner_id", "priority_id", "status_id"))
        payload = {
            "issue": {
                "title": args["title"],
                "description": args.get("description") or "",
                "key": project_key,
                "issue_type_id": coerce_id(issue_type_id),
                "owner_id": coerce_id(optional_ids.get("owner_id")),
                "priority_id": coerce_id(optional_ids.get("priority_id")),
                "status_id": coerce_id(optional_ids.get("status_id")),
            }
        }
        logger.info("Creating issue in project %s (type %s)", project_key, issue_type_id)
        data = call_upstream(self.config, token, "POST", f"{project_key}/issues", payload=payload).expect_json(
            "create issue"
        )
        created = data.get("issue") if isinstance(data, dict) else None
        key = created.get("key") if isinstance(created, dict) else None
        if key:
            logger.info("Issue created: %s", key)
            data["browse_url"] = issue_browse_url(self.config, project_key, key)
        return data

    def _update_issue(self, args: Dict[str, Any], token: str) -> Any:
        issue_key = args["issue_key"].strip()
        project_key = extract_project_key(issue_key)
        issue: Dict[str, Any] = {"key": issue_key}
        issue.update(present_fields(args, _UPDATABLE_TEXT_FIELDS))
        issue.update({k: coerce_id(v) for k, v in present_fields(args, _ID_FIELDS).items()})
        logger.info("Updating issue %s fields=%s", issue_key, sorted(k for k in issue if k != "key"))
        return call_upstream(
            self.config, token, "PUT", f"{project_key}/issues/{issue_key}", payload={"issue": issue}
        ).expect_json("update issue")

    def resolve_issue_id(self, token: str, project_key: str, issue_key: str) -> Any:
        """issue key -> 上游内部数字 id（评论接口只认 id）"""
        logger.info("Resolving issue id for %s", issue_key)
        result = call_upstream(self.config, token, "GET", f"{project_key}/issues/{issue_key}")
        if not result.ok:
            raise NotFound(f"Issue {issue_key} not found")
        issue = result.data.get("issue") if isinstance(result.data, dict) else None
        issue_id = issue.get("id") if isinstance(issue, dict) else None
        if issue_id in (None, ""):
            raise NotFound(f"Could not extract issue ID for {issue_key} from response")
        logger.info("Found issue id %s for %s", issue_id, issue_key)
        return issue_id

    def _add_comment(self, args: Dict[str, Any], token: str) -> Any:
        issue_key = args["issue_key"].strip()
        project_key = extract_project_key(issue_key)
        issue_id = self.resolve_issue_id(token, project_key, issue_key)
        comment = call_upstream(
            self.config,
            token,
            "POST",
            f"{project_key}/issues/{issue_id}/comments",
            payload={"content": args["content"]},
        ).expect_json("add comment")
        return {"success": True, "issue_key": issue_key, "issue_id": issue_id, "comment": comment}

    def _get_comments(self, args: Dict[str, Any], token: str) -> Any:
        issue_key = args["issue_key"].strip()
        project_key = extract_project_key(issue_key)
        issue_id = self.resolve_issue_id(token, project_key, issue_key)
        comments = self._get(token, f"{project_key}/issues/{issue_id}/comments", "get comments")
        return {"issue_key": issue_key, "issue_id": issue_id, "comments": comments}

    def _search_user_by_name(self, args: Dict[str, Any], token: str) -> Any:
        search_name = args["name"].strip()
        project_key = self._project(args)
        max_pages = self.config.user_search_max_pages
        logger.info("Searching user %r in project %s", search_name, project_key)

        scanned = 0
        matched: Optional[Dict[str, Any]] = None
        for page in range(1, max_pages + 1):
            result = call_upstream(self.config, token, "GET", f"{project_key}/users", params={"page": page})
            if not result.ok:
                logger.info("Users page %s returned %s, stop paging", page, result.status_code)
                break
            users = result.data.get("users") if isinstance(result.data, dict) else None
            if not users:
                break
            scanned += len(users)
            # 按页顺序扫描，第一个命中即返回
            matched = match_user(users, search_name)
            if matched is not None:
                break

        logger.info("Users scanned: %s", scanned)
        if matched is None:
            return {"found": False, "searched_name": search_name}
        return {
            "found": True,
            "user": {
                "id": matched.get("id"),
                "name": matched.get("name"),
                "email": matched.get("email"),
            },
        }
