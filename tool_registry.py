"""
Tool Registry
=============

静态的工具目录：名字、描述、inputSchema。AI agent 靠 schema 里的描述来选工具、填参数，
所以字段名和 required 列表要保持稳定；描述文字可以随时改。

目录在启动时 build 一次，之后只读。
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional

from freshrelease_client import DEFAULT_PROJECT_KEY
from tool_errors import InvalidArgument


DEFAULT_ISSUE_TYPE_ID = "14"  # Task


@dataclass(frozen=True)
class ToolDefinition:
    name: str
    description: str
    input_schema: Mapping[str, Any] = field(default_factory=dict)

    @property
    def properties(self) -> Mapping[str, Any]:
        return self.input_schema.get("properties") or {}

    @property
    def required(self) -> List[str]:
        return list(self.input_schema.get("required") or [])

    def schema(self) -> Dict[str, Any]:
        # 结构按 MCP 的 tools/list 习惯返回
        return {
            "name": self.name,
            "description": self.description,
            "inputSchema": self.input_schema,
        }


class ToolRegistry:
    def __init__(self, definitions: Iterable[ToolDefinition]):
        self._tools: Dict[str, ToolDefinition] = {}
        for d in definitions:
            if d.name in self._tools:
                raise ValueError(f"Duplicate tool name: {d.name}")
            self._tools[d.name] = d

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    def names(self) -> List[str]:
        return list(self._tools)

    def get(self, name: str) -> Optional[ToolDefinition]:
        return self._tools.get(name)

    def list(self) -> List[Dict[str, Any]]:
        return [d.schema() for d in self._tools.values()]


# ========= schema 片段 =========

_API_TOKEN = {
    "type": "string",
    "description": "Freshrelease API token. Optional - falls back to the session token or the server default.",
}

_ID_TYPES = ["string", "integer"]


def _project_key(default_project_key: str, what: str = "Project key") -> Dict[str, Any]:
    return {
        "type": "string",
        "description": f"{what}. Optional - defaults to '{default_project_key}'",
        "default": default_project_key,
    }


def _issue_key() -> Dict[str, Any]:
    return {
        "type": "string",
        "description": "The Freshrelease issue key (e.g. FBOTS-46821). The project is auto-detected from the key prefix.",
    }


def _obj(properties: Dict[str, Any], required: Optional[List[str]] = None) -> Dict[str, Any]:
    schema: Dict[str, Any] = {"type": "object", "properties": properties}
    if required:
        schema["required"] = required
    return schema


def build_registry(default_project_key: str = DEFAULT_PROJECT_KEY) -> ToolRegistry:
    pk = default_project_key
    return ToolRegistry([
        ToolDefinition(
            name="get_users",
            description="List users of a Freshrelease project, one page at a time.",
            input_schema=_obj({
                "page": {"type": "integer", "description": "Page number, starting at 1", "default": 1},
                "project_key": _project_key(pk),
                "api_token": _API_TOKEN,
            }),
        ),
        ToolDefinition(
            name="get_issue",
            description=(
                "Get detailed information about a specific Freshrelease issue. "
                "Returns {\"error\": \"Issue not found\"} when the issue does not exist."
            ),
            input_schema=_obj({
                "issue_key": _issue_key(),
                "api_token": _API_TOKEN,
            }, required=["issue_key"]),
        ),
        ToolDefinition(
            name="get_statuses",
            description="Get all statuses available in a Freshrelease project. Use the ids as status_id.",
            input_schema=_obj({
                "project_key": _project_key(pk),
                "api_token": _API_TOKEN,
            }),
        ),
        ToolDefinition(
            name="get_issue_types",
            description=(
                "Get all issue types available in a Freshrelease project (Epic, Story, Task, Bug...). "
                "Use it to find the issue_type_id before creating or updating an issue."
            ),
            input_schema=_obj({
                "project_key": _project_key(pk),
                "api_token": _API_TOKEN,
            }),
        ),
        ToolDefinition(
            name="create_issue",
            description=(
                f"Create a new issue in Freshrelease. Creates a Task (issue_type_id {DEFAULT_ISSUE_TYPE_ID}) "
                "unless another issue_type_id is given; use get_issue_types to look ids up."
            ),
            input_schema=_obj({
                "title": {"type": "string", "description": "Title/summary of the issue. Required."},
                "description": {"type": "string", "description": "Detailed description, HTML allowed. Optional."},
                "issue_type_id": {
                    "type": _ID_TYPES,
                    "description": f"Issue type id. Defaults to '{DEFAULT_ISSUE_TYPE_ID}' (Task).",
                    "default": DEFAULT_ISSUE_TYPE_ID,
                },
                "owner_id": {
                    "type": _ID_TYPES,
                    "description": "User id of the assignee. Use search_user_by_name to find it.",
                },
                "priority_id": {"type": _ID_TYPES, "description": "Priority id. Optional."},
                "status_id": {"type": _ID_TYPES, "description": "Status id. Use get_statuses to find it. Optional."},
                "project_key": _project_key(pk, "Project where the issue is created"),
                "api_token": _API_TOKEN,
            }, required=["title"]),
        ),
        ToolDefinition(
            name="update_issue",
            description=(
                "Update an existing Freshrelease issue. Only the fields you pass are changed; "
                "omitted fields are left untouched."
            ),
            input_schema=_obj({
                "issue_key": _issue_key(),
                "title": {"type": "string", "description": "New title. Optional."},
                "description": {"type": "string", "description": "New description. Optional."},
                "issue_type_id": {"type": _ID_TYPES, "description": "New issue type id. Optional."},
                "status_id": {"type": _ID_TYPES, "description": "New status id. Optional."},
                "owner_id": {"type": _ID_TYPES, "description": "New assignee user id. Optional."},
                "priority_id": {"type": _ID_TYPES, "description": "New priority id. Optional."},
                "api_token": _API_TOKEN,
            }, required=["issue_key"]),
        ),
        ToolDefinition(
            name="add_comment",
            description="Add a comment to a Freshrelease issue.",
            input_schema=_obj({
                "issue_key": _issue_key(),
                "content": {"type": "string", "description": "Comment text, HTML allowed. Required."},
                "api_token": _API_TOKEN,
            }, required=["issue_key", "content"]),
        ),
        ToolDefinition(
            name="get_comments",
            description="Get all comments on a Freshrelease issue.",
            input_schema=_obj({
                "issue_key": _issue_key(),
                "api_token": _API_TOKEN,
            }, required=["issue_key"]),
        ),
        ToolDefinition(
            name="search_user_by_name",
            description=(
                "Search a Freshrelease user by name or email (case-insensitive, partial match) across all "
                "user pages. Returns the user's id, name and email if found."
            ),
            input_schema=_obj({
                "name": {"type": "string", "description": "Name or email fragment to search for."},
                "project_key": _project_key(pk),
                "api_token": _API_TOKEN,
            }, required=["name"]),
        ),
        ToolDefinition(
            name="set_api_token",
            description="Set the Freshrelease API token used by later calls in this session.",
            input_schema=_obj({
                "api_token": {"type": "string", "description": "Freshrelease API token."},
            }, required=["api_token"]),
        ),
    ])


# ========= 参数校验 =========

def _type_ok(value: Any, expected: Any) -> bool:
    if isinstance(expected, list):
        return any(_type_ok(value, t) for t in expected)
    if expected == "string":
        return isinstance(value, str)
    if expected == "integer":
        return isinstance(value, int) and not isinstance(value, bool)
    if expected == "number":
        return isinstance(value, (int, float)) and not isinstance(value, bool)
    if expected == "boolean":
        return isinstance(value, bool)
    if expected == "object":
        return isinstance(value, dict)
    if expected == "array":
        return isinstance(value, list)
    return True


def _blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def validate_arguments(definition: ToolDefinition, arguments: Any) -> Dict[str, Any]:
    """
    按 inputSchema 校验参数：未知字段、缺少必填、类型不对都抛 InvalidArgument。
    返回补齐了 default 的新 dict；None 值视同没传。
    """
    if arguments is None:
        arguments = {}
    if not isinstance(arguments, dict):
        raise InvalidArgument("arguments must be an object")

    props = definition.properties
    unknown = sorted(k for k in arguments if k not in props)
    if unknown:
        raise InvalidArgument(f"Unknown argument(s) for {definition.name}: {', '.join(unknown)}")

    missing = [k for k in definition.required if _blank(arguments.get(k))]
    if missing:
        raise InvalidArgument(f"{' and '.join(missing)} {'is' if len(missing) == 1 else 'are'} required")

    out: Dict[str, Any] = {}
    for name, field_schema in props.items():
        value = arguments.get(name)
        if value is None:
            if "default" in field_schema:
                out[name] = field_schema["default"]
            continue
        expected = field_schema.get("type")
        if expected and not _type_ok(value, expected):
            shown = "/".join(expected) if isinstance(expected, list) else expected
            raise InvalidArgument(f"{name} must be of type {shown}, got {type(value).__name__}")
        out[name] = value
    return out
