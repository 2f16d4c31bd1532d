import pytest

from tool_errors import InvalidArgument
from tool_registry import ToolDefinition, ToolRegistry, build_registry, validate_arguments


EXPECTED_TOOLS = [
    "get_users",
    "get_issue",
    "get_statuses",
    "get_issue_types",
    "create_issue",
    "update_issue",
    "add_comment",
    "get_comments",
    "search_user_by_name",
    "set_api_token",
]


def test_every_tool_listed_once_in_stable_order():
    registry = build_registry()
    names = [t["name"] for t in registry.list()]
    assert names == EXPECTED_TOOLS
    assert registry.names() == EXPECTED_TOOLS
    assert [t["name"] for t in registry.list()] == names
    assert len(set(names)) == len(names)


def test_listing_uses_mcp_shape():
    tool = build_registry().list()[0]
    assert set(tool) == {"name", "description", "inputSchema"}
    assert tool["inputSchema"]["type"] == "object"


def test_required_fields_match_contract():
    registry = build_registry()
    assert registry.get("get_issue").required == ["issue_key"]
    assert registry.get("create_issue").required == ["title"]
    assert registry.get("update_issue").required == ["issue_key"]
    assert registry.get("add_comment").required == ["issue_key", "content"]
    assert registry.get("get_comments").required == ["issue_key"]
    assert registry.get("search_user_by_name").required == ["name"]
    assert registry.get("set_api_token").required == ["api_token"]
    assert registry.get("get_users").required == []


def test_project_key_default_follows_config():
    registry = build_registry("ACME")
    schema = registry.get("get_statuses").input_schema
    assert schema["properties"]["project_key"]["default"] == "ACME"


def test_unknown_name_lookup_returns_none():
    assert build_registry().get("delete_everything") is None
    assert "delete_everything" not in build_registry()


def test_duplicate_names_rejected():
    d = ToolDefinition(name="x", description="x")
    with pytest.raises(ValueError):
        ToolRegistry([d, d])


def test_validate_fills_defaults():
    registry = build_registry()
    args = validate_arguments(registry.get("get_users"), {})
    assert args["page"] == 1
    assert args["project_key"] == "FBOTS"

    args = validate_arguments(registry.get("create_issue"), {"title": "t"})
    assert args["issue_type_id"] == "14"


def test_validate_does_not_mutate_input():
    registry = build_registry()
    raw = {"title": "t"}
    validate_arguments(registry.get("create_issue"), raw)
    assert raw == {"title": "t"}


def test_validate_rejects_missing_required():
    registry = build_registry()
    with pytest.raises(InvalidArgument, match="issue_key and content are required"):
        validate_arguments(registry.get("add_comment"), {})
    with pytest.raises(InvalidArgument, match="title is required"):
        validate_arguments(registry.get("create_issue"), {"title": "   "})


def test_validate_rejects_unknown_fields():
    registry = build_registry()
    with pytest.raises(InvalidArgument, match="Unknown argument"):
        validate_arguments(registry.get("get_issue"), {"issue_key": "FBOTS-1", "fields": "x"})


def test_validate_rejects_wrong_types():
    registry = build_registry()
    with pytest.raises(InvalidArgument, match="page must be of type integer"):
        validate_arguments(registry.get("get_users"), {"page": "2"})
    with pytest.raises(InvalidArgument):
        validate_arguments(registry.get("get_users"), {"page": True})
    with pytest.raises(InvalidArgument, match="arguments must be an object"):
        validate_arguments(registry.get("get_users"), ["page"])


def test_validate_accepts_numeric_ids():
    registry = build_registry()
    args = validate_arguments(registry.get("update_issue"), {"issue_key": "FBOTS-1", "owner_id": 42})
    assert args["owner_id"] == 42
