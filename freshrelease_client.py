from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Any, Dict, Optional

import requests

from settings_store import load_settings
from tool_errors import UpstreamError


logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://freshworks.freshrelease.com"
DEFAULT_PROJECT_KEY = "FBOTS"
DEFAULT_TIMEOUT = 30.0
DEFAULT_USER_SEARCH_MAX_PAGES = 10

# 错误响应体最多回显这么多字符
MAX_ERROR_BODY = 5000


@dataclass
class FreshreleaseConfig:
    base_url: str = DEFAULT_BASE_URL
    api_token: str = ""
    project_key: str = DEFAULT_PROJECT_KEY
    timeout: float = DEFAULT_TIMEOUT
    user_search_max_pages: int = DEFAULT_USER_SEARCH_MAX_PAGES


@dataclass
class UpstreamResult:
    status_code: int
    data: Any
    text: str

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300

    def expect_json(self, what: str) -> Any:
        """
        2xx 且 body 是 JSON 时返回解析结果；否则抛 UpstreamError（带状态码和原始响应）。
        """
        if not self.ok:
            raise UpstreamError(
                f"Freshrelease {what} failed ({self.status_code})",
                status_code=self.status_code,
                body=self.text[:MAX_ERROR_BODY],
            )
        if self.data is None:
            raise UpstreamError(
                f"Freshrelease {what} returned a non-JSON response ({self.status_code})",
                status_code=self.status_code,
                body=self.text[:MAX_ERROR_BODY],
            )
        return self.data


def _positive_int(name: str, raw: Any) -> int:
    try:
        value = int(raw)
    except (TypeError, ValueError):
        raise ValueError(f"{name} must be an integer, got {raw!r}")
    if value < 1:
        raise ValueError(f"{name} must be >= 1, got {value}")
    return value


def _positive_float(name: str, raw: Any) -> float:
    try:
        value = float(raw)
    except (TypeError, ValueError):
        raise ValueError(f"{name} must be a number, got {raw!r}")
    if value <= 0:
        raise ValueError(f"{name} must be > 0, got {value}")
    return value


def config_from_dict(d: Dict[str, Any]) -> FreshreleaseConfig:
    base_url = str(d.get("base_url") or "").strip().rstrip("/") or DEFAULT_BASE_URL
    api_token = str(d.get("api_token") or "").strip()
    project_key = str(d.get("project_key") or "").strip() or DEFAULT_PROJECT_KEY
    timeout = d.get("timeout")
    max_pages = d.get("user_search_max_pages")

    return FreshreleaseConfig(
        base_url=base_url,
        api_token=api_token,
        project_key=project_key,
        timeout=DEFAULT_TIMEOUT if timeout in (None, "") else _positive_float("timeout", timeout),
        user_search_max_pages=(
            DEFAULT_USER_SEARCH_MAX_PAGES
            if max_pages in (None, "")
            else _positive_int("user_search_max_pages", max_pages)
        ),
    )


_ENV_KEYS = {
    "FRESHRELEASE_BASE_URL": "base_url",
    "FRESHRELEASE_API_TOKEN": "api_token",
    "FRESHRELEASE_PROJECT_KEY": "project_key",
    "FRESHRELEASE_TIMEOUT": "timeout",
    "FRESHRELEASE_USER_SEARCH_MAX_PAGES": "user_search_max_pages",
}


def load_config(settings_path: Optional[str] = None) -> FreshreleaseConfig:
    """
    先读 settings 文件，再用环境变量 FRESHRELEASE_* 覆盖。

    api_token 允许为空：调用方可以在每次 tool call 里传 api_token，
    或者在会话里先调用 set_api_token。不要把 token 提交到 git。
    """
    merged: Dict[str, Any] = dict(load_settings(settings_path))
    for env_name, field in _ENV_KEYS.items():
        value = (os.getenv(env_name) or "").strip()
        if value:
            merged[field] = value
    cfg = config_from_dict(merged)
    if not cfg.api_token:
        logger.warning("FRESHRELEASE_API_TOKEN is not set; every call must supply api_token")
    return cfg


def _headers(api_token: str) -> Dict[str, str]:
    return {
        "Authorization": f"Token {api_token}",
        "Accept": "application/json",
        "Content-Type": "application/json",
    }


def call_upstream(
    cfg: FreshreleaseConfig,
    api_token: str,
    method: str,
    path: str,
    *,
    payload: Optional[Dict[str, Any]] = None,
    params: Optional[Dict[str, Any]] = None,
) -> UpstreamResult:
    """
    发一次 Freshrelease REST 请求。path 形如 "FBOTS/issues/FBOTS-1"（不带前导 /）。

    只把网络层失败转成 UpstreamError；状态码由调用方通过 expect_json/ok 判断，
    因为 get_issue 的 404 需要特殊处理。
    """
    url = f"{cfg.base_url}/{path.lstrip('/')}"
    logger.info("Freshrelease %s /%s params=%s", method, path.lstrip("/"), params or {})
    try:
        resp = requests.request(
            method,
            url,
            headers=_headers(api_token),
            json=payload,
            params=params,
            timeout=cfg.timeout,
        )
    except requests.RequestException as e:
        raise UpstreamError(f"Freshrelease request failed: {type(e).__name__}: {e}")

    try:
        data = resp.json()
    except ValueError:
        data = None
    return UpstreamResult(status_code=resp.status_code, data=data, text=_safe_text(resp))


def _safe_text(resp: requests.Response) -> str:
    # 响应可能是 HTML/JSON；这里只取文本，不回显任何 auth 信息
    text = resp.text
    return text if isinstance(text, str) else ""


def issue_browse_url(cfg: FreshreleaseConfig, project_key: str, issue_key: str) -> str:
    return f"{cfg.base_url}/{project_key}/issues/{issue_key}"
