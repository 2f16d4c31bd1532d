from __future__ import annotations

import json
import os
from typing import Any, Dict, Optional


DEFAULT_SETTINGS_PATH = "out/settings.json"


def settings_path_from_env() -> str:
    return (os.getenv("FRESHRELEASE_SETTINGS_PATH") or "").strip() or DEFAULT_SETTINGS_PATH


def load_settings(path: Optional[str] = None) -> Dict[str, Any]:
    """
    读取本地 settings（base_url / api_token / project_key 等）。
    文件不存在或内容损坏时返回空 dict，启动时再由环境变量补齐。
    """
    path = path or settings_path_from_env()
    if not os.path.exists(path):
        return {}
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
        return data if isinstance(data, dict) else {}
    except (OSError, ValueError):
        return {}
