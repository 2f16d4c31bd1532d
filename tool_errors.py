from __future__ import annotations

from typing import Optional


class ToolError(Exception):
    """
    工具调用过程中的“预期内”错误。

    dispatcher 会把它转成 isError=true 的 content，不会抛给 transport。
    """


class InvalidArgument(ToolError):
    pass


class NotFound(ToolError):
    pass


class Unauthorized(ToolError):
    pass


class UpstreamError(ToolError):
    def __init__(self, message: str, status_code: Optional[int] = None, body: str = ""):
        super().__init__(message)
        self.status_code = status_code
        self.body = body

    def __str__(self) -> str:
        msg = super().__str__()
        if self.body:
            return f"{msg}: {self.body}"
        return msg
