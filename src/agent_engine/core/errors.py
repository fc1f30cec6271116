from __future__ import annotations

import json
from typing import Any, Mapping


class EngineError(Exception):
    """Base exception for this project."""


class ConfigError(EngineError):
    """Raised when configuration is invalid or incomplete."""

    def __init__(self, message: str, *, path: str | None = None):
        super().__init__(f"{path}: {message}" if path else message)
        self.path = path


class ProviderError(EngineError):
    """A failed provider call with the wire details needed for classification."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        headers: Mapping[str, str] | None = None,
        body: str = "",
    ) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.headers = {str(k).lower(): str(v) for k, v in (headers or {}).items()}
        self.body = body


class ToolValidationError(EngineError):
    """Tool arguments did not match the declared schema."""

    def __init__(self, tool_name: str, message: str, *, arguments: Any = None) -> None:
        try:
            received = json.dumps(arguments, ensure_ascii=False, default=repr)
        except (TypeError, ValueError):
            received = repr(arguments)
        super().__init__(f"{tool_name}: {message}\nReceived: {received}")
        self.tool_name = tool_name
        self.details = message
