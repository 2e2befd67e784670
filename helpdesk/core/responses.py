"""Standard response envelope shared by every endpoint."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel


class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    pages: int

    @classmethod
    def from_query(cls, *, total: int, page: int, limit: int) -> "Pagination":
        pages = (total + limit - 1) // limit if limit > 0 else 0
        return cls(page=page, limit=limit, total=total, pages=pages)


def _dump(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if isinstance(value, dict):
        return {key: _dump(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_dump(item) for item in value]
    return value


def envelope(success: bool, message: str, *, data: Any = None, error: Any = None) -> dict[str, Any]:
    """Build ``{"success", "message", "data"?, "error"?}``, omitting unset keys.

    Pydantic models nested anywhere in ``data`` are dumped in JSON mode.
    """

    body: dict[str, Any] = {"success": success, "message": message}
    if data is not None:
        body["data"] = _dump(data)
    if error is not None:
        body["error"] = _dump(error)
    return body
