from __future__ import annotations

from typing import Any

from rest_framework import status
from rest_framework.response import Response


def build_success_envelope(*, message: str, data: Any = None, meta: dict[str, Any] | None = None) -> dict[str, Any]:
    envelope = {"success": True, "message": message, "data": data}
    if meta:
        envelope["meta"] = meta
    return envelope


def success_response(
    *,
    message: str,
    data: Any = None,
    meta: dict[str, Any] | None = None,
    status_code: int = status.HTTP_200_OK,
) -> Response:
    return Response(build_success_envelope(message=message, data=data, meta=meta), status=status_code)
