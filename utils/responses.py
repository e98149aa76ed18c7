"""
Response envelope shared by every JSON route: {"ok", "data", "error", "message"}
"""
from typing import Any, Optional

from fastapi.responses import JSONResponse


def _envelope(ok: bool, data: Any, error: Optional[str], message: str) -> dict:
    # Empty lists and zero counts are real payloads; only a missing payload becomes {}
    return {
        "ok": ok,
        "data": {} if data is None else data,
        "error": error,
        "message": message,
    }


def success_response(data: Any = None, message: str = "OK", status: int = 200) -> JSONResponse:
    return JSONResponse(status_code=status, content=_envelope(True, data, None, message))


def error_response(error_code: str, status: int = 400, message: str = "An error occurred",
                   data: Any = None) -> JSONResponse:
    return JSONResponse(status_code=status, content=_envelope(False, data, error_code, message))
