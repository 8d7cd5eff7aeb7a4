from typing import Any, Dict, Optional

from fastapi.responses import JSONResponse


def ok(data: Any = None, meta: Optional[Dict[str, Any]] = None, status: int = 200) -> JSONResponse:
    return JSONResponse(
        status_code=status,
        content={
            "ok": True,
            "data": data,
            "meta": meta or {},
        },
    )


def error(message: str, code: str = "error", status: int = 400, details: Any = None) -> JSONResponse:
    content: Dict[str, Any] = {
        "ok": False,
        "error": code,
        "message": message,
    }
    if details is not None:
        content["details"] = details
    return JSONResponse(status_code=status, content=content)
