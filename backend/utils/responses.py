from fastapi import Request
from fastapi.responses import JSONResponse

from backend.utils.errors import CancellationError


def success_response(data=None, message="OK", status=200):
    return JSONResponse(
        status_code=status,
        content={
            "ok": True,
            "data": data if data is not None else {},
            "error": None,
            "message": message,
        }
    )


def error_response(error_code, status=400, message="An error occurred", data=None):
    return JSONResponse(
        status_code=status,
        content={
            "ok": False,
            "data": data or {},
            "error": error_code,
            "message": message,
        }
    )


async def cancellation_error_handler(request: Request, exc: CancellationError):
    """Render domain errors with the normalized envelope."""
    return error_response(exc.code, status=exc.status, message=exc.message, data=exc.data)
