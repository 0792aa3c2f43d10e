from __future__ import annotations
from typing import Any, Dict, List, Optional

from fastapi.responses import JSONResponse


_STATUS_CODES = {
	400: "BAD_REQUEST",
	401: "AUTH_REQUIRED",
	403: "FORBIDDEN",
	404: "NOT_FOUND",
	409: "CONFLICT",
	429: "RATE_LIMITED",
	500: "INTERNAL_ERROR",
}


def code_for_status(status_code: int) -> str:
	return _STATUS_CODES.get(status_code, "HTTP_ERROR")


def error_response(
	status_code: int,
	message: str,
	errors: Optional[List[Dict[str, Any]]] = None,
	headers: Optional[Dict[str, str]] = None,
) -> JSONResponse:
	# Every non-2xx body has the same envelope: success=false, message, errors[]
	if errors is None:
		errors = [{"code": code_for_status(status_code), "message": message}]
	return JSONResponse(
		status_code=status_code,
		content={"success": False, "message": message, "errors": errors},
		headers=headers,
	)
