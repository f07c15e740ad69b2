"""Error builders shared by the test modules."""

import json


class ApiError(Exception):
    """Exception carrying arbitrary attributes, like client-library errors do."""

    def __init__(self, message: str, **attrs):
        super().__init__(message)
        self.message = message
        for name, value in attrs.items():
            setattr(self, name, value)


def google_error_body(code: int, message: str, reason: str | None = None,
                      status: str | None = None) -> dict:
    error: dict = {"code": code, "message": message}
    if status:
        error["status"] = status
    if reason:
        error["errors"] = [{"message": message, "domain": "global", "reason": reason}]
    return {"error": error}


def make_http_error(status: int, body: dict | str | None = None,
                    reason: str = "", headers: dict | None = None):
    """Build a real googleapiclient HttpError."""
    import httplib2
    from googleapiclient.errors import HttpError

    resp = httplib2.Response({"status": str(status), **(headers or {})})
    resp.reason = reason
    if isinstance(body, dict):
        content = json.dumps(body).encode("utf-8")
    else:
        content = (body or "").encode("utf-8")
    return HttpError(resp, content)
