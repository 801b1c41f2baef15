"""JSON-RPC error codes and failure classification for backend calls."""

import json

METHOD_NOT_FOUND = -32601
CONTENT_MODIFIED = -32801
RPC_NEEDS_RECONNECT = -32900


class RpcError(Exception):
    """Error response from the language server."""

    def __init__(self, code: int | None = None, message: str | None = None, data=None):
        super().__init__(message or "")
        self.code = code
        self.message = message
        self.data = data

    @classmethod
    def from_response(cls, error: dict) -> "RpcError":
        return cls(error.get("code"), error.get("message"), error.get("data"))

    def to_payload(self) -> dict:
        payload = {}
        if self.code is not None:
            payload["code"] = self.code
        if self.message:
            payload["message"] = self.message
        if self.data is not None:
            payload["data"] = self.data
        return payload

    def __repr__(self) -> str:
        return f"RpcError(code={self.code!r}, message={self.message!r})"


class BackendError(RuntimeError):
    """Transport-level failure: server not running, died, or garbled output."""
    pass


def is_content_modified(err: BaseException) -> bool:
    return isinstance(err, RpcError) and err.code == CONTENT_MODIFIED


def is_method_not_found(err: BaseException) -> bool:
    return isinstance(err, RpcError) and err.code == METHOD_NOT_FOUND


async def discard_method_not_found(request):
    """Await `request`, mapping a "method not found" failure to None."""
    try:
        return await request
    except RpcError as err:
        if err.code == METHOD_NOT_FOUND:
            return None
        raise


def describe_error(err) -> str | None:
    """Serialize a failure for display, or None when there is nothing to show.

    Strings are used as-is, RPC errors as JSON of their code/message/data,
    other exceptions through str() or their type name. An empty result ("" or "{}") means the
    failure carried no content.
    """
    if err is None:
        return None
    if isinstance(err, str):
        text = err
    elif isinstance(err, RpcError):
        text = json.dumps(err.to_payload(), ensure_ascii=False)
    elif isinstance(err, BaseException):
        # TimeoutError and friends stringify to "" but are real failures
        text = str(err) or type(err).__name__
    else:
        try:
            text = json.dumps(err, ensure_ascii=False, default=str)
        except (TypeError, ValueError):
            text = str(err)
    if text in ("", "{}"):
        return None
    return text
