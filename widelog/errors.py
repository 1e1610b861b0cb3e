# FILE: widelog/errors.py
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

import httpx

from .utils import finite_float


class ConfigError(ValueError):
    """Raised at startup when configuration is malformed."""


class StructuredError(Exception):
    """
    Error value carrying machine fields (status) and human fields
    (why / fix / link).

    It is used two independent ways:
      - captured as data into a wide event via `RequestLogger.error(...)`;
      - raised to end a handler, in which case the boundary turns it into an
        HTTP error response carrying status, message and the why/fix/link
        triple.

    Attributes are read-only after construction.

    Example:
        raise StructuredError(
            "Payment failed",
            status=402,
            why="Card declined by issuer",
            fix="Try a different payment method",
            link="https://docs.example.com/payments",
        )
    """

    def __init__(
        self,
        message: str,
        *,
        status: int = 500,
        why: Optional[str] = None,
        fix: Optional[str] = None,
        link: Optional[str] = None,
        cause: Optional[BaseException] = None,
    ) -> None:
        super().__init__(message)
        object.__setattr__(self, "_message", str(message))
        object.__setattr__(self, "_status", int(status))
        object.__setattr__(self, "_why", why)
        object.__setattr__(self, "_fix", fix)
        object.__setattr__(self, "_link", link)
        object.__setattr__(self, "_raw", cause)
        if cause is not None:
            self.__cause__ = cause

    def __setattr__(self, name: str, value: Any) -> None:
        # traceback / context bookkeeping stays writable for the interpreter
        if name.startswith("__"):
            object.__setattr__(self, name, value)
            return
        raise AttributeError(f"{type(self).__name__} is immutable")

    @property
    def message(self) -> str:
        return self._message

    @property
    def status(self) -> int:
        return self._status

    @property
    def status_code(self) -> int:
        return self._status

    @property
    def why(self) -> Optional[str]:
        return self._why

    @property
    def fix(self) -> Optional[str]:
        return self._fix

    @property
    def link(self) -> Optional[str]:
        return self._link

    @property
    def raw(self) -> Optional[BaseException]:
        """The original cause, if any."""
        return self._raw

    @property
    def data(self) -> Optional[Dict[str, str]]:
        out = {k: v for k, v in (("why", self._why), ("fix", self._fix), ("link", self._link)) if v}
        return out or None

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "name": type(self).__name__,
            "message": self._message,
            "status": self._status,
        }
        data = self.data
        if data:
            out["data"] = data
        if self._raw is not None:
            out["cause"] = {"name": type(self._raw).__name__, "message": str(self._raw)}
        return out

    def __str__(self) -> str:
        lines = [f"Error: {self._message}"]
        if self._why:
            lines.append(f"Why: {self._why}")
        if self._fix:
            lines.append(f"Fix: {self._fix}")
        if self._link:
            lines.append(f"More info: {self._link}")
        if self._raw is not None:
            lines.append(f"Caused by: {self._raw}")
        return "\n".join(lines)

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self._message!r}, status={self._status})"


def create_error(options: Any) -> StructuredError:
    """Build a StructuredError from a message string or a mapping of fields."""
    if isinstance(options, str):
        return StructuredError(options)
    if isinstance(options, Mapping):
        opts = dict(options)
        message = str(opts.pop("message", "An error occurred"))
        return StructuredError(message, **opts)
    raise TypeError("create_error expects a message string or a mapping")


def resolve_structured_error(err: BaseException) -> Optional[StructuredError]:
    """Return the StructuredError itself or the one it wraps as a cause."""
    if isinstance(err, StructuredError):
        return err
    cause = err.__cause__
    if isinstance(cause, StructuredError):
        return cause
    return None


def extract_error_status(err: Any) -> int:
    for attr in ("status", "status_code"):
        v = getattr(err, attr, None)
        if isinstance(v, int) and not isinstance(v, bool):
            return v
    return 500


def serialize_error_response(err: BaseException, url: str) -> Dict[str, Any]:
    """JSON body for an HTTP error response."""
    status = extract_error_status(err)
    body: Dict[str, Any] = {
        "url": url,
        "status": status,
        "message": getattr(err, "message", None) or str(err),
        "error": True,
    }
    data = getattr(err, "data", None)
    if data is not None:
        body["data"] = data
    return body


# ---------------------------------------------------------------------------
# Parsing errors received over HTTP
# ---------------------------------------------------------------------------


@dataclass
class ParsedError:
    message: str
    status: int
    why: Optional[str] = None
    fix: Optional[str] = None
    link: Optional[str] = None
    raw: Any = None


def _from_body(body: Mapping[str, Any], raw: Any, fallback_status: int) -> ParsedError:
    data = body.get("data")
    if isinstance(data, Mapping) and isinstance(data.get("data"), Mapping):
        data = data["data"]
    if not isinstance(data, Mapping):
        data = {}
    status = finite_float(body.get("status"))
    return ParsedError(
        message=str(body.get("message") or "An error occurred"),
        status=int(status) if status else (fallback_status or 500),
        why=data.get("why"),
        fix=data.get("fix"),
        link=data.get("link"),
        raw=raw,
    )


def parse_error(err: Any) -> ParsedError:
    """
    Normalize any error into a ParsedError.

    Handles StructuredError, httpx.HTTPStatusError carrying a JSON error body
    (as produced by `serialize_error_response`), plain exceptions and
    arbitrary values.
    """
    if isinstance(err, StructuredError):
        return ParsedError(err.message, err.status, err.why, err.fix, err.link, err)

    if isinstance(err, httpx.HTTPStatusError):
        status = err.response.status_code
        try:
            body = err.response.json()
        except ValueError:
            body = None
        if isinstance(body, Mapping):
            return _from_body(body, err, status)
        return ParsedError(str(err), status, raw=err)

    if isinstance(err, BaseException):
        return ParsedError(str(err) or type(err).__name__, extract_error_status(err), raw=err)

    return ParsedError(str(err), 500, raw=err)
