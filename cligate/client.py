"""Minimal client for services that call the gateway over HTTP."""

from typing import Any

import requests
from pydantic import BaseModel, Field

DEFAULT_TIMEOUT_SECONDS = 60


class InvokeResult(BaseModel):
    exit_code: int
    duration_ms: int = 0
    stdout: str = ""
    stderr: str = ""
    truncated: bool = False
    timed_out: bool = False
    meta: dict[str, str] = Field(default_factory=dict)


class InvocationError(RuntimeError):
    def __init__(self, status_code: int, message: str = "", body: bytes = b"") -> None:
        self.status_code = status_code
        self.message = message
        self.body = body
        super().__init__(str(self))

    def __str__(self) -> str:
        if self.message:
            return f"gateway responded with status {self.status_code}: {self.message}"
        return f"gateway responded with status {self.status_code}"


def _error_from_response(response: requests.Response) -> InvocationError:
    message = ""
    try:
        payload = response.json()
    except ValueError:
        payload = None
    if isinstance(payload, dict):
        for key in ("detail", "error"):
            value = payload.get(key)
            if isinstance(value, str) and value.strip():
                message = value
                break
    if not message:
        message = response.text.strip()
    return InvocationError(response.status_code, message, response.content)


class GatewayClient:
    def __init__(
        self,
        base_url: str,
        session: requests.Session | None = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
    ) -> None:
        base_url = (base_url or "").strip()
        if not base_url:
            raise ValueError("base URL is required")
        self.base_url = base_url.rstrip("/")
        self.session = session or requests.Session()
        self.timeout = timeout

    def invoke(
        self,
        args: list[str] | None = None,
        cmd: str | None = None,
        workdir: str | None = None,
        env: dict[str, str] | None = None,
        timeout_ms: int | None = None,
    ) -> InvokeResult:
        if args and cmd and cmd.strip():
            raise ValueError("provide either args or cmd, not both")
        if not args and not (cmd and cmd.strip()):
            raise ValueError("either args or cmd must be provided")

        payload: dict[str, Any] = {"args": list(args)} if args else {"cmd": cmd}
        if workdir:
            payload["workdir"] = workdir
        if env:
            payload["env"] = dict(env)
        if timeout_ms is not None:
            payload["timeout_ms"] = timeout_ms

        response = self.session.post(f"{self.base_url}/invoke", json=payload, timeout=self.timeout)
        if not 200 <= response.status_code < 300:
            raise _error_from_response(response)
        return InvokeResult.model_validate(response.json())
