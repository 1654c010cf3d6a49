import logging
import os
import signal
import threading
import time
from collections.abc import Sequence
from contextlib import asynccontextmanager
from types import FrameType

from fastapi import FastAPI, HTTPException, Request
from pydantic import BaseModel, Field
from starlette.concurrency import run_in_threadpool

from cligate import runner
from cligate.config import GatewayConfig, current_config, reload_config
from cligate.errors import ConfigError, GatewayError
from cligate.pipeline import parse_payload, parse_query, prepare_arguments

logger = logging.getLogger(__name__)

VERSION_TIMEOUT_SECONDS = 10.0

# Set on shutdown so in-flight executions kill their process groups.
_shutdown = threading.Event()


class InvokeResponse(BaseModel):
    exit_code: int
    duration_ms: int
    stdout: str
    stderr: str
    truncated: bool
    timed_out: bool = False
    meta: dict[str, str] = Field(default_factory=dict)


class VersionResponse(BaseModel):
    bin: str
    version: str | None = None


@asynccontextmanager
async def lifespan(_: FastAPI):
    _shutdown.clear()
    yield
    _shutdown.set()


app = FastAPI(title="CLI Invocation Gateway", version="1.0.0", lifespan=lifespan)


# Only successful lookups are kept; a failed probe is retried on the next call.
_versions: dict[str, str] = {}


def tool_version(bin_path: str) -> str | None:
    cached = _versions.get(bin_path)
    if cached is not None:
        return cached
    outcome = runner.run(
        runner.ExecutionRequest(bin_path=bin_path, args=("--version",), timeout=VERSION_TIMEOUT_SECONDS)
    )
    if outcome.exit_code != 0:
        logger.warning("Could not determine version of %s: %s", bin_path, outcome.stderr)
        return None
    parts = outcome.stdout.split()
    if len(parts) < 2:
        return None
    _versions[bin_path] = parts[1]
    return parts[1]
    parts = outcome.stdout.split()
    if len(parts) >= 2:
        return parts[1]
    return None


def _filter_lines(text: str, excluded: Sequence[str]) -> str:
    if not excluded or not text:
        return text
    kept = [line for line in text.splitlines(keepends=True) if not any(item in line for item in excluded)]
    return "".join(kept)


def _load_config() -> GatewayConfig:
    try:
        return current_config()
    except ConfigError as exc:
        raise HTTPException(status_code=500, detail=f"invalid env config: {exc}") from exc


def _effective_timeout(config: GatewayConfig, request_timeout_ms: int | None) -> float | None:
    candidates = [ms for ms in (config.exec_timeout_ms, request_timeout_ms) if ms is not None]
    if not candidates:
        return None
    return min(candidates) / 1000


def _execute(
    config: GatewayConfig,
    tokens: list[str],
    workdir: str | None,
    extra_env: dict[str, str],
    timeout_ms: int | None,
) -> InvokeResponse:
    try:
        subcommand, args = prepare_arguments(tokens, config)
    except GatewayError as exc:
        raise HTTPException(status_code=exc.status_code, detail=str(exc)) from exc

    resolved_workdir = workdir if workdir and workdir.strip() else config.workdir
    bin_path = config.resolved_executable
    execution = runner.ExecutionRequest(
        bin_path=bin_path,
        args=tuple(args),
        workdir=resolved_workdir,
        timeout=_effective_timeout(config, timeout_ms),
        max_output_bytes=config.max_output_bytes,
        extra_env=dict(extra_env),
    )

    started_at = time.perf_counter()
    outcome = runner.run(execution, _shutdown)
    elapsed = int((time.perf_counter() - started_at) * 1000)

    meta = {"workdir": resolved_workdir, "bin": bin_path}
    if subcommand:
        meta["subcommand"] = subcommand
    if not config.dry_run:
        version = tool_version(bin_path)
        if version:
            meta["version"] = version

    return InvokeResponse(
        exit_code=outcome.exit_code,
        duration_ms=elapsed,
        stdout=_filter_lines(outcome.stdout, config.stdout_exclude),
        stderr=_filter_lines(outcome.stderr, config.stderr_exclude),
        truncated=outcome.truncated,
        timed_out=outcome.timed_out,
        meta=meta,
    )


def _invoke_from_body(raw: bytes) -> InvokeResponse:
    config = _load_config()
    try:
        parsed = parse_payload(raw, expand_env=config.cmd_expand_env)
    except GatewayError as exc:
        raise HTTPException(status_code=exc.status_code, detail=str(exc)) from exc
    body = parsed.request
    return _execute(config, parsed.tokens, body.workdir, body.env, body.timeout_ms)


def _invoke_from_query(params: dict[str, str]) -> InvokeResponse:
    config = _load_config()
    try:
        tokens = parse_query(params, expand_env=config.cmd_expand_env)
    except GatewayError as exc:
        raise HTTPException(status_code=exc.status_code, detail=str(exc)) from exc
    return _execute(config, tokens, params.get("workdir"), {}, None)


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/version", response_model=VersionResponse)
def version() -> VersionResponse:
    config = _load_config()
    bin_path = config.resolved_executable
    if config.dry_run:
        return VersionResponse(bin=bin_path)
    return VersionResponse(bin=bin_path, version=tool_version(bin_path))


@app.post("/invoke", response_model=InvokeResponse)
async def invoke(request: Request) -> InvokeResponse:
    raw = await request.body()
    try:
        return await run_in_threadpool(_invoke_from_body, raw)
    except HTTPException:
        raise
    except Exception as exc:
        logger.exception("Invocation failed")
        raise HTTPException(status_code=500, detail=f"Invocation engine failed: {exc}") from exc


@app.get("/invoke", response_model=InvokeResponse)
def invoke_query(request: Request) -> InvokeResponse:
    try:
        return _invoke_from_query(dict(request.query_params))
    except HTTPException:
        raise
    except Exception as exc:
        logger.exception("Invocation failed")
        raise HTTPException(status_code=500, detail=f"Invocation engine failed: {exc}") from exc


def _reload_on_signal(signum: int, frame: FrameType | None) -> None:
    try:
        reload_config()
    except ConfigError as exc:
        logger.error("Configuration reload failed, keeping previous snapshot: %s", exc)


if __name__ == "__main__":
    import uvicorn

    config = reload_config()
    logging.basicConfig(level=config.log_level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    if hasattr(signal, "SIGHUP"):
        signal.signal(signal.SIGHUP, _reload_on_signal)

    port = int(os.getenv("PORT", "8000"))
    uvicorn.run(
        app,
        host="0.0.0.0",
        port=port,
    )
