"""Argument and policy pipeline.

Turns an untrusted request payload into the argument list handed to the
runner: parse, classify the subcommand, enforce allow-lists, then splice in
the flags the service supplies on the caller's behalf.
"""

import logging
import re
import shlex
from collections.abc import Iterable, Mapping, Sequence
from typing import Any, NamedTuple

from pydantic import BaseModel, Field, ValidationError, field_validator

from cligate.config import GatewayConfig
from cligate.errors import BadRequest, MalformedInput, PolicyDenied

logger = logging.getLogger(__name__)

FLAG_PREFIX = "-"
END_OF_OPTIONS = "--"

RE_ENV_KEY = re.compile(r"^[A-Z][A-Z0-9_]*$")
RE_ENV_REFERENCE = re.compile(r"\$(?:\{([A-Za-z_][A-Za-z0-9_]*)\}|([A-Za-z_][A-Za-z0-9_]*))")
BLOCKED_ENV_KEYS = {"PATH", "IFS", "BASH_ENV", "ENV"}
BLOCKED_ENV_PREFIXES = ("LD_", "DYLD_")


class InvokeRequest(BaseModel):
    args: list[str] | None = None
    cmd: str | None = None
    workdir: str | None = None
    env: dict[str, str] = Field(default_factory=dict)
    timeout_ms: int | None = Field(default=None, ge=100, le=300000)

    @field_validator("env")
    @classmethod
    def _check_env_keys(cls, value: dict[str, str]) -> dict[str, str]:
        for key in value:
            if not RE_ENV_KEY.match(key):
                raise ValueError(f"Invalid env key: {key}")
            if key in BLOCKED_ENV_KEYS or key.startswith(BLOCKED_ENV_PREFIXES):
                raise ValueError(f"env key not allowed: {key}")
        return value


class TargetReference(NamedTuple):
    namespace: str = ""
    action: str = ""

    def __bool__(self) -> bool:
        return bool(self.namespace)


class ParsedRequest(NamedTuple):
    tokens: list[str]
    request: InvokeRequest


def _quote_fields(value: str) -> str:
    # Unquoted expansions are field-split on whitespace; an empty one yields no word.
    fields = value.split()
    if not fields:
        return " " if value else ""
    text = " ".join(shlex.quote(field) for field in fields)
    if value[0].isspace():
        text = " " + text
    if value[-1].isspace():
        text += " "
    return text


def _expand_references(cmd: str, env: Mapping[str, str]) -> str:
    """Substitute ``$VAR``/``${VAR}`` outside single quotes, re-quoting values for shlex."""
    out: list[str] = []
    quote = None
    i = 0
    while i < len(cmd):
        char = cmd[i]
        if quote == "'":
            out.append(char)
            if char == "'":
                quote = None
            i += 1
            continue
        if char == "\\":
            escaped = cmd[i + 1 : i + 2]
            # shlex keeps the backslash before "$" inside double quotes; a shell does not
            if quote == '"' and escaped == "$":
                out.append(escaped)
            else:
                out.append(char + escaped)
            i += 1 + len(escaped)
            continue
        if char == "$":
            match = RE_ENV_REFERENCE.match(cmd, i)
            if match:
                value = env.get(match.group(1) or match.group(2), "")
                if quote == '"':
                    out.append(value.replace("\\", "\\\\").replace('"', '\\"'))
                else:
                    out.append(_quote_fields(value))
                i = match.end()
                continue
        if char in "'\"":
            if quote is None:
                quote = char
            elif quote == char:
                quote = None
        out.append(char)
        i += 1
    return "".join(out)


def split_command(cmd: str, env: Mapping[str, str] | None = None) -> list[str]:
    """Split a shell-syntax string into words, optionally expanding ``$VAR`` from ``env``.

    Expansion follows shell quoting: single-quoted and backslash-escaped
    references stay literal, and unquoted values are split into words.
    """
    if env is not None:
        cmd = _expand_references(cmd, env)
    try:
        return shlex.split(cmd, posix=True)
    except ValueError as exc:
        raise MalformedInput(f"invalid cmd: {exc}") from exc


def parse_payload(payload: bytes | str | Mapping[str, Any], expand_env: bool = True) -> ParsedRequest:
    """Decode the request body and produce its ordered token list.

    Exactly one of ``args`` or ``cmd`` must be supplied. ``$VAR`` references in
    ``cmd`` expand only against the request's own ``env`` overrides.
    """
    try:
        if isinstance(payload, Mapping):
            request = InvokeRequest.model_validate(payload)
        else:
            request = InvokeRequest.model_validate_json(payload)
    except ValidationError as exc:
        raise MalformedInput(f"invalid JSON body: {_describe_validation_error(exc)}") from exc

    has_args = request.args is not None and len(request.args) > 0
    has_cmd = request.cmd is not None and request.cmd.strip() != ""
    if has_args and has_cmd:
        raise MalformedInput("provide either args or cmd, not both")
    if not has_args and not has_cmd:
        raise MalformedInput("missing args or cmd in request body")

    if has_args:
        tokens = list(request.args)
    else:
        tokens = split_command(request.cmd, request.env if expand_env else None)
    return ParsedRequest(tokens=tokens, request=request)


def parse_query(params: Mapping[str, str], expand_env: bool = True) -> list[str]:
    """Token list from ``?cmd=...`` or ``?args=a,b c`` query parameters."""
    cmd = params.get("cmd", "")
    if cmd.strip():
        return split_command(cmd, {} if expand_env else None)

    tokens: list[str] = []
    for part in params.get("args", "").split(","):
        tokens.extend(part.split())
    if not tokens:
        raise MalformedInput("missing args or cmd; provide ?cmd=... or a JSON body with args/cmd")
    return tokens


def _describe_validation_error(exc: ValidationError) -> str:
    first = exc.errors()[0]
    location = ".".join(str(part) for part in first.get("loc", ()))
    message = first.get("msg", "invalid value")
    return f"{location}: {message}" if location else message


def _subcommand_index(tokens: Sequence[str]) -> int:
    skip_flags = True
    for index, token in enumerate(tokens):
        if skip_flags:
            if token == END_OF_OPTIONS:
                skip_flags = False
                continue
            if token.startswith(FLAG_PREFIX):
                continue
        if token.strip():
            return index
    return -1


def classify_subcommand(tokens: Sequence[str]) -> str:
    """Return the case-folded subcommand, or ``""`` when only flags are present."""
    if not tokens:
        raise MalformedInput("no arguments provided")
    index = _subcommand_index(tokens)
    return tokens[index].lower() if index >= 0 else ""


def enforce_subcommand_allowlist(subcommand: str, allowed: Iterable[str]) -> None:
    allowed_set = {item.strip().lower() for item in allowed if item.strip()}
    if not allowed_set or not subcommand:
        return
    if subcommand.lower() not in allowed_set:
        logger.warning("Rejected subcommand %r", subcommand)
        raise PolicyDenied(f"subcommand {subcommand!r} not allowed")


def extract_target_reference(tokens: Sequence[str]) -> TargetReference:
    for token in tokens:
        if token.startswith(FLAG_PREFIX) or not token.strip():
            continue
        # URLs carry slashes but never name a target
        if "://" in token:
            continue
        namespace, sep, action = token.partition("/")
        if sep and namespace and action:
            return TargetReference(namespace.strip().lower(), action.strip().lower())
    return TargetReference()


def enforce_target_allowlist(reference: TargetReference, allowed_namespaces: Iterable[str]) -> None:
    allowed_set = {item.strip().lower() for item in allowed_namespaces if item.strip()}
    if not allowed_set:
        return
    if not reference:
        raise BadRequest("missing namespace/action target argument")
    if reference.namespace not in allowed_set:
        logger.warning("Rejected target namespace %r", reference.namespace)
        raise PolicyDenied(f"namespace {reference.namespace!r} not allowed")


def has_flag(tokens: Sequence[str], *names: str) -> bool:
    for token in tokens:
        for name in names:
            if token == name or token.startswith(name + "="):
                return True
    return False


def inject_flag(tokens: Sequence[str], flag: str, value: str, aliases: Sequence[str] = ()) -> list[str]:
    """Insert ``flag value`` right after the subcommand unless the flag (or an alias) is present.

    With no subcommand the pair is prepended. The input is never mutated.
    """
    if has_flag(tokens, flag, *aliases):
        return list(tokens)
    index = _subcommand_index(tokens)
    return [*tokens[: index + 1], flag, value, *tokens[index + 1 :]]


def prepare_arguments(tokens: Sequence[str], config: GatewayConfig) -> tuple[str, list[str]]:
    """Run the full policy pipeline and return ``(subcommand, vetted_args)``."""
    subcommand = classify_subcommand(tokens)
    enforce_subcommand_allowlist(subcommand, config.allowed_commands)

    args = list(tokens)
    if subcommand and subcommand in config.target_scoped_commands:
        enforce_target_allowlist(extract_target_reference(args), config.allowed_namespaces)
        if config.endpoint_url:
            args = inject_flag(args, config.endpoint_flag, config.endpoint_url)
        if config.credential:
            args = inject_flag(args, config.credential_flag, config.credential, config.credential_flag_aliases)
    return subcommand, args
