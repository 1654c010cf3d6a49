import logging
import os
import threading
from collections.abc import Mapping

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field

from cligate.errors import ConfigError

logger = logging.getLogger(__name__)

DEFAULT_ALLOWED_COMMANDS = frozenset({"execute"})
DEFAULT_TARGET_SCOPED_COMMANDS = frozenset({"execute"})
DEFAULT_WORKDIR = "/tmp/cligate-work"
DEFAULT_EXECUTABLE = "leo"
DEFAULT_MAX_OUTPUT_BYTES = 5_500_000
DRY_RUN_EXECUTABLE = "echo"

TRUE_VALUES = {"1", "true", "yes", "on"}
FALSE_VALUES = {"0", "false", "no", "off", ""}


class GatewayConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    allowed_commands: frozenset[str] = DEFAULT_ALLOWED_COMMANDS
    allowed_namespaces: frozenset[str] = frozenset()
    target_scoped_commands: frozenset[str] = DEFAULT_TARGET_SCOPED_COMMANDS
    credential: str = Field(default="", repr=False)
    credential_flag: str = "--private-key"
    credential_flag_aliases: tuple[str, ...] = ("-k",)
    endpoint_url: str = ""
    endpoint_flag: str = "--endpoint"
    executable: str = DEFAULT_EXECUTABLE
    workdir: str = DEFAULT_WORKDIR
    max_output_bytes: int = DEFAULT_MAX_OUTPUT_BYTES
    exec_timeout_ms: int | None = None
    dry_run: bool = False
    cmd_expand_env: bool = True
    stdout_exclude: tuple[str, ...] = ()
    stderr_exclude: tuple[str, ...] = ()
    reload_each_invocation: bool = False
    log_level: str = "INFO"

    @property
    def resolved_executable(self) -> str:
        return DRY_RUN_EXECUTABLE if self.dry_run else self.executable


def _first_non_empty(env: Mapping[str, str], *keys: str) -> str:
    for key in keys:
        value = env.get(key)
        if value is not None and value.strip():
            return value.strip()
    return ""


def _split_list(raw: str, fold_case: bool = False) -> list[str]:
    items = []
    for part in raw.split(","):
        part = part.strip()
        if not part:
            continue
        items.append(part.lower() if fold_case else part)
    return items


def _parse_bool(env: Mapping[str, str], key: str, default: bool) -> bool:
    raw = env.get(key)
    if raw is None:
        return default
    value = raw.strip().lower()
    if value in TRUE_VALUES:
        return True
    if value in FALSE_VALUES:
        return False
    raise ConfigError(f"{key} must be a boolean, got {raw!r}")


def _parse_int(env: Mapping[str, str], key: str) -> int | None:
    raw = env.get(key)
    if raw is None or not raw.strip():
        return None
    try:
        return int(raw.strip())
    except ValueError as exc:
        raise ConfigError(f"{key} must be an integer, got {raw!r}") from exc


def parse_config(env: Mapping[str, str]) -> GatewayConfig:
    """Build a GatewayConfig from a key-value mapping such as ``os.environ``.

    ``ALLOWED_COMMANDS`` falls back to ``execute`` only when the key is absent;
    setting it to an empty string lifts the subcommand restriction.
    """
    allowed_raw = env.get("ALLOWED_COMMANDS")
    if allowed_raw is None:
        allowed_commands = DEFAULT_ALLOWED_COMMANDS
    else:
        allowed_commands = frozenset(_split_list(allowed_raw, fold_case=True))

    namespaces_raw = env.get("ALLOWED_NAMESPACES")
    if namespaces_raw is None:
        namespaces_raw = env.get("ALLOWED_CONTRACTS", "")

    scoped_raw = env.get("TARGET_SCOPED_COMMANDS")
    if scoped_raw is None:
        target_scoped = DEFAULT_TARGET_SCOPED_COMMANDS
    else:
        target_scoped = frozenset(_split_list(scoped_raw, fold_case=True))

    max_output_bytes = _parse_int(env, "MAX_OUTPUT_BYTES")
    exec_timeout_ms = _parse_int(env, "EXEC_TIMEOUT_MS")
    if exec_timeout_ms is not None and exec_timeout_ms <= 0:
        raise ConfigError(f"EXEC_TIMEOUT_MS must be positive, got {exec_timeout_ms}")

    credential_flag = _first_non_empty(env, "CREDENTIAL_FLAG") or "--private-key"
    aliases_raw = env.get("CREDENTIAL_FLAG_ALIASES")
    aliases = ("-k",) if aliases_raw is None else tuple(_split_list(aliases_raw))

    return GatewayConfig(
        allowed_commands=allowed_commands,
        allowed_namespaces=frozenset(_split_list(namespaces_raw, fold_case=True)),
        target_scoped_commands=target_scoped,
        credential=_first_non_empty(env, "CREDENTIAL", "LEO_PRIVATE_KEY", "WALLET_PRIVATE_KEY"),
        credential_flag=credential_flag,
        credential_flag_aliases=aliases,
        endpoint_url=_first_non_empty(env, "ENDPOINT_URL", "RPC_URL"),
        endpoint_flag=_first_non_empty(env, "ENDPOINT_FLAG") or "--endpoint",
        executable=_first_non_empty(env, "EXECUTABLE", "LEO_BIN") or DEFAULT_EXECUTABLE,
        workdir=_first_non_empty(env, "WORKDIR") or DEFAULT_WORKDIR,
        max_output_bytes=DEFAULT_MAX_OUTPUT_BYTES if max_output_bytes is None else max_output_bytes,
        exec_timeout_ms=exec_timeout_ms,
        dry_run=_parse_bool(env, "DRY_RUN", False),
        cmd_expand_env=_parse_bool(env, "CMD_EXPAND_ENV", True),
        stdout_exclude=tuple(_split_list(env.get("STDOUT_EXCLUDE", ""))),
        stderr_exclude=tuple(_split_list(env.get("STDERR_EXCLUDE", ""))),
        reload_each_invocation=_parse_bool(env, "CONFIG_RELOAD_EACH_INVOCATION", False),
        log_level=_first_non_empty(env, "LOG_LEVEL").upper() or "INFO",
    )


_snapshot: GatewayConfig | None = None
_snapshot_lock = threading.Lock()


def reload_config(env: Mapping[str, str] | None = None) -> GatewayConfig:
    """Parse a fresh snapshot and swap it in; the previous one stays in use on error."""
    global _snapshot

    if env is None:
        load_dotenv()
        env = os.environ
    fresh = parse_config(env)
    with _snapshot_lock:
        _snapshot = fresh
    logger.info("Configuration snapshot loaded (executable=%s, dry_run=%s)", fresh.executable, fresh.dry_run)
    return fresh


def current_config() -> GatewayConfig:
    snapshot = _snapshot
    if snapshot is None:
        return reload_config()
    if snapshot.reload_each_invocation:
        load_dotenv()
        return parse_config(os.environ)
    return snapshot
