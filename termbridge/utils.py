"""
Shared utilities: environment loading, configuration, local state, and the
background-task error boundary.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import socket
import uuid
from dataclasses import dataclass, field
from pathlib import Path

from termbridge.models import PERMISSION_MODES

_log = logging.getLogger("utils")

ENGINES = ("claude", "shell")
TRANSPORTS = ("xmpp", "loopback")
REGISTRIES = ("sqlite", "rest")


def parse_bool(value: object, default: bool = False) -> bool:
    if isinstance(value, bool):
        return value
    if value is None:
        return default
    text = str(value).strip().lower()
    if not text:
        return default
    return text in {"1", "true", "yes", "on"}


def _env_float(name: str, default: float) -> float:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        _log.warning("Invalid %s=%r; using %s", name, raw, default)
        return default
    if value <= 0:
        _log.warning("Non-positive %s=%r; using %s", name, raw, default)
        return default
    return value


def _env_int(name: str, default: int) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        _log.warning("Invalid %s=%r; using %s", name, raw, default)
        return default
    if value <= 0:
        _log.warning("Non-positive %s=%r; using %s", name, raw, default)
        return default
    return value


def _env_choice(name: str, default: str, choices: tuple[str, ...]) -> str:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    if raw not in choices:
        _log.warning("Unknown %s=%r; using %s", name, raw, default)
        return default
    return raw


# =============================================================================
# Environment Loading
# =============================================================================


def load_env(env_path: Path | None = None) -> None:
    """Load .env file into os.environ. Handles quoted values and spaces."""
    if env_path is None:
        env_path = Path.cwd() / ".env"

    if not env_path.exists():
        return

    for line in env_path.read_text().splitlines():
        line = line.strip()
        if line and not line.startswith("#") and "=" in line:
            key, val = line.split("=", 1)
            val = val.strip().strip('"').strip("'")
            os.environ[key.strip()] = val


# =============================================================================
# Configuration (call load_env() before accessing these)
# =============================================================================


@dataclass(frozen=True)
class XmppConfig:
    server: str
    domain: str
    jid: str
    password: str
    muc_service: str
    port: int = 5222
    use_tls: bool = False


@dataclass(frozen=True)
class ApiConfig:
    url: str
    api_key: str
    access_token: str
    notify_enabled: bool


@dataclass(frozen=True)
class BridgeConfig:
    owner_id: str
    machine_name: str
    working_dir: Path
    engine: str
    permission_mode: str
    model: str
    hybrid: bool
    state_dir: Path
    transport: str
    registry: str
    db_path: Path
    output_dir: Path | None
    heartbeat_interval_s: float = 15.0
    heartbeat_timeout_s: float = 30.0
    max_retries: int = 10
    retry_base_delay_s: float = 1.0
    retry_max_delay_s: float = 30.0
    outbox_limit: int = 100
    xmpp: XmppConfig | None = None
    api: ApiConfig | None = None
    extra: dict[str, str] = field(default_factory=dict)


def get_xmpp_config() -> XmppConfig:
    """Get XMPP configuration from environment."""
    server = os.getenv("XMPP_SERVER", "your.xmpp.server")
    domain = os.getenv("XMPP_DOMAIN", server)
    return XmppConfig(
        server=server,
        domain=domain,
        jid=os.getenv("XMPP_JID", f"termbridge@{domain}"),
        password=os.getenv("XMPP_PASSWORD", ""),
        muc_service=os.getenv("XMPP_MUC_SERVICE", f"conference.{domain}"),
        port=_env_int("XMPP_PORT", 5222),
        use_tls=parse_bool(os.getenv("XMPP_TLS")),
    )


def get_api_config() -> ApiConfig | None:
    url = (os.getenv("TERMBRIDGE_API_URL") or "").strip().rstrip("/")
    if not url:
        return None
    return ApiConfig(
        url=url,
        api_key=(os.getenv("TERMBRIDGE_API_KEY") or "").strip(),
        access_token=(os.getenv("TERMBRIDGE_ACCESS_TOKEN") or "").strip(),
        notify_enabled=parse_bool(os.getenv("TERMBRIDGE_NOTIFY_ENABLE"), default=True),
    )


def get_bridge_config() -> BridgeConfig:
    """Read the bridge configuration from the environment."""
    state_dir = Path(
        os.getenv("TERMBRIDGE_STATE_DIR", str(Path.home() / ".termbridge"))
    ).expanduser()
    working_dir = Path(os.getenv("TERMBRIDGE_WORKING_DIR") or os.getcwd()).expanduser()

    raw_output_dir = (os.getenv("TERMBRIDGE_OUTPUT_DIR") or "").strip()
    output_dir = Path(raw_output_dir).expanduser() if raw_output_dir else None

    transport = _env_choice("TERMBRIDGE_TRANSPORT", "xmpp", TRANSPORTS)
    return BridgeConfig(
        owner_id=(os.getenv("TERMBRIDGE_OWNER_ID") or "").strip(),
        machine_name=(os.getenv("TERMBRIDGE_MACHINE_NAME") or socket.gethostname()).strip(),
        working_dir=working_dir,
        engine=_env_choice("TERMBRIDGE_ENGINE", "claude", ENGINES),
        permission_mode=_env_choice(
            "TERMBRIDGE_PERMISSION_MODE", "bypassPermissions", PERMISSION_MODES
        ),
        model=(os.getenv("TERMBRIDGE_MODEL") or "default").strip() or "default",
        hybrid=parse_bool(os.getenv("TERMBRIDGE_HYBRID"), default=True),
        state_dir=state_dir,
        transport=transport,
        registry=_env_choice("TERMBRIDGE_REGISTRY", "sqlite", REGISTRIES),
        db_path=Path(
            os.getenv("TERMBRIDGE_DB_PATH", str(state_dir / "termbridge.db"))
        ).expanduser(),
        output_dir=output_dir,
        heartbeat_interval_s=_env_float("TERMBRIDGE_HEARTBEAT_INTERVAL_S", 15.0),
        heartbeat_timeout_s=_env_float("TERMBRIDGE_HEARTBEAT_TIMEOUT_S", 30.0),
        max_retries=_env_int("TERMBRIDGE_MAX_RETRIES", 10),
        retry_base_delay_s=_env_float("TERMBRIDGE_RETRY_BASE_DELAY_S", 1.0),
        retry_max_delay_s=_env_float("TERMBRIDGE_RETRY_MAX_DELAY_S", 30.0),
        outbox_limit=_env_int("TERMBRIDGE_OUTBOX_LIMIT", 100),
        xmpp=get_xmpp_config() if transport == "xmpp" else None,
        api=get_api_config(),
    )


# =============================================================================
# Local State
# =============================================================================


class LocalState:
    """Small JSON file under the state dir (`config.json`).

    Holds the machine id so one host keeps a single machine record across runs.
    """

    def __init__(self, state_dir: Path):
        self.path = state_dir / "config.json"

    def load(self) -> dict:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError):
            _log.warning("Ignoring unreadable state file %s", self.path)
            return {}
        return data if isinstance(data, dict) else {}

    def save(self, data: dict) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(".tmp")
        tmp.write_text(json.dumps(data, indent=2), encoding="utf-8")
        os.replace(tmp, self.path)

    @property
    def machine_id(self) -> str | None:
        value = self.load().get("machineId")
        return value if isinstance(value, str) and value else None

    def ensure_machine_id(self) -> str:
        existing = self.machine_id
        if existing:
            return existing
        data = self.load()
        data["machineId"] = str(uuid.uuid4())
        self.save(data)
        return data["machineId"]


# =============================================================================
# Error boundary
# =============================================================================


async def guard(coro, *, context: str | None = None, log: logging.Logger | None = None):
    """Run a coroutine with a single error boundary.

    - Lets internal code raise normally.
    - Catches at the boundary and logs. Cancellation always propagates.
    """

    try:
        return await coro
    except asyncio.CancelledError:
        raise
    except Exception:
        log = log or _log
        if context:
            log.exception("Unhandled error (%s)", context)
        else:
            log.exception("Unhandled error")
        return None


def spawn_guarded(
    coro, *, context: str | None = None, log: logging.Logger | None = None
) -> asyncio.Task:
    """Create a task whose exceptions are logged instead of lost."""

    return asyncio.create_task(guard(coro, context=context, log=log))
