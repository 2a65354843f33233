import os
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Mapping, Optional

from toolgate.services.access_control import SenderToolAccess, parse_sender_tool_access
from toolgate.services.approvals import DEFAULT_APPROVAL_TTL_MS, parse_approval_list
from toolgate.services.rate_limit import ToolRateLimitRule, parse_tool_rate_limits
from toolgate.services.tool_policy import PolicyVariants, load_tool_groups, parse_tool_policy_variants
from toolgate.services.tool_status import DEFAULT_STATUS_DELAY_SEC

TOKEN_KEY = "TELEGRAM_BOT_TOKEN"
DEFAULT_APPROVAL_STORE_PATH = "data/approvals/approvals.json"

DEFAULT_CONFIG_DIR = Path.home() / ".config" / "toolgate"


@dataclass
class GateConfig:
    policies: PolicyVariants
    tool_groups: Dict[str, List[str]]
    sender_access: SenderToolAccess
    rate_limits: List[ToolRateLimitRule]
    approval_required: List[str]
    approval_ttl_ms: int = DEFAULT_APPROVAL_TTL_MS
    approval_store_path: Optional[Path] = None
    approval_store_url: str = ""
    max_tool_calls_per_run: Optional[int] = None
    status_delay_sec: float = DEFAULT_STATUS_DELAY_SEC
    telegram_token: str = ""


def load_env_file(path: Path) -> Dict[str, str]:
    data: Dict[str, str] = {}
    if not path.exists():
        return data
    try:
        for line in path.read_text(encoding="utf-8").splitlines():
            line = line.strip()
            if not line or line.startswith("#") or "=" not in line:
                continue
            k, v = line.split("=", 1)
            data[k.strip()] = v.strip()
    except Exception as exc:
        print(f"Failed to read .env: {exc}", file=sys.stderr)
    return data


def get_env_value(key: str, env_file: Mapping[str, str]) -> str:
    value = os.environ.get(key)
    if value:
        return value
    return env_file.get(key, "")


def get_env_path(config_dir: Path) -> Path:
    return config_dir / ".env"


def load_env_with_fallback(config_dir: Path) -> Dict[str, str]:
    data = load_env_file(get_env_path(config_dir))
    if data:
        return data
    return load_env_file(Path.cwd() / ".env")


def merged_env(env_file: Mapping[str, str], environ: Optional[Mapping[str, str]] = None) -> Dict[str, str]:
    """Process environment wins over the .env file."""
    merged = dict(env_file or {})
    for key, value in (environ if environ is not None else os.environ).items():
        if str(value or "").strip():
            merged[key] = value
    return merged


def _positive_int(raw: Optional[str], default: Optional[int]) -> Optional[int]:
    try:
        value = int(str(raw or "").strip())
    except ValueError:
        return default
    return value if value > 0 else default


def load_gate_config(env: Mapping[str, str]) -> GateConfig:
    groups = load_tool_groups(env.get("TOOL_GROUPS", ""))
    sender_access = parse_sender_tool_access(
        allow_user_ids=env.get("TOOL_ALLOWLIST_USER_IDS", ""),
        deny_user_ids=env.get("TOOL_DENYLIST_USER_IDS", ""),
        allow_user_tools=env.get("TOOL_ALLOWLIST_USER_TOOLS", ""),
        deny_user_tools=env.get("TOOL_DENYLIST_USER_TOOLS", ""),
        allow_chat_tools=env.get("TOOL_ALLOWLIST_CHAT_TOOLS", ""),
        deny_chat_tools=env.get("TOOL_DENYLIST_CHAT_TOOLS", ""),
        groups=groups,
    )
    store_path_raw = env.get("TOOL_APPROVAL_STORE_PATH", DEFAULT_APPROVAL_STORE_PATH).strip()
    status_delay_ms = _positive_int(env.get("TOOL_STATUS_DELAY_MS"), None)
    return GateConfig(
        policies=parse_tool_policy_variants(env),
        tool_groups=groups,
        sender_access=sender_access,
        rate_limits=parse_tool_rate_limits(env.get("TOOL_RATE_LIMITS", "")),
        approval_required=parse_approval_list(env.get("TOOL_APPROVAL_REQUIRED", "")),
        approval_ttl_ms=_positive_int(env.get("TOOL_APPROVAL_TTL_MS"), DEFAULT_APPROVAL_TTL_MS) or DEFAULT_APPROVAL_TTL_MS,
        approval_store_path=Path(store_path_raw) if store_path_raw else None,
        approval_store_url=env.get("TOOL_APPROVAL_STORE_URL", "").strip(),
        max_tool_calls_per_run=_positive_int(env.get("TOOL_MAX_CALLS_PER_RUN"), None),
        status_delay_sec=(status_delay_ms / 1000.0) if status_delay_ms else DEFAULT_STATUS_DELAY_SEC,
        telegram_token=env.get(TOKEN_KEY, "").strip(),
    )


def load_config(config_dir: Path, environ: Optional[Mapping[str, str]] = None) -> GateConfig:
    return load_gate_config(merged_env(load_env_with_fallback(config_dir), environ))
