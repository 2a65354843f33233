import argparse
import json
import logging
import os
import sys
from pathlib import Path

from toolgate.app_container import build_tool_gate, register_tool_manifest
from .config import (
    DEFAULT_CONFIG_DIR,
    TOKEN_KEY,
    GateConfig,
    get_env_path,
    get_env_value,
    load_config,
    load_env_with_fallback,
)
from .telegram_bot import build_application


def _configure_logging(level: str) -> None:
    level = (level or "INFO").upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _print_config(config_dir: Path, config: GateConfig) -> None:
    env_file = load_env_with_fallback(config_dir)
    token = get_env_value(TOKEN_KEY, env_file)

    print(f"Config dir: {config_dir}")
    print(f"Env file: {get_env_path(config_dir)}")
    print(f"Token present: {'yes' if token else 'no'}")
    base = config.policies.base
    print(f"Tool allowlist: {', '.join(base.allow) if base and base.allow is not None else '(all)'}")
    print(f"Tool denylist: {', '.join(base.deny) if base and base.deny else '(none)'}")
    print(f"Tool groups: {', '.join(sorted(config.tool_groups))}")
    print(f"Approval required: {', '.join(config.approval_required) or '(none)'}")
    print(f"Approval TTL ms: {config.approval_ttl_ms}")
    store = config.approval_store_url or (str(config.approval_store_path) if config.approval_store_path else "memory")
    print(f"Approval store: {store}")
    if config.rate_limits:
        for rule in config.rate_limits:
            print(f"Rate limit: {rule.tool} {rule.max}/{rule.window_seconds}s")
    else:
        print("Rate limits: (none)")
    print(f"Max tool calls per run: {config.max_tool_calls_per_run or '(unlimited)'}")


def _repair_file(config: GateConfig, path: Path) -> int:
    try:
        raws = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        print(f"Cannot read transcript {path}: {exc}", file=sys.stderr)
        return 1
    if not isinstance(raws, list):
        print("Transcript must be a JSON list of messages.", file=sys.stderr)
        return 1
    gate = build_tool_gate(config)
    prepared = gate.prepare_transcript(raws)
    report = prepared.repair
    print(
        json.dumps(
            {
                "changed": report.changed or prepared.ids_rewritten,
                "added": len(report.added),
                "dropped_duplicate_count": report.dropped_duplicate_count,
                "dropped_orphan_count": report.dropped_orphan_count,
                "moved": report.moved,
                "reordered": report.reordered,
                "ids_rewritten": prepared.ids_rewritten,
                "messages": prepared.messages,
            },
            indent=2,
            ensure_ascii=False,
        )
    )
    return 0


def main() -> None:
    parser = argparse.ArgumentParser(description="Tool gating for Telegram agent bots")
    parser.add_argument(
        "--config-dir",
        default=str(DEFAULT_CONFIG_DIR),
        help="Directory holding the .env config (default: ~/.config/toolgate)",
    )
    parser.add_argument("--print-config", action="store_true", help="Print active config summary")
    parser.add_argument("--repair", metavar="FILE", help="Repair a JSON transcript and print the result")
    parser.add_argument("--tools", metavar="FILE", help="JSON manifest of tools to register at startup")
    parser.add_argument(
        "--control-center",
        action="store_true",
        help="Run the Control Center API instead of Telegram polling mode",
    )
    parser.add_argument("--host", default="127.0.0.1", help="Control Center bind host")
    parser.add_argument("--port", type=int, default=8765, help="Control Center bind port")
    parser.add_argument("--log-level", default=os.environ.get("LOG_LEVEL", "INFO"))

    args = parser.parse_args()
    config_dir = Path(args.config_dir).expanduser().resolve()

    _configure_logging(args.log_level)
    config = load_config(config_dir)

    if args.print_config:
        _print_config(config_dir, config)
        return

    if args.repair:
        sys.exit(_repair_file(config, Path(args.repair)))

    gate = build_tool_gate(config)
    if args.tools:
        accepted = register_tool_manifest(gate.registry, Path(args.tools))
        logging.getLogger(__name__).info("Registered %d tools from %s", accepted, args.tools)

    if args.control_center:
        from toolgate.control_center.app import create_app
        import uvicorn

        app = create_app(gate)
        uvicorn.run(app, host=args.host, port=args.port, log_level=args.log_level.lower())
        return

    if not config.telegram_token:
        print(f"{TOKEN_KEY} is not set; add it to {get_env_path(config_dir)}", file=sys.stderr)
        sys.exit(1)
    app = build_application(config.telegram_token, gate)
    app.run_polling(close_loop=False)


if __name__ == "__main__":
    main()
