#!/usr/bin/env python3
"""
Unified entry point for the OpenCode chat bridge.

Usage:
    python main.py run                     # Run every configured adapter
    python main.py telegram                # Telegram only
    python main.py feishu                  # Feishu/Lark only
    python main.py run --env-file .env.bridge --log-level DEBUG
"""
import argparse
import asyncio
import sys
from pathlib import Path
from typing import Optional


async def _run_bridge(*, enable_telegram: bool, enable_feishu: bool, env_file: Optional[Path], log_level: Optional[str]) -> None:
    from dotenv import load_dotenv

    if env_file is not None:
        if not env_file.exists():
            print(f"Error: {env_file} not found", file=sys.stderr)
            sys.exit(1)
        load_dotenv(env_file, override=True)
    else:
        load_dotenv()

    from config import (
        ALLOWED_CHATS,
        BOT_TOKEN,
        FEISHU_APP_ID,
        FEISHU_APP_SECRET,
        FEISHU_DOMAIN,
        LOG_FILE,
        LOG_LEVEL,
        OPENCODE_BASE_URL,
    )
    from core.dispatcher import Bridge
    from logger import setup_logging
    from opencode import OpencodeClient
    from platforms.feishu import FeishuAdapter
    from platforms.telegram import TelegramAdapter

    log = setup_logging(log_level or LOG_LEVEL, LOG_FILE)

    client = OpencodeClient(OPENCODE_BASE_URL)
    bridge = Bridge(client)

    if enable_telegram and BOT_TOKEN:
        bridge.add_adapter("telegram", TelegramAdapter(BOT_TOKEN, ALLOWED_CHATS))
    if enable_feishu and FEISHU_APP_ID and FEISHU_APP_SECRET:
        bridge.add_adapter(FEISHU_DOMAIN, FeishuAdapter(FEISHU_APP_ID, FEISHU_APP_SECRET, domain=FEISHU_DOMAIN))

    if not len(bridge.mux):
        print("No adapters configured. Check BOT_TOKEN / FEISHU_APP_ID / FEISHU_APP_SECRET.", file=sys.stderr)
        await client.close()
        sys.exit(1)

    log.info("Bridging %d adapter(s) to %s", len(bridge.mux), OPENCODE_BASE_URL)
    await bridge.start()

    try:
        await asyncio.Event().wait()
    except KeyboardInterrupt:
        pass
    finally:
        await bridge.stop()
        await client.close()


def main() -> None:
    parser = argparse.ArgumentParser(
        description="OpenCode Bridge - Stream OpenCode sessions into chat platforms"
    )
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--env-file", type=Path, default=None, metavar="PATH",
                        help="Load configuration from PATH instead of ./.env")
    common.add_argument("--log-level", default=None,
                        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
                        help="Override LOG_LEVEL")

    subparsers = parser.add_subparsers(dest="command", required=True)
    subparsers.add_parser("run", parents=[common], help="Run every configured adapter")
    subparsers.add_parser("telegram", parents=[common], help="Run the Telegram adapter")
    subparsers.add_parser("feishu", parents=[common], help="Run the Feishu/Lark adapter")

    args = parser.parse_args()
    env_file = args.env_file.resolve() if args.env_file is not None else None

    try:
        asyncio.run(_run_bridge(
            enable_telegram=args.command in ("run", "telegram"),
            enable_feishu=args.command in ("run", "feishu"),
            env_file=env_file,
            log_level=args.log_level,
        ))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
