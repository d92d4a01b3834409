"""Command line entry point: ``python -m stillwater serve|check``."""

import argparse
import asyncio
import json
import sys

import uvicorn

from stillwater.api.host import build_host
from stillwater.api.main import create_app
from stillwater.config import Settings, load_local_env
from stillwater.logger import logger


def serve(settings: Settings, host: str | None, port: int | None) -> int:
    app = create_app(build_host(settings))
    logger.info("================ Stillwater starting up... ===============")
    uvicorn.run(app, host=host or settings.api_host, port=port or settings.api_port)
    return 0


def check(settings: Settings) -> int:
    """キャプチャ + 解析 + 判定を 1 回だけ行い、結果を JSON で出力する."""
    host = build_host(settings)
    if host.scheduler is None:
        sys.stderr.write("LLM_URL and LLM_MODEL must be set (e.g., in .env.local).\n")
        return 2
    result = asyncio.run(host.scheduler.run_once())
    if result is None:
        sys.stderr.write(f"check failed: {list(host.diagnostics)[-1:]}\n")
        return 1
    output = {
        "result": result.to_dict(),
        "decision": host.last_decision.to_dict() if host.last_decision else None,
    }
    sys.stdout.write(json.dumps(output, indent=2, ensure_ascii=False) + "\n")
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(prog="stillwater")
    sub = parser.add_subparsers(dest="command", required=True)
    serve_parser = sub.add_parser("serve", help="run the HTTP API and monitor")
    serve_parser.add_argument("--host")
    serve_parser.add_argument("--port", type=int)
    sub.add_parser("check", help="run a single check and print the decision")
    args = parser.parse_args(argv)

    load_local_env()
    settings = Settings.from_env()
    if args.command == "serve":
        return serve(settings, args.host, args.port)
    return check(settings)


if __name__ == "__main__":
    raise SystemExit(main())
