#!/usr/bin/env python3
from __future__ import annotations

import argparse
import os

import uvicorn


def main() -> int:
    parser = argparse.ArgumentParser(description="Serve the execution authority API.")
    parser.add_argument("--host", default=os.environ.get("HOST", "0.0.0.0"))
    parser.add_argument("--port", type=int, default=int(os.environ.get("PORT", "3000")))
    parser.add_argument(
        "--shutdown-timeout",
        type=int,
        default=int(os.environ.get("SHUTDOWN_TIMEOUT", "30000")),
        help="Graceful shutdown window in milliseconds.",
    )
    args = parser.parse_args()

    uvicorn.run(
        "execution_authority.main:create_app",
        factory=True,
        host=args.host,
        port=args.port,
        timeout_graceful_shutdown=max(1, args.shutdown_timeout // 1000),
        log_config=None,
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
