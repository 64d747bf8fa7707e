"""Entry point for the IMAP service.

Usage::

    python -m nubo_imap serve       # poll loop + HTTP API (default)
    python -m nubo_imap sync-once   # one sync pass, then exit
"""

from __future__ import annotations

import asyncio
import sys


def main() -> None:
    mode = sys.argv[1] if len(sys.argv) > 1 else "serve"
    if mode not in ("serve", "sync-once"):
        print("Usage: python -m nubo_imap [serve|sync-once]", file=sys.stderr)
        sys.exit(1)

    from .config import ServiceConfig
    from .service import ImapService

    service = ImapService(ServiceConfig())

    if mode == "serve":
        asyncio.run(service.run())

    elif mode == "sync-once":
        result = asyncio.run(service.run_single_pass())
        sys.exit(1 if result.failed_connections else 0)


if __name__ == "__main__":
    main()
