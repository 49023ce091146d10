"""Delete expired demo databases. Meant to be run by cron or a scheduled job.

Reads TURSO_ORG, TURSO_AUTH_TOKEN and optionally DEMO_SESSION_TTL_MINUTES.
"""
from __future__ import annotations

import argparse
import logging
import os
import sys
from typing import Mapping, Optional, Sequence

from dotenv import load_dotenv

from clinic.core.exceptions import PlatformError
from clinic.services.demo_reaper import reap_expired
from clinic.services.turso import TursoClient

logger = logging.getLogger("clinic.reaper")


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Delete demo databases older than the session TTL.")
    parser.add_argument("--ttl-minutes", type=float, default=None, help="Override DEMO_SESSION_TTL_MINUTES.")
    return parser.parse_args(argv)


def main(argv: Optional[Sequence[str]] = None, env: Optional[Mapping[str, str]] = None, http_client=None) -> int:
    args = parse_args(argv)
    if env is None:
        load_dotenv()
        env = os.environ

    org = env.get("TURSO_ORG", "")
    token = env.get("TURSO_AUTH_TOKEN", "")
    if not org or not token:
        logger.error("event=reaper_config_missing detail=TURSO_ORG and TURSO_AUTH_TOKEN are required")
        return 1

    ttl = args.ttl_minutes if args.ttl_minutes is not None else float(env.get("DEMO_SESSION_TTL_MINUTES") or 30)
    client = TursoClient(
        org,
        token,
        base_url=env.get("TURSO_API_URL") or "https://api.turso.tech/v1",
        http_client=http_client,
    )
    try:
        result = reap_expired(client, ttl)
    except PlatformError as exc:
        logger.error("event=reaper_list_failed error=%s", exc)
        return 1
    finally:
        client.close()

    print(f"Cleanup complete. Removed {len(result.deleted)} databases.")
    return 0


def run() -> None:
    logging.basicConfig(level=logging.INFO)
    sys.exit(main())


if __name__ == "__main__":
    run()
