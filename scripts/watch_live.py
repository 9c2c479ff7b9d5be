#!/usr/bin/env python3
"""CLI script that tails a live notification session."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path

# Ensure the project source is importable when running the script directly.
_project_root = Path(__file__).resolve().parent.parent
_src = _project_root / "src"
if str(_src) not in sys.path:
    sys.path.insert(0, str(_src))

from autocare.core.config import Settings  # noqa: E402
from autocare.core.types import UserRole  # noqa: E402
from autocare.live import BadgeCount, ConnectionIndicator, LiveSession, format_badge  # noqa: E402


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Connect to the service-center real-time channel and print live events."
    )
    parser.add_argument("--token", required=True, help="Bearer access token.")
    parser.add_argument("--user-id", type=int, default=None, help="Numeric id of the signed-in user.")
    parser.add_argument(
        "--role",
        choices=[r.value for r in UserRole],
        default=None,
        help="Dashboard role; detected from /users/me when omitted.",
    )
    return parser.parse_args()


async def main() -> None:
    args = parse_args()
    settings = Settings()
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    rejected = asyncio.Event()
    session = LiveSession(
        settings,
        token=args.token,
        user_id=args.user_id,
        role=UserRole(args.role) if args.role else None,
        on_auth_rejected=lambda exc: rejected.set(),
    )

    print(f"Connecting to {settings.ws_url} ...")
    async with session:
        badge = BadgeCount(session, on_change=lambda n: print(f"Unread notifications: {format_badge(n) or 0}"))
        status = ConnectionIndicator(session, on_change=lambda s: print(f"Connection: {s}"))
        with badge, status:
            print(f"Role: {session.role}. Unread notifications: {badge.value}")
            async with session.bus.stream() as events:
                waiter = asyncio.ensure_future(rejected.wait())
                try:
                    while not rejected.is_set():
                        getter = asyncio.ensure_future(events.get())
                        done, _ = await asyncio.wait({getter, waiter}, return_when=asyncio.FIRST_COMPLETED)
                        if getter not in done:
                            getter.cancel()
                            break
                        event = getter.result()
                        stamp = event.received_at.strftime("%H:%M:%S")
                        print(f"[{stamp}] {event.title}: {event.describe()}")
                finally:
                    waiter.cancel()

    if rejected.is_set():
        print("Credential rejected; sign in again to obtain a new token.")
        sys.exit(1)


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass
