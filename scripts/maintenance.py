import argparse
import asyncio
import sys

from wishkeep.core.config import settings
from wishkeep.core.logger import configure_logging
from wishkeep.core.mailer import Mailer
from wishkeep.core.list_access import ListAccessCodec
from wishkeep.core.token_cache import TokenLookupCache
from wishkeep.db.session import async_session_factory, ensure_schema_ready
from wishkeep.db.store import Store
from wishkeep.services.permissions import PermissionEngine
from wishkeep.services.reservations import ReservationService
from wishkeep.services.tokens import TokenService


async def check_duplicates() -> int:
    async with async_session_factory() as session:
        duplicates = await Store(session).duplicate_reservation_wish_ids()
    if not duplicates:
        print("No duplicate reservations found")
        return 0
    print(f"Found {len(duplicates)} wish(es) with more than one reservation:")
    for wish_id, count in duplicates:
        print(f"  wish_id={wish_id} reservations={count}")
    return 1


async def cleanup_tokens() -> int:
    async with async_session_factory() as session:
        deleted = await TokenService(Store(session), TokenLookupCache()).cleanup_expired_tokens()
    print(f"Deleted {deleted} expired or revoked token(s)")
    return 0


async def send_reminders(older_than_days: int | None) -> int:
    async with async_session_factory() as session:
        store = Store(session)
        service = ReservationService(
            store,
            PermissionEngine(store, ListAccessCodec.from_settings(settings)),
            settings,
            Mailer(settings),
        )
        sent = await service.send_purchase_reminders(older_than_days)
    print(f"Sent {sent} reminder(s)")
    return 0


async def run(args: argparse.Namespace) -> int:
    await ensure_schema_ready()
    if args.command == "check-duplicates":
        return await check_duplicates()
    if args.command == "cleanup-tokens":
        return await cleanup_tokens()
    return await send_reminders(args.older_than_days)


def main() -> None:
    parser = argparse.ArgumentParser(description="wishkeep maintenance tasks")
    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("check-duplicates", help="report wishes with more than one reservation row")
    sub.add_parser("cleanup-tokens", help="delete long-expired and long-revoked API tokens")
    reminders = sub.add_parser("send-reminders", help="email claimants of unpurchased reservations")
    reminders.add_argument("--older-than-days", type=int, default=None)
    args = parser.parse_args()
    configure_logging()
    sys.exit(asyncio.run(run(args)))


if __name__ == "__main__":
    main()
