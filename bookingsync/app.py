import argparse
from datetime import timedelta
from typing import List, Optional

from sqlalchemy import select

from . import __version__
from .client import UpstreamClient
from .config import Settings
from .database import Location, dialect_insert, dispose_engines, init_database, session_factory
from .env import load_env
from .exceptions import FATAL_ERRORS, BackfillError
from .fetcher import PageFetcher
from .logger import get_logger
from .models import FilterWindow, RunStatistics
from .normalize import format_timestamp, resolve, utcnow
from .orchestrator import BackfillOrchestrator
from .retry import RetryError
from .upserter import RecordUpserter
from .windows import chunk_windows, parse_date, parse_moment

DEFAULT_LOOKAHEAD_DAYS = 90
DEFAULT_LOOKBACK_DAYS = 30


def load_settings(args: argparse.Namespace) -> Settings:
    settings = Settings.from_env().with_overrides(
        database_url=args.database_url,
        organization_id=args.organization,
        log_level=args.log_level,
    )
    try:
        settings.validate()
    except ValueError as e:
        raise SystemExit(f"Invalid configuration: {e}")
    get_logger().set_level(settings.log_level)
    return settings


def build_client(settings: Settings) -> UpstreamClient:
    if not settings.access_token:
        raise SystemExit("SQUARE_ACCESS_TOKEN not set. Set env var or add it to .env.")
    return UpstreamClient.from_settings(settings)


def build_orchestrator(
    settings: Settings,
    client: UpstreamClient,
    location_id: Optional[str] = None,
    customer_id: Optional[str] = None,
) -> BackfillOrchestrator:
    settings = settings.with_overrides(location_id=location_id)
    sessions = session_factory(settings.database_url)
    fetcher = PageFetcher.from_settings(client, settings, customer_id=customer_id)
    upserter = RecordUpserter.from_settings(sessions, client, settings)
    return BackfillOrchestrator(
        fetcher,
        upserter,
        sessions,
        organization_id=settings.organization_id,
        page_delay=settings.page_delay,
    )


def print_progress(page: int, fetched: int, upserted: int, cursor: Optional[str]) -> None:
    more = "more" if cursor else "done"
    print(f"  page {page}: fetched={fetched} upserted={upserted} ({more})")


def print_stats(label: str, stats: RunStatistics) -> None:
    print(
        f"{label}: fetched={stats.fetched} upserted={stats.upserted} skipped={stats.skipped} "
        f"errors={stats.errors} retries={stats.retries} pages={stats.pages}"
    )


def run_windows(
    settings: Settings,
    client: UpstreamClient,
    windows: List[FilterWindow],
    location_id: Optional[str],
    customer_id: Optional[str],
    incremental: bool = False,
    lower_bound=None,
    verify: bool = True,
) -> bool:
    """Run one orchestrator per window. Returns False if any window aborted or failed verification."""
    orchestrator = build_orchestrator(settings, client, location_id=location_id, customer_id=customer_id)
    total = RunStatistics()
    ok = True
    partition = location_id or "all locations"
    for window in windows:
        print(f"Window {window.label} [{partition}]")
        try:
            stats = orchestrator.run(
                window,
                incremental=incremental,
                lower_bound=lower_bound,
                on_progress=print_progress,
            )
        except (BackfillError, RetryError) as e:
            print(f"[aborted] {window.label}: {e}")
            total = total + orchestrator.last_stats
            ok = False
            if isinstance(e, FATAL_ERRORS):
                break
            continue
        total = total + stats
        if verify:
            report = orchestrator.verifier().verify()
            status = "ok" if report.passed else "FAILED"
            print(
                f"  verify {status}: count {report.upstream_count}/{report.stored_count} "
                f"temporal={report.temporal_match} pagination={report.pagination_complete} "
                f"gaps={report.gap_sample.gap_count}"
            )
            ok = ok and report.passed
    print_stats(f"Total [{partition}]", total)
    return ok


def target_locations(args: argparse.Namespace, settings: Settings, client: UpstreamClient) -> List[Optional[str]]:
    if not args.all_locations:
        return [args.location or settings.location_id]
    sessions = session_factory(settings.database_url)
    with sessions() as session:
        stored = session.execute(select(Location.location_id).order_by(Location.location_id)).scalars().all()
    if stored:
        return list(stored)
    locations = [loc.get("id") for loc in client.list_locations() if loc.get("id")]
    if not locations:
        raise SystemExit("No locations found. Run sync-locations first.")
    return locations


def cmd_init_db(args: argparse.Namespace) -> None:
    settings = load_settings(args)
    init_database(settings.database_url)
    print(f"Database ready: {settings.database_url}")


def cmd_backfill(args: argparse.Namespace) -> None:
    settings = load_settings(args)
    client = build_client(settings)
    init_database(settings.database_url)
    try:
        start = parse_date(args.start_date)
        end = parse_date(args.end_date) + timedelta(days=1)  # inclusive end date
        windows = chunk_windows(start, end, max_days=settings.max_window_days)
    except ValueError as e:
        raise SystemExit(str(e))

    print(f"Backfilling {len(windows)} window(s) from {args.start_date} to {args.end_date}")
    ok = True
    for location_id in target_locations(args, settings, client):
        ok = run_windows(
            settings, client, windows,
            location_id=location_id,
            customer_id=args.customer,
            verify=not args.no_verify,
        ) and ok
    get_logger().log_metrics_summary()
    if not ok:
        raise SystemExit(1)


def cmd_incremental(args: argparse.Namespace) -> None:
    settings = load_settings(args)
    client = build_client(settings)
    init_database(settings.database_url)
    location_id = args.location or settings.location_id

    if args.since:
        try:
            lower_bound = parse_moment(args.since)
        except ValueError as e:
            raise SystemExit(str(e))
    else:
        lower_bound = build_orchestrator(settings, client, location_id=location_id).derive_lower_bound()
        if lower_bound is None:
            raise SystemExit("Nothing stored yet for this partition. Run backfill first or pass --since.")

    if args.lookback_days < 0 or args.lookahead_days < 0:
        raise SystemExit("--lookback-days and --lookahead-days must not be negative")
    # Bookings scheduled before the bound can still change after it.
    start = lower_bound - timedelta(days=args.lookback_days)
    end = utcnow() + timedelta(days=args.lookahead_days)
    if start >= end:
        raise SystemExit(f"--since {format_timestamp(lower_bound)} is after the lookahead horizon")
    windows = chunk_windows(start, end, max_days=settings.max_window_days)
    print(
        f"Incremental sync of updates since {format_timestamp(lower_bound)}, "
        f"scheduled from {format_timestamp(start)} ({len(windows)} window(s))"
    )

    ok = run_windows(
        settings, client, windows,
        location_id=location_id,
        customer_id=args.customer,
        incremental=True,
        lower_bound=lower_bound,
        verify=not args.no_verify,
    )
    get_logger().log_metrics_summary()
    if not ok:
        raise SystemExit(1)


def cmd_backfill_id(args: argparse.Namespace) -> None:
    settings = load_settings(args)
    client = build_client(settings)
    init_database(settings.database_url)
    upserter = RecordUpserter.from_settings(session_factory(settings.database_url), client, settings)

    failed = 0
    for booking_id in args.ids:
        try:
            booking = client.retrieve_booking(booking_id)
        except BackfillError as e:
            print(f"[error] {booking_id} -> {e}")
            failed += 1
            continue
        outcome = upserter.upsert(booking)
        print(f"[{outcome.value}] {booking_id}")
        if not outcome:
            failed += 1
    print(f"Done. total={len(args.ids)} failed={failed}")
    if failed:
        raise SystemExit(1)


def cmd_sync_locations(args: argparse.Namespace) -> None:
    settings = load_settings(args)
    client = build_client(settings)
    init_database(settings.database_url)
    try:
        locations = client.list_locations()
    except BackfillError as e:
        raise SystemExit(f"Could not list locations: {e}")

    count = sync_locations(session_factory(settings.database_url), locations)
    print(f"Synced {count} location(s)")


def sync_locations(sessions, locations) -> int:
    """Upsert upstream locations; returns how many rows were written."""
    count = 0
    with sessions.begin() as session:
        for loc in locations:
            location_id = resolve(loc, "id")
            if not location_id:
                continue
            address = resolve(loc, "address") or {}
            values = {
                "location_id": location_id,
                "name": resolve(loc, "name") or location_id,
                "address_line_1": resolve(address, "address_line_1"),
                "locality": resolve(address, "locality"),
                "administrative_district_level_1": resolve(address, "administrative_district_level_1"),
                "postal_code": resolve(address, "postal_code"),
            }
            stmt = dialect_insert(session, Location).values(**values)
            stmt = stmt.on_conflict_do_update(
                index_elements=["location_id"],
                set_=dict({k: stmt.excluded[k] for k in values if k != "location_id"}, updated_at=utcnow()),
            )
            session.execute(stmt)
            count += 1
    return count


def add_partition_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--location", help="Upstream location ID (default: BOOKINGSYNC_LOCATION_ID)")
    parser.add_argument("--customer", help="Only sync bookings for this customer ID")
    parser.add_argument("--no-verify", action="store_true", help="Skip post-run completeness checks")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="bookingsync", description="Booking backfill and sync CLI")
    parser.add_argument("--version", action="store_true", help="Show version")
    parser.add_argument("--database-url", help="SQLAlchemy URL or SQLite path (default: DATABASE_URL)")
    parser.add_argument("--organization", help="Organization ID bookings are stored under")
    parser.add_argument("--log-level", choices=["DEBUG", "INFO", "WARNING", "ERROR"], help="Console log level")

    subparsers = parser.add_subparsers(dest="command")
    init = subparsers.add_parser("init-db", help="Create database tables")
    init.set_defaults(func=cmd_init_db)

    bf = subparsers.add_parser("backfill", help="Backfill bookings for a date range")
    bf.add_argument("--start-date", required=True, help="First day to sync (YYYY-MM-DD)")
    bf.add_argument("--end-date", required=True, help="Last day to sync, inclusive (YYYY-MM-DD)")
    bf.add_argument("--all-locations", action="store_true", help="Run once per known location")
    add_partition_args(bf)
    bf.set_defaults(func=cmd_backfill)

    inc = subparsers.add_parser("incremental", help="Sync bookings updated since the last run")
    inc.add_argument("--since", help="Lower bound (YYYY-MM-DD or ISO timestamp); default: newest stored update")
    inc.add_argument("--lookahead-days", type=int, default=DEFAULT_LOOKAHEAD_DAYS,
                     help=f"How far past now to sync scheduled bookings (default: {DEFAULT_LOOKAHEAD_DAYS})")
    inc.add_argument("--lookback-days", type=int, default=DEFAULT_LOOKBACK_DAYS,
                     help=("How far before the lower bound to scan scheduled bookings for late changes "
                           f"(default: {DEFAULT_LOOKBACK_DAYS})"))
    add_partition_args(inc)
    inc.set_defaults(func=cmd_incremental)

    bid = subparsers.add_parser("backfill-id", help="Fetch and store individual bookings by ID")
    bid.add_argument("ids", nargs="+", help="Upstream booking IDs")
    bid.set_defaults(func=cmd_backfill_id)

    loc = subparsers.add_parser("sync-locations", help="Store all upstream locations")
    loc.set_defaults(func=cmd_sync_locations)
    return parser


def main(argv: Optional[List[str]] = None):
    # Load .env if present (SQUARE_ACCESS_TOKEN, DATABASE_URL, etc.)
    load_env()
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.version:
        print(__version__)
        return

    if not hasattr(args, "func"):
        parser.print_help()
        return

    try:
        args.func(args)
    finally:
        dispose_engines()


if __name__ == "__main__":
    main()
