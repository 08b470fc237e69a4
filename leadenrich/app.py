import argparse
import json
import signal
import threading
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import sessionmaker

from . import __version__
from .backfill import BackfillRunner, BackfillRunStore
from .cache import ContactProjectionStore, ResultCache
from .cleanup import prune_superseded_results, release_stale_locks
from .config import Settings, load_env
from .database import get_session_factory, init_database
from .errors import ConfigurationError, InvalidInputError, LeadEnrichError, RunNotFoundError
from .events import EventEmitter
from .history import DeliveryHistoryStore
from .logger import get_logger
from .metrics import get_metrics
from .orchestrator import EnrichmentOrchestrator
from .providers import EnrichmentRequest, HttpProviderInvoker
from .retry import BackoffPolicy
from .schema import validate_subject
from .storage import load_records, load_report, report_path
from .webhooks import SubscriptionRegistry, WebhookDeliveryService


@dataclass
class Services:
    settings: Settings
    session_factory: sessionmaker
    delivery: WebhookDeliveryService
    emitter: EventEmitter
    history: DeliveryHistoryStore
    subscriptions: SubscriptionRegistry
    runs: BackfillRunStore


def build_services(settings: Settings) -> Services:
    init_database(settings.db_path)
    factory = get_session_factory(settings.db_path)
    delivery = WebhookDeliveryService(
        factory,
        max_attempts=settings.webhook_max_attempts,
        timeout=settings.webhook_timeout,
        backoff=BackoffPolicy(base_delay=settings.backoff_base, max_delay=settings.backoff_max),
        workers=settings.webhook_workers,
    )
    return Services(
        settings=settings,
        session_factory=factory,
        delivery=delivery,
        emitter=EventEmitter(factory, publisher=delivery),
        history=DeliveryHistoryStore(factory),
        subscriptions=SubscriptionRegistry(factory),
        runs=BackfillRunStore(factory),
    )


def build_orchestrator(services: Services) -> EnrichmentOrchestrator:
    s = services.settings
    if not s.provider_base_url:
        raise ConfigurationError("LEADENRICH_PROVIDER_BASE_URL is not set")
    invoker = HttpProviderInvoker(
        base_url=s.provider_base_url,
        api_key=s.provider_api_key,
        name=s.provider_name,
        version=s.provider_version,
        cost_per_call=s.provider_cost,
        timeout=s.provider_timeout,
    )
    return EnrichmentOrchestrator(
        cache=ResultCache(services.session_factory),
        invoker=invoker,
        ttl_seconds=s.cache_ttl_seconds,
        emitter=services.emitter,
        contacts=ContactProjectionStore(services.session_factory),
        daily_quota=s.provider_daily_quota,
    )


def _print_json(data: Any) -> None:
    print(json.dumps(data, indent=2, default=str))


def _parse_time(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        raise SystemExit(f"Invalid timestamp (expected ISO 8601): {value}")


def _finish_deliveries(services: Services, wait: float) -> None:
    if not services.delivery.wait_idle(timeout=wait):
        print(f"[warn] deliveries still queued after {wait}s; they resume on next start")
    services.delivery.stop(wait=False)


def _subject_from_args(args: argparse.Namespace) -> Dict[str, Any]:
    if args.input:
        input_path = Path(args.input)
        if not input_path.exists():
            raise SystemExit(f"Input file not found: {input_path}")
        with input_path.open("r", encoding="utf-8") as f:
            return json.load(f)
    return {
        "subject_id": args.subject_id,
        "street": args.street or "",
        "city": args.city or "",
        "state": args.state or "",
        "zip": args.zip or "",
        "first_name": args.first_name or "",
        "last_name": args.last_name or "",
    }


def cmd_enrich(args: argparse.Namespace, services: Services) -> None:
    subject = _subject_from_args(args)
    errors = validate_subject(subject)
    if errors:
        raise InvalidInputError("Invalid subject: " + "; ".join(errors), errors=errors)
    orchestrator = build_orchestrator(services)
    services.delivery.start()
    try:
        request = EnrichmentRequest.from_record(subject, provider=orchestrator.invoker.name)
        result = orchestrator.enrich(request, notify_failure=args.notify_failure)
        _print_json(result.to_dict())
    finally:
        _finish_deliveries(services, args.delivery_wait)
    if args.print_metrics:
        print(get_metrics().render(), end="")


def cmd_backfill(args: argparse.Namespace, services: Services) -> None:
    input_path = Path(args.input)
    if not input_path.exists():
        raise SystemExit(f"Input file not found: {input_path}")
    try:
        records = load_records(input_path)
    except ValueError as e:
        raise SystemExit(str(e))

    s = services.settings
    runner = BackfillRunner(
        build_orchestrator(services),
        services.session_factory,
        retry_budget=s.backfill_retry_budget,
        max_subject_attempts=s.backfill_max_subject_attempts,
        concurrency=s.backfill_concurrency,
        backoff=BackoffPolicy(base_delay=s.backoff_base, max_delay=s.backoff_max),
        report_dir=s.report_dir,
    )
    stop_event = threading.Event()

    def _on_sigint(signum, frame):
        print("\nStop requested; finishing in-flight subjects...")
        stop_event.set()

    previous = signal.signal(signal.SIGINT, _on_sigint)
    services.delivery.start()
    try:
        report = runner.run(args.run_id, records, stop_event=stop_event, reset_budget=args.reset_budget)
    finally:
        signal.signal(signal.SIGINT, previous)
        _finish_deliveries(services, args.delivery_wait)

    _print_json(report.to_dict())
    if args.print_metrics:
        print(get_metrics().render(), end="")
    if report.status == "failed":
        raise SystemExit(1)


def cmd_run_status(args: argparse.Namespace, services: Services) -> None:
    _print_json(services.runs.get_status(args.run_id))


def cmd_run_report(args: argparse.Namespace, services: Services) -> None:
    path = report_path(services.settings.report_dir, args.run_id)
    try:
        report = services.runs.get_report(args.run_id) or load_report(path)
    except RunNotFoundError:
        # The report file outlives the run row
        report = load_report(path)
        if report is None:
            raise
    if report is None:
        print(f"Run {args.run_id} has no report yet.")
        return
    _print_json(report)


def cmd_deliveries(args: argparse.Namespace, services: Services) -> None:
    if args.summary:
        _print_json(services.history.summary())
        return
    if args.stuck:
        page = services.history.stuck(limit=args.limit, offset=args.offset)
    else:
        page = services.history.query(
            subscription_id=args.subscription_id,
            event_type=args.event_type,
            status=args.status,
            target_url=args.target_url,
            created_after=_parse_time(args.since),
            created_before=_parse_time(args.until),
            limit=args.limit,
            offset=args.offset,
        )
    _print_json(page.to_dict())


def cmd_replay(args: argparse.Namespace, services: Services) -> None:
    services.delivery.start()
    try:
        new_id = services.delivery.replay(args.attempt_id, force=args.force)
        print(f"Replay queued: {new_id}")
    finally:
        _finish_deliveries(services, args.delivery_wait)
    _print_json(services.history.get(new_id))


def cmd_replay_exhausted(args: argparse.Namespace, services: Services) -> None:
    services.delivery.start()
    try:
        new_ids = services.delivery.replay_exhausted(
            subscription_id=args.subscription_id, event_type=args.event_type, limit=args.limit
        )
        print(f"Replays queued: {len(new_ids)}")
    finally:
        _finish_deliveries(services, args.delivery_wait)


def cmd_subscribe(args: argparse.Namespace, services: Services) -> None:
    sub = services.subscriptions.add(args.event_type, args.url, secret=args.secret)
    print(f"Subscription: {sub.id}")
    print(f"Event type: {sub.event_type}")
    print(f"Target: {sub.target_url}")
    print(f"Secret: {sub.secret}")


def cmd_subscriptions(args: argparse.Namespace, services: Services) -> None:
    subs = services.subscriptions.list(active_only=args.active_only)
    if not subs:
        print("No subscriptions.")
        return
    print(f"Found {len(subs)} subscriptions:\n")
    for sub in subs:
        print(f"ID: {sub.id}")
        print(f"  Event type: {sub.event_type}")
        print(f"  Target: {sub.target_url}")
        print(f"  Active: {sub.active}")
        print()


def cmd_deactivate(args: argparse.Namespace, services: Services) -> None:
    if not services.subscriptions.set_active(args.subscription_id, False):
        raise SystemExit(f"Subscription not found: {args.subscription_id}")
    print(f"Deactivated: {args.subscription_id}")


def cmd_test_webhook(args: argparse.Namespace, services: Services) -> None:
    services.delivery.start()
    try:
        attempt_id = services.delivery.send_test(args.subscription_id)
    finally:
        _finish_deliveries(services, args.delivery_wait)
    _print_json(services.history.get(attempt_id))


def cmd_call_summary(args: argparse.Namespace, services: Services) -> None:
    services.delivery.start()
    try:
        outcome = services.emitter.emit_call_summary(
            args.call_sid, args.summary, subject_id=args.subject_id, force=args.force
        )
    finally:
        _finish_deliveries(services, args.delivery_wait)
    status = "emitted" if outcome.emitted else "already-emitted"
    print(f"[{status}] {outcome.event.id} deliveries={len(outcome.attempt_ids)}")


def cmd_metrics(args: argparse.Namespace, services: Services) -> None:
    metrics = get_metrics()
    if args.format == "json":
        _print_json(metrics.snapshot())
    else:
        print(metrics.render(), end="")


def cmd_cleanup(args: argparse.Namespace, services: Services) -> None:
    before, after = prune_superseded_results(services.session_factory, days=args.days)
    print(f"Cache rows: before={before} removed={before - after} after={after}")
    released = release_stale_locks(services.session_factory)
    print(f"Stale run locks released: {released}")


def _add_delivery_wait(p: argparse.ArgumentParser) -> None:
    p.add_argument(
        "--delivery-wait",
        type=float,
        default=30.0,
        help="Seconds to wait for queued webhook deliveries before exiting (default: 30)",
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="leadenrich", description="Idempotent lead enrichment, backfills and webhook delivery"
    )
    parser.add_argument("--version", action="store_true", help="Show version")

    subparsers = parser.add_subparsers(dest="command")

    enr = subparsers.add_parser("enrich", help="Enrich one subject (cached results are reused)")
    enr.add_argument("--input", help="Path to a subject JSON object")
    enr.add_argument("--subject-id", help="Subject identifier")
    enr.add_argument("--street")
    enr.add_argument("--city")
    enr.add_argument("--state")
    enr.add_argument("--zip")
    enr.add_argument("--first-name")
    enr.add_argument("--last-name")
    enr.add_argument("--notify-failure", action="store_true", help="Emit enrichment.failed on provider errors")
    enr.add_argument("--print-metrics", action="store_true", help="Print Prometheus metrics afterwards")
    _add_delivery_wait(enr)
    enr.set_defaults(func=cmd_enrich)

    bf = subparsers.add_parser("backfill", help="Start or resume a backfill run (Ctrl-C pauses it)")
    bf.add_argument("--run-id", required=True, help="Run identifier; reuse it to resume")
    bf.add_argument("--input", required=True, help="Records file (.json, .jsonl or .csv)")
    bf.add_argument("--reset-budget", action="store_true", help="Restore the full retry budget on resume")
    bf.add_argument("--print-metrics", action="store_true", help="Print Prometheus metrics afterwards")
    _add_delivery_wait(bf)
    bf.set_defaults(func=cmd_backfill)

    rs = subparsers.add_parser("run-status", help="Show the persisted state of a backfill run")
    rs.add_argument("--run-id", required=True)
    rs.set_defaults(func=cmd_run_status)

    rr = subparsers.add_parser("run-report", help="Show the terminal report of a backfill run")
    rr.add_argument("--run-id", required=True)
    rr.set_defaults(func=cmd_run_report)

    dl = subparsers.add_parser("deliveries", help="Query webhook delivery history")
    dl.add_argument("--subscription-id")
    dl.add_argument("--event-type")
    dl.add_argument("--status", choices=["pending", "success", "failed", "exhausted"])
    dl.add_argument("--target-url")
    dl.add_argument("--since", help="Created at or after (ISO 8601)")
    dl.add_argument("--until", help="Created at or before (ISO 8601)")
    dl.add_argument("--limit", type=int, default=50, help="Page size, 1-200 (default: 50)")
    dl.add_argument("--offset", type=int, default=0)
    dl.add_argument("--stuck", action="store_true", help="Only attempts still pending or awaiting retry")
    dl.add_argument("--summary", action="store_true", help="Counts by status")
    dl.set_defaults(func=cmd_deliveries)

    rp = subparsers.add_parser("replay", help="Replay one delivery attempt")
    rp.add_argument("--attempt-id", required=True)
    rp.add_argument("--force", action="store_true", help="Allow replaying a successful attempt")
    _add_delivery_wait(rp)
    rp.set_defaults(func=cmd_replay)

    rx = subparsers.add_parser("replay-exhausted", help="Replay all exhausted attempts not yet replayed")
    rx.add_argument("--subscription-id")
    rx.add_argument("--event-type")
    rx.add_argument("--limit", type=int, default=500)
    _add_delivery_wait(rx)
    rx.set_defaults(func=cmd_replay_exhausted)

    sb = subparsers.add_parser("subscribe", help="Register a webhook subscription")
    sb.add_argument("--event-type", required=True, help="Event type, or * for all")
    sb.add_argument("--url", required=True, help="Target URL")
    sb.add_argument("--secret", help="Signing secret (generated when omitted)")
    sb.set_defaults(func=cmd_subscribe)

    sl = subparsers.add_parser("subscriptions", help="List webhook subscriptions")
    sl.add_argument("--active-only", action="store_true")
    sl.set_defaults(func=cmd_subscriptions)

    dc = subparsers.add_parser("deactivate", help="Deactivate a webhook subscription")
    dc.add_argument("--subscription-id", required=True)
    dc.set_defaults(func=cmd_deactivate)

    tw = subparsers.add_parser("test-webhook", help="Send a test.event to one subscription")
    tw.add_argument("--subscription-id", required=True)
    _add_delivery_wait(tw)
    tw.set_defaults(func=cmd_test_webhook)

    cs = subparsers.add_parser("call-summary", help="Emit call.summary once per call SID")
    cs.add_argument("--call-sid", required=True)
    cs.add_argument("--summary", required=True)
    cs.add_argument("--subject-id")
    cs.add_argument("--force", action="store_true", help="Emit again even if already emitted")
    _add_delivery_wait(cs)
    cs.set_defaults(func=cmd_call_summary)

    mt = subparsers.add_parser("metrics", help="Print this process's metrics")
    mt.add_argument("--format", choices=["prometheus", "json"], default="prometheus")
    mt.set_defaults(func=cmd_metrics)

    cl = subparsers.add_parser("cleanup", help="Prune superseded cache rows and stale run locks")
    cl.add_argument("--days", type=int, default=90, help="Keep superseded rows newer than this (default: 90)")
    cl.set_defaults(func=cmd_cleanup)

    return parser


def main(argv: Optional[List[str]] = None):
    # Load .env if present (LEADENRICH_PROVIDER_API_KEY etc.)
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
        settings = Settings.from_env()
        get_logger(level=settings.log_level, log_dir=settings.log_dir)
        args.func(args, build_services(settings))
    except LeadEnrichError as e:
        raise SystemExit(f"{e.error_class}: {e.message}")


if __name__ == "__main__":
    main()
