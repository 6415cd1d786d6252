from __future__ import annotations

import argparse
import json
import logging
import sys
import time
from typing import Any, List, Optional

from dotenv import load_dotenv

from .config import SCHEMA_PATH_DEFAULT, SETTINGS_PATH_DEFAULT, PipelineSettings, load_cfg
from .infrastructure.error_handling import ConfigurationError, SchedulerFatalError
from .infrastructure.scheduler import BackgroundScheduler
from .alerts import AlertNotFound
from .models import ReportWindow
from .pipeline import AlertPipeline, build_pipeline
from .utils import default_clock, mask_phone

logger = logging.getLogger(__name__)


def configure_logging(verbose: bool = False) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    for name in ("httpx", "urllib3", "supabase", "openai", "hpack"):
        logging.getLogger(name).setLevel(logging.WARNING)


def _print(payload: Any) -> None:
    print(json.dumps(payload, indent=2, default=str))


def cmd_health(pipeline: AlertPipeline, args: argparse.Namespace) -> int:
    result = pipeline.run_health_check()
    _print({
        "counts": result.counts(),
        "changes": [
            {"account": c.account_id, "from": c.from_state.value, "to": c.to_state.value, "reason": c.reason}
            for c in result.changes
        ],
        "abandoned": result.abandoned,
    })
    sql = result.to_sql()
    if sql:
        print(sql)
    return 0


def cmd_evaluate(pipeline: AlertPipeline, args: argparse.Namespace) -> int:
    if args.campaign:
        results = pipeline.evaluate_campaign(args.campaign)
    else:
        results = pipeline.evaluate_all()
    _print([
        {"status": r.status, "alert": r.alert.id, "campaign": r.alert.campaign_id,
         "kind": r.alert.kind, "severity": r.alert.severity.value}
        for r in results
    ])
    pipeline.drain_dispatch()
    return 0


def cmd_reports(pipeline: AlertPipeline, args: argparse.Namespace) -> int:
    window = ReportWindow(args.window) if args.window else None
    result = pipeline.run_reports(window)
    pipeline.drain_dispatch(wait=True)
    _print({"window": result.window.value, "status": result.status, "counts": result.counts(),
            "failures": result.failures})
    return 0 if result.status != "error" else 1


def cmd_dispatch(pipeline: AlertPipeline, args: argparse.Namespace) -> int:
    queued = pipeline.enqueue_undispatched()
    sent = pipeline.drain_dispatch(wait=True)
    _print({"queued": queued, "attempts": sent})
    return 0


def cmd_inbound(pipeline: AlertPipeline, args: argparse.Namespace) -> int:
    session = pipeline.record_inbound(args.phone, args.message)
    _print({"phone": mask_phone(session.phone), "messages": session.message_count,
            "opted_out": session.opted_out, "last_inbound_at": session.last_inbound_at})
    return 0


def cmd_resolve(pipeline: AlertPipeline, args: argparse.Namespace) -> int:
    try:
        alert = pipeline.resolve(args.alert_id, args.user_id)
    except AlertNotFound:
        print(f"Alert {args.alert_id} not found for user {args.user_id}", file=sys.stderr)
        return 1
    _print({"alert": alert.id, "resolved": alert.resolved, "resolved_at": alert.resolved_at})
    return 0


def cmd_run(pipeline: AlertPipeline, args: argparse.Namespace) -> int:
    scheduler = BackgroundScheduler(pipeline)
    scheduler.start()
    if args.now:
        scheduler.run_all_now()
    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        logger.info("Interrupted; shutting down")
    finally:
        scheduler.stop()
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="zivaalerts",
        description="ZivaAds campaign alert & notification pipeline",
    )
    parser.add_argument("--settings", default=SETTINGS_PATH_DEFAULT)
    parser.add_argument("--rules", default=None, help="optional override file merged over settings")
    parser.add_argument("--schema", default=SCHEMA_PATH_DEFAULT)
    parser.add_argument("-v", "--verbose", action="store_true")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("health", help="probe all active/degraded accounts once").set_defaults(func=cmd_health)

    p = sub.add_parser("evaluate", help="evaluate campaign thresholds")
    p.add_argument("--campaign", default=None)
    p.set_defaults(func=cmd_evaluate)

    p = sub.add_parser("reports", help="generate narrative reports")
    p.add_argument("--window", choices=[w.value for w in ReportWindow], default=None)
    p.set_defaults(func=cmd_reports)

    sub.add_parser("dispatch", help="send unresolved alerts never attempted").set_defaults(func=cmd_dispatch)

    p = sub.add_parser("inbound", help="record an inbound WhatsApp message")
    p.add_argument("phone")
    p.add_argument("message")
    p.set_defaults(func=cmd_inbound)

    p = sub.add_parser("resolve", help="resolve an alert")
    p.add_argument("alert_id")
    p.add_argument("user_id")
    p.set_defaults(func=cmd_resolve)

    p = sub.add_parser("run", help="run the background scheduler until interrupted")
    p.add_argument("--now", action="store_true", help="run health and evaluation immediately")
    p.set_defaults(func=cmd_run)
    return parser


def main(argv: Optional[List[str]] = None) -> None:
    args = build_parser().parse_args(argv)

    # Load environment first (secrets never live in the YAML files)
    load_dotenv()
    configure_logging(args.verbose)

    try:
        settings = PipelineSettings.from_dict(load_cfg(args.settings, args.rules, args.schema))
    except ConfigurationError as e:
        print(f"Fatal configuration error: {e}", file=sys.stderr)
        sys.exit(2)

    pipeline = build_pipeline(settings, clock=default_clock())
    try:
        code = args.func(pipeline, args)
    except ConfigurationError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        code = 2
    except SchedulerFatalError as e:
        print(f"Run aborted: {e}", file=sys.stderr)
        code = 1
    finally:
        pipeline.close()
    sys.exit(code)


if __name__ == "__main__":
    main()
