"""Run the consistency auditor from the command line.

    python -m stockledger.audit [--repair] [--tier raw] [--item-id 12]

Ctrl-C stops the run after the current item; repairs already made stay
committed. Exit code 0 when everything is consistent (or was repaired), 1
when drift was found and left in place.
"""

import argparse
import signal
import sys

from stockledger.audit.service import run_audit, verify_production_logs
from stockledger.db import SessionLocal
from stockledger.logging_config import setup_logging
from stockledger.models import ITEM_TIERS


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Replay the stock ledger and report or repair drift")
    parser.add_argument("--repair", action="store_true", help="Post reconciliation entries for drifted items.")
    parser.add_argument("--tier", action="append", choices=ITEM_TIERS, help="Limit to a tier (repeatable).")
    parser.add_argument("--item-id", action="append", type=int, help="Limit to an item id (repeatable).")
    parser.add_argument("--actor-id", type=int, default=None, help="User recorded on reconciliation entries.")
    parser.add_argument("--verify-logs", action="store_true", help="Also check production logs against their entries.")
    parser.add_argument("--log-level", default=None)
    args = parser.parse_args(argv)

    logger = setup_logging(args.log_level)
    stop_requested = False

    def _request_stop(signum, frame):
        nonlocal stop_requested
        stop_requested = True
        logger.warning("Stop requested; finishing the current item")

    previous_handler = signal.signal(signal.SIGINT, _request_stop)
    db = SessionLocal()
    try:
        summary = run_audit(
            db,
            repair=args.repair,
            tiers=args.tier,
            item_ids=args.item_id,
            should_stop=lambda: stop_requested,
            actor_id=args.actor_id,
        )
        log_issues = verify_production_logs(db) if args.verify_logs else []
    finally:
        db.close()
        signal.signal(signal.SIGINT, previous_handler)

    for report in summary.drifted:
        print(
            f"  {report.tier:<8} {report.code:<20} stored={report.stored_quantity} "
            f"ledger={report.replayed_quantity} drift={report.drift}"
        )
    for report in summary.reservation_drifts:
        print(
            f"  reserved item={report.item_id} stored={report.stored_reserved} active={report.active_reserved}"
        )
    for issue in log_issues:
        print(f"  log={issue.log_id} plan={issue.plan_id}: {issue.problem}")
    print(
        f"Checked {summary.items_checked} item(s): {len(summary.drifted)} drifted, "
        f"{len(summary.reservation_drifts)} reservation mismatch(es), "
        f"{len(summary.repaired_item_ids)} repaired" + (" (stopped early)" if summary.stopped else "")
    )

    unresolved = (summary.drifted or summary.reservation_drifts) and not args.repair
    return 1 if unresolved or log_issues else 0


if __name__ == "__main__":
    sys.exit(main())
