"""Command line entry point for operational tasks.

    python -m compliancehub.cli health-check --repair --format json
"""

import argparse
import csv
import json
import sys
from pathlib import Path
from compliancehub.core.logging import configure_logging
from compliancehub.db.session import SessionLocal
from compliancehub.services import containers, jobs

CSV_FIELDS = ["employee_id", "name", "status", "score", "issues", "warnings", "repaired"]


def _table(results: dict) -> str:
    lines = [f"{'Employee ID':<14}{'Name':<30}{'Status':<10}{'Score':>6}  Issues / Warnings"]
    for d in results["details"]:
        problems = "; ".join(d["issues"] + d["warnings"]) or "-"
        lines.append(f"{d['employee_id']:<14}{d['name'][:28]:<30}{d['status']:<10}{d['score']:>6}  {problems}")
    lines.append("")
    lines.append(
        "checked={total_checked} healthy={healthy} warning={warning} critical={critical} "
        "error={error} repaired={repaired}".format(**results)
    )
    return "\n".join(lines)


def _write_csv(results: dict, stream) -> None:
    writer = csv.DictWriter(stream, fieldnames=CSV_FIELDS, extrasaction="ignore")
    writer.writeheader()
    for d in results["details"]:
        writer.writerow({**d, "issues": "; ".join(d["issues"]), "warnings": "; ".join(d["warnings"])})


def cmd_health_check(db, args) -> int:
    results = containers.run_health_check(db, repair=args.repair, employee_id=args.employee)
    if args.format == "json":
        print(json.dumps(results, indent=2, default=str))
    elif args.format == "csv":
        _write_csv(results, sys.stdout)
    else:
        print(_table(results))

    if args.report:
        Path(args.report).write_text(json.dumps(results, indent=2, default=str), encoding="utf-8")
    return 1 if results["critical"] or results["error"] else 0


def cmd_update_status(db, args) -> int:
    print(json.dumps(jobs.run_status_update(db), indent=2))
    return 0


def cmd_send_reminders(db, args) -> int:
    result = jobs.send_expiry_notifications(db, days_to_expiry=args.days, batch_size=args.batch_size)
    print(json.dumps(result, indent=2, default=str))
    return 1 if result.get("errors") else 0


def cmd_send_expired(db, args) -> int:
    result = jobs.send_expired_certificate_notifications(db, batch_size=args.batch_size, check_days_back=args.days_back)
    print(json.dumps(result, indent=2, default=str))
    return 1 if result.get("errors") else 0


def cmd_init_containers(db, args) -> int:
    result = containers.initialize_missing_containers(db)
    print(json.dumps(result, indent=2))
    return 1 if result["failed"] else 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="compliancehub", description="Training compliance maintenance tasks")
    sub = parser.add_subparsers(dest="command", required=True)

    health = sub.add_parser("health-check", help="check employee containers")
    health.add_argument("--repair", action="store_true", help="repair containers with problems")
    health.add_argument("--employee", help="only check this employee ID")
    health.add_argument("--format", choices=["table", "json", "csv"], default="table")
    health.add_argument("--report", help="write a JSON report to this file")
    health.set_defaults(func=cmd_health_check)

    sub.add_parser("update-status", help="recompute training record statuses").set_defaults(func=cmd_update_status)

    reminders = sub.add_parser("send-reminders", help="send certificate renewal reminders")
    reminders.add_argument("--days", type=int, help="only this many days before expiry")
    reminders.add_argument("--batch-size", type=int)
    reminders.set_defaults(func=cmd_send_reminders)

    expired = sub.add_parser("send-expired", help="notify about recently expired certificates")
    expired.add_argument("--days-back", type=int)
    expired.add_argument("--batch-size", type=int)
    expired.set_defaults(func=cmd_send_expired)

    sub.add_parser("init-containers", help="create missing containers").set_defaults(func=cmd_init_containers)
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging()
    db = SessionLocal()
    try:
        return args.func(db, args)
    finally:
        db.close()


if __name__ == "__main__":
    sys.exit(main())
