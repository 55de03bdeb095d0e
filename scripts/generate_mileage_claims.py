#!/usr/bin/env python3
"""
Generate monthly petrol expense claims for every active field employee.

Sums each employee's daily distance records for the month, prices them at
the currently effective rate per km, and creates one claim per employee
routed into approval.  Re-running for the same month skips employees that
already have a claim unless --force is given.

Uses --database-url, else DATABASE_URL, else a local SQLite file.

Usage:
  python3 scripts/generate_mileage_claims.py --actor-id <uuid>
  python3 scripts/generate_mileage_claims.py --actor-id <uuid> --month 3 --year 2024 --force
  python3 scripts/generate_mileage_claims.py --actor-id <uuid> --config config/expense.yaml
"""

import argparse
import os
import sys
from pathlib import Path
from uuid import UUID

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

DEFAULT_DB_URL = "sqlite:///hrms_expense.db"


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Generate monthly petrol expense claims for field employees")
    p.add_argument(
        "--database-url",
        default=os.environ.get("DATABASE_URL", DEFAULT_DB_URL),
        help="Database URL (default: DATABASE_URL or a local SQLite file)",
    )
    p.add_argument("--config", type=Path, help="YAML file with expense engine settings")
    p.add_argument("--month", type=int, help="Month 1-12 (default: previous month)")
    p.add_argument("--year", type=int, help="Year (default: year of the previous month)")
    p.add_argument("--force", action="store_true", help="Replace claims that were already generated")
    p.add_argument("--actor-id", type=UUID, required=True, help="User id recorded as the creator")
    p.add_argument("--log-level", default="INFO", help="Log level (default: INFO)")
    return p.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv)

    from hrms_kernel.db.engine import create_tables, get_session, init_engine_from_url
    from hrms_kernel.exceptions import HrmsKernelError
    from hrms_kernel.logging_config import configure_logging
    from hrms_modules.expense.config import ExpenseConfig
    from hrms_modules.expense.service import ExpenseService

    configure_logging(level=args.log_level.upper())

    config = ExpenseConfig.from_yaml(args.config) if args.config else ExpenseConfig()
    init_engine_from_url(args.database_url)
    create_tables()

    session = get_session()
    try:
        service = ExpenseService(session, config=config)
        summary = service.generate_field_mileage_claims(
            args.actor_id, month=args.month, year=args.year, force_regenerate=args.force,
        )
    except HrmsKernelError as exc:
        print(f"  ERROR [{exc.code}]: {exc}", file=sys.stderr)
        return 1
    finally:
        session.close()

    print()
    print(f"  Mileage claims for {summary.month:02d}/{summary.year}")
    print(f"    Employees:  {summary.total_employees}")
    print(f"    Generated:  {summary.successful}")
    print(f"    Skipped:    {summary.skipped}")
    print(f"    Failed:     {summary.failed}")
    for failure in summary.failures:
        print(f"      {failure.employee_id}: [{failure.code}] {failure.message}")
    print()
    return 1 if summary.failed else 0


if __name__ == "__main__":
    sys.exit(main())
