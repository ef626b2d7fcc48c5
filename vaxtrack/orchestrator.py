"""Vaxtrack command-line entry point.

Subcommands:

- ``catalog``: list the vaccines and dose regimens in the configured catalog.
- ``schedule DOB``: print the dose calendar for a birth date, optionally
  restricted to some vaccines (names are matched fuzzily) and exported to CSV.
- ``sweep STATE_JSON``: load a state artifact, run one reconciliation sweep
  with dry-run channel senders, and write the state back.
- ``cleanup STATE_JSON``: remove expired and long-read notifications from a
  state artifact.

**Exit Codes:**
- 0: Command completed successfully
- 1: Command failed (invalid input, configuration or state error)
"""

from __future__ import annotations

import argparse
import sys
import time
from datetime import datetime
from pathlib import Path
from typing import List, Optional

import pandas as pd

from . import artifacts
from .catalog import InMemoryVaccineCatalog, load_catalog
from .config_loader import DEFAULT_CONFIG_PATH, load_config, resolve_path
from .content import format_display_date
from .data_models import DeliveryPreference, SweepResult
from .dose_calendar import age_in_months_display, build_dose_calendar
from .engine import build_engine
from .enums import Language
from .exceptions import VaxtrackError
from .logger_config import configure_from_config
from .utils import parse_date, parse_datetime


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        prog="vaxtrack",
        description="Vaccination schedule and notification engine",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s catalog
  %(prog)s schedule 2024-01-01 --vaccine MMR --vaccine "Hepatitis B" --language fr
  %(prog)s sweep state.json --now 2024-03-01T09:00:00Z
        """,
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=DEFAULT_CONFIG_PATH,
        dest="config_path",
        help=f"Path to parameters.yaml (default: {DEFAULT_CONFIG_PATH})",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("catalog", help="List catalog vaccines and doses")

    schedule = subparsers.add_parser("schedule", help="Print the dose calendar for a birth date")
    schedule.add_argument("date_of_birth", help="Birth date (YYYY-MM-DD)")
    schedule.add_argument(
        "--vaccine",
        action="append",
        default=[],
        dest="vaccines",
        help="Vaccine id or name (repeatable; default: all active vaccines)",
    )
    schedule.add_argument(
        "--language",
        choices=sorted(Language.all_codes()),
        default=None,
        help="Language for dates (default: notifications.language)",
    )
    schedule.add_argument("--csv", type=Path, default=None, help="Also write the calendar to CSV")

    for name, help_text in (
        ("sweep", "Run one reconciliation sweep over a state artifact"),
        ("cleanup", "Remove stale notifications from a state artifact"),
    ):
        sub = subparsers.add_parser(name, help=help_text)
        sub.add_argument("state", type=Path, help="State artifact JSON")
        sub.add_argument("--now", default=None, help="Clock override (ISO 8601, default: now)")
        sub.add_argument(
            "--output",
            type=Path,
            default=None,
            help="Where to write the updated state (default: overwrite the input)",
        )

    return parser.parse_args(argv)


def _load_catalog(config: dict) -> InMemoryVaccineCatalog:
    return load_catalog(resolve_path(config["catalog"]["path"]))


def catalog_frame(catalog: InMemoryVaccineCatalog) -> pd.DataFrame:
    """One row per dose of every active vaccine."""
    rows = [
        {
            "vaccine_id": vaccine.vaccine_id,
            "vaccine": vaccine.name,
            "version": vaccine.version,
            "dose": dose.dose_number,
            "age_in_days": dose.age_in_days_at_due,
            "min_interval_days": dose.min_interval_from_previous_dose_days,
            "description": dose.description,
        }
        for vaccine in catalog.list_vaccines()
        for dose in sorted(vaccine.doses, key=lambda d: d.dose_number)
    ]
    return pd.DataFrame(rows)


def schedule_frame(
    catalog: InMemoryVaccineCatalog,
    birth_date,
    vaccine_queries: List[str],
    language: Language,
) -> pd.DataFrame:
    """Dose calendar for a birth date as a table."""
    if vaccine_queries:
        vaccines = [catalog.resolve(query) for query in vaccine_queries]
    else:
        vaccines = catalog.list_vaccines()
    plan = build_dose_calendar(birth_date, vaccines)
    rows = [
        {
            "date": dose.scheduled_date.isoformat(),
            "display_date": format_display_date(dose.scheduled_date, language),
            "vaccine": dose.vaccine_name,
            "dose": dose.dose_number,
            "age_months": age_in_months_display(birth_date, dose.scheduled_date),
            "description": dose.description,
        }
        for dose in plan
    ]
    return pd.DataFrame(rows)


def run_catalog(config: dict) -> int:
    frame = catalog_frame(_load_catalog(config))
    print(f"💉 {frame['vaccine_id'].nunique() if not frame.empty else 0} vaccine(s)")
    print(frame.to_string(index=False))
    return 0


def run_schedule(args: argparse.Namespace, config: dict) -> int:
    birth_date = parse_date(args.date_of_birth, "date_of_birth")
    language = Language.from_string(args.language or config["notifications"]["language"])
    frame = schedule_frame(_load_catalog(config), birth_date, args.vaccines, language)
    print(f"🗓️  Dose calendar for birth date {format_display_date(birth_date, language)}")
    print(frame.to_string(index=False))
    if args.csv is not None:
        args.csv.parent.mkdir(parents=True, exist_ok=True)
        frame.to_csv(args.csv, index=False)
        print(f"Wrote {len(frame)} dose(s) to {args.csv}")
    return 0


def print_sweep_summary(result: SweepResult, duration: float) -> None:
    """Print the sweep counters."""
    print()
    print(f"{'=' * 60}")
    print("🔁 Sweep complete")
    print(f"{'=' * 60}")
    print(f"  - {'Records evaluated':<26} {result.records_evaluated}")
    print(f"  - {'Notifications created':<26} {result.notifications_created}")
    print(f"  - {'Notifications evaluated':<26} {result.notifications_evaluated}")
    print(f"  - {'Notifications dispatched':<26} {result.notifications_dispatched}")
    print(f"  - {'Failed attempts':<26} {result.failures}")
    print(f"  - {'Retries exhausted':<26} {result.exhausted}")
    print(f"  - {'Version conflicts':<26} {result.conflicts}")
    print(f"  - {'Errors':<26} {result.errors}")
    print(f"🕒 {duration:.2f}s")


def _state_engine(args: argparse.Namespace, config: dict):
    default_preference = DeliveryPreference(
        reminder_lead_days=config["reminders"]["default_lead_days"]
    )
    state = artifacts.read_state(args.state, default_preference)
    engine = build_engine(
        config,
        children=state.children,
        records=state.records,
        notifications=state.notifications,
        preferences=state.preferences,
    )
    return state, engine


def _clock(args: argparse.Namespace) -> Optional[datetime]:
    return parse_datetime(args.now, "--now") if args.now else None


def run_sweep(args: argparse.Namespace, config: dict) -> int:
    state, engine = _state_engine(args, config)
    start = time.time()
    result = engine.run_sweep_once(_clock(args))
    artifacts.write_state(args.output or args.state, state)
    print_sweep_summary(result, time.time() - start)
    return 0


def run_cleanup(args: argparse.Namespace, config: dict) -> int:
    state, engine = _state_engine(args, config)
    removed = engine.run_cleanup(_clock(args))
    artifacts.write_state(args.output or args.state, state)
    print(f"🧹 Removed {len(removed)} notification(s)")
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    """Run the vaxtrack CLI."""
    args = parse_args(argv)

    try:
        config = load_config(args.config_path)
    except (FileNotFoundError, VaxtrackError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1

    configure_from_config(config)

    commands = {
        "catalog": lambda: run_catalog(config),
        "schedule": lambda: run_schedule(args, config),
        "sweep": lambda: run_sweep(args, config),
        "cleanup": lambda: run_cleanup(args, config),
    }
    try:
        return commands[args.command]()
    except (FileNotFoundError, VaxtrackError) as exc:
        print(f"\n❌ {args.command} failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
