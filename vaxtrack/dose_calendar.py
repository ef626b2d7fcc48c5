"""Dose calendar builder.

Turns a birth date and a set of vaccine definitions into a dated plan with one
row per dose. The builder is pure: no I/O, no clock, no mutation of existing
records. Regeneration decisions belong to the caller (see
``engine.ScheduleEngine.generate_schedule``).

**Date arithmetic:** scheduling uses exact calendar-day arithmetic
(``birth_date + age_in_days_at_due``). The average-month helper
``age_in_months_display`` exists for presentation only and never feeds a due
date.
"""

from __future__ import annotations

from datetime import date
from typing import Iterable, List, Mapping, Optional, Tuple

from .data_models import ScheduledDose, VaccineDefinition
from .exceptions import ValidationError
from .utils import add_days, days_between

AVERAGE_DAYS_PER_MONTH = 30.44


def age_in_days(birth_date: date, on: date) -> int:
    """Exact age in days on ``on``."""
    return days_between(birth_date, on)


def age_in_months_display(birth_date: date, on: date) -> float:
    """Approximate age in months for display, using a 30.44-day month."""
    return round(age_in_days(birth_date, on) / AVERAGE_DAYS_PER_MONTH, 1)


def is_eligible(vaccine: VaccineDefinition, birth_date: date, on: date) -> bool:
    """True when the child's age on ``on`` falls in one of the vaccine's age groups."""
    return vaccine.is_eligible_at(age_in_days(birth_date, on))


def build_vaccine_calendar(
    birth_date: date,
    vaccine: VaccineDefinition,
    anchor_dates: Optional[Mapping[Tuple[str, int], date]] = None,
) -> List[ScheduledDose]:
    """Schedule every dose of one vaccine.

    Parameters
    ----------
    birth_date : date
        Child's date of birth.
    vaccine : VaccineDefinition
        Vaccine with its ordered dose regimen.
    anchor_dates : Mapping[(vaccine_id, dose_number), date], optional
        Fixed dates for doses that already happened (completed records). An
        anchored dose keeps its date and later doses chain their minimum
        interval from it.

    Returns
    -------
    List[ScheduledDose]
        Doses in dose-number order with non-decreasing dates.

    Raises
    ------
    ValidationError
        If the regimen repeats a dose number or has a negative age/interval.
    """
    anchors = anchor_dates or {}
    doses = sorted(vaccine.doses, key=lambda d: d.dose_number)
    numbers = [d.dose_number for d in doses]
    if len(numbers) != len(set(numbers)):
        raise ValidationError(f"Vaccine {vaccine.vaccine_id} repeats a dose number: {numbers}")

    schedule: List[ScheduledDose] = []
    previous: Optional[date] = None
    for dose in doses:
        if dose.age_in_days_at_due < 0 or dose.min_interval_from_previous_dose_days < 0:
            raise ValidationError(
                f"Vaccine {vaccine.vaccine_id} dose {dose.dose_number} has a negative age or interval"
            )

        anchored = anchors.get((vaccine.vaccine_id, dose.dose_number))
        if anchored is not None:
            scheduled = anchored
        else:
            scheduled = add_days(birth_date, dose.age_in_days_at_due)
            if previous is not None:
                earliest = add_days(previous, dose.min_interval_from_previous_dose_days)
                # Doses of one vaccine never go backwards, even with a zero interval.
                scheduled = max(scheduled, earliest, previous)

        schedule.append(
            ScheduledDose(
                vaccine_id=vaccine.vaccine_id,
                vaccine_name=vaccine.name,
                vaccine_version=vaccine.version,
                dose_number=dose.dose_number,
                scheduled_date=scheduled,
                description=dose.description,
            )
        )
        previous = scheduled
    return schedule


def build_dose_calendar(
    birth_date: date,
    vaccines: Iterable[VaccineDefinition],
    anchor_dates: Optional[Mapping[Tuple[str, int], date]] = None,
    as_of: Optional[date] = None,
) -> List[ScheduledDose]:
    """Build the full dated vaccination plan for a child.

    Parameters
    ----------
    birth_date : date
        Child's date of birth.
    vaccines : Iterable[VaccineDefinition]
        Vaccines to schedule.
    anchor_dates : Mapping[(vaccine_id, dose_number), date], optional
        Dates of doses already administered (see ``build_vaccine_calendar``).
    as_of : date, optional
        When given, vaccines whose age groups exclude the child on this date
        are left out of the plan.

    Returns
    -------
    List[ScheduledDose]
        All doses sorted by (scheduled_date, vaccine name, dose_number). The
        output is fully determined by the inputs.

    Examples
    --------
    >>> from vaxtrack.data_models import DoseSpec
    >>> spec = VaccineDefinition("x", "X", (DoseSpec(1, 0), DoseSpec(2, 60), DoseSpec(3, 180)))
    >>> [d.scheduled_date.isoformat() for d in build_dose_calendar(date(2024, 1, 1), [spec])]
    ['2024-01-01', '2024-03-01', '2024-06-29']
    """
    if not isinstance(birth_date, date):
        raise ValidationError(f"birth_date must be a date, got {type(birth_date).__name__}")

    seen = set()
    plan: List[ScheduledDose] = []
    for vaccine in vaccines:
        if vaccine.vaccine_id in seen:
            raise ValidationError(f"Vaccine {vaccine.vaccine_id} listed more than once")
        seen.add(vaccine.vaccine_id)
        if as_of is not None and not is_eligible(vaccine, birth_date, as_of):
            continue
        plan.extend(build_vaccine_calendar(birth_date, vaccine, anchor_dates))

    return sorted(plan, key=lambda d: (d.scheduled_date, d.vaccine_name, d.dose_number))
