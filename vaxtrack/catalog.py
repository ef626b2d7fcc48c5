"""Vaccine catalog loading and lookup.

Reads vaccine definitions from the YAML catalog shipped in
config/vaccine_catalog.yaml, or from a tabular CSV/Excel export with one row
per dose, and serves them through the ``VaccineCatalog`` interface used by
the schedule builder.

**Tabular columns (one row per dose):**
VACCINE ID, VACCINE NAME, SHORT NAME, VERSION, DOSE, AGE IN DAYS,
MIN INTERVAL DAYS, DESCRIPTION. Header spelling is matched fuzzily with
rapidfuzz, so exports with slightly different headers still load.

**Error Handling:**
- Missing file or unsupported extension raise immediately
- Structural problems (missing columns, duplicate dose numbers, negative
  ages) raise ConfigurationError; a bad catalog must never produce a partial
  schedule
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence

import pandas as pd
import yaml
from rapidfuzz import fuzz, process

from .data_models import AgeWindow, DoseSpec, VaccineDefinition
from .enums import AgeUnit
from .exceptions import ConfigurationError, NotFoundError

LOG = logging.getLogger(__name__)

CATALOG_COLUMNS = [
    "VACCINE ID",
    "VACCINE NAME",
    "SHORT NAME",
    "VERSION",
    "DOSE",
    "AGE IN DAYS",
    "MIN INTERVAL DAYS",
    "DESCRIPTION",
]
REQUIRED_CATALOG_COLUMNS = ["VACCINE ID", "VACCINE NAME", "DOSE", "AGE IN DAYS"]

COLUMN_MATCH_THRESHOLD = 80
NAME_MATCH_THRESHOLD = 70


def normalize(col: str) -> str:
    """Normalize formatting prior to matching."""
    return str(col).lower().strip().replace(" ", "_").replace("-", "_")


def map_catalog_columns(df: pd.DataFrame) -> pd.DataFrame:
    """Rename catalog columns to their canonical names using fuzzy matching.

    Columns whose best match scores below ``COLUMN_MATCH_THRESHOLD`` are left
    untouched (and ignored downstream).
    """
    choices = [normalize(c) for c in CATALOG_COLUMNS]
    col_map = {}
    for column in df.columns:
        match = process.extractOne(normalize(column), choices, scorer=fuzz.ratio)
        if match is None:
            continue
        _, score, index = match
        if score >= COLUMN_MATCH_THRESHOLD:
            col_map[column] = CATALOG_COLUMNS[index]
            LOG.debug("Matched catalog column '%s' to '%s' (%s)", column, CATALOG_COLUMNS[index], score)
    return df.rename(columns=col_map)


def build_age_window(vaccine_id: str, raw: Dict[str, Any]) -> AgeWindow:
    """Build one eligibility window; ``unit`` defaults to years."""
    try:
        window = AgeWindow(
            min_age=int(raw.get("min_age") or 0),
            max_age=int(raw["max_age"]),
            unit=AgeUnit.from_string(raw.get("unit")),
        )
    except (KeyError, TypeError, ValueError, AttributeError) as exc:
        raise ConfigurationError(f"Invalid age group for vaccine {vaccine_id}: {raw}") from exc
    if window.min_age < 0 or window.max_age < window.min_age:
        raise ConfigurationError(
            f"Vaccine {vaccine_id} age group {window.min_age}-{window.max_age} is out of order"
        )
    return window


def build_definition(raw: Dict[str, Any]) -> VaccineDefinition:
    """Build a VaccineDefinition from one catalog mapping.

    Raises
    ------
    ConfigurationError
        If required keys are missing, dose numbers repeat, or ages are
        negative.
    """
    vaccine_id = str(raw.get("id") or "").strip()
    name = str(raw.get("name") or "").strip()
    if not vaccine_id or not name:
        raise ConfigurationError(f"Vaccine entry requires id and name: {raw}")

    doses: List[DoseSpec] = []
    for dose in raw.get("doses") or []:
        try:
            spec = DoseSpec(
                dose_number=int(dose["dose"]),
                age_in_days_at_due=int(dose["age_in_days"]),
                min_interval_from_previous_dose_days=int(dose.get("min_interval_days") or 0),
                description=str(dose.get("description") or ""),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise ConfigurationError(
                f"Invalid dose entry for vaccine {vaccine_id}: {dose}"
            ) from exc
        if spec.age_in_days_at_due < 0 or spec.min_interval_from_previous_dose_days < 0:
            raise ConfigurationError(
                f"Vaccine {vaccine_id} dose {spec.dose_number} has a negative age or interval"
            )
        doses.append(spec)

    numbers = [d.dose_number for d in doses]
    if len(numbers) != len(set(numbers)):
        raise ConfigurationError(f"Vaccine {vaccine_id} repeats a dose number: {numbers}")
    if not doses:
        raise ConfigurationError(f"Vaccine {vaccine_id} defines no doses")

    age_groups = [build_age_window(vaccine_id, group) for group in raw.get("age_groups") or []]

    return VaccineDefinition(
        vaccine_id=vaccine_id,
        name=name,
        short_name=str(raw.get("short_name") or ""),
        version=int(raw.get("version") or 1),
        is_active=bool(raw.get("active", True)),
        doses=tuple(sorted(doses, key=lambda d: d.dose_number)),
        age_groups=tuple(age_groups),
    )


def read_catalog_table(file_path: Path) -> List[VaccineDefinition]:
    """Read a one-row-per-dose CSV or Excel catalog."""
    ext = file_path.suffix.lower()
    if ext in [".xlsx", ".xls"]:
        df = pd.read_excel(file_path, engine="openpyxl", dtype=str)
    elif ext == ".csv":
        df = pd.read_csv(file_path, dtype=str, keep_default_na=False)
    else:
        raise ConfigurationError(f"Unsupported catalog file type: {ext}")

    df = map_catalog_columns(df)
    missing = [c for c in REQUIRED_CATALOG_COLUMNS if c not in df.columns]
    if missing:
        raise ConfigurationError(f"Catalog is missing required columns: {missing}")

    df = df.fillna("")
    definitions = []
    for vaccine_id, group in df.groupby("VACCINE ID", sort=False):
        first = group.iloc[0]
        definitions.append(
            build_definition(
                {
                    "id": vaccine_id,
                    "name": first["VACCINE NAME"],
                    "short_name": first.get("SHORT NAME", ""),
                    "version": first.get("VERSION") or 1,
                    "doses": [
                        {
                            "dose": row["DOSE"],
                            "age_in_days": row["AGE IN DAYS"],
                            "min_interval_days": row.get("MIN INTERVAL DAYS") or 0,
                            "description": row.get("DESCRIPTION", ""),
                        }
                        for _, row in group.iterrows()
                    ],
                }
            )
        )
    LOG.info("Loaded %s vaccines from %s", len(definitions), file_path)
    return definitions


def load_catalog(file_path: Path) -> "InMemoryVaccineCatalog":
    """Load a vaccine catalog from YAML, CSV or Excel.

    Parameters
    ----------
    file_path : Path
        Catalog file (.yaml/.yml, .csv, .xlsx, .xls).

    Returns
    -------
    InMemoryVaccineCatalog
        Catalog serving the loaded definitions.

    Raises
    ------
    FileNotFoundError
        If the catalog file does not exist.
    ConfigurationError
        If the catalog content is invalid.
    """
    file_path = Path(file_path)
    if not file_path.exists():
        raise FileNotFoundError(f"Vaccine catalog not found: {file_path}")

    if file_path.suffix.lower() in [".yaml", ".yml"]:
        with file_path.open("r", encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}
        entries = raw.get("vaccines") if isinstance(raw, dict) else None
        if not isinstance(entries, list):
            raise ConfigurationError(f"Catalog {file_path} must contain a 'vaccines' list")
        definitions = [build_definition(entry) for entry in entries]
        LOG.info("Loaded %s vaccines from %s", len(definitions), file_path)
    else:
        definitions = read_catalog_table(file_path)

    return InMemoryVaccineCatalog(definitions)


class InMemoryVaccineCatalog:
    """Versioned in-memory vaccine catalog.

    Publishing an edited definition keeps previous versions available through
    ``get_vaccine(vaccine_id, version)`` so records generated from them are
    never retroactively altered.
    """

    def __init__(self, definitions: Iterable[VaccineDefinition] = ()) -> None:
        self._versions: Dict[str, Dict[int, VaccineDefinition]] = {}
        for definition in definitions:
            self.publish(definition)

    def publish(self, definition: VaccineDefinition) -> None:
        versions = self._versions.setdefault(definition.vaccine_id, {})
        if definition.version in versions and versions[definition.version] != definition:
            raise ConfigurationError(
                f"Vaccine {definition.vaccine_id} version {definition.version} is already "
                "published; edits must create a new version"
            )
        versions[definition.version] = definition

    def get_vaccine(self, vaccine_id: str, version: Optional[int] = None) -> VaccineDefinition:
        versions = self._versions.get(vaccine_id)
        if not versions:
            raise NotFoundError(f"Unknown vaccine: {vaccine_id}")
        if version is None:
            return versions[max(versions)]
        if version not in versions:
            raise NotFoundError(f"Unknown version {version} of vaccine {vaccine_id}")
        return versions[version]

    def get_dose_specs(self, vaccine_id: str) -> Sequence[DoseSpec]:
        return self.get_vaccine(vaccine_id).doses

    def list_vaccines(self, active_only: bool = True) -> List[VaccineDefinition]:
        latest = [versions[max(versions)] for versions in self._versions.values()]
        if active_only:
            latest = [v for v in latest if v.is_active]
        return sorted(latest, key=lambda v: v.name)

    def resolve(self, query: str) -> VaccineDefinition:
        """Find a vaccine by id, short name, or approximate name.

        Raises
        ------
        NotFoundError
            If nothing matches closely enough.
        """
        query_norm = query.strip().lower()
        vaccines = self.list_vaccines(active_only=False)
        for vaccine in vaccines:
            if query_norm in (vaccine.vaccine_id.lower(), vaccine.short_name.lower()):
                return vaccine

        names = [v.name for v in vaccines]
        match = process.extractOne(query, names, scorer=fuzz.WRatio)
        if match is None or match[1] < NAME_MATCH_THRESHOLD:
            raise NotFoundError(
                f"No vaccine matches '{query}'. Available: {', '.join(names)}"
            )
        return vaccines[match[2]]
