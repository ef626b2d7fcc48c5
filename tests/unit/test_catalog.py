"""Unit tests for catalog module - vaccine catalog loading and lookup.

Tests cover:
- Loading the shipped YAML catalog
- Tabular CSV catalogs with fuzzy-matched headers
- Structural validation of dose regimens
- Versioned publishing and fuzzy name resolution

Real-world significance:
- A bad catalog must never produce a partial schedule
- Published regimens are immutable; records keep the version they came from
"""

from __future__ import annotations

from pathlib import Path

import pytest

from tests.fixtures import sample_input
from vaxtrack import catalog
from vaxtrack.config_loader import resolve_path
from vaxtrack.data_models import AgeWindow, DoseSpec
from vaxtrack.enums import AgeUnit
from vaxtrack.exceptions import ConfigurationError, NotFoundError


@pytest.mark.unit
class TestLoadCatalog:
    def test_shipped_catalog_loads(self) -> None:
        loaded = catalog.load_catalog(resolve_path("config/vaccine_catalog.yaml"))

        mmr = loaded.get_vaccine("mmr")
        assert mmr.short_name == "MMR"
        assert [d.dose_number for d in mmr.doses] == sorted(d.dose_number for d in mmr.doses)
        assert loaded.get_dose_specs("hepb")[0].age_in_days_at_due == 0
        assert loaded.get_vaccine("hepb").age_groups == (AgeWindow(0, 18, AgeUnit.YEARS),)
        assert loaded.get_vaccine("mmr").age_groups == ()

    def test_missing_file_raises(self, tmp_test_dir: Path) -> None:
        with pytest.raises(FileNotFoundError):
            catalog.load_catalog(tmp_test_dir / "nope.yaml")

    def test_yaml_without_vaccines_list_rejected(self, tmp_test_dir: Path) -> None:
        path = tmp_test_dir / "catalog.yaml"
        path.write_text("vaccines: {}\n")

        with pytest.raises(ConfigurationError, match="'vaccines' list"):
            catalog.load_catalog(path)

    def test_unsupported_extension_rejected(self, tmp_test_dir: Path) -> None:
        path = tmp_test_dir / "catalog.txt"
        path.write_text("id,name\n")

        with pytest.raises(ConfigurationError, match="Unsupported catalog file type"):
            catalog.load_catalog(path)

    def test_csv_with_fuzzy_headers(self, tmp_test_dir: Path) -> None:
        """Verify an export with slightly different headers loads.

        Real-world significance:
        - Catalog exports come from spreadsheets edited by hand
        """
        path = tmp_test_dir / "catalog.csv"
        path.write_text(
            "Vaccine_Id,Vacine Name,Dose,Age in Days,Min Interval Days,Description\n"
            "rota,Rotavirus,1,60,,2 months\n"
            "rota,Rotavirus,2,120,28,4 months\n"
            "mmr,MMR,1,365,,12 months\n"
        )

        loaded = catalog.load_catalog(path)

        rota = loaded.get_vaccine("rota")
        assert rota.name == "Rotavirus"
        assert rota.version == 1
        assert rota.doses == (
            DoseSpec(1, 60, 0, "2 months"),
            DoseSpec(2, 120, 28, "4 months"),
        )
        assert loaded.get_vaccine("mmr").doses[0].age_in_days_at_due == 365

    def test_csv_missing_required_column(self, tmp_test_dir: Path) -> None:
        path = tmp_test_dir / "catalog.csv"
        path.write_text("Vaccine Id,Vaccine Name,Dose\nrota,Rotavirus,1\n")

        with pytest.raises(ConfigurationError, match="AGE IN DAYS"):
            catalog.load_catalog(path)


@pytest.mark.unit
class TestBuildDefinition:
    def test_duplicate_dose_numbers_rejected(self) -> None:
        raw = {
            "id": "x",
            "name": "X",
            "doses": [{"dose": 1, "age_in_days": 0}, {"dose": 1, "age_in_days": 30}],
        }

        with pytest.raises(ConfigurationError, match="repeats a dose number"):
            catalog.build_definition(raw)

    def test_negative_age_rejected(self) -> None:
        raw = {"id": "x", "name": "X", "doses": [{"dose": 1, "age_in_days": -3}]}

        with pytest.raises(ConfigurationError, match="negative"):
            catalog.build_definition(raw)

    def test_missing_age_rejected(self) -> None:
        raw = {"id": "x", "name": "X", "doses": [{"dose": 1}]}

        with pytest.raises(ConfigurationError, match="Invalid dose entry"):
            catalog.build_definition(raw)

    def test_no_doses_rejected(self) -> None:
        with pytest.raises(ConfigurationError, match="defines no doses"):
            catalog.build_definition({"id": "x", "name": "X", "doses": []})

    def test_doses_sorted(self) -> None:
        raw = {
            "id": "x",
            "name": "X",
            "doses": [{"dose": 2, "age_in_days": 60}, {"dose": 1, "age_in_days": 0}],
        }

        assert [d.dose_number for d in catalog.build_definition(raw).doses] == [1, 2]

    def test_age_groups_parsed(self) -> None:
        raw = {
            "id": "x",
            "name": "X",
            "age_groups": [{"min_age": 0, "max_age": 59, "unit": "months"}, {"max_age": 18}],
            "doses": [{"dose": 1, "age_in_days": 0}],
        }

        assert catalog.build_definition(raw).age_groups == (
            AgeWindow(0, 59, AgeUnit.MONTHS),
            AgeWindow(0, 18, AgeUnit.YEARS),
        )

    @pytest.mark.parametrize(
        "group",
        [
            {"min_age": 5, "max_age": 2},
            {"min_age": 0},
            {"min_age": 0, "max_age": 4, "unit": "decades"},
        ],
    )
    def test_bad_age_group_rejected(self, group) -> None:
        raw = {"id": "x", "name": "X", "age_groups": [group], "doses": [{"dose": 1, "age_in_days": 0}]}

        with pytest.raises(ConfigurationError, match="age group"):
            catalog.build_definition(raw)


@pytest.mark.unit
class TestInMemoryVaccineCatalog:
    def test_new_version_keeps_old_one(self) -> None:
        """Real-world significance:
        - Editing a regimen never rewrites records generated from the old one
        """
        v1 = sample_input.create_test_vaccine()
        store = catalog.InMemoryVaccineCatalog([v1])
        v2 = v1.new_version(doses=[DoseSpec(1, 0), DoseSpec(2, 90)])
        store.publish(v2)

        assert store.get_vaccine("hepb").version == 2
        assert store.get_vaccine("hepb", 1) == v1
        assert store.get_dose_specs("hepb")[1].age_in_days_at_due == 90

    def test_republishing_different_content_rejected(self) -> None:
        v1 = sample_input.create_test_vaccine()
        store = catalog.InMemoryVaccineCatalog([v1])

        with pytest.raises(ConfigurationError, match="already published"):
            store.publish(sample_input.create_test_vaccine(name="Renamed"))

    def test_unknown_vaccine_and_version(self) -> None:
        store = sample_input.create_test_catalog()

        with pytest.raises(NotFoundError):
            store.get_vaccine("nope")
        with pytest.raises(NotFoundError):
            store.get_vaccine("hepb", 7)

    def test_inactive_vaccines_hidden_by_default(self) -> None:
        active = sample_input.create_test_vaccine()
        retired = sample_input.create_test_vaccine("opv", "Oral Polio").new_version(is_active=False)
        store = catalog.InMemoryVaccineCatalog([active, retired])

        assert [v.vaccine_id for v in store.list_vaccines()] == ["hepb"]
        assert len(store.list_vaccines(active_only=False)) == 2

    def test_resolve_by_id_short_name_and_fuzzy_name(self) -> None:
        store = catalog.load_catalog(resolve_path("config/vaccine_catalog.yaml"))

        assert store.resolve("mmr").vaccine_id == "mmr"
        assert store.resolve("HepB").vaccine_id == "hepb"
        assert store.resolve("Chickenpox").short_name == "VAR"

    def test_resolve_no_match(self) -> None:
        store = sample_input.create_test_catalog()

        with pytest.raises(NotFoundError, match="No vaccine matches"):
            store.resolve("zzzzzz")
