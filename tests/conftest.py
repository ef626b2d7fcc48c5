"""Shared pytest fixtures for unit, integration, and e2e tests.

This module provides:
- Temporary directory fixtures for file I/O testing
- Configuration fixtures for parameter testing
- A fully wired engine over in-memory stores with scripted senders
"""

from __future__ import annotations

import tempfile
from pathlib import Path
from typing import Any, Dict, Generator, List

import pytest
import yaml

from tests.fixtures import sample_input
from vaxtrack import config_loader
from vaxtrack.data_models import DeliveryPreference
from vaxtrack.engine import ScheduleEngine, build_engine
from vaxtrack.enums import Channel
from vaxtrack.exceptions import RetryExhausted
from vaxtrack.stores import InMemoryChildRepository, InMemoryPreferenceProvider


@pytest.fixture
def tmp_test_dir() -> Generator[Path, None, None]:
    """Provide a temporary directory that's cleaned up after each test.

    Real-world significance:
    - Isolates state artifacts and CSV exports between tests
    """
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def default_config() -> Dict[str, Any]:
    """Provide the default engine configuration.

    Real-world significance:
    - Matches an empty parameters.yaml: every key takes its default
    """
    return config_loader.merge_defaults({})


@pytest.fixture
def config_file(tmp_test_dir: Path, default_config: Dict[str, Any]) -> Path:
    """Write the default configuration to a temporary parameters.yaml.

    The catalog path is made absolute so the file can live anywhere.
    """
    config = dict(default_config)
    config["catalog"] = {"path": str(config_loader.resolve_path("config/vaccine_catalog.yaml"))}
    config_path = tmp_test_dir / "parameters.yaml"
    with open(config_path, "w") as f:
        yaml.dump(config, f)
    return config_path


@pytest.fixture
def children() -> InMemoryChildRepository:
    return InMemoryChildRepository([sample_input.create_test_child()])


@pytest.fixture
def preferences() -> InMemoryPreferenceProvider:
    """Guardian reachable on every channel, with email and sms enabled."""
    return InMemoryPreferenceProvider(
        preferences={
            sample_input.GUARDIAN_ID: DeliveryPreference(
                email=True, sms=True, push=False, reminder_lead_days=7
            )
        },
        contacts={sample_input.GUARDIAN_ID: sample_input.create_test_contact()},
    )


@pytest.fixture
def senders() -> Dict[Channel, sample_input.ScriptedSender]:
    return {channel: sample_input.ScriptedSender(channel) for channel in Channel}


@pytest.fixture
def exhausted() -> List[RetryExhausted]:
    """Collects operator alerts raised by the engine."""
    return []


@pytest.fixture
def engine(
    default_config: Dict[str, Any],
    children: InMemoryChildRepository,
    preferences: InMemoryPreferenceProvider,
    senders: Dict[Channel, sample_input.ScriptedSender],
    exhausted: List[RetryExhausted],
) -> ScheduleEngine:
    """Engine over in-memory stores with the three-dose test catalog.

    Real-world significance:
    - Same wiring as production; only the stores and senders are local
    """
    return build_engine(
        default_config,
        children=children,
        catalog=sample_input.create_test_catalog(),
        preferences=preferences,
        senders=senders,
        on_exhausted=exhausted.append,
        id_factory=sample_input.sequential_ids(),
    )
