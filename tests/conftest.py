"""
Pytest configuration and shared fixtures.
"""

import pytest
from typing import Any, Dict, List

from seasonlink.app import Services, build_services
from seasonlink.config import Settings
from seasonlink.events import InMemoryEventSink
from seasonlink.logger import StructuredLogger, get_logger, reset_logger
from seasonlink.schema import PLAYER, TEAM, RawRecord, RecordStats
from storage.repositories.pending_matches import InMemoryPendingMatchStore


@pytest.fixture(autouse=True)
def quiet_logger():
    """Fresh global logger per test that writes nowhere."""
    reset_logger()
    logger = get_logger(level="DEBUG", enable_file=False, enable_console=False)
    yield logger
    reset_logger()


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(db_path=tmp_path / "identity.db", max_workers=2)


@pytest.fixture
def event_sink() -> InMemoryEventSink:
    return InMemoryEventSink()


@pytest.fixture
def services(settings, event_sink) -> Services:
    """Graph, audit logger and resolvers over a temporary SQLite database."""
    return build_services(settings, pending_store=InMemoryPendingMatchStore(), event_sink=event_sink)


@pytest.fixture
def graph(services):
    return services.graph


@pytest.fixture
def audit(services):
    return services.audit


@pytest.fixture
def session_factory(services):
    return services.session_factory


def player(
    external_id: str,
    season: int,
    name: str,
    position: str = "QB",
    team: str = "KC",
    games: int = 17,
    average: float = 20.0,
) -> RawRecord:
    return RawRecord(
        entity_type=PLAYER,
        external_id=external_id,
        season=season,
        name=name,
        position=position,
        team=team,
        stats=RecordStats(games=games, total_points=games * average, average_points=average),
    )


def team(
    external_id: str,
    season: int,
    name: str,
    owner: str,
    league_id: str = "L1",
    wins: int = 7,
    losses: int = 7,
    standing: int = 5,
) -> RawRecord:
    return RawRecord(
        entity_type=TEAM,
        external_id=external_id,
        season=season,
        name=name,
        owner_name=owner,
        league_id=league_id,
        stats=RecordStats(wins=wins, losses=losses, standing=standing),
    )


@pytest.fixture
def make_player():
    return player


@pytest.fixture
def make_team():
    return team


@pytest.fixture
def mahomes_seasons() -> List[RawRecord]:
    """The same player in two consecutive seasons with near-identical output."""
    return [
        player("3139477", 2022, "Patrick Mahomes", average=24.5),
        player("3139477", 2023, "Patrick Mahomes", average=25.0),
    ]


@pytest.fixture
def valid_player_dict() -> Dict[str, Any]:
    return {
        "external_id": 3139477,
        "season": 2023,
        "name": "Patrick Mahomes",
        "position": "QB",
        "team": "KC",
        "stats": {"games": 17, "total_points": 425.0},
    }


@pytest.fixture
def invalid_player_dict() -> Dict[str, Any]:
    """Missing name and a negative stat."""
    return {
        "external_id": "999",
        "season": 2023,
        "stats": {"games": -1},
    }


@pytest.fixture
def structured_logger(tmp_path) -> StructuredLogger:
    return StructuredLogger(name="test", log_dir=tmp_path, enable_console=False)
