from abc import ABC, abstractmethod
from typing import Any


class UpstreamProvider(ABC):
    """Abstract base class for the football-statistics upstream.

    Every method returns empty collections for "no data" and raises only on
    transport failure. Every request counts against the shared daily quota.
    """

    call_count: int = 0

    def reset_call_count(self) -> None:
        self.call_count = 0

    @abstractmethod
    async def fetch_fixtures(self, date: str, league_id: int) -> list[dict[str, Any]]:
        """Matches of one league on one UTC day, in the caller-facing Match shape."""
        ...

    @abstractmethod
    async def fetch_fixtures_in_range(
        self, date_from: str, date_to: str, league_id: int
    ) -> list[dict[str, Any]]:
        ...

    @abstractmethod
    async def fetch_statistics(self, match: dict[str, Any]) -> dict[str, list]:
        """{"home": [{"type", "value"}], "away": [...]}"""
        ...

    @abstractmethod
    async def fetch_events(self, match: dict[str, Any]) -> dict[str, list]:
        """{"home": [event], "away": [event]}"""
        ...

    @abstractmethod
    async def fetch_lineups(
        self, match_id: int, home_team_id: int, away_team_id: int
    ) -> dict[str, Any]:
        """{"home": lineup | None, "away": lineup | None}"""
        ...

    @abstractmethod
    async def fetch_standings(self, league_id: int, season: int) -> dict[str, Any]:
        """{"league": {...}, "standings": [[row, ...], ...]} or {} when missing."""
        ...

    @abstractmethod
    async def fetch_teams(self, league_id: int, season: int) -> list[dict[str, Any]]:
        ...

    @abstractmethod
    async def fetch_leagues(self, country: str | None = None) -> list[dict[str, Any]]:
        ...

    @abstractmethod
    async def fetch_team_fixtures(self, team_id: int, season: int) -> list[dict[str, Any]]:
        ...

    async def aclose(self) -> None:
        return None
