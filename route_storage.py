# Storage backends for recorded routes.

import json
import logging
import os
from abc import ABC, abstractmethod
from pathlib import Path

from dotenv import load_dotenv

from nav_structures import GreenWaveError, Route, RouteStoreError

logger = logging.getLogger(__name__)

load_dotenv()
DEFAULT_STORE_PATH = os.getenv("GREENWAVE_STORE_PATH", "greenwave_routes.json")


class RouteStore(ABC):
    """
    Abstract Base Class for route persistence.
    The advisor only ever calls save() after recording and get() before navigating.
    """
    @abstractmethod
    def save(self, route: Route) -> None:
        """Inserts the route, or replaces a stored route with the same id."""
        pass

    @abstractmethod
    def list_routes(self) -> list[Route]:
        pass

    @abstractmethod
    def get(self, route_id: str) -> Route | None:
        pass

    @abstractmethod
    def delete(self, route_id: str) -> None:
        pass


class InMemoryRouteStore(RouteStore):
    """Keeps routes for the lifetime of the process."""

    def __init__(self, routes: list[Route] | None = None):
        self._routes: dict[str, Route] = {r.id: r for r in routes or []}

    def save(self, route: Route) -> None:
        self._routes[route.id] = route

    def list_routes(self) -> list[Route]:
        return list(self._routes.values())

    def get(self, route_id: str) -> Route | None:
        return self._routes.get(route_id)

    def delete(self, route_id: str) -> None:
        self._routes.pop(route_id, None)


class JsonFileRouteStore(RouteStore):
    """All routes in a single JSON document, in insertion order."""

    def __init__(self, path: str | os.PathLike = DEFAULT_STORE_PATH):
        self.path = Path(path)

    def _load(self) -> list[Route]:
        if not self.path.exists():
            return []
        try:
            with self.path.open("r", encoding="utf-8") as f:
                data = json.load(f)
            return [Route.from_dict(item) for item in data]
        except (OSError, json.JSONDecodeError) as e:
            raise RouteStoreError(f"Could not read routes from {self.path}: {e}") from e
        except (KeyError, TypeError, ValueError, GreenWaveError) as e:
            raise RouteStoreError(f"Malformed route data in {self.path}: {e}") from e

    def _write(self, routes: list[Route]) -> None:
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        try:
            with tmp_path.open("w", encoding="utf-8") as f:
                json.dump([r.to_dict() for r in routes], f, indent=2)
            os.replace(tmp_path, self.path)
        except OSError as e:
            raise RouteStoreError(f"Could not write routes to {self.path}: {e}") from e

    def save(self, route: Route) -> None:
        routes = self._load()
        for i, existing in enumerate(routes):
            if existing.id == route.id:
                routes[i] = route
                break
        else:
            routes.append(route)
        self._write(routes)
        logger.debug("Stored route %s in %s", route.id, self.path)

    def list_routes(self) -> list[Route]:
        return self._load()

    def get(self, route_id: str) -> Route | None:
        return next((r for r in self._load() if r.id == route_id), None)

    def delete(self, route_id: str) -> None:
        routes = self._load()
        remaining = [r for r in routes if r.id != route_id]
        if len(remaining) != len(routes):
            self._write(remaining)
