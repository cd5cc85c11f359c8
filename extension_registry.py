"""Config-driven registry of extension routes."""

from __future__ import annotations

import importlib
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

logger = logging.getLogger("recordbase.extensions")

ALLOWED_METHODS = {"GET", "POST", "PUT", "PATCH", "DELETE"}

Handler = Callable[["ExtensionContext"], Any]


class ExtensionRegistryError(RuntimeError):
    pass


class DuplicateRouteError(ExtensionRegistryError):
    def __init__(self, method: str, path: str, first: str, second: str) -> None:
        super().__init__(f"{method} {path} registered by both {first} and {second}")
        self.method = method
        self.path = path


@dataclass(frozen=True)
class RouteDescriptor:
    method: str
    path: str
    handler: Handler
    requires_auth: bool = False
    name: Optional[str] = None

    @property
    def key(self) -> Tuple[str, str]:
        return (self.method.upper(), self.path)


@dataclass
class ExtensionContext:
    """What an extension handler sees for one request.

    ``model(name)`` returns a record store handle bound to collection
    ``name``; ``user`` is None unless the caller presented a valid token.
    """

    request: Any
    user: Optional[dict]
    model: Callable[[Optional[str]], Any]


def _validate(descriptor: Any, source: str) -> RouteDescriptor:
    if not isinstance(descriptor, RouteDescriptor):
        raise ExtensionRegistryError(f"{source}: routes must be RouteDescriptor instances")
    if descriptor.method.upper() not in ALLOWED_METHODS:
        raise ExtensionRegistryError(f"{source}: unsupported method {descriptor.method!r}")
    if not descriptor.path.startswith("/"):
        raise ExtensionRegistryError(f"{source}: path must start with '/': {descriptor.path!r}")
    if not callable(descriptor.handler):
        raise ExtensionRegistryError(f"{source}: handler for {descriptor.path} is not callable")
    return descriptor


class ExtensionRegistry:
    def __init__(self) -> None:
        self._routes: List[Tuple[str, RouteDescriptor]] = []
        self._owners: Dict[Tuple[str, str], str] = {}

    def register(self, descriptor: RouteDescriptor, source: str = "inline") -> RouteDescriptor:
        descriptor = _validate(descriptor, source)
        key = descriptor.key
        if key in self._owners:
            raise DuplicateRouteError(key[0], key[1], self._owners[key], source)
        self._owners[key] = source
        self._routes.append((source, descriptor))
        logger.info("extension_route_registered method=%s path=%s source=%s auth=%s", key[0], key[1], source, descriptor.requires_auth)
        return descriptor

    def load_module(self, module_name: str) -> int:
        module = importlib.import_module(module_name)
        routes = getattr(module, "ROUTES", None)
        if not isinstance(routes, (list, tuple)):
            raise ExtensionRegistryError(f"{module_name}: ROUTES must be a list of RouteDescriptor")
        for descriptor in routes:
            self.register(descriptor, source=module_name)
        return len(routes)

    def load(self, module_names: Iterable[str]) -> int:
        total = 0
        for name in module_names:
            total += self.load_module(name)
        return total

    def routes(self) -> List[Tuple[str, RouteDescriptor]]:
        return list(self._routes)

    def __len__(self) -> int:
        return len(self._routes)
