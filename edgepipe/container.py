"""Dependency injection container and typed lookups of shared services."""

from __future__ import annotations

import logging
import threading
from typing import Any, Callable, Mapping, Optional

from .config import Configuration

Getter = Callable[[str], Any]
Constructor = Callable[[Getter], Any]

CONFIGURATION_NAME = "Configuration"
STORE_CLIENT_NAME = "StoreClient"
LOGGING_CLIENT_NAME = "LoggingClient"
SECRET_PROVIDER_NAME = "SecretProvider"
METRICS_MANAGER_NAME = "MetricsManager"
REGISTRY_CLIENT_NAME = "RegistryClient"
EVENT_CLIENT_NAME = "EventClient"
COMMAND_CLIENT_NAME = "CommandClient"
DEVICE_SERVICE_CLIENT_NAME = "DeviceServiceClient"
DEVICE_PROFILE_CLIENT_NAME = "DeviceProfileClient"
DEVICE_CLIENT_NAME = "DeviceClient"
NOTIFICATION_CLIENT_NAME = "NotificationClient"
SUBSCRIPTION_CLIENT_NAME = "SubscriptionClient"

_default_logger = logging.getLogger("edgepipe")


class Container:
    """Builds named services lazily, once each, from registered constructors."""

    def __init__(self, constructors: Optional[Mapping[str, Constructor]] = None) -> None:
        self._lock = threading.RLock()
        self._constructors: dict[str, Constructor] = dict(constructors or {})
        self._instances: dict[str, Any] = {}

    def get(self, name: str) -> Any:
        """Return the service registered under name, or None if there is none."""
        with self._lock:
            if name in self._instances:
                return self._instances[name]
            constructor = self._constructors.get(name)
            if constructor is None:
                return None
            instance = constructor(self.get)
            self._instances[name] = instance
            return instance

    def update(self, constructors: Mapping[str, Constructor]) -> None:
        """Add or replace constructors; replaced services are rebuilt on next use."""
        with self._lock:
            for name, constructor in constructors.items():
                self._constructors[name] = constructor
                self._instances.pop(name, None)


def configuration_from(get: Getter) -> Configuration:
    """Return the service configuration; raises LookupError if none is registered."""
    item = get(CONFIGURATION_NAME)
    if item is None:
        raise LookupError("no configuration registered in the container")
    if not isinstance(item, Configuration):
        raise TypeError(f"registered configuration is a {type(item).__name__}, not a Configuration")
    return item


def store_client_from(get: Getter) -> Any:
    """Return the store client, or None."""
    return get(STORE_CLIENT_NAME)


def logging_client_from(get: Getter) -> Any:
    """Return the registered logging client, falling back to the package logger."""
    item = get(LOGGING_CLIENT_NAME)
    return _default_logger if item is None else item


def secret_provider_from(get: Getter) -> Any:
    """Return the secret provider, or None."""
    return get(SECRET_PROVIDER_NAME)


def metrics_manager_from(get: Getter) -> Any:
    """Return the metrics manager, or None."""
    return get(METRICS_MANAGER_NAME)