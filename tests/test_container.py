import logging

import pytest

from edgepipe.config import Configuration, ServiceInfo
from edgepipe.container import (
    CONFIGURATION_NAME,
    LOGGING_CLIENT_NAME,
    METRICS_MANAGER_NAME,
    SECRET_PROVIDER_NAME,
    STORE_CLIENT_NAME,
    Container,
    configuration_from,
    logging_client_from,
    metrics_manager_from,
    secret_provider_from,
    store_client_from,
)


def test_get_builds_once():
    calls = []

    def build(get):
        calls.append(1)
        return object()

    container = Container({"thing": build})
    first = container.get("thing")
    second = container.get("thing")
    assert first is second
    assert len(calls) == 1


def test_get_unknown_returns_none():
    assert Container().get("missing") is None


def test_constructor_can_use_other_services():
    container = Container({"a": lambda get: 5, "b": lambda get: get("a") + 1})
    assert container.get("b") == 6


def test_update_replaces_and_rebuilds():
    container = Container({"thing": lambda get: "old"})
    assert container.get("thing") == "old"
    container.update({"thing": lambda get: "new"})
    assert container.get("thing") == "new"


def test_configuration_from():
    config = Configuration(service=ServiceInfo(port=1))
    container = Container({CONFIGURATION_NAME: lambda get: config})
    assert configuration_from(container.get) is config


def test_configuration_from_missing_raises():
    with pytest.raises(LookupError):
        configuration_from(Container().get)


def test_configuration_from_wrong_type_raises():
    container = Container({CONFIGURATION_NAME: lambda get: "nope"})
    with pytest.raises(TypeError):
        configuration_from(container.get)


def test_optional_services_are_none_when_missing():
    container = Container()
    assert store_client_from(container.get) is None
    assert secret_provider_from(container.get) is None
    assert metrics_manager_from(container.get) is None


def test_optional_services_are_returned_when_present():
    store, provider, metrics = object(), object(), object()
    container = Container(
        {
            STORE_CLIENT_NAME: lambda get: store,
            SECRET_PROVIDER_NAME: lambda get: provider,
            METRICS_MANAGER_NAME: lambda get: metrics,
        }
    )
    assert store_client_from(container.get) is store
    assert secret_provider_from(container.get) is provider
    assert metrics_manager_from(container.get) is metrics


def test_logging_client_falls_back_to_logger(caplog):
    client = logging_client_from(Container().get)
    assert isinstance(client, logging.Logger)
    with caplog.at_level(logging.WARNING):
        client.warning("fallback-logger-marker")
    assert "fallback-logger-marker" in caplog.text


def test_logging_client_registered():
    client = logging.getLogger("custom-test-logger")
    container = Container({LOGGING_CLIENT_NAME: lambda get: client})
    assert logging_client_from(container.get) is client