"""Per-message context handed to every pipeline function."""

from __future__ import annotations

import re
import uuid
from datetime import datetime
from typing import Any, Optional

from . import container as _c

# Well-known context value keys (stored lower case).
DEVICE_NAME = "devicename"
PROFILE_NAME = "profilename"
SOURCE_NAME = "sourcename"
RECEIVED_TOPIC = "receivedtopic"
PIPELINE_ID = "pipelineid"

API_VERSION = "v2"

_PLACEHOLDER = re.compile(r"{[^}]*}")


class PlaceholderError(ValueError):
    """Raised when placeholders remain unmatched by context values."""


class Context:
    """Data and services available to pipeline functions while a message is processed."""

    def __init__(
        self,
        correlation_id: str = "",
        dic: Optional[_c.Container] = None,
        input_content_type: str = "",
    ) -> None:
        self.dic = dic if dic is not None else _c.Container()
        self.correlation_id = correlation_id
        self.input_content_type = input_content_type
        self.response_data: Optional[bytes] = None
        self.retry_data: Optional[bytes] = None
        self.response_content_type = ""
        self._data: dict[str, str] = {}

    def clone(self) -> Context:
        """Return a copy whose stored values can change independently."""
        copy = Context(self.correlation_id, self.dic, self.input_content_type)
        copy.response_data = self.response_data
        copy.retry_data = self.retry_data
        copy.response_content_type = self.response_content_type
        copy._data = dict(self._data)
        return copy

    # Services from the container.

    def get_secret(self, path: str, *args: str) -> dict[str, str]:
        """Return secret data at path, optionally limited to the given keys."""
        return self.secret_provider().get_secret(path, *args)

    def secrets_last_updated(self) -> datetime:
        """Return when the secrets were last updated."""
        return self.secret_provider().secrets_last_updated()

    def secret_provider(self) -> Any:
        return _c.secret_provider_from(self.dic.get)

    def logging_client(self) -> Any:
        return _c.logging_client_from(self.dic.get)

    def event_client(self) -> Any:
        return self.dic.get(_c.EVENT_CLIENT_NAME)

    def command_client(self) -> Any:
        return self.dic.get(_c.COMMAND_CLIENT_NAME)

    def device_service_client(self) -> Any:
        return self.dic.get(_c.DEVICE_SERVICE_CLIENT_NAME)

    def device_profile_client(self) -> Any:
        return self.dic.get(_c.DEVICE_PROFILE_CLIENT_NAME)

    def device_client(self) -> Any:
        return self.dic.get(_c.DEVICE_CLIENT_NAME)

    def notification_client(self) -> Any:
        return self.dic.get(_c.NOTIFICATION_CLIENT_NAME)

    def subscription_client(self) -> Any:
        return self.dic.get(_c.SUBSCRIPTION_CLIENT_NAME)

    def metrics_manager(self) -> Any:
        return _c.metrics_manager_from(self.dic.get)

    # Stored values.

    def add_value(self, key: str, value: str) -> None:
        """Store a value under a case-insensitive key."""
        self._data[key.lower()] = value

    def remove_value(self, key: str) -> None:
        """Delete the value under key, if any."""
        self._data.pop(key.lower(), None)

    def get_value(self, key: str) -> Optional[str]:
        """Return the value under key, or None when absent."""
        return self._data.get(key.lower())

    def get_all_values(self) -> dict[str, str]:
        """Return a copy of all stored values."""
        return dict(self._data)

    @property
    def pipeline_id(self) -> str:
        """ID of the pipeline currently executing."""
        return self._data.get(PIPELINE_ID, "")

    def apply_values(self, format_string: str) -> str:
        """Replace every '{key}' placeholder with the stored value for key.

        Raises PlaceholderError if any placeholder has no stored value.
        """
        attempts: dict[str, bool] = {}
        result = format_string
        for placeholder in _PLACEHOLDER.findall(format_string):
            if placeholder in attempts:
                continue
            key = placeholder.lstrip("{").rstrip("}")
            value = self.get_value(key)
            attempts[placeholder] = value is not None
            if value is not None:
                result = result.replace(placeholder, value)

        if not all(attempts.values()):
            raise PlaceholderError(
                f"failed to replace all context placeholders in input ('{result}' after replacements)"
            )
        return result

    # Calls to core services.

    def push_to_core(self, event: Any) -> Any:
        """Send a new event to core data and return the client's response."""
        client = self.event_client()
        if client is None:
            raise RuntimeError(
                "EventClient not initialized. Core Metadata is missing from clients configuration"
            )
        request = {"apiVersion": API_VERSION, "requestId": str(uuid.uuid4()), "event": event}
        return client.add(request)

    def get_device_resource(self, profile_name: str, resource_name: str) -> Any:
        """Return the device resource for a profile and resource name."""
        client = self.device_profile_client()
        if client is None:
            raise RuntimeError(
                "DeviceProfileClient not initialized. Core Metadata is missing from clients configuration"
            )
        response = client.device_resource_by_profile_name_and_resource_name(
            profile_name, resource_name
        )
        return response.resource