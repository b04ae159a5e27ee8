"""REST handlers for the service's common API endpoints."""

from __future__ import annotations

import dataclasses
import json
import uuid
from datetime import datetime
from http import HTTPStatus
from typing import Any, Mapping, Optional

from werkzeug.wrappers import Request, Response

from .config import API_BASE
from .container import configuration_from, logging_client_from, secret_provider_from
from .context import API_VERSION
from .storeforward import CORRELATION_HEADER

CONTENT_TYPE_HEADER = "Content-Type"
CONTENT_TYPE_JSON = "application/json"

API_PING_ROUTE = API_BASE + "/ping"
API_VERSION_ROUTE = API_BASE + "/version"
API_CONFIG_ROUTE = API_BASE + "/config"
API_ADD_SECRET_ROUTE = API_BASE + "/secret"


class _ContractError(ValueError):
    """The request body does not meet the API contract."""


def _unix_date(moment: datetime) -> str:
    """Format like 'Mon Jan  2 15:04:05 MST 2006'."""
    return f"{moment:%a %b} {moment.day:2d} {moment:%H:%M:%S} {moment.tzname()} {moment.year}"


def _base_response(request_id: str, message: str, status_code: int) -> dict[str, Any]:
    response: dict[str, Any] = {"apiVersion": API_VERSION}
    if request_id:
        response["requestId"] = request_id
    if message:
        response["message"] = message
    response["statusCode"] = int(status_code)
    return response


def _as_dict(value: Any) -> Any:
    to_dict = getattr(value, "to_dict", None)
    if callable(to_dict):
        return to_dict()
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return dataclasses.asdict(value)
    if isinstance(value, Mapping):
        return dict(value)
    return dict(vars(value))


def _parse_secret_request(body: bytes) -> tuple[str, str, dict[str, str]]:
    """Return (request id, path, secrets) from a secret request body."""
    try:
        data = json.loads(body)
    except (ValueError, UnicodeDecodeError) as exc:
        raise _ContractError(str(exc)) from exc
    if not isinstance(data, Mapping):
        raise _ContractError("request must be a JSON object")

    if not data.get("apiVersion"):
        raise _ContractError("SecretRequest ApiVersion is required")

    request_id = data.get("requestId") or ""
    if not isinstance(request_id, str):
        raise _ContractError("SecretRequest RequestId must be a string")
    if request_id:
        try:
            uuid.UUID(request_id)
        except ValueError as exc:
            raise _ContractError("SecretRequest RequestId must be empty or a UUID") from exc

    path = data.get("path") or ""
    if not isinstance(path, str) or not path:
        raise _ContractError("SecretRequest Path is required")

    secret_data = data.get("secretData") or []
    if not isinstance(secret_data, list) or not secret_data:
        raise _ContractError("SecretRequest SecretData must hold at least one item")

    secrets: dict[str, str] = {}
    for item in secret_data:
        if not isinstance(item, Mapping):
            raise _ContractError("SecretRequest SecretData items must be objects")
        key = item.get("key") or ""
        value = item.get("value") or ""
        if not isinstance(key, str) or not key:
            raise _ContractError("SecretRequest SecretData Key is required")
        if not isinstance(value, str) or not value:
            raise _ContractError("SecretRequest SecretData Value is required")
        secrets[key] = value

    return request_id, path.strip(), secrets


class Controller:
    """Handles the ping, version, config and secret endpoints."""

    def __init__(
        self,
        dic: Any,
        service_name: str,
        *,
        application_version: str = "0.0.0",
        sdk_version: str = "0.0.0",
    ) -> None:
        self._dic = dic
        self.service_name = service_name
        self.application_version = application_version
        self.sdk_version = sdk_version
        self._lc = logging_client_from(dic.get)
        self._custom_config: Optional[Any] = None

    def set_custom_config_info(self, custom_config: Any) -> None:
        """Include the service's custom configuration in the /config response."""
        self._custom_config = custom_config

    def ping(self, request: Request) -> Response:
        """Report that the service is up."""
        response = {
            "apiVersion": API_VERSION,
            "timestamp": _unix_date(datetime.now().astimezone()),
            "serviceName": self.service_name,
        }
        return self._send_response(request, API_PING_ROUTE, response, HTTPStatus.OK)

    def version(self, request: Request) -> Response:
        """Report the application and SDK versions."""
        response = {
            "apiVersion": API_VERSION,
            "version": self.application_version,
            "sdk_version": self.sdk_version,
            "serviceName": self.service_name,
        }
        return self._send_response(request, API_VERSION_ROUTE, response, HTTPStatus.OK)

    def config(self, request: Request) -> Response:
        """Report the service configuration, with the custom section if one is set."""
        full_config = configuration_from(self._dic.get).to_dict()
        if self._custom_config is not None:
            full_config = dict(full_config)
            full_config["CustomConfiguration"] = _as_dict(self._custom_config)
        response = {
            "apiVersion": API_VERSION,
            "config": full_config,
            "serviceName": self.service_name,
        }
        return self._send_response(request, API_CONFIG_ROUTE, response, HTTPStatus.OK)

    def add_secret(self, request: Request) -> Response:
        """Store a secret sent in the request body in the secret store."""
        try:
            request_id, path, secrets = _parse_secret_request(request.get_data())
        except _ContractError as exc:
            return self._send_error(request, HTTPStatus.BAD_REQUEST, "JSON decode failed", exc, "")

        provider = secret_provider_from(self._dic.get)
        try:
            if provider is None:
                raise RuntimeError("no secret provider available")
            provider.store_secret(path, secrets)
        except Exception as exc:  # secret stores raise their own error types
            return self._send_error(
                request, HTTPStatus.INTERNAL_SERVER_ERROR, "Storing secret failed", exc, request_id
            )

        response = _base_response(request_id, "", HTTPStatus.CREATED)
        return self._send_response(request, API_ADD_SECRET_ROUTE, response, HTTPStatus.CREATED)

    def _send_error(
        self,
        request: Request,
        status: HTTPStatus,
        message: str,
        err: BaseException,
        request_id: str,
    ) -> Response:
        full_message = f"{message} -> {err}"
        self._lc.error(full_message)
        response = _base_response(request_id, full_message, status)
        return self._send_response(request, API_ADD_SECRET_ROUTE, response, status)

    def _send_response(
        self, request: Request, api: str, response: Any, status_code: int
    ) -> Response:
        correlation_id = request.headers.get(CORRELATION_HEADER, "")
        try:
            body = json.dumps(response)
        except (TypeError, ValueError) as exc:
            self._lc.error(
                "Unable to marshal %s response: %s, %s=%s", api, exc, CORRELATION_HEADER, correlation_id
            )
            return Response(str(exc), status=HTTPStatus.INTERNAL_SERVER_ERROR, mimetype="text/plain")
        result = Response(body, status=int(status_code))
        result.headers[CORRELATION_HEADER] = correlation_id
        result.headers[CONTENT_TYPE_HEADER] = CONTENT_TYPE_JSON
        return result