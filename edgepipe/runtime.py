"""Function pipelines: decoding incoming messages and running them through their transforms."""

from __future__ import annotations

import base64
import binascii
import dataclasses
import json
import logging
import threading
import uuid
from dataclasses import dataclass, field
from http import HTTPStatus
from typing import Any, Callable, Mapping, Optional, Sequence

import cbor2

from .config import (
    PIPELINE_MESSAGE_PROCESSING_TIME_NAME,
    PIPELINE_MESSAGES_PROCESSED_NAME,
    PIPELINE_PROCESSING_ERRORS_NAME,
    pipeline_metric_name,
)
from .container import Container, logging_client_from, metrics_manager_from
from .context import (
    API_VERSION,
    DEVICE_NAME,
    PIPELINE_ID,
    PROFILE_NAME,
    RECEIVED_TOPIC,
    SOURCE_NAME,
    Context,
)
from .storeforward import CORRELATION_HEADER, StoreForward

TOPIC_WILDCARD = "#"
TOPIC_LEVEL_SEPARATOR = "/"
DEFAULT_PIPELINE_ID = "default-pipeline"

CONTENT_TYPE_JSON = "application/json"
CONTENT_TYPE_CBOR = "application/cbor"
VALUE_TYPE_BINARY = "Binary"

_HASH_PREFIX = "Pipeline-functions: "

AppFunction = Callable[[Context, Any], "tuple[bool, Any]"]


class _DecodeError(Exception):
    """The payload could not be decoded at all."""


class _Counter:
    """Thread-safe monotonically increasing count."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._count = 0

    def inc(self, amount: int = 1) -> None:
        with self._lock:
            self._count += amount

    @property
    def count(self) -> int:
        with self._lock:
            return self._count


class _Timer:
    """Records durations in seconds."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._count = 0
        self._total = 0.0

    def update(self, seconds: float) -> None:
        with self._lock:
            self._count += 1
            self._total += seconds

    @property
    def count(self) -> int:
        with self._lock:
            return self._count

    @property
    def total(self) -> float:
        with self._lock:
            return self._total


def _is_uuid(text: str) -> bool:
    try:
        uuid.UUID(str(text))
    except ValueError:
        return False
    return True


def _str_field(data: Mapping[str, Any], key: str) -> str:
    value = data.get(key, "")
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ValueError(f"field '{key}' must be a string")
    return value


def _int_field(data: Mapping[str, Any], key: str) -> int:
    value = data.get(key, 0)
    if value is None:
        return 0
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"field '{key}' must be an integer")
    return value


@dataclass
class Reading:
    """A single value read from a device resource."""

    id: str = ""
    origin: int = 0
    device_name: str = ""
    resource_name: str = ""
    profile_name: str = ""
    value_type: str = ""
    value: str = ""
    binary_value: bytes = b""
    media_type: str = ""
    units: str = ""


def _reading_to_dict(reading: Reading) -> dict[str, Any]:
    out: dict[str, Any] = {
        "id": reading.id,
        "origin": reading.origin,
        "deviceName": reading.device_name,
        "resourceName": reading.resource_name,
        "profileName": reading.profile_name,
        "valueType": reading.value_type,
    }
    if reading.units:
        out["units"] = reading.units
    if reading.binary_value:
        out["binaryValue"] = base64.b64encode(reading.binary_value).decode("ascii")
    if reading.media_type:
        out["mediaType"] = reading.media_type
    if reading.value:
        out["value"] = reading.value
    return out


def _reading_from_dict(data: Any) -> Reading:
    if not isinstance(data, Mapping):
        raise ValueError("reading must be an object")
    raw_binary = data.get("binaryValue") or b""
    if isinstance(raw_binary, str):
        try:
            binary = base64.b64decode(raw_binary, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise ValueError(f"invalid binaryValue: {exc}") from exc
    elif isinstance(raw_binary, (bytes, bytearray)):
        binary = bytes(raw_binary)
    else:
        raise ValueError("field 'binaryValue' must be bytes or base64 text")
    return Reading(
        id=_str_field(data, "id"),
        origin=_int_field(data, "origin"),
        device_name=_str_field(data, "deviceName"),
        resource_name=_str_field(data, "resourceName"),
        profile_name=_str_field(data, "profileName"),
        value_type=_str_field(data, "valueType"),
        value=_str_field(data, "value"),
        binary_value=binary,
        media_type=_str_field(data, "mediaType"),
        units=_str_field(data, "units"),
    )


def _validate_reading(reading: Reading) -> None:
    if reading.id and not _is_uuid(reading.id):
        raise ValueError("Reading Id must be a UUID")
    if not reading.origin:
        raise ValueError("Reading Origin is required")
    for label, value in (
        ("DeviceName", reading.device_name),
        ("ResourceName", reading.resource_name),
        ("ProfileName", reading.profile_name),
        ("ValueType", reading.value_type),
    ):
        if not value.strip():
            raise ValueError(f"Reading {label} is required")
    if reading.value_type.lower() == VALUE_TYPE_BINARY.lower():
        if not reading.binary_value:
            raise ValueError("Reading BinaryValue is required for binary readings")
        if not reading.media_type:
            raise ValueError("Reading MediaType is required for binary readings")


@dataclass
class Event:
    """A collection of readings taken from one device source."""

    id: str = ""
    device_name: str = ""
    profile_name: str = ""
    source_name: str = ""
    origin: int = 0
    readings: list[Reading] = field(default_factory=list)
    tags: dict[str, Any] = field(default_factory=dict)
    api_version: str = API_VERSION

    def validate(self) -> None:
        """Raise ValueError if the event breaks its contract."""
        if not _is_uuid(self.id):
            raise ValueError("Event Id must be a UUID")
        for label, value in (
            ("DeviceName", self.device_name),
            ("ProfileName", self.profile_name),
            ("SourceName", self.source_name),
        ):
            if not value.strip():
                raise ValueError(f"Event {label} is required")
        if not self.origin:
            raise ValueError("Event Origin is required")
        if not self.readings:
            raise ValueError("Event must contain at least one reading")
        for reading in self.readings:
            _validate_reading(reading)

    def to_dict(self) -> dict[str, Any]:
        """Plain mapping with wire key names."""
        out: dict[str, Any] = {
            "apiVersion": self.api_version,
            "id": self.id,
            "deviceName": self.device_name,
            "profileName": self.profile_name,
            "sourceName": self.source_name,
            "origin": self.origin,
            "readings": [_reading_to_dict(r) for r in self.readings],
        }
        if self.tags:
            out["tags"] = dict(self.tags)
        return out

    @classmethod
    def from_dict(cls, data: Any) -> Event:
        """Build an event from a wire mapping; raises ValueError on a malformed one."""
        if not isinstance(data, Mapping):
            raise ValueError("event must be an object")
        readings = data.get("readings") or []
        if not isinstance(readings, list):
            raise ValueError("field 'readings' must be a list")
        tags = data.get("tags") or {}
        if not isinstance(tags, Mapping):
            raise ValueError("field 'tags' must be an object")
        return cls(
            id=_str_field(data, "id"),
            device_name=_str_field(data, "deviceName"),
            profile_name=_str_field(data, "profileName"),
            source_name=_str_field(data, "sourceName"),
            origin=_int_field(data, "origin"),
            readings=[_reading_from_dict(r) for r in readings],
            tags={str(k): v for k, v in tags.items()},
            api_version=_str_field(data, "apiVersion"),
        )


def _event_from_add_request(data: Any) -> Event:
    if not isinstance(data, Mapping):
        raise ValueError("AddEventRequest must be an object")
    if not data.get("apiVersion"):
        raise ValueError("AddEventRequest ApiVersion is required")
    request_id = data.get("requestId") or ""
    if request_id and not _is_uuid(str(request_id)):
        raise ValueError("AddEventRequest RequestId must be empty or a UUID")
    event_data = data.get("event")
    if event_data is None:
        raise ValueError("AddEventRequest Event is required")
    event = Event.from_dict(event_data)
    event.validate()
    return event


@dataclass
class MessageEnvelope:
    """A message as received from a trigger."""

    correlation_id: str = ""
    payload: bytes = b""
    content_type: str = ""
    received_topic: str = ""


class MessageError(Exception):
    """A failure while decoding or processing a message, with an HTTP status code."""

    def __init__(self, err: Any, error_code: int, invalid_message: bool = False) -> None:
        super().__init__(str(err))
        self.err = err
        self.error_code = int(error_code)
        self.invalid_message = invalid_message


@dataclass
class FunctionPipeline:
    """An ordered list of transforms run for messages on matching topics."""

    id: str
    transforms: Optional[list[AppFunction]] = None
    topics: list[str] = field(default_factory=list)
    hash: str = ""
    messages_processed: _Counter = field(default_factory=_Counter, compare=False)
    message_processing_time: _Timer = field(default_factory=_Timer, compare=False)
    processing_errors: _Counter = field(default_factory=_Counter, compare=False)


def _function_name(fn: Any) -> str:
    target = getattr(fn, "__func__", fn)
    qualname = getattr(target, "__qualname__", None) or type(target).__qualname__
    module = getattr(target, "__module__", None) or type(target).__module__
    return f"{module}.{qualname}"


def calculate_pipeline_hash(transforms: Optional[Sequence[AppFunction]]) -> str:
    """Identify a pipeline version by the names of its transforms."""
    return _HASH_PREFIX + "".join(" " + _function_name(t) for t in transforms or ())


def new_function_pipeline(
    pipeline_id: str,
    topics: Sequence[str],
    transforms: Optional[Sequence[AppFunction]],
) -> FunctionPipeline:
    """Create a pipeline with fresh metrics."""
    return FunctionPipeline(
        id=pipeline_id,
        transforms=list(transforms) if transforms is not None else None,
        topics=list(topics),
        hash=calculate_pipeline_hash(transforms),
    )


def topic_matches(incoming_topic: str, pipeline_topics: Sequence[str]) -> bool:
    """True if the incoming topic matches any pipeline topic; '#' matches one level or the rest."""
    for pipeline_topic in pipeline_topics:
        if pipeline_topic == TOPIC_WILDCARD:
            return True

        if TOPIC_WILDCARD not in pipeline_topic:
            if incoming_topic == pipeline_topic:
                return True
            continue

        pipeline_levels = pipeline_topic.split(TOPIC_LEVEL_SEPARATOR)
        incoming_levels = incoming_topic.split(TOPIC_LEVEL_SEPARATOR)
        if len(pipeline_levels) > len(incoming_levels):
            continue

        for index, level in enumerate(pipeline_levels):
            if level == TOPIC_WILDCARD:
                incoming_levels[index] = TOPIC_WILDCARD

        if TOPIC_LEVEL_SEPARATOR.join(incoming_levels).startswith(pipeline_topic):
            return True
    return False


def _normalise_key(key: Any) -> str:
    return str(key).replace("_", "").lower()


def _build_custom(target_type: type, data: Any) -> Any:
    from_dict = getattr(target_type, "from_dict", None)
    if callable(from_dict):
        return from_dict(data)
    if dataclasses.is_dataclass(target_type):
        if not isinstance(data, Mapping):
            raise ValueError(f"expected an object for {target_type.__name__}")
        lookup = {_normalise_key(k): v for k, v in data.items()}
        kwargs = {
            f.name: lookup[_normalise_key(f.name)]
            for f in dataclasses.fields(target_type)
            if f.init and _normalise_key(f.name) in lookup
        }
        return target_type(**kwargs)
    if isinstance(data, target_type):
        return data
    if isinstance(data, Mapping):
        return target_type(**data)
    return target_type(data)


class FunctionsPipelineRuntime:
    """Holds the function pipelines of a service and runs messages through them."""

    def __init__(
        self,
        service_key: str = "",
        target_type: Any = None,
        dic: Optional[Container] = None,
    ) -> None:
        self.service_key = service_key
        self.target_type = target_type
        self.dic = dic if dic is not None else Container()
        self._pipelines: dict[str, FunctionPipeline] = {}
        self._lock = threading.RLock()
        self.store_forward = StoreForward(self, self.dic)
        self._lc = logging_client_from(self.dic.get)

    # Pipeline management.

    def set_default_functions_pipeline(self, transforms: Sequence[AppFunction]) -> None:
        """Set the transforms of the default pipeline, creating it if needed."""
        pipeline = self.get_default_pipeline()
        self.set_functions_pipeline_transforms(pipeline.id, transforms)

    def set_functions_pipeline_transforms(
        self, pipeline_id: str, transforms: Optional[Sequence[AppFunction]]
    ) -> None:
        """Set the transforms of an existing pipeline; unknown IDs are ignored."""
        with self._lock:
            pipeline = self._pipelines.get(pipeline_id)
            if pipeline is not None:
                pipeline.transforms = list(transforms) if transforms is not None else None
                pipeline.hash = calculate_pipeline_hash(transforms)
        if pipeline is None:
            self._lc.warning("Unable to set transforms for `%s` pipeline: Pipeline not found", pipeline_id)
        else:
            self._lc.info("Transforms set for `%s` pipeline", pipeline_id)

    def set_functions_pipeline_topics(self, pipeline_id: str, topics: Sequence[str]) -> None:
        """Set the topics of an existing pipeline; unknown IDs are ignored."""
        with self._lock:
            pipeline = self._pipelines.get(pipeline_id)
            if pipeline is not None:
                pipeline.topics = list(topics)
        if pipeline is None:
            self._lc.warning("Unable to set topics for `%s` pipeline: Pipeline not found", pipeline_id)
        else:
            self._lc.info("Topics set for `%s` pipeline", pipeline_id)

    def clear_all_functions_pipeline_transforms(self) -> None:
        """Remove the transforms of every pipeline."""
        with self._lock:
            for pipeline in self._pipelines.values():
                pipeline.transforms = None
                pipeline.hash = ""

    def remove_all_function_pipelines(self) -> None:
        """Remove every pipeline and unregister its metrics."""
        manager = metrics_manager_from(self.dic.get)
        with self._lock:
            for pipeline_id in list(self._pipelines):
                if manager is not None:
                    for name in (
                        PIPELINE_MESSAGES_PROCESSED_NAME,
                        PIPELINE_MESSAGE_PROCESSING_TIME_NAME,
                        PIPELINE_PROCESSING_ERRORS_NAME,
                    ):
                        manager.unregister(pipeline_metric_name(name, pipeline_id))
                del self._pipelines[pipeline_id]

    def add_functions_pipeline(
        self, pipeline_id: str, topics: Sequence[str], transforms: Sequence[AppFunction]
    ) -> None:
        """Add a new pipeline; raises ValueError if the ID is taken."""
        with self._lock:
            if pipeline_id in self._pipelines:
                raise ValueError(f"pipeline with Id='{pipeline_id}' already exists")
            self._add_functions_pipeline(pipeline_id, topics, transforms)

    def _add_functions_pipeline(
        self,
        pipeline_id: str,
        topics: Sequence[str],
        transforms: Optional[Sequence[AppFunction]],
    ) -> FunctionPipeline:
        pipeline = new_function_pipeline(pipeline_id, topics, transforms)
        with self._lock:
            self._pipelines[pipeline_id] = pipeline

        manager = metrics_manager_from(self.dic.get)
        if manager is not None:
            self._register_metric(manager, PIPELINE_MESSAGES_PROCESSED_NAME, pipeline_id, pipeline.messages_processed)
            self._register_metric(
                manager, PIPELINE_MESSAGE_PROCESSING_TIME_NAME, pipeline_id, pipeline.message_processing_time
            )
            self._register_metric(manager, PIPELINE_PROCESSING_ERRORS_NAME, pipeline_id, pipeline.processing_errors)
        return pipeline

    def _register_metric(self, manager: Any, metric_name: str, pipeline_id: str, metric: Any) -> None:
        name = pipeline_metric_name(metric_name, pipeline_id)
        try:
            manager.register(name, metric, {"pipeline": pipeline_id})
        except Exception as exc:  # metrics backends raise their own error types
            self._lc.warning("Unable to register %s metric. Metric will not be reported : %s", name, exc)
        else:
            self._lc.info("%s metric has been registered and will be reported (if enabled)", name)

    def get_default_pipeline(self) -> FunctionPipeline:
        """Return the default pipeline, creating an empty one that matches every topic."""
        with self._lock:
            pipeline = self._pipelines.get(DEFAULT_PIPELINE_ID)
            if pipeline is None:
                pipeline = self._add_functions_pipeline(DEFAULT_PIPELINE_ID, [TOPIC_WILDCARD], None)
            return pipeline

    def get_matching_pipelines(self, incoming_topic: str) -> list[FunctionPipeline]:
        """Return the pipelines whose topics match the incoming topic."""
        with self._lock:
            pipelines = list(self._pipelines.values())
        return [p for p in pipelines if topic_matches(incoming_topic, p.topics)]

    def get_pipeline_by_id(self, pipeline_id: str) -> Optional[FunctionPipeline]:
        """Return the pipeline with the given ID, or None."""
        with self._lock:
            return self._pipelines.get(pipeline_id)

    # Message handling.

    def process_message(
        self, app_context: Context, target: Any, pipeline: FunctionPipeline
    ) -> Optional[MessageError]:
        """Run target through the pipeline; returns None on success."""
        if not pipeline.transforms:
            err = RuntimeError(
                f"no transforms configured for pipleline Id='{pipeline.id}'. "
                "Please check log for earlier errors loading pipeline"
            )
            self._log_error(err, app_context.correlation_id)
            return MessageError(err, HTTPStatus.INTERNAL_SERVER_ERROR)

        app_context.add_value(PIPELINE_ID, pipeline.id)
        self._lc.debug("Pipeline '%s' processing message %d Transforms", pipeline.id, len(pipeline.transforms))

        # Copy so that an update of the pipeline does not disturb this execution.
        with self._lock:
            exec_pipeline = dataclasses.replace(pipeline, transforms=list(pipeline.transforms or ()))

        return self.execute_pipeline(target, app_context, exec_pipeline, 0, False)

    def decode_message(self, app_context: Context, envelope: MessageEnvelope) -> Any:
        """Decode the envelope's payload into the target type and record its metadata.

        Raises MessageError; its invalid_message flag tells whether the message itself was bad.
        """
        if self.target_type is None:
            self.target_type = Event

        if not isinstance(self.target_type, type):
            err = TypeError("TargetType must be a type, not a value of the target type")
            self._log_error(err, envelope.correlation_id)
            raise MessageError(err, HTTPStatus.INTERNAL_SERVER_ERROR, False)

        target_type = self.target_type
        if issubclass(target_type, (bytes, bytearray)):
            self._lc.debug("Expecting raw byte data")
            target: Any = envelope.payload
        elif issubclass(target_type, Event):
            self._lc.debug("Expecting an AddEventRequest or Event DTO")
            try:
                event = self._process_event_payload(envelope)
            except (_DecodeError, ValueError, TypeError) as exc:
                err = ValueError(f"unable to process payload {exc}")
                self._log_error(err, envelope.correlation_id)
                raise MessageError(err, HTTPStatus.BAD_REQUEST, True) from exc

            self._debug_log_event(event)
            app_context.add_value(DEVICE_NAME, event.device_name)
            app_context.add_value(PROFILE_NAME, event.profile_name)
            app_context.add_value(SOURCE_NAME, event.source_name)
            target = event
        else:
            type_name = target_type.__qualname__
            self._lc.debug("Expecting a custom type of %s", type_name)
            try:
                target = _build_custom(target_type, self._unmarshal_payload(envelope))
            except (_DecodeError, ValueError, TypeError) as exc:
                err = ValueError(f"unable to process custom object received of type '{type_name}': {exc}")
                self._log_error(err, envelope.correlation_id)
                raise MessageError(err, HTTPStatus.BAD_REQUEST, True) from exc

        app_context.correlation_id = envelope.correlation_id
        app_context.input_content_type = envelope.content_type
        app_context.add_value(RECEIVED_TOPIC, envelope.received_topic)
        return target

    def execute_pipeline(
        self,
        target: Any,
        app_context: Context,
        pipeline: FunctionPipeline,
        start_position: int,
        is_retry: bool,
    ) -> Optional[MessageError]:
        """Run the transforms from start_position on; returns None on success.

        A transform ends the pipeline by returning False; if its result is an
        exception the pipeline failed, and retry data it set is stored.
        """
        transforms = pipeline.transforms or []
        result: Any = None
        for index, transform in enumerate(transforms[start_position:], start=start_position):
            app_context.retry_data = None
            continue_pipeline, result = transform(app_context, target if result is None else result)
            if continue_pipeline:
                continue
            if isinstance(result, BaseException):
                app_context.logging_client().error(
                    "Pipeline (%s) function #%d resulted in error: %s (%s=%s)",
                    pipeline.id,
                    index,
                    result,
                    CORRELATION_HEADER,
                    app_context.correlation_id,
                )
                if app_context.retry_data is not None and not is_retry:
                    self.store_forward.store_for_later_retry(app_context.retry_data, app_context, pipeline, index)
                pipeline.processing_errors.inc(1)
                return MessageError(result, HTTPStatus.UNPROCESSABLE_ENTITY)
            break
        return None

    def start_store_and_forward(
        self, app_stop: threading.Event, enabled_stop: threading.Event, service_key: str
    ) -> threading.Thread:
        """Start the store-and-forward retry loop; it ends when either event is set."""
        return self.store_forward.start_retry_loop(app_stop, enabled_stop, service_key)

    # Helpers.

    def _process_event_payload(self, envelope: MessageEnvelope) -> Event:
        self._lc.debug("Attempting to process Payload as an AddEventRequest DTO")
        data = self._unmarshal_payload(envelope)
        try:
            event = _event_from_add_request(data)
        except (ValueError, TypeError) as request_error:
            self._lc.debug("Attempting to process Payload as an Event DTO")
            try:
                event = Event.from_dict(data)
                event.validate()
            except (ValueError, TypeError):
                # Still unusable: report the request's contract error.
                raise request_error from None
            self._lc.debug("Using Event DTO received")
            return event
        self._lc.debug("Using Event DTO from AddEventRequest DTO")
        return event

    @staticmethod
    def _unmarshal_payload(envelope: MessageEnvelope) -> Any:
        content_type = envelope.content_type.split(";")[0]
        if content_type == CONTENT_TYPE_JSON:
            try:
                return json.loads(envelope.payload)
            except (ValueError, UnicodeDecodeError) as exc:
                raise _DecodeError(str(exc)) from exc
        if content_type == CONTENT_TYPE_CBOR:
            try:
                return cbor2.loads(envelope.payload)
            except (cbor2.CBORDecodeError, ValueError, EOFError) as exc:
                raise _DecodeError(str(exc)) from exc
        raise _DecodeError(f"unsupported content-type '{envelope.content_type}' recieved")

    def _debug_log_event(self, event: Event) -> None:
        is_enabled = getattr(self._lc, "isEnabledFor", None)
        if callable(is_enabled) and not is_enabled(logging.DEBUG):
            return
        self._lc.debug(
            "Event Received with ProfileName=%s, DeviceName=%s and ReadingCount=%d",
            event.profile_name,
            event.device_name,
            len(event.readings),
        )
        if event.tags:
            self._lc.debug("Event tags are: [%s]", event.tags)
        else:
            self._lc.debug("Event has no tags")
        for number, reading in enumerate(event.readings, start=1):
            if reading.value_type.lower() == VALUE_TYPE_BINARY.lower():
                self._lc.debug(
                    "Reading #%d received with ResourceName=%s, ValueType=%s, MediaType=%s and BinaryValue of size=`%d`",
                    number,
                    reading.resource_name,
                    reading.value_type,
                    reading.media_type,
                    len(reading.binary_value),
                )
            else:
                self._lc.debug(
                    "Reading #%d received with ResourceName=%s, ValueType=%s, Value=`%s`",
                    number,
                    reading.resource_name,
                    reading.value_type,
                    reading.value,
                )

    def _log_error(self, err: BaseException, correlation_id: str) -> None:
        self._lc.error("%s. %s=%s", err, CORRELATION_HEADER, correlation_id)