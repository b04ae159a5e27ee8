"""Service configuration model and well-known names used across the service."""

import dataclasses
from dataclasses import dataclass, field
from typing import Any, Mapping, get_args, get_origin

CONFIG_REGISTRY_STEM = "edgex/appservices/"

API_BASE = "/api/v2"
API_TRIGGER_ROUTE = API_BASE + "/trigger"
API_ADD_SECRET_ROUTE = API_BASE + "/secret"

# Overwritten by the build or by the embedding application.
SDK_VERSION = "0.0.0"
APPLICATION_VERSION = "0.0.0"

MESSAGES_RECEIVED_NAME = "MessagesReceived"
INVALID_MESSAGES_RECEIVED_NAME = "InvalidMessagesReceived"
PIPELINE_ID_TXT = "{PipelineId}"
PIPELINE_MESSAGES_PROCESSED_NAME = "PipelineMessagesProcessed-" + PIPELINE_ID_TXT
PIPELINE_MESSAGE_PROCESSING_TIME_NAME = "PipelineMessageProcessingTime-" + PIPELINE_ID_TXT
PIPELINE_PROCESSING_ERRORS_NAME = "PipelineProcessingErrors-" + PIPELINE_ID_TXT
HTTP_EXPORT_SIZE_NAME = "HttpExportSize"
MQTT_EXPORT_SIZE_NAME = "MqttExportSize"

METRICS_RESERVOIR_SIZE = 1028


def pipeline_metric_name(metric_name: str, pipeline_id: str) -> str:
    """Return the registered name of a per-pipeline metric."""
    return metric_name.replace(PIPELINE_ID_TXT, pipeline_id, 1)


def _keyed(key: str, **kwargs: Any) -> Any:
    return field(metadata={"key": key}, **kwargs)


def _key(f: dataclasses.Field) -> str:
    explicit = f.metadata.get("key")
    if explicit:
        return explicit
    return "".join(part.capitalize() for part in f.name.split("_"))


def _to_plain(value: Any) -> Any:
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return {_key(f): _to_plain(getattr(value, f.name)) for f in dataclasses.fields(value)}
    if isinstance(value, Mapping):
        return {k: _to_plain(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_to_plain(v) for v in value]
    return value


def _from_plain(hint: Any, value: Any) -> Any:
    if isinstance(hint, type) and dataclasses.is_dataclass(hint):
        return _build(hint, value)
    origin = get_origin(hint)
    if origin is dict:
        args = get_args(hint)
        value_type = args[1] if len(args) == 2 else Any
        return {str(k): _from_plain(value_type, v) for k, v in value.items()}
    if origin is list:
        args = get_args(hint)
        item_type = args[0] if args else Any
        return [_from_plain(item_type, v) for v in value]
    if hint in (bool, int, float, str):
        return hint(value)
    if isinstance(value, Mapping):
        return dict(value)
    return value


def _build(cls: type, data: Any) -> Any:
    if not isinstance(data, Mapping):
        raise TypeError(f"expected a mapping to build {cls.__name__}, got {type(data).__name__}")
    lookup = {str(k).lower(): v for k, v in data.items()}
    kwargs = {}
    for f in dataclasses.fields(cls):
        if not f.init:
            continue
        raw = lookup.get(_key(f).lower())
        if raw is not None:
            kwargs[f.name] = _from_plain(f.type, raw)
    return cls(**kwargs)


@dataclass
class ServiceInfo:
    """Standard service settings."""

    health_check_interval: str = ""
    host: str = ""
    port: int = 0
    server_bind_addr: str = ""
    startup_msg: str = ""
    max_result_count: int = 0
    max_request_size: int = 0
    request_timeout: str = ""


@dataclass
class RegistryInfo:
    """Connection settings of the registry service."""

    host: str = ""
    port: int = 0
    type: str = ""


@dataclass
class ClientInfo:
    """Connection settings of a dependent service client."""

    host: str = ""
    port: int = 0
    protocol: str = ""
    use_message_bus: bool = False

    def url(self) -> str:
        """Base URL of the client's service."""
        return f"{self.protocol}://{self.host}:{self.port}"


@dataclass
class SecretStoreInfo:
    """Connection settings of the secret store used in secure mode."""

    type: str = ""
    host: str = ""
    port: int = 0
    path: str = ""
    protocol: str = ""
    namespace: str = ""
    root_ca_cert_path: str = ""
    server_name: str = ""
    token_file: str = ""
    secrets_file: str = ""
    disable_scrub_secrets_file: bool = False


@dataclass
class TelemetryInfo:
    """Metrics reporting settings."""

    interval: str = ""
    publish_topic_prefix: str = ""
    metrics: dict[str, bool] = field(default_factory=dict)
    tags: dict[str, str] = field(default_factory=dict)


@dataclass
class DatabaseInfo:
    """Connection settings of the store-and-forward database."""

    type: str = ""
    host: str = ""
    port: int = 0
    timeout: str = ""
    max_idle: int = 0
    batch_size: int = 0


@dataclass
class StoreAndForwardInfo:
    """Settings of the store-and-forward retry mechanism."""

    enabled: bool = False
    retry_interval: str = ""
    max_retry_count: int = 0


@dataclass
class TopicPipeline:
    """A pipeline run only for incoming topics that match its topics."""

    id: str = ""
    topics: str = ""
    execution_order: str = ""


@dataclass
class PipelineFunction:
    """Parameters of a configurable built-in pipeline function."""

    parameters: dict[str, str] = field(default_factory=dict)


@dataclass
class PipelineInfo:
    """Top level data for configurable pipelines."""

    execution_order: str = ""
    per_topic_pipelines: dict[str, TopicPipeline] = field(default_factory=dict)
    use_target_type_of_byte_array: bool = False
    use_target_type_of_metric: bool = False
    functions: dict[str, PipelineFunction] = field(default_factory=dict)


@dataclass
class WritableInfo:
    """Configuration that can change while the service runs."""

    log_level: str = ""
    pipeline: PipelineInfo = field(default_factory=PipelineInfo)
    store_and_forward: StoreAndForwardInfo = field(default_factory=StoreAndForwardInfo)
    insecure_secrets: dict[str, dict] = field(default_factory=dict)
    telemetry: TelemetryInfo = field(default_factory=TelemetryInfo)


@dataclass
class HttpConfig:
    """Additional settings of the HTTP server."""

    protocol: str = ""
    secret_name: str = ""
    https_cert_name: str = _keyed("HTTPSCertName", default="")
    https_key_name: str = _keyed("HTTPSKeyName", default="")


@dataclass
class SubscribeHostInfo:
    """Message bus host used for subscribing."""

    host: str = ""
    port: int = 0
    protocol: str = ""
    subscribe_topics: str = ""


@dataclass
class PublishHostInfo:
    """Message bus host used for publishing."""

    host: str = ""
    port: int = 0
    protocol: str = ""
    publish_topic: str = ""


@dataclass
class MessageBusConfig:
    """Settings needed to connect to the message bus."""

    subscribe_host: SubscribeHostInfo = field(default_factory=SubscribeHostInfo)
    publish_host: PublishHostInfo = field(default_factory=PublishHostInfo)
    type: str = ""
    optional: dict[str, str] = field(default_factory=dict)


@dataclass
class ExternalMqttConfig:
    """Broker settings of the external MQTT trigger."""

    url: str = ""
    subscribe_topics: str = ""
    publish_topic: str = ""
    client_id: str = ""
    connect_timeout: str = ""
    auto_reconnect: bool = False
    keep_alive: int = 0
    qos: int = _keyed("QoS", default=0)
    retain: bool = False
    skip_cert_verify: bool = False
    secret_path: str = ""
    auth_mode: str = ""
    retry_duration: int = 0
    retry_interval: int = 0


@dataclass
class TriggerInfo:
    """Settings of the trigger that starts the pipelines."""

    type: str = ""
    edgex_message_bus: MessageBusConfig = field(default_factory=MessageBusConfig)
    external_mqtt: ExternalMqttConfig = field(default_factory=ExternalMqttConfig)


@dataclass
class Credentials:
    """A username and password pair."""

    username: str = ""
    password: str = ""


@dataclass
class BootstrapConfiguration:
    """The configuration elements needed while bootstrapping."""

    clients: dict[str, ClientInfo] = field(default_factory=dict)
    service: ServiceInfo = field(default_factory=ServiceInfo)
    registry: RegistryInfo = field(default_factory=RegistryInfo)
    secret_store: SecretStoreInfo = field(default_factory=SecretStoreInfo)


@dataclass
class Configuration:
    """Complete configuration of an application service."""

    writable: WritableInfo = field(default_factory=WritableInfo)
    registry: RegistryInfo = field(default_factory=RegistryInfo)
    service: ServiceInfo = field(default_factory=ServiceInfo)
    http_server: HttpConfig = field(default_factory=HttpConfig)
    trigger: TriggerInfo = field(default_factory=TriggerInfo)
    application_settings: dict[str, str] = field(default_factory=dict)
    clients: dict[str, ClientInfo] = field(default_factory=dict)
    database: DatabaseInfo = field(default_factory=DatabaseInfo)
    secret_store: SecretStoreInfo = field(default_factory=SecretStoreInfo)

    def update_from_raw(self, raw_config: Any) -> bool:
        """Overwrite this configuration with one read from the registry.

        Returns False when the raw value is not a configuration or holds no service port.
        """
        if not isinstance(raw_config, Configuration):
            return False
        if raw_config.service.port == 0:
            return False
        for f in dataclasses.fields(self):
            setattr(self, f.name, getattr(raw_config, f.name))
        return True

    def update_writable_from_raw(self, raw_writable: Any) -> bool:
        """Replace the writable section; returns False for anything but WritableInfo."""
        if not isinstance(raw_writable, WritableInfo):
            return False
        self.writable = raw_writable
        return True

    def get_bootstrap(self) -> BootstrapConfiguration:
        """Return the elements needed while bootstrapping."""
        return BootstrapConfiguration(
            clients=self.clients,
            service=self.service,
            registry=self.registry,
            secret_store=self.secret_store,
        )

    def to_dict(self) -> dict[str, Any]:
        """Plain mapping with the service's wire key names."""
        return _to_plain(self)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Configuration":
        """Build a configuration from a mapping; keys match case-insensitively."""
        return _build(cls, data)