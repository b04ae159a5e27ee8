import pytest

from edgepipe.config import (
    PIPELINE_MESSAGES_PROCESSED_NAME,
    ClientInfo,
    Configuration,
    ExternalMqttConfig,
    HttpConfig,
    PipelineFunction,
    PipelineInfo,
    RegistryInfo,
    ServiceInfo,
    StoreAndForwardInfo,
    TopicPipeline,
    TriggerInfo,
    WritableInfo,
    pipeline_metric_name,
)


def _sample() -> Configuration:
    return Configuration(
        writable=WritableInfo(
            log_level="DEBUG",
            pipeline=PipelineInfo(
                execution_order="FilterByDeviceName, HTTPExport",
                per_topic_pipelines={
                    "one": TopicPipeline(id="one", topics="edgex/events/#", execution_order="HTTPExport")
                },
                functions={"HTTPExport": PipelineFunction(parameters={"Url": "http://localhost"})},
            ),
            store_and_forward=StoreAndForwardInfo(enabled=True, retry_interval="5s", max_retry_count=10),
        ),
        registry=RegistryInfo(host="localhost", port=8500, type="consul"),
        service=ServiceInfo(host="localhost", port=59700),
        http_server=HttpConfig(https_cert_name="cert"),
        trigger=TriggerInfo(type="external-mqtt", external_mqtt=ExternalMqttConfig(qos=2, client_id="app")),
        application_settings={"DeviceNames": "Random-Integer-Device"},
        clients={"core-metadata": ClientInfo(host="localhost", port=59881, protocol="http")},
    )


def test_pipeline_metric_name_substitutes_id():
    assert pipeline_metric_name(PIPELINE_MESSAGES_PROCESSED_NAME, "p1") == "PipelineMessagesProcessed-p1"


def test_client_url():
    info = ClientInfo(host="localhost", port=59881, protocol="http")
    assert info.url() == "http://localhost:59881"


def test_round_trip_through_dict():
    config = _sample()
    assert Configuration.from_dict(config.to_dict()) == config


def test_to_dict_uses_wire_keys():
    data = _sample().to_dict()
    assert data["Writable"]["LogLevel"] == "DEBUG"
    assert data["Trigger"]["ExternalMqtt"]["QoS"] == 2
    assert data["HttpServer"]["HTTPSCertName"] == "cert"
    assert data["Clients"]["core-metadata"]["Port"] == 59881


def test_from_dict_is_case_insensitive_and_ignores_unknown():
    config = Configuration.from_dict(
        {"writable": {"loglevel": "INFO"}, "SERVICE": {"port": 42}, "Bogus": 1}
    )
    assert config.writable.log_level == "INFO"
    assert config.service.port == 42
    assert config.registry == RegistryInfo()


def test_from_dict_rejects_non_mapping_section():
    with pytest.raises(TypeError):
        Configuration.from_dict({"Writable": "nope"})


def test_update_from_raw_requires_port():
    config = _sample()
    raw = Configuration(writable=WritableInfo(log_level="TRACE"))
    assert config.update_from_raw(raw) is False
    assert config == _sample()


def test_update_from_raw_copies_all():
    config = Configuration()
    raw = _sample()
    assert config.update_from_raw(raw) is True
    assert config == raw


def test_update_from_raw_rejects_other_types():
    config = Configuration()
    assert config.update_from_raw(WritableInfo()) is False
    assert config == Configuration()


def test_update_writable_from_raw():
    config = _sample()
    writable = WritableInfo(log_level="ERROR")
    assert config.update_writable_from_raw(writable) is True
    assert config.writable == writable
    assert config.update_writable_from_raw(Configuration()) is False
    assert config.writable == writable


def test_get_bootstrap_carries_sections():
    config = _sample()
    boot = config.get_bootstrap()
    assert boot.clients == config.clients
    assert boot.service == config.service
    assert boot.registry == config.registry
    assert boot.secret_store == config.secret_store