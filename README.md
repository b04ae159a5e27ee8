# edgepipe

`edgepipe` is a library for writing edge application services. You feed it
messages. It decodes each one into an `Event` or into a type of your own, then
runs it through chains of functions called pipelines. When a pipeline function
fails while exporting data, the data can be stored and retried later.

## Installation

```
pip install edgepipe
```

For development, install the test extra and run the tests:

```
pip install -e ".[test]"
pytest
```

## Modules

- `edgepipe.config`
  - `Configuration` and its sections: `WritableInfo`, `PipelineInfo`,
    `StoreAndForwardInfo`, `TriggerInfo`, `ClientInfo` and the others.
  - `Configuration.from_dict` builds a configuration from a mapping. Keys are
    matched without regard to case.
  - `Configuration.to_dict` returns a mapping with the wire key names, such as
    `Writable` and `StoreAndForward`.
  - `update_from_raw`, `update_writable_from_raw` and `get_bootstrap` are also
    available.
  - `pipeline_metric_name` builds the name of a per-pipeline metric.
- `edgepipe.container`
  - `Container` is a small dependency container. It builds each named service
    lazily, once, from a constructor that receives the container's `get`.
    `update` replaces constructors.
  - Helpers: `configuration_from`, `store_client_from`, `logging_client_from`,
    `secret_provider_from` and `metrics_manager_from`.
  - When no logging client is registered, `logging_client_from` returns the
    standard `logging` logger named `edgepipe`.
- `edgepipe.atomic`: `AtomicBool`, a boolean guarded by a lock.
- `edgepipe.context`: `Context`, the object every pipeline function receives.
  It holds:
  - the correlation id
  - the input and response content types
  - response data and retry data
  - a store of string values with case-insensitive keys (`add_value`,
    `get_value`, `remove_value`, `get_all_values`)

  `apply_values` replaces `{key}` placeholders with stored values. It raises
  `PlaceholderError` when any placeholder has no value. `clone` copies the
  context so that its values can change independently.
- `edgepipe.runtime`
  - `FunctionsPipelineRuntime` holds the pipelines: a default pipeline that
    matches every topic, and per-topic pipelines added with
    `add_functions_pipeline`.
  - `decode_message` decodes a `MessageEnvelope` that holds JSON or CBOR.
  - `process_message` and `execute_pipeline` run a message through a
    `FunctionPipeline`.
  - `topic_matches` implements the `#` wildcard rules.
  - `calculate_pipeline_hash` gives a pipeline's version string.
- `edgepipe.storeforward`
  - `StoreForward` stores failed export data as `StoredObject` records and
    retries them.
  - An item is dropped when one of these happens:
    - its retry succeeds
    - `MaxRetryCount` is reached (0 means no limit)
    - its pipeline is gone
    - its pipeline's version has changed
  - `start_retry_loop` runs the retries in a background thread every
    `RetryInterval`. The interval is at least one second.
  - `parse_duration` parses durations such as `"1m30s"` or `"500ms"` into
    seconds.
- `edgepipe.version`: `VersionValidator.bootstrap_handler` asks core metadata
  for its version at `/api/v2/version`, using the `core-metadata` entry under
  `Clients`. It retries while the `StartupTimer` has time left. It returns
  True when the major versions match or when the check does not apply.
- `edgepipe.controller`: `Controller` handles the ping, version, config and
  add-secret requests. It takes werkzeug `Request` objects and returns werkzeug
  `Response` objects.
- `edgepipe.etm`: `new_aes256_sha512` returns an `EtmAead` that implements
  AEAD_AES_256_CBC_HMAC_SHA_512. `open` raises `AuthenticationError` when the
  message or its associated data has been altered.

## Running a pipeline

```python
import json
import uuid

from edgepipe.container import Container
from edgepipe.context import Context
from edgepipe.runtime import FunctionsPipelineRuntime, MessageEnvelope, MessageError

container = Container({})
runtime = FunctionsPipelineRuntime("my-service", None, container)

def upper_device(ctx, event):
    return True, event.device_name.upper()

def respond(ctx, data):
    ctx.response_data = data.encode()
    return False, None

runtime.set_default_functions_pipeline([upper_device, respond])

origin = 1_700_000_000_000_000_000
payload = json.dumps({
    "apiVersion": "v2",
    "event": {
        "apiVersion": "v2",
        "id": str(uuid.uuid4()),
        "deviceName": "thermostat-1",
        "profileName": "Thermostat",
        "sourceName": "Temperature",
        "origin": origin,
        "readings": [{
            "id": str(uuid.uuid4()),
            "origin": origin,
            "deviceName": "thermostat-1",
            "resourceName": "Temperature",
            "profileName": "Thermostat",
            "valueType": "Int64",
            "value": "72",
        }],
    },
}).encode()

ctx = Context("corr-id", container, "")
envelope = MessageEnvelope(
    correlation_id="corr-id",
    payload=payload,
    content_type="application/json",
    received_topic="edgex/events/Thermostat/thermostat-1/Temperature",
)

try:
    target = runtime.decode_message(ctx, envelope)
except MessageError as exc:
    print("bad message:", exc.error_code, exc)
else:
    error = runtime.process_message(ctx, target, runtime.get_default_pipeline())
    print(error, ctx.response_data)   # None b'THERMOSTAT-1'
```

`decode_message` uses the runtime's target type, which is `Event` by default.
The payload can be an AddEventRequest or a bare event. The decoder also
accepts:

- a `bytes` target type, which passes the payload through unchanged;
- any other class, built with its `from_dict` if it has one, from the fields
  of a dataclass, or from keyword arguments.

A payload that cannot be decoded raises `MessageError` with status 400 and
`invalid_message` set. A target type given as a value rather than a type
raises `MessageError` with status 500.

A pipeline function takes the context and the data. It returns a pair: whether
the pipeline should go on, and the result. The result is passed to the next
function. A function stops the pipeline by returning `False`. If its result is
an exception instance, the pipeline has failed, and `execute_pipeline` returns
a `MessageError` with status 422. If the function set `ctx.retry_data`, that
data is stored for a later retry. `process_message` returns a `MessageError`
with status 500 when the pipeline has no transforms.

## Services you supply

The container gives the package its collaborators. Register them under the
names in `edgepipe.container`:

- **Store client** (`STORE_CLIENT_NAME`): `store(item)`,
  `retrieve_from_store(service_key)`, `update(item)` and
  `remove_from_store(item)`, working on `StoredObject` records.
- **Secret provider** (`SECRET_PROVIDER_NAME`): `get_secret(path, *keys)`,
  `secrets_last_updated()` and `store_secret(path, secrets)`.
- **Metrics manager** (`METRICS_MANAGER_NAME`): `register(name, metric, tags)`
  and `unregister(name)`. When one is registered, every pipeline registers
  three metrics with it.
- **Event client** (`EVENT_CLIENT_NAME`): `add(request)`, used by
  `Context.push_to_core`.
- **Device profile client** (`DEVICE_PROFILE_CLIENT_NAME`):
  `device_resource_by_profile_name_and_resource_name(profile, resource)`, used
  by `Context.get_device_resource`.
- **Configuration** (`CONFIGURATION_NAME`): a `Configuration`.

## REST handlers

```python
from werkzeug.wrappers import Request

from edgepipe.config import Configuration
from edgepipe.container import CONFIGURATION_NAME, Container
from edgepipe.controller import Controller

container = Container({CONFIGURATION_NAME: lambda get: Configuration()})
controller = Controller(container, "my-service", application_version="1.2.0", sdk_version="2.3.0")

response = controller.ping(Request.from_values(headers={"X-Correlation-ID": "abc"}))
print(response.status_code, response.get_json())
```

Every response is JSON and echoes the `X-Correlation-ID` request header.

- `add_secret` answers 201 when the secret is stored.
- It answers 400 when the request body breaks the contract: no API version, a
  request id that is not a UUID, no path, or empty secret data.
- It answers 500 when the secret store fails.

## Authenticated encryption

```python
import os
from edgepipe.etm import new_aes256_sha512

aead = new_aes256_sha512(os.urandom(64))
nonce = os.urandom(aead.nonce_size)
sealed = aead.seal(nonce, b"secret value", b"public value")
assert aead.open(None, sealed, b"public value") == b"secret value"
```

## What the package does not do

- It does not run an HTTP server or route requests. `Controller` methods are
  handlers that you mount in your own WSGI application.
- It does not connect to a message bus or an MQTT broker. You build the
  `MessageEnvelope` objects and hand them to the runtime.
- It does not build pipelines from the `Pipeline` section of the
  configuration, and it has no built-in pipeline functions.
- It has no database, secret store, metrics reporter or core-service clients
  of its own. You supply them as described above.
- It has no command-line program.