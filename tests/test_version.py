import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer

import pytest

from edgepipe.config import ClientInfo, Configuration, WritableInfo
from edgepipe.container import CONFIGURATION_NAME, Container
from edgepipe.version import (
    CORE_DEVELOPER_VERSION,
    CORE_METADATA_SERVICE_KEY,
    CORE_PRE_RELEASE_VERSION,
    StartupTimer,
    VersionValidator,
)


def _start_server(body):
    class Handler(BaseHTTPRequestHandler):
        def do_GET(self):
            data = body.encode("utf-8")
            self.send_response(200)
            self.send_header("Content-Length", str(len(data)))
            self.end_headers()
            self.wfile.write(data)

        def log_message(self, *args):
            pass

    server = ThreadingHTTPServer(("127.0.0.1", 0), Handler)
    threading.Thread(target=server.serve_forever, daemon=True).start()
    return server


@pytest.fixture
def core_server():
    servers = []

    def start(core_version):
        if core_version == "{}":
            body = "{}"
        elif core_version == "":
            body = ""
        else:
            body = '{"version" : "%s"}' % core_version
        server = _start_server(body)
        servers.append(server)
        return server.server_address[1]

    yield start
    for server in servers:
        server.shutdown()
        server.server_close()


def _container(port):
    configuration = Configuration(
        writable=WritableInfo(log_level="DEBUG"),
        clients={
            CORE_METADATA_SERVICE_KEY: ClientInfo(host="127.0.0.1", port=port, protocol="http")
        },
    )
    return Container({CONFIGURATION_NAME: lambda get: configuration})


@pytest.mark.parametrize(
    "core_version, sdk_version, skip, expect_failure",
    [
        ("1.1.0", "v1.0.0", False, False),
        ("2.0.0", "v2.0.0-dev.11", False, False),
        ("1.2.1-dev.1", "v1.2.0", False, False),
        ("1.2.1-dev.1", "v1.2.0-dev.4", False, False),
        ("2.0.0", "v1.0.0", False, True),
        ("2.0.0", "v1.0.0", True, False),
        ("1.0.0", "v0.0.0", False, False),
        ("1.0.0", "v0.2.0", False, False),
        ("1.0.0", "", False, True),
        (CORE_PRE_RELEASE_VERSION, "v1.0.0", False, False),
        (CORE_DEVELOPER_VERSION, "v1.0.0", False, False),
        ("12", "v1.0.0", False, True),
        ("", "v1.0.0", False, True),
        ("{}", "v1.0.0", False, True),
    ],
    ids=[
        "compatible",
        "sdk-dev-compatible",
        "core-dev-compatible",
        "both-dev-compatible",
        "incompatible",
        "skip-version-check",
        "running-in-debugger",
        "sdk-beta",
        "sdk-malformed",
        "core-prerelease",
        "core-developer",
        "core-malformed",
        "core-json-bad",
        "core-json-empty",
    ],
)
def test_validate_version_match(core_server, core_version, sdk_version, skip, expect_failure):
    port = core_server(core_version)
    validator = VersionValidator(skip, sdk_version)
    timer = StartupTimer(duration=0.3, interval=0.05)

    result = validator.bootstrap_handler(_container(port), timer)

    assert (not result) == expect_failure


def test_missing_core_metadata_client_fails():
    configuration = Configuration()
    dic = Container({CONFIGURATION_NAME: lambda get: configuration})
    validator = VersionValidator(False, "v1.0.0")

    assert validator.bootstrap_handler(dic, StartupTimer(duration=0.1, interval=0.01)) is False


def test_unreachable_core_fails_after_retries():
    server = _start_server("{}")
    port = server.server_address[1]
    server.shutdown()
    server.server_close()
    validator = VersionValidator(False, "v2.1.0")

    assert validator.bootstrap_handler(_container(port), StartupTimer(duration=0.2, interval=0.05)) is False


def test_startup_timer_elapses():
    assert StartupTimer(duration=60.0).has_not_elapsed() is True
    assert StartupTimer(duration=0.0).has_not_elapsed() is False