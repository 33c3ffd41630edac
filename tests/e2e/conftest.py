# -------------------------------------------------------------------------
# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the MIT License. See License.txt in the project root for
# license information.
# --------------------------------------------------------------------------
import logging
import pytest
from typing import Any, Callable, NamedTuple
from azure.iot.methods import config, provisioning
from azure.iot.methods.emulator import DeviceEmulator
from azure.iot.methods.hub import InMemoryHub
from azure.iot.methods.invocation_client import InvocationClient
from azure.iot.methods.iothub_http_client import IoTHubHTTPClient
from azure.iot.methods.iothub_mqtt_session import IoTHubMQTTSession

logging.basicConfig(
    format="%(asctime)s %(levelname)-8s %(module)s:%(funcName)s:%(message)s",
    level=logging.WARNING,
    datefmt="%Y-%m-%d %H:%M:%S",
)
logging.getLogger("e2e").setLevel(level=logging.DEBUG)
logging.getLogger("paho").setLevel(level=logging.DEBUG)
logging.getLogger("azure.iot").setLevel(level=logging.DEBUG)

logger = logging.getLogger(__name__)
logger.setLevel(level=logging.INFO)


class Backend(NamedTuple):
    registry: Any
    service: Any
    session_factory: Callable[[str], Any]


@pytest.fixture(scope="session")
def settings(request):
    settings = config.get_settings(backend=request.config.getoption("--backend"))
    logger.info("Running end to end tests against the '{}' backend".format(settings.backend))
    return settings


@pytest.fixture(scope="session")
def device_count(request):
    return request.config.getoption("--device-count")


@pytest.fixture
async def backend(settings):
    if settings.backend == config.BACKEND_IOTHUB:
        http_client = IoTHubHTTPClient.from_connection_string(settings.iothub_connection_string)
        yield Backend(
            registry=http_client,
            service=http_client,
            session_factory=IoTHubMQTTSession.from_connection_string,
        )
    else:
        hub = InMemoryHub()
        yield Backend(registry=hub, service=hub, session_factory=hub.create_session)
        await hub.shutdown()


@pytest.fixture
async def device(backend):
    provisioned = await provisioning.provision_device(backend.registry)
    yield provisioned
    await provisioning.deprovision_device(backend.registry, provisioned.device_id)


@pytest.fixture
async def devices(backend, device_count):
    provisioned = []
    try:
        for _ in range(device_count):
            provisioned.append(await provisioning.provision_device(backend.registry))
        yield provisioned
    finally:
        for d in provisioned:
            await provisioning.deprovision_device(backend.registry, d.device_id)


@pytest.fixture
async def emulator(backend, device):
    emulator = DeviceEmulator(device.connection_string, backend.session_factory)
    await emulator.start()
    yield emulator
    await emulator.stop()


@pytest.fixture
def client(backend):
    return InvocationClient(backend.service)
