""" Azure IoT Methods Library

This library provides an emulated device that answers direct methods with a set of reference
handlers, and a service side client and harness for invoking direct methods on it, against
either an in-process hub or a live IoT Hub.
"""

from .responder import MethodResponder  # noqa: F401
from .emulator import DeviceEmulator, run_emulators, create_reference_responder  # noqa: F401
from .invocation_client import InvocationClient  # noqa: F401
from .harness import ParallelInvocationHarness, ExpectedInvocation  # noqa: F401
from .hub import InMemoryHub  # noqa: F401
from .iothub_mqtt_session import IoTHubMQTTSession  # noqa: F401
from .iothub_http_client import IoTHubHTTPClient  # noqa: F401
from .config import MethodClientConfig, ProxyOptions  # noqa: F401
from .exceptions import (  # noqa: F401
    MethodTimeoutError,
    DeviceConnectTimeoutError,
    MethodResponseTimeoutError,
    SessionError,
    CredentialError,
    ProvisioningError,
    DeviceNotFoundError,
    DeviceAlreadyExistsError,
    IoTHubError,
)
from .models import (  # noqa: F401
    MethodInvocation,
    MethodResult,
    DirectMethodRequest,
    DirectMethodResponse,
)
from . import models  # noqa: F401
