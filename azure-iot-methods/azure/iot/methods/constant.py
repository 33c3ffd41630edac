# -------------------------------------------------------------------------
# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the MIT License. See License.txt in the project root for
# license information.
# --------------------------------------------------------------------------
"""This module defines constants for use across the azure-iot-methods package
"""

VERSION = "0.1.0"
IOTHUB_API_VERSION = "2021-04-12"

# Direct method status codes used by the reference responder
METHOD_SUCCESS = 200
METHOD_THROWS = 403
METHOD_NOT_DEFINED = 404

UNKNOWN_METHOD_PAYLOAD_PREFIX = "unknown:"

# Timeouts are in seconds.
# IoT Hub accepts values between 0 and 300 for both timeouts on a direct method invocation
DEFAULT_RESPONSE_TIMEOUT = 200
DEFAULT_CONNECT_TIMEOUT = 5
MAX_METHOD_TIMEOUT = 300
# Additional time the client waits beyond the transport deadlines before abandoning a call
DEFAULT_TIMEOUT_GRACE = 5

# IoT Hub error code for an invocation whose target device never came online.
# Any HTTP 504 is treated as a response timeout
IOTHUB_ERROR_DEVICE_NOT_ONLINE = 404103

MQTT_PORT = 8883
