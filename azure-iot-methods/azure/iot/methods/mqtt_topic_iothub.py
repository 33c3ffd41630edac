# --------------------------------------------------------------------------
# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the MIT License. See License.txt in the project root for
# license information.
# --------------------------------------------------------------------------
"""Topic and username formats for direct methods on the IoT Hub MQTT endpoint"""

import logging
import urllib.parse
from typing import NamedTuple, Union
from . import constant

logger = logging.getLogger(__name__)

# Always URL encode with safe="" so that "/" is encoded too. quote_plus() turns " " into "+",
# which IoT Hub does not accept in a topic.
# Device ID is never URL encoded in a username, as IoT Hub does not decode it.

METHOD_REQUEST_TOPIC_PREFIX = "$iothub/methods/POST/"
METHOD_RESPONSE_TOPIC_FORMAT = "$iothub/methods/res/{status}/?$rid={request_id}"
REQUEST_ID_PROPERTY = "$rid"


class MethodRequestTopic(NamedTuple):
    method_name: str
    request_id: str


def get_username(hostname: str, device_id: str) -> str:
    """Return the username for connecting a device:
    "<hostname>/<deviceId>/?api-version=<api version>"
    """
    return "{}/{}/?api-version={}".format(
        hostname, device_id, urllib.parse.quote(constant.IOTHUB_API_VERSION, safe="")
    )


def get_method_topic_for_subscribe() -> str:
    """Return the topic filter matching every direct method request"""
    return METHOD_REQUEST_TOPIC_PREFIX + "#"


def get_method_topic_for_publish(request_id: str, status: Union[str, int]) -> str:
    """Return the topic for the response to a direct method request:
    "$iothub/methods/res/<status>/?$rid=<requestId>"
    """
    return METHOD_RESPONSE_TOPIC_FORMAT.format(
        status=urllib.parse.quote(str(status), safe=""),
        request_id=urllib.parse.quote(str(request_id), safe=""),
    )


def is_method_topic(topic: str) -> bool:
    return topic.startswith(METHOD_REQUEST_TOPIC_PREFIX)


def parse_method_request_topic(topic: str) -> MethodRequestTopic:
    """Extract the method name and request id from a direct method request topic, which has
    the format "$iothub/methods/POST/{method name}/?$rid={request id}"

    :raises: ValueError if the topic is not a method request topic, or lacks a name or request id
    """
    if not is_method_topic(topic):
        raise ValueError("Not a direct method request topic: {}".format(topic))
    path, _, query = topic[len(METHOD_REQUEST_TOPIC_PREFIX) :].partition("?")
    method_name = urllib.parse.unquote(path.split("/", 1)[0])
    if not method_name:
        raise ValueError("No method name in topic: {}".format(topic))
    properties = urllib.parse.parse_qs(query)
    request_id = properties.get(REQUEST_ID_PROPERTY, [""])[0]
    if not request_id:
        raise ValueError("No request id in topic: {}".format(topic))
    return MethodRequestTopic(method_name=method_name, request_id=request_id)
