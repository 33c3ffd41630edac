# -------------------------------------------------------------------------
# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the MIT License. See License.txt in the project root for
# license information.
# --------------------------------------------------------------------------
import json
from typing import Optional
from .custom_typing import JSONSerializable
from . import constant


class MethodInvocation:
    """Represents a request, made by the service side, to invoke a direct method on a target.

    :ivar str target_id: The device identity the method is invoked on.
    :ivar str method_name: The name of the method to be invoked.
    :ivar payload: The JSON payload being sent with the request.
    :type payload: dict, str, int, float, bool, or None (JSON compatible values)
    :ivar float response_timeout: Seconds to wait for the target to respond.
    :ivar float connect_timeout: Seconds to wait for the target to come online.
    """

    def __init__(
        self,
        target_id: str,
        method_name: str,
        payload: JSONSerializable = None,
        response_timeout: Optional[float] = None,
        connect_timeout: Optional[float] = None,
    ) -> None:
        """Initializer for a MethodInvocation.

        Timeouts left as None are filled in with the package defaults.

        :raises: ValueError if the target_id or method_name is empty
        :raises: TypeError if the target_id or method_name is not a string
        """
        if not isinstance(target_id, str) or not isinstance(method_name, str):
            raise TypeError("'target_id' and 'method_name' must be strings")
        if not target_id:
            raise ValueError("'target_id' cannot be empty")
        if not method_name:
            raise ValueError("'method_name' cannot be empty")
        self.target_id = target_id
        self.method_name = method_name
        self.payload = payload
        self.response_timeout = _sanitize_timeout(
            response_timeout, constant.DEFAULT_RESPONSE_TIMEOUT
        )
        self.connect_timeout = _sanitize_timeout(connect_timeout, constant.DEFAULT_CONNECT_TIMEOUT)

    def __repr__(self) -> str:
        return "MethodInvocation(target_id={!r}, method_name={!r})".format(
            self.target_id, self.method_name
        )

    @property
    def deadline(self) -> float:
        """Total seconds the transport may take before the invocation must be considered failed"""
        return self.connect_timeout + self.response_timeout

    def get_encoded_payload(self) -> bytes:
        """Return the payload as the JSON encoded bytes delivered to the target"""
        return encode_payload(self.payload)


class MethodResult:
    """Represents the result of a completed direct method invocation.

    :ivar int status: The status returned by the target.
    :ivar payload: The payload returned by the target.
    :type payload: dict, str, int, float, bool, or None (JSON compatible values)
    """

    def __init__(self, status: int, payload: JSONSerializable = None) -> None:
        self.status = status
        self.payload = payload

    def __repr__(self) -> str:
        return "MethodResult(status={!r}, payload={!r})".format(self.status, self.payload)

    def __eq__(self, other) -> bool:
        if not isinstance(other, MethodResult):
            return NotImplemented
        return self.status == other.status and self.payload == other.payload


class DirectMethodRequest:
    """Represents a request to invoke a direct method, as received by the target.

    :ivar str request_id: The request id.
    :ivar str name: The name of the method to be invoked.
    :ivar bytes payload: The raw JSON encoded payload sent with the request.
    """

    def __init__(self, request_id: str, name: str, payload: bytes) -> None:
        """Initializer for a DirectMethodRequest.

        :param str request_id: The request id.
        :param str name: The name of the method to be invoked
        :param bytes payload: The raw JSON encoded payload sent with the request.
        """
        self.request_id = request_id
        self.name = name
        self.payload = payload


class DirectMethodResponse:
    """Represents a response to a direct method.

    :ivar str request_id: The request id of the DirectMethodRequest being responded to.
    :ivar int status: The status of the execution of the DirectMethodRequest.
    :ivar payload: The JSON payload to be sent with the response.
    :type payload: dict, str, int, float, bool, or None (JSON compatible values)
    """

    def __init__(self, request_id: str, status: int, payload: JSONSerializable = None) -> None:
        """Initializer for DirectMethodResponse.

        :param str request_id: The request id of the DirectMethodRequest being responded to.
        :param int status: The status of the execution of the DirectMethodRequest.
        :param payload: The JSON payload to be sent with the response. (OPTIONAL)
        :type payload: dict, str, int, float, bool, or None (JSON compatible values)
        """
        self.request_id = request_id
        self.status = status
        self.payload = payload

    @classmethod
    def create_from_method_request(
        cls, method_request: DirectMethodRequest, status: int, payload: JSONSerializable = None
    ) -> "DirectMethodResponse":
        """Factory method for creating a DirectMethodResponse from a DirectMethodRequest.

        :param method_request: The DirectMethodRequest object to respond to.
        :type method_request: DirectMethodRequest.
        :param int status: The status of the execution of the DirectMethodRequest.
        :type payload: dict, str, int, float, bool, or None (JSON compatible values)
        """
        return cls(request_id=method_request.request_id, status=status, payload=payload)

    def to_result(self) -> MethodResult:
        return MethodResult(status=self.status, payload=self.payload)


def encode_payload(payload: JSONSerializable) -> bytes:
    """Encode a JSON payload into UTF-8 bytes. A payload of None is encoded as null."""
    return json.dumps(payload, ensure_ascii=False).encode("utf-8")


def decode_payload(data: Optional[bytes]) -> JSONSerializable:
    """Decode JSON encoded bytes into a payload. Empty data decodes to None."""
    if not data:
        return None
    return json.loads(data.decode("utf-8"))


def _sanitize_timeout(value, default):
    if value is None:
        return default
    try:
        value = float(value)
    except (ValueError, TypeError):
        raise TypeError("Invalid type for timeout. Must be a numeric value.")
    if value < 0:
        raise ValueError("Timeout cannot be negative")
    if value > constant.MAX_METHOD_TIMEOUT:
        raise ValueError(
            "Timeout cannot exceed {} seconds".format(constant.MAX_METHOD_TIMEOUT)
        )
    return value
