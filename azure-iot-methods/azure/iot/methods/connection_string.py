# -------------------------------------------------------------------------
# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the MIT License. See License.txt in the project root for
# license information.
# --------------------------------------------------------------------------
"""This module contains tools for working with IoT Hub connection strings.

A device connection string identifies one device identity on a hub, e.g.
    HostName=<hub>.azure-devices.net;DeviceId=<id>;SharedAccessKey=<key>
A service connection string identifies a shared access policy on a hub, e.g.
    HostName=<hub>.azure-devices.net;SharedAccessKeyName=<policy>;SharedAccessKey=<key>
"""

from collections.abc import Mapping

__all__ = ["ConnectionString", "create_device_connection_string"]

CS_DELIMITER = ";"
CS_VAL_SEPARATOR = "="

HOST_NAME = "HostName"
SHARED_ACCESS_KEY_NAME = "SharedAccessKeyName"
SHARED_ACCESS_KEY = "SharedAccessKey"
SHARED_ACCESS_SIGNATURE = "SharedAccessSignature"
DEVICE_ID = "DeviceId"
MODULE_ID = "ModuleId"
GATEWAY_HOST_NAME = "GatewayHostName"

VALID_KEYS = frozenset(
    [
        HOST_NAME,
        SHARED_ACCESS_KEY_NAME,
        SHARED_ACCESS_KEY,
        SHARED_ACCESS_SIGNATURE,
        DEVICE_ID,
        MODULE_ID,
        GATEWAY_HOST_NAME,
    ]
)


class ConnectionString(Mapping):
    """Read only mapping of the fields in a device or service connection string"""

    def __init__(self, connection_string):
        """
        :param str connection_string: String with connection details provided by Azure
        :raises: ValueError if provided connection_string is invalid
        :raises: TypeError if provided connection_string is not a string
        """
        if not isinstance(connection_string, str):
            raise TypeError("Connection String must be of type str")
        self._fields = _split_fields(connection_string)
        _check_fields(self._fields)
        self._connection_string = connection_string

    def __getitem__(self, key):
        return self._fields[key]

    def __iter__(self):
        return iter(self._fields)

    def __len__(self):
        return len(self._fields)

    def __str__(self):
        return self._connection_string

    __repr__ = __str__

    @property
    def is_service_connection_string(self):
        """True if this connection string identifies a shared access policy rather than a device"""
        return SHARED_ACCESS_KEY_NAME in self._fields and DEVICE_ID not in self._fields


def create_device_connection_string(connection_string, device_id, shared_access_key):
    """Build a device connection string for a device on the same hub as the given connection string

    Only the host name is taken from the provided connection string.

    :param connection_string: Any valid connection string for the hub
    :type connection_string: str or :class:`ConnectionString`
    :param str device_id: The device identity
    :param str shared_access_key: The device's symmetric key

    :returns: A device connection string
    :rtype: str
    """
    if not isinstance(connection_string, ConnectionString):
        connection_string = ConnectionString(connection_string)
    fields = [
        (HOST_NAME, connection_string[HOST_NAME]),
        (DEVICE_ID, device_id),
        (SHARED_ACCESS_KEY, shared_access_key),
    ]
    return CS_DELIMITER.join(key + CS_VAL_SEPARATOR + value for key, value in fields)


def _split_fields(connection_string):
    fields = {}
    for field in connection_string.split(CS_DELIMITER):
        key, separator, value = field.partition(CS_VAL_SEPARATOR)
        if not separator:
            raise ValueError("Invalid Connection String - Unable to parse")
        if key not in VALID_KEYS:
            raise ValueError("Invalid Connection String - Invalid Key '{}'".format(key))
        if key in fields:
            raise ValueError("Invalid Connection String - Duplicate Key '{}'".format(key))
        fields[key] = value
    return fields


def _check_fields(fields):
    """Raise ValueError unless the fields describe exactly one credential for a device or policy"""
    if SHARED_ACCESS_KEY in fields and SHARED_ACCESS_SIGNATURE in fields:
        raise ValueError("Invalid Connection String - Mixed authentication scheme")
    if not fields.get(SHARED_ACCESS_KEY) and not fields.get(SHARED_ACCESS_SIGNATURE):
        raise ValueError("Invalid Connection String - No authentication scheme")
    if not fields.get(HOST_NAME):
        raise ValueError("Invalid Connection String - Missing HostName")
    if not fields.get(DEVICE_ID) and not fields.get(SHARED_ACCESS_KEY_NAME):
        raise ValueError("Invalid Connection String - Missing DeviceId or SharedAccessKeyName")
