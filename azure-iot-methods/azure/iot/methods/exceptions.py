# -------------------------------------------------------------------------
# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the MIT License. See License.txt in the project root for
# license information.
# --------------------------------------------------------------------------
"""Define direct method user-facing exceptions to be shared across package"""


# Invocation Exceptions
class MethodTimeoutError(TimeoutError):
    """Represents a direct method invocation that did not complete before a deadline"""

    pass


class DeviceConnectTimeoutError(MethodTimeoutError):
    """Represents a target that did not come online within the connect timeout"""

    pass


class MethodResponseTimeoutError(MethodTimeoutError):
    """Represents a target that did not respond within the response timeout"""

    pass


# Responder Exceptions
# NOTE: Neither of these ever reach the invoker. They are converted into method responses.
class HandlerError(Exception):
    """Represents a failure raised by a method handler during execution"""

    def __init__(self, method_name, cause):
        self.method_name = method_name
        self.cause = cause
        super().__init__("{}: {}".format(type(cause).__name__, cause))


class UnknownMethodError(Exception):
    """Represents an invocation of a method that has no registered handler"""

    def __init__(self, method_name):
        self.method_name = method_name
        super().__init__("No handler registered for method '{}'".format(method_name))


# Session Exceptions
class SessionError(Exception):
    """Represents a failure from the Session object"""

    pass


class CredentialError(Exception):
    """Represents a failure from an invalid auth credential"""

    pass


# Registry Exceptions
class ProvisioningError(Exception):
    """Represents a failure to create, fetch or remove a device identity"""

    pass


class DeviceNotFoundError(ProvisioningError):
    """Represents a device identity that does not exist"""

    pass


class DeviceAlreadyExistsError(ProvisioningError):
    """Represents an attempt to create a device identity that already exists"""

    pass


# Service Exceptions
class IoTHubError(Exception):
    """Represents a failure reported by IoT Hub"""

    pass
