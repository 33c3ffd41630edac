# -------------------------------------------------------------------------
# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the MIT License. See License.txt in the project root for
# license information.
# --------------------------------------------------------------------------

import json
import logging
import os
import socks
from typing import Optional
from . import constant
from . import connection_string as cs


logger = logging.getLogger(__name__)

SETTINGS_FILENAME = "_e2e_settings.json"
ENV_CONNECTION_STRING = "IOTHUB_E2E_CONNECTION_STRING"
ENV_CONNECTION_STRING_FALLBACK = "IOTHUB_CONNECTION_STRING"
ENV_BACKEND = "IOTHUB_E2E_BACKEND"

BACKEND_MEMORY = "memory"
BACKEND_IOTHUB = "iothub"
BACKEND_CHOICES = [BACKEND_MEMORY, BACKEND_IOTHUB]


string_to_socks_constant_map = {"HTTP": socks.HTTP, "SOCKS4": socks.SOCKS4, "SOCKS5": socks.SOCKS5}
socks_constant_to_string_map = {socks.HTTP: "HTTP", socks.SOCKS4: "SOCKS4", socks.SOCKS5: "SOCKS5"}


class ProxyOptions:
    """
    A class containing various options to send traffic through proxy servers, for both the
    HTTPS service transport and the MQTT device session.
    """

    def __init__(
        self,
        proxy_type: str,
        proxy_address: str,
        proxy_port: Optional[int] = None,
        proxy_username: Optional[str] = None,
        proxy_password: Optional[str] = None,
    ):
        """
        Initializer for proxy options.
        :param str proxy_type: The type of the proxy server. This can be one of three possible choices: "HTTP", "SOCKS4", or "SOCKS5"
        :param str proxy_address: IP address or DNS name of proxy server
        :param int proxy_port: The port of the proxy server. Defaults to 1080 for socks and 8080 for http.
        :param str proxy_username: (optional) username for the proxy
        :param str proxy_password: (optional) password for the proxy
        """
        (self.proxy_type, self.proxy_type_socks) = _format_proxy_type(proxy_type)
        self.proxy_address = proxy_address
        if proxy_port is None:
            self.proxy_port = _derive_default_proxy_port(self.proxy_type)
        else:
            self.proxy_port = int(proxy_port)
        self.proxy_username = proxy_username
        self.proxy_password = proxy_password


class MethodClientConfig:
    """
    Class for storing the options used by an InvocationClient
    """

    def __init__(
        self,
        *,
        default_response_timeout: float = constant.DEFAULT_RESPONSE_TIMEOUT,
        default_connect_timeout: float = constant.DEFAULT_CONNECT_TIMEOUT,
        timeout_grace: float = constant.DEFAULT_TIMEOUT_GRACE,
    ) -> None:
        """Initializer for MethodClientConfig

        :param float default_response_timeout: Seconds to wait for a response when an
            invocation does not specify a response timeout
        :param float default_connect_timeout: Seconds to wait for the target to come online when
            an invocation does not specify a connect timeout
        :param float timeout_grace: Seconds the client waits beyond the invocation's own
            deadlines before abandoning a call the transport never completed
        """
        self.default_response_timeout = _sanitize_method_timeout(
            default_response_timeout, "default_response_timeout"
        )
        self.default_connect_timeout = _sanitize_method_timeout(
            default_connect_timeout, "default_connect_timeout"
        )
        self.timeout_grace = _sanitize_grace(timeout_grace)


class E2ESettings:
    def __init__(
        self,
        *,
        backend: str = BACKEND_MEMORY,
        iothub_connection_string: Optional[str] = None,
    ) -> None:
        """Settings for running direct method round trips against a hub

        :param str backend: "memory" for the in-process hub, or "iothub" for a live IoT Hub
        :param str iothub_connection_string: Service connection string for a live IoT Hub

        :raises: ValueError if the backend is unknown
        :raises: ValueError if the "iothub" backend is selected without a connection string
        """
        if backend not in BACKEND_CHOICES:
            raise ValueError("Invalid backend '{}'".format(backend))
        if backend == BACKEND_IOTHUB and not iothub_connection_string:
            raise ValueError(
                "An IoT Hub connection string is required for the '{}' backend. Set {} or provide {}".format(
                    BACKEND_IOTHUB, ENV_CONNECTION_STRING, SETTINGS_FILENAME
                )
            )
        self.backend = backend
        self.iothub_connection_string = iothub_connection_string
        self.iothub_hostname: Optional[str] = None
        self.iothub_name: Optional[str] = None
        if iothub_connection_string:
            self.iothub_hostname = cs.ConnectionString(iothub_connection_string)[cs.HOST_NAME]
            self.iothub_name = self.iothub_hostname.split(".")[0]


def get_settings(backend: Optional[str] = None, start_path: Optional[str] = None) -> E2ESettings:
    """Load E2ESettings.

    The settings file is searched for in the start path (default: current working directory)
    and then each of its parents. If no settings file is found, environment variables are used.

    :param str backend: Overrides the backend found in the settings file or environment
    :param str start_path: Directory to begin searching for the settings file in
    """
    secrets = _load_settings_file(start_path or os.getcwd())

    if secrets:
        connection_string = secrets.get("iothubConnectionString", None)
        file_backend = secrets.get("backend", None)
    else:
        connection_string = os.environ.get(
            ENV_CONNECTION_STRING, os.environ.get(ENV_CONNECTION_STRING_FALLBACK)
        )
        file_backend = os.environ.get(ENV_BACKEND)

    return E2ESettings(
        backend=backend or file_backend or BACKEND_MEMORY,
        iothub_connection_string=connection_string,
    )


def _load_settings_file(start_path):
    test_path = os.path.realpath(start_path)
    while True:
        filename = os.path.join(test_path, SETTINGS_FILENAME)
        try:
            with open(filename, "r") as f:
                secrets = json.load(f)
            logger.info("settings loaded from {}".format(filename))
            return secrets
        except FileNotFoundError:
            new_test_path = os.path.dirname(test_path)
            if new_test_path == test_path:
                return None
            test_path = new_test_path


# Sanitization #


def _format_proxy_type(proxy_type):
    """Returns a tuple of formats for proxy type (string, socks library constant)"""
    try:
        return (proxy_type, string_to_socks_constant_map[proxy_type])
    except KeyError:
        try:
            return (socks_constant_to_string_map[proxy_type], proxy_type)
        except KeyError:
            raise ValueError("Invalid Proxy Type")


def _derive_default_proxy_port(proxy_type):
    if proxy_type == "HTTP":
        return 8080
    else:
        return 1080


def _sanitize_method_timeout(timeout, name):
    try:
        timeout = float(timeout)
    except (ValueError, TypeError):
        raise TypeError("Invalid type for '{}'. Must be a numeric value.".format(name))

    if timeout < 0:
        raise ValueError("'{}' cannot be negative".format(name))

    if timeout > constant.MAX_METHOD_TIMEOUT:
        raise ValueError(
            "'{}' cannot exceed {} seconds".format(name, constant.MAX_METHOD_TIMEOUT)
        )

    return timeout


def _sanitize_grace(grace):
    try:
        grace = float(grace)
    except (ValueError, TypeError):
        raise TypeError("Invalid type for 'timeout_grace'. Must be a numeric value.")

    if grace < 0:
        raise ValueError("'timeout_grace' cannot be negative")

    return grace
