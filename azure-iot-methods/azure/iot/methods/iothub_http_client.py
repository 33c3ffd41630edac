# --------------------------------------------------------------------------
# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the MIT License. See License.txt in the project root for
# license information.
# --------------------------------------------------------------------------
"""Service side access to a live IoT Hub over HTTPS: direct method invocation and the
device identity registry.
"""

import asyncio
import functools
import json
import logging
import math
import ssl
import urllib.parse
import requests  # type: ignore
from typing import Any, Dict, Optional
from . import config, constant, models
from . import connection_string as cs
from . import exceptions as exc
from . import sastoken as st

logger = logging.getLogger(__name__)

# Header Definitions
HEADER_AUTHORIZATION = "Authorization"
HEADER_IF_MATCH = "If-Match"

# Query parameter definitions
PARAM_API_VERSION = "api-version"

# Other definitions
HTTP_TIMEOUT = 10

# IoT Hub error codes found in failure response bodies
ERROR_DEVICE_NOT_FOUND = 404001


class IoTHubHTTPClient:
    def __init__(
        self,
        *,
        hostname: str,
        shared_access_key_name: str,
        shared_access_key: str,
        ssl_context: Optional[ssl.SSLContext] = None,
        proxy_options: Optional[config.ProxyOptions] = None,
        sastoken_ttl: int = st.DEFAULT_TTL,
    ) -> None:
        """Instantiate the client

        :param str hostname: The hostname of the IoT Hub
        :param str shared_access_key_name: The name of the shared access policy
        :param str shared_access_key: The key of the shared access policy
        :param ssl_context: SSLContext to use for HTTPS. If not provided, a default is used.
        :type ssl_context: :class:`ssl.SSLContext`
        :param proxy_options: Options for sending traffic through a proxy server
        :type proxy_options: :class:`ProxyOptions`
        :param int sastoken_ttl: Lifetime in seconds of the SAS tokens used for authorization

        :raises: ValueError if the shared access key is not valid base64
        """
        self._hostname = hostname
        self._credential = st.SasTokenCredential(
            hostname, shared_access_key, key_name=shared_access_key_name, ttl=sastoken_ttl
        )
        self._proxies = format_proxies(proxy_options)
        self._http_adapter = _create_http_adapter(ssl_context)

    @classmethod
    def from_connection_string(cls, connection_string: str, **kwargs: Any) -> "IoTHubHTTPClient":
        """Instantiate an IoTHubHTTPClient using a service connection string

        :raises: ValueError if the connection string is invalid or is not a service connection
            string with a shared access key
        """
        cs_obj = cs.ConnectionString(connection_string)
        if not cs_obj.is_service_connection_string or cs.SHARED_ACCESS_KEY not in cs_obj:
            raise ValueError(
                "A service connection string with SharedAccessKeyName and SharedAccessKey is required"
            )
        return cls(
            hostname=cs_obj[cs.HOST_NAME],
            shared_access_key_name=cs_obj[cs.SHARED_ACCESS_KEY_NAME],
            shared_access_key=cs_obj[cs.SHARED_ACCESS_KEY],
            **kwargs,
        )

    @property
    def hostname(self) -> str:
        return self._hostname

    # Direct Methods

    async def invoke_direct_method(
        self, invocation: models.MethodInvocation
    ) -> models.MethodResult:
        """Send a request to invoke a direct method on a target device

        :returns: The status and payload returned by the target device
        :rtype: :class:`MethodResult`

        :raises: DeviceNotFoundError if the target device identity does not exist
        :raises: DeviceConnectTimeoutError if the target device was not online in time
        :raises: MethodResponseTimeoutError if the target device did not respond in time
        :raises: IoTHubError if IoT Hub responds with any other failure
        """
        path = "twins/{}/methods".format(urllib.parse.quote(invocation.target_id, safe=""))
        body = {
            "methodName": invocation.method_name,
            "payload": invocation.payload,
            "responseTimeoutInSeconds": math.ceil(invocation.response_timeout),
            "connectTimeoutInSeconds": math.ceil(invocation.connect_timeout),
        }
        logger.debug(
            "Sending direct method invocation request to {}".format(invocation.target_id)
        )
        try:
            response = await self._request(
                "POST", path, body=body, timeout=invocation.deadline + HTTP_TIMEOUT
            )
        except requests.exceptions.Timeout:
            raise exc.MethodResponseTimeoutError(
                "No HTTP response from IoT Hub for '{}' on '{}'".format(
                    invocation.method_name, invocation.target_id
                )
            ) from None

        if response.status_code == 200:
            logger.debug("Successfully received response from IoT Hub for direct method invocation")
            try:
                dm_result = response.json()
                return models.MethodResult(status=dm_result["status"], payload=dm_result.get("payload"))
            except (ValueError, KeyError, TypeError) as e:
                raise exc.IoTHubError("Could not parse direct method response") from e

        error_code = _extract_error_code(response)
        if error_code == constant.IOTHUB_ERROR_DEVICE_NOT_ONLINE:
            raise exc.DeviceConnectTimeoutError(
                "Device '{}' was not online within {} seconds".format(
                    invocation.target_id, invocation.connect_timeout
                )
            )
        elif response.status_code == 504:
            raise exc.MethodResponseTimeoutError(
                "Device '{}' did not respond to '{}' within {} seconds".format(
                    invocation.target_id, invocation.method_name, invocation.response_timeout
                )
            )
        elif error_code == ERROR_DEVICE_NOT_FOUND:
            raise exc.DeviceNotFoundError("Device '{}' not found".format(invocation.target_id))
        else:
            logger.error("Received failure response from IoT Hub for direct method invocation")
            raise exc.IoTHubError(_describe_failure(response))

    # Registry

    async def add_identity(self, device_id: str) -> str:
        """Create a device identity with generated symmetric keys, returning its connection string

        :raises: DeviceAlreadyExistsError if the device identity already exists
        :raises: ProvisioningError if the device identity could not be created
        """
        body = {"deviceId": device_id, "status": "enabled", "authentication": {"type": "sas"}}
        response = await self._registry_request("PUT", device_id, body=body)
        if response.status_code == 409:
            raise exc.DeviceAlreadyExistsError("Device '{}' already exists".format(device_id))
        elif response.status_code != 200:
            raise exc.ProvisioningError(_describe_failure(response))
        logger.debug("Added device identity: {}".format(device_id))
        return self._get_device_connection_string(device_id, response)

    async def get_identity(self, device_id: str) -> str:
        """Return the connection string of an existing device identity

        :raises: DeviceNotFoundError if the device identity does not exist
        :raises: ProvisioningError if the device identity could not be retrieved
        """
        response = await self._registry_request("GET", device_id)
        if response.status_code == 404:
            raise exc.DeviceNotFoundError("Device '{}' not found".format(device_id))
        elif response.status_code != 200:
            raise exc.ProvisioningError(_describe_failure(response))
        return self._get_device_connection_string(device_id, response)

    async def remove_identity(self, device_id: str) -> None:
        """Remove a device identity

        :raises: DeviceNotFoundError if the device identity does not exist
        :raises: ProvisioningError if the device identity could not be removed
        """
        response = await self._registry_request(
            "DELETE", device_id, headers={HEADER_IF_MATCH: "*"}
        )
        if response.status_code == 404:
            raise exc.DeviceNotFoundError("Device '{}' not found".format(device_id))
        elif response.status_code not in (200, 204):
            raise exc.ProvisioningError(_describe_failure(response))
        logger.debug("Removed device identity: {}".format(device_id))

    async def _registry_request(
        self, method: str, device_id: str, body: Any = None, headers: Optional[Dict] = None
    ) -> requests.Response:
        path = "devices/{}".format(urllib.parse.quote(device_id, safe=""))
        try:
            return await self._request(method, path, body=body, headers=headers)
        except (requests.exceptions.RequestException, exc.IoTHubError) as e:
            raise exc.ProvisioningError("Registry request for '{}' failed".format(device_id)) from e

    def _get_device_connection_string(self, device_id: str, response: requests.Response) -> str:
        try:
            primary_key = response.json()["authentication"]["symmetricKey"]["primaryKey"]
        except (ValueError, KeyError, TypeError) as e:
            raise exc.ProvisioningError(
                "No symmetric key returned for device '{}'".format(device_id)
            ) from e
        return "{}={};{}={};{}={}".format(
            cs.HOST_NAME,
            self._hostname,
            cs.DEVICE_ID,
            device_id,
            cs.SHARED_ACCESS_KEY,
            primary_key,
        )

    # HTTP

    async def _request(
        self,
        method: str,
        path: str,
        body: Any = None,
        headers: Optional[Dict] = None,
        timeout: float = HTTP_TIMEOUT,
    ) -> requests.Response:
        """Send a request on the default executor, so that the event loop is never blocked

        :raises: requests.exceptions.Timeout if there is no response within the timeout
        :raises: IoTHubError if the request could not be completed
        """
        request_headers = dict(headers or {})
        request_headers[HEADER_AUTHORIZATION] = str(self._credential.get_token())
        url = "https://{hostname}/{path}".format(hostname=self._hostname, path=path)
        query_params = {PARAM_API_VERSION: constant.IOTHUB_API_VERSION}

        logger.info("sending https {} request to {} .".format(method, path))
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(
                None,
                functools.partial(
                    self._send, method, url, query_params, body, request_headers, timeout
                ),
            )
        except requests.exceptions.Timeout:
            raise
        except requests.exceptions.RequestException as e:
            raise exc.IoTHubError("Unexpected HTTPS failure") from e

    def _send(self, method, url, query_params, body, headers, timeout):
        session = requests.Session()
        session.mount("https://", self._http_adapter)
        try:
            return session.request(
                method,
                url,
                params=query_params,
                data=json.dumps(body) if body is not None else None,
                headers=dict(headers, **{"Content-Type": "application/json"}),
                proxies=self._proxies,
                timeout=timeout,
            )
        finally:
            session.close()


def _create_http_adapter(ssl_context):
    """
    Create an HTTPAdapter for use with a requests library session. If an SSLContext is given,
    it is used for every connection the adapter makes.
    """
    if ssl_context is None:
        return requests.adapters.HTTPAdapter()

    class CustomSSLContextHTTPAdapter(requests.adapters.HTTPAdapter):
        def init_poolmanager(self, *args, **kwargs):
            kwargs["ssl_context"] = ssl_context
            return super().init_poolmanager(*args, **kwargs)

        def proxy_manager_for(self, *args, **kwargs):
            kwargs["ssl_context"] = ssl_context
            return super().proxy_manager_for(*args, **kwargs)

    return CustomSSLContextHTTPAdapter()


def format_proxies(proxy_options):
    """
    Format the data from the proxy_options object into a format for use with the requests library
    """
    proxies = {}
    if proxy_options:
        proxy = "{address}:{port}".format(
            address=proxy_options.proxy_address, port=proxy_options.proxy_port
        )
        if proxy_options.proxy_username and proxy_options.proxy_password:
            auth = "{username}:{password}".format(
                username=proxy_options.proxy_username, password=proxy_options.proxy_password
            )
            proxy = auth + "@" + proxy
        if proxy_options.proxy_type == "HTTP":
            scheme = "http://"
        elif proxy_options.proxy_type == "SOCKS4":
            scheme = "socks4://"
        elif proxy_options.proxy_type == "SOCKS5":
            scheme = "socks5://"
        else:
            # This should be unreachable due to validation on the ProxyOptions object
            raise ValueError("Invalid proxy type: {}".format(proxy_options.proxy_type))
        proxies["http"] = scheme + proxy
        proxies["https"] = scheme + proxy

    return proxies


def _extract_error_code(response: requests.Response) -> Optional[int]:
    """Return the IoT Hub error code from a failure response, if there is one.

    IoT Hub sometimes nests the error details as a JSON string in the "Message" field.
    """
    try:
        details = response.json()
    except ValueError:
        return None
    if isinstance(details, dict) and "errorCode" not in details:
        message = details.get("Message")
        if isinstance(message, str):
            try:
                details = json.loads(message)
            except ValueError:
                return None
    if not isinstance(details, dict):
        return None
    try:
        return int(details["errorCode"])
    except (KeyError, TypeError, ValueError):
        return None


def _describe_failure(response: requests.Response) -> str:
    return "IoT Hub responded with a failed status ({status}) - {reason}".format(
        status=response.status_code, reason=response.reason
    )
