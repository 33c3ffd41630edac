# -------------------------------------------------------------------------
# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the MIT License. See License.txt in the project root for
# license information.
# --------------------------------------------------------------------------
"""This module contains the service side client used to invoke direct methods on a target"""

import asyncio
import logging
from typing import Optional
from typing_extensions import Protocol
from . import config, models
from . import exceptions as exc
from .custom_typing import JSONSerializable

logger = logging.getLogger(__name__)


class ServiceTransport(Protocol):
    async def invoke_direct_method(
        self, invocation: models.MethodInvocation
    ) -> models.MethodResult:
        ...


class InvocationClient:
    """Invokes direct methods on target devices through a service transport.

    The client holds no per-call state, so a single instance can be shared by any number of
    concurrent callers.
    """

    def __init__(
        self,
        transport: ServiceTransport,
        client_config: Optional[config.MethodClientConfig] = None,
    ) -> None:
        """
        :param transport: The service transport used to deliver invocations
            (e.g. an InMemoryHub or IoTHubHTTPClient)
        :param client_config: Options for the client. Defaults are used if not provided.
        :type client_config: :class:`MethodClientConfig`
        """
        self._transport = transport
        self._config = client_config if client_config is not None else config.MethodClientConfig()

    @property
    def config(self) -> config.MethodClientConfig:
        return self._config

    async def invoke(
        self,
        target_id: str,
        method_name: str,
        payload: JSONSerializable = None,
        response_timeout: Optional[float] = None,
        connect_timeout: Optional[float] = None,
    ) -> models.MethodResult:
        """Invoke a direct method on a target and wait for its result

        Any status returned by the target, including failures such as 403 or 404, is returned
        as a MethodResult.

        Otherwise only a timeout is raised, with one exception: errors the backend reports about
        the request itself (an unknown target, a rejected request) propagate from the transport.

        :param str target_id: The device identity to invoke the method on
        :param str method_name: The name of the method
        :param payload: The JSON payload to send with the invocation
        :type payload: dict, str, int, float, bool, or None (JSON compatible values)
        :param float response_timeout: Seconds to wait for the target to respond
        :param float connect_timeout: Seconds to wait for the target to come online

        :returns: The status and payload returned by the target
        :rtype: :class:`MethodResult`

        :raises: MethodTimeoutError if a deadline elapsed before the target responded
        :raises: DeviceNotFoundError if the backend has no record of the target
        :raises: IoTHubError if the backend rejected the request for any other reason
        :raises: ValueError if the target_id or method_name is empty, or a timeout is invalid
        :raises: TypeError if the target_id or method_name is not a string
        """
        if response_timeout is None:
            response_timeout = self._config.default_response_timeout
        if connect_timeout is None:
            connect_timeout = self._config.default_connect_timeout
        invocation = models.MethodInvocation(
            target_id=target_id,
            method_name=method_name,
            payload=payload,
            response_timeout=response_timeout,
            connect_timeout=connect_timeout,
        )
        return await self.send(invocation)

    async def send(self, invocation: models.MethodInvocation) -> models.MethodResult:
        """Send a prepared MethodInvocation and wait for its result

        :raises: MethodTimeoutError if a deadline elapsed before the target responded
        :raises: DeviceNotFoundError if the backend has no record of the target
        :raises: IoTHubError if the backend rejected the request for any other reason
        """
        deadline = invocation.deadline + self._config.timeout_grace
        logger.debug(
            "Invoking '{}' on '{}' (deadline {}s)".format(
                invocation.method_name, invocation.target_id, deadline
            )
        )
        try:
            result = await asyncio.wait_for(
                self._transport.invoke_direct_method(invocation), timeout=deadline
            )
        except exc.MethodTimeoutError as e:
            logger.info(
                "Invocation of '{}' on '{}' timed out: {}".format(
                    invocation.method_name, invocation.target_id, str(e)
                )
            )
            raise
        except asyncio.TimeoutError:
            # The transport never completed. The call is abandoned and any late answer discarded
            logger.warning(
                "Transport did not complete invocation of '{}' on '{}' within {}s".format(
                    invocation.method_name, invocation.target_id, deadline
                )
            )
            raise exc.MethodResponseTimeoutError(
                "No result for '{}' on '{}' within {} seconds".format(
                    invocation.method_name, invocation.target_id, deadline
                )
            ) from None

        logger.debug(
            "Invocation of '{}' on '{}' returned status {}".format(
                invocation.method_name, invocation.target_id, result.status
            )
        )
        return result
