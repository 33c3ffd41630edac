# -------------------------------------------------------------------------
# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the MIT License. See License.txt in the project root for
# license information.
# --------------------------------------------------------------------------
"""An in-process stand-in for IoT Hub direct methods.

The InMemoryHub plays all three external roles a direct method round trip depends on:
the identity registry, the device-facing session endpoint, and the service-facing invocation
endpoint. Payloads are JSON encoded on the way to the device and JSON decoded on the way back,
the same as they are by IoT Hub.
"""

import asyncio
import base64
import contextlib
import logging
import os
from typing import AsyncGenerator, Dict, Optional, Type
from types import TracebackType

from . import connection_string as cs
from . import exceptions as exc
from . import models, request_response
from .session import SessionEnded, method_request_generator, requires_connection

logger = logging.getLogger(__name__)

DEFAULT_HOSTNAME = "inmemory-hub.azure-devices.net"
DEFAULT_POLICY_NAME = "iothubowner"


class _DeviceRecord(object):
    def __init__(self, device_id: str, primary_key: str) -> None:
        self.device_id = device_id
        self.primary_key = primary_key
        self.session: Optional["HubSession"] = None
        self.inbox: Optional[asyncio.Queue] = None
        self.subscribed = asyncio.Event()


class InMemoryHub:
    def __init__(self, hostname: str = DEFAULT_HOSTNAME) -> None:
        """
        :param str hostname: The hostname the hub presents in connection strings
        """
        self.hostname = hostname
        self._policy_key = _generate_key()
        self._devices: Dict[str, _DeviceRecord] = {}
        self._ledger = request_response.RequestLedger()

    @property
    def connection_string(self) -> str:
        """A service connection string for this hub"""
        return "{}={};{}={};{}={}".format(
            cs.HOST_NAME,
            self.hostname,
            cs.SHARED_ACCESS_KEY_NAME,
            DEFAULT_POLICY_NAME,
            cs.SHARED_ACCESS_KEY,
            self._policy_key,
        )

    @property
    def pending_invocations(self) -> int:
        return len(self._ledger)

    def is_online(self, device_id: str) -> bool:
        """True if the device has a session currently receiving direct method requests"""
        record = self._devices.get(device_id)
        return record is not None and record.subscribed.is_set()

    # Registry

    async def add_identity(self, device_id: str) -> str:
        """Create a device identity and return its connection string

        :raises: DeviceAlreadyExistsError if the device identity already exists
        """
        if device_id in self._devices:
            raise exc.DeviceAlreadyExistsError("Device '{}' already exists".format(device_id))
        record = _DeviceRecord(device_id, _generate_key())
        self._devices[device_id] = record
        logger.debug("Added device identity: {}".format(device_id))
        return cs.create_device_connection_string(
            self.connection_string, device_id, record.primary_key
        )

    async def get_identity(self, device_id: str) -> str:
        """Return the connection string of an existing device identity

        :raises: DeviceNotFoundError if the device identity does not exist
        """
        record = self._get_record(device_id)
        return cs.create_device_connection_string(
            self.connection_string, device_id, record.primary_key
        )

    async def remove_identity(self, device_id: str) -> None:
        """Remove a device identity, ending any session it has open

        :raises: DeviceNotFoundError if the device identity does not exist
        """
        record = self._get_record(device_id)
        if record.session:
            self._detach(record.session)
        del self._devices[device_id]
        logger.debug("Removed device identity: {}".format(device_id))

    # Device facing

    def create_session(self, connection_string: str) -> "HubSession":
        """Create a (not yet open) device session for a device connection string"""
        return HubSession(self, connection_string)

    def _get_record(self, device_id: str) -> _DeviceRecord:
        try:
            return self._devices[device_id]
        except KeyError:
            raise exc.DeviceNotFoundError("Device '{}' not found".format(device_id)) from None

    def _attach(self, session: "HubSession") -> None:
        cs_obj = session._connection_string
        if cs_obj[cs.HOST_NAME] != self.hostname:
            raise exc.CredentialError("Unknown hostname '{}'".format(cs_obj[cs.HOST_NAME]))
        record = self._devices.get(session.device_id)
        if record is None:
            raise exc.CredentialError("Device '{}' is not registered".format(session.device_id))
        if cs_obj.get(cs.SHARED_ACCESS_KEY) != record.primary_key:
            raise exc.CredentialError("Credential rejected for '{}'".format(session.device_id))

        if record.session is not None:
            logger.info(
                "Device '{}' connected again. Ending previous session".format(session.device_id)
            )
            self._detach(record.session)
        record.session = session

    def _detach(self, session: "HubSession") -> None:
        record = self._devices.get(session.device_id)
        if record is not None and record.session is session:
            record.session = None
            record.inbox = None
            record.subscribed.clear()
        session._terminate()

    def _subscribe(self, session: "HubSession") -> asyncio.Queue:
        record = self._devices.get(session.device_id)
        if record is None or record.session is not session:
            raise exc.SessionError("Session is no longer attached to the hub")
        inbox: asyncio.Queue = asyncio.Queue()
        record.inbox = inbox
        record.subscribed.set()
        logger.debug("Device '{}' subscribed to direct methods".format(session.device_id))
        return inbox

    def _unsubscribe(self, session: "HubSession") -> None:
        record = self._devices.get(session.device_id)
        if record is not None and record.session is session:
            record.inbox = None
            record.subscribed.clear()
            logger.debug("Device '{}' unsubscribed from direct methods".format(session.device_id))

    async def _complete_request(self, device_id: str, response: models.DirectMethodResponse):
        # Round trip the payload through JSON, as it would be over the wire
        payload = models.decode_payload(models.encode_payload(response.payload))
        try:
            self._ledger.match_response(
                models.DirectMethodResponse(response.request_id, response.status, payload)
            )
        except KeyError:
            logger.warning(
                "Discarding response from '{}' for unknown or expired request (rid: {})".format(
                    device_id, response.request_id
                )
            )

    # Service facing

    async def invoke_direct_method(
        self, invocation: models.MethodInvocation
    ) -> models.MethodResult:
        """Deliver an invocation to its target and wait for the response

        :raises: DeviceNotFoundError if the target device identity does not exist
        :raises: DeviceConnectTimeoutError if the target is not receiving direct method
            requests within the connect timeout
        :raises: MethodResponseTimeoutError if the target does not respond within the
            response timeout
        """
        record = self._get_record(invocation.target_id)

        if not record.subscribed.is_set():
            logger.debug(
                "Waiting up to {}s for '{}' to come online".format(
                    invocation.connect_timeout, invocation.target_id
                )
            )
            try:
                await asyncio.wait_for(record.subscribed.wait(), timeout=invocation.connect_timeout)
            except asyncio.TimeoutError:
                raise exc.DeviceConnectTimeoutError(
                    "Timed out waiting for device '{}' to connect".format(invocation.target_id)
                ) from None

        inbox = record.inbox
        if inbox is None:
            raise exc.DeviceConnectTimeoutError(
                "Device '{}' went offline before the request was delivered".format(
                    invocation.target_id
                )
            )

        request = self._ledger.create_request()
        inbox.put_nowait(
            models.DirectMethodRequest(
                request_id=request.request_id,
                name=invocation.method_name,
                payload=invocation.get_encoded_payload(),
            )
        )
        try:
            response = await asyncio.wait_for(
                request.get_response(), timeout=invocation.response_timeout
            )
        except asyncio.TimeoutError:
            raise exc.MethodResponseTimeoutError(
                "Timed out waiting for '{}' to respond to '{}'".format(
                    invocation.target_id, invocation.method_name
                )
            ) from None
        finally:
            # An unanswered request stops being tracked, so a late response is discarded
            self._ledger.discard_request(request.request_id)

        return response.to_result()

    async def shutdown(self) -> None:
        """End every open session"""
        for record in list(self._devices.values()):
            if record.session:
                self._detach(record.session)


class HubSession:
    """A device session on an InMemoryHub, authenticated with a device connection string"""

    def __init__(self, hub: InMemoryHub, connection_string: str) -> None:
        """
        :raises: ValueError if the connection string is invalid or is not a device connection
            string
        """
        cs_obj = cs.ConnectionString(connection_string)
        if cs.DEVICE_ID not in cs_obj:
            raise ValueError("A device connection string is required")
        self._hub = hub
        self._connection_string = cs_obj
        self._connected = False
        self._inbox: Optional[asyncio.Queue] = None

    async def __aenter__(self) -> "HubSession":
        await self.open()
        return self

    async def __aexit__(
        self,
        exc_type: Optional[Type[BaseException]],
        exc_val: Optional[BaseException],
        traceback: TracebackType,
    ) -> None:
        await self.close()

    async def open(self) -> None:
        """Connect the session to the hub

        :raises: SessionError if already open
        :raises: CredentialError if the hub rejects the connection string
        """
        if self._connected:
            raise exc.SessionError("HubSession already open")
        self._hub._attach(self)
        self._connected = True
        logger.debug("Session opened for device '{}'".format(self.device_id))

    async def close(self) -> None:
        """Disconnect the session. Does nothing if not connected."""
        if self._connected:
            self._hub._detach(self)
            logger.debug("Session closed for device '{}'".format(self.device_id))

    @contextlib.asynccontextmanager
    @requires_connection
    async def direct_method_requests(
        self,
    ) -> AsyncGenerator[AsyncGenerator[models.DirectMethodRequest, None], None]:
        """Returns an async generator of incoming direct method requests.

        The generator finishes when the session ends.
        """
        self._inbox = self._hub._subscribe(self)
        try:
            yield method_request_generator(self._inbox)
        finally:
            self._hub._unsubscribe(self)
            self._inbox = None

    @requires_connection
    async def send_direct_method_response(
        self, method_response: models.DirectMethodResponse
    ) -> None:
        """Send a response to a direct method request

        :raises: SessionError if there is no connection
        :raises: TypeError if the response payload is not JSON serializable
        """
        await self._hub._complete_request(self.device_id, method_response)

    def _terminate(self) -> None:
        self._connected = False
        if self._inbox is not None:
            self._inbox.put_nowait(SessionEnded())

    @property
    def connected(self) -> bool:
        return self._connected

    @property
    def device_id(self) -> str:
        return self._connection_string[cs.DEVICE_ID]


def _generate_key() -> str:
    return base64.b64encode(os.urandom(32)).decode("utf-8")
