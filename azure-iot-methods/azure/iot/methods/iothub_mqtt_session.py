# -------------------------------------------------------------------------
# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the MIT License. See License.txt in the project root for
# license information.
# --------------------------------------------------------------------------
"""A device session on a live IoT Hub, receiving and answering direct methods over MQTT"""

import asyncio
import contextlib
import functools
import json
import logging
import paho.mqtt.client as mqtt  # type: ignore
import ssl
from typing import Any, AsyncGenerator, Dict, Optional, Type
from types import TracebackType
from . import config, constant, models
from . import connection_string as cs
from . import exceptions as exc
from . import mqtt_topic_iothub as mqtt_topic
from . import sastoken as st
from .session import SessionEnded, method_request_generator, requires_connection

logger = logging.getLogger(__name__)

DEFAULT_KEEP_ALIVE = 60
DEFAULT_CONNECT_TIMEOUT = 30

credential_failure_rc = [
    mqtt.CONNACK_REFUSED_BAD_USERNAME_PASSWORD,
    mqtt.CONNACK_REFUSED_NOT_AUTHORIZED,
]


class IoTHubMQTTSession:
    """A direct method session for a device identity, authenticated with a symmetric key.

    Paho invokes its callbacks on its own network thread. Every callback hands its work to the
    event loop the session was opened on, so all session state is only touched on that loop.
    """

    def __init__(
        self,
        *,
        hostname: str,
        device_id: str,
        shared_access_key: str,
        ssl_context: Optional[ssl.SSLContext] = None,
        keep_alive: int = DEFAULT_KEEP_ALIVE,
        proxy_options: Optional[config.ProxyOptions] = None,
        sastoken_ttl: int = st.DEFAULT_TTL,
        connect_timeout: float = DEFAULT_CONNECT_TIMEOUT,
    ) -> None:
        """
        :param str hostname: The hostname of the IoT Hub
        :param str device_id: The device identity
        :param str shared_access_key: The device's symmetric key
        :param ssl_context: The SSLContext to use. If not provided, a default is used.
        :type ssl_context: :class:`ssl.SSLContext`
        :param int keep_alive: Maximum period in seconds between communications with IoT Hub
        :param proxy_options: Options for sending traffic through a proxy server
        :type proxy_options: :class:`ProxyOptions`
        :param int sastoken_ttl: Lifetime in seconds of the SAS token used to connect
        :param float connect_timeout: Seconds to wait for IoT Hub to answer a connect attempt

        :raises: ValueError if the shared access key is not valid base64
        """
        self._hostname = hostname
        self._device_id = device_id
        self._keep_alive = keep_alive
        self._connect_timeout = connect_timeout
        self._username = mqtt_topic.get_username(hostname, device_id)
        self._credential = st.SasTokenCredential(
            "{}/devices/{}".format(hostname, device_id), shared_access_key, ttl=sastoken_ttl
        )
        self._mqtt_client = _create_mqtt_client(device_id, ssl_context, proxy_options)
        self._mqtt_client.on_connect = self._on_connect
        self._mqtt_client.on_disconnect = self._on_disconnect
        self._mqtt_client.on_subscribe = self._on_subscribe
        self._mqtt_client.on_unsubscribe = self._on_unsubscribe
        self._mqtt_client.on_publish = self._on_publish
        self._mqtt_client.on_message = self._on_message

        # Set upon .open()
        self._event_loop: Optional[asyncio.AbstractEventLoop] = None

        self._connected = False
        self._pending_connect: Optional[asyncio.Future] = None
        self._pending_subs: Dict[int, asyncio.Future] = {}
        self._pending_unsubs: Dict[int, asyncio.Future] = {}
        self._pending_pubs: Dict[int, asyncio.Future] = {}
        self._inbox: Optional[asyncio.Queue] = None

    @classmethod
    def from_connection_string(
        cls, connection_string: str, **kwargs: Any
    ) -> "IoTHubMQTTSession":
        """Instantiate an IoTHubMQTTSession using a device connection string

        :raises: ValueError if the connection string is invalid, is not a device connection
            string, or does not contain a shared access key
        """
        cs_obj = cs.ConnectionString(connection_string)
        if cs.DEVICE_ID not in cs_obj:
            raise ValueError("A device connection string is required")
        if cs.SHARED_ACCESS_KEY not in cs_obj:
            raise ValueError("Connection string must contain a SharedAccessKey")
        return cls(
            hostname=cs_obj[cs.HOST_NAME],
            device_id=cs_obj[cs.DEVICE_ID],
            shared_access_key=cs_obj[cs.SHARED_ACCESS_KEY],
            **kwargs,
        )

    async def __aenter__(self) -> "IoTHubMQTTSession":
        await self.open()
        return self

    async def __aexit__(
        self,
        exc_type: Optional[Type[BaseException]],
        exc_val: Optional[BaseException],
        traceback: TracebackType,
    ) -> None:
        await self.close()

    @property
    def connected(self) -> bool:
        return self._connected

    @property
    def device_id(self) -> str:
        return self._device_id

    async def open(self) -> None:
        """Connect to IoT Hub

        :raises: SessionError if already open, or if the connection fails
        :raises: CredentialError if IoT Hub rejects the credentials
        """
        if self._connected:
            raise exc.SessionError("IoTHubMQTTSession already open")
        self._event_loop = asyncio.get_running_loop()

        # A fresh token for every connection, valid for the lifetime of the session
        sastoken = self._credential.generate()
        self._mqtt_client.username_pw_set(username=self._username, password=str(sastoken))

        self._pending_connect = self._event_loop.create_future()
        try:
            logger.debug("Attempting connect to {}...".format(self._hostname))
            try:
                rc = await self._event_loop.run_in_executor(
                    None,
                    functools.partial(
                        self._mqtt_client.connect,
                        host=self._hostname,
                        port=constant.MQTT_PORT,
                        keepalive=self._keep_alive,
                    ),
                )
            except Exception as e:
                raise exc.SessionError("Failure in Paho .connect()") from e
            if rc != mqtt.MQTT_ERR_SUCCESS:
                raise exc.SessionError(
                    "Unexpected rc {} from Paho .connect(): {}".format(rc, mqtt.error_string(rc))
                )

            self._mqtt_client.loop_start()
            logger.debug("Waiting for connect response...")
            try:
                rc = await asyncio.wait_for(self._pending_connect, self._connect_timeout)
            except asyncio.TimeoutError as e:
                await self._event_loop.run_in_executor(None, self._mqtt_client.loop_stop)
                raise exc.SessionError(
                    "No connect response from IoT Hub within {}s".format(self._connect_timeout)
                ) from e
            except exc.SessionError:
                await self._event_loop.run_in_executor(None, self._mqtt_client.loop_stop)
                raise
        finally:
            self._pending_connect = None

        if rc != mqtt.CONNACK_ACCEPTED:
            await self._event_loop.run_in_executor(None, self._mqtt_client.loop_stop)
            if rc in credential_failure_rc:
                raise exc.CredentialError(mqtt.connack_string(rc))
            raise exc.SessionError(mqtt.connack_string(rc))

        self._connected = True
        logger.debug("Session opened for device '{}'".format(self._device_id))

    async def close(self) -> None:
        """Disconnect from IoT Hub. Does nothing if not connected."""
        if not self._connected or self._event_loop is None:
            return
        self._mark_disconnected()
        logger.debug("Attempting disconnect")
        rc = await self._event_loop.run_in_executor(None, self._mqtt_client.disconnect)
        logger.debug("Disconnect returned rc {} - {}".format(rc, mqtt.error_string(rc)))
        await self._event_loop.run_in_executor(None, self._mqtt_client.loop_stop)
        logger.debug("Session closed for device '{}'".format(self._device_id))

    @contextlib.asynccontextmanager
    @requires_connection
    async def direct_method_requests(
        self,
    ) -> AsyncGenerator[AsyncGenerator[models.DirectMethodRequest, None], None]:
        """Returns an async generator of incoming direct method requests.

        The generator finishes when the session ends.

        :raises: SessionError if the subscription fails
        """
        topic = mqtt_topic.get_method_topic_for_subscribe()
        self._inbox = asyncio.Queue()
        try:
            await self._subscribe(topic)
            yield method_request_generator(self._inbox)
        finally:
            self._inbox = None
            if self._connected:
                try:
                    await self._unsubscribe(topic)
                except exc.SessionError as e:
                    logger.warning("Failed to unsubscribe from direct methods: {}".format(e))

    @requires_connection
    async def send_direct_method_response(
        self, method_response: models.DirectMethodResponse
    ) -> None:
        """Send a response to a direct method request

        :raises: SessionError if there is no connection, or the publish fails
        :raises: TypeError if the response payload is not JSON serializable
        """
        topic = mqtt_topic.get_method_topic_for_publish(
            method_response.request_id, method_response.status
        )
        payload = json.dumps(method_response.payload)
        logger.debug(
            "Sending direct method response to IoTHub... (rid: {})".format(
                method_response.request_id
            )
        )
        message_info = self._mqtt_client.publish(topic=topic, payload=payload, qos=1)
        await self._wait_for_ack(message_info.rc, message_info.mid, self._pending_pubs, "Publish")
        logger.debug(
            "Sending direct method response succeeded (rid: {})".format(method_response.request_id)
        )

    async def _subscribe(self, topic: str) -> None:
        (rc, mid) = self._mqtt_client.subscribe(topic=topic, qos=0)
        await self._wait_for_ack(rc, mid, self._pending_subs, "Subscribe")

    async def _unsubscribe(self, topic: str) -> None:
        (rc, mid) = self._mqtt_client.unsubscribe(topic)
        await self._wait_for_ack(rc, mid, self._pending_unsubs, "Unsubscribe")

    async def _wait_for_ack(
        self, rc: int, mid: int, pending: Dict[int, asyncio.Future], operation: str
    ) -> None:
        # Acks are delivered through call_soon_threadsafe, so none can be processed before the
        # pending future below is registered
        if rc != mqtt.MQTT_ERR_SUCCESS:
            raise exc.SessionError(
                "{} failed with rc {} - {}".format(operation, rc, mqtt.error_string(rc))
            )
        done = asyncio.get_running_loop().create_future()
        pending[mid] = done
        try:
            logger.debug("Waiting for {} response for mid {}".format(operation.lower(), mid))
            await done
        finally:
            pending.pop(mid, None)

    def _mark_disconnected(self) -> None:
        self._connected = False
        if self._inbox is not None:
            self._inbox.put_nowait(SessionEnded())
        for pending in (self._pending_subs, self._pending_unsubs, self._pending_pubs):
            for f in pending.values():
                if not f.done():
                    f.set_exception(exc.SessionError("Connection lost"))
            pending.clear()

    # Paho callbacks. These run on the Paho network thread.

    def _on_connect(self, client: mqtt.Client, userdata: Any, flags: Dict[str, int], rc: int):
        logger.debug("Connect Response: rc {} - {}".format(rc, mqtt.connack_string(rc)))
        self._call_soon(self._handle_connect, rc)

    def _on_disconnect(self, client: mqtt.Client, userdata: Any, rc: int):
        logger.debug("Disconnect Response: rc {} - {}".format(rc, mqtt.error_string(rc)))
        self._call_soon(self._handle_disconnect, rc)

    def _on_subscribe(self, client: mqtt.Client, userdata: Any, mid: int, granted_qos: Any):
        logger.debug("SUBACK received for mid {}".format(mid))
        self._call_soon(self._complete_pending, self._pending_subs, mid)

    def _on_unsubscribe(self, client: mqtt.Client, userdata: Any, mid: int):
        logger.debug("UNSUBACK received for mid {}".format(mid))
        self._call_soon(self._complete_pending, self._pending_unsubs, mid)

    def _on_publish(self, client: mqtt.Client, userdata: Any, mid: int):
        logger.debug("PUBACK received for mid {}".format(mid))
        self._call_soon(self._complete_pending, self._pending_pubs, mid)

    def _on_message(self, client: mqtt.Client, userdata: Any, message: mqtt.MQTTMessage):
        logger.debug("Incoming MQTT Message received on {}".format(message.topic))
        self._call_soon(self._handle_message, message)

    def _call_soon(self, fn, *args) -> None:
        if self._event_loop is None:
            logger.warning("Paho callback received before the session was opened. Dropping")
            return
        self._event_loop.call_soon_threadsafe(fn, *args)

    # Handlers. These run on the event loop.

    def _handle_connect(self, rc: int) -> None:
        if self._pending_connect and not self._pending_connect.done():
            self._pending_connect.set_result(rc)
        else:
            logger.warning("Connect response received without outstanding attempt")

    def _handle_disconnect(self, rc: int) -> None:
        if self._pending_connect and not self._pending_connect.done():
            # Connection dropped before any connect response arrived
            message = "Connection lost during connect: {}".format(mqtt.error_string(rc))
            self._pending_connect.set_exception(exc.SessionError(message))
            return
        if self._connected:
            logger.warning("Unexpected disconnect: rc {} - {}".format(rc, mqtt.error_string(rc)))
            self._mark_disconnected()

    def _complete_pending(self, pending: Dict[int, asyncio.Future], mid: int) -> None:
        f = pending.get(mid)
        if f is None:
            logger.warning("Unexpected ack received for mid {}".format(mid))
        elif not f.done():
            f.set_result(True)

    def _handle_message(self, message: mqtt.MQTTMessage) -> None:
        if not mqtt_topic.is_method_topic(message.topic):
            logger.warning("Dropping message on unexpected topic {}".format(message.topic))
            return
        if self._inbox is None:
            logger.warning("Dropping direct method request received while not subscribed")
            return
        try:
            request = _create_direct_method_request_from_mqtt_message(message)
        except ValueError as e:
            logger.error("Failure transforming MQTTMessage: {}".format(e))
            logger.warning("Dropping MQTTMessage that could not be transformed")
            return
        self._inbox.put_nowait(request)


def _create_mqtt_client(
    client_id: str,
    ssl_context: Optional[ssl.SSLContext],
    proxy_options: Optional[config.ProxyOptions],
) -> mqtt.Client:
    """Create the Paho client object"""
    logger.debug("Creating Paho client")
    mqtt_client = mqtt.Client(
        client_id=client_id,
        clean_session=False,
        protocol=mqtt.MQTTv311,
        transport="tcp",
        reconnect_on_failure=False,
    )

    if proxy_options:
        logger.debug("Configuring custom proxy options on Paho client")
        mqtt_client.proxy_set(
            proxy_type=proxy_options.proxy_type_socks,
            proxy_addr=proxy_options.proxy_address,
            proxy_port=proxy_options.proxy_port,
            proxy_username=proxy_options.proxy_username,
            proxy_password=proxy_options.proxy_password,
        )

    mqtt_client.enable_logger(logging.getLogger("paho"))

    # Configure TLS/SSL. If the value passed is None, will use default.
    mqtt_client.tls_set_context(context=ssl_context)
    return mqtt_client


def _create_direct_method_request_from_mqtt_message(
    mqtt_message: mqtt.MQTTMessage,
) -> models.DirectMethodRequest:
    """Given an MQTTMessage, create and return a DirectMethodRequest carrying the raw payload"""
    topic = mqtt_topic.parse_method_request_topic(mqtt_message.topic)
    return models.DirectMethodRequest(
        request_id=topic.request_id, name=topic.method_name, payload=bytes(mqtt_message.payload)
    )
