# -------------------------------------------------------------------------
# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the MIT License. See License.txt in the project root for
# license information.
# --------------------------------------------------------------------------
import asyncio
import json
import paho.mqtt.client as mqtt
import pytest
import ssl
from concurrent.futures import ThreadPoolExecutor
from azure.iot.methods import constant
from azure.iot.methods import exceptions as exc
from azure.iot.methods.config import ProxyOptions
from azure.iot.methods.iothub_mqtt_session import IoTHubMQTTSession
from azure.iot.methods.models import DirectMethodRequest, DirectMethodResponse

FAKE_HOSTNAME = "my-hub.azure-devices.net"
FAKE_DEVICE_ID = "device-1"
FAKE_KEY = "NMgJDvdKTxjLi+xBxxkDDEwDJxEvOE5u8BiT0mVgPeg="
FAKE_DEVICE_CS = "HostName={};DeviceId={};SharedAccessKey={}".format(
    FAKE_HOSTNAME, FAKE_DEVICE_ID, FAKE_KEY
)
METHOD_TOPIC = "$iothub/methods/POST/#"


@pytest.fixture(scope="module")
def paho_threadpool():
    # Paho has a single thread it invokes handlers on
    tpe = ThreadPoolExecutor(max_workers=1)
    yield tpe
    tpe.shutdown()


@pytest.fixture
def mock_paho(mocker, paho_threadpool):
    """A mock of the Paho client that acknowledges every operation from a separate thread,
    the way Paho does, unless placed in manual mode"""
    mock_paho = mocker.patch.object(mqtt, "Client").return_value
    mock_paho._manual_mode = False
    mock_paho._connack_rc = mqtt.CONNACK_ACCEPTED
    mock_paho._last_mid = 0

    def _next_mid():
        mock_paho._last_mid += 1
        return mock_paho._last_mid

    def trigger_on_connect(rc=mqtt.CONNACK_ACCEPTED):
        paho_threadpool.submit(
            mock_paho.on_connect, client=mock_paho, userdata=None, flags=None, rc=rc
        )

    def trigger_on_disconnect(rc=mqtt.MQTT_ERR_SUCCESS):
        paho_threadpool.submit(mock_paho.on_disconnect, client=mock_paho, userdata=None, rc=rc)

    def trigger_on_subscribe(mid):
        paho_threadpool.submit(
            mock_paho.on_subscribe, client=mock_paho, userdata=None, mid=mid, granted_qos=(0,)
        )

    def trigger_on_unsubscribe(mid):
        paho_threadpool.submit(mock_paho.on_unsubscribe, client=mock_paho, userdata=None, mid=mid)

    def trigger_on_publish(mid):
        paho_threadpool.submit(mock_paho.on_publish, client=mock_paho, userdata=None, mid=mid)

    def trigger_on_message(topic, payload):
        message = mqtt.MQTTMessage(mid=0, topic=topic.encode("utf-8"))
        message.payload = payload
        paho_threadpool.submit(mock_paho.on_message, client=mock_paho, userdata=None, message=message)

    mock_paho.trigger_on_connect = trigger_on_connect
    mock_paho.trigger_on_disconnect = trigger_on_disconnect
    mock_paho.trigger_on_message = trigger_on_message

    def connect(*args, **kwargs):
        if not mock_paho._manual_mode:
            trigger_on_connect(mock_paho._connack_rc)
        return mqtt.MQTT_ERR_SUCCESS

    def disconnect(*args, **kwargs):
        trigger_on_disconnect()
        return mqtt.MQTT_ERR_SUCCESS

    def subscribe(*args, **kwargs):
        mid = _next_mid()
        if not mock_paho._manual_mode:
            trigger_on_subscribe(mid)
        return (mqtt.MQTT_ERR_SUCCESS, mid)

    def unsubscribe(*args, **kwargs):
        mid = _next_mid()
        if not mock_paho._manual_mode:
            trigger_on_unsubscribe(mid)
        return (mqtt.MQTT_ERR_SUCCESS, mid)

    def publish(*args, **kwargs):
        mid = _next_mid()
        if not mock_paho._manual_mode:
            trigger_on_publish(mid)
        return mqtt.MQTTMessageInfo(mid)

    mock_paho.connect.side_effect = connect
    mock_paho.disconnect.side_effect = disconnect
    mock_paho.subscribe.side_effect = subscribe
    mock_paho.unsubscribe.side_effect = unsubscribe
    mock_paho.publish.side_effect = publish
    return mock_paho


@pytest.fixture
def session(mock_paho):
    return IoTHubMQTTSession(
        hostname=FAKE_HOSTNAME, device_id=FAKE_DEVICE_ID, shared_access_key=FAKE_KEY
    )


@pytest.fixture
async def connected_session(session):
    await session.open()
    yield session
    await session.close()


async def next_request(requests):
    async for request in requests:
        return request
    return None


async def drain(requests):
    return [request async for request in requests]


async def wait_for(condition, timeout=1):
    async def poll():
        while not condition():
            await asyncio.sleep(0.01)

    await asyncio.wait_for(poll(), timeout=timeout)


@pytest.mark.describe("IoTHubMQTTSession - Instantiation")
class TestIoTHubMQTTSessionInstantiation:
    @pytest.mark.it("Creates a Paho MQTT Client for the device")
    def test_paho_client(self, mocker, mock_paho):
        IoTHubMQTTSession(hostname=FAKE_HOSTNAME, device_id=FAKE_DEVICE_ID, shared_access_key=FAKE_KEY)
        assert mqtt.Client.call_count == 1
        assert mqtt.Client.call_args == mocker.call(
            client_id=FAKE_DEVICE_ID,
            clean_session=False,
            protocol=mqtt.MQTTv311,
            transport="tcp",
            reconnect_on_failure=False,
        )

    @pytest.mark.it("Uses the provided SSLContext, or the default if none is provided")
    @pytest.mark.parametrize(
        "ssl_context",
        [pytest.param(ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT), id="Provided"), pytest.param(None, id="Default")],
    )
    def test_ssl_context(self, mocker, mock_paho, ssl_context):
        IoTHubMQTTSession(
            hostname=FAKE_HOSTNAME,
            device_id=FAKE_DEVICE_ID,
            shared_access_key=FAKE_KEY,
            ssl_context=ssl_context,
        )
        assert mock_paho.tls_set_context.call_args == mocker.call(context=ssl_context)

    @pytest.mark.it("Configures the Paho MQTT Client with any provided proxy options")
    def test_proxy(self, mocker, mock_paho):
        proxy_options = ProxyOptions("SOCKS5", "127.0.0.1", 1080, "user", "pass")
        IoTHubMQTTSession(
            hostname=FAKE_HOSTNAME,
            device_id=FAKE_DEVICE_ID,
            shared_access_key=FAKE_KEY,
            proxy_options=proxy_options,
        )
        assert mock_paho.proxy_set.call_args == mocker.call(
            proxy_type=proxy_options.proxy_type_socks,
            proxy_addr="127.0.0.1",
            proxy_port=1080,
            proxy_username="user",
            proxy_password="pass",
        )

    @pytest.mark.it("Raises ValueError if the shared access key is invalid")
    def test_bad_key(self, mock_paho):
        with pytest.raises(ValueError):
            IoTHubMQTTSession(
                hostname=FAKE_HOSTNAME, device_id=FAKE_DEVICE_ID, shared_access_key="not a key!"
            )

    @pytest.mark.it("Can be created from a device connection string")
    def test_from_connection_string(self, mock_paho):
        session = IoTHubMQTTSession.from_connection_string(FAKE_DEVICE_CS)
        assert session.device_id == FAKE_DEVICE_ID
        assert not session.connected

    @pytest.mark.it("Raises ValueError if created from a connection string without a device or key")
    @pytest.mark.parametrize(
        "connection_string",
        [
            pytest.param(
                "HostName=my-hub.azure-devices.net;SharedAccessKeyName=iothubowner;SharedAccessKey=Zm9vYmFy",
                id="Service connection string",
            ),
            pytest.param(
                "HostName=my-hub.azure-devices.net;DeviceId=device-1;SharedAccessSignature=token",
                id="No shared access key",
            ),
        ],
    )
    def test_from_bad_connection_string(self, mock_paho, connection_string):
        with pytest.raises(ValueError):
            IoTHubMQTTSession.from_connection_string(connection_string)


@pytest.mark.describe("IoTHubMQTTSession - .open()")
class TestIoTHubMQTTSessionOpen:
    @pytest.mark.it("Authenticates with the device username and a SAS token for the device")
    async def test_credentials(self, session, mock_paho):
        await session.open()
        kwargs = mock_paho.username_pw_set.call_args[1]
        assert kwargs["username"] == "{}/{}/?api-version={}".format(
            FAKE_HOSTNAME, FAKE_DEVICE_ID, constant.IOTHUB_API_VERSION
        )
        assert kwargs["password"].startswith(
            "SharedAccessSignature sr=my-hub.azure-devices.net%2Fdevices%2Fdevice-1&sig="
        )
        await session.close()

    @pytest.mark.it("Connects to the hub on the MQTT port and starts the Paho network loop")
    async def test_connect(self, mocker, session, mock_paho):
        await session.open()
        assert mock_paho.connect.call_args == mocker.call(
            host=FAKE_HOSTNAME, port=constant.MQTT_PORT, keepalive=60
        )
        assert mock_paho.loop_start.call_count == 1
        assert session.connected
        await session.close()

    @pytest.mark.it("Raises CredentialError if the hub rejects the credentials")
    @pytest.mark.parametrize(
        "rc",
        [
            pytest.param(mqtt.CONNACK_REFUSED_NOT_AUTHORIZED, id="Not authorized"),
            pytest.param(mqtt.CONNACK_REFUSED_BAD_USERNAME_PASSWORD, id="Bad username or password"),
        ],
    )
    async def test_rejected_credentials(self, session, mock_paho, rc):
        mock_paho._connack_rc = rc
        with pytest.raises(exc.CredentialError):
            await session.open()
        assert not session.connected
        assert mock_paho.loop_stop.call_count == 1

    @pytest.mark.it("Raises SessionError if the hub refuses the connection for another reason")
    async def test_refused(self, session, mock_paho):
        mock_paho._connack_rc = mqtt.CONNACK_REFUSED_SERVER_UNAVAILABLE
        with pytest.raises(exc.SessionError):
            await session.open()
        assert not session.connected

    @pytest.mark.it("Raises SessionError if Paho fails to connect")
    async def test_connect_raises(self, session, mock_paho):
        error = ConnectionRefusedError("refused")
        mock_paho.connect.side_effect = error
        with pytest.raises(exc.SessionError) as e_info:
            await session.open()
        assert e_info.value.__cause__ is error
        assert not session.connected

    @pytest.mark.it("Raises SessionError if Paho returns a failed rc from connect")
    async def test_connect_rc(self, session, mock_paho):
        mock_paho.connect.side_effect = None
        mock_paho.connect.return_value = mqtt.MQTT_ERR_NO_CONN
        with pytest.raises(exc.SessionError):
            await session.open()

    @pytest.mark.it("Raises SessionError if the connection drops before the hub responds")
    async def test_dropped_during_connect(self, session, mock_paho):
        mock_paho._manual_mode = True
        open_task = asyncio.create_task(session.open())
        await wait_for(lambda: mock_paho.loop_start.call_count == 1)
        mock_paho.trigger_on_disconnect(rc=mqtt.MQTT_ERR_CONN_LOST)
        with pytest.raises(exc.SessionError):
            await open_task
        assert not session.connected
        assert mock_paho.loop_stop.call_count == 1

    @pytest.mark.it("Raises SessionError if the hub does not respond within the connect timeout")
    async def test_no_connect_response(self, mock_paho):
        mock_paho._manual_mode = True
        session = IoTHubMQTTSession(
            hostname=FAKE_HOSTNAME,
            device_id=FAKE_DEVICE_ID,
            shared_access_key=FAKE_KEY,
            connect_timeout=0.1,
        )
        with pytest.raises(exc.SessionError):
            await asyncio.wait_for(session.open(), timeout=2)
        assert not session.connected
        assert mock_paho.loop_stop.call_count == 1

        # A response arriving after giving up does not open the session
        mock_paho.trigger_on_connect()
        await asyncio.sleep(0.1)
        assert not session.connected

    @pytest.mark.it("Raises SessionError if already open")
    async def test_already_open(self, connected_session):
        with pytest.raises(exc.SessionError):
            await connected_session.open()


@pytest.mark.describe("IoTHubMQTTSession - .close()")
class TestIoTHubMQTTSessionClose:
    @pytest.mark.it("Disconnects and stops the Paho network loop")
    async def test_close(self, session, mock_paho):
        await session.open()
        await session.close()
        assert mock_paho.disconnect.call_count == 1
        assert mock_paho.loop_stop.call_count == 1
        assert not session.connected

    @pytest.mark.it("Does nothing if not connected")
    async def test_not_connected(self, session, mock_paho):
        await session.close()
        assert mock_paho.disconnect.call_count == 0

    @pytest.mark.it("Opens and closes when used as an async context manager")
    async def test_context_manager(self, session, mock_paho):
        async with session:
            assert session.connected
        assert not session.connected


@pytest.mark.describe("IoTHubMQTTSession - .direct_method_requests()")
class TestIoTHubMQTTSessionDirectMethodRequests:
    @pytest.mark.it("Subscribes to direct method requests, and unsubscribes on exit")
    async def test_subscription(self, mocker, connected_session, mock_paho):
        async with connected_session.direct_method_requests():
            assert mock_paho.subscribe.call_args == mocker.call(topic=METHOD_TOPIC, qos=0)
        assert mock_paho.unsubscribe.call_args == mocker.call(METHOD_TOPIC)

    @pytest.mark.it("Yields a DirectMethodRequest carrying the raw payload for each request received")
    async def test_yields_requests(self, connected_session, mock_paho):
        async with connected_session.direct_method_requests() as requests:
            mock_paho.trigger_on_message("$iothub/methods/POST/loopback/?$rid=7", b'"hi"')
            request = await asyncio.wait_for(next_request(requests), timeout=1)
        assert isinstance(request, DirectMethodRequest)
        assert request.name == "loopback"
        assert request.request_id == "7"
        assert request.payload == b'"hi"'

    @pytest.mark.it("Drops messages that are not valid direct method requests")
    async def test_drops_invalid(self, connected_session, mock_paho):
        async with connected_session.direct_method_requests() as requests:
            mock_paho.trigger_on_message("$iothub/twin/res/200/?$rid=1", b"{}")
            mock_paho.trigger_on_message("$iothub/methods/POST/loopback/", b"null")
            mock_paho.trigger_on_message("$iothub/methods/POST/loopback/?$rid=2", b"null")
            request = await asyncio.wait_for(next_request(requests), timeout=1)
        assert request.request_id == "2"

    @pytest.mark.it("Finishes the request generator if the connection drops")
    async def test_connection_drop(self, connected_session, mock_paho):
        async with connected_session.direct_method_requests() as requests:
            mock_paho.trigger_on_disconnect(rc=mqtt.MQTT_ERR_CONN_LOST)
            assert await asyncio.wait_for(drain(requests), timeout=1) == []
            assert not connected_session.connected
        assert mock_paho.unsubscribe.call_count == 0

    @pytest.mark.it("Raises SessionError if the subscribe fails")
    async def test_subscribe_fails(self, connected_session, mock_paho):
        mock_paho.subscribe.side_effect = None
        mock_paho.subscribe.return_value = (mqtt.MQTT_ERR_NO_CONN, None)
        with pytest.raises(exc.SessionError):
            async with connected_session.direct_method_requests():
                pass

    @pytest.mark.it("Raises SessionError if not connected")
    async def test_not_connected(self, session):
        with pytest.raises(exc.SessionError):
            async with session.direct_method_requests():
                pass


@pytest.mark.describe("IoTHubMQTTSession - .send_direct_method_response()")
class TestIoTHubMQTTSessionSendDirectMethodResponse:
    @pytest.mark.it("Publishes the JSON encoded payload on the response topic and waits for the ack")
    async def test_publish(self, mocker, connected_session, mock_paho):
        response = DirectMethodResponse(request_id="7", status=200, payload="loopback:hi")
        await connected_session.send_direct_method_response(response)
        assert mock_paho.publish.call_args == mocker.call(
            topic="$iothub/methods/res/200/?$rid=7", payload=json.dumps("loopback:hi"), qos=1
        )

    @pytest.mark.it("Raises SessionError if the publish fails")
    async def test_publish_fails(self, connected_session, mock_paho):
        info = mqtt.MQTTMessageInfo(1)
        info.rc = mqtt.MQTT_ERR_NO_CONN
        mock_paho.publish.side_effect = None
        mock_paho.publish.return_value = info
        with pytest.raises(exc.SessionError):
            await connected_session.send_direct_method_response(DirectMethodResponse("7", 200))

    @pytest.mark.it("Raises SessionError if the connection drops before the ack arrives")
    async def test_dropped(self, connected_session, mock_paho):
        mock_paho._manual_mode = True
        send_task = asyncio.create_task(
            connected_session.send_direct_method_response(DirectMethodResponse("7", 200))
        )
        await wait_for(lambda: mock_paho.publish.call_count == 1)
        mock_paho.trigger_on_disconnect(rc=mqtt.MQTT_ERR_CONN_LOST)
        with pytest.raises(exc.SessionError):
            await asyncio.wait_for(send_task, timeout=1)

    @pytest.mark.it("Raises TypeError if the payload is not JSON serializable")
    async def test_not_serializable(self, connected_session):
        with pytest.raises(TypeError):
            await connected_session.send_direct_method_response(
                DirectMethodResponse("7", 200, object())
            )

    @pytest.mark.it("Raises SessionError if not connected")
    async def test_not_connected(self, session):
        with pytest.raises(exc.SessionError):
            await session.send_direct_method_response(DirectMethodResponse("7", 200))
