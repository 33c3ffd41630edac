# -------------------------------------------------------------------------
# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the MIT License. See License.txt in the project root for
# license information.
# --------------------------------------------------------------------------
import asyncio
import contextlib
import pytest
import threading
from azure.iot.methods import constant
from azure.iot.methods.models import DirectMethodRequest, DirectMethodResponse
from azure.iot.methods.responder import MethodResponder
from azure.iot.methods.session import SessionEnded, method_request_generator


class FakeSession:
    """Minimal session delivering requests placed on its inbox"""

    def __init__(self):
        self.inbox = asyncio.Queue()
        self.responses = asyncio.Queue()
        self.subscribed = False
        self.fail_sends = False

    @contextlib.asynccontextmanager
    async def direct_method_requests(self):
        self.subscribed = True
        try:
            yield method_request_generator(self.inbox)
        finally:
            self.subscribed = False

    async def send_direct_method_response(self, response):
        if self.fail_sends:
            raise RuntimeError("send failed")
        await self.responses.put(response)

    def end(self):
        self.inbox.put_nowait(SessionEnded())


async def echo(payload, context):
    return (200, payload.decode("utf-8"))


@pytest.fixture
def session():
    return FakeSession()


@pytest.mark.describe("MethodResponder - Instantiation")
class TestMethodResponderInstantiation:
    @pytest.mark.it("Registers any handlers provided")
    def test_handlers(self):
        responder = MethodResponder(handlers={"echo": echo})
        assert responder.method_names == ["echo"]

    @pytest.mark.it("Stores the provided context")
    def test_context(self):
        context = object()
        responder = MethodResponder(context=context)
        assert responder.context is context

    @pytest.mark.it("Is not serving or listening")
    def test_not_serving(self):
        responder = MethodResponder()
        assert not responder.serving
        assert not responder.listening


@pytest.mark.describe("MethodResponder - .register()")
class TestMethodResponderRegister:
    @pytest.mark.it("Replaces an existing handler registered for the same method name")
    async def test_replace(self):
        async def other(payload, context):
            return (201, "other")

        responder = MethodResponder(handlers={"echo": echo})
        responder.register("echo", other)
        assert await responder.dispatch("echo", b"x") == (201, "other")

    @pytest.mark.it("Raises ValueError if the method name is empty")
    def test_empty_name(self):
        with pytest.raises(ValueError):
            MethodResponder().register("", echo)

    @pytest.mark.it("Raises TypeError if the handler is not callable")
    def test_not_callable(self):
        with pytest.raises(TypeError):
            MethodResponder().register("echo", "not a handler")

    @pytest.mark.it("Raises RuntimeError if the responder is serving")
    async def test_while_serving(self, session):
        responder = MethodResponder(handlers={"echo": echo})
        task = asyncio.create_task(responder.serve(session))
        await asyncio.sleep(0.05)
        assert responder.serving
        with pytest.raises(RuntimeError):
            responder.register("other", echo)
        session.end()
        await task


@pytest.mark.describe("MethodResponder - .dispatch()")
class TestMethodResponderDispatch:
    @pytest.mark.it("Returns the status and payload returned by a coroutine handler")
    async def test_coroutine_handler(self):
        responder = MethodResponder(handlers={"echo": echo})
        assert await responder.dispatch("echo", b"hi") == (200, "hi")

    @pytest.mark.it("Runs a plain function handler on an executor thread")
    async def test_function_handler(self):
        handler_threads = []

        def handler(payload, context):
            handler_threads.append(threading.get_ident())
            return (200, "sync")

        responder = MethodResponder(handlers={"sync": handler})
        assert await responder.dispatch("sync", b"null") == (200, "sync")
        assert handler_threads[0] != threading.get_ident()

    @pytest.mark.it("Passes the payload and context to the handler")
    async def test_handler_args(self, mocker):
        handler = mocker.AsyncMock(return_value=(200, None))
        context = object()
        responder = MethodResponder(handlers={"m": handler})
        await responder.dispatch("m", b"payload", context)
        assert handler.await_args == mocker.call(b"payload", context)

    @pytest.mark.it("Returns a 404 status naming the method if no handler is registered for it")
    async def test_unknown_method(self):
        responder = MethodResponder(handlers={"echo": echo})
        status, payload = await responder.dispatch("wrongName", b"null")
        assert status == constant.METHOD_NOT_DEFINED
        assert payload == "unknown:wrongName"

    @pytest.mark.it("Returns a 403 status describing the failure if the handler raises")
    async def test_handler_raises(self, arbitrary_exception):
        async def failing(payload, context):
            raise arbitrary_exception

        responder = MethodResponder(handlers={"failing": failing})
        status, payload = await responder.dispatch("failing", b"null")
        assert status == constant.METHOD_THROWS
        assert payload == "ArbitraryException: arbitrary description"

    @pytest.mark.it("Returns a 403 status if a plain function handler raises")
    async def test_function_handler_raises(self):
        def failing(payload, context):
            return int("abc")

        responder = MethodResponder(handlers={"failing": failing})
        status, payload = await responder.dispatch("failing", b"null")
        assert status == constant.METHOD_THROWS
        assert payload.startswith("ValueError: ")

    @pytest.mark.it("Returns a 403 status if the handler returns a payload that cannot be sent")
    async def test_unsendable_payload(self):
        async def raw(payload, context):
            return (200, b"raw-bytes")

        responder = MethodResponder(handlers={"raw": raw})
        status, payload = await responder.dispatch("raw", b"null")
        assert status == constant.METHOD_THROWS
        assert payload.startswith("TypeError: ")


@pytest.mark.describe("MethodResponder - .handle_request()")
class TestMethodResponderHandleRequest:
    @pytest.mark.it("Returns a DirectMethodResponse for the request carrying the handler result")
    async def test_response(self):
        context = object()
        seen = []

        async def handler(payload, ctx):
            seen.append(ctx)
            return (200, "done")

        responder = MethodResponder(handlers={"m": handler}, context=context)
        request = DirectMethodRequest(request_id="1", name="m", payload=b"null")
        response = await responder.handle_request(request)
        assert isinstance(response, DirectMethodResponse)
        assert response.request_id == "1"
        assert response.status == 200
        assert response.payload == "done"
        assert seen == [context]


@pytest.mark.describe("MethodResponder - .serve()")
class TestMethodResponderServe:
    @pytest.mark.it("Sends a response on the session for each request received")
    async def test_responds(self, session):
        responder = MethodResponder(handlers={"echo": echo})
        task = asyncio.create_task(responder.serve(session))
        session.inbox.put_nowait(DirectMethodRequest("1", "echo", b"a"))
        session.inbox.put_nowait(DirectMethodRequest("2", "nope", b"b"))

        responses = [await session.responses.get(), await session.responses.get()]
        by_rid = {r.request_id: r for r in responses}
        assert (by_rid["1"].status, by_rid["1"].payload) == (200, "a")
        assert (by_rid["2"].status, by_rid["2"].payload) == (404, "unknown:nope")

        session.end()
        await task

    @pytest.mark.it("Does not make a request wait on a slower request received before it")
    async def test_concurrent(self, session):
        release = asyncio.Event()

        async def slow(payload, context):
            await release.wait()
            return (200, "slow")

        responder = MethodResponder(handlers={"slow": slow, "echo": echo})
        task = asyncio.create_task(responder.serve(session))
        session.inbox.put_nowait(DirectMethodRequest("1", "slow", b"null"))
        session.inbox.put_nowait(DirectMethodRequest("2", "echo", b"fast"))

        first = await asyncio.wait_for(session.responses.get(), timeout=1)
        assert first.request_id == "2"
        release.set()
        second = await asyncio.wait_for(session.responses.get(), timeout=1)
        assert second.request_id == "1"

        session.end()
        await task

    @pytest.mark.it("Is listening while subscribed, and stops serving when the session ends")
    async def test_session_ends(self, session):
        responder = MethodResponder(handlers={"echo": echo})
        task = asyncio.create_task(responder.serve(session))
        await asyncio.sleep(0.05)
        assert responder.serving
        assert responder.listening
        assert session.subscribed

        session.end()
        await task
        assert not responder.serving
        assert not responder.listening
        assert not session.subscribed

    @pytest.mark.it("Cancels requests still being handled when serving is cancelled")
    async def test_cancel(self, session):
        handler_cancelled = asyncio.Event()

        async def forever(payload, context):
            try:
                await asyncio.sleep(1000)
            except asyncio.CancelledError:
                handler_cancelled.set()
                raise

        responder = MethodResponder(handlers={"forever": forever})
        task = asyncio.create_task(responder.serve(session))
        session.inbox.put_nowait(DirectMethodRequest("1", "forever", b"null"))
        await asyncio.sleep(0.05)

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert handler_cancelled.is_set()
        assert not responder.serving

    @pytest.mark.it("Continues serving if sending a response fails")
    async def test_send_failure(self, session):
        responder = MethodResponder(handlers={"echo": echo})
        task = asyncio.create_task(responder.serve(session))
        session.fail_sends = True
        session.inbox.put_nowait(DirectMethodRequest("1", "echo", b"a"))
        await asyncio.sleep(0.05)
        session.fail_sends = False
        session.inbox.put_nowait(DirectMethodRequest("2", "echo", b"b"))

        response = await asyncio.wait_for(session.responses.get(), timeout=1)
        assert response.request_id == "2"
        session.end()
        await task

    @pytest.mark.it("Raises RuntimeError if already serving")
    async def test_already_serving(self, session):
        responder = MethodResponder()
        task = asyncio.create_task(responder.serve(session))
        await asyncio.sleep(0.05)
        with pytest.raises(RuntimeError):
            await responder.serve(FakeSession())
        session.end()
        await task
