# -------------------------------------------------------------------------
# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the MIT License. See License.txt in the project root for
# license information.
# --------------------------------------------------------------------------
"""This module contains the reference method handlers and an emulated device that serves them"""

import asyncio
import contextlib
import logging
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Type
from types import TracebackType
from . import constant
from . import exceptions as exc
from .custom_typing import HandlerResult, MethodHandler
from .responder import MethodResponder

logger = logging.getLogger(__name__)

METHOD_LOOPBACK = "loopback"
METHOD_DELAY_IN_MILLISECONDS = "delayInMilliseconds"


def _payload_text(payload: Optional[bytes]) -> str:
    if payload is None:
        payload = b"null"
    return payload.decode("utf-8").replace('"', "")


async def loopback(payload: Optional[bytes], context: Any = None) -> HandlerResult:
    """Echo the payload text back, with all double quotes removed"""
    return (constant.METHOD_SUCCESS, METHOD_LOOPBACK + ":" + _payload_text(payload))


async def delay_in_milliseconds(payload: Optional[bytes], context: Any = None) -> HandlerResult:
    """Sleep for the number of milliseconds given in the payload before responding

    :raises: ValueError if the payload text is not an integer
    """
    delay = int(_payload_text(payload))
    await asyncio.sleep(delay / 1000)
    return (constant.METHOD_SUCCESS, METHOD_DELAY_IN_MILLISECONDS + ":succeed")


REFERENCE_HANDLERS: Dict[str, MethodHandler] = {
    METHOD_LOOPBACK: loopback,
    METHOD_DELAY_IN_MILLISECONDS: delay_in_milliseconds,
}


def create_reference_responder(context: Any = None) -> MethodResponder:
    """Return a MethodResponder with the reference handlers registered"""
    return MethodResponder(handlers=REFERENCE_HANDLERS, context=context)


class DeviceEmulator:
    """An emulated device answering direct methods with the reference handlers.

    Entering the emulator opens a session with the device connection string and starts serving
    requests in the background. Exiting stops serving and closes the session.
    """

    def __init__(
        self,
        connection_string: str,
        session_factory: Callable[[str], Any],
        responder: Optional[MethodResponder] = None,
    ) -> None:
        """
        :param str connection_string: The device connection string
        :param session_factory: Callable returning an unopened session for a connection string
            (e.g. InMemoryHub.create_session or IoTHubMQTTSession.from_connection_string)
        :param responder: The responder to serve. Defaults to one with the reference handlers.
        """
        self.connection_string = connection_string
        self.responder = responder if responder is not None else create_reference_responder()
        self._session_factory = session_factory
        self._session: Any = None
        self._serve_task: Optional[asyncio.Task] = None

    async def __aenter__(self) -> "DeviceEmulator":
        await self.start()
        return self

    async def __aexit__(
        self,
        exc_type: Optional[Type[BaseException]],
        exc_val: Optional[BaseException],
        traceback: TracebackType,
    ) -> None:
        await self.stop()

    @property
    def session(self) -> Any:
        return self._session

    @property
    def running(self) -> bool:
        return self._serve_task is not None and not self._serve_task.done()

    async def start(self) -> None:
        """Open the session and begin serving direct method requests.

        Returns once the emulator is subscribed and able to receive requests.

        :raises: RuntimeError if already started
        :raises: SessionError or CredentialError if the session cannot be opened or subscribed
        """
        if self._serve_task is not None:
            raise RuntimeError("DeviceEmulator already started")
        session = self._session_factory(self.connection_string)
        await session.open()
        self._session = session
        self._serve_task = asyncio.create_task(self.responder.serve(session))
        # Let the responder subscribe before reporting the emulator as started
        while not self.responder.listening and not self._serve_task.done():
            await asyncio.sleep(0.01)
        if self._serve_task.done():
            # Serving ended before it began listening
            task = self._serve_task
            self._serve_task = None
            self._session = None
            await session.close()
            error = task.exception()
            if error:
                raise error
            raise exc.SessionError("Session ended before serving began")
        logger.debug("DeviceEmulator started")

    async def stop(self) -> None:
        """Stop serving and close the session. Does nothing if not started."""
        if self._serve_task is not None:
            self._serve_task.cancel()
            try:
                await self._serve_task
            except asyncio.CancelledError:
                pass
            except Exception as e:
                logger.warning("DeviceEmulator stopped with error: {}".format(str(e) or type(e)))
            self._serve_task = None
        if self._session is not None:
            await self._session.close()
            self._session = None
            logger.debug("DeviceEmulator stopped")


@contextlib.asynccontextmanager
async def run_emulators(
    connection_strings: List[str], session_factory: Callable[[str], Any]
) -> AsyncIterator[List[DeviceEmulator]]:
    """Start an emulator for each connection string, and stop all of them on exit"""
    async with contextlib.AsyncExitStack() as stack:
        emulators = []
        for connection_string in connection_strings:
            emulator = DeviceEmulator(connection_string, session_factory)
            emulators.append(await stack.enter_async_context(emulator))
        yield emulators

