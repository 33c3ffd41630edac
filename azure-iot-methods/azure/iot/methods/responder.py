# -------------------------------------------------------------------------
# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the MIT License. See License.txt in the project root for
# license information.
# --------------------------------------------------------------------------
"""This module contains the responder that answers direct method requests on a target"""

import asyncio
import functools
import logging
from typing import Any, Dict, Optional, Set, List
from . import constant, models
from .custom_typing import HandlerResult, MethodHandler
from .exceptions import HandlerError, UnknownMethodError

logger = logging.getLogger(__name__)


class MethodResponder:
    """Dispatches direct method requests to handlers registered by method name.

    Handlers take the raw request payload (bytes) and a context object, and return a
    (status, payload) tuple. They may be functions or coroutine functions. Functions are run in
    the event loop's default executor so that a slow handler cannot hold up other requests.
    """

    def __init__(
        self, handlers: Optional[Dict[str, MethodHandler]] = None, context: Any = None
    ) -> None:
        """
        :param dict handlers: Initial mapping of method names to handlers
        :param context: Object passed to every handler invocation made while serving
        """
        self._handlers: Dict[str, MethodHandler] = {}
        self._serving = False
        self._listening = False
        self.context = context
        if handlers:
            for method_name, handler in handlers.items():
                self.register(method_name, handler)

    @property
    def serving(self) -> bool:
        return self._serving

    @property
    def listening(self) -> bool:
        """True once serving has subscribed to incoming requests"""
        return self._listening

    @property
    def method_names(self) -> List[str]:
        return list(self._handlers)

    def register(self, method_name: str, handler: MethodHandler) -> None:
        """Register a handler for a method name, replacing any existing handler for that name

        :raises: ValueError if the method name is empty
        :raises: TypeError if the handler is not callable
        :raises: RuntimeError if the responder is currently serving requests
        """
        if self._serving:
            raise RuntimeError("Cannot register a handler while serving requests")
        if not method_name:
            raise ValueError("'method_name' cannot be empty")
        if not callable(handler):
            raise TypeError("Handler for '{}' must be callable".format(method_name))
        if method_name in self._handlers:
            logger.debug("Replacing handler for method: {}".format(method_name))
        self._handlers[method_name] = handler

    async def dispatch(
        self, method_name: str, payload: Optional[bytes], context: Any = None
    ) -> HandlerResult:
        """Run the handler registered for a method and return its (status, payload) result

        Never raises on behalf of a handler. An unregistered method produces a 404 result and
        a failing handler produces a 403 result carrying the description of the failure.
        """
        try:
            handler = self._get_handler(method_name)
        except UnknownMethodError as e:
            logger.warning(str(e))
            return (
                constant.METHOD_NOT_DEFINED,
                constant.UNKNOWN_METHOD_PAYLOAD_PREFIX + method_name,
            )

        try:
            status, result = await _invoke_handler(handler, payload, context)
            # A result that cannot be sent is a failure of the handler
            models.encode_payload(result)
        except Exception as e:
            handler_error = HandlerError(method_name, e)
            logger.info(
                "Handler for method '{}' failed: {}".format(method_name, str(handler_error))
            )
            return (constant.METHOD_THROWS, str(handler_error))

        logger.debug("Handler for method '{}' returned status {}".format(method_name, status))
        return (status, result)

    async def handle_request(
        self, request: models.DirectMethodRequest
    ) -> models.DirectMethodResponse:
        """Dispatch a DirectMethodRequest and build the DirectMethodResponse for it"""
        status, payload = await self.dispatch(request.name, request.payload, self.context)
        return models.DirectMethodResponse.create_from_method_request(request, status, payload)

    async def serve(self, session) -> None:
        """Answer direct method requests arriving on a session until cancelled or the session ends

        Each request is handled in its own task, so requests never wait on one another.

        :param session: An open session exposing .direct_method_requests() and
            .send_direct_method_response()
        """
        if self._serving:
            raise RuntimeError("Responder is already serving")
        self._serving = True
        in_flight: Set[asyncio.Task] = set()
        try:
            async with session.direct_method_requests() as method_requests:
                self._listening = True
                logger.debug("Responder serving methods: {}".format(self.method_names))
                async for request in method_requests:
                    logger.debug(
                        "Direct method request received: {} (rid: {})".format(
                            request.name, request.request_id
                        )
                    )
                    task = asyncio.create_task(self._respond(session, request))
                    in_flight.add(task)
                    task.add_done_callback(in_flight.discard)
        finally:
            self._serving = False
            self._listening = False
            for task in in_flight:
                task.cancel()
            await asyncio.gather(*in_flight, return_exceptions=True)
            logger.debug("Responder stopped serving")

    async def _respond(self, session, request: models.DirectMethodRequest) -> None:
        response = await self.handle_request(request)
        try:
            await session.send_direct_method_response(response)
        except Exception as e:
            # There is no caller to report to. The invoker will observe a response timeout.
            logger.error(
                "Failed to send response for method '{}' (rid: {}): {}".format(
                    request.name, request.request_id, str(e) or type(e)
                )
            )

    def _get_handler(self, method_name: str) -> MethodHandler:
        try:
            return self._handlers[method_name]
        except KeyError:
            raise UnknownMethodError(method_name) from None


async def _invoke_handler(handler: MethodHandler, payload: Optional[bytes], context: Any):
    if asyncio.iscoroutinefunction(handler):
        return await handler(payload, context)
    else:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, functools.partial(handler, payload, context))
