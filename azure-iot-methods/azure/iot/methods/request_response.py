# -------------------------------------------------------------------------
# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the MIT License. See License.txt in the project root for
# license information.
# --------------------------------------------------------------------------
"""Matching of direct method responses to the invocations waiting on them"""
import asyncio
import uuid
from typing import Dict, Optional
from . import models


class PendingRequest:
    """A direct method request that has been delivered and is waiting for its response"""

    def __init__(self, request_id: Optional[str] = None) -> None:
        self.request_id = request_id or str(uuid.uuid4())
        self.response_future: "asyncio.Future[models.DirectMethodResponse]" = (
            asyncio.get_running_loop().create_future()
        )

    async def get_response(self) -> models.DirectMethodResponse:
        return await self.response_future


class RequestLedger:
    """Tracks pending requests by request id.

    A request that is discarded (e.g. because its caller gave up waiting) can no longer be
    matched, so a late response for it causes .match_response() to raise KeyError.
    All methods must be called from the event loop the requests were created on.
    """

    def __init__(self) -> None:
        self.pending: Dict[str, PendingRequest] = {}

    def __len__(self) -> int:
        return len(self.pending)

    def create_request(self, request_id: Optional[str] = None) -> PendingRequest:
        """
        :raises: ValueError if a request with the given request_id is already pending
        """
        request = PendingRequest(request_id)
        if request.request_id in self.pending:
            raise ValueError("Provided request_id is a duplicate")
        self.pending[request.request_id] = request
        return request

    def discard_request(self, request_id: str) -> None:
        """Stop tracking a request. Does nothing if it is not pending."""
        self.pending.pop(request_id, None)

    def match_response(self, response: models.DirectMethodResponse) -> None:
        """Complete the pending request the response belongs to

        :raises: KeyError if no request with the response's request id is pending
        """
        request = self.pending.pop(response.request_id)
        if not request.response_future.done():
            request.response_future.set_result(response)
