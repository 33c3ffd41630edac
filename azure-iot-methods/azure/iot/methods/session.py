# -------------------------------------------------------------------------
# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the MIT License. See License.txt in the project root for
# license information.
# --------------------------------------------------------------------------
"""Behavior shared by device sessions"""

import asyncio
import functools
from typing import AsyncGenerator
from . import models
from . import exceptions as exc


class SessionEnded(object):
    """Sentinel placed in a session's request inbox when the session ends"""

    pass


def requires_connection(f):
    """Decorator to indicate a method requires the Session to already be connected."""

    @functools.wraps(f)
    def check_connection_wrapper(*args, **kwargs):
        this = args[0]  # a.k.a. self
        if not this.connected:
            raise exc.SessionError("{} not connected".format(type(this).__name__))
        else:
            return f(*args, **kwargs)

    return check_connection_wrapper


async def method_request_generator(
    inbox: asyncio.Queue,
) -> AsyncGenerator[models.DirectMethodRequest, None]:
    """Yield the requests placed in the inbox, finishing when the session ends"""
    while True:
        item = await inbox.get()
        if isinstance(item, SessionEnded):
            return
        yield item
