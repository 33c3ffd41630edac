# --------------------------------------------------------------------------------------------
# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the MIT License. See License.txt in the project root for
# license information.
# --------------------------------------------------------------------------
from typing import Any, Union, Dict, List, Tuple, Callable, Awaitable


# typing does not support recursion, so we must use forward references here (PEP484)
JSONSerializable = Union[
    Dict[str, "JSONSerializable"],
    List["JSONSerializable"],
    Tuple["JSONSerializable", ...],
    str,
    int,
    float,
    bool,
    None,
]

# A method handler is called with the raw request payload and the responder's context, and
# returns a (status, payload) pair
HandlerResult = Tuple[int, JSONSerializable]
MethodHandler = Union[
    Callable[[bytes, Any], HandlerResult], Callable[[bytes, Any], Awaitable[HandlerResult]]
]
