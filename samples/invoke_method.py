# -------------------------------------------------------------------------
# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the MIT License. See License.txt in the project root for
# license information.
# --------------------------------------------------------------------------

import os
import sys
import asyncio
from azure.iot.methods import InvocationClient, IoTHubHTTPClient, MethodTimeoutError


async def main():
    conn_str = os.getenv("IOTHUB_CONNECTION_STRING")
    device_id = os.getenv("IOTHUB_DEVICE_ID")
    method_name = sys.argv[1] if len(sys.argv) > 1 else "loopback"
    payload = sys.argv[2] if len(sys.argv) > 2 else "Hello from the service"

    client = InvocationClient(IoTHubHTTPClient.from_connection_string(conn_str))

    try:
        result = await client.invoke(
            device_id, method_name, payload, response_timeout=30, connect_timeout=10
        )
    except MethodTimeoutError as e:
        print("Invocation timed out: {}".format(e))
    else:
        print("Status: {}".format(result.status))
        print("Payload: {}".format(result.payload))


if __name__ == "__main__":
    asyncio.run(main())
