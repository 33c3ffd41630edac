# -------------------------------------------------------------------------
# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the MIT License. See License.txt in the project root for
# license information.
# --------------------------------------------------------------------------

import os
import asyncio
from azure.iot.methods import DeviceEmulator, IoTHubMQTTSession


async def main():
    conn_str = os.getenv("IOTHUB_DEVICE_CONNECTION_STRING")

    # Answer the "loopback" and "delayInMilliseconds" methods until interrupted
    async with DeviceEmulator(conn_str, IoTHubMQTTSession.from_connection_string) as emulator:
        print("Emulated device answering: {}".format(emulator.responder.method_names))
        await asyncio.Event().wait()


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        print("Emulated device stopped")
