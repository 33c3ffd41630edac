# -------------------------------------------------------------------------
# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the MIT License. See License.txt in the project root for
# license information.
# --------------------------------------------------------------------------

import asyncio
from azure.iot.methods import (
    InMemoryHub,
    InvocationClient,
    ParallelInvocationHarness,
    MethodTimeoutError,
    run_emulators,
)
from azure.iot.methods.harness import loopback_invocations


async def main():
    hub = InMemoryHub()
    device_ids = ["device-1", "device-2", "device-3"]
    connection_strings = [await hub.add_identity(device_id) for device_id in device_ids]
    client = InvocationClient(hub)

    async with run_emulators(connection_strings, hub.create_session):
        # A single round trip
        result = await client.invoke("device-1", "loopback", "Hello")
        print("loopback -> {} {}".format(result.status, result.payload))

        # Failures are reported as results
        result = await client.invoke("device-1", "delayInMilliseconds", "soon")
        print("delayInMilliseconds -> {} {}".format(result.status, result.payload))
        result = await client.invoke("device-1", "reboot")
        print("reboot -> {} {}".format(result.status, result.payload))

        # Deadlines are reported as errors
        try:
            await client.invoke("device-2", "delayInMilliseconds", "2000", response_timeout=1)
        except MethodTimeoutError as e:
            print("Timed out: {}".format(e))

        # Many round trips at once
        harness = ParallelInvocationHarness(client)
        outcome = await harness.run_parallel(loopback_invocations(device_ids, 100))
        print("All parallel invocations succeeded: {}".format(outcome.all_succeeded))

    await hub.shutdown()


if __name__ == "__main__":
    asyncio.run(main())
