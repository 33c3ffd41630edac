# -------------------------------------------------------------------------
# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the MIT License. See License.txt in the project root for
# license information.
# --------------------------------------------------------------------------
"""Helpers for creating and removing the device identities used in direct method round trips"""

import getpass
import logging
import uuid
from typing import NamedTuple
from typing_extensions import Protocol
from . import exceptions as exc

logger = logging.getLogger(__name__)

DEFAULT_DEVICE_ID_PREFIX = "python-e2e-test"


class IdentityRegistry(Protocol):
    async def add_identity(self, device_id: str) -> str:
        ...

    async def get_identity(self, device_id: str) -> str:
        ...

    async def remove_identity(self, device_id: str) -> None:
        ...


class ProvisionedDevice(NamedTuple):
    device_id: str
    connection_string: str


def generate_device_id(prefix: str = DEFAULT_DEVICE_ID_PREFIX) -> str:
    """Return a device id unique to this user and call, of the form <prefix>-<user>-<uuid>"""
    return "{}-{}-{}".format(prefix, _get_user_name(), uuid.uuid4())


async def provision_device(
    registry: IdentityRegistry, prefix: str = DEFAULT_DEVICE_ID_PREFIX
) -> ProvisionedDevice:
    """Create a new device identity and return its id and connection string

    An existing identity with the generated id is removed first. Failure to remove it is logged,
    and provisioning continues.

    :raises: ProvisioningError if the identity cannot be created
    """
    device_id = generate_device_id(prefix)

    try:
        await registry.get_identity(device_id)
    except exc.DeviceNotFoundError:
        pass
    else:
        logger.info("Device '{}' already exists. Removing it".format(device_id))
        try:
            await registry.remove_identity(device_id)
        except exc.ProvisioningError as e:
            logger.warning("Failed to remove existing device '{}': {}".format(device_id, e))

    connection_string = await registry.add_identity(device_id)
    logger.info("Provisioned device '{}'".format(device_id))
    return ProvisionedDevice(device_id=device_id, connection_string=connection_string)


async def deprovision_device(registry: IdentityRegistry, device_id: str) -> None:
    """Remove a device identity. Failures are logged rather than raised."""
    try:
        await registry.remove_identity(device_id)
    except exc.ProvisioningError as e:
        logger.warning("Failed to remove device '{}': {}".format(device_id, e))
    else:
        logger.info("Removed device '{}'".format(device_id))


def _get_user_name() -> str:
    try:
        return getpass.getuser()
    except (OSError, KeyError, ImportError):
        # No user name can be determined from the environment
        return "unknown"
