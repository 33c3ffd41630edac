# -------------------------------------------------------------------------
# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the MIT License. See License.txt in the project root for
# license information.
# --------------------------------------------------------------------------
from azure.iot.methods import config


def pytest_addoption(parser):
    parser.addoption(
        "--backend",
        help="Hub to run end to end tests against. Defaults to the settings file, then {}".format(
            config.ENV_BACKEND
        ),
        type=str,
        choices=config.BACKEND_CHOICES,
        default=None,
    )
    parser.addoption(
        "--device-count",
        help="Number of emulated devices for the multi-device tests",
        type=int,
        default=3,
    )
