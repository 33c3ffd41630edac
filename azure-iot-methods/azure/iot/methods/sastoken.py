# -------------------------------------------------------------------------
# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the MIT License. See License.txt in the project root for
# license information.
# --------------------------------------------------------------------------
"""This module contains the Shared Access Signature (SAS) credentials used to authenticate with
IoT Hub, both as a device and as a service"""

import base64
import binascii
import hashlib
import hmac
import logging
import time
import urllib.parse
from typing import AnyStr, NamedTuple, Optional


logger = logging.getLogger(__name__)

TOKEN_PREFIX = "SharedAccessSignature "
DEFAULT_TTL = 3600
# Tokens are replaced this many seconds before they expire
DEFAULT_RENEWAL_MARGIN = 120


class SasToken(NamedTuple):
    resource_uri: str
    signature: str
    expiry_time: int
    key_name: Optional[str] = None

    def __str__(self) -> str:
        token_str = "{}sr={}&sig={}&se={}".format(
            TOKEN_PREFIX,
            urllib.parse.quote(self.resource_uri, safe=""),
            urllib.parse.quote(self.signature, safe=""),
            self.expiry_time,
        )
        if self.key_name:
            token_str += "&skn={}".format(urllib.parse.quote(self.key_name, safe=""))
        return token_str

    @classmethod
    def parse(cls, token_str: str) -> "SasToken":
        """Create a SasToken from a SAS token string

        :raises: ValueError if the string is not a valid SAS token
        """
        if not token_str.startswith(TOKEN_PREFIX):
            raise ValueError("Invalid SAS Token string: Not a SAS Token")
        fields = {}
        for field in token_str[len(TOKEN_PREFIX) :].split("&"):
            key, sep, value = field.partition("=")
            if not sep:
                raise ValueError("Invalid SAS Token string: Incorrectly formatted")
            fields[key.strip()] = urllib.parse.unquote(value.strip())
        try:
            return cls(
                resource_uri=fields["sr"],
                signature=fields["sig"],
                expiry_time=int(fields["se"]),
                key_name=fields.get("skn"),
            )
        except KeyError:
            raise ValueError("Invalid SAS Token string: Not all required fields present") from None

    def expires_within(self, seconds: float) -> bool:
        return self.expiry_time - time.time() < seconds


class SasTokenCredential:
    """Generates SAS tokens for a resource, signed with a symmetric key.

    The most recently generated token is reused by get_token() until it is about to expire.
    """

    def __init__(
        self,
        uri: str,
        shared_access_key: AnyStr,
        *,
        key_name: Optional[str] = None,
        ttl: int = DEFAULT_TTL,
        renewal_margin: int = DEFAULT_RENEWAL_MARGIN,
    ) -> None:
        """
        :param str uri: The resource tokens grant access to, e.g. "{hostname}/devices/{id}"
            for a device, or "{hostname}" for the service API
        :param shared_access_key: Symmetric key (base64 encoded)
        :type shared_access_key: str or bytes
        :param str key_name: Name of the shared access policy the key belongs to. Required for
            service tokens, omitted for device tokens.
        :param int ttl: Lifetime of generated tokens, in seconds
        :param int renewal_margin: Seconds before expiry at which get_token() generates a
            replacement

        :raises: ValueError if the key is not valid base64
        """
        self.uri = uri
        self.key_name = key_name
        self.ttl = ttl
        self.renewal_margin = renewal_margin
        self._signing_key = _decode_key(shared_access_key)
        self._token: Optional[SasToken] = None

    def generate(self) -> SasToken:
        """Generate a new SasToken, valid for the credential's ttl"""
        expiry_time = int(time.time()) + self.ttl
        message = urllib.parse.quote(self.uri, safe="") + "\n" + str(expiry_time)
        self._token = SasToken(
            resource_uri=self.uri,
            signature=sign(self._signing_key, message),
            expiry_time=expiry_time,
            key_name=self.key_name,
        )
        logger.debug("Generated SAS token for {} (expires {})".format(self.uri, expiry_time))
        return self._token

    def get_token(self) -> SasToken:
        """Return the current SasToken, generating a new one if it expires within the margin"""
        if self._token is None or self._token.expires_within(self.renewal_margin):
            return self.generate()
        return self._token


def sign(signing_key: bytes, data: AnyStr) -> str:
    """Sign data with the HMAC-SHA256 algorithm, returning the base64 encoded digest"""
    if isinstance(data, str):
        data_bytes = data.encode("utf-8")
    else:
        data_bytes = data
    digest = hmac.HMAC(key=signing_key, msg=data_bytes, digestmod=hashlib.sha256).digest()
    return base64.b64encode(digest).decode("utf-8")


def _decode_key(key: AnyStr) -> bytes:
    if isinstance(key, str):
        key_bytes = key.encode("utf-8")
    else:
        key_bytes = key
    try:
        return base64.b64decode(key_bytes, validate=True)
    except binascii.Error:
        raise ValueError("Invalid Symmetric Key") from None
