# -------------------------------------------------------------------------
# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the MIT License. See License.txt in the project root for
# license information.
# --------------------------------------------------------------------------
"""This module contains a harness for running many direct method invocations in parallel
and checking every result against an expectation.
"""

import asyncio
import logging
import threading
from typing import Iterable, List, NamedTuple, Optional, Sequence, Set
from . import constant
from .custom_typing import JSONSerializable
from .emulator import METHOD_LOOPBACK
from .invocation_client import InvocationClient
from .models import MethodResult

logger = logging.getLogger(__name__)


class ExpectedInvocation(NamedTuple):
    target_id: str
    method_name: str
    payload: JSONSerializable
    expected_status: int
    expected_payload: JSONSerializable


class InvocationOutcome(NamedTuple):
    target: str
    succeeded: bool
    reason: Optional[str] = None


class HarnessResult(NamedTuple):
    all_succeeded: bool
    failure_reasons: Set[str]


class OutcomeCollector:
    """Aggregates invocation outcomes. Safe for use from any number of threads and tasks."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._failure_reasons: Set[str] = set()
        self._failed = 0

    def record(self, outcome: InvocationOutcome) -> None:
        with self._lock:
            if not outcome.succeeded:
                self._failed += 1
                self._failure_reasons.add(
                    outcome.reason or "Invocation on '{}' failed".format(outcome.target)
                )

    @property
    def all_succeeded(self) -> bool:
        with self._lock:
            return self._failed == 0

    @property
    def failure_reasons(self) -> Set[str]:
        """A copy of the failure reasons recorded so far"""
        with self._lock:
            return set(self._failure_reasons)


class ParallelInvocationHarness:
    def __init__(
        self,
        client: InvocationClient,
        response_timeout: Optional[float] = None,
        connect_timeout: Optional[float] = None,
    ) -> None:
        """
        :param client: The client used for every invocation
        :param float response_timeout: Response timeout for every invocation (client default
            if not provided)
        :param float connect_timeout: Connect timeout for every invocation (client default if
            not provided)
        """
        self._client = client
        self._response_timeout = response_timeout
        self._connect_timeout = connect_timeout

    async def run_parallel(self, invocations: Iterable[Sequence]) -> HarnessResult:
        """Run every invocation concurrently and wait for all of them to finish.

        :param invocations: ExpectedInvocations, or tuples of the same shape
            (target_id, method_name, payload, expected_status, expected_payload)

        :returns: Whether every invocation matched its expectation, and the reasons for any
            that did not
        """
        entries = [ExpectedInvocation(*invocation) for invocation in invocations]
        collector = OutcomeCollector()
        logger.debug("Running {} invocations in parallel".format(len(entries)))
        await asyncio.gather(*[self._run_one(entry, collector) for entry in entries])
        result = HarnessResult(
            all_succeeded=collector.all_succeeded, failure_reasons=collector.failure_reasons
        )
        if result.all_succeeded:
            logger.debug("All {} invocations succeeded".format(len(entries)))
        else:
            logger.info(
                "{} distinct failures across {} invocations".format(
                    len(result.failure_reasons), len(entries)
                )
            )
        return result

    async def _run_one(self, entry: ExpectedInvocation, collector: OutcomeCollector) -> None:
        try:
            result = await self._client.invoke(
                entry.target_id,
                entry.method_name,
                payload=entry.payload,
                response_timeout=self._response_timeout,
                connect_timeout=self._connect_timeout,
            )
        except Exception as e:
            reason = "{} on '{}' raised {}: {}".format(
                entry.method_name, entry.target_id, type(e).__name__, e
            )
            collector.record(
                InvocationOutcome(target=entry.target_id, succeeded=False, reason=reason)
            )
            return

        reason = _check_result(entry, result)
        collector.record(
            InvocationOutcome(target=entry.target_id, succeeded=reason is None, reason=reason)
        )


def _check_result(entry: ExpectedInvocation, result: Optional[MethodResult]) -> Optional[str]:
    """Return a description of how the result differs from the expectation, or None if it matches"""
    if result is None:
        return "{} on '{}' returned no result".format(entry.method_name, entry.target_id)
    if result.status != entry.expected_status:
        return "{} on '{}' returned status {}, expected {}".format(
            entry.method_name, entry.target_id, result.status, entry.expected_status
        )
    if result.payload != entry.expected_payload:
        return "{} on '{}' returned payload {!r}, expected {!r}".format(
            entry.method_name, entry.target_id, result.payload, entry.expected_payload
        )
    return None


def loopback_invocations(target_ids: Sequence[str], count: int) -> List[ExpectedInvocation]:
    """Build loopback invocations with the payloads "Thread0" to "Thread<count - 1>",
    distributed round robin across the targets.

    :raises: ValueError if no targets are provided
    """
    if not target_ids:
        raise ValueError("At least one target is required")
    invocations = []
    for i in range(count):
        payload = "Thread{}".format(i)
        invocations.append(
            ExpectedInvocation(
                target_id=target_ids[i % len(target_ids)],
                method_name=METHOD_LOOPBACK,
                payload=payload,
                expected_status=constant.METHOD_SUCCESS,
                expected_payload=METHOD_LOOPBACK + ":" + payload,
            )
        )
    return invocations
