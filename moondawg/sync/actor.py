"""Dramatiq actor for broker-driven sync schedules.

Usage
-----
Queue one sync run; configuration is read from the worker's environment:

>>> sync_merge_requests_job.send()

Importing this module binds the actor to the global Dramatiq broker. A
:class:`~dramatiq.brokers.stub.StubBroker` stands in when no real broker is
available and ``MOONDAWG_ALLOW_STUB_BROKER`` is set, or under pytest.

"""

from __future__ import annotations

import os
import sys
import typing as typ

import dramatiq
from dramatiq.brokers.stub import StubBroker

if typ.TYPE_CHECKING:
    import collections.abc as cabc

STUB_BROKER_ENV = "MOONDAWG_ALLOW_STUB_BROKER"


def stub_broker_allowed(environ: cabc.Mapping[str, str]) -> bool:
    """Return True when ``MOONDAWG_ALLOW_STUB_BROKER`` is set to a true value."""
    return environ.get(STUB_BROKER_ENV, "").strip().lower() in {"1", "true", "yes"}


def install_broker(*, allow_stub: bool | None = None) -> dramatiq.Broker:
    """Return the global broker, falling back to a stub where permitted.

    Parameters
    ----------
    allow_stub : bool | None, optional
        Whether a stub broker may be installed. ``None`` allows it under pytest
        or when :func:`stub_broker_allowed` accepts the environment.

    Raises
    ------
    RuntimeError
        If no broker can be created and a stub is not allowed.

    """
    try:
        return dramatiq.get_broker()
    except ImportError as exc:
        # the default RabbitMQ broker needs pika
        if allow_stub is None:
            allow_stub = "pytest" in sys.modules or stub_broker_allowed(os.environ)
        if not allow_stub:
            msg = (
                "No Dramatiq broker configured; configure one before importing "
                f"moondawg.sync.actor or set {STUB_BROKER_ENV}=1 for local runs"
            )
            raise RuntimeError(msg) from exc
    broker = StubBroker()
    dramatiq.set_broker(broker)
    return broker


install_broker()


@dramatiq.actor(max_retries=0)
def sync_merge_requests_job() -> dict[str, int]:
    """Run one merge request sync and return the invocation result.

    Retries are left to the next scheduled tick: a run that did not finish
    leaves the checkpoint in place.

    Returns
    -------
    dict[str, int]
        ``statusCode`` and ``recordsProcessed`` as returned by
        :func:`moondawg.runtime.run`.

    """
    from moondawg.runtime import run

    return run()
