"""Bounded-retry readiness polling: fixed attempt cap, fixed interval.

Every readiness check in the project goes through :func:`poll`. A probe that
raises or returns a falsy value is a failed attempt, never a crash, and
running out of attempts yields ``TIMED_OUT`` rather than an exception.
"""

from __future__ import annotations

import logging
import socket
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Optional

import requests

from aisandbox.models import HealthCheckResult, PollOutcome

logger = logging.getLogger(__name__)

# A probe receives the per-attempt timeout and returns True when ready.
Probe = Callable[[float], Any]


def poll(
    target: str,
    probe: Probe,
    *,
    interval: float,
    max_attempts: int,
    timeout: Optional[float] = None,
    sleep: Callable[[float], None] = time.sleep,
    log_every: int = 10,
) -> HealthCheckResult:
    """Run ``probe`` until it succeeds or ``max_attempts`` are used up.

    Parameters
    ----------
    target : str
        Human-readable name used in log lines and the result.
    probe : callable
        Called with the per-attempt timeout. Truthy return means ready.
    interval : float
        Seconds to wait between attempts. No wait after the last attempt.
    max_attempts : int
        Attempt cap, at least 1.
    timeout : float, optional
        Per-attempt timeout handed to the probe; must be below ``interval``.
        Defaults to 80% of the interval.
    """
    if max_attempts < 1:
        raise ValueError(f"max_attempts must be >= 1, got {max_attempts}")
    if interval <= 0:
        raise ValueError(f"interval must be positive, got {interval}")
    if timeout is None:
        timeout = interval * 0.8
    if timeout >= interval:
        raise ValueError(
            f"per-attempt timeout ({timeout}s) must be shorter than the interval ({interval}s)"
        )

    start = time.monotonic()
    last_error = ""
    for attempt in range(1, max_attempts + 1):
        try:
            if probe(timeout):
                elapsed = time.monotonic() - start
                logger.info("%s ready after %d attempt(s)", target, attempt)
                return HealthCheckResult(
                    target=target,
                    attempts=attempt,
                    elapsed=elapsed,
                    outcome=PollOutcome.READY,
                )
            last_error = "not ready"
        except Exception as e:
            last_error = str(e) or type(e).__name__
            logger.debug("%s probe attempt %d failed: %s", target, attempt, last_error)

        if log_every and attempt % log_every == 0:
            logger.info(
                "Waiting for %s... (attempt %d/%d)", target, attempt, max_attempts
            )
        if attempt < max_attempts:
            sleep(interval)

    elapsed = time.monotonic() - start
    logger.warning("%s not ready after %d attempts", target, max_attempts)
    return HealthCheckResult(
        target=target,
        attempts=max_attempts,
        elapsed=elapsed,
        outcome=PollOutcome.TIMED_OUT,
        detail=last_error,
    )


def check_once(target: str, probe: Probe, *, timeout: float = 5.0) -> HealthCheckResult:
    """Single probe, no retries. Used for status snapshots."""
    start = time.monotonic()
    try:
        ok = bool(probe(timeout))
        detail = "" if ok else "not ready"
    except Exception as e:
        ok = False
        detail = str(e) or type(e).__name__
    return HealthCheckResult(
        target=target,
        attempts=1,
        elapsed=time.monotonic() - start,
        outcome=PollOutcome.READY if ok else PollOutcome.UNREACHABLE,
        detail=detail,
    )


def tcp_probe(host: str, port: int) -> Probe:
    """Ready when a TCP connection to ``host:port`` can be opened."""

    def _probe(timeout: float) -> bool:
        with socket.create_connection((host, port), timeout=timeout):
            return True

    return _probe


def http_probe(
    url: str,
    *,
    method: str = "GET",
    expected_statuses: Iterable[int] = (200,),
    json: Any = None,
) -> Probe:
    """Ready when the HTTP response status is one of ``expected_statuses``."""
    expected = frozenset(expected_statuses)

    def _probe(timeout: float) -> bool:
        resp = requests.request(
            method, url, json=json, timeout=timeout, allow_redirects=False
        )
        return resp.status_code in expected

    return _probe


def any_probe(*probes: Probe) -> Probe:
    """Ready when any of ``probes`` is ready. Failing sub-probes are skipped.

    The sub-probes share one ``timeout``: each gets an equal slice of what
    is left, so the whole attempt stays within it.
    """

    def _probe(timeout: float) -> bool:
        deadline = time.monotonic() + timeout
        for i, p in enumerate(probes):
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break
            try:
                if p(remaining / (len(probes) - i)):
                    return True
            except Exception as e:
                logger.debug("Sub-probe failed: %s", e)
        return False

    return _probe


def wait_for_port(
    host: str,
    port: int,
    *,
    interval: float,
    max_attempts: int,
    sleep: Callable[[float], None] = time.sleep,
    target: str | None = None,
) -> HealthCheckResult:
    return poll(
        target or f"{host}:{port}",
        tcp_probe(host, port),
        interval=interval,
        max_attempts=max_attempts,
        timeout=min(2.0, interval * 0.8),
        sleep=sleep,
    )


def wait_for_http(
    url: str,
    *,
    interval: float,
    max_attempts: int,
    expected_statuses: Iterable[int] = (200,),
    sleep: Callable[[float], None] = time.sleep,
    target: str | None = None,
) -> HealthCheckResult:
    return poll(
        target or url,
        http_probe(url, expected_statuses=expected_statuses),
        interval=interval,
        max_attempts=max_attempts,
        timeout=min(5.0, interval * 0.8),
        sleep=sleep,
    )


@dataclass
class PollTarget:
    """One independent target for :func:`poll_many`."""

    name: str
    probe: Probe
    interval: float
    max_attempts: int
    timeout: Optional[float] = None


def poll_many(
    targets: list[PollTarget],
    *,
    sleep: Callable[[float], None] = time.sleep,
) -> dict[str, HealthCheckResult]:
    """Poll independent targets concurrently, each with its own counter."""
    if not targets:
        return {}

    results: dict[str, HealthCheckResult] = {}
    with ThreadPoolExecutor(max_workers=len(targets)) as pool:
        futures = {
            t.name: pool.submit(
                poll,
                t.name,
                t.probe,
                interval=t.interval,
                max_attempts=t.max_attempts,
                timeout=t.timeout,
                sleep=sleep,
            )
            for t in targets
        }
        for name, fut in futures.items():
            results[name] = fut.result()
    return results
