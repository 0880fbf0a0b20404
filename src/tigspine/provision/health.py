"""Semantic health probes for the converged stack.

A running container is not the same as a working service. Once every
container reports ``running``, these probes ask each application whether it
actually answers:

- InfluxDB: ``GET /ping`` must return 2xx (``204 No Content`` normally).
- Telegraf: ``pgrep telegraf`` inside the collector container.
- Grafana: ``GET /api/health`` must return 2xx.

Probe failures are advisory. Applications often need a few more seconds
after their process starts, so a failed probe is logged as a warning and
never fails the run.
"""

from __future__ import annotations

from dataclasses import dataclass

import httpx

from tigspine.core.errors import CommandError
from tigspine.core.logging import get_logger
from tigspine.provision.compose import ComposeManager
from tigspine.provision.config import StackConfig

logger = get_logger(__name__)


@dataclass(frozen=True)
class ProbeResult:
    service: str
    ok: bool
    detail: str = ""


def check_http(client: httpx.Client, url: str) -> tuple[bool, str]:
    """``GET`` ``url`` and expect a 2xx response."""
    try:
        response = client.get(url)
        response.raise_for_status()
    except httpx.HTTPError as exc:
        return False, f"{type(exc).__name__}: {exc}"
    return True, f"HTTP {response.status_code}"


class HealthProbes:
    """Runs the per-service readiness checks.

    Args:
        compose: Used for the in-container collector check.
        config: Supplies the published ports.
        client: HTTP client; one is created with ``timeout`` when omitted.
        timeout: Per-request timeout in seconds.
    """

    def __init__(
        self,
        compose: ComposeManager,
        config: StackConfig,
        client: httpx.Client | None = None,
        timeout: float = 5.0,
    ) -> None:
        self.compose = compose
        self.config = config
        self._client = client
        self._owns_client = client is None
        self.timeout = timeout

    def _http(self) -> httpx.Client:
        if self._client is None:
            self._client = httpx.Client(timeout=self.timeout)
        return self._client

    def influxdb(self) -> ProbeResult:
        ok, detail = check_http(self._http(), f"{self.config.influxdb_url}/ping")
        return ProbeResult("influxdb", ok, detail)

    def telegraf(self) -> ProbeResult:
        try:
            result = self.compose.exec("telegraf", ["pgrep", "telegraf"])
        except CommandError as exc:
            return ProbeResult("telegraf", False, exc.message)
        if result.returncode == 0:
            return ProbeResult("telegraf", True, "process running")
        return ProbeResult("telegraf", False, f"pgrep exited {result.returncode}")

    def grafana(self) -> ProbeResult:
        ok, detail = check_http(self._http(), f"{self.config.grafana_url}/api/health")
        return ProbeResult("grafana", ok, detail)

    def run_all(self) -> list[ProbeResult]:
        results = [self.influxdb(), self.telegraf(), self.grafana()]
        for result in results:
            if result.ok:
                logger.success("Health probe passed", service=result.service, detail=result.detail)
            else:
                logger.warning(
                    "Health probe failed; the service may still be starting",
                    service=result.service,
                    detail=result.detail,
                )
        return results

    def close(self) -> None:
        if self._client is not None and self._owns_client:
            self._client.close()
            self._client = None


__all__ = ["HealthProbes", "ProbeResult", "check_http"]
