"""
Grafana OTLP Metrics Exporter
==============================

Pushes case-engine health metrics to Grafana Cloud via OTLP.

Metrics exported:
- case_engine_total_cases / active_cases / overdue_cases / active_users:
  the liveness snapshot
- case_engine_sweep_processed / sweep_failed / sweep_duration_ms:
  per sweep run, labelled with the sweep name
"""

import base64
import time
from typing import Optional, Dict, Any, List, Mapping

import httpx

from config import settings
from shared.infrastructure.logging import get_logger

logger = get_logger(__name__)


class GrafanaOTLPExporter:
    """
    Export engine metrics to Grafana Cloud via OTLP HTTP endpoint.

    Uses OpenTelemetry Protocol (OTLP) JSON format with gauge data points.
    Exporting is best-effort: every failure is logged and reported as False.
    """

    def __init__(
        self,
        host: Optional[str] = None,
        api_key: Optional[str] = None,
        instance_id: Optional[str] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout_seconds: float = 10.0
    ):
        """
        Initialize Grafana OTLP exporter.

        Args:
            host: Grafana OTLP gateway URL (e.g., https://otlp-gateway-prod-eu-west-0.grafana.net)
            api_key: Grafana API key
            instance_id: Instance ID for authentication
            http_client: Optional pre-built client (tests inject a mock transport)
            timeout_seconds: Timeout for a single export call
        """
        self._host = host or settings.grafana_host
        self._api_key = api_key or settings.grafana_api_key
        self._instance_id = instance_id or settings.grafana_instance_id
        self._http_client = http_client
        self._timeout = timeout_seconds
        self._enabled = bool(self._host and self._api_key and self._instance_id)

        if self._enabled:
            auth_pair = f"{self._instance_id}:{self._api_key}"
            self._auth_encoded = base64.b64encode(auth_pair.encode()).decode()
            if "/otlp/v1/metrics" not in self._host:
                self._url = f"{self._host.rstrip('/')}/otlp/v1/metrics"
            else:
                self._url = self._host
            logger.info(
                "Grafana OTLP exporter initialized",
                extra={"host": self._host, "instance_id": self._instance_id}
            )
        else:
            logger.info(
                "Grafana OTLP exporter not configured - metrics will not be exported",
                extra={
                    "host_configured": bool(self._host),
                    "instance_id_configured": bool(self._instance_id)
                }
            )

    def is_enabled(self) -> bool:
        """Check if exporter is properly configured."""
        return self._enabled

    async def export_health_snapshot(self, snapshot: Mapping[str, Any]) -> bool:
        """
        Export the liveness snapshot counts as gauges.

        Args:
            snapshot: Mapping with total_cases, active_cases, overdue_cases,
                active_users (extra keys are ignored)
        """
        if not self._enabled:
            return False

        timestamp_ns = time.time_ns()
        attributes = self._attributes({})
        metrics = [
            self._gauge(f"case_engine_{key}", "1", description, int(snapshot.get(key, 0)), attributes, timestamp_ns)
            for key, description in (
                ("total_cases", "Total number of cases"),
                ("active_cases", "Cases in Open or In Progress"),
                ("overdue_cases", "Active cases past their SLA due date"),
                ("active_users", "Active users"),
            )
        ]
        return await self._post(metrics, operation="health_snapshot")

    async def export_sweep_report(
        self,
        sweep: str,
        processed: int,
        failed: int,
        duration_ms: int
    ) -> bool:
        """Export per-run counters of a sweep job."""
        if not self._enabled:
            return False

        timestamp_ns = time.time_ns()
        attributes = self._attributes({"sweep": sweep})
        metrics = [
            self._gauge("case_engine_sweep_processed", "1", "Records changed by the sweep", processed, attributes, timestamp_ns),
            self._gauge("case_engine_sweep_failed", "1", "Records that failed in the sweep", failed, attributes, timestamp_ns),
            self._gauge("case_engine_sweep_duration_ms", "ms", "Sweep run duration", duration_ms, attributes, timestamp_ns),
        ]
        return await self._post(metrics, operation="sweep_report")

    def _attributes(self, extra: Dict[str, str]) -> List[Dict[str, Any]]:
        attributes = [{"key": "service", "value": {"stringValue": settings.app_name}}]
        for key, value in extra.items():
            attributes.append({"key": key, "value": {"stringValue": str(value)}})
        return attributes

    @staticmethod
    def _gauge(
        name: str,
        unit: str,
        description: str,
        value: int,
        attributes: List[Dict[str, Any]],
        timestamp_ns: int
    ) -> Dict[str, Any]:
        return {
            "name": name,
            "unit": unit,
            "description": description,
            "gauge": {
                "dataPoints": [
                    {
                        "asInt": value,
                        "timeUnixNano": timestamp_ns,
                        "attributes": attributes
                    }
                ]
            }
        }

    async def _post(self, metrics: List[Dict[str, Any]], operation: str) -> bool:
        payload = {
            "resourceMetrics": [
                {
                    "resource": {
                        "attributes": [
                            {"key": "service.name", "value": {"stringValue": settings.app_name}},
                            {"key": "service.version", "value": {"stringValue": settings.app_version}},
                            {"key": "deployment.environment", "value": {"stringValue": settings.environment}},
                        ]
                    },
                    "scopeMetrics": [{"metrics": metrics}]
                }
            ]
        }
        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Basic {self._auth_encoded}",
            "X-Grafana-Org-Id": str(self._instance_id)
        }

        try:
            if self._http_client is not None:
                response = await self._http_client.post(self._url, headers=headers, json=payload)
            else:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    response = await client.post(self._url, headers=headers, json=payload)
        except httpx.HTTPError as e:
            logger.error(
                "Error exporting metrics to Grafana",
                extra={"error": str(e), "operation": operation}
            )
            return False

        if response.status_code in (200, 202):
            logger.debug(
                "Metrics exported to Grafana",
                extra={"operation": operation, "metrics_count": len(metrics)}
            )
            return True

        logger.warning(
            "Failed to export metrics to Grafana",
            extra={
                "status_code": response.status_code,
                "response": response.text[:500],
                "operation": operation
            }
        )
        return False


# Global exporter instance
_grafana_exporter: Optional[GrafanaOTLPExporter] = None


def get_grafana_exporter() -> GrafanaOTLPExporter:
    """Get or create global Grafana exporter instance."""
    global _grafana_exporter
    if _grafana_exporter is None:
        _grafana_exporter = GrafanaOTLPExporter()
    return _grafana_exporter
