"""Health check, status and command endpoints."""

import json
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from http.server import BaseHTTPRequestHandler, HTTPServer
from threading import Lock, Thread
from typing import TYPE_CHECKING, Any, Dict, List, Optional
from urllib.parse import parse_qs, urlparse

from cdc_engine.common.config import get_settings
from cdc_engine.common.errors import InvalidStateTransition
from cdc_engine.common.utils import utc_now
from cdc_engine.observability.logging_config import get_logger

if TYPE_CHECKING:
    from cdc_engine.pipeline.coordinator import PipelineCoordinator

logger = get_logger(__name__)


class HealthStatus(str, Enum):
    """Health status enum."""

    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    DEGRADED = "degraded"


@dataclass
class ComponentHealth:
    """Health status for a component."""

    name: str
    status: HealthStatus
    message: str
    checked_at: datetime


class HealthChecker:
    """
    Health check orchestrator.

    Components are either updated explicitly or, for watched pipelines,
    refreshed from ``PipelineCoordinator.status()`` on every report.
    """

    def __init__(self) -> None:
        """Initialize health checker."""
        self._components: Dict[str, ComponentHealth] = {}
        self._pipelines: Dict[str, "PipelineCoordinator"] = {}
        self._lock = Lock()

    def register_component(self, name: str) -> None:
        """
        Register a component for health checking.

        Args:
            name: Component name
        """
        self.update_component_health(name, HealthStatus.HEALTHY, "Component registered")

    def update_component_health(self, name: str, status: HealthStatus, message: str = "") -> None:
        """
        Update component health status.

        Args:
            name: Component name
            status: Health status
            message: Status message
        """
        with self._lock:
            self._components[name] = ComponentHealth(
                name=name, status=status, message=message, checked_at=utc_now()
            )

    def get_component_health(self, name: str) -> Optional[ComponentHealth]:
        return self._components.get(name)

    def watch(self, pipeline: "PipelineCoordinator") -> None:
        """Track a pipeline; its status becomes a component named after its id."""
        with self._lock:
            self._pipelines[pipeline.pipeline_id] = pipeline
        self.register_component(pipeline.pipeline_id)

    @property
    def pipelines(self) -> List["PipelineCoordinator"]:
        with self._lock:
            return list(self._pipelines.values())

    def pipeline(self, pipeline_id: str) -> Optional["PipelineCoordinator"]:
        with self._lock:
            return self._pipelines.get(pipeline_id)

    def refresh(self) -> List[Dict[str, Any]]:
        """
        Update pipeline components from their current status.

        Returns:
            Status dictionaries of all watched pipelines
        """
        statuses = []
        for pipeline in self.pipelines:
            status = pipeline.status()
            self.update_component_health(
                pipeline.pipeline_id,
                HealthStatus(status.health),
                status.reason or status.state.value,
            )
            statuses.append(status.to_dict())
        return statuses

    def get_overall_health(self) -> HealthStatus:
        """
        Get overall system health.

        Returns:
            Overall health status
        """
        with self._lock:
            statuses = [comp.status for comp in self._components.values()]

        if all(s == HealthStatus.HEALTHY for s in statuses):
            return HealthStatus.HEALTHY
        elif any(s == HealthStatus.UNHEALTHY for s in statuses):
            return HealthStatus.UNHEALTHY
        else:
            return HealthStatus.DEGRADED

    def get_health_report(self) -> Dict[str, Any]:
        """
        Get full health report.

        Returns:
            Health report dictionary
        """
        self.refresh()
        overall_status = self.get_overall_health()
        with self._lock:
            components = list(self._components.values())

        return {
            "status": overall_status.value,
            "timestamp": utc_now().isoformat(),
            "components": [
                {
                    "name": comp.name,
                    "status": comp.status.value,
                    "message": comp.message,
                    "checked_at": comp.checked_at.isoformat(),
                }
                for comp in components
            ],
        }


class _StatusHTTPServer(HTTPServer):
    health_checker: HealthChecker


class StatusRequestHandler(BaseHTTPRequestHandler):
    """HTTP handler for health, status and command endpoints."""

    server: _StatusHTTPServer

    def _send_json(self, status_code: int, body: Any) -> None:
        self.send_response(status_code)
        self.send_header("Content-Type", "application/json")
        self.end_headers()
        self.wfile.write(json.dumps(body, default=str).encode())

    def _targets(self) -> List["PipelineCoordinator"]:
        checker = self.server.health_checker
        query = parse_qs(urlparse(self.path).query)
        wanted = query.get("pipeline")
        if not wanted:
            return checker.pipelines
        return [p for p in (checker.pipeline(pid) for pid in wanted) if p is not None]

    def do_GET(self) -> None:
        """Handle GET requests."""
        path = urlparse(self.path).path
        checker = self.server.health_checker

        if path == "/status":
            statuses = checker.refresh()
            self._send_json(200, {"pipelines": statuses})

        elif path == "/health":
            report = checker.get_health_report()
            # 200 only when healthy; degraded and unhealthy are both 503
            status_code = 200 if report["status"] == HealthStatus.HEALTHY.value else 503
            self._send_json(status_code, report)

        elif path == "/health/ready":
            report = checker.get_health_report()
            status_code = 200 if report["status"] != HealthStatus.UNHEALTHY.value else 503
            self._send_json(status_code, {"ready": status_code == 200})

        elif path == "/health/live":
            self._send_json(200, {"alive": True})

        else:
            self._send_json(404, {"error": f"unknown path {path}"})

    def do_POST(self) -> None:
        """Handle pause/resume/stop commands."""
        path = urlparse(self.path).path
        targets = self._targets()
        if path not in ("/pause", "/resume", "/stop"):
            self._send_json(404, {"error": f"unknown path {path}"})
            return
        if not targets:
            self._send_json(404, {"error": "no matching pipeline"})
            return

        results: Dict[str, str] = {}
        for pipeline in targets:
            try:
                if path == "/pause":
                    pipeline.pause()
                    results[pipeline.pipeline_id] = "paused"
                elif path == "/resume":
                    pipeline.resume()
                    results[pipeline.pipeline_id] = "running"
                else:
                    drain = parse_qs(urlparse(self.path).query).get("drain", ["true"])[0] != "false"
                    # stop joins worker threads; answer before it completes
                    Thread(target=pipeline.stop, kwargs={"drain": drain}, daemon=True).start()
                    results[pipeline.pipeline_id] = "stopping"
            except InvalidStateTransition as e:
                results[pipeline.pipeline_id] = f"rejected: {e}"

        logger.info(f"Operator command {path}: {results}")
        status_code = 409 if all(r.startswith("rejected") for r in results.values()) else 202
        self._send_json(status_code, results)

    def log_message(self, format: str, *args) -> None:  # type: ignore
        """Suppress default logging."""
        pass


class HealthCheckServer:
    """HTTP server for health check, status and command endpoints."""

    def __init__(self, health_checker: HealthChecker, port: Optional[int] = None, host: str = "0.0.0.0") -> None:
        """
        Initialize health check server.

        Args:
            health_checker: Health checker instance
            port: Port to listen on (default from config; 0 picks a free port)
            host: Interface to bind
        """
        self.port = get_settings().observability.health_check_port if port is None else port
        self.health_checker = health_checker

        self.server = _StatusHTTPServer((host, self.port), StatusRequestHandler)
        self.server.health_checker = health_checker
        self.port = self.server.server_address[1]
        self._thread: Optional[Thread] = None

    def start(self) -> None:
        """Start health check server in background thread."""
        self._thread = Thread(target=self.server.serve_forever, name="health-server", daemon=True)
        self._thread.start()
        logger.info(f"Health/status server listening on port {self.port}")

    def stop(self) -> None:
        """Stop health check server."""
        self.server.shutdown()
        self.server.server_close()
        if self._thread:
            self._thread.join()
