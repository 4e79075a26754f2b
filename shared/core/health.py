"""
Health and readiness endpoints.

Response bodies follow the "Health Check Response Format for HTTP APIs"
draft: an overall status plus a map of named component checks. Services
register their own dependency checks (database, caches, third-party
configuration) as callables returning a check dict.
"""

import os
import time
import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict

import psutil
import redis
from fastapi import APIRouter, status
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.engine import Engine

logger = logging.getLogger(__name__)

CheckFn = Callable[[], Dict[str, Any]]


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class HealthStatus(str, Enum):
    PASS = "pass"
    FAIL = "fail"
    WARN = "warn"


class ServiceHealth:
    """Collects readiness checks and builds the health router for a service."""

    def __init__(self, service_name: str, version: str = "1.0.0"):
        self.service_name = service_name
        self.version = version
        self.start_time = time.time()
        self.checks_performed = 0
        self.last_check_time = None
        self._checks: Dict[str, CheckFn] = {}

    def register_check(self, name: str, check: CheckFn) -> None:
        self._checks[name] = check

    def register_database(self, engine: Engine) -> None:
        self.register_check("database:connectivity", lambda: check_database(engine))

    def create_health_router(self) -> APIRouter:
        router = APIRouter(tags=["health"])

        @router.get("/health", status_code=status.HTTP_200_OK)
        async def health_check() -> Dict[str, Any]:
            """Liveness probe used by load balancers."""
            return {
                "status": HealthStatus.PASS,
                "service": self.service_name,
                "version": self.version,
                "releaseId": os.getenv("RELEASE_ID", "unknown"),
                "timestamp": _now(),
            }

        @router.get("/health/live", status_code=status.HTTP_200_OK)
        async def liveness() -> Dict[str, Any]:
            return {"status": "alive"}

        @router.get("/health/ready")
        async def readiness() -> JSONResponse:
            """Readiness probe: runs every registered dependency check."""
            checks = self.run_checks()
            overall_status = self.calculate_overall_status(checks)
            status_code = (
                status.HTTP_503_SERVICE_UNAVAILABLE
                if overall_status == HealthStatus.FAIL
                else status.HTTP_200_OK
            )
            return JSONResponse(
                status_code=status_code,
                content={
                    "status": overall_status.value,
                    "version": self.version,
                    "serviceId": self.service_name,
                    "checks": checks,
                    "timestamp": _now(),
                },
            )

        @router.get("/metrics")
        async def metrics() -> Dict[str, Any]:
            process = psutil.Process()
            memory = process.memory_info()
            return {
                "service": self.service_name,
                "version": self.version,
                "uptime_seconds": time.time() - self.start_time,
                "checks_performed": self.checks_performed,
                "timestamp": _now(),
                "system": {
                    "memory_rss_bytes": memory.rss,
                    "memory_vms_bytes": memory.vms,
                    "cpu_percent": process.cpu_percent(),
                    "num_threads": process.num_threads(),
                },
            }

        return router

    def run_checks(self) -> Dict[str, Dict[str, Any]]:
        self.checks_performed += 1
        self.last_check_time = time.time()

        checks = {}
        for name, check in self._checks.items():
            try:
                checks[name] = check()
            except Exception as e:
                logger.error(f"Health check {name} raised: {e}")
                checks[name] = {"status": HealthStatus.FAIL.value, "output": str(e), "time": _now()}
        if os.getenv("REDIS_URL"):
            checks["cache:connectivity"] = check_redis(os.environ["REDIS_URL"])
        checks["system:memory"] = check_memory()
        return checks

    @staticmethod
    def calculate_overall_status(checks: Dict[str, Dict[str, Any]]) -> HealthStatus:
        statuses = {HealthStatus(check.get("status", HealthStatus.PASS)) for check in checks.values()}
        if HealthStatus.FAIL in statuses:
            return HealthStatus.FAIL
        if HealthStatus.WARN in statuses:
            return HealthStatus.WARN
        return HealthStatus.PASS


def check_database(engine: Engine) -> Dict[str, Any]:
    try:
        start_time = time.time()
        with engine.connect() as conn:
            conn.execute(text("SELECT 1")).fetchone()
        return {
            "status": HealthStatus.PASS.value,
            "componentType": "datastore",
            "observedValue": f"{(time.time() - start_time) * 1000:.2f}",
            "observedUnit": "ms",
            "time": _now(),
        }
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        return {"status": HealthStatus.FAIL.value, "componentType": "datastore", "output": str(e), "time": _now()}


def check_redis(redis_url: str) -> Dict[str, Any]:
    try:
        redis.from_url(redis_url, socket_connect_timeout=1).ping()
        return {"status": HealthStatus.PASS.value, "componentType": "cache", "time": _now()}
    except Exception as e:
        # the service falls back to its in-process cache
        return {"status": HealthStatus.WARN.value, "componentType": "cache", "output": str(e), "time": _now()}


def check_memory() -> Dict[str, Any]:
    available_mb = psutil.virtual_memory().available / (1024 ** 2)
    if available_mb < 100:
        status_val = HealthStatus.FAIL
    elif available_mb < 500:
        status_val = HealthStatus.WARN
    else:
        status_val = HealthStatus.PASS
    return {
        "status": status_val.value,
        "componentType": "system",
        "observedValue": f"{available_mb:.2f}",
        "observedUnit": "MB",
        "time": _now(),
    }
