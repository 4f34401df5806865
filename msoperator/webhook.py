"""Admission validation for MetricsServer resources."""

from __future__ import annotations

import logging
from typing import Protocol

from .types import MetricsServer

log = logging.getLogger("msoperator.metricsserver-webhook")

SINGLETON_WARNING = (
    "Only one MetricsServer instance is allowed per cluster due to APIService constraints."
)


class _Lister(Protocol):
    def list_metrics_servers(self) -> list[MetricsServer]: ...


class ValidationError(Exception):
    """An admission request was refused; carries the warnings to return with it."""

    def __init__(self, message: str, warnings: list[str] | None = None) -> None:
        super().__init__(message)
        self.warnings = list(warnings or [])


class MetricsServerValidator:
    """Validates MetricsServer create, update and delete requests."""

    def __init__(self, client: _Lister) -> None:
        self.client = client

    def validate_create(self, obj: MetricsServer) -> list[str]:
        """Refuse creation while another live MetricsServer exists; return warnings."""
        log.info("validate create name=%s", obj.name)
        try:
            servers = self.client.list_metrics_servers()
        except Exception as exc:
            raise ValidationError(f"failed to list existing MetricsServer instances: {exc}") from exc

        existing = [ms.name for ms in servers if not ms.is_deleting]
        if existing:
            raise ValidationError(
                f"singleton constraint violation: MetricsServer instance '{existing[0]}' already "
                "exists. Only one MetricsServer is allowed per cluster due to the cluster-wide "
                "v1beta1.metrics.k8s.io APIService registration. Please delete the existing "
                "instance before creating a new one",
                warnings=[SINGLETON_WARNING],
            )
        return []

    def validate_update(self, old_obj: MetricsServer, new_obj: MetricsServer) -> list[str]:
        """Updates are always allowed."""
        log.info("validate update name=%s", new_obj.name)
        return []

    def validate_delete(self, obj: MetricsServer) -> list[str]:
        """Deletions are always allowed."""
        log.info("validate delete name=%s", obj.name)
        return []