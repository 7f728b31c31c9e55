"""Pause/resume gate on the cluster custom resource's reconciliation."""

import logging
import threading
from typing import Any

from kubernetes import client
from kubernetes.client.rest import ApiException

from .exceptions import GateTimeoutError, NotFoundError
from .polling import poll_until

logger = logging.getLogger(__name__)

KAFKA_GROUP = "kafka.strimzi.io"
KAFKA_VERSION = "v1beta2"
KAFKA_PLURAL = "kafkas"
ANNO_PAUSE_RECONCILIATION = "strimzi.io/pause-reconciliation"
CONDITION_RECONCILIATION_PAUSED = "ReconciliationPaused"


class ReconciliationGate:
    """Suspends and resumes the operator's reconciliation of one cluster.

    Pausing is only complete once the operator reports the
    ReconciliationPaused condition; setting the annotation alone is not
    enough because a reconciliation may already be running.
    """

    def __init__(
        self,
        namespace: str,
        cluster_name: str,
        api_client: client.ApiClient | None = None,
        poll_interval: float = 5.0,
    ) -> None:
        self.namespace = namespace
        self.cluster_name = cluster_name
        self.poll_interval = poll_interval
        self.custom_objects = client.CustomObjectsApi(api_client)

    def _get(self) -> dict[str, Any]:
        try:
            return self.custom_objects.get_namespaced_custom_object(
                group=KAFKA_GROUP,
                version=KAFKA_VERSION,
                namespace=self.namespace,
                plural=KAFKA_PLURAL,
                name=self.cluster_name,
            )
        except ApiException as e:
            if e.status == 404:
                raise NotFoundError(
                    f"Kafka {self.namespace}/{self.cluster_name} not found"
                ) from e
            raise

    def _patch_annotation(self, value: str | None) -> None:
        # A null value in a JSON merge patch deletes the key
        self.custom_objects.patch_namespaced_custom_object(
            group=KAFKA_GROUP,
            version=KAFKA_VERSION,
            namespace=self.namespace,
            plural=KAFKA_PLURAL,
            name=self.cluster_name,
            body={"metadata": {"annotations": {ANNO_PAUSE_RECONCILIATION: value}}},
        )

    def is_paused(self) -> bool:
        """Return True when the pause annotation is set on the resource."""
        annotations = self._get().get("metadata", {}).get("annotations") or {}
        return annotations.get(ANNO_PAUSE_RECONCILIATION) == "true"

    def reports_paused(self) -> bool:
        """Return True when the operator reports ReconciliationPaused."""
        conditions = self._get().get("status", {}).get("conditions") or []
        return any(
            condition.get("type") == CONDITION_RECONCILIATION_PAUSED
            and condition.get("status") == "True"
            for condition in conditions
        )

    def pause(self, timeout: float, cancel_event: threading.Event | None = None) -> None:
        """Set the pause annotation and wait until the operator confirms it.

        Raises:
            GateTimeoutError: If ReconciliationPaused is not reported in time
        """
        logger.info("Pausing reconciliation of Kafka %s/%s", self.namespace, self.cluster_name)
        self._patch_annotation("true")
        poll_until(
            self.reports_paused,
            timeout=timeout,
            interval=self.poll_interval,
            description=f"Kafka {self.cluster_name} to report {CONDITION_RECONCILIATION_PAUSED}",
            timeout_error=GateTimeoutError,
            cancel_event=cancel_event,
        )
        logger.info("Reconciliation of Kafka %s is paused", self.cluster_name)

    def resume(
        self,
        timeout: float,
        wait: bool = True,
        cancel_event: threading.Event | None = None,
    ) -> None:
        """Remove the pause annotation, optionally waiting for the condition to clear.

        Raises:
            GateTimeoutError: If the operator still reports ReconciliationPaused
        """
        logger.info("Resuming reconciliation of Kafka %s/%s", self.namespace, self.cluster_name)
        self._patch_annotation(None)
        if not wait:
            return
        poll_until(
            lambda: not self.reports_paused(),
            timeout=timeout,
            interval=self.poll_interval,
            description=f"Kafka {self.cluster_name} to leave {CONDITION_RECONCILIATION_PAUSED}",
            timeout_error=GateTimeoutError,
            cancel_event=cancel_event,
        )
