"""Detects full replacement of a component group's pods after a CA change."""

import logging
import threading
import time

from kubernetes import client

from .exceptions import RolloutTimeoutError
from .models import RolloutResult
from .polling import poll_until

logger = logging.getLogger(__name__)


def _is_ready(pod: client.V1Pod) -> bool:
    if pod.metadata.deletion_timestamp is not None:
        return False
    conditions = (pod.status.conditions if pod.status else None) or []
    return any(c.type == "Ready" and c.status == "True" for c in conditions)


def has_rolled(snapshot: dict[str, str], current: dict[str, str]) -> bool:
    """True when no current (name, uid) pair was present in the snapshot.

    Comparing membership instead of per-name tokens handles both StatefulSet
    pods (same name, new UID) and Deployment pods (new name).
    """
    return not any(snapshot.get(name) == uid for name, uid in current.items())


class RolloutMonitor:
    """Snapshots and watches pods of a component group selected by label."""

    def __init__(
        self,
        namespace: str,
        api_client: client.ApiClient | None = None,
        poll_interval: float = 5.0,
    ) -> None:
        self.namespace = namespace
        self.poll_interval = poll_interval
        self.core_v1 = client.CoreV1Api(api_client)

    def _list_pods(self, selector: str) -> list[client.V1Pod]:
        return self.core_v1.list_namespaced_pod(
            namespace=self.namespace, label_selector=selector
        ).items

    def snapshot(self, selector: str) -> dict[str, str]:
        """Capture pod name -> UID for every pod matching the selector."""
        pods = self._list_pods(selector)
        snapshot = {pod.metadata.name: pod.metadata.uid for pod in pods}
        logger.info("Snapshot of %s: %s", selector, sorted(snapshot))
        return snapshot

    def _rolled_and_ready(
        self, selector: str, expected_replicas: int, snapshot: dict[str, str]
    ) -> dict[str, str] | None:
        pods = self._list_pods(selector)
        current = {pod.metadata.name: pod.metadata.uid for pod in pods}

        if len(current) != expected_replicas:
            logger.debug("%s has %d/%d pods", selector, len(current), expected_replicas)
            return None
        if not has_rolled(snapshot, current):
            logger.debug("%s still runs pods from before the change", selector)
            return None
        if not all(_is_ready(pod) for pod in pods):
            logger.debug("%s pods replaced but not all Ready", selector)
            return None
        return current

    def wait_for_rollout(
        self,
        selector: str,
        expected_replicas: int,
        snapshot: dict[str, str],
        timeout: float,
        cancel_event: threading.Event | None = None,
    ) -> RolloutResult:
        """Wait until every pod of the group was replaced and is Ready.

        Args:
            selector: Label selector of the component group
            expected_replicas: Number of pods the group runs when healthy
            snapshot: Result of snapshot() taken before the change
            timeout: Upper bound in seconds
            cancel_event: Stops waiting between polls once set

        Returns:
            RolloutResult with the replacement pods

        Raises:
            RolloutTimeoutError: If the group has not fully rolled in time
        """
        logger.info("Waiting for %s to roll %d pod(s)", selector, expected_replicas)
        started = time.monotonic()
        replaced = poll_until(
            lambda: self._rolled_and_ready(selector, expected_replicas, snapshot),
            timeout=timeout,
            interval=self.poll_interval,
            description=f"rolling update of {selector}",
            timeout_error=RolloutTimeoutError,
            cancel_event=cancel_event,
        )
        elapsed = time.monotonic() - started
        logger.info("%s rolled in %.1fs: %s", selector, elapsed, sorted(replaced))
        return RolloutResult(selector=selector, replaced=replaced, elapsed_seconds=elapsed)

    def wait_for_ready(
        self,
        selector: str,
        expected_replicas: int,
        timeout: float,
        cancel_event: threading.Event | None = None,
    ) -> RolloutResult:
        """Wait until the group runs ``expected_replicas`` Ready pods, rolled or not."""
        started = time.monotonic()
        ready = poll_until(
            lambda: self._rolled_and_ready(selector, expected_replicas, {}),
            timeout=timeout,
            interval=self.poll_interval,
            description=f"readiness of {selector}",
            timeout_error=RolloutTimeoutError,
            cancel_event=cancel_event,
        )
        return RolloutResult(
            selector=selector, replaced=ready, elapsed_seconds=time.monotonic() - started
        )
