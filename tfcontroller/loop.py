"""
Reconcile Loop - level-triggered scheduler over all Configurations.

Every pass lists the Configurations of the cluster and reconciles the ones that
are due, different identities in parallel. A Configuration is never reconciled
twice within one pass, so at most one reconciliation per identity is in flight.
Requeue and error retries use the fixed delay from the settings.
"""

import logging
import signal
import threading
import time
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from joblib import Parallel, delayed

from .cluster import ClusterClient
from .errors import ClusterError, ReconcileError
from .reconciler import ConfigurationReconciler, ReconcileResult
from .settings import ControllerSettings

logger = logging.getLogger(__name__)

Identity = Tuple[str, str]


class LoopState(str, Enum):
    """Loop operational states."""
    STOPPED = "stopped"
    RUNNING = "running"
    STOPPING = "stopping"


class ReconcileLoop:
    """Drives ConfigurationReconciler over every Configuration of the cluster."""

    def __init__(self, reconciler: ConfigurationReconciler, cluster: ClusterClient, settings: ControllerSettings):
        """
        Initialize the loop.

        Args:
            reconciler: Reconciler invoked per Configuration
            cluster: Cluster client used to list Configurations
            settings: Controller settings (intervals and parallelism)
        """
        self.reconciler = reconciler
        self.cluster = cluster
        self.settings = settings
        self.state = LoopState.STOPPED

        self.parallel_executor = Parallel(n_jobs=settings.max_parallel_reconciles, backend="threading")
        self._next_due: Dict[Identity, float] = {}
        self._stop_event = threading.Event()

        self.metrics = {
            "passes": 0,
            "reconciles": 0,
            "failures": 0,
            "uptime_start": datetime.now(),
        }

    def _reconcile_one(self, identity: Identity) -> Tuple[Identity, Optional[ReconcileResult], Optional[str]]:
        namespace, name = identity
        try:
            return identity, self.reconciler.reconcile(namespace, name), None
        except ReconcileError as e:
            logger.error(str(e))
            return identity, None, str(e)
        except Exception as e:
            logger.error(f"Unexpected error reconciling Configuration {namespace}/{name}: {e}", exc_info=True)
            return identity, None, f"unexpected error reconciling Configuration {namespace}/{name}: {e}"

    def due_identities(self, now: float) -> List[Identity]:
        """List Configurations whose next reconciliation is due."""
        identities: List[Identity] = []
        listed = set()
        for obj in self.cluster.list_configurations():
            metadata = obj.get("metadata", {})
            identity = (metadata.get("namespace", "default"), metadata.get("name", ""))
            if identity in listed or not identity[1]:
                continue
            listed.add(identity)
            if self._next_due.get(identity, 0.0) <= now:
                identities.append(identity)

        # forget Configurations that are gone
        for identity in set(self._next_due) - listed:
            del self._next_due[identity]
        return identities

    def run_once(self) -> Dict[str, Any]:
        """
        Reconcile every due Configuration once.

        Returns:
            Summary with the reconciled, requeued and failed identities
        """
        now = time.monotonic()
        identities = self.due_identities(now)
        summary: Dict[str, Any] = {"reconciled": [], "requeued": [], "failed": []}
        if not identities:
            return summary

        results = self.parallel_executor(delayed(self._reconcile_one)(identity) for identity in identities)

        finished = time.monotonic()
        for identity, result, error in results:
            key = f"{identity[0]}/{identity[1]}"
            if error is not None:
                self._next_due[identity] = finished + self.settings.requeue_seconds
                summary["failed"].append(key)
                self.metrics["failures"] += 1
            elif result is not None and result.requeue:
                self._next_due[identity] = finished + result.requeue_after
                summary["requeued"].append(key)
            else:
                self._next_due[identity] = finished + self.settings.sync_interval_seconds
                summary["reconciled"].append(key)

        self.metrics["passes"] += 1
        self.metrics["reconciles"] += len(identities)
        return summary

    def seconds_until_next(self) -> float:
        """Time to wait before the next pass."""
        if not self._next_due:
            return self.settings.sync_interval_seconds
        wait = min(self._next_due.values()) - time.monotonic()
        return max(0.0, min(wait, self.settings.sync_interval_seconds))

    def run(self) -> None:
        """Run passes until stop() is called or a termination signal arrives."""
        signal.signal(signal.SIGTERM, self._signal_handler)
        signal.signal(signal.SIGINT, self._signal_handler)

        self._stop_event.clear()
        self.state = LoopState.RUNNING
        logger.info("Reconcile loop started")
        while not self._stop_event.is_set():
            try:
                summary = self.run_once()
            except ClusterError as e:
                logger.error(f"Failed to list Configurations: {e}")
                self._stop_event.wait(timeout=self.settings.requeue_seconds)
                continue
            if summary["reconciled"] or summary["requeued"] or summary["failed"]:
                logger.debug(f"Reconcile pass finished: {summary}")
            self._stop_event.wait(timeout=self.seconds_until_next())
        self.state = LoopState.STOPPED
        logger.info("Reconcile loop stopped")

    def stop(self) -> None:
        if self.state == LoopState.RUNNING:
            self.state = LoopState.STOPPING
        self._stop_event.set()

    def _signal_handler(self, signum, frame) -> None:
        logger.info(f"Received signal {signum}, stopping")
        self.stop()
