"""Work units fired by worker nodes.

A work unit acknowledges a FireRequest and later reports completion through
the run's callback URL. Firing only has to raise FiringError (or time out)
when the hand-off itself fails; the result always arrives asynchronously.
"""

import logging
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import quote, urlparse

import httpx

from canvasflow.core.graph_schema import ErrorKind, ExecutionNode

logger = logging.getLogger(__name__)


class FiringError(Exception):
    """Raised when a work unit could not be handed its request."""

    kind = ErrorKind.FIRING_ERROR


@dataclass
class FireRequest:
    """Everything a work unit needs to do its job and report back."""

    run_id: str
    node_id: str
    config: dict[str, Any] = field(default_factory=dict)
    input: dict[str, Any] = field(default_factory=dict)
    callback_url: str = ""

    def to_payload(self) -> dict[str, Any]:
        return {
            "runId": self.run_id,
            "nodeId": self.node_id,
            "config": self.config,
            "input": self.input,
            "callbackUrl": self.callback_url,
        }


def build_callback_url(base_url: str, run_id: str, node_id: str) -> str:
    """Callback URL for one node. Ids are percent-encoded so any string survives the path."""
    return f"{base_url.rstrip('/')}/callback/{quote(run_id, safe='')}/{quote(node_id, safe='')}"


class WorkUnit:
    """Base class for work units. Subclasses implement fire()."""

    async def fire(self, request: FireRequest) -> None:
        raise NotImplementedError


class WebhookWorker(WorkUnit):
    """POSTs the fire request to the node's configured webhook_url."""

    def __init__(self, timeout: float = 30.0, transport: httpx.AsyncBaseTransport | None = None):
        self.timeout = timeout
        self._transport = transport

    async def fire(self, request: FireRequest) -> None:
        url = request.config.get("webhook_url")
        if not url:
            raise FiringError("Worker node missing webhook_url in configuration")
        parsed = urlparse(str(url))
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise FiringError(f"Invalid webhook URL: {url}")

        logger.info(f"Calling worker webhook {url} for node '{request.node_id}'")
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(str(url), json=request.to_payload())
        except httpx.TimeoutException as e:
            raise FiringError("Worker webhook timeout exceeded") from e
        except httpx.RequestError as e:
            raise FiringError(f"Worker webhook unreachable: {e}") from e

        if not response.is_success:
            raise FiringError(
                f"Worker webhook returned {response.status_code}: {response.reason_phrase}"
            )


class WorkerRegistry:
    """
    Explicit registry of named work units.

    Built once at startup and handed to both the compiler (to validate
    worker_type references) and the orchestrator (to fire nodes). Worker
    nodes without a worker_type go to the fallback webhook worker.
    """

    def __init__(self, fallback: WorkUnit | None = None):
        self._workers: dict[str, WorkUnit] = {}
        self.fallback = fallback or WebhookWorker()

    def register(self, worker_type: str, unit: WorkUnit) -> None:
        if worker_type in self._workers:
            raise ValueError(f"Worker type '{worker_type}' is already registered")
        self._workers[worker_type] = unit

    def has_worker(self, worker_type: str) -> bool:
        return worker_type in self._workers

    def get_worker(self, worker_type: str) -> WorkUnit | None:
        return self._workers.get(worker_type)

    def available_types(self) -> list[str]:
        return sorted(self._workers)

    def resolve(self, node: ExecutionNode) -> WorkUnit:
        """
        Work unit for a worker node.

        Raises:
            FiringError: if the node names an unregistered worker_type
        """
        if not node.worker_type:
            return self.fallback
        unit = self._workers.get(node.worker_type)
        if unit is None:
            raise FiringError(f"Unknown worker type: {node.worker_type}")
        return unit
