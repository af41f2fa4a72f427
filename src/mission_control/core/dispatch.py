"""Best-effort notification to the execution subsystem when a task is dispatchable."""

import logging
import threading

import httpx

logger = logging.getLogger(__name__)


class Dispatcher:
    """Fires ``POST /api/tasks/<id>/dispatch`` without waiting for the result.

    Dispatch is an at-most-once hint. Failures are logged and never rolled back
    into task state; the task keeps whatever status it was moved to.
    """

    def __init__(
        self,
        base_url: str | None,
        api_token: str | None = None,
        timeout_s: float = 10.0,
        background: bool = True,
    ):
        self.base_url = base_url
        self.api_token = api_token
        self.timeout_s = timeout_s
        self.background = background

    def dispatch_url(self, task_id: str) -> str:
        return f"{self.base_url.rstrip('/')}/api/tasks/{task_id}/dispatch"

    def trigger(self, task_id: str):
        """Queue a dispatch notification for ``task_id``."""
        if not self.base_url:
            logger.info("No dispatch URL configured; skipping dispatch for task '%s'", task_id)
            return
        if not self.background:
            self._post(task_id)
            return
        thread = threading.Thread(
            target=self._post, args=(task_id,), name=f"dispatch-{task_id}", daemon=True
        )
        thread.start()

    def _post(self, task_id: str):
        headers = {"Content-Type": "application/json"}
        if self.api_token:
            headers["Authorization"] = f"Bearer {self.api_token}"
        try:
            response = httpx.post(
                self.dispatch_url(task_id), headers=headers, timeout=self.timeout_s
            )
            response.raise_for_status()
            logger.info("Dispatched task '%s' (HTTP %s)", task_id, response.status_code)
        except Exception:
            logger.exception("Auto-dispatch failed for task '%s'", task_id)


def build_dispatcher(config) -> Dispatcher:
    return Dispatcher(config.dispatch_url, config.api_token)
