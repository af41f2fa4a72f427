"""HTTP RPC client for the agent runtime's chat endpoints."""

from dataclasses import dataclass

import httpx

from mission_control.core.errors import TransportError


@dataclass
class RuntimeClient:
    """Calls ``POST <base_url>/rpc`` with ``{"method": ..., "params": ...}``.

    The runtime answers ``{"result": ...}`` on success or
    ``{"error": {"message": ...}}`` on failure.
    """

    base_url: str
    token: str | None = None
    timeout_s: float = 15.0

    def call(self, method: str, params: dict):
        url = f"{self.base_url.rstrip('/')}/rpc"
        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        try:
            with httpx.Client(timeout=self.timeout_s) as client:
                response = client.post(url, headers=headers, json={"method": method, "params": params})
                response.raise_for_status()
                data = response.json()
        except httpx.HTTPError as e:
            raise TransportError(f"{method} failed: {e}") from e
        except ValueError as e:
            raise TransportError(f"{method} returned invalid JSON") from e

        if not isinstance(data, dict):
            raise TransportError(f"{method} returned an unexpected payload")
        if data.get("error"):
            error = data["error"]
            message = error.get("message") if isinstance(error, dict) else str(error)
            raise TransportError(f"{method} failed: {message}")
        return data.get("result")

    def send(self, session_key: str, message: str, idempotency_key: str):
        """Post a user message into a session. Returns the runtime's acknowledgement."""
        return self.call(
            "chat.send",
            {
                "sessionKey": session_key,
                "message": message,
                "idempotencyKey": idempotency_key,
            },
        )

    def history(self, session_key: str, limit: int = 50) -> list[dict]:
        """Fetch the session's turns, oldest first."""
        result = self.call("chat.history", {"sessionKey": session_key, "limit": limit})
        if isinstance(result, dict):
            return result.get("messages") or []
        return result or []
