#!/usr/bin/env python3
"""
Reference polling client for FleetDesk.

Polls /client/poll on an interval, runs every command it receives through a
handler and acknowledges it. Run it against a local server and it shows up
in /admin/clients, ready to receive commands.

Usage:
    python polling_agent.py --server http://localhost:8000 --interval 5
"""
import argparse
import platform
import re
import time
from typing import Any, Callable, Dict, List, Optional

import httpx

from observability import structured_logger

DEFAULT_SERVER_URL = "http://localhost:8000"
DEFAULT_POLL_INTERVAL = 5.0


class PollingAgent:
    """
    One simulated device. `http` is any httpx.Client pointed at the server
    (FastAPI's TestClient works too).
    """

    def __init__(
        self,
        http: httpx.Client,
        device_id: str,
        foreground_app: Optional[str] = None,
        is_foreground: bool = True,
        client_id: Optional[str] = None,
    ):
        self.http = http
        self.device_id = device_id
        self.foreground_app = foreground_app
        self.is_foreground = is_foreground
        self.client_id = client_id
        self.handled: List[Dict[str, Any]] = []
        self.handlers: Dict[str, Callable[[Any], bool]] = {
            "restart": self._handle_restart,
            "update": self._handle_update,
            "toggle_foreground": self._handle_toggle_foreground,
            "switch_app": self._handle_switch_app,
        }

    # --- command handlers ---

    def _handle_restart(self, payload: Any) -> bool:
        structured_logger.log_event("agent.restart", device_id=self.device_id, payload=payload)
        return True

    def _handle_update(self, payload: Any) -> bool:
        structured_logger.log_event("agent.update", device_id=self.device_id, payload=payload)
        return True

    def _handle_toggle_foreground(self, payload: Any) -> bool:
        self.is_foreground = not self.is_foreground
        structured_logger.log_event(
            "agent.toggle_foreground",
            device_id=self.device_id,
            is_foreground=self.is_foreground
        )
        return True

    def _handle_switch_app(self, payload: Any) -> bool:
        app_name = payload.get("appName") if isinstance(payload, dict) else None
        if not app_name:
            structured_logger.log_event("agent.switch_app.missing_app", level="WARN", device_id=self.device_id)
            return True

        previous, self.foreground_app = self.foreground_app, app_name
        structured_logger.log_event(
            "agent.switch_app",
            device_id=self.device_id,
            previous_app=previous,
            foreground_app=app_name
        )
        return True

    def _handle_unknown(self, command_type: str, payload: Any) -> bool:
        structured_logger.log_event(
            "agent.unknown_command",
            level="WARN",
            device_id=self.device_id,
            command_type=command_type,
            payload=payload
        )
        return False

    # --- protocol ---

    def handle_command(self, command: Dict[str, Any]) -> bool:
        """Run one command and acknowledge it, whatever the handler's outcome."""
        command_type = command.get("type", "")
        handler = self.handlers.get(command_type)
        try:
            if handler is None:
                ok = self._handle_unknown(command_type, command.get("payload"))
            else:
                ok = handler(command.get("payload"))
        except Exception as e:
            structured_logger.log_event(
                "agent.command_failed",
                level="ERROR",
                command_id=command.get("id"),
                command_type=command_type,
                error=str(e)
            )
            ok = False

        self.handled.append({"id": command.get("id"), "type": command_type, "ok": ok})
        self.acknowledge(command["id"])
        return ok

    def acknowledge(self, command_id: str) -> bool:
        try:
            response = self.http.post("/client/ack", json={"clientId": self.client_id, "commandId": command_id})
            response.raise_for_status()
        except httpx.HTTPError as e:
            # Stays pending server-side and comes back on the next poll
            structured_logger.log_event("agent.ack_failed", level="WARN", command_id=command_id, error=str(e))
            return False
        return True

    def poll_once(self) -> bool:
        body = {
            "clientId": self.client_id,
            "deviceId": self.device_id,
            "foregroundApp": self.foreground_app,
            "isForeground": self.is_foreground,
        }
        try:
            response = self.http.post("/client/poll", json=body)
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            # ValueError covers a 200 with a non-JSON body, e.g. a proxy login page
            structured_logger.log_event("agent.poll_failed", level="WARN", error=str(e))
            return False

        if not isinstance(data, dict) or not data.get("clientId"):
            structured_logger.log_event("agent.poll_failed", level="WARN", error="response has no clientId")
            return False

        if data["clientId"] != self.client_id:
            structured_logger.log_event(
                "agent.connected",
                client_id=data["clientId"],
                previous_client_id=self.client_id
            )
            self.client_id = data["clientId"]

        for command in data.get("commands", []):
            self.handle_command(command)
        return True

    def run(self, interval: float = DEFAULT_POLL_INTERVAL, iterations: Optional[int] = None):
        count = 0
        while iterations is None or count < iterations:
            self.poll_once()
            count += 1
            if iterations is None or count < iterations:
                time.sleep(interval)


def default_device_id() -> str:
    return "py-" + re.sub(r"[^a-zA-Z0-9]", "-", platform.node() or "device")


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="FleetDesk polling client")
    parser.add_argument("--server", default=DEFAULT_SERVER_URL, help="Server base URL")
    parser.add_argument("--interval", type=float, default=DEFAULT_POLL_INTERVAL, help="Seconds between polls")
    parser.add_argument("--device-id", default=default_device_id(), help="Device label reported to the server")
    parser.add_argument("--foreground-app", default="python", help="Reported foreground app")
    parser.add_argument("--iterations", type=int, default=None, help="Stop after this many polls")
    args = parser.parse_args(argv)

    with httpx.Client(base_url=args.server, timeout=10.0) as http:
        agent = PollingAgent(http, device_id=args.device_id, foreground_app=args.foreground_app)
        try:
            agent.run(interval=args.interval, iterations=args.iterations)
        except KeyboardInterrupt:
            structured_logger.log_event("agent.stopped", client_id=agent.client_id)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
