#!/usr/bin/env python3
"""
TaskSync Webhook Server

Receives platform webhooks, feeds them to the sync service and exposes
the operator status surface.

Routes:
    POST /webhooks/<platform>   platform webhook (always 200 unless overloaded)
    POST /items                 register a tracked item
    GET  /status                items, deliveries and dead letters
    GET  /health                platform health

Usage:
    python webhook_server.py
    python webhook_server.py --port 5000 --config config/tasksync.yaml
"""

import argparse
import json
import sys
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any

from dotenv import load_dotenv

from tasksync.adapters.protocol import RawPayload
from tasksync.errors import ServiceUnavailableError, ValidationError
from tasksync.logger import get_logger
from tasksync.service import SyncService

logger = get_logger("webhook")

WEBHOOK_PREFIX = "/webhooks/"


# --- HTTP HANDLER ---

class WebhookHandler(BaseHTTPRequestHandler):
    """Handle webhook and status requests for one SyncService."""

    server: "SyncHTTPServer"

    def handle(self):
        try:
            super().handle()
        except BrokenPipeError:
            pass

    def finish(self):
        try:
            super().finish()
        except BrokenPipeError:
            pass

    @property
    def service(self) -> SyncService:
        return self.server.service

    def do_POST(self):
        path = self.path.split("?", 1)[0]
        raw_body = self._read_body()

        if path.startswith(WEBHOOK_PREFIX) and path[len(WEBHOOK_PREFIX):]:
            self.handle_webhook(path[len(WEBHOOK_PREFIX):].strip("/"), raw_body)
        elif path == "/items":
            self.handle_register(raw_body)
        else:
            self.send_json(404, {"error": f"Unknown route: {path}"})

    def do_GET(self):
        path = self.path.split("?", 1)[0]
        if path == "/status":
            self.send_json(200, self.service.status_report())
        elif path == "/health":
            self.send_json(200, self.service.health_report())
        else:
            self.send_json(404, {"error": f"Unknown route: {path}"})

    def handle_webhook(self, platform: str, raw_body: bytes):
        """Normalize a webhook. Bad payloads are acknowledged so senders do not retry them."""
        try:
            body = json.loads(raw_body.decode("utf-8")) if raw_body else None
        except (UnicodeDecodeError, json.JSONDecodeError):
            logger.warning("Invalid JSON webhook", platform=platform, body=raw_body[:100].decode("utf-8", "replace"))
            self.send_json(200, {"outcome": "rejected", "reason": "invalid JSON"})
            return

        raw = RawPayload.from_http(dict(self.headers.items()), raw_body, body)
        try:
            result = self.service.submit(platform, raw)
        except ServiceUnavailableError as e:
            self.send_json(503, {"error": str(e)}, retry_after=5)
            return

        response: dict[str, Any] = {"outcome": result.outcome.value}
        if result.reason:
            response["reason"] = result.reason
        if result.event is not None:
            response["item_id"] = result.event.item_id
        self.send_json(200, response)

    def handle_register(self, raw_body: bytes):
        try:
            data = json.loads(raw_body.decode("utf-8"))
            if not isinstance(data, dict):
                raise ValueError("Expected a JSON object")
            if not isinstance(data.get("id", ""), str):
                raise ValidationError("Correlation key must be a non-empty string", field="id", value=data["id"])
            item = self.service.register_item(
                data.get("id", ""),
                title=data.get("title", ""),
                links=data.get("links") or {},
                status=data.get("status", "backlog"),
                assignee=data.get("assignee"),
            )
        except ValidationError as e:
            self.send_json(400, {"error": str(e), "field": e.field})
            return
        except (UnicodeDecodeError, ValueError, TypeError) as e:
            self.send_json(400, {"error": str(e)})
            return

        self.send_json(201, {"item": item.to_dict()})

    def _read_body(self) -> bytes:
        content_length = int(self.headers.get("Content-Length", 0) or 0)
        return self.rfile.read(content_length) if content_length > 0 else b""

    def send_json(self, status: int, payload: Any, retry_after: int | None = None):
        data = json.dumps(payload).encode("utf-8")
        try:
            self.send_response(status)
            self.send_header("Content-Type", "application/json")
            self.send_header("Content-Length", str(len(data)))
            if retry_after is not None:
                self.send_header("Retry-After", str(retry_after))
            self.end_headers()
            self.wfile.write(data)
        except BrokenPipeError:
            return

    def log_message(self, format, *args):
        """Route access logs through the structured logger."""
        logger.debug("HTTP request", client=self.client_address[0], request=format % args)


class SyncHTTPServer(ThreadingHTTPServer):
    """HTTP server bound to a SyncService; suppresses BrokenPipeError noise."""

    daemon_threads = True

    def __init__(self, address: tuple[str, int], service: SyncService):
        super().__init__(address, WebhookHandler)
        self.service = service

    def handle_error(self, request, client_address):
        exc_type, exc, _ = sys.exc_info()
        if isinstance(exc, BrokenPipeError):
            return
        super().handle_error(request, client_address)


def run_server(service: SyncService, host: str = "0.0.0.0", port: int = 5000):
    """Run the webhook server until interrupted."""
    server = SyncHTTPServer((host, port), service)
    service.start()

    print("TaskSync Webhook Server")
    print(f"Listening on http://{host}:{port}")
    print("")
    print("Configure platform webhooks to:")
    for name in service.adapters.names():
        print(f"  - {name}: http://<your-ip>:{port}{WEBHOOK_PREFIX}{name}")
    print("")
    print("Press Ctrl+C to stop.\n")

    try:
        server.serve_forever()
    except KeyboardInterrupt:
        print("\nShutting down.")
    finally:
        server.server_close()
        service.stop()


def main():
    load_dotenv()

    parser = argparse.ArgumentParser(description="TaskSync Webhook Server")
    parser.add_argument(
        "--port", "-p",
        type=int,
        default=5000,
        help="Port to listen on (default: 5000)"
    )
    parser.add_argument(
        "--host",
        default="0.0.0.0",
        help="Interface to bind (default: 0.0.0.0)"
    )
    parser.add_argument(
        "--config", "-c",
        help="Path to TaskSync configuration (default: $TASKSYNC_CONFIG or config/tasksync.yaml)"
    )
    args = parser.parse_args()

    try:
        service = SyncService.from_config(args.config)
    except (FileNotFoundError, ValueError) as e:
        print(f"Error: {e}")
        sys.exit(1)

    run_server(service, host=args.host, port=args.port)


if __name__ == "__main__":
    main()
