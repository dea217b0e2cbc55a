# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Cross-origin header middleware: every response is readable from any origin.

Standalone leaf module with zero dependency on the rest of prerender.

- **Pure ASGI**: no BaseHTTPMiddleware (avoids body buffering).
- **Deduplication**: headers the app already set are never overwritten.
"""

from __future__ import annotations

_DEFAULT_HEADERS: tuple[tuple[bytes, bytes], ...] = ((b"access-control-allow-origin", b"*"),)


class CorsHeaderMiddleware:
    """Inject ``Access-Control-Allow-Origin`` on every ``http.response.start`` message."""

    def __init__(self, app, *, allow_origin: str = "*") -> None:
        self.app = app
        self.headers: tuple[tuple[bytes, bytes], ...] = (
            _DEFAULT_HEADERS
            if allow_origin == "*"
            else ((b"access-control-allow-origin", allow_origin.encode("latin-1")), (b"vary", b"Origin"))
        )

    async def __call__(self, scope, receive, send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        _injected = False

        async def _send_with_cors_headers(message) -> None:
            nonlocal _injected
            if message["type"] == "http.response.start" and not _injected:
                _injected = True
                headers = list(message.get("headers", []))
                existing = frozenset(h[0].lower() for h in headers)
                for name, value in self.headers:
                    if name not in existing:
                        headers.append((name, value))
                message = {**message, "headers": headers}
            await send(message)

        await self.app(scope, receive, _send_with_cors_headers)
