import time
from typing import Dict, List, Callable, Tuple
from fastapi import Request, status
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
import logging
from collections import defaultdict

from sweepstakes.webapp.dependencies import client_ip


logger = logging.getLogger(__name__)


class RateLimiter:
    """
    Sliding-window request counter per client.
    """

    def __init__(self, window_size: int = 60, max_requests: int = 30, clock: Callable[[], float] = time.time):
        """
        Args:
            window_size (int): Window length in seconds
            max_requests (int): Requests allowed inside one window
            clock (Callable[[], float]): Time source
        """
        self.window_size = window_size
        self.max_requests = max_requests
        self.clock = clock
        self.clients: Dict[str, List[float]] = defaultdict(list)

    def is_allowed(self, client_id: str) -> Tuple[bool, Dict]:
        """
        Registers a request and tells whether it fits in the window.

        Returns:
            Tuple[bool, Dict]: (allowed, limit info)
        """
        current_time = self.clock()

        self.clients[client_id] = [
            timestamp for timestamp in self.clients[client_id]
            if current_time - timestamp < self.window_size
        ]
        current_count = len(self.clients[client_id])

        if current_count >= self.max_requests:
            reset_time = min(self.clients[client_id]) + self.window_size
            return False, {
                "limit": self.max_requests,
                "remaining": 0,
                "reset": reset_time,
                "time_remaining": round(max(0, reset_time - current_time), 2)
            }

        self.clients[client_id].append(current_time)
        return True, {
            "limit": self.max_requests,
            "remaining": self.max_requests - current_count - 1,
            "reset": current_time + self.window_size,
            "time_remaining": 0
        }

    def cleanup(self, max_idle_time: int = 3600):
        """
        Forgets clients that have been idle for ``max_idle_time`` seconds.
        """
        current_time = self.clock()
        inactive_clients = [
            client_id for client_id, timestamps in self.clients.items()
            if not timestamps or current_time - max(timestamps) > max_idle_time
        ]
        for client_id in inactive_clients:
            del self.clients[client_id]


class RateLimiterMiddleware(BaseHTTPMiddleware):
    """
    Applies per-path request limits, keyed by client IP.
    """

    def __init__(
        self,
        app,
        default_window_size: int = 60,
        default_max_requests: int = 30,
        exclude_paths: List[str] = None,
        path_limits: Dict[str, Tuple[int, int]] = None,
        cleanup_every: int = 1000,
        clock: Callable[[], float] = time.time,
    ):
        """
        Args:
            app: ASGI application
            default_window_size (int): Default window length in seconds
            default_max_requests (int): Default requests per window
            exclude_paths (List[str], optional): Path prefixes that are never limited
            path_limits (Dict[str, Tuple[int, int]], optional): {path prefix: (window seconds, max requests)}
            cleanup_every (int): Requests between sweeps of idle clients
            clock (Callable[[], float]): Time source shared by every limiter
        """
        super().__init__(app)

        self.exclude_paths = exclude_paths or ["/docs", "/redoc", "/openapi.json", "/health"]
        self.default_limiter = RateLimiter(default_window_size, default_max_requests, clock)
        self.path_limiters = {}
        if path_limits:
            for path, (window, max_req) in path_limits.items():
                self.path_limiters[path] = RateLimiter(window, max_req, clock)
        self.cleanup_every = cleanup_every
        self.requests_seen = 0

    async def dispatch(self, request: Request, call_next: Callable):
        for path in self.exclude_paths:
            if request.url.path.startswith(path):
                return await call_next(request)

        client_id = self._get_client_id(request)
        limiter = self._get_limiter_for_path(request.url.path)
        allowed, limit_info = limiter.is_allowed(client_id)

        self.requests_seen += 1
        if self.requests_seen % self.cleanup_every == 0:
            self.cleanup()

        if not allowed:
            logger.warning(f"Rate limit exceeded for {client_id} on {request.url.path}")
            return JSONResponse(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                content={
                    "success": False,
                    "message": f"Too many requests. Retry in {limit_info['time_remaining']} seconds.",
                },
                headers=self._headers(limit_info),
            )

        response = await call_next(request)
        response.headers.update(self._headers(limit_info))
        return response

    @staticmethod
    def _headers(limit_info: Dict) -> Dict[str, str]:
        return {
            "X-RateLimit-Limit": str(limit_info["limit"]),
            "X-RateLimit-Remaining": str(limit_info["remaining"]),
            "X-RateLimit-Reset": str(int(limit_info["reset"])),
        }

    def cleanup(self) -> None:
        """Forgets idle clients on every limiter."""
        self.default_limiter.cleanup()
        for limiter in self.path_limiters.values():
            limiter.cleanup()

    def _get_client_id(self, request: Request) -> str:
        return f"ip:{client_ip(request)}"

    def _get_limiter_for_path(self, path: str) -> RateLimiter:
        if path in self.path_limiters:
            return self.path_limiters[path]
        for prefix, limiter in self.path_limiters.items():
            if path.startswith(prefix):
                return limiter
        return self.default_limiter
