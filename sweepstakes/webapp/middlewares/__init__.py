from sweepstakes.webapp.middlewares.rate_limiter import RateLimiterMiddleware

__all__ = ["RateLimiterMiddleware"]
