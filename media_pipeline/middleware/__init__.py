from media_pipeline.middleware.request_log import RequestLoggingMiddleware

__all__ = ["RequestLoggingMiddleware"]
