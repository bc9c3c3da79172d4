"""Middleware package for FastAPI application"""
from thumbkeeper.middleware.logging_middleware import RequestLoggingMiddleware

__all__ = ['RequestLoggingMiddleware']
