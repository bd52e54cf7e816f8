"""
Core modules for Crystal Guide.

This package contains usage tracking, request queuing, retries and the
stone analysis request/response handling.
"""
