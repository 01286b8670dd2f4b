"""
loghound - multi-region CloudWatch Logs Insights search service.

Fans one pattern search out to many (region, log group) targets, drives
the resulting Insights queries under per-region rate limits with
retries, timeouts and cancellation, and merges the results as
interleaved, grouped, streaming or serialized output.

The FastAPI application lives in ``loghound.main``.
"""

__version__ = "1.0.0"
__description__ = "Multi-region CloudWatch Logs Insights search service"
