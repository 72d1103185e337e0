"""
Sink Service - InfluxDB writes

Batches samples and writes them as line protocol, with bounded retry.
"""

from .writer import SinkWriter

__all__ = ["SinkWriter"]
