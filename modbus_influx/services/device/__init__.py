"""
Device Service - Modbus Communication

Responsibilities:
- Maintain one Modbus TCP connection per endpoint
- Poll targets at their template's scan interval
- Decode input registers into samples
- Track per-target online/offline status
"""

from .service import PollerService

__all__ = ["PollerService"]
