"""
modbus-influx

Template-driven Modbus TCP poller writing decoded input registers to InfluxDB.
"""

__version__ = "0.1.0"
