"""
modbus-influx Services

- config - Document loading, validation and poll target resolution
- device - Modbus I/O, scheduling and polling
- sink - Batching and writing samples to InfluxDB
"""
