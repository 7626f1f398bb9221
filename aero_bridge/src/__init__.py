"""
Bridge daemon package for the serial-sensor-to-InfluxDB pipeline.

Reads environmental measurements from a sensor board over a line-oriented
serial link, buffers them in a local SQLite spool, optionally averages them
per time window, and writes them to an InfluxDB v2 bucket.

CHANGELOG:
- 2026-10-19: Initial creation

TODO:
- None
"""
