# tests/telemetry/__init__.py
