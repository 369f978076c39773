# tests/property/core/__init__.py
