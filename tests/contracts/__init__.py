# tests/contracts/__init__.py
