# tests/engine/__init__.py
