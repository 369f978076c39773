# tests/storage/__init__.py
