# tests/cli/__init__.py
