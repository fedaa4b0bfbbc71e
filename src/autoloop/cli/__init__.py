# src/autoloop/cli/__init__.py
