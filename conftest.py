"""Root conftest for flocker.

Registers the shared fixture modules. This must live in the top-level conftest.py
(pytest disallows pytest_plugins in non-top-level conftest files).
"""

pytest_plugins = [
    "imbue.flocker.fixtures",
]
