"""Sandbox session lifecycle.

This package contains:
- The per-client session state machine (boot, mount, install, dev server)
- The memoizing session manager that guarantees a single boot
"""
