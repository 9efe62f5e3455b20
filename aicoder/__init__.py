"""aicoder: prompt-to-preview sandbox orchestration.

This package contains:
- A structured-response parser and a streaming pipeline for the model endpoint
- The sandbox session (boot, mount, install, dev server, readiness)
- The file synchronization layer between editor, AI pipeline and sandbox
- The orchestrator wiring it all together, plus a FastAPI surface for the UI
"""
