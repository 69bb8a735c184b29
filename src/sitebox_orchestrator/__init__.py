"""
sitebox-orchestrator — package root

File: src/sitebox_orchestrator/__init__.py

Purpose
- Local sandbox orchestration engine: leases ports, verifies storage backends,
  supervises server processes and hot-swaps sandbox engines with rollback.

Functional requirements
- Must not have side effects at import time (no config loading, no logging init).
"""

__version__ = "0.3.0"

__all__ = ["__version__"]
