from __future__ import annotations

from app.core.simulations.runner import RunController
from app.core.simulations.sandbox_server import SandboxServerManager

# Process-wide instances wired into the API; tests build their own.
run_controller = RunController()
sandbox_manager = SandboxServerManager()
