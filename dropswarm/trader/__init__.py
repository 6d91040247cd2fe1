"""
Agent pool orchestration package.

The process entrypoint remains `main.py` at the repo root. The agent control loop, the
orchestrator and the runner live under `dropswarm/trader/` to keep entrypoints thin and testable.
"""
