"""Autonomous issue-resolution workflow orchestration.

This package drives submitted issues through a fixed pipeline
(analyze → resolve → review → integrate), providing:
- A task state machine with append-only history and pluggable persistence
- Isolated per-task workspaces under an exact concurrency cap
- Circuit breakers, exponential backoff, and per-stage retry budgets
- A bounded-concurrency priority scheduler
- Event emission, Prometheus metrics, and a small HTTP surface
"""
